"""Rendezvous server configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import Field

from rendezvous.utils.config import load


class RendezvousLoggingConfig(BaseModel):
    """Rendezvous server logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_client_interval: Optional seconds between logging the
            number of currently signed-in clients.
        current_client_limit: Max threshold for enumerating the
            detailed list of signed-in clients. If `None`, no detailed
            list will be logged.
    """

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 60
    current_client_limit: int | None = 32


class RendezvousServingConfig(BaseModel):
    """Rendezvous server serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        logging: Logging configuration.
        max_message_bytes: Maximum size in bytes of messages received by
            the server. Connections that send larger messages are closed
            by the websocket server. If `None`, the `websockets` default
            is used.
        max_queued_messages: Maximum number of messages queued for a
            single client that is not reading them. The connection to the
            client is closed when the limit is reached. If `None`, messages
            are queued without limit.
    """

    host: str | None = None
    port: int = 8080
    certfile: str | None = None
    keyfile: str | None = None
    logging: RendezvousLoggingConfig = Field(
        default_factory=RendezvousLoggingConfig,
    )
    max_message_bytes: int | None = None
    max_queued_messages: int | None = 10000

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            Minimal config without SSL.
            ```toml title="rendezvous.toml"
            port = 8080

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_client_interval = 60
            current_client_limit = 32
            ```

            ```python
            from rendezvous.config import RendezvousServingConfig

            config = RendezvousServingConfig.from_toml('rendezvous.toml')
            ```

        Example:
            Serve with SSL.
            ```toml title="rendezvous.toml"
            host = "0.0.0.0"
            port = 8080
            certfile = "/path/to/cert.pem"
            keyfile = "/path/to/privkey.pem"
            max_message_bytes = 1048576
            max_queued_messages = 10000
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
