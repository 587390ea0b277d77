"""Validate TOML configuration into Pydantic models.

Used by [`RendezvousServingConfig.from_toml()`][rendezvous.config.RendezvousServingConfig.from_toml]
to turn a server configuration file into a validated model.
"""
from __future__ import annotations

import sys
from typing import BinaryIO
from typing import TypeVar

from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib


ModelT = TypeVar('ModelT', bound=BaseModel)


def load(model: type[ModelT], fp: BinaryIO) -> ModelT:
    """Validate the TOML document in an open binary file.

    Args:
        model: Model type the document is validated against.
        fp: File opened in binary mode (e.g., `open(path, 'rb')`).

    Returns:
        Validated instance of `model`.

    Raises:
        tomllib.TOMLDecodeError: If the file is not valid TOML.
        pydantic.ValidationError: If the document does not match `model`.
    """
    return loads(model, fp.read().decode())


def loads(model: type[ModelT], data: str) -> ModelT:
    """Validate a TOML document.

    Validation is strict: a TOML string is never coerced into an integer
    field, so `port = "8080"` is rejected instead of silently accepted.
    Tables not declared on `model` are ignored.

    Args:
        model: Model type the document is validated against.
        data: TOML document.

    Returns:
        Validated instance of `model`.

    Raises:
        tomllib.TOMLDecodeError: If `data` is not valid TOML.
        pydantic.ValidationError: If the document does not match `model`.
    """
    return model.model_validate(tomllib.loads(data), strict=True)
