"""Exception types raised by rendezvous clients and servers."""
from __future__ import annotations


class RendezvousClientError(Exception):
    """Base exception type for exceptions raised by rendezvous clients."""

    pass


class ClientClosedError(RendezvousClientError):
    """Exception raised if a request is made on a closed client."""

    pass


class RendezvousServerError(Exception):
    """Base exception type for requests rejected by the rendezvous server.

    The server replies to the client with an `ERROR` message containing
    the string of the exception.
    """

    pass


class BadRequestError(RendezvousServerError):
    """Request payload is invalid for the current connection."""

    pass


class IdentityConflictError(RendezvousServerError):
    """Requested identity is already bound to another live connection."""

    pass


class NotSignedInError(RendezvousServerError):
    """Identity-scoped request made on an anonymous connection."""

    pass


class PeerNotOnlineError(RendezvousServerError):
    """Target identity of a relay has no bound connection."""

    pass
