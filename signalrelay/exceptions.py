"""Exception types raised by the relay server."""
from __future__ import annotations


class RelayServerError(Exception):
    """Base exception type for exceptions raised by relay server."""

    pass


class UnknownTargetError(RelayServerError):
    """The target identifier of a forwarded message is not registered."""

    pass


class UnregisteredClientError(RelayServerError):
    """A session attempted to message a peer before registering."""

    pass


class TransportError(RelayServerError):
    """Base exception type for failures of the underlying transport."""

    pass


class SessionClosedError(TransportError):
    """Data was sent on a session that is no longer open."""

    pass
