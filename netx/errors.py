"""Exception taxonomy shared by both sides of the tunnel."""

from __future__ import annotations

from typing import Optional


class NetXError(Exception):
    """Base class for every error raised by this package."""


class SetupError(NetXError):
    """A session could not be started (bad shared directory, bind failure...)."""


class TransportError(NetXError):
    """A single logical connection failed while crossing the shared directory."""


class RegistrationError(TransportError):
    """The request envelope could not be durably written."""


class HandshakeTimeout(TransportError):
    """No Ack (streaming) or ResponseEnvelope (legacy) arrived in time."""


class StreamClosed(TransportError):
    """The connection was closed while the caller was still waiting on it."""

    def __init__(self, connection_id: str, error: Optional[str] = None):
        self.connection_id = connection_id
        self.error = error
        super().__init__(error or f"Connection {connection_id} closed")


class MalformedEnvelope(TransportError):
    """A file in the shared directory could not be decoded."""


class EgressError(NetXError):
    """The relay could not reach the origin (directly or through SOCKS5)."""
