"""HTTP/HTTPS proxying through a shared directory.

Two processes that cannot reach each other exchange traffic by writing
files into a folder both can see (typically one kept in sync by a
file-sync service).  The near side is an intercepting proxy a browser
points at; the far side relays to the real network.
"""

from .config import ProtocolVersion, Role, SessionConfig
from .errors import (
    EgressError,
    HandshakeTimeout,
    MalformedEnvelope,
    NetXError,
    RegistrationError,
    SetupError,
    StreamClosed,
    TransportError,
)
from .session import Session, SessionResult

__version__ = "0.1.0"

__all__ = [
    "EgressError",
    "HandshakeTimeout",
    "MalformedEnvelope",
    "NetXError",
    "ProtocolVersion",
    "RegistrationError",
    "Role",
    "Session",
    "SessionConfig",
    "SessionResult",
    "SetupError",
    "StreamClosed",
    "TransportError",
]
