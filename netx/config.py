"""Session configuration.

A session is fixed for its whole lifetime: one role, one shared
directory, one protocol version.  Values come from the command line,
then the ``[netx]`` section of an ini file, then the defaults below.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import SetupError


class Role(Enum):
    """Which end of the shared directory this process serves."""

    PROXY = "proxy"
    RELAY = "relay"


class ProtocolVersion(Enum):
    """Wire generation used for the whole session."""

    LEGACY = "v1"
    STREAMING = "v2"


def _default_data_dir() -> Path:
    return Path.home() / ".netx"


@dataclass(frozen=True)
class SessionConfig:
    """Tunable knobs for a session.

    All intervals and timeouts are in seconds.  Sizes are in bytes.

    Attributes
    ----------
    role:
        Near-side intercepting proxy or far-side relay.
    shared_dir:
        The directory both processes read and write.  Must exist.
    listen_host / listen_port:
        Where the proxy accepts browser connections (proxy role only).
    protocol:
        ``v1`` whole-message request/response files, or ``v2`` streamed
        chunk files.
    socks_proxy:
        Optional ``socks5://[user:pass@]host:port`` used by the relay for
        every outbound connection.
    data_dir:
        Application data directory; the root CA lives in ``certs/``.
    verify_ssl:
        Whether the relay verifies origin TLS certificates.
    proxy_pump_interval / relay_pump_interval:
        Tick of the chunk pump on each side.
    scan_interval:
        How often the relay looks for new request envelopes.
    ack_poll_interval / ack_timeout:
        Streaming tunnel setup: Ack polling tick and deadline.
    legacy_poll_interval / legacy_timeout:
        Legacy mode: response polling tick and overall deadline.
    legacy_tunnel_idle / legacy_tunnel_max:
        Legacy raw tunnels stop collecting after this much silence, or
        after this much time in total.
    sweep_interval / orphan_grace:
        Orphan sweeper tick, and how long an unclaimed file must persist
        before it is deleted.
    proxy_flush_threshold / relay_flush_threshold:
        Accumulated bytes that force a chunk file out before the next tick.
    connect_timeout:
        TCP + optional SOCKS5 + TLS handshake budget for relay egress.
    read_buffer_size:
        Size passed to ``reader.read()`` when pumping sockets.
    """

    role: Role
    shared_dir: Path
    listen_host: str = "127.0.0.1"
    listen_port: int = 8080
    protocol: ProtocolVersion = ProtocolVersion.STREAMING
    socks_proxy: Optional[str] = None
    data_dir: Path = field(default_factory=_default_data_dir)
    verify_ssl: bool = True

    proxy_pump_interval: float = 0.01
    relay_pump_interval: float = 0.02
    scan_interval: float = 0.05
    ack_poll_interval: float = 0.15
    ack_timeout: float = 30.0
    legacy_poll_interval: float = 0.15
    legacy_timeout: float = 60.0
    legacy_tunnel_idle: float = 2.0
    legacy_tunnel_max: float = 10.0
    sweep_interval: float = 5.0
    orphan_grace: float = 15.0

    proxy_flush_threshold: int = 512 * 1024
    relay_flush_threshold: int = 64 * 1024

    connect_timeout: float = 30.0
    read_buffer_size: int = 65536

    @property
    def streaming(self) -> bool:
        return self.protocol is ProtocolVersion.STREAMING

    @property
    def cert_dir(self) -> Path:
        return Path(self.data_dir) / "certs"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netx",
        description="HTTP/HTTPS proxy tunnelled through a shared directory",
    )
    parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config")
    parser.add_argument('--role', dest='role', choices=[r.value for r in Role], default=None, help="proxy (near side) or relay (far side)")
    parser.add_argument('--dir', dest='shared_dir', type=str, metavar='PATH', default=None, help="Shared directory")
    parser.add_argument('--host', dest='listen_host', type=str, metavar='HOST', default=None, help="Host/IP to bind (default: 127.0.0.1)")
    parser.add_argument('--port', dest='listen_port', type=int, metavar='PORT', default=None, help="Port to listen on (default: 8080)")
    parser.add_argument('--protocol', dest='protocol', choices=[p.value for p in ProtocolVersion], default=None, help="v1 (legacy) or v2 (streaming, default)")
    parser.add_argument('--socks5', dest='socks_proxy', type=str, metavar='URL', default=None, help="Upstream SOCKS5 proxy for the relay")
    parser.add_argument('--data-dir', dest='data_dir', type=str, metavar='PATH', default=None, help="Where the root CA is kept (default: ~/.netx)")
    parser.add_argument("--verify-ssl", dest='verify_ssl', action=argparse.BooleanOptionalAction, default=None, help="Verify origin certificates on the relay")
    parser.add_argument('-v', '--verbose', action='count', default=0, help="-v for DEBUG, -vv for TRACE")
    return parser


def load_config(args: argparse.Namespace) -> SessionConfig:
    """Merge parsed *args* over the ini file they point at."""
    ini = configparser.ConfigParser()
    ini.read(args.config)

    def pick(name: str, getter: str = "get", fallback: Any = None) -> Any:
        value = getattr(args, name, None)
        if value is not None:
            return value
        return getattr(ini, getter)("netx", name, fallback=fallback)

    role = pick("role")
    if role is None:
        raise SetupError("No role configured (use --role proxy|relay)")
    shared_dir = pick("shared_dir")
    if not shared_dir:
        raise SetupError("No shared directory configured (use --dir)")

    kwargs: dict[str, Any] = {
        "role": Role(role),
        "shared_dir": Path(shared_dir).expanduser(),
        "listen_host": pick("listen_host", fallback="127.0.0.1"),
        "listen_port": pick("listen_port", "getint", fallback=8080),
        "protocol": ProtocolVersion(pick("protocol", fallback="v2")),
        "socks_proxy": pick("socks_proxy") or None,
        "verify_ssl": pick("verify_ssl", "getboolean", fallback=True),
    }
    data_dir = pick("data_dir")
    if data_dir:
        kwargs["data_dir"] = Path(data_dir).expanduser()
    return SessionConfig(**kwargs)
