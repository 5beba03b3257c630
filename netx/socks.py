"""Async SOCKS5 CONNECT client used by the relay for egress."""

from __future__ import annotations

import asyncio
import struct
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlsplit

from .errors import EgressError

NO_AUTH = 0x00
USER_PASS = 0x02
NO_ACCEPTABLE = 0xFF

REPLY_ERRORS = {
    1: "General failure",
    2: "Not allowed",
    3: "Network unreachable",
    4: "Host unreachable",
    5: "Connection refused",
    6: "TTL expired",
    7: "Command not supported",
    8: "Address type not supported",
}


@dataclass(frozen=True)
class SocksEndpoint:
    host: str
    port: int = 1080
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def parse(cls, proxy: str) -> SocksEndpoint:
        """Accepts ``socks5://[user:pass@]host[:port]`` or a bare ``host:port``."""
        if "://" not in proxy:
            proxy = "socks5://" + proxy
        parts = urlsplit(proxy)
        if parts.scheme not in ("socks5", "socks5h", "socks"):
            raise EgressError(f"Unsupported proxy scheme: {parts.scheme!r}")
        try:
            port = parts.port or 1080
        except ValueError:
            raise EgressError(f"Bad SOCKS5 port in {proxy!r}") from None
        if not parts.hostname:
            raise EgressError(f"No SOCKS5 host in {proxy!r}")
        return cls(
            host=parts.hostname,
            port=port,
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
        )


class Socks5Client:
    """Async SOCKS5 CONNECT client (no-auth and username/password)."""

    @staticmethod
    async def connect(
        proxy: str, target_host: str, target_port: int, timeout: float = 30.0
    ) -> tuple[StreamReader, StreamWriter]:
        """Open a SOCKS5 tunnel to ``target_host:target_port`` via *proxy*.

        Parameters
        ----------
        proxy:
            ``socks5://[user:pass@]host:port``.  Credentials, when present,
            are offered with RFC 1929 username/password authentication.
        target_host:
            The hostname the SOCKS5 proxy should connect to.  Always sent
            as a domain name so resolution happens on the proxy.
        target_port:
            The port the SOCKS5 proxy should connect to.
        timeout:
            Overall timeout for the SOCKS5 handshake + CONNECT.

        Raises
        ------
        EgressError
            On any handshake failure or a non-success CONNECT reply.
        """
        endpoint = SocksEndpoint.parse(proxy)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(endpoint.host, endpoint.port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise EgressError(f"SOCKS5 proxy {endpoint.host}:{endpoint.port} unreachable: {e}") from e

        try:
            async with asyncio.timeout(timeout):
                await _negotiate(reader, writer, endpoint)
                await _request_connect(reader, writer, target_host, target_port)
            return reader, writer
        except (asyncio.IncompleteReadError, OSError, asyncio.TimeoutError) as e:
            writer.close()
            raise EgressError(f"SOCKS5 handshake failed: {e!r}") from e
        except BaseException:
            writer.close()
            raise


async def _negotiate(reader: StreamReader, writer: StreamWriter, endpoint: SocksEndpoint) -> None:
    methods = bytes([NO_AUTH, USER_PASS]) if endpoint.username is not None else bytes([NO_AUTH])
    writer.write(b"\x05" + bytes([len(methods)]) + methods)
    await writer.drain()

    resp = await reader.readexactly(2)
    if resp[0] != 0x05 or resp[1] == NO_ACCEPTABLE:
        raise EgressError("SOCKS5 handshake failed: no acceptable authentication method")

    if resp[1] == USER_PASS:
        if endpoint.username is None:
            raise EgressError("SOCKS5 proxy requires credentials")
        user = endpoint.username.encode("utf-8")
        password = (endpoint.password or "").encode("utf-8")
        writer.write(b"\x01" + bytes([len(user)]) + user + bytes([len(password)]) + password)
        await writer.drain()
        status = await reader.readexactly(2)
        if status[1] != 0x00:
            raise EgressError("SOCKS5 authentication rejected")
    elif resp[1] != NO_AUTH:
        raise EgressError(f"SOCKS5 proxy chose unsupported method {resp[1]:#x}")


async def _request_connect(reader: StreamReader, writer: StreamWriter, host: str, port: int) -> None:
    # domain-name address type (0x03)
    domain = host.encode("utf-8")
    writer.write(b"\x05\x01\x00\x03" + bytes([len(domain)]) + domain + struct.pack(">H", port))
    await writer.drain()

    resp = await reader.readexactly(4)
    if resp[1] != 0x00:
        raise EgressError(f"SOCKS5: {REPLY_ERRORS.get(resp[1], 'Unknown error')}")

    # Drain the bound address so the socket is ready for data
    atyp = resp[3]
    if atyp == 0x01:  # IPv4 + port
        await reader.readexactly(6)
    elif atyp == 0x03:  # Domain + port
        length = (await reader.readexactly(1))[0]
        await reader.readexactly(length + 2)
    elif atyp == 0x04:  # IPv6 + port
        await reader.readexactly(18)
