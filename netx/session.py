"""Session lifecycle: the start/stop contract the desktop shell drives.

A :class:`Session` wires one role (proxy or relay) and one protocol
version over one shared directory.  ``start()`` and ``stop()`` never
raise; they report through :class:`SessionResult`.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Callable, Coroutine, Optional

from .certs import CertificateAuthority
from .channel import Channel, DirectoryChannel
from .config import Role, SessionConfig
from .errors import SetupError
from .log import CallbackHandler, LogEvent, get_logger
from .proxy import Exchange, InterceptingProxy, LegacyExchange, StreamingExchange
from .relay import Egress, LegacyService, Relay, RelayService, StreamingService
from .transport import ConnectionRegistry, LegacyTransport, OrphanSweeper, Side, StreamTransport

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionResult:
    success: bool
    error: Optional[str] = None


class Session:
    """One running proxy or relay.

    Parameters
    ----------
    config:
        The session's fixed configuration.
    on_log:
        Optional callback receiving a :class:`~netx.log.LogEvent` per log
        record of the ``netx`` logger while the session runs.
    channel:
        Override the :class:`~netx.channel.DirectoryChannel` built from
        ``config.shared_dir``.
    """

    def __init__(
        self,
        config: SessionConfig,
        on_log: Optional[Callable[[LogEvent], None]] = None,
        channel: Optional[Channel] = None,
    ):
        self.config = config
        self.on_log = on_log
        self.channel = channel
        self.registry = ConnectionRegistry()
        self.transport: Optional[StreamTransport] = None
        self.proxy: Optional[InterceptingProxy] = None
        self.relay: Optional[Relay] = None
        self.ca: Optional[CertificateAuthority] = None
        self.port: Optional[int] = None
        self._tasks: list[asyncio.Task[None]] = []
        self._log_handler: Optional[CallbackHandler] = None
        self.running = False

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> SessionResult:
        if self.running:
            return SessionResult(False, "Session already running")
        self._attach_log()
        try:
            await self._start()
        except SetupError as e:
            logger.error("Start failed: %s", e)
            await self._teardown()
            return SessionResult(False, str(e))
        except Exception as e:
            logger.error("Start failed: %s", traceback.format_exc())
            await self._teardown()
            return SessionResult(False, str(e))
        self.running = True
        return SessionResult(True)

    async def stop(self) -> SessionResult:
        """Release the listener, timers and every open connection."""
        try:
            await self._teardown()
        except Exception as e:
            logger.error("Stop failed: %s", traceback.format_exc())
            return SessionResult(False, str(e))
        logger.info("Session stopped")
        self._detach_log()
        return SessionResult(True)

    async def _start(self) -> None:
        config = self.config
        if self.channel is None:
            if not config.shared_dir or not config.shared_dir.is_dir():
                raise SetupError(f"Shared directory does not exist: {config.shared_dir}")
            self.channel = DirectoryChannel(config.shared_dir)

        try:
            purged = self.channel.purge()
        except OSError as e:
            raise SetupError(f"Shared directory is not usable: {e}") from e
        if purged:
            logger.info("Removed %d stale file(s) from %s", purged, config.shared_dir)

        sweeper = OrphanSweeper(self.channel, self.registry, grace=config.orphan_grace)

        if config.role is Role.PROXY:
            await self._start_proxy()
        else:
            self._start_relay()

        self._spawn(sweeper.run(config.sweep_interval), "sweeper")
        logger.info(
            "%s started (%s, %s)",
            config.role.value.capitalize(),
            config.protocol.value,
            config.shared_dir,
        )

    async def _start_proxy(self) -> None:
        assert self.channel is not None
        config = self.config
        self.ca = CertificateAuthority(config.cert_dir)
        self.ca.ensure_root_ca()

        exchange: Exchange
        if config.streaming:
            self.transport = StreamTransport(self.channel, self.registry, Side.PROXY, config)
            exchange = StreamingExchange(self.transport, config)
            self._spawn(self.transport.run(), "pump")
        else:
            exchange = LegacyExchange(LegacyTransport(self.channel, self.registry, config), config)

        self.proxy = InterceptingProxy(config, exchange, self.ca)
        self.port = await self.proxy.start()

    def _start_relay(self) -> None:
        assert self.channel is not None
        config = self.config
        egress = Egress(config)
        service: RelayService
        if config.streaming:
            self.transport = StreamTransport(self.channel, self.registry, Side.RELAY, config)
            service = StreamingService(self.transport, egress, config)
            self._spawn(self.transport.run(), "pump")
        else:
            service = LegacyService(self.channel, egress, config)
        self.relay = Relay(self.channel, self.registry, service, config)
        self._spawn(self.relay.run(), "scanner")
        if config.socks_proxy:
            logger.info("Egress via SOCKS5 %s", config.socks_proxy)

    async def _teardown(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.proxy is not None:
            await self.proxy.stop()
            self.proxy = None
        if self.relay is not None:
            await self.relay.stop()
            self.relay = None
        if self.transport is not None:
            self.transport.close_all("Session stopped")
            self.transport = None
        if self.ca is not None:
            self.ca.close()
            self.ca = None
        self.running = False

    # -- helpers -----------------------------------------------------------

    def _spawn(self, coro: Coroutine[None, None, None], name: str) -> None:
        def task_exception_handler(task: asyncio.Task[None]) -> None:
            try:
                task.result()
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.error("Exception in task %s: %s", task.get_name(), traceback.format_exc())

        task = asyncio.get_running_loop().create_task(coro)
        task.set_name(name)
        task.add_done_callback(task_exception_handler)
        self._tasks.append(task)

    def _attach_log(self) -> None:
        if self.on_log is None or self._log_handler is not None:
            return
        root = logging.getLogger("netx")
        if root.level == logging.NOTSET:
            root.setLevel(logging.INFO)
        self._log_handler = CallbackHandler(self.on_log)
        root.addHandler(self._log_handler)

    def _detach_log(self) -> None:
        if self._log_handler is not None:
            logging.getLogger("netx").removeHandler(self._log_handler)
            self._log_handler = None
