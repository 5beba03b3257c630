"""Logging helpers.

Library modules only ever call :func:`get_logger`.  Console output
(:class:`ConsoleFormatter`) is installed by the command-line entry point,
and the desktop shell receives records through :class:`CallbackHandler`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TextIO

TRACE = 5

RESET = "\033[0m"
LEVEL_COLORS = {
    TRACE: "\033[0;37m",
    logging.INFO: "\033[34m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[1;31m",
    logging.CRITICAL: "\033[1;37;41m",
}


class NetxLogger(logging.Logger):
    """Logger with a ``trace`` level below DEBUG for per-chunk chatter."""

    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(NetxLogger)
logging.addLevelName(TRACE, "TRACE")


def get_logger(name: str) -> NetxLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


class ConsoleFormatter(logging.Formatter):
    """Colours level and message by severity and adds an ``elapsed`` field.

    Works on a copy; the UI callback handler shares the same record.
    """

    def format(self, record: logging.LogRecord) -> str:
        shown = logging.makeLogRecord(record.__dict__)
        shown.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        color = LEVEL_COLORS.get(record.levelno)
        if color:
            shown.msg = f"{color}{record.getMessage()}{RESET}"
            shown.args = None
            shown.levelname = f"{color}{record.levelname:<8}{RESET}"
        return super().format(shown)


def setup_console_logging(level: int = logging.INFO) -> logging.StreamHandler[TextIO]:
    """Attach a coloured stream handler to the ``netx`` logger."""
    root = logging.getLogger("netx")
    root.setLevel(level)
    handler: logging.StreamHandler[TextIO] = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        ConsoleFormatter(
            "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"
        )
    )
    root.addHandler(handler)
    return handler


@dataclass(frozen=True)
class LogEvent:
    """One log line as handed to the UI."""

    level: str
    message: str
    time: float = field(default_factory=time.time)

    @property
    def timestamp(self) -> str:
        return time.strftime("%H:%M:%S", time.localtime(self.time))


class CallbackHandler(logging.Handler):
    """Forwards records to ``callback(LogEvent)``.

    A failing callback must never take the event loop down with it, so
    errors are routed through :meth:`logging.Handler.handleError`.
    """

    def __init__(self, callback: Callable[[LogEvent], None], level: int = logging.INFO):
        super().__init__(level)
        self.callback = callback

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                level=record.levelname.lower(),
                message=record.getMessage(),
                time=record.created,
            )
            self.callback(event)
        except Exception:
            self.handleError(record)
