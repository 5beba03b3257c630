"""Command-line entry point: ``netx --role proxy|relay --dir PATH``."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import traceback

import uvloop

from .config import SessionConfig, build_parser, load_config
from .errors import SetupError
from .log import TRACE, get_logger, setup_console_logging
from .session import Session

logger = get_logger("netx.cli")


async def main(config: SessionConfig) -> int:
    session = Session(config)
    result = await session.start()
    if not result.success:
        logger.critical("Cannot start: %s", result.error)
        return 1

    if session.port is not None:
        logger.info("Point the browser at http://%s:%d", config.listen_host, session.port)
    if session.ca is not None:
        logger.info("Trust %s to intercept HTTPS", session.ca.cert_path)

    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGTERM, stopping.set)
    loop.add_signal_handler(signal.SIGINT, stopping.set)
    await stopping.wait()

    logger.info("Shutting down...")
    result = await session.stop()
    return 0 if result.success else 1


def run() -> None:
    parser = build_parser()
    args = parser.parse_args()
    level = TRACE if args.verbose >= 2 else logging.DEBUG if args.verbose == 1 else logging.INFO
    setup_console_logging(level)

    try:
        config = load_config(args)
    except (SetupError, ValueError) as e:
        parser.error(str(e))

    try:
        sys.exit(uvloop.run(main(config)))
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception:
        logger.critical("Fatal: %s", traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    run()
