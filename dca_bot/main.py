"""
Process entry point: ``dca-bot`` console script / ``python -m dca_bot.main``.

Start order is settings -> logging -> store + timers -> HTTP. Shutdown
runs the registered callbacks in reverse, so the HTTP site closes before
the scheduler drains in-flight ticks and the store is released last.
"""

import asyncio
import inspect
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

from aiohttp import web

from .api import create_app
from .config import LoggingSettings, Settings, get_settings, validate_settings
from .service import DCAService

NOISY_LOGGERS = ("aiosqlite", "aiohttp.access", "httpx", "asyncio")

ShutdownCallback = Callable[[], Union[None, Awaitable[None]]]


class GracefulShutdown:
    """Collects cleanup callbacks and runs them once, newest first."""

    def __init__(self):
        self.event = asyncio.Event()
        self.callbacks: List[ShutdownCallback] = []
        self._done = False

    def register_callback(self, callback: ShutdownCallback) -> None:
        self.callbacks.append(callback)

    def request_shutdown(self) -> None:
        self.event.set()

    async def wait(self) -> None:
        await self.event.wait()

    async def trigger_shutdown(self) -> None:
        if self._done:
            return
        self._done = True
        self.event.set()

        while self.callbacks:
            callback = self.callbacks.pop()
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logging.getLogger("dca_bot").error(f"Shutdown step {callback!r} failed: {e}")


class ApplicationLogger:
    """Root logger setup: console always, rotating files when enabled."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger: Optional[logging.Logger] = None

    @staticmethod
    def _rotating_handler(log: LoggingSettings, name: str, level: int) -> RotatingFileHandler:
        handler = RotatingFileHandler(
            Path(log.directory) / name,
            maxBytes=log.file_max_bytes,
            backupCount=log.file_backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(log.format, datefmt=log.date_format))
        handler.setLevel(level)
        return handler

    def setup(self) -> logging.Logger:
        log = self.settings.logging

        root = logging.getLogger()
        root.setLevel(getattr(logging, log.level.value))
        root.handlers.clear()

        if log.file_enabled:
            Path(log.directory).mkdir(parents=True, exist_ok=True)
            root.addHandler(self._rotating_handler(log, log.file_name, logging.DEBUG))
            # CRITICAL "INCONSISTENT STATE" lines land here too
            root.addHandler(self._rotating_handler(log, "error.log", logging.ERROR))

        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s", datefmt="%H:%M:%S"))
        console.setLevel(logging.DEBUG if self.settings.debug else logging.INFO)
        root.addHandler(console)

        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        self.logger = logging.getLogger("dca_bot")
        return self.logger


def log_banner(logger: logging.Logger, settings: Settings) -> None:
    logger.info("=" * 60)
    logger.info(f"{settings.app_name} v{settings.app_version} ({settings.environment.value})")
    logger.info(f"Chain backend: {settings.chain.backend.value} @ {settings.chain.rpc_url[:50]}")
    logger.info(f"Price oracle:  {settings.oracle.provider.value} ({settings.oracle.asset_id})")
    logger.info(f"Plan store:    {settings.database.path}")
    logger.info("=" * 60)
    logger.debug(f"Settings: {settings.mask_secrets()}")


def install_signal_handlers(shutdown: GracefulShutdown, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()

    def on_signal(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, stopping")
        shutdown.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda _s, _f, sig=sig: loop.call_soon_threadsafe(on_signal, sig))


async def main() -> int:
    shutdown = GracefulShutdown()
    logger = logging.getLogger("dca_bot")

    try:
        settings = get_settings()
        logger = ApplicationLogger(settings).setup()
        for issue in validate_settings(settings):
            logger.warning(f"Config issue: {issue}")
        log_banner(logger, settings)

        service = DCAService.from_settings(settings)
        shutdown.register_callback(service.stop)
        await service.start()
        logger.info(f"{len(service.scheduler.scheduled_plan_ids)} plan timers running")

        runner = web.AppRunner(create_app(service, settings.api))
        await runner.setup()
        shutdown.register_callback(runner.cleanup)
        await web.TCPSite(runner, settings.api.host, settings.api.port).start()
        logger.info(f"API listening on http://{settings.api.host}:{settings.api.port}")

        install_signal_handlers(shutdown, logger)
        await shutdown.wait()
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1
    finally:
        await shutdown.trigger_shutdown()
        logger.info("Shutdown complete")


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
