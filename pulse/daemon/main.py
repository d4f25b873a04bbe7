"""Main daemon process for Pulse."""

import asyncio
import signal
import sys
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psutil
from aiohttp import web
from loguru import logger

from .api import create_api_app
from .bundle import BundleAssembler
from .bus import NOW_ACTION_TAKEN, NOW_COMPUTED, NOW_FETCH_FAILED, Event, EventBus
from .config import Config
from .error_handling import RetryPolicy
from .events import UserEventLog
from .executor import CommandExecutor
from .store import WorkItemStore


VERSION = "0.1.0"


def setup_logging(config: Config) -> None:
    """Configure loguru sinks: stderr plus a rotating file."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=config.logging.level
    )

    log_dir = Path(config.logging.directory).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "daemon.log",
        rotation=config.logging.rotation,
        retention=config.logging.retention,
        level="DEBUG"
    )


class PulseDaemon:
    """Owns the store, event log, executor and HTTP API."""

    def __init__(self, config: Config):
        self.config = config
        self.start_time = datetime.now(timezone.utc)

        self.event_bus = EventBus()
        self.store = WorkItemStore(config.vault_path)
        self.event_log = UserEventLog(config.vault_path)
        self.executor = CommandExecutor(self.store)
        self.assembler = BundleAssembler(
            self.store,
            self.event_log,
            RetryPolicy(
                max_retries=config.fetch.max_retries,
                base_delay=config.fetch.base_delay,
                max_delay=config.fetch.max_delay,
            ),
        )

        self.stats = defaultdict(int)
        self.outcomes = defaultdict(int)

        self.api_app = None
        self.api_runner = None
        self.api_site = None

    async def start(self) -> None:
        logger.info("Starting Pulse daemon...")

        await self.event_bus.start()
        self.event_bus.subscribe(NOW_COMPUTED, self._on_computed)
        self.event_bus.subscribe(NOW_FETCH_FAILED, self._on_fetch_failed)
        self.event_bus.subscribe(NOW_ACTION_TAKEN, self._on_action_taken)

        await self._start_api()
        logger.info("Pulse daemon started successfully")

    async def stop(self) -> None:
        logger.info("Stopping Pulse daemon...")

        if self.api_site:
            await self.api_site.stop()
        if self.api_runner:
            await self.api_runner.cleanup()
        await self.event_bus.stop()

        logger.info("Pulse daemon stopped")

    async def _start_api(self) -> None:
        self.api_app = create_api_app(self)
        self.api_runner = web.AppRunner(self.api_app)
        await self.api_runner.setup()

        host, port = self.config.api.host, self.config.api.port
        self.api_site = web.TCPSite(self.api_runner, host, port)
        await self.api_site.start()

        logger.info(f"API server started on http://{host}:{port}")

    async def _on_computed(self, event: Event) -> None:
        self.outcomes[event.data.get("status", "unknown")] += 1

    async def _on_fetch_failed(self, event: Event) -> None:
        self.outcomes["fetch_error"] += 1

    async def _on_action_taken(self, event: Event) -> None:
        logger.info(
            f"now_action_taken: {event.data.get('action_id')} "
            f"({event.data.get('source')}) for {event.data.get('user_id')}"
        )

    def get_status(self) -> dict:
        process = psutil.Process()
        uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()

        return {
            "status": "running",
            "version": VERSION,
            "uptime": f"{uptime:.0f}s",
            "stats": {
                "compute_count": self.stats["compute_count"],
                "execute_count": self.stats["execute_count"],
                "outcomes": dict(self.outcomes),
                "bus": self.event_bus.get_stats(),
                "memory_mb": process.memory_info().rss / 1024 / 1024,
            },
            "config": {
                "vault_path": str(self.config.vault_path),
                "api": f"{self.config.api.host}:{self.config.api.port}",
            },
        }


async def main(config_path: Optional[str] = None):
    """Main entry point for the daemon."""
    try:
        config = Config.load(Path(config_path) if config_path else None)
    except FileNotFoundError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config)
    daemon = PulseDaemon(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await daemon.start()
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await daemon.stop()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
