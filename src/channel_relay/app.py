"""Application bootstrap for the channel relay engine."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable

import aiohttp
from aiohttp import web

from .backfill import BackfillTaskManager
from .config import RelayConfig
from .connection import ConnectionRegistry
from .control import create_control_app
from .directory import SQLiteServiceDirectory
from .message_maps import JsonFileBackend, MessageMapStore
from .orchestrator import ServiceOrchestrator
from .telegram import connection_factory
from .transform import GeminiGenerator

logger = logging.getLogger(__name__)

__all__ = ["RelayApp", "run_relay"]


class RelayApp:
    """Wires configuration, storage, connections and services together."""

    def __init__(self, config: RelayConfig):
        self._config = config
        self._stop_event = asyncio.Event()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        config = self._config
        directory = SQLiteServiceDirectory(config.storage.database)
        try:
            async with aiohttp.ClientSession() as session:
                orchestrator = ServiceOrchestrator(
                    directory,
                    ConnectionRegistry(connection_factory(config.telegram)),
                    MessageMapStore(
                        JsonFileBackend(config.storage.message_map_dir),
                        ttl=config.runtime.message_ttl,
                    ),
                    BackfillTaskManager(
                        delay=config.runtime.backfill_delay,
                        max_history_limit=config.runtime.max_history_limit,
                    ),
                    generator_factory=lambda api_key: GeminiGenerator(
                        api_key, session, settings=config.generation
                    ),
                    runtime=config.runtime,
                )
                await self._serve(orchestrator)
        finally:
            directory.close()

    async def _serve(self, orchestrator: ServiceOrchestrator) -> None:
        self._install_signal_handlers()
        tasks: list[asyncio.Task[None]] = []
        if self._config.control.enabled:
            tasks.append(
                asyncio.create_task(
                    self._supervise("control-api", lambda: self._run_control_api(orchestrator)),
                    name="control-api-supervisor",
                )
            )
        try:
            await orchestrator.initialize_all()
            await self._stop_event.wait()
            logger.info("Shutdown requested, stopping services")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await orchestrator.shutdown()
            logger.info("Relay engine stopped")

    async def _run_control_api(self, orchestrator: ServiceOrchestrator) -> None:
        control = self._config.control
        runner = web.AppRunner(create_control_app(orchestrator))
        await runner.setup()
        try:
            site = web.TCPSite(runner, control.host, control.port)
            await site.start()
            logger.info("Control API listening on %s:%d", control.host, control.port)
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Task %s stopped", name)
                raise
            except Exception:
                logger.exception("Task %s failed", name)
            else:
                logger.warning("Task %s exited unexpectedly, restarting", name)
            await asyncio.sleep(retry_delay)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s is not supported on this platform", sig)


async def run_relay(config: RelayConfig) -> None:
    await RelayApp(config).run()
