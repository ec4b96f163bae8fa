"""Entrypoint for the smart-home panel service."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Iterable, Optional

from .api import ApiService
from .commands import CommandExecutor
from .config import Config, load_config
from .db import apply_migrations
from .events import EventBus
from .logging import configure_logging, get_logger
from .state import HomeState
from .store import RecordStore


async def _run_async(config: Config) -> None:
    logger = get_logger("smarthome")
    stop_event = asyncio.Event()
    store = RecordStore(config.db_path)
    await store.start()
    state = HomeState(
        store,
        event_bus=EventBus(),
        scene_step_delay=config.scene_step_delay,
        activity_cache_limit=config.activity_cache_limit,
        seed_demo=config.seed_demo,
    )
    executor = CommandExecutor(state, config)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    api = ApiService(config, state, executor)
    try:
        await state.initialize()
        await api.start()
        logger.info(
            "Panel services started",
            extra={
                "api_host": config.api_host,
                "api_port": config.api_port,
                "db_path": str(config.db_path),
                "devices": len(state.devices),
            },
        )
        await stop_event.wait()
    finally:
        await api.stop()
        await state.event_bus.drain()
        await store.stop()
        logger.info("Panel shutdown complete")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by the console script."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("smarthome")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
