"""
Main entry point for the BindInfo operator.

This module wires the object store, the event recorder, the controller and
the input plugins together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import Config, get_config
from controller import Controller, ControllerConfig
from db import DatabaseManager
from events import EventBus, EventRecorder
from models import Resource
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins
from store import InMemoryObjectStore, ObjectStore

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_store(config: Config) -> ObjectStore:
    """Create and connect the configured object store backend."""
    db_config = config.database
    if db_config.backend == "memory":
        logger.warning("Using the in-memory object store; state is lost on restart")
        return InMemoryObjectStore()

    db = DatabaseManager(
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        user=db_config.user,
        password=db_config.password,
        min_pool_size=db_config.min_pool_size,
        max_pool_size=db_config.max_pool_size,
    )
    await db.connect()
    await db.initialize_schema()
    logger.info("Database initialized")
    return db


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[ObjectStore] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.recorder: Optional[EventRecorder] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing BindInfo operator")

        register_builtin_plugins()
        registry = get_registry()

        self.store = await create_store(self.config)

        ctrl_config = self.config.controller
        self.event_bus = EventBus()
        self.recorder = EventRecorder(
            event_bus=self.event_bus,
            history_size=ctrl_config.event_history_size,
        )

        controller_config = ControllerConfig(
            reconcile_interval=ctrl_config.reconcile_interval,
            resync_interval=ctrl_config.resync_interval,
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            enabled_reconcilers=self.config.plugins.enabled_reconciler_plugins,
            backoff_base_delay=ctrl_config.backoff_base_delay,
            backoff_max_delay=ctrl_config.backoff_max_delay,
            backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
        )

        self.controller = Controller(
            store=self.store,
            recorder=self.recorder,
            registry=registry,
            config=controller_config,
        )

        # If not specified, use all registered input plugins
        enabled_inputs = self.config.plugins.enabled_input_plugins
        if not enabled_inputs:
            enabled_inputs = registry.list_input_plugins()

        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            # Env-loaded plugin config with PLUGIN_CONFIGS overrides
            plugin_config = registry.get_input_plugin_config(plugin_name)
            plugin_config.update(self.config.plugins.get_plugin_config(plugin_name))

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_store(self.store)
            plugin.set_event_recorder(self.recorder)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)
            logger.info(f"Initialized input plugin: {plugin_name}")

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting BindInfo operator")

        # The store enqueues affected BindInfos on every write, so input
        # events need no further action here.
        async def on_resource_event(event_type: str, obj: Resource):
            logger.debug(
                f"Resource event: {event_type} - {obj.kind} "
                f"{obj.metadata.namespace}/{obj.metadata.name}"
            )

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(on_resource_event)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping BindInfo operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.store:
            await self.store.close()

        logger.info("BindInfo operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.api.log_level)
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
