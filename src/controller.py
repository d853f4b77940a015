"""
Operator Controller - runs the reconciler loops.

Starts every enabled reconciler plugin with a shared ReconcilerContext and
runs the requeue loop that schedules failed reconciles with exponential
backoff, similar to a Kubernetes controller manager.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from events import EventRecorder
from models import ObjectKey
from plugins.reconcilers.base import ReconcilerContext, ReconcilerPlugin
from plugins.registry import PluginRegistry, get_registry
from store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    reconcile_interval: int = 5
    resync_interval: int = 300
    max_concurrent_reconciles: int = 5
    requeue_interval: int = 30
    # Reconciler plugin names to run (empty = all registered)
    enabled_reconcilers: List[str] = field(default_factory=list)

    # Exponential backoff configuration
    backoff_base_delay: int = 60  # base delay in seconds
    backoff_max_delay: int = 3600  # max delay in seconds (1 hour)
    backoff_jitter_factor: float = 0.1  # ±10% jitter


class Controller:
    """
    Main controller.

    Owns the shutdown event and the lifecycle of reconciler plugin loops.
    The per-key work happens inside each reconciler; the controller only
    starts, supervises and stops them.
    """

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._reconciler_tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the reconciler plugins and the requeue loop."""
        logger.info("Starting Operator Controller")
        self.running = True
        self._shutdown_event.clear()

        await self._start_reconcilers()

        requeue_task = asyncio.create_task(self._requeue_loop())

        try:
            await asyncio.gather(requeue_task, *self._reconciler_tasks)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller and all reconciler plugins gracefully."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()

        await self._stop_reconcilers()

    def _enabled_reconcilers(self) -> List[str]:
        registered = self.registry.list_reconciler_plugins()
        if not self.config.enabled_reconcilers:
            return registered
        for name in self.config.enabled_reconcilers:
            if name not in registered:
                logger.warning(f"Reconciler plugin '{name}' not found, skipping")
        return [name for name in registered if name in self.config.enabled_reconcilers]

    def _build_context(self) -> ReconcilerContext:
        return ReconcilerContext(
            store=self.store,
            recorder=self.recorder,
            shutdown_event=self._shutdown_event,
            reconcile_interval=self.config.reconcile_interval,
            resync_interval=self.config.resync_interval,
            max_concurrent_reconciles=self.config.max_concurrent_reconciles,
        )

    async def _start_reconcilers(self) -> None:
        """Start all enabled reconciler plugin loops."""
        reconciler_ctx = self._build_context()

        for reconciler_name in self._enabled_reconcilers():
            reconciler = self.registry.get_reconciler_plugin(reconciler_name)
            task = asyncio.create_task(self._run_reconciler(reconciler, reconciler_ctx))
            self._reconciler_tasks.append(task)
            logger.info(f"Started reconciler plugin: {reconciler_name}")

    async def _run_reconciler(self, reconciler: ReconcilerPlugin, ctx: ReconcilerContext) -> None:
        """Run a reconciler plugin, catching exceptions."""
        try:
            await reconciler.start(ctx)
        except Exception as e:
            logger.error(
                f"Reconciler plugin '{reconciler.name}' crashed: {e}",
                exc_info=True,
            )

    async def _stop_reconcilers(self) -> None:
        """Stop all running reconciler plugins."""
        for reconciler_name in self._enabled_reconcilers():
            try:
                reconciler = self.registry.get_reconciler_plugin(reconciler_name)
                await reconciler.stop()
                logger.info(f"Stopped reconciler plugin: {reconciler_name}")
            except Exception as e:
                logger.error(f"Error stopping reconciler '{reconciler_name}': {e}")

        for task in self._reconciler_tasks:
            if not task.done():
                task.cancel()
        self._reconciler_tasks.clear()

    async def _requeue_loop(self):
        """Schedules failed reconciliations with exponential backoff."""
        while self.running:
            try:
                await self.store.requeue_failed(
                    base_delay=self.config.backoff_base_delay,
                    max_delay=self.config.backoff_max_delay,
                    jitter_factor=self.config.backoff_jitter_factor,
                )
            except Exception as e:
                logger.error(f"Error in requeue loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.requeue_interval
                )
            except asyncio.TimeoutError:
                continue

    async def trigger_reconciliation(self, key: ObjectKey):
        """Manually trigger reconciliation for a BindInfo."""
        logger.info(f"Manually triggering reconciliation for BindInfo {key}")
        await self.store.enqueue(key)
