"""
Reconciler Plugin Base - Abstract interface for reconciler plugins.

Reconciler plugins own the reconciliation logic for one resource kind. They
are discovered via Python entry points and run their own continuous
reconciliation loops against the object store's reconcile queue.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from events import EventRecorder
from models import ObjectKey
from store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    requeue: bool = False
    observed_generation: Optional[int] = None
    phase: Optional[str] = None
    error: Optional[Exception] = None


class ReconcilerContext:
    """
    Context provided to reconciler plugins by the operator.

    Gives reconcilers access to the object store, the event recorder, the
    reconcile queue and the scheduling settings.
    """

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        shutdown_event: asyncio.Event,
        reconcile_interval: int = 5,
        resync_interval: int = 300,
        max_concurrent_reconciles: int = 5,
    ):
        self.store = store
        self.recorder = recorder
        self.shutdown_event = shutdown_event
        self.reconcile_interval = reconcile_interval
        self.resync_interval = resync_interval
        self.max_concurrent_reconciles = max_concurrent_reconciles

    async def get_keys_needing_reconciliation(self, limit: int = 10) -> List[ObjectKey]:
        """
        Get BindInfo keys due for reconciliation.

        Args:
            limit: Maximum number of keys to return.

        Returns:
            Keys not currently being reconciled, most urgent first.
        """
        return await self.store.get_keys_needing_reconciliation(limit=limit)

    async def mark_reconciling(self, key: ObjectKey) -> None:
        """Claim a key so that it is not handed out again until released."""
        await self.store.mark_reconciling(key)

    async def record_reconciliation(
        self,
        key: ObjectKey,
        result: ReconcileResult,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """
        Release a key and record the outcome of its reconciliation.

        Args:
            key: The BindInfo key.
            result: The ReconcileResult from reconciliation.
            duration_seconds: How long reconciliation took.
        """
        await self.store.record_reconcile_result(
            key,
            success=result.success,
            observed_generation=result.observed_generation,
            resync_interval=self.resync_interval,
            message=result.message or None,
            phase=result.phase,
            duration_seconds=duration_seconds,
        )
        if result.success and result.requeue:
            await self.store.enqueue(key)

    async def release_failed(self, key: ObjectKey, message: str) -> None:
        """Release a claimed key as failed, for a pass that could not record its result."""
        await self.store.record_reconcile_result(
            key,
            success=False,
            resync_interval=self.resync_interval,
            message=message,
        )


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconciler plugins.

    Reconciler plugins own the reconciliation logic for one or more
    resource kinds. They run their own continuous reconciliation loop,
    reading due keys from the store and reporting results back.

    Reconcilers are discovered via Python entry points in the
    'bindinfo.reconcilers' group.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> List[str]:
        """Resource kinds this reconciler handles."""
        pass

    @abstractmethod
    async def start(self, ctx: ReconcilerContext) -> None:
        """
        Start the reconciliation loop.

        The reconciler should run its own loop, polling for keys that need
        reconciliation. Use ctx.shutdown_event to detect when the operator
        is shutting down.

        Args:
            ctx: ReconcilerContext providing access to the store and queue.
        """
        pass

    @abstractmethod
    async def reconcile(self, key: ObjectKey, ctx: ReconcilerContext) -> ReconcileResult:
        """
        Reconcile a single object.

        A single level-triggered pass: read the object and its
        dependencies, converge the world towards it, report the outcome.

        Args:
            key: Namespace/name of the object to reconcile.
            ctx: ReconcilerContext for store and event access.

        Returns:
            ReconcileResult indicating success/failure.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Graceful shutdown. Clean up any resources."""
        pass
