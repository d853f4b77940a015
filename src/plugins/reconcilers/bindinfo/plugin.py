"""
BindInfo reconciler plugin - the polling loop around BindInfoReconciler.
"""

import asyncio
import logging
import time
from typing import Dict, List

from models import KIND_BINDINFO, ObjectKey
from plugins.reconcilers.base import ReconcilerContext, ReconcilerPlugin, ReconcileResult
from plugins.reconcilers.bindinfo.reconciler import BindInfoReconciler

logger = logging.getLogger(__name__)


class BindInfoReconcilerPlugin(ReconcilerPlugin):
    """
    Runs BindInfo reconciles for keys the store reports as due.

    Up to ``max_concurrent_reconciles`` different keys are reconciled at
    once; a key is claimed before its pass and released after, so the same
    key never runs twice concurrently.
    """

    def __init__(self):
        self._running = False
        # claimed keys whose release failed, with the failure message
        self._unreleased: Dict[ObjectKey, str] = {}

    @property
    def name(self) -> str:
        return "bindinfo"

    @property
    def resource_types(self) -> List[str]:
        return [KIND_BINDINFO]

    async def start(self, ctx: ReconcilerContext) -> None:
        self._running = True
        semaphore = asyncio.Semaphore(ctx.max_concurrent_reconciles)
        logger.info(
            f"BindInfo reconciler started (interval={ctx.reconcile_interval}s, "
            f"concurrency={ctx.max_concurrent_reconciles})"
        )

        while self._running and not ctx.shutdown_event.is_set():
            try:
                for key, message in list(self._unreleased.items()):
                    await self._release(key, ctx, message)
                keys = await ctx.get_keys_needing_reconciliation(
                    limit=ctx.max_concurrent_reconciles * 2
                )
                if keys:
                    logger.info(f"Found {len(keys)} BindInfos needing reconciliation")
                    await asyncio.gather(
                        *(self._reconcile_key(key, ctx, semaphore) for key in keys)
                    )
            except Exception as e:
                logger.error(f"Error in BindInfo reconciliation loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    ctx.shutdown_event.wait(), timeout=ctx.reconcile_interval
                )
            except asyncio.TimeoutError:
                continue

        logger.info("BindInfo reconciler loop exited")

    async def _reconcile_key(
        self,
        key: ObjectKey,
        ctx: ReconcilerContext,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            start_time = time.monotonic()
            try:
                await ctx.mark_reconciling(key)
            except Exception as e:
                logger.error(f"Could not claim BindInfo {key}: {e}", exc_info=True)
                return

            try:
                result = await self.reconcile(key, ctx)
                await ctx.record_reconciliation(
                    key, result, duration_seconds=time.monotonic() - start_time
                )
            except Exception as e:
                logger.error(f"Error reconciling BindInfo {key}: {e}", exc_info=True)
                await self._release(key, ctx, f"reconcile aborted: {e}")
                return

            if result.success:
                logger.info(f"Successfully reconciled BindInfo {key}")
            else:
                logger.error(f"Failed to reconcile BindInfo {key}: {result.message}")

    async def _release(self, key: ObjectKey, ctx: ReconcilerContext, message: str) -> None:
        """
        Release a claimed key as failed so requeue_failed() schedules a retry.

        If the store is still unavailable the key is remembered and released
        again on the next loop pass.
        """
        try:
            await ctx.release_failed(key, message)
        except Exception as e:
            logger.error(f"Could not release BindInfo {key}: {e}")
            self._unreleased[key] = message
        else:
            self._unreleased.pop(key, None)

    async def reconcile(self, key: ObjectKey, ctx: ReconcilerContext) -> ReconcileResult:
        return await BindInfoReconciler(ctx.store, ctx.recorder).reconcile(key)

    async def stop(self) -> None:
        self._running = False
        logger.info("BindInfo reconciler stopped")
