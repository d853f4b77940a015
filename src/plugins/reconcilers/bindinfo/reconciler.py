"""
BindInfo Reconciler - one level-triggered pass over a BindInfo.

Loads the BindInfo, resolves its Registry, and copies every public binding
into each consumer namespace. Per-consumer and per-binding failures are
collected and reported together; they never stop the remaining copies.
"""

import logging
from typing import List, Optional

from events import EventRecorder, EventType
from models import KIND_BINDINFO, BindInfo, ObjectKey, Phase, ReconcileRequest
from plugins.reconcilers.base import ReconcileResult
from plugins.reconcilers.bindinfo.aggregate import MultiError, phase_for
from plugins.reconcilers.bindinfo.resolver import (
    OperandNotFoundError,
    RegistryNotFoundError,
    RequestNotFoundError,
    get_binding_info_from_request,
    load_request,
    resolve_registry,
)
from plugins.reconcilers.bindinfo.sync import ResourceSynchronizer
from store import NotFoundError, ObjectStore

logger = logging.getLogger(__name__)


class BindInfoReconciler:
    """
    Reconciles BindInfo objects.

    Holds only its collaborators; everything a pass reads or computes is
    local to that pass, so different keys may be reconciled concurrently.
    """

    def __init__(self, store: ObjectStore, recorder: EventRecorder):
        self.store = store
        self.recorder = recorder
        self.synchronizer = ResourceSynchronizer(store, recorder)

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Run one reconcile pass for the BindInfo at ``key``.

        Never raises: every failure is reported through the result, with
        ``requeue`` set so the scheduler retries the whole pass.
        """
        logger.info(f"Reconciling BindInfo {key}")

        try:
            bindinfo = await self.store.get(KIND_BINDINFO, key.namespace, key.name)
        except NotFoundError:
            logger.info(f"BindInfo {key} not found, nothing to reconcile")
            return ReconcileResult(success=True, message="BindInfo not found")
        except Exception as e:
            logger.error(f"Failed to get BindInfo {key} : {e}")
            return self._failed(None, e)

        try:
            return await self._reconcile(bindinfo)
        except Exception as e:
            logger.error(f"Error reconciling BindInfo {key}: {e}", exc_info=True)
            return self._failed(bindinfo, e)

    async def _reconcile(self, bindinfo: BindInfo) -> ReconcileResult:
        key = bindinfo.key

        bindinfo.set_defaults()
        bindinfo.add_labels()
        bindinfo = await self.store.update(bindinfo)

        if bindinfo.status.is_empty():
            bindinfo.init_status()
            bindinfo = await self.store.update_status(bindinfo)

        try:
            targets = await resolve_registry(self.store, bindinfo)
        except RegistryNotFoundError as e:
            logger.warning(str(e))
            self.recorder.emit(bindinfo, EventType.WARNING, "NotFound", str(e))
            return self._failed(bindinfo, e)

        if not targets.consumers:
            logger.info(
                f"No consumers registered for operand {bindinfo.spec.operand} "
                f"of BindInfo {key}"
            )
            return ReconcileResult(
                success=True,
                message="No consumers registered",
                observed_generation=bindinfo.metadata.generation,
                phase=bindinfo.status.phase,
            )

        if not targets.source_namespace:
            err = OperandNotFoundError(bindinfo.spec.operand, bindinfo.spec.registry)
            logger.error(f"Failed to reconcile BindInfo {key} : {err}")
            return self._failed(bindinfo, err)

        errors = MultiError()
        request_namespaces: List[str] = []
        for consumer in targets.consumers:
            if consumer.namespace == targets.source_namespace:
                continue
            if consumer.namespace not in request_namespaces:
                request_namespaces.append(consumer.namespace)
            await self._sync_consumer(bindinfo, consumer, targets.source_namespace, errors)

        phase = phase_for(errors)
        try:
            bindinfo = await self._update_phase(bindinfo, phase, request_namespaces)
        except Exception as e:
            logger.error(f"Failed to update status of BindInfo {key} : {e}")
            errors.add(e)

        if errors:
            logger.error(f"Failed to reconcile BindInfo {key}: {errors}")
            return self._failed(bindinfo, errors, phase=Phase.FAILED.value)

        logger.info(f"Finished reconciling BindInfo {key}")
        return ReconcileResult(
            success=True,
            message="BindInfo reconciled",
            observed_generation=bindinfo.metadata.generation,
            phase=phase.value,
        )

    async def _sync_consumer(
        self,
        bindinfo: BindInfo,
        consumer: ReconcileRequest,
        source_namespace: str,
        errors: MultiError,
    ) -> None:
        """Copy every public binding to one consumer, collecting failures."""
        try:
            request = await load_request(self.store, consumer)
        except RequestNotFoundError as e:
            logger.warning(str(e))
            self.recorder.emit(bindinfo, EventType.WARNING, "NotFound", str(e))
            errors.add(e)
            return
        except Exception as e:
            logger.error(
                f"Failed to get Request {consumer.name} from the namespace "
                f"{consumer.namespace} : {e}"
            )
            errors.add(e)
            return

        secret_name, configmap_name = get_binding_info_from_request(bindinfo, request)

        for binding in bindinfo.spec.bindings:
            if not binding.is_public:
                continue
            try:
                await self.synchronizer.copy_secret(
                    binding.secret,
                    secret_name,
                    source_namespace,
                    consumer.namespace,
                    bindinfo,
                    request,
                )
            except Exception as e:
                errors.add(e)
                continue
            try:
                await self.synchronizer.copy_configmap(
                    binding.configmap,
                    configmap_name,
                    source_namespace,
                    consumer.namespace,
                    bindinfo,
                    request,
                )
            except Exception as e:
                errors.add(e)

    async def _update_phase(
        self,
        bindinfo: BindInfo,
        phase: Phase,
        request_namespaces: List[str],
    ) -> BindInfo:
        """Persist the pass outcome; skipped when the status already matches."""
        if (
            bindinfo.status.phase == phase.value
            and bindinfo.status.request_namespaces == request_namespaces
        ):
            return bindinfo

        bindinfo.status.phase = phase.value
        bindinfo.status.request_namespaces = list(request_namespaces)
        return await self.store.update_status(bindinfo)

    @staticmethod
    def _failed(
        bindinfo: Optional[BindInfo],
        err: Exception,
        phase: Optional[str] = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            success=False,
            message=str(err),
            requeue=True,
            observed_generation=bindinfo.metadata.generation if bindinfo else None,
            phase=phase if phase is not None else (bindinfo.status.phase if bindinfo else None),
            error=err,
        )
