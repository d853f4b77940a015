"""
Resource Synchronizer - idempotent cross-namespace copy of one object.

Each copy threads two ownership edges: the copy is controlled by the
consumer's Request, and the source object gets a non-controlling edge back
to the BindInfo.
"""

import logging

from events import EventRecorder, EventType
from models import (
    KIND_CONFIGMAP,
    KIND_SECRET,
    BindInfo,
    ConfigMap,
    ObjectMeta,
    OwnershipError,
    Request,
    Resource,
    Secret,
    set_controller_reference,
    set_owner_reference,
)
from store import AlreadyExistsError, NotFoundError, ObjectStore

logger = logging.getLogger(__name__)


class ResourceSynchronizer:
    """Copies Secrets and ConfigMaps from an operand namespace to a consumer namespace."""

    def __init__(self, store: ObjectStore, recorder: EventRecorder):
        self.store = store
        self.recorder = recorder

    async def copy_secret(
        self,
        source_name: str,
        target_name: str,
        source_ns: str,
        target_ns: str,
        bindinfo: BindInfo,
        request: Request,
    ) -> None:
        """
        Copy Secret ``source_name`` from ``source_ns`` to ``target_name`` in ``target_ns``.

        A missing declaration or a missing source Secret is not an error.

        Raises:
            OwnershipError: If an ownership edge cannot be set
            StoreError: If reading the source or writing either object fails
        """
        if not (source_name and source_ns and target_ns and target_name):
            return

        logger.debug(
            f"Copy secret {source_name} from namespace {source_ns} "
            f"to secret {target_name} in the namespace {target_ns}"
        )
        secret = await self._get_source(KIND_SECRET, source_name, source_ns, bindinfo)
        if secret is None:
            return

        secret_copy = Secret(
            metadata=ObjectMeta(
                name=target_name,
                namespace=target_ns,
                labels=dict(secret.metadata.labels),
            ),
            type=secret.type,
            data=dict(secret.data),
            string_data=dict(secret.string_data),
        )
        await self._sync(secret, secret_copy, bindinfo, request)

    async def copy_configmap(
        self,
        source_name: str,
        target_name: str,
        source_ns: str,
        target_ns: str,
        bindinfo: BindInfo,
        request: Request,
    ) -> None:
        """
        Copy ConfigMap ``source_name`` from ``source_ns`` to ``target_name`` in ``target_ns``.

        The consumer's rename applies to ConfigMaps exactly as to Secrets.

        Raises:
            OwnershipError: If an ownership edge cannot be set
            StoreError: If reading the source or writing either object fails
        """
        if not (source_name and source_ns and target_ns and target_name):
            return

        logger.debug(
            f"Copy configmap {source_name} from namespace {source_ns} "
            f"to configmap {target_name} in the namespace {target_ns}"
        )
        cm = await self._get_source(KIND_CONFIGMAP, source_name, source_ns, bindinfo)
        if cm is None:
            return

        cm_copy = ConfigMap(
            metadata=ObjectMeta(
                name=target_name,
                namespace=target_ns,
                labels=dict(cm.metadata.labels),
            ),
            data=dict(cm.data),
        )
        await self._sync(cm, cm_copy, bindinfo, request)

    async def _get_source(self, kind: str, name: str, namespace: str, bindinfo: BindInfo):
        """Fetch the source object, or None (with a warning event) if it doesn't exist yet."""
        try:
            return await self.store.get(kind, namespace, name)
        except NotFoundError:
            logger.warning(f"{kind} {name} is not found from the namespace {namespace}")
            self.recorder.emit(
                bindinfo,
                EventType.WARNING,
                "NotFound",
                f"No {kind} {name} in the namespace {namespace}",
            )
            return None
        except Exception as e:
            logger.error(f"Failed to get {kind} {name} from the namespace {namespace} : {e}")
            raise

    async def _sync(
        self,
        source: Resource,
        target: Resource,
        bindinfo: BindInfo,
        request: Request,
    ) -> None:
        kind = source.kind
        name = target.metadata.name
        namespace = target.metadata.namespace

        # The copy must never be persisted without its controller
        try:
            set_controller_reference(request, target)
        except OwnershipError as e:
            logger.error(
                f"Failed to set Request {request.metadata.name} as the owner of "
                f"{kind} {name} : {e}"
            )
            raise

        try:
            await self.store.create(target)
        except AlreadyExistsError:
            try:
                await self.store.update(target)
            except Exception as e:
                logger.error(f"Failed to update {kind} {name} in the namespace {namespace} : {e}")
                raise
        except Exception as e:
            logger.error(f"Failed to create {kind} {name} in the namespace {namespace} : {e}")
            raise

        try:
            set_owner_reference(bindinfo, source)
        except OwnershipError as e:
            logger.error(
                f"Failed to set BindInfo {bindinfo.metadata.name} as an owner of "
                f"{kind} {source.metadata.name} : {e}"
            )
            raise

        try:
            await self.store.update(source)
        except Exception as e:
            logger.error(
                f"Failed to update {kind} {source.metadata.name} in the namespace "
                f"{source.metadata.namespace} : {e}"
            )
            raise
