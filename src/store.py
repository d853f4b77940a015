"""
Object Store - abstract resource store and in-memory backend.

The store is the only channel through which the controller reads and writes
resources. Every backend must discriminate "not found", "already exists" and
"conflict" from other failures, since the reconcile logic branches on them.

The store also carries the reconcile queue for BindInfo keys: writes that
create or change a BindInfo, or change an object a BindInfo holds an
ownership edge on, mark that BindInfo for reconciliation.
"""

import asyncio
import copy
import hashlib
import json
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from models import (
    KIND_BINDINFO,
    KIND_REGISTRY,
    ObjectKey,
    Resource,
    resource_from_dict,
    validate_owner_edges,
)

logger = logging.getLogger(__name__)

# Keys of the manifest that are neither metadata nor status
_NON_BODY_KEYS = ("kind", "metadata", "status")


class StoreError(Exception):
    """Base class for object store failures."""


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {name} not found in the namespace {namespace}")


class AlreadyExistsError(StoreError):
    """Raised when creating an object whose name is already taken."""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {name} already exists in the namespace {namespace}")


class ConflictError(StoreError):
    """Raised when a write carries a stale resource version."""

    def __init__(self, kind: str, namespace: str, name: str, expected: int, actual: int):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(
            f"Operation cannot be fulfilled on {kind} {namespace}/{name}: "
            f"resource version {expected} is stale (current {actual})"
        )


def split_manifest(data: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split a manifest into its desired-state body and its status."""
    body = {k: v for k, v in data.items() if k not in _NON_BODY_KEYS}
    return body, data.get("status") or {}


def body_hash(body: Dict[str, Any]) -> str:
    """Calculate a hash of an object body for change detection."""
    body_string = json.dumps(body, sort_keys=True)
    return hashlib.sha256(body_string.encode()).hexdigest()


def bindinfo_owner_keys(namespace: str, owner_references: List[Dict[str, Any]]) -> Set[ObjectKey]:
    """Keys of the BindInfos holding an ownership edge on an object."""
    return {
        ObjectKey(namespace, ref.get("name", ""))
        for ref in owner_references
        if ref.get("kind") == KIND_BINDINFO and ref.get("name")
    }


def backoff_delay(
    retry_count: int,
    base_delay: int = 60,
    max_delay: int = 3600,
    jitter_factor: float = 0.1,
) -> float:
    """Exponential backoff in seconds, capped at max_delay, with ±jitter."""
    delay = min(base_delay * (2 ** min(retry_count, 10)), max_delay)
    return delay * (1 + (random.random() * 2 - 1) * jitter_factor)


class ObjectStore(ABC):
    """
    Abstract object store.

    All methods return deep copies; callers must keep using the object a
    write returns, since it carries the new resource version.

    Write semantics shared by all backends:
      - an update carrying resource_version 0 is unconditional, otherwise the
        version must match the stored one (ConflictError)
      - a write that changes nothing is a no-op and keeps the version
      - generation moves only when the body (not metadata/status) changes
      - update() never touches status, update_status() only touches status
      - owner edges are validated on every write
    """

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> Resource:
        """
        Get an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    async def list(self, kind: str, namespace: Optional[str] = None) -> List[Resource]:
        """List objects of a kind, optionally in one namespace."""
        pass

    @abstractmethod
    async def create(self, obj: Resource) -> Resource:
        """
        Create an object.

        Raises:
            AlreadyExistsError: If an object with that name already exists
        """
        pass

    @abstractmethod
    async def update(self, obj: Resource) -> Resource:
        """
        Replace an object's metadata labels/annotations/owners and body.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the resource version is stale
        """
        pass

    @abstractmethod
    async def update_status(self, obj: Resource) -> Resource:
        """
        Replace an object's status.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the resource version is stale
        """
        pass

    @abstractmethod
    async def delete(self, kind: str, namespace: str, name: str) -> None:
        """
        Delete an object. Owned objects are not reclaimed here.

        Raises:
            NotFoundError: If the object does not exist
        """
        pass

    # ==================== Reconcile Queue ====================

    @abstractmethod
    async def enqueue(self, key: ObjectKey) -> None:
        """Mark a BindInfo for reconciliation as soon as possible."""
        pass

    @abstractmethod
    async def get_keys_needing_reconciliation(self, limit: int = 10) -> List[ObjectKey]:
        """
        Get BindInfo keys that are due for reconciliation.

        Keys currently being reconciled are never returned.
        """
        pass

    @abstractmethod
    async def mark_reconciling(self, key: ObjectKey) -> None:
        """Claim a key for the duration of one reconcile."""
        pass

    @abstractmethod
    async def record_reconcile_result(
        self,
        key: ObjectKey,
        success: bool,
        observed_generation: Optional[int] = None,
        resync_interval: int = 300,
        message: Optional[str] = None,
        phase: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """
        Release a key after a reconcile.

        Success schedules the next periodic resync; failure leaves the key
        waiting for requeue_failed() to assign a backoff. A key enqueued
        while it was reconciling is due again immediately either way.
        """
        pass

    @abstractmethod
    async def requeue_failed(
        self,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        """Schedule failed keys with exponential backoff and jitter."""
        pass

    @abstractmethod
    async def get_reconciliation_history(
        self, key: ObjectKey, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Most recent reconcile attempts of a BindInfo, newest first."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


@dataclass
class _QueueEntry:
    status: str = "pending"
    observed_generation: int = 0
    retry_count: int = 0
    dirty: bool = False
    message: Optional[str] = None
    last_reconcile_time: Optional[float] = None
    next_reconcile_time: Optional[float] = 0.0


class InMemoryObjectStore(ObjectStore):
    """
    Dict-backed object store.

    Used for local runs without PostgreSQL and as the store under test.
    Objects are kept in manifest form; a single lock serializes writes.
    """

    def __init__(self, history_size: int = 100):
        self._objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._queue: Dict[ObjectKey, _QueueEntry] = {}
        self._history: Dict[ObjectKey, Deque[Dict[str, Any]]] = {}
        self._history_size = history_size
        self._revision = 0
        self._lock = asyncio.Lock()

    def _next_revision(self) -> int:
        self._revision += 1
        return self._revision

    def _get_raw(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        data = self._objects.get((kind, namespace, name))
        if data is None:
            raise NotFoundError(kind, namespace, name)
        return data

    async def get(self, kind: str, namespace: str, name: str) -> Resource:
        async with self._lock:
            return resource_from_dict(copy.deepcopy(self._get_raw(kind, namespace, name)))

    async def list(self, kind: str, namespace: Optional[str] = None) -> List[Resource]:
        async with self._lock:
            return [
                resource_from_dict(copy.deepcopy(data))
                for (k, ns, _), data in sorted(self._objects.items())
                if k == kind and (namespace is None or ns == namespace)
            ]

    async def create(self, obj: Resource) -> Resource:
        validate_owner_edges(obj.metadata)
        data = obj.to_dict()
        meta = data["metadata"]
        async with self._lock:
            store_key = (obj.kind, meta["namespace"], meta["name"])
            if store_key in self._objects:
                raise AlreadyExistsError(*store_key)

            meta["uid"] = str(uuid.uuid4())
            meta["resourceVersion"] = self._next_revision()
            meta["generation"] = 1
            self._objects[store_key] = data
            logger.debug(f"Created {obj.kind} {meta['namespace']}/{meta['name']}")

            self._notify(data, generation_changed=True)
            return resource_from_dict(copy.deepcopy(data))

    async def update(self, obj: Resource) -> Resource:
        return await self._write(obj, status_only=False)

    async def update_status(self, obj: Resource) -> Resource:
        return await self._write(obj, status_only=True)

    async def _write(self, obj: Resource, status_only: bool) -> Resource:
        validate_owner_edges(obj.metadata)
        data = obj.to_dict()
        meta = data["metadata"]
        async with self._lock:
            current = self._get_raw(obj.kind, meta["namespace"], meta["name"])
            current_meta = current["metadata"]
            if meta["resourceVersion"] and meta["resourceVersion"] != current_meta["resourceVersion"]:
                raise ConflictError(
                    obj.kind,
                    meta["namespace"],
                    meta["name"],
                    meta["resourceVersion"],
                    current_meta["resourceVersion"],
                )

            updated = copy.deepcopy(current)
            current_body, _ = split_manifest(current)
            new_body, new_status = split_manifest(data)
            generation_changed = False
            if status_only:
                if "status" in current:
                    updated["status"] = new_status
            else:
                for field_name in ("labels", "annotations", "ownerReferences"):
                    updated["metadata"][field_name] = meta[field_name]
                for body_key in current_body:
                    updated.pop(body_key)
                updated.update(new_body)
                if body_hash(new_body) != body_hash(current_body):
                    generation_changed = True
                    updated["metadata"]["generation"] += 1

            if updated == current:
                return resource_from_dict(copy.deepcopy(current))

            updated["metadata"]["resourceVersion"] = self._next_revision()
            self._objects[(obj.kind, meta["namespace"], meta["name"])] = updated
            logger.debug(
                f"Updated {obj.kind} {meta['namespace']}/{meta['name']}"
                f"{' status' if status_only else ''}"
            )

            if not status_only or obj.kind == KIND_REGISTRY:
                self._notify(updated, generation_changed=generation_changed)
            return resource_from_dict(copy.deepcopy(updated))

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        async with self._lock:
            self._get_raw(kind, namespace, name)
            del self._objects[(kind, namespace, name)]
            if kind == KIND_BINDINFO:
                self._queue.pop(ObjectKey(namespace, name), None)
            logger.debug(f"Deleted {kind} {namespace}/{name}")

    def _notify(self, data: Dict[str, Any], generation_changed: bool) -> None:
        """Enqueue the BindInfos interested in a write. Caller holds the lock."""
        meta = data["metadata"]
        kind = data["kind"]
        if kind == KIND_BINDINFO and generation_changed:
            self._enqueue(ObjectKey(meta["namespace"], meta["name"]))
        elif kind == KIND_REGISTRY:
            for (k, ns, name), bindinfo in self._objects.items():
                spec = bindinfo.get("spec") or {}
                registry_ns = spec.get("registryNamespace") or ns
                if (
                    k == KIND_BINDINFO
                    and spec.get("registry") == meta["name"]
                    and registry_ns == meta["namespace"]
                ):
                    self._enqueue(ObjectKey(ns, name))
        for key in bindinfo_owner_keys(meta["namespace"], meta.get("ownerReferences", [])):
            self._enqueue(key)

    # ==================== Reconcile Queue ====================

    def _enqueue(self, key: ObjectKey) -> None:
        entry = self._queue.setdefault(key, _QueueEntry())
        if entry.status == "reconciling":
            entry.dirty = True
        else:
            entry.next_reconcile_time = time.time()

    async def enqueue(self, key: ObjectKey) -> None:
        async with self._lock:
            self._enqueue(key)

    async def get_keys_needing_reconciliation(self, limit: int = 10) -> List[ObjectKey]:
        now = time.time()
        priority = {"pending": 0, "failed": 1}
        due = []
        async with self._lock:
            for key, entry in self._queue.items():
                data = self._objects.get((KIND_BINDINFO, key.namespace, key.name))
                if data is None or entry.status == "reconciling":
                    continue
                generation = data["metadata"]["generation"]
                if (
                    entry.last_reconcile_time is None
                    or generation > entry.observed_generation
                    or (
                        entry.next_reconcile_time is not None
                        and entry.next_reconcile_time <= now
                    )
                ):
                    due.append(
                        (
                            priority.get(entry.status, 2),
                            entry.next_reconcile_time or 0.0,
                            str(key),
                            key,
                        )
                    )
        due.sort()
        return [item[-1] for item in due[:limit]]

    async def mark_reconciling(self, key: ObjectKey) -> None:
        async with self._lock:
            entry = self._queue.setdefault(key, _QueueEntry())
            entry.status = "reconciling"
            entry.dirty = False

    async def record_reconcile_result(
        self,
        key: ObjectKey,
        success: bool,
        observed_generation: Optional[int] = None,
        resync_interval: int = 300,
        message: Optional[str] = None,
        phase: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        now = time.time()
        async with self._lock:
            entry = self._queue.get(key)
            if entry is None:
                return
            entry.last_reconcile_time = now
            entry.message = message
            if observed_generation is not None:
                entry.observed_generation = observed_generation
            if success:
                entry.status = "ready"
                entry.retry_count = 0
                entry.next_reconcile_time = now + resync_interval
            else:
                entry.status = "failed"
                entry.retry_count += 1
                entry.next_reconcile_time = None
            if entry.dirty:
                entry.next_reconcile_time = now
                entry.dirty = False

            history = self._history.setdefault(key, deque(maxlen=self._history_size))
            history.appendleft(
                {
                    "namespace": key.namespace,
                    "name": key.name,
                    "generation": observed_generation,
                    "success": success,
                    "phase": phase,
                    "error_message": None if success else message,
                    "duration_seconds": duration_seconds,
                    "reconcile_time": datetime.fromtimestamp(now, timezone.utc),
                }
            )

    async def requeue_failed(
        self,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        now = time.time()
        async with self._lock:
            for entry in self._queue.values():
                if entry.status == "failed" and entry.next_reconcile_time is None:
                    entry.next_reconcile_time = now + backoff_delay(
                        entry.retry_count, base_delay, max_delay, jitter_factor
                    )

    async def get_reconciliation_history(
        self, key: ObjectKey, limit: int = 10
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            return [dict(record) for record in list(self._history.get(key, []))[:limit]]
