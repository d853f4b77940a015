"""Unit tests for store.py - In-memory object store and reconcile queue."""

from datetime import datetime, timezone

import pytest
from unittest.mock import patch

from conftest import OPERAND_NS, make_bindinfo, make_registry, make_secret
from models import (
    KIND_BINDINFO,
    KIND_SECRET,
    ObjectKey,
    OperatorStatus,
    OwnerEdge,
    OwnershipError,
    ReconcileRequest,
)
from store import (
    AlreadyExistsError,
    ConflictError,
    InMemoryObjectStore,
    NotFoundError,
    backoff_delay,
    bindinfo_owner_keys,
    body_hash,
    split_manifest,
)

BINDINFO_KEY = ObjectKey(OPERAND_NS, "postgres-bindinfo")


class TestHelpers:
    """Tests for module-level helper functions."""

    def test_split_manifest(self):
        """Test the body excludes kind, metadata and status."""
        body, status = split_manifest(
            {"kind": "Secret", "metadata": {}, "data": {"a": "b"}, "status": {"x": 1}}
        )
        assert body == {"data": {"a": "b"}}
        assert status == {"x": 1}

    def test_body_hash_ignores_key_order(self):
        """Test the hash is stable under key reordering."""
        assert body_hash({"a": 1, "b": 2}) == body_hash({"b": 2, "a": 1})
        assert body_hash({"a": 1}) != body_hash({"a": 2})

    def test_bindinfo_owner_keys(self):
        """Test only BindInfo edges with a name are returned."""
        keys = bindinfo_owner_keys(
            "ns",
            [
                {"kind": "BindInfo", "name": "bi"},
                {"kind": "Request", "name": "req"},
                {"kind": "BindInfo", "name": ""},
            ],
        )
        assert keys == {ObjectKey("ns", "bi")}

    def test_backoff_delay_grows_and_caps(self):
        """Test exponential growth capped at max_delay without jitter."""
        assert backoff_delay(0, base_delay=60, jitter_factor=0) == 60
        assert backoff_delay(3, base_delay=60, jitter_factor=0) == 480
        assert backoff_delay(20, base_delay=60, max_delay=3600, jitter_factor=0) == 3600

    def test_backoff_delay_jitter_bounds(self):
        """Test jitter stays within the configured factor."""
        for _ in range(50):
            delay = backoff_delay(1, base_delay=100, jitter_factor=0.1)
            assert 180 <= delay <= 220


# ==================== CRUD ====================


@pytest.mark.asyncio
class TestCrud:
    """Tests for create, get, list, update and delete."""

    async def test_create_assigns_identity(self, store):
        """Test create assigns uid, resource version and generation 1."""
        created = await store.create(make_secret())

        assert created.metadata.uid
        assert created.metadata.resource_version > 0
        assert created.metadata.generation == 1

    async def test_create_duplicate_raises(self, store):
        """Test creating an existing name raises AlreadyExistsError."""
        await store.create(make_secret())

        with pytest.raises(AlreadyExistsError):
            await store.create(make_secret())

    async def test_get_missing_raises(self, store):
        """Test get of a missing object raises NotFoundError."""
        with pytest.raises(NotFoundError) as exc_info:
            await store.get(KIND_SECRET, "ns", "missing")
        assert exc_info.value.kind == KIND_SECRET

    async def test_get_returns_copy(self, store):
        """Test mutating a returned object does not change the store."""
        await store.create(make_secret())

        fetched = await store.get(KIND_SECRET, OPERAND_NS, "postgres-secret")
        fetched.data["password"] = "changed"

        again = await store.get(KIND_SECRET, OPERAND_NS, "postgres-secret")
        assert again.data["password"] != "changed"

    async def test_list_filters_namespace(self, store):
        """Test list by kind, optionally restricted to one namespace."""
        await store.create(make_secret(name="a", namespace="ns1"))
        await store.create(make_secret(name="b", namespace="ns2"))

        assert len(await store.list(KIND_SECRET)) == 2
        names = [s.metadata.name for s in await store.list(KIND_SECRET, "ns2")]
        assert names == ["b"]

    async def test_update_stale_version_conflicts(self, store):
        """Test an update carrying an old resource version is rejected."""
        created = await store.create(make_secret())
        created.data = {"password": "bmV3"}
        await store.update(created)

        created.data = {"password": "b3RoZXI="}
        with pytest.raises(ConflictError):
            await store.update(created)

    async def test_update_version_zero_is_unconditional(self, store):
        """Test resource version 0 skips the conflict check."""
        await store.create(make_secret())

        updated = await store.update(make_secret(data={"password": "bmV3"}))

        assert updated.data == {"password": "bmV3"}

    async def test_update_missing_raises(self, store):
        """Test updating a missing object raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.update(make_secret())

    async def test_noop_update_keeps_version(self, store):
        """Test a write that changes nothing keeps the resource version."""
        created = await store.create(make_secret())

        updated = await store.update(created)

        assert updated.metadata.resource_version == created.metadata.resource_version

    async def test_generation_moves_only_on_body_change(self, store):
        """Test label changes bump the version but not the generation."""
        created = await store.create(make_secret())

        created.metadata.labels["team"] = "db"
        relabeled = await store.update(created)
        assert relabeled.metadata.generation == 1
        assert relabeled.metadata.resource_version > created.metadata.resource_version

        relabeled.data = {"password": "bmV3"}
        changed = await store.update(relabeled)
        assert changed.metadata.generation == 2

    async def test_update_does_not_touch_status(self, store):
        """Test update() ignores the status carried by the object."""
        created = await store.create(make_bindinfo())
        created.status.phase = "Completed"

        updated = await store.update(created)

        assert updated.status.phase == ""

    async def test_update_status_only_touches_status(self, store):
        """Test update_status() ignores spec and metadata changes."""
        created = await store.create(make_bindinfo())
        created.status.phase = "Completed"
        created.spec.operand = "redis"
        created.metadata.labels["x"] = "y"

        updated = await store.update_status(created)

        assert updated.status.phase == "Completed"
        assert updated.spec.operand == "postgres"
        assert "x" not in updated.metadata.labels
        assert updated.metadata.generation == 1

    async def test_write_with_two_controllers_rejected(self, store):
        """Test owner edges are validated on write."""
        secret = make_secret()
        secret.metadata.owners = [
            OwnerEdge("Request", "a", controlling=True),
            OwnerEdge("Request", "b", controlling=True),
        ]

        with pytest.raises(OwnershipError):
            await store.create(secret)

    async def test_delete(self, store):
        """Test delete removes the object and errors when repeated."""
        await store.create(make_secret())

        await store.delete(KIND_SECRET, OPERAND_NS, "postgres-secret")

        with pytest.raises(NotFoundError):
            await store.get(KIND_SECRET, OPERAND_NS, "postgres-secret")
        with pytest.raises(NotFoundError):
            await store.delete(KIND_SECRET, OPERAND_NS, "postgres-secret")


# ==================== Enqueue Triggers ====================


@pytest.mark.asyncio
class TestEnqueueTriggers:
    """Tests for which writes make a BindInfo due."""

    async def test_bindinfo_create_enqueues(self, store):
        """Test a new BindInfo is due immediately."""
        await store.create(make_bindinfo())

        assert await store.get_keys_needing_reconciliation() == [BINDINFO_KEY]

    async def test_bindinfo_generation_change_enqueues(self, store):
        """Test a spec change re-enqueues a settled BindInfo."""
        created = await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)
        await store.record_reconcile_result(BINDINFO_KEY, success=True, observed_generation=1)
        assert await store.get_keys_needing_reconciliation() == []

        created.spec.operand = "redis"
        await store.update(created)

        assert await store.get_keys_needing_reconciliation() == [BINDINFO_KEY]

    async def test_bindinfo_status_write_does_not_enqueue(self, store):
        """Test the reconciler's own status writes do not retrigger it."""
        created = await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)
        created.status.phase = "Completed"
        await store.update_status(created)
        await store.record_reconcile_result(BINDINFO_KEY, success=True, observed_generation=1)

        assert await store.get_keys_needing_reconciliation() == []

    async def test_owned_object_write_enqueues(self, store):
        """Test a change to an object with a BindInfo edge enqueues that BindInfo."""
        await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)
        await store.record_reconcile_result(BINDINFO_KEY, success=True, observed_generation=1)

        secret = make_secret()
        secret.metadata.owners = [OwnerEdge("BindInfo", "postgres-bindinfo")]
        await store.create(secret)

        assert await store.get_keys_needing_reconciliation() == [BINDINFO_KEY]

    async def test_registry_status_write_enqueues(self, store):
        """Test a Registry status change enqueues the BindInfos that use it."""
        await store.create(make_bindinfo())
        registry = await store.create(make_registry())
        await store.mark_reconciling(BINDINFO_KEY)
        await store.record_reconcile_result(BINDINFO_KEY, success=True, observed_generation=1)

        registry.operators_status["postgres"] = OperatorStatus(
            reconcile_requests=[ReconcileRequest("my-request", "consumer-a")]
        )
        await store.update_status(registry)

        assert await store.get_keys_needing_reconciliation() == [BINDINFO_KEY]

    async def test_unrelated_registry_does_not_enqueue(self, store):
        """Test a Registry with another name leaves the BindInfo alone."""
        await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)
        await store.record_reconcile_result(BINDINFO_KEY, success=True, observed_generation=1)

        await store.create(make_registry(name="other-registry"))

        assert await store.get_keys_needing_reconciliation() == []

    async def test_delete_drops_queue_entry(self, store):
        """Test a deleted BindInfo is no longer handed out."""
        await store.create(make_bindinfo())

        await store.delete(KIND_BINDINFO, OPERAND_NS, "postgres-bindinfo")

        assert await store.get_keys_needing_reconciliation() == []


# ==================== Reconcile Queue ====================


@pytest.mark.asyncio
class TestReconcileQueue:
    """Tests for claiming, releasing and backing off keys."""

    async def test_reconciling_key_not_returned(self, store):
        """Test a claimed key is excluded from the due list."""
        await store.create(make_bindinfo())

        await store.mark_reconciling(BINDINFO_KEY)

        assert await store.get_keys_needing_reconciliation() == []

    async def test_enqueue_while_reconciling_is_due_after_release(self, store):
        """Test a key changed mid-pass is due again as soon as it is released."""
        await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)

        await store.enqueue(BINDINFO_KEY)
        assert await store.get_keys_needing_reconciliation() == []

        await store.record_reconcile_result(BINDINFO_KEY, success=True, observed_generation=1)
        assert await store.get_keys_needing_reconciliation() == [BINDINFO_KEY]

    async def test_success_schedules_resync(self, store):
        """Test a successful key is not due until the resync interval passes."""
        await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)
        await store.record_reconcile_result(
            BINDINFO_KEY, success=True, observed_generation=1, resync_interval=300
        )

        assert await store.get_keys_needing_reconciliation() == []

        with patch("store.time.time", return_value=2_000_000_000_000):
            assert await store.get_keys_needing_reconciliation() == [BINDINFO_KEY]

    async def test_failure_waits_for_backoff(self, store):
        """Test a failed key is due only after requeue_failed assigns a delay."""
        await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)
        await store.record_reconcile_result(BINDINFO_KEY, success=False, observed_generation=1)

        assert await store.get_keys_needing_reconciliation() == []

        await store.requeue_failed(base_delay=0, jitter_factor=0)
        assert await store.get_keys_needing_reconciliation() == [BINDINFO_KEY]

    async def test_failure_backoff_delays(self, store):
        """Test a long backoff keeps the failed key out of the due list."""
        await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)
        await store.record_reconcile_result(BINDINFO_KEY, success=False, observed_generation=1)

        await store.requeue_failed(base_delay=600, jitter_factor=0)

        assert await store.get_keys_needing_reconciliation() == []

    async def test_limit(self, store):
        """Test no more than ``limit`` keys are returned."""
        for i in range(5):
            await store.create(make_bindinfo(name=f"bi-{i}"))

        keys = await store.get_keys_needing_reconciliation(limit=3)

        assert len(keys) == 3

    async def test_history_newest_first(self, store):
        """Test each release is recorded in the reconciliation history."""
        await store.create(make_bindinfo())
        for success in (False, True):
            await store.mark_reconciling(BINDINFO_KEY)
            await store.record_reconcile_result(
                BINDINFO_KEY,
                success=success,
                observed_generation=1,
                message="boom" if not success else "ok",
                phase="Failed" if not success else "Completed",
                duration_seconds=0.5,
            )

        history = await store.get_reconciliation_history(BINDINFO_KEY)

        assert [h["success"] for h in history] == [True, False]
        assert history[0]["phase"] == "Completed"
        assert history[0]["error_message"] is None
        assert history[1]["error_message"] == "boom"
        assert history[1]["duration_seconds"] == 0.5

    async def test_history_time_is_utc(self, store):
        await store.create(make_bindinfo())
        await store.mark_reconciling(BINDINFO_KEY)

        with patch("store.time.time", return_value=0.0):
            await store.record_reconcile_result(BINDINFO_KEY, success=True)

        [entry] = await store.get_reconciliation_history(BINDINFO_KEY)
        assert entry["reconcile_time"] == datetime(1970, 1, 1, tzinfo=timezone.utc)

    async def test_history_bounded(self):
        """Test history keeps only the configured number of entries."""
        store = InMemoryObjectStore(history_size=2)
        await store.create(make_bindinfo())
        for _ in range(4):
            await store.mark_reconciling(BINDINFO_KEY)
            await store.record_reconcile_result(BINDINFO_KEY, success=True)

        assert len(await store.get_reconciliation_history(BINDINFO_KEY, limit=10)) == 2
