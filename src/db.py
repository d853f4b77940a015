"""
Database Manager - PostgreSQL-backed object store.

Stores resources as JSONB rows keyed by (kind, namespace, name), with
optimistic concurrency on a global resource_version sequence, plus the
BindInfo reconcile queue and reconciliation history.
"""

import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from migrate import run_migrations
from models import (
    KIND_BINDINFO,
    KIND_REGISTRY,
    ObjectKey,
    Resource,
    resource_from_dict,
    validate_owner_edges,
)
from store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ObjectStore,
    bindinfo_owner_keys,
    body_hash,
    split_manifest,
)

logger = logging.getLogger(__name__)

# Metadata fields kept in the JSONB metadata column; the rest are columns
_METADATA_FIELDS = ("labels", "annotations", "ownerReferences")


class DatabaseManager(ObjectStore):
    """Manages PostgreSQL operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations and release stale reconcile claims."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")
        await self.release_claims()

    async def release_claims(self) -> int:
        """Return keys left in the reconciling state by a previous process to the queue."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE reconcile_queue
                SET status = 'pending', next_reconcile_time = NOW()
                WHERE status = 'reconciling'
                RETURNING namespace, name
                """
            )
        if rows:
            logger.warning(f"Released {len(rows)} BindInfo(s) left in reconciling state")
        return len(rows)

    # ==================== Object Methods ====================

    async def get(self, kind: str, namespace: str, name: str) -> Resource:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM objects WHERE kind = $1 AND namespace = $2 AND name = $3",
                kind,
                namespace,
                name,
            )
            if not row:
                raise NotFoundError(kind, namespace, name)
            return resource_from_dict(self._parse_object_row(row))

    async def list(self, kind: str, namespace: Optional[str] = None) -> List[Resource]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM objects WHERE kind = $1"
            params: List[Any] = [kind]
            if namespace is not None:
                query += " AND namespace = $2"
                params.append(namespace)
            query += " ORDER BY namespace, name"

            rows = await conn.fetch(query, *params)
            return [resource_from_dict(self._parse_object_row(row)) for row in rows]

    async def create(self, obj: Resource) -> Resource:
        self._ensure_connected()
        validate_owner_edges(obj.metadata)
        data = obj.to_dict()
        meta = data["metadata"]
        body, status = split_manifest(data)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    INSERT INTO objects (
                        kind, namespace, name, uid, resource_version,
                        generation, metadata, body, body_hash, status
                    )
                    VALUES ($1, $2, $3, $4, nextval('resource_version_seq'),
                            1, $5, $6, $7, $8)
                    ON CONFLICT (kind, namespace, name) DO NOTHING
                    RETURNING *
                    """,
                    obj.kind,
                    meta["namespace"],
                    meta["name"],
                    str(uuid.uuid4()),
                    json.dumps({f: meta[f] for f in _METADATA_FIELDS}),
                    json.dumps(body),
                    body_hash(body),
                    json.dumps(status) if obj.has_status else None,
                )
                if row is None:
                    raise AlreadyExistsError(obj.kind, meta["namespace"], meta["name"])

                created = self._parse_object_row(row)
                await self._notify(conn, created, generation_changed=True)

        logger.info(f"Created {obj.kind} {meta['name']} in the namespace {meta['namespace']}")
        return resource_from_dict(created)

    async def update(self, obj: Resource) -> Resource:
        return await self._write(obj, status_only=False)

    async def update_status(self, obj: Resource) -> Resource:
        return await self._write(obj, status_only=True)

    async def _write(self, obj: Resource, status_only: bool) -> Resource:
        self._ensure_connected()
        validate_owner_edges(obj.metadata)
        data = obj.to_dict()
        meta = data["metadata"]
        body, status = split_manifest(data)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM objects
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    FOR UPDATE
                    """,
                    obj.kind,
                    meta["namespace"],
                    meta["name"],
                )
                if not row:
                    raise NotFoundError(obj.kind, meta["namespace"], meta["name"])

                if meta["resourceVersion"] and meta["resourceVersion"] != row["resource_version"]:
                    raise ConflictError(
                        obj.kind,
                        meta["namespace"],
                        meta["name"],
                        meta["resourceVersion"],
                        row["resource_version"],
                    )

                current = self._parse_object_row(row)
                if status_only:
                    if not obj.has_status or current.get("status") == status:
                        return resource_from_dict(current)
                    row = await conn.fetchrow(
                        """
                        UPDATE objects
                        SET status = $1,
                            resource_version = nextval('resource_version_seq'),
                            updated_at = NOW()
                        WHERE id = $2
                        RETURNING *
                        """,
                        json.dumps(status),
                        row["id"],
                    )
                    generation_changed = False
                else:
                    new_hash = body_hash(body)
                    new_metadata = {f: meta[f] for f in _METADATA_FIELDS}
                    current_metadata = {f: current["metadata"][f] for f in _METADATA_FIELDS}
                    generation_changed = new_hash != row["body_hash"]
                    if not generation_changed and new_metadata == current_metadata:
                        return resource_from_dict(current)
                    row = await conn.fetchrow(
                        """
                        UPDATE objects
                        SET metadata = $1,
                            body = $2,
                            body_hash = $3,
                            generation = generation + $4,
                            resource_version = nextval('resource_version_seq'),
                            updated_at = NOW()
                        WHERE id = $5
                        RETURNING *
                        """,
                        json.dumps(new_metadata),
                        json.dumps(body),
                        new_hash,
                        1 if generation_changed else 0,
                        row["id"],
                    )

                updated = self._parse_object_row(row)
                if not status_only or obj.kind == KIND_REGISTRY:
                    await self._notify(conn, updated, generation_changed)

        logger.debug(
            f"Updated {obj.kind} {meta['name']} in the namespace {meta['namespace']}"
            f"{' status' if status_only else ''}"
        )
        return resource_from_dict(updated)

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                deleted = await conn.fetchval(
                    """
                    DELETE FROM objects
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    RETURNING id
                    """,
                    kind,
                    namespace,
                    name,
                )
                if deleted is None:
                    raise NotFoundError(kind, namespace, name)
                if kind == KIND_BINDINFO:
                    await conn.execute(
                        "DELETE FROM reconcile_queue WHERE namespace = $1 AND name = $2",
                        namespace,
                        name,
                    )
        logger.info(f"Deleted {kind} {name} in the namespace {namespace}")

    async def _notify(
        self,
        conn: asyncpg.Connection,
        data: Dict[str, Any],
        generation_changed: bool,
    ) -> None:
        """Enqueue the BindInfos interested in a write, inside its transaction."""
        meta = data["metadata"]
        keys = set(bindinfo_owner_keys(meta["namespace"], meta["ownerReferences"]))

        if data["kind"] == KIND_BINDINFO and generation_changed:
            keys.add(ObjectKey(meta["namespace"], meta["name"]))
        elif data["kind"] == KIND_REGISTRY:
            rows = await conn.fetch(
                """
                SELECT namespace, name FROM objects
                WHERE kind = $1
                  AND body->'spec'->>'registry' = $2
                  AND COALESCE(NULLIF(body->'spec'->>'registryNamespace', ''), namespace) = $3
                """,
                KIND_BINDINFO,
                meta["name"],
                meta["namespace"],
            )
            keys.update(ObjectKey(row["namespace"], row["name"]) for row in rows)

        await self._enqueue_keys(conn, keys)

    def _parse_object_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Rebuild a manifest dict from an objects row.

        Identity fields live in columns; labels, annotations and owner
        references live in the JSONB metadata column.
        """
        result = dict(row)
        metadata = json.loads(result["metadata"]) if result.get("metadata") else {}
        body = json.loads(result["body"]) if result.get("body") else {}

        manifest: Dict[str, Any] = {
            "kind": result["kind"],
            "metadata": {
                "name": result["name"],
                "namespace": result["namespace"],
                "uid": result["uid"],
                "resourceVersion": result["resource_version"],
                "generation": result["generation"],
                "labels": metadata.get("labels") or {},
                "annotations": metadata.get("annotations") or {},
                "ownerReferences": metadata.get("ownerReferences") or [],
            },
        }
        manifest.update(body)
        if result.get("status") is not None:
            manifest["status"] = json.loads(result["status"])
        return manifest

    # ==================== Reconcile Queue ====================

    async def _enqueue_keys(self, conn: asyncpg.Connection, keys: Iterable[ObjectKey]) -> None:
        for key in keys:
            await conn.execute(
                """
                INSERT INTO reconcile_queue (namespace, name, next_reconcile_time)
                VALUES ($1, $2, NOW())
                ON CONFLICT (namespace, name) DO UPDATE
                SET dirty = reconcile_queue.dirty OR reconcile_queue.status = 'reconciling',
                    next_reconcile_time = CASE
                        WHEN reconcile_queue.status = 'reconciling'
                        THEN reconcile_queue.next_reconcile_time
                        ELSE NOW()
                    END
                """,
                key.namespace,
                key.name,
            )

    async def enqueue(self, key: ObjectKey) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await self._enqueue_keys(conn, [key])

    async def get_keys_needing_reconciliation(self, limit: int = 10) -> List[ObjectKey]:
        """
        Get BindInfo keys that need reconciliation.

        Similar to Kubernetes informers - finds keys where desired != observed state.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT q.namespace, q.name
                FROM reconcile_queue q
                JOIN objects o
                  ON o.kind = $1 AND o.namespace = q.namespace AND o.name = q.name
                WHERE q.status != 'reconciling'
                  AND (
                    -- Never reconciled
                    q.last_reconcile_time IS NULL
                    -- Generation changed
                    OR o.generation > q.observed_generation
                    -- Scheduled for reconciliation
                    OR q.next_reconcile_time <= NOW()
                  )
                ORDER BY
                    CASE q.status
                        WHEN 'pending' THEN 0
                        WHEN 'failed' THEN 1
                        ELSE 2
                    END,
                    q.next_reconcile_time ASC NULLS FIRST
                LIMIT $2
                """,
                KIND_BINDINFO,
                limit,
            )
            return [ObjectKey(row["namespace"], row["name"]) for row in rows]

    async def mark_reconciling(self, key: ObjectKey) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reconcile_queue (namespace, name, status)
                VALUES ($1, $2, 'reconciling')
                ON CONFLICT (namespace, name) DO UPDATE
                SET status = 'reconciling', dirty = FALSE
                """,
                key.namespace,
                key.name,
            )

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
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if success:
                    await conn.execute(
                        """
                        UPDATE reconcile_queue
                        SET status = 'ready',
                            status_message = $3,
                            observed_generation = COALESCE($4, observed_generation),
                            retry_count = 0,
                            last_reconcile_time = NOW(),
                            next_reconcile_time = CASE
                                WHEN dirty THEN NOW()
                                ELSE NOW() + INTERVAL '1 second' * $5
                            END,
                            dirty = FALSE
                        WHERE namespace = $1 AND name = $2
                        """,
                        key.namespace,
                        key.name,
                        message,
                        observed_generation,
                        resync_interval,
                    )
                else:
                    # next_reconcile_time is assigned by requeue_failed()
                    await conn.execute(
                        """
                        UPDATE reconcile_queue
                        SET status = 'failed',
                            status_message = $3,
                            observed_generation = COALESCE($4, observed_generation),
                            retry_count = retry_count + 1,
                            last_reconcile_time = NOW(),
                            next_reconcile_time = CASE WHEN dirty THEN NOW() ELSE NULL END,
                            dirty = FALSE
                        WHERE namespace = $1 AND name = $2
                        """,
                        key.namespace,
                        key.name,
                        message,
                        observed_generation,
                    )

                await conn.execute(
                    """
                    INSERT INTO reconciliation_history (
                        namespace, name, generation, success, phase,
                        error_message, duration_seconds
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    key.namespace,
                    key.name,
                    observed_generation,
                    success,
                    phase,
                    None if success else message,
                    duration_seconds,
                )

    async def requeue_failed(
        self,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        """
        Schedule failed keys with exponential backoff and jitter.

        Args:
            base_delay: Base delay in seconds (default 60)
            max_delay: Maximum delay in seconds (default 3600 = 1 hour)
            jitter_factor: Jitter factor ±X (default 0.1 = ±10%)
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reconcile_queue
                SET next_reconcile_time = NOW() + (
                    INTERVAL '1 second' * LEAST(
                        $1 * POWER(2, LEAST(retry_count, 10)),
                        $2
                    ) * (1 + (random() * 2 - 1) * $3)
                )
                WHERE status = 'failed'
                  AND next_reconcile_time IS NULL
                """,
                base_delay,
                max_delay,
                jitter_factor,
            )

    async def get_reconciliation_history(
        self, key: ObjectKey, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a BindInfo."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE namespace = $1 AND name = $2
                ORDER BY reconcile_time DESC
                LIMIT $3
                """,
                key.namespace,
                key.name,
                limit,
            )
            return [dict(row) for row in rows]
