"""
HTTP Input Plugin - REST API for resource management.

This plugin provides a FastAPI-based REST API, shaped like the Kubernetes
API, for applying, reading and deleting BindInfos, Registries, Requests,
Secrets and ConfigMaps, for triggering reconciliation and for reading the
recorded events.
"""

import asyncio
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from events import Event, EventBus, EventRecorder
from models import (
    KIND_BINDINFO,
    PLURALS,
    RESOURCE_TYPES,
    ObjectKey,
    OwnershipError,
    resource_from_dict,
)
from plugins.inputs.base import InputPlugin, ResourceCallback
from store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ObjectStore,
    StoreError,
)

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, dots, max 253 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?$")
MAX_NAME_LENGTH = 253
# Namespaces follow the stricter DNS label rules
NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAMESPACE_LENGTH = 63
MAX_MANIFEST_SIZE = 1024 * 1024  # 1MB max for spec/data


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters, '-' or '.', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_namespace_format(value: str) -> str:
    """Validate that a namespace is a DNS label."""
    if not value:
        raise ValueError("namespace cannot be empty")
    if len(value) > MAX_NAMESPACE_LENGTH:
        raise ValueError(f"namespace cannot exceed {MAX_NAMESPACE_LENGTH} characters")
    if not NAMESPACE_PATTERN.match(value):
        raise ValueError(
            "namespace must consist of lowercase alphanumeric characters or '-', "
            "must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(value: Optional[Dict[str, Any]], field_name: str) -> Optional[Dict[str, Any]]:
    """Validate that JSON data doesn't exceed size limits."""
    if value is not None:
        json_str = json.dumps(value)
        if len(json_str) > MAX_MANIFEST_SIZE:
            raise ValueError(
                f"{field_name} exceeds maximum size of {MAX_MANIFEST_SIZE // 1024}KB"
            )
    return value


# Manifest models


class ManifestMetadata(BaseModel):
    """Metadata accepted on apply."""

    name: str = Field(..., description="Object name", examples=["postgres-binding"])
    namespace: Optional[str] = Field(None, description="Object namespace")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    resourceVersion: Optional[int] = Field(
        None, description="Expected resource version (omit for an unconditional write)"
    )
    ownerReferences: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "metadata.name")


class Manifest(BaseModel):
    """Request model for applying any supported resource."""

    kind: Optional[str] = Field(None, description="Resource kind", examples=["BindInfo"])
    metadata: ManifestMetadata
    spec: Optional[Dict[str, Any]] = Field(None, description="Desired state")
    status: Optional[Dict[str, Any]] = Field(None, description="Observed state")
    type: Optional[str] = Field(None, description="Secret type")
    data: Optional[Dict[str, str]] = Field(None, description="Secret/ConfigMap data")
    stringData: Optional[Dict[str, str]] = Field(None, description="Secret string data")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return validate_json_size(v, "spec")

    @field_validator("data")
    @classmethod
    def validate_data_size(cls, v: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        return validate_json_size(v, "data")

    @field_validator("stringData")
    @classmethod
    def validate_string_data_size(cls, v: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        return validate_json_size(v, "stringData")


class StatusUpdate(BaseModel):
    """Request model for replacing an object's status."""

    status: Dict[str, Any] = Field(..., description="New status")
    resourceVersion: Optional[int] = Field(None, description="Expected resource version")

    @field_validator("status")
    @classmethod
    def validate_status_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "status")


class ReconciliationHistoryResponse(BaseModel):
    """Response model for reconciliation history."""

    namespace: str
    name: str
    generation: Optional[int] = None
    success: bool
    phase: Optional[str] = None
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    reconcile_time: datetime


class EventResponse(BaseModel):
    """Response model for a recorded event."""

    event_type: str
    reason: str
    message: str
    involved_kind: str
    involved_namespace: str
    involved_name: str
    source: str
    timestamp: str


def _kind_for(plural: str) -> str:
    kind = PLURALS.get(plural)
    if kind is None:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown resource type '{plural}'. "
            f"Available: {', '.join(PLURALS)}",
        )
    return kind


def _store_error(e: Exception) -> HTTPException:
    """Map store and ownership errors to HTTP errors."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (AlreadyExistsError, ConflictError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (OwnershipError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Object store error: {e}")
    return HTTPException(status_code=500, detail=str(e))


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for resource management.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._on_resource_event: Optional[ResourceCallback] = None
        self._store: Optional[ObjectStore] = None
        self._recorder: Optional[EventRecorder] = None
        self._event_bus: Optional[EventBus] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO").lower(),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = config.get("log_level", "info")

        self.app = FastAPI(
            title="BindInfo Operator API",
            description="Shares Secrets and ConfigMaps between namespaces",
            version="1.0.0",
        )

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_store(self, store: ObjectStore) -> None:
        """Set the object store instance."""
        self._store = store

    def set_event_recorder(self, recorder: EventRecorder) -> None:
        """Set the event recorder whose history the API exposes."""
        self._recorder = recorder

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming events."""
        self._event_bus = event_bus

    def _require_store(self) -> ObjectStore:
        if not self._store:
            raise HTTPException(status_code=503, detail="Object store not available")
        return self._store

    async def _notify(self, event_type: str, obj) -> None:
        if self._on_resource_event:
            await self._on_resource_event(event_type, obj)

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Events: GET /api/v1/events, GET /api/v1/events/watch (SSE)
        - List: GET /api/v1/{plural}
        - Objects: GET/PUT/DELETE /api/v1/namespaces/{namespace}/{plural}/{name}
        - Status: PUT /api/v1/namespaces/{namespace}/{plural}/{name}/status
        - Reconciliation: POST /api/v1/namespaces/{namespace}/bindinfos/{name}/reconcile
        - History: GET /api/v1/namespaces/{namespace}/bindinfos/{name}/history

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "bindinfo-operator"}

        # ==================== Event Endpoints ====================

        @self.app.get("/api/v1/events", response_model=List[EventResponse])
        async def list_events(
            namespace: Optional[str] = None,
            name: Optional[str] = None,
            limit: int = 100,
        ):
            """List recently recorded events, newest first."""
            if not self._recorder:
                raise HTTPException(status_code=503, detail="Event recorder not available")

            events = self._recorder.recent(limit=limit, namespace=namespace, name=name)
            return [EventResponse(**event.to_dict()) for event in events]

        @self.app.get("/api/v1/events/watch")
        async def watch_events(namespace: Optional[str] = None, name: Optional[str] = None):
            """SSE stream of recorded events.

            Optionally filter by the involved object's namespace and name.
            """
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: Event) -> bool:
                return (namespace is None or event.involved_namespace == namespace) and (
                    name is None or event.involved_name == name
                )

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    logger.debug(f"Event stream {subscriber_id} cancelled")
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

        # ==================== Object Endpoints ====================

        @self.app.get("/api/v1/{plural}")
        async def list_objects(plural: str, namespace: Optional[str] = None):
            """List objects of one kind, optionally in one namespace."""
            store = self._require_store()
            kind = _kind_for(plural)

            try:
                objects = await store.list(kind, namespace)
            except StoreError as e:
                raise _store_error(e)
            return {"kind": f"{kind}List", "items": [obj.to_dict() for obj in objects]}

        @self.app.get("/api/v1/namespaces/{namespace}/{plural}/{name}")
        async def get_object(namespace: str, plural: str, name: str):
            """Get one object."""
            store = self._require_store()
            kind = _kind_for(plural)

            try:
                obj = await store.get(kind, namespace, name)
            except StoreError as e:
                raise _store_error(e)
            return obj.to_dict()

        @self.app.put("/api/v1/namespaces/{namespace}/{plural}/{name}")
        async def apply_object(
            namespace: str,
            plural: str,
            name: str,
            manifest: Manifest,
            response: Response,
        ):
            """Create the object, or replace it if it already exists."""
            store = self._require_store()
            kind = _kind_for(plural)

            try:
                validate_namespace_format(namespace)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            if manifest.kind and manifest.kind != kind:
                raise HTTPException(
                    status_code=400,
                    detail=f"Manifest kind '{manifest.kind}' does not match '{kind}'",
                )
            if manifest.metadata.name != name:
                raise HTTPException(
                    status_code=400,
                    detail=f"metadata.name '{manifest.metadata.name}' does not match '{name}'",
                )
            if manifest.metadata.namespace and manifest.metadata.namespace != namespace:
                raise HTTPException(
                    status_code=400,
                    detail=f"metadata.namespace '{manifest.metadata.namespace}' "
                    f"does not match '{namespace}'",
                )

            data = manifest.model_dump(exclude_none=True)
            data["kind"] = kind
            data["metadata"]["namespace"] = namespace

            try:
                obj = resource_from_dict(data)
                try:
                    stored = await store.create(obj)
                    response.status_code = 201
                    event_type = "created"
                except AlreadyExistsError:
                    stored = await store.update(obj)
                    if manifest.status is not None and RESOURCE_TYPES[kind].has_status:
                        obj.metadata.resource_version = stored.metadata.resource_version
                        stored = await store.update_status(obj)
                    event_type = "updated"
            except (StoreError, OwnershipError, ValueError) as e:
                raise _store_error(e)

            logger.info(f"Applied {kind} {namespace}/{name} ({event_type})")
            await self._notify(event_type, stored)
            return stored.to_dict()

        @self.app.put("/api/v1/namespaces/{namespace}/{plural}/{name}/status")
        async def update_object_status(
            namespace: str, plural: str, name: str, update: StatusUpdate
        ):
            """Replace the status of an object."""
            store = self._require_store()
            kind = _kind_for(plural)
            if not RESOURCE_TYPES[kind].has_status:
                raise HTTPException(status_code=400, detail=f"{kind} has no status")

            try:
                current = await store.get(kind, namespace, name)
                data = current.to_dict()
                data["status"] = update.status
                data["metadata"]["resourceVersion"] = update.resourceVersion or 0
                stored = await store.update_status(resource_from_dict(data))
            except (StoreError, OwnershipError, ValueError) as e:
                raise _store_error(e)

            await self._notify("updated", stored)
            return stored.to_dict()

        @self.app.delete("/api/v1/namespaces/{namespace}/{plural}/{name}")
        async def delete_object(namespace: str, plural: str, name: str):
            """Delete an object. Copies it owns are not reclaimed."""
            store = self._require_store()
            kind = _kind_for(plural)

            try:
                obj = await store.get(kind, namespace, name)
                await store.delete(kind, namespace, name)
            except StoreError as e:
                raise _store_error(e)

            logger.info(f"Deleted {kind} {namespace}/{name}")
            await self._notify("deleted", obj)
            return {"message": f"{kind} {namespace}/{name} deleted"}

        # ==================== Reconciliation Endpoints ====================

        @self.app.post(
            "/api/v1/namespaces/{namespace}/bindinfos/{name}/reconcile",
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Manually trigger reconciliation for a BindInfo."""
            store = self._require_store()

            try:
                await store.get(KIND_BINDINFO, namespace, name)
                await store.enqueue(ObjectKey(namespace, name))
            except StoreError as e:
                raise _store_error(e)

            return {
                "message": "Reconciliation triggered",
                "namespace": namespace,
                "name": name,
            }

        @self.app.get(
            "/api/v1/namespaces/{namespace}/bindinfos/{name}/history",
            response_model=List[ReconciliationHistoryResponse],
        )
        async def get_reconciliation_history(namespace: str, name: str, limit: int = 10):
            """Get reconciliation history for a BindInfo."""
            store = self._require_store()

            try:
                history = await store.get_reconciliation_history(
                    ObjectKey(namespace, name), limit
                )
            except StoreError as e:
                raise _store_error(e)
            return [ReconciliationHistoryResponse(**record) for record in history]

    async def start(self, on_resource_event: ResourceCallback) -> None:
        """Start the HTTP server."""
        self._on_resource_event = on_resource_event
        self._setup_routes()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
