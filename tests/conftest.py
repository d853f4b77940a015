"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from events import EventRecorder
from models import (
    BindInfo,
    BindInfoSpec,
    Binding,
    ConfigMap,
    ObjectMeta,
    OperatorStatus,
    ReconcileRequest,
    Registry,
    RegistryOperator,
    Request,
    RequestEntry,
    RequestOperand,
    Secret,
)
from store import InMemoryObjectStore, StoreError

OPERAND_NS = "operand-ns"
REGISTRY_NAME = "common-service"
OPERAND = "postgres"


# ==================== Builders ====================


def make_bindinfo(
    name="postgres-bindinfo",
    namespace=OPERAND_NS,
    operand=OPERAND,
    registry=REGISTRY_NAME,
    registry_namespace="",
    bindings=None,
):
    if bindings is None:
        bindings = [
            Binding(scope="public", secret="postgres-secret", configmap="postgres-cm")
        ]
    return BindInfo(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=BindInfoSpec(
            operand=operand,
            registry=registry,
            registry_namespace=registry_namespace,
            bindings=bindings,
        ),
    )


def make_registry(
    name=REGISTRY_NAME,
    namespace=OPERAND_NS,
    operand=OPERAND,
    operand_namespace=OPERAND_NS,
    consumers=(),
):
    """Registry listing ``operand`` in ``operand_namespace``; consumers are (name, namespace) pairs."""
    operators = [RegistryOperator(name=operand, namespace=operand_namespace)]
    status = {}
    if consumers:
        status[operand] = OperatorStatus(
            reconcile_requests=[ReconcileRequest(name=n, namespace=ns) for n, ns in consumers]
        )
    return Registry(
        metadata=ObjectMeta(name=name, namespace=namespace),
        operators=operators if operand_namespace else [],
        operators_status=status,
    )


def make_request(
    name="my-request",
    namespace="consumer-a",
    registry=REGISTRY_NAME,
    registry_namespace=OPERAND_NS,
    operand=OPERAND,
    secret="my-secret",
    configmap="my-cm",
    scope="public",
):
    return Request(
        metadata=ObjectMeta(name=name, namespace=namespace),
        requests=[
            RequestEntry(
                registry=registry,
                registry_namespace=registry_namespace,
                operands=[
                    RequestOperand(
                        name=operand,
                        bindings=[Binding(scope=scope, secret=secret, configmap=configmap)],
                    )
                ],
            )
        ],
    )


def make_secret(name="postgres-secret", namespace=OPERAND_NS, data=None, labels=None):
    return Secret(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        data=data if data is not None else {"password": "cGFzc3dvcmQ="},
    )


def make_configmap(name="postgres-cm", namespace=OPERAND_NS, data=None, labels=None):
    return ConfigMap(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        data=data if data is not None else {"host": "postgres.operand-ns.svc"},
    )


async def seed(store, *objects):
    """Create objects in the store and return the stored versions."""
    return [await store.create(obj) for obj in objects]


class FailingStore(InMemoryObjectStore):
    """In-memory store that fails chosen operations on chosen (kind, namespace) pairs."""

    def __init__(self):
        super().__init__()
        self.failures = set()

    def fail(self, operation, kind, namespace):
        self.failures.add((operation, kind, namespace))

    def heal(self):
        self.failures.clear()

    def _check(self, operation, kind, namespace):
        if (operation, kind, namespace) in self.failures:
            raise StoreError(f"injected {operation} failure for {kind} in {namespace}")

    async def get(self, kind, namespace, name):
        self._check("get", kind, namespace)
        return await super().get(kind, namespace, name)

    async def create(self, obj):
        self._check("create", obj.kind, obj.metadata.namespace)
        return await super().create(obj)

    async def update(self, obj):
        self._check("update", obj.kind, obj.metadata.namespace)
        return await super().update(obj)

    async def update_status(self, obj):
        self._check("update_status", obj.kind, obj.metadata.namespace)
        return await super().update_status(obj)


# ==================== Fixtures ====================


@pytest.fixture
def store():
    """Empty in-memory object store."""
    return InMemoryObjectStore()


@pytest.fixture
def failing_store():
    """In-memory object store with failure injection."""
    return FailingStore()


@pytest.fixture
def recorder():
    """Event recorder without a bus."""
    return EventRecorder()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def sample_bindinfo_manifest():
    """Sample BindInfo manifest as accepted by the API."""
    return {
        "kind": "BindInfo",
        "metadata": {"name": "postgres-bindinfo", "namespace": OPERAND_NS},
        "spec": {
            "operand": OPERAND,
            "registry": REGISTRY_NAME,
            "bindings": [
                {"scope": "public", "secret": "postgres-secret", "configmap": "postgres-cm"}
            ],
        },
    }
