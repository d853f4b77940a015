"""
Dependency resolution for a BindInfo.

Finds where an operand's objects live and who consumes them (Registry), and
which names each consumer wants the copies to have (Request).
"""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from models import (
    KIND_REGISTRY,
    KIND_REQUEST,
    BindInfo,
    ReconcileRequest,
    Registry,
    Request,
)
from store import NotFoundError, ObjectStore

logger = logging.getLogger(__name__)


class DependencyNotFoundError(Exception):
    """A resource the BindInfo depends on does not exist."""

    def __init__(self, kind: str, name: str, namespace: str):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        super().__init__(f"NotFound {kind} {name} from the namespace {namespace}")


class RegistryNotFoundError(DependencyNotFoundError):
    def __init__(self, name: str, namespace: str):
        super().__init__(KIND_REGISTRY, name, namespace)


class RequestNotFoundError(DependencyNotFoundError):
    def __init__(self, name: str, namespace: str):
        super().__init__(KIND_REQUEST, name, namespace)


class OperandNotFoundError(Exception):
    """The Registry does not say which namespace hosts the operand."""

    def __init__(self, operand: str, registry: str):
        self.operand = operand
        self.registry = registry
        super().__init__(f"not found operator {operand} in the Registry {registry}")


@dataclass
class RegistryTargets:
    """Where an operand lives and which Requests consume it."""

    source_namespace: str = ""
    consumers: List[ReconcileRequest] = field(default_factory=list)


async def resolve_registry(store: ObjectStore, bindinfo: BindInfo) -> RegistryTargets:
    """
    Load the BindInfo's Registry and extract the operand's targets.

    ``source_namespace`` is empty when the Registry does not list the
    operand; deciding whether that is fatal is up to the caller.

    Raises:
        RegistryNotFoundError: If the Registry does not exist
    """
    ref = bindinfo.registry_key
    try:
        registry: Registry = await store.get(KIND_REGISTRY, ref.namespace, ref.name)
    except NotFoundError as e:
        raise RegistryNotFoundError(ref.name, ref.namespace) from e

    operand = bindinfo.spec.operand
    operator = registry.get_operator(operand)
    return RegistryTargets(
        source_namespace=operator.namespace if operator else "",
        consumers=registry.requests_for(operand),
    )


async def load_request(store: ObjectStore, consumer: ReconcileRequest) -> Request:
    """
    Load the Request of one consumer.

    Raises:
        RequestNotFoundError: If the Request does not exist
    """
    try:
        return await store.get(KIND_REQUEST, consumer.namespace, consumer.name)
    except NotFoundError as e:
        raise RequestNotFoundError(consumer.name, consumer.namespace) from e


def get_binding_info_from_request(bindinfo: BindInfo, request: Request) -> Tuple[str, str]:
    """
    Find the secret and configmap names a Request wants for a BindInfo.

    The first public binding of the first operand entry that matches both
    the BindInfo's registry and operand wins. ``("", "")`` means the
    consumer has not declared interest yet.
    """
    for entry in request.requests:
        if entry.registry != bindinfo.spec.registry:
            continue
        if entry.registry_namespace and entry.registry_namespace != bindinfo.spec.registry_namespace:
            continue
        for operand in entry.operands:
            if operand.name != bindinfo.spec.operand:
                continue
            for binding in operand.bindings:
                if binding.is_public:
                    return binding.secret, binding.configmap
    return "", ""
