"""
Resource Models - BindInfo, Registry, Request, Secret and ConfigMap.

Dataclass representations of every resource the controller reads or writes,
with conversion to and from the camelCase manifest form used by the API,
the CLI and the object store. Also holds the ownership edge helpers that
replace native owner references.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

logger = logging.getLogger(__name__)

KIND_BINDINFO = "BindInfo"
KIND_REGISTRY = "Registry"
KIND_REQUEST = "Request"
KIND_SECRET = "Secret"
KIND_CONFIGMAP = "ConfigMap"


class OwnershipError(Exception):
    """Raised when an ownership edge cannot be set or an object's edges are invalid."""


class Scope(Enum):
    """Visibility of a binding. Only public bindings are synchronized."""

    PUBLIC = "public"
    PRIVATE = "private"


class Phase(Enum):
    """Aggregate outcome of the most recent BindInfo reconcile pass."""

    INIT = "Init"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(frozen=True)
class ObjectKey:
    """Namespace/name pair identifying a namespaced object of a known kind."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerEdge:
    """
    Directed ownership relation recorded on the owned object.

    A controlling edge drives cascading reclamation; a non-controlling edge
    is kept for traceability only.
    """

    owner_kind: str
    owner_name: str
    owner_uid: str = ""
    controlling: bool = False

    def refers_to_same_owner(self, other: "OwnerEdge") -> bool:
        return (
            self.owner_kind == other.owner_kind
            and self.owner_name == other.owner_name
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.owner_kind,
            "name": self.owner_name,
            "uid": self.owner_uid,
            "controller": self.controlling,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerEdge":
        return cls(
            owner_kind=data.get("kind", ""),
            owner_name=data.get("name", ""),
            owner_uid=data.get("uid", "") or "",
            controlling=bool(data.get("controller", False)),
        )


@dataclass
class ObjectMeta:
    """Standard object metadata."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: int = 0
    generation: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    owners: List[OwnerEdge] = field(default_factory=list)

    def controller(self) -> Optional[OwnerEdge]:
        """Return the controlling owner edge, if any."""
        for edge in self.owners:
            if edge.controlling:
                return edge
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
            "resourceVersion": self.resource_version,
            "generation": self.generation,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "ownerReferences": [edge.to_dict() for edge in self.owners],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ObjectMeta":
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            uid=data.get("uid", "") or "",
            resource_version=int(data.get("resourceVersion") or 0),
            generation=int(data.get("generation") or 0),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            owners=[OwnerEdge.from_dict(o) for o in data.get("ownerReferences") or []],
        )


@dataclass
class Resource:
    """
    Base class for all stored resources.

    Subclasses define ``kind`` and implement ``body()`` (the desired-state
    content) and, when they carry one, ``status_dict()``.
    """

    kind: ClassVar[str] = ""
    has_status: ClassVar[bool] = False

    metadata: ObjectMeta = field(default_factory=ObjectMeta)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.metadata.namespace, self.metadata.name)

    def body(self) -> Dict[str, Any]:
        return {}

    def status_dict(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind, "metadata": self.metadata.to_dict()}
        data.update(self.body())
        if self.has_status:
            data["status"] = self.status_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        raise NotImplementedError

    def deepcopy(self) -> "Resource":
        return copy.deepcopy(self)


@dataclass
class Secret(Resource):
    """Secret-like object: a type plus base64 data and plain string data."""

    kind: ClassVar[str] = KIND_SECRET

    type: str = "Opaque"
    data: Dict[str, str] = field(default_factory=dict)
    string_data: Dict[str, str] = field(default_factory=dict)

    def body(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": dict(self.data),
            "stringData": dict(self.string_data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Secret":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            type=data.get("type") or "Opaque",
            data=dict(data.get("data") or {}),
            string_data=dict(data.get("stringData") or {}),
        )


@dataclass
class ConfigMap(Resource):
    """Config-like object: plain key/value data."""

    kind: ClassVar[str] = KIND_CONFIGMAP

    data: Dict[str, str] = field(default_factory=dict)

    def body(self) -> Dict[str, Any]:
        return {"data": dict(self.data)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigMap":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            data=dict(data.get("data") or {}),
        )


@dataclass
class Binding:
    """
    One shareable pair of objects.

    On a BindInfo the names are the source objects; on a Request they are
    the names the consumer wants the copies to have.
    """

    scope: str = ""
    secret: str = ""
    configmap: str = ""

    @property
    def is_public(self) -> bool:
        return self.scope == Scope.PUBLIC.value

    def to_dict(self) -> Dict[str, Any]:
        return {"scope": self.scope, "secret": self.secret, "configmap": self.configmap}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Binding":
        return cls(
            scope=data.get("scope", "") or "",
            secret=data.get("secret", "") or "",
            configmap=data.get("configmap", "") or "",
        )


# ==================== BindInfo ====================


@dataclass
class BindInfoSpec:
    operand: str = ""
    registry: str = ""
    registry_namespace: str = ""
    description: str = ""
    bindings: List[Binding] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operand": self.operand,
            "registry": self.registry,
            "registryNamespace": self.registry_namespace,
            "description": self.description,
            "bindings": [b.to_dict() for b in self.bindings],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BindInfoSpec":
        data = data or {}
        return cls(
            operand=data.get("operand", ""),
            registry=data.get("registry", ""),
            registry_namespace=data.get("registryNamespace", "") or "",
            description=data.get("description", "") or "",
            bindings=[Binding.from_dict(b) for b in data.get("bindings") or []],
        )


@dataclass
class BindInfoStatus:
    phase: str = ""
    request_namespaces: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.phase and not self.request_namespaces

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase, "requestNamespaces": list(self.request_namespaces)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BindInfoStatus":
        data = data or {}
        return cls(
            phase=data.get("phase", "") or "",
            request_namespaces=list(data.get("requestNamespaces") or []),
        )


@dataclass
class BindInfo(Resource):
    """Declares which objects an operand shares and under which scope."""

    kind: ClassVar[str] = KIND_BINDINFO
    has_status: ClassVar[bool] = True

    spec: BindInfoSpec = field(default_factory=BindInfoSpec)
    status: BindInfoStatus = field(default_factory=BindInfoStatus)

    @property
    def registry_key(self) -> ObjectKey:
        return ObjectKey(self.spec.registry_namespace, self.spec.registry)

    def body(self) -> Dict[str, Any]:
        return {"spec": self.spec.to_dict()}

    def status_dict(self) -> Dict[str, Any]:
        return self.status.to_dict()

    def set_defaults(self) -> None:
        """Default the registry namespace to the BindInfo's own namespace."""
        if not self.spec.registry_namespace:
            self.spec.registry_namespace = self.metadata.namespace

    def add_labels(self) -> None:
        """Label the BindInfo with the registry it belongs to."""
        label = f"{self.spec.registry_namespace}.{self.spec.registry}/registry"
        self.metadata.labels[label] = "true"

    def init_status(self) -> None:
        """Put a BindInfo that has never been reconciled into the Init phase."""
        if self.status.is_empty():
            self.status.phase = Phase.INIT.value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BindInfo":
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=BindInfoSpec.from_dict(data.get("spec")),
            status=BindInfoStatus.from_dict(data.get("status")),
        )


# ==================== Registry ====================


@dataclass
class RegistryOperator:
    name: str = ""
    namespace: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryOperator":
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", "") or "",
            description=data.get("description", "") or "",
        )


@dataclass
class ReconcileRequest:
    """A consumer that registered interest in an operand."""

    name: str = ""
    namespace: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "namespace": self.namespace}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReconcileRequest":
        return cls(name=data.get("name", ""), namespace=data.get("namespace", ""))


@dataclass
class OperatorStatus:
    reconcile_requests: List[ReconcileRequest] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"reconcileRequests": [r.to_dict() for r in self.reconcile_requests]}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OperatorStatus":
        data = data or {}
        return cls(
            reconcile_requests=[
                ReconcileRequest.from_dict(r) for r in data.get("reconcileRequests") or []
            ]
        )


@dataclass
class Registry(Resource):
    """
    Catalog of operands.

    ``spec.operators`` lists where each operand lives; the status records which
    Requests registered interest in it. Both are owned by another controller
    and only read here.
    """

    kind: ClassVar[str] = KIND_REGISTRY
    has_status: ClassVar[bool] = True

    operators: List[RegistryOperator] = field(default_factory=list)
    operators_status: Dict[str, OperatorStatus] = field(default_factory=dict)

    def get_operator(self, name: str) -> Optional[RegistryOperator]:
        for operator in self.operators:
            if operator.name == name:
                return operator
        return None

    def requests_for(self, operand: str) -> List[ReconcileRequest]:
        status = self.operators_status.get(operand)
        if status is None:
            return []
        return list(status.reconcile_requests)

    def body(self) -> Dict[str, Any]:
        return {"spec": {"operators": [o.to_dict() for o in self.operators]}}

    def status_dict(self) -> Dict[str, Any]:
        return {
            "operatorsStatus": {
                name: status.to_dict()
                for name, status in self.operators_status.items()
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Registry":
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            operators=[RegistryOperator.from_dict(o) for o in spec.get("operators") or []],
            operators_status={
                name: OperatorStatus.from_dict(s)
                for name, s in (status.get("operatorsStatus") or {}).items()
            },
        )


# ==================== Request ====================


@dataclass
class RequestOperand:
    name: str = ""
    bindings: List[Binding] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "bindings": [b.to_dict() for b in self.bindings]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestOperand":
        return cls(
            name=data.get("name", ""),
            bindings=[Binding.from_dict(b) for b in data.get("bindings") or []],
        )


@dataclass
class RequestEntry:
    registry: str = ""
    registry_namespace: str = ""
    operands: List[RequestOperand] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registry": self.registry,
            "registryNamespace": self.registry_namespace,
            "operands": [o.to_dict() for o in self.operands],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestEntry":
        return cls(
            registry=data.get("registry", ""),
            registry_namespace=data.get("registryNamespace", "") or "",
            operands=[RequestOperand.from_dict(o) for o in data.get("operands") or []],
        )


@dataclass
class Request(Resource):
    """A consumer's declaration of the operands and bindings it depends on."""

    kind: ClassVar[str] = KIND_REQUEST

    requests: List[RequestEntry] = field(default_factory=list)

    def body(self) -> Dict[str, Any]:
        return {"spec": {"requests": [r.to_dict() for r in self.requests]}}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Request":
        spec = data.get("spec") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            requests=[RequestEntry.from_dict(r) for r in spec.get("requests") or []],
        )


RESOURCE_TYPES: Dict[str, Type[Resource]] = {
    KIND_BINDINFO: BindInfo,
    KIND_REGISTRY: Registry,
    KIND_REQUEST: Request,
    KIND_SECRET: Secret,
    KIND_CONFIGMAP: ConfigMap,
}

# URL/CLI plural -> kind
PLURALS: Dict[str, str] = {
    "bindinfos": KIND_BINDINFO,
    "registries": KIND_REGISTRY,
    "requests": KIND_REQUEST,
    "secrets": KIND_SECRET,
    "configmaps": KIND_CONFIGMAP,
}


def resource_from_dict(data: Dict[str, Any]) -> Resource:
    """
    Build a resource from its manifest form, dispatching on ``kind``.

    Raises:
        ValueError: If the kind is missing or unknown
    """
    kind = data.get("kind")
    resource_class = RESOURCE_TYPES.get(kind or "")
    if resource_class is None:
        available = ", ".join(RESOURCE_TYPES)
        raise ValueError(f"Unknown kind: {kind!r}. Known kinds: {available}")
    return resource_class.from_dict(data)


# ==================== Ownership ====================


def validate_owner_edges(metadata: ObjectMeta) -> None:
    """
    Check that an object has at most one controlling owner.

    Raises:
        OwnershipError: If more than one edge is controlling
    """
    controllers = [edge for edge in metadata.owners if edge.controlling]
    if len(controllers) > 1:
        owners = ", ".join(f"{e.owner_kind}/{e.owner_name}" for e in controllers)
        raise OwnershipError(
            f"Object {metadata.namespace}/{metadata.name} has more than one "
            f"controlling owner: {owners}"
        )


def _check_same_namespace(owner: Resource, obj: Resource) -> None:
    if owner.metadata.namespace != obj.metadata.namespace:
        raise OwnershipError(
            f"cross-namespace owner references are disallowed, owner's namespace "
            f"{owner.metadata.namespace}, obj's namespace {obj.metadata.namespace}"
        )


def _upsert_edge(metadata: ObjectMeta, edge: OwnerEdge) -> None:
    for i, existing in enumerate(metadata.owners):
        if existing.refers_to_same_owner(edge):
            metadata.owners[i] = edge
            return
    metadata.owners.append(edge)


def set_controller_reference(owner: Resource, obj: Resource) -> None:
    """
    Make ``owner`` the controlling owner of ``obj``.

    Raises:
        OwnershipError: If the two objects live in different namespaces or
            ``obj`` is already controlled by a different owner
    """
    _check_same_namespace(owner, obj)
    edge = OwnerEdge(
        owner_kind=owner.kind,
        owner_name=owner.metadata.name,
        owner_uid=owner.metadata.uid,
        controlling=True,
    )
    existing = obj.metadata.controller()
    if existing is not None and not existing.refers_to_same_owner(edge):
        raise OwnershipError(
            f"{obj.kind} {obj.metadata.name} is already controlled by "
            f"{existing.owner_kind} {existing.owner_name}"
        )
    _upsert_edge(obj.metadata, edge)


def set_owner_reference(owner: Resource, obj: Resource) -> None:
    """
    Record a non-controlling edge from ``obj`` to ``owner``.

    Any number of owners may hold such an edge on the same object.

    Raises:
        OwnershipError: If the two objects live in different namespaces
    """
    _check_same_namespace(owner, obj)
    _upsert_edge(
        obj.metadata,
        OwnerEdge(
            owner_kind=owner.kind,
            owner_name=owner.metadata.name,
            owner_uid=owner.metadata.uid,
            controlling=False,
        ),
    )
