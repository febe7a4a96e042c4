"""
Record types shared by the reconciler, the record store and the CLI.

Records mirror the Cluster API objects they model: a Cluster owns a
control plane, and the control plane owns its Machines through owner
references stored on the children.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

CLUSTER_API_VERSION = "cluster.x-k8s.io/v1beta1"
CONTROL_PLANE_API_VERSION = "controlplane.cluster.x-k8s.io/v1beta1"
CONTROL_PLANE_KIND = "MachineControlPlane"
CONTROL_PLANE_FINALIZER = "controlplane.cluster.x-k8s.io/machinecontrolplane"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
MACHINE_CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"
PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"


@dataclass
class ObjectReference:
    """Reference to another record or external object."""

    api_version: str
    kind: str
    name: str
    namespace: str = ""
    uid: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ObjectReference"]:
        if not data:
            return None
        return cls(
            api_version=data.get("api_version", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            uid=data.get("uid", ""),
        )


@dataclass
class OwnerReference:
    """Back-reference from a child to the record responsible for it."""

    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool = False
    block_owner_deletion: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("api_version", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("block_owner_deletion", False)),
        )

    def refers_to(self, other: "OwnerReference") -> bool:
        """Owner references match on group, kind and name, like the API server."""
        return (
            self.api_version.split("/")[0] == other.api_version.split("/")[0]
            and self.kind == other.kind
            and self.name == other.name
        )


@dataclass
class Condition:
    """A typed, reasoned status flag attached to a record."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    severity: str = ""
    last_transition_time: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        transition = data.get("last_transition_time")
        if isinstance(transition, str):
            transition = datetime.fromisoformat(transition)
        return cls(
            type=data["type"],
            status=data["status"],
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            severity=data.get("severity", ""),
            last_transition_time=transition,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.last_transition_time is not None:
            data["last_transition_time"] = self.last_transition_time.isoformat()
        return data


@dataclass
class ClusterContext:
    """Read-only view of the owning cluster."""

    namespace: str
    name: str
    uid: str = ""
    infrastructure_ready: bool = False
    failure_domains: List[str] = field(default_factory=list)
    control_plane_endpoint_host: str = ""
    control_plane_endpoint_port: int = 0
    paused: bool = False

    @property
    def control_plane_endpoint_valid(self) -> bool:
        return bool(self.control_plane_endpoint_host) and (
            self.control_plane_endpoint_port != 0
        )


@dataclass
class ControlPlaneRecord:
    """Desired replica count, template references and status of a pool."""

    namespace: str
    name: str
    uid: str = ""
    replicas: int = 0
    machine_template: Optional[ObjectReference] = None
    bootstrap_config_spec: Dict[str, Any] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)
    finalizers: List[str] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)
    status_replicas: int = 0
    ready_replicas: int = 0
    unavailable_replicas: int = 0
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    resource_version: int = 0
    id: Optional[int] = None

    @property
    def key(self) -> "ReconcileKey":
        return ReconcileKey(self.namespace, self.name)

    @property
    def owner_key(self) -> Optional[str]:
        """Name of the owning Cluster, or None when no cluster owns this record."""
        for ref in self.owner_references:
            if ref.kind == "Cluster" and ref.api_version.startswith("cluster.x-k8s.io/"):
                return ref.name
        return None

    @property
    def finalizer_present(self) -> bool:
        return CONTROL_PLANE_FINALIZER in self.finalizers

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def paused(self) -> bool:
        return PAUSED_ANNOTATION in self.annotations

    def owner_reference(
        self, controller: bool = False, block_owner_deletion: bool = False
    ) -> OwnerReference:
        """Build an owner reference pointing at this control plane."""
        return OwnerReference(
            api_version=CONTROL_PLANE_API_VERSION,
            kind=CONTROL_PLANE_KIND,
            name=self.name,
            uid=self.uid,
            controller=controller,
            block_owner_deletion=block_owner_deletion,
        )


@dataclass
class MachineRecord:
    """A single pool member."""

    namespace: str
    name: str
    cluster_name: str
    uid: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)
    infrastructure_ref: Optional[ObjectReference] = None
    bootstrap_ref: Optional[ObjectReference] = None
    failure_domain: Optional[str] = None
    ready: bool = False
    conditions: List[Condition] = field(default_factory=list)
    finalizers: List[str] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    resource_version: int = 0
    id: Optional[int] = None

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None


@dataclass(frozen=True)
class ReconcileKey:
    """Identity of a control plane record handed to reconcile()."""

    namespace: str
    name: str

    @classmethod
    def parse(cls, value: str) -> "ReconcileKey":
        if "/" in value:
            namespace, name = value.split("/", 1)
        else:
            namespace, name = "default", value
        if not namespace or not name:
            raise ValueError(f"Invalid key: {value!r}")
        return cls(namespace, name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class RequeueDirective(Enum):
    """What the scheduler should do after a reconcile call."""

    NONE = "none"
    REQUEUE_IMMEDIATE = "requeue_immediate"
    REQUEUE_AFTER = "requeue_after"


@dataclass
class ReconcileResult:
    """Result of a single reconcile call."""

    requeue: bool = False
    requeue_after: Optional[float] = None

    @property
    def directive(self) -> RequeueDirective:
        if self.requeue_after:
            return RequeueDirective.REQUEUE_AFTER
        if self.requeue:
            return RequeueDirective.REQUEUE_IMMEDIATE
        return RequeueDirective.NONE
