"""
Core data types for clusters, members and plugins.

Status types serialize to the camelCase layout stored in the custom
resources' status subresource.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

GROUP = "apps.emqx.io"
VERSION = "v1beta3"
API_VERSION = f"{GROUP}/{VERSION}"

INSTANCE_LABEL = "apps.emqx.io/instance"
MANAGED_BY_LABEL = "apps.emqx.io/managed-by"
MANAGED_BY_VALUE = "emqx-operator"
DESIRED_HASH_ANNOTATION = "apps.emqx.io/desired-hash"
PLUGIN_FINALIZER = "apps.emqx.io/finalizer"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def labels_match(selector: Dict[str, str], labels: Dict[str, str]) -> bool:
    """True when every selector pair is present in labels."""
    return all(labels.get(key) == value for key, value in selector.items())


class ConditionType(Enum):
    """Condition types reported on a cluster."""

    RUNNING = "Running"
    RECONCILED = "Reconciled"


class ConditionStatus(Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class PluginPhase(Enum):
    """Lifecycle phase of an EmqxPlugin."""

    PENDING = "Pending"
    LOADING = "Loading"
    LOADED = "Loaded"
    LOAD_FAILED = "LoadFailed"
    UNLOADING = "Unloading"


@dataclass
class Condition:
    """A named, timestamped status flag with a reason code."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", ConditionStatus.UNKNOWN.value),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


@dataclass
class NodeStatus:
    """Observed state of one broker member."""

    node: str
    pod_name: str
    node_status: str = "Unknown"
    otp_release: str = ""
    version: str = ""
    ready: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node": self.node,
            "podName": self.pod_name,
            "nodeStatus": self.node_status,
            "otpRelease": self.otp_release,
            "version": self.version,
            "ready": self.ready,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeStatus":
        return cls(
            node=data.get("node", ""),
            pod_name=data.get("podName", ""),
            node_status=data.get("nodeStatus", "Unknown"),
            otp_release=data.get("otpRelease", ""),
            version=data.get("version", ""),
            ready=bool(data.get("ready", False)),
        )


@dataclass
class ClusterStatus:
    """Observed state of a cluster, rewritten from scratch every pass."""

    replicas: int = 0
    ready_replicas: int = 0
    node_statuses: List[NodeStatus] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type.value:
                return condition
        return None

    def is_running(self) -> bool:
        condition = self.get_condition(ConditionType.RUNNING)
        return condition is not None and condition.status == ConditionStatus.TRUE.value

    def set_condition(
        self,
        condition_type: ConditionType,
        status: ConditionStatus,
        reason: str,
        message: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        """
        Overwrite the condition of the given type.

        The transition time only moves when the status value changes.
        """
        existing = self.get_condition(condition_type)
        if existing is not None and existing.status == status.value:
            existing.reason = reason
            existing.message = message
            return

        condition = Condition(
            type=condition_type.value,
            status=status.value,
            reason=reason,
            message=message,
            last_transition_time=format_time(now or utcnow()),
        )
        if existing is None:
            self.conditions.append(condition)
        else:
            self.conditions[self.conditions.index(existing)] = condition

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replicas": self.replicas,
            "readyReplicas": self.ready_replicas,
            "nodeStatuses": [n.to_dict() for n in self.node_statuses],
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClusterStatus":
        data = data or {}
        return cls(
            replicas=int(data.get("replicas", 0) or 0),
            ready_replicas=int(data.get("readyReplicas", 0) or 0),
            node_statuses=[NodeStatus.from_dict(n) for n in data.get("nodeStatuses") or []],
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


@dataclass
class ClusterSpec:
    """Normalized desired state of a cluster, variant differences resolved."""

    replicas: int
    image: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    storage_templates: List[Dict[str, Any]] = field(default_factory=list)
    ephemeral: bool = False
    container: Dict[str, Any] = field(default_factory=dict)
    pod: Dict[str, Any] = field(default_factory=dict)
    extra_volumes: List[Dict[str, Any]] = field(default_factory=list)
    extra_volume_mounts: List[Dict[str, Any]] = field(default_factory=list)
    service: Dict[str, Any] = field(default_factory=dict)
    service_ports: List[Dict[str, Any]] = field(default_factory=list)
    plugins: List[str] = field(default_factory=list)


@dataclass
class ClusterIdentity:
    """Immutable identity of a cluster object."""

    kind: str
    name: str
    namespace: str
    uid: Optional[str] = None

    @property
    def key(self) -> "ClusterKey":
        return ClusterKey(self.kind, self.namespace, self.name)


@dataclass(frozen=True)
class ClusterKey:
    """Work-queue key for one cluster."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass
class Member:
    """One broker instance as observed on the platform."""

    pod_name: str
    node: str
    host: Optional[str]
    uid: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    platform_ready: bool = False
    crashing: bool = False
    healthy: bool = False
    node_info: Dict[str, Any] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.platform_ready and self.healthy


@dataclass
class PluginResource:
    """An EmqxPlugin object with its status decoded."""

    name: str
    namespace: str
    plugin_name: str
    selector: Dict[str, str] = field(default_factory=dict)
    config: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    resource_version: Optional[str] = None
    phase: PluginPhase = PluginPhase.PENDING
    message: str = ""
    loaded_members: List[str] = field(default_factory=list)
    loaded_pods: Dict[str, str] = field(default_factory=dict)
    failed_members: Dict[str, str] = field(default_factory=dict)
    rejected_members: Dict[str, str] = field(default_factory=dict)
    config_hash: str = ""
    load_attempts: int = 0
    unload_attempts: int = 0
    last_attempt_time: Optional[str] = None

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return PLUGIN_FINALIZER in self.finalizers

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "PluginResource":
        metadata = obj.get("metadata", {})
        spec = obj.get("spec", {}) or {}
        status = obj.get("status", {}) or {}
        phase = status.get("phase") or PluginPhase.PENDING.value
        if phase not in {p.value for p in PluginPhase}:
            phase = PluginPhase.PENDING.value
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            plugin_name=spec.get("pluginName", ""),
            selector=dict(spec.get("selector") or {}),
            config={k: str(v) for k, v in (spec.get("config") or {}).items()},
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
            phase=PluginPhase(phase),
            message=status.get("message", ""),
            loaded_members=list(status.get("loadedMembers") or []),
            loaded_pods=dict(status.get("loadedPods") or {}),
            failed_members=dict(status.get("failedMembers") or {}),
            rejected_members=dict(status.get("rejectedMembers") or {}),
            config_hash=status.get("configHash", ""),
            load_attempts=int(status.get("loadAttempts", 0) or 0),
            unload_attempts=int(status.get("unloadAttempts", 0) or 0),
            last_attempt_time=status.get("lastAttemptTime"),
        )

    def status_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "loadedMembers": sorted(self.loaded_members),
            "loadedPods": dict(sorted(self.loaded_pods.items())),
            "failedMembers": dict(sorted(self.failed_members.items())),
            "rejectedMembers": dict(sorted(self.rejected_members.items())),
            "configHash": self.config_hash,
            "loadAttempts": self.load_attempts,
            "unloadAttempts": self.unload_attempts,
            "lastAttemptTime": self.last_attempt_time,
        }
