"""Pytest configuration and fixtures."""

import copy
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from builder import selector_labels
from context import ReconcileContext
from errors import AdminAPIError, ConflictError, ConnectivityError, ResourceError
from events import EventRecorder
from kube import Platform
from models import API_VERSION, Member, labels_match


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply a JSON merge patch (RFC 7386)."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


class FakePlatform(Platform):
    """In-memory platform with resource versions and a mutation log."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.mutations: List[Tuple[str, str, str, str]] = []
        self.events: List[Dict[str, Any]] = []
        self.watch_events: Dict[str, List[Tuple[str, Dict[str, Any]]]] = {}
        self._failures: Dict[Tuple[str, str], List[Exception]] = {}
        self._versions = itertools.count(1)

    # ----- test helpers -----

    def add(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["resourceVersion"] = str(next(self._versions))
        self.objects[self._key(obj)] = obj
        return copy.deepcopy(obj)

    def fail_next(self, op: str, kind: str, error: Exception) -> None:
        """Make the next ``op`` ('get', 'create', 'patch', ...) on ``kind`` raise."""
        self._failures.setdefault((op, kind), []).append(error)

    def stored(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj else None

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """User-initiated delete: finalizers turn it into a deletionTimestamp."""
        key = (kind, namespace, name)
        obj = self.objects[key]
        if obj["metadata"].get("finalizers"):
            obj["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
            obj["metadata"]["resourceVersion"] = str(next(self._versions))
        else:
            del self.objects[key]

    def mutations_of(self, op: Optional[str] = None, kind: Optional[str] = None):
        return [
            m
            for m in self.mutations
            if (op is None or m[0] == op) and (kind is None or m[1] == kind)
        ]

    def clear_mutations(self) -> None:
        self.mutations.clear()

    def _key(self, obj: Dict[str, Any]) -> Tuple[str, str, str]:
        metadata = obj["metadata"]
        return obj["kind"], metadata.get("namespace", "default"), metadata["name"]

    def _maybe_fail(self, op: str, kind: str) -> None:
        pending = self._failures.get((op, kind))
        if pending:
            raise pending.pop(0)

    def _check_version(self, current: Dict[str, Any], patch: Dict[str, Any]) -> None:
        wanted = (patch.get("metadata") or {}).pop("resourceVersion", None)
        if wanted is not None and wanted != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{current['kind']} {current['metadata']['name']} is stale")

    def _store(self, key, obj) -> Dict[str, Any]:
        metadata = obj["metadata"]
        metadata["resourceVersion"] = str(next(self._versions))
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = obj
        return copy.deepcopy(obj)

    # ----- Platform -----

    async def get(self, kind, namespace, name):
        self._maybe_fail("get", kind)
        return self.stored(kind, namespace, name)

    async def list(self, kind, namespace=None, labels=None):
        self._maybe_fail("list", kind)
        result = []
        for (k, ns, _), obj in sorted(self.objects.items()):
            if k != kind or (namespace and ns != namespace):
                continue
            if labels and not labels_match(labels, obj["metadata"].get("labels") or {}):
                continue
            result.append(copy.deepcopy(obj))
        return result

    async def create(self, obj):
        self._maybe_fail("create", obj["kind"])
        key = self._key(obj)
        if key in self.objects:
            raise ConflictError(f"{obj['kind']} {key[2]} already exists")
        obj = copy.deepcopy(obj)
        obj["metadata"].setdefault("uid", str(uuid.uuid4()))
        self.mutations.append(("create", key[0], key[1], key[2]))
        return self._store(key, obj)

    async def patch(self, kind, namespace, name, patch):
        self._maybe_fail("patch", kind)
        key = (kind, namespace, name)
        if key not in self.objects:
            raise ResourceError(f"{kind} {name} not found", status=404)
        patch = copy.deepcopy(patch)
        self._check_version(self.objects[key], patch)
        self.mutations.append(("patch", kind, namespace, name))
        return self._store(key, merge_patch(self.objects[key], patch))

    async def patch_status(self, kind, namespace, name, status, resource_version=None):
        self._maybe_fail("patch_status", kind)
        key = (kind, namespace, name)
        if key not in self.objects:
            raise ResourceError(f"{kind} {name} not found", status=404)
        current = self.objects[key]
        if resource_version is not None and resource_version != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind} {name} is stale")
        self.mutations.append(("patch_status", kind, namespace, name))
        return self._store(key, merge_patch(current, {"status": status}))

    async def create_event(self, event):
        self._maybe_fail("create_event", "Event")
        self.events.append(copy.deepcopy(event))

    async def watch(self, kind, namespace=None, labels=None):
        for event_type, obj in self.watch_events.pop(kind, []):
            yield event_type, copy.deepcopy(obj)


class FakeAdmin:
    """Stands in for BrokerAdminClient; failures are configured per pod."""

    def __init__(self):
        self.unreachable = set()
        self.unhealthy = set()
        self.rejecting = set()
        self.loaded: List[Tuple[str, str, Dict[str, str]]] = []
        self.unloaded: List[Tuple[str, str]] = []
        self.probes: List[str] = []

    async def get_node(self, member: Member) -> Dict[str, Any]:
        if member.pod_name in self.unreachable:
            raise ConnectivityError(f"{member.node} unreachable", member=member.node)
        return {
            "node": member.node,
            "node_status": "Stopped" if member.pod_name in self.unhealthy else "Running",
            "otp_release": "24.1.5/12.1.5",
            "version": "4.4.5",
        }

    async def is_healthy(self, member: Member) -> bool:
        self.probes.append(member.pod_name)
        try:
            info = await self.get_node(member)
        except ConnectivityError:
            return False
        member.node_info = info
        return info["node_status"] == "Running"

    async def load_plugin(self, member: Member, plugin_name: str, plugin_config) -> None:
        if member.pod_name in self.unreachable:
            raise ConnectivityError(f"{member.node} unreachable", member=member.node)
        if member.pod_name in self.rejecting:
            raise AdminAPIError(f"{member.node} rejected {plugin_name}", member=member.node, status=400)
        self.loaded.append((member.node, plugin_name, dict(plugin_config)))

    async def unload_plugin(self, member: Member, plugin_name: str) -> None:
        if member.pod_name in self.unreachable:
            raise ConnectivityError(f"{member.node} unreachable", member=member.node)
        self.unloaded.append((member.node, plugin_name))


class FakeClock:
    """Controllable wall clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_broker(
    name: str = "emqx",
    namespace: str = "default",
    spec: Optional[Dict[str, Any]] = None,
    kind: str = "EmqxBroker",
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    metadata = {"name": name, "namespace": namespace, "uid": f"uid-{name}", "generation": 1}
    if labels:
        metadata["labels"] = dict(labels)
    return {
        "apiVersion": API_VERSION,
        "kind": kind,
        "metadata": metadata,
        "spec": {"replicas": 3} if spec is None else spec,
    }


def make_pod(
    cluster: str,
    ordinal: int,
    namespace: str = "default",
    ready: bool = True,
    waiting_reason: Optional[str] = None,
    extra_labels: Optional[Dict[str, str]] = None,
    ip: Optional[str] = None,
) -> Dict[str, Any]:
    labels = selector_labels(cluster)
    labels.update(extra_labels or {})
    state = {"waiting": {"reason": waiting_reason}} if waiting_reason else {"running": {}}
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": f"{cluster}-{ordinal}", "namespace": namespace, "labels": labels},
        "status": {
            "phase": "Running",
            "podIP": ip or f"10.0.0.{ordinal + 10}",
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            "containerStatuses": [{"name": "emqx", "state": state}],
        },
    }


def make_plugin(
    name: str = "auth",
    namespace: str = "default",
    plugin_name: str = "emqx_auth_http",
    selector: Optional[Dict[str, str]] = None,
    config: Optional[Dict[str, str]] = None,
    finalizers: Optional[List[str]] = None,
) -> Dict[str, Any]:
    obj = {
        "apiVersion": API_VERSION,
        "kind": "EmqxPlugin",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "pluginName": plugin_name,
            "selector": {"apps.emqx.io/instance": "emqx"} if selector is None else selector,
            "config": config if config is not None else {"auth.http.auth_req.url": "http://auth:80"},
        },
    }
    if finalizers:
        obj["metadata"]["finalizers"] = list(finalizers)
    return obj


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def admin():
    return FakeAdmin()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ctx(platform, admin):
    return ReconcileContext(platform, admin, recorder=EventRecorder(platform))


@pytest.fixture
def seed_pods(platform):
    """Create N ready pods for a cluster."""

    def _seed(cluster: str = "emqx", count: int = 3, namespace: str = "default", **kwargs):
        return [platform.add(make_pod(cluster, i, namespace=namespace, **kwargs)) for i in range(count)]

    return _seed
