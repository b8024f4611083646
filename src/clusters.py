"""
Cluster Variants - Polymorphic wrappers around EMQX cluster custom resources.

The reconcile engine only talks to the Cluster interface. Each variant
resolves its own spec layout (storage, license, default image and boot
plugins) into a normalized ClusterSpec.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

from models import (
    INSTANCE_LABEL,
    ClusterIdentity,
    ClusterSpec,
    ClusterStatus,
)
from validation import validate_cluster_spec

logger = logging.getLogger(__name__)

DEFAULT_REPLICAS = 3

DEFAULT_SERVICE_PORTS = [
    {"name": "mqtt", "port": 1883, "protocol": "TCP", "targetPort": 1883},
    {"name": "mqtts", "port": 8883, "protocol": "TCP", "targetPort": 8883},
    {"name": "ws", "port": 8083, "protocol": "TCP", "targetPort": 8083},
    {"name": "wss", "port": 8084, "protocol": "TCP", "targetPort": 8084},
    {"name": "dashboard", "port": 18083, "protocol": "TCP", "targetPort": 18083},
    {"name": "api", "port": 8081, "protocol": "TCP", "targetPort": 8081},
]

BASE_PLUGINS = [
    "emqx_management",
    "emqx_recon",
    "emqx_retainer",
    "emqx_dashboard",
    "emqx_rule_engine",
]


class Cluster(ABC):
    """
    Capability interface over one cluster custom resource.

    Wraps the raw object returned by the platform. Spec and status are read
    and written through this interface only.
    """

    kind: str = ""
    plural: str = ""

    def __init__(self, obj: Dict[str, Any]):
        self._obj = copy.deepcopy(obj)

    @property
    def metadata(self) -> Dict[str, Any]:
        return self._obj.setdefault("metadata", {})

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    @property
    def generation(self) -> int:
        return int(self.metadata.get("generation", 0) or 0)

    @property
    def labels(self) -> Dict[str, str]:
        labels = dict(self.metadata.get("labels") or {})
        labels.setdefault(INSTANCE_LABEL, self.name)
        return labels

    @property
    def deleting(self) -> bool:
        return self.metadata.get("deletionTimestamp") is not None

    @property
    def identity(self) -> ClusterIdentity:
        return ClusterIdentity(
            kind=self.kind, name=self.name, namespace=self.namespace, uid=self.uid
        )

    def raw_spec(self) -> Dict[str, Any]:
        return self._obj.get("spec") or {}

    def set_spec(self, spec: Dict[str, Any]) -> None:
        self._obj["spec"] = copy.deepcopy(spec)

    def get_status(self) -> ClusterStatus:
        return ClusterStatus.from_dict(self._obj.get("status"))

    def set_status(self, status: ClusterStatus) -> None:
        self._obj["status"] = status.to_dict()

    def get_template(self) -> Dict[str, Any]:
        return copy.deepcopy(self.raw_spec().get("template") or {})

    def to_object(self) -> Dict[str, Any]:
        return copy.deepcopy(self._obj)

    def get_spec(self) -> ClusterSpec:
        """
        Validate the raw spec and resolve defaults into a ClusterSpec.

        Raises:
            ValidationError: If the spec is malformed or self-contradictory
        """
        raw = self.raw_spec()
        validate_cluster_spec(raw)

        template = self.get_template()
        replicas = raw.get("replicas")
        service_template = raw.get("serviceTemplate") or {}

        container: Dict[str, Any] = {}
        for key in ("env", "resources", "args", "securityContext"):
            if template.get(key):
                container[key] = copy.deepcopy(template[key])

        pod: Dict[str, Any] = {}
        for key in ("nodeSelector", "tolerations", "affinity", "imagePullSecrets"):
            if template.get(key):
                pod[key] = copy.deepcopy(template[key])

        plugins = list(self.default_plugins())
        for plugin in raw.get("plugins") or []:
            if plugin not in plugins:
                plugins.append(plugin)

        return ClusterSpec(
            replicas=DEFAULT_REPLICAS if replicas is None else replicas,
            image=raw.get("image") or template.get("image") or self.default_image(),
            labels=self.labels,
            annotations=dict(template.get("annotations") or {}),
            storage_templates=self.storage_templates(),
            ephemeral=bool(raw.get("ephemeral", False)),
            container=container,
            pod=pod,
            extra_volumes=self.extra_volumes(),
            extra_volume_mounts=self.extra_volume_mounts(),
            service={
                "type": service_template.get("type", "ClusterIP"),
                "annotations": dict(service_template.get("annotations") or {}),
            },
            service_ports=self._service_ports(service_template),
            plugins=plugins,
        )

    def _service_ports(self, service_template: Dict[str, Any]) -> List[Dict[str, Any]]:
        ports = {p["name"]: dict(p) for p in DEFAULT_SERVICE_PORTS}
        for port in service_template.get("ports") or []:
            name = port.get("name") or f"port-{port.get('port')}"
            merged = dict(ports.get(name, {}))
            merged.update(port)
            merged["name"] = name
            merged.setdefault("targetPort", merged["port"])
            merged.setdefault("protocol", "TCP")
            ports[name] = merged
        return [ports[name] for name in sorted(ports)]

    def _apply_storage_class(self, template: Dict[str, Any]) -> Dict[str, Any]:
        storage_class = self.raw_spec().get("storageClassName")
        spec = template.setdefault("spec", {})
        if storage_class and not spec.get("storageClassName"):
            spec["storageClassName"] = storage_class
        return template

    @abstractmethod
    def default_image(self) -> str:
        pass

    @abstractmethod
    def default_plugins(self) -> List[str]:
        pass

    @abstractmethod
    def storage_templates(self) -> List[Dict[str, Any]]:
        """Claim templates, each with metadata.name and a claim spec."""
        pass

    def extra_volumes(self) -> List[Dict[str, Any]]:
        return []

    def extra_volume_mounts(self) -> List[Dict[str, Any]]:
        return []


class EmqxBroker(Cluster):
    """Open-source broker cluster; storage from volumeClaimTemplates."""

    kind = "EmqxBroker"
    plural = "emqxbrokers"

    def default_image(self) -> str:
        return "emqx/emqx:4.4.5"

    def default_plugins(self) -> List[str]:
        return list(BASE_PLUGINS)

    def storage_templates(self) -> List[Dict[str, Any]]:
        templates = []
        for template in self.raw_spec().get("volumeClaimTemplates") or []:
            template = copy.deepcopy(template)
            resolved = {
                "metadata": {"name": template["metadata"]["name"]},
                "spec": template.get("spec", {}),
            }
            if template.get("mountPath"):
                resolved["mountPath"] = template["mountPath"]
            templates.append(self._apply_storage_class(resolved))
        return templates


class EmqxEnterprise(Cluster):
    """Enterprise cluster; single persistent claim and a license secret."""

    kind = "EmqxEnterprise"
    plural = "emqxenterprises"

    def default_image(self) -> str:
        return "emqx/emqx-ee:4.4.5"

    def default_plugins(self) -> List[str]:
        return BASE_PLUGINS + ["emqx_modules"]

    def storage_templates(self) -> List[Dict[str, Any]]:
        persistent = self.raw_spec().get("persistent")
        if not persistent:
            return []
        return [
            self._apply_storage_class(
                {
                    "metadata": {"name": f"{self.name}-data"},
                    "spec": copy.deepcopy(persistent),
                }
            )
        ]

    def _license_secret(self) -> Optional[str]:
        return (self.raw_spec().get("license") or {}).get("secretName")

    def extra_volumes(self) -> List[Dict[str, Any]]:
        secret = self._license_secret()
        if not secret:
            return []
        return [{"name": "license", "secret": {"secretName": secret}}]

    def extra_volume_mounts(self) -> List[Dict[str, Any]]:
        if not self._license_secret():
            return []
        return [{"name": "license", "mountPath": "/mounted/license", "readOnly": True}]


CLUSTER_KINDS: Dict[str, Type[Cluster]] = {
    EmqxBroker.kind: EmqxBroker,
    EmqxEnterprise.kind: EmqxEnterprise,
}


def cluster_from_object(obj: Dict[str, Any]) -> Cluster:
    """
    Wrap a raw custom object in its Cluster variant.

    Raises:
        ValueError: If the object's kind is not a known cluster kind
    """
    kind = obj.get("kind", "")
    if kind not in CLUSTER_KINDS:
        available = ", ".join(CLUSTER_KINDS) or "none"
        raise ValueError(f"Unknown cluster kind: {kind}. Available kinds: {available}")
    return CLUSTER_KINDS[kind](obj)
