"""
Desired-State Builder - Maps a cluster spec to its child resources.

Pure and deterministic: the same identity and spec always produce the same
list of manifests, in dependency order (storage, workload, network,
configuration). The synchronizer hashes exactly this output.
"""

import copy
import hashlib
import json
from typing import Any, Dict, List

from models import (
    API_VERSION,
    INSTANCE_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ClusterIdentity,
    ClusterSpec,
)

DATA_MOUNT_PATH = "/opt/emqx/data"
PLUGINS_MOUNT_PATH = "/mounted/plugins"
API_PORT = 8081
EKKA_PORT = 4370

LOADED_PLUGINS_HASH_ANNOTATION = "apps.emqx.io/loaded-plugins-hash"


def headless_service_name(cluster_name: str) -> str:
    return f"{cluster_name}-headless"


def loaded_plugins_name(cluster_name: str) -> str:
    return f"{cluster_name}-loaded-plugins"


def node_name(pod_name: str, cluster_name: str, namespace: str) -> str:
    """EMQX node name of a pod under DNS cluster discovery."""
    return (
        f"emqx@{pod_name}.{headless_service_name(cluster_name)}."
        f"{namespace}.svc.cluster.local"
    )


def selector_labels(cluster_name: str) -> Dict[str, str]:
    return {INSTANCE_LABEL: cluster_name, MANAGED_BY_LABEL: MANAGED_BY_VALUE}


def render_loaded_plugins(plugins: List[str]) -> str:
    """Render the EMQX loaded_plugins boot file."""
    return "".join(f"{{{plugin}, true}}.\n" for plugin in plugins)


def build_desired_state(
    identity: ClusterIdentity, spec: ClusterSpec
) -> List[Dict[str, Any]]:
    """
    Build every child resource for a cluster.

    Args:
        identity: Kind, name, namespace and uid of the cluster
        spec: The normalized cluster spec

    Returns:
        Manifests ordered storage claims, StatefulSet, headless Service,
        client Service, loaded-plugins ConfigMap.
    """
    labels = dict(spec.labels)
    labels.update(selector_labels(identity.name))
    labels = dict(sorted(labels.items()))

    resources: List[Dict[str, Any]] = []
    resources.extend(_storage_claims(identity, spec, labels))
    resources.append(_stateful_set(identity, spec, labels))
    resources.append(_headless_service(identity, labels))
    resources.append(_client_service(identity, spec, labels))
    resources.append(_loaded_plugins_config_map(identity, spec, labels))
    return resources


def _metadata(
    identity: ClusterIdentity,
    name: str,
    labels: Dict[str, str],
    owned: bool = True,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": identity.namespace,
        "labels": dict(labels),
    }
    if owned and identity.uid:
        metadata["ownerReferences"] = [
            {
                "apiVersion": API_VERSION,
                "kind": identity.kind,
                "name": identity.name,
                "uid": identity.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
    return metadata


def _mount_path(template: Dict[str, Any], index: int) -> str:
    if template.get("mountPath"):
        return template["mountPath"]
    if index == 0:
        return DATA_MOUNT_PATH
    return f"/opt/emqx/{template['metadata']['name']}"


def _storage_claims(
    identity: ClusterIdentity, spec: ClusterSpec, labels: Dict[str, str]
) -> List[Dict[str, Any]]:
    # Claims outlive the cluster, so they carry no owner reference.
    claims = []
    for template in spec.storage_templates:
        template_name = template["metadata"]["name"]
        for ordinal in range(spec.replicas):
            claims.append(
                {
                    "apiVersion": "v1",
                    "kind": "PersistentVolumeClaim",
                    "metadata": _metadata(
                        identity,
                        f"{template_name}-{identity.name}-{ordinal}",
                        labels,
                        owned=False,
                    ),
                    "spec": copy.deepcopy(template.get("spec", {})),
                }
            )
    return claims


def _container_env(identity: ClusterIdentity, spec: ClusterSpec) -> List[Dict[str, Any]]:
    headless = headless_service_name(identity.name)
    dns_name = f"{headless}.{identity.namespace}.svc.cluster.local"
    env = [
        {
            "name": "POD_NAME",
            "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}},
        },
        {"name": "EMQX_NAME", "value": "emqx"},
        {"name": "EMQX_HOST", "value": f"$(POD_NAME).{dns_name}"},
        {"name": "EMQX_CLUSTER__DISCOVERY", "value": "dns"},
        {"name": "EMQX_CLUSTER__DNS__TYPE", "value": "srv"},
        {"name": "EMQX_CLUSTER__DNS__APP", "value": "emqx"},
        {"name": "EMQX_CLUSTER__DNS__NAME", "value": dns_name},
        {
            "name": "EMQX_PLUGINS__LOADED_FILE",
            "value": f"{PLUGINS_MOUNT_PATH}/loaded_plugins",
        },
    ]
    overrides = {e["name"]: e for e in spec.container.get("env", [])}
    merged = [overrides.pop(e["name"], e) for e in env]
    merged.extend(overrides.values())
    return copy.deepcopy(merged)


def _container_port(port: Dict[str, Any]) -> int:
    # A named targetPort refers to the container port, not a number.
    target = port.get("targetPort", port["port"])
    return target if isinstance(target, int) else port["port"]


def _stateful_set(
    identity: ClusterIdentity, spec: ClusterSpec, labels: Dict[str, str]
) -> Dict[str, Any]:
    volume_mounts = []
    volumes = []
    claim_templates = []

    if spec.storage_templates:
        for index, template in enumerate(spec.storage_templates):
            template_name = template["metadata"]["name"]
            volume_mounts.append(
                {"name": template_name, "mountPath": _mount_path(template, index)}
            )
            claim_templates.append(
                {
                    "metadata": {"name": template_name, "labels": dict(labels)},
                    "spec": copy.deepcopy(template.get("spec", {})),
                }
            )
    else:
        volumes.append({"name": "emqx-data", "emptyDir": {}})
        volume_mounts.append({"name": "emqx-data", "mountPath": DATA_MOUNT_PATH})

    volumes.append(
        {
            "name": "loaded-plugins",
            "configMap": {"name": loaded_plugins_name(identity.name)},
        }
    )
    volume_mounts.append({"name": "loaded-plugins", "mountPath": PLUGINS_MOUNT_PATH})
    volumes.extend(copy.deepcopy(spec.extra_volumes))
    volume_mounts.extend(copy.deepcopy(spec.extra_volume_mounts))

    probe = {
        "httpGet": {"path": "/status", "port": API_PORT},
        "periodSeconds": 5,
        "failureThreshold": 12,
    }
    container: Dict[str, Any] = {
        "name": "emqx",
        "image": spec.image,
        "ports": [
            {"name": p["name"], "containerPort": _container_port(p), "protocol": p["protocol"]}
            for p in spec.service_ports
        ]
        + [{"name": "ekka", "containerPort": EKKA_PORT, "protocol": "TCP"}],
        "env": _container_env(identity, spec),
        "readinessProbe": dict(probe, initialDelaySeconds=10),
        "livenessProbe": dict(probe, initialDelaySeconds=60, periodSeconds=30),
        "volumeMounts": volume_mounts,
    }
    for key in ("resources", "args", "securityContext"):
        if key in spec.container:
            container[key] = copy.deepcopy(spec.container[key])

    plugins_hash = hashlib.sha256(
        render_loaded_plugins(spec.plugins).encode()
    ).hexdigest()[:16]
    annotations = dict(spec.annotations)
    annotations[LOADED_PLUGINS_HASH_ANNOTATION] = plugins_hash

    pod_spec: Dict[str, Any] = {"containers": [container], "volumes": volumes}
    pod_spec.update(copy.deepcopy(spec.pod))

    stateful_set_spec: Dict[str, Any] = {
        "replicas": spec.replicas,
        "serviceName": headless_service_name(identity.name),
        "podManagementPolicy": "Parallel",
        "selector": {"matchLabels": selector_labels(identity.name)},
        "template": {
            "metadata": {
                "labels": dict(labels),
                "annotations": dict(sorted(annotations.items())),
            },
            "spec": pod_spec,
        },
    }
    if claim_templates:
        stateful_set_spec["volumeClaimTemplates"] = claim_templates

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(identity, identity.name, labels),
        "spec": stateful_set_spec,
    }


def _headless_service(
    identity: ClusterIdentity, labels: Dict[str, str]
) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(identity, headless_service_name(identity.name), labels),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": selector_labels(identity.name),
            "ports": [
                {"name": "ekka", "port": EKKA_PORT, "protocol": "TCP", "targetPort": EKKA_PORT},
                {"name": "api", "port": API_PORT, "protocol": "TCP", "targetPort": API_PORT},
            ],
        },
    }


def _client_service(
    identity: ClusterIdentity, spec: ClusterSpec, labels: Dict[str, str]
) -> Dict[str, Any]:
    metadata = _metadata(identity, identity.name, labels)
    if spec.service.get("annotations"):
        metadata["annotations"] = dict(sorted(spec.service["annotations"].items()))
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {
            "type": spec.service.get("type", "ClusterIP"),
            "selector": selector_labels(identity.name),
            "ports": copy.deepcopy(spec.service_ports),
        },
    }


def _loaded_plugins_config_map(
    identity: ClusterIdentity, spec: ClusterSpec, labels: Dict[str, str]
) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(identity, loaded_plugins_name(identity.name), labels),
        "data": {"loaded_plugins": render_loaded_plugins(spec.plugins)},
    }


def desired_hash(resource: Dict[str, Any]) -> str:
    """Hash of a manifest's canonical JSON, used for change detection."""
    payload = json.dumps(resource, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()
