"""Unit tests for the desired-state builder."""

import pytest

from builder import (
    LOADED_PLUGINS_HASH_ANNOTATION,
    build_desired_state,
    desired_hash,
    headless_service_name,
    loaded_plugins_name,
    node_name,
    render_loaded_plugins,
)
from clusters import cluster_from_object
from conftest import make_broker
from errors import ValidationError
from models import INSTANCE_LABEL, MANAGED_BY_LABEL


def build(spec, kind="EmqxBroker", name="emqx", labels=None):
    cluster = cluster_from_object(make_broker(name=name, spec=spec, kind=kind, labels=labels))
    return build_desired_state(cluster.identity, cluster.get_spec())


def by_kind(resources, kind):
    return [r for r in resources if r["kind"] == kind]


# ==================== Naming ====================


class TestNaming:
    def test_headless_service_name(self):
        assert headless_service_name("emqx") == "emqx-headless"

    def test_loaded_plugins_name(self):
        assert loaded_plugins_name("emqx") == "emqx-loaded-plugins"

    def test_node_name(self):
        assert (
            node_name("emqx-0", "emqx", "mqtt")
            == "emqx@emqx-0.emqx-headless.mqtt.svc.cluster.local"
        )

    def test_render_loaded_plugins(self):
        assert render_loaded_plugins(["emqx_management", "emqx_retainer"]) == (
            "{emqx_management, true}.\n{emqx_retainer, true}.\n"
        )


# ==================== Output shape ====================


class TestBuildDesiredState:
    """Tests for build_desired_state()."""

    STORAGE = {
        "replicas": 2,
        "volumeClaimTemplates": [
            {
                "metadata": {"name": "emqx-data"},
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": "1Gi"}},
                },
            }
        ],
    }

    def test_dependency_order(self):
        resources = build(self.STORAGE)
        kinds = [r["kind"] for r in resources]
        assert kinds == [
            "PersistentVolumeClaim",
            "PersistentVolumeClaim",
            "StatefulSet",
            "Service",
            "Service",
            "ConfigMap",
        ]

    def test_deterministic(self):
        assert build(self.STORAGE) == build(self.STORAGE)

    def test_hash_stable_across_builds(self):
        first = [desired_hash(r) for r in build(self.STORAGE)]
        second = [desired_hash(r) for r in build(self.STORAGE)]
        assert first == second

    def test_claim_names_per_ordinal(self):
        claims = by_kind(build(self.STORAGE), "PersistentVolumeClaim")
        assert [c["metadata"]["name"] for c in claims] == [
            "emqx-data-emqx-0",
            "emqx-data-emqx-1",
        ]

    def test_claims_have_no_owner(self):
        for claim in by_kind(build(self.STORAGE), "PersistentVolumeClaim"):
            assert "ownerReferences" not in claim["metadata"]

    def test_workload_owned_by_cluster(self):
        sts = by_kind(build(self.STORAGE), "StatefulSet")[0]
        owner = sts["metadata"]["ownerReferences"][0]
        assert owner["kind"] == "EmqxBroker"
        assert owner["name"] == "emqx"
        assert owner["uid"] == "uid-emqx"
        assert owner["controller"] is True

    def test_labels_on_every_child(self):
        for resource in build(self.STORAGE, labels={"team": "iot"}):
            labels = resource["metadata"]["labels"]
            assert labels[INSTANCE_LABEL] == "emqx"
            assert labels[MANAGED_BY_LABEL] == "emqx-operator"
            assert labels["team"] == "iot"

    def test_stateful_set_uses_claim_templates(self):
        sts = by_kind(build(self.STORAGE), "StatefulSet")[0]
        assert sts["spec"]["volumeClaimTemplates"][0]["metadata"]["name"] == "emqx-data"
        mounts = sts["spec"]["template"]["spec"]["containers"][0]["volumeMounts"]
        assert {"name": "emqx-data", "mountPath": "/opt/emqx/data"} in mounts

    def test_zero_replicas_is_valid(self):
        resources = build({"replicas": 0})
        sts = by_kind(resources, "StatefulSet")[0]
        assert sts["spec"]["replicas"] == 0
        assert by_kind(resources, "PersistentVolumeClaim") == []

    def test_zero_replicas_with_storage_emits_no_claims(self):
        spec = dict(self.STORAGE, replicas=0)
        assert by_kind(build(spec), "PersistentVolumeClaim") == []

    def test_no_storage_template_is_ephemeral(self):
        resources = build({"replicas": 3})
        assert by_kind(resources, "PersistentVolumeClaim") == []
        sts = by_kind(resources, "StatefulSet")[0]
        assert "volumeClaimTemplates" not in sts["spec"]
        volumes = sts["spec"]["template"]["spec"]["volumes"]
        assert {"name": "emqx-data", "emptyDir": {}} in volumes

    def test_default_replicas(self):
        sts = by_kind(build({}), "StatefulSet")[0]
        assert sts["spec"]["replicas"] == 3

    def test_headless_service(self):
        services = by_kind(build({"replicas": 1}), "Service")
        headless = services[0]
        assert headless["metadata"]["name"] == "emqx-headless"
        assert headless["spec"]["clusterIP"] == "None"
        assert headless["spec"]["publishNotReadyAddresses"] is True

    def test_client_service_ports(self):
        client = by_kind(build({"replicas": 1}), "Service")[1]
        ports = {p["name"]: p["port"] for p in client["spec"]["ports"]}
        assert ports == {
            "api": 8081,
            "dashboard": 18083,
            "mqtt": 1883,
            "mqtts": 8883,
            "ws": 8083,
            "wss": 8084,
        }

    def test_service_template_overrides_port(self):
        spec = {
            "replicas": 1,
            "serviceTemplate": {
                "type": "LoadBalancer",
                "ports": [{"name": "mqtt", "port": 11883}],
            },
        }
        client = by_kind(build(spec), "Service")[1]
        assert client["spec"]["type"] == "LoadBalancer"
        mqtt = [p for p in client["spec"]["ports"] if p["name"] == "mqtt"][0]
        assert mqtt["port"] == 11883
        assert mqtt["targetPort"] == 1883

    def test_custom_port_defaults_target_and_protocol(self):
        spec = {"replicas": 1, "serviceTemplate": {"ports": [{"name": "custom", "port": 9999}]}}
        resources = build(spec)

        client = by_kind(resources, "Service")[1]
        custom = [p for p in client["spec"]["ports"] if p["name"] == "custom"][0]
        assert custom == {"name": "custom", "port": 9999, "targetPort": 9999, "protocol": "TCP"}
        container = by_kind(resources, "StatefulSet")[0]["spec"]["template"]["spec"]["containers"][0]
        assert {"name": "custom", "containerPort": 9999, "protocol": "TCP"} in container["ports"]

    def test_named_target_port_keeps_numeric_container_port(self):
        spec = {"serviceTemplate": {"ports": [{"name": "web", "port": 80, "targetPort": "http"}]}}
        container = by_kind(build(spec), "StatefulSet")[0]["spec"]["template"]["spec"]["containers"][0]
        assert {"name": "web", "containerPort": 80, "protocol": "TCP"} in container["ports"]

    def test_loaded_plugins_config_map(self):
        config_map = by_kind(build({"plugins": ["emqx_auth_http"]}), "ConfigMap")[0]
        data = config_map["data"]["loaded_plugins"]
        assert "{emqx_management, true}.\n" in data
        assert data.endswith("{emqx_auth_http, true}.\n")

    def test_plugin_change_rolls_pods(self):
        before = by_kind(build({}), "StatefulSet")[0]
        after = by_kind(build({"plugins": ["emqx_auth_http"]}), "StatefulSet")[0]
        key = LOADED_PLUGINS_HASH_ANNOTATION
        assert (
            before["spec"]["template"]["metadata"]["annotations"][key]
            != after["spec"]["template"]["metadata"]["annotations"][key]
        )

    def test_env_discovery_and_override(self):
        spec = {"template": {"env": [{"name": "EMQX_NAME", "value": "broker"}, {"name": "X", "value": "1"}]}}
        sts = by_kind(build(spec), "StatefulSet")[0]
        env = {e["name"]: e.get("value") for e in sts["spec"]["template"]["spec"]["containers"][0]["env"]}
        assert env["EMQX_NAME"] == "broker"
        assert env["X"] == "1"
        assert env["EMQX_CLUSTER__DISCOVERY"] == "dns"
        assert env["EMQX_CLUSTER__DNS__NAME"] == "emqx-headless.default.svc.cluster.local"

    def test_image_resolution(self):
        sts = by_kind(build({"image": "emqx/emqx:4.4.8"}), "StatefulSet")[0]
        assert sts["spec"]["template"]["spec"]["containers"][0]["image"] == "emqx/emqx:4.4.8"


# ==================== Variants ====================


class TestEnterpriseVariant:
    def test_persistent_claim_and_license(self):
        spec = {
            "replicas": 1,
            "persistent": {"resources": {"requests": {"storage": "2Gi"}}},
            "storageClassName": "fast",
            "license": {"secretName": "emqx-license"},
        }
        resources = build(spec, kind="EmqxEnterprise")
        claims = by_kind(resources, "PersistentVolumeClaim")
        assert [c["metadata"]["name"] for c in claims] == ["emqx-data-emqx-0"]
        assert claims[0]["spec"]["storageClassName"] == "fast"

        pod_spec = by_kind(resources, "StatefulSet")[0]["spec"]["template"]["spec"]
        assert {"name": "license", "secret": {"secretName": "emqx-license"}} in pod_spec["volumes"]
        mounts = pod_spec["containers"][0]["volumeMounts"]
        assert any(m["mountPath"] == "/mounted/license" for m in mounts)

    def test_default_image_and_plugins(self):
        resources = build({}, kind="EmqxEnterprise")
        sts = by_kind(resources, "StatefulSet")[0]
        assert sts["spec"]["template"]["spec"]["containers"][0]["image"] == "emqx/emqx-ee:4.4.5"
        config_map = by_kind(resources, "ConfigMap")[0]
        assert "{emqx_modules, true}." in config_map["data"]["loaded_plugins"]


# ==================== Validation ====================


class TestBuilderValidation:
    def test_ephemeral_with_storage_class_rejected(self):
        with pytest.raises(ValidationError):
            build({"ephemeral": True, "storageClassName": "fast"})

    def test_negative_replicas_rejected(self):
        with pytest.raises(ValidationError):
            build({"replicas": -1})

    def test_port_without_number_rejected(self):
        with pytest.raises(ValidationError, match="port"):
            build({"serviceTemplate": {"ports": [{"name": "custom"}]}})

    def test_env_without_name_rejected(self):
        with pytest.raises(ValidationError, match="name"):
            build({"template": {"env": [{"value": "1"}]}})
