"""Tests for the DataPlane resource builders."""

import json

import pytest

from gateway_operator import constants as C
from gateway_operator import resources
from gateway_operator.errors import SpecValidationError


def make_dataplane(**spec):
    return {
        "apiVersion": f"{C.OPERATOR_GROUP}/{C.OPERATOR_VERSION}",
        "kind": C.DATAPLANE_KIND,
        "metadata": {"name": "dp", "namespace": "default", "uid": "dp-uid"},
        "spec": spec,
        "status": {"selector": "sel-1"},
    }


EXTENSION = resources.KonnectExtensionOutput(
    secret_name="client-cert",
    control_plane_endpoint="https://abc.us.cp0.konghq.com",
    telemetry_endpoint="abc.us.tp0.konghq.com",
)


class TestReplicas:
    """Tests for resolve_replicas."""

    def test_default(self):
        assert resources.resolve_replicas({}) == 1

    def test_fixed(self):
        assert resources.resolve_replicas({"deployment": {"replicas": 0}}) == 0

    def test_scaling_wins_over_fixed(self):
        spec = {"deployment": {"replicas": 5, "scaling": {"horizontalScaling": {"minReplicas": 3}}}}
        assert resources.resolve_replicas(spec) == 3


class TestPodTemplate:
    """Tests for the pod template and proxy container."""

    def test_merge_by_name_prefers_user(self):
        merged = resources.merge_by_name(
            [{"name": "a", "value": "default"}, {"name": "b", "value": "default"}],
            [{"name": "b", "value": "user"}, {"name": "c", "value": "user"}],
        )
        assert merged == [
            {"name": "b", "value": "user"},
            {"name": "c", "value": "user"},
            {"name": "a", "value": "default"},
        ]

    def test_sidecars_are_kept(self):
        dp = make_dataplane(deployment={"podTemplateSpec": {"spec": {"containers": [
            {"name": "proxy"},
            {"name": "sidecar", "image": "busybox"},
        ]}}})

        template = resources.build_pod_template(dp, "cert", image="kong:3.9")

        containers = template["spec"]["containers"]
        assert [c["name"] for c in containers] == ["proxy", "sidecar"]
        assert containers[1] == {"name": "sidecar", "image": "busybox"}
        assert containers[0]["image"] == "kong:3.9"

    def test_missing_proxy_container(self):
        dp = make_dataplane(deployment={"podTemplateSpec": {"spec": {"containers": [{"name": "app"}]}}})
        with pytest.raises(SpecValidationError, match="proxy"):
            resources.build_pod_template(dp, "cert")

    def test_user_readiness_and_resources_kept(self):
        readiness = {"tcpSocket": {"port": 8000}}
        limits = {"limits": {"cpu": "2"}}
        proxy = resources.build_proxy_container(
            {"name": "proxy", "readinessProbe": readiness, "resources": limits}, "kong:3.9",
        )
        assert proxy["readinessProbe"] == readiness
        assert proxy["resources"] == limits

    def test_default_resources(self):
        proxy = resources.build_proxy_container({"name": "proxy"}, "kong:3.9")
        assert proxy["resources"]["limits"]["cpu"] == C.DEFAULT_CPU_LIMIT
        assert proxy["resources"]["requests"]["memory"] == C.DEFAULT_MEMORY_REQUEST

    def test_konnect_env(self):
        env = resources.build_konnect_env(EXTENSION)
        assert env["KONG_CLUSTER_CONTROL_PLANE"] == "abc.us.cp0.konghq.com:443"
        assert env["KONG_CLUSTER_SERVER_NAME"] == "abc.us.cp0.konghq.com"
        assert env["KONG_CLUSTER_TELEMETRY_SERVER_NAME"] == "abc.us.tp0.konghq.com"
        assert env["KONG_ROLE"] == "data_plane"

    def test_selector_labels_on_pods(self):
        template = resources.build_pod_template(make_dataplane(), "cert")
        assert template["metadata"]["labels"][C.LABEL_SELECTOR] == "sel-1"
        assert template["metadata"]["labels"][C.LABEL_APP] == "dp"


class TestServices:
    """Tests for the ingress and admin Services."""

    def test_ingress_defaults(self):
        svc = resources.build_ingress_service(make_dataplane())
        assert svc["spec"]["type"] == "LoadBalancer"
        assert [p["port"] for p in svc["spec"]["ports"]] == [80, 443]
        assert svc["metadata"]["generateName"] == "dataplane-ingress-dp-"

    def test_ingress_options(self):
        dp = make_dataplane(network={"services": {"ingress": {
            "name": "proxy",
            "type": "NodePort",
            "externalTrafficPolicy": "Local",
            "ports": [{"port": 8080, "nodePort": 30080}],
        }}})

        svc = resources.build_ingress_service(dp)

        assert svc["metadata"]["name"] == "proxy"
        assert "generateName" not in svc["metadata"]
        assert svc["spec"]["externalTrafficPolicy"] == "Local"
        assert svc["spec"]["ports"] == [{
            "name": "port-8080", "port": 8080, "targetPort": C.PROXY_PORT, "protocol": "TCP", "nodePort": 30080,
        }]

    def test_admin_service_is_headless(self):
        svc = resources.build_admin_service(make_dataplane())
        assert svc["spec"]["clusterIP"] == "None"
        assert svc["spec"]["publishNotReadyAddresses"] is True
        assert svc["metadata"]["labels"][C.LABEL_SERVICE_TYPE] == C.SERVICE_TYPE_ADMIN


class TestAutoscalerAndBudget:
    """Tests for the HPA and PDB builders."""

    def test_no_scaling_no_hpa(self):
        assert resources.build_hpa(make_dataplane(), "dep") is None

    def test_hpa_requires_max(self):
        dp = make_dataplane(deployment={"scaling": {"horizontalScaling": {"minReplicas": 1}}})
        with pytest.raises(SpecValidationError, match="maxReplicas"):
            resources.build_hpa(dp, "dep")

    def test_hpa_metrics(self):
        metrics = [{"type": "Resource", "resource": {"name": "cpu", "target": {"type": "Utilization"}}}]
        dp = make_dataplane(deployment={"scaling": {"horizontalScaling": {"maxReplicas": 4, "metrics": metrics}}})

        hpa = resources.build_hpa(dp, "dep")

        assert hpa["spec"]["minReplicas"] == 1
        assert hpa["spec"]["metrics"] == metrics
        assert hpa["spec"]["scaleTargetRef"]["name"] == "dep"

    def test_no_budget(self):
        assert resources.build_pdb(make_dataplane()) is None

    @pytest.mark.parametrize("replicas, ready, min_available, max_unavailable, expected", [
        (3, 3, None, None, {"expectedPods": 3, "currentHealthy": 3, "desiredHealthy": 3, "disruptionsAllowed": 0}),
        (4, 4, "50%", None, {"expectedPods": 4, "currentHealthy": 4, "desiredHealthy": 2, "disruptionsAllowed": 2}),
        (3, 3, "50%", None, {"expectedPods": 3, "currentHealthy": 3, "desiredHealthy": 2, "disruptionsAllowed": 1}),
        (4, 2, None, 1, {"expectedPods": 4, "currentHealthy": 2, "desiredHealthy": 3, "disruptionsAllowed": 0}),
        (0, 0, 1, None, {"expectedPods": 0, "currentHealthy": 0, "desiredHealthy": 1, "disruptionsAllowed": 0}),
    ])
    def test_pdb_budget(self, replicas, ready, min_available, max_unavailable, expected):
        assert resources.pdb_budget(replicas, ready, min_available, max_unavailable) == expected


class TestAnnotations:
    """Tests for merge_annotations."""

    def test_first_apply_records_last_applied(self):
        merged = resources.merge_annotations(None, {"a": "1"})
        assert merged["a"] == "1"
        assert json.loads(merged[C.ANNOTATION_LAST_APPLIED]) == {"a": "1"}

    def test_removed_annotations_are_dropped(self):
        current = resources.merge_annotations({"foreign": "x"}, {"a": "1", "b": "2"})
        merged = resources.merge_annotations(current, {"b": "3"})
        assert merged["foreign"] == "x"
        assert "a" not in merged
        assert merged["b"] == "3"

    def test_clearing_all_annotations(self):
        current = resources.merge_annotations({"foreign": "x"}, {"a": "1"})
        assert resources.merge_annotations(current, {}) == {"foreign": "x"}


class TestSynthesize:
    """Tests for the combined child synthesis."""

    def test_children(self):
        dp = make_dataplane(resources={"podDisruptionBudget": {"spec": {"minAvailable": 1}}})

        desired = resources.synthesize(dp, "cert", image="kong:3.9", extension=EXTENSION)

        assert desired.deployment["kind"] == "Deployment"
        assert desired.service(C.SERVICE_TYPE_INGRESS) is not None
        assert desired.service(C.SERVICE_TYPE_ADMIN) is not None
        assert desired.hpa is None
        assert desired.pdb["spec"]["minAvailable"] == 1
        volumes = desired.deployment["spec"]["template"]["spec"]["volumes"]
        assert {"name": C.KONNECT_CERT_VOLUME, "secret": {"secretName": "client-cert"}} in volumes

    def test_hpa_needs_deployment_name(self):
        dp = make_dataplane(deployment={"scaling": {"horizontalScaling": {"maxReplicas": 3}}})
        assert resources.synthesize(dp, "cert").hpa is None
        assert resources.synthesize(dp, "cert", deployment_name="dep").hpa is not None

    def test_invalid_scaling_fails_early(self):
        dp = make_dataplane(deployment={"scaling": {"horizontalScaling": {"minReplicas": 3, "maxReplicas": 1}}})
        with pytest.raises(SpecValidationError):
            resources.synthesize(dp, "cert")
