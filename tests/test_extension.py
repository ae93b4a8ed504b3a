"""Tests for the KonnectExtension reconciler."""

import base64
import threading

import pytest

from gateway_operator import certificates
from gateway_operator import conditions as cond
from gateway_operator import constants as C
from gateway_operator.errors import KonnectRetryableError
from gateway_operator.extension import (
    KonnectExtensionReconciler,
    get_extension_output,
    references_extension,
)

from conftest import AUTH_NAME, NAMESPACE

CP_ID = "cp-1234"
ENDPOINTS = {
    "controlPlaneEndpoint": "https://abc.eu.cp0.konghq.com",
    "telemetryEndpoint": "https://abc.eu.tp0.konghq.com",
}


@pytest.fixture
def reconciler(store, api_factory, config):
    return KonnectExtensionReconciler(store, api_factory, config)


@pytest.fixture
def control_plane(cluster, store):
    cluster.auth()
    cluster.control_plane()
    store.set_status(C.KONNECT_CONTROL_PLANE_KIND, NAMESPACE, "cp", {
        "id": CP_ID,
        "konnectEndpoints": ENDPOINTS,
        "clusterType": "CLUSTER_TYPE_CONTROL_PLANE",
    })
    return cluster.get(C.KONNECT_CONTROL_PLANE_KIND, "cp")


def extension_spec(cp_name="cp", **cert):
    return {
        "konnect": {"controlPlane": {"ref": {
            "type": "konnectNamespacedRef",
            "konnectNamespacedRef": {"name": cp_name},
        }}},
        "clientAuth": {"certificateSecret": cert or {"provisioning": "Automatic"}},
    }


def tls_secret(cluster, name, secret_type="kubernetes.io/tls"):
    cert_pem, key_pem = certificates.generate_self_signed("manual")
    return cluster.add("Secret", name, None, type=secret_type, data={
        "tls.crt": base64.b64encode(cert_pem).decode(),
        "tls.key": base64.b64encode(key_pem).decode(),
    })


class TestAutomaticProvisioning:
    """Tests for generated client certificates."""

    @pytest.mark.asyncio
    async def test_becomes_ready(self, cluster, reconciler, control_plane, konnect_api):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        assert result.done
        assert cond.is_ready(ext)
        assert ext["status"]["konnect"] == {
            "controlPlaneID": CP_ID,
            "endpoints": ENDPOINTS,
            "clusterType": "CLUSTER_TYPE_CONTROL_PLANE",
        }
        secret_name = f"ext-{C.KONNECT_CERT_SECRET_SUFFIX}"
        assert ext["status"]["dataPlaneClientAuth"] == {"certificateSecretRef": {"name": secret_name}}

        secret = cluster.get("Secret", secret_name)
        assert secret["type"] == "kubernetes.io/tls"
        assert secret["metadata"]["ownerReferences"][0]["uid"] == ext["metadata"]["uid"]
        cert_pem, _ = certificates.decode_tls_secret(secret)
        assert [c["cert"] for c in konnect_api.dp_certificates[CP_ID]] == [cert_pem.decode()]

    @pytest.mark.asyncio
    async def test_store_calls_leave_the_event_loop(self, cluster, store, reconciler, control_plane):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())
        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        store.threads.clear()

        result = await reconciler.reconcile(ext)

        assert result.done
        assert store.threads
        assert threading.get_ident() not in store.threads

    @pytest.mark.asyncio
    async def test_certificate_registered_once(self, cluster, reconciler, control_plane, konnect_api):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())

        await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))
        await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        assert len(konnect_api.calls_to("create_dp_client_certificate")) == 1
        assert len(konnect_api.dp_certificates[CP_ID]) == 1

    @pytest.mark.asyncio
    async def test_expired_secret_is_rotated(self, cluster, store, reconciler, control_plane):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())
        await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))
        secret_name = f"ext-{C.KONNECT_CERT_SECRET_SUFFIX}"
        secret = store.objects[("Secret", NAMESPACE, secret_name)]
        old_cert = secret["data"]["tls.crt"]
        secret["data"]["tls.crt"] = base64.b64encode(b"not a certificate").decode()

        await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        rotated = cluster.get("Secret", secret_name)
        assert rotated["data"]["tls.crt"] != old_cert
        assert certificates.load_certificate(certificates.decode_tls_secret(rotated)[0]) is not None

    @pytest.mark.asyncio
    async def test_transient_registration_error(self, cluster, reconciler, control_plane, konnect_api):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())
        konnect_api.fail("list_dp_client_certificates", KonnectRetryableError("timeout"))

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"), retry=1)

        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        provisioned = cond.get_condition(ext, cond.DATAPLANE_CERT_PROVISIONED)
        assert result.requeue_after == 2
        assert provisioned["reason"] == cond.REASON_API_OP_FAILED
        assert cond.is_condition_true(ext, cond.CONTROL_PLANE_REF_VALID)
        assert not cond.is_ready(ext)


class TestManualProvisioning:
    """Tests for user supplied client certificates."""

    @pytest.mark.asyncio
    async def test_valid_secret(self, cluster, reconciler, control_plane):
        tls_secret(cluster, "mine")
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec(
            provisioning="Manual", certificateSecretRef={"name": "mine"},
        ))

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        assert result.done
        assert ext["status"]["dataPlaneClientAuth"]["certificateSecretRef"]["name"] == "mine"
        assert cluster.get("Secret", f"ext-{C.KONNECT_CERT_SECRET_SUFFIX}") is None

    @pytest.mark.asyncio
    async def test_missing_secret(self, cluster, reconciler, control_plane):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec(
            provisioning="Manual", certificateSecretRef={"name": "mine"},
        ))

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        assert result.requeue_after == 5
        assert cond.get_condition(ext, cond.DATAPLANE_CERT_PROVISIONED)["reason"] == cond.REASON_REF_NOT_FOUND
        ready = cond.get_condition(ext, cond.READY)
        assert ready["status"] == cond.FALSE
        assert ready["reason"] == cond.REASON_DEPENDENCIES_NOT_READY

    @pytest.mark.asyncio
    async def test_wrong_secret_type(self, cluster, reconciler, control_plane):
        tls_secret(cluster, "mine", secret_type="Opaque")
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec(
            provisioning="Manual", certificateSecretRef={"name": "mine"},
        ))

        await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        assert cond.get_condition(ext, cond.DATAPLANE_CERT_PROVISIONED)["reason"] == cond.REASON_INVALID_SECRET
        assert get_extension_output(ext) is None


class TestControlPlaneReference:
    """Tests for resolving the control plane of an extension."""

    @pytest.mark.asyncio
    async def test_missing_control_plane(self, cluster, reconciler, control_plane):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec(cp_name="nope"))

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        assert result.requeue_after == 5
        assert cond.get_condition(ext, cond.CONTROL_PLANE_REF_VALID)["status"] == cond.FALSE
        assert not cond.is_ready(ext)

    @pytest.mark.asyncio
    async def test_control_plane_without_id(self, cluster, reconciler):
        cluster.auth()
        cluster.control_plane()
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        assert result.requeue_after == 5
        assert "no Konnect ID" in result.message

    @pytest.mark.asyncio
    async def test_konnect_id_reference(self, cluster, reconciler, konnect_api):
        cluster.auth()
        konnect_api.seed("/v2/control-planes", {
            "id": "remote-cp",
            "config": {
                "control_plane_endpoint": "https://remote.cp0.konghq.com",
                "telemetry_endpoint": "https://remote.tp0.konghq.com",
                "cluster_type": "CLUSTER_TYPE_CONTROL_PLANE",
            },
        })
        spec = extension_spec()
        spec["konnect"] = {
            "controlPlane": {"ref": {"type": "konnectID", "konnectID": "remote-cp"}},
            "configuration": {"authRef": {"name": AUTH_NAME}},
        }
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", spec)

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        output = get_extension_output(ext)
        assert result.done
        assert output.control_plane_id == "remote-cp"
        assert output.control_plane_endpoint == "https://remote.cp0.konghq.com"
        assert len(konnect_api.dp_certificates["remote-cp"]) == 1

    @pytest.mark.asyncio
    async def test_konnect_id_reference_needs_auth(self, cluster, reconciler):
        spec = extension_spec()
        spec["konnect"] = {"controlPlane": {"ref": {"type": "konnectID", "konnectID": "remote-cp"}}}
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", spec)

        result = await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        assert result.requeue_after == 60


class TestInUse:
    """Tests for the in-use finalizer held by referencing DataPlanes."""

    def dataplane(self, cluster, name="dp"):
        return cluster.add(C.DATAPLANE_KIND, name, {
            "extensions": [{"kind": C.KONNECT_EXTENSION_KIND, "group": C.KONNECT_GROUP, "name": "ext"}],
        })

    @pytest.mark.asyncio
    async def test_delete_waits_for_dataplanes(self, cluster, store, reconciler, control_plane):
        cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())
        self.dataplane(cluster)
        await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))
        ext = cluster.get(C.KONNECT_EXTENSION_KIND, "ext")
        assert C.FINALIZER_EXTENSION_IN_USE in ext["metadata"]["finalizers"]

        store.delete(C.KONNECT_EXTENSION_KIND, NAMESPACE, "ext")
        result = await reconciler.delete(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        assert result.requeue_after == 5
        assert "dp" in result.message
        assert cluster.get(C.KONNECT_EXTENSION_KIND, "ext") is not None

        store.delete(C.DATAPLANE_KIND, NAMESPACE, "dp")
        result = await reconciler.delete(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        assert result.done
        assert cluster.get(C.KONNECT_EXTENSION_KIND, "ext") is None

    @pytest.mark.asyncio
    async def test_unused_extension_drops_finalizer(self, cluster, store, reconciler, control_plane):
        ext = cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())
        store.add_finalizer(ext, C.FINALIZER_EXTENSION_IN_USE)

        await reconciler.reconcile(cluster.get(C.KONNECT_EXTENSION_KIND, "ext"))

        assert not cluster.get(C.KONNECT_EXTENSION_KIND, "ext")["metadata"].get("finalizers")

    def test_references_extension(self, cluster):
        ext = cluster.add(C.KONNECT_EXTENSION_KIND, "ext", extension_spec())
        dp = self.dataplane(cluster)
        other = cluster.add(C.DATAPLANE_KIND, "other", {
            "extensions": [{"kind": C.KONNECT_EXTENSION_KIND, "name": "ext", "namespace": "elsewhere"}],
        })

        assert references_extension(dp, ext)
        assert not references_extension(other, ext)


def test_extension_output_requires_endpoints():
    ext = {"status": {
        "konnect": {"controlPlaneID": CP_ID, "endpoints": {"controlPlaneEndpoint": ENDPOINTS["controlPlaneEndpoint"]}},
        "dataPlaneClientAuth": {"certificateSecretRef": {"name": "secret"}},
    }}
    assert get_extension_output(ext) is None

    ext["status"]["konnect"]["endpoints"] = ENDPOINTS
    output = get_extension_output(ext)
    assert output.secret_name == "secret"
    assert output.telemetry_endpoint == ENDPOINTS["telemetryEndpoint"]
    assert output.control_plane_id == CP_ID
