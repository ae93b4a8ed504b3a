"""KonnectExtension reconciler.

A KonnectExtension attaches DataPlanes to a Konnect control plane. Once the
control plane reference resolves and a client certificate is provisioned and
registered, the extension publishes everything a DataPlane needs in its
status.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional, Tuple

from . import certificates
from . import conditions as cond
from . import constants as C
from .config import OperatorConfig
from .entities import CP_REF_KONNECT_ID, KonnectGatewayControlPlane, wrap
from .errors import (
    DependencyNotReadyError,
    GatewayOperatorError,
    KonnectAPIError,
    KonnectRateLimitError,
    SpecValidationError,
    is_retryable,
)
from .reconcile import DONE, ReconcileResult, requeue
from .resolver import Resolver
from .resources import KonnectExtensionOutput

logger = logging.getLogger(__name__)


class CertificateError(GatewayOperatorError):
    """The client certificate could not be provisioned."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def get_extension_output(extension: Dict[str, Any]) -> Optional[KonnectExtensionOutput]:
    """What a ready extension contributes to a DataPlane, or None if incomplete."""
    status = extension.get("status") or {}
    konnect = status.get("konnect") or {}
    endpoints = konnect.get("endpoints") or {}
    secret_name = (((status.get("dataPlaneClientAuth") or {}).get("certificateSecretRef")) or {}).get("name")
    if not (secret_name and endpoints.get("controlPlaneEndpoint") and endpoints.get("telemetryEndpoint")):
        return None
    return KonnectExtensionOutput(
        secret_name=secret_name,
        control_plane_endpoint=endpoints["controlPlaneEndpoint"],
        telemetry_endpoint=endpoints["telemetryEndpoint"],
        control_plane_id=konnect.get("controlPlaneID", ""),
    )


def references_extension(dataplane: Dict[str, Any], extension: Dict[str, Any]) -> bool:
    ext_meta = extension["metadata"]
    dp_namespace = dataplane["metadata"].get("namespace")
    for ref in (dataplane.get("spec") or {}).get("extensions") or []:
        if ref.get("kind") != C.KONNECT_EXTENSION_KIND:
            continue
        ref_namespace = ref.get("namespace") or dp_namespace
        if ref.get("name") == ext_meta["name"] and ref_namespace == ext_meta.get("namespace"):
            return True
    return False


def build_owner_reference(extension: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "apiVersion": f"{C.KONNECT_GROUP}/{C.KONNECT_VERSION}",
        "kind": C.KONNECT_EXTENSION_KIND,
        "name": extension["metadata"]["name"],
        "uid": extension["metadata"]["uid"],
        "controller": True,
    }


def build_client_cert_secret(extension: Dict[str, Any], cert_pem: bytes, key_pem: bytes) -> Dict[str, Any]:
    """Build the TLS Secret holding a generated Konnect client certificate."""
    meta = extension["metadata"]
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": f"{meta['name']}-{C.KONNECT_CERT_SECRET_SUFFIX}",
            "namespace": meta["namespace"],
            "labels": {
                C.LABEL_MANAGED_BY: C.MANAGED_BY_KONNECT_EXTENSION,
                C.LABEL_APP: meta["name"],
            },
            "ownerReferences": [build_owner_reference(extension)],
        },
        "type": "kubernetes.io/tls",
        "data": {
            "tls.crt": base64.b64encode(cert_pem).decode("ascii"),
            "tls.key": base64.b64encode(key_pem).decode("ascii"),
        },
    }


class KonnectExtensionReconciler:
    """Resolves the control plane and client certificate of KonnectExtensions."""

    def __init__(self, store, api_factory, config: Optional[OperatorConfig] = None):
        self.store = store
        self.api_factory = api_factory
        self.config = config or OperatorConfig()
        self.resolver = Resolver(store)

    async def reconcile(self, extension: Dict[str, Any], retry: int = 0) -> ReconcileResult:
        meta = extension["metadata"]
        if not extension.get("status"):
            extension["status"] = {}
        status = extension["status"]
        await asyncio.to_thread(self._sync_in_use_finalizer, extension)

        result = DONE
        cp_ready = cert_ready = False
        try:
            control_plane, api = await self._resolve_control_plane(extension)
            cp_ready = True
            status["konnect"] = control_plane
            cond.set_condition(extension, cond.CONTROL_PLANE_REF_VALID, cond.TRUE, cond.REASON_VALID)

            secret_name = await self._ensure_certificate(extension, api, control_plane["controlPlaneID"])
            cert_ready = True
            status["dataPlaneClientAuth"] = {"certificateSecretRef": {"name": secret_name}}
            cond.set_condition(extension, cond.DATAPLANE_CERT_PROVISIONED, cond.TRUE, cond.REASON_PROVISIONED)
        except DependencyNotReadyError as e:
            cond.set_condition(extension, cond.CONTROL_PLANE_REF_VALID, cond.FALSE, cond.REASON_INVALID, str(e))
            result = requeue(self.config.requeue_waiting_seconds, str(e))
        except SpecValidationError as e:
            cond.set_condition(extension, cond.CONTROL_PLANE_REF_VALID, cond.FALSE, cond.REASON_INVALID, str(e))
            result = requeue(self.config.requeue_slow_seconds, str(e))
        except CertificateError as e:
            cond.set_condition(extension, cond.DATAPLANE_CERT_PROVISIONED, cond.FALSE, e.reason, str(e))
            result = requeue(self.config.requeue_waiting_seconds, str(e))
        except KonnectAPIError as e:
            if is_retryable(e):
                delay = self.config.backoff(retry)
                if isinstance(e, KonnectRateLimitError) and e.retry_after:
                    delay = e.retry_after
                logger.warning(f"Transient Konnect API error for {C.KONNECT_EXTENSION_KIND} {meta['name']}: {e}")
                result = requeue(delay, str(e))
            else:
                logger.error(f"Konnect API error for {C.KONNECT_EXTENSION_KIND} {meta['name']}: {e}")
                result = requeue(self.config.requeue_slow_seconds, str(e))
            failed = cond.DATAPLANE_CERT_PROVISIONED if cp_ready else cond.CONTROL_PLANE_REF_VALID
            cond.set_condition(extension, failed, cond.FALSE, cond.REASON_API_OP_FAILED, str(e))

        if cp_ready and cert_ready:
            if cond.set_condition(extension, cond.READY, cond.TRUE, cond.REASON_READY):
                logger.info(f"{C.KONNECT_EXTENSION_KIND} {meta['namespace']}/{meta['name']} is ready")
        else:
            cond.set_condition(extension, cond.READY, cond.FALSE, cond.REASON_DEPENDENCIES_NOT_READY,
                               result.message)

        await asyncio.to_thread(self.store.patch_status, C.KONNECT_EXTENSION_KIND, meta["namespace"], meta["name"],
                                extension["status"])
        return result

    async def delete(self, extension: Dict[str, Any]) -> ReconcileResult:
        """Hold deletion while DataPlanes still use the extension."""
        users = await asyncio.to_thread(self._referencing_dataplanes, extension)
        if users:
            message = f"in use by DataPlanes: {', '.join(users)}"
            logger.info(f"{C.KONNECT_EXTENSION_KIND} {extension['metadata']['name']} {message}")
            return requeue(self.config.requeue_waiting_seconds, message)
        await asyncio.to_thread(self.store.remove_finalizer, extension, C.FINALIZER_EXTENSION_IN_USE)
        return DONE

    # ------------------------------------------------------------------
    # Control plane
    # ------------------------------------------------------------------

    async def _resolve_control_plane(self, extension: Dict[str, Any]) -> Tuple[Dict[str, Any], Any]:
        """Return the published control plane status block and an API client."""
        konnect_spec = (extension.get("spec") or {}).get("konnect") or {}
        ref = (konnect_spec.get("controlPlane") or {}).get("ref") or {}
        namespace = extension["metadata"]["namespace"]

        if ref.get("type") == CP_REF_KONNECT_ID:
            cp_id = ref.get("konnectID")
            auth_ref = (konnect_spec.get("configuration") or {}).get("authRef") or {}
            if not cp_id or not auth_ref.get("name"):
                raise SpecValidationError("konnectID control plane references need spec.konnect.configuration.authRef")
            auth = await asyncio.to_thread(self._read_auth_ref, namespace, auth_ref["name"])
            api = self.api_factory(auth.server_url, auth.token)
            remote = await api.get("/v2/control-planes", cp_id)
            control_plane = KonnectGatewayControlPlane({"metadata": {"name": cp_id}, "status": {}})
            control_plane.apply_remote(remote)
            return self._published(cp_id, control_plane.konnect_status()), api

        named = ref.get("konnectNamespacedRef") or {}
        if not named.get("name"):
            raise SpecValidationError("spec.konnect.controlPlane.ref names no control plane")
        cp_ns = named.get("namespace") or namespace
        control_plane, auth = await asyncio.to_thread(self._named_control_plane, cp_ns, named["name"])
        api = self.api_factory(auth.server_url, auth.token)
        return self._published(control_plane.konnect_id, control_plane.konnect_status()), api

    def _read_auth_ref(self, namespace: str, name: str):
        auth_obj = self.store.get(C.KONNECT_AUTH_KIND, namespace, name)
        if auth_obj is None:
            raise DependencyNotReadyError(f"{C.KONNECT_AUTH_KIND} {namespace}/{name} not found")
        return self.resolver.read_auth(auth_obj)

    def _named_control_plane(self, namespace: str, name: str):
        cp_obj = self.store.get(C.KONNECT_CONTROL_PLANE_KIND, namespace, name)
        if cp_obj is None:
            raise DependencyNotReadyError(f"{C.KONNECT_CONTROL_PLANE_KIND} {namespace}/{name} not found")
        control_plane = wrap(cp_obj)
        if not control_plane.konnect_id:
            raise DependencyNotReadyError(f"{control_plane.describe()} has no Konnect ID yet")
        endpoints = control_plane.konnect_status().get("konnectEndpoints") or {}
        if not endpoints.get("controlPlaneEndpoint"):
            raise DependencyNotReadyError(f"{control_plane.describe()} has no endpoints yet")
        return control_plane, self.resolver.resolve_auth(control_plane, cp_obj)

    @staticmethod
    def _published(cp_id: str, cp_status: Dict[str, Any]) -> Dict[str, Any]:
        endpoints = cp_status.get("konnectEndpoints") or {}
        published = {
            "controlPlaneID": cp_id,
            "endpoints": {
                "controlPlaneEndpoint": endpoints.get("controlPlaneEndpoint", ""),
                "telemetryEndpoint": endpoints.get("telemetryEndpoint", ""),
            },
        }
        if cp_status.get("clusterType"):
            published["clusterType"] = cp_status["clusterType"]
        return published

    # ------------------------------------------------------------------
    # Client certificate
    # ------------------------------------------------------------------

    async def _ensure_certificate(self, extension: Dict[str, Any], api, cp_id: str) -> str:
        """Provision the client certificate secret and register it with the control plane."""
        cert_spec = ((extension.get("spec") or {}).get("clientAuth") or {}).get("certificateSecret") or {}
        provisioning = cert_spec.get("provisioning") or C.PROVISIONING_AUTOMATIC
        namespace = extension["metadata"]["namespace"]

        if provisioning == C.PROVISIONING_MANUAL:
            name = (cert_spec.get("certificateSecretRef") or {}).get("name")
            if not name:
                raise CertificateError(cond.REASON_REF_NOT_FOUND,
                                       "certificateSecretRef.name is required for Manual provisioning")
            secret = await asyncio.to_thread(self.store.get, "Secret", namespace, name)
            if secret is None:
                raise CertificateError(cond.REASON_REF_NOT_FOUND, f"Secret {namespace}/{name} not found")
            cert_pem = self._validate_secret(secret)
        elif provisioning == C.PROVISIONING_AUTOMATIC:
            secret = await asyncio.to_thread(self._ensure_generated_secret, extension)
            cert_pem, _ = certificates.decode_tls_secret(secret)
        else:
            raise CertificateError(cond.REASON_INVALID, f"unknown provisioning mode {provisioning!r}")

        await self._register(api, cp_id, cert_pem.decode())
        return secret["metadata"]["name"]

    @staticmethod
    def _validate_secret(secret: Dict[str, Any]) -> bytes:
        name = f"Secret {secret['metadata'].get('namespace')}/{secret['metadata']['name']}"
        if secret.get("type") != "kubernetes.io/tls":
            raise CertificateError(cond.REASON_INVALID_SECRET, f"{name} is not of type kubernetes.io/tls")
        cert_pem, key_pem = certificates.decode_tls_secret(secret)
        if not cert_pem or not key_pem:
            raise CertificateError(cond.REASON_INVALID_SECRET, f"{name} must contain tls.crt and tls.key")
        if certificates.load_certificate(cert_pem) is None:
            raise CertificateError(cond.REASON_INVALID_SECRET, f"{name} tls.crt is not a PEM certificate")
        return cert_pem

    def _ensure_generated_secret(self, extension: Dict[str, Any]) -> Dict[str, Any]:
        meta = extension["metadata"]
        name = f"{meta['name']}-{C.KONNECT_CERT_SECRET_SUFFIX}"
        secret = self.store.get("Secret", meta["namespace"], name)
        if secret is not None:
            cert_pem, key_pem = certificates.decode_tls_secret(secret)
            if cert_pem and key_pem and not certificates.is_expired(cert_pem):
                return secret

        cert_pem, key_pem = certificates.generate_self_signed(f"{meta['namespace']}.{meta['name']}")
        desired = build_client_cert_secret(extension, cert_pem, key_pem)
        if secret is None:
            logger.info(f"Generating Konnect client certificate {meta['namespace']}/{name}")
            return self.store.create(desired)
        logger.info(f"Rotating Konnect client certificate {meta['namespace']}/{name}")
        desired["metadata"]["resourceVersion"] = secret["metadata"].get("resourceVersion")
        return self.store.replace(desired)

    async def _register(self, api, cp_id: str, cert_pem: str) -> None:
        for item in await api.list_dp_client_certificates(cp_id):
            if (item.get("cert") or "").strip() == cert_pem.strip():
                return
        logger.info(f"Registering data plane client certificate with control plane {cp_id}")
        await api.create_dp_client_certificate(cp_id, cert_pem)

    # ------------------------------------------------------------------
    # In-use finalizer
    # ------------------------------------------------------------------

    def _referencing_dataplanes(self, extension: Dict[str, Any]) -> List[str]:
        namespace = extension["metadata"]["namespace"]
        return [
            dp["metadata"]["name"]
            for dp in self.store.list(C.DATAPLANE_KIND, namespace)
            if references_extension(dp, extension)
        ]

    def _sync_in_use_finalizer(self, extension: Dict[str, Any]) -> None:
        if self._referencing_dataplanes(extension):
            self.store.add_finalizer(extension, C.FINALIZER_EXTENSION_IN_USE)
        else:
            self.store.remove_finalizer(extension, C.FINALIZER_EXTENSION_IN_USE)
