"""Backing store access.

Reconcilers work on plain manifest dicts. ``KubeStore`` maps those dicts onto
the typed Kubernetes APIs for built-in kinds and onto the custom objects API
for the operator's own resources.
"""

import logging
from typing import Any, Dict, List, Optional

import kubernetes
from kubernetes import client
from kubernetes.client.rest import ApiException

from . import constants as C
from .errors import StoreConflictError

logger = logging.getLogger(__name__)


# kind -> (clients key, method suffix)
BUILTIN_KINDS = {
    "Deployment": ("apps", "namespaced_deployment"),
    "Service": ("core", "namespaced_service"),
    "Secret": ("core", "namespaced_secret"),
    "HorizontalPodAutoscaler": ("autoscaling", "namespaced_horizontal_pod_autoscaler"),
    "PodDisruptionBudget": ("policy", "namespaced_pod_disruption_budget"),
}

# kind -> (group, version, plural, namespaced)
CUSTOM_KINDS = {
    C.DATAPLANE_KIND: (C.OPERATOR_GROUP, C.OPERATOR_VERSION, C.DATAPLANE_PLURAL, True),
    C.KONNECT_EXTENSION_KIND: (C.KONNECT_GROUP, C.KONNECT_VERSION, C.KONNECT_EXTENSION_PLURAL, True),
    C.KONNECT_AUTH_KIND: (C.KONNECT_GROUP, C.KONNECT_VERSION, C.KONNECT_AUTH_PLURAL, True),
    C.KONNECT_CONTROL_PLANE_KIND: (C.KONNECT_GROUP, C.KONNECT_CP_VERSION, C.KONNECT_CONTROL_PLANE_PLURAL, True),
    "KongService": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongservices", True),
    "KongRoute": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongroutes", True),
    "KongConsumer": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongconsumers", True),
    "KongConsumerGroup": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongconsumergroups", True),
    "KongUpstream": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongupstreams", True),
    "KongTarget": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongtargets", True),
    "KongVault": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongvaults", False),
    "KongCertificate": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongcertificates", True),
    "KongSNI": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongsnis", True),
    "KongPluginBinding": (C.CONFIGURATION_GROUP, C.CONFIGURATION_VERSION, "kongpluginbindings", True),
    "KongPlugin": (C.CONFIGURATION_GROUP, "v1", "kongplugins", True),
}


def get_k8s_clients():
    """Get Kubernetes API clients."""
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()

    return {
        "api": client.ApiClient(),
        "core": client.CoreV1Api(),
        "apps": client.AppsV1Api(),
        "autoscaling": client.AutoscalingV2Api(),
        "policy": client.PolicyV1Api(),
        "custom": client.CustomObjectsApi(),
    }


def label_selector(labels: Dict[str, str]) -> str:
    """Render a label dict as an equality-based selector string."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _identity(obj: Dict[str, Any]) -> str:
    meta = obj.get("metadata", {})
    ns = meta.get("namespace")
    name = meta.get("name") or meta.get("generateName", "") + "*"
    return f"{obj.get('kind')} {ns}/{name}" if ns else f"{obj.get('kind')} {name}"


class KubeStore:
    """Dict-based create/read/update/delete over the Kubernetes API.

    Writes use the resourceVersion carried by the object, so a reconciler that
    lost a race gets a ``StoreConflictError`` and must re-read.
    """

    def __init__(self, clients: Dict[str, Any]):
        self.clients = clients
        self._serializer = clients.get("api") or client.ApiClient()

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self._serializer.sanitize_for_serialization(obj)

    def _builtin(self, kind: str, verb: str):
        api_key, suffix = BUILTIN_KINDS[kind]
        return getattr(self.clients[api_key], f"{verb}_{suffix}")

    def _raise(self, e: ApiException, what: str):
        if e.status == 409:
            raise StoreConflictError(f"conflict writing {what}: {e.reason}") from e
        logger.error(f"Kubernetes API call failed for {what}: {e}")
        raise e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, kind: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        """Read an object, or None if it does not exist."""
        try:
            if kind in BUILTIN_KINDS:
                obj = self._to_dict(self._builtin(kind, "read")(name, namespace))
            else:
                group, version, plural, namespaced = CUSTOM_KINDS[kind]
                custom = self.clients["custom"]
                if namespaced:
                    obj = custom.get_namespaced_custom_object(group, version, namespace, plural, name)
                else:
                    obj = custom.get_cluster_custom_object(group, version, plural, name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        obj.setdefault("kind", kind)
        return obj

    def list(self, kind: str, namespace: Optional[str], labels: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """List objects of a kind matching all the given labels."""
        selector = label_selector(labels or {})
        if kind in BUILTIN_KINDS:
            result = self._to_dict(self._builtin(kind, "list")(namespace, label_selector=selector))
        else:
            group, version, plural, namespaced = CUSTOM_KINDS[kind]
            custom = self.clients["custom"]
            if namespaced:
                result = custom.list_namespaced_custom_object(
                    group, version, namespace, plural, label_selector=selector
                )
            else:
                result = custom.list_cluster_custom_object(group, version, plural, label_selector=selector)
        items = result.get("items") or []
        for item in items:
            item.setdefault("kind", kind)
        return items

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object; ``metadata.generateName`` is honoured by the API server."""
        kind = obj["kind"]
        namespace = obj["metadata"].get("namespace")
        logger.info(f"Creating {_identity(obj)}")
        try:
            if kind in BUILTIN_KINDS:
                created = self._to_dict(self._builtin(kind, "create")(namespace, obj))
            else:
                group, version, plural, namespaced = CUSTOM_KINDS[kind]
                custom = self.clients["custom"]
                if namespaced:
                    created = custom.create_namespaced_custom_object(group, version, namespace, plural, obj)
                else:
                    created = custom.create_cluster_custom_object(group, version, plural, obj)
        except ApiException as e:
            self._raise(e, _identity(obj))
        created.setdefault("kind", kind)
        return created

    def replace(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an object; the body must carry the resourceVersion it was read at."""
        kind = obj["kind"]
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace")
        logger.info(f"Updating {_identity(obj)}")
        try:
            if kind in BUILTIN_KINDS:
                updated = self._to_dict(self._builtin(kind, "replace")(name, namespace, obj))
            else:
                group, version, plural, namespaced = CUSTOM_KINDS[kind]
                custom = self.clients["custom"]
                if namespaced:
                    updated = custom.replace_namespaced_custom_object(group, version, namespace, plural, name, obj)
                else:
                    updated = custom.replace_cluster_custom_object(group, version, plural, name, obj)
        except ApiException as e:
            self._raise(e, _identity(obj))
        updated.setdefault("kind", kind)
        return updated

    def patch(self, kind: str, namespace: Optional[str], name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Merge-patch an object."""
        what = f"{kind} {namespace}/{name}"
        try:
            if kind in BUILTIN_KINDS:
                patched = self._to_dict(self._builtin(kind, "patch")(name, namespace, body))
            else:
                group, version, plural, namespaced = CUSTOM_KINDS[kind]
                custom = self.clients["custom"]
                if namespaced:
                    patched = custom.patch_namespaced_custom_object(group, version, namespace, plural, name, body)
                else:
                    patched = custom.patch_cluster_custom_object(group, version, plural, name, body)
        except ApiException as e:
            self._raise(e, what)
        patched.setdefault("kind", kind)
        return patched

    def patch_status(self, kind: str, namespace: Optional[str], name: str, status: Dict[str, Any]) -> Dict[str, Any]:
        """Write the status subresource of a custom object."""
        group, version, plural, namespaced = CUSTOM_KINDS[kind]
        custom = self.clients["custom"]
        body = {"status": status}
        try:
            if namespaced:
                return custom.patch_namespaced_custom_object_status(group, version, namespace, plural, name, body)
            return custom.patch_cluster_custom_object_status(group, version, plural, name, body)
        except ApiException as e:
            self._raise(e, f"{kind} {namespace}/{name} status")

    def delete(self, kind: str, namespace: Optional[str], name: str) -> bool:
        """Delete an object. Returns False if it was already gone."""
        logger.info(f"Deleting {kind} {namespace}/{name}")
        try:
            if kind in BUILTIN_KINDS:
                self._builtin(kind, "delete")(
                    name, namespace, body=client.V1DeleteOptions(propagation_policy="Background")
                )
            else:
                group, version, plural, namespaced = CUSTOM_KINDS[kind]
                custom = self.clients["custom"]
                if namespaced:
                    custom.delete_namespaced_custom_object(group, version, namespace, plural, name)
                else:
                    custom.delete_cluster_custom_object(group, version, plural, name)
        except ApiException as e:
            if e.status == 404:
                return False
            self._raise(e, f"{kind} {namespace}/{name}")
        return True

    # ------------------------------------------------------------------
    # Finalizers
    # ------------------------------------------------------------------

    def add_finalizer(self, obj: Dict[str, Any], finalizer: str) -> bool:
        """Add a finalizer to an object. Returns True if it was added."""
        meta = obj["metadata"]
        finalizers = list(meta.get("finalizers") or [])
        if finalizer in finalizers:
            return False
        finalizers.append(finalizer)
        patched = self.patch(obj["kind"], meta.get("namespace"), meta["name"], {
            "metadata": {"finalizers": finalizers, "resourceVersion": meta.get("resourceVersion")},
        })
        meta["finalizers"] = finalizers
        meta["resourceVersion"] = patched["metadata"].get("resourceVersion")
        return True

    def remove_finalizer(self, obj: Dict[str, Any], finalizer: str) -> bool:
        """Remove a finalizer from an object. Returns True if it was removed."""
        meta = obj["metadata"]
        finalizers = list(meta.get("finalizers") or [])
        if finalizer not in finalizers:
            return False
        finalizers.remove(finalizer)
        patched = self.patch(obj["kind"], meta.get("namespace"), meta["name"], {
            "metadata": {"finalizers": finalizers, "resourceVersion": meta.get("resourceVersion")},
        })
        meta["finalizers"] = finalizers
        meta["resourceVersion"] = patched["metadata"].get("resourceVersion")
        return True
