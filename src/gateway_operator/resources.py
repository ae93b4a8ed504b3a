"""Resource builders for DataPlane managed resources.

Every builder is a pure function of the DataPlane manifest (and, where
relevant, the outputs of an attached KonnectExtension). Nothing here talks to
the API server.
"""

import base64
import copy
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from . import constants as C
from .errors import SpecValidationError


@dataclass
class KonnectExtensionOutput:
    """What a ready KonnectExtension contributes to a DataPlane's pod."""

    secret_name: str
    control_plane_endpoint: str
    telemetry_endpoint: str
    control_plane_id: str = ""


@dataclass
class DataPlaneResources:
    """Desired child resources of one DataPlane."""

    deployment: Dict[str, Any]
    services: List[Dict[str, Any]] = field(default_factory=list)
    hpa: Optional[Dict[str, Any]] = None
    pdb: Optional[Dict[str, Any]] = None

    def service(self, service_type: str) -> Optional[Dict[str, Any]]:
        for svc in self.services:
            if svc["metadata"]["labels"].get(C.LABEL_SERVICE_TYPE) == service_type:
                return svc
        return None


def build_labels(name: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Build the standard ownership labels for a DataPlane child."""
    labels = {
        C.LABEL_APP: name,
        C.LABEL_MANAGED_BY: C.MANAGED_BY_DATAPLANE,
    }
    labels.update(extra or {})
    return labels


def build_selector_labels(dataplane: Dict[str, Any]) -> Dict[str, str]:
    """Labels selecting the DataPlane's pods."""
    return {
        C.LABEL_APP: dataplane["metadata"]["name"],
        C.LABEL_SELECTOR: (dataplane.get("status") or {}).get("selector", ""),
    }


def build_owner_reference(owner: Dict[str, Any]) -> Dict[str, Any]:
    """Build owner reference for garbage collection."""
    return {
        "apiVersion": f"{C.OPERATOR_GROUP}/{C.OPERATOR_VERSION}",
        "kind": C.DATAPLANE_KIND,
        "name": owner["metadata"]["name"],
        "uid": owner["metadata"]["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _child_metadata(dataplane: Dict[str, Any], prefix: str, labels: Dict[str, str]) -> Dict[str, Any]:
    name = dataplane["metadata"]["name"]
    return {
        "generateName": f"{prefix}-{name}-",
        "namespace": dataplane["metadata"]["namespace"],
        "labels": labels,
        "ownerReferences": [build_owner_reference(dataplane)],
    }


# =============================================================================
# Replicas and scaling
# =============================================================================

def get_horizontal_scaling(spec: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return ((spec.get("deployment") or {}).get("scaling") or {}).get("horizontalScaling")


def resolve_replicas(spec: Dict[str, Any]) -> int:
    """Replica count a DataPlane asks for.

    When horizontal scaling is configured it governs the count and a fixed
    ``replicas`` is ignored; the autoscaler's minimum is the starting point.
    """
    scaling = get_horizontal_scaling(spec)
    if scaling:
        return int(scaling.get("minReplicas") or 1)
    deployment = spec.get("deployment") or {}
    if deployment.get("replicas") is not None:
        return int(deployment["replicas"])
    return 1


# =============================================================================
# Pod template
# =============================================================================

def merge_by_name(defaults: List[Dict[str, Any]], user: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge two lists of named entries; user entries win on a name collision.

    User entries keep their order and come first, defaults not overridden by
    the user follow in their own order.
    """
    user = user or []
    taken = {entry.get("name") for entry in user}
    return list(user) + [entry for entry in defaults if entry.get("name") not in taken]


def build_konnect_env(extension: KonnectExtensionOutput) -> Dict[str, str]:
    """Environment that connects the proxy to a Konnect control plane."""
    cp_host = _endpoint_host(extension.control_plane_endpoint)
    tp_host = _endpoint_host(extension.telemetry_endpoint)
    return {
        "KONG_ROLE": "data_plane",
        "KONG_CLUSTER_MTLS": "pki",
        "KONG_KONNECT_MODE": "on",
        "KONG_VITALS": "off",
        "KONG_CLUSTER_CONTROL_PLANE": f"{cp_host}:443",
        "KONG_CLUSTER_SERVER_NAME": cp_host,
        "KONG_CLUSTER_TELEMETRY_ENDPOINT": f"{tp_host}:443",
        "KONG_CLUSTER_TELEMETRY_SERVER_NAME": tp_host,
        "KONG_CLUSTER_CERT": f"{C.KONNECT_CERT_MOUNT_PATH}/tls.crt",
        "KONG_CLUSTER_CERT_KEY": f"{C.KONNECT_CERT_MOUNT_PATH}/tls.key",
        "KONG_LUA_SSL_TRUSTED_CERTIFICATE": "system",
    }


def _endpoint_host(endpoint: str) -> str:
    if "://" not in endpoint:
        endpoint = f"https://{endpoint}"
    return urlparse(endpoint).hostname or ""


def _default_proxy_container(image: str) -> Dict[str, Any]:
    return {"name": C.PROXY_CONTAINER_NAME, "image": image}


def _default_ports() -> List[Dict[str, Any]]:
    return [
        {"name": "proxy", "containerPort": C.PROXY_PORT, "protocol": "TCP"},
        {"name": "proxy-ssl", "containerPort": C.PROXY_SSL_PORT, "protocol": "TCP"},
        {"name": "metrics", "containerPort": C.METRICS_PORT, "protocol": "TCP"},
        {"name": "admin-ssl", "containerPort": C.ADMIN_SSL_PORT, "protocol": "TCP"},
    ]


def _default_readiness_check(path: str) -> Dict[str, Any]:
    return {
        "httpGet": {"path": path, "port": C.METRICS_PORT, "scheme": "HTTP"},
        "initialDelaySeconds": 5,
        "periodSeconds": 10,
        "timeoutSeconds": 1,
        "successThreshold": 1,
        "failureThreshold": 3,
    }


def _default_resources() -> Dict[str, Any]:
    return {
        "requests": {"cpu": C.DEFAULT_CPU_REQUEST, "memory": C.DEFAULT_MEMORY_REQUEST},
        "limits": {"cpu": C.DEFAULT_CPU_LIMIT, "memory": C.DEFAULT_MEMORY_LIMIT},
    }


def build_proxy_container(
    container: Dict[str, Any],
    image: str,
    extension: Optional[KonnectExtensionOutput] = None,
) -> Dict[str, Any]:
    """Merge operator defaults into the user's proxy container.

    Values the user set are never overwritten.
    """
    proxy = copy.deepcopy(container)
    proxy.setdefault("image", image)

    default_env = dict(C.PROXY_DEFAULT_ENV)
    if extension is not None:
        default_env.update(build_konnect_env(extension))
    proxy["env"] = merge_by_name(
        [{"name": k, "value": v} for k, v in default_env.items()],
        proxy.get("env"),
    )

    proxy["ports"] = merge_by_name(_default_ports(), proxy.get("ports"))

    mounts = [{"name": C.CLUSTER_CERT_VOLUME, "mountPath": C.CLUSTER_CERT_MOUNT_PATH, "readOnly": True}]
    if extension is not None:
        mounts.append({"name": C.KONNECT_CERT_VOLUME, "mountPath": C.KONNECT_CERT_MOUNT_PATH, "readOnly": True})
    proxy["volumeMounts"] = merge_by_name(mounts, proxy.get("volumeMounts"))

    if not proxy.get("readinessProbe"):
        path = C.STATUS_READY_PATH if extension is not None else C.STATUS_PATH
        proxy["readinessProbe"] = _default_readiness_check(path)
    if not proxy.get("resources"):
        proxy["resources"] = _default_resources()
    proxy.setdefault("imagePullPolicy", "IfNotPresent")
    proxy.setdefault("terminationMessagePolicy", "FallbackToLogsOnError")
    return proxy


def build_pod_template(
    dataplane: Dict[str, Any],
    cluster_cert_secret: str,
    image: str = C.DEFAULT_DATAPLANE_IMAGE,
    extension: Optional[KonnectExtensionOutput] = None,
) -> Dict[str, Any]:
    """Build the Deployment pod template from the DataPlane's pod template.

    Raises SpecValidationError when the user supplied containers but none of
    them is the proxy container.
    """
    spec = dataplane.get("spec") or {}
    template = copy.deepcopy((spec.get("deployment") or {}).get("podTemplateSpec") or {})
    pod_spec = template.setdefault("spec", {})
    containers = pod_spec.get("containers") or []

    if not containers:
        containers = [_default_proxy_container(image)]
    names = [c.get("name") for c in containers]
    if C.PROXY_CONTAINER_NAME not in names:
        raise SpecValidationError(
            f"pod template must contain a container named {C.PROXY_CONTAINER_NAME!r}, got {names}"
        )
    pod_spec["containers"] = [
        build_proxy_container(c, image, extension) if c.get("name") == C.PROXY_CONTAINER_NAME else c
        for c in containers
    ]

    volumes = [{"name": C.CLUSTER_CERT_VOLUME, "secret": {"secretName": cluster_cert_secret}}]
    if extension is not None:
        volumes.append({"name": C.KONNECT_CERT_VOLUME, "secret": {"secretName": extension.secret_name}})
    pod_spec["volumes"] = merge_by_name(volumes, pod_spec.get("volumes"))

    metadata = template.setdefault("metadata", {})
    labels = dict(metadata.get("labels") or {})
    labels.update(build_selector_labels(dataplane))
    metadata["labels"] = labels
    return template


# =============================================================================
# Children
# =============================================================================

def build_deployment(
    dataplane: Dict[str, Any],
    cluster_cert_secret: str,
    image: str = C.DEFAULT_DATAPLANE_IMAGE,
    extension: Optional[KonnectExtensionOutput] = None,
) -> Dict[str, Any]:
    """Build the live Deployment for a DataPlane."""
    spec = dataplane.get("spec") or {}
    labels = build_labels(dataplane["metadata"]["name"], {C.LABEL_DEPLOYMENT_STATE: C.STATE_LIVE})
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _child_metadata(dataplane, "dataplane", labels),
        "spec": {
            "replicas": resolve_replicas(spec),
            "selector": {"matchLabels": build_selector_labels(dataplane)},
            "revisionHistoryLimit": 10,
            "progressDeadlineSeconds": 600,
            "strategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {"maxUnavailable": 0, "maxSurge": 1},
            },
            "template": build_pod_template(dataplane, cluster_cert_secret, image, extension),
        },
    }


def get_ingress_options(spec: Dict[str, Any]) -> Dict[str, Any]:
    return (((spec.get("network") or {}).get("services") or {}).get("ingress")) or {}


def build_ingress_service(dataplane: Dict[str, Any]) -> Dict[str, Any]:
    """Build the ingress Service exposing the proxy."""
    name = dataplane["metadata"]["name"]
    options = get_ingress_options(dataplane.get("spec") or {})
    labels = build_labels(name, {
        C.LABEL_SERVICE_TYPE: C.SERVICE_TYPE_INGRESS,
        C.LABEL_SERVICE_STATE: C.STATE_LIVE,
    })

    metadata = _child_metadata(dataplane, "dataplane-ingress", labels)
    if options.get("name"):
        metadata.pop("generateName")
        metadata["name"] = options["name"]
    annotations = dict(options.get("annotations") or {})
    if annotations:
        metadata["annotations"] = annotations

    ports = []
    for port in options.get("ports") or C.DEFAULT_INGRESS_SERVICE_PORTS:
        entry = {
            "name": port.get("name", f"port-{port['port']}"),
            "port": port["port"],
            "targetPort": port.get("targetPort", C.PROXY_PORT),
            "protocol": port.get("protocol", "TCP"),
        }
        if port.get("nodePort"):
            entry["nodePort"] = port["nodePort"]
        ports.append(entry)

    service_type = options.get("type", "LoadBalancer")
    svc_spec = {
        "type": service_type,
        "selector": build_selector_labels(dataplane),
        "ports": ports,
    }
    if options.get("externalTrafficPolicy"):
        if service_type not in ("LoadBalancer", "NodePort"):
            raise SpecValidationError(
                f"externalTrafficPolicy requires a LoadBalancer or NodePort service, got {service_type}"
            )
        svc_spec["externalTrafficPolicy"] = options["externalTrafficPolicy"]

    return {"apiVersion": "v1", "kind": "Service", "metadata": metadata, "spec": svc_spec}


def build_admin_service(dataplane: Dict[str, Any]) -> Dict[str, Any]:
    """Build the headless admin Service used for control plane discovery."""
    labels = build_labels(dataplane["metadata"]["name"], {
        C.LABEL_SERVICE_TYPE: C.SERVICE_TYPE_ADMIN,
        C.LABEL_SERVICE_STATE: C.STATE_LIVE,
    })
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _child_metadata(dataplane, "dataplane-admin", labels),
        "spec": {
            "type": "ClusterIP",
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": build_selector_labels(dataplane),
            "ports": [{
                "name": "admin",
                "port": C.ADMIN_SSL_PORT,
                "targetPort": C.ADMIN_SSL_PORT,
                "protocol": "TCP",
            }],
        },
    }


def build_hpa(dataplane: Dict[str, Any], deployment_name: str) -> Optional[Dict[str, Any]]:
    """Build the HorizontalPodAutoscaler, or None when scaling is not configured."""
    scaling = get_horizontal_scaling(dataplane.get("spec") or {})
    if not scaling:
        return None
    if scaling.get("maxReplicas") is None:
        raise SpecValidationError("horizontalScaling.maxReplicas is required")

    hpa_spec = {
        "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": deployment_name},
        "minReplicas": scaling.get("minReplicas", 1),
        "maxReplicas": scaling["maxReplicas"],
    }
    if hpa_spec["minReplicas"] > hpa_spec["maxReplicas"]:
        raise SpecValidationError(
            f"horizontalScaling.minReplicas ({hpa_spec['minReplicas']}) exceeds maxReplicas ({hpa_spec['maxReplicas']})"
        )
    if scaling.get("metrics"):
        hpa_spec["metrics"] = copy.deepcopy(scaling["metrics"])
    if scaling.get("behavior"):
        hpa_spec["behavior"] = copy.deepcopy(scaling["behavior"])

    return {
        "apiVersion": "autoscaling/v2",
        "kind": "HorizontalPodAutoscaler",
        "metadata": _child_metadata(dataplane, "dataplane", build_labels(dataplane["metadata"]["name"])),
        "spec": hpa_spec,
    }


def get_pdb_options(spec: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return ((spec.get("resources") or {}).get("podDisruptionBudget") or {}).get("spec")


def build_pdb(dataplane: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Build the PodDisruptionBudget, or None when not configured."""
    options = get_pdb_options(dataplane.get("spec") or {})
    if options is None:
        return None
    if options.get("minAvailable") is not None and options.get("maxUnavailable") is not None:
        raise SpecValidationError("podDisruptionBudget may set minAvailable or maxUnavailable, not both")

    pdb_spec = {"selector": {"matchLabels": build_selector_labels(dataplane)}}
    for key in ("minAvailable", "maxUnavailable", "unhealthyPodEvictionPolicy"):
        if options.get(key) is not None:
            pdb_spec[key] = options[key]

    return {
        "apiVersion": "policy/v1",
        "kind": "PodDisruptionBudget",
        "metadata": _child_metadata(dataplane, "dataplane", build_labels(dataplane["metadata"]["name"])),
        "spec": pdb_spec,
    }


def _scaled(value: Any, total: int) -> int:
    if isinstance(value, str) and value.endswith("%"):
        return int(math.ceil(int(value[:-1]) * total / 100.0))
    return int(value)


def pdb_budget(
    replicas: int,
    ready_replicas: int,
    min_available: Any = None,
    max_unavailable: Any = None,
) -> Dict[str, int]:
    """Compute the disruption budget triple for the live replica counts.

    Percentages are scaled against the expected pod count and rounded up.
    """
    expected = max(int(replicas), 0)
    healthy = max(int(ready_replicas), 0)
    if min_available is not None:
        desired = _scaled(min_available, expected)
    elif max_unavailable is not None:
        desired = max(0, expected - _scaled(max_unavailable, expected))
    else:
        desired = expected
    return {
        "expectedPods": expected,
        "currentHealthy": healthy,
        "desiredHealthy": desired,
        "disruptionsAllowed": max(0, healthy - desired),
    }


def build_cluster_cert_secret(dataplane: Dict[str, Any], cert_pem: bytes, key_pem: bytes) -> Dict[str, Any]:
    """Build the TLS Secret mounted as the DataPlane's cluster certificate."""
    labels = build_labels(dataplane["metadata"]["name"], {C.LABEL_CERT_PURPOSE: C.CERT_PURPOSE_CLUSTER})
    data = {
        "tls.crt": base64.b64encode(cert_pem).decode("ascii"),
        "tls.key": base64.b64encode(key_pem).decode("ascii"),
        "ca.crt": base64.b64encode(cert_pem).decode("ascii"),
    }
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _child_metadata(dataplane, "dataplane", labels),
        "type": "kubernetes.io/tls",
        "data": data,
    }


# =============================================================================
# Annotations
# =============================================================================

def merge_annotations(
    current: Optional[Dict[str, str]],
    desired: Dict[str, str],
) -> Dict[str, str]:
    """Apply the desired annotations on top of the live ones.

    Annotations the operator applied last time but which are no longer
    desired are dropped; annotations set by anyone else are kept.
    """
    current = dict(current or {})
    last_applied = json.loads(current.pop(C.ANNOTATION_LAST_APPLIED, "{}") or "{}")
    for key in last_applied:
        if key not in desired:
            current.pop(key, None)
    current.update(desired)
    if desired:
        current[C.ANNOTATION_LAST_APPLIED] = json.dumps(desired, sort_keys=True)
    return current


def synthesize(
    dataplane: Dict[str, Any],
    cluster_cert_secret: str,
    image: str = C.DEFAULT_DATAPLANE_IMAGE,
    extension: Optional[KonnectExtensionOutput] = None,
    deployment_name: Optional[str] = None,
) -> DataPlaneResources:
    """Compute every desired child of a DataPlane.

    ``deployment_name`` names the live Deployment the autoscaler targets; it
    is unknown before the Deployment has been created.
    """
    deployment = build_deployment(dataplane, cluster_cert_secret, image, extension)
    ingress = build_ingress_service(dataplane)
    ingress["metadata"]["annotations"] = merge_annotations({}, ingress["metadata"].get("annotations") or {})
    result = DataPlaneResources(
        deployment=deployment,
        services=[ingress, build_admin_service(dataplane)],
        pdb=build_pdb(dataplane),
    )
    if deployment_name:
        result.hpa = build_hpa(dataplane, deployment_name)
    elif get_horizontal_scaling(dataplane.get("spec") or {}):
        # validate early, the target name is filled in once the Deployment exists
        build_hpa(dataplane, "")
    return result
