"""Konnect entity kinds.

Each Konnect-backed custom resource is wrapped in a ``KonnectEntity``
subclass. The reconciler is written once against the wrapper's accessors:
remote ID get/set (identity), conditions (status), declared references
(dependencies) and the remote payload.
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from . import conditions as cond
from . import constants as C
from .reconcile import is_subset

TAGS_ANNOTATION = "konghq.com/tags"
MAX_TAG_LENGTH = 128

# Control plane reference types
CP_REF_NAMESPACED = "konnectNamespacedRef"
CP_REF_KONNECT_ID = "konnectID"
# Entity reference types
REF_NAMESPACED = "namespacedRef"

SOURCE_MIRROR = "Mirror"
ADOPT_MODE_OVERRIDE = "override"
ADOPT_MODE_MATCH = "match"

PARENT_ID_FIELDS = (
    "controlPlaneID",
    "serviceID",
    "routeID",
    "upstreamID",
    "certificateID",
    "consumerID",
    "consumerGroupID",
)


@dataclass
class Reference:
    """A declared dependency of an entity on another object."""

    kind: str
    condition_type: Optional[str]
    id_field: Optional[str] = None
    name: Optional[str] = None
    namespace: Optional[str] = None
    konnect_id: Optional[str] = None
    blocks_deletion: bool = False
    # the referenced object is a plain resource without a remote ID
    local_only: bool = False
    # the control plane ID is inherited from the referenced object
    provides_control_plane: bool = False

    def describe(self) -> str:
        if self.konnect_id:
            return f"{self.kind} with Konnect ID {self.konnect_id}"
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


def in_use_finalizer(child_kind: str) -> str:
    """Marker a child places on its parent while it still exists remotely."""
    return C.FINALIZER_IN_USE_TEMPLATE.format(kind=child_kind.lower())


def generate_tags(obj: Dict[str, Any], *extra: str) -> List[str]:
    """Tags identifying the owning Kubernetes object, plus any extra tags.

    The result is sorted and free of duplicates. Each tag is cut to the
    maximum length the remote API accepts.
    """
    meta = obj["metadata"]
    api_version = obj.get("apiVersion", "")
    group, _, version = api_version.rpartition("/")
    tags = {
        f"k8s-uid:{meta.get('uid', '')}",
        f"k8s-name:{meta.get('name', '')}",
        f"k8s-kind:{obj.get('kind', '')}",
        f"k8s-group:{group}",
        f"k8s-version:{version}",
        f"k8s-generation:{meta.get('generation', 0)}",
    }
    if meta.get("namespace"):
        tags.add(f"k8s-namespace:{meta['namespace']}")

    annotation = (meta.get("annotations") or {}).get(TAGS_ANNOTATION, "")
    tags.update(t.strip() for t in annotation.split(",") if t.strip())
    tags.update(t for t in extra if t)
    return sorted(t[:MAX_TAG_LENGTH] for t in tags)


def uid_tag(uid: str) -> str:
    return f"k8s-uid:{uid}"


def find_uid_in_tags(tags: Optional[List[str]]) -> Optional[str]:
    for tag in tags or []:
        if tag.startswith("k8s-uid:"):
            return tag[len("k8s-uid:"):]
    return None


class KonnectEntity:
    """Wrapper giving uniform access to a Konnect-backed resource dict."""

    kind: str = ""
    collection: str = ""
    # spec keys that are local references and never sent to the remote API
    local_spec_keys = ("controlPlaneRef", "adopt", "konnect")
    # payload keys the remote API does not echo back at the same place
    compare_exclude: tuple = ()
    update_method = "PUT"

    def __init__(self, obj: Dict[str, Any]):
        self.obj = obj

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.obj["metadata"]["name"]

    @property
    def namespace(self) -> Optional[str]:
        return self.obj["metadata"].get("namespace")

    @property
    def uid(self) -> str:
        return self.obj["metadata"].get("uid", "")

    @property
    def spec(self) -> Dict[str, Any]:
        return self.obj.get("spec") or {}

    def describe(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"

    def konnect_status(self) -> Dict[str, Any]:
        """The status block holding the remote ID and parent IDs."""
        if not self.obj.get("status"):
            self.obj["status"] = {}
        status = self.obj["status"]
        if not status.get("konnect"):
            status["konnect"] = {}
        return status["konnect"]

    @property
    def konnect_id(self) -> Optional[str]:
        return ((self.obj.get("status") or {}).get("konnect") or {}).get("id") or None

    def set_konnect_id(self, konnect_id: str) -> None:
        self.konnect_status()["id"] = konnect_id

    def clear_konnect_id(self) -> None:
        self.konnect_status().pop("id", None)

    def parent_ids(self) -> Dict[str, str]:
        """IDs of the remote parents recorded in status."""
        return {k: v for k, v in self.konnect_status().items() if k in PARENT_ID_FIELDS and v}

    def set_parent_ids(self, ids: Dict[str, str]) -> None:
        """Record parent IDs, dropping ones no longer referenced."""
        status = self.konnect_status()
        for key in [k for k in status if k in PARENT_ID_FIELDS]:
            if key not in ids:
                del status[key]
        status.update(ids)

    def set_server(self, server_url: str, org_id: Optional[str]) -> None:
        status = self.konnect_status()
        status["serverURL"] = server_url
        if org_id:
            status["organizationID"] = org_id

    def status_patch(self, before: Dict[str, Any]) -> Dict[str, Any]:
        """Status merge patch, nulling ID fields dropped since ``before``."""
        status = copy.deepcopy(self.obj.get("status") or {})
        cleared = {k: None for k in before if k not in self.konnect_status()}
        if cleared:
            status.setdefault("konnect", {}).update(cleared)
        return status

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def set_condition(self, cond_type: str, status: str, reason: str, message: str = "") -> bool:
        return cond.set_condition(self.obj, cond_type, status, reason, message)

    def get_condition(self, cond_type: str) -> Optional[Dict[str, Any]]:
        return cond.get_condition(self.obj, cond_type)

    def is_programmed(self) -> bool:
        return cond.is_programmed(self.obj)

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def adoption(self) -> Optional[Dict[str, Any]]:
        adopt = self.spec.get("adopt")
        if not adopt or adopt.get("from", "konnect") != "konnect":
            return None
        return adopt

    def control_plane_reference(self) -> Optional[Reference]:
        ref = self.spec.get("controlPlaneRef")
        if not ref:
            return None
        if ref.get("type") == CP_REF_KONNECT_ID:
            return Reference(
                kind=C.KONNECT_CONTROL_PLANE_KIND,
                condition_type=cond.CONTROL_PLANE_REF_VALID,
                id_field="controlPlaneID",
                konnect_id=ref.get("konnectID"),
            )
        named = ref.get("konnectNamespacedRef") or {}
        return Reference(
            kind=C.KONNECT_CONTROL_PLANE_KIND,
            condition_type=cond.CONTROL_PLANE_REF_VALID,
            id_field="controlPlaneID",
            name=named.get("name"),
            namespace=named.get("namespace") or self.namespace,
        )

    def references(self) -> List[Reference]:
        """Every dependency this entity declares, control plane first."""
        cp = self.control_plane_reference()
        return [cp] if cp else []

    def auth_ref(self) -> Optional[Dict[str, str]]:
        """Entity level API auth override, if any."""
        auth = (self.spec.get("konnect") or {}).get("authRef")
        if auth and auth.get("name"):
            return {"name": auth["name"], "namespace": auth.get("namespace") or self.namespace}
        return None

    # ------------------------------------------------------------------
    # Remote representation
    # ------------------------------------------------------------------

    def api_path(self, ids: Dict[str, str]) -> str:
        """Collection path of this entity on the remote API."""
        collection = self.collection.format(**ids)
        return f"/v2/control-planes/{ids['controlPlaneID']}/core-entities/{collection}"

    def payload(self, ids: Dict[str, str], resolved: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        """Body sent on create and update."""
        body = {k: copy.deepcopy(v) for k, v in self.spec.items() if k not in self.local_spec_keys}
        body["tags"] = generate_tags(self.obj, *(body.get("tags") or []))
        return body

    def list_params(self) -> Dict[str, str]:
        """Query finding the remote entity created for this object."""
        return {"tags": uid_tag(self.uid)}

    def remote_uid(self, remote: Dict[str, Any]) -> Optional[str]:
        return find_uid_in_tags(remote.get("tags"))

    def apply_remote(self, remote: Dict[str, Any]) -> None:
        """Copy derived remote fields into status."""

    def drifted(self, desired: Dict[str, Any], remote: Dict[str, Any]) -> bool:
        """Whether the remote entity differs from the desired payload."""
        desired = {k: v for k, v in desired.items() if k not in self.compare_exclude}
        desired_tags = sorted(desired.pop("tags", None) or [])
        if desired_tags and desired_tags != sorted(remote.get("tags") or []):
            return True
        return not is_subset(desired, remote)

    def matches(self, desired: Dict[str, Any], remote: Dict[str, Any]) -> bool:
        """Whether the remote entity already has every desired field, ownership tags aside."""
        desired = {k: v for k, v in desired.items() if k not in self.compare_exclude + ("tags", "labels")}
        return is_subset(desired, remote)


# =============================================================================
# Kinds
# =============================================================================

class KonnectGatewayControlPlane(KonnectEntity):
    kind = C.KONNECT_CONTROL_PLANE_KIND
    local_spec_keys = ("konnect", "source", "mirror", "members", "createControlPlaneRequest")
    compare_exclude = ("cluster_type", "cloud_gateway")
    update_method = "PATCH"

    def konnect_status(self) -> Dict[str, Any]:
        # control planes keep their IDs at the top level of status
        if not self.obj.get("status"):
            self.obj["status"] = {}
        return self.obj["status"]

    def status_patch(self, before: Dict[str, Any]) -> Dict[str, Any]:
        status = copy.deepcopy(self.obj.get("status") or {})
        status.update({k: None for k in before if k not in status})
        return status

    @property
    def konnect_id(self) -> Optional[str]:
        return (self.obj.get("status") or {}).get("id") or None

    def parent_ids(self) -> Dict[str, str]:
        return {}

    def set_parent_ids(self, ids: Dict[str, str]) -> None:
        return None

    def is_mirror(self) -> bool:
        return self.spec.get("source") == SOURCE_MIRROR

    def mirror_id(self) -> Optional[str]:
        return ((self.spec.get("mirror") or {}).get("konnect") or {}).get("id")

    def references(self) -> List[Reference]:
        return []

    def auth_ref(self) -> Optional[Dict[str, str]]:
        auth = (self.spec.get("konnect") or {}).get("authRef") or {}
        if not auth.get("name"):
            return None
        return {"name": auth["name"], "namespace": auth.get("namespace") or self.namespace}

    def api_path(self, ids: Dict[str, str]) -> str:
        return "/v2/control-planes"

    def payload(self, ids: Dict[str, str], resolved: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        body = copy.deepcopy(self.spec.get("createControlPlaneRequest") or {})
        if not body.get("name"):
            body["name"] = self.name
        labels = dict(body.get("labels") or {})
        for tag in generate_tags(self.obj):
            key, _, value = tag.partition(":")
            if key.startswith("k8s-"):
                labels[key] = value[:63]
        body["labels"] = labels
        return body

    def list_params(self) -> Dict[str, str]:
        return {"filter[labels][eq]": f"k8s-uid:{self.uid}"}

    def remote_uid(self, remote: Dict[str, Any]) -> Optional[str]:
        return (remote.get("labels") or {}).get("k8s-uid")

    def apply_remote(self, remote: Dict[str, Any]) -> None:
        config = remote.get("config") or {}
        status = self.konnect_status()
        if config.get("control_plane_endpoint") or config.get("telemetry_endpoint"):
            status["konnectEndpoints"] = {
                "controlPlaneEndpoint": config.get("control_plane_endpoint", ""),
                "telemetryEndpoint": config.get("telemetry_endpoint", ""),
            }
        if config.get("cluster_type"):
            status["clusterType"] = config["cluster_type"]


class KongService(KonnectEntity):
    kind = "KongService"
    collection = "services"


class KongRoute(KonnectEntity):
    kind = "KongRoute"
    collection = "routes"
    local_spec_keys = ("controlPlaneRef", "serviceRef", "adopt", "konnect")

    def service_reference(self) -> Optional[Reference]:
        ref = self.spec.get("serviceRef") or {}
        named = ref.get("namespacedRef") or {}
        if ref.get("type", REF_NAMESPACED) != REF_NAMESPACED or not named.get("name"):
            return None
        return Reference(
            kind="KongService",
            condition_type=cond.SERVICE_REF_VALID,
            id_field="serviceID",
            name=named["name"],
            namespace=self.namespace,
            blocks_deletion=True,
            provides_control_plane=self.control_plane_reference() is None,
        )

    def references(self) -> List[Reference]:
        refs = super().references()
        service = self.service_reference()
        if service:
            refs.append(service)
        return refs

    def payload(self, ids: Dict[str, str], resolved: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        body = super().payload(ids, resolved)
        body["service"] = {"id": ids["serviceID"]} if ids.get("serviceID") else None
        return body


class KongConsumer(KonnectEntity):
    kind = "KongConsumer"
    collection = "consumers"
    local_spec_keys = ("controlPlaneRef", "adopt", "konnect", "credentials", "consumerGroups")


class KongConsumerGroup(KonnectEntity):
    kind = "KongConsumerGroup"
    collection = "consumer_groups"


class KongUpstream(KonnectEntity):
    kind = "KongUpstream"
    collection = "upstreams"


class KongTarget(KonnectEntity):
    kind = "KongTarget"
    collection = "upstreams/{upstreamID}/targets"
    local_spec_keys = ("upstreamRef", "adopt", "konnect")

    def references(self) -> List[Reference]:
        ref = self.spec.get("upstreamRef") or {}
        return [Reference(
            kind="KongUpstream",
            condition_type=cond.UPSTREAM_REF_VALID,
            id_field="upstreamID",
            name=ref.get("name"),
            namespace=self.namespace,
            blocks_deletion=True,
            provides_control_plane=True,
        )]


class KongVault(KonnectEntity):
    kind = "KongVault"
    collection = "vaults"


class KongCertificate(KonnectEntity):
    kind = "KongCertificate"
    collection = "certificates"


class KongSNI(KonnectEntity):
    kind = "KongSNI"
    collection = "certificates/{certificateID}/snis"
    local_spec_keys = ("certificateRef", "adopt", "konnect")

    def references(self) -> List[Reference]:
        ref = self.spec.get("certificateRef") or {}
        return [Reference(
            kind="KongCertificate",
            condition_type=cond.CERTIFICATE_REF_VALID,
            id_field="certificateID",
            name=ref.get("name"),
            namespace=self.namespace,
            blocks_deletion=True,
            provides_control_plane=True,
        )]


class KongPluginBinding(KonnectEntity):
    kind = "KongPluginBinding"
    collection = "plugins"
    local_spec_keys = ("controlPlaneRef", "pluginRef", "targets", "scope", "adopt", "konnect")

    TARGETS = (
        ("serviceRef", "KongService", cond.SERVICE_REF_VALID, "serviceID", "service", True),
        ("routeRef", "KongRoute", None, "routeID", "route", False),
        ("consumerRef", "KongConsumer", cond.CONSUMER_REF_VALID, "consumerID", "consumer", False),
        ("consumerGroupRef", "KongConsumerGroup", None, "consumerGroupID", "consumer_group", False),
    )

    def references(self) -> List[Reference]:
        refs = super().references()
        plugin = self.spec.get("pluginRef") or {}
        refs.append(Reference(
            kind="KongPlugin",
            condition_type=cond.PLUGIN_REF_VALID,
            name=plugin.get("name"),
            namespace=self.namespace,
            local_only=True,
        ))
        targets = self.spec.get("targets") or {}
        for key, kind, condition_type, id_field, _, blocks in self.TARGETS:
            if (targets.get(key) or {}).get("name"):
                refs.append(Reference(
                    kind=kind,
                    condition_type=condition_type,
                    id_field=id_field,
                    name=targets[key]["name"],
                    namespace=self.namespace,
                    blocks_deletion=blocks,
                ))
        return refs

    def payload(self, ids: Dict[str, str], resolved: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        plugin = resolved.get("KongPlugin") or {}
        plugin_tags = [t.strip() for t in ((plugin.get("metadata") or {}).get("annotations") or {})
                       .get(TAGS_ANNOTATION, "").split(",") if t.strip()]
        body = {
            "name": plugin.get("plugin"),
            "config": copy.deepcopy(plugin.get("config") or {}),
            "enabled": not plugin.get("disabled", False),
            "tags": generate_tags(self.obj, *plugin_tags),
        }
        if plugin.get("instance_name"):
            body["instance_name"] = plugin["instance_name"]
        if plugin.get("protocols"):
            body["protocols"] = list(plugin["protocols"])
        for _, _, _, id_field, remote_key, _ in self.TARGETS:
            if ids.get(id_field):
                body[remote_key] = {"id": ids[id_field]}
        return body


ENTITY_KINDS: Dict[str, Type[KonnectEntity]] = {
    cls.kind: cls
    for cls in (
        KonnectGatewayControlPlane,
        KongService,
        KongRoute,
        KongConsumer,
        KongConsumerGroup,
        KongUpstream,
        KongTarget,
        KongVault,
        KongCertificate,
        KongSNI,
        KongPluginBinding,
    )
}

# parent kind -> child kinds that block its deletion
DEPENDENT_KINDS = {
    "KongUpstream": ["KongTarget"],
    "KongCertificate": ["KongSNI"],
    "KongService": ["KongRoute", "KongPluginBinding"],
}


def wrap(obj: Dict[str, Any]) -> KonnectEntity:
    """Wrap a resource dict in the entity class of its kind."""
    try:
        return ENTITY_KINDS[obj["kind"]](obj)
    except KeyError:
        raise ValueError(f"unsupported Konnect entity kind {obj.get('kind')!r}") from None
