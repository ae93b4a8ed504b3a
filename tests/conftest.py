"""Shared fixtures: an in-memory object store and an in-memory Konnect API."""

import copy
import datetime
import itertools
import threading
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from gateway_operator import conditions as cond
from gateway_operator import constants as C
from gateway_operator.config import OperatorConfig
from gateway_operator.errors import KonnectNotFoundError, StoreConflictError
from gateway_operator.kube import CUSTOM_KINDS, KubeStore

NAMESPACE = "default"
AUTH_NAME = "konnect-auth"
TOKEN = "kpat_test_token"
SERVER_URL = "eu.api.konghq.com"

BUILTIN_API_VERSIONS = {
    "Deployment": "apps/v1",
    "Service": "v1",
    "Secret": "v1",
    "HorizontalPodAutoscaler": "autoscaling/v2",
    "PodDisruptionBudget": "policy/v1",
}


def merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """JSON merge patch: None deletes, dicts merge, everything else replaces."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class FakeStore(KubeStore):
    """KubeStore backed by a dict, with resourceVersion checks and finalizer semantics."""

    def __init__(self):
        self.objects: Dict[Tuple[str, Optional[str], str], Dict[str, Any]] = {}
        self.writes: List[Tuple[str, str, str]] = []
        self._versions = itertools.count(1)
        self._names = itertools.count(1)
        self._epoch = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
        # idents of the threads that read or wrote through the store
        self.threads: set = set()

    def _key(self, kind, namespace, name):
        return (kind, namespace, name)

    def _stamp(self, obj: Dict[str, Any]) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    def get(self, kind, namespace, name):
        self.threads.add(threading.get_ident())
        obj = self.objects.get(self._key(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, kind, namespace, labels=None):
        self.threads.add(threading.get_ident())
        found = []
        for (obj_kind, obj_ns, _), obj in sorted(self.objects.items(), key=lambda kv: str(kv[0])):
            if obj_kind != kind or (namespace is not None and obj_ns != namespace):
                continue
            obj_labels = obj["metadata"].get("labels") or {}
            if all(obj_labels.get(k) == v for k, v in (labels or {}).items()):
                found.append(copy.deepcopy(obj))
        return found

    def create(self, obj):
        obj = copy.deepcopy(obj)
        meta = obj["metadata"]
        if not meta.get("name"):
            meta["name"] = f"{meta['generateName']}{next(self._names):05x}"
        key = self._key(obj["kind"], meta.get("namespace"), meta["name"])
        if key in self.objects:
            raise StoreConflictError(f"{obj['kind']} {meta['name']} already exists")
        meta["uid"] = str(uuid.uuid4())
        meta["generation"] = 1
        meta["creationTimestamp"] = (
            self._epoch + datetime.timedelta(seconds=next(self._names))
        ).strftime("%Y-%m-%dT%H:%M:%SZ")
        self._stamp(obj)
        self.objects[key] = obj
        self.writes.append(("create", obj["kind"], meta["name"]))
        return copy.deepcopy(obj)

    def replace(self, obj):
        meta = obj["metadata"]
        key = self._key(obj["kind"], meta.get("namespace"), meta["name"])
        live = self.objects.get(key)
        if live is None:
            raise ApiException(status=404, reason="Not Found")
        if meta.get("resourceVersion") and meta["resourceVersion"] != live["metadata"]["resourceVersion"]:
            raise StoreConflictError(f"{obj['kind']} {meta['name']} was modified")
        updated = copy.deepcopy(obj)
        for field in ("uid", "creationTimestamp", "generation", "deletionTimestamp"):
            if field in live["metadata"]:
                updated["metadata"][field] = live["metadata"][field]
        if updated.get("spec") != live.get("spec"):
            updated["metadata"]["generation"] = live["metadata"]["generation"] + 1
        if "status" in live:
            updated["status"] = copy.deepcopy(live["status"])
        self._stamp(updated)
        self.objects[key] = updated
        self.writes.append(("replace", obj["kind"], meta["name"]))
        return copy.deepcopy(updated)

    def patch(self, kind, namespace, name, body):
        self.threads.add(threading.get_ident())
        key = self._key(kind, namespace, name)
        live = self.objects.get(key)
        if live is None:
            raise ApiException(status=404, reason="Not Found")
        body = copy.deepcopy(body)
        version = (body.get("metadata") or {}).pop("resourceVersion", None)
        if version and version != live["metadata"]["resourceVersion"]:
            raise StoreConflictError(f"{kind} {name} was modified")
        new_finalizers = set((body.get("metadata") or {}).get("finalizers") or [])
        if live["metadata"].get("deletionTimestamp") and new_finalizers - set(live["metadata"].get("finalizers") or []):
            raise ApiException(status=422, reason="finalizers cannot be added to an object being deleted")
        old_spec = copy.deepcopy(live.get("spec"))
        merge_patch(live, body)
        if live.get("spec") != old_spec:
            live["metadata"]["generation"] += 1
        self._stamp(live)
        self.writes.append(("patch", kind, name))
        result = copy.deepcopy(live)
        if live["metadata"].get("deletionTimestamp") and not live["metadata"].get("finalizers"):
            del self.objects[key]
        return result

    def patch_status(self, kind, namespace, name, status):
        self.threads.add(threading.get_ident())
        live = self.objects.get(self._key(kind, namespace, name))
        if live is None:
            raise ApiException(status=404, reason="Not Found")
        live.setdefault("status", {})
        merge_patch(live["status"], status)
        self._stamp(live)
        self.writes.append(("patch_status", kind, name))
        return copy.deepcopy(live)

    def delete(self, kind, namespace, name):
        key = self._key(kind, namespace, name)
        live = self.objects.get(key)
        if live is None:
            return False
        self.writes.append(("delete", kind, name))
        if live["metadata"].get("finalizers"):
            live["metadata"].setdefault("deletionTimestamp", "2024-01-02T00:00:00Z")
            self._stamp(live)
        else:
            del self.objects[key]
        return True

    # test helpers

    def set_status(self, kind, namespace, name, status):
        """Overwrite status the way a foreign controller would."""
        self.objects[self._key(kind, namespace, name)]["status"] = copy.deepcopy(status)

    def update_spec(self, kind, namespace, name, spec):
        """Replace the spec, bumping generation like a user edit."""
        live = self.get(kind, namespace, name)
        live["spec"] = spec
        return self.replace(live)

    def names(self, kind, namespace=NAMESPACE):
        return [o["metadata"]["name"] for o in self.list(kind, namespace)]


class FakeKonnectAPI:
    """In-memory stand-in for KonnectClient."""

    def __init__(self, server_url: str = f"https://{SERVER_URL}"):
        self.server_url = server_url
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.dp_certificates: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.organization = {"id": "org-1", "name": "Test Org"}

    def fail(self, method: str, exc: Exception) -> None:
        """Make the next call of ``method`` raise ``exc``."""
        self.failures[method].append(exc)

    def _call(self, method: str, path: str) -> None:
        self.calls.append((method, path))
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def seed(self, path: str, entity: Dict[str, Any]) -> Dict[str, Any]:
        entity = copy.deepcopy(entity)
        entity.setdefault("id", str(uuid.uuid4()))
        self.collections[path][entity["id"]] = entity
        return copy.deepcopy(entity)

    def calls_to(self, method: str) -> List[str]:
        return [path for m, path in self.calls if m == method]

    def _find(self, path: str, entity_id: str) -> Dict[str, Any]:
        entity = self.collections[path].get(entity_id)
        if entity is None:
            raise KonnectNotFoundError(f"{path}/{entity_id} not found", 404)
        return entity

    async def create(self, path, body):
        self._call("create", path)
        entity = copy.deepcopy(body)
        entity["id"] = str(uuid.uuid4())
        if path == "/v2/control-planes":
            short = entity["id"][:8]
            entity["config"] = {
                "control_plane_endpoint": f"https://{short}.eu.cp0.konghq.com",
                "telemetry_endpoint": f"https://{short}.eu.tp0.konghq.com",
                "cluster_type": body.get("cluster_type", "CLUSTER_TYPE_CONTROL_PLANE"),
            }
        self.collections[path][entity["id"]] = entity
        return copy.deepcopy(entity)

    async def get(self, path, entity_id):
        self._call("get", path)
        return copy.deepcopy(self._find(path, entity_id))

    async def update(self, path, entity_id, body, method="PUT"):
        self._call("update", path)
        entity = self._find(path, entity_id)
        if method == "PATCH":
            entity.update(copy.deepcopy(body))
        else:
            keep = {k: entity[k] for k in ("id", "config") if k in entity}
            entity.clear()
            entity.update(copy.deepcopy(body))
            entity.update(keep)
        return copy.deepcopy(entity)

    async def delete(self, path, entity_id):
        self._call("delete", path)
        return self.collections[path].pop(entity_id, None) is not None

    async def list(self, path, params=None):
        self._call("list", path)
        items = list(self.collections[path].values())
        params = params or {}
        if "tags" in params:
            items = [i for i in items if params["tags"] in (i.get("tags") or [])]
        if "filter[labels][eq]" in params:
            key, _, value = params["filter[labels][eq]"].partition(":")
            items = [i for i in items if (i.get("labels") or {}).get(key) == value]
        return copy.deepcopy(items)

    async def get_organization(self):
        self._call("get_organization", "/v2/organizations/me")
        return dict(self.organization)

    async def list_dp_client_certificates(self, cp_id):
        self._call("list_dp_client_certificates", cp_id)
        return copy.deepcopy(self.dp_certificates[cp_id])

    async def create_dp_client_certificate(self, cp_id, cert_pem):
        self._call("create_dp_client_certificate", cp_id)
        item = {"id": str(uuid.uuid4()), "cert": cert_pem}
        self.dp_certificates[cp_id].append(item)
        return dict(item)


class Cluster:
    """Builds custom resources in a FakeStore."""

    def __init__(self, store: FakeStore):
        self.store = store

    @staticmethod
    def api_version(kind: str) -> str:
        if kind in BUILTIN_API_VERSIONS:
            return BUILTIN_API_VERSIONS[kind]
        group, version, _, _ = CUSTOM_KINDS[kind]
        return f"{group}/{version}"

    def add(self, kind: str, name: str, spec: Optional[Dict[str, Any]] = None,
            namespace: Optional[str] = NAMESPACE, **fields) -> Dict[str, Any]:
        obj = {
            "apiVersion": self.api_version(kind),
            "kind": kind,
            "metadata": {"name": name, "namespace": namespace},
        }
        if spec is not None:
            obj["spec"] = spec
        obj.update(fields)
        return self.store.create(obj)

    def get(self, kind: str, name: str, namespace: Optional[str] = NAMESPACE) -> Optional[Dict[str, Any]]:
        return self.store.get(kind, namespace, name)

    def auth(self, name: str = AUTH_NAME, valid: bool = True) -> Dict[str, Any]:
        self.add(C.KONNECT_AUTH_KIND, name, {"type": "token", "token": TOKEN, "serverURL": SERVER_URL})
        if valid:
            obj = self.get(C.KONNECT_AUTH_KIND, name)
            cond.set_condition(obj, cond.VALID, cond.TRUE, cond.REASON_VALID)
            obj["status"]["organizationID"] = "org-1"
            self.store.set_status(C.KONNECT_AUTH_KIND, NAMESPACE, name, obj["status"])
        return self.get(C.KONNECT_AUTH_KIND, name)

    def control_plane(self, name: str = "cp", auth: str = AUTH_NAME, **spec) -> Dict[str, Any]:
        spec.setdefault("createControlPlaneRequest", {"name": name})
        spec["konnect"] = {"authRef": {"name": auth}}
        return self.add(C.KONNECT_CONTROL_PLANE_KIND, name, spec)

    @staticmethod
    def cp_ref(name: str = "cp") -> Dict[str, Any]:
        return {"type": "konnectNamespacedRef", "konnectNamespacedRef": {"name": name}}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def cluster(store):
    return Cluster(store)


@pytest.fixture
def konnect_api():
    return FakeKonnectAPI()


@pytest.fixture
def api_factory(konnect_api):
    return MagicMock(return_value=konnect_api)


@pytest.fixture
def config():
    return OperatorConfig(
        dataplane_image="kong:3.9",
        requeue_waiting_seconds=5,
        requeue_slow_seconds=60,
        backoff_base_seconds=1,
        backoff_max_seconds=300,
    )
