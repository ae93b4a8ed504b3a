"""Konnect ID resolution.

Turns the references an entity declares into the remote IDs of its parents.
Resolution only reads from the store. A reference is resolved when it names a
remote ID directly, or when the object it names is ``Programmed`` and carries
a remote ID.
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import conditions as cond
from . import constants as C
from .entities import KonnectEntity, KonnectGatewayControlPlane, Reference, wrap
from .errors import DependencyNotReadyError, SpecValidationError

logger = logging.getLogger(__name__)

AUTH_TYPE_TOKEN = "token"
AUTH_TYPE_SECRET_REF = "secretRef"
AUTH_SECRET_KEY = "token"


@dataclass
class RefResult:
    """Outcome of resolving a single reference."""

    ref: Reference
    resolved: bool
    message: str = ""


@dataclass
class Resolution:
    """Outcome of resolving every reference of one entity."""

    ids: Dict[str, str] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    # kind -> referenced object, for references looked up in the store
    objects: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    results: List[RefResult] = field(default_factory=list)
    # a reference points at an object that can never be used as a parent
    invalid: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.invalid

    def _fail(self, ref: Reference, message: str, invalid: bool = False) -> None:
        (self.invalid if invalid else self.missing).append(message)
        self.results.append(RefResult(ref, False, message))


@dataclass
class APIAuth:
    """Credentials for the Konnect API as declared by an auth configuration."""

    server_url: str
    token: str
    obj: Dict[str, Any]


class Resolver:
    """Resolves entity references against the backing store."""

    def __init__(self, store):
        self.store = store

    def resolve(self, entity: KonnectEntity) -> Resolution:
        resolution = Resolution()
        for ref in entity.references():
            self._resolve_one(ref, resolution)
        return resolution

    def _resolve_one(self, ref: Reference, resolution: Resolution) -> None:
        if ref.konnect_id:
            resolution.ids[ref.id_field] = ref.konnect_id
            resolution.results.append(RefResult(ref, True))
            return
        if not ref.name:
            resolution._fail(ref, f"{ref.kind} reference has no name")
            return

        obj = self.store.get(ref.kind, ref.namespace, ref.name)
        if obj is None:
            resolution._fail(ref, f"{ref.describe()} not found")
            return
        if ref.blocks_deletion and obj["metadata"].get("deletionTimestamp"):
            resolution._fail(ref, f"{ref.describe()} is being deleted")
            return
        if ref.local_only:
            resolution.objects[ref.kind] = obj
            resolution.results.append(RefResult(ref, True))
            return

        target = wrap(obj)
        if isinstance(target, KonnectGatewayControlPlane) and target.is_mirror():
            resolution._fail(ref, f"{ref.describe()} is a Mirror control plane", invalid=True)
            return
        if not target.is_programmed() or not target.konnect_id:
            resolution._fail(ref, f"{ref.describe()} is not programmed yet")
            return

        resolution.objects[ref.kind] = obj
        if ref.id_field:
            resolution.ids[ref.id_field] = target.konnect_id
        if ref.provides_control_plane:
            cp_id = target.konnect_status().get("controlPlaneID")
            if not cp_id:
                resolution._fail(ref, f"{ref.describe()} has no control plane ID yet")
                return
            resolution.ids["controlPlaneID"] = cp_id
        resolution.results.append(RefResult(ref, True))

    # ------------------------------------------------------------------
    # Control plane and API auth
    # ------------------------------------------------------------------

    def control_plane_object(self, entity: KonnectEntity, depth: int = 3) -> Optional[Dict[str, Any]]:
        """The control plane object an entity belongs to, following parents.

        Returns None when the control plane is referenced by remote ID only.
        """
        if isinstance(entity, KonnectGatewayControlPlane):
            return entity.obj
        cp_ref = entity.control_plane_reference()
        if cp_ref is not None:
            if cp_ref.konnect_id or not cp_ref.name:
                return None
            return self.store.get(C.KONNECT_CONTROL_PLANE_KIND, cp_ref.namespace, cp_ref.name)
        if depth <= 0:
            return None
        for ref in entity.references():
            if not ref.provides_control_plane or not ref.name:
                continue
            parent = self.store.get(ref.kind, ref.namespace, ref.name)
            if parent is not None:
                return self.control_plane_object(wrap(parent), depth - 1)
        return None

    def resolve_auth(self, entity: KonnectEntity, control_plane: Optional[Dict[str, Any]]) -> APIAuth:
        """Find and read the API auth configuration used for an entity.

        The entity's own ``spec.konnect.authRef`` wins over the one of its
        control plane.
        """
        auth_ref = entity.auth_ref()
        if auth_ref is None and control_plane is not None:
            auth_ref = wrap(control_plane).auth_ref()
        if auth_ref is None:
            raise SpecValidationError(f"{entity.describe()} has no KonnectAPIAuthConfiguration reference")

        auth_obj = self.store.get(C.KONNECT_AUTH_KIND, auth_ref["namespace"], auth_ref["name"])
        if auth_obj is None:
            name = f"{C.KONNECT_AUTH_KIND} {auth_ref['namespace']}/{auth_ref['name']}"
            raise DependencyNotReadyError(f"{name} not found", [name])
        return self.read_auth(auth_obj)

    def read_auth(self, auth_obj: Dict[str, Any]) -> APIAuth:
        """Extract server URL and token from a KonnectAPIAuthConfiguration."""
        meta = auth_obj["metadata"]
        spec = auth_obj.get("spec") or {}
        server_url = spec.get("serverURL") or C.DEFAULT_KONNECT_SERVER_URL
        auth_type = spec.get("type", AUTH_TYPE_TOKEN)

        if auth_type == AUTH_TYPE_TOKEN:
            token = spec.get("token")
            if not token:
                raise SpecValidationError(f"{C.KONNECT_AUTH_KIND} {meta['name']} has no token")
            return APIAuth(server_url, token, auth_obj)

        if auth_type == AUTH_TYPE_SECRET_REF:
            secret_ref = spec.get("secretRef") or {}
            namespace = secret_ref.get("namespace") or meta.get("namespace")
            name = f"Secret {namespace}/{secret_ref.get('name')}"
            secret = self.store.get("Secret", namespace, secret_ref.get("name"))
            if secret is None:
                raise DependencyNotReadyError(f"{name} not found", [name])
            encoded = (secret.get("data") or {}).get(AUTH_SECRET_KEY)
            if not encoded:
                raise SpecValidationError(f"{name} has no {AUTH_SECRET_KEY!r} key")
            return APIAuth(server_url, base64.b64decode(encoded).decode().strip(), auth_obj)

        raise SpecValidationError(f"{C.KONNECT_AUTH_KIND} {meta['name']} has unsupported type {auth_type!r}")


def auth_is_valid(auth_obj: Dict[str, Any]) -> bool:
    return cond.is_condition_true(auth_obj, cond.VALID)
