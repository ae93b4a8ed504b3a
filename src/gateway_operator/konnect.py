"""Konnect entity reconciler.

One reconciler serves every Konnect-backed kind. A pass resolves the entity's
references, resolves API credentials, then creates, adopts or updates the
remote entity and records its ID. Deletion removes the remote entity once no
child still depends on it.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from . import conditions as cond
from . import constants as C
from .config import OperatorConfig
from .entities import (
    ADOPT_MODE_MATCH,
    ADOPT_MODE_OVERRIDE,
    DEPENDENT_KINDS,
    KonnectEntity,
    KonnectGatewayControlPlane,
    in_use_finalizer,
    wrap,
)
from .errors import (
    AdoptionMismatchError,
    DependencyNotReadyError,
    KonnectAPIError,
    KonnectConflictError,
    KonnectNotFoundError,
    KonnectRateLimitError,
    SpecValidationError,
    UIDTagConflictError,
    is_retryable,
)
from .reconcile import DONE, ReconcileResult, requeue
from .resolver import APIAuth, Resolution, Resolver, auth_is_valid

logger = logging.getLogger(__name__)

# transient failures stay invisible in status until this many retries
RETRIES_BEFORE_UNKNOWN = 5

REF_CONDITION_TYPES = (
    cond.CONTROL_PLANE_REF_VALID,
    cond.SERVICE_REF_VALID,
    cond.UPSTREAM_REF_VALID,
    cond.CERTIFICATE_REF_VALID,
    cond.CONSUMER_REF_VALID,
    cond.PLUGIN_REF_VALID,
)

IN_USE_PREFIX, IN_USE_SUFFIX = C.FINALIZER_IN_USE_TEMPLATE.split("{kind}")


def is_in_use_marker(finalizer: str) -> bool:
    """Whether a finalizer was placed by a child entity, as opposed to our own cleanup finalizer."""
    return (finalizer.startswith(IN_USE_PREFIX) and finalizer.endswith(IN_USE_SUFFIX)
            and finalizer != C.FINALIZER_KONNECT_CLEANUP)


class KonnectEntityReconciler:
    """Reconciles Konnect entities, control planes and API auth configurations."""

    def __init__(self, store, api_factory, config: Optional[OperatorConfig] = None):
        self.store = store
        self.api_factory = api_factory
        self.config = config or OperatorConfig()
        self.resolver = Resolver(store)

    # ==========================================================================
    # Reconcile
    # ==========================================================================

    async def reconcile(self, obj: Dict[str, Any], retry: int = 0) -> ReconcileResult:
        """Run one reconcile pass and persist the resulting status."""
        entity = wrap(obj)
        before = dict(entity.konnect_status())
        try:
            if isinstance(entity, KonnectGatewayControlPlane):
                result = await self._reconcile_control_plane(entity, retry)
            else:
                result = await self._reconcile_entity(entity, retry)
        except DependencyNotReadyError as e:
            logger.info(f"{entity.describe()} is waiting: {e}")
            entity.set_condition(cond.PROGRAMMED, cond.FALSE, cond.REASON_PENDING, str(e))
            result = requeue(self.config.requeue_waiting_seconds, str(e))
        except SpecValidationError as e:
            logger.warning(f"{entity.describe()} is invalid: {e}")
            entity.set_condition(cond.PROGRAMMED, cond.FALSE, cond.REASON_PENDING, str(e))
            result = requeue(self.config.requeue_slow_seconds, str(e))

        await asyncio.to_thread(
            self.store.patch_status, entity.kind, entity.namespace, entity.name, entity.status_patch(before)
        )
        return result

    async def _reconcile_entity(self, entity: KonnectEntity, retry: int) -> ReconcileResult:
        resolution, auth = await asyncio.to_thread(self._prepare_entity, entity)
        api = self.api_factory(auth.server_url, auth.token)
        entity.set_parent_ids(resolution.ids)
        entity.set_server(api.server_url, (auth.obj.get("status") or {}).get("organizationID"))
        return await self._program(entity, api, resolution.ids, resolution.objects, retry)

    def _prepare_entity(self, entity: KonnectEntity) -> Tuple[Resolution, APIAuth]:
        """Store side of a pass: finalizers, reference resolution and credentials."""
        self.store.add_finalizer(entity.obj, C.FINALIZER_KONNECT_CLEANUP)

        resolution = self.resolver.resolve(entity)
        self._set_reference_conditions(entity, resolution)
        if not resolution.ok:
            if resolution.invalid:
                raise SpecValidationError("; ".join(resolution.invalid))
            raise DependencyNotReadyError("; ".join(resolution.missing), resolution.missing)
        if not resolution.ids.get("controlPlaneID"):
            raise SpecValidationError(f"{entity.describe()} does not reference a control plane")

        for result in resolution.results:
            ref = result.ref
            if ref.blocks_deletion and ref.kind in resolution.objects:
                self.store.add_finalizer(resolution.objects[ref.kind], in_use_finalizer(entity.kind))

        auth = self._resolve_auth(entity, self.resolver.control_plane_object(entity))
        return resolution, auth

    async def _reconcile_control_plane(self, entity: KonnectGatewayControlPlane, retry: int) -> ReconcileResult:
        auth = await asyncio.to_thread(self._resolve_auth, entity, entity.obj)
        api = self.api_factory(auth.server_url, auth.token)
        entity.set_server(api.server_url, (auth.obj.get("status") or {}).get("organizationID"))

        if not entity.is_mirror():
            await asyncio.to_thread(self.store.add_finalizer, entity.obj, C.FINALIZER_KONNECT_CLEANUP)
            return await self._program(entity, api, {}, {}, retry)

        mirror_id = entity.mirror_id()
        if not mirror_id:
            raise SpecValidationError("mirror control plane has no spec.mirror.konnect.id")
        try:
            remote = await api.get(entity.api_path({}), mirror_id)
        except KonnectNotFoundError:
            message = f"control plane {mirror_id} does not exist in Konnect"
            entity.set_condition(cond.MIRRORED, cond.FALSE, cond.REASON_INVALID, message)
            entity.set_condition(cond.PROGRAMMED, cond.FALSE, cond.REASON_PENDING, message)
            return requeue(self.config.requeue_slow_seconds, message)
        except KonnectAPIError as e:
            if is_retryable(e):
                return self._retry(entity, retry, e)
            entity.set_condition(cond.MIRRORED, cond.FALSE, cond.REASON_API_OP_FAILED, str(e))
            return requeue(self.config.requeue_slow_seconds, str(e))

        entity.set_konnect_id(remote.get("id") or mirror_id)
        entity.apply_remote(remote)
        entity.set_condition(cond.MIRRORED, cond.TRUE, cond.REASON_MIRRORED)
        entity.set_condition(cond.PROGRAMMED, cond.TRUE, cond.REASON_PROGRAMMED)
        logger.info(f"{entity.describe()} mirrors control plane {mirror_id}")
        return DONE

    # ------------------------------------------------------------------
    # Remote programming
    # ------------------------------------------------------------------

    async def _program(
        self,
        entity: KonnectEntity,
        api,
        ids: Dict[str, str],
        resolved: Dict[str, Dict[str, Any]],
        retry: int,
    ) -> ReconcileResult:
        path = entity.api_path(ids)
        body = entity.payload(ids, resolved)
        reason = cond.REASON_API_OP_FAILED
        try:
            remote = None
            if entity.konnect_id:
                reason = cond.REASON_FAILED_TO_UPDATE
                remote = await self._sync(api, entity, path, body)
            if remote is None and entity.adoption():
                reason = cond.REASON_FAILED_TO_ADOPT
                remote = await self._adopt(api, entity, path, body)
            elif remote is None:
                reason = cond.REASON_FAILED_TO_CREATE
                remote = await self._create(api, entity, path, body)
        except (UIDTagConflictError, AdoptionMismatchError, SpecValidationError) as e:
            return self._fail(entity, reason, e)
        except KonnectAPIError as e:
            if is_retryable(e):
                return self._retry(entity, retry, e)
            return self._fail(entity, reason, e)

        entity.set_konnect_id(remote["id"])
        entity.apply_remote(remote)
        if entity.set_condition(cond.PROGRAMMED, cond.TRUE, cond.REASON_PROGRAMMED):
            logger.info(f"{entity.describe()} programmed in Konnect as {remote['id']}")
        return DONE

    async def _sync(self, api, entity: KonnectEntity, path: str, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Correct drift of an entity that already has a remote ID.

        Returns None when the remote entity is gone, after forgetting its ID.
        """
        konnect_id = entity.konnect_id
        try:
            remote = await api.get(path, konnect_id)
        except KonnectNotFoundError:
            logger.warning(f"{entity.describe()} was deleted from Konnect out of band, recreating")
            entity.clear_konnect_id()
            return None
        if not entity.drifted(body, remote):
            remote.setdefault("id", konnect_id)
            return remote
        logger.info(f"{entity.describe()} drifted from its remote state, updating {konnect_id}")
        updated = await api.update(path, konnect_id, body, entity.update_method)
        updated.setdefault("id", konnect_id)
        return updated

    async def _create(self, api, entity: KonnectEntity, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await api.create(path, body)
        except KonnectConflictError:
            existing = await self._find_owned(api, entity, path)
            if existing is None:
                raise
            logger.info(f"{entity.describe()} already exists in Konnect as {existing['id']}, taking it over")
            updated = await api.update(path, existing["id"], body, entity.update_method)
            updated.setdefault("id", existing["id"])
            return updated

    async def _find_owned(self, api, entity: KonnectEntity, path: str) -> Optional[Dict[str, Any]]:
        for item in await api.list(path, entity.list_params()):
            if entity.remote_uid(item) == entity.uid and item.get("id"):
                return item
        return None

    async def _adopt(self, api, entity: KonnectEntity, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        adoption = entity.adoption()
        mode = adoption.get("mode") or ADOPT_MODE_OVERRIDE
        remote_id = (adoption.get("konnect") or {}).get("id")
        if not remote_id:
            raise SpecValidationError("spec.adopt.konnect.id is required")
        if mode not in (ADOPT_MODE_OVERRIDE, ADOPT_MODE_MATCH):
            raise SpecValidationError(f"adopt mode {mode!r} is not supported")

        remote = await api.get(path, remote_id)
        owner = entity.remote_uid(remote)
        if owner and owner != entity.uid:
            raise UIDTagConflictError(remote_id, entity.uid, owner)

        if mode == ADOPT_MODE_MATCH:
            # the remote entity is left untouched, only its ID is taken
            if not entity.matches(body, remote):
                raise AdoptionMismatchError(remote_id)
            logger.info(f"{entity.describe()} adopted matching Konnect entity {remote_id}")
            remote.setdefault("id", remote_id)
            return remote

        logger.info(f"{entity.describe()} adopting Konnect entity {remote_id}")
        updated = await api.update(path, remote_id, body, entity.update_method)
        updated.setdefault("id", remote_id)
        return updated

    def _fail(self, entity: KonnectEntity, reason: str, exc: Exception) -> ReconcileResult:
        logger.error(f"{entity.describe()}: {reason}: {exc}")
        entity.set_condition(cond.PROGRAMMED, cond.FALSE, reason, str(exc))
        return requeue(self.config.requeue_slow_seconds, str(exc))

    def _retry(self, entity: KonnectEntity, retry: int, exc: KonnectAPIError) -> ReconcileResult:
        delay = self.config.backoff(retry)
        if isinstance(exc, KonnectRateLimitError) and exc.retry_after:
            delay = exc.retry_after
        logger.warning(f"Transient Konnect API error for {entity.describe()}: {exc}; retrying in {delay}s")
        if retry >= RETRIES_BEFORE_UNKNOWN:
            entity.set_condition(cond.PROGRAMMED, cond.UNKNOWN, cond.REASON_API_OP_FAILED, str(exc))
        return requeue(delay, str(exc))

    # ------------------------------------------------------------------
    # Conditions for references and auth
    # ------------------------------------------------------------------

    def _set_reference_conditions(self, entity: KonnectEntity, resolution: Resolution) -> None:
        seen = set()
        for result in resolution.results:
            cond_type = result.ref.condition_type
            if not cond_type:
                continue
            seen.add(cond_type)
            if result.resolved:
                entity.set_condition(cond_type, cond.TRUE, cond.REASON_VALID)
            else:
                entity.set_condition(cond_type, cond.FALSE, cond.REASON_INVALID, result.message)
        for cond_type in REF_CONDITION_TYPES:
            if cond_type not in seen:
                cond.remove_condition(entity.obj, cond_type)

    def _resolve_auth(self, entity: KonnectEntity, control_plane: Optional[Dict[str, Any]]) -> APIAuth:
        try:
            auth = self.resolver.resolve_auth(entity, control_plane)
        except DependencyNotReadyError as e:
            entity.set_condition(cond.API_AUTH_RESOLVED_REF, cond.FALSE, cond.REASON_REF_NOT_FOUND, str(e))
            raise
        except SpecValidationError as e:
            entity.set_condition(cond.API_AUTH_RESOLVED_REF, cond.FALSE, cond.REASON_INVALID, str(e))
            raise
        entity.set_condition(cond.API_AUTH_RESOLVED_REF, cond.TRUE, cond.REASON_RESOLVED)

        if not auth_is_valid(auth.obj):
            message = f"{C.KONNECT_AUTH_KIND} {auth.obj['metadata']['name']} is not valid"
            entity.set_condition(cond.API_AUTH_VALID, cond.FALSE, cond.REASON_INVALID, message)
            raise DependencyNotReadyError(message, [message])
        entity.set_condition(cond.API_AUTH_VALID, cond.TRUE, cond.REASON_VALID)
        return auth

    # ==========================================================================
    # Delete
    # ==========================================================================

    async def delete(self, obj: Dict[str, Any], retry: int = 0) -> ReconcileResult:
        """Delete the remote entity once nothing depends on it, then release finalizers."""
        entity = wrap(obj)
        finalizers = obj["metadata"].get("finalizers") or []

        markers = [f for f in finalizers if is_in_use_marker(f)]
        if markers:
            dependents = await asyncio.to_thread(self._live_dependents, entity)
            if dependents:
                message = f"waiting for dependents to be deleted: {', '.join(dependents)}"
                logger.info(f"{entity.describe()} {message}")
                return requeue(self.config.requeue_waiting_seconds, message)
            for marker in markers:
                await asyncio.to_thread(self.store.remove_finalizer, obj, marker)

        if C.FINALIZER_KONNECT_CLEANUP not in finalizers:
            return DONE

        mirror = isinstance(entity, KonnectGatewayControlPlane) and entity.is_mirror()
        if entity.konnect_id and not mirror:
            result = await self._delete_remote(entity, retry)
            if result is not None:
                return result

        await asyncio.to_thread(self._release_parents, entity)
        await asyncio.to_thread(self.store.remove_finalizer, obj, C.FINALIZER_KONNECT_CLEANUP)
        logger.info(f"{entity.describe()} finalized")
        return DONE

    def _entity_auth(self, entity: KonnectEntity) -> APIAuth:
        return self.resolver.resolve_auth(entity, self.resolver.control_plane_object(entity))

    async def _delete_remote(self, entity: KonnectEntity, retry: int) -> Optional[ReconcileResult]:
        """Delete the remote entity; returns a requeue result when it must be retried."""
        try:
            auth = await asyncio.to_thread(self._entity_auth, entity)
        except (DependencyNotReadyError, SpecValidationError) as e:
            logger.warning(f"Cannot reach Konnect to delete {entity.describe()} ({e}), leaving it orphaned")
            return None

        api = self.api_factory(auth.server_url, auth.token)
        path = entity.api_path(entity.parent_ids())
        try:
            if await api.delete(path, entity.konnect_id):
                logger.info(f"Deleted {entity.describe()} from Konnect ({entity.konnect_id})")
            else:
                logger.info(f"{entity.describe()} was already gone from Konnect")
        except KonnectAPIError as e:
            if is_retryable(e):
                return self._retry(entity, retry, e)
            logger.error(f"Failed to delete {entity.describe()} from Konnect: {e}")
            entity.set_condition(cond.PROGRAMMED, cond.FALSE, cond.REASON_API_OP_FAILED, str(e))
            await asyncio.to_thread(
                self.store.patch_status, entity.kind, entity.namespace, entity.name, entity.status_patch({})
            )
            return requeue(self.config.requeue_slow_seconds, str(e))
        return None

    def _referencing_children(self, parent: KonnectEntity, child_kind: str, exclude_uid: str = "") -> List[str]:
        children = []
        for child in self.store.list(child_kind, parent.namespace):
            if child["metadata"].get("uid") == exclude_uid:
                continue
            for ref in wrap(child).references():
                if (ref.blocks_deletion and ref.kind == parent.kind
                        and ref.name == parent.name and ref.namespace == parent.namespace):
                    children.append(f"{child_kind} {child['metadata']['name']}")
                    break
        return children

    def _live_dependents(self, entity: KonnectEntity) -> List[str]:
        dependents = []
        for child_kind in DEPENDENT_KINDS.get(entity.kind, []):
            dependents.extend(self._referencing_children(entity, child_kind))
        return dependents

    def _release_parents(self, entity: KonnectEntity) -> None:
        """Drop this entity's in-use marker from parents no sibling still uses."""
        for ref in entity.references():
            if not ref.blocks_deletion or not ref.name:
                continue
            parent = self.store.get(ref.kind, ref.namespace, ref.name)
            if parent is None:
                continue
            if not self._referencing_children(wrap(parent), entity.kind, exclude_uid=entity.uid):
                self.store.remove_finalizer(parent, in_use_finalizer(entity.kind))

    # ==========================================================================
    # API auth configurations
    # ==========================================================================

    async def reconcile_auth(self, obj: Dict[str, Any], retry: int = 0) -> ReconcileResult:
        """Validate the credentials of a KonnectAPIAuthConfiguration."""
        meta = obj["metadata"]
        if not obj.get("status"):
            obj["status"] = {}
        status = obj["status"]
        result = DONE
        try:
            auth = await asyncio.to_thread(self.resolver.read_auth, obj)
            api = self.api_factory(auth.server_url, auth.token)
            org = await api.get_organization()
        except DependencyNotReadyError as e:
            cond.set_condition(obj, cond.VALID, cond.FALSE, cond.REASON_REF_NOT_FOUND, str(e))
            result = requeue(self.config.requeue_waiting_seconds, str(e))
        except SpecValidationError as e:
            cond.set_condition(obj, cond.VALID, cond.FALSE, cond.REASON_INVALID, str(e))
            result = requeue(self.config.requeue_slow_seconds, str(e))
        except KonnectAPIError as e:
            if is_retryable(e):
                logger.warning(f"Transient error validating {C.KONNECT_AUTH_KIND} {meta['name']}: {e}")
                return requeue(self.config.backoff(retry), str(e))
            cond.set_condition(obj, cond.VALID, cond.FALSE, cond.REASON_INVALID, str(e))
            result = requeue(self.config.requeue_slow_seconds, str(e))
        else:
            status["serverURL"] = api.server_url
            if org.get("id"):
                status["organizationID"] = org["id"]
            if cond.set_condition(obj, cond.VALID, cond.TRUE, cond.REASON_VALID):
                logger.info(f"{C.KONNECT_AUTH_KIND} {meta['namespace']}/{meta['name']} is valid "
                            f"for organization {org.get('name') or org.get('id')}")

        await asyncio.to_thread(self.store.patch_status, C.KONNECT_AUTH_KIND, meta.get("namespace"), meta["name"],
                                obj["status"])
        return result
