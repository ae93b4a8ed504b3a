"""Main Kopf operator for DataPlane, KonnectExtension and Konnect entity resources."""

import asyncio
import copy
import logging
import threading
from typing import Any, Dict

import kopf

from . import constants as C
from .config import OperatorConfig, load_config
from .dataplane import DataPlaneReconciler
from .entities import ENTITY_KINDS
from .errors import StoreConflictError
from .extension import KonnectExtensionReconciler
from .konnect import KonnectEntityReconciler
from .konnect_api import KonnectClientFactory
from .kube import CUSTOM_KINDS, KubeStore, get_k8s_clients
from .reconcile import KeyedLocks, ReconcileResult

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# read at import time, timer intervals are fixed when the handlers register
SETTINGS: OperatorConfig = load_config()


def _as_dict(body) -> Dict[str, Any]:
    """Mutable copy of a kopf body."""
    return copy.deepcopy(dict(body))


def _deleting(body) -> bool:
    return bool(body.get("metadata", {}).get("deletionTimestamp"))


def _finish(result: ReconcileResult) -> None:
    """Turn a requeue request into a kopf retry."""
    if not result.done:
        raise kopf.TemporaryError(result.message or "not converged yet", delay=result.requeue_after)


def _resource(kind: str):
    group, version, plural, _ = CUSTOM_KINDS[kind]
    return group, version, plural


# =============================================================================
# Startup
# =============================================================================

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **kwargs):
    """Build the shared store and reconcilers."""
    config: OperatorConfig = memo.get("config") or SETTINGS
    logging.getLogger().setLevel(config.log_level.upper())
    settings.posting.level = logging.WARNING

    store = KubeStore(get_k8s_clients())
    api_factory = KonnectClientFactory(
        timeout=config.konnect_api_timeout_seconds,
        idle_seconds=config.konnect_client_idle_seconds,
    )

    memo.config = config
    memo.api_factory = api_factory
    memo.dataplanes = DataPlaneReconciler(store, config)
    memo.konnect = KonnectEntityReconciler(store, api_factory, config)
    memo.extensions = KonnectExtensionReconciler(store, api_factory, config)
    memo.sync_locks = KeyedLocks(threading.Lock)
    memo.async_locks = KeyedLocks(asyncio.Lock)
    logger.info(f"gateway-operator started with Konnect entity kinds: {', '.join(sorted(ENTITY_KINDS))}")


@kopf.on.cleanup()
async def shutdown(memo: kopf.Memo, **kwargs):
    await memo.api_factory.close()


# =============================================================================
# DataPlane
# =============================================================================

@kopf.on.create(*_resource(C.DATAPLANE_KIND))
@kopf.on.update(*_resource(C.DATAPLANE_KIND))
@kopf.on.resume(*_resource(C.DATAPLANE_KIND))
def reconcile_dataplane(body, uid, retry, memo: kopf.Memo, **kwargs):
    """Converge Deployment, Services, HPA and PDB of a DataPlane."""
    try:
        with memo.sync_locks(uid):
            result = memo.dataplanes.reconcile(_as_dict(body))
    except StoreConflictError as e:
        raise kopf.TemporaryError(str(e), delay=memo.config.backoff(retry))
    except Exception as e:
        logger.error(f"Failed to reconcile DataPlane {kwargs.get('namespace')}/{kwargs.get('name')}: {e}",
                     exc_info=True)
        raise
    _finish(result)


@kopf.timer(*_resource(C.DATAPLANE_KIND), interval=SETTINGS.requeue_slow_seconds,
            idle=SETTINGS.requeue_slow_seconds)
def resync_dataplane(body, uid, memo: kopf.Memo, **kwargs):
    """Correct drift of DataPlane children that happened without a DataPlane change."""
    if _deleting(body):
        return
    try:
        with memo.sync_locks(uid):
            memo.dataplanes.reconcile(_as_dict(body))
    except StoreConflictError as e:
        logger.debug(f"DataPlane resync lost a write race, next pass will retry: {e}")


@kopf.on.delete(*_resource(C.DATAPLANE_KIND), optional=True)
def delete_dataplane(body, uid, memo: kopf.Memo, **kwargs):
    memo.dataplanes.delete(_as_dict(body))
    memo.sync_locks.forget(uid)


# =============================================================================
# Konnect entities
# =============================================================================

async def _reconcile_entity(body, uid, retry, memo: kopf.Memo) -> ReconcileResult:
    try:
        async with memo.async_locks(uid):
            return await memo.konnect.reconcile(_as_dict(body), retry=retry)
    except StoreConflictError as e:
        raise kopf.TemporaryError(str(e), delay=memo.config.backoff(retry))
    except Exception as e:
        meta = body.get("metadata", {})
        logger.error(f"Failed to reconcile {body.get('kind')} {meta.get('namespace')}/{meta.get('name')}: {e}",
                     exc_info=True)
        raise


def _register_entity_handlers(kind: str) -> None:
    resource = _resource(kind)

    @kopf.on.create(*resource)
    @kopf.on.update(*resource)
    @kopf.on.resume(*resource)
    async def reconcile_entity(body, uid, retry, memo: kopf.Memo, **kwargs):
        _finish(await _reconcile_entity(body, uid, retry, memo))

    @kopf.timer(*resource, interval=SETTINGS.konnect_sync_period_seconds,
                idle=SETTINGS.konnect_sync_period_seconds)
    async def resync_entity(body, uid, memo: kopf.Memo, **kwargs):
        if _deleting(body):
            return
        await _reconcile_entity(body, uid, 0, memo)

    @kopf.on.delete(*resource, optional=True)
    async def delete_entity(body, uid, retry, memo: kopf.Memo, **kwargs):
        try:
            async with memo.async_locks(uid):
                result = await memo.konnect.delete(_as_dict(body), retry=retry)
        except StoreConflictError as e:
            raise kopf.TemporaryError(str(e), delay=memo.config.backoff(retry))
        _finish(result)
        memo.async_locks.forget(uid)


for _kind in ENTITY_KINDS:
    _register_entity_handlers(_kind)


# =============================================================================
# KonnectAPIAuthConfiguration
# =============================================================================

@kopf.on.create(*_resource(C.KONNECT_AUTH_KIND))
@kopf.on.update(*_resource(C.KONNECT_AUTH_KIND))
@kopf.on.resume(*_resource(C.KONNECT_AUTH_KIND))
async def reconcile_auth(body, retry, memo: kopf.Memo, **kwargs):
    """Validate Konnect API credentials."""
    _finish(await memo.konnect.reconcile_auth(_as_dict(body), retry=retry))


@kopf.timer(*_resource(C.KONNECT_AUTH_KIND), interval=SETTINGS.konnect_sync_period_seconds,
            idle=SETTINGS.konnect_sync_period_seconds)
async def revalidate_auth(body, memo: kopf.Memo, **kwargs):
    if _deleting(body):
        return
    await memo.konnect.reconcile_auth(_as_dict(body))


# =============================================================================
# KonnectExtension
# =============================================================================

@kopf.on.create(*_resource(C.KONNECT_EXTENSION_KIND))
@kopf.on.update(*_resource(C.KONNECT_EXTENSION_KIND))
@kopf.on.resume(*_resource(C.KONNECT_EXTENSION_KIND))
async def reconcile_extension(body, uid, retry, memo: kopf.Memo, **kwargs):
    """Resolve the control plane and client certificate of a KonnectExtension."""
    try:
        async with memo.async_locks(uid):
            result = await memo.extensions.reconcile(_as_dict(body), retry=retry)
    except StoreConflictError as e:
        raise kopf.TemporaryError(str(e), delay=memo.config.backoff(retry))
    except Exception as e:
        logger.error(f"Failed to reconcile KonnectExtension {kwargs.get('namespace')}/{kwargs.get('name')}: {e}",
                     exc_info=True)
        raise
    _finish(result)


@kopf.timer(*_resource(C.KONNECT_EXTENSION_KIND), interval=SETTINGS.konnect_sync_period_seconds,
            idle=SETTINGS.konnect_sync_period_seconds)
async def resync_extension(body, uid, memo: kopf.Memo, **kwargs):
    if _deleting(body):
        return
    async with memo.async_locks(uid):
        await memo.extensions.reconcile(_as_dict(body))


@kopf.on.delete(*_resource(C.KONNECT_EXTENSION_KIND), optional=True)
async def delete_extension(body, uid, memo: kopf.Memo, **kwargs):
    async with memo.async_locks(uid):
        result = await memo.extensions.delete(_as_dict(body))
    _finish(result)
    memo.async_locks.forget(uid)


def main():
    """Entry point for the operator."""
    config = SETTINGS
    logging.basicConfig(
        level=config.log_level.upper(),
        format=LOG_FORMAT,
    )
    # Kopf takes over from here
    if config.watch_namespace:
        kopf.run(namespaces=[config.watch_namespace], memo=kopf.Memo(config=config))
    else:
        kopf.run(clusterwide=True, memo=kopf.Memo(config=config))


if __name__ == "__main__":
    main()
