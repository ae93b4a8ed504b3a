"""Condition model shared by every reconciled resource.

Conditions live in ``status.conditions`` of the resource dict and are keyed
by type. Every condition is stamped with the generation it was computed for,
so a condition written for an older generation is never trusted as current.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Statuses
TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"

# =============================================================================
# Condition Types
# =============================================================================

READY = "Ready"
PROGRAMMED = "Programmed"
MIRRORED = "Mirrored"
API_AUTH_RESOLVED_REF = "APIAuthResolvedRef"
API_AUTH_VALID = "APIAuthValid"
VALID = "Valid"
CONTROL_PLANE_REF_VALID = "ControlPlaneRefValid"
SERVICE_REF_VALID = "KongServiceRefValid"
UPSTREAM_REF_VALID = "KongUpstreamRefValid"
CERTIFICATE_REF_VALID = "KongCertificateRefValid"
CONSUMER_REF_VALID = "KongConsumerRefValid"
PLUGIN_REF_VALID = "KongPluginRefValid"
DATAPLANE_CERT_PROVISIONED = "DataPlaneCertificateProvisioned"

# =============================================================================
# Reasons
# =============================================================================

REASON_READY = "Ready"
REASON_WAITING_TO_BECOME_READY = "WaitingToBecomeReady"
REASON_DEPENDENCIES_NOT_READY = "DependenciesNotReady"
REASON_VALIDATION_FAILED = "ValidationFailed"
REASON_PENDING = "Pending"
REASON_PROVISIONING = "Provisioning"
REASON_PROGRAMMED = "Programmed"
REASON_MIRRORED = "Mirrored"
REASON_FAILED_TO_CREATE = "FailedToCreate"
REASON_FAILED_TO_UPDATE = "FailedToUpdate"
REASON_FAILED_TO_ADOPT = "FailedToAdopt"
REASON_API_OP_FAILED = "KonnectAPIOpFailed"
REASON_RESOLVED = "Resolved"
REASON_REF_NOT_FOUND = "RefNotFound"
REASON_VALID = "Valid"
REASON_INVALID = "Invalid"
REASON_PROVISIONED = "Provisioned"
REASON_INVALID_SECRET = "InvalidSecret"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_conditions(obj: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Return the (mutable) conditions list of a resource, creating it if needed.

    An existing status dict is kept so callers holding a reference to it see
    the new conditions.
    """
    if obj.get("status") is None:
        obj["status"] = {}
    if obj["status"].get("conditions") is None:
        obj["status"]["conditions"] = []
    return obj["status"]["conditions"]


def get_condition(obj: Dict[str, Any], cond_type: str) -> Optional[Dict[str, Any]]:
    """Return the condition of the given type, or None."""
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == cond_type:
            return cond
    return None


def set_condition(
    obj: Dict[str, Any],
    cond_type: str,
    status: str,
    reason: str,
    message: str = "",
) -> bool:
    """Set a condition on the resource, replacing any condition of the same type.

    ``observedGeneration`` is stamped from the resource's current generation.
    ``lastTransitionTime`` only moves when the status value changes.
    Returns True when anything about the condition changed.
    """
    generation = (obj.get("metadata") or {}).get("generation", 0)
    conditions = get_conditions(obj)

    new = {
        "type": cond_type,
        "status": status,
        "reason": reason,
        "message": message,
        "observedGeneration": generation,
        "lastTransitionTime": _now(),
    }

    for i, existing in enumerate(conditions):
        if existing.get("type") != cond_type:
            continue
        if existing.get("status") == status:
            new["lastTransitionTime"] = existing.get("lastTransitionTime", new["lastTransitionTime"])
        changed = any(existing.get(k) != new[k] for k in ("status", "reason", "message", "observedGeneration"))
        conditions[i] = new
        return changed

    conditions.append(new)
    return True


def remove_condition(obj: Dict[str, Any], cond_type: str) -> bool:
    """Drop the condition of the given type. Returns True if one was removed."""
    conditions = (obj.get("status") or {}).get("conditions")
    if not conditions:
        return False
    kept = [c for c in conditions if c.get("type") != cond_type]
    obj["status"]["conditions"] = kept
    return len(kept) != len(conditions)


def is_condition_true(obj: Dict[str, Any], cond_type: str) -> bool:
    """True iff the condition is True and was computed for the current generation."""
    cond = get_condition(obj, cond_type)
    if cond is None or cond.get("status") != TRUE:
        return False
    generation = (obj.get("metadata") or {}).get("generation", 0)
    return cond.get("observedGeneration") == generation


def is_ready(obj: Dict[str, Any]) -> bool:
    """Ready=True for the current generation."""
    return is_condition_true(obj, READY)


def is_programmed(obj: Dict[str, Any]) -> bool:
    """Programmed=True for the current generation."""
    return is_condition_true(obj, PROGRAMMED)
