"""Shared reconcile plumbing: outcomes and comparison against live objects."""

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass.

    ``requeue_after`` asks for another pass after the given number of
    seconds; ``None`` means the object converged.
    """

    requeue_after: Optional[float] = None
    message: str = ""

    @property
    def done(self) -> bool:
        return self.requeue_after is None


DONE = ReconcileResult()


def requeue(after: float, message: str = "") -> ReconcileResult:
    return ReconcileResult(requeue_after=after, message=message)


def is_subset(desired: Any, live: Any) -> bool:
    """Whether every field set in ``desired`` has the same value in ``live``.

    Fields the API server defaults (and which the desired object leaves
    unset) are ignored. Lists must match element by element.
    """
    if desired in ({}, []) and live is None:
        return True
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(is_subset(v, live.get(k)) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    if isinstance(desired, (int, float)) and isinstance(live, str):
        return str(desired) == live
    if isinstance(desired, str) and isinstance(live, (int, float)):
        return desired == str(live)
    return desired == live


def diff_fields(desired: Dict[str, Any], live: Dict[str, Any], keys: List[str]) -> Dict[str, Any]:
    """Return the subset of ``keys`` whose desired value is not reflected in live."""
    changed = {}
    for key in keys:
        if key not in desired:
            continue
        if not is_subset(desired[key], (live or {}).get(key)):
            changed[key] = desired[key]
    return changed


def oldest_first(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order objects by creation time, then name."""
    return sorted(
        items,
        key=lambda o: (o["metadata"].get("creationTimestamp") or "", o["metadata"].get("name") or ""),
    )


class KeyedLocks:
    """One lock per object UID so passes over the same object never overlap."""

    def __init__(self, factory: Callable[[], Any]):
        self._factory = factory
        self._locks: Dict[str, Any] = {}
        self._guard = threading.Lock()

    def __call__(self, key: str):
        with self._guard:
            if key not in self._locks:
                self._locks[key] = self._factory()
            return self._locks[key]

    def forget(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)
