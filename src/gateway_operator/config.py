"""Operator configuration assembled at startup."""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from . import constants as C

logger = logging.getLogger(__name__)


@dataclass
class OperatorConfig:
    """Settings shared by all reconcilers.

    Values default to the environment-derived constants and can be
    overridden by a YAML file named by ``OPERATOR_CONFIG_FILE``.
    """

    dataplane_image: str = C.DEFAULT_DATAPLANE_IMAGE
    requeue_waiting_seconds: float = C.REQUEUE_WAITING_SECONDS
    requeue_slow_seconds: float = C.REQUEUE_SLOW_SECONDS
    backoff_base_seconds: float = C.BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = C.BACKOFF_MAX_SECONDS
    konnect_sync_period_seconds: float = C.KONNECT_SYNC_PERIOD_SECONDS
    konnect_api_timeout_seconds: float = C.KONNECT_API_TIMEOUT_SECONDS
    konnect_client_idle_seconds: float = C.KONNECT_CLIENT_IDLE_SECONDS
    watch_namespace: str = os.getenv("WATCH_NAMESPACE", "")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def backoff(self, attempt: int) -> float:
        """Exponential backoff delay for the given retry attempt, capped."""
        delay = self.backoff_base_seconds * (2 ** max(attempt, 0))
        return min(self.backoff_max_seconds, delay)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperatorConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: Optional[str] = None) -> OperatorConfig:
    """Load the operator configuration, applying file overrides if present."""
    path = path or os.getenv("OPERATOR_CONFIG_FILE", "")
    if not path:
        return OperatorConfig()

    logger.info(f"Loading operator configuration from {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Operator configuration {path} must be a mapping")
    return OperatorConfig.from_dict(data)
