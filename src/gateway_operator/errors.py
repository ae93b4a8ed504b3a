"""Exception hierarchy for gateway-operator."""

from typing import Any, List, Optional


class GatewayOperatorError(Exception):
    """Base class for all operator errors."""


class SpecValidationError(GatewayOperatorError):
    """A resource spec is malformed or contradictory."""


class DependencyNotReadyError(GatewayOperatorError):
    """A referenced object has not reached the state this reconcile needs."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class StoreConflictError(GatewayOperatorError):
    """A write lost an optimistic concurrency race against another writer."""


class KonnectAPIError(GatewayOperatorError):
    """Error returned by the Konnect API."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = body

    def __str__(self) -> str:
        if self.status:
            return f"{self.message} (status {self.status})"
        return self.message


class KonnectNotFoundError(KonnectAPIError):
    """The remote entity does not exist."""


class KonnectConflictError(KonnectAPIError):
    """The remote entity already exists."""


class KonnectValidationError(KonnectAPIError):
    """The remote API rejected the request payload."""


class KonnectAuthError(KonnectAPIError):
    """The credentials were rejected by the remote API."""


class KonnectRetryableError(KonnectAPIError):
    """Network failure or server side error; the request may be retried."""


class KonnectRateLimitError(KonnectRetryableError):
    """The remote API rate limit was hit."""

    def __init__(self, message: str, status: Optional[int] = 429, body: Any = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status, body)
        self.retry_after = retry_after


class UIDTagConflictError(GatewayOperatorError):
    """The remote entity to adopt is already owned by another object."""

    def __init__(self, remote_id: str, expected_uid: str, actual_uid: str):
        super().__init__(
            f"entity {remote_id} is tagged with k8s-uid {actual_uid}, expected {expected_uid}"
        )
        self.remote_id = remote_id
        self.expected_uid = expected_uid
        self.actual_uid = actual_uid


class AdoptionMismatchError(GatewayOperatorError):
    """The remote entity adopted in match mode differs from the local spec."""

    def __init__(self, remote_id: str):
        super().__init__(f"entity {remote_id} does not match the spec and adopt mode is match")
        self.remote_id = remote_id


def is_retryable(exc: BaseException) -> bool:
    """Whether an error belongs to the transient class and deserves fast retries."""
    return isinstance(exc, (KonnectRetryableError, StoreConflictError))
