"""Async client for the Konnect API."""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

import aiohttp

from . import constants as C
from .errors import (
    KonnectAPIError,
    KonnectAuthError,
    KonnectConflictError,
    KonnectNotFoundError,
    KonnectRateLimitError,
    KonnectRetryableError,
    KonnectValidationError,
)

logger = logging.getLogger(__name__)


def normalize_server_url(server_url: str) -> str:
    """Konnect server URLs are often given without a scheme."""
    server_url = (server_url or C.DEFAULT_KONNECT_SERVER_URL).rstrip("/")
    if "://" not in server_url:
        server_url = f"https://{server_url}"
    return server_url


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("detail", "message", "title"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, str) and body:
        return body[:500]
    return default


def _items(body: Any) -> List[Dict[str, Any]]:
    if not isinstance(body, dict):
        return []
    return body.get("data") or body.get("items") or []


class KonnectClient:
    """Thin typed wrapper over the Konnect REST API.

    Errors are raised as subclasses of ``KonnectAPIError`` so callers can tell
    missing, conflicting, rejected and retryable requests apart.
    """

    def __init__(
        self,
        server_url: str,
        token: str,
        timeout: float = C.KONNECT_API_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_url = normalize_server_url(server_url)
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def __aenter__(self) -> "KonnectClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/json",
                    "User-Agent": f"{C.OPERATOR_NAME}",
                },
            )
        return self._session

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._session.closed

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.server_url}{path}"
        logger.debug(f"Konnect API {method} {url}")
        try:
            async with self._get_session().request(method, url, json=json, params=params) as resp:
                if resp.status == 204:
                    return None
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = await resp.text()
                if resp.status < 400:
                    return body
                self._raise_for_status(resp.status, body, resp.headers, f"{method} {path}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise KonnectRetryableError(f"Konnect API {method} {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(status: int, body: Any, headers: Any, what: str) -> None:
        message = _error_message(body, f"Konnect API {what} failed")
        if status == 404:
            raise KonnectNotFoundError(message, status, body)
        if status == 409:
            raise KonnectConflictError(message, status, body)
        if status in (401, 403):
            raise KonnectAuthError(message, status, body)
        if status == 429:
            retry_after = None
            if headers and headers.get("Retry-After"):
                try:
                    retry_after = float(headers["Retry-After"])
                except ValueError:
                    retry_after = None
            raise KonnectRateLimitError(message, status, body, retry_after=retry_after)
        if status >= 500:
            raise KonnectRetryableError(message, status, body)
        if 400 <= status < 500:
            raise KonnectValidationError(message, status, body)
        raise KonnectAPIError(message, status, body)

    # ------------------------------------------------------------------
    # Generic entity operations
    # ------------------------------------------------------------------

    async def create(self, collection: str, body: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._request("POST", collection, json=body)
        return (result or {}).get("item", result) if isinstance(result, dict) else {}

    async def get(self, collection: str, entity_id: str) -> Dict[str, Any]:
        result = await self._request("GET", f"{collection}/{entity_id}")
        return (result or {}).get("item", result) if isinstance(result, dict) else {}

    async def update(
        self,
        collection: str,
        entity_id: str,
        body: Dict[str, Any],
        method: str = "PUT",
    ) -> Dict[str, Any]:
        result = await self._request(method, f"{collection}/{entity_id}", json=body)
        return (result or {}).get("item", result) if isinstance(result, dict) else {}

    async def delete(self, collection: str, entity_id: str) -> bool:
        """Delete an entity. Returns False if it was already gone."""
        try:
            await self._request("DELETE", f"{collection}/{entity_id}")
        except KonnectNotFoundError:
            return False
        return True

    async def list(self, collection: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        return _items(await self._request("GET", collection, params=params))

    # ------------------------------------------------------------------
    # Organization and data plane certificates
    # ------------------------------------------------------------------

    async def get_organization(self) -> Dict[str, Any]:
        """Organization owning the token; doubles as a credentials check."""
        return await self._request("GET", "/v2/organizations/me") or {}

    async def list_dp_client_certificates(self, control_plane_id: str) -> List[Dict[str, Any]]:
        return await self.list(f"/v2/control-planes/{control_plane_id}/dp-client-certificates")

    async def create_dp_client_certificate(self, control_plane_id: str, cert_pem: str) -> Dict[str, Any]:
        return await self.create(
            f"/v2/control-planes/{control_plane_id}/dp-client-certificates",
            {"cert": cert_pem},
        )


class KonnectClientFactory:
    """Hands out one client per (server URL, token) pair.

    A client not handed out for ``idle_seconds`` is dropped and its session
    closed, so rotated tokens do not leave sessions open.
    """

    def __init__(self, timeout: float = C.KONNECT_API_TIMEOUT_SECONDS,
                 idle_seconds: float = C.KONNECT_CLIENT_IDLE_SECONDS):
        self.timeout = timeout
        self.idle_seconds = idle_seconds
        self._clients: Dict[tuple, KonnectClient] = {}
        self._last_used: Dict[tuple, float] = {}
        self._closing: Set[asyncio.Task] = set()

    def __call__(self, server_url: str, token: str) -> KonnectClient:
        now = time.monotonic()
        self._evict_idle(now)
        key = (normalize_server_url(server_url), token)
        if key not in self._clients:
            self._clients[key] = KonnectClient(server_url, token, timeout=self.timeout)
        self._last_used[key] = now
        return self._clients[key]

    def _evict_idle(self, now: float) -> None:
        for key, last_used in list(self._last_used.items()):
            if now - last_used < self.idle_seconds:
                continue
            api = self._clients.pop(key)
            del self._last_used[key]
            logger.debug(f"Dropping Konnect client for {api.server_url}, unused for {now - last_used:.0f}s")
            if api.is_open:
                task = asyncio.create_task(api.close())
                self._closing.add(task)
                task.add_done_callback(self._closing.discard)

    async def close(self) -> None:
        if self._closing:
            await asyncio.gather(*self._closing)
        for api in self._clients.values():
            await api.close()
        self._clients.clear()
        self._last_used.clear()
