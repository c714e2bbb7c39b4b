"""Remote store contract and a PostgREST client for it.

The reconciler only ever needs four row operations against named
collections (products, customers, invoices, invoice_items, stores,
employees): create, update, delete and filtered query. Everything else about
the hosted backend is out of reach on purpose.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import httpx

from billsync.core.config import settings
from billsync.errors import (
    Conflict,
    NotFound,
    PermanentSyncFailure,
    TransientSyncFailure,
)

log = logging.getLogger(__name__)

COLLECTIONS = ("products", "customers", "invoices", "invoice_items", "profiles", "stores", "employees")

_TRANSIENT_STATUSES = {408, 425, 429}


@runtime_checkable
class RemoteStore(Protocol):
    """Row-based CRUD over named collections.

    Implementations raise ``Conflict`` when ``create`` meets an existing id,
    ``NotFound`` when ``update``/``delete`` match nothing,
    ``TransientSyncFailure`` for network/timeout/rate-limit problems and
    ``PermanentSyncFailure`` for validation or policy rejections.
    """

    def create(self, collection: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def update(self, collection: str, row_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def delete(self, collection: str, row_id: str) -> None:
        ...

    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def get(self, collection: str, row_id: str) -> Optional[Dict[str, Any]]:
        ...

    def current_user(self) -> Optional[Dict[str, Any]]:
        ...


class RestRemoteStore:
    """PostgREST-style remote store over httpx."""

    def __init__(
        self,
        base_url: str = settings.REMOTE_URL,
        api_key: str = settings.REMOTE_API_KEY,
        *,
        access_token: Optional[str] = None,
        timeout: float = settings.REMOTE_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required for RestRemoteStore")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._access_token = access_token
        self._client = client or httpx.Client(timeout=timeout)

    # ------------------------------------------------------------------
    # Helpers
    def set_access_token(self, token: Optional[str]) -> None:
        self._access_token = token

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientSyncFailure(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientSyncFailure(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status < 400:
            return response
        detail = _describe_error(response)
        if status == 409:
            raise Conflict(f"{method} {path}: {detail}")
        if status in _TRANSIENT_STATUSES or status >= 500:
            raise TransientSyncFailure(f"{method} {path} -> {status}: {detail}")
        raise PermanentSyncFailure(f"{method} {path} -> {status}: {detail}")

    @staticmethod
    def _rows(response: httpx.Response) -> List[Dict[str, Any]]:
        if not response.content:
            return []
        body = _decode(response)
        if isinstance(body, list):
            return body
        return [body]

    # ------------------------------------------------------------------
    # Public API
    def create(self, collection: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        response = self._send(
            "POST",
            f"/rest/v1/{collection}",
            json=dict(row),
            headers=self._headers("return=representation"),
        )
        rows = self._rows(response)
        return rows[0] if rows else dict(row)

    def update(self, collection: str, row_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        response = self._send(
            "PATCH",
            f"/rest/v1/{collection}",
            params={"id": f"eq.{row_id}"},
            json=dict(patch),
            headers=self._headers("return=representation"),
        )
        rows = self._rows(response)
        if not rows:
            raise NotFound(f"{collection}/{row_id} not found remotely")
        return rows[0]

    def delete(self, collection: str, row_id: str) -> None:
        response = self._send(
            "DELETE",
            f"/rest/v1/{collection}",
            params={"id": f"eq.{row_id}"},
            headers=self._headers("return=representation"),
        )
        if not self._rows(response):
            raise NotFound(f"{collection}/{row_id} not found remotely")

    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"select": "*"}
        for key, value in (filters or {}).items():
            params[key] = f"eq.{value}"
        if order_by:
            params["order"] = order_by
        response = self._send(
            "GET",
            f"/rest/v1/{collection}",
            params=params,
            headers=self._headers(),
        )
        return self._rows(response)

    def get(self, collection: str, row_id: str) -> Optional[Dict[str, Any]]:
        rows = self.query(collection, {"id": row_id})
        return rows[0] if rows else None

    def current_user(self) -> Optional[Dict[str, Any]]:
        if not self._access_token:
            return None
        try:
            response = self._send("GET", "/auth/v1/user", headers=self._headers())
        except PermanentSyncFailure:
            # 401/403: the token is no longer accepted
            return None
        return _decode(response) or None

    def close(self) -> None:
        self._client.close()


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        # truncated or proxied body
        raise TransientSyncFailure(
            f"{response.request.method} {response.request.url.path}: unreadable response body"
        ) from exc


def _describe_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        parts = [str(body.get(k)) for k in ("code", "message", "details", "hint") if body.get(k)]
        if parts:
            return " | ".join(parts)
    return str(body)[:200]
