"""
REST store client for a PostgREST-compatible API (e.g. a Supabase project).

Every request carries the project API key; when a signed-in session exists its
access token is sent as the bearer so row-level policies apply to that user.
Backend failures are translated into StoreError subclasses here.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping

import httpx
import structlog

from ..errors import AccessPolicyError, StoreError, TransportError, UniquenessError
from .base import Filters, is_multi_value

log = structlog.get_logger()

# PostgreSQL SQLSTATE codes surfaced by PostgREST
INSUFFICIENT_PRIVILEGE = "42501"
UNIQUE_VIOLATION = "23505"

TokenSource = Callable[[], "str | None"]


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_filters(filters: Filters | None) -> dict[str, str]:
    """Encode column filters as PostgREST query parameters."""
    params: dict[str, str] = {}
    for column, value in (filters or {}).items():
        if value is None:
            params[column] = "is.null"
        elif is_multi_value(value):
            quoted = ",".join(f'"{_encode_value(v)}"' for v in value)
            params[column] = f"in.({quoted})"
        else:
            params[column] = f"eq.{_encode_value(value)}"
    return params


class RestStore:
    """Async client for the store's REST interface."""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        access_token: TokenSource | None = None,
        verify_tls: bool = True,
        request_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = f"{url.rstrip('/')}/rest/v1"
        self._api_key = api_key
        self._access_token = access_token
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        if self._client:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # --- Contract ---

    async def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        rows = await self._request(
            "POST",
            f"/{table}",
            json=dict(record),
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            # Row was written but the select policy hides it from this user
            return dict(record)
        return rows[0]

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        columns: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = encode_filters(filters)
        params["select"] = ",".join(columns) if columns is not None else "*"
        if limit is not None:
            params["limit"] = str(limit)
        return await self._request("GET", f"/{table}", params=params)

    async def delete(self, table: str, filters: Filters) -> int:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        rows = await self._request(
            "DELETE",
            f"/{table}",
            params=encode_filters(filters),
            headers={"Prefer": "return=representation"},
        )
        return len(rows)

    async def rpc(self, function: str, params: Mapping[str, Any] | None = None) -> Any:
        """Call a stored function exposed under /rpc."""
        return await self._request("POST", f"/rpc/{function}", json=dict(params or {}))

    # --- Internals ---

    def _headers(self) -> dict[str, str]:
        token = self._access_token() if self._access_token else None
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token or self._api_key}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        assert self._client, "RestStore.open() must be called first"
        request_headers = self._headers()
        if headers:
            request_headers.update(headers)
        try:
            resp = await self._client.request(
                method, path, params=params, json=json, headers=request_headers
            )
        except httpx.TimeoutException as exc:
            log.warning("store.timeout", method=method, path=path)
            raise TransportError(f"Request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            log.warning("store.unreachable", method=method, path=path, error=str(exc))
            raise TransportError(str(exc) or "Connection failed") from exc

        if resp.status_code >= 400:
            raise _translate_error(resp)
        if resp.status_code == 204 or not resp.content:
            return []
        try:
            return resp.json()
        except ValueError as exc:
            log.warning(
                "store.undecodable_response", method=method, path=path, status=resp.status_code
            )
            raise StoreError(
                f"Unreadable response from the data store: {method} {path}",
                code="invalid_response",
                status=resp.status_code,
            ) from exc


def _translate_error(resp: httpx.Response) -> StoreError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = body.get("code")
    message = body.get("message") or resp.reason_phrase or f"HTTP {resp.status_code}"
    context = {"details": body.get("details"), "hint": body.get("hint")}
    status = resp.status_code

    log.debug("store.error_response", status=status, code=code, message=message)

    if code == INSUFFICIENT_PRIVILEGE or status in (401, 403):
        return AccessPolicyError(message, code=code, status=status, **context)
    if code == UNIQUE_VIOLATION or status == 409:
        return UniquenessError(message, code=code, status=status, **context)
    if status in (502, 503, 504):
        return TransportError(message, code=code, status=status, **context)
    return StoreError(message, code=code, status=status, **context)
