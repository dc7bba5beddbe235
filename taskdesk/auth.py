"""
Identity provider client.

Talks to a GoTrue-compatible auth API (password sign-in, sign-up, logout)
and publishes auth state changes to registered async handlers, the way the
hosted provider's SDK does. Handler failures are logged, never raised.
"""

from __future__ import annotations

from typing import Any, Callable, Coroutine, Protocol

import httpx
import structlog

from taskdesk_shared.schemas.users import AuthEvent, AuthSession, AuthUser

from .errors import AuthenticationError, TransportError

log = structlog.get_logger()

AuthStateHandler = Callable[[AuthEvent, "AuthSession | None"], Coroutine[Any, Any, None]]


class AuthProvider(Protocol):
    @property
    def session(self) -> AuthSession | None: ...

    def on_auth_state_change(self, handler: AuthStateHandler) -> Callable[[], None]: ...

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession: ...

    async def sign_up(self, email: str, password: str, name: str = "") -> AuthUser: ...

    async def sign_out(self) -> None: ...


def _parse_session(data: dict) -> AuthSession:
    return AuthSession(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=data.get("expires_at"),
        user=AuthUser.from_provider(data["user"]),
    )


class GoTrueAuthProvider:
    """Password auth against {url}/auth/v1."""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        verify_tls: bool = True,
        request_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = f"{url.rstrip('/')}/auth/v1"
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._session: AuthSession | None = None
        self._handlers: list[AuthStateHandler] = []

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

    @property
    def session(self) -> AuthSession | None:
        return self._session

    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    def on_auth_state_change(self, handler: AuthStateHandler) -> Callable[[], None]:
        """Register a handler; returns a function that unregisters it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    # --- Operations ---

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        data = await self._post(
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = _parse_session(data)
        self._session = session
        log.info("auth.signed_in", user_id=session.user.id)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_up(
        self,
        email: str,
        password: str,
        name: str = "",
        redirect_to: str | None = None,
    ) -> AuthUser:
        """Register an account. Signs in immediately when email confirmation is off."""
        data = await self._post(
            "/signup",
            params={"redirect_to": redirect_to} if redirect_to else None,
            json={"email": email, "password": password, "data": {"name": name}},
        )
        if data.get("access_token"):
            session = _parse_session(data)
            self._session = session
            log.info("auth.signed_up", user_id=session.user.id, confirmed=True)
            await self._emit(AuthEvent.SIGNED_IN, session)
            return session.user

        user = AuthUser.from_provider(data.get("user") or data)
        log.info("auth.signed_up", user_id=user.id, confirmed=False)
        return user

    async def sign_out(self) -> None:
        """Revoke the session everywhere. Local state is cleared even if the call fails."""
        session = self._session
        try:
            if session:
                await self._post(
                    "/logout",
                    params={"scope": "global"},
                    token=session.access_token,
                )
        finally:
            self._session = None
            log.info("auth.signed_out")
            await self._emit(AuthEvent.SIGNED_OUT, None)

    # --- Internals ---

    async def _emit(self, event: AuthEvent, session: AuthSession | None) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event, session)
            except Exception:
                log.exception("auth.handler_error", auth_event=event.value)

    async def _post(
        self,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        token: str | None = None,
    ) -> dict:
        assert self._client, "GoTrueAuthProvider.open() must be called first"
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token or self._api_key}",
        }
        try:
            resp = await self._client.post(path, params=params, json=json, headers=headers)
        except httpx.TransportError as exc:
            log.warning("auth.unreachable", path=path, error=str(exc))
            raise TransportError(str(exc) or "Connection failed") from exc

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = (
                body.get("error_description")
                or body.get("msg")
                or body.get("message")
                or f"HTTP {resp.status_code}"
            )
            log.warning("auth.rejected", path=path, status=resp.status_code)
            raise AuthenticationError(message, status=resp.status_code)

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            log.warning("auth.undecodable_response", path=path, status=resp.status_code)
            raise AuthenticationError(
                "Unreadable response from the auth service", status=resp.status_code
            ) from exc
