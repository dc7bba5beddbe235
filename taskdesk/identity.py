"""
Identity context: who is signed in, and which local profile acts for them.

The context is an explicit observable with a start()/stop() lifecycle. It
listens to the auth provider, resolves the profile row for each new user
(creating it on first sign-in) and publishes immutable snapshots to its
listeners. Consumers receive the context by injection.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import pydantic
import structlog

from taskdesk_shared.schemas.common import PROFILES_TABLE
from taskdesk_shared.schemas.users import (
    AuthEvent,
    AuthSession,
    AuthUser,
    Profile,
    ProfileCreate,
)

from .auth import AuthProvider
from .config import RetryPolicy
from .errors import (
    AccessPolicyError,
    AuthenticationError,
    StoreError,
    TransportError,
    UniquenessError,
)
from .store.base import Store

log = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class IdentitySnapshot:
    user: AuthUser | None = None
    session: AuthSession | None = None
    profile: Profile | None = None
    loading: bool = True

    @property
    def ready(self) -> bool:
        """True only when the profile is known to belong to the signed-in user."""
        return (
            not self.loading
            and self.user is not None
            and self.session is not None
            and self.profile is not None
            and self.profile.external_uid == self.user.id
        )


IdentityListener = Callable[[IdentitySnapshot], None]


class ProfileResolver:
    """Fetch-or-create of the profile row, retried under a bounded policy."""

    def __init__(
        self,
        store: Store,
        retry: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._store = store
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    async def resolve(self, user: AuthUser) -> Profile | None:
        delays = self._retry.delays()
        for attempt in range(1, self._retry.max_attempts + 1):
            try:
                return await self._fetch_or_create(user)
            except AccessPolicyError as exc:
                log.error("identity.profile_access_denied", user_id=user.id, error=exc.message)
                return None
            except (TransportError, UniquenessError) as exc:
                if attempt == self._retry.max_attempts:
                    log.error(
                        "identity.profile_unavailable",
                        user_id=user.id,
                        attempts=attempt,
                        error=exc.message,
                    )
                    return None
                delay = delays[attempt - 1]
                log.warning(
                    "identity.profile_retry",
                    user_id=user.id,
                    attempt=attempt,
                    delay=delay,
                    error=exc.message,
                )
                await self._sleep(delay)
            except StoreError as exc:
                log.error("identity.profile_error", user_id=user.id, error=exc.message)
                return None
            except pydantic.ValidationError as exc:
                log.error("identity.profile_malformed", user_id=user.id, errors=exc.error_count())
                return None
        return None

    async def _fetch_or_create(self, user: AuthUser) -> Profile:
        rows = await self._store.select(PROFILES_TABLE, {"supabase_uid": user.id}, limit=1)
        if rows:
            return Profile.model_validate(rows[0])

        log.info("identity.profile_missing", user_id=user.id)
        record = ProfileCreate(supabase_uid=user.id, email=user.email, name=user.name or "")
        row = await self._store.insert(PROFILES_TABLE, record.model_dump())
        profile = Profile.model_validate(row)
        log.info("identity.profile_created", user_id=user.id, profile_id=profile.id)
        return profile


class IdentityContext:
    """Observable {user, session, profile, loading} fed by an AuthProvider."""

    def __init__(self, provider: AuthProvider, resolver: ProfileResolver):
        self._provider = provider
        self._resolver = resolver
        self._snapshot = IdentitySnapshot()
        self._listeners: list[IdentityListener] = []
        self._unsubscribe: Callable[[], None] | None = None
        self._generation = 0

    @property
    def snapshot(self) -> IdentitySnapshot:
        return self._snapshot

    @property
    def started(self) -> bool:
        return self._unsubscribe is not None

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self) -> None:
        """Attach to the provider and resolve whatever session it already holds."""
        if self.started:
            return
        log.info("identity.starting")
        self._unsubscribe = self._provider.on_auth_state_change(self._on_auth_state_change)
        await self._on_auth_state_change(AuthEvent.INITIAL_SESSION, self._provider.session)

    async def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        # Outstanding profile lookups must not publish after stop
        self._generation += 1
        log.info("identity.stopped")

    async def sign_in(self, email: str, password: str) -> None:
        """Password sign-in. A session still held is signed out first; failure there is ignored."""
        if self._provider.session is not None:
            try:
                await self._provider.sign_out()
            except (AuthenticationError, TransportError) as exc:
                log.warning("identity.pre_sign_in_sign_out_failed", error=exc.message)
        await self._provider.sign_in_with_password(email, password)

    async def sign_up(self, email: str, password: str, name: str = "") -> AuthUser:
        return await self._provider.sign_up(email, password, name)

    async def sign_out(self) -> None:
        try:
            await self._provider.sign_out()
        except (AuthenticationError, TransportError) as exc:
            log.warning("identity.sign_out_failed", error=exc.message)
        if self._snapshot.user is not None:
            self._publish(IdentitySnapshot(loading=False))

    async def _on_auth_state_change(
        self, event: AuthEvent, session: AuthSession | None
    ) -> None:
        self._generation += 1
        generation = self._generation
        log.info("identity.auth_state_changed", auth_event=event.value, has_session=session is not None)

        if session is None:
            self._publish(IdentitySnapshot(loading=False))
            return

        user = session.user
        current = self._snapshot
        if current.profile is not None and current.user is not None and current.user.id == user.id:
            # Same user with a new token: the profile still applies
            self._publish(
                IdentitySnapshot(user=user, session=session, profile=current.profile, loading=False)
            )
            return

        self._publish(IdentitySnapshot(user=user, session=session, loading=True))
        profile = await self._resolver.resolve(user)
        if generation != self._generation:
            return

        if profile is None:
            log.warning("identity.profile_unresolved", user_id=user.id)
        elif profile.external_uid != user.id:
            log.error(
                "identity.profile_mismatch",
                user_id=user.id,
                profile_id=profile.id,
                profile_uid=profile.external_uid,
            )
        self._publish(IdentitySnapshot(user=user, session=session, profile=profile, loading=False))

    def _publish(self, snapshot: IdentitySnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("identity.listener_error")
