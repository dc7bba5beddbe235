"""
Organization state for a signed-in session.

Follows the identity context: once user, session and profile are all present
it loads the profile's organizations, and it exposes create/refetch for the
presentation layer. State changes are pushed to subscribers as snapshots.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import structlog

from taskdesk_shared.schemas.common import Role
from taskdesk_shared.schemas.organizations import OrganizationWithRole

from .errors import TaskdeskError
from .identity import IdentityContext, IdentitySnapshot
from .metrics import MetricsCollector
from .notices import LogNotifier, Notice, Notifier
from .services import organizations as org_service
from .store.base import Store

log = structlog.get_logger()

AUTH_REQUIRED_TITLE = "Sign in required"
AUTH_REQUIRED_MESSAGE = "You must sign in before you can create or manage organizations."


class OrganizationsPhase(str, Enum):
    IDLE = "idle"  # waiting for identity
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class OrganizationsSnapshot:
    phase: OrganizationsPhase
    organizations: list[OrganizationWithRole] = field(default_factory=list)
    loading: bool = False
    creating: bool = False
    error: str | None = None


StateListener = Callable[[OrganizationsSnapshot], None]


class OrganizationState:
    """{organizations, loading, creating, error} plus create_organization/refetch."""

    def __init__(
        self,
        identity: IdentityContext,
        store: Store,
        notifier: Notifier | None = None,
        *,
        default_role: Role | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._identity = identity
        self._store = store
        self._notifier = notifier or LogNotifier()
        self._default_role = default_role
        self._metrics = metrics

        self.organizations: list[OrganizationWithRole] = []
        self.loading = False
        self.creating = False
        self.error: str | None = None

        self._loaded = False
        self._listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._fetch_seq = 0
        self._identity_key: tuple[str, str] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._closed = False

    # --- Lifecycle ---

    def start(self) -> None:
        """Follow the identity context. Must be called from a running event loop."""
        if self._unsubscribe is not None or self._closed:
            return
        self._unsubscribe = self._identity.subscribe(self._on_identity_change)
        self._on_identity_change(self._identity.snapshot)

    async def close(self) -> None:
        """Detach and abandon in-flight requests; late results are ignored."""
        self._closed = True
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()

    async def settle(self) -> None:
        """Wait until fetches triggered by identity changes have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Observation ---

    @property
    def phase(self) -> OrganizationsPhase:
        if self.loading:
            return OrganizationsPhase.LOADING
        if self.error is not None:
            return OrganizationsPhase.ERROR
        if self._loaded:
            return OrganizationsPhase.READY
        return OrganizationsPhase.IDLE

    def snapshot(self) -> OrganizationsSnapshot:
        return OrganizationsSnapshot(
            phase=self.phase,
            organizations=list(self.organizations),
            loading=self.loading,
            creating=self.creating,
            error=self.error,
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Operations ---

    async def refetch(self) -> None:
        if self._closed:
            return
        identity = self._identity.snapshot
        if not identity.ready:
            log.info("org_state.waiting_for_identity")
            if self.loading:
                self.loading = False
                self._emit()
            return

        self._fetch_seq += 1
        seq = self._fetch_seq
        self.loading = True
        self._emit()
        try:
            organizations = await org_service.fetch_organizations_for_user(
                identity.profile.id,
                self._store,
                default_role=self._default_role,
                metrics=self._metrics,
            )
        except TaskdeskError as exc:
            if self._is_current(seq):
                # Stale rows could show access the user no longer has
                self.organizations = []
                self.error = exc.message
                self._notifier.notify(Notice.error("Could not load organizations", exc.message))
        else:
            if self._is_current(seq):
                self.organizations = organizations
                self.error = None
                self._loaded = True
                if self._metrics:
                    self._metrics.set_gauge("organizations_visible", len(organizations))
        finally:
            if self._is_current(seq):
                self.loading = False
                self._emit()

    async def create_organization(self, name: str) -> bool:
        if self._closed:
            return False
        identity = self._identity.snapshot
        if not identity.ready:
            log.warning(
                "org_state.create_without_identity",
                has_user=identity.user is not None,
                has_session=identity.session is not None,
                has_profile=identity.profile is not None,
            )
            self._notifier.notify(Notice.error(AUTH_REQUIRED_TITLE, AUTH_REQUIRED_MESSAGE))
            return False

        trimmed = (name or "").strip()
        if not trimmed:
            self._notifier.notify(Notice.error("Error", org_service.EMPTY_NAME_MESSAGE))
            return False

        self.creating = True
        self._emit()
        try:
            result = await org_service.create_organization(
                trimmed, identity.profile.id, self._store, metrics=self._metrics
            )
            if not result.success:
                self._notifier.notify(
                    Notice.error("Organization creation failed", result.error or "")
                )
                return False

            self._notifier.notify(
                Notice(
                    title="Organization created",
                    description=f'"{trimmed}" was created and you were added as its owner',
                )
            )
            await self.refetch()
            return True
        finally:
            self.creating = False
            if not self._closed:
                self._emit()

    # --- Internals ---

    def _on_identity_change(self, identity: IdentitySnapshot) -> None:
        if self._closed:
            return
        if not identity.ready:
            # Drop whatever belonged to the previous identity, including in-flight fetches
            self._identity_key = None
            self._fetch_seq += 1
            self.organizations = []
            self.error = None
            self.loading = False
            self._loaded = False
            self._emit()
            return

        key = (identity.user.id, identity.profile.id)
        if key == self._identity_key:
            return
        self._identity_key = key
        log.info("org_state.identity_ready", profile_id=identity.profile.id)
        self._schedule(self.refetch())

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _is_current(self, seq: int) -> bool:
        return not self._closed and seq == self._fetch_seq

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("org_state.listener_error")
