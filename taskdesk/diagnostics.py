"""
Store diagnostics for a signed-in user.

Runs a fixed series of read checks (connectivity, profile row, membership
and organization visibility, the policy helper function) and reports each
outcome. A failing check is recorded and the remaining checks still run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from taskdesk_shared.schemas.common import (
    MEMBERSHIPS_TABLE,
    ORGANIZATIONS_TABLE,
    PROFILES_TABLE,
)

from .errors import StoreError
from .identity import IdentitySnapshot
from .store.base import Store

log = structlog.get_logger()

# Stored function the row-level policies use to map the session to a profile id
POLICY_HELPER_FUNCTION = "get_current_user_app_id"


class CheckResult(BaseModel):
    name: str
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    rows: Optional[int] = None
    data: Any = None


class AuthSummary(BaseModel):
    user: bool
    profile: bool
    user_id: Optional[str] = None
    profile_id: Optional[str] = None


class DiagnosticsReport(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    auth: AuthSummary
    checks: list[CheckResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(c.success for c in self.checks)

    def check(self, name: str) -> CheckResult | None:
        for c in self.checks:
            if c.name == name:
                return c
        return None


async def _run_check(name: str, call: Callable[[], Awaitable[Any]]) -> CheckResult:
    try:
        data = await call()
    except StoreError as exc:
        log.warning("diagnostics.check_failed", check=name, error=exc.message, code=exc.code)
        return CheckResult(name=name, success=False, error=exc.message, code=exc.code)
    rows = len(data) if isinstance(data, list) else None
    log.debug("diagnostics.check_passed", check=name, rows=rows)
    return CheckResult(name=name, success=True, rows=rows, data=data)


async def run_diagnostics(store: Store, identity: IdentitySnapshot) -> DiagnosticsReport:
    user, profile = identity.user, identity.profile
    report = DiagnosticsReport(
        auth=AuthSummary(
            user=user is not None,
            profile=profile is not None,
            user_id=user.id if user else None,
            profile_id=profile.id if profile else None,
        )
    )

    report.checks.append(
        await _run_check(
            "store_connection",
            lambda: store.select(PROFILES_TABLE, columns=["id"], limit=1),
        )
    )
    if user is not None:
        report.checks.append(
            await _run_check(
                "user_profile",
                lambda: store.select(PROFILES_TABLE, {"supabase_uid": user.id}),
            )
        )
    if profile is not None:
        report.checks.append(
            await _run_check(
                "organization_user",
                lambda: store.select(MEMBERSHIPS_TABLE, {"user_id": profile.id}),
            )
        )
    report.checks.append(
        await _run_check(
            "organizations",
            lambda: store.select(ORGANIZATIONS_TABLE, limit=5),
        )
    )

    rpc = getattr(store, "rpc", None)
    if rpc is not None:
        report.checks.append(await _run_check("policy_function", lambda: rpc(POLICY_HELPER_FUNCTION)))

    log.info(
        "diagnostics.completed",
        checks=len(report.checks),
        failed=sum(1 for c in report.checks if not c.success),
    )
    return report
