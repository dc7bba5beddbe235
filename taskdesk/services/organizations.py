"""
Organization provisioning service: membership lookup and create-with-owner.

All store errors are caught at this boundary: fetches raise FetchError with a
user-facing hint, creation returns a ProvisioningResult.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

import pydantic
import structlog

from taskdesk_shared.schemas.common import MEMBERSHIPS_TABLE, ORGANIZATIONS_TABLE, Role
from taskdesk_shared.schemas.organizations import (
    ORG_NAME_MAX_LENGTH,
    ORG_NAME_MIN_LENGTH,
    ORGANIZATION_COLUMNS,
    PROVISIONING_TRANSITIONS,
    OrgCreateRequest,
    OrganizationWithRole,
    ProvisioningErrorKind,
    ProvisioningResult,
    ProvisioningState,
)

from ..errors import (
    AccessPolicyError,
    FetchError,
    InvalidTransitionError,
    MembershipIntegrityError,
    PartialProvisioningFailure,
    StoreError,
    TransportError,
    UniquenessError,
    ValidationError,
)
from ..metrics import MetricsCollector
from ..store.base import Store, TransactionalStore

log = structlog.get_logger()

EMPTY_NAME_MESSAGE = "Please enter an organization name"
NAME_LENGTH_MESSAGE = (
    f"Organization name must be {ORG_NAME_MIN_LENGTH}-{ORG_NAME_MAX_LENGTH} characters"
)
MISSING_PROFILE_MESSAGE = "You must be signed in to create an organization"

REAUTHENTICATE_HINT = "You do not have access to these organizations. Please sign in again."
NETWORK_HINT = "Could not reach the server. Check your network connection and try again."

CREATE_PERMISSION_HINT = "You do not have permission to create an organization. Please sign in again."
DUPLICATE_NAME_HINT = "An organization with this name already exists. Please choose another name."
CONNECTION_HINT = "Could not reach the server. Check your connection and try again."


# ---------------------------------------------------------------------------
# Provisioning transaction
# ---------------------------------------------------------------------------

@dataclass
class ProvisioningTransaction:
    """Progress of one create-organization-with-owner attempt."""

    organization_id: str
    name: str
    owner_id: str
    state: ProvisioningState = ProvisioningState.PENDING
    error: StoreError | None = None
    history: list[ProvisioningState] = field(default_factory=list)

    def advance(self, to: ProvisioningState) -> None:
        if to not in PROVISIONING_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Cannot move provisioning from '{self.state.value}' to '{to.value}'",
                organization_id=self.organization_id,
            )
        self.history.append(self.state)
        self.state = to

    def fail(self, error: StoreError) -> None:
        self.error = error
        self.advance(ProvisioningState.FAILED)


def _classify(exc: StoreError) -> tuple[ProvisioningErrorKind, str]:
    if isinstance(exc, AccessPolicyError):
        return ProvisioningErrorKind.ACCESS_POLICY, CREATE_PERMISSION_HINT
    if isinstance(exc, UniquenessError):
        return ProvisioningErrorKind.UNIQUENESS, DUPLICATE_NAME_HINT
    if isinstance(exc, TransportError):
        return ProvisioningErrorKind.TRANSPORT, CONNECTION_HINT
    return ProvisioningErrorKind.STORE, exc.message


def _failure(
    txn: ProvisioningTransaction | None,
    kind: ProvisioningErrorKind,
    message: str,
) -> ProvisioningResult:
    return ProvisioningResult(
        success=False,
        organization_id=None,
        error=message,
        error_kind=kind,
        state=txn.state if txn else ProvisioningState.FAILED,
    )


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

async def fetch_organizations_for_user(
    profile_id: str,
    store: Store,
    *,
    default_role: Role | None = None,
    metrics: MetricsCollector | None = None,
) -> list[OrganizationWithRole]:
    """List the organizations a profile belongs to, each with that profile's role.

    Memberships whose organization row is not visible are skipped. A membership
    without a valid role raises MembershipIntegrityError unless default_role is set.
    """
    if not profile_id:
        raise ValidationError("A profile id is required")
    if metrics:
        metrics.inc("organization_fetches_total")

    try:
        memberships = await store.select(
            MEMBERSHIPS_TABLE,
            {"user_id": profile_id},
            columns=["organization_id", "role"],
        )
        if not memberships:
            log.debug("organizations.none", profile_id=profile_id)
            return []

        org_ids = list(dict.fromkeys(m["organization_id"] for m in memberships))
        rows = await store.select(
            ORGANIZATIONS_TABLE,
            {"id": org_ids},
            columns=ORGANIZATION_COLUMNS,
        )
    except StoreError as exc:
        if metrics:
            metrics.inc("organization_fetch_errors_total")
        log.error(
            "organizations.fetch_failed",
            profile_id=profile_id,
            error=exc.message,
            code=exc.code,
        )
        if isinstance(exc, AccessPolicyError):
            raise FetchError(REAUTHENTICATE_HINT, cause=exc.message) from exc
        if isinstance(exc, TransportError):
            raise FetchError(NETWORK_HINT, cause=exc.message) from exc
        raise FetchError(f"Could not load organizations: {exc.message}", cause=exc.message) from exc

    orgs_by_id = {row["id"]: row for row in rows}
    result: list[OrganizationWithRole] = []
    for membership in memberships:
        org_id = membership["organization_id"]
        row = orgs_by_id.get(org_id)
        if row is None:
            log.warning("organizations.membership_without_org", profile_id=profile_id, organization_id=org_id)
            continue

        role = membership.get("role") or default_role
        try:
            result.append(OrganizationWithRole.model_validate({**row, "role": role}))
        except pydantic.ValidationError as exc:
            if metrics:
                metrics.inc("organization_fetch_errors_total")
            log.error(
                "organizations.invalid_membership",
                profile_id=profile_id,
                organization_id=org_id,
                role=membership.get("role"),
            )
            raise MembershipIntegrityError(
                f"Membership in organization {org_id} has no valid role",
                organization_id=org_id,
                role=membership.get("role"),
            ) from exc

    log.info("organizations.fetched", profile_id=profile_id, count=len(result))
    return result


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

async def create_organization(
    name: str,
    profile_id: str,
    store: Store,
    *,
    metrics: MetricsCollector | None = None,
) -> ProvisioningResult:
    """Create an organization and make the profile its owner."""
    trimmed = (name or "").strip()
    if not trimmed:
        return _failure(None, ProvisioningErrorKind.VALIDATION, EMPTY_NAME_MESSAGE)
    if not profile_id:
        return _failure(None, ProvisioningErrorKind.VALIDATION, MISSING_PROFILE_MESSAGE)
    try:
        req = OrgCreateRequest(name=trimmed)
    except pydantic.ValidationError:
        return _failure(None, ProvisioningErrorKind.VALIDATION, NAME_LENGTH_MESSAGE)

    # The id is needed for the membership row, so it cannot come from the store
    txn = ProvisioningTransaction(
        organization_id=str(uuid.uuid4()),
        name=req.name,
        owner_id=profile_id,
    )
    log.info("org.provisioning", organization_id=txn.organization_id, owner_id=profile_id)

    if isinstance(store, TransactionalStore):
        result = await _provision_atomic(txn, store)
    else:
        result = await _provision_with_compensation(txn, store, metrics)

    if metrics:
        if result.success:
            metrics.inc("organizations_created_total")
        else:
            metrics.inc("provisioning_failures_total")
    return result


def _organization_record(txn: ProvisioningTransaction) -> dict:
    return {"id": txn.organization_id, "name": txn.name, "owner_id": txn.owner_id}


def _membership_record(txn: ProvisioningTransaction) -> dict:
    return {
        "organization_id": txn.organization_id,
        "user_id": txn.owner_id,
        "role": Role.OWNER.value,
    }


async def _provision_atomic(
    txn: ProvisioningTransaction, store: TransactionalStore
) -> ProvisioningResult:
    """Both rows in one store transaction; a failure leaves nothing behind."""
    try:
        async with store.atomic():
            await store.insert(ORGANIZATIONS_TABLE, _organization_record(txn))
            txn.advance(ProvisioningState.ORGANIZATION_CREATED)
            await store.insert(MEMBERSHIPS_TABLE, _membership_record(txn))
    except StoreError as exc:
        txn.fail(exc)
        kind, hint = _classify(exc)
        log.error(
            "org.provisioning_failed",
            organization_id=txn.organization_id,
            error=exc.message,
            code=exc.code,
            rolled_back=True,
        )
        return _failure(txn, kind, f"Organization creation failed: {hint}")

    txn.advance(ProvisioningState.MEMBERSHIP_CREATED)
    log.info("org.created", organization_id=txn.organization_id, owner_id=txn.owner_id, atomic=True)
    return ProvisioningResult(
        success=True, organization_id=txn.organization_id, state=txn.state
    )


async def _provision_with_compensation(
    txn: ProvisioningTransaction,
    store: Store,
    metrics: MetricsCollector | None = None,
) -> ProvisioningResult:
    """Two independent inserts; the organization is deleted again if the membership fails."""
    try:
        await store.insert(ORGANIZATIONS_TABLE, _organization_record(txn))
    except StoreError as exc:
        # Nothing was written, nothing to undo
        txn.fail(exc)
        kind, hint = _classify(exc)
        log.error(
            "org.create_failed",
            organization_id=txn.organization_id,
            error=exc.message,
            code=exc.code,
        )
        return _failure(txn, kind, f"Organization creation failed: {hint}")
    txn.advance(ProvisioningState.ORGANIZATION_CREATED)

    try:
        await store.insert(MEMBERSHIPS_TABLE, _membership_record(txn))
    except StoreError as exc:
        txn.error = exc
        log.error(
            "org.membership_failed",
            organization_id=txn.organization_id,
            error=exc.message,
            code=exc.code,
        )
        failure = await _compensate(txn, store, exc, metrics)
        _, hint = _classify(exc)
        return ProvisioningResult(
            success=False,
            error=f"Organization membership creation failed: {hint}",
            error_kind=ProvisioningErrorKind.PARTIAL_PROVISIONING,
            state=txn.state,
            compensated=failure.compensated,
        )

    txn.advance(ProvisioningState.MEMBERSHIP_CREATED)
    log.info("org.created", organization_id=txn.organization_id, owner_id=txn.owner_id, atomic=False)
    return ProvisioningResult(
        success=True, organization_id=txn.organization_id, state=txn.state
    )


async def _compensate(
    txn: ProvisioningTransaction,
    store: Store,
    cause: StoreError,
    metrics: MetricsCollector | None,
) -> PartialProvisioningFailure:
    """Best-effort delete of the organization row. Never raises."""
    try:
        deleted = await store.delete(ORGANIZATIONS_TABLE, {"id": txn.organization_id})
    except StoreError as cleanup_exc:
        txn.advance(ProvisioningState.FAILED)
        failure = PartialProvisioningFailure(
            txn.organization_id,
            cause,
            compensated=False,
            compensation_error=cleanup_exc,
        )
        if metrics:
            metrics.inc("compensation_failures_total")
        log.error("provisioning.compensation_failed", **failure.to_dict())
        return failure

    if not deleted:
        # The delete was accepted but removed nothing (e.g. filtered by policy)
        txn.advance(ProvisioningState.FAILED)
        if metrics:
            metrics.inc("compensation_failures_total")
        failure = PartialProvisioningFailure(txn.organization_id, cause, compensated=False)
        log.error("provisioning.compensation_no_rows", **failure.to_dict())
        return failure

    txn.advance(ProvisioningState.COMPENSATED)
    if metrics:
        metrics.inc("provisioning_compensations_total")
    failure = PartialProvisioningFailure(txn.organization_id, cause, compensated=True)
    log.warning("provisioning.compensated", **failure.to_dict())
    return failure


# ---------------------------------------------------------------------------
# Access check
# ---------------------------------------------------------------------------

async def validate_user_access(
    profile_id: str,
    organization_id: str,
    store: Store,
    *,
    metrics: MetricsCollector | None = None,
) -> bool:
    """True iff the profile holds a membership in the organization. Fails closed."""
    if not profile_id or not organization_id:
        return False
    if metrics:
        metrics.inc("access_checks_total")
    try:
        rows = await store.select(
            MEMBERSHIPS_TABLE,
            {"user_id": profile_id, "organization_id": organization_id},
            columns=["organization_id"],
            limit=1,
        )
    except StoreError as exc:
        log.warning(
            "org.access_check_failed",
            profile_id=profile_id,
            organization_id=organization_id,
            error=exc.message,
        )
        return False
    return bool(rows)
