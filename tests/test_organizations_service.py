"""
Tests for the organization provisioning service.

Tests cover:
- Membership lookup with roles (and the missing-role policy)
- Fetch error translation into user-facing hints
- Two-phase create with compensating delete
- Access checks
"""

from __future__ import annotations

import pytest

from taskdesk.errors import (
    AccessPolicyError,
    FetchError,
    InvalidTransitionError,
    MembershipIntegrityError,
    StoreError,
    TransportError,
    UniquenessError,
    ValidationError,
)
from taskdesk.metrics import MetricsCollector
from taskdesk.services import organizations as svc
from taskdesk.services.organizations import ProvisioningTransaction
from taskdesk_shared.schemas.common import MEMBERSHIPS_TABLE, ORGANIZATIONS_TABLE, Role
from taskdesk_shared.schemas.organizations import ProvisioningErrorKind, ProvisioningState

from .conftest import PROFILE_ID


def _org(org_id: str, name: str, owner: str = PROFILE_ID) -> dict:
    return {"id": org_id, "name": name, "owner_id": owner, "created_at": None, "updated_at": None}


def _member(org_id: str, role: str | None, user: str = PROFILE_ID) -> dict:
    return {"organization_id": org_id, "user_id": user, "role": role}


@pytest.fixture
def metrics():
    return MetricsCollector()


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

class TestFetch:
    async def test_lists_organizations_with_role(self, store):
        store.seed(ORGANIZATIONS_TABLE, _org("o1", "Acme"), _org("o2", "Globex", owner="p-other"))
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "owner"), _member("o2", "member"))

        orgs = await svc.fetch_organizations_for_user(PROFILE_ID, store)

        assert [(o.id, o.name, o.role) for o in orgs] == [
            ("o1", "Acme", Role.OWNER),
            ("o2", "Globex", Role.MEMBER),
        ]

    async def test_only_own_memberships(self, store):
        store.seed(ORGANIZATIONS_TABLE, _org("o1", "Acme"), _org("o2", "Globex"))
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "owner"), _member("o2", "owner", user="p-other"))

        orgs = await svc.fetch_organizations_for_user(PROFILE_ID, store)
        assert [o.id for o in orgs] == ["o1"]

    async def test_no_memberships_skips_organization_query(self, store):
        assert await svc.fetch_organizations_for_user(PROFILE_ID, store) == []
        assert store.count("select", ORGANIZATIONS_TABLE) == 0

    async def test_empty_profile_id(self, store):
        with pytest.raises(ValidationError):
            await svc.fetch_organizations_for_user("", store)
        assert store.calls == []

    async def test_invisible_organization_skipped(self, store):
        store.seed(ORGANIZATIONS_TABLE, _org("o1", "Acme"))
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "owner"), _member("o-hidden", "member"))

        orgs = await svc.fetch_organizations_for_user(PROFILE_ID, store)
        assert [o.id for o in orgs] == ["o1"]

    async def test_missing_role_is_integrity_error(self, store, metrics):
        store.seed(ORGANIZATIONS_TABLE, _org("o1", "Acme"))
        store.seed(MEMBERSHIPS_TABLE, _member("o1", None))

        with pytest.raises(MembershipIntegrityError) as exc_info:
            await svc.fetch_organizations_for_user(PROFILE_ID, store, metrics=metrics)
        assert exc_info.value.context["organization_id"] == "o1"
        assert metrics.get("organization_fetch_errors_total") == 1

    async def test_unknown_role_is_integrity_error(self, store):
        store.seed(ORGANIZATIONS_TABLE, _org("o1", "Acme"))
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "admin"))

        with pytest.raises(MembershipIntegrityError):
            await svc.fetch_organizations_for_user(PROFILE_ID, store)

    async def test_missing_role_fallback(self, store):
        store.seed(ORGANIZATIONS_TABLE, _org("o1", "Acme"))
        store.seed(MEMBERSHIPS_TABLE, _member("o1", None))

        orgs = await svc.fetch_organizations_for_user(PROFILE_ID, store, default_role=Role.MEMBER)
        assert orgs[0].role == Role.MEMBER

    async def test_access_denied_hint(self, store, metrics):
        denied = AccessPolicyError("permission denied for table organization_user", code="42501")
        store.fail_next("select", MEMBERSHIPS_TABLE, denied)

        with pytest.raises(FetchError) as exc_info:
            await svc.fetch_organizations_for_user(PROFILE_ID, store, metrics=metrics)

        assert exc_info.value.message == svc.REAUTHENTICATE_HINT
        assert exc_info.value.__cause__ is denied
        assert exc_info.value.context["cause"] == denied.message
        assert metrics.get("organization_fetch_errors_total") == 1

    async def test_network_hint(self, store):
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "owner"))
        store.fail_next("select", ORGANIZATIONS_TABLE, TransportError("connection reset"))

        with pytest.raises(FetchError) as exc_info:
            await svc.fetch_organizations_for_user(PROFILE_ID, store)
        assert exc_info.value.message == svc.NETWORK_HINT

    async def test_other_store_error(self, store):
        store.fail_next("select", MEMBERSHIPS_TABLE, StoreError("relation does not exist", code="42P01"))

        with pytest.raises(FetchError) as exc_info:
            await svc.fetch_organizations_for_user(PROFILE_ID, store)
        assert exc_info.value.message == "Could not load organizations: relation does not exist"

    async def test_counts_fetches(self, store, metrics):
        await svc.fetch_organizations_for_user(PROFILE_ID, store, metrics=metrics)
        assert metrics.get("organization_fetches_total") == 1


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

class TestCreate:
    async def test_creates_organization_and_owner_membership(self, store, metrics):
        result = await svc.create_organization("  Acme Corp  ", PROFILE_ID, store, metrics=metrics)

        assert result.success
        assert result.error is None
        assert result.state == ProvisioningState.MEMBERSHIP_CREATED
        [org] = store.tables[ORGANIZATIONS_TABLE]
        assert org == {"id": result.organization_id, "name": "Acme Corp", "owner_id": PROFILE_ID}
        assert store.tables[MEMBERSHIPS_TABLE] == [
            {"organization_id": result.organization_id, "user_id": PROFILE_ID, "role": "owner"}
        ]
        assert metrics.get("organizations_created_total") == 1

    async def test_created_organization_is_listed_as_owner(self, store):
        result = await svc.create_organization("Acme", PROFILE_ID, store)
        orgs = await svc.fetch_organizations_for_user(PROFILE_ID, store)
        assert [(o.id, o.role) for o in orgs] == [(result.organization_id, Role.OWNER)]

    async def test_ids_are_unique(self, store):
        a = await svc.create_organization("Acme", PROFILE_ID, store)
        b = await svc.create_organization("Acme 2", PROFILE_ID, store)
        assert a.organization_id != b.organization_id

    @pytest.mark.parametrize("name", ["", "   ", "\t\n"])
    async def test_blank_name_rejected_without_store_calls(self, store, name):
        result = await svc.create_organization(name, PROFILE_ID, store)

        assert not result.success
        assert result.error == svc.EMPTY_NAME_MESSAGE
        assert result.error_kind == ProvisioningErrorKind.VALIDATION
        assert store.calls == []

    async def test_missing_profile_rejected(self, store):
        result = await svc.create_organization("Acme", "", store)
        assert result.error == svc.MISSING_PROFILE_MESSAGE
        assert store.calls == []

    @pytest.mark.parametrize("name", ["A", "x" * 101])
    async def test_name_length(self, store, name):
        result = await svc.create_organization(name, PROFILE_ID, store)
        assert result.error == svc.NAME_LENGTH_MESSAGE
        assert store.calls == []

    async def test_organization_insert_denied(self, store, metrics):
        store.fail_next(
            "insert",
            ORGANIZATIONS_TABLE,
            AccessPolicyError("new row violates row-level security policy", code="42501"),
        )
        result = await svc.create_organization("Acme", PROFILE_ID, store, metrics=metrics)

        assert not result.success
        assert result.error == f"Organization creation failed: {svc.CREATE_PERMISSION_HINT}"
        assert result.error_kind == ProvisioningErrorKind.ACCESS_POLICY
        assert result.state == ProvisioningState.FAILED
        assert store.count("insert", MEMBERSHIPS_TABLE) == 0
        assert store.count("delete", ORGANIZATIONS_TABLE) == 0
        assert metrics.get("provisioning_failures_total") == 1

    async def test_duplicate_name(self, store):
        store.fail_next("insert", ORGANIZATIONS_TABLE, UniquenessError("duplicate key value", code="23505"))
        result = await svc.create_organization("Acme", PROFILE_ID, store)
        assert result.error == f"Organization creation failed: {svc.DUPLICATE_NAME_HINT}"

    async def test_connection_failure(self, store):
        store.fail_next("insert", ORGANIZATIONS_TABLE, TransportError("timed out"))
        result = await svc.create_organization("Acme", PROFILE_ID, store)
        assert result.error == f"Organization creation failed: {svc.CONNECTION_HINT}"
        assert result.error_kind == ProvisioningErrorKind.TRANSPORT

    async def test_other_store_error_passes_message(self, store):
        store.fail_next("insert", ORGANIZATIONS_TABLE, StoreError("value too long", code="22001"))
        result = await svc.create_organization("Acme", PROFILE_ID, store)
        assert result.error == "Organization creation failed: value too long"


class TestCompensation:
    async def test_membership_failure_deletes_organization(self, store, metrics):
        store.fail_next(
            "insert",
            MEMBERSHIPS_TABLE,
            AccessPolicyError("new row violates row-level security policy", code="42501"),
        )
        result = await svc.create_organization("Acme", PROFILE_ID, store, metrics=metrics)

        assert not result.success
        assert result.organization_id is None
        assert result.error.startswith("Organization membership creation failed: ")
        assert result.error_kind == ProvisioningErrorKind.PARTIAL_PROVISIONING
        assert result.state == ProvisioningState.COMPENSATED
        assert result.compensated is True
        assert store.tables[ORGANIZATIONS_TABLE] == []
        assert store.tables[MEMBERSHIPS_TABLE] == []
        assert metrics.get("provisioning_compensations_total") == 1

    async def test_compensation_failure_is_reported_not_raised(self, store, metrics):
        store.fail_next("insert", MEMBERSHIPS_TABLE, TransportError("connection reset"))
        store.fail_next("delete", ORGANIZATIONS_TABLE, TransportError("connection reset"))

        result = await svc.create_organization("Acme", PROFILE_ID, store, metrics=metrics)

        assert not result.success
        assert result.compensated is False
        assert result.state == ProvisioningState.FAILED
        assert len(store.tables[ORGANIZATIONS_TABLE]) == 1
        assert metrics.get("compensation_failures_total") == 1
        assert metrics.get("provisioning_failures_total") == 1

    async def test_delete_removing_nothing_is_not_compensated(self, store, metrics):
        store.fail_next("insert", MEMBERSHIPS_TABLE, UniquenessError("duplicate key value"))
        store.delete_hides_rows = True

        result = await svc.create_organization("Acme", PROFILE_ID, store, metrics=metrics)

        assert result.compensated is False
        assert result.state == ProvisioningState.FAILED
        assert metrics.get("compensation_failures_total") == 1

    async def test_compensation_deletes_only_the_new_organization(self, store):
        store.seed(ORGANIZATIONS_TABLE, _org("o-existing", "Existing"))
        store.fail_next("insert", MEMBERSHIPS_TABLE, TransportError("connection reset"))

        await svc.create_organization("Acme", PROFILE_ID, store)

        assert [o["id"] for o in store.tables[ORGANIZATIONS_TABLE]] == ["o-existing"]


class TestProvisioningTransaction:
    def test_happy_path(self):
        txn = ProvisioningTransaction(organization_id="o1", name="Acme", owner_id="p1")
        txn.advance(ProvisioningState.ORGANIZATION_CREATED)
        txn.advance(ProvisioningState.MEMBERSHIP_CREATED)
        assert txn.history == [ProvisioningState.PENDING, ProvisioningState.ORGANIZATION_CREATED]

    def test_cannot_compensate_before_organization_exists(self):
        txn = ProvisioningTransaction(organization_id="o1", name="Acme", owner_id="p1")
        with pytest.raises(InvalidTransitionError):
            txn.advance(ProvisioningState.COMPENSATED)

    def test_terminal_state(self):
        txn = ProvisioningTransaction(organization_id="o1", name="Acme", owner_id="p1")
        txn.fail(StoreError("boom"))
        assert txn.error is not None
        with pytest.raises(InvalidTransitionError):
            txn.advance(ProvisioningState.ORGANIZATION_CREATED)


# ---------------------------------------------------------------------------
# Access check
# ---------------------------------------------------------------------------

class TestValidateUserAccess:
    async def test_member(self, store, metrics):
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "member"))
        assert await svc.validate_user_access(PROFILE_ID, "o1", store, metrics=metrics)
        assert metrics.get("access_checks_total") == 1

    async def test_non_member(self, store):
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "member", user="p-other"))
        assert not await svc.validate_user_access(PROFILE_ID, "o1", store)

    async def test_empty_ids(self, store):
        assert not await svc.validate_user_access("", "o1", store)
        assert not await svc.validate_user_access(PROFILE_ID, "", store)
        assert store.calls == []

    async def test_store_error_fails_closed(self, store):
        store.seed(MEMBERSHIPS_TABLE, _member("o1", "owner"))
        store.fail_next("select", MEMBERSHIPS_TABLE, TransportError("down"))
        assert not await svc.validate_user_access(PROFILE_ID, "o1", store)


# ---------------------------------------------------------------------------
# End-to-end properties
# ---------------------------------------------------------------------------

class TestProperties:
    async def test_new_profile_scenario(self, store):
        assert await svc.fetch_organizations_for_user(PROFILE_ID, store) == []

        result = await svc.create_organization("Acme", PROFILE_ID, store)

        [org] = await svc.fetch_organizations_for_user(PROFILE_ID, store)
        assert (org.id, org.name, org.owner_id, org.role) == (
            result.organization_id,
            "Acme",
            PROFILE_ID,
            Role.OWNER,
        )
        assert await svc.validate_user_access(PROFILE_ID, result.organization_id, store)
        owners = [
            m
            for m in store.tables[MEMBERSHIPS_TABLE]
            if m["organization_id"] == result.organization_id and m["role"] == "owner"
        ]
        assert len(owners) == 1

    async def test_compensated_organization_is_not_listed(self, store):
        store.fail_next("insert", MEMBERSHIPS_TABLE, TransportError("connection reset"))
        await svc.create_organization("Acme", PROFILE_ID, store)
        assert await svc.fetch_organizations_for_user(PROFILE_ID, store) == []

    async def test_orphan_after_failed_compensation_has_no_members(self, store):
        store.fail_next("insert", MEMBERSHIPS_TABLE, TransportError("connection reset"))
        store.fail_next("delete", ORGANIZATIONS_TABLE, TransportError("connection reset"))

        await svc.create_organization("Acme", PROFILE_ID, store)

        [orphan] = store.tables[ORGANIZATIONS_TABLE]
        assert not [m for m in store.tables[MEMBERSHIPS_TABLE] if m["organization_id"] == orphan["id"]]
        assert await svc.fetch_organizations_for_user(PROFILE_ID, store) == []

    async def test_repeated_fetch_is_stable(self, store):
        await svc.create_organization("Acme", PROFILE_ID, store)
        await svc.create_organization("Globex", PROFILE_ID, store)

        first = await svc.fetch_organizations_for_user(PROFILE_ID, store)
        second = await svc.fetch_organizations_for_user(PROFILE_ID, store)
        assert first == second
