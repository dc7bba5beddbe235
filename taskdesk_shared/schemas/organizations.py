"""
Organization-related Pydantic schemas shared between the runtime and store backends.

Covers: organization rows, memberships, the per-user read projection,
the create request, and the provisioning lifecycle states.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .common import Role

ORG_NAME_MIN_LENGTH = 2
ORG_NAME_MAX_LENGTH = 100

# Columns read back for an organization
ORGANIZATION_COLUMNS = ["id", "name", "owner_id", "created_at", "updated_at"]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ProvisioningState(str, Enum):
    PENDING = "pending"
    ORGANIZATION_CREATED = "organization_created"
    MEMBERSHIP_CREATED = "membership_created"
    COMPENSATED = "compensated"
    FAILED = "failed"


class ProvisioningErrorKind(str, Enum):
    VALIDATION = "validation"
    ACCESS_POLICY = "access_policy"
    UNIQUENESS = "uniqueness"
    TRANSPORT = "transport"
    STORE = "store"
    PARTIAL_PROVISIONING = "partial_provisioning"


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

# FAILED after ORGANIZATION_CREATED means the compensating delete did not run
# or did not succeed (orphaned organization) or an atomic write was rolled back.
PROVISIONING_TRANSITIONS: dict[ProvisioningState, list[ProvisioningState]] = {
    ProvisioningState.PENDING: [
        ProvisioningState.ORGANIZATION_CREATED,
        ProvisioningState.FAILED,
    ],
    ProvisioningState.ORGANIZATION_CREATED: [
        ProvisioningState.MEMBERSHIP_CREATED,
        ProvisioningState.COMPENSATED,
        ProvisioningState.FAILED,
    ],
    ProvisioningState.MEMBERSHIP_CREATED: [],
    ProvisioningState.COMPENSATED: [],
    ProvisioningState.FAILED: [],
}


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

class Organization(BaseModel):
    id: str
    name: str
    owner_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "extra": "ignore"}


class Membership(BaseModel):
    organization_id: str
    user_id: str
    role: Role

    model_config = {"from_attributes": True, "extra": "ignore"}


class OrganizationWithRole(Organization):
    role: Role  # the requesting user's role in this organization


# ---------------------------------------------------------------------------
# Request / result schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(
        ...,
        min_length=ORG_NAME_MIN_LENGTH,
        max_length=ORG_NAME_MAX_LENGTH,
        description="Organization display name (surrounding whitespace removed)",
    )

    model_config = {"str_strip_whitespace": True}


class ProvisioningResult(BaseModel):
    success: bool
    organization_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ProvisioningErrorKind] = None
    state: ProvisioningState = ProvisioningState.PENDING
    compensated: Optional[bool] = None  # set only when a compensating delete was attempted
