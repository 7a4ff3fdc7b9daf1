"""Pydantic schemas for API request/response validation."""
import json
import re
from datetime import datetime
from typing import TYPE_CHECKING, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from access_portal.db.models import AuditLog
    from access_portal.services.grants import BulkActionResult, BulkCreateResult
    from access_portal.services.requests import BulkProvisionResult, CopyGrantsResult

T = TypeVar("T")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

GrantStatus = Literal["active", "to_remove", "removed"]
RequestStatus = Literal["requested", "approved", "rejected"]


def validate_email(v: str) -> str:
    """Check email shape and return it trimmed and lowercased."""
    v = v.strip().lower()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email address")
    return v


# ============== Auth Schemas ==============


class LoginRequest(BaseModel):
    """Login request. Password verification happens upstream."""

    email: str

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return validate_email(v)


class TokenResponse(BaseModel):
    """Token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


# ============== User Schemas ==============


class UserSummary(BaseModel):
    """Minimal user reference embedded in other responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str


class UserResponse(BaseModel):
    """Full user response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    manager_id: str | None
    manager: UserSummary | None = None
    slack_email: str | None
    created_at: datetime
    updated_at: datetime


class MeResponse(BaseModel):
    """Current user with effective roles."""

    user: UserResponse
    roles: list[str]


class UserCreate(BaseModel):
    """Request to create a user.

    Example:
        ```json
        {"email": "jane.doe@example.com", "name": "Jane Doe"}
        ```
    """

    email: str
    name: str = Field(..., min_length=1, max_length=200)
    manager_id: str | None = None
    slack_email: str | None = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return validate_email(v)

    @field_validator("slack_email")
    @classmethod
    def check_slack_email(cls, v: str | None) -> str | None:
        return validate_email(v) if v else None


class UserUpdate(BaseModel):
    """Request to update a user."""

    email: str | None = None
    name: str | None = Field(None, min_length=1, max_length=200)
    slack_email: str | None = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str | None) -> str | None:
        return validate_email(v) if v is not None else None


class ManagerAssign(BaseModel):
    """Set or clear a user's manager."""

    manager_id: str | None


class RoleAssign(BaseModel):
    role: str


class RolesResponse(BaseModel):
    user_id: str
    roles: list[str]


# ============== Catalog Schemas ==============


class SystemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)


class SystemUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)


class SystemSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str


class InstanceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    region: str | None = Field(None, max_length=50)
    environment: str | None = Field(None, max_length=50)


class InstanceUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    region: str | None = Field(None, max_length=50)
    environment: str | None = Field(None, max_length=50)


class InstanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    system_id: str
    name: str
    region: str | None
    environment: str | None


class InstanceWithSystem(InstanceResponse):
    system: SystemSummary


class TierCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)


class TierResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    system_id: str
    name: str
    description: str | None


class SystemResponse(BaseModel):
    """System with its instances and tiers."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    instances: list[InstanceResponse] = []
    access_tiers: list[TierResponse] = []
    created_at: datetime
    updated_at: datetime


class OwnerAssign(BaseModel):
    user_id: str


class SystemOwnerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user: UserSummary
    system: SystemSummary
    created_at: datetime


# ============== Grant Schemas ==============


class AccessGrantCreate(BaseModel):
    """Request to create a grant directly (bypassing the request workflow)."""

    user_id: str
    system_instance_id: str
    access_tier_id: str
    granted_by_id: str | None = None
    granted_at: datetime | None = None
    status: GrantStatus = "active"


class GrantStatusUpdate(BaseModel):
    status: GrantStatus


class AccessGrantResponse(BaseModel):
    """Grant with its display context."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user: UserSummary
    system_instance: InstanceWithSystem
    access_tier: TierResponse
    status: str
    granted_by: UserSummary | None = None
    granted_at: datetime
    removed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class GrantPageResponse(BaseModel):
    """Paginated grant overview."""

    data: list[AccessGrantResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class BulkIdsRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1, max_length=100)


class BulkFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reason: str


class BulkActionResponse(BaseModel):
    """Best-effort batch outcome over entity IDs."""

    successful: list[str]
    failed: list[BulkFailureResponse]

    @classmethod
    def from_result(cls, result: "BulkActionResult") -> "BulkActionResponse":
        return cls(
            successful=result.successful,
            failed=[BulkFailureResponse.model_validate(f) for f in result.failed],
        )


class BulkGrantItem(BaseModel):
    user_id: str
    system_instance_id: str
    access_tier_id: str
    granted_by_id: str | None = None
    granted_at: datetime | None = None
    status: GrantStatus = "active"


class BulkGrantsCreate(BaseModel):
    grants: list[BulkGrantItem] = Field(..., min_length=1, max_length=100)


class BulkRowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    row: int
    success: bool
    grant: AccessGrantResponse | None = None
    error: str | None = None
    skipped: bool = False


class BulkCreateResponse(BaseModel):
    """Per-row import report. Always returned with 200, even if every row failed."""

    total: int
    success: int
    failed: int
    skipped: int
    results: list[BulkRowResponse]

    @classmethod
    def from_result(cls, result: "BulkCreateResult") -> "BulkCreateResponse":
        return cls(
            total=len(result.results),
            success=result.success,
            failed=result.failed,
            skipped=result.skipped,
            results=[BulkRowResponse.model_validate(r) for r in result.results],
        )


# ============== Request Schemas ==============


class AccessRequestItemCreate(BaseModel):
    system_instance_id: str
    access_tier_id: str


class AccessRequestCreate(BaseModel):
    """Submit an access request.

    Example:
        ```json
        {
            "target_user_id": "…",
            "items": [{"system_instance_id": "…", "access_tier_id": "…"}],
            "note": "Needs Magento admin for the migration"
        }
        ```
    """

    target_user_id: str
    items: list[AccessRequestItemCreate] = Field(..., min_length=1)
    note: str | None = Field(None, max_length=2000)


class RejectBody(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class AccessRequestItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    access_request_id: str
    system_instance: InstanceWithSystem
    access_tier: TierResponse
    status: str
    rejection_reason: str | None
    access_grant_id: str | None
    created_at: datetime


class AccessRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    target_user: UserSummary
    requester: UserSummary
    status: str
    note: str | None
    items: list[AccessRequestItemResponse]
    created_at: datetime
    updated_at: datetime


class ProvisioningItemResponse(AccessRequestItemResponse):
    """Approved item waiting for its system owner."""

    target_user: UserSummary
    requester: UserSummary

    @classmethod
    def from_item(cls, item) -> "ProvisioningItemResponse":
        base = AccessRequestItemResponse.model_validate(item)
        return cls(
            **base.model_dump(),
            target_user=UserSummary.model_validate(item.access_request.target_user),
            requester=UserSummary.model_validate(item.access_request.requester),
        )


class BulkProvisionResponse(BaseModel):
    successful: list[AccessGrantResponse]
    failed: list[BulkFailureResponse]

    @classmethod
    def from_result(cls, result: "BulkProvisionResult") -> "BulkProvisionResponse":
        return cls(
            successful=[AccessGrantResponse.model_validate(g) for g in result.successful],
            failed=[BulkFailureResponse.model_validate(f) for f in result.failed],
        )


class CopyGrantsRequest(BaseModel):
    source_user_id: str
    target_user_id: str
    system_ids: list[str] | None = None  # Only copy from these systems
    exclude_system_ids: list[str] | None = None


class CopySkipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    system_instance_id: str
    access_tier_id: str
    reason: str


class CopySummary(BaseModel):
    total: int
    created: int
    skipped: int
    auto_approved: int


class CopyGrantsResponse(BaseModel):
    created: list[AccessRequestResponse]
    skipped: list[CopySkipResponse]
    summary: CopySummary

    @classmethod
    def from_result(cls, result: "CopyGrantsResult") -> "CopyGrantsResponse":
        return cls(
            created=[AccessRequestResponse.model_validate(r) for r in result.created],
            skipped=[CopySkipResponse.model_validate(s) for s in result.skipped],
            summary=CopySummary(
                total=result.total,
                created=len(result.created),
                skipped=len(result.skipped),
                auto_approved=result.auto_approved,
            ),
        )


# ============== Audit Schemas ==============


class AuditLogResponse(BaseModel):
    id: str
    action: str
    actor_id: str | None
    target_user_id: str | None
    resource_type: str
    resource_id: str | None
    details: dict | None
    reason: str | None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: "AuditLog") -> "AuditLogResponse":
        details = None
        if entry.details_json:
            try:
                details = json.loads(entry.details_json)
            except json.JSONDecodeError:
                details = {"raw": entry.details_json}
        return cls(
            id=entry.id,
            action=entry.action,
            actor_id=entry.actor_id,
            target_user_id=entry.target_user_id,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            details=details,
            reason=entry.reason,
            created_at=entry.created_at,
        )


# ============== Generic Response Schemas ==============


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    success: bool = True
    data: T
    message: str | None = None


class ApiListResponse(BaseModel, Generic[T]):
    """Generic API list response wrapper."""

    success: bool = True
    data: list[T]
    total: int
