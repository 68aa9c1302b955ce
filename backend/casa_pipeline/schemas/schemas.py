"""
Pydantic schemas for the volunteer pipeline, the session, and the JSON API.

Backend payloads arrive in snake_case from the CASA endpoints and in
camelCase from older WordPress handlers, so the inbound models accept both.
"""

import json
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


# ── Enums ──

class VolunteerStatus(str, Enum):
    APPLIED = "applied"
    BACKGROUND_CHECK = "background_check"
    TRAINING = "training"
    ACTIVE = "active"
    INACTIVE = "inactive"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class BackgroundCheckStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class TrainingStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PipelineAction(str, Enum):
    START_BACKGROUND_CHECK = "start_background_check"
    APPROVE_BACKGROUND_CHECK = "approve_background_check"
    FAIL_BACKGROUND_CHECK = "fail_background_check"
    COMPLETE_TRAINING = "complete_training"
    APPROVE_VOLUNTEER = "approve_volunteer"
    REJECT_APPLICATION = "reject_application"


class ActionVariant(str, Enum):
    PRIMARY = "primary"
    DANGER = "danger"
    SECONDARY = "secondary"


class TokenState(str, Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


class ActionPhase(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


# ── Volunteers ──

class Volunteer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    user_id: str | None = Field(None, validation_alias=_alias("user_id", "userId"))
    first_name: str = Field("", validation_alias=_alias("first_name", "firstName"))
    last_name: str = Field("", validation_alias=_alias("last_name", "lastName"))
    email: str = ""
    phone: str = ""
    volunteer_status: VolunteerStatus | str = Field(
        VolunteerStatus.APPLIED,
        validation_alias=_alias("volunteer_status", "volunteerStatus"),
        union_mode="left_to_right",
    )
    background_check_status: BackgroundCheckStatus | str = Field(
        BackgroundCheckStatus.PENDING,
        validation_alias=_alias("background_check_status", "backgroundCheckStatus"),
        union_mode="left_to_right",
    )
    training_status: TrainingStatus | str = Field(
        TrainingStatus.NOT_STARTED,
        validation_alias=_alias("training_status", "trainingStatus"),
        union_mode="left_to_right",
    )
    rejection_reason: str | None = Field(None, validation_alias=_alias("rejection_reason", "rejectionReason"))
    organization_id: str = Field("", validation_alias=_alias("organization_id", "organizationId"))
    application_date: str | None = Field(None, validation_alias=_alias("application_date", "applicationDate"))
    background_check_date: str | None = Field(
        None, validation_alias=_alias("background_check_date", "backgroundCheckDate")
    )
    training_completed_date: str | None = Field(
        None, validation_alias=_alias("training_completion_date", "trainingCompletedDate")
    )
    approved_at: str | None = Field(None, validation_alias=_alias("approved_at", "approvedAt"))
    approved_by: str | None = Field(None, validation_alias=_alias("approved_by", "approvedBy"))
    rejected_at: str | None = Field(None, validation_alias=_alias("rejected_at", "rejectedAt"))
    created_at: str = Field("", validation_alias=_alias("created_at", "createdAt"))
    updated_at: str = Field("", validation_alias=_alias("updated_at", "updatedAt"))

    @model_validator(mode="before")
    @classmethod
    def _drop_empty_statuses(cls, data):
        # Backend sends null/"" for statuses it never set; fall back to defaults
        if isinstance(data, dict):
            data = {
                k: v for k, v in data.items()
                if not (k.endswith(("status", "Status")) and v in (None, ""))
            }
        return data

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_active(self) -> bool:
        return self.volunteer_status == VolunteerStatus.ACTIVE


# ── Session ──

class User(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    email: str = ""
    first_name: str = Field("", validation_alias=_alias("first_name", "firstName"))
    last_name: str = Field("", validation_alias=_alias("last_name", "lastName"))
    roles: list[str] = []
    casa_role: str | None = None
    organization_id: str | None = Field(None, validation_alias=_alias("organization_id", "organizationId"))
    is_active: bool = Field(True, validation_alias=_alias("is_active", "isActive"))

    @property
    def role_set(self) -> frozenset[str]:
        return frozenset(self.roles)


class Organization(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    name: str = ""
    slug: str = ""
    domain: str | None = None
    status: str = "active"
    settings: dict = {}

    @field_validator("settings", mode="before")
    @classmethod
    def _parse_settings(cls, value):
        # Stored as a JSON string in the organizations table
        if isinstance(value, str):
            return json.loads(value) if value else {}
        return value or {}


class LoginCredentials(BaseModel):
    email: EmailStr
    password: str
    organization_slug: str | None = None


class TwoFactorChallenge(BaseModel):
    temp_token: str
    email: str = ""
    organization_slug: str | None = None


class SessionSnapshot(BaseModel):
    """Everything needed to re-hydrate a session after a restart."""
    access_token: str | None = None
    refresh_token: str | None = None
    token_expired: bool = False
    user: User | None = None
    organization: Organization | None = None
    organizations: list[Organization] = []


# ── Pipeline ──

class ActionDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: PipelineAction
    label: str
    variant: ActionVariant


class PipelineActionRequest(BaseModel):
    action: PipelineAction
    notes: str | None = None
    rejection_reason: str | None = None


class PipelineActionResult(BaseModel):
    """What the backend reports about an executed pipeline action."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    action: str
    old_status: str | None = None
    new_status: str | None = None
    user_created: bool = False
    username: str | None = None
    temporary_password: str | None = None
    welcome_email_sent: bool = False


class PipelineOutcome(BaseModel):
    volunteer: Volunteer
    result: PipelineActionResult


# ── Board / API responses ──

class VolunteerCard(BaseModel):
    volunteer: Volunteer
    actions: list[ActionDescriptor]
    phase: ActionPhase = ActionPhase.IDLE
    last_error: str | None = None


class BoardColumn(BaseModel):
    status: VolunteerStatus
    title: str
    color: str
    count: int
    cards: list[VolunteerCard]


class BoardView(BaseModel):
    organization_id: str | None
    columns: list[BoardColumn]
    stats: dict[str, int]
    application_url: str | None = None


class SessionInfo(BaseModel):
    user: User | None
    organization: Organization | None
    organizations: list[Organization] = []
    token_state: TokenState
    is_admin: bool
    is_super_admin: bool
    capabilities: list[str] = []


class TwoFactorVerifyRequest(BaseModel):
    temp_token: str
    code: str
    organization_slug: str | None = None


class TwoFactorResendRequest(BaseModel):
    temp_token: str


class SwitchOrganizationRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    organization_id: str
