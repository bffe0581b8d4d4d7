from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies use camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------- #
# Script integration
# ---------------------------------------------------------------------- #


class IngestMetadata(CamelModel):
    run_id: str = Field(min_length=1, max_length=100)
    dataset_name: str = Field(min_length=1)
    chunk_index: int = Field(ge=0)
    chunk_total: int = Field(ge=1)
    row_count: int = Field(ge=0)
    datasets_expected: int | None = Field(default=None, ge=1)
    date_range_start: str | None = None
    date_range_end: str | None = None


class IngestPayload(CamelModel):
    metadata: IngestMetadata
    data: list[dict[str, Any]] = Field(default_factory=list)


class ModificationResultBody(CamelModel):
    success: bool
    message: str | None = None
    details: dict[str, Any] | None = None


# ---------------------------------------------------------------------- #
# Auth / users
# ---------------------------------------------------------------------- #


class LoginBody(CamelModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class CreateUserBody(CamelModel):
    email: str = Field(min_length=3)
    name: str = ""
    password: str
    role: Literal["admin", "user"] = "user"


class UpdateUserBody(CamelModel):
    name: str | None = None
    role: Literal["admin", "user"] | None = None
    is_active: bool | None = None


class ChangePasswordBody(CamelModel):
    current_password: str
    new_password: str


# ---------------------------------------------------------------------- #
# Accounts / dashboard
# ---------------------------------------------------------------------- #


class CreateAccountBody(CamelModel):
    customer_id: str = Field(min_length=1, max_length=20)
    customer_name: str = Field(min_length=1, max_length=255)
    currency_code: str | None = Field(default=None, max_length=3)
    time_zone: str | None = None


class RevealSecretBody(CamelModel):
    password: str


class ScheduleBody(CamelModel):
    enabled: bool | None = None
    days: list[int] | None = None
    time: str | None = None
    frequency: str | None = None


class IssueStatusBody(CamelModel):
    status: Literal["acknowledged", "resolved", "ignored"]


class AISettingsBody(CamelModel):
    openai_api_key: str | None = None
    openai_model: str | None = None


class AnalyzeModuleBody(CamelModel):
    module_id: int


# ---------------------------------------------------------------------- #
# Modifications
# ---------------------------------------------------------------------- #


class ModificationCreate(CamelModel):
    account_id: str
    entity_type: str
    entity_id: str = Field(min_length=1, max_length=50)
    entity_name: str | None = Field(default=None, max_length=500)
    modification_type: str
    before_value: dict[str, Any] | None = None
    after_value: dict[str, Any]
    notes: str | None = None


class RejectBody(CamelModel):
    reason: str = Field(min_length=1)


class BulkIdsBody(CamelModel):
    ids: list[str] = Field(min_length=1)


class BulkRejectBody(CamelModel):
    ids: list[str] = Field(min_length=1)
    reason: str = Field(min_length=1)


class CreateFromAIBody(CamelModel):
    account_id: str
    module_id: int
    recommendations: list[dict[str, Any]]


# ---------------------------------------------------------------------- #
# Decisions / change sets
# ---------------------------------------------------------------------- #


class DecisionCreate(CamelModel):
    account_id: str
    module_id: int
    entity_type: str = Field(min_length=1, max_length=50)
    entity_id: str = Field(min_length=1, max_length=100)
    entity_name: str | None = None
    action_type: str = Field(min_length=1, max_length=50)
    before_value: dict[str, Any] | None = None
    after_value: dict[str, Any] | None = None
    rationale: str | None = None
    evidence: dict[str, Any] | None = None


class DecisionUpdate(CamelModel):
    action_type: str | None = None
    before_value: dict[str, Any] | None = None
    after_value: dict[str, Any] | None = None
    rationale: str | None = None
    evidence: dict[str, Any] | None = None


class DecisionIdsBody(CamelModel):
    decision_ids: list[str] = Field(min_length=1)


class ChangeSetCreate(CamelModel):
    account_id: str
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    decision_ids: list[str] | None = None


class ChangeSetUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    decision_ids: list[str] | None = None
