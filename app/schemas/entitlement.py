from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# ── Entitlement query ────────────────────────────────────


class UsageSnapshot(BaseModel):
    limit: int
    used: int
    remaining: int
    soft_limit: int
    reset_at: datetime | None = None


class EntitlementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entitlement_id: UUID
    product_id: UUID
    plan_id: UUID | None = None
    status: str
    features: dict[str, Any] = Field(default_factory=dict)
    usage: UsageSnapshot
    valid_until: datetime | None = None
    over_limit: bool
    over_soft_limit: bool


# ── Usage ────────────────────────────────────────────────


class UsageCreate(BaseModel):
    product_id: UUID
    amount: int = Field(default=1, ge=1)
    usage_type: str | None = Field(default=None, max_length=120)
    metadata: dict[str, Any] | None = None


class UsageRead(BaseModel):
    used: int
    remaining: int
    over_limit: bool
    soft_limit_remaining: int
    over_soft_limit: bool


# ── Internal grant / revoke ──────────────────────────────


class GrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    product_id: UUID
    plan_id: UUID
    usage_limit: int | None = Field(default=None, ge=0)
    soft_limit: int | None = Field(default=None, ge=0)
    feature_flags: dict[str, Any] | None = None
    valid_until: datetime | None = None
    performed_by: str = Field(default="system", max_length=255)


class GrantRead(BaseModel):
    entitlement_id: UUID
    user_id: str
    product_id: UUID
    plan_id: UUID
    status: Literal["active"]
    granted_at: datetime


class RevokeRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    product_id: UUID
    reason: str | None = None
    performed_by: str = Field(default="system", max_length=255)


class RevokeRead(BaseModel):
    entitlement_id: UUID
    user_id: str
    product_id: UUID
    status: Literal["suspended"]
    revoked_at: datetime


# ── Webhook stats ────────────────────────────────────────


class WebhookTypeCount(BaseModel):
    event_type: str
    count: int


class WebhookStatsRead(BaseModel):
    hours: int
    total: int
    by_type: list[WebhookTypeCount]
