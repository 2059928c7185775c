import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base, TimestampMixin


class EntitlementStatus(str, enum.Enum):
    active = "active"
    suspended = "suspended"
    expired = "expired"
    revoked = "revoked"


class EntitlementAuditAction(str, enum.Enum):
    granted = "granted"
    revoked = "revoked"


# Literal predicate: ON CONFLICT inference needs it to match the index text.
ACTIVE_ENTITLEMENT_PREDICATE = text("status = 'active'")


class Entitlement(TimestampMixin, Base):
    __tablename__ = "entitlements"
    __table_args__ = (
        Index(
            "uq_entitlements_active_user_product",
            "user_id",
            "product_id",
            unique=True,
            postgresql_where=ACTIVE_ENTITLEMENT_PREDICATE,
            sqlite_where=ACTIVE_ENTITLEMENT_PREDICATE,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id"), nullable=False
    )
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("plans.id")
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), index=True
    )
    status: Mapped[EntitlementStatus] = mapped_column(
        Enum(EntitlementStatus), default=EntitlementStatus.active
    )
    # Overrides only; null means "inherit from plan".
    feature_flags: Mapped[dict | None] = mapped_column(JSON)
    usage_limit: Mapped[int | None] = mapped_column(Integer)
    soft_limit: Mapped[int | None] = mapped_column(Integer)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    usage_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    plan = relationship("Plan")


class EntitlementAuditEntry(Base):
    __tablename__ = "entitlement_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entitlements.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    action: Mapped[EntitlementAuditAction] = mapped_column(
        Enum(EntitlementAuditAction), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(Text)
    performed_by: Mapped[str] = mapped_column(String(255), default="system")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class UsageEvent(Base):
    __tablename__ = "usage_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    usage_type: Mapped[str | None] = mapped_column(String(120))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
