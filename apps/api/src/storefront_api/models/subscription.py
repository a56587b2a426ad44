"""Subscription plan catalogue and billing models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from storefront_api.db.base import Base


class BillingInterval(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAUSED = "paused"


class BillingRecordStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


class BillingRecordKind(str, Enum):
    RENEWAL = "renewal"
    PRORATION = "proration"


class SubscriptionPlan(Base):
    """Catalogue entry customers subscribe to."""

    __tablename__ = "subscription_plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price_amount = Column(Numeric(12, 2), nullable=False)
    price_currency = Column(String(3), nullable=False, default="INR", server_default="INR")
    billing_interval = Column(
        SqlEnum(BillingInterval, name="subscription_billing_interval"),
        nullable=False,
        default=BillingInterval.MONTH,
    )
    billing_frequency = Column(Integer, nullable=False, default=1, server_default="1")
    trial_days = Column(Integer, nullable=False, default=0, server_default="0")
    trial_enabled = Column(Boolean, nullable=False, default=False, server_default="false")
    features = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def offers_trial(self) -> bool:
        return bool(self.trial_enabled) and int(self.trial_days or 0) > 0


class Subscription(Base):
    """A customer's enrollment in a plan."""

    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(String, nullable=False, index=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False, index=True)
    status = Column(
        SqlEnum(SubscriptionStatus, name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False, server_default="false")
    cancellation_reason = Column(String, nullable=True)
    cancellation_date = Column(DateTime(timezone=True), nullable=True)
    payment_method = Column(String, nullable=True)
    failed_payment_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    metadata_json = Column("metadata", JSON, nullable=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    plan = relationship("SubscriptionPlan", lazy="selectin")


class SubscriptionBillingRecord(Base):
    """Append-only billing history entry for a subscription period."""

    __tablename__ = "subscription_billing_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_id = Column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id = Column(UUID(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False)
    kind = Column(
        SqlEnum(BillingRecordKind, name="subscription_billing_record_kind"),
        nullable=False,
        default=BillingRecordKind.RENEWAL,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SqlEnum(BillingRecordStatus, name="subscription_billing_record_status"), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    transaction_ref = Column(String, nullable=True)
    invoice_number = Column(String, nullable=True, unique=True)
    failure_reason = Column(String, nullable=True)
    billed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = [
    "BillingInterval",
    "BillingRecordKind",
    "BillingRecordStatus",
    "Subscription",
    "SubscriptionBillingRecord",
    "SubscriptionPlan",
    "SubscriptionStatus",
]
