"""
Database models for the escrow payment service.

Money columns are Numeric(38, 18) and always hold Decimal. Status columns are
plain strings validated against the Enum classes below; every status change
goes through the transition tables in utils/escrow_state_machine.py.
"""

from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    pass


class PaymentStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PaymentEventType(Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    ALLOCATED = "allocated"
    RELEASED = "released"
    RELEASE_FAILED = "release_failed"
    REFUND_FAILED = "refund_failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"
    RECONCILIATION_REQUIRED = "reconciliation_required"


class RiskTolerance(Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class StrategyStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REMOVED = "removed"


class AllocationStatus(Enum):
    PLACED = "placed"
    FAILED = "failed"
    WITHDRAWN = "withdrawn"


class BridgeStatus(Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReconciliationStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Payment(Base):
    """Escrowed payment from a payer to a merchant"""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String(40), unique=True, nullable=False, index=True)
    payer_address = Column(String(64), nullable=True)
    merchant_address = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(38, 18), nullable=False)
    token = Column(String(16), nullable=False)
    chain = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    escrow_address = Column(String(64), nullable=False)
    yield_enabled = Column(Boolean, nullable=False, default=False)
    risk_tolerance = Column(String(20), nullable=False, default=RiskTolerance.MODERATE.value)
    estimated_yield = Column(Numeric(38, 18), nullable=False, default=0)
    actual_yield = Column(Numeric(38, 18), nullable=True)
    deposit_tx_hash = Column(String(128), nullable=True)
    release_tx_hash = Column(String(128), nullable=True)
    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)
    confirmed_at = Column(DateTime, nullable=True)
    yield_accrued_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    events = relationship(
        "PaymentEvent", back_populates="payment", order_by="PaymentEvent.id", lazy="selectin"
    )
    allocations = relationship(
        "PaymentAllocation", back_populates="payment", order_by="PaymentAllocation.id", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint("estimated_yield >= 0", name="ck_payment_estimated_yield_non_negative"),
        CheckConstraint(
            "expires_at IS NULL OR expires_at > created_at", name="ck_payment_expiry_after_creation"
        ),
        Index("ix_payments_status_expires", "status", "expires_at"),
        Index("ix_payments_status_yield", "status", "yield_enabled"),
    )

    def __repr__(self):
        return f"<Payment {self.payment_id} {self.status} {self.amount} {self.token}>"


class PaymentEvent(Base):
    """Append-only audit record of a payment transition"""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String(40), ForeignKey("payments.payment_id"), nullable=False, index=True)
    event_type = Column(String(32), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    tx_hash = Column(String(128), nullable=True)
    error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)

    payment = relationship("Payment", back_populates="events")


class YieldStrategy(Base):
    """A yield source and its slice of the pooled allocation"""

    __tablename__ = "yield_strategies"

    id = Column(Integer, primary_key=True)
    strategy_id = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(128), nullable=False)
    protocol = Column(String(64), nullable=False)
    endpoint_url = Column(String(255), nullable=True)
    risk_score = Column(Integer, nullable=False)
    cap_bp = Column(Integer, nullable=False)
    weight_bp = Column(Integer, nullable=False, default=0)
    expected_apy = Column(Numeric(38, 18), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=StrategyStatus.ACTIVE.value)
    total_harvested = Column(Numeric(38, 18), nullable=False, default=0)
    last_harvest_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint("risk_score BETWEEN 1 AND 10", name="ck_strategy_risk_range"),
        CheckConstraint("cap_bp BETWEEN 0 AND 10000", name="ck_strategy_cap_range"),
        CheckConstraint("weight_bp BETWEEN 0 AND 10000", name="ck_strategy_weight_range"),
        CheckConstraint("weight_bp <= cap_bp", name="ck_strategy_weight_within_cap"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == StrategyStatus.ACTIVE.value


class PaymentAllocation(Base):
    """Portion of an escrowed payment placed into one strategy"""

    __tablename__ = "payment_allocations"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String(40), ForeignKey("payments.payment_id"), nullable=False, index=True)
    strategy_id = Column(String(64), ForeignKey("yield_strategies.strategy_id"), nullable=False)
    weight_bp = Column(Integer, nullable=False)
    principal = Column(Numeric(38, 18), nullable=False)
    status = Column(String(20), nullable=False, default=AllocationStatus.PLACED.value)
    last_quoted_apy = Column(Numeric(38, 18), nullable=True)
    accrued_yield = Column(Numeric(38, 18), nullable=False, default=0)
    deposit_reference = Column(String(128), nullable=True)
    error = Column(Text, nullable=True)
    placed_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    withdrawn_at = Column(DateTime, nullable=True)

    payment = relationship("Payment", back_populates="allocations")

    __table_args__ = (
        CheckConstraint("principal >= 0", name="ck_allocation_principal_non_negative"),
    )


class RebalanceRecord(Base):
    """Audit row written by every successful rebalance"""

    __tablename__ = "rebalance_records"

    id = Column(Integer, primary_key=True)
    previous_weights = Column(JSON, nullable=False)
    new_weights = Column(JSON, nullable=False)
    l1_distance_bp = Column(Integer, nullable=False)
    triggered_by = Column(String(64), nullable=False, default="manual")
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now, index=True)


class BridgeTransaction(Base):
    """Cross-chain transfer moving through initiate/validate/complete-or-refund"""

    __tablename__ = "bridge_transactions"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String(40), unique=True, nullable=False, index=True)
    payment_id = Column(String(40), ForeignKey("payments.payment_id"), nullable=True, index=True)
    source_chain = Column(String(32), nullable=False)
    destination_chain = Column(String(32), nullable=False)
    source_address = Column(String(64), nullable=False)
    destination_address = Column(String(64), nullable=False)
    token = Column(String(16), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    fee_bp = Column(Integer, nullable=False)
    fee_amount = Column(Numeric(38, 18), nullable=False)
    status = Column(String(20), nullable=False, default=BridgeStatus.PENDING.value)
    source_tx_hash = Column(String(128), nullable=True)
    destination_tx_hash = Column(String(128), nullable=True)
    refund_tx_hash = Column(String(128), nullable=True)
    validator_address = Column(String(64), nullable=True)
    operator_address = Column(String(64), nullable=True)
    applied_apy = Column(Numeric(38, 18), nullable=True)
    yield_amount = Column(Numeric(38, 18), nullable=True)
    payout_amount = Column(Numeric(38, 18), nullable=True)
    refund_reason = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    completion_proof = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)
    validated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_bridge_amount_positive"),
        CheckConstraint("fee_bp BETWEEN 0 AND 1000", name="ck_bridge_fee_range"),
        CheckConstraint("source_chain <> destination_chain", name="ck_bridge_distinct_chains"),
        Index("ix_bridge_status_created", "status", "created_at"),
    )


class ReconciliationCase(Base):
    """Funds-moving call whose outcome disagrees with the local record"""

    __tablename__ = "reconciliation_cases"

    id = Column(Integer, primary_key=True)
    case_id = Column(String(40), unique=True, nullable=False, index=True)
    subject_type = Column(String(20), nullable=False)
    subject_id = Column(String(40), nullable=False, index=True)
    operation = Column(String(64), nullable=False)
    external_reference = Column(String(128), nullable=True)
    amount = Column(Numeric(38, 18), nullable=True)
    token = Column(String(16), nullable=True)
    error = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default=ReconciliationStatus.OPEN.value)
    resolution_note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    resolved_at = Column(DateTime, nullable=True)
