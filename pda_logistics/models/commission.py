"""Commission, earnings and payout models for the delivery marketplace.

Supports:
- Commission lines per party for every revenue-bearing order event
- Agent earnings ledger paired with each party commission line
- Table-driven commission rates with documented fallbacks
- Seller payout / agent commission release records
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pda_logistics.database import Base
from pda_logistics.db_types import MoneyType, PercentType


class CommissionType(str, Enum):
    """Commission line type."""
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"           # Platform running costs
    FAST_DELIVERY_AGENT = "FAST_DELIVERY_AGENT"         # Home delivery courier
    PICKUP_DELIVERY_AGENT = "PICKUP_DELIVERY_AGENT"     # Courier bringing goods to a pickup site
    PICKUP_SITE_MANAGER = "PICKUP_SITE_MANAGER"         # PSM holding goods for the buyer
    REFERRAL = "REFERRAL"                               # Referring buyer
    PLATFORM = "PLATFORM"                               # Undistributed margin kept by the platform


class CommissionStatus(str, Enum):
    """Commission transaction status."""
    PENDING = "PENDING"         # Created, waiting for the grace period
    APPROVED = "APPROVED"       # No dispute within the grace period
    PAID = "PAID"               # Paid out, immutable
    CANCELLED = "CANCELLED"     # Order cancelled or disputed


class EarningStatus(str, Enum):
    """Agent earnings ledger status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    REVERSED = "REVERSED"


class PayoutType(str, Enum):
    """What a payout release unlocks."""
    SELLER_PAYOUT = "SELLER_PAYOUT"
    AGENT_COMMISSION = "AGENT_COMMISSION"


class CommissionTransaction(Base):
    """One party's share of an order's platform margin."""
    __tablename__ = "commission_transactions"
    __table_args__ = (
        Index('ix_commission_order_type', 'order_id', 'commission_type'),
        Index('ix_commission_status_due', 'status', 'approval_due_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    party_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        index=True,
        comment="Agent, PSM or referrer user id; NULL for platform lines"
    )
    commission_type: Mapped[str] = mapped_column(String(40), nullable=False)

    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    percentage: Mapped[Decimal] = mapped_column(PercentType, nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Amount the percentage was applied to"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=CommissionStatus.PENDING.value,
        nullable=False
    )
    approval_due_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of the dispute grace period; set on buyer delivery"
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<CommissionTransaction(order={self.order_id}, type='{self.commission_type}', amount={self.amount})>"


class AgentEarning(Base):
    """Ledger entry tying a commission line to the party that earned it."""
    __tablename__ = "agent_earnings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    commission_transaction_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("commission_transactions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    earnings_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=EarningStatus.PENDING.value,
        nullable=False
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class CommissionRateSetting(Base):
    """
    Editable commission percentage.

    Keys match the field names of ``CommissionRates``; rows that are
    missing fall back to the documented defaults.
    """
    __tablename__ = "commission_rate_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    setting_key: Mapped[str] = mapped_column(String(60), unique=True, nullable=False)
    setting_value: Mapped[Decimal] = mapped_column(PercentType, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class PayoutRelease(Base):
    """Record of a seller payout or agent commission being released for an order."""
    __tablename__ = "payout_releases"
    __table_args__ = (
        UniqueConstraint('order_id', 'payout_type', name='uq_payout_release_order_type'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )
    payout_type: Mapped[str] = mapped_column(String(30), nullable=False)
    released_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    released_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
