from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pda_logistics.database import Base
from pda_logistics.db_types import JSONType, MoneyType, CoordinateType


class OrderKind(str, Enum):
    """Marketplace the order came from."""
    STANDARD = "STANDARD"           # Physical products marketplace
    GROCERY = "GROCERY"             # Grocery marketplace
    LOCAL_MARKET = "LOCAL_MARKET"   # Local market stalls


class DeliveryMethod(str, Enum):
    """How the buyer receives the goods."""
    PICKUP = "PICKUP"                   # Buyer collects at a pickup site
    HOME_DELIVERY = "HOME_DELIVERY"     # Agent delivers to the buyer's address


class PaymentStatus(str, Enum):
    """Payment status enumeration."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OrderStatus(str, Enum):
    """Delivery lifecycle status, shared by both delivery methods."""
    # Initial states
    ORDER_PLACED = "ORDER_PLACED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"

    # Collection from seller
    ASSIGNED_TO_AGENT = "ASSIGNED_TO_AGENT"
    EN_ROUTE_TO_SELLER = "EN_ROUTE_TO_SELLER"
    AT_SELLER = "AT_SELLER"
    PICKED_FROM_SELLER = "PICKED_FROM_SELLER"

    # Pickup path
    EN_ROUTE_TO_PSM = "EN_ROUTE_TO_PSM"
    DELIVERED_TO_PSM = "DELIVERED_TO_PSM"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    COLLECTED_BY_BUYER = "COLLECTED_BY_BUYER"

    # Home-delivery path
    EN_ROUTE_TO_BUYER = "EN_ROUTE_TO_BUYER"
    DELIVERED_TO_BUYER = "DELIVERED_TO_BUYER"

    # Final states
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class Order(Base):
    """
    Marketplace order moving through the delivery lifecycle.

    Standard, grocery and local-market orders share this table. Fields that
    only one kind uses live in ``kind_details``.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_status_created', 'status', 'created_at'),
        Index('ix_order_agent_status', 'agent_id', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True
    )
    order_kind: Mapped[str] = mapped_column(
        String(20),
        default=OrderKind.STANDARD.value,
        nullable=False,
        index=True,
        comment="STANDARD, GROCERY, LOCAL_MARKET"
    )

    # Parties
    buyer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    agent_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pickup_site_manager_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    referrer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    psm_helped: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="PSM actively helped the buyer (helped rate) vs only received stock"
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(50),
        default=OrderStatus.ORDER_PLACED.value,
        nullable=False,
        index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False
    )

    # Money (single currency)
    total_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Final buyer-paid amount, platform margin included"
    )
    base_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    platform_margin: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    agent_commission: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    platform_commission: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    home_delivery_fee: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    commission_calculated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Delivery
    delivery_method: Mapped[str] = mapped_column(
        String(20),
        default=DeliveryMethod.PICKUP.value,
        nullable=False,
        comment="PICKUP, HOME_DELIVERY"
    )
    delivery_code: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)

    seller_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    seller_latitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    seller_longitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)

    pickup_site_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pickup_site_latitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    pickup_site_longitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)

    delivery_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_latitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    delivery_longitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    delivery_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Kind-specific extension (grocery delivery slot, local-market stall, ...)
    kind_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Payouts
    seller_payout_released: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seller_payout_released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    agent_commission_released: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    agent_commission_released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_grace_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Last stuck-order alert; a later updated_at re-arms the alert
    stuck_flagged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lifecycle timestamps
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id"
    )

    @property
    def is_home_delivery(self) -> bool:
        return self.delivery_method == DeliveryMethod.HOME_DELIVERY.value

    @property
    def is_assigned(self) -> bool:
        return self.agent_id is not None

    def __repr__(self) -> str:
        return f"<Order(order_number='{self.order_number}', kind='{self.order_kind}', status='{self.status}')>"


class OrderStatusHistory(Base):
    """Order status change history (append-only)."""
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")


class AgentClaimLock(Base):
    """
    One row per agent. Claims write to it before counting the agent's open
    orders, so capacity checks for the same agent run one at a time.
    """
    __tablename__ = "agent_claim_locks"

    agent_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
