from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from pda_logistics.database import Base
from pda_logistics.db_types import JSONType


class NotificationType(str, Enum):
    """Order lifecycle notification types."""
    # Order status
    ORDER_PLACED = "ORDER_PLACED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    AGENT_ASSIGNED = "AGENT_ASSIGNED"
    EN_ROUTE_TO_SELLER = "EN_ROUTE_TO_SELLER"
    AGENT_AT_SELLER = "AGENT_AT_SELLER"
    PICKED_FROM_SELLER = "PICKED_FROM_SELLER"
    EN_ROUTE_TO_PSM = "EN_ROUTE_TO_PSM"
    DELIVERED_TO_PSM = "DELIVERED_TO_PSM"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    COLLECTED_BY_BUYER = "COLLECTED_BY_BUYER"
    EN_ROUTE_TO_BUYER = "EN_ROUTE_TO_BUYER"
    DELIVERED_TO_BUYER = "DELIVERED_TO_BUYER"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_DISPUTED = "ORDER_DISPUTED"

    # Money
    PAYOUT_RELEASED = "PAYOUT_RELEASED"
    COMMISSION_RELEASED = "COMMISSION_RELEASED"

    # Internal
    ADMIN_ATTENTION_REQUIRED = "ADMIN_ATTENTION_REQUIRED"


class RecipientRole(str, Enum):
    """Parties a notification can be addressed to."""
    BUYER = "BUYER"
    SELLER = "SELLER"
    AGENT = "AGENT"
    PICKUP_SITE_MANAGER = "PICKUP_SITE_MANAGER"
    ADMIN = "ADMIN"


class OrderNotification(Base):
    """Dispatched order notification, written by the database sink."""
    __tablename__ = "order_notifications"
    __table_args__ = (
        Index('ix_order_notifications_user_unread', 'user_id', 'is_read'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    # Recipient
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient_role: Mapped[str] = mapped_column(String(30), nullable=False)

    # Content
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
