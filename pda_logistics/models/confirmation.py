"""
Delivery confirmation models

Stores handover confirmations, one-time codes, QR payloads and the GPS
audit trail for each order.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pda_logistics.database import Base
from pda_logistics.db_types import JSONType, CoordinateType


class ConfirmationType(str, Enum):
    """Handover points that need a confirmation."""
    SELLER_HANDOVER = "SELLER_HANDOVER"     # Seller hands goods to the agent
    PSM_DEPOSIT = "PSM_DEPOSIT"             # Agent deposits goods at the pickup site
    BUYER_DELIVERY = "BUYER_DELIVERY"       # Agent hands goods to the buyer at home
    BUYER_PICKUP = "BUYER_PICKUP"           # Buyer collects goods at the pickup site


class ConfirmationMethod(str, Enum):
    """How a confirmation was proven."""
    OTP = "OTP"
    QR_SCAN = "QR_SCAN"
    SIGNATURE = "SIGNATURE"
    PHOTO = "PHOTO"
    DELIVERY_CODE = "DELIVERY_CODE"


class QRCodeType(str, Enum):
    """QR code purposes. Confirmation types are valid QR types as well."""
    ORDER_RECEIPT = "ORDER_RECEIPT"
    SELLER_HANDOVER = "SELLER_HANDOVER"
    PSM_DEPOSIT = "PSM_DEPOSIT"
    BUYER_DELIVERY = "BUYER_DELIVERY"
    BUYER_PICKUP = "BUYER_PICKUP"


class GPSCheckType(str, Enum):
    """Why a GPS point was recorded."""
    LOCATION_PING = "LOCATION_PING"
    VALIDATION = "VALIDATION"


class OrderConfirmation(Base):
    """A successful confirmation attempt. Rows are never updated."""
    __tablename__ = "order_confirmations"
    __table_args__ = (
        Index('ix_confirmation_order_type', 'order_id', 'confirmation_type'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )
    confirmation_type: Mapped[str] = mapped_column(String(30), nullable=False)
    confirmation_method: Mapped[str] = mapped_column(String(20), nullable=False)

    confirmer_role: Mapped[str] = mapped_column(String(30), nullable=False)
    confirmer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    confirmation_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    gps_latitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    gps_longitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    gps_accuracy: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    within_radius: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    distance_meters: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    confirmed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class OrderOTPCode(Base):
    """
    One-time code for a handover.

    Only the SHA-256 hash of the code is stored. A code is consumed by the
    first successful verification.
    """
    __tablename__ = "order_otp_codes"
    __table_args__ = (
        Index('ix_otp_order_type_used', 'order_id', 'confirmation_type', 'is_used'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )
    confirmation_type: Mapped[str] = mapped_column(String(30), nullable=False)
    otp_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    target_role: Mapped[str] = mapped_column(String(30), nullable=False)
    target_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class OrderQRCode(Base):
    """QR payload and rendered image, one per (order, type)."""
    __tablename__ = "order_qr_codes"
    __table_args__ = (
        UniqueConstraint('order_id', 'qr_type', name='uq_order_qr_type'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )
    qr_type: Mapped[str] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    image_base64: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="PNG rendering, base64 encoded"
    )
    target_role: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


class OrderGPSTracking(Base):
    """Append-only GPS log: agent pings and every proximity check."""
    __tablename__ = "order_gps_tracking"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    check_type: Mapped[str] = mapped_column(
        String(20),
        default=GPSCheckType.LOCATION_PING.value,
        nullable=False
    )

    latitude: Mapped[Decimal] = mapped_column(CoordinateType, nullable=False)
    longitude: Mapped[Decimal] = mapped_column(CoordinateType, nullable=False)
    accuracy: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)

    expected_latitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    expected_longitude: Mapped[Optional[Decimal]] = mapped_column(CoordinateType, nullable=True)
    distance_meters: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    within_radius: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
