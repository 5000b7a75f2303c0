"""
Confirmation Service

Handles proof of handover at each delivery checkpoint:
- OTP generation and single-use verification (codes stored hashed)
- QR payloads with a checksum, rendered to PNG
- GPS proximity checks against the checkpoint location
- Delivery code checks
- Confirmation records, which gate the matching status transitions
"""

import base64
import hashlib
import json
import logging
import math
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from io import BytesIO
from typing import Optional, Dict, Any, Tuple, Union, List

import qrcode
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from pda_logistics.config import settings
from pda_logistics.core.exceptions import (
    OrderNotFound,
    InvalidOTP,
    InvalidQRCode,
    InvalidDeliveryCode,
    GPSOutOfRadius,
    MissingConfirmationEvidence,
)
from pda_logistics.models.order import Order
from pda_logistics.models.confirmation import (
    OrderConfirmation,
    OrderOTPCode,
    OrderQRCode,
    OrderGPSTracking,
    ConfirmationType,
    ConfirmationMethod,
    QRCodeType,
    GPSCheckType,
)
from pda_logistics.services.order_state_machine import CONFIRMATION_PRE_STATES, CONFIRMATION_TARGETS
from pda_logistics.services.order_lifecycle_service import OrderLifecycleService, TransitionResult

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c * 1000


def qr_checksum(order_id: int, qr_type: str, timestamp: int) -> str:
    """
    Tamper-evidence checksum for QR payloads.

    md5 is not a security boundary here; it only catches edited payloads.
    """
    return hashlib.md5(f"{order_id}-{qr_type}-{timestamp}".encode()).hexdigest()


def render_qr_png(data: str) -> bytes:
    """Render QR data to PNG image bytes."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def _decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


@dataclass
class GPSValidation:
    within_radius: bool
    distance_meters: int
    tolerance_meters: int


@dataclass
class ConfirmationOutcome:
    confirmation: OrderConfirmation
    gps: Optional[GPSValidation] = None
    transition: Optional[TransitionResult] = None


class ConfirmationService:
    """
    Service for delivery handover confirmations.
    """

    def __init__(
        self,
        db: AsyncSession,
        tolerance_meters: int = None,
        strict_gps: bool = None,
        otp_expiry_minutes: int = None,
    ):
        self.db = db
        self.tolerance_meters = settings.GPS_RADIUS_TOLERANCE_METERS if tolerance_meters is None else tolerance_meters
        self.strict_gps = settings.GPS_STRICT_MODE if strict_gps is None else strict_gps
        self.otp_expiry_minutes = settings.OTP_EXPIRY_MINUTES if otp_expiry_minutes is None else otp_expiry_minutes

    async def get_order(self, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound(order_id)
        return order

    # ==================== OTP ====================

    def _generate_code(self) -> str:
        """Generate a random numeric OTP."""
        return "".join([str(secrets.randbelow(10)) for _ in range(settings.OTP_LENGTH)])

    def _hash_code(self, code: str) -> str:
        return hashlib.sha256(code.encode()).hexdigest()

    async def generate_otp(
        self,
        order_id: int,
        confirmation_type: str,
        target_role: str,
        target_user_id: Optional[int] = None,
    ) -> str:
        """
        Create a one-time code for a handover.

        Earlier unused codes for the same order, type and role are discarded.
        Returns the clear-text code; only its hash is stored.
        """
        confirmation_type = ConfirmationType(confirmation_type).value
        await self.get_order(order_id)

        try:
            await self.db.execute(
                delete(OrderOTPCode).where(
                    OrderOTPCode.order_id == order_id,
                    OrderOTPCode.confirmation_type == confirmation_type,
                    OrderOTPCode.target_role == target_role,
                    OrderOTPCode.is_used.is_(False),
                )
            )

            code = self._generate_code()
            self.db.add(OrderOTPCode(
                order_id=order_id,
                confirmation_type=confirmation_type,
                otp_hash=self._hash_code(code),
                target_role=target_role,
                target_user_id=target_user_id,
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.otp_expiry_minutes),
            ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"OTP generated for order {order_id} type={confirmation_type} role={target_role}")
        return code

    async def verify_otp(
        self,
        order_id: int,
        code: str,
        confirmation_type: str,
        verifier_id: int,
        commit: bool = True,
    ) -> OrderOTPCode:
        """
        Consume a matching, unexpired, unused code.

        Raises InvalidOTP otherwise. Two concurrent verifications of the same
        code cannot both succeed.
        """
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(OrderOTPCode)
            .where(
                OrderOTPCode.order_id == order_id,
                OrderOTPCode.confirmation_type == confirmation_type,
                OrderOTPCode.otp_hash == self._hash_code(str(code).strip()),
                OrderOTPCode.is_used.is_(False),
                OrderOTPCode.expires_at > now,
            )
            .order_by(OrderOTPCode.id.desc())
            .limit(1)
        )
        otp_record = result.scalar_one_or_none()
        if not otp_record:
            logger.warning(f"Invalid or expired OTP for order {order_id} type={confirmation_type}")
            raise InvalidOTP()

        claimed = await self.db.execute(
            update(OrderOTPCode)
            .where(OrderOTPCode.id == otp_record.id, OrderOTPCode.is_used.is_(False))
            .values(is_used=True, used_by=verifier_id, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.warning(f"OTP replay rejected for order {order_id} type={confirmation_type}")
            raise InvalidOTP("OTP has already been used")

        if commit:
            await self.db.commit()
        await self.db.refresh(otp_record)
        logger.info(f"OTP verified for order {order_id} type={confirmation_type} by user {verifier_id}")
        return otp_record

    # ==================== QR ====================

    async def generate_qr(
        self,
        order_id: int,
        qr_type: str = QRCodeType.ORDER_RECEIPT.value,
        target_role: str = "system",
        commit: bool = True,
    ) -> OrderQRCode:
        """Create the QR code for (order, type), or return the existing one."""
        qr_type = QRCodeType(qr_type).value
        existing = await self.db.execute(
            select(OrderQRCode).where(OrderQRCode.order_id == order_id, OrderQRCode.qr_type == qr_type)
        )
        qr_record = existing.scalar_one_or_none()
        if qr_record:
            return qr_record

        timestamp = int(time.time() * 1000)
        payload = {
            "orderId": order_id,
            "type": qr_type,
            "timestamp": timestamp,
            "checksum": qr_checksum(order_id, qr_type, timestamp),
        }
        image = render_qr_png(json.dumps(payload))

        qr_record = OrderQRCode(
            order_id=order_id,
            qr_type=qr_type,
            payload=payload,
            image_base64=base64.b64encode(image).decode("utf-8"),
            target_role=target_role,
        )
        self.db.add(qr_record)
        await self.db.flush()
        if commit:
            await self.db.commit()

        logger.info(f"QR code {qr_type} generated for order {order_id}")
        return qr_record

    async def verify_qr(
        self,
        qr_data: Union[str, Dict[str, Any]],
        order_id: Optional[int] = None,
        accepted_types: Optional[List[str]] = None,
    ) -> OrderQRCode:
        """
        Check a scanned QR payload.

        The checksum must match the payload fields and the payload must be
        the one issued for that (order, type). Raises InvalidQRCode.
        """
        if isinstance(qr_data, str):
            try:
                payload = json.loads(qr_data)
            except json.JSONDecodeError:
                raise InvalidQRCode("QR data is not valid JSON")
        else:
            payload = dict(qr_data)

        try:
            scanned_order_id = int(payload["orderId"])
            qr_type = str(payload["type"])
            timestamp = int(payload["timestamp"])
            checksum = str(payload["checksum"])
        except (KeyError, TypeError, ValueError):
            raise InvalidQRCode("QR payload is incomplete")

        if not secrets.compare_digest(checksum, qr_checksum(scanned_order_id, qr_type, timestamp)):
            logger.warning(f"QR checksum mismatch for order {scanned_order_id} type={qr_type}")
            raise InvalidQRCode("QR checksum mismatch")

        if order_id is not None and scanned_order_id != order_id:
            raise InvalidQRCode(f"QR code belongs to order {scanned_order_id}")
        if accepted_types and qr_type not in accepted_types:
            raise InvalidQRCode(f"QR code of type {qr_type} cannot be used here")

        result = await self.db.execute(
            select(OrderQRCode).where(OrderQRCode.order_id == scanned_order_id, OrderQRCode.qr_type == qr_type)
        )
        qr_record = result.scalar_one_or_none()
        if not qr_record or qr_record.payload.get("timestamp") != timestamp:
            raise InvalidQRCode("QR code is not recognised")
        return qr_record

    # ==================== GPS ====================

    def expected_location(self, order: Order, confirmation_type: str) -> Optional[Tuple[float, float]]:
        """Checkpoint coordinates for a confirmation type, if the order has them."""
        if confirmation_type == ConfirmationType.SELLER_HANDOVER.value:
            lat, lng = order.seller_latitude, order.seller_longitude
        elif confirmation_type in (ConfirmationType.PSM_DEPOSIT.value, ConfirmationType.BUYER_PICKUP.value):
            lat, lng = order.pickup_site_latitude, order.pickup_site_longitude
        elif confirmation_type == ConfirmationType.BUYER_DELIVERY.value:
            lat, lng = order.delivery_latitude, order.delivery_longitude
        else:
            return None
        if lat is None or lng is None:
            return None
        return float(lat), float(lng)

    async def validate_location(
        self,
        order_id: int,
        latitude: float,
        longitude: float,
        accuracy: Optional[float],
        expected_latitude: float,
        expected_longitude: float,
        user_id: Optional[int] = None,
        tolerance_meters: Optional[int] = None,
    ) -> GPSValidation:
        """
        Haversine check of a reported position against the expected point.

        Every check is appended to the GPS log, pass or fail.
        """
        tolerance = self.tolerance_meters if tolerance_meters is None else tolerance_meters
        distance = round(haversine_meters(
            float(latitude), float(longitude), float(expected_latitude), float(expected_longitude)
        ))
        within_radius = distance <= tolerance

        self.db.add(OrderGPSTracking(
            order_id=order_id,
            user_id=user_id,
            check_type=GPSCheckType.VALIDATION.value,
            latitude=_decimal(latitude),
            longitude=_decimal(longitude),
            accuracy=_decimal(accuracy),
            expected_latitude=_decimal(expected_latitude),
            expected_longitude=_decimal(expected_longitude),
            distance_meters=distance,
            within_radius=within_radius,
        ))
        await self.db.flush()

        if within_radius:
            logger.info(f"GPS check passed for order {order_id}: {distance}m (tolerance {tolerance}m)")
        else:
            logger.warning(f"GPS check failed for order {order_id}: {distance}m (tolerance {tolerance}m)")
        return GPSValidation(within_radius=within_radius, distance_meters=distance, tolerance_meters=tolerance)

    async def record_location(
        self,
        order_id: int,
        user_id: int,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
    ) -> OrderGPSTracking:
        """Append an agent location ping to the order's GPS trail."""
        await self.get_order(order_id)
        point = OrderGPSTracking(
            order_id=order_id,
            user_id=user_id,
            check_type=GPSCheckType.LOCATION_PING.value,
            latitude=_decimal(latitude),
            longitude=_decimal(longitude),
            accuracy=_decimal(accuracy),
        )
        self.db.add(point)
        await self.db.commit()
        return point

    # ==================== Delivery Code ====================

    async def verify_delivery_code(self, order_id: int, code: str) -> bool:
        """Compare the shared delivery code. Raises InvalidDeliveryCode on mismatch."""
        order = await self.get_order(order_id)
        supplied = (code or "").strip().upper()
        if not order.delivery_code or not secrets.compare_digest(supplied, order.delivery_code.upper()):
            logger.warning(f"Invalid delivery code for order {order.order_number}")
            raise InvalidDeliveryCode(order_id)
        return True

    # ==================== Confirmations ====================

    async def create_confirmation(
        self,
        order_id: int,
        confirmation_type: str,
        confirmation_method: str,
        confirmer_role: str,
        confirmer_id: int,
        confirmation_data: Optional[Dict[str, Any]] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        accuracy: Optional[float] = None,
        gps: Optional[GPSValidation] = None,
        commit: bool = True,
    ) -> OrderConfirmation:
        """Write a confirmation record. Records are never updated afterwards."""
        confirmation = OrderConfirmation(
            order_id=order_id,
            confirmation_type=ConfirmationType(confirmation_type).value,
            confirmation_method=ConfirmationMethod(confirmation_method).value,
            confirmer_role=confirmer_role,
            confirmer_id=confirmer_id,
            confirmation_data=confirmation_data or {},
            gps_latitude=_decimal(latitude),
            gps_longitude=_decimal(longitude),
            gps_accuracy=_decimal(accuracy),
            within_radius=gps.within_radius if gps else None,
            distance_meters=gps.distance_meters if gps else None,
        )
        self.db.add(confirmation)
        await self.db.flush()
        if commit:
            await self.db.commit()

        logger.info(f"Confirmation {confirmation.confirmation_type} via {confirmation.confirmation_method} recorded for order {order_id}")
        return confirmation

    async def get_confirmations(self, order_id: int) -> List[OrderConfirmation]:
        result = await self.db.execute(
            select(OrderConfirmation)
            .where(OrderConfirmation.order_id == order_id)
            .order_by(OrderConfirmation.id)
        )
        return list(result.scalars().all())

    async def _verify_method(
        self,
        order: Order,
        confirmation_type: str,
        method: str,
        confirmer_id: int,
        otp_code: Optional[str],
        qr_data: Optional[Union[str, Dict[str, Any]]],
        delivery_code: Optional[str],
        confirmation_data: Dict[str, Any],
    ) -> None:
        if method == ConfirmationMethod.OTP.value:
            if not otp_code:
                raise MissingConfirmationEvidence(method, "otp_code")
            await self.verify_otp(order.id, otp_code, confirmation_type, confirmer_id, commit=False)
        elif method == ConfirmationMethod.QR_SCAN.value:
            if not qr_data:
                raise MissingConfirmationEvidence(method, "qr_data")
            await self.verify_qr(
                qr_data,
                order_id=order.id,
                accepted_types=[confirmation_type, QRCodeType.ORDER_RECEIPT.value],
            )
        elif method == ConfirmationMethod.DELIVERY_CODE.value:
            await self.verify_delivery_code(order.id, delivery_code)
        elif method == ConfirmationMethod.SIGNATURE.value:
            if not confirmation_data.get("signature"):
                raise MissingConfirmationEvidence(method, "signature")
        elif method == ConfirmationMethod.PHOTO.value:
            if not confirmation_data.get("photo_url"):
                raise MissingConfirmationEvidence(method, "photo_url")

    async def confirm(
        self,
        order_id: int,
        confirmation_type: str,
        method: str,
        confirmer_role: str,
        confirmer_id: int,
        otp_code: Optional[str] = None,
        qr_data: Optional[Union[str, Dict[str, Any]]] = None,
        delivery_code: Optional[str] = None,
        confirmation_data: Optional[Dict[str, Any]] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        accuracy: Optional[float] = None,
        lifecycle: OrderLifecycleService = None,
    ) -> ConfirmationOutcome:
        """
        Full handover confirmation.

        1. Verify the method (OTP, QR, delivery code, signature or photo)
        2. Check GPS against the checkpoint for this confirmation type
        3. Record the confirmation (committed even if GPS fails)
        4. Raise GPSOutOfRadius in strict mode when outside the radius
        5. Drive the gated transition if the order is waiting for it
        """
        confirmation_type = ConfirmationType(confirmation_type).value
        method = ConfirmationMethod(method).value
        confirmation_data = dict(confirmation_data or {})
        order = await self.get_order(order_id)

        try:
            await self._verify_method(
                order, confirmation_type, method, confirmer_id,
                otp_code, qr_data, delivery_code, confirmation_data,
            )

            gps = None
            expected = self.expected_location(order, confirmation_type)
            if latitude is not None and longitude is not None and expected is not None:
                gps = await self.validate_location(
                    order_id, latitude, longitude, accuracy, expected[0], expected[1], user_id=confirmer_id
                )

            confirmation = await self.create_confirmation(
                order_id, confirmation_type, method, confirmer_role, confirmer_id,
                confirmation_data=confirmation_data,
                latitude=latitude, longitude=longitude, accuracy=accuracy,
                gps=gps, commit=False,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        outcome = ConfirmationOutcome(confirmation=confirmation, gps=gps)

        if gps and not gps.within_radius and self.strict_gps:
            raise GPSOutOfRadius(gps.distance_meters, gps.tolerance_meters)

        pre_state = CONFIRMATION_PRE_STATES[ConfirmationType(confirmation_type)]
        if order.status == pre_state.value:
            lifecycle = lifecycle or OrderLifecycleService(self.db, strict_gps=self.strict_gps)
            location = {"lat": latitude, "lng": longitude, "accuracy": accuracy} if latitude is not None else None
            outcome.transition = await lifecycle.transition(
                order_id,
                CONFIRMATION_TARGETS[ConfirmationType(confirmation_type)],
                confirmer_id,
                reason=f"{confirmation_type} confirmed via {method}",
                location=location,
                metadata={"confirmation_id": confirmation.id},
            )
        return outcome
