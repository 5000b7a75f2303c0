"""
Order Lifecycle Service

Moves orders through the delivery state machine:
- Creates orders in ORDER_PLACED with their receipt QR code
- Validates every transition against the per-delivery-method tables
- Refuses gated transitions until the matching confirmation exists
- Releases seller payouts / agent commissions on delivery
- Reverses unpaid commissions on cancellation or dispute
- Notifies the involved parties once the change is committed
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from pda_logistics.config import settings
from pda_logistics.core.exceptions import OrderNotFound, InvalidTransition, ConfirmationRequired
from pda_logistics.models.order import (
    Order,
    OrderStatusHistory,
    OrderStatus,
    OrderKind,
    DeliveryMethod,
    PaymentStatus,
)
from pda_logistics.models.commission import PayoutRelease, PayoutType
from pda_logistics.models.confirmation import OrderConfirmation, OrderGPSTracking, QRCodeType
from pda_logistics.models.notification import NotificationType
from pda_logistics.services.commission_service import CommissionService
from pda_logistics.services.notification_service import NotificationDispatcher, OrderSnapshot
from pda_logistics.services.order_state_machine import (
    validate_transition,
    get_allowed_transitions,
    get_transition_action,
    get_status_flow,
    normalize_status,
    required_confirmation,
    notification_for_status,
)

logger = logging.getLogger(__name__)


# Lifecycle timestamp written when an order enters a status
STATUS_TIMESTAMPS: Dict[OrderStatus, str] = {
    OrderStatus.PICKED_FROM_SELLER: "picked_at",
    OrderStatus.DELIVERED_TO_BUYER: "delivered_at",
    OrderStatus.COLLECTED_BY_BUYER: "delivered_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

PAYOUT_FLAGS: Dict[PayoutType, Tuple[str, str]] = {
    PayoutType.SELLER_PAYOUT: ("seller_payout_released", "seller_payout_released_at"),
    PayoutType.AGENT_COMMISSION: ("agent_commission_released", "agent_commission_released_at"),
}


@dataclass
class TransitionResult:
    order_id: int
    order_number: str
    from_status: str
    to_status: str
    action: str
    released: List[str] = field(default_factory=list)
    notifications_sent: int = 0


def generate_order_number() -> str:
    """PDA + date + random suffix, e.g. PDA20250114A3F9C1."""
    return f"PDA{datetime.now(timezone.utc).strftime('%Y%m%d')}{secrets.token_hex(3).upper()}"


class OrderLifecycleService:
    """Service for order status transitions and their side effects."""

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher = None,
        seller_payout_on_psm_deposit: bool = None,
        grace_period_minutes: int = None,
        strict_gps: bool = None,
    ):
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.commissions = CommissionService(db)
        self.seller_payout_on_psm_deposit = (
            settings.SELLER_PAYOUT_ON_PSM_DEPOSIT
            if seller_payout_on_psm_deposit is None else seller_payout_on_psm_deposit
        )
        self.grace_period_minutes = (
            settings.COMMISSION_GRACE_PERIOD_MINUTES
            if grace_period_minutes is None else grace_period_minutes
        )
        self.strict_gps = settings.GPS_STRICT_MODE if strict_gps is None else strict_gps

    async def get_order(self, order_id: int, for_update: bool = False) -> Order:
        # Sessions outlive commits (expire_on_commit=False); always reload the row
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound(order_id)
        return order

    def _add_history(
        self,
        order_id: int,
        from_status: Optional[str],
        to_status: str,
        changed_by: Optional[int],
        reason: Optional[str] = None,
        location: Optional[Dict] = None,
        metadata: Optional[Dict] = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            changed_by=changed_by,
            reason=reason,
            location=location,
            metadata_json=metadata,
        )
        self.db.add(entry)
        return entry

    # ==================== Order Creation ====================

    async def initialize_order(
        self,
        buyer_id: int,
        seller_id: int,
        total_amount: Decimal,
        delivery_method: str = DeliveryMethod.PICKUP.value,
        order_kind: str = OrderKind.STANDARD.value,
        order_number: Optional[str] = None,
        payment_status: str = PaymentStatus.PENDING.value,
        pickup_site_manager_id: Optional[int] = None,
        psm_helped: bool = False,
        referrer_id: Optional[int] = None,
        seller_address: Optional[str] = None,
        seller_latitude: Optional[Decimal] = None,
        seller_longitude: Optional[Decimal] = None,
        pickup_site_name: Optional[str] = None,
        pickup_site_latitude: Optional[Decimal] = None,
        pickup_site_longitude: Optional[Decimal] = None,
        delivery_address: Optional[str] = None,
        delivery_latitude: Optional[Decimal] = None,
        delivery_longitude: Optional[Decimal] = None,
        delivery_notes: Optional[str] = None,
        kind_details: Optional[Dict[str, Any]] = None,
        created_by: Optional[int] = None,
    ) -> Order:
        """
        Create an order in ORDER_PLACED.

        Writes the initial history row and the ORDER_RECEIPT QR code in the
        same transaction, then notifies buyer, seller and admin.
        """
        # Local import: the confirmation service drives transitions through this service
        from pda_logistics.services.confirmation_service import ConfirmationService

        delivery_method = DeliveryMethod(delivery_method).value
        order_kind = OrderKind(order_kind).value
        payment_status = PaymentStatus(payment_status).value

        order = Order(
            order_number=order_number or generate_order_number(),
            order_kind=order_kind,
            buyer_id=buyer_id,
            seller_id=seller_id,
            pickup_site_manager_id=pickup_site_manager_id,
            psm_helped=psm_helped,
            referrer_id=referrer_id,
            status=OrderStatus.ORDER_PLACED.value,
            payment_status=payment_status,
            total_amount=Decimal(str(total_amount)),
            delivery_method=delivery_method,
            seller_address=seller_address,
            seller_latitude=seller_latitude,
            seller_longitude=seller_longitude,
            pickup_site_name=pickup_site_name,
            pickup_site_latitude=pickup_site_latitude,
            pickup_site_longitude=pickup_site_longitude,
            delivery_address=delivery_address,
            delivery_latitude=delivery_latitude,
            delivery_longitude=delivery_longitude,
            delivery_notes=delivery_notes,
            kind_details=kind_details,
        )
        try:
            self.db.add(order)
            await self.db.flush()

            self._add_history(
                order.id, None, OrderStatus.ORDER_PLACED.value,
                created_by if created_by is not None else buyer_id,
                reason="Order created",
            )
            await ConfirmationService(self.db).generate_qr(
                order.id, QRCodeType.ORDER_RECEIPT.value, target_role="system", commit=False
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order.order_number} initialized ({order_kind}, {delivery_method})")
        await self.dispatcher.dispatch_safely(OrderSnapshot.from_order(order), NotificationType.ORDER_PLACED)
        return order

    async def confirm_payment(self, order_id: int, actor_id: Optional[int] = None, reason: str = None) -> TransitionResult:
        """Mark payment CONFIRMED and move the order to PAYMENT_CONFIRMED in one transaction."""
        await self.db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_status=PaymentStatus.CONFIRMED.value)
            .execution_options(synchronize_session=False)
        )
        return await self.transition(
            order_id, OrderStatus.PAYMENT_CONFIRMED, actor_id, reason=reason or "Payment confirmed"
        )

    # ==================== Transitions ====================

    async def transition(
        self,
        order_id: int,
        new_status,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        require_confirmation: bool = True,
    ) -> TransitionResult:
        """
        Move an order to ``new_status``.

        On any error the session is rolled back, which expires every object
        loaded through it; keep ids, not instances, across a failed call.

        Raises:
            OrderNotFound: unknown order
            InvalidTransition: not allowed from the current status, or the
                status changed underneath us
            ConfirmationRequired: gated status without its confirmation
                (pass require_confirmation=False for an admin override)
        """
        try:
            order = await self.get_order(order_id, for_update=True)
            current_status = order.status
            target = (
                new_status if isinstance(new_status, OrderStatus)
                else normalize_status(new_status, order.delivery_method)
            )

            if target == OrderStatus.ASSIGNED_TO_AGENT:
                # Assignment carries the capacity check and commission, see AssignmentService
                allowed = [s for s in get_allowed_transitions(current_status, order.delivery_method)
                           if s != OrderStatus.ASSIGNED_TO_AGENT.value]
                raise InvalidTransition(order_id, current_status, target.value, allowed)

            validate_transition(order_id, current_status, target.value, order.delivery_method)

            gate = required_confirmation(target.value)
            if gate is not None:
                if require_confirmation and not await self._has_confirmation(order_id, gate.value):
                    raise ConfirmationRequired(order_id, target.value, gate.value)
                if not require_confirmation:
                    logger.warning(
                        f"Order {order.order_number} moved to {target.value} without {gate.value} "
                        f"confirmation (override by {actor_id})"
                    )

            now = datetime.now(timezone.utc)
            values = {"status": target.value, "updated_at": now}
            timestamp_field = STATUS_TIMESTAMPS.get(target)
            if timestamp_field:
                values[timestamp_field] = now

            result = await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == current_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransition(
                    order_id, current_status, target.value,
                    get_allowed_transitions(current_status, order.delivery_method),
                )

            self._add_history(order_id, current_status, target.value, actor_id, reason, location, metadata)
            await self.db.flush()
            await self.db.refresh(order)

            released = await self._apply_side_effects(order, target, actor_id, now)

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order.order_number} status changed: {current_status} -> {target.value}")

        transition_result = TransitionResult(
            order_id=order_id,
            order_number=order.order_number,
            from_status=current_status,
            to_status=target.value,
            action=get_transition_action(current_status, target.value),
            released=[p.value for p in released],
        )
        transition_result.notifications_sent = await self._notify(order, target, released, reason)
        return transition_result

    async def _has_confirmation(self, order_id: int, confirmation_type: str) -> bool:
        stmt = select(func.count(OrderConfirmation.id)).where(
            OrderConfirmation.order_id == order_id,
            OrderConfirmation.confirmation_type == confirmation_type,
        )
        if self.strict_gps:
            # Records that failed the GPS check do not open the gate
            stmt = stmt.where(or_(
                OrderConfirmation.within_radius.is_(None),
                OrderConfirmation.within_radius.is_(True),
            ))
        result = await self.db.execute(stmt)
        return result.scalar() > 0

    async def _apply_side_effects(
        self,
        order: Order,
        target: OrderStatus,
        actor_id: Optional[int],
        now: datetime,
    ) -> List[PayoutType]:
        """Run payout and commission effects inside the transition's transaction."""
        released: List[PayoutType] = []

        if target == OrderStatus.DELIVERED_TO_PSM:
            if self.seller_payout_on_psm_deposit and await self._release_payout(order, PayoutType.SELLER_PAYOUT, actor_id, now):
                released.append(PayoutType.SELLER_PAYOUT)

        elif target in (OrderStatus.DELIVERED_TO_BUYER, OrderStatus.COLLECTED_BY_BUYER):
            if not order.commission_calculated:
                # Orders imported without an assignment event
                await self.commissions.calculate_and_persist(order)
            for payout_type in (PayoutType.SELLER_PAYOUT, PayoutType.AGENT_COMMISSION):
                if await self._release_payout(order, payout_type, actor_id, now):
                    released.append(payout_type)
            grace_end = now + timedelta(minutes=self.grace_period_minutes)
            await self.db.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(dispute_grace_period_end=grace_end)
                .execution_options(synchronize_session=False)
            )
            scheduled = await self.commissions.schedule_approval(order.id, grace_end)
            logger.info(f"Order {order.order_number}: {scheduled} commission lines due for approval at {grace_end.isoformat()}")

        elif target == OrderStatus.COMPLETED:
            # Idempotent finalize
            for payout_type in (PayoutType.SELLER_PAYOUT, PayoutType.AGENT_COMMISSION):
                if await self._release_payout(order, payout_type, actor_id, now):
                    released.append(payout_type)

        elif target in (OrderStatus.CANCELLED, OrderStatus.DISPUTED):
            await self.commissions.reverse_commissions(order.id)

        if released:
            await self.db.refresh(order)
        return released

    async def _release_payout(
        self,
        order: Order,
        payout_type: PayoutType,
        actor_id: Optional[int],
        now: datetime,
    ) -> bool:
        """Flip a payout flag once. Returns False if it was already released."""
        flag, timestamp = PAYOUT_FLAGS[payout_type]
        flag_column = getattr(Order, flag)
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, flag_column.is_(False))
            .values({flag: True, timestamp: now})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.add(PayoutRelease(order_id=order.id, payout_type=payout_type.value, released_by=actor_id, released_at=now))
        logger.info(f"{payout_type.value} released for order {order.order_number}")
        return True

    async def _notify(
        self,
        order: Order,
        target: OrderStatus,
        released: List[PayoutType],
        reason: Optional[str],
    ) -> int:
        snapshot = OrderSnapshot.from_order(order)
        sent = 0
        notification_type = notification_for_status(target.value)
        if notification_type:
            sent += await self.dispatcher.dispatch_safely(snapshot, notification_type, {"reason": reason})
        if PayoutType.SELLER_PAYOUT in released:
            sent += await self.dispatcher.dispatch_safely(
                snapshot, NotificationType.PAYOUT_RELEASED, {"amount": order.base_amount}
            )
        if PayoutType.AGENT_COMMISSION in released and order.agent_id is not None:
            sent += await self.dispatcher.dispatch_safely(
                snapshot, NotificationType.COMMISSION_RELEASED, {"amount": order.agent_commission}
            )
        return sent

    # ==================== Tracking ====================

    async def get_order_tracking(self, order_id: int, gps_limit: int = None) -> Dict[str, Any]:
        """Order with its history, confirmations, GPS trail and commission lines."""
        order = await self.get_order(order_id)
        gps_limit = gps_limit or settings.GPS_TRAIL_LIMIT

        history_result = await self.db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id)
        )
        confirmations_result = await self.db.execute(
            select(OrderConfirmation)
            .where(OrderConfirmation.order_id == order_id)
            .order_by(OrderConfirmation.id.desc())
        )
        gps_result = await self.db.execute(
            select(OrderGPSTracking)
            .where(OrderGPSTracking.order_id == order_id)
            .order_by(OrderGPSTracking.id.desc())
            .limit(gps_limit)
        )

        return {
            "order": order,
            "status_history": list(history_result.scalars().all()),
            "confirmations": list(confirmations_result.scalars().all()),
            "gps_trail": list(gps_result.scalars().all()),
            "commissions": await self.commissions.get_order_commissions(order_id),
            "allowed_transitions": get_allowed_transitions(order.status, order.delivery_method),
            "status_flow": get_status_flow(order.delivery_method),
        }
