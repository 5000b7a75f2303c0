"""
Order Notification Service

Fans out one notification type to every party involved in an order:
- Buyer and seller
- Delivery agent
- Pickup site manager (PSM)
- Platform admin

Delivery mechanics live behind ``NotificationSink``. The logging sink is
the default; the database sink stores rows in ``order_notifications`` for
in-app inboxes.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pda_logistics.config import settings
from pda_logistics.models.order import Order, DeliveryMethod
from pda_logistics.models.notification import OrderNotification, NotificationType, RecipientRole


logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Anything that can deliver a single message to a single user."""

    async def notify(
        self,
        user_id: int,
        role: str,
        notification_type: str,
        title: str,
        message: str,
        data: Dict[str, Any],
    ) -> None:
        ...


class LoggingNotificationSink:
    """Writes notifications to the application log."""

    async def notify(self, user_id, role, notification_type, title, message, data) -> None:
        logger.info(f"[NOTIFICATION] {notification_type} to {role} {user_id}: {title} - {message[:100]}")


class DatabaseNotificationSink:
    """Stores notifications for in-app delivery, one short transaction per message."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def notify(self, user_id, role, notification_type, title, message, data) -> None:
        async with self.session_factory() as session:
            session.add(OrderNotification(
                order_id=data.get("order_id"),
                user_id=user_id,
                recipient_role=role,
                notification_type=notification_type,
                title=title,
                message=message,
                extra_data=data,
            ))
            await session.commit()


def get_notification_sink(
    name: Optional[str] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> NotificationSink:
    """Build the sink named by NOTIFICATION_SINK."""
    name = (name or settings.NOTIFICATION_SINK).lower()
    if name == "database":
        if session_factory is None:
            from pda_logistics.database import async_session_factory
            session_factory = async_session_factory
        return DatabaseNotificationSink(session_factory)
    if name != "log":
        logger.warning(f"Unknown notification sink '{name}', falling back to log")
    return LoggingNotificationSink()


@dataclass(frozen=True)
class OrderSnapshot:
    """Order fields needed to address and word notifications, detached from the session."""
    id: int
    order_number: str
    buyer_id: int
    seller_id: int
    agent_id: Optional[int]
    pickup_site_manager_id: Optional[int]
    delivery_method: str
    pickup_site_name: Optional[str]
    status: str

    @classmethod
    def from_order(cls, order: Order) -> "OrderSnapshot":
        return cls(
            id=order.id,
            order_number=order.order_number,
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            agent_id=order.agent_id,
            pickup_site_manager_id=order.pickup_site_manager_id,
            delivery_method=order.delivery_method,
            pickup_site_name=order.pickup_site_name,
            status=order.status,
        )

    @property
    def is_pickup(self) -> bool:
        return self.delivery_method == DeliveryMethod.PICKUP.value


@dataclass
class OrderMessage:
    user_id: Optional[int]
    role: RecipientRole
    title: str
    message: str
    priority: str = "normal"
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher:
    """Builds per-party messages for a notification type and hands them to a sink."""

    def __init__(self, sink: NotificationSink = None, admin_user_id: int = None):
        self.sink = sink or get_notification_sink()
        self.admin_user_id = admin_user_id if admin_user_id is not None else settings.ADMIN_USER_ID
        self._builders: Dict[NotificationType, Callable[[OrderSnapshot, Dict], List[OrderMessage]]] = {
            NotificationType.ORDER_PLACED: self._order_placed,
            NotificationType.PAYMENT_CONFIRMED: self._payment_confirmed,
            NotificationType.AGENT_ASSIGNED: self._agent_assigned,
            NotificationType.EN_ROUTE_TO_SELLER: self._en_route_to_seller,
            NotificationType.AGENT_AT_SELLER: self._agent_at_seller,
            NotificationType.PICKED_FROM_SELLER: self._picked_from_seller,
            NotificationType.EN_ROUTE_TO_PSM: self._en_route_to_psm,
            NotificationType.DELIVERED_TO_PSM: self._delivered_to_psm,
            NotificationType.READY_FOR_PICKUP: self._ready_for_pickup,
            NotificationType.COLLECTED_BY_BUYER: self._collected_by_buyer,
            NotificationType.EN_ROUTE_TO_BUYER: self._en_route_to_buyer,
            NotificationType.DELIVERED_TO_BUYER: self._delivered_to_buyer,
            NotificationType.ORDER_COMPLETED: self._order_completed,
            NotificationType.ORDER_CANCELLED: self._order_cancelled,
            NotificationType.ORDER_DISPUTED: self._order_disputed,
            NotificationType.PAYOUT_RELEASED: self._payout_released,
            NotificationType.COMMISSION_RELEASED: self._commission_released,
            NotificationType.ADMIN_ATTENTION_REQUIRED: self._admin_attention_required,
        }

    def build_messages(
        self,
        order: OrderSnapshot,
        notification_type: NotificationType,
        extra: Optional[Dict[str, Any]] = None,
    ) -> List[OrderMessage]:
        builder = self._builders.get(notification_type)
        if builder is None:
            logger.warning(f"No notification messages defined for {notification_type}")
            return []
        messages = builder(order, extra or {})
        return [m for m in messages if m.user_id is not None]

    async def dispatch(
        self,
        order: OrderSnapshot,
        notification_type: NotificationType,
        extra: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Send every message for the type. Sink errors propagate."""
        messages = self.build_messages(order, notification_type, extra)
        for msg in messages:
            await self._send(order, notification_type, msg)
        logger.debug(f"Dispatched {len(messages)} {notification_type.value} notifications for order {order.order_number}")
        return len(messages)

    async def dispatch_safely(
        self,
        order: OrderSnapshot,
        notification_type: NotificationType,
        extra: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Dispatch after a committed change.

        Each recipient is sent to independently. A failed send is logged and
        swallowed, so it neither blocks the other parties nor undoes the
        state change that triggered it. Returns the number delivered.
        """
        try:
            messages = self.build_messages(order, notification_type, extra)
        except Exception:
            logger.exception(
                f"Failed to build {notification_type.value} notifications for order {order.order_number}"
            )
            return 0

        delivered = 0
        for msg in messages:
            try:
                await self._send(order, notification_type, msg)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Failed to send {notification_type.value} to {msg.role.value} {msg.user_id} "
                    f"for order {order.order_number}"
                )
        return delivered

    async def _send(self, order: OrderSnapshot, notification_type: NotificationType, msg: OrderMessage) -> None:
        data = {"order_id": order.id, "order_number": order.order_number, "priority": msg.priority, **msg.data}
        await self.sink.notify(msg.user_id, msg.role.value, notification_type.value, msg.title, msg.message, data)

    # ==================== Message Builders ====================

    def _admin(self, title: str, message: str, priority: str = "normal", data: Dict = None) -> OrderMessage:
        return OrderMessage(self.admin_user_id, RecipientRole.ADMIN, title, message, priority, data or {})

    def _order_placed(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        follow_up = (
            "You will be notified when it's ready for pickup."
            if order.is_pickup else "It will be delivered to your address."
        )
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Placed Successfully",
                         f"Your order {order.order_number} has been placed. {follow_up}"),
            OrderMessage(order.seller_id, RecipientRole.SELLER, "New Order Received",
                         f"You have a new order {order.order_number}. A courier will be assigned to collect the item soon."),
            self._admin("Payment Review Required",
                        f"Order {order.order_number} requires payment confirmation before courier assignment.",
                        priority="high"),
        ]

    def _payment_confirmed(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Payment Confirmed",
                         f"Payment for order {order.order_number} has been confirmed. We are finding a courier."),
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Payment Confirmed",
                         f"Payment for order {order.order_number} is confirmed. Please prepare the package."),
        ]

    def _agent_assigned(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        destination = "deliver to the pickup site" if order.is_pickup else "deliver to your address"
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Courier Assigned",
                         f"A courier has been assigned to your order {order.order_number}. "
                         f"They will collect from the seller and {destination}.",
                         data={"agent_id": order.agent_id}),
            OrderMessage(order.agent_id, RecipientRole.AGENT, "New Order Assignment",
                         f"You have been assigned order {order.order_number}. Please proceed to the seller for pickup.",
                         priority="high"),
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Courier Assigned",
                         f"A courier will arrive to collect your item for order {order.order_number}. "
                         f"Please have the package ready.",
                         data={"agent_id": order.agent_id}),
        ]

    def _en_route_to_seller(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Courier On The Way",
                         f"The courier for order {order.order_number} is on the way to you."),
        ]

    def _agent_at_seller(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Courier Arrived",
                         f"The courier for order {order.order_number} has arrived. Confirm the handover to release the item."),
        ]

    def _picked_from_seller(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        if order.is_pickup:
            payout_note = "Payment will be released when the item reaches the pickup site."
            route = "En route to pickup site."
        else:
            payout_note = "Payment will be released upon buyer confirmation."
            route = "En route to buyer."
        return [
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Item Collected",
                         f"Your item for order {order.order_number} has been collected by the courier. {payout_note}"),
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Picked Up",
                         f"Your order {order.order_number} has been collected from the seller."),
            self._admin("Item Collected from Seller",
                        f"Courier collected item from seller for order {order.order_number}. {route}"),
        ]

    def _en_route_to_psm(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.pickup_site_manager_id, RecipientRole.PICKUP_SITE_MANAGER, "Incoming Package",
                         f"Order {order.order_number} is on the way to your pickup site."),
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "On The Way To Pickup Site",
                         f"Your order {order.order_number} is on the way to {order.pickup_site_name or 'the pickup site'}."),
        ]

    def _delivered_to_psm(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        site = order.pickup_site_name or "the pickup site"
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Arrived at Pickup Site",
                         f"Your order {order.order_number} has arrived at {site}. "
                         f"You will be notified as soon as it is ready for collection.",
                         priority="high", data={"pickup_site": order.pickup_site_name}),
            OrderMessage(order.pickup_site_manager_id, RecipientRole.PICKUP_SITE_MANAGER, "Package Delivered",
                         f"Package for order {order.order_number} has been delivered to your pickup site."),
            self._admin("Package Delivered to PSM",
                        f"Order {order.order_number} delivered to pickup site.",
                        priority="high", data={"action": "release_seller_payout"}),
        ]

    def _ready_for_pickup(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        site = order.pickup_site_name or "the pickup site"
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Ready for Pickup",
                         f"Your order {order.order_number} is ready for pickup at {site}. "
                         f"Please bring your order receipt and valid ID.",
                         priority="high", data={"pickup_site": order.pickup_site_name}),
            OrderMessage(order.pickup_site_manager_id, RecipientRole.PICKUP_SITE_MANAGER, "Awaiting Collection",
                         f"Order {order.order_number} is waiting for the buyer to collect it."),
        ]

    def _collected_by_buyer(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Collected",
                         f"You have collected order {order.order_number}. Thank you for shopping with us!"),
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Order Collected",
                         f"The buyer has collected order {order.order_number}."),
            OrderMessage(order.agent_id, RecipientRole.AGENT, "Delivery Completed",
                         f"Order {order.order_number} was collected by the buyer. Your commission will be processed."),
            OrderMessage(order.pickup_site_manager_id, RecipientRole.PICKUP_SITE_MANAGER, "Package Collected",
                         f"Order {order.order_number} has been collected from your pickup site."),
        ]

    def _en_route_to_buyer(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Out for Delivery",
                         f"Your order {order.order_number} is on the way to your address."),
        ]

    def _delivered_to_buyer(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Delivered",
                         f"Your order {order.order_number} has been delivered. "
                         f"Thank you for shopping with us! Please rate your delivery experience."),
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Order Delivered",
                         f"Your item for order {order.order_number} has been delivered to the buyer. "
                         f"Payment will be released shortly."),
            OrderMessage(order.agent_id, RecipientRole.AGENT, "Delivery Completed",
                         f"You have successfully delivered order {order.order_number}. Your commission will be processed."),
        ]

    def _order_completed(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Completed",
                         f"Order {order.order_number} has been completed. Thank you for your business!",
                         data={"can_rate": True}),
            OrderMessage(order.agent_id, RecipientRole.AGENT, "Commission Released",
                         f"Your commission for order {order.order_number} has been released to your account."),
        ]

    def _order_cancelled(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        reason = extra.get("reason")
        suffix = f" Reason: {reason}" if reason else ""
        text = f"Order {order.order_number} has been cancelled.{suffix}"
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Order Cancelled", text),
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Order Cancelled", text),
            OrderMessage(order.agent_id, RecipientRole.AGENT, "Order Cancelled", text),
            OrderMessage(order.pickup_site_manager_id, RecipientRole.PICKUP_SITE_MANAGER, "Order Cancelled", text),
        ]

    def _order_disputed(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        reason = extra.get("reason")
        suffix = f" Reason: {reason}" if reason else ""
        return [
            OrderMessage(order.buyer_id, RecipientRole.BUYER, "Dispute Opened",
                         f"A dispute has been opened for order {order.order_number}. Our team will contact you."),
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Dispute Opened",
                         f"A dispute has been opened for order {order.order_number}. Payouts are on hold."),
            OrderMessage(order.agent_id, RecipientRole.AGENT, "Dispute Opened",
                         f"A dispute has been opened for order {order.order_number}. Pending commissions are on hold."),
            self._admin("Order Disputed",
                        f"Order {order.order_number} has been disputed.{suffix}",
                        priority="high", data={"action": "resolve_dispute"}),
        ]

    def _payout_released(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        amount = extra.get("amount")
        amount_text = f" of {amount}" if amount is not None else ""
        return [
            OrderMessage(order.seller_id, RecipientRole.SELLER, "Payout Released",
                         f"Your payout{amount_text} for order {order.order_number} has been released.",
                         data={"amount": str(amount) if amount is not None else None}),
        ]

    def _commission_released(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        amount = extra.get("amount")
        amount_text = f" of {amount}" if amount is not None else ""
        return [
            OrderMessage(order.agent_id, RecipientRole.AGENT, "Commission Released",
                         f"Your commission{amount_text} for order {order.order_number} has been released.",
                         data={"amount": str(amount) if amount is not None else None}),
        ]

    def _admin_attention_required(self, order: OrderSnapshot, extra: Dict) -> List[OrderMessage]:
        reason = extra.get("reason", "Order needs review")
        return [
            self._admin("Attention Required",
                        f"Order {order.order_number} ({order.status}): {reason}",
                        priority="high", data={k: v for k, v in extra.items() if k != "reason"}),
        ]
