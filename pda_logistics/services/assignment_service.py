"""
Order Assignment Service

Lets delivery agents claim unassigned orders. A claim is all-or-nothing:
agent, status, delivery code, commission lines and the history row are
written in one transaction. At most one concurrent claim per order can
succeed, and an agent never ends up over capacity.
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pda_logistics.config import settings
from pda_logistics.core.exceptions import (
    OrderNotFound,
    OrderAlreadyAssigned,
    OrderKindMismatch,
    CapacityExceeded,
)
from pda_logistics.models.order import AgentClaimLock, Order, OrderStatus, OrderStatusHistory, PaymentStatus
from pda_logistics.models.notification import NotificationType
from pda_logistics.services.commission_service import CommissionService, CommissionBreakdown
from pda_logistics.services.notification_service import NotificationDispatcher, OrderSnapshot
from pda_logistics.services.order_state_machine import (
    AGENT_OPEN_STATUSES,
    ORDER_KIND_POLICIES,
    get_kind_policy,
    is_open_for_assignment,
)

logger = logging.getLogger(__name__)

DELIVERY_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_delivery_code(length: int = None) -> str:
    """Short uppercase alphanumeric code shared with the receiving party."""
    length = length or settings.DELIVERY_CODE_LENGTH
    return "".join(secrets.choice(DELIVERY_CODE_ALPHABET) for _ in range(length))


@dataclass
class AssignmentResult:
    order: Order
    delivery_code: str
    commission: CommissionBreakdown


class AssignmentService:
    """Service for agents claiming orders."""

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher = None,
        max_concurrent_orders: int = None,
    ):
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.commissions = CommissionService(db)
        self.max_concurrent_orders = (
            settings.MAX_CONCURRENT_ORDERS if max_concurrent_orders is None else max_concurrent_orders
        )

    async def count_open_orders(self, agent_id: int) -> int:
        """Orders the agent is actively working on, across all order kinds."""
        result = await self.db.execute(
            select(func.count(Order.id)).where(
                Order.agent_id == agent_id,
                Order.status.in_([s.value for s in AGENT_OPEN_STATUSES]),
            )
        )
        return result.scalar() or 0

    async def _lock_agent(self, agent_id: int, now: datetime) -> None:
        """
        Serialize claims by one agent for the rest of the transaction.

        The row is created on first use, then updated: on PostgreSQL the
        UPDATE holds the row lock until commit, on SQLite the first write
        takes the database write lock. Either way a concurrent claim by the
        same agent counts open orders only after this one has finished.
        """
        dialect = self.db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        await self.db.execute(
            insert(AgentClaimLock)
            .values(agent_id=agent_id)
            .on_conflict_do_nothing(index_elements=["agent_id"])
        )
        await self.db.execute(
            update(AgentClaimLock)
            .where(AgentClaimLock.agent_id == agent_id)
            .values(last_claimed_at=now)
            .execution_options(synchronize_session=False)
        )

    async def accept_order(self, order_id: int, agent_id: int, order_kind: Optional[str] = None) -> AssignmentResult:
        """
        Claim an unassigned order for an agent.

        Claims by the same agent are serialized, so the capacity limit holds
        under concurrent requests. On any error the session is rolled back,
        which expires every object loaded through it.

        Raises:
            OrderNotFound: unknown order
            OrderKindMismatch: caller's order kind differs from the stored one
            OrderAlreadyAssigned: taken by another agent or no longer open
            CapacityExceeded: agent already holds the maximum number of open orders
        """
        try:
            result = await self.db.execute(
                select(Order)
                .where(Order.id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            order = result.scalar_one_or_none()
            if not order:
                raise OrderNotFound(order_id)

            if order_kind is not None and order.order_kind != order_kind:
                raise OrderKindMismatch(order_id, order_kind, order.order_kind)

            if order.agent_id is not None or not is_open_for_assignment(
                order.order_kind, order.status, order.payment_status
            ):
                raise OrderAlreadyAssigned(order_id)

            now = datetime.now(timezone.utc)
            await self._lock_agent(agent_id, now)

            open_orders = await self.count_open_orders(agent_id)
            if open_orders >= self.max_concurrent_orders:
                raise CapacityExceeded(agent_id, open_orders, self.max_concurrent_orders)

            previous_status = order.status
            delivery_code = generate_delivery_code()
            open_statuses = [s.value for s in get_kind_policy(order.order_kind).open_statuses]
            claimed = await self.db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.agent_id.is_(None),
                    Order.status.in_(open_statuses),
                )
                .values(
                    agent_id=agent_id,
                    status=OrderStatus.ASSIGNED_TO_AGENT.value,
                    assigned_at=now,
                    delivery_code=delivery_code,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                # Lost the race to another agent
                raise OrderAlreadyAssigned(order_id)

            await self.db.refresh(order)
            breakdown = await self.commissions.calculate_and_persist(order, agent_id)

            self.db.add(OrderStatusHistory(
                order_id=order_id,
                from_status=previous_status,
                to_status=OrderStatus.ASSIGNED_TO_AGENT.value,
                changed_by=agent_id,
                reason="Order accepted by agent",
                metadata_json={"order_kind": order.order_kind},
            ))
            await self.db.commit()
        except (OrderAlreadyAssigned, CapacityExceeded) as e:
            await self.db.rollback()
            logger.info(f"Agent {agent_id} could not claim order {order_id}: {e.message}")
            raise
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(order)
        logger.info(f"Order {order.order_number} assigned to agent {agent_id}")
        await self.dispatcher.dispatch_safely(OrderSnapshot.from_order(order), NotificationType.AGENT_ASSIGNED)
        return AssignmentResult(order=order, delivery_code=delivery_code, commission=breakdown)

    async def get_available_orders(
        self,
        agent_id: Optional[int] = None,
        order_kind: Optional[str] = None,
        limit: int = 50,
    ) -> List[Order]:
        """
        Unassigned orders that are open for assignment, oldest first.

        An agent already at capacity gets an empty list.
        """
        if agent_id is not None and await self.count_open_orders(agent_id) >= self.max_concurrent_orders:
            return []

        kind_filters = []
        for kind, policy in ORDER_KIND_POLICIES.items():
            if order_kind is not None and kind != order_kind:
                continue
            conditions = [
                Order.order_kind == kind,
                Order.status.in_([s.value for s in policy.open_statuses]),
            ]
            if policy.requires_confirmed_payment:
                conditions.append(Order.payment_status == PaymentStatus.CONFIRMED.value)
            kind_filters.append(and_(*conditions))

        if not kind_filters:
            return []

        result = await self.db.execute(
            select(Order)
            .where(Order.agent_id.is_(None), or_(*kind_filters))
            .order_by(Order.created_at, Order.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_agent_active_orders(self, agent_id: int) -> List[Order]:
        result = await self.db.execute(
            select(Order)
            .where(
                Order.agent_id == agent_id,
                Order.status.in_([s.value for s in AGENT_OPEN_STATUSES]),
            )
            .order_by(Order.assigned_at, Order.id)
        )
        return list(result.scalars().all())
