from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from pda_logistics.jobs.commission_jobs import approve_due_commissions, flag_stuck_orders
from pda_logistics.models.commission import AgentEarning, CommissionStatus, CommissionTransaction, EarningStatus
from pda_logistics.models.order import DeliveryMethod, Order, OrderStatus
from pda_logistics.services.assignment_service import AssignmentService

from tests.helpers import ADMIN_ID, AGENT_ID, DatabaseTestCase


class CommissionApprovalJobTestCase(DatabaseTestCase):
    async def delivered_order(self):
        order = await self.create_paid_order(delivery_method=DeliveryMethod.HOME_DELIVERY.value)
        await AssignmentService(self.db, self.dispatcher).accept_order(order.id, AGENT_ID)
        for status in (
            OrderStatus.EN_ROUTE_TO_SELLER,
            OrderStatus.AT_SELLER,
            OrderStatus.PICKED_FROM_SELLER,
            OrderStatus.EN_ROUTE_TO_BUYER,
            OrderStatus.DELIVERED_TO_BUYER,
        ):
            await self.lifecycle().transition(order.id, status, AGENT_ID, require_confirmation=False)
        return order

    async def statuses(self, order_id):
        rows = (await self.db.execute(
            select(CommissionTransaction.status).where(CommissionTransaction.order_id == order_id)
        )).scalars().all()
        return set(rows)

    async def test_nothing_is_approved_before_the_grace_period_ends(self):
        order = await self.delivered_order()

        approved = await approve_due_commissions(
            now=datetime.now(timezone.utc), session_factory=self.session_factory
        )

        self.assertEqual(approved, 0)
        self.assertEqual(await self.statuses(order.id), {CommissionStatus.PENDING.value})

    async def test_due_commissions_are_approved(self):
        order = await self.delivered_order()

        approved = await approve_due_commissions(
            now=datetime.now(timezone.utc) + timedelta(minutes=10), session_factory=self.session_factory
        )

        self.assertEqual(approved, 3)  # maintenance, agent, platform
        self.assertEqual(await self.statuses(order.id), {CommissionStatus.APPROVED.value})
        earning = (await self.db.execute(
            select(AgentEarning)
            .where(AgentEarning.order_id == order.id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        self.assertEqual(earning.status, EarningStatus.APPROVED.value)
        self.assertIsNotNone(earning.approved_at)

    async def test_disputed_orders_are_skipped(self):
        kept = await self.delivered_order()
        disputed = await self.delivered_order()
        await self.lifecycle().transition(disputed.id, OrderStatus.DISPUTED, actor_id=1, reason="Wrong item")

        approved = await approve_due_commissions(
            now=datetime.now(timezone.utc) + timedelta(minutes=10), session_factory=self.session_factory
        )

        self.assertEqual(approved, 3)
        self.assertEqual(await self.statuses(kept.id), {CommissionStatus.APPROVED.value})
        self.assertEqual(await self.statuses(disputed.id), {CommissionStatus.CANCELLED.value})

    async def test_pending_lines_of_a_disputed_order_stay_pending(self):
        order = await self.delivered_order()
        # Status written by an external dispute tool, without the reversal
        await self.db.execute(
            update(Order).where(Order.id == order.id).values(status=OrderStatus.DISPUTED.value)
        )
        await self.db.commit()

        approved = await approve_due_commissions(
            now=datetime.now(timezone.utc) + timedelta(minutes=10), session_factory=self.session_factory
        )

        self.assertEqual(approved, 0)
        self.assertEqual(await self.statuses(order.id), {CommissionStatus.PENDING.value})

    async def test_second_run_is_a_no_op(self):
        await self.delivered_order()
        later = datetime.now(timezone.utc) + timedelta(minutes=10)
        self.assertEqual(await approve_due_commissions(now=later, session_factory=self.session_factory), 3)
        self.assertEqual(await approve_due_commissions(now=later, session_factory=self.session_factory), 0)


class StuckOrderJobTestCase(DatabaseTestCase):
    async def test_flags_only_stale_open_orders(self):
        stale = await self.create_paid_order()
        fresh = await self.create_paid_order()
        finished = await self.create_order()
        await self.lifecycle().transition(finished.id, OrderStatus.CANCELLED)

        long_ago = datetime.now(timezone.utc) - timedelta(hours=30)
        await self.db.execute(
            update(Order).where(Order.id.in_([stale.id, finished.id])).values(updated_at=long_ago)
        )
        await self.db.commit()
        self.sink.sent.clear()

        flagged = await flag_stuck_orders(session_factory=self.session_factory, dispatcher=self.dispatcher)

        self.assertEqual(flagged, 1)
        self.assertEqual(len(self.sink.sent), 1)
        alert = self.sink.sent[0]
        self.assertEqual(alert["type"], "ADMIN_ATTENTION_REQUIRED")
        self.assertEqual(alert["user_id"], ADMIN_ID)
        self.assertEqual(alert["data"]["order_id"], stale.id)
        self.assertNotEqual(alert["data"]["order_id"], fresh.id)

    async def test_stalled_order_is_flagged_once_until_it_moves(self):
        order = await self.create_paid_order()
        order_id = order.id
        now = datetime.now(timezone.utc)
        await self.db.execute(
            update(Order).where(Order.id == order_id).values(updated_at=now - timedelta(hours=30))
        )
        await self.db.commit()
        self.sink.sent.clear()

        first = await flag_stuck_orders(now=now, session_factory=self.session_factory, dispatcher=self.dispatcher)
        second = await flag_stuck_orders(now=now, session_factory=self.session_factory, dispatcher=self.dispatcher)
        later = await flag_stuck_orders(
            now=now + timedelta(hours=5), session_factory=self.session_factory, dispatcher=self.dispatcher
        )
        self.assertEqual((first, second, later), (1, 0, 0))
        self.assertEqual(len(self.sink.sent), 1)

        flagged_at = (await self.db.execute(
            select(Order.stuck_flagged_at).where(Order.id == order_id)
        )).scalar_one()
        self.assertIsNotNone(flagged_at)

        # The order moved after the alert, then stalled again
        await self.db.execute(
            update(Order).where(Order.id == order_id).values(updated_at=now + timedelta(hours=1))
        )
        await self.db.commit()
        again = await flag_stuck_orders(
            now=now + timedelta(days=3), session_factory=self.session_factory, dispatcher=self.dispatcher
        )
        self.assertEqual(again, 1)
        self.assertEqual(len(self.sink.sent), 2)
