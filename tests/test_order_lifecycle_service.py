from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, func, update

from pda_logistics.core.exceptions import ConfirmationRequired, InvalidTransition, OrderNotFound
from pda_logistics.models.commission import (
    AgentEarning,
    CommissionStatus,
    CommissionTransaction,
    EarningStatus,
    PayoutRelease,
)
from pda_logistics.models.confirmation import ConfirmationMethod, ConfirmationType, OrderQRCode
from pda_logistics.models.order import DeliveryMethod, OrderStatus, OrderStatusHistory, PaymentStatus
from pda_logistics.services.assignment_service import AssignmentService
from pda_logistics.services.confirmation_service import ConfirmationService
from pda_logistics.services.notification_service import NotificationDispatcher

from tests.helpers import (
    AGENT_ID,
    BUYER_ID,
    BUYER_LOCATION,
    FailingSink,
    PICKUP_SITE_LOCATION,
    PSM_ID,
    SELLER_ID,
    SELLER_LOCATION,
    DatabaseTestCase,
)


class LifecycleTestCase(DatabaseTestCase):
    async def history_count(self, order_id):
        return (await self.db.execute(
            select(func.count(OrderStatusHistory.id)).where(OrderStatusHistory.order_id == order_id)
        )).scalar()

    async def commission_rows(self, order_id):
        return (await self.db.execute(
            select(CommissionTransaction)
            .where(CommissionTransaction.order_id == order_id)
            .order_by(CommissionTransaction.id)
            .execution_options(populate_existing=True)
        )).scalars().all()

    async def assigned_order(self, **overrides):
        order = await self.create_paid_order(**overrides)
        result = await AssignmentService(self.db, self.dispatcher).accept_order(order.id, AGENT_ID)
        return result

    async def advance(self, order_id, *statuses, override=False):
        result = None
        for status in statuses:
            result = await self.lifecycle().transition(
                order_id, status, AGENT_ID, require_confirmation=not override
            )
        return result


class OrderCreationTestCase(LifecycleTestCase):
    async def test_initialize_order(self):
        order = await self.create_order(delivery_method=DeliveryMethod.HOME_DELIVERY.value)

        self.assertEqual(order.status, OrderStatus.ORDER_PLACED.value)
        self.assertTrue(order.order_number.startswith("PDA"))
        self.assertEqual(order.payment_status, PaymentStatus.PENDING.value)
        self.assertFalse(order.commission_calculated)

        history = (await self.db.execute(
            select(OrderStatusHistory).where(OrderStatusHistory.order_id == order.id)
        )).scalars().all()
        self.assertEqual(len(history), 1)
        self.assertIsNone(history[0].from_status)
        self.assertEqual(history[0].to_status, OrderStatus.ORDER_PLACED.value)

        qr = (await self.db.execute(
            select(OrderQRCode).where(OrderQRCode.order_id == order.id)
        )).scalar_one()
        self.assertEqual(qr.qr_type, "ORDER_RECEIPT")
        self.assertEqual(qr.payload["orderId"], order.id)

        self.assertIn("ORDER_PLACED", self.sink.types())
        recipients = {n["user_id"] for n in self.sink.sent}
        self.assertTrue({BUYER_ID, SELLER_ID}.issubset(recipients))

    async def test_initialize_order_rejects_unknown_delivery_method(self):
        with self.assertRaises(ValueError):
            await self.create_order(delivery_method="DRONE")

    async def test_confirm_payment(self):
        order = await self.create_order()
        result = await self.lifecycle().confirm_payment(order.id, actor_id=1)

        self.assertEqual(result.from_status, OrderStatus.ORDER_PLACED.value)
        self.assertEqual(result.to_status, OrderStatus.PAYMENT_CONFIRMED.value)
        self.assertEqual(result.action, "Confirm Payment")
        stored = await self.lifecycle().get_order(order.id)
        self.assertEqual(stored.payment_status, PaymentStatus.CONFIRMED.value)

    async def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            await self.lifecycle().transition(4242, OrderStatus.CANCELLED)


class TransitionTestCase(LifecycleTestCase):
    async def test_invalid_transition_leaves_no_history(self):
        order = await self.create_order()
        # The rollback on rejection expires every object in the session
        order_id = order.id
        before = await self.history_count(order_id)

        with self.assertRaises(InvalidTransition):
            await self.lifecycle().transition(order_id, OrderStatus.COMPLETED, actor_id=1)

        self.assertEqual(await self.history_count(order_id), before)
        stored = await self.lifecycle().get_order(order_id)
        self.assertEqual(stored.status, OrderStatus.ORDER_PLACED.value)

    async def test_assignment_only_through_assignment_service(self):
        order = await self.create_paid_order()
        with self.assertRaises(InvalidTransition) as ctx:
            await self.lifecycle().transition(order.id, OrderStatus.ASSIGNED_TO_AGENT, actor_id=AGENT_ID)
        self.assertNotIn("ASSIGNED_TO_AGENT", ctx.exception.details["allowed"])

    async def test_unknown_status_string(self):
        order = await self.create_order()
        with self.assertRaises(ValueError):
            await self.lifecycle().transition(order.id, "teleported")

    async def test_legacy_status_strings_are_mapped(self):
        result = await self.assigned_order()
        order_id = result.order.id
        await self.advance(order_id, "pda_en_route_to_seller", "pda_at_seller")
        await self.advance(order_id, "picked_up", override=True)

        transition = await self.lifecycle().transition(order_id, "in_transit", AGENT_ID)
        self.assertEqual(transition.to_status, OrderStatus.EN_ROUTE_TO_PSM.value)

    async def test_gated_transition_requires_confirmation(self):
        result = await self.assigned_order()
        order_id = result.order.id
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_SELLER, OrderStatus.AT_SELLER)
        before = await self.history_count(order_id)

        with self.assertRaises(ConfirmationRequired) as ctx:
            await self.lifecycle().transition(order_id, OrderStatus.PICKED_FROM_SELLER, AGENT_ID)
        self.assertEqual(ctx.exception.details["confirmation_type"], ConfirmationType.SELLER_HANDOVER.value)

        self.assertEqual(await self.history_count(order_id), before)
        stored = await self.lifecycle().get_order(order_id)
        self.assertEqual(stored.status, OrderStatus.AT_SELLER.value)

    async def test_admin_override_skips_the_gate(self):
        result = await self.assigned_order()
        order_id = result.order.id
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_SELLER, OrderStatus.AT_SELLER)

        transition = await self.lifecycle().transition(
            order_id, OrderStatus.PICKED_FROM_SELLER, actor_id=1, require_confirmation=False
        )
        self.assertEqual(transition.to_status, OrderStatus.PICKED_FROM_SELLER.value)
        stored = await self.lifecycle().get_order(order_id)
        self.assertIsNotNone(stored.picked_at)

    async def test_failing_notifications_do_not_undo_the_transition(self):
        order = await self.create_order()
        lifecycle = self.lifecycle()
        lifecycle.dispatcher = NotificationDispatcher(FailingSink(), admin_user_id=1)

        with self.assertLogs("pda_logistics.services.notification_service", level="ERROR"):
            result = await lifecycle.transition(order.id, OrderStatus.CANCELLED, actor_id=BUYER_ID)

        self.assertEqual(result.notifications_sent, 0)
        stored = await self.lifecycle().get_order(order.id)
        self.assertEqual(stored.status, OrderStatus.CANCELLED.value)
        self.assertIsNotNone(stored.cancelled_at)
        self.assertEqual(await self.history_count(order.id), 2)

    async def test_terminal_status_cannot_change(self):
        order = await self.create_order()
        await self.lifecycle().transition(order.id, OrderStatus.CANCELLED)
        with self.assertRaises(InvalidTransition) as ctx:
            await self.lifecycle().transition(order.id, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(ctx.exception.details["allowed"], [])


class DeliveryPathTestCase(LifecycleTestCase):
    async def test_pickup_path_with_confirmations(self):
        assignment = await self.assigned_order(delivery_method=DeliveryMethod.PICKUP.value)
        order_id = assignment.order.id
        confirmations = ConfirmationService(self.db)

        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_SELLER, OrderStatus.AT_SELLER)

        outcome = await confirmations.confirm(
            order_id, ConfirmationType.SELLER_HANDOVER.value, ConfirmationMethod.SIGNATURE.value,
            confirmer_role="seller", confirmer_id=SELLER_ID,
            confirmation_data={"signature": "data:image/png;base64,AAAA"},
            latitude=float(SELLER_LOCATION[0]), longitude=float(SELLER_LOCATION[1]),
            lifecycle=self.lifecycle(),
        )
        self.assertTrue(outcome.gps.within_radius)
        self.assertEqual(outcome.transition.to_status, OrderStatus.PICKED_FROM_SELLER.value)

        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_PSM)

        outcome = await confirmations.confirm(
            order_id, ConfirmationType.PSM_DEPOSIT.value, ConfirmationMethod.PHOTO.value,
            confirmer_role="pickup_site_manager", confirmer_id=PSM_ID,
            confirmation_data={"photo_url": "https://cdn.example.com/deposit.jpg"},
            latitude=float(PICKUP_SITE_LOCATION[0]), longitude=float(PICKUP_SITE_LOCATION[1]),
            lifecycle=self.lifecycle(),
        )
        self.assertEqual(outcome.transition.to_status, OrderStatus.DELIVERED_TO_PSM.value)
        self.assertEqual(outcome.transition.released, ["SELLER_PAYOUT"])

        await self.advance(order_id, OrderStatus.READY_FOR_PICKUP)

        outcome = await confirmations.confirm(
            order_id, ConfirmationType.BUYER_PICKUP.value, ConfirmationMethod.DELIVERY_CODE.value,
            confirmer_role="buyer", confirmer_id=BUYER_ID,
            delivery_code=assignment.delivery_code.lower(),
            lifecycle=self.lifecycle(),
        )
        self.assertIsNone(outcome.gps)
        self.assertEqual(outcome.transition.to_status, OrderStatus.COLLECTED_BY_BUYER.value)
        self.assertEqual(outcome.transition.released, ["AGENT_COMMISSION"])

        completed = await self.advance(order_id, OrderStatus.COMPLETED)
        self.assertEqual(completed.released, [])

        order = await self.lifecycle().get_order(order_id)
        self.assertEqual(order.status, OrderStatus.COMPLETED.value)
        self.assertTrue(order.seller_payout_released)
        self.assertTrue(order.agent_commission_released)
        self.assertIsNotNone(order.delivered_at)
        self.assertIsNotNone(order.completed_at)
        self.assertIsNotNone(order.dispute_grace_period_end)
        self.assertEqual(await self.history_count(order_id), 11)

        releases = (await self.db.execute(
            select(func.count(PayoutRelease.id)).where(PayoutRelease.order_id == order_id)
        )).scalar()
        self.assertEqual(releases, 2)

        for row in await self.commission_rows(order_id):
            self.assertEqual(row.status, CommissionStatus.PENDING.value)
            self.assertIsNotNone(row.approval_due_at)

        self.assertIn("PAYOUT_RELEASED", self.sink.types())
        self.assertIn("COMMISSION_RELEASED", self.sink.types())
        self.assertIn("ORDER_COMPLETED", self.sink.types())

    async def test_home_delivery_path(self):
        assignment = await self.assigned_order(delivery_method=DeliveryMethod.HOME_DELIVERY.value)
        order_id = assignment.order.id

        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_SELLER, OrderStatus.AT_SELLER)
        await self.advance(order_id, OrderStatus.PICKED_FROM_SELLER, override=True)
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_BUYER)

        delivered = await ConfirmationService(self.db).confirm(
            order_id, ConfirmationType.BUYER_DELIVERY.value, ConfirmationMethod.DELIVERY_CODE.value,
            confirmer_role="buyer", confirmer_id=BUYER_ID,
            delivery_code=assignment.delivery_code,
            latitude=float(BUYER_LOCATION[0]), longitude=float(BUYER_LOCATION[1]),
            lifecycle=self.lifecycle(),
        )
        self.assertEqual(delivered.transition.to_status, OrderStatus.DELIVERED_TO_BUYER.value)
        self.assertEqual(delivered.transition.released, ["SELLER_PAYOUT", "AGENT_COMMISSION"])

        order = await self.lifecycle().get_order(order_id)
        self.assertEqual(order.agent_commission, Decimal("14553.00"))
        self.assertTrue(order.seller_payout_released)

        commission_sent = [n for n in self.sink.sent if n["type"] == "COMMISSION_RELEASED"]
        self.assertEqual(len(commission_sent), 1)
        self.assertEqual(commission_sent[0]["user_id"], AGENT_ID)

    async def test_seller_payout_can_wait_for_buyer(self):
        assignment = await self.assigned_order(delivery_method=DeliveryMethod.PICKUP.value)
        order_id = assignment.order.id
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_SELLER, OrderStatus.AT_SELLER)
        await self.advance(order_id, OrderStatus.PICKED_FROM_SELLER, override=True)
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_PSM)

        result = await self.lifecycle(seller_payout_on_psm_deposit=False).transition(
            order_id, OrderStatus.DELIVERED_TO_PSM, PSM_ID, require_confirmation=False
        )
        self.assertEqual(result.released, [])

        await self.advance(order_id, OrderStatus.READY_FOR_PICKUP)
        collected = await self.advance(order_id, OrderStatus.COLLECTED_BY_BUYER, override=True)
        self.assertEqual(collected.released, ["SELLER_PAYOUT", "AGENT_COMMISSION"])


class CommissionReversalTestCase(LifecycleTestCase):
    async def test_cancel_reverses_commissions(self):
        assignment = await self.assigned_order()
        order_id = assignment.order.id

        await self.lifecycle().transition(order_id, OrderStatus.CANCELLED, actor_id=1, reason="Buyer request")

        rows = await self.commission_rows(order_id)
        self.assertTrue(rows)
        self.assertTrue(all(r.status == CommissionStatus.CANCELLED.value for r in rows))

        earnings = (await self.db.execute(
            select(AgentEarning)
            .where(AgentEarning.order_id == order_id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        self.assertTrue(earnings)
        self.assertTrue(all(e.status == EarningStatus.REVERSED.value for e in earnings))

    async def test_dispute_leaves_paid_lines_alone(self):
        assignment = await self.assigned_order(delivery_method=DeliveryMethod.HOME_DELIVERY.value)
        order_id = assignment.order.id
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_SELLER, OrderStatus.AT_SELLER)
        await self.advance(order_id, OrderStatus.PICKED_FROM_SELLER, override=True)
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_BUYER)
        await self.advance(order_id, OrderStatus.DELIVERED_TO_BUYER, override=True)

        rows = await self.commission_rows(order_id)
        paid_id = rows[0].id
        await self.db.execute(
            update(CommissionTransaction)
            .where(CommissionTransaction.id == paid_id)
            .values(status=CommissionStatus.PAID.value, paid_at=datetime.now(timezone.utc))
        )
        await self.db.commit()

        result = await self.lifecycle().transition(order_id, OrderStatus.DISPUTED, BUYER_ID, reason="Damaged")
        self.assertEqual(result.action, "Raise Dispute")

        statuses = {r.id: r.status for r in await self.commission_rows(order_id)}
        self.assertEqual(statuses.pop(paid_id), CommissionStatus.PAID.value)
        self.assertTrue(all(s == CommissionStatus.CANCELLED.value for s in statuses.values()))
        self.assertIn("ORDER_DISPUTED", self.sink.types())


class TrackingTestCase(LifecycleTestCase):
    async def test_order_tracking(self):
        assignment = await self.assigned_order()
        order_id = assignment.order.id
        await self.advance(order_id, OrderStatus.EN_ROUTE_TO_SELLER)
        confirmations = ConfirmationService(self.db)
        for step in range(3):
            await confirmations.record_location(order_id, AGENT_ID, 6.50 + step * 0.001, 3.38)

        tracking = await self.lifecycle().get_order_tracking(order_id, gps_limit=2)

        self.assertEqual(tracking["order"].id, order_id)
        self.assertEqual(
            [h.to_status for h in tracking["status_history"]],
            ["ORDER_PLACED", "PAYMENT_CONFIRMED", "ASSIGNED_TO_AGENT", "EN_ROUTE_TO_SELLER"],
        )
        self.assertEqual(len(tracking["gps_trail"]), 2)
        self.assertEqual(tracking["allowed_transitions"], ["AT_SELLER", "CANCELLED", "DISPUTED"])
        self.assertEqual(len(tracking["commissions"]), 4)
        self.assertEqual(tracking["status_flow"][0], "ORDER_PLACED")
