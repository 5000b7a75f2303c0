"""Shared fixtures: a throwaway SQLite database per test case and a recording sink."""
import os
import tempfile
import unittest
from decimal import Decimal

from pda_logistics.database import build_engine, build_session_factory, init_db
from pda_logistics.models.order import DeliveryMethod, OrderKind, PaymentStatus
from pda_logistics.services.notification_service import NotificationDispatcher
from pda_logistics.services.order_lifecycle_service import OrderLifecycleService

BUYER_ID = 100
SELLER_ID = 200
PSM_ID = 300
AGENT_ID = 400
ADMIN_ID = 1

SELLER_LOCATION = (Decimal("6.5244000"), Decimal("3.3792000"))
PICKUP_SITE_LOCATION = (Decimal("6.4550000"), Decimal("3.3941000"))
BUYER_LOCATION = (Decimal("6.6018000"), Decimal("3.3515000"))


class RecordingSink:
    """Keeps every notification in memory."""

    def __init__(self):
        self.sent = []

    async def notify(self, user_id, role, notification_type, title, message, data):
        self.sent.append({
            "user_id": user_id,
            "role": role,
            "type": notification_type,
            "title": title,
            "message": message,
            "data": data,
        })

    def types(self):
        return [n["type"] for n in self.sent]


class FailingSink:
    async def notify(self, user_id, role, notification_type, title, message, data):
        raise RuntimeError("notification backend down")


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """One engine and one temp-file SQLite database per test."""

    async def asyncSetUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.database_url = f"sqlite+aiosqlite:///{os.path.join(self._tmpdir.name, 'logistics.db')}"
        self.engine = build_engine(self.database_url)
        await init_db(self.engine)
        self.session_factory = build_session_factory(self.engine)
        self.db = self.session_factory()
        self.sink = RecordingSink()
        self.dispatcher = NotificationDispatcher(self.sink, admin_user_id=ADMIN_ID)

    async def asyncTearDown(self):
        await self.db.close()
        await self.engine.dispose()
        self._tmpdir.cleanup()

    def lifecycle(self, db=None, **kwargs):
        return OrderLifecycleService(db or self.db, self.dispatcher, **kwargs)

    async def create_order(self, total_amount="121000.00", **overrides):
        values = {
            "buyer_id": BUYER_ID,
            "seller_id": SELLER_ID,
            "total_amount": Decimal(total_amount),
            "delivery_method": DeliveryMethod.PICKUP.value,
            "order_kind": OrderKind.STANDARD.value,
            "pickup_site_manager_id": PSM_ID,
            "pickup_site_name": "Yaba Pickup Hub",
            "seller_latitude": SELLER_LOCATION[0],
            "seller_longitude": SELLER_LOCATION[1],
            "pickup_site_latitude": PICKUP_SITE_LOCATION[0],
            "pickup_site_longitude": PICKUP_SITE_LOCATION[1],
            "delivery_latitude": BUYER_LOCATION[0],
            "delivery_longitude": BUYER_LOCATION[1],
        }
        values.update(overrides)
        return await self.lifecycle().initialize_order(**values)

    async def create_paid_order(self, **overrides):
        """Order in PAYMENT_CONFIRMED with a confirmed payment, ready to be claimed."""
        overrides.setdefault("payment_status", PaymentStatus.PENDING.value)
        order = await self.create_order(**overrides)
        await self.lifecycle().confirm_payment(order.id, actor_id=ADMIN_ID)
        return await self.lifecycle().get_order(order.id)
