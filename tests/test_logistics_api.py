from decimal import Decimal

from httpx import ASGITransport, AsyncClient

from pda_logistics.api.deps import get_dispatcher
from pda_logistics.database import get_db
from pda_logistics.main import app

from tests.helpers import AGENT_ID, BUYER_ID, PSM_ID, SELLER_ID, DatabaseTestCase

PREFIX = "/api/v1/logistics"


class LogisticsAPITestCase(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()

        async def override_get_db():
            async with self.session_factory() as session:
                yield session

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_dispatcher] = lambda: self.dispatcher
        self.client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    async def asyncTearDown(self):
        await self.client.aclose()
        app.dependency_overrides.clear()
        await super().asyncTearDown()

    async def post_order(self, **overrides):
        body = {
            "buyer_id": BUYER_ID,
            "seller_id": SELLER_ID,
            "total_amount": "121000.00",
            "delivery_method": "PICKUP",
            "pickup_site_manager_id": PSM_ID,
            "pickup_site_name": "Yaba Pickup Hub",
        }
        body.update(overrides)
        res = await self.client.post(f"{PREFIX}/orders", json=body)
        self.assertEqual(res.status_code, 201, res.text)
        return res.json()

    async def test_order_flow(self):
        order = await self.post_order()
        order_id = order["id"]
        self.assertEqual(order["status"], "ORDER_PLACED")

        res = await self.client.post(f"{PREFIX}/orders/{order_id}/payment/confirm", json={"actor_id": 1})
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["to_status"], "PAYMENT_CONFIRMED")

        res = await self.client.get(f"{PREFIX}/orders/available", params={"agent_id": AGENT_ID})
        self.assertEqual(res.json()["total"], 1)

        res = await self.client.post(f"{PREFIX}/orders/{order_id}/accept", json={"agent_id": AGENT_ID})
        self.assertEqual(res.status_code, 200, res.text)
        accepted = res.json()
        self.assertEqual(accepted["order"]["agent_id"], AGENT_ID)
        self.assertEqual(len(accepted["delivery_code"]), 6)
        self.assertEqual(Decimal(str(accepted["agent_commission"])), Decimal("14553.00"))

        res = await self.client.post(f"{PREFIX}/orders/{order_id}/accept", json={"agent_id": AGENT_ID + 1})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["error"], "ORDER_ALREADY_ASSIGNED")

        for status in ("EN_ROUTE_TO_SELLER", "AT_SELLER"):
            res = await self.client.post(
                f"{PREFIX}/orders/{order_id}/status", json={"status": status, "actor_id": AGENT_ID}
            )
            self.assertEqual(res.status_code, 200, res.text)

        res = await self.client.post(
            f"{PREFIX}/orders/{order_id}/status", json={"status": "PICKED_FROM_SELLER", "actor_id": AGENT_ID}
        )
        self.assertEqual(res.status_code, 422)
        self.assertEqual(res.json()["error"], "CONFIRMATION_REQUIRED")

        res = await self.client.post(f"{PREFIX}/orders/{order_id}/confirmations", json={
            "confirmation_type": "SELLER_HANDOVER",
            "method": "SIGNATURE",
            "confirmer_role": "seller",
            "confirmer_id": SELLER_ID,
            "confirmation_data": {"signature": "svg-path"},
        })
        self.assertEqual(res.status_code, 201, res.text)
        self.assertEqual(res.json()["transition"]["to_status"], "PICKED_FROM_SELLER")

        res = await self.client.get(f"{PREFIX}/orders/{order_id}/tracking")
        self.assertEqual(res.status_code, 200, res.text)
        tracking = res.json()
        self.assertEqual(tracking["order"]["status"], "PICKED_FROM_SELLER")
        self.assertEqual(len(tracking["status_history"]), 6)
        self.assertEqual(len(tracking["confirmations"]), 1)
        self.assertEqual(tracking["allowed_transitions"], ["EN_ROUTE_TO_PSM", "CANCELLED", "DISPUTED"])

        res = await self.client.get(f"{PREFIX}/agents/{AGENT_ID}/earnings")
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(Decimal(str(res.json()["pending"])), Decimal("14553.00"))

    async def test_invalid_transition(self):
        order = await self.post_order()
        res = await self.client.post(f"{PREFIX}/orders/{order['id']}/status", json={"status": "COMPLETED"})
        self.assertEqual(res.status_code, 409)
        body = res.json()
        self.assertEqual(body["error"], "INVALID_TRANSITION")
        self.assertEqual(body["details"]["allowed"], ["PAYMENT_CONFIRMED", "CANCELLED"])

    async def test_unknown_status_string(self):
        order = await self.post_order()
        res = await self.client.post(f"{PREFIX}/orders/{order['id']}/status", json={"status": "teleported"})
        self.assertEqual(res.status_code, 400)

    async def test_unknown_order(self):
        res = await self.client.get(f"{PREFIX}/orders/9999")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["error"], "ORDER_NOT_FOUND")

    async def test_otp_round_trip(self):
        order = await self.post_order()
        res = await self.client.post(f"{PREFIX}/orders/{order['id']}/otp", json={
            "confirmation_type": "BUYER_PICKUP", "target_role": "buyer", "target_user_id": BUYER_ID,
        })
        self.assertEqual(res.status_code, 201, res.text)
        code = res.json()["code"]

        verify = {"confirmation_type": "BUYER_PICKUP", "code": code, "verifier_id": PSM_ID}
        res = await self.client.post(f"{PREFIX}/orders/{order['id']}/otp/verify", json=verify)
        self.assertEqual(res.status_code, 200, res.text)
        res = await self.client.post(f"{PREFIX}/orders/{order['id']}/otp/verify", json=verify)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["error"], "INVALID_OTP")

    async def test_receipt_qr(self):
        order = await self.post_order()
        res = await self.client.get(f"{PREFIX}/orders/{order['id']}/qr/ORDER_RECEIPT")
        self.assertEqual(res.status_code, 200, res.text)
        payload = res.json()["payload"]

        res = await self.client.post(f"{PREFIX}/qr/verify", json={"qr_data": payload, "order_id": order["id"]})
        self.assertEqual(res.status_code, 200, res.text)
        self.assertTrue(res.json()["valid"])

        payload["checksum"] = "f" * 32
        res = await self.client.post(f"{PREFIX}/qr/verify", json={"qr_data": payload})
        self.assertEqual(res.status_code, 400)

    async def test_gps_validation(self):
        order = await self.post_order()
        res = await self.client.post(f"{PREFIX}/orders/{order['id']}/gps/validate", json={
            "latitude": 6.5334, "longitude": 3.3792,
            "expected_latitude": 6.5244, "expected_longitude": 3.3792,
        })
        self.assertEqual(res.status_code, 200, res.text)
        self.assertFalse(res.json()["within_radius"])

    async def test_commission_rates(self):
        res = await self.client.put(
            f"{PREFIX}/commission-rates", json={"admin_id": 1, "rates": {"bogus_rate": 5}}
        )
        self.assertEqual(res.status_code, 400)

        res = await self.client.put(
            f"{PREFIX}/commission-rates", json={"admin_id": 1, "rates": {"referral_rate": 10}}
        )
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(Decimal(str(res.json()["rates"]["referral_rate"])), Decimal("10"))

        res = await self.client.get(f"{PREFIX}/commission-rates")
        self.assertEqual(Decimal(str(res.json()["rates"]["referral_rate"])), Decimal("10"))
        self.assertEqual(Decimal(str(res.json()["rates"]["platform_margin_rate"])), Decimal("21"))

    async def test_status_flow(self):
        res = await self.client.get(f"{PREFIX}/status-flow/HOME_DELIVERY")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["statuses"][-2:], ["DELIVERED_TO_BUYER", "COMPLETED"])
