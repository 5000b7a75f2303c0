import unittest

from pda_logistics.core.exceptions import InvalidTransition
from pda_logistics.models.confirmation import ConfirmationType
from pda_logistics.models.order import OrderStatus, DeliveryMethod, OrderKind, PaymentStatus
from pda_logistics.services.order_state_machine import (
    can_transition,
    get_allowed_transitions,
    get_status_flow,
    get_transition_action,
    is_open_for_assignment,
    is_terminal,
    normalize_status,
    required_confirmation,
    validate_transition,
)

PICKUP = DeliveryMethod.PICKUP.value
HOME = DeliveryMethod.HOME_DELIVERY.value


class TransitionTableTestCase(unittest.TestCase):
    def test_paths_diverge_after_pickup_from_seller(self):
        self.assertIn("EN_ROUTE_TO_PSM", get_allowed_transitions("PICKED_FROM_SELLER", PICKUP))
        self.assertNotIn("EN_ROUTE_TO_BUYER", get_allowed_transitions("PICKED_FROM_SELLER", PICKUP))
        self.assertIn("EN_ROUTE_TO_BUYER", get_allowed_transitions("PICKED_FROM_SELLER", HOME))
        self.assertNotIn("EN_ROUTE_TO_PSM", get_allowed_transitions("PICKED_FROM_SELLER", HOME))

    def test_terminal_statuses_have_no_exits(self):
        for status in ("COMPLETED", "CANCELLED", "DISPUTED"):
            self.assertTrue(is_terminal(status))
            self.assertEqual(get_allowed_transitions(status, PICKUP), [])
            self.assertEqual(get_allowed_transitions(status, HOME), [])

    def test_cancel_not_allowed_once_goods_are_delivered(self):
        self.assertFalse(can_transition("DELIVERED_TO_PSM", "CANCELLED", PICKUP))
        self.assertFalse(can_transition("DELIVERED_TO_BUYER", "CANCELLED", HOME))
        self.assertTrue(can_transition("DELIVERED_TO_BUYER", "DISPUTED", HOME))

    def test_validate_rejects_same_status(self):
        with self.assertRaises(InvalidTransition):
            validate_transition(1, "AT_SELLER", "AT_SELLER", PICKUP)

    def test_validate_reports_allowed_transitions(self):
        with self.assertRaises(InvalidTransition) as ctx:
            validate_transition(7, "ORDER_PLACED", "COMPLETED", PICKUP)
        self.assertEqual(ctx.exception.details["allowed"], ["PAYMENT_CONFIRMED", "CANCELLED"])

    def test_status_flow(self):
        self.assertEqual(get_status_flow(HOME), [
            "ORDER_PLACED", "PAYMENT_CONFIRMED", "ASSIGNED_TO_AGENT", "EN_ROUTE_TO_SELLER",
            "AT_SELLER", "PICKED_FROM_SELLER", "EN_ROUTE_TO_BUYER", "DELIVERED_TO_BUYER", "COMPLETED",
        ])
        self.assertEqual(get_status_flow(PICKUP)[-4:], [
            "DELIVERED_TO_PSM", "READY_FOR_PICKUP", "COLLECTED_BY_BUYER", "COMPLETED",
        ])

    def test_gated_statuses(self):
        self.assertEqual(required_confirmation("PICKED_FROM_SELLER"), ConfirmationType.SELLER_HANDOVER)
        self.assertEqual(required_confirmation("DELIVERED_TO_PSM"), ConfirmationType.PSM_DEPOSIT)
        self.assertEqual(required_confirmation("DELIVERED_TO_BUYER"), ConfirmationType.BUYER_DELIVERY)
        self.assertEqual(required_confirmation("COLLECTED_BY_BUYER"), ConfirmationType.BUYER_PICKUP)
        self.assertIsNone(required_confirmation("EN_ROUTE_TO_SELLER"))

    def test_transition_actions(self):
        self.assertEqual(get_transition_action("EN_ROUTE_TO_PSM", "DELIVERED_TO_PSM"), "Deposit at Pickup Site")
        self.assertEqual(get_transition_action("AT_SELLER", "CANCELLED"), "Cancel")


class NormalizeStatusTestCase(unittest.TestCase):
    def test_canonical_names_pass_through(self):
        self.assertEqual(normalize_status("AT_SELLER"), OrderStatus.AT_SELLER)
        self.assertEqual(normalize_status(" completed "), OrderStatus.COMPLETED)

    def test_legacy_names(self):
        self.assertEqual(normalize_status("pending"), OrderStatus.ORDER_PLACED)
        self.assertEqual(normalize_status("assigned_to_fda"), OrderStatus.ASSIGNED_TO_AGENT)
        self.assertEqual(normalize_status("picked_up"), OrderStatus.PICKED_FROM_SELLER)
        self.assertEqual(normalize_status("canceled"), OrderStatus.CANCELLED)

    def test_method_dependent_names(self):
        self.assertEqual(normalize_status("in_transit", PICKUP), OrderStatus.EN_ROUTE_TO_PSM)
        self.assertEqual(normalize_status("in_transit", HOME), OrderStatus.EN_ROUTE_TO_BUYER)
        self.assertEqual(normalize_status("delivered", PICKUP), OrderStatus.DELIVERED_TO_PSM)
        self.assertEqual(normalize_status("delivered", HOME), OrderStatus.DELIVERED_TO_BUYER)

    def test_unknown_status_raises(self):
        with self.assertRaises(ValueError):
            normalize_status("teleported")


class KindPolicyTestCase(unittest.TestCase):
    def test_local_market_needs_confirmed_payment(self):
        self.assertFalse(is_open_for_assignment(
            OrderKind.LOCAL_MARKET.value, "PAYMENT_CONFIRMED", PaymentStatus.PENDING.value
        ))
        self.assertTrue(is_open_for_assignment(
            OrderKind.LOCAL_MARKET.value, "PAYMENT_CONFIRMED", PaymentStatus.CONFIRMED.value
        ))

    def test_standard_and_grocery_open_on_payment_confirmed(self):
        for kind in (OrderKind.STANDARD.value, OrderKind.GROCERY.value):
            self.assertTrue(is_open_for_assignment(kind, "PAYMENT_CONFIRMED", PaymentStatus.PENDING.value))
            self.assertFalse(is_open_for_assignment(kind, "ORDER_PLACED", PaymentStatus.CONFIRMED.value))


if __name__ == "__main__":
    unittest.main()
