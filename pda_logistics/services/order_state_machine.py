"""
Order Delivery State Machine

This module is the SINGLE SOURCE OF TRUTH for order status transitions.
Every status change goes through ``OrderLifecycleService.transition``,
which validates against the tables below.

Two delivery methods share one status enum:
- PICKUP:        ... -> PICKED_FROM_SELLER -> EN_ROUTE_TO_PSM -> DELIVERED_TO_PSM
                 -> READY_FOR_PICKUP -> COLLECTED_BY_BUYER -> COMPLETED
- HOME_DELIVERY: ... -> PICKED_FROM_SELLER -> EN_ROUTE_TO_BUYER
                 -> DELIVERED_TO_BUYER -> COMPLETED
"""

from dataclasses import dataclass
from typing import Optional, List, Dict, FrozenSet

from pda_logistics.core.exceptions import InvalidTransition
from pda_logistics.models.order import OrderStatus, OrderKind, DeliveryMethod, PaymentStatus
from pda_logistics.models.confirmation import ConfirmationType
from pda_logistics.models.notification import NotificationType


S = OrderStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Shared prefix of both delivery paths
_COMMON_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    S.ORDER_PLACED: [S.PAYMENT_CONFIRMED, S.CANCELLED],
    S.PAYMENT_CONFIRMED: [S.ASSIGNED_TO_AGENT, S.CANCELLED],
    S.ASSIGNED_TO_AGENT: [S.EN_ROUTE_TO_SELLER, S.CANCELLED, S.DISPUTED],
    S.EN_ROUTE_TO_SELLER: [S.AT_SELLER, S.CANCELLED, S.DISPUTED],
    S.AT_SELLER: [S.PICKED_FROM_SELLER, S.CANCELLED, S.DISPUTED],
    S.COMPLETED: [],    # Terminal state
    S.CANCELLED: [],    # Terminal state
    S.DISPUTED: [],     # Terminal state, resolved outside the state machine
}

PICKUP_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    **_COMMON_TRANSITIONS,
    S.PICKED_FROM_SELLER: [S.EN_ROUTE_TO_PSM, S.CANCELLED, S.DISPUTED],
    S.EN_ROUTE_TO_PSM: [S.DELIVERED_TO_PSM, S.CANCELLED, S.DISPUTED],
    S.DELIVERED_TO_PSM: [S.READY_FOR_PICKUP, S.DISPUTED],
    S.READY_FOR_PICKUP: [S.COLLECTED_BY_BUYER, S.DISPUTED],
    S.COLLECTED_BY_BUYER: [S.COMPLETED, S.DISPUTED],
}

HOME_DELIVERY_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    **_COMMON_TRANSITIONS,
    S.PICKED_FROM_SELLER: [S.EN_ROUTE_TO_BUYER, S.CANCELLED, S.DISPUTED],
    S.EN_ROUTE_TO_BUYER: [S.DELIVERED_TO_BUYER, S.CANCELLED, S.DISPUTED],
    S.DELIVERED_TO_BUYER: [S.COMPLETED, S.DISPUTED],
}

TRANSITIONS_BY_METHOD: Dict[str, Dict[OrderStatus, List[OrderStatus]]] = {
    DeliveryMethod.PICKUP.value: PICKUP_TRANSITIONS,
    DeliveryMethod.HOME_DELIVERY.value: HOME_DELIVERY_TRANSITIONS,
}

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({S.COMPLETED, S.CANCELLED, S.DISPUTED})

# Orders an agent is actively working on; counted against agent capacity
AGENT_OPEN_STATUSES: FrozenSet[OrderStatus] = frozenset({
    S.ASSIGNED_TO_AGENT,
    S.EN_ROUTE_TO_SELLER,
    S.AT_SELLER,
    S.PICKED_FROM_SELLER,
    S.EN_ROUTE_TO_PSM,
    S.EN_ROUTE_TO_BUYER,
})

# Human-readable action names for each transition
TRANSITION_ACTIONS: Dict[tuple, str] = {
    (S.ORDER_PLACED, S.PAYMENT_CONFIRMED): "Confirm Payment",
    (S.PAYMENT_CONFIRMED, S.ASSIGNED_TO_AGENT): "Assign Agent",
    (S.ASSIGNED_TO_AGENT, S.EN_ROUTE_TO_SELLER): "Start Pickup Trip",
    (S.EN_ROUTE_TO_SELLER, S.AT_SELLER): "Arrive at Seller",
    (S.AT_SELLER, S.PICKED_FROM_SELLER): "Collect from Seller",
    (S.PICKED_FROM_SELLER, S.EN_ROUTE_TO_PSM): "Head to Pickup Site",
    (S.EN_ROUTE_TO_PSM, S.DELIVERED_TO_PSM): "Deposit at Pickup Site",
    (S.DELIVERED_TO_PSM, S.READY_FOR_PICKUP): "Mark Ready for Pickup",
    (S.READY_FOR_PICKUP, S.COLLECTED_BY_BUYER): "Buyer Collects",
    (S.COLLECTED_BY_BUYER, S.COMPLETED): "Complete Order",
    (S.PICKED_FROM_SELLER, S.EN_ROUTE_TO_BUYER): "Head to Buyer",
    (S.EN_ROUTE_TO_BUYER, S.DELIVERED_TO_BUYER): "Deliver to Buyer",
    (S.DELIVERED_TO_BUYER, S.COMPLETED): "Complete Order",
}

# Entering these statuses needs a recorded confirmation of the given type
CONFIRMATION_GATES: Dict[OrderStatus, ConfirmationType] = {
    S.PICKED_FROM_SELLER: ConfirmationType.SELLER_HANDOVER,
    S.DELIVERED_TO_PSM: ConfirmationType.PSM_DEPOSIT,
    S.DELIVERED_TO_BUYER: ConfirmationType.BUYER_DELIVERY,
    S.COLLECTED_BY_BUYER: ConfirmationType.BUYER_PICKUP,
}

# Status an order must be in for a confirmation to drive the gated transition
CONFIRMATION_PRE_STATES: Dict[ConfirmationType, OrderStatus] = {
    ConfirmationType.SELLER_HANDOVER: S.AT_SELLER,
    ConfirmationType.PSM_DEPOSIT: S.EN_ROUTE_TO_PSM,
    ConfirmationType.BUYER_DELIVERY: S.EN_ROUTE_TO_BUYER,
    ConfirmationType.BUYER_PICKUP: S.READY_FOR_PICKUP,
}

CONFIRMATION_TARGETS: Dict[ConfirmationType, OrderStatus] = {
    confirmation: status for status, confirmation in CONFIRMATION_GATES.items()
}

STATUS_NOTIFICATIONS: Dict[OrderStatus, NotificationType] = {
    S.ORDER_PLACED: NotificationType.ORDER_PLACED,
    S.PAYMENT_CONFIRMED: NotificationType.PAYMENT_CONFIRMED,
    S.ASSIGNED_TO_AGENT: NotificationType.AGENT_ASSIGNED,
    S.EN_ROUTE_TO_SELLER: NotificationType.EN_ROUTE_TO_SELLER,
    S.AT_SELLER: NotificationType.AGENT_AT_SELLER,
    S.PICKED_FROM_SELLER: NotificationType.PICKED_FROM_SELLER,
    S.EN_ROUTE_TO_PSM: NotificationType.EN_ROUTE_TO_PSM,
    S.DELIVERED_TO_PSM: NotificationType.DELIVERED_TO_PSM,
    S.READY_FOR_PICKUP: NotificationType.READY_FOR_PICKUP,
    S.COLLECTED_BY_BUYER: NotificationType.COLLECTED_BY_BUYER,
    S.EN_ROUTE_TO_BUYER: NotificationType.EN_ROUTE_TO_BUYER,
    S.DELIVERED_TO_BUYER: NotificationType.DELIVERED_TO_BUYER,
    S.COMPLETED: NotificationType.ORDER_COMPLETED,
    S.CANCELLED: NotificationType.ORDER_CANCELLED,
    S.DISPUTED: NotificationType.ORDER_DISPUTED,
}


# =============================================================================
# ORDER KIND POLICIES
# =============================================================================

@dataclass(frozen=True)
class OrderKindPolicy:
    """Per-kind assignment rules."""
    open_statuses: FrozenSet[OrderStatus]
    requires_confirmed_payment: bool = False


ORDER_KIND_POLICIES: Dict[str, OrderKindPolicy] = {
    OrderKind.STANDARD.value: OrderKindPolicy(open_statuses=frozenset({S.PAYMENT_CONFIRMED})),
    OrderKind.GROCERY.value: OrderKindPolicy(open_statuses=frozenset({S.PAYMENT_CONFIRMED})),
    OrderKind.LOCAL_MARKET.value: OrderKindPolicy(
        open_statuses=frozenset({S.PAYMENT_CONFIRMED}),
        requires_confirmed_payment=True,
    ),
}


def get_kind_policy(order_kind: str) -> OrderKindPolicy:
    return ORDER_KIND_POLICIES.get(order_kind, ORDER_KIND_POLICIES[OrderKind.STANDARD.value])


def is_open_for_assignment(order_kind: str, status: str, payment_status: str) -> bool:
    """Check the kind policy for whether an unassigned order can be claimed."""
    policy = get_kind_policy(order_kind)
    if status not in {s.value for s in policy.open_statuses}:
        return False
    if policy.requires_confirmed_payment and payment_status != PaymentStatus.CONFIRMED.value:
        return False
    return True


# =============================================================================
# LEGACY STATUS MAPPING
# =============================================================================

# Status strings written by older clients and the per-marketplace tables.
# Values of None depend on the delivery method (see normalize_status).
LEGACY_STATUS_MAP: Dict[str, Optional[OrderStatus]] = {
    "pending": S.ORDER_PLACED,
    "placed": S.ORDER_PLACED,
    "processing": S.PAYMENT_CONFIRMED,
    "confirmed": S.PAYMENT_CONFIRMED,
    "paid": S.PAYMENT_CONFIRMED,
    "assigned": S.ASSIGNED_TO_AGENT,
    "assigned_to_pda": S.ASSIGNED_TO_AGENT,
    "assigned_to_fda": S.ASSIGNED_TO_AGENT,
    "pda_en_route_to_seller": S.EN_ROUTE_TO_SELLER,
    "fda_en_route_to_seller": S.EN_ROUTE_TO_SELLER,
    "pda_at_seller": S.AT_SELLER,
    "fda_at_seller": S.AT_SELLER,
    "picked_up": S.PICKED_FROM_SELLER,
    "in_transit": None,
    "shipped": None,
    "fda_en_route_to_buyer": S.EN_ROUTE_TO_BUYER,
    "deposited_at_psm": S.DELIVERED_TO_PSM,
    "delivered": None,
    "collected": S.COLLECTED_BY_BUYER,
    "canceled": S.CANCELLED,
}

_METHOD_DEPENDENT: Dict[str, Dict[str, OrderStatus]] = {
    "in_transit": {
        DeliveryMethod.PICKUP.value: S.EN_ROUTE_TO_PSM,
        DeliveryMethod.HOME_DELIVERY.value: S.EN_ROUTE_TO_BUYER,
    },
    "shipped": {
        DeliveryMethod.PICKUP.value: S.EN_ROUTE_TO_PSM,
        DeliveryMethod.HOME_DELIVERY.value: S.EN_ROUTE_TO_BUYER,
    },
    "delivered": {
        DeliveryMethod.PICKUP.value: S.DELIVERED_TO_PSM,
        DeliveryMethod.HOME_DELIVERY.value: S.DELIVERED_TO_BUYER,
    },
}


def normalize_status(raw: str, delivery_method: str = DeliveryMethod.PICKUP.value) -> OrderStatus:
    """
    Map any status string seen at the boundary onto ``OrderStatus``.

    Raises ValueError for strings that have no mapping.
    """
    if raw is None:
        raise ValueError("Status is required")

    candidate = raw.strip()
    if candidate.upper() in OrderStatus.__members__:
        return OrderStatus[candidate.upper()]

    key = candidate.lower()
    if key not in LEGACY_STATUS_MAP:
        raise ValueError(f"Unknown order status '{raw}'")

    mapped = LEGACY_STATUS_MAP[key]
    if mapped is None:
        by_method = _METHOD_DEPENDENT[key]
        return by_method.get(delivery_method, by_method[DeliveryMethod.PICKUP.value])
    return mapped


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_transition_table(delivery_method: str) -> Dict[OrderStatus, List[OrderStatus]]:
    return TRANSITIONS_BY_METHOD.get(delivery_method, PICKUP_TRANSITIONS)


def get_allowed_transitions(current_status: str, delivery_method: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    table = get_transition_table(delivery_method)
    try:
        current = OrderStatus(current_status)
    except ValueError:
        return []
    return [s.value for s in table.get(current, [])]


def can_transition(current_status: str, new_status: str, delivery_method: str) -> bool:
    """Check if a transition is allowed for the delivery method."""
    return new_status in get_allowed_transitions(current_status, delivery_method)


def get_transition_action(current_status: str, new_status: str) -> str:
    """Get human-readable action name for a transition."""
    try:
        key = (OrderStatus(current_status), OrderStatus(new_status))
    except ValueError:
        return f"{current_status} -> {new_status}"
    if key[1] == S.CANCELLED:
        return "Cancel"
    if key[1] == S.DISPUTED:
        return "Raise Dispute"
    return TRANSITION_ACTIONS.get(key, f"{current_status} -> {new_status}")


def validate_transition(order_id: int, current_status: str, new_status: str, delivery_method: str) -> None:
    """
    Validate a status transition. Raises InvalidTransition if invalid.

    Unlike a no-op update, moving to the current status is rejected: every
    accepted transition writes a history row.
    """
    if not can_transition(current_status, new_status, delivery_method):
        raise InvalidTransition(
            order_id,
            current_status,
            new_status,
            get_allowed_transitions(current_status, delivery_method),
        )


def is_terminal(status: str) -> bool:
    return status in {s.value for s in TERMINAL_STATUSES}


def required_confirmation(new_status: str) -> Optional[ConfirmationType]:
    try:
        return CONFIRMATION_GATES.get(OrderStatus(new_status))
    except ValueError:
        return None


def notification_for_status(status: str) -> Optional[NotificationType]:
    try:
        return STATUS_NOTIFICATIONS.get(OrderStatus(status))
    except ValueError:
        return None


def get_status_flow(delivery_method: str) -> List[str]:
    """Happy path for a delivery method, in order. Used for progress display."""
    flow = [S.ORDER_PLACED]
    table = get_transition_table(delivery_method)
    current = S.ORDER_PLACED
    while True:
        forward = [s for s in table.get(current, []) if s not in TERMINAL_STATUSES or s == S.COMPLETED]
        if not forward:
            break
        current = forward[0]
        flow.append(current)
    return [s.value for s in flow]
