"""
Domain errors for the logistics core.

Every error carries a machine-readable ``code`` and a ``details`` dict so
that the HTTP layer can render it without knowing the concrete class.
"""
from typing import Dict, List, Optional


class LogisticsError(Exception):
    """Base exception for order lifecycle errors."""
    code = "LOGISTICS_ERROR"

    def __init__(self, message: str, details: Dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {"error": self.code, "message": self.message, "details": self.details}


# ---------------------------------------------------------------------------
# Data integrity / preconditions
# ---------------------------------------------------------------------------

class OrderNotFound(LogisticsError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})


class OrderKindMismatch(LogisticsError):
    code = "ORDER_KIND_MISMATCH"

    def __init__(self, order_id: int, expected: str, actual: str):
        super().__init__(
            f"Order {order_id} is a {actual} order, not {expected}",
            {"order_id": order_id, "expected": expected, "actual": actual},
        )


class ConfirmationRequired(LogisticsError):
    code = "CONFIRMATION_REQUIRED"

    def __init__(self, order_id: int, new_status: str, confirmation_type: str):
        super().__init__(
            f"{confirmation_type} confirmation is required before moving order {order_id} to {new_status}",
            {"order_id": order_id, "new_status": new_status, "confirmation_type": confirmation_type},
        )


# ---------------------------------------------------------------------------
# Contention
# ---------------------------------------------------------------------------

class OrderAlreadyAssigned(LogisticsError):
    code = "ORDER_ALREADY_ASSIGNED"

    def __init__(self, order_id: int, reason: str = "Order is no longer available"):
        super().__init__(reason, {"order_id": order_id})


class InvalidTransition(LogisticsError):
    code = "INVALID_TRANSITION"

    def __init__(
        self,
        order_id: int,
        current_status: str,
        new_status: str,
        allowed: Optional[List[str]] = None,
    ):
        allowed = allowed or []
        if allowed:
            message = (
                f"Cannot change order {order_id} from '{current_status}' to '{new_status}'. "
                f"Allowed transitions: {', '.join(allowed)}"
            )
        else:
            message = f"Order {order_id} in '{current_status}' status cannot be changed. This is a terminal state."
        super().__init__(
            message,
            {"order_id": order_id, "current_status": current_status,
             "new_status": new_status, "allowed": allowed},
        )


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------

class CapacityExceeded(LogisticsError):
    code = "CAPACITY_EXCEEDED"

    def __init__(self, agent_id: int, open_orders: int, limit: int):
        super().__init__(
            f"Agent {agent_id} already has {open_orders} open orders (limit {limit})",
            {"agent_id": agent_id, "open_orders": open_orders, "limit": limit},
        )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class InvalidOTP(LogisticsError):
    code = "INVALID_OTP"

    def __init__(self, reason: str = "Invalid or expired OTP"):
        super().__init__(reason)


class InvalidQRCode(LogisticsError):
    code = "INVALID_QR_CODE"

    def __init__(self, reason: str = "Invalid QR code"):
        super().__init__(reason)


class InvalidDeliveryCode(LogisticsError):
    code = "INVALID_DELIVERY_CODE"

    def __init__(self, order_id: int):
        super().__init__("Invalid delivery code", {"order_id": order_id})


class GPSOutOfRadius(LogisticsError):
    code = "GPS_OUT_OF_RADIUS"

    def __init__(self, distance_meters: int, tolerance_meters: int):
        self.distance_meters = distance_meters
        super().__init__(
            f"Location is {distance_meters}m from the expected point (allowed {tolerance_meters}m)",
            {"distance_meters": distance_meters, "tolerance_meters": tolerance_meters},
        )


class MissingConfirmationEvidence(LogisticsError):
    code = "CONFIRMATION_EVIDENCE_MISSING"

    def __init__(self, method: str, field_name: str):
        super().__init__(
            f"{method} confirmation needs '{field_name}'",
            {"method": method, "field": field_name},
        )
