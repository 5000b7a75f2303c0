# Models module
from pda_logistics.models.order import (
    Order,
    OrderStatusHistory,
    AgentClaimLock,
    OrderKind,
    OrderStatus,
    DeliveryMethod,
    PaymentStatus,
)
from pda_logistics.models.commission import (
    CommissionTransaction,
    AgentEarning,
    CommissionRateSetting,
    PayoutRelease,
    CommissionType,
    CommissionStatus,
    EarningStatus,
    PayoutType,
)
from pda_logistics.models.confirmation import (
    OrderConfirmation,
    OrderOTPCode,
    OrderQRCode,
    OrderGPSTracking,
    ConfirmationType,
    ConfirmationMethod,
    QRCodeType,
    GPSCheckType,
)
from pda_logistics.models.notification import (
    OrderNotification,
    NotificationType,
    RecipientRole,
)

__all__ = [
    # Orders
    "Order",
    "OrderStatusHistory",
    "AgentClaimLock",
    "OrderKind",
    "OrderStatus",
    "DeliveryMethod",
    "PaymentStatus",
    # Commissions
    "CommissionTransaction",
    "AgentEarning",
    "CommissionRateSetting",
    "PayoutRelease",
    "CommissionType",
    "CommissionStatus",
    "EarningStatus",
    "PayoutType",
    # Confirmations
    "OrderConfirmation",
    "OrderOTPCode",
    "OrderQRCode",
    "OrderGPSTracking",
    "ConfirmationType",
    "ConfirmationMethod",
    "QRCodeType",
    "GPSCheckType",
    # Notifications
    "OrderNotification",
    "NotificationType",
    "RecipientRole",
]
