# Services module
from pda_logistics.services.commission_service import CommissionService
from pda_logistics.services.notification_service import NotificationDispatcher
from pda_logistics.services.order_lifecycle_service import OrderLifecycleService
from pda_logistics.services.confirmation_service import ConfirmationService
from pda_logistics.services.assignment_service import AssignmentService

__all__ = [
    "CommissionService",
    "NotificationDispatcher",
    "OrderLifecycleService",
    "ConfirmationService",
    "AssignmentService",
]
