from rxportal.models.user import User
from rxportal.models.pharmacy import Pharmacy
from rxportal.models.prescription import Prescription
from rxportal.models.order import Order
from rxportal.models.refill_request import RefillRequest
from rxportal.models.notification import Notification, NotificationRecipient
from rxportal.models.audit_log import AuditLog

__all__ = [
    "User",
    "Pharmacy",
    "Prescription",
    "Order",
    "RefillRequest",
    "Notification",
    "NotificationRecipient",
    "AuditLog",
]
