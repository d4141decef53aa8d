from .user import User, UserType
from .rider import Rider, RiderStatus
from .order import Order
from .payment_transaction import PaymentTransaction, PaymentType, PaymentStatus, SETTLED_STATUSES
from .cash_reconciliation import CashReconciliation, ReconciliationStatus
from .audit_log import CollectionAuditLog, AuditEvent
from .notification import Notification, NotificationType

__all__ = [
    "User",
    "UserType",
    "Rider",
    "RiderStatus",
    "Order",
    "PaymentTransaction",
    "PaymentType",
    "PaymentStatus",
    "SETTLED_STATUSES",
    "CashReconciliation",
    "ReconciliationStatus",
    "CollectionAuditLog",
    "AuditEvent",
    "Notification",
    "NotificationType",
]
