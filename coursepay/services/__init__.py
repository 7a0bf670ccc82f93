from .signing import canonical_query, sign, verify_signature
from .response_codes import PAYMENT_METHODS, RESPONSE_CODES, response_message
from .vnpay import VNPayClient, to_minor_units
from .database import PaymentStore, PaymentTransaction
from .reconciliation import ReconciliationCoordinator
from .notifications import EnrollmentAlertNotifier, send_notification
from .payment import PaymentService, PaymentStatusReport, ReconciliationReport
from .scheduler import ExpirySweepScheduler

__all__ = [
    "canonical_query",
    "sign",
    "verify_signature",
    "PAYMENT_METHODS",
    "RESPONSE_CODES",
    "response_message",
    "VNPayClient",
    "to_minor_units",
    "PaymentStore",
    "PaymentTransaction",
    "ReconciliationCoordinator",
    "EnrollmentAlertNotifier",
    "send_notification",
    "PaymentService",
    "PaymentStatusReport",
    "ReconciliationReport",
    "ExpirySweepScheduler",
]
