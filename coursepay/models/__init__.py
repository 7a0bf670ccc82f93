from .payment import (
    Course,
    Payment,
    PaymentOutcome,
    PaymentRequestResult,
    PaymentStatus,
    ReconciliationResult,
    can_transition,
)
from .gateway import (
    GatewayResponse,
    GatewaySettings,
    PaymentInitiation,
    RefundRequest,
    ReturnParams,
    StatusQuery,
)

__all__ = [
    "Course",
    "Payment",
    "PaymentOutcome",
    "PaymentRequestResult",
    "PaymentStatus",
    "ReconciliationResult",
    "can_transition",
    "GatewayResponse",
    "GatewaySettings",
    "PaymentInitiation",
    "RefundRequest",
    "ReturnParams",
    "StatusQuery",
]
