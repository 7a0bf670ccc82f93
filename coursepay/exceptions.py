"""Exception hierarchy for CoursePay."""

from __future__ import annotations


class CoursePayError(Exception):
    """Base exception for all CoursePay errors.

    ``http_status`` is the status the HTTP layer answers with when the error
    reaches it.
    """

    http_status = 500

    def __init__(self, message: str = "An error occurred in CoursePay") -> None:
        self.message = message
        super().__init__(self.message)


class ConfigurationError(CoursePayError):
    """Required settings are missing."""


class PaymentAuthenticationError(CoursePayError):
    """Callback signature did not match."""

    http_status = 400

    def __init__(self, message: str = "Invalid payment verification") -> None:
        super().__init__(message)


class InvalidAmountError(CoursePayError):
    """Amount cannot be converted to processor minor units."""

    http_status = 400


class AuthenticationRequiredError(CoursePayError):
    http_status = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class PermissionDeniedError(CoursePayError):
    http_status = 403


class NotFoundError(CoursePayError):
    http_status = 404


class PaymentNotFoundError(NotFoundError):
    def __init__(self, message: str = "Payment not found") -> None:
        super().__init__(message)


class CourseNotFoundError(NotFoundError):
    def __init__(self, message: str = "Course not found or not available for purchase") -> None:
        super().__init__(message)


class ConflictError(CoursePayError):
    """Purchase rejected because of existing state for the (user, course) pair."""

    http_status = 409


class PendingPaymentExistsError(ConflictError):
    def __init__(self, message: str = "There is already a pending payment for this course") -> None:
        super().__init__(message)


class AlreadyEnrolledError(ConflictError):
    def __init__(self, message: str = "You are already enrolled in this course") -> None:
        super().__init__(message)


class InvalidTransitionError(ConflictError):
    """Requested status change is not a forward transition."""


class PaymentsDisabledError(CoursePayError):
    http_status = 503

    def __init__(self, message: str = "Payment service is currently disabled") -> None:
        super().__init__(message)


class EnrollmentInsertError(CoursePayError):
    """Enrollment side effect failed after a successful payment.

    Raised by the store's unit of work and consumed by the reconciliation
    coordinator; it never crosses the transaction boundary.
    """

    def __init__(self, message: str = "Enrollment insert failed", original_error: Exception | None = None) -> None:
        self.original_error = original_error
        super().__init__(message)


class ServiceError(CoursePayError):
    """Exception raised when an external service fails.

    Used for errors from the payment processor API.
    """

    http_status = 502

    def __init__(
        self,
        message: str = "External service error",
        service_name: str = "unknown",
        original_error: Exception | None = None,
    ) -> None:
        self.service_name = service_name
        self.original_error = original_error
        super().__init__(f"[{service_name}] {message}")


class ValidationError(CoursePayError):
    """Request input is malformed."""

    http_status = 400
