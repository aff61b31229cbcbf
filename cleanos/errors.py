"""
Domain error taxonomy.

Services raise these; main.py maps them onto HTTP responses with a single
exception handler so routers never build status codes by hand.
"""

from typing import Optional


class CleanOSError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(CleanOSError):
    """Bad input, user-correctable; message is surfaced verbatim"""

    status_code = 400
    code = "validation_error"


class PermissionDeniedError(CleanOSError):
    status_code = 403
    code = "permission_denied"


class NotFoundError(CleanOSError):
    status_code = 404
    code = "not_found"


class BookingNotFound(NotFoundError):
    code = "booking_not_found"

    def __init__(self, booking_id):
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class InvalidTransitionError(CleanOSError):
    """Attempted status change is not permitted from the current status"""

    status_code = 409
    code = "action_unavailable"

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot move booking from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class DuplicateAssignmentError(CleanOSError):
    status_code = 409
    code = "duplicate_assignment"


class ProcessorUnavailable(CleanOSError):
    """Transient processor failure; callers retry with backoff"""

    status_code = 503
    code = "processor_unavailable"


class PaymentProcessorError(CleanOSError):
    """Processor rejected the request for a reason retrying will not fix (bad credentials, permissions)"""

    status_code = 502
    code = "processor_error"


class CardDeclined(CleanOSError):
    """Terminal for this charge attempt; booking moves to payment_failed"""

    status_code = 402
    code = "card_declined"

    def __init__(self, message: str, decline_code: Optional[str] = None):
        super().__init__(message)
        self.decline_code = decline_code


class RequiresAction(CleanOSError):
    """Charge needs customer verification; booking stays completed"""

    status_code = 402
    code = "requires_action"

    def __init__(self, message: str, payment_intent_id: Optional[str] = None, next_action_url: Optional[str] = None):
        super().__init__(message)
        self.payment_intent_id = payment_intent_id
        self.next_action_url = next_action_url

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["payment_intent_id"] = self.payment_intent_id
        data["next_action_url"] = self.next_action_url
        return data
