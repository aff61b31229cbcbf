"""
Booking lifecycle state machine

Operational statuses:
    pending_card → card_saved → scheduled → in_progress → completed → charged
with side branches payment_failed (card setup or charge failed) and
cancelled (from any non-terminal status). "failed" is a legacy alias of
payment_failed: it may still be read from old rows but is never written.
"""

from typing import Optional

from ...errors import InvalidTransitionError

PENDING_CARD = "pending_card"
CARD_SAVED = "card_saved"
SCHEDULED = "scheduled"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
PAYMENT_FAILED = "payment_failed"
CHARGED = "charged"
CANCELLED = "cancelled"
LEGACY_FAILED = "failed"

BOOKING_STATUSES = [
    PENDING_CARD,
    CARD_SAVED,
    SCHEDULED,
    IN_PROGRESS,
    COMPLETED,
    PAYMENT_FAILED,
    CHARGED,
    CANCELLED,
]

TERMINAL_STATUSES = {CHARGED, CANCELLED}

VALID_TRANSITIONS = {
    PENDING_CARD: [CARD_SAVED, PAYMENT_FAILED, CANCELLED],
    CARD_SAVED: [SCHEDULED, CANCELLED],
    # scheduled → card_saved is the schedule gate demoting a booking that lost its date/cleaner
    SCHEDULED: [IN_PROGRESS, COMPLETED, CARD_SAVED, CANCELLED],
    IN_PROGRESS: [COMPLETED, CANCELLED],
    COMPLETED: [CHARGED, PAYMENT_FAILED, CANCELLED],
    PAYMENT_FAILED: [CHARGED, CANCELLED],
    LEGACY_FAILED: [CHARGED, PAYMENT_FAILED, CANCELLED],
    CHARGED: [],
    CANCELLED: [],
}

# Statuses that require the booking to carry an amount
AMOUNT_REQUIRED_STATUSES = {COMPLETED, CHARGED}

# Statuses a charge may be attempted from (payment_failed is a retry)
CHARGEABLE_STATUSES = {COMPLETED, PAYMENT_FAILED, LEGACY_FAILED}

FUNNEL_STAGE_BY_STATUS = {
    PENDING_CARD: "confirmed",
    CARD_SAVED: "card_saved",
    SCHEDULED: "scheduled",
    IN_PROGRESS: "in_progress",
    COMPLETED: "service_completed",
    PAYMENT_FAILED: "payment_failed",
    LEGACY_FAILED: "payment_failed",
    CHARGED: "charged",
    CANCELLED: "cancelled",
}


def normalize_status(status: str) -> str:
    """Map the legacy alias onto its current name"""
    return PAYMENT_FAILED if status == LEGACY_FAILED else status


def is_valid_status(status: str) -> bool:
    return status in BOOKING_STATUSES


def can_transition(current_status: str, new_status: str) -> bool:
    """
    Validate if a booking status transition is allowed

    A same-status "transition" is allowed (it is applied as a no-op).
    """
    if current_status == new_status:
        return True
    return new_status in VALID_TRANSITIONS.get(current_status, [])


def assert_transition(current_status: str, new_status: str, amount: Optional[int] = None) -> None:
    """Raise InvalidTransitionError unless current → new is permitted"""
    if new_status == LEGACY_FAILED or not is_valid_status(new_status):
        raise InvalidTransitionError(current_status, new_status, f"Unknown booking status: {new_status}")

    if not can_transition(current_status, new_status):
        raise InvalidTransitionError(current_status, new_status)

    if new_status in AMOUNT_REQUIRED_STATUSES and amount is None:
        raise InvalidTransitionError(
            current_status,
            new_status,
            f"Booking must have an amount before it can be {new_status}",
        )


def map_operational_status_to_funnel(status: str) -> str:
    """Dashboard funnel stage for an operational status"""
    return FUNNEL_STAGE_BY_STATUS.get(status, status)
