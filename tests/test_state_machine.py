"""
Unit tests for the booking lifecycle state machine.
"""

import pytest

from cleanos.domain.bookings import state_machine as sm
from cleanos.errors import InvalidTransitionError


class TestCanTransition:
    """Test the transition table."""

    @pytest.mark.parametrize(
        "current,new",
        [
            ("pending_card", "card_saved"),
            ("pending_card", "payment_failed"),
            ("card_saved", "scheduled"),
            ("scheduled", "in_progress"),
            ("scheduled", "card_saved"),
            ("in_progress", "completed"),
            ("completed", "charged"),
            ("completed", "payment_failed"),
            ("payment_failed", "charged"),
            ("failed", "charged"),
        ],
    )
    def test_allowed_transitions(self, current, new):
        assert sm.can_transition(current, new)

    @pytest.mark.parametrize(
        "current,new",
        [
            ("pending_card", "scheduled"),
            ("pending_card", "charged"),
            ("card_saved", "completed"),
            ("in_progress", "scheduled"),
            ("charged", "cancelled"),
            ("cancelled", "pending_card"),
            ("payment_failed", "completed"),
        ],
    )
    def test_rejected_transitions(self, current, new):
        assert not sm.can_transition(current, new)

    def test_every_non_terminal_status_can_cancel(self):
        for status in sm.BOOKING_STATUSES:
            if status in sm.TERMINAL_STATUSES:
                continue
            assert sm.can_transition(status, sm.CANCELLED), status

    def test_terminal_statuses_have_no_exits(self):
        for status in sm.TERMINAL_STATUSES:
            assert sm.VALID_TRANSITIONS[status] == []

    def test_same_status_is_allowed(self):
        assert sm.can_transition("charged", "charged")


class TestAssertTransition:
    """Test transition validation errors."""

    def test_illegal_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.assert_transition("pending_card", "charged", amount=100)
        assert exc_info.value.status_code == 409
        assert exc_info.value.from_status == "pending_card"
        assert exc_info.value.to_status == "charged"

    def test_legacy_status_is_never_a_target(self):
        with pytest.raises(InvalidTransitionError, match="Unknown booking status"):
            sm.assert_transition("completed", "failed", amount=100)

    def test_unknown_status_raises(self):
        with pytest.raises(InvalidTransitionError):
            sm.assert_transition("pending_card", "archived")

    def test_completed_requires_amount(self):
        with pytest.raises(InvalidTransitionError, match="amount"):
            sm.assert_transition("in_progress", "completed", amount=None)

    def test_charged_requires_amount(self):
        with pytest.raises(InvalidTransitionError, match="amount"):
            sm.assert_transition("completed", "charged", amount=None)

    def test_zero_amount_is_an_amount(self):
        sm.assert_transition("in_progress", "completed", amount=0)


class TestStatusHelpers:
    def test_normalize_legacy_failed(self):
        assert sm.normalize_status("failed") == "payment_failed"
        assert sm.normalize_status("scheduled") == "scheduled"

    def test_legacy_failed_is_not_a_valid_status(self):
        assert not sm.is_valid_status("failed")

    @pytest.mark.parametrize(
        "status,stage",
        [
            ("pending_card", "confirmed"),
            ("completed", "service_completed"),
            ("failed", "payment_failed"),
            ("charged", "charged"),
        ],
    )
    def test_funnel_mapping(self, status, stage):
        assert sm.map_operational_status_to_funnel(status) == stage
