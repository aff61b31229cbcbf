"""
Tests for cleaner availability matching and the assignment workflow.
"""

from datetime import date, datetime, timedelta
from unittest.mock import patch

import pytest

from cleanos.domain.bookings.repository import BookingRepository
from cleanos.domain.scheduling.schemas import CleanerCreate, TimeOffCreate
from cleanos.domain.scheduling.service import SchedulingService
from cleanos.errors import DuplicateAssignmentError, InvalidTransitionError, NotFoundError, ValidationError
from cleanos.models import BookingAssignment, CleanerAvailability, CleanerTimeOff

# 2026-11-03 is a Tuesday: weekday index 2 with Sunday = 0
TUESDAY = date(2026, 11, 3)


class TestAvailableCleaners:
    """Test the availability matcher."""

    def test_cleaner_with_slot_is_available(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner(slots={2: ("09:00", "17:00")})

        matches = SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-03")

        assert len(matches) == 1
        assert matches[0]["cleaner"].id == cleaner.id
        assert matches[0]["availability"] == {"start_time": "09:00", "end_time": "17:00", "timezone": None}
        assert matches[0]["assignment_count"] == 0

    def test_cleaner_without_weekday_slot_is_excluded(self, db_session, ctx, make_cleaner):
        make_cleaner(slots={1: ("09:00", "17:00")})

        assert SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-03") == []

    def test_sunday_is_day_zero(self, db_session, ctx, make_cleaner):
        make_cleaner(slots={0: ("10:00", "14:00")})

        matches = SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-01")

        assert len(matches) == 1

    def test_approved_time_off_excludes_cleaner(self, db_session, ctx, make_cleaner):
        on_leave = make_cleaner(first_name="Leave", slots={2: ("09:00", "17:00")})
        working = make_cleaner(first_name="Work", slots={2: ("09:00", "17:00")})
        db_session.add(
            CleanerTimeOff(
                cleaner_id=on_leave.id, start_date=date(2026, 11, 1), end_date=TUESDAY, status="approved"
            )
        )
        db_session.commit()

        matches = SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-03")

        assert [m["cleaner"].id for m in matches] == [working.id]

    def test_pending_time_off_does_not_exclude(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner(slots={2: ("09:00", "17:00")})
        db_session.add(CleanerTimeOff(cleaner_id=cleaner.id, start_date=TUESDAY, end_date=TUESDAY, status="pending"))
        db_session.commit()

        matches = SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-03")

        assert len(matches) == 1

    def test_inactive_cleaner_and_slot_are_excluded(self, db_session, ctx, make_cleaner):
        make_cleaner(status="inactive", slots={2: ("09:00", "17:00")})
        deactivated = make_cleaner(slots={2: ("09:00", "17:00")})
        db_session.query(CleanerAvailability).filter(CleanerAvailability.cleaner_id == deactivated.id).update(
            {"is_active": False}
        )
        db_session.commit()

        assert SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-03") == []

    def test_other_organization_cleaners_are_excluded(self, db_session, ctx, make_cleaner):
        make_cleaner(slots={2: ("09:00", "17:00")}, organization_id="org_other")

        assert SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-03") == []

    def test_assignment_count_reflects_bookings_that_day(self, db_session, ctx, make_cleaner, make_booking):
        cleaner = make_cleaner(slots={2: ("09:00", "17:00")})
        service = SchedulingService(db_session)
        service.assign_cleaner(ctx, make_booking(service_date=TUESDAY).public_id, cleaner.id)
        service.assign_cleaner(ctx, make_booking(service_date=TUESDAY).public_id, cleaner.id)
        service.assign_cleaner(ctx, make_booking(service_date=TUESDAY + timedelta(days=1)).public_id, cleaner.id)

        matches = service.get_available_cleaners_for_date(ctx, "2026-11-03")

        assert matches[0]["assignment_count"] == 2

    def test_invalid_date_is_validation_error(self, db_session, ctx):
        with pytest.raises(ValidationError):
            SchedulingService(db_session).get_available_cleaners_for_date(ctx, "11/03/2026")


class TestAvailabilitySlots:
    def test_set_availability_supersedes_prior_slot(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner(slots={2: ("09:00", "17:00")})
        service = SchedulingService(db_session)

        slot = service.set_availability(ctx, cleaner.id, 2, "12:00", "18:00")

        active = (
            db_session.query(CleanerAvailability)
            .filter(CleanerAvailability.cleaner_id == cleaner.id, CleanerAvailability.is_active.is_(True))
            .all()
        )
        assert [s.id for s in active] == [slot.id]
        assert (slot.start_time, slot.end_time) == ("12:00", "18:00")

    @pytest.mark.parametrize(
        "day,start,end",
        [(7, "09:00", "17:00"), (-1, "09:00", "17:00"), (2, "17:00", "09:00"), (2, "9am", "17:00"), (2, "10:00", "10:00")],
    )
    def test_invalid_slot_is_rejected(self, db_session, ctx, make_cleaner, day, start, end):
        cleaner = make_cleaner()

        with pytest.raises(ValidationError):
            SchedulingService(db_session).set_availability(ctx, cleaner.id, day, start, end)

    def test_remove_availability(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner(slots={2: ("09:00", "17:00")})

        removed = SchedulingService(db_session).remove_availability(ctx, cleaner.id, 2)

        assert removed == 1
        assert SchedulingService(db_session).get_available_cleaners_for_date(ctx, "2026-11-03") == []


class TestTimeOff:
    def test_request_and_approve(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner()
        service = SchedulingService(db_session)

        request = service.request_time_off(ctx, cleaner.id, TimeOffCreate(startDate=TUESDAY, endDate=TUESDAY))
        approved = service.decide_time_off(ctx, request.id, "approved")

        assert approved.status == "approved"
        assert approved.approved_by == ctx.subject_id
        assert approved.approved_at is not None

    def test_deny_records_reason(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner()
        service = SchedulingService(db_session)
        request = service.request_time_off(ctx, cleaner.id, TimeOffCreate(startDate=TUESDAY, endDate=TUESDAY))

        denied = service.decide_time_off(ctx, request.id, "denied", denial_reason="Peak week")

        assert denied.status == "denied"
        assert denied.denial_reason == "Peak week"

    def test_only_pending_requests_can_be_decided(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner()
        service = SchedulingService(db_session)
        request = service.request_time_off(ctx, cleaner.id, TimeOffCreate(startDate=TUESDAY, endDate=TUESDAY))
        service.decide_time_off(ctx, request.id, "cancelled")

        with pytest.raises(InvalidTransitionError):
            service.decide_time_off(ctx, request.id, "approved")

    def test_end_before_start_is_rejected(self, db_session, ctx, make_cleaner):
        cleaner = make_cleaner()

        with pytest.raises(ValidationError):
            SchedulingService(db_session).request_time_off(
                ctx, cleaner.id, TimeOffCreate(startDate=TUESDAY, endDate=TUESDAY - timedelta(days=1))
            )


class TestAssignments:
    """Test assignment creation and sub-status changes."""

    def test_assign_creates_pending_primary(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking()
        cleaner = make_cleaner()

        assignment = SchedulingService(db_session).assign_cleaner(ctx, booking.public_id, cleaner.id)

        assert assignment.status == "pending"
        assert assignment.role == "primary"
        assert assignment.assigned_by == ctx.subject_id

    def test_duplicate_active_assignment_is_rejected(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking()
        cleaner = make_cleaner()
        service = SchedulingService(db_session)
        service.assign_cleaner(ctx, booking.public_id, cleaner.id)

        with pytest.raises(DuplicateAssignmentError):
            service.assign_cleaner(ctx, booking.public_id, cleaner.id, role="secondary")

        assert db_session.query(BookingAssignment).count() == 1

    def test_reassign_after_decline(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking()
        cleaner = make_cleaner()
        service = SchedulingService(db_session)
        first = service.assign_cleaner(ctx, booking.public_id, cleaner.id)
        service.respond_to_assignment(ctx, first.id, accept=False)

        second = service.assign_cleaner(ctx, booking.public_id, cleaner.id)

        assert second.id != first.id

    def test_unknown_cleaner_is_not_found(self, db_session, ctx, make_booking):
        with pytest.raises(NotFoundError):
            SchedulingService(db_session).assign_cleaner(ctx, make_booking().public_id, 9999)

    @pytest.mark.parametrize("status", ["cancelled", "charged"])
    def test_terminal_booking_cannot_be_assigned(self, db_session, ctx, make_booking, make_cleaner, status):
        booking = make_booking(status=status, amount=15000)

        with pytest.raises(InvalidTransitionError, match="Cannot assign"):
            SchedulingService(db_session).assign_cleaner(ctx, booking.public_id, make_cleaner().id)

        assert db_session.query(BookingAssignment).count() == 0

    def test_assign_locks_booking_before_duplicate_check(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking()
        cleaner = make_cleaner()
        service = SchedulingService(db_session)
        order = []
        lock = BookingRepository.get_booking_for_update
        find = service.repo.get_active_assignment

        def locking(db, booking_id):
            order.append("lock")
            return lock(db, booking_id)

        def finding(db, booking_id, cleaner_id):
            order.append("find")
            return find(db, booking_id, cleaner_id)

        with patch.object(BookingRepository, "get_booking_for_update", side_effect=locking), patch.object(
            service.repo, "get_active_assignment", side_effect=finding
        ):
            service.assign_cleaner(ctx, booking.public_id, cleaner.id)

        assert order[:2] == ["lock", "find"]

    def test_full_workflow_drives_booking_status(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking(status="card_saved", amount=15000, service_date=TUESDAY)
        service = SchedulingService(db_session)

        assignment = service.assign_cleaner(ctx, booking.public_id, make_cleaner().id)
        assert booking.status == "scheduled"

        service.respond_to_assignment(ctx, assignment.id, accept=True)
        service.confirm_assignment(ctx, assignment.id)
        service.clock_in(ctx, assignment.id)
        db_session.refresh(booking)
        assert booking.status == "in_progress"

        assignment = service.clock_out(ctx, assignment.id)
        db_session.refresh(booking)
        assert assignment.status == "completed"
        assert assignment.actual_duration_minutes is not None
        assert booking.status == "completed"

    def test_clock_out_duration(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking(status="card_saved", amount=15000, service_date=TUESDAY)
        service = SchedulingService(db_session)
        assignment = service.assign_cleaner(ctx, booking.public_id, make_cleaner().id)
        service.respond_to_assignment(ctx, assignment.id, accept=True)
        service.confirm_assignment(ctx, assignment.id)
        assignment = service.clock_in(ctx, assignment.id)
        assignment.clocked_in_at = datetime.utcnow() - timedelta(minutes=95)
        db_session.commit()

        assignment = service.clock_out(ctx, assignment.id)

        assert assignment.actual_duration_minutes in (95, 96)

    def test_finished_without_amount_stays_in_progress(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking(status="card_saved", service_date=TUESDAY)
        service = SchedulingService(db_session)
        assignment = service.assign_cleaner(ctx, booking.public_id, make_cleaner().id)
        service.respond_to_assignment(ctx, assignment.id, accept=True)
        service.confirm_assignment(ctx, assignment.id)
        service.clock_in(ctx, assignment.id)

        service.clock_out(ctx, assignment.id)

        db_session.refresh(booking)
        assert booking.status == "in_progress"

    def test_cancelling_last_assignment_unschedules(self, db_session, ctx, make_booking, make_cleaner):
        booking = make_booking(status="card_saved", service_date=TUESDAY)
        service = SchedulingService(db_session)
        assignment = service.assign_cleaner(ctx, booking.public_id, make_cleaner().id)
        assert booking.status == "scheduled"

        service.cancel_assignment(ctx, assignment.id)

        db_session.refresh(booking)
        assert booking.status == "card_saved"

    def test_clock_in_requires_confirmation(self, db_session, ctx, make_booking, make_cleaner):
        assignment = SchedulingService(db_session).assign_cleaner(ctx, make_booking().public_id, make_cleaner().id)

        with pytest.raises(InvalidTransitionError):
            SchedulingService(db_session).clock_in(ctx, assignment.id)


class TestSchedulingEndpoints:
    def test_create_cleaner_and_set_availability(self, client):
        created = client.post("/scheduling/cleaners", json={"firstName": "Rosa", "email": "Rosa@Example.com"})
        assert created.status_code == 200
        cleaner_id = created.json()["id"]
        assert created.json()["email"] == "rosa@example.com"

        slot = client.put(
            f"/scheduling/cleaners/{cleaner_id}/availability/2", json={"startTime": "08:00", "endTime": "12:00"}
        )
        assert slot.status_code == 200

        response = client.get("/scheduling/available-cleaners", params={"date": "2026-11-03"})
        assert response.status_code == 200
        assert response.json()[0]["cleaner"]["id"] == cleaner_id
        assert response.json()[0]["assignmentCount"] == 0

    def test_invalid_slot_time_is_400(self, client, make_cleaner):
        cleaner = make_cleaner()

        response = client.put(
            f"/scheduling/cleaners/{cleaner.id}/availability/2", json={"startTime": "25:00", "endTime": "26:00"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_duplicate_assignment_is_409(self, client, make_booking, make_cleaner):
        booking = make_booking()
        cleaner = make_cleaner()
        payload = {"bookingId": booking.public_id, "cleanerId": cleaner.id}

        assert client.post("/scheduling/assignments", json=payload).status_code == 200
        response = client.post("/scheduling/assignments", json=payload)

        assert response.status_code == 409
        assert response.json()["code"] == "duplicate_assignment"

    def test_create_cleaner_via_service(self, db_session, ctx):
        cleaner = SchedulingService(db_session).create_cleaner(ctx, CleanerCreate(firstName="  Lee "))

        assert cleaner.first_name == "Lee"
        assert cleaner.status == "active"
