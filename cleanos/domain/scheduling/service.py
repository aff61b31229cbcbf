"""Scheduling service - cleaner availability matching and assignment workflow"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import RequestContext
from ...errors import DuplicateAssignmentError, InvalidTransitionError, NotFoundError, ValidationError
from ...models import BookingAssignment, Cleaner, CleanerAvailability, CleanerTimeOff
from ...shared.validators import parse_service_date, sunday_first_weekday, validate_email, validate_time_hhmm
from ..bookings import state_machine as sm
from ..bookings.repository import BookingRepository
from ..bookings.service import BookingService
from .repository import SchedulingRepository
from .schemas import CleanerCreate, TimeOffCreate

logger = logging.getLogger(__name__)

# assignment status -> statuses it may move to
ASSIGNMENT_TRANSITIONS = {
    "pending": ["accepted", "declined", "cancelled"],
    "accepted": ["confirmed", "cancelled"],
    "confirmed": ["in_progress", "cancelled"],
    "in_progress": ["completed", "cancelled"],
    "completed": [],
    "declined": [],
    "cancelled": [],
}


class SchedulingService:
    """Business logic for cleaners, their availability and booking assignments"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = SchedulingRepository()
        self.bookings = BookingService(db)

    # ========================================================================
    # CLEANERS
    # ========================================================================

    def create_cleaner(self, ctx: RequestContext, data: CleanerCreate) -> Cleaner:
        cleaner = self.repo.create_cleaner(
            self.db,
            ctx.organization_id,
            first_name=data.firstName.strip(),
            last_name=data.lastName,
            email=validate_email(data.email),
            phone=data.phone,
            status=data.status,
        )
        logger.info(f"✅ Created cleaner {cleaner.id} for org {ctx.organization_id}")
        return cleaner

    def list_cleaners(self, ctx: RequestContext, status: Optional[str] = None) -> list[Cleaner]:
        return self.repo.list_cleaners(self.db, ctx.organization_id, status)

    def get_cleaner(self, ctx: RequestContext, cleaner_id: int) -> Cleaner:
        cleaner = self.repo.get_cleaner(self.db, ctx.organization_id, cleaner_id)
        if not cleaner:
            raise NotFoundError(f"Cleaner {cleaner_id} not found")
        return cleaner

    # ========================================================================
    # AVAILABILITY
    # ========================================================================

    def set_availability(
        self,
        ctx: RequestContext,
        cleaner_id: int,
        day_of_week: int,
        start_time: str,
        end_time: str,
        timezone: Optional[str] = None,
    ) -> CleanerAvailability:
        """Replace the cleaner's weekly window for one weekday (0 = Sunday)"""
        cleaner = self.get_cleaner(ctx, cleaner_id)
        if day_of_week not in range(7):
            raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        validate_time_hhmm(start_time)
        validate_time_hhmm(end_time)
        # Zero-padded HH:MM strings compare correctly as text
        if start_time >= end_time:
            raise ValidationError("start_time must be before end_time")

        for slot in self.repo.get_active_slots(self.db, cleaner.id, day_of_week):
            slot.is_active = False

        slot = CleanerAvailability(
            cleaner_id=cleaner.id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            timezone=timezone,
            is_active=True,
        )
        self.db.add(slot)
        self.db.commit()
        self.db.refresh(slot)
        logger.info(f"📅 Cleaner {cleaner.id} available day {day_of_week} {start_time}-{end_time}")
        return slot

    def remove_availability(self, ctx: RequestContext, cleaner_id: int, day_of_week: int) -> int:
        cleaner = self.get_cleaner(ctx, cleaner_id)
        slots = self.repo.get_active_slots(self.db, cleaner.id, day_of_week)
        for slot in slots:
            slot.is_active = False
        self.db.commit()
        return len(slots)

    def list_availability(self, ctx: RequestContext, cleaner_id: int) -> list[CleanerAvailability]:
        cleaner = self.get_cleaner(ctx, cleaner_id)
        return self.repo.list_availability(self.db, cleaner.id)

    # ========================================================================
    # TIME OFF
    # ========================================================================

    def request_time_off(self, ctx: RequestContext, cleaner_id: int, data: TimeOffCreate) -> CleanerTimeOff:
        cleaner = self.get_cleaner(ctx, cleaner_id)
        if data.endDate < data.startDate:
            raise ValidationError("Time-off end date must not precede the start date")

        time_off = CleanerTimeOff(
            cleaner_id=cleaner.id,
            start_date=data.startDate,
            end_date=data.endDate,
            reason=data.reason,
            status="pending",
        )
        self.db.add(time_off)
        self.db.commit()
        self.db.refresh(time_off)
        return time_off

    def list_time_off(self, ctx: RequestContext, cleaner_id: int) -> list[CleanerTimeOff]:
        cleaner = self.get_cleaner(ctx, cleaner_id)
        return self.repo.list_time_off(self.db, cleaner.id)

    def _get_time_off(self, ctx: RequestContext, time_off_id: int) -> CleanerTimeOff:
        time_off = self.repo.get_time_off(self.db, time_off_id)
        if not time_off or time_off.cleaner.organization_id != ctx.organization_id:
            raise NotFoundError(f"Time-off request {time_off_id} not found")
        return time_off

    def decide_time_off(
        self, ctx: RequestContext, time_off_id: int, status: str, denial_reason: Optional[str] = None
    ) -> CleanerTimeOff:
        """Approve, deny or cancel a pending time-off request"""
        if status not in ("approved", "denied", "cancelled"):
            raise ValidationError("Time-off decision must be approved, denied or cancelled")

        time_off = self._get_time_off(ctx, time_off_id)
        if time_off.status != "pending":
            raise InvalidTransitionError(
                time_off.status, status, f"Time-off request is already {time_off.status}"
            )

        time_off.status = status
        if status == "approved":
            time_off.approved_by = ctx.subject_id
            time_off.approved_at = datetime.utcnow()
        elif status == "denied":
            time_off.denial_reason = denial_reason
        self.db.commit()
        self.db.refresh(time_off)
        logger.info(f"🗓️ Time-off {time_off.id} for cleaner {time_off.cleaner_id} {status}")
        return time_off

    # ========================================================================
    # MATCHING
    # ========================================================================

    def get_available_cleaners_for_date(self, ctx: RequestContext, service_date) -> list[dict]:
        """
        Cleaners who can work on `service_date`.

        A cleaner qualifies when active, not on approved time-off covering the date,
        and holding an active slot for that weekday. The assignment count is for
        load display only; results are not ranked.
        """
        day: date = parse_service_date(service_date)
        weekday = sunday_first_weekday(day)

        cleaners = self.repo.list_cleaners(self.db, ctx.organization_id, status="active")
        cleaner_ids = [c.id for c in cleaners]
        on_leave = self.repo.get_cleaners_on_approved_time_off(self.db, cleaner_ids, day)
        slots = self.repo.get_active_slots_for_day(self.db, cleaner_ids, weekday)
        counts = self.repo.count_assignments_on_date(self.db, ctx.organization_id, cleaner_ids, day)

        available = []
        for cleaner in cleaners:
            if cleaner.id in on_leave:
                continue
            slot = slots.get(cleaner.id)
            if not slot:
                continue
            available.append(
                {
                    "cleaner": cleaner,
                    "availability": {
                        "start_time": slot.start_time,
                        "end_time": slot.end_time,
                        "timezone": slot.timezone,
                    },
                    "assignment_count": counts.get(cleaner.id, 0),
                }
            )
        logger.info(f"🔍 {len(available)}/{len(cleaners)} cleaners available on {day.isoformat()}")
        return available

    # ========================================================================
    # ASSIGNMENTS
    # ========================================================================

    def assign_cleaner(
        self,
        ctx: RequestContext,
        booking_id: str,
        cleaner_id: int,
        role: str = "primary",
        notes: Optional[str] = None,
    ) -> BookingAssignment:
        booking = self.bookings.get_booking(ctx, booking_id)
        cleaner = self.get_cleaner(ctx, cleaner_id)

        # Serializes assigns for one booking so the duplicate check and the insert are atomic
        booking = BookingRepository.get_booking_for_update(self.db, booking.id)
        if booking.status in sm.TERMINAL_STATUSES:
            status = booking.status
            self.db.rollback()
            raise InvalidTransitionError(status, status, f"Cannot assign a cleaner to a {status} booking")
        if self.repo.get_active_assignment(self.db, booking.id, cleaner.id):
            self.db.rollback()
            raise DuplicateAssignmentError(
                f"Cleaner {cleaner.id} is already assigned to booking {booking_id}"
            )

        assignment = BookingAssignment(
            booking_id=booking.id,
            cleaner_id=cleaner.id,
            role=role,
            status="pending",
            assigned_by=ctx.subject_id,
            notes=notes,
        )
        try:
            self.db.add(assignment)
            self.db.flush()
            self.bookings.recompute_scheduled_state(booking, "scheduling.assign", ctx.subject_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(assignment)
        logger.info(f"👷 Assigned cleaner {cleaner.id} to booking {booking.public_id} as {role}")
        return assignment

    def get_assignment(self, ctx: RequestContext, assignment_id: int) -> BookingAssignment:
        assignment = self.repo.get_assignment(self.db, ctx.organization_id, assignment_id)
        if not assignment:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        return assignment

    def list_assignments(self, ctx: RequestContext, booking_id: str) -> list[BookingAssignment]:
        booking = self.bookings.get_booking(ctx, booking_id)
        return self.repo.list_assignments_for_booking(self.db, booking.id)

    def _move_assignment(
        self, ctx: RequestContext, assignment_id: int, new_status: str, source: str
    ) -> BookingAssignment:
        assignment = self.get_assignment(ctx, assignment_id)
        current = assignment.status
        if new_status not in ASSIGNMENT_TRANSITIONS.get(current, []):
            raise InvalidTransitionError(current, new_status, f"Assignment cannot move from {current} to {new_status}")

        now = datetime.utcnow()
        assignment.status = new_status
        if new_status in ("accepted", "declined"):
            assignment.responded_at = now
        elif new_status == "in_progress":
            assignment.clocked_in_at = now
        elif new_status == "completed":
            assignment.clocked_out_at = now
            if assignment.clocked_in_at:
                elapsed = now - assignment.clocked_in_at
                assignment.actual_duration_minutes = max(0, int(elapsed.total_seconds() // 60))

        booking = assignment.booking
        try:
            self.db.flush()
            self.bookings.recompute_scheduled_state(booking, source, ctx.subject_id)
            self.bookings.sync_status_from_assignments(booking, source, ctx.subject_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(assignment)
        logger.info(f"👷 Assignment {assignment.id}: {current} → {new_status} (booking {booking.public_id})")
        return assignment

    def respond_to_assignment(self, ctx: RequestContext, assignment_id: int, accept: bool) -> BookingAssignment:
        return self._move_assignment(
            ctx, assignment_id, "accepted" if accept else "declined", "scheduling.respond"
        )

    def confirm_assignment(self, ctx: RequestContext, assignment_id: int) -> BookingAssignment:
        return self._move_assignment(ctx, assignment_id, "confirmed", "scheduling.confirm")

    def clock_in(self, ctx: RequestContext, assignment_id: int) -> BookingAssignment:
        return self._move_assignment(ctx, assignment_id, "in_progress", "scheduling.clock_in")

    def clock_out(self, ctx: RequestContext, assignment_id: int) -> BookingAssignment:
        return self._move_assignment(ctx, assignment_id, "completed", "scheduling.clock_out")

    def cancel_assignment(self, ctx: RequestContext, assignment_id: int) -> BookingAssignment:
        return self._move_assignment(ctx, assignment_id, "cancelled", "scheduling.unassign")
