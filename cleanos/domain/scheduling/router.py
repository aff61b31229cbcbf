"""Scheduling router - cleaners, availability, time-off and assignments"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import RequestContext, get_request_context
from ...database import get_db
from ...models import BookingAssignment, Cleaner, CleanerAvailability, CleanerTimeOff
from .schemas import (
    AssignmentCreate,
    AssignmentResponse,
    AssignmentResponseRequest,
    AvailabilitySlotRequest,
    AvailabilitySlotResponse,
    AvailableCleanerResponse,
    CleanerCreate,
    CleanerResponse,
    TimeOffCreate,
    TimeOffDecision,
    TimeOffResponse,
)
from .service import SchedulingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling", tags=["Scheduling"])


def get_scheduling_service(db: Session = Depends(get_db)) -> SchedulingService:
    """Dependency injection for SchedulingService"""
    return SchedulingService(db)


def cleaner_to_response(cleaner: Cleaner) -> CleanerResponse:
    return CleanerResponse(
        id=cleaner.id,
        firstName=cleaner.first_name,
        lastName=cleaner.last_name,
        email=cleaner.email,
        phone=cleaner.phone,
        status=cleaner.status,
        created_at=cleaner.created_at,
    )


def slot_to_response(slot: CleanerAvailability) -> AvailabilitySlotResponse:
    return AvailabilitySlotResponse(
        id=slot.id,
        cleanerId=slot.cleaner_id,
        dayOfWeek=slot.day_of_week,
        startTime=slot.start_time,
        endTime=slot.end_time,
        timezone=slot.timezone,
        isActive=slot.is_active,
    )


def time_off_to_response(time_off: CleanerTimeOff) -> TimeOffResponse:
    return TimeOffResponse(
        id=time_off.id,
        cleanerId=time_off.cleaner_id,
        startDate=time_off.start_date,
        endDate=time_off.end_date,
        reason=time_off.reason,
        status=time_off.status,
        approvedBy=time_off.approved_by,
        approvedAt=time_off.approved_at,
        denialReason=time_off.denial_reason,
    )


def assignment_to_response(assignment: BookingAssignment) -> AssignmentResponse:
    return AssignmentResponse(
        id=assignment.id,
        bookingId=assignment.booking.public_id,
        cleanerId=assignment.cleaner_id,
        role=assignment.role,
        status=assignment.status,
        assignedAt=assignment.assigned_at,
        respondedAt=assignment.responded_at,
        clockedInAt=assignment.clocked_in_at,
        clockedOutAt=assignment.clocked_out_at,
        actualDurationMinutes=assignment.actual_duration_minutes,
        bookingStatus=assignment.booking.status,
    )


# ============================================================================
# CLEANERS
# ============================================================================


@router.get("/cleaners", response_model=list[CleanerResponse])
async def list_cleaners(
    status: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return [cleaner_to_response(c) for c in service.list_cleaners(ctx, status)]


@router.post("/cleaners", response_model=CleanerResponse)
async def create_cleaner(
    data: CleanerCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return cleaner_to_response(service.create_cleaner(ctx, data))


@router.get("/cleaners/{cleaner_id}", response_model=CleanerResponse)
async def get_cleaner(
    cleaner_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return cleaner_to_response(service.get_cleaner(ctx, cleaner_id))


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/cleaners/{cleaner_id}/availability", response_model=list[AvailabilitySlotResponse])
async def list_availability(
    cleaner_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return [slot_to_response(s) for s in service.list_availability(ctx, cleaner_id)]


@router.put("/cleaners/{cleaner_id}/availability/{day_of_week}", response_model=AvailabilitySlotResponse)
async def set_availability(
    cleaner_id: int,
    day_of_week: int,
    data: AvailabilitySlotRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Set the weekly window for one weekday, superseding any active one"""
    slot = service.set_availability(ctx, cleaner_id, day_of_week, data.startTime, data.endTime, data.timezone)
    return slot_to_response(slot)


@router.delete("/cleaners/{cleaner_id}/availability/{day_of_week}")
async def remove_availability(
    cleaner_id: int,
    day_of_week: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    removed = service.remove_availability(ctx, cleaner_id, day_of_week)
    return {"success": True, "deactivated": removed}


@router.get("/available-cleaners", response_model=list[AvailableCleanerResponse])
async def get_available_cleaners(
    date: str = Query(..., description="Service date as YYYY-MM-DD"),
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Cleaners free to work on a date, with their window and current load"""
    return [
        AvailableCleanerResponse(
            cleaner=cleaner_to_response(match["cleaner"]),
            availability=match["availability"],
            assignmentCount=match["assignment_count"],
        )
        for match in service.get_available_cleaners_for_date(ctx, date)
    ]


# ============================================================================
# TIME OFF
# ============================================================================


@router.get("/cleaners/{cleaner_id}/time-off", response_model=list[TimeOffResponse])
async def list_time_off(
    cleaner_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return [time_off_to_response(t) for t in service.list_time_off(ctx, cleaner_id)]


@router.post("/cleaners/{cleaner_id}/time-off", response_model=TimeOffResponse)
async def request_time_off(
    cleaner_id: int,
    data: TimeOffCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return time_off_to_response(service.request_time_off(ctx, cleaner_id, data))


@router.post("/time-off/{time_off_id}/decision", response_model=TimeOffResponse)
async def decide_time_off(
    time_off_id: int,
    data: TimeOffDecision,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Approve, deny or cancel a pending request"""
    return time_off_to_response(service.decide_time_off(ctx, time_off_id, data.status, data.denialReason))


# ============================================================================
# ASSIGNMENTS
# ============================================================================


@router.post("/assignments", response_model=AssignmentResponse)
async def assign_cleaner(
    data: AssignmentCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    assignment = service.assign_cleaner(ctx, data.bookingId, data.cleanerId, data.role, data.notes)
    return assignment_to_response(assignment)


@router.get("/bookings/{booking_id}/assignments", response_model=list[AssignmentResponse])
async def list_booking_assignments(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return [assignment_to_response(a) for a in service.list_assignments(ctx, booking_id)]


@router.post("/assignments/{assignment_id}/respond", response_model=AssignmentResponse)
async def respond_to_assignment(
    assignment_id: int,
    data: AssignmentResponseRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return assignment_to_response(service.respond_to_assignment(ctx, assignment_id, data.accept))


@router.post("/assignments/{assignment_id}/confirm", response_model=AssignmentResponse)
async def confirm_assignment(
    assignment_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return assignment_to_response(service.confirm_assignment(ctx, assignment_id))


@router.post("/assignments/{assignment_id}/clock-in", response_model=AssignmentResponse)
async def clock_in(
    assignment_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return assignment_to_response(service.clock_in(ctx, assignment_id))


@router.post("/assignments/{assignment_id}/clock-out", response_model=AssignmentResponse)
async def clock_out(
    assignment_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return assignment_to_response(service.clock_out(ctx, assignment_id))


@router.post("/assignments/{assignment_id}/cancel", response_model=AssignmentResponse)
async def cancel_assignment(
    assignment_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Unassign a cleaner; the booking drops back to card_saved if it loses its last cleaner"""
    return assignment_to_response(service.cancel_assignment(ctx, assignment_id))
