"""Scheduling repository - cleaners, weekly availability, time-off and assignments"""

from datetime import date
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Booking, BookingAssignment, Cleaner, CleanerAvailability, CleanerTimeOff

INACTIVE_ASSIGNMENT_STATUSES = ("declined", "cancelled")


class SchedulingRepository:
    """Repository for scheduling database operations"""

    # Cleaners

    @staticmethod
    def get_cleaner(db: Session, organization_id: str, cleaner_id: int) -> Optional[Cleaner]:
        return (
            db.query(Cleaner)
            .filter(Cleaner.id == cleaner_id, Cleaner.organization_id == organization_id)
            .first()
        )

    @staticmethod
    def list_cleaners(db: Session, organization_id: str, status: Optional[str] = None) -> list[Cleaner]:
        query = db.query(Cleaner).filter(Cleaner.organization_id == organization_id)
        if status:
            query = query.filter(Cleaner.status == status)
        return query.order_by(Cleaner.first_name.asc(), Cleaner.id.asc()).all()

    @staticmethod
    def create_cleaner(db: Session, organization_id: str, **cleaner_data) -> Cleaner:
        cleaner = Cleaner(organization_id=organization_id, **cleaner_data)
        db.add(cleaner)
        db.commit()
        db.refresh(cleaner)
        return cleaner

    # Availability

    @staticmethod
    def get_active_slots(db: Session, cleaner_id: int, day_of_week: int) -> list[CleanerAvailability]:
        return (
            db.query(CleanerAvailability)
            .filter(
                CleanerAvailability.cleaner_id == cleaner_id,
                CleanerAvailability.day_of_week == day_of_week,
                CleanerAvailability.is_active.is_(True),
            )
            .order_by(CleanerAvailability.id.desc())
            .all()
        )

    @staticmethod
    def list_availability(db: Session, cleaner_id: int) -> list[CleanerAvailability]:
        return (
            db.query(CleanerAvailability)
            .filter(CleanerAvailability.cleaner_id == cleaner_id, CleanerAvailability.is_active.is_(True))
            .order_by(CleanerAvailability.day_of_week.asc())
            .all()
        )

    @staticmethod
    def get_active_slots_for_day(db: Session, cleaner_ids: list[int], day_of_week: int) -> dict[int, CleanerAvailability]:
        """Latest active slot per cleaner for one weekday"""
        if not cleaner_ids:
            return {}
        slots = (
            db.query(CleanerAvailability)
            .filter(
                CleanerAvailability.cleaner_id.in_(cleaner_ids),
                CleanerAvailability.day_of_week == day_of_week,
                CleanerAvailability.is_active.is_(True),
            )
            .order_by(CleanerAvailability.id.asc())
            .all()
        )
        return {slot.cleaner_id: slot for slot in slots}

    # Time off

    @staticmethod
    def get_time_off(db: Session, time_off_id: int) -> Optional[CleanerTimeOff]:
        return db.query(CleanerTimeOff).filter(CleanerTimeOff.id == time_off_id).first()

    @staticmethod
    def list_time_off(db: Session, cleaner_id: int) -> list[CleanerTimeOff]:
        return (
            db.query(CleanerTimeOff)
            .filter(CleanerTimeOff.cleaner_id == cleaner_id)
            .order_by(CleanerTimeOff.start_date.asc())
            .all()
        )

    @staticmethod
    def get_cleaners_on_approved_time_off(db: Session, cleaner_ids: list[int], day: date) -> set[int]:
        if not cleaner_ids:
            return set()
        rows = (
            db.query(CleanerTimeOff.cleaner_id)
            .filter(
                CleanerTimeOff.cleaner_id.in_(cleaner_ids),
                CleanerTimeOff.status == "approved",
                CleanerTimeOff.start_date <= day,
                CleanerTimeOff.end_date >= day,
            )
            .all()
        )
        return {row[0] for row in rows}

    # Assignments

    @staticmethod
    def get_assignment(db: Session, organization_id: str, assignment_id: int) -> Optional[BookingAssignment]:
        return (
            db.query(BookingAssignment)
            .join(Booking, Booking.id == BookingAssignment.booking_id)
            .filter(BookingAssignment.id == assignment_id, Booking.organization_id == organization_id)
            .first()
        )

    @staticmethod
    def get_active_assignment(db: Session, booking_id: int, cleaner_id: int) -> Optional[BookingAssignment]:
        return (
            db.query(BookingAssignment)
            .filter(
                BookingAssignment.booking_id == booking_id,
                BookingAssignment.cleaner_id == cleaner_id,
                BookingAssignment.status.notin_(INACTIVE_ASSIGNMENT_STATUSES),
            )
            .first()
        )

    @staticmethod
    def list_assignments_for_booking(db: Session, booking_id: int) -> list[BookingAssignment]:
        return (
            db.query(BookingAssignment)
            .filter(BookingAssignment.booking_id == booking_id)
            .order_by(BookingAssignment.id.asc())
            .all()
        )

    @staticmethod
    def count_assignments_on_date(
        db: Session, organization_id: str, cleaner_ids: list[int], day: date
    ) -> dict[int, int]:
        """Active assignment count per cleaner across bookings serviced on `day`"""
        if not cleaner_ids:
            return {}
        rows = (
            db.query(BookingAssignment.cleaner_id, func.count(BookingAssignment.id))
            .join(Booking, Booking.id == BookingAssignment.booking_id)
            .filter(
                Booking.organization_id == organization_id,
                Booking.service_date == day,
                BookingAssignment.cleaner_id.in_(cleaner_ids),
                BookingAssignment.status.notin_(INACTIVE_ASSIGNMENT_STATUSES),
            )
            .group_by(BookingAssignment.cleaner_id)
            .all()
        )
        return {cleaner_id: count for cleaner_id, count in rows}
