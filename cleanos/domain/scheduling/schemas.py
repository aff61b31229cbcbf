"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator

ASSIGNMENT_ROLES = ("primary", "secondary", "trainee")


class CleanerCreate(BaseModel):
    firstName: str
    lastName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str = "active"

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in ("active", "inactive", "terminated"):
            raise ValueError("Status must be active, inactive or terminated")
        return v


class CleanerResponse(BaseModel):
    id: int
    firstName: str
    lastName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None


class AvailabilitySlotRequest(BaseModel):
    startTime: str
    endTime: str
    timezone: Optional[str] = None


class AvailabilitySlotResponse(BaseModel):
    id: int
    cleanerId: int
    dayOfWeek: int
    startTime: str
    endTime: str
    timezone: Optional[str] = None
    isActive: bool


class TimeOffCreate(BaseModel):
    startDate: date
    endDate: date
    reason: Optional[str] = None


class TimeOffDecision(BaseModel):
    status: str
    denialReason: Optional[str] = None


class TimeOffResponse(BaseModel):
    id: int
    cleanerId: int
    startDate: date
    endDate: date
    reason: Optional[str] = None
    status: str
    approvedBy: Optional[str] = None
    approvedAt: Optional[datetime] = None
    denialReason: Optional[str] = None


class AssignmentCreate(BaseModel):
    bookingId: str
    cleanerId: int
    role: str = "primary"
    notes: Optional[str] = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in ASSIGNMENT_ROLES:
            raise ValueError("Role must be primary, secondary or trainee")
        return v


class AssignmentResponseRequest(BaseModel):
    accept: bool


class AssignmentResponse(BaseModel):
    id: int
    bookingId: str
    cleanerId: int
    role: str
    status: str
    assignedAt: Optional[datetime] = None
    respondedAt: Optional[datetime] = None
    clockedInAt: Optional[datetime] = None
    clockedOutAt: Optional[datetime] = None
    actualDurationMinutes: Optional[int] = None
    bookingStatus: Optional[str] = None


class AvailableCleanerResponse(BaseModel):
    cleaner: CleanerResponse
    availability: dict
    assignmentCount: int
