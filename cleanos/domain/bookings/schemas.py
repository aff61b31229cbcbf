"""Booking domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator


class BookingCreate(BaseModel):
    """Schema for creating a booking from the dashboard"""

    # Optional here so a missing email surfaces as a domain ValidationError
    email: Optional[str] = None
    customerName: Optional[str] = None
    serviceType: Optional[str] = None
    serviceDate: Optional[date] = None
    amount: Optional[int] = None
    notes: Optional[str] = None
    intakeResponseId: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v is not None and v < 0:
            raise ValueError("Amount must be a non-negative number of cents")
        return v


class ScheduleUpdate(BaseModel):
    serviceDate: Optional[date] = None


class CompleteJobRequest(BaseModel):
    finalAmount: Optional[int] = None

    @field_validator("finalAmount")
    @classmethod
    def validate_amount(cls, v):
        if v is not None and v < 0:
            raise ValueError("Amount must be a non-negative number of cents")
        return v


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None


class ChargeBookingRequest(BaseModel):
    amount: Optional[int] = None
    description: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v is not None and v < 0:
            raise ValueError("Amount must be a non-negative number of cents")
        return v


class AdminOverrideRequest(BaseModel):
    status: str
    reason: str


class BookingResponse(BaseModel):
    id: str
    email: str
    customerName: Optional[str] = None
    status: str
    funnelStage: str
    serviceType: Optional[str] = None
    serviceDate: Optional[date] = None
    amount: Optional[int] = None
    notes: Optional[str] = None
    stripeCheckoutSessionId: Optional[str] = None
    stripeCustomerId: Optional[str] = None
    stripePaymentIntentId: Optional[str] = None
    cancelledAt: Optional[datetime] = None
    cancellationReason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LifecycleEventResponse(BaseModel):
    id: int
    eventType: str
    fromStatus: Optional[str] = None
    toStatus: Optional[str] = None
    reason: Optional[str] = None
    source: Optional[str] = None
    actorUserId: Optional[str] = None
    fromServiceDate: Optional[date] = None
    toServiceDate: Optional[date] = None
    metadata: Optional[dict] = None
    created_at: Optional[datetime] = None


class TransitionResponse(BaseModel):
    booking: BookingResponse
    changed: bool
