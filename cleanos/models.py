import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


# ============================================================================
# BOOKINGS
# ============================================================================


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(String(36), unique=True, index=True, nullable=False, default=generate_public_id)
    organization_id = Column(String(255), index=True, nullable=False)
    email = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=True)
    # pending_card, card_saved, scheduled, in_progress, completed, payment_failed, charged, cancelled
    # ("failed" may still appear on legacy rows)
    status = Column(String(50), default="pending_card", nullable=False, index=True)
    service_type = Column(String(100), nullable=True)
    service_date = Column(Date, nullable=True, index=True)
    amount = Column(Integer, nullable=True)  # cents
    notes = Column(Text, nullable=True)
    booking_request_id = Column(Integer, ForeignKey("booking_requests.id"), nullable=True)
    # External intake response id this booking was converted from
    intake_response_id = Column(String(255), nullable=True, index=True)

    # Stripe identifiers - write-once, superseding a checkout session is explicit
    stripe_checkout_session_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_setup_intent_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(255), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    lifecycle_events = relationship(
        "BookingLifecycleEvent",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingLifecycleEvent.id",
    )
    assignments = relationship("BookingAssignment", back_populates="booking", cascade="all, delete-orphan")
    payment_intents = relationship("PaymentIntentRecord", back_populates="booking", cascade="all, delete-orphan")


class BookingLifecycleEvent(Base):
    """Append-only audit trail of booking status changes"""

    __tablename__ = "booking_lifecycle_events"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    organization_id = Column(String(255), index=True, nullable=False)
    event_type = Column(String(50), nullable=False)  # created, transition, override_transition, rescheduled
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    reason = Column(Text, nullable=True)
    source = Column(String(100), nullable=True)
    actor_user_id = Column(String(255), nullable=True)
    from_service_date = Column(Date, nullable=True)
    to_service_date = Column(Date, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    booking = relationship("Booking", back_populates="lifecycle_events")


class BookingRequest(Base):
    """Raw intake submission awaiting conversion into a booking"""

    __tablename__ = "booking_requests"
    __table_args__ = (
        UniqueConstraint("organization_id", "source_response_id", name="uq_booking_request_source"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), index=True, nullable=False)
    status = Column(String(50), default="requested", nullable=False)  # requested, confirmed
    contact_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    service_type = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    raw_fields = Column(JSON, nullable=True)
    source_response_id = Column(String(255), nullable=True, index=True)
    quote_request_id = Column(Integer, ForeignKey("quote_requests.id"), nullable=True)
    booking_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class QuoteRequest(Base):
    __tablename__ = "quote_requests"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), index=True, nullable=False)
    quote_number = Column(Integer, nullable=False, index=True)
    contact_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    service_type = Column(String(100), nullable=True)
    source_response_id = Column(String(255), nullable=True, index=True)
    request_status = Column(String(50), default="requested", nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Sequence(Base):
    __tablename__ = "sequences"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False)
    next_value = Column(Integer, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


# ============================================================================
# PAYMENTS
# ============================================================================


class PaymentIntentRecord(Base):
    """One row per Stripe charge attempt"""

    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    organization_id = Column(String(255), index=True, nullable=False)
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(10), default="usd", nullable=False)
    status = Column(String(50), nullable=False)
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    booking = relationship("Booking", back_populates="payment_intents")


class SetupIntentRecord(Base):
    __tablename__ = "setup_intents"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    organization_id = Column(String(255), index=True, nullable=False)
    stripe_setup_intent_id = Column(String(255), unique=True, nullable=False)
    status = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class PaymentWebhookEvent(Base):
    """Dedup log for processor webhook deliveries"""

    __tablename__ = "payment_webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_payment_webhook_event"),)

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), nullable=True, index=True)
    provider = Column(String(50), default="stripe", nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(String(50), default="received", nullable=False)  # received, processed, failed
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


# ============================================================================
# CLEANERS & SCHEDULING
# ============================================================================


class Cleaner(Base):
    __tablename__ = "cleaners"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), index=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    status = Column(String(50), default="active", nullable=False)  # active, inactive, terminated
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    availability = relationship("CleanerAvailability", back_populates="cleaner", cascade="all, delete-orphan")
    time_off = relationship("CleanerTimeOff", back_populates="cleaner", cascade="all, delete-orphan")
    assignments = relationship("BookingAssignment", back_populates="cleaner")


class CleanerAvailability(Base):
    __tablename__ = "cleaner_availability"

    id = Column(Integer, primary_key=True, index=True)
    cleaner_id = Column(Integer, ForeignKey("cleaners.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday ... 6 = Saturday
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)  # HH:MM
    timezone = Column(String(64), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    cleaner = relationship("Cleaner", back_populates="availability")


class CleanerTimeOff(Base):
    __tablename__ = "cleaner_time_off"

    id = Column(Integer, primary_key=True, index=True)
    cleaner_id = Column(Integer, ForeignKey("cleaners.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)  # inclusive
    reason = Column(Text, nullable=True)
    status = Column(String(50), default="pending", nullable=False)  # pending, approved, denied, cancelled
    approved_by = Column(String(255), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    denial_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    cleaner = relationship("Cleaner", back_populates="time_off")


class BookingAssignment(Base):
    __tablename__ = "booking_assignments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    cleaner_id = Column(Integer, ForeignKey("cleaners.id"), nullable=False, index=True)
    role = Column(String(50), default="primary", nullable=False)  # primary, secondary, trainee
    # pending, accepted, declined, confirmed, in_progress, completed, cancelled
    status = Column(String(50), default="pending", nullable=False)
    assigned_at = Column(DateTime, server_default=func.now())
    assigned_by = Column(String(255), nullable=True)
    responded_at = Column(DateTime, nullable=True)
    clocked_in_at = Column(DateTime, nullable=True)
    clocked_out_at = Column(DateTime, nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    booking = relationship("Booking", back_populates="assignments")
    cleaner = relationship("Cleaner", back_populates="assignments")


# ============================================================================
# EMAIL
# ============================================================================


class EmailSend(Base):
    __tablename__ = "email_sends"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(255), nullable=True, index=True)
    idempotency_key = Column(String(255), unique=True, nullable=False)
    to_email = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=True)
    template = Column(String(100), nullable=False)
    provider = Column(String(50), default="resend", nullable=False)
    # queued, sent, delivered, delivery_delayed, failed, skipped
    status = Column(String(50), default="queued", nullable=False)
    provider_email_id = Column(String(255), nullable=True, index=True)
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class EmailSuppression(Base):
    __tablename__ = "email_suppressions"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)  # trimmed + lower-cased
    reason = Column(String(50), nullable=False)  # hard_bounce, complaint
    source_event_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class EmailEvent(Base):
    """Dedup log for email provider delivery events"""

    __tablename__ = "email_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False)
    provider_email_id = Column(String(255), nullable=True, index=True)
    type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


# ============================================================================
# INTEGRATIONS
# ============================================================================


class IntegrationRoute(Base):
    """Maps a per-organization webhook route token to its signing secret"""

    __tablename__ = "integration_routes"

    id = Column(Integer, primary_key=True, index=True)
    route_token = Column(String(255), unique=True, nullable=False, index=True)
    organization_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(50), default="tally", nullable=False)
    signing_secret = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class WebhookAttempt(Base):
    __tablename__ = "webhook_attempts"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), nullable=False)
    endpoint = Column(String(255), nullable=False)
    route_token = Column(String(255), nullable=True)
    organization_id = Column(String(255), nullable=True, index=True)
    event_id = Column(String(255), nullable=True)
    event_type = Column(String(100), nullable=True)
    http_status = Column(Integer, nullable=False)
    # route_validation, config_lookup, signature_verification, event_recording,
    # event_processing, duplicate, success
    stage = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
