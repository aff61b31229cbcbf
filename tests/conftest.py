"""
Pytest configuration and shared fixtures.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from unittest.mock import MagicMock, patch  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from cleanos.auth import RequestContext, get_request_context  # noqa: E402
from cleanos.database import Base, get_db  # noqa: E402
from cleanos.domain.bookings.schemas import BookingCreate  # noqa: E402
from cleanos.domain.bookings.service import BookingService  # noqa: E402
from cleanos.domain.payments.stripe_service import get_stripe_service  # noqa: E402
from cleanos.main import app  # noqa: E402
from cleanos.models import Cleaner, CleanerAvailability  # noqa: E402

ORG_ID = "org_test"


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ctx():
    """Regular organization member."""
    return RequestContext(organization_id=ORG_ID, subject_id="user_member", role="org:member")


@pytest.fixture
def admin_ctx():
    return RequestContext(organization_id=ORG_ID, subject_id="user_admin", role="org:admin")


@pytest.fixture(autouse=True)
def mock_send_email():
    """Never reach Resend; every send succeeds with a provider id."""
    with patch("cleanos.domain.email.service.send_email") as mock_send:
        mock_send.return_value = {"id": "re_test_123"}
        yield mock_send


@pytest.fixture
def mock_processor():
    """Stand-in for the Stripe service singleton."""
    processor = MagicMock()
    processor.is_available.return_value = True
    processor.currency = "usd"
    return processor


@pytest.fixture
def client(db_session, ctx, mock_processor):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_request_context] = lambda: ctx
    app.dependency_overrides[get_stripe_service] = lambda: mock_processor
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_booking(db_session, ctx):
    """Create a booking, then force it into the requested status."""

    def _make(status="pending_card", amount=None, service_date=None, email="customer@example.com", **fields):
        booking = BookingService(db_session).create_booking(
            ctx,
            BookingCreate(email=email, customerName="Jane Doe", serviceType="standard", amount=amount),
        )
        booking.status = status
        booking.service_date = service_date
        for key, value in fields.items():
            setattr(booking, key, value)
        db_session.commit()
        db_session.refresh(booking)
        return booking

    return _make


@pytest.fixture
def make_cleaner(db_session):
    """Create an active cleaner with optional weekly slots {day_of_week: (start, end)}."""

    def _make(first_name="Ana", status="active", slots=None, organization_id=ORG_ID):
        cleaner = Cleaner(organization_id=organization_id, first_name=first_name, status=status)
        db_session.add(cleaner)
        db_session.flush()
        for day, (start, end) in (slots or {}).items():
            db_session.add(
                CleanerAvailability(cleaner_id=cleaner.id, day_of_week=day, start_time=start, end_time=end)
            )
        db_session.commit()
        db_session.refresh(cleaner)
        return cleaner

    return _make
