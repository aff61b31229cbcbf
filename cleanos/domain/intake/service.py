"""
Intake service - turns Tally form submissions into quote and booking requests

A submission is identified by its Tally response id. Replaying the same
response for an organization returns the request created the first time.
"""

import logging
import re
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import BookingRequest, QuoteRequest
from ...sequences import next_quote_number
from ...shared.validators import normalize_email
from ..email.service import EmailService

logger = logging.getLogger(__name__)

FORM_RESPONSE_EVENT = "FORM_RESPONSE"

# normalized question label -> booking request attribute
FIELD_ALIASES = {
    "first name": "first_name",
    "last name": "last_name",
    "name": "contact_name",
    "full name": "contact_name",
    "contact name": "contact_name",
    "email": "email",
    "email address": "email",
    "phone": "phone",
    "phone number": "phone",
    "address": "address",
    "service address": "address",
    "service": "service_type",
    "service type": "service_type",
    "notes": "notes",
    "additional notes": "notes",
}


def normalize_label(label: str) -> str:
    return re.sub(r"\s+", " ", label).strip().lower()


def normalize_field_value(field: dict) -> Any:
    """Resolve choice option ids to their text and unwrap single-item lists"""
    value = field.get("value")
    if not isinstance(value, list):
        return value
    if not value:
        return None
    options = {str(o.get("id")): o.get("text") for o in field.get("options") or [] if o.get("id") is not None}
    if options:
        value = [options.get(str(entry), str(entry)) for entry in value]
    return value[0] if len(value) == 1 else value


def extract_response_id(payload: dict) -> Optional[str]:
    data = payload.get("data") or {}
    return data.get("responseId") or data.get("responseID") or data.get("submissionId")


def extract_fields(payload: dict) -> dict:
    """Map each question label to its answer (first answer wins for repeated labels)"""
    fields = {}
    for field in (payload.get("data") or {}).get("fields") or []:
        label = field.get("label") or field.get("title") or field.get("key")
        if not isinstance(label, str) or not label.strip():
            continue
        fields.setdefault(label.strip(), normalize_field_value(field))
    return fields


def map_contact_fields(fields: dict) -> dict:
    mapped: dict = {}
    for label, value in fields.items():
        target = FIELD_ALIASES.get(normalize_label(label))
        if target and value not in (None, "") and target not in mapped:
            mapped[target] = value if isinstance(value, str) else ", ".join(map(str, value))

    if "contact_name" not in mapped:
        name = " ".join(p for p in (mapped.get("first_name"), mapped.get("last_name")) if p)
        mapped["contact_name"] = name or None
    mapped.pop("first_name", None)
    mapped.pop("last_name", None)
    if mapped.get("email"):
        mapped["email"] = normalize_email(mapped["email"])
    return mapped


class IntakeService:
    def __init__(self, db: Session):
        self.db = db

    def _existing_request(self, organization_id: str, response_id: str) -> Optional[BookingRequest]:
        return (
            self.db.query(BookingRequest)
            .filter(
                BookingRequest.organization_id == organization_id,
                BookingRequest.source_response_id == response_id,
            )
            .first()
        )

    def ingest_form_response(self, organization_id: str, payload: dict) -> dict:
        """
        Create the quote request and booking request for one form submission.

        Returns:
            {"status": "created" | "duplicate", "booking_request_id", "quote_number"}
        """
        response_id = extract_response_id(payload)
        if response_id:
            existing = self._existing_request(organization_id, response_id)
            if existing:
                logger.info(f"ℹ️ Tally response {response_id} already ingested for org {organization_id}")
                return self._result("duplicate", existing)

        fields = extract_fields(payload)
        contact = map_contact_fields(fields)

        try:
            quote = QuoteRequest(
                organization_id=organization_id,
                quote_number=next_quote_number(self.db),
                contact_name=contact.get("contact_name"),
                email=contact.get("email"),
                service_type=contact.get("service_type"),
                source_response_id=response_id,
            )
            self.db.add(quote)
            self.db.flush()

            request = BookingRequest(
                organization_id=organization_id,
                status="requested",
                contact_name=contact.get("contact_name"),
                email=contact.get("email"),
                phone=contact.get("phone"),
                address=contact.get("address"),
                service_type=contact.get("service_type"),
                notes=contact.get("notes"),
                raw_fields=fields,
                source_response_id=response_id,
                quote_request_id=quote.id,
            )
            self.db.add(request)
            self.db.commit()
        except IntegrityError:
            # Concurrent delivery of the same response won the unique key
            self.db.rollback()
            existing = self._existing_request(organization_id, response_id) if response_id else None
            if not existing:
                raise
            return self._result("duplicate", existing)

        self.db.refresh(request)
        logger.info(
            f"📝 Tally response {response_id} → booking request {request.id} (quote #{quote.quote_number})"
        )

        EmailService(self.db).notify(
            f"quote-received:{request.id}",
            request.email,
            "quote-received",
            {"contact_name": request.contact_name, "quote_number": quote.quote_number},
            organization_id=organization_id,
        )
        return self._result("created", request)

    def _result(self, status: str, request: BookingRequest) -> dict:
        quote = self.db.get(QuoteRequest, request.quote_request_id) if request.quote_request_id else None
        return {
            "status": status,
            "booking_request_id": request.id,
            "quote_number": quote.quote_number if quote else None,
        }
