"""
Tests for Tally intake webhooks.
"""

import json

import pytest

from cleanos.domain.intake.service import extract_fields, map_contact_fields
from cleanos.models import BookingRequest, IntegrationRoute, QuoteRequest, WebhookAttempt
from cleanos.webhook_security import create_webhook_signature

ROUTE_TOKEN = "tally_route_abc"
SIGNING_SECRET = "tally-signing-secret"


@pytest.fixture
def tally_route(db_session):
    route = IntegrationRoute(
        route_token=ROUTE_TOKEN,
        organization_id="org_test",
        provider="tally",
        signing_secret=SIGNING_SECRET,
    )
    db_session.add(route)
    db_session.commit()
    return route


def form_response(response_id="resp_1", email="Jane@Example.com"):
    return {
        "eventId": f"evt_{response_id}",
        "eventType": "FORM_RESPONSE",
        "data": {
            "responseId": response_id,
            "fields": [
                {"key": "q1", "label": "First name", "type": "INPUT_TEXT", "value": "Jane"},
                {"key": "q2", "label": "Last name", "type": "INPUT_TEXT", "value": "Doe"},
                {"key": "q3", "label": "Email", "type": "INPUT_EMAIL", "value": email},
                {
                    "key": "q4",
                    "label": "Service type",
                    "type": "MULTIPLE_CHOICE",
                    "value": ["opt_deep"],
                    "options": [{"id": "opt_std", "text": "Standard"}, {"id": "opt_deep", "text": "Deep clean"}],
                },
            ],
        },
    }


def post_tally(client, payload, token=ROUTE_TOKEN, secret=SIGNING_SECRET, signature=None):
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if signature is None:
        signature = create_webhook_signature(secret, body, provider="tally")
    if signature:
        headers["tally-signature"] = signature
    return client.post(f"/webhooks/tally/{token}", content=body, headers=headers)


class TestTallyWebhook:
    """Test route lookup, signatures and ingestion."""

    def test_unknown_route_is_404(self, client, db_session, tally_route):
        response = post_tally(client, form_response(), token="nope")

        assert response.status_code == 404
        assert db_session.query(WebhookAttempt).one().stage == "route_validation"

    def test_missing_signature_is_400(self, client, tally_route):
        response = post_tally(client, form_response(), signature="")

        assert response.status_code == 400

    def test_bad_signature_is_401(self, client, db_session, tally_route):
        response = post_tally(client, form_response(), secret="wrong-secret")

        assert response.status_code == 401
        assert db_session.query(BookingRequest).count() == 0
        attempt = db_session.query(WebhookAttempt).one()
        assert attempt.stage == "signature_verification"
        assert attempt.organization_id == "org_test"

    def test_other_event_types_are_ignored(self, client, db_session, tally_route):
        response = post_tally(client, {"eventType": "FORM_DELETED", "data": {}})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert db_session.query(BookingRequest).count() == 0

    def test_form_response_creates_quote_and_booking_request(self, client, db_session, tally_route, mock_send_email):
        response = post_tally(client, form_response())

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["status"] == "created"
        assert result["quote_number"] == 989

        request = db_session.query(BookingRequest).one()
        assert request.organization_id == "org_test"
        assert request.contact_name == "Jane Doe"
        assert request.email == "jane@example.com"
        assert request.service_type == "Deep clean"
        assert request.source_response_id == "resp_1"
        assert request.quote_request_id == db_session.query(QuoteRequest).one().id
        assert mock_send_email.call_args[0][0] == "jane@example.com"
        assert mock_send_email.call_args[1]["idempotency_key"] == f"quote-received:{request.id}"

    def test_quote_numbers_increase(self, client, db_session, tally_route):
        post_tally(client, form_response("resp_1"))
        post_tally(client, form_response("resp_2", email="second@example.com"))

        numbers = [q.quote_number for q in db_session.query(QuoteRequest).order_by(QuoteRequest.id).all()]
        assert numbers == [989, 990]

    def test_replayed_response_returns_first_request(self, client, db_session, tally_route, mock_send_email):
        first = post_tally(client, form_response())
        second = post_tally(client, form_response())

        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert second.json()["result"]["booking_request_id"] == first.json()["result"]["booking_request_id"]
        assert db_session.query(BookingRequest).count() == 1
        assert db_session.query(QuoteRequest).count() == 1
        assert mock_send_email.call_count == 1

    def test_prefixed_signature_is_accepted(self, client, tally_route):
        payload = form_response()
        body = json.dumps(payload).encode("utf-8")
        signature = "sha256=" + create_webhook_signature(SIGNING_SECRET, body, provider="tally")

        response = client.post(
            f"/webhooks/tally/{ROUTE_TOKEN}", content=body, headers={"tally-signature": signature}
        )

        assert response.status_code == 200


class TestFieldMapping:
    def test_first_answer_wins_for_repeated_labels(self):
        fields = extract_fields(
            {"data": {"fields": [{"label": "Email", "value": "a@x.com"}, {"label": "Email", "value": "b@x.com"}]}}
        )

        assert fields == {"Email": "a@x.com"}

    def test_full_name_takes_precedence_over_parts(self):
        mapped = map_contact_fields({"Full Name": "Sam Client", "First name": "Ignored", "Phone": "555-0100"})

        assert mapped["contact_name"] == "Sam Client"
        assert mapped["phone"] == "555-0100"
        assert "first_name" not in mapped

    def test_multi_select_is_joined(self):
        fields = extract_fields(
            {
                "data": {
                    "fields": [
                        {
                            "label": "Service",
                            "value": ["a", "b"],
                            "options": [{"id": "a", "text": "Kitchen"}, {"id": "b", "text": "Windows"}],
                        }
                    ]
                }
            }
        )

        assert map_contact_fields(fields)["service_type"] == "Kitchen, Windows"
