"""Webhook attempt audit log and integration route lookup"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...models import IntegrationRoute, WebhookAttempt

logger = logging.getLogger(__name__)

WEBHOOK_STAGES = {
    "route_validation",
    "config_lookup",
    "signature_verification",
    "event_recording",
    "event_processing",
    "duplicate",
    "success",
}


def get_integration_route(db: Session, route_token: str, provider: str) -> Optional[IntegrationRoute]:
    return (
        db.query(IntegrationRoute)
        .filter(
            IntegrationRoute.route_token == route_token,
            IntegrationRoute.provider == provider,
            IntegrationRoute.is_active.is_(True),
        )
        .first()
    )


def log_webhook_attempt(
    db: Session,
    provider: str,
    endpoint: str,
    http_status: int,
    stage: str,
    route_token: Optional[str] = None,
    organization_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    """
    Record one inbound webhook attempt.

    Guarded: a failure to write the audit row is logged and swallowed so it
    can never change the response the webhook sender receives.
    """
    try:
        db.add(
            WebhookAttempt(
                provider=provider,
                endpoint=endpoint,
                route_token=route_token,
                organization_id=organization_id,
                event_id=event_id,
                event_type=event_type,
                http_status=http_status,
                stage=stage,
                error_message=error_message[:2000] if error_message else None,
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"Failed to log {provider} webhook attempt (stage={stage}, status={http_status})")


def log_route_validation_failure(
    db: Session,
    provider: str,
    endpoint: str,
    message: str,
    route_token: Optional[str] = None,
) -> None:
    """Log a webhook that failed route/signature/shape validation (always HTTP 400)"""
    logger.warning(f"🚫 {provider} webhook route validation failed on {endpoint}: {message}")
    log_webhook_attempt(
        db,
        provider=provider,
        endpoint=endpoint,
        http_status=400,
        stage="route_validation",
        route_token=route_token,
        error_message=message,
    )
