"""
MJML Email Templates
Transactional templates for the booking flow, rendered through mjml
"""

from typing import Callable, Optional

from ...errors import ValidationError

THEME = {
    "primary": "#14b8a6",
    "primary_dark": "#0d9488",
    "background": "#f8fafc",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "danger": "#ef4444",
}


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button
              href="{cta_url}"
              background-color="{THEME['primary']}"
              color="#ffffff"
              font-weight="600"
              border-radius="8px"
              padding="18px 40px"
              font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', 'Helvetica Neue', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="40px 40px 48px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" line-height="1.3" padding="0 0 16px 0">
              {title}
            </mj-text>
            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="0">
              You're receiving this because you requested a cleaning service.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def format_cents(amount: Optional[int]) -> str:
    if amount is None:
        return "TBD"
    return f"${amount / 100:,.2f}"


def quote_received_template(context: dict) -> tuple[str, str]:
    name = context.get("contact_name") or "there"
    quote_number = context.get("quote_number")
    content = f"""
    <mj-text>Hi {name},</mj-text>
    <mj-text>
      Thanks for your request! We've received it and will follow up with your quote shortly.
    </mj-text>
    <mj-text font-size="14px" color="{THEME['text_muted']}">
      <strong>Reference:</strong> Quote #{quote_number}
    </mj-text>
    """
    subject = f"We received your request (Quote #{quote_number})"
    return subject, get_base_template(
        title="Request Received",
        preview_text="We received your cleaning request",
        content_sections=content,
    )


def booking_confirmed_template(context: dict) -> tuple[str, str]:
    name = context.get("customer_name") or "there"
    service_date = context.get("service_date") or "to be scheduled"
    content = f"""
    <mj-text>Hi {name},</mj-text>
    <mj-text>
      Your booking is confirmed. To hold your spot, please save a card on file.
      You won't be charged until the service is completed.
    </mj-text>
    <mj-text font-size="14px" color="{THEME['text_muted']}">
      <strong>Service date:</strong> {service_date}
    </mj-text>
    """
    return "Your cleaning is booked", get_base_template(
        title="Booking Confirmed",
        preview_text="Your cleaning booking is confirmed",
        content_sections=content,
        cta_url=context.get("card_setup_url"),
        cta_label="Save Card on File",
    )


def payment_saved_template(context: dict) -> tuple[str, str]:
    name = context.get("customer_name") or "there"
    content = f"""
    <mj-text>Hi {name},</mj-text>
    <mj-text>
      Your card has been saved. We'll charge it only after your cleaning is complete.
    </mj-text>
    """
    return "Your card is on file", get_base_template(
        title="Card Saved",
        preview_text="Your payment method was saved",
        content_sections=content,
    )


def payment_receipt_template(context: dict) -> tuple[str, str]:
    name = context.get("customer_name") or "there"
    content = f"""
    <mj-text>Hi {name},</mj-text>
    <mj-text>Thank you! Your payment for the completed cleaning has been processed.</mj-text>
    <mj-text align="center" font-size="32px" font-weight="bold" color="{THEME['text_primary']}" padding="20px 0">
      {format_cents(context.get('amount'))}
    </mj-text>
    """
    return "Payment receipt", get_base_template(
        title="Payment Received",
        preview_text="Your payment was processed",
        content_sections=content,
    )


def payment_action_required_template(context: dict) -> tuple[str, str]:
    name = context.get("customer_name") or "there"
    content = f"""
    <mj-text>Hi {name},</mj-text>
    <mj-text>
      Your bank needs you to confirm the payment of {format_cents(context.get('amount'))}
      for your completed cleaning.
    </mj-text>
    """
    return "Action needed to complete your payment", get_base_template(
        title="Confirm Your Payment",
        preview_text="Your bank requires verification",
        content_sections=content,
        cta_url=context.get("next_action_url"),
        cta_label="Confirm Payment",
    )


TEMPLATES: dict[str, Callable[[dict], tuple[str, str]]] = {
    "quote-received": quote_received_template,
    "booking-confirmed": booking_confirmed_template,
    "payment-saved": payment_saved_template,
    "payment-receipt": payment_receipt_template,
    "payment-action-required": payment_action_required_template,
}


def render_template(template: str, context: Optional[dict] = None) -> tuple[str, str]:
    """Return (subject, mjml) for a registered template"""
    builder = TEMPLATES.get(template)
    if not builder:
        raise ValidationError(f"Unknown email template: {template}")
    return builder(context or {})
