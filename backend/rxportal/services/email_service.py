"""
Email service for the pharmacy portal.

Sends HTML email over SMTP.  ``smtplib`` is blocking, so the exchange runs
in a worker thread to keep the event loop free.  Templates for the refill
workflow live here as well; every interpolated value is HTML-escaped.
"""

import asyncio
import logging
import re
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from html import escape

from rxportal.config import get_settings

logger = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r"<[^>]*>")
_BLANK_LINES = re.compile(r"\n\s*\n+")

FOOTER = "This is an automated message from DoctorPortal Pharmacy System"


class EmailNotConfiguredError(RuntimeError):
    """SMTP credentials are missing, nothing was sent."""


class EmailDeliveryError(RuntimeError):
    """The SMTP server refused or failed the message."""


def html_to_text(html: str) -> str:
    text = _TAG_PATTERN.sub("", html or "")
    return _BLANK_LINES.sub("\n\n", text).strip()


def _mask_email(email: str) -> str:
    e = (email or "").strip()
    if "@" not in e:
        return ""
    name, domain = e.split("@", 1)
    if len(name) <= 2:
        return f"{name[:1]}*@{domain}"
    return f"{name[:1]}{'*' * (len(name) - 2)}{name[-1:]}@{domain}"


def _build_message(to: str, subject: str, html: str, text: str | None) -> EmailMessage:
    settings = get_settings()
    sender = settings.EMAIL_FROM or settings.SMTP_USERNAME
    msg = EmailMessage()
    msg["From"] = formataddr((settings.EMAIL_FROM_NAME, sender))
    msg["To"] = to
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=sender.split("@", 1)[-1] if "@" in sender else None)
    msg.set_content(text if text is not None else html_to_text(html))
    msg.add_alternative(html, subtype="html")
    return msg


def _deliver(msg: EmailMessage) -> None:
    settings = get_settings()
    with smtplib.SMTP(host=settings.SMTP_HOST, port=settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS) as server:
        server.ehlo()
        if settings.SMTP_USE_TLS:
            server.starttls(context=ssl.create_default_context())
            server.ehlo()
        server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        server.send_message(msg)


async def send_email(to: str, subject: str, html: str, text: str | None = None) -> str:
    """Send one email and return its Message-ID.

    Raises EmailNotConfiguredError when SMTP is not set up and
    EmailDeliveryError when the transport fails.
    """
    settings = get_settings()
    if not settings.smtp_configured:
        raise EmailNotConfiguredError("Email is not configured (SMTP_HOST/SMTP_USERNAME/SMTP_PASSWORD)")
    if not (to or "").strip():
        raise ValueError("Recipient email address is missing")

    msg = _build_message(to.strip(), subject, html, text)
    try:
        await asyncio.to_thread(_deliver, msg)
    except (smtplib.SMTPException, OSError) as exc:
        raise EmailDeliveryError(f"Failed to send email to {_mask_email(to)}: {exc}") from exc

    message_id = msg["Message-ID"]
    logger.info("email: sent '%s' to %s (%s)", subject, _mask_email(to), message_id)
    return message_id


# ---------------------------------------------------------------------------
# Refill templates
# ---------------------------------------------------------------------------

@dataclass
class RefillEmailContext:
    order_number: str
    patient_name: str
    patient_email: str | None
    pharmacy_name: str
    medications: list[dict] = field(default_factory=list)
    notes: str | None = None
    response_message: str | None = None


def _medication_rows(medications: list[dict]) -> str:
    rows = []
    for med in medications:
        line = (
            f'<p style="margin: 3px 0; color: #333;"><strong>{escape(str(med.get("name") or ""))}</strong></p>'
            f'<p style="margin: 3px 0; color: #666; font-size: 14px;">'
            f'Dosage: {escape(str(med.get("dosage") or "-"))} | Frequency: {escape(str(med.get("frequency") or "-"))}</p>'
        )
        if med.get("instructions"):
            line += (
                f'<p style="margin: 3px 0; color: #666; font-size: 14px;">'
                f'Instructions: {escape(str(med["instructions"]))}</p>'
            )
        rows.append(f'<div style="margin-bottom: 10px; border-bottom: 1px solid #e9ecef;">{line}</div>')
    return "".join(rows) or '<p style="color: #666;">No medications listed.</p>'


def render_refill_request_email(ctx: RefillEmailContext) -> tuple[str, str]:
    """Pharmacy-facing email for a new refill request. Returns (subject, html)."""
    subject = f"New Refill Request - Order #{ctx.order_number}"
    notes_html = ""
    if ctx.notes:
        notes_html = (
            '<h2 style="color: #115E59;">Additional Notes</h2>'
            f'<p style="background-color: #f8f9fa; padding: 15px;">{escape(ctx.notes)}</p>'
        )
    html = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background: #115E59; padding: 30px; text-align: center;">
    <h1 style="color: #FDE047; margin: 0;">New Refill Request</h1>
    <p style="color: #DBF5F0;">A patient has requested a medication refill</p>
  </div>
  <div style="background-color: white; padding: 30px;">
    <h2 style="color: #115E59;">Patient Information</h2>
    <p><strong>Name:</strong> {escape(ctx.patient_name)}</p>
    <p><strong>Email:</strong> {escape(ctx.patient_email or "-")}</p>
    <p><strong>Original Order:</strong> #{escape(ctx.order_number)}</p>
    <h2 style="color: #115E59;">Requested Medications</h2>
    <div style="background-color: #f8f9fa; padding: 15px; border-left: 4px solid #115E59;">
      {_medication_rows(ctx.medications)}
    </div>
    {notes_html}
    <p style="color: #666; text-align: center;">Please review this refill request in your pharmacy dashboard.</p>
  </div>
  <p style="text-align: center; color: #666; font-size: 14px;">{FOOTER}</p>
</div>
"""
    return subject, html


def render_refill_response_email(ctx: RefillEmailContext, status: str) -> tuple[str, str]:
    """Patient-facing email for an approved or declined refill. Returns (subject, html)."""
    approved = status == "approved"
    verdict = "Approved" if approved else "Declined"
    color = "#10B981" if approved else "#EF4444"
    subject = f"Refill Request {verdict} - Order #{ctx.order_number}"
    pharmacy = escape(ctx.pharmacy_name)

    response_html = ""
    if ctx.response_message:
        response_html = (
            '<h2 style="color: #115E59;">Pharmacy Response</h2>'
            f'<p style="background-color: #f8f9fa; padding: 15px; border-left: 4px solid {color};">'
            f"{escape(ctx.response_message)}</p>"
        )
    if approved:
        next_steps = (
            f'<p style="color: {color}; font-weight: bold;">Your refill has been approved!</p>'
            '<p style="color: #666;">You can now proceed with the refill process. '
            "Please contact the pharmacy for pickup details.</p>"
        )
        footer_extra = ""
    else:
        next_steps = (
            f'<p style="color: {color}; font-weight: bold;">Your refill request was declined</p>'
            '<p style="color: #666;">Please contact the pharmacy directly for more information '
            "or to discuss alternative options.</p>"
        )
        footer_extra = f"<p>If you have questions, please contact {pharmacy} directly.</p>"

    html = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background: {color}; padding: 30px; text-align: center;">
    <h1 style="color: white; margin: 0;">Refill Request {verdict}</h1>
    <p style="color: #f0f0f0;">{pharmacy} has {verdict.lower()} your refill request</p>
  </div>
  <div style="background-color: white; padding: 30px;">
    <h2 style="color: #115E59;">Request Details</h2>
    <p><strong>Pharmacy:</strong> {pharmacy}</p>
    <p><strong>Original Order:</strong> #{escape(ctx.order_number)}</p>
    <p><strong>Status:</strong> <span style="color: {color}; font-weight: bold;">{verdict.upper()}</span></p>
    {response_html}
    <div style="text-align: center;">{next_steps}</div>
  </div>
  <div style="text-align: center; color: #666; font-size: 14px;"><p>{FOOTER}</p>{footer_extra}</div>
</div>
"""
    return subject, html


def render_notification_email(
    *,
    title: str,
    message: str,
    recipient_name: str,
    metadata: dict | None = None,
    action_button: dict | None = None,
) -> tuple[str, str]:
    """Generic email for a notification delivered over the email channel."""
    settings = get_settings()
    details = ""
    if metadata and metadata.get("order_number"):
        details = f'<p><strong>Order Number:</strong> {escape(str(metadata["order_number"]))}</p>'
    button = ""
    if action_button and action_button.get("url"):
        href = escape(settings.FRONTEND_URL.rstrip("/") + action_button["url"], quote=True)
        button = (
            f'<div style="text-align: center; margin: 30px 0;"><a href="{href}" '
            'style="background: #6366F1; color: white; padding: 12px 30px; text-decoration: none;">'
            f'{escape(action_button.get("text") or "Open")}</a></div>'
        )
    html = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #6366F1;">{escape(title)}</h2>
  <p>Hello {escape(recipient_name)},</p>
  <p>{escape(message)}</p>
  {details}
  {button}
  <p style="color: #666; font-size: 14px;">{FOOTER}</p>
</div>
"""
    return title, html
