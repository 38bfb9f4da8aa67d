"""
Side effects of refill transitions: in-app notifications and emails.

These jobs run on the background dispatcher after the refill change has been
committed.  Each job opens its own session (the request session is gone by
then) and works from a ``RefillNotice`` snapshot rather than ORM objects.
The notification step and the email step fail independently.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from rxportal.models.refill_request import RefillRequest
from rxportal.services import email_service, notification_service
from rxportal.services.notification_service import Recipient, build_channels

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class RefillNotice:
    refill_id: UUID
    status: str
    order_id: UUID
    order_number: str
    patient_id: UUID
    patient_name: str
    patient_email: Optional[str]
    pharmacy_id: UUID
    pharmacy_user_id: Optional[UUID]
    pharmacy_name: str
    pharmacy_email: Optional[str]
    medications: list[dict] = field(default_factory=list)
    notes: Optional[str] = None
    response_message: Optional[str] = None
    responded_by: Optional[UUID] = None

    @classmethod
    def from_refill(cls, refill: RefillRequest) -> "RefillNotice":
        """Snapshot a refill whose patient, pharmacy and order are loaded."""
        patient = refill.patient
        pharmacy = refill.pharmacy
        order = refill.original_order
        return cls(
            refill_id=refill.id,
            status=refill.status,
            order_id=refill.original_order_id,
            order_number=(order.order_number if order is not None and order.order_number else str(refill.original_order_id)),
            patient_id=refill.patient_id,
            patient_name=patient.full_name if patient is not None else "A patient",
            patient_email=patient.email if patient is not None else None,
            pharmacy_id=refill.pharmacy_id,
            pharmacy_user_id=pharmacy.user_id if pharmacy is not None else None,
            pharmacy_name=pharmacy.pharmacy_name if pharmacy is not None else "Your pharmacy",
            pharmacy_email=pharmacy.email if pharmacy is not None else None,
            medications=list(refill.medications or []),
            notes=refill.notes,
            response_message=refill.response_message,
            responded_by=refill.responded_by,
        )

    def email_context(self) -> email_service.RefillEmailContext:
        return email_service.RefillEmailContext(
            order_number=self.order_number,
            patient_name=self.patient_name,
            patient_email=self.patient_email,
            pharmacy_name=self.pharmacy_name,
            medications=self.medications,
            notes=self.notes,
            response_message=self.response_message,
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

async def create_refill_request_notification(db: AsyncSession, notice: RefillNotice):
    """Tell the pharmacy's operator that a new refill request is waiting."""
    if notice.pharmacy_user_id is None:
        raise ValueError(f"Pharmacy {notice.pharmacy_id} has no operator to notify")

    notification = await notification_service.create_notification(
        db,
        title="New Refill Request",
        message=f"{notice.patient_name} has requested a refill for order #{notice.order_number}",
        type="refill_request",
        priority="medium",
        recipients=[Recipient(user_id=notice.pharmacy_user_id, role="pharmacy")],
        reference_id=notice.refill_id,
        reference_type="refill_request",
        metadata={
            "refill_request_id": str(notice.refill_id),
            "patient_name": notice.patient_name,
            "order_number": notice.order_number,
            "medication_count": len(notice.medications),
        },
        channels=build_channels(in_app=True, email=False),
        action_button={"text": "Review Refill Request", "action": "navigate", "url": "/pharmacy/orders"},
        tags=["refill_request", "pharmacy", "pending"],
        created_by_user_id=notice.patient_id,
        created_by_role="patient",
    )
    return await notification_service.process_delivery(db, notification)


async def create_refill_response_notification(db: AsyncSession, notice: RefillNotice):
    """Tell the patient how the pharmacy answered."""
    approved = notice.status == "approved"
    if approved:
        title = "Refill Request Approved"
        message = (
            f"Your refill request has been approved by {notice.pharmacy_name}. "
            "You can proceed with the refill."
        )
        action_button = {"text": "View Order History", "action": "navigate", "url": "/patient/orders"}
    else:
        title = "Refill Request Declined"
        message = (
            f"Your refill request has been declined by {notice.pharmacy_name}. "
            f"{notice.response_message or 'Please contact the pharmacy for more details.'}"
        )
        action_button = None

    notification = await notification_service.create_notification(
        db,
        title=title,
        message=message,
        type="refill_response",
        priority="high",
        recipients=[Recipient(user_id=notice.patient_id, role="patient")],
        reference_id=notice.refill_id,
        reference_type="refill_request",
        metadata={
            "refill_request_id": str(notice.refill_id),
            "pharmacy_name": notice.pharmacy_name,
            "status": notice.status,
            "response": notice.response_message,
            "order_number": notice.order_number,
        },
        channels=build_channels(in_app=True, email=False),
        action_button=action_button,
        tags=["refill_response", notice.status, "patient"],
        created_by_user_id=notice.responded_by or notice.pharmacy_user_id or notice.pharmacy_id,
        created_by_role="pharmacy",
    )
    return await notification_service.process_delivery(db, notification)


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------

async def notify_pharmacy_of_request(session_factory: SessionFactory, notice: RefillNotice) -> None:
    try:
        async with session_factory() as db:
            await create_refill_request_notification(db, notice)
    except Exception:
        logger.exception("refill %s: pharmacy notification failed (non-blocking)", notice.refill_id)

    if not notice.pharmacy_email:
        logger.warning("refill %s: pharmacy %s has no email address, skipping email", notice.refill_id, notice.pharmacy_id)
        return
    try:
        subject, html = email_service.render_refill_request_email(notice.email_context())
        await email_service.send_email(notice.pharmacy_email, subject, html)
    except Exception as e:
        logger.warning("refill %s: pharmacy email failed (non-blocking): %s", notice.refill_id, e)


async def notify_patient_of_response(session_factory: SessionFactory, notice: RefillNotice) -> None:
    try:
        async with session_factory() as db:
            await create_refill_response_notification(db, notice)
    except Exception:
        logger.exception("refill %s: patient notification failed (non-blocking)", notice.refill_id)

    if not notice.patient_email:
        logger.warning("refill %s: patient has no email address, skipping email", notice.refill_id)
        return
    try:
        subject, html = email_service.render_refill_response_email(notice.email_context(), notice.status)
        await email_service.send_email(notice.patient_email, subject, html)
    except Exception as e:
        logger.warning("refill %s: patient email failed (non-blocking): %s", notice.refill_id, e)
