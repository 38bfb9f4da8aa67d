"""
Refill request lifecycle.

A refill request is created by a patient against one of their own delivered
or completed orders and is answered exactly once by the pharmacy that owns
it (``pending -> approved`` or ``pending -> rejected``).  Only one request
per order may be pending at a time.

Notifications and emails that accompany each transition are submitted to
the background dispatcher after the commit and never affect the outcome.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update, and_, desc, func
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rxportal.config import get_settings
from rxportal.database import AsyncSessionLocal
from rxportal.models.order import Order
from rxportal.models.pharmacy import Pharmacy
from rxportal.models.refill_request import (
    MEDICATION_FIELDS,
    REFILL_STATUSES,
    RESPONSE_STATUSES,
    RefillRequest,
)
from rxportal.models.user import User
from rxportal.services.audit_service import log_audit
from rxportal.services.background import BackgroundDispatcher, side_effects
from rxportal.services.refill_notifications import (
    RefillNotice,
    SessionFactory,
    notify_patient_of_response,
    notify_pharmacy_of_request,
)

logger = logging.getLogger(__name__)

PENDING_CONFLICT_MESSAGE = "A refill request is already pending for this order"
PENDING_INDEX_NAME = "uq_refill_requests_pending_order"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RefillError(Exception):
    """Base class; ``status_code`` is the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(RefillError):
    status_code = 400


class NotFound(RefillError):
    status_code = 404


class Forbidden(RefillError):
    status_code = 403


class InvalidState(RefillError):
    status_code = 400


class Conflict(RefillError):
    status_code = 400


class Internal(RefillError):
    status_code = 500


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_uuid(value: Any, field_name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidArgument(f"Invalid {field_name}: {value!r}")


def normalize_medications(medications: Any) -> list[dict]:
    """Keep only the known medication keys; anything that is not a list becomes []."""
    if not isinstance(medications, list):
        return []
    normalized = []
    for item in medications:
        if not isinstance(item, dict):
            continue
        normalized.append({
            key: (str(item[key]) if item.get(key) is not None else None)
            for key in MEDICATION_FIELDS
        })
    return normalized


def _operator_owns(refill: RefillRequest, operator_id: UUID) -> bool:
    # The pharmacy may be identified by its own id or by its operator's user id
    if refill.pharmacy_id == operator_id:
        return True
    return refill.pharmacy is not None and refill.pharmacy.is_operated_by(operator_id)


def _dispatch(
    dispatcher: BackgroundDispatcher,
    label: str,
    func,
    session_factory: SessionFactory,
    refill: RefillRequest,
) -> None:
    """Snapshot the committed record and hand the job to the dispatcher; never raises."""
    try:
        dispatcher.submit(label, func, session_factory, RefillNotice.from_refill(refill))
    except Exception:
        logger.exception("refill: could not schedule %s (non-blocking)", label)


async def _get_order(db: AsyncSession, order_id: UUID) -> Optional[Order]:
    return await db.get(Order, order_id)


async def _find_pending_for_order(db: AsyncSession, order_id: UUID) -> Optional[UUID]:
    timeout = get_settings().REFILL_QUERY_TIMEOUT_SECONDS
    try:
        result = await asyncio.wait_for(
            db.execute(
                select(RefillRequest.id)
                .where(
                    and_(
                        RefillRequest.original_order_id == order_id,
                        RefillRequest.status == "pending",
                    )
                )
                .limit(1)
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise Internal(
            f"Database error while checking existing requests: timed out after {timeout}s"
        )
    except SQLAlchemyError as e:
        raise Internal(f"Database error while checking existing requests: {e}")
    return result.scalar_one_or_none()


async def _load_refill(db: AsyncSession, refill_id: UUID) -> Optional[RefillRequest]:
    result = await db.execute(
        select(RefillRequest)
        .where(RefillRequest.id == refill_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _claim_pending(db: AsyncSession, refill_id: UUID, values: dict) -> bool:
    """Apply ``values`` only if the request is still pending. Returns False if it was not."""
    result = await db.execute(
        update(RefillRequest)
        .where(
            and_(
                RefillRequest.id == refill_id,
                RefillRequest.status == "pending",
            )
        )
        .values(**values, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_operator_pharmacy(db: AsyncSession, operator: User) -> Pharmacy:
    result = await db.execute(select(Pharmacy).where(Pharmacy.user_id == operator.id))
    pharmacy = result.scalar_one_or_none()
    if pharmacy is None:
        raise NotFound("Pharmacy profile not found")
    return pharmacy


# ---------------------------------------------------------------------------
# 1. Create
# ---------------------------------------------------------------------------

async def create_refill_request(
    db: AsyncSession,
    *,
    patient: User,
    original_order_id: Any,
    prescription_id: Any,
    pharmacy_id: Any,
    medications: Any = None,
    notes: Optional[str] = None,
    client_ip: Optional[str] = None,
    dispatcher: Optional[BackgroundDispatcher] = None,
    session_factory: Optional[SessionFactory] = None,
) -> RefillRequest:
    """Create a pending refill request for one of the patient's own orders.

    Checks run in a fixed order and nothing is written unless all pass:
    required ids, order exists, order belongs to the patient, order is
    delivered/completed, no other pending request for the order.
    """
    missing = [
        name for name, value in (
            ("original_order_id", original_order_id),
            ("prescription_id", prescription_id),
            ("pharmacy_id", pharmacy_id),
        )
        if not value
    ]
    if missing:
        raise InvalidArgument(f"Missing required fields: {', '.join(missing)}")

    order_id = _parse_uuid(original_order_id, "original_order_id")
    prescription_uuid = _parse_uuid(prescription_id, "prescription_id")
    pharmacy_uuid = _parse_uuid(pharmacy_id, "pharmacy_id")

    order = await _get_order(db, order_id)
    if order is None:
        raise NotFound("Original order not found")

    if order.patient_id != patient.id:
        logger.warning("refill: patient %s tried to refill order %s they do not own", patient.id, order_id)
        raise Forbidden("Unauthorized to request refill for this order")

    if not order.is_refillable:
        raise InvalidState(f"Cannot request refill for order with status: {order.status}.")

    if await _find_pending_for_order(db, order_id) is not None:
        raise Conflict(PENDING_CONFLICT_MESSAGE)

    refill = RefillRequest(
        original_order_id=order_id,
        prescription_id=prescription_uuid,
        patient_id=patient.id,
        pharmacy_id=pharmacy_uuid,
        status="pending",
        medications=normalize_medications(medications),
        notes=notes,
    )
    db.add(refill)
    try:
        await db.flush()
        log_audit(
            db,
            action="refill.create",
            entity_type="refill_request",
            entity_id=refill.id,
            user=patient,
            pharmacy_id=pharmacy_uuid,
            new_value={"status": "pending", "original_order_id": str(order_id)},
            client_ip=client_ip,
        )
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        if PENDING_INDEX_NAME in str(e.orig):
            # Lost the race against a concurrent request for the same order
            raise Conflict(PENDING_CONFLICT_MESSAGE)
        raise InvalidArgument(f"Failed to save refill request: {e.orig}")
    except DataError as e:
        await db.rollback()
        raise InvalidArgument(f"Failed to save refill request: {e.orig}")
    except SQLAlchemyError as e:
        await db.rollback()
        raise Internal(f"Failed to save refill request: {e}")

    logger.info("refill: created %s for order %s (pharmacy %s)", refill.id, order_id, pharmacy_uuid)

    populated = await _load_refill(db, refill.id)
    if populated is None:
        raise Internal("Refill request was saved but could not be reloaded")

    _dispatch(
        dispatcher or side_effects,
        f"refill.notify_pharmacy:{populated.id}",
        notify_pharmacy_of_request,
        session_factory or AsyncSessionLocal,
        populated,
    )
    return populated


# ---------------------------------------------------------------------------
# 2. Respond (approve / reject)
# ---------------------------------------------------------------------------

async def respond_to_refill_request(
    db: AsyncSession,
    *,
    operator: User,
    refill_id: UUID,
    status: Any,
    message: Optional[str] = None,
    client_ip: Optional[str] = None,
    dispatcher: Optional[BackgroundDispatcher] = None,
    session_factory: Optional[SessionFactory] = None,
) -> RefillRequest:
    """Approve or reject a pending request on behalf of its pharmacy."""
    if not isinstance(status, str) or status not in RESPONSE_STATUSES:
        raise InvalidArgument("Invalid status. Must be 'approved' or 'rejected'")

    refill = await _load_refill(db, refill_id)
    if refill is None:
        raise NotFound("Refill request not found")

    if not refill.is_pending:
        raise Conflict("Refill request has already been processed")

    if not _operator_owns(refill, operator.id):
        logger.warning(
            "refill: operator %s denied on %s (pharmacy %s)",
            operator.id, refill.id, refill.pharmacy_id,
        )
        raise Forbidden("Unauthorized to respond to this refill request")

    values = {
        "status": status,
        "response_message": message,
        "responded_at": datetime.now(timezone.utc),
        "responded_by": operator.id,
    }
    try:
        if not await _claim_pending(db, refill.id, values):
            await db.rollback()
            raise Conflict("Refill request has already been processed")
        log_audit(
            db,
            action="refill.respond",
            entity_type="refill_request",
            entity_id=refill.id,
            user=operator,
            pharmacy_id=refill.pharmacy_id,
            old_value={"status": "pending"},
            new_value={"status": status, "message": message},
            client_ip=client_ip,
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise Internal(f"Failed to respond to refill request: {e}")

    logger.info("refill: %s %s by operator %s", refill.id, status, operator.id)

    updated = await _load_refill(db, refill.id)
    if updated is None:
        raise Internal("Refill request was updated but could not be reloaded")

    _dispatch(
        dispatcher or side_effects,
        f"refill.notify_patient:{updated.id}",
        notify_patient_of_response,
        session_factory or AsyncSessionLocal,
        updated,
    )
    return updated


# ---------------------------------------------------------------------------
# 3. Queries
# ---------------------------------------------------------------------------

def _check_status_filter(status: str) -> None:
    if status not in REFILL_STATUSES:
        raise InvalidArgument(
            f"Invalid status. Must be one of: {', '.join(REFILL_STATUSES)}"
        )


async def list_pharmacy_refill_requests(
    db: AsyncSession,
    *,
    pharmacy_id: UUID,
    status: Optional[str] = "pending",
) -> list[RefillRequest]:
    """Requests addressed to a pharmacy, newest first. ``status="all"`` disables the filter."""
    status = status or "pending"
    filters = [RefillRequest.pharmacy_id == pharmacy_id]
    if status != "all":
        _check_status_filter(status)
        filters.append(RefillRequest.status == status)

    result = await db.execute(
        select(RefillRequest)
        .where(and_(*filters))
        .order_by(desc(RefillRequest.requested_at))
    )
    return list(result.scalars().all())


async def list_patient_refill_requests(
    db: AsyncSession,
    *,
    patient_id: UUID,
    status: Optional[str] = None,
) -> list[RefillRequest]:
    filters = [RefillRequest.patient_id == patient_id]
    if status:
        _check_status_filter(status)
        filters.append(RefillRequest.status == status)

    result = await db.execute(
        select(RefillRequest)
        .where(and_(*filters))
        .order_by(desc(RefillRequest.requested_at))
    )
    return list(result.scalars().all())


async def count_pending_refill_requests(db: AsyncSession, *, pharmacy_id: UUID) -> int:
    result = await db.execute(
        select(func.count(RefillRequest.id)).where(
            and_(
                RefillRequest.pharmacy_id == pharmacy_id,
                RefillRequest.status == "pending",
            )
        )
    )
    return result.scalar_one()


async def get_refill_request_for_actor(db: AsyncSession, *, actor: User, refill_id: UUID) -> RefillRequest:
    refill = await _load_refill(db, refill_id)
    if refill is None:
        raise NotFound("Refill request not found")

    if actor.role == "patient" and refill.patient_id == actor.id:
        return refill
    if actor.role == "pharmacy" and _operator_owns(refill, actor.id):
        return refill
    raise Forbidden("Unauthorized to view this refill request")


# ---------------------------------------------------------------------------
# 4. Maintenance
# ---------------------------------------------------------------------------

async def cleanup_duplicate_pending_requests(db: AsyncSession, *, dry_run: bool = False) -> list[UUID]:
    """Keep the oldest pending request per order and delete the others.

    Only needed for data written before the partial unique index existed.
    Returns the ids that were (or, with ``dry_run``, would be) removed.
    """
    result = await db.execute(
        select(RefillRequest)
        .where(RefillRequest.status == "pending")
        .order_by(RefillRequest.created_at.asc())
    )
    by_order: dict[UUID, list[RefillRequest]] = defaultdict(list)
    for refill in result.scalars().all():
        by_order[refill.original_order_id].append(refill)

    removed: list[UUID] = []
    for order_id, requests in by_order.items():
        if len(requests) < 2:
            continue
        keep, duplicates = requests[0], requests[1:]
        logger.info(
            "refill cleanup: order %s has %d pending requests, keeping %s",
            order_id, len(requests), keep.id,
        )
        for duplicate in duplicates:
            removed.append(duplicate.id)
            if not dry_run:
                await db.delete(duplicate)

    if removed and not dry_run:
        await db.commit()
    return removed
