"""
Prescription refill request API endpoints.

Provides endpoints for:
- Patients: requesting a refill of a delivered order, listing their requests
- Pharmacies: listing and counting incoming requests, approving/rejecting them
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from rxportal.database import get_db
from rxportal.middleware.auth import (
    require_patient,
    require_patient_or_pharmacy,
    require_pharmacy,
)
from rxportal.models.user import User
from rxportal.schemas.refill import (
    CreateRefillRequest,
    RefillCountResponse,
    RefillListResponse,
    RefillResponse,
    RespondRefillRequest,
)
from rxportal.services import refill_service
from rxportal.services.audit_service import client_ip_from
from rxportal.services.refill_service import RefillError

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_http(exc: RefillError) -> HTTPException:
    if exc.status_code >= 500:
        logger.error("refills: %s", exc.message)
    return HTTPException(status_code=exc.status_code, detail=exc.message)


# ---------------------------------------------------------------------------
# Patient endpoints
# ---------------------------------------------------------------------------

@router.post("/request", response_model=RefillResponse, status_code=status.HTTP_201_CREATED)
async def create_refill_request(
    body: CreateRefillRequest,
    request: Request,
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    """Request a refill of one of the current patient's delivered orders."""
    try:
        refill = await refill_service.create_refill_request(
            db,
            patient=current_user,
            original_order_id=body.original_order_id,
            prescription_id=body.prescription_id,
            pharmacy_id=body.pharmacy_id,
            medications=body.medications,
            notes=body.notes,
            client_ip=client_ip_from(request),
        )
    except RefillError as e:
        raise _to_http(e)
    return RefillResponse.model_validate(refill)


@router.get("/patient", response_model=RefillListResponse)
async def list_patient_refill_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(require_patient),
    db: AsyncSession = Depends(get_db),
):
    """List the current patient's refill requests, newest first."""
    try:
        refills = await refill_service.list_patient_refill_requests(
            db, patient_id=current_user.id, status=status_filter,
        )
    except RefillError as e:
        raise _to_http(e)
    return RefillListResponse(
        refills=[RefillResponse.model_validate(r) for r in refills],
        total=len(refills),
    )


# ---------------------------------------------------------------------------
# Pharmacy endpoints
# ---------------------------------------------------------------------------

@router.get("/pharmacy", response_model=RefillListResponse)
async def list_pharmacy_refill_requests(
    status_filter: str = Query("pending", alias="status", description="pending, approved, rejected or all"),
    current_user: User = Depends(require_pharmacy),
    db: AsyncSession = Depends(get_db),
):
    """List refill requests addressed to the operator's pharmacy."""
    try:
        pharmacy = await refill_service.get_operator_pharmacy(db, current_user)
        refills = await refill_service.list_pharmacy_refill_requests(
            db, pharmacy_id=pharmacy.id, status=status_filter,
        )
    except RefillError as e:
        raise _to_http(e)
    return RefillListResponse(
        refills=[RefillResponse.model_validate(r) for r in refills],
        total=len(refills),
    )


@router.get("/pharmacy/count", response_model=RefillCountResponse)
async def count_pending_refill_requests(
    current_user: User = Depends(require_pharmacy),
    db: AsyncSession = Depends(get_db),
):
    """Number of pending requests, for the dashboard badge."""
    try:
        pharmacy = await refill_service.get_operator_pharmacy(db, current_user)
        count = await refill_service.count_pending_refill_requests(db, pharmacy_id=pharmacy.id)
    except RefillError as e:
        raise _to_http(e)
    return RefillCountResponse(count=count)


@router.post("/{refill_id}/respond", response_model=RefillResponse)
async def respond_to_refill_request(
    refill_id: UUID,
    body: RespondRefillRequest,
    request: Request,
    current_user: User = Depends(require_pharmacy),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject a pending refill request."""
    try:
        refill = await refill_service.respond_to_refill_request(
            db,
            operator=current_user,
            refill_id=refill_id,
            status=body.status,
            message=body.message,
            client_ip=client_ip_from(request),
        )
    except RefillError as e:
        raise _to_http(e)
    return RefillResponse.model_validate(refill)


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

@router.get("/{refill_id}", response_model=RefillResponse)
async def get_refill_request(
    refill_id: UUID,
    current_user: User = Depends(require_patient_or_pharmacy),
    db: AsyncSession = Depends(get_db),
):
    """Fetch one request; visible to its patient and to its pharmacy."""
    try:
        refill = await refill_service.get_refill_request_for_actor(
            db, actor=current_user, refill_id=refill_id,
        )
    except RefillError as e:
        raise _to_http(e)
    return RefillResponse.model_validate(refill)
