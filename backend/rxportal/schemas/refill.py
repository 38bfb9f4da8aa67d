from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field


class MedicationItem(BaseModel):
    name: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    duration: str | None = None
    instructions: str | None = None


class CreateRefillRequest(BaseModel):
    # Ids stay strings here so that missing/malformed values are reported
    # as a 400 by the refill service rather than a schema 422.
    original_order_id: str | None = Field(
        None, validation_alias=AliasChoices("original_order_id", "originalOrderId"),
    )
    prescription_id: str | None = Field(
        None, validation_alias=AliasChoices("prescription_id", "prescriptionId"),
    )
    pharmacy_id: str | None = Field(
        None, validation_alias=AliasChoices("pharmacy_id", "pharmacyId"),
    )
    medications: Any = None
    notes: str | None = Field(None, max_length=2000)


class RespondRefillRequest(BaseModel):
    # Validated by the service so any unexpected value yields a 400
    status: Any = None
    message: str | None = Field(None, max_length=2000)


class PharmacyResponseOut(BaseModel):
    message: str | None = None
    responded_at: datetime
    responded_by: UUID | None = None


class PatientSummary(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    email: str
    phone: str | None = None

    model_config = {"from_attributes": True}


class PharmacySummary(BaseModel):
    id: UUID
    pharmacy_name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None

    model_config = {"from_attributes": True}


class OrderSummary(BaseModel):
    id: UUID
    order_number: str
    status: str
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class PrescriptionSummary(BaseModel):
    id: UUID
    status: str | None = None
    medications: list | dict | None = None

    model_config = {"from_attributes": True}


class RefillResponse(BaseModel):
    id: UUID
    original_order_id: UUID
    prescription_id: UUID
    patient_id: UUID
    pharmacy_id: UUID
    status: str
    medications: list[MedicationItem] = []
    notes: str | None = None
    pharmacy_response: PharmacyResponseOut | None = None
    requested_at: datetime
    created_at: datetime
    updated_at: datetime | None = None

    patient: Optional[PatientSummary] = None
    pharmacy: Optional[PharmacySummary] = None
    original_order: Optional[OrderSummary] = None
    prescription: Optional[PrescriptionSummary] = None

    model_config = {"from_attributes": True}


class RefillListResponse(BaseModel):
    refills: list[RefillResponse]
    total: int


class RefillCountResponse(BaseModel):
    count: int
