from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from app.domain.pharmacy.models import PrescriptionStatus
from app.api.v1.drugs.schemas import DrugSummary


class PrescriptionCreate(BaseModel):
    patient_id: str
    prescribed_by_id: str
    drug_ids: List[str] = Field(default_factory=list)
    prescription_date: Optional[datetime] = None
    status: PrescriptionStatus = PrescriptionStatus.ACTIVE
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    instructions: Optional[str] = None
    notes: Optional[str] = None


class PrescriptionSummary(BaseModel):
    id: str
    patient_id: str
    prescribed_by_id: str
    prescription_date: datetime
    status: PrescriptionStatus

    class Config:
        from_attributes = True


class PrescriptionResponse(PrescriptionSummary):
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    instructions: Optional[str] = None
    notes: Optional[str] = None
    drugs: List[DrugSummary] = []
