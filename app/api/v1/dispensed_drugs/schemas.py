"""
Dispensed Drug API Schemas
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date

from app.api.v1.drugs.schemas import DrugSummary
from app.api.v1.prescriptions.schemas import PrescriptionSummary


class DispensedDrugCreate(BaseModel):
    prescription_id: str
    batch_id: str
    quantity_dispensed: int = Field(..., gt=0)
    dispensed_by_id: str
    notes: Optional[str] = None


class DispensedDrugUpdate(BaseModel):
    quantity_dispensed: Optional[int] = Field(None, gt=0)
    notes: Optional[str] = None


class DispensedBatch(BaseModel):
    id: str
    batch_number: str
    quantity: int
    expiry_date: date
    drug: DrugSummary

    class Config:
        from_attributes = True


class DispensedDrugResponse(BaseModel):
    id: str
    prescription_id: str
    batch_id: Optional[str] = None
    drug_id: str
    patient_id: str
    quantity_dispensed: int
    dispensed_by_id: str
    dispense_date: datetime
    notes: Optional[str] = None
    prescription: PrescriptionSummary
    batch: Optional[DispensedBatch] = None
    drug: DrugSummary

    class Config:
        from_attributes = True


class DrugDispensingStat(BaseModel):
    drug: Optional[DrugSummary] = None
    total_dispensed: int
    count: int

    class Config:
        from_attributes = True


class DispensingStatsResponse(BaseModel):
    total_dispensed: int
    drug_stats: List[DrugDispensingStat]
    recent_dispensed: List[DispensedDrugResponse]
