from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.infrastructure.database import get_db
from app.domain.pharmacy.service import PrescriptionService
from app.api.v1.prescriptions.schemas import PrescriptionCreate, PrescriptionResponse

router = APIRouter()


@router.post("", response_model=PrescriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_prescription(prescription_in: PrescriptionCreate, db: AsyncSession = Depends(get_db)):
    service = PrescriptionService(db)
    return await service.create_prescription(prescription_in.model_dump())


@router.get("", response_model=List[PrescriptionResponse])
async def list_prescriptions(patient_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    service = PrescriptionService(db)
    return await service.list_prescriptions(patient_id=patient_id)


@router.get("/{prescription_id}", response_model=PrescriptionResponse)
async def get_prescription(prescription_id: str, db: AsyncSession = Depends(get_db)):
    service = PrescriptionService(db)
    return await service.get_prescription(prescription_id)
