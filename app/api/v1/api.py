from fastapi import APIRouter
from app.api.v1.drugs import routes as drugs
from app.api.v1.drug_batches import routes as drug_batches
from app.api.v1.prescriptions import routes as prescriptions
from app.api.v1.dispensed_drugs import routes as dispensed_drugs

api_router = APIRouter()
api_router.include_router(drugs.router, prefix="/drugs", tags=["drugs"])
api_router.include_router(drug_batches.router, prefix="/drug-batches", tags=["drug-batches"])
api_router.include_router(prescriptions.router, prefix="/prescriptions", tags=["prescriptions"])
api_router.include_router(dispensed_drugs.router, prefix="/dispensed-drugs", tags=["dispensed-drugs"])
