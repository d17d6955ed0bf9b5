from datetime import date, datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..database.connection import get_db
from ..database.models import Patient, Appointment, Gender, UserRole
from ..errors import Conflict, NotFound, PermissionDenied
from ..utils import reject_required_nulls
from .auth import AuthContext, Capability, log_action, require_access, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patients", tags=["Patients"])

# ==================== PYDANTIC MODELS ====================

class PatientCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=5, max_length=20)
    date_of_birth: date
    gender: Gender
    address: str
    emergency_contact: str = Field(..., max_length=100)
    emergency_phone: str = Field(..., max_length=20)
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None


class PatientUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, min_length=5, max_length=20)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = Field(None, max_length=100)
    emergency_phone: Optional[str] = Field(None, max_length=20)
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None


class PatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    first_name: str
    last_name: str
    email: str
    phone: str
    date_of_birth: date
    gender: Gender
    address: str
    emergency_contact: str
    emergency_phone: str
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PatientListResponse(BaseModel):
    patients: List[PatientResponse]
    total: int

# ==================== HELPER FUNCTIONS ====================

def get_patient_or_404(db: Session, patient_id: str) -> Patient:
    patient = db.query(Patient).filter(Patient.id == patient_id).first()
    if not patient:
        raise NotFound("Patient not found")
    return patient


def create_patient(db: Session, data: PatientCreate, user_id: Optional[str] = None) -> Patient:
    if user_id and db.query(Patient).filter(Patient.user_id == user_id).first():
        raise Conflict("A patient profile already exists for this account")

    values = data.model_dump()
    values["gender"] = data.gender.value
    patient = Patient(user_id=user_id, **values)
    db.add(patient)
    db.flush()
    return patient


def update_patient(db: Session, patient: Patient, data: PatientUpdate) -> Patient:
    updates = data.model_dump(exclude_unset=True)
    reject_required_nulls(Patient, updates)
    if "gender" in updates and updates["gender"] is not None:
        updates["gender"] = updates["gender"].value
    for key, value in updates.items():
        setattr(patient, key, value)
    patient.updated_at = datetime.now()
    db.flush()
    return patient


def search_patients(db: Session, search: Optional[str], limit: int, offset: int):
    query = db.query(Patient)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Patient.first_name.ilike(pattern),
            Patient.last_name.ilike(pattern),
            Patient.email.ilike(pattern),
            Patient.phone.ilike(pattern)
        ))
    total = query.count()
    patients = query.order_by(Patient.created_at.desc()).offset(offset).limit(limit).all()
    return patients, total


def ensure_patient_access(auth: AuthContext, patient: Patient):
    if auth.role == UserRole.PATIENT and patient.id != auth.profile_id:
        raise PermissionDenied("You can only access your own patient record")

# ==================== API ENDPOINTS ====================

@router.post("", response_model=PatientResponse, status_code=201)
async def register_patient(
    request: PatientCreate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_PATIENTS, UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    """
    📝 Register a patient.
    Patients registering themselves get the record linked to their account.
    """
    user_id = auth.user_id if auth.role == UserRole.PATIENT else None
    patient = create_patient(db, request, user_id=user_id)
    log_action(db, auth.user_id, "PATIENT_CREATED", "patient", patient.id, {"email": patient.email})
    db.commit()
    db.refresh(patient)

    logger.info(f"Patient registered: {patient.id}")
    return patient


@router.get("", response_model=PatientListResponse)
async def list_patients(
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_access(Capability.VIEW_PATIENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    patients, total = search_patients(db, search, limit, offset)
    return {"patients": patients, "total": total}


@router.get("/{patient_id}", response_model=PatientResponse)
async def get_patient(
    patient_id: str,
    auth: AuthContext = Depends(require_access(Capability.VIEW_PATIENTS, UserRole.DOCTOR, UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, patient_id)
    ensure_patient_access(auth, patient)
    return patient


@router.put("/{patient_id}", response_model=PatientResponse)
async def edit_patient(
    patient_id: str,
    request: PatientUpdate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_PATIENTS, UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, patient_id)
    ensure_patient_access(auth, patient)

    update_patient(db, patient, request)
    log_action(db, auth.user_id, "PATIENT_UPDATED", "patient", patient.id,
               {"fields": sorted(request.model_dump(exclude_unset=True).keys())})
    db.commit()
    db.refresh(patient)
    return patient


@router.delete("/{patient_id}", status_code=204)
async def delete_patient(
    patient_id: str,
    auth: AuthContext = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db)
):
    patient = get_patient_or_404(db, patient_id)
    if db.query(Appointment).filter(Appointment.patient_id == patient.id).count():
        raise Conflict("Patient has appointments and cannot be deleted")

    db.delete(patient)
    log_action(db, auth.user_id, "PATIENT_DELETED", "patient", patient_id, {})
    db.commit()
