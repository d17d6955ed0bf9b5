from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..database.connection import get_db
from ..database.models import Doctor, Appointment, User, UserRole
from ..errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from ..utils import reject_required_nulls
from .auth import AuthContext, Capability, get_auth_context, log_action, require_access, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/doctors", tags=["Doctors"])

# ==================== PYDANTIC MODELS ====================

class DoctorCreate(BaseModel):
    """Doctor onboarding form (admin)"""
    user_id: Optional[str] = Field(None, description="Existing doctor account to link")
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=5, max_length=20)
    specialization: str = Field(..., min_length=2, max_length=100)
    license_number: str = Field(..., min_length=2, max_length=50)
    experience: int = Field(0, ge=0, le=70)
    qualification: str = Field(..., min_length=2)
    consultation_fee: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    availability: str = Field(..., min_length=1, max_length=255)
    bio: Optional[str] = None
    profile_image: Optional[str] = None


class DoctorUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, min_length=5, max_length=20)
    specialization: Optional[str] = Field(None, min_length=2, max_length=100)
    license_number: Optional[str] = Field(None, min_length=2, max_length=50)
    experience: Optional[int] = Field(None, ge=0, le=70)
    qualification: Optional[str] = Field(None, min_length=2)
    consultation_fee: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    availability: Optional[str] = Field(None, min_length=1, max_length=255)
    bio: Optional[str] = None
    profile_image: Optional[str] = None


class DoctorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    first_name: str
    last_name: str
    email: str
    phone: str
    specialization: str
    license_number: str
    experience: int
    qualification: str
    consultation_fee: Decimal
    availability: str
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DoctorListResponse(BaseModel):
    doctors: List[DoctorResponse]
    total: int

# ==================== HELPER FUNCTIONS ====================

def get_doctor_or_404(db: Session, doctor_id: str) -> Doctor:
    doctor = db.query(Doctor).filter(Doctor.id == doctor_id).first()
    if not doctor:
        raise NotFound("Doctor not found")
    return doctor


def ensure_unique_license(db: Session, license_number: str, exclude_id: Optional[str] = None):
    query = db.query(Doctor).filter(Doctor.license_number == license_number)
    if exclude_id:
        query = query.filter(Doctor.id != exclude_id)
    if query.first():
        raise Conflict(f"License number {license_number} is already registered")


def create_doctor(db: Session, data: DoctorCreate) -> Doctor:
    ensure_unique_license(db, data.license_number)

    if data.user_id:
        user = db.query(User).filter(User.id == data.user_id).first()
        if not user:
            raise NotFound("User not found")
        if user.role != UserRole.DOCTOR.value:
            raise ValidationFailed("Linked account must have the doctor role")
        if db.query(Doctor).filter(Doctor.user_id == user.id).first():
            raise Conflict("Doctor profile already exists for this account")

    doctor = Doctor(**data.model_dump())
    db.add(doctor)
    db.flush()
    return doctor


def update_doctor(db: Session, doctor: Doctor, data: DoctorUpdate) -> Doctor:
    updates = data.model_dump(exclude_unset=True)
    reject_required_nulls(Doctor, updates)
    if updates.get("license_number"):
        ensure_unique_license(db, updates["license_number"], exclude_id=doctor.id)
    for key, value in updates.items():
        setattr(doctor, key, value)
    doctor.updated_at = datetime.now()
    db.flush()
    return doctor


def search_doctors(db: Session, search: Optional[str], specialization: Optional[str], limit: int, offset: int):
    query = db.query(Doctor)
    if specialization:
        query = query.filter(Doctor.specialization.ilike(f"%{specialization}%"))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Doctor.first_name.ilike(pattern),
            Doctor.last_name.ilike(pattern),
            Doctor.email.ilike(pattern)
        ))
    total = query.count()
    doctors = query.order_by(Doctor.created_at.desc()).offset(offset).limit(limit).all()
    return doctors, total

# ==================== API ENDPOINTS ====================

@router.post("", response_model=DoctorResponse, status_code=201)
async def register_doctor(
    request: DoctorCreate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_DOCTORS)),
    db: Session = Depends(get_db)
):
    """
    📝 DOCTOR ONBOARDING (admin / sub-admin with doctor edit rights)
    """
    doctor = create_doctor(db, request)
    log_action(db, auth.user_id, "DOCTOR_REGISTERED", "doctor", doctor.id, {
        "specialization": doctor.specialization,
        "license_number": doctor.license_number
    })
    db.commit()
    db.refresh(doctor)

    logger.info(f"Doctor registered: {doctor.id} ({doctor.specialization})")
    return doctor


@router.get("", response_model=DoctorListResponse)
async def list_doctors(
    search: Optional[str] = None,
    specialization: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    doctors, total = search_doctors(db, search, specialization, limit, offset)
    return {"doctors": doctors, "total": total}


@router.get("/{doctor_id}", response_model=DoctorResponse)
async def get_doctor(
    doctor_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    return get_doctor_or_404(db, doctor_id)


@router.put("/{doctor_id}", response_model=DoctorResponse)
async def edit_doctor(
    doctor_id: str,
    request: DoctorUpdate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_DOCTORS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    doctor = get_doctor_or_404(db, doctor_id)
    if auth.role == UserRole.DOCTOR and doctor.id != auth.profile_id:
        raise PermissionDenied("Doctors can only edit their own profile")

    update_doctor(db, doctor, request)
    log_action(db, auth.user_id, "DOCTOR_UPDATED", "doctor", doctor.id,
               {"fields": sorted(request.model_dump(exclude_unset=True).keys())})
    db.commit()
    db.refresh(doctor)
    return doctor


@router.delete("/{doctor_id}", status_code=204)
async def delete_doctor(
    doctor_id: str,
    auth: AuthContext = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db)
):
    doctor = get_doctor_or_404(db, doctor_id)
    if db.query(Appointment).filter(Appointment.doctor_id == doctor.id).count():
        raise Conflict("Doctor has appointments and cannot be deleted")

    db.delete(doctor)
    log_action(db, auth.user_id, "DOCTOR_DELETED", "doctor", doctor_id, {})
    db.commit()
