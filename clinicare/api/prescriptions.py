from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..database.connection import get_db
from ..database.models import Appointment, AppointmentStatus, NotificationType, Prescription, UserRole
from ..errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from ..utils import reject_required_nulls
from .auth import AuthContext, Capability, log_action, require_access
from .notifications import notify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/prescriptions", tags=["Prescriptions"])

# ==================== PYDANTIC MODELS ====================

class PrescriptionCreate(BaseModel):
    appointment_id: str
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    medication_name: str = Field(..., min_length=1, max_length=200)
    dosage: str = Field(..., min_length=1, max_length=100)
    frequency: str = Field(..., min_length=1, max_length=100)
    duration: str = Field(..., min_length=1, max_length=100)
    instructions: Optional[str] = None


class PrescriptionUpdate(BaseModel):
    medication_name: Optional[str] = Field(None, min_length=1, max_length=200)
    dosage: Optional[str] = Field(None, min_length=1, max_length=100)
    frequency: Optional[str] = Field(None, min_length=1, max_length=100)
    duration: Optional[str] = Field(None, min_length=1, max_length=100)
    instructions: Optional[str] = None


class PrescriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    patient_id: str
    doctor_id: str
    medication_name: str
    dosage: str
    frequency: str
    duration: str
    instructions: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PrescriptionListResponse(BaseModel):
    prescriptions: List[PrescriptionResponse]
    total: int

# ==================== HELPER FUNCTIONS ====================

def get_prescription_or_404(db: Session, prescription_id: str) -> Prescription:
    prescription = db.query(Prescription).filter(Prescription.id == prescription_id).first()
    if not prescription:
        raise NotFound("Prescription not found")
    return prescription


def create_prescription(db: Session, data: PrescriptionCreate) -> Prescription:
    """Prescribe against an appointment; patient and doctor come from the appointment."""
    appointment = db.query(Appointment).filter(Appointment.id == data.appointment_id).first()
    if not appointment:
        raise NotFound("Appointment not found")
    if data.patient_id and data.patient_id != appointment.patient_id:
        raise ValidationFailed("Prescription patient does not match the appointment's patient")
    if data.doctor_id and data.doctor_id != appointment.doctor_id:
        raise ValidationFailed("Prescription doctor does not match the appointment's doctor")
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise Conflict("Cannot prescribe for a cancelled appointment")

    prescription = Prescription(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        doctor_id=appointment.doctor_id,
        **data.model_dump(exclude={"appointment_id", "patient_id", "doctor_id"})
    )
    db.add(prescription)
    db.flush()
    return prescription


def update_prescription(db: Session, prescription: Prescription, data: PrescriptionUpdate) -> Prescription:
    updates = data.model_dump(exclude_unset=True)
    reject_required_nulls(Prescription, updates)
    for key, value in updates.items():
        setattr(prescription, key, value)
    prescription.updated_at = datetime.now()
    db.flush()
    return prescription


def ensure_prescription_access(auth: AuthContext, prescription: Prescription):
    if auth.role == UserRole.PATIENT and prescription.patient_id != auth.profile_id:
        raise PermissionDenied("You can only view your own prescriptions")
    if auth.role == UserRole.DOCTOR and prescription.doctor_id != auth.profile_id:
        raise PermissionDenied("You can only access prescriptions you issued")

# ==================== API ENDPOINTS ====================

@router.post("", response_model=PrescriptionResponse, status_code=201)
async def create_prescription_endpoint(
    request: PrescriptionCreate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    💊 Prescribe medication for an appointment
    """
    prescription = create_prescription(db, request)
    ensure_prescription_access(auth, prescription)

    notify(
        db,
        prescription.appointment.patient.user_id,
        NotificationType.APPOINTMENT,
        "New prescription",
        f"{prescription.medication_name} {prescription.dosage}, {prescription.frequency} for {prescription.duration}.",
        related_entity_type="prescription",
        related_entity_id=prescription.id
    )
    log_action(db, auth.user_id, "PRESCRIPTION_CREATED", "prescription", prescription.id, {
        "appointment_id": prescription.appointment_id,
        "medication_name": prescription.medication_name
    })
    db.commit()
    db.refresh(prescription)

    logger.info(f"Prescription {prescription.id} issued for appointment {prescription.appointment_id}")
    return prescription


@router.get("", response_model=PrescriptionListResponse)
async def list_prescriptions(
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_access(Capability.VIEW_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    if auth.role in (UserRole.PATIENT, UserRole.DOCTOR) and not auth.profile_id:
        return {"prescriptions": [], "total": 0}
    if auth.role == UserRole.PATIENT:
        patient_id = auth.profile_id
    if auth.role == UserRole.DOCTOR:
        doctor_id = auth.profile_id

    query = db.query(Prescription)
    if patient_id:
        query = query.filter(Prescription.patient_id == patient_id)
    if doctor_id:
        query = query.filter(Prescription.doctor_id == doctor_id)
    if appointment_id:
        query = query.filter(Prescription.appointment_id == appointment_id)

    total = query.count()
    prescriptions = query.order_by(Prescription.created_at.desc()).offset(offset).limit(limit).all()
    return {"prescriptions": prescriptions, "total": total}


@router.get("/{prescription_id}", response_model=PrescriptionResponse)
async def get_prescription(
    prescription_id: str,
    auth: AuthContext = Depends(require_access(Capability.VIEW_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    prescription = get_prescription_or_404(db, prescription_id)
    ensure_prescription_access(auth, prescription)
    return prescription


@router.put("/{prescription_id}", response_model=PrescriptionResponse)
async def update_prescription_endpoint(
    prescription_id: str,
    request: PrescriptionUpdate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    prescription = get_prescription_or_404(db, prescription_id)
    ensure_prescription_access(auth, prescription)

    update_prescription(db, prescription, request)
    log_action(db, auth.user_id, "PRESCRIPTION_UPDATED", "prescription", prescription.id,
               {"fields": sorted(request.model_dump(exclude_unset=True).keys())})
    db.commit()
    db.refresh(prescription)
    return prescription


@router.delete("/{prescription_id}", status_code=204)
async def delete_prescription(
    prescription_id: str,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    prescription = get_prescription_or_404(db, prescription_id)
    ensure_prescription_access(auth, prescription)

    db.delete(prescription)
    log_action(db, auth.user_id, "PRESCRIPTION_DELETED", "prescription", prescription_id, {})
    db.commit()
