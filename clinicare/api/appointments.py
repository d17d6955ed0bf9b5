from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, joinedload

from ..database.connection import get_db
from ..database.models import (
    Appointment, AppointmentStatus, AppointmentType, Doctor, Patient,
    NotificationType, SessionStatus, UserRole
)
from ..errors import ClinicError, Conflict, NotFound, PermissionDenied
from ..utils import to_naive
from .auth import AuthContext, Capability, log_action, require_access
from .billing import create_bill
from .notifications import notify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["Appointments"])

MAX_DURATION_MINUTES = 480

# Statuses that hold a doctor's time slot
ACTIVE_STATUSES = (
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.CONFIRMED.value,
    AppointmentStatus.IN_PROGRESS.value,
)

# ==================== PYDANTIC MODELS ====================

class AppointmentCreate(BaseModel):
    patient_id: str
    doctor_id: str
    appointment_date: datetime
    duration: int = Field(..., gt=0, le=MAX_DURATION_MINUTES, description="Minutes")
    type: AppointmentType = AppointmentType.CONSULTATION
    status: Optional[AppointmentStatus] = None
    notes: Optional[str] = None
    symptoms: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2,
                                     description="Staff override of the consultation fee")


class AppointmentUpdate(BaseModel):
    appointment_date: Optional[datetime] = None
    duration: Optional[int] = Field(None, gt=0, le=MAX_DURATION_MINUTES)
    status: Optional[AppointmentStatus] = None
    type: Optional[AppointmentType] = None
    notes: Optional[str] = None
    symptoms: Optional[str] = None
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None


class PatientSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    first_name: str
    last_name: str


class DoctorSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    first_name: str
    last_name: str
    specialization: str
    consultation_fee: Decimal


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    doctor_id: str
    appointment_date: datetime
    duration: int
    status: AppointmentStatus
    type: AppointmentType
    notes: Optional[str] = None
    symptoms: Optional[str] = None
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    patient: Optional[PatientSummary] = None
    doctor: Optional[DoctorSummary] = None


class AppointmentListResponse(BaseModel):
    appointments: List[AppointmentResponse]
    total: int

# ==================== HELPER FUNCTIONS ====================

def get_appointment_or_404(db: Session, appointment_id: str) -> Appointment:
    appointment = db.query(Appointment).options(
        joinedload(Appointment.patient),
        joinedload(Appointment.doctor)
    ).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFound("Appointment not found")
    return appointment


def find_overlapping_appointment(
    db: Session,
    doctor_id: str,
    start: datetime,
    duration: int,
    exclude_id: Optional[str] = None
) -> Optional[Appointment]:
    """First active appointment of the doctor overlapping [start, start + duration)."""
    end = start + timedelta(minutes=duration)
    query = db.query(Appointment).filter(
        and_(
            Appointment.doctor_id == doctor_id,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.appointment_date < end,
            Appointment.appointment_date > start - timedelta(minutes=MAX_DURATION_MINUTES)
        )
    )
    if exclude_id:
        query = query.filter(Appointment.id != exclude_id)

    for other in query.order_by(Appointment.appointment_date).all():
        if other.appointment_date + timedelta(minutes=other.duration) > start:
            return other
    return None


def ensure_slot_free(db: Session, doctor_id: str, start: datetime, duration: int, exclude_id: Optional[str] = None):
    clash = find_overlapping_appointment(db, doctor_id, start, duration, exclude_id)
    if clash:
        raise Conflict(
            f"Doctor already has an appointment at {clash.appointment_date.isoformat()} "
            f"for {clash.duration} minutes"
        )


def create_appointment(db: Session, data: AppointmentCreate) -> Appointment:
    """
    Book an appointment and raise its bill.

    The bill amount is ``data.price`` when given, else the doctor's fee. A
    failure to bill is logged and does not undo the booking.
    """
    patient = db.query(Patient).filter(Patient.id == data.patient_id).first()
    if not patient:
        raise NotFound("Patient not found")
    doctor = db.query(Doctor).filter(Doctor.id == data.doctor_id).first()
    if not doctor:
        raise NotFound("Doctor not found")

    appointment_date = to_naive(data.appointment_date)
    status = (data.status or AppointmentStatus.SCHEDULED).value
    if status in ACTIVE_STATUSES:
        ensure_slot_free(db, doctor.id, appointment_date, data.duration)

    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_date=appointment_date,
        duration=data.duration,
        type=data.type.value,
        status=status,
        notes=data.notes,
        symptoms=data.symptoms
    )
    db.add(appointment)
    db.flush()

    amount = data.price if data.price is not None else doctor.consultation_fee
    try:
        create_bill(
            db,
            appointment_id=appointment.id,
            amount=amount,
            due_date=appointment_date
        )
    except ClinicError as e:
        logger.error(f"Failed to create bill for appointment {appointment.id}: {e.message}")

    notify(
        db,
        patient.user_id,
        NotificationType.APPOINTMENT,
        "Appointment booked",
        f"Your {appointment.type} with Dr. {doctor.first_name} {doctor.last_name} is on "
        f"{appointment.appointment_date.strftime('%d %b %Y, %I:%M %p')}.",
        related_entity_type="appointment",
        related_entity_id=appointment.id,
        sms=True
    )
    return appointment


def update_appointment(db: Session, appointment: Appointment, data: AppointmentUpdate) -> Appointment:
    """Partial update. Any status may be set; only the time slot is guarded."""
    updates = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if "appointment_date" in updates:
        updates["appointment_date"] = to_naive(updates["appointment_date"])

    new_date = updates.get("appointment_date", appointment.appointment_date)
    new_duration = updates.get("duration", appointment.duration)
    new_status = updates["status"].value if "status" in updates else appointment.status

    slot_changed = "appointment_date" in updates or "duration" in updates
    reactivated = new_status in ACTIVE_STATUSES and appointment.status not in ACTIVE_STATUSES
    if new_status in ACTIVE_STATUSES and (slot_changed or reactivated):
        ensure_slot_free(db, appointment.doctor_id, new_date, new_duration, exclude_id=appointment.id)

    for key, value in updates.items():
        if isinstance(value, (AppointmentStatus, AppointmentType)):
            value = value.value
        setattr(appointment, key, value)

    appointment.updated_at = datetime.now()
    db.flush()
    return appointment


def cancel_appointment(db: Session, appointment: Appointment) -> Appointment:
    """Cancel regardless of the current status; open video sessions go with it."""
    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.updated_at = datetime.now()

    for session in appointment.sessions:
        if session.status != SessionStatus.COMPLETED.value:
            session.status = SessionStatus.CANCELLED.value
            session.updated_at = datetime.now()

    db.flush()
    return appointment


def query_appointments(
    db: Session,
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
    on_date: Optional[date] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
):
    query = db.query(Appointment).join(Patient, Appointment.patient_id == Patient.id).join(
        Doctor, Appointment.doctor_id == Doctor.id
    ).options(
        joinedload(Appointment.patient),
        joinedload(Appointment.doctor)
    )

    if patient_id:
        query = query.filter(Appointment.patient_id == patient_id)
    if doctor_id:
        query = query.filter(Appointment.doctor_id == doctor_id)
    if status:
        query = query.filter(Appointment.status == status.value)
    if on_date:
        day_start = datetime.combine(on_date, time.min)
        query = query.filter(
            Appointment.appointment_date >= day_start,
            Appointment.appointment_date < day_start + timedelta(days=1)
        )
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Patient.first_name.ilike(pattern),
            Patient.last_name.ilike(pattern),
            Doctor.first_name.ilike(pattern),
            Doctor.last_name.ilike(pattern)
        ))

    total = query.count()
    appointments = query.order_by(Appointment.appointment_date.desc()).offset(offset).limit(limit).all()
    return appointments, total


def ensure_appointment_access(auth: AuthContext, appointment: Appointment):
    if auth.role == UserRole.PATIENT and appointment.patient_id != auth.profile_id:
        raise PermissionDenied("You can only access your own appointments")
    if auth.role == UserRole.DOCTOR and appointment.doctor_id != auth.profile_id:
        raise PermissionDenied("You can only access your own appointments")

# ==================== API ENDPOINTS ====================

@router.post("", response_model=AppointmentResponse, status_code=201)
async def book_appointment(
    request: AppointmentCreate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    📅 BOOK APPOINTMENT

    - Validates patient and doctor
    - Rejects overlapping bookings for the doctor
    - Raises the bill (doctor's fee unless staff override the price)
    - Notifies the patient
    """
    if auth.role == UserRole.PATIENT and request.patient_id != auth.profile_id:
        raise PermissionDenied("Patients can only book appointments for themselves")
    if auth.role == UserRole.DOCTOR and request.doctor_id != auth.profile_id:
        raise PermissionDenied("Doctors can only book appointments with themselves")
    if request.price is not None and not auth.is_staff:
        raise PermissionDenied("Only administrators can override the appointment price")

    appointment = create_appointment(db, request)
    log_action(db, auth.user_id, "APPOINTMENT_BOOKED", "appointment", appointment.id, {
        "patient_id": appointment.patient_id,
        "doctor_id": appointment.doctor_id,
        "appointment_date": appointment.appointment_date.isoformat()
    })
    db.commit()

    logger.info(f"Appointment created: {appointment.id}")
    return get_appointment_or_404(db, appointment.id)


@router.get("", response_model=AppointmentListResponse)
async def list_appointments(
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
    date: Optional[date] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_access(Capability.VIEW_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    if auth.role in (UserRole.PATIENT, UserRole.DOCTOR) and not auth.profile_id:
        return {"appointments": [], "total": 0}
    if auth.role == UserRole.PATIENT:
        patient_id = auth.profile_id
    if auth.role == UserRole.DOCTOR:
        doctor_id = auth.profile_id

    appointments, total = query_appointments(
        db, patient_id, doctor_id, status, date, search, limit, offset
    )
    return {"appointments": appointments, "total": total}


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: str,
    auth: AuthContext = Depends(require_access(Capability.VIEW_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    appointment = get_appointment_or_404(db, appointment_id)
    ensure_appointment_access(auth, appointment)
    return appointment


@router.put("/{appointment_id}", response_model=AppointmentResponse)
async def edit_appointment(
    appointment_id: str,
    request: AppointmentUpdate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    appointment = get_appointment_or_404(db, appointment_id)
    ensure_appointment_access(auth, appointment)

    previous_status = appointment.status
    update_appointment(db, appointment, request)
    log_action(db, auth.user_id, "APPOINTMENT_UPDATED", "appointment", appointment.id, {
        "fields": sorted(request.model_dump(exclude_unset=True).keys()),
        "status_from": previous_status,
        "status_to": appointment.status
    })
    db.commit()
    return get_appointment_or_404(db, appointment.id)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment_endpoint(
    appointment_id: str,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    ❌ CANCEL APPOINTMENT (always ends in ``cancelled``)
    """
    appointment = get_appointment_or_404(db, appointment_id)
    ensure_appointment_access(auth, appointment)

    previous_status = appointment.status
    cancel_appointment(db, appointment)

    message = (
        f"Appointment on {appointment.appointment_date.strftime('%d %b %Y, %I:%M %p')} "
        f"has been cancelled."
    )
    for user_id in {appointment.patient.user_id, appointment.doctor.user_id} - {None, auth.user_id}:
        notify(db, user_id, NotificationType.APPOINTMENT, "Appointment cancelled", message,
               related_entity_type="appointment", related_entity_id=appointment.id, sms=True)

    log_action(db, auth.user_id, "APPOINTMENT_CANCELLED", "appointment", appointment.id, {
        "previous_status": previous_status
    })
    db.commit()
    return get_appointment_or_404(db, appointment.id)


@router.delete("/{appointment_id}", status_code=204)
async def delete_appointment(
    appointment_id: str,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS)),
    db: Session = Depends(get_db)
):
    appointment = get_appointment_or_404(db, appointment_id)
    db.delete(appointment)
    log_action(db, auth.user_id, "APPOINTMENT_DELETED", "appointment", appointment_id, {})
    db.commit()
