from datetime import datetime
from typing import List, Optional
from urllib.parse import urlencode
import logging
import secrets
import string
import time

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..config import TELEMEDICINE_BASE_URL
from ..database.connection import get_db
from ..database.models import (
    Appointment, AppointmentStatus, NotificationType, SessionStatus, TelemedicineSession, UserRole
)
from ..errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from ..utils import to_naive
from .auth import AuthContext, Capability, log_action, require_access
from .notifications import notify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telemedicine/sessions", tags=["Telemedicine"])

ROOM_ALPHABET = string.ascii_lowercase + string.digits

# ==================== PYDANTIC MODELS ====================

class SessionCreate(BaseModel):
    appointment_id: str
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None


class SessionUpdate(BaseModel):
    status: Optional[SessionStatus] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    recording_url: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    patient_id: str
    doctor_id: str
    room_id: str
    status: SessionStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    recording_url: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int


class JoinSessionResponse(BaseModel):
    room_id: str
    token: str
    session_url: str

# ==================== HELPER FUNCTIONS ====================

def generate_room_id() -> str:
    """room_<epoch ms>_<9 base36 chars>"""
    suffix = "".join(secrets.choice(ROOM_ALPHABET) for _ in range(9))
    return f"room_{int(time.time() * 1000)}_{suffix}"


def build_session_url(room_id: str, token: str) -> str:
    return f"{TELEMEDICINE_BASE_URL}/room/{room_id}?{urlencode({'token': token})}"


def minutes_between(start: datetime, end: datetime) -> int:
    return max(int((end - start).total_seconds() // 60), 0)


def get_session_or_404(db: Session, session_id: str) -> TelemedicineSession:
    session = db.query(TelemedicineSession).filter(TelemedicineSession.id == session_id).first()
    if not session:
        raise NotFound("Telemedicine session not found")
    return session


def create_session(
    db: Session,
    appointment_id: str,
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None
) -> TelemedicineSession:
    """Open a video session bound to an appointment; participants come from the appointment."""
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFound("Appointment not found")
    if patient_id and patient_id != appointment.patient_id:
        raise ValidationFailed("Session patient does not match the appointment's patient")
    if doctor_id and doctor_id != appointment.doctor_id:
        raise ValidationFailed("Session doctor does not match the appointment's doctor")
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise Conflict("Cannot open a session for a cancelled appointment")

    session = TelemedicineSession(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        doctor_id=appointment.doctor_id,
        room_id=generate_room_id(),
        status=SessionStatus.SCHEDULED.value
    )
    db.add(session)
    db.flush()
    return session


def update_session(db: Session, session: TelemedicineSession, data: SessionUpdate) -> TelemedicineSession:
    updates = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}

    if "status" in updates:
        session.status = updates["status"].value
    if "start_time" in updates:
        session.start_time = to_naive(updates["start_time"])
    if "end_time" in updates:
        session.end_time = to_naive(updates["end_time"])
    if "recording_url" in updates:
        session.recording_url = updates["recording_url"]
    if "notes" in updates:
        session.notes = updates["notes"]

    if session.start_time and session.end_time:
        if session.end_time < session.start_time:
            raise ValidationFailed("Session end time precedes its start time")
        session.duration = minutes_between(session.start_time, session.end_time)

    session.updated_at = datetime.now()
    db.flush()
    return session


def join_session(db: Session, session: TelemedicineSession) -> dict:
    """
    Hand out connection details for the video room and mark the session active.
    The room provider behind the URL is opaque to this service.
    """
    if session.status == SessionStatus.CANCELLED.value:
        raise Conflict("Session has been cancelled")
    if session.status == SessionStatus.COMPLETED.value:
        raise Conflict("Session has already been completed")

    token = secrets.token_urlsafe(24)
    if session.status != SessionStatus.ACTIVE.value:
        session.status = SessionStatus.ACTIVE.value
    if not session.start_time:
        session.start_time = datetime.now()
    session.updated_at = datetime.now()
    db.flush()

    return {
        "room_id": session.room_id,
        "token": token,
        "session_url": build_session_url(session.room_id, token)
    }


def end_session(db: Session, session: TelemedicineSession) -> TelemedicineSession:
    if session.status == SessionStatus.CANCELLED.value:
        raise Conflict("Session has been cancelled")
    if session.status == SessionStatus.COMPLETED.value:
        return session

    now = datetime.now()
    session.status = SessionStatus.COMPLETED.value
    session.start_time = session.start_time or now
    session.end_time = now
    session.duration = minutes_between(session.start_time, session.end_time)
    session.updated_at = now

    appointment = session.appointment
    if appointment and appointment.status != AppointmentStatus.CANCELLED.value:
        appointment.status = AppointmentStatus.COMPLETED.value
        appointment.updated_at = now

    db.flush()
    return session


def ensure_session_access(auth: AuthContext, session: TelemedicineSession):
    if auth.role == UserRole.PATIENT and session.patient_id != auth.profile_id:
        raise PermissionDenied("You are not a participant of this session")
    if auth.role == UserRole.DOCTOR and session.doctor_id != auth.profile_id:
        raise PermissionDenied("You are not a participant of this session")

# ==================== API ENDPOINTS ====================

@router.post("", response_model=SessionResponse, status_code=201)
async def create_session_endpoint(
    request: SessionCreate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    session = create_session(db, request.appointment_id, request.patient_id, request.doctor_id)
    ensure_session_access(auth, session)

    notify(
        db,
        session.appointment.patient.user_id,
        NotificationType.TELEMEDICINE,
        "Video consultation scheduled",
        "A video room has been set up for your appointment.",
        related_entity_type="telemedicine_session",
        related_entity_id=session.id
    )
    log_action(db, auth.user_id, "SESSION_CREATED", "telemedicine_session", session.id, {
        "appointment_id": session.appointment_id,
        "room_id": session.room_id
    })
    db.commit()
    db.refresh(session)

    logger.info(f"Telemedicine session {session.id} created in room {session.room_id}")
    return session


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    status: Optional[SessionStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_access(Capability.VIEW_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    if auth.role in (UserRole.PATIENT, UserRole.DOCTOR) and not auth.profile_id:
        return {"sessions": [], "total": 0}
    if auth.role == UserRole.PATIENT:
        patient_id = auth.profile_id
    if auth.role == UserRole.DOCTOR:
        doctor_id = auth.profile_id

    query = db.query(TelemedicineSession)
    if patient_id:
        query = query.filter(TelemedicineSession.patient_id == patient_id)
    if doctor_id:
        query = query.filter(TelemedicineSession.doctor_id == doctor_id)
    if status:
        query = query.filter(TelemedicineSession.status == status.value)

    total = query.count()
    sessions = query.order_by(TelemedicineSession.created_at.desc()).offset(offset).limit(limit).all()
    return {"sessions": sessions, "total": total}


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    auth: AuthContext = Depends(require_access(Capability.VIEW_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, session_id)
    ensure_session_access(auth, session)
    return session


@router.put("/{session_id}", response_model=SessionResponse)
async def update_session_endpoint(
    session_id: str,
    request: SessionUpdate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, session_id)
    ensure_session_access(auth, session)

    update_session(db, session, request)
    db.commit()
    db.refresh(session)
    return session


@router.post("/{session_id}/join", response_model=JoinSessionResponse)
async def join_session_endpoint(
    session_id: str,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.PATIENT, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    🎥 JOIN VIDEO ROOM
    """
    session = get_session_or_404(db, session_id)
    ensure_session_access(auth, session)

    details = join_session(db, session)
    log_action(db, auth.user_id, "SESSION_JOINED", "telemedicine_session", session.id, {"role": auth.role.value})
    db.commit()
    return details


@router.post("/{session_id}/end", response_model=SessionResponse)
async def end_session_endpoint(
    session_id: str,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, session_id)
    ensure_session_access(auth, session)

    end_session(db, session)
    log_action(db, auth.user_id, "SESSION_ENDED", "telemedicine_session", session.id, {"duration": session.duration})
    db.commit()
    db.refresh(session)
    return session


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS)),
    db: Session = Depends(get_db)
):
    session = get_session_or_404(db, session_id)
    db.delete(session)
    log_action(db, auth.user_id, "SESSION_DELETED", "telemedicine_session", session_id, {})
    db.commit()
