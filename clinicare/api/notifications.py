from datetime import datetime
from enum import Enum
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session, joinedload
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from ..config import TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER
from ..database.connection import get_db
from ..database.models import Appointment, AppointmentStatus, Notification, NotificationType, User, UserRole
from ..errors import Conflict, NotFound, PermissionDenied
from .auth import AuthContext, Capability, get_auth_context, log_action, require_access

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


class ReminderType(str, Enum):
    DAY_BEFORE = "24h"
    TWO_HOURS = "2h"
    HALF_HOUR = "30min"


REMINDER_LEAD_TIMES = {
    ReminderType.DAY_BEFORE: "in 24 hours",
    ReminderType.TWO_HOURS: "in 2 hours",
    ReminderType.HALF_HOUR: "in 30 minutes",
}

# ==================== PYDANTIC MODELS ====================

class ReminderRequest(BaseModel):
    appointment_id: str
    reminder_type: ReminderType


class ReminderResponse(BaseModel):
    success: bool
    notification_id: Optional[int] = None

# ==================== HELPER FUNCTIONS ====================

def serialize_notification(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "is_read": notification.is_read,
        "related_entity_type": notification.related_entity_type,
        "related_entity_id": notification.related_entity_id,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def send_sms(phone: str, body: str) -> bool:
    """SMS via Twilio. Returns False when not configured or on delivery errors."""
    if not all([TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER]):
        logger.debug("Twilio credentials not configured, SMS skipped")
        return False

    try:
        client = Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
        message = client.messages.create(
            body=body,
            from_=TWILIO_PHONE_NUMBER,
            to=phone
        )
        logger.info(f"SMS sent: {message.sid}")
        return True
    except TwilioRestException as e:
        logger.warning(f"SMS delivery failed: {e}")
        return False
    except Exception as e:
        logger.error(f"SMS exception: {e}")
        return False


def notify(
    db: Session,
    user_id: Optional[str],
    notification_type: NotificationType,
    title: str,
    message: str,
    related_entity_type: Optional[str] = None,
    related_entity_id: Optional[str] = None,
    sms: bool = False
) -> Optional[Notification]:
    """
    Create an in-app notification for ``user_id`` and optionally text the user.
    Records without a linked account are silently skipped. The caller commits.
    """
    if not user_id:
        return None

    notification = Notification(
        user_id=user_id,
        type=notification_type.value,
        title=title,
        message=message,
        is_read=False,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        created_at=datetime.now()
    )
    db.add(notification)

    if sms:
        user = db.query(User).filter(User.id == user_id).first()
        if user and user.phone:
            send_sms(user.phone, f"{title}\n{message}")

    return notification


def send_appointment_reminder(db: Session, appointment: Appointment, reminder_type: ReminderType) -> Optional[Notification]:
    """In-app plus SMS reminder to the patient of an upcoming appointment."""
    if appointment.status not in (AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value):
        raise Conflict(f"Cannot send a reminder for a {appointment.status} appointment")

    doctor = appointment.doctor
    message = (
        f"Your {appointment.type} with Dr. {doctor.first_name} {doctor.last_name} is "
        f"{REMINDER_LEAD_TIMES[reminder_type]}, on "
        f"{appointment.appointment_date.strftime('%d %b %Y at %I:%M %p')}."
    )
    notification = notify(
        db,
        appointment.patient.user_id,
        NotificationType.APPOINTMENT,
        "Appointment reminder",
        message,
        related_entity_type="appointment",
        related_entity_id=appointment.id,
        sms=True
    )
    if notification is not None:
        db.flush()
    return notification

# ==================== API ENDPOINTS ====================

@router.get("", response_model=dict)
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    """
    🔔 Notifications of the current user, newest first
    """
    query = db.query(Notification).filter(Notification.user_id == auth.user_id)
    if unread_only:
        query = query.filter(Notification.is_read == False)  # noqa: E712

    total = query.count()
    unread = db.query(Notification).filter(
        Notification.user_id == auth.user_id,
        Notification.is_read == False  # noqa: E712
    ).count()
    rows = query.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()

    return {
        "notifications": [serialize_notification(n) for n in rows],
        "total": total,
        "unread_count": unread
    }


@router.post("/{notification_id}/mark-read", response_model=dict)
async def mark_notification_read(
    notification_id: int,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == auth.user_id
    ).first()
    if not notification:
        raise NotFound("Notification not found")

    notification.is_read = True
    db.commit()
    return {"status": "success", "notification_id": notification_id}


@router.post("/mark-all-read", response_model=dict)
async def mark_all_read(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    updated = db.query(Notification).filter(
        Notification.user_id == auth.user_id,
        Notification.is_read == False  # noqa: E712
    ).update({"is_read": True}, synchronize_session=False)
    db.commit()
    return {"status": "success", "updated": updated}


@router.post("/appointment-reminder", response_model=ReminderResponse)
async def appointment_reminder(
    request: ReminderRequest,
    auth: AuthContext = Depends(require_access(Capability.EDIT_APPOINTMENTS, UserRole.DOCTOR)),
    db: Session = Depends(get_db)
):
    """
    ⏰ Remind a patient of an upcoming appointment (24h / 2h / 30min ahead)
    """
    appointment = db.query(Appointment).options(
        joinedload(Appointment.patient),
        joinedload(Appointment.doctor)
    ).filter(Appointment.id == request.appointment_id).first()
    if not appointment:
        raise NotFound("Appointment not found")
    if auth.role == UserRole.DOCTOR and appointment.doctor_id != auth.profile_id:
        raise PermissionDenied("You can only send reminders for your own appointments")

    notification = send_appointment_reminder(db, appointment, request.reminder_type)
    if notification is None:
        logger.info(f"Reminder for appointment {appointment.id} skipped, patient has no account")
        return {"success": False, "notification_id": None}

    log_action(db, auth.user_id, "REMINDER_SENT", "appointment", appointment.id, {
        "reminder_type": request.reminder_type.value
    })
    db.commit()
    return {"success": True, "notification_id": notification.id}
