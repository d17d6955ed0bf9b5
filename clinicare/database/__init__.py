# Database Package - Centralized imports

from .connection import (
    engine,
    Base,
    SessionLocal,
    get_db,
)

from .models import (
    # Enums
    UserRole,
    Gender,
    AppointmentStatus,
    AppointmentType,
    BillStatus,
    SessionStatus,
    NotificationType,

    # User & Auth
    User,
    AuditLog,

    # Clinic records
    Patient,
    Doctor,
    Appointment,
    Bill,
    TelemedicineSession,
    Review,
    Prescription,

    # Administration
    Department,
    SubAdminPermission,
    Notification,
)

__all__ = [
    # Connection
    "engine",
    "Base",
    "SessionLocal",
    "get_db",

    # Enums
    "UserRole",
    "Gender",
    "AppointmentStatus",
    "AppointmentType",
    "BillStatus",
    "SessionStatus",
    "NotificationType",

    # User & Auth
    "User",
    "AuditLog",

    # Clinic records
    "Patient",
    "Doctor",
    "Appointment",
    "Bill",
    "TelemedicineSession",
    "Review",
    "Prescription",

    # Administration
    "Department",
    "SubAdminPermission",
    "Notification",
]
