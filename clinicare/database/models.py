"""
Clinicare - Database Models
One table per entity, related by foreign keys.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Boolean, Numeric, Date, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from .connection import Base
import enum
import uuid


def generate_uuid() -> str:
    return str(uuid.uuid4())


# ============================================
# ENUMS
# ============================================

class UserRole(str, enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SUB_ADMIN = "sub-admin"


class Gender(str, enum.Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class AppointmentType(str, enum.Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    EMERGENCY = "emergency"
    TELEMEDICINE = "telemedicine"


class BillStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationType(str, enum.Enum):
    APPOINTMENT = "appointment"
    BILLING = "billing"
    TELEMEDICINE = "telemedicine"
    SYSTEM = "system"


# ============================================
# USER MANAGEMENT
# ============================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(20))

    role = Column(String(20), default=UserRole.PATIENT.value, nullable=False)  # patient | doctor | admin | sub-admin
    is_active = Column(Boolean, default=True)

    # Sub-admin only
    department = Column(String(100))
    sub_admin_type = Column(String(50))

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    patient_profile = relationship("Patient", back_populates="user", uselist=False)
    doctor_profile = relationship("Doctor", back_populates="user", uselist=False)
    permissions = relationship("SubAdminPermission", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")
    audit_logs = relationship("AuditLog", back_populates="user")


# ============================================
# CLINIC RECORDS
# ============================================

class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), unique=True, nullable=True)

    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), index=True, nullable=False)
    phone = Column(String(20), nullable=False)
    date_of_birth = Column(Date, nullable=False)
    gender = Column(String(10), nullable=False)  # male | female | other
    address = Column(Text, nullable=False)
    emergency_contact = Column(String(100), nullable=False)
    emergency_phone = Column(String(20), nullable=False)

    # Medical free text
    medical_history = Column(Text)
    allergies = Column(Text)
    current_medications = Column(Text)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    user = relationship("User", back_populates="patient_profile")
    appointments = relationship("Appointment", back_populates="patient", passive_deletes=True)
    bills = relationship("Bill", back_populates="patient", passive_deletes=True)


class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), unique=True, nullable=True)

    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), index=True, nullable=False)
    phone = Column(String(20), nullable=False)
    specialization = Column(String(100), index=True, nullable=False)
    license_number = Column(String(50), unique=True, nullable=False)
    experience = Column(Integer, default=0, nullable=False)  # years
    qualification = Column(String(200), nullable=False)
    consultation_fee = Column(Numeric(10, 2), nullable=False)
    availability = Column(String(255), nullable=False)  # e.g. "Mon-Fri 09:00-17:00"
    bio = Column(Text)
    profile_image = Column(String(500))

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    user = relationship("User", back_populates="doctor_profile")
    appointments = relationship("Appointment", back_populates="doctor", passive_deletes=True)


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    patient_id = Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), index=True, nullable=False)
    doctor_id = Column(String(36), ForeignKey("doctors.id", ondelete="CASCADE"), index=True, nullable=False)

    appointment_date = Column(DateTime, index=True, nullable=False)
    duration = Column(Integer, nullable=False)  # minutes
    type = Column(String(20), default=AppointmentType.CONSULTATION.value, nullable=False)
    status = Column(String(20), default=AppointmentStatus.SCHEDULED.value, nullable=False)

    notes = Column(Text)
    symptoms = Column(Text)
    diagnosis = Column(Text)
    prescription = Column(Text)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor", back_populates="appointments")
    bills = relationship("Bill", back_populates="appointment", cascade="all, delete-orphan")
    sessions = relationship("TelemedicineSession", back_populates="appointment", cascade="all, delete-orphan")
    review = relationship("Review", back_populates="appointment", uselist=False, cascade="all, delete-orphan")
    prescriptions = relationship("Prescription", back_populates="appointment", cascade="all, delete-orphan")


# ============================================
# PRESCRIPTIONS
# ============================================

class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    appointment_id = Column(String(36), ForeignKey("appointments.id", ondelete="CASCADE"), index=True, nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), index=True, nullable=False)
    doctor_id = Column(String(36), ForeignKey("doctors.id", ondelete="CASCADE"), index=True, nullable=False)

    medication_name = Column(String(200), nullable=False)
    dosage = Column(String(100), nullable=False)  # e.g. "500 mg"
    frequency = Column(String(100), nullable=False)  # e.g. "twice daily"
    duration = Column(String(100), nullable=False)  # e.g. "7 days"
    instructions = Column(Text)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    appointment = relationship("Appointment", back_populates="prescriptions")
    patient = relationship("Patient")
    doctor = relationship("Doctor")


# ============================================
# BILLING
# ============================================

class Bill(Base):
    __tablename__ = "bills"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    appointment_id = Column(String(36), ForeignKey("appointments.id", ondelete="CASCADE"), index=True, nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), index=True, nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    tax_amount = Column(Numeric(10, 2), default=0, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)  # amount + tax_amount

    status = Column(String(20), default=BillStatus.PENDING.value, nullable=False)
    invoice_number = Column(String(40), unique=True, nullable=False)
    due_date = Column(DateTime, nullable=False)

    payment_method = Column(String(50))
    payment_reference = Column(String(100))
    paid_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    appointment = relationship("Appointment", back_populates="bills")
    patient = relationship("Patient", back_populates="bills")


# ============================================
# TELEMEDICINE
# ============================================

class TelemedicineSession(Base):
    __tablename__ = "telemedicine_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    appointment_id = Column(String(36), ForeignKey("appointments.id", ondelete="CASCADE"), index=True, nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), index=True, nullable=False)
    doctor_id = Column(String(36), ForeignKey("doctors.id", ondelete="CASCADE"), index=True, nullable=False)

    room_id = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), default=SessionStatus.SCHEDULED.value, nullable=False)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    duration = Column(Integer)  # minutes
    recording_url = Column(String(500))
    notes = Column(Text)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    appointment = relationship("Appointment", back_populates="sessions")


# ============================================
# REVIEWS
# ============================================

class Review(Base):
    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    appointment_id = Column(String(36), ForeignKey("appointments.id", ondelete="CASCADE"), unique=True, nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), index=True, nullable=False)
    doctor_id = Column(String(36), ForeignKey("doctors.id", ondelete="CASCADE"), index=True, nullable=False)

    rating = Column(Integer, nullable=False)  # 1-5 overall
    service_quality = Column(Integer)
    communication = Column(Integer)
    wait_time = Column(Integer)
    cleanliness = Column(Integer)
    comment = Column(Text)
    would_recommend = Column(Boolean, default=False)
    is_anonymous = Column(Boolean, default=False)
    is_approved = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    appointment = relationship("Appointment", back_populates="review")
    patient = relationship("Patient")
    doctor = relationship("Doctor")


# ============================================
# ADMINISTRATION
# ============================================

class Department(Base):
    __tablename__ = "departments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    head_doctor_id = Column(String(36), ForeignKey("doctors.id", ondelete="SET NULL"), nullable=True)
    max_staff_capacity = Column(Integer, default=100, nullable=False)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    head_doctor = relationship("Doctor")
    permissions = relationship("SubAdminPermission", back_populates="department")


class SubAdminPermission(Base):
    __tablename__ = "sub_admin_permissions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    department_id = Column(String(36), ForeignKey("departments.id"), nullable=False)

    can_view_patients = Column(Boolean, default=False, nullable=False)
    can_edit_patients = Column(Boolean, default=False, nullable=False)
    can_view_doctors = Column(Boolean, default=False, nullable=False)
    can_edit_doctors = Column(Boolean, default=False, nullable=False)
    can_view_appointments = Column(Boolean, default=False, nullable=False)
    can_edit_appointments = Column(Boolean, default=False, nullable=False)
    can_view_billing = Column(Boolean, default=False, nullable=False)
    can_edit_billing = Column(Boolean, default=False, nullable=False)
    can_view_analytics = Column(Boolean, default=False, nullable=False)
    can_manage_users = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    user = relationship("User", back_populates="permissions")
    department = relationship("Department", back_populates="permissions")


# ============================================
# NOTIFICATIONS & AUDIT
# ============================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    type = Column(String(20), default=NotificationType.SYSTEM.value)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False)

    related_entity_type = Column(String(50), nullable=True)
    related_entity_id = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    user = relationship("User", back_populates="notifications")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(100))
    entity_type = Column(String(50))
    entity_id = Column(String(50))
    details = Column(JSON)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    user = relationship("User", back_populates="audit_logs")
