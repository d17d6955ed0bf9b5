"""
Shared pytest fixtures for all tests.

The app runs against an in-memory SQLite database and the authenticated
caller is swapped per test through ``login_as``.
"""

import os
import tempfile
from datetime import date, datetime, timedelta
from decimal import Decimal

# Ensure test environment before the application reads its configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="clinicare-uploads-")
for key in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER"):
    os.environ.pop(key, None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinicare.api.auth import AuthContext, get_auth_context, hash_password
from clinicare.database.connection import Base, get_db
from clinicare.database.models import (
    Appointment, AppointmentStatus, Bill, BillStatus, Doctor, Patient, User, UserRole
)
from clinicare.main import app as application

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def db():
    """Fresh schema per test; the session is used for seeding and assertions."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def app(db):
    """FastAPI app wired to the test database."""
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


# ============================================================================
# AUTH FIXTURES
# ============================================================================


@pytest.fixture
def login_as(app):
    """Make every following request run as ``user``."""
    def _login(user: User, profile_id=None, capabilities=()):
        auth = AuthContext(
            user_id=user.id,
            email=user.email,
            role=UserRole(user.role),
            profile_id=profile_id,
            capabilities=frozenset(capabilities),
        )
        app.dependency_overrides[get_auth_context] = lambda: auth
        return auth
    return _login


@pytest.fixture
def admin_user(make_user):
    return make_user(UserRole.ADMIN, email="admin@clinicare.io")


@pytest.fixture
def as_admin(login_as, admin_user):
    return login_as(admin_user)


# ============================================================================
# DATA FACTORIES
# ============================================================================


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=UserRole.PATIENT, email=None, phone=None, password="secret-pass"):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@clinicare.io",
            password_hash=hash_password(password),
            first_name="Test",
            last_name=f"User{counter['n']}",
            phone=phone,
            role=role.value,
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_patient(db):
    counter = {"n": 0}

    def _make(user=None, **overrides):
        counter["n"] += 1
        data = {
            "first_name": "Asha",
            "last_name": f"Patel{counter['n']}",
            "email": f"patient{counter['n']}@clinicare.io",
            "phone": "+919800000000",
            "date_of_birth": date(1990, 5, 17),
            "gender": "female",
            "address": "12 MG Road, Pune",
            "emergency_contact": "Ravi Patel",
            "emergency_phone": "+919800000001",
        }
        data.update(overrides)
        patient = Patient(user_id=user.id if user else None, **data)
        db.add(patient)
        db.commit()
        db.refresh(patient)
        return patient
    return _make


@pytest.fixture
def make_doctor(db):
    counter = {"n": 0}

    def _make(user=None, **overrides):
        counter["n"] += 1
        data = {
            "first_name": "Meera",
            "last_name": f"Rao{counter['n']}",
            "email": f"doctor{counter['n']}@clinicare.io",
            "phone": "+919811111111",
            "specialization": "Cardiology",
            "license_number": f"MCI-{1000 + counter['n']}",
            "experience": 10,
            "qualification": "MBBS, MD",
            "consultation_fee": Decimal("500.00"),
            "availability": "Mon-Fri 09:00-17:00",
        }
        data.update(overrides)
        doctor = Doctor(user_id=user.id if user else None, **data)
        db.add(doctor)
        db.commit()
        db.refresh(doctor)
        return doctor
    return _make


@pytest.fixture
def make_appointment(db):
    def _make(patient, doctor, when=None, status=AppointmentStatus.SCHEDULED, duration=30):
        appointment = Appointment(
            patient_id=patient.id,
            doctor_id=doctor.id,
            appointment_date=when or datetime.now() + timedelta(days=1),
            duration=duration,
            type="consultation",
            status=status.value,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment
    return _make


@pytest.fixture
def make_bill(db):
    counter = {"n": 0}

    def _make(appointment, amount, status=BillStatus.PENDING, paid_at=None, tax_amount=Decimal("0.00")):
        counter["n"] += 1
        bill = Bill(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            amount=amount,
            tax_amount=tax_amount,
            total_amount=amount + tax_amount,
            status=status.value,
            invoice_number=f"INV-TEST-{counter['n']:03d}",
            due_date=datetime.now() + timedelta(days=7),
            paid_at=paid_at,
        )
        db.add(bill)
        db.commit()
        db.refresh(bill)
        return bill
    return _make
