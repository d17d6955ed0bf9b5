"""
Tests for booking, double-booking protection and cancellation
"""

from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import status

from clinicare.database.models import (
    AppointmentStatus, Bill, SessionStatus, TelemedicineSession, UserRole
)


def _slot(days: int = 1, hour: int = 10, minute: int = 0) -> datetime:
    return (datetime.now() + timedelta(days=days)).replace(hour=hour, minute=minute, second=0, microsecond=0)


def _booking(patient, doctor, when: datetime, duration: int = 30, **extra) -> dict:
    payload = {
        "patient_id": patient.id,
        "doctor_id": doctor.id,
        "appointment_date": when.isoformat(),
        "duration": duration,
        "type": "consultation",
    }
    payload.update(extra)
    return payload


class TestBooking:

    def test_new_appointment_is_scheduled_and_billed(self, client, db, as_admin, make_patient, make_doctor):
        patient = make_patient()
        doctor = make_doctor(consultation_fee=Decimal("650.00"))

        response = client.post("/api/appointments", json=_booking(patient, doctor, _slot()))

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == "scheduled"
        assert data["doctor"]["specialization"] == doctor.specialization

        bills = db.query(Bill).filter(Bill.appointment_id == data["id"]).all()
        assert len(bills) == 1
        assert bills[0].total_amount == Decimal("650.00")
        assert bills[0].status == "pending"

    def test_staff_price_override_is_billed(self, client, db, as_admin, make_patient, make_doctor):
        response = client.post(
            "/api/appointments",
            json=_booking(make_patient(), make_doctor(), _slot(), price="300.00")
        )

        bill = db.query(Bill).filter(Bill.appointment_id == response.json()["id"]).one()
        assert bill.amount == Decimal("300.00")

    def test_explicit_status_is_kept(self, client, as_admin, make_patient, make_doctor):
        response = client.post(
            "/api/appointments",
            json=_booking(make_patient(), make_doctor(), _slot(), status="confirmed")
        )
        assert response.json()["status"] == "confirmed"

    def test_unknown_patient_is_404(self, client, as_admin, make_doctor):
        payload = {
            "patient_id": "missing",
            "doctor_id": make_doctor().id,
            "appointment_date": _slot().isoformat(),
            "duration": 30,
        }
        response = client.post("/api/appointments", json=payload)
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"] == "Patient not found"

    def test_zero_duration_is_rejected(self, client, as_admin, make_patient, make_doctor):
        response = client.post("/api/appointments", json=_booking(make_patient(), make_doctor(), _slot(), duration=0))
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_malformed_date_is_rejected(self, client, as_admin, make_patient, make_doctor):
        payload = _booking(make_patient(), make_doctor(), _slot())
        payload["appointment_date"] = "next tuesday"
        response = client.post("/api/appointments", json=payload)
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestDoubleBooking:

    def test_overlapping_slot_is_conflict(self, client, as_admin, make_patient, make_doctor):
        doctor = make_doctor()
        first = client.post("/api/appointments", json=_booking(make_patient(), doctor, _slot(hour=10), duration=60))
        assert first.status_code == status.HTTP_201_CREATED

        clash = client.post("/api/appointments", json=_booking(make_patient(), doctor, _slot(hour=10, minute=30)))

        assert clash.status_code == status.HTTP_409_CONFLICT

    def test_back_to_back_slots_are_fine(self, client, as_admin, make_patient, make_doctor):
        doctor = make_doctor()
        client.post("/api/appointments", json=_booking(make_patient(), doctor, _slot(hour=10), duration=30))

        response = client.post("/api/appointments", json=_booking(make_patient(), doctor, _slot(hour=10, minute=30)))

        assert response.status_code == status.HTTP_201_CREATED

    def test_cancelled_appointment_frees_the_slot(self, client, as_admin, make_patient, make_doctor, make_appointment):
        doctor = make_doctor()
        make_appointment(make_patient(), doctor, when=_slot(hour=9), status=AppointmentStatus.CANCELLED)

        response = client.post("/api/appointments", json=_booking(make_patient(), doctor, _slot(hour=9)))

        assert response.status_code == status.HTTP_201_CREATED

    def test_other_doctor_same_time_is_fine(self, client, as_admin, make_patient, make_doctor):
        patient = make_patient()
        client.post("/api/appointments", json=_booking(patient, make_doctor(), _slot(hour=11)))

        response = client.post("/api/appointments", json=_booking(make_patient(), make_doctor(), _slot(hour=11)))

        assert response.status_code == status.HTTP_201_CREATED


class TestCancellation:

    def test_cancel_always_ends_cancelled(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor(), status=AppointmentStatus.COMPLETED)

        response = client.post(f"/api/appointments/{appointment.id}/cancel")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "cancelled"

    def test_cancel_closes_open_sessions(self, client, db, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor())
        session = TelemedicineSession(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            room_id="room_test_abc",
            status=SessionStatus.SCHEDULED.value,
        )
        db.add(session)
        db.commit()

        client.post(f"/api/appointments/{appointment.id}/cancel")

        db.expire_all()
        assert db.get(TelemedicineSession, session.id).status == "cancelled"

    def test_cancel_unknown_is_404(self, client, as_admin):
        response = client.post("/api/appointments/missing/cancel")
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestAppointmentAccess:

    def test_patient_books_only_for_self(self, client, login_as, make_user, make_patient, make_doctor):
        user = make_user(UserRole.PATIENT)
        own = make_patient(user=user)
        doctor = make_doctor()
        login_as(user, profile_id=own.id)

        assert client.post("/api/appointments", json=_booking(own, doctor, _slot())).status_code == status.HTTP_201_CREATED
        other = client.post("/api/appointments", json=_booking(make_patient(), doctor, _slot(days=2)))
        assert other.status_code == status.HTTP_403_FORBIDDEN

    def test_patient_cannot_override_price(self, client, login_as, make_user, make_patient, make_doctor):
        user = make_user(UserRole.PATIENT)
        own = make_patient(user=user)
        login_as(user, profile_id=own.id)

        response = client.post("/api/appointments", json=_booking(own, make_doctor(), _slot(), price="1.00"))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_doctor_lists_only_own_schedule(self, client, login_as, make_user, make_patient, make_doctor, make_appointment):
        user = make_user(UserRole.DOCTOR)
        own = make_doctor(user=user)
        make_appointment(make_patient(), own)
        make_appointment(make_patient(), make_doctor())
        login_as(user, profile_id=own.id)

        data = client.get("/api/appointments").json()

        assert data["total"] == 1
        assert data["appointments"][0]["doctor_id"] == own.id

    def test_update_reschedules(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor(), when=_slot(hour=9))
        new_time = _slot(days=3, hour=15)

        response = client.put(f"/api/appointments/{appointment.id}", json={
            "appointment_date": new_time.isoformat(),
            "diagnosis": "Seasonal allergy",
        })

        data = response.json()
        assert datetime.fromisoformat(data["appointment_date"]) == new_time
        assert data["diagnosis"] == "Seasonal allergy"
