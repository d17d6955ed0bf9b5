"""
Tests for prescriptions issued against appointments
"""

import pytest
from fastapi import status

from clinicare.api.auth import Capability
from clinicare.database.models import AppointmentStatus, Notification, UserRole


PRESCRIPTION = {
    "medication_name": "Amoxicillin",
    "dosage": "500 mg",
    "frequency": "three times daily",
    "duration": "7 days",
    "instructions": "After meals",
}


@pytest.fixture
def visit(make_user, make_patient, make_doctor, make_appointment):
    """A completed appointment between a patient and a doctor who both have accounts."""
    patient_user = make_user(UserRole.PATIENT)
    doctor_user = make_user(UserRole.DOCTOR)
    patient = make_patient(user=patient_user)
    doctor = make_doctor(user=doctor_user)
    appointment = make_appointment(patient, doctor, status=AppointmentStatus.COMPLETED)
    return {
        "patient_user": patient_user,
        "doctor_user": doctor_user,
        "patient": patient,
        "doctor": doctor,
        "appointment": appointment,
    }


def _prescribe(client, appointment, **overrides) -> dict:
    response = client.post("/api/prescriptions", json=dict(PRESCRIPTION, appointment_id=appointment.id, **overrides))
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


class TestPrescriptions:

    def test_doctor_prescribes_for_own_appointment(self, client, db, login_as, visit):
        login_as(visit["doctor_user"], profile_id=visit["doctor"].id)

        data = _prescribe(client, visit["appointment"])

        assert data["patient_id"] == visit["patient"].id
        assert data["doctor_id"] == visit["doctor"].id
        assert data["medication_name"] == "Amoxicillin"
        titles = [n.title for n in db.query(Notification).filter(Notification.user_id == visit["patient_user"].id)]
        assert titles == ["New prescription"]

    def test_doctor_cannot_prescribe_for_someone_elses_appointment(self, client, login_as, make_user,
                                                                   make_doctor, visit):
        other_user = make_user(UserRole.DOCTOR)
        login_as(other_user, profile_id=make_doctor(user=other_user).id)

        response = client.post("/api/prescriptions", json=dict(PRESCRIPTION, appointment_id=visit["appointment"].id))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_mismatched_doctor_is_rejected(self, client, as_admin, make_doctor, visit):
        response = client.post("/api/prescriptions", json=dict(
            PRESCRIPTION, appointment_id=visit["appointment"].id, doctor_id=make_doctor().id
        ))

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_unknown_appointment_is_404(self, client, as_admin):
        response = client.post("/api/prescriptions", json=dict(PRESCRIPTION, appointment_id="missing"))
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_cancelled_appointment_is_conflict(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor(), status=AppointmentStatus.CANCELLED)

        response = client.post("/api/prescriptions", json=dict(PRESCRIPTION, appointment_id=appointment.id))

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_update_keeps_unset_fields_and_rejects_nulls(self, client, as_admin, visit):
        prescription = _prescribe(client, visit["appointment"])
        url = f"/api/prescriptions/{prescription['id']}"

        response = client.put(url, json={"dosage": "250 mg", "instructions": None})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["dosage"] == "250 mg"
        assert data["frequency"] == "three times daily"
        assert data["instructions"] is None

        assert client.put(url, json={"medication_name": None}).status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_delete(self, client, as_admin, visit):
        prescription = _prescribe(client, visit["appointment"])

        assert client.delete(f"/api/prescriptions/{prescription['id']}").status_code == status.HTTP_204_NO_CONTENT
        assert client.get(f"/api/prescriptions/{prescription['id']}").status_code == status.HTTP_404_NOT_FOUND


class TestPrescriptionListing:

    def test_filters(self, client, as_admin, make_patient, make_doctor, make_appointment, visit):
        other = make_appointment(make_patient(), make_doctor(), status=AppointmentStatus.COMPLETED)
        _prescribe(client, visit["appointment"])
        _prescribe(client, visit["appointment"], medication_name="Paracetamol")
        _prescribe(client, other)

        assert client.get("/api/prescriptions").json()["total"] == 3
        by_patient = client.get("/api/prescriptions", params={"patient_id": visit["patient"].id}).json()
        assert by_patient["total"] == 2
        by_doctor = client.get("/api/prescriptions", params={"doctor_id": other.doctor_id}).json()
        assert [p["appointment_id"] for p in by_doctor["prescriptions"]] == [other.id]
        by_appointment = client.get("/api/prescriptions", params={"appointment_id": other.id}).json()
        assert by_appointment["total"] == 1

    def test_patient_sees_only_own(self, client, as_admin, login_as, make_patient, make_doctor,
                                   make_appointment, visit):
        mine = _prescribe(client, visit["appointment"])
        theirs = _prescribe(client, make_appointment(make_patient(), make_doctor(), status=AppointmentStatus.COMPLETED))

        login_as(visit["patient_user"], profile_id=visit["patient"].id)

        data = client.get("/api/prescriptions").json()
        assert [p["id"] for p in data["prescriptions"]] == [mine["id"]]
        assert client.get(f"/api/prescriptions/{theirs['id']}").status_code == status.HTTP_403_FORBIDDEN

    def test_patient_cannot_prescribe(self, client, login_as, visit):
        login_as(visit["patient_user"], profile_id=visit["patient"].id)

        response = client.post("/api/prescriptions", json=dict(PRESCRIPTION, appointment_id=visit["appointment"].id))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_sub_admin_needs_view_capability(self, client, login_as, make_user):
        sub_admin = make_user(UserRole.SUB_ADMIN)

        login_as(sub_admin)
        assert client.get("/api/prescriptions").status_code == status.HTTP_403_FORBIDDEN

        login_as(sub_admin, capabilities={Capability.VIEW_APPOINTMENTS})
        assert client.get("/api/prescriptions").status_code == status.HTTP_200_OK
