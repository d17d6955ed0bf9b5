"""
Tests for video consultation sessions
"""

from fastapi import status

from clinicare.database.models import Appointment, AppointmentStatus, UserRole


def _open_session(client, appointment) -> dict:
    response = client.post("/api/telemedicine/sessions", json={"appointment_id": appointment.id})
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


class TestSessionLifecycle:

    def test_session_takes_participants_from_appointment(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor())

        session = _open_session(client, appointment)

        assert session["status"] == "scheduled"
        assert session["patient_id"] == appointment.patient_id
        assert session["doctor_id"] == appointment.doctor_id
        assert session["room_id"].startswith("room_")

    def test_mismatched_patient_is_rejected(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor())

        response = client.post("/api/telemedicine/sessions", json={
            "appointment_id": appointment.id,
            "patient_id": make_patient().id,
        })

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_cancelled_appointment_cannot_host_a_session(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor(), status=AppointmentStatus.CANCELLED)

        response = client.post("/api/telemedicine/sessions", json={"appointment_id": appointment.id})

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_join_then_end(self, client, db, login_as, make_user, make_patient, make_doctor, make_appointment, as_admin):
        patient_user = make_user(UserRole.PATIENT)
        doctor_user = make_user(UserRole.DOCTOR)
        patient = make_patient(user=patient_user)
        doctor = make_doctor(user=doctor_user)
        appointment = make_appointment(patient, doctor)
        session = _open_session(client, appointment)

        login_as(patient_user, profile_id=patient.id)
        joined = client.post(f"/api/telemedicine/sessions/{session['id']}/join")
        assert joined.status_code == status.HTTP_200_OK
        details = joined.json()
        assert details["room_id"] == session["room_id"]
        assert details["token"]
        assert f"/room/{session['room_id']}?token=" in details["session_url"]

        assert client.get(f"/api/telemedicine/sessions/{session['id']}").json()["status"] == "active"

        login_as(doctor_user, profile_id=doctor.id)
        ended = client.post(f"/api/telemedicine/sessions/{session['id']}/end")
        assert ended.status_code == status.HTTP_200_OK
        data = ended.json()
        assert data["status"] == "completed"
        assert data["end_time"] is not None
        assert data["duration"] is not None

        db.expire_all()
        assert db.get(Appointment, appointment.id).status == "completed"

        rejoin = client.post(f"/api/telemedicine/sessions/{session['id']}/join")
        assert rejoin.status_code == status.HTTP_409_CONFLICT

    def test_outsider_cannot_join(self, client, login_as, make_user, make_patient, make_doctor, make_appointment, as_admin):
        appointment = make_appointment(make_patient(), make_doctor())
        session = _open_session(client, appointment)

        outsider = make_user(UserRole.PATIENT)
        login_as(outsider, profile_id=make_patient(user=outsider).id)

        response = client.post(f"/api/telemedicine/sessions/{session['id']}/join")

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_update_computes_duration(self, client, as_admin, make_patient, make_doctor, make_appointment):
        session = _open_session(client, make_appointment(make_patient(), make_doctor()))

        response = client.put(f"/api/telemedicine/sessions/{session['id']}", json={
            "start_time": "2026-03-02T10:00:00",
            "end_time": "2026-03-02T10:25:00",
            "notes": "Follow-up in two weeks",
        })

        assert response.json()["duration"] == 25

    def test_end_before_start_is_rejected(self, client, as_admin, make_patient, make_doctor, make_appointment):
        session = _open_session(client, make_appointment(make_patient(), make_doctor()))

        response = client.put(f"/api/telemedicine/sessions/{session['id']}", json={
            "start_time": "2026-03-02T10:00:00",
            "end_time": "2026-03-02T09:00:00",
        })

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
