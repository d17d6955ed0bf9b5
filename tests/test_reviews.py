"""
Tests for patient reviews and rating statistics
"""

import pytest
from fastapi import status

from clinicare.api.reviews import compute_review_stats
from clinicare.database.models import AppointmentStatus, Review, UserRole


@pytest.fixture
def patient_visit(login_as, make_user, make_patient, make_doctor, make_appointment):
    """A logged-in patient with one completed and one upcoming appointment."""
    user = make_user(UserRole.PATIENT)
    patient = make_patient(user=user)
    doctor = make_doctor()
    completed = make_appointment(patient, doctor, status=AppointmentStatus.COMPLETED)
    upcoming = make_appointment(patient, doctor, status=AppointmentStatus.SCHEDULED)
    login_as(user, profile_id=patient.id)
    return {"user": user, "patient": patient, "doctor": doctor, "completed": completed, "upcoming": upcoming}


def _review(appointment, rating=5, **extra) -> dict:
    payload = {
        "appointment_id": appointment.id,
        "rating": rating,
        "would_recommend": True,
        "comment": "Very thorough consultation",
    }
    payload.update(extra)
    return payload


class TestReviewCreation:

    def test_review_completed_appointment(self, client, patient_visit):
        response = client.post("/api/reviews", json=_review(patient_visit["completed"], service_quality=4))

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["doctor_id"] == patient_visit["doctor"].id
        assert data["is_approved"] is True
        assert data["doctor_name"].startswith("Dr. ")

    def test_only_one_review_per_appointment(self, client, patient_visit):
        client.post("/api/reviews", json=_review(patient_visit["completed"]))

        response = client.post("/api/reviews", json=_review(patient_visit["completed"], rating=1))

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_upcoming_appointment_cannot_be_reviewed(self, client, patient_visit):
        response = client.post("/api/reviews", json=_review(patient_visit["upcoming"]))
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_rating_out_of_range(self, client, patient_visit):
        response = client.post("/api/reviews", json=_review(patient_visit["completed"], rating=6))
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_can_review_reports_reason(self, client, patient_visit):
        allowed = client.get(f"/api/reviews/can-review/{patient_visit['completed'].id}").json()
        assert allowed == {"can_review": True, "reason": None}

        blocked = client.get(f"/api/reviews/can-review/{patient_visit['upcoming'].id}").json()
        assert blocked["can_review"] is False
        assert "completed" in blocked["reason"]

    def test_doctors_cannot_review(self, client, login_as, make_user, patient_visit):
        login_as(make_user(UserRole.DOCTOR), profile_id=patient_visit["doctor"].id)
        response = client.post("/api/reviews", json=_review(patient_visit["completed"]))
        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestReviewModeration:

    def test_patient_cannot_approve_own_review(self, client, db, patient_visit):
        review_id = client.post("/api/reviews", json=_review(patient_visit["completed"])).json()["id"]

        response = client.put(f"/api/reviews/{review_id}", json={"is_approved": False, "rating": 4})

        data = response.json()
        assert data["rating"] == 4
        assert data["is_approved"] is True

    def test_admin_can_hide_review(self, client, login_as, admin_user, patient_visit):
        review_id = client.post("/api/reviews", json=_review(patient_visit["completed"])).json()["id"]
        login_as(admin_user)

        response = client.put(f"/api/reviews/{review_id}", json={"is_approved": False})

        assert response.json()["is_approved"] is False


class TestReviewStats:

    def test_stats_over_approved_reviews(self, client, patient_visit):
        client.post("/api/reviews", json=_review(patient_visit["completed"], rating=4, communication=5))

        data = client.get("/api/reviews/stats").json()

        assert data["total_reviews"] == 1
        assert data["average_rating"] == 4.0
        assert data["average_communication"] == 5.0
        assert data["recommendation_percentage"] == 100.0
        assert {"rating": 4, "count": 1} in data["rating_distribution"]

    def test_compute_stats_rounding_and_distribution(self):
        reviews = [
            Review(rating=5, would_recommend=True, service_quality=5),
            Review(rating=4, would_recommend=False, service_quality=None),
            Review(rating=4, would_recommend=True, service_quality=3),
        ]

        stats = compute_review_stats(reviews)

        assert stats["total_reviews"] == 3
        assert stats["average_rating"] == 4.33
        assert stats["average_service_quality"] == 4.0
        assert stats["recommendation_percentage"] == 66.67
        assert [b["count"] for b in stats["rating_distribution"]] == [0, 0, 0, 2, 1]

    def test_no_reviews(self):
        stats = compute_review_stats([])
        assert stats["total_reviews"] == 0
        assert stats["average_rating"] == 0.0
        assert stats["recommendation_percentage"] == 0.0
        assert [b["count"] for b in stats["rating_distribution"]] == [0, 0, 0, 0, 0]
