"""
Tests for bill creation, payment transitions and visibility
"""

from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import status

from clinicare.api.auth import Capability
from clinicare.database.models import BillStatus, UserRole


def _due_date() -> str:
    return (datetime.now() + timedelta(days=7)).isoformat()


class TestBillLifecycle:

    def test_total_is_amount_plus_tax(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor())

        response = client.post("/api/bills", json={
            "appointment_id": appointment.id,
            "amount": "100.00",
            "tax_amount": "18.00",
            "due_date": _due_date(),
        })

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert Decimal(data["total_amount"]) == Decimal("118.00")
        assert data["status"] == "pending"
        assert data["patient_id"] == appointment.patient_id
        assert data["invoice_number"].startswith("INV-")
        assert data["paid_at"] is None

    def test_moving_to_paid_stamps_paid_at(self, client, as_admin, make_patient, make_doctor, make_appointment, make_bill):
        bill = make_bill(make_appointment(make_patient(), make_doctor()), Decimal("100.00"), tax_amount=Decimal("18.00"))
        before = datetime.now().replace(microsecond=0)

        response = client.put(f"/api/bills/{bill.id}", json={"status": "paid", "payment_method": "upi"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "paid"
        assert datetime.fromisoformat(data["paid_at"]) >= before

    def test_non_paid_transitions_leave_paid_at_empty(self, client, as_admin, make_patient, make_doctor, make_appointment, make_bill):
        bill = make_bill(make_appointment(make_patient(), make_doctor()), Decimal("250.00"))

        response = client.put(f"/api/bills/{bill.id}", json={"status": "failed"})

        assert response.json()["status"] == "failed"
        assert response.json()["paid_at"] is None

    def test_changing_amount_recomputes_total(self, client, as_admin, make_patient, make_doctor, make_appointment, make_bill):
        bill = make_bill(make_appointment(make_patient(), make_doctor()), Decimal("100.00"), tax_amount=Decimal("18.00"))

        response = client.put(f"/api/bills/{bill.id}", json={"amount": "200.00"})

        assert Decimal(response.json()["total_amount"]) == Decimal("218.00")

    def test_patient_must_match_appointment(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor())
        stranger = make_patient()

        response = client.post("/api/bills", json={
            "appointment_id": appointment.id,
            "patient_id": stranger.id,
            "amount": "100.00",
            "due_date": _due_date(),
        })

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_unknown_appointment_is_404(self, client, as_admin):
        response = client.post("/api/bills", json={
            "appointment_id": "missing",
            "amount": "100.00",
            "due_date": _due_date(),
        })
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_negative_amount_is_rejected(self, client, as_admin, make_patient, make_doctor, make_appointment):
        appointment = make_appointment(make_patient(), make_doctor())
        response = client.post("/api/bills", json={
            "appointment_id": appointment.id,
            "amount": "-5.00",
            "due_date": _due_date(),
        })
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestBillVisibility:

    def test_patient_sees_only_own_bills(self, client, login_as, make_user, make_patient, make_doctor, make_appointment, make_bill):
        user = make_user(UserRole.PATIENT)
        own_patient = make_patient(user=user)
        doctor = make_doctor()
        own_bill = make_bill(make_appointment(own_patient, doctor), Decimal("100.00"))
        other_bill = make_bill(
            make_appointment(make_patient(), doctor, when=datetime.now() + timedelta(days=2)),
            Decimal("300.00")
        )
        login_as(user, profile_id=own_patient.id)

        response = client.get("/api/bills")

        data = response.json()
        assert data["total"] == 1
        assert data["bills"][0]["id"] == own_bill.id
        assert client.get(f"/api/bills/{other_bill.id}").status_code == status.HTTP_403_FORBIDDEN

    def test_patient_without_profile_gets_empty_list(self, client, login_as, make_user):
        login_as(make_user(UserRole.PATIENT))

        response = client.get("/api/bills")

        assert response.json() == {"bills": [], "total": 0}

    def test_sub_admin_with_view_only_cannot_edit(self, client, login_as, make_user, make_patient, make_doctor, make_appointment, make_bill):
        bill = make_bill(make_appointment(make_patient(), make_doctor()), Decimal("100.00"))
        login_as(make_user(UserRole.SUB_ADMIN), capabilities={Capability.VIEW_BILLING})

        assert client.get("/api/bills").status_code == status.HTTP_200_OK
        response = client.put(f"/api/bills/{bill.id}", json={"status": BillStatus.PAID.value})
        assert response.status_code == status.HTTP_403_FORBIDDEN
