"""
Tests for account management by administrators
"""

from fastapi import status

from clinicare.api.auth import Capability
from clinicare.database.models import UserRole


def test_create_doctor_account_and_filter_by_role(client, as_admin, make_user):
    make_user(UserRole.PATIENT)

    response = client.post("/api/users", json={
        "email": "new.doc@clinicare.io",
        "password": "welcome-123",
        "first_name": "Arjun",
        "last_name": "Menon",
        "role": "doctor",
    })
    assert response.status_code == status.HTTP_201_CREATED

    data = client.get("/api/users", params={"role": "doctor"}).json()
    assert data["total"] == 1
    assert data["users"][0]["email"] == "new.doc@clinicare.io"


def test_sub_admins_are_not_created_here(client, as_admin):
    response = client.post("/api/users", json={
        "email": "sa@clinicare.io",
        "password": "welcome-123",
        "first_name": "S",
        "last_name": "A",
        "role": "sub-admin",
    })
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_deactivated_user_cannot_log_in(client, as_admin, make_user):
    user = make_user(UserRole.DOCTOR, email="off@clinicare.io", password="right-password")

    response = client.put(f"/api/users/{user.id}/status", json={"is_active": False})
    assert response.json()["is_active"] is False

    login = client.post("/api/auth/login", json={"email": "off@clinicare.io", "password": "right-password"})
    assert login.status_code == status.HTTP_401_UNAUTHORIZED


def test_cannot_deactivate_self(client, as_admin):
    response = client.put(f"/api/users/{as_admin.user_id}/status", json={"is_active": False})
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_manage_users_capability(client, login_as, make_user):
    sub_admin = make_user(UserRole.SUB_ADMIN)

    login_as(sub_admin)
    assert client.get("/api/users").status_code == status.HTTP_403_FORBIDDEN

    login_as(sub_admin, capabilities={Capability.MANAGE_USERS})
    assert client.get("/api/users").status_code == status.HTTP_200_OK
