"""API tests for the personal profile, account closure and account stats."""
from datetime import date, datetime

from conftest import PASSWORD
from medibook import booking


def test_get_profile(client, patient, auth_headers):
    response = client.get("/profile/me", headers=auth_headers(patient))

    assert response.status_code == 200
    assert response.json()["email"] == patient.email
    assert response.json()["address"] is None


def test_partial_update_keeps_other_fields(client, patient, auth_headers):
    headers = auth_headers(patient)

    response = client.put(
        "/profile/me",
        json={"gender": "female", "address": {"city": "Dallas", "country": "US"}},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["gender"] == "female"
    assert body["address"]["city"] == "Dallas"
    assert body["name"] == patient.name
    assert body["phone"] == patient.phone


def test_required_fields_cannot_be_cleared(client, patient, auth_headers):
    response = client.put("/profile/me", json={"name": None}, headers=auth_headers(patient))

    assert response.status_code == 200
    assert response.json()["name"] == patient.name


def test_invalid_phone_rejected(client, patient, auth_headers):
    response = client.put("/profile/me", json={"phone": "not-a-phone"}, headers=auth_headers(patient))

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_FAILED"


def test_delete_account_requires_password(client, session, patient, auth_headers):
    headers = auth_headers(patient)

    wrong = client.request("DELETE", "/profile/me", json={"password": "Wrong!Passw0rd1"}, headers=headers)
    assert wrong.status_code == 400
    session.refresh(patient)
    assert patient.is_active

    response = client.request("DELETE", "/profile/me", json={"password": PASSWORD}, headers=headers)
    assert response.status_code == 200
    session.refresh(patient)
    assert not patient.is_active

    login = client.post("/auth/login", data={"username": patient.email, "password": PASSWORD})
    assert login.json()["code"] == "ACCOUNT_SUSPENDED"


def test_patient_stats(client, session, patient, doctor, auth_headers):
    appt = booking.book(
        session,
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_date=date(2024, 6, 1),
        appointment_time="10:00",
        appointment_type="offline",
        now=datetime(2024, 5, 1),
    )
    booking.cancel(session, appt.id, patient.id, now=datetime(2024, 5, 1))

    response = client.get(f"/profile/{patient.id}/stats", headers=auth_headers(patient))

    assert response.status_code == 200
    assert response.json() == {"appointments": {"cancelled": 1}, "reviews": None}


def test_doctor_stats_include_reviews(client, admin, make_user, auth_headers):
    doctor = make_user("doctor", rating=4.5, total_reviews=2)

    response = client.get(f"/profile/{doctor.id}/stats", headers=auth_headers(admin))

    assert response.status_code == 200
    assert response.json()["reviews"] == {"total_reviews": 2, "average_rating": 4.5}


def test_stats_of_someone_else_forbidden(client, patient, make_user, auth_headers):
    other = make_user("patient")

    response = client.get(f"/profile/{other.id}/stats", headers=auth_headers(patient))

    assert response.status_code == 403
    assert client.get("/profile/9999/stats", headers=auth_headers(patient)).status_code == 403
