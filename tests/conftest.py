import datetime

import pytest
from fastapi.testclient import TestClient

import main


@pytest.fixture
def client(tmp_path, monkeypatch):
    """
    App client with every collection stored under `tmp_path` and the default
    admin/doctor accounts seeded.
    """
    for store in main.STORES:
        monkeypatch.setattr(store, "path", str(tmp_path / f"{store.name}.json"))
        store.records = []
    monkeypatch.setattr(main, "BCRYPT_ROUNDS", 4)
    monkeypatch.setattr(main, "SEED_DEFAULT_USERS", True)
    with TestClient(main.app) as c:
        yield c


def login(client, email: str, password: str = "password123") -> dict:
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def admin_headers(client) -> dict:
    return login(client, "admin@hospital.com")


@pytest.fixture
def doctor_headers(client) -> dict:
    return login(client, "doctor@hospital.com")


@pytest.fixture
def doctor_id(client) -> str:
    return main.users_db.find_one(email="doctor@hospital.com")["id"]


@pytest.fixture
def make_user(client, admin_headers):
    """Create a user with the given role through the admin API and return auth headers."""
    def _make(role: str, email: str = None, password: str = "secret-pass-1") -> dict:
        email = email or f"{role}@hospital.com"
        resp = client.post("/api/users", headers=admin_headers,
                           json={"name": f"Test {role}", "email": email, "password": password, "role": role})
        assert resp.status_code == 201, resp.text
        return login(client, email, password)
    return _make


@pytest.fixture
def patient(client, admin_headers) -> dict:
    resp = client.post("/api/patients", headers=admin_headers, json={
        "firstName": "Amina",
        "lastName": "Okafor",
        "dateOfBirth": "1990-04-12",
        "gender": "Female",
        "phone": "+2348012345678",
        "email": "Amina@Example.com",
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["patient"]


def future(days: int = 3, hour: int = 10, minute: int = 0) -> str:
    day = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=days)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0).isoformat()


@pytest.fixture
def appointment(client, admin_headers, patient, doctor_id) -> dict:
    resp = client.post("/api/appointments", headers=admin_headers, json={
        "patient": patient["id"],
        "doctor": doctor_id,
        "appointmentDate": future(),
        "reason": "Fever and chills for three days",
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["appointment"]
