"""Shared test fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["MAILTRAP_MODE"] = "true"
os.environ["TWILIO_TEST_MODE"] = "true"

from datetime import date, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel, Session, create_engine  # noqa: E402

from medibook.database import get_session  # noqa: E402
from medibook.main import app  # noqa: E402
from medibook.models import User  # noqa: E402
from medibook.rate_limit import InMemoryRateLimitStore  # noqa: E402
from medibook.security import get_password_hash  # noqa: E402

PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def engine():
    """In-memory database shared by every session in a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine):
    def get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_session_override
    app.state.rate_limit_store = InMemoryRateLimitStore()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(session):
    """Create and persist an account. Defaults to an active patient."""
    counter = {"n": 0}

    def _create(role: str = "patient", password: str = PASSWORD, **fields) -> User:
        counter["n"] += 1
        values = {
            "name": f"{role.title()} {counter['n']}",
            "email": f"{role}{counter['n']}@example.com",
            "phone": f"+1555000{counter['n']:04d}",
            "role": role,
        }
        if role == "doctor":
            values.update(
                specialization="Cardiology",
                experience=10,
                education="MD",
                hospital="City Hospital",
                city="Dallas",
                consultation_fee=80.0,
                online_consultation=True,
                offline_consultation=True,
            )
        values.update(fields)
        user = User(password_hash=get_password_hash(password), **values)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _create


@pytest.fixture
def patient(make_user):
    return make_user("patient")


@pytest.fixture
def doctor(make_user):
    return make_user("doctor")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def auth_headers(client):
    """Log in through the API and return bearer headers."""
    def _login(user: User, password: str = PASSWORD) -> dict:
        response = client.post("/auth/login", data={"username": user.email, "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    return _login


@pytest.fixture
def next_week() -> date:
    return date.today() + timedelta(days=7)
