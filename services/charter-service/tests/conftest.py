import pathlib
import sys

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Ensure `services/charter-service` is on sys.path so `import app` works when
# running tests from the repo root.
sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

from app import events  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Base  # noqa: E402
from app.tenancy import get_engine  # noqa: E402

COMPANY_ID = "company-1"


def _auth_headers(role: str = "admin", company_id: str | None = COMPANY_ID, sub: str = "user-1") -> dict[str, str]:
    claims = {"sub": sub, "role": role}
    if company_id:
        claims["company_id"] = company_id
    token = jwt.encode(claims, "dev-secret-change-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def anyio_backend():
    # The app is built on asyncio (asyncio.gather, aio-pika).
    return "asyncio"


@pytest.fixture(autouse=True)
def rabbitmq_down(monkeypatch):
    # Events are best-effort; every test runs without a broker.
    async def _boom(*args, **kwargs):
        raise RuntimeError("rabbitmq down")

    monkeypatch.setattr(events, "EVENTS_STRICT", False)
    monkeypatch.setattr(events.aio_pika, "connect_robust", _boom)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    return _auth_headers
