"""Test configuration: mock AI, inline dispatch, throwaway SQLite database."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

_TMP = Path(tempfile.mkdtemp(prefix="mabel-tests-"))
os.environ["SECRET"] = "test-secret-not-for-production"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP / 'test.db'}"
os.environ["USE_MOCK_OPENAI"] = "true"
os.environ["MOCK_AI_DELAY_SCALE"] = "0"
os.environ["DISPATCH_MODE"] = "inline"
os.environ["STORAGE_ROOT"] = str(_TMP / "storage")
os.environ["EVENT_SIGNING_SECRET"] = "bus-secret"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from mabel.ai_gateway import set_gateway  # noqa: E402
from mabel.database import Base, async_session_maker, engine  # noqa: E402
from mabel.main import app  # noqa: E402
from mabel.mock_ai import MockAIGateway  # noqa: E402
from mabel.models import User  # noqa: E402
from mabel.utils import require_authenticated_user  # noqa: E402


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
async def database(anyio_backend):
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)
  set_gateway(MockAIGateway(delay_scale=0))
  yield
  set_gateway(None)
  await engine.dispose()


@pytest.fixture
async def db(database):
  async with async_session_maker() as session:
    yield session


@pytest.fixture
async def user(database):
  async with async_session_maker() as session:
    u = User(email="owner@example.com", username="owner", hashed_password="x", is_active=True, is_verified=True)
    session.add(u)
    await session.commit()
    await session.refresh(u)
    return u


@pytest.fixture
async def other_user(database):
  async with async_session_maker() as session:
    u = User(email="other@example.com", username="other", hashed_password="x", is_active=True)
    session.add(u)
    await session.commit()
    await session.refresh(u)
    return u


@pytest.fixture
async def client(user):
  app.dependency_overrides[require_authenticated_user] = lambda: user
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
    yield ac
  app.dependency_overrides.clear()


@pytest.fixture
def make_project(client):
  """Factory: project + interviewee through the API, returns the project id."""

  async def _make(title: str = "Grandma's Story", *, interviewee: bool = True, birth_year: int = 1958) -> int:
    r = await client.post("/api/projects", json={"title": title})
    assert r.status_code == 201, r.text
    pid = r.json()["data"]["id"]
    if interviewee:
      r = await client.post(f"/api/projects/{pid}/interviewee", json={
        "name": "Eleanor",
        "relationship": "Grandmother",
        "birthYear": birth_year,
        "generation": "Baby Boomer",
        "topics": ["childhood", "family"],
      })
      assert r.status_code == 201, r.text
    return pid

  return _make


@pytest.fixture
def make_module(client):
  """Factory: creates a module (questions generated inline) and returns its detail payload."""

  async def _make(pid: int, theme: str | None = None) -> dict:
    body = {"theme": theme} if theme else {}
    r = await client.post(f"/api/projects/{pid}/modules", json=body)
    assert r.status_code == 201, r.text
    return r.json()["data"]

  return _make


@pytest.fixture
def answer(client):
  async def _answer(pid: int, module: dict, n: int, text: str = "We lived by the river and fished every summer.") -> None:
    for q in module["questions"][:n]:
      r = await client.patch(
        f"/api/projects/{pid}/modules/{module['id']}/questions/{q['id']}", json={"response": text}
      )
      assert r.status_code == 200, r.text

  return _answer
