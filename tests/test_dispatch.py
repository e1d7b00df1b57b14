import json

import httpx
import pytest

from mabel.background import drain
from mabel.services.dispatch import DispatchError, TaskQueue, queue
from mabel.settings.config import settings


def make_queue(transport=None):
  calls = []
  q = TaskQueue(transport=transport)

  @q.handler("test/echo")
  async def echo(payload):
    calls.append(payload)

  return q, calls


def test_duplicate_handler_is_rejected():
  q, _ = make_queue()
  with pytest.raises(ValueError):
    q.handler("test/echo")(lambda payload: None)
  assert q.events() == ["test/echo"]


def test_application_queue_registers_all_events():
  import mabel.services.workers  # noqa: F401

  assert set(queue.events()) >= {
    "module/questions.generate",
    "module/chapter.generate",
    "interview/audio.transcribe",
    "chapter/image.generate",
  }


@pytest.mark.anyio
async def test_inline_runs_in_request():
  q, calls = make_queue()
  result = await q.dispatch("test/echo", {"n": 1}, mode="inline")
  assert calls == [{"n": 1}]
  assert result.ran_inline and not result.fallback


@pytest.mark.anyio
async def test_unknown_event_is_an_error():
  q, _ = make_queue()
  with pytest.raises(DispatchError):
    await q.dispatch("test/missing", {}, mode="inline")
  with pytest.raises(DispatchError):
    await q.dispatch("test/echo", {}, mode="carrier-pigeon")


@pytest.mark.anyio
async def test_background_runs_as_task():
  q, calls = make_queue()
  result = await q.dispatch("test/echo", {"n": 2}, mode="background")
  assert result.mode == "background"
  assert not result.ran_inline
  await drain()
  assert calls == [{"n": 2}]


@pytest.mark.anyio
async def test_bus_publishes_name_and_data(monkeypatch):
  seen = []

  def handler(request: httpx.Request):
    seen.append(request)
    return httpx.Response(200, json={"ids": ["evt_1"]})

  monkeypatch.setattr(settings, "EVENT_BUS_URL", "http://bus.test/e/key")
  monkeypatch.setattr(settings, "EVENT_BUS_KEY", "bus-key")
  q, calls = make_queue(httpx.MockTransport(handler))

  result = await q.dispatch("test/echo", {"job_id": 7}, mode="bus")

  assert result.mode == "bus" and not result.fallback
  assert calls == []
  assert json.loads(seen[0].content) == {"name": "test/echo", "data": {"job_id": 7}}
  assert seen[0].headers["authorization"] == "Bearer bus-key"


@pytest.mark.anyio
async def test_bus_failure_falls_back_inline(monkeypatch):
  monkeypatch.setattr(settings, "EVENT_BUS_URL", "http://bus.test/e/key")
  q, calls = make_queue(httpx.MockTransport(lambda request: httpx.Response(503)))

  result = await q.dispatch("test/echo", {"job_id": 8}, mode="bus")

  assert result.ran_inline and result.fallback
  assert calls == [{"job_id": 8}]


@pytest.mark.anyio
async def test_unconfigured_bus_falls_back_inline(monkeypatch):
  monkeypatch.setattr(settings, "EVENT_BUS_URL", None)
  q, calls = make_queue()

  result = await q.dispatch("test/echo", {"job_id": 9}, mode="bus")

  assert result.fallback
  assert calls == [{"job_id": 9}]


# ---------- bus delivery endpoint ----------

@pytest.fixture
def ping_handler():
  calls = []

  @queue.handler("test/ping")
  async def ping(payload):
    calls.append(payload)

  yield calls
  queue._handlers.pop("test/ping", None)


@pytest.mark.anyio
async def test_event_delivery_requires_signature(client, ping_handler):
  r = await client.post("/api/events", json={"name": "test/ping", "data": {}})
  assert r.status_code == 401
  r = await client.post(
    "/api/events", json={"name": "test/ping", "data": {}}, headers={"Authorization": "Bearer wrong"}
  )
  assert r.status_code == 401
  assert ping_handler == []


@pytest.mark.anyio
async def test_event_delivery_runs_handler(client, ping_handler):
  headers = {"Authorization": "Bearer bus-secret"}
  r = await client.post("/api/events", json={"name": "test/ping", "data": {"x": 1}}, headers=headers)
  assert r.status_code == 200
  assert r.json()["data"] == {"name": "test/ping", "handled": True}
  assert ping_handler == [{"x": 1}]

  r = await client.post("/api/events", json={"name": "test/nope", "data": {}}, headers=headers)
  assert r.status_code == 404


@pytest.mark.anyio
async def test_bus_mode_end_to_end_with_redelivery(client, make_project, monkeypatch):
  """Bus accepts the event; the delivery endpoint then runs the worker exactly once."""
  published = []

  def bus(request: httpx.Request):
    published.append(json.loads(request.content))
    return httpx.Response(200)

  monkeypatch.setattr(settings, "DISPATCH_MODE", "bus")
  monkeypatch.setattr(settings, "EVENT_BUS_URL", "http://bus.test/e/key")
  monkeypatch.setattr(queue, "_transport", httpx.MockTransport(bus))

  pid = await make_project()
  r = await client.post(f"/api/projects/{pid}/modules", json={})
  assert r.status_code == 201
  module = r.json()["data"]
  assert module["status"] == "DRAFT"
  assert published[0]["name"] == "module/questions.generate"

  headers = {"Authorization": "Bearer bus-secret"}
  for _ in range(2):
    r = await client.post("/api/events", json=published[0], headers=headers)
    assert r.status_code == 200

  detail = (await client.get(f"/api/projects/{pid}/modules/{module['id']}")).json()["data"]
  assert detail["status"] == "QUESTIONS_GENERATED"
  assert detail["questionCount"] == 15
  job_id = published[0]["data"]["job_id"]
  job = (await client.get(f"/api/jobs/{job_id}")).json()["data"]
  assert job["status"] == "COMPLETED"
