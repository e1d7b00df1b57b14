import httpx
import pytest

from mabel.services.polling import ModuleStatusPoller, PollFailed, PollTimeout, wait_for_status


class Sleeps:
  def __init__(self):
    self.calls = []

  async def __call__(self, seconds):
    self.calls.append(seconds)


def sequence(*statuses):
  it = iter(statuses)

  async def fetch():
    value = next(it)
    if isinstance(value, Exception):
      raise value
    return value

  return fetch


@pytest.mark.anyio
async def test_returns_when_target_reached():
  sleep = Sleeps()
  status = await wait_for_status(
    sequence("DRAFT", "DRAFT", "QUESTIONS_GENERATED"), "QUESTIONS_GENERATED",
    max_attempts=5, interval=2.0, sleep=sleep,
  )
  assert status == "QUESTIONS_GENERATED"
  # fixed interval, no backoff
  assert sleep.calls == [2.0, 2.0]


@pytest.mark.anyio
async def test_accepts_several_targets():
  status = await wait_for_status(
    sequence("DRAFT", "IN_PROGRESS"), ("QUESTIONS_GENERATED", "IN_PROGRESS"),
    max_attempts=3, interval=0, sleep=Sleeps(),
  )
  assert status == "IN_PROGRESS"


@pytest.mark.anyio
@pytest.mark.parametrize("terminal", ["FAILED", "ERROR"])
async def test_failure_status_stops_immediately(terminal):
  sleep = Sleeps()
  with pytest.raises(PollFailed) as exc:
    await wait_for_status(sequence("GENERATING_CHAPTER", terminal), "CHAPTER_GENERATED",
                          max_attempts=10, interval=1, sleep=sleep)
  assert exc.value.status == terminal
  assert len(sleep.calls) == 1


@pytest.mark.anyio
async def test_fetch_errors_are_retried():
  status = await wait_for_status(
    sequence(httpx.ConnectError("down"), RuntimeError("boom"), "APPROVED"), "APPROVED",
    max_attempts=3, interval=0, sleep=Sleeps(),
  )
  assert status == "APPROVED"


@pytest.mark.anyio
async def test_timeout_after_budget():
  sleep = Sleeps()
  with pytest.raises(PollTimeout) as exc:
    await wait_for_status(sequence("DRAFT", "DRAFT", "DRAFT"), "QUESTIONS_GENERATED",
                          max_attempts=3, interval=2, label="module 4", sleep=sleep)
  assert str(exc.value) == "module 4 timed out after 6 seconds"
  assert len(sleep.calls) == 2


@pytest.mark.anyio
async def test_module_status_poller_reads_envelope():
  statuses = iter(["DRAFT", "QUESTIONS_GENERATED"])

  def handler(request: httpx.Request):
    if request.url.path == "/api/projects/3/modules/9":
      return httpx.Response(200, json={"data": {"id": 9, "status": next(statuses)}})
    if request.url.path == "/api/jobs/5":
      return httpx.Response(200, json={"data": {"id": 5, "status": "COMPLETED"}})
    return httpx.Response(404, json={"error": "nope"})

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
    poller = ModuleStatusPoller(client, 3)
    assert await poller.wait_for_module(9, "QUESTIONS_GENERATED", max_attempts=3, interval=0) == "QUESTIONS_GENERATED"
    assert await poller.wait_for_job(5, max_attempts=1, interval=0) == "COMPLETED"
