import pytest
from sqlalchemy import func, select, update

from mabel.ai_gateway import set_gateway
from mabel.errors import InvalidTransitionError, ProviderError
from mabel.mock_ai import MockAIGateway
from mabel.models import Module, ModuleChapter, ModuleStatus, Project
from mabel.services import lifecycle


class ChapterFailingGateway(MockAIGateway):
  def __init__(self, message: str):
    super().__init__(delay_scale=0)
    self.message = message

  async def generate_chapter(self, *args, **kwargs):
    raise ProviderError(self.message)


def base(pid, module):
  return f"/api/projects/{pid}/modules/{module['id']}"


# ---------- transition table ----------

def test_transition_table_shape():
  assert lifecycle.can_transition(ModuleStatus.DRAFT, ModuleStatus.QUESTIONS_GENERATED)
  assert lifecycle.can_transition(ModuleStatus.CHAPTER_GENERATED, ModuleStatus.GENERATING_CHAPTER)
  assert not lifecycle.can_transition(ModuleStatus.APPROVED, ModuleStatus.GENERATING_CHAPTER)
  assert not lifecycle.can_transition(ModuleStatus.DRAFT, ModuleStatus.APPROVED)
  assert lifecycle.MODULE_TRANSITIONS[ModuleStatus.APPROVED] == set()
  assert lifecycle.sources_for(ModuleStatus.APPROVED) == {ModuleStatus.CHAPTER_GENERATED}


@pytest.mark.anyio
async def test_transition_rejects_when_status_moved(client, make_project, make_module, db):
  pid = await make_project()
  module = await make_module(pid)

  with pytest.raises(InvalidTransitionError) as exc:
    await lifecycle.transition(db, module["id"], ModuleStatus.APPROVED)
  assert exc.value.current == "QUESTIONS_GENERATED"
  await db.rollback()

  assert await lifecycle.try_transition(db, module["id"], ModuleStatus.IN_PROGRESS)
  await db.commit()
  status = await db.scalar(select(Module.status).where(Module.id == module["id"]))
  assert status == ModuleStatus.IN_PROGRESS


# ---------- create / questions ----------

@pytest.mark.anyio
async def test_create_module_generates_questions(client, make_project, make_module):
  pid = await make_project()
  module = await make_module(pid, theme="Growing Up")

  assert module["moduleNumber"] == 1
  assert module["title"] == "Growing Up"
  assert module["status"] == "QUESTIONS_GENERATED"
  assert module["questionCount"] == 15
  assert [q["order"] for q in module["questions"]] == list(range(1, 16))
  assert all("[NAME]" not in q["question"] for q in module["questions"])

  project = (await client.get(f"/api/projects/{pid}")).json()["data"]
  assert project["status"] == "QUESTIONS_GENERATED"
  assert project["modules"][0]["id"] == module["id"]


@pytest.mark.anyio
async def test_create_module_requires_interviewee(client, make_project):
  pid = await make_project(interviewee=False)
  r = await client.post(f"/api/projects/{pid}/modules", json={})
  assert r.status_code == 400
  assert r.json() == {"error": "Please complete interviewee setup first"}


@pytest.mark.anyio
async def test_second_module_builds_on_approved_answers(client, make_project, make_module, answer):
  pid = await make_project()
  first = await make_module(pid)
  await answer(pid, first, 15, "My father ran the corner bakery on Elm Street.")
  assert (await client.post(f"{base(pid, first)}/chapter/generate", json={})).status_code == 202
  assert (await client.post(f"{base(pid, first)}/approve")).status_code == 200

  second = await make_module(pid)
  assert second["moduleNumber"] == 2
  assert second["title"] == "Module 2"
  assert len(second["questions"]) == 15
  assert {q["contextSource"] for q in second["questions"]} == {"module-1"}


@pytest.mark.anyio
async def test_answer_promotes_module(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 1)

  detail = (await client.get(base(pid, module))).json()["data"]
  assert detail["status"] == "IN_PROGRESS"
  assert detail["answeredCount"] == 1
  q = detail["questions"][0]
  assert q["respondedAt"] is not None
  assert q["processingStatus"] == "COMPLETE"


@pytest.mark.anyio
async def test_answer_validation_is_400(client, make_project, make_module):
  pid = await make_project()
  module = await make_module(pid)
  qid = module["questions"][0]["id"]
  r = await client.patch(f"{base(pid, module)}/questions/{qid}", json={"response": ""})
  assert r.status_code == 400
  assert "response" in r.json()["error"]


# ---------- chapter generation ----------

@pytest.mark.anyio
async def test_chapter_threshold_boundary(client, make_project, make_module, answer):
  pid = await make_project(birth_year=1958)
  module = await make_module(pid)

  await answer(pid, module, 7)
  r = await client.post(f"{base(pid, module)}/chapter/generate", json={})
  assert r.status_code == 400
  assert r.json()["error"] == (
    "Please answer at least 8 questions before generating a chapter (7/15 answered)"
  )
  detail = (await client.get(base(pid, module))).json()["data"]
  assert detail["chapter"] is None
  assert detail["status"] == "IN_PROGRESS"

  await answer(pid, module, 8)
  r = await client.post(f"{base(pid, module)}/chapter/generate", json={"narrativeTone": "formal"})
  assert r.status_code == 202, r.text
  body = r.json()
  assert body["version"] == 1
  assert body["data"]["status"] == "CHAPTER_GENERATED"
  chapter = body["data"]["chapter"]
  assert chapter["version"] == 1
  assert chapter["narrativeTone"] == "formal"
  assert chapter["narrativePerson"] == "first-person"
  assert chapter["wordCount"] > 0

  job = (await client.get(f"/api/jobs/{body['jobId']}")).json()["data"]
  assert job["status"] == "COMPLETED"
  assert job["progress"] == 100


@pytest.mark.anyio
async def test_generation_rejected_while_generating(client, make_project, make_module, answer, db):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 10)
  await db.execute(
    update(Module).where(Module.id == module["id"]).values(status=ModuleStatus.GENERATING_CHAPTER)
  )
  await db.commit()

  r = await client.post(f"{base(pid, module)}/chapter/generate", json={})
  assert r.status_code == 409
  assert r.json()["error"] == (
    "A chapter is already being generated for this module. Please wait for it to complete."
  )
  count = await db.scalar(select(func.count(ModuleChapter.id)).where(ModuleChapter.module_id == module["id"]))
  assert count == 0


@pytest.mark.anyio
async def test_generation_rejects_invalid_settings(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 15)
  r = await client.post(f"{base(pid, module)}/chapter/generate", json={"narrativeStyle": "rambling"})
  assert r.status_code == 400


@pytest.mark.anyio
async def test_regenerate_versions_and_carry_forward(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 15)

  r = await client.post(f"{base(pid, module)}/chapter/generate", json={"narrativePerson": "third-person"})
  assert r.json()["version"] == 1

  for expected in (2, 3):
    r = await client.post(f"{base(pid, module)}/chapter/regenerate", json={"feedback": "make it warmer"})
    assert r.status_code == 202, r.text
    data = r.json()["data"]
    assert data["status"] == "CHAPTER_GENERATED"
    assert data["chapter"]["version"] == expected
    assert data["chapter"]["narrativePerson"] == "third-person"
    assert data["chapter"]["feedback"] == "make it warmer"
    assert "Eleanor remembered" in data["chapter"]["content"]

  r = await client.post(
    f"{base(pid, module)}/chapter/regenerate", json={"narrativePerson": "first-person"}
  )
  assert r.json()["data"]["chapter"]["narrativePerson"] == "first-person"
  assert r.json()["version"] == 4


@pytest.mark.anyio
async def test_regenerate_without_chapter_rolls_back(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 15)

  r = await client.post(f"{base(pid, module)}/chapter/regenerate", json={"feedback": "shorter"})
  assert r.status_code == 400
  assert r.json()["error"] == "No existing chapter to regenerate. Generate a chapter first."
  detail = (await client.get(base(pid, module))).json()["data"]
  assert detail["status"] == "IN_PROGRESS"
  assert detail["chapter"] is None


@pytest.mark.anyio
async def test_failed_generation_reverts_and_keeps_version(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 15)

  set_gateway(ChapterFailingGateway("OpenAI API error 429: rate limit: slow down"))
  r = await client.post(f"{base(pid, module)}/chapter/generate", json={})
  assert r.status_code == 429
  assert r.json()["type"] == "rate_limited"

  detail = (await client.get(base(pid, module))).json()["data"]
  assert detail["status"] == "QUESTIONS_GENERATED"
  # nothing readable yet; the failed attempt stays visible with its error
  assert detail["chapter"] is None
  assert detail["latestAttempt"]["version"] == 1
  assert detail["latestAttempt"]["content"] == ""
  assert "rate limit" in detail["latestAttempt"]["errorMessage"]

  set_gateway(MockAIGateway(delay_scale=0))
  r = await client.post(f"{base(pid, module)}/chapter/generate", json={})
  assert r.status_code == 202
  assert r.json()["version"] == 2


@pytest.mark.anyio
async def test_failed_regeneration_returns_to_chapter_generated(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 15)
  await client.post(f"{base(pid, module)}/chapter/generate", json={})

  set_gateway(ChapterFailingGateway("something odd happened"))
  r = await client.post(f"{base(pid, module)}/chapter/regenerate", json={})
  assert r.status_code == 500
  assert r.json()["error"] == "Failed to regenerate chapter: something odd happened"

  detail = (await client.get(base(pid, module))).json()["data"]
  assert detail["status"] == "CHAPTER_GENERATED"
  assert detail["chapter"]["version"] == 1
  assert detail["chapter"]["content"]
  assert detail["latestAttempt"]["version"] == 2
  assert detail["latestAttempt"]["errorMessage"] == "something odd happened"
  # the current chapter for reading and export is still version 1
  chapter = (await client.get(f"{base(pid, module)}/chapter")).json()["data"]
  assert chapter["version"] == 1


@pytest.mark.anyio
async def test_edit_chapter_updates_word_count(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 15)
  await client.post(f"{base(pid, module)}/chapter/generate", json={})

  r = await client.patch(f"{base(pid, module)}/chapter", json={"content": "Four words right here."})
  assert r.status_code == 200
  assert r.json()["data"]["wordCount"] == 4
  assert r.json()["data"]["version"] == 1


# ---------- approve ----------

@pytest.mark.anyio
async def test_approve_counts_once(client, make_project, make_module, answer, db):
  pid = await make_project()
  module = await make_module(pid)

  r = await client.post(f"{base(pid, module)}/approve")
  assert r.status_code == 400
  assert r.json()["error"] == "Generate a chapter before approving the module"

  await answer(pid, module, 15)
  await client.post(f"{base(pid, module)}/chapter/generate", json={})

  r = await client.post(f"{base(pid, module)}/approve")
  assert r.status_code == 200
  body = r.json()
  assert body["data"]["status"] == "APPROVED"
  assert body["data"]["approvedAt"] is not None
  assert body["suggestBookCompilation"] is False
  assert body["message"] == "Module approved successfully!"
  # no module follows yet; the client creates module 2 next
  assert body["nextModule"] is None
  assert body["nextModuleNumber"] == 2

  r = await client.post(f"{base(pid, module)}/approve")
  assert r.status_code == 400
  assert r.json()["error"] == "Module already approved"

  project = await db.scalar(select(Project).where(Project.id == pid))
  assert project.total_modules_completed == 1
  assert project.current_module_number == 2

  r = await client.post(f"{base(pid, module)}/chapter/generate", json={})
  assert r.status_code == 400


@pytest.mark.anyio
async def test_approve_suggests_book_after_threshold(client, make_project, make_module, answer):
  pid = await make_project()
  bodies = []
  for _ in range(3):
    module = await make_module(pid)
    await answer(pid, module, 15)
    await client.post(f"{base(pid, module)}/chapter/generate", json={})
    bodies.append((await client.post(f"{base(pid, module)}/approve")).json())

  assert [b["suggestBookCompilation"] for b in bodies] == [False, False, True]
  assert bodies[-1]["message"] == "Module approved! You have enough content to compile your book."
  assert bodies[-1]["approvedCount"] == 3


# ---------- delete ----------

@pytest.mark.anyio
async def test_cannot_delete_only_module(client, make_project, make_module):
  pid = await make_project()
  module = await make_module(pid)
  r = await client.delete(base(pid, module))
  assert r.status_code == 400
  assert r.json()["error"] == "Cannot delete the only module in a project"


@pytest.mark.anyio
async def test_delete_renumbers_and_decrements(client, make_project, make_module, answer, db):
  pid = await make_project()
  first = await make_module(pid)
  await answer(pid, first, 15)
  await client.post(f"{base(pid, first)}/chapter/generate", json={})
  await client.post(f"{base(pid, first)}/approve")
  second = await make_module(pid)
  third = await make_module(pid)

  r = await client.delete(base(pid, second))
  assert r.status_code == 200
  assert r.json()["message"] == "Module deleted successfully"
  modules = (await client.get(f"/api/projects/{pid}/modules")).json()["data"]
  assert [(m["id"], m["moduleNumber"]) for m in modules] == [(first["id"], 1), (third["id"], 2)]

  r = await client.delete(base(pid, first))
  assert r.status_code == 200
  modules = (await client.get(f"/api/projects/{pid}/modules")).json()["data"]
  assert [(m["id"], m["moduleNumber"]) for m in modules] == [(third["id"], 1)]
  project = await db.scalar(select(Project).where(Project.id == pid))
  assert project.total_modules_completed == 0

  assert (await client.get(base(pid, first))).status_code == 404


# ---------- reads / ownership ----------

@pytest.mark.anyio
async def test_module_detail_is_stable(client, make_project, make_module, answer):
  pid = await make_project()
  module = await make_module(pid)
  await answer(pid, module, 15)
  await client.post(f"{base(pid, module)}/chapter/generate", json={})

  a = await client.get(base(pid, module))
  b = await client.get(base(pid, module))
  assert a.content == b.content


@pytest.mark.anyio
async def test_foreign_project_is_not_found(client, make_project, other_user, db):
  foreign = Project(user_id=other_user.id, title="Not yours")
  db.add(foreign)
  await db.commit()

  r = await client.get(f"/api/projects/{foreign.id}")
  assert r.status_code == 404
  assert r.json() == {"error": "Project not found"}
  r = await client.post(f"/api/projects/{foreign.id}/modules", json={})
  assert r.status_code == 404


@pytest.mark.anyio
async def test_second_interviewee_is_conflict(client, make_project):
  pid = await make_project()
  r = await client.post(f"/api/projects/{pid}/interviewee", json={"name": "Someone", "relationship": "Uncle"})
  assert r.status_code == 409
  r = await client.get(f"/api/projects/{pid}/interviewee")
  assert r.json()["data"]["name"] == "Eleanor"
  assert r.json()["data"]["birthYear"] == 1958


@pytest.mark.anyio
async def test_approve_points_at_following_module(client, make_project, make_module, answer):
  pid = await make_project()
  first = await make_module(pid)
  second = await make_module(pid, theme="Working Years")
  await answer(pid, first, 15)
  await client.post(f"{base(pid, first)}/chapter/generate", json={})

  body = (await client.post(f"{base(pid, first)}/approve")).json()
  assert body["nextModule"]["id"] == second["id"]
  assert body["nextModule"]["moduleNumber"] == 2
  assert body["nextModuleNumber"] == 2
