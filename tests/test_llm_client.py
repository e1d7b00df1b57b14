import json

import httpx
import pytest

from mabel.ai_gateway import IntervieweeContext, NarrativeSettings, QAPair
from mabel.errors import ProviderError, classify_provider_error
from mabel.llm_client import OpenAIGateway, build_chapter_prompt, parse_questions

CONTEXT = IntervieweeContext(name="Eleanor", relationship="Grandmother", birth_year=1958)


def completion(content, usage=None):
  return {
    "choices": [{"message": {"role": "assistant", "content": content}}],
    "usage": usage or {"prompt_tokens": 1000, "completion_tokens": 1000},
  }


def gateway(handler):
  return OpenAIGateway("sk-test", base_url="http://ai.test/v1", transport=httpx.MockTransport(handler))


def test_parse_questions_fills_defaults():
  content = 'Sure! Here you go:\n[{"question": "Where were you born?"}, {"question": "Who raised you?", "category": "Family", "order": 7}]'
  questions = parse_questions(content)
  assert [(q.question, q.category, q.order) for q in questions] == [
    ("Where were you born?", "General", 1),
    ("Who raised you?", "Family", 7),
  ]


def test_parse_questions_enforces_count():
  content = json.dumps([{"question": f"Q{i}?"} for i in range(5)])
  with pytest.raises(ProviderError):
    parse_questions(content, 6)
  trimmed = parse_questions(content, 3)
  assert [q.order for q in trimmed] == [1, 2, 3]
  with pytest.raises(ProviderError):
    parse_questions("no json here", 3)


def test_chapter_prompt_carries_feedback_and_draft():
  prompt = build_chapter_prompt(
    [QAPair(question="Q?", response="A.")],
    NarrativeSettings(person="third-person", tone="formal", style="poetic"),
    interviewee_name="Eleanor", feedback="make it warmer", previous_chapter="Old draft.",
  )
  assert "Perspective: third-person" in prompt
  assert "800-1200 words" in prompt
  assert "make it warmer" in prompt and "Old draft." in prompt


@pytest.mark.anyio
async def test_generate_questions_and_usage():
  seen = []

  def handler(request):
    seen.append(json.loads(request.content))
    items = [{"question": f"Question {i}?", "category": "Life"} for i in range(4)]
    return httpx.Response(200, json=completion(json.dumps(items)))

  gw = gateway(handler)
  questions = await gw.generate_questions(CONTEXT, 4)
  assert len(questions) == 4
  assert seen[0]["model"] == "gpt-4-turbo-preview"
  assert "EXACTLY 4 questions" in seen[0]["messages"][1]["content"]
  assert gw.usage_stats() == {"total_tokens": 2000, "estimated_cost": 0.04}


@pytest.mark.anyio
async def test_follow_ups_attribute_source_module():
  def handler(request):
    items = [{"question": "You mentioned the barn. What happened there?"}] * 2
    return httpx.Response(200, json=completion(json.dumps(items)))

  previous = [
    QAPair(question="a", response="b", module_number=1),
    QAPair(question="c", response="d", module_number=2),
  ]
  questions = await gateway(handler).generate_follow_up_questions(CONTEXT, previous, 3, 2)
  assert {q.context_source for q in questions} == {"module-2"}


@pytest.mark.anyio
async def test_quota_error_is_classifiable():
  def handler(request):
    return httpx.Response(429, json={"error": {"message": "You exceeded your current quota", "code": "insufficient_quota"}})

  with pytest.raises(ProviderError) as exc:
    await gateway(handler).generate_chapter([], NarrativeSettings())
  assert classify_provider_error(exc.value).error_type == "quota_exceeded"


@pytest.mark.anyio
async def test_plain_429_reads_as_rate_limit():
  def handler(request):
    return httpx.Response(429, json={"error": {"message": "Slow down"}})

  with pytest.raises(ProviderError) as exc:
    await gateway(handler).generate_chapter([], NarrativeSettings())
  assert classify_provider_error(exc.value).error_type == "rate_limited"


@pytest.mark.anyio
async def test_timeout_becomes_provider_error():
  def handler(request):
    raise httpx.ReadTimeout("too slow", request=request)

  with pytest.raises(ProviderError) as exc:
    await gateway(handler).polish_answer("hello")
  assert classify_provider_error(exc.value).status_code == 504


@pytest.mark.anyio
async def test_image_and_transcription_endpoints():
  def handler(request):
    if request.url.path.endswith("/images/generations"):
      body = json.loads(request.content)
      assert (body["size"], body["quality"], body["style"]) == ("1024x1024", "standard", "natural")
      return httpx.Response(200, json={"data": [{"url": "https://img.test/1.png", "revised_prompt": "sketch"}]})
    if request.url.path.endswith("/audio/transcriptions"):
      return httpx.Response(200, json={"text": " hello there ", "duration": 3.5})
    return httpx.Response(404)

  gw = gateway(handler)
  image = await gw.generate_image("sketch")
  assert (image.url, image.revised_prompt) == ("https://img.test/1.png", "sketch")
  result = await gw.transcribe_audio_file(b"abc", "a.webm")
  assert (result.text, result.duration, result.word_count) == ("hello there", 3.5, 2)
