import json
import logging
import re
from datetime import date
from typing import Any, List, Optional, Sequence

import httpx

from mabel.ai_gateway import (
    GeneratedQuestion,
    ImageResult,
    IntervieweeContext,
    NarrativeSettings,
    QAPair,
    TranscriptionResult,
    count_words,
)
from mabel.errors import ProviderError

logger = logging.getLogger(__name__)

# USD per 1K tokens
PROMPT_TOKEN_COST = 0.01
COMPLETION_TOKEN_COST = 0.03

SYSTEM_PROMPTS = {
    "questions": (
        "You are an expert interviewer who captures personal life stories and family histories. "
        "Ask open-ended, conversational questions that invite detailed storytelling, show genuine "
        "interest, and encourage reflection on meaning and emotion rather than bare facts."
    ),
    "follow_up": (
        "You are an expert interviewer conducting a follow-up session. You have read the earlier "
        "answers. Reference specific details from them (\"You mentioned...\"), explore the themes you "
        "noticed, ask for stories behind broad statements, and connect different parts of the life story."
    ),
    "chapter": (
        "You are a professional memoir writer and editor. Turn interview answers into narrative prose "
        "that flows as a story, preserves the speaker's authentic voice and emotional tone, uses the "
        "specific details they gave, and never invents facts."
    ),
    "polish": (
        "You are a transcription editor. Lightly fix punctuation, casing, and obvious transcription errors. "
        "Remove filler words and stage directions like [laughs]. Keep the speaker's voice and meaning. "
        "Do not add facts. Write it as first-person prose in short readable paragraphs."
    ),
}


#----------text polish---------------

def _sanitize_llm_text(out: str) -> str:
    """Remove assistant-y prefaces and unwrap code fences/quotes."""
    if not out:
        return ""
    s = out.strip()
    # Prefer content inside triple backticks if present
    m = re.search(r"```(?:\w+)?\s*([\s\S]*?)```", s)
    if m and m.group(1).strip():
        s = m.group(1).strip()
    lines = [ln.rstrip() for ln in s.splitlines()]
    while lines:
        head = lines[0].strip()
        if not head:
            lines.pop(0)
            continue
        low = head.lower().rstrip(":")
        boiler = (
            low.startswith("here is")
            or low.startswith("here's")
            or "here you go" in low
            or low.endswith("transcript")
            or low.startswith("chapter")
            or low.startswith("title")
        )
        if boiler and len(head) <= 120:
            lines.pop(0)
            continue
        break
    s = "\n".join(lines).strip()
    if (s.startswith('"') and s.endswith('"')) or (s.startswith("“") and s.endswith("”")):
        inner = s[1:-1].strip()
        if inner:
            s = inner
    return s


def parse_questions(content: str, count: Optional[int] = None) -> List[GeneratedQuestion]:
    """Pull the first JSON array out of a completion and normalize it."""
    m = re.search(r"\[[\s\S]*\]", content or "")
    if not m:
        raise ProviderError("Malformed AI response: no JSON array found")
    try:
        items = json.loads(m.group(0))
    except ValueError as e:
        raise ProviderError(f"Malformed AI response: {e}") from e
    if not isinstance(items, list):
        raise ProviderError("Malformed AI response: expected a list of questions")

    out: List[GeneratedQuestion] = []
    for idx, item in enumerate(items):
        if isinstance(item, str):
            item = {"question": item}
        if not isinstance(item, dict):
            continue
        text = (item.get("question") or "").strip()
        if not text:
            continue
        try:
            order = int(item.get("order") or idx + 1)
        except (TypeError, ValueError):
            order = idx + 1
        out.append(GeneratedQuestion(question=text, category=(item.get("category") or "General").strip(), order=order))

    if count is not None:
        if len(out) < count:
            raise ProviderError(f"Malformed AI response: expected {count} questions, got {len(out)}")
        out = out[:count]
        for i, q in enumerate(out, start=1):
            q.order = i
    return out


# ---------- prompt builders ----------

def build_module1_prompt(context: IntervieweeContext, count: int) -> str:
    topics = (
        f"Focus areas: {', '.join(context.topics)}" if context.topics
        else "Cover a broad range of life experiences"
    )
    profile = [f"- Name: {context.name}", f"- Relationship: {context.relationship}"]
    if context.birth_year:
        profile.append(f"- Birth year: {context.birth_year} (age ~{date.today().year - context.birth_year})")
    if context.generation:
        profile.append(f"- Generation: {context.generation}")

    return (
        f"Generate {count} thoughtful interview questions for {context.name}.\n\n"
        "Interviewee profile:\n" + "\n".join(profile) + "\n\n"
        f"Focus:\n{topics}\n\n"
        "Requirements:\n"
        f"- Generate EXACTLY {count} questions\n"
        "- Cover diverse categories: Early Life, Adolescence, Career, Relationships, Values, Legacy\n"
        "- Open-ended and conversational, no yes/no questions\n"
        f"- Personalize the questions to {context.name}'s profile\n\n"
        "Return ONLY a JSON array: "
        '[{"question": "...", "category": "...", "order": 1}]'
    )


def build_follow_up_prompt(
    context: IntervieweeContext, previous: Sequence[QAPair], module_number: int, count: int
) -> str:
    qa = "\n\n".join(
        f"Q{i}: {p.question}\nA{i}: {p.response}" for i, p in enumerate(previous, start=1)
    )
    return (
        f"Generate {count} follow-up questions for {context.name}'s Module {module_number}.\n\n"
        f"{context.name} ({context.relationship}) already answered these questions:\n\n{qa}\n\n"
        f"Generate {count} NEW questions that reference specific details from those answers, dive deeper "
        "into the interesting topics, explore connections between parts of the story, and fill gaps in "
        "the timeline or relationships. Avoid repeating themes that are already thoroughly covered.\n\n"
        f"Generate EXACTLY {count} questions. Return ONLY a JSON array: "
        '[{"question": "You mentioned ... Can you tell me more about ...", "category": "...", "order": 1}]'
    )


def build_chapter_prompt(
    qa_pairs: Sequence[QAPair],
    narrative: NarrativeSettings,
    *,
    interviewee_name: Optional[str] = None,
    feedback: Optional[str] = None,
    previous_chapter: Optional[str] = None,
) -> str:
    qa = "\n\n".join(f"Q: {p.question}\nA: {p.response}" for p in qa_pairs)
    parts = [
        "Transform these Q&A responses into a cohesive narrative chapter.",
        f"Q&A content:\n{qa}",
        "Narrative style:\n"
        f"- Perspective: {narrative.person}\n- Tone: {narrative.tone}\n- Style: {narrative.style}",
    ]
    if interviewee_name:
        parts.append(f"The subject of the memoir is {interviewee_name}.")
    if previous_chapter:
        parts.append(f"Previous draft of this chapter:\n{previous_chapter}")
    if feedback:
        parts.append(f"Revise the chapter according to this feedback from the family:\n{feedback}")
    parts.append(
        "Requirements: flowing prose in clear paragraphs (no headings), keep every important detail, "
        "smooth transitions, 800-1200 words, use ONLY information from the responses.\n"
        "Return ONLY the narrative text."
    )
    return "\n\n".join(parts)


def _error_message(r: httpx.Response) -> str:
    detail = ""
    try:
        err = (r.json() or {}).get("error") or {}
        if isinstance(err, dict):
            detail = err.get("message") or ""
            code = err.get("code") or err.get("type")
            if code:
                detail = f"{detail} ({code})"
        else:
            detail = str(err)
    except ValueError:
        detail = r.text[:300]
    if r.status_code == 429 and "quota" not in detail.lower():
        detail = f"rate limit: {detail}"
    return f"OpenAI API error {r.status_code}: {detail}".strip()


class OpenAIGateway:
    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4-turbo-preview",
        max_tokens: int = 4000,
        timeout: float = 120.0,
        image_model: str = "dall-e-3",
        transcribe_model: str = "whisper-1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.image_model = image_model
        self.transcribe_model = transcribe_model
        self._transport = transport
        self.total_tokens = 0
        self.total_cost = 0.0

    @classmethod
    def from_settings(cls, s) -> "OpenAIGateway":
        return cls(
            s.OPENAI_API_KEY or "",
            base_url=s.OPENAI_BASE_URL,
            model=s.OPENAI_MODEL,
            max_tokens=s.OPENAI_MAX_TOKENS,
            timeout=s.OPENAI_TIMEOUT,
            image_model=s.OPENAI_IMAGE_MODEL,
            transcribe_model=s.OPENAI_TRANSCRIBE_MODEL,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _post(self, path: str, **kwargs: Any) -> dict:
        try:
            async with self._client() as client:
                r = await client.post(path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"OpenAI request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e
        if r.status_code >= 400:
            raise ProviderError(_error_message(r))
        try:
            return r.json()
        except ValueError as e:
            raise ProviderError(f"Malformed AI response: {r.text[:200]}") from e

    def _track_usage(self, usage: Optional[dict]) -> None:
        if not usage:
            return
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        cost = prompt / 1000 * PROMPT_TOKEN_COST + completion / 1000 * COMPLETION_TOKEN_COST
        self.total_tokens += prompt + completion
        self.total_cost += cost
        logger.info(
            "OpenAI call: %s prompt + %s completion tokens, $%.4f (session $%.4f)",
            prompt, completion, cost, self.total_cost,
        )

    async def _chat(self, system: str, user: str, temperature: float = 0.7) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "max_tokens": self.max_tokens,
            "temperature": temperature,
        }
        data = await self._post("/chat/completions", json=payload)
        self._track_usage(data.get("usage"))
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Malformed AI response: missing choices") from e
        if not content.strip():
            raise ProviderError("Malformed AI response: empty completion")
        return content

    def usage_stats(self) -> dict:
        return {"total_tokens": self.total_tokens, "estimated_cost": round(self.total_cost, 4)}

    async def generate_questions(self, context: IntervieweeContext, count: int) -> List[GeneratedQuestion]:
        logger.info("Generating %s foundation questions for %s", count, context.name)
        raw = await self._chat(SYSTEM_PROMPTS["questions"], build_module1_prompt(context, count))
        return parse_questions(raw, count)

    async def generate_follow_up_questions(
        self, context: IntervieweeContext, previous: Sequence[QAPair], module_number: int, count: int
    ) -> List[GeneratedQuestion]:
        logger.info("Generating module %s follow-ups from %s answers", module_number, len(previous))
        raw = await self._chat(
            SYSTEM_PROMPTS["follow_up"], build_follow_up_prompt(context, previous, module_number, count)
        )
        questions = parse_questions(raw, count)
        # the model references earlier answers; attribute the batch to the latest source module
        latest = max((p.module_number for p in previous if p.module_number), default=None)
        for q in questions:
            q.context_source = f"module-{latest}" if latest else None
        return questions

    async def generate_chapter(
        self,
        qa_pairs: Sequence[QAPair],
        narrative: NarrativeSettings,
        *,
        interviewee_name: Optional[str] = None,
        feedback: Optional[str] = None,
        previous_chapter: Optional[str] = None,
    ) -> str:
        prompt = build_chapter_prompt(
            qa_pairs, narrative,
            interviewee_name=interviewee_name, feedback=feedback, previous_chapter=previous_chapter,
        )
        raw = await self._chat(SYSTEM_PROMPTS["chapter"], prompt, temperature=0.8)
        text = _sanitize_llm_text(raw)
        logger.info("Generated chapter with %s words", count_words(text))
        return text

    async def generate_image(
        self, prompt: str, *, size: str = "1024x1024", quality: str = "standard", style: str = "natural"
    ) -> ImageResult:
        payload = {
            "model": self.image_model,
            "prompt": prompt,
            "n": 1,
            "size": size,
            "quality": quality,
            "style": style,
            "response_format": "url",
        }
        data = await self._post("/images/generations", json=payload)
        try:
            first = data["data"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Malformed AI response: no image returned") from e
        url = first.get("url")
        if not url and first.get("b64_json"):
            url = "data:image/png;base64," + first["b64_json"]
        if not url:
            raise ProviderError("Malformed AI response: no image URL returned")
        return ImageResult(url=url, revised_prompt=first.get("revised_prompt"))

    async def transcribe_audio_file(
        self, data: bytes, filename: str, *, duration_hint: Optional[float] = None
    ) -> TranscriptionResult:
        out = await self._post(
            "/audio/transcriptions",
            files={"file": (filename, data)},
            data={"model": self.transcribe_model, "response_format": "verbose_json"},
        )
        text = (out.get("text") or "").strip()
        duration = float(out.get("duration") or duration_hint or 0.0)
        return TranscriptionResult(text=text, duration=duration, word_count=count_words(text))

    async def polish_answer(self, transcript: str, *, question: Optional[str] = None) -> str:
        if not transcript.strip():
            return transcript
        user = f"Original transcript:\n{transcript}\n---\nCleaned transcript:"
        if question:
            user = f"The speaker was answering: {question}\n\n{user}"
        raw = await self._chat(SYSTEM_PROMPTS["polish"], user, temperature=0.2)
        return _sanitize_llm_text(raw) or transcript
