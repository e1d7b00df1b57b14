"""Uniform surface over the AI provider.

Two implementations exist: ``MockAIGateway`` (deterministic, template
based, artificially delayed) and ``OpenAIGateway`` (httpx against an
OpenAI-compatible REST API). ``get_gateway`` picks one from settings.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Protocol, Sequence

from mabel.settings.config import settings

logger = logging.getLogger(__name__)


def count_words(text: Optional[str]) -> int:
    return len(re.findall(r"\S+", text or ""))


@dataclass
class IntervieweeContext:
    name: str
    relationship: str
    birth_year: Optional[int] = None
    generation: Optional[str] = None
    topics: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntervieweeContext":
        return cls(
            name=data.get("name") or "the interviewee",
            relationship=data.get("relationship") or "family member",
            birth_year=data.get("birth_year"),
            generation=data.get("generation"),
            topics=list(data.get("topics") or []),
        )


@dataclass
class GeneratedQuestion:
    question: str
    category: str = "General"
    order: int = 0
    context_source: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class QAPair:
    question: str
    response: str
    category: str = "General"
    module_number: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QAPair":
        return cls(
            question=data.get("question") or "",
            response=data.get("response") or "",
            category=data.get("category") or "General",
            module_number=data.get("module_number"),
        )


@dataclass
class NarrativeSettings:
    person: str = "first-person"
    tone: str = "warm"
    style: str = "descriptive"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NarrativeSettings":
        data = data or {}
        return cls(
            person=data.get("person") or "first-person",
            tone=data.get("tone") or "warm",
            style=data.get("style") or "descriptive",
        )


@dataclass
class TranscriptionResult:
    text: str
    duration: float
    word_count: int


@dataclass
class ImageResult:
    url: str
    revised_prompt: Optional[str] = None


class AIGateway(Protocol):
    name: str

    async def generate_questions(self, context: IntervieweeContext, count: int) -> List[GeneratedQuestion]:
        ...

    async def generate_follow_up_questions(
        self, context: IntervieweeContext, previous: Sequence[QAPair], module_number: int, count: int
    ) -> List[GeneratedQuestion]:
        ...

    async def generate_chapter(
        self,
        qa_pairs: Sequence[QAPair],
        narrative: NarrativeSettings,
        *,
        interviewee_name: Optional[str] = None,
        feedback: Optional[str] = None,
        previous_chapter: Optional[str] = None,
    ) -> str:
        ...

    async def generate_image(
        self, prompt: str, *, size: str = "1024x1024", quality: str = "standard", style: str = "natural"
    ) -> ImageResult:
        ...

    async def transcribe_audio_file(
        self, data: bytes, filename: str, *, duration_hint: Optional[float] = None
    ) -> TranscriptionResult:
        ...

    async def polish_answer(self, transcript: str, *, question: Optional[str] = None) -> str:
        ...


_gateway: Optional[AIGateway] = None


def get_gateway() -> AIGateway:
    global _gateway
    if _gateway is None:
        if settings.use_mock_ai:
            from mabel.mock_ai import MockAIGateway
            _gateway = MockAIGateway(delay_scale=settings.MOCK_AI_DELAY_SCALE)
        else:
            from mabel.llm_client import OpenAIGateway
            _gateway = OpenAIGateway.from_settings(settings)
        logger.info("AI gateway selected: %s", _gateway.name)
    return _gateway


def set_gateway(gateway: Optional[AIGateway]) -> None:
    """Swap the process-wide gateway (``None`` re-reads settings on next use)."""
    global _gateway
    _gateway = gateway
