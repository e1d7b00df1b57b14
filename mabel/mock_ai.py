# mabel/mock_ai.py
# Deterministic stand-in for the AI provider, used in development and tests.
import asyncio
import base64
import hashlib
import io
import logging
import random
import re
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw

from mabel.ai_gateway import (
    GeneratedQuestion,
    ImageResult,
    IntervieweeContext,
    NarrativeSettings,
    QAPair,
    TranscriptionResult,
    count_words,
)

logger = logging.getLogger(__name__)

QUESTION_TEMPLATES: List[Tuple[str, str]] = [
    ("What are your earliest memories of growing up?", "Early Life & Childhood"),
    ("Tell me about your family. What were your parents like?", "Early Life & Childhood"),
    ("What was school like for you?", "Adolescence & Education"),
    ("What did you dream of becoming when you were young?", "Adolescence & Education"),
    ("Tell me about your teenage years. What were they like?", "Adolescence & Education"),
    ("Tell me about your first real job.", "Career & Work Life"),
    ("What has been your proudest professional accomplishment?", "Career & Work Life"),
    ("What was the most challenging period in your career?", "Career & Work Life"),
    ("How did you meet your spouse or partner?", "Relationships & Family"),
    ("What has been the most important relationship in your life?", "Relationships & Family"),
    ("Tell me about becoming a parent, if that is part of your story.", "Relationships & Family"),
    ("What principles or values have guided your life?", "Values & Beliefs"),
    ("What is the most important lesson you have learned in life?", "Values & Beliefs"),
    ("Looking back, what are you most proud of, [NAME]?", "Legacy & Reflection"),
    ("What do you hope your family will remember about you as their [RELATIONSHIP]?", "Legacy & Reflection"),
    ("Tell me about a time that shaped who you are today.", "Life Experiences"),
    ("What traditions or customs from [GENERATION] are most important to you?", "Traditions & Culture"),
    ("Tell me about a challenge or hardship you overcame.", "Challenges & Growth"),
    ("What brings you the most joy in life?", "Values & Beliefs"),
    ("If you could share one piece of wisdom, what would it be?", "Legacy & Reflection"),
]

FOLLOW_UP_TEMPLATES: List[Tuple[str, str]] = [
    ("You mentioned [THEME]. Can you tell me more about how it shaped those years?", "Deep Dive"),
    ("What specific memories stand out when you think about [THEME]?", "Specific Memories"),
    ("Can you share a moment or story that really captures [THEME]?", "Life Experiences"),
    ("How did [THEME] change or evolve over time in your life?", "Life Journey"),
    ("Were there any obstacles related to [THEME] that you had to overcome?", "Challenges & Growth"),
    ("What emotions come back when you think about [THEME]?", "Reflections"),
    ("Who played an important part in your experience with [THEME]?", "Relationships & Family"),
    ("How do you think [THEME] influenced the person you became?", "Personal Growth"),
    ("What advice would you give someone today about [THEME]?", "Wisdom & Advice"),
    ("If you could go back to [THEME], what would you do differently?", "Reflections"),
    ("What did the people around you think about [THEME] at the time?", "Relationships & Family"),
    ("Is there an object, photo or place that reminds you of [THEME]?", "Specific Memories"),
]

COMMON_WORDS = {
    "about", "after", "again", "their", "there", "these", "those", "which", "would", "could",
    "should", "where", "while", "being", "every", "really", "always", "never", "thing", "things",
}
PHRASE_STARTERS = {"i", "my", "the", "a", "an", "we", "our", "when", "where", "it", "was", "and"}

MOCK_TRANSCRIPT = (
    "Well, I remember it was a beautiful spring day in 1965. I was just seven years old at the time.\n\n"
    "My family lived in a small house on Maple Street, right at the edge of town. It wasn't much, but it "
    "was home. My father worked at the factory, and my mother took care of us kids. There were four of us, "
    "me, my older brother Tom, and my two younger sisters, Mary and Beth.\n\n"
    "I remember my mother always had roses growing in the front yard. She'd spend hours tending to them, "
    "talking to them like they were her children too. [laughs]\n\n"
    "My father was a quiet man. He worked hard every day, but he always had time to throw the ball around "
    "or help with homework. He taught me the value of hard work and of keeping your word. Those lessons "
    "stuck with me my whole life."
)

TONE_OPENINGS = {
    "warm": "There are memories that stay with a person like the smell of a kitchen on a winter morning.",
    "formal": "What follows is an account drawn from a life observed closely and remembered with care.",
    "conversational": "So here's how it went, more or less, the way it gets told around the table.",
}
STYLE_CLOSINGS = {
    "descriptive": "Each of these moments carries its own light, and together they make a life worth telling.",
    "concise": "These are the facts of it, and they are enough.",
    "poetic": "Like roses along a fence line, the years bloomed, faded and came back again.",
}


class MockAIGateway:
    name = "mock"

    def __init__(self, delay_scale: float = 1.0):
        self.delay_scale = max(0.0, float(delay_scale))

    async def _delay(self, seconds: float) -> None:
        if self.delay_scale > 0:
            await asyncio.sleep(seconds * self.delay_scale)

    # ---------- questions ----------

    @staticmethod
    def _personalize(text: str, context: IntervieweeContext) -> str:
        return (
            text.replace("[NAME]", context.name)
            .replace("[RELATIONSHIP]", context.relationship)
            .replace("[GENERATION]", context.generation or "your generation")
        )

    @staticmethod
    def _templates_for(context: IntervieweeContext) -> List[Tuple[str, str]]:
        if not context.topics:
            return list(QUESTION_TEMPLATES)
        keywords = [t.lower() for t in context.topics if t]
        matched = [
            t for t in QUESTION_TEMPLATES
            if any(k in (t[0] + " " + t[1]).lower() for k in keywords)
        ]
        rest = [t for t in QUESTION_TEMPLATES if t not in matched]
        return matched + rest

    async def generate_questions(self, context: IntervieweeContext, count: int) -> List[GeneratedQuestion]:
        logger.info("[mock] generating %s questions for %s", count, context.name)
        await self._delay(2.0)
        templates = self._templates_for(context)
        out = []
        for i in range(count):
            text, category = templates[i % len(templates)]
            out.append(GeneratedQuestion(question=self._personalize(text, context), category=category, order=i + 1))
        return out

    @staticmethod
    def extract_phrase(response: str) -> str:
        """Pull a short phrase out of the first sentence of an answer."""
        sentences = [s.strip() for s in re.split(r"[.!?]+", response or "") if s.strip()]
        if not sentences:
            return "that experience"
        words = sentences[0].split()
        for i in range(len(words) - 1):
            if words[i].lower() in PHRASE_STARTERS:
                continue
            phrase = " ".join(words[i:i + 3]).strip(",;:")
            if 5 < len(phrase) < 50:
                return phrase.lower()
        return " ".join(words[:3]).lower() or "that experience"

    @staticmethod
    def extract_themes(previous: Sequence[QAPair], limit: int = 10) -> List[str]:
        themes: List[str] = []
        for pair in previous:
            for word in re.findall(r"\b[a-z]{5,}\b", (pair.response or "").lower()):
                if word not in COMMON_WORDS and word not in themes:
                    themes.append(word)
        return themes[:limit]

    async def generate_follow_up_questions(
        self, context: IntervieweeContext, previous: Sequence[QAPair], module_number: int, count: int
    ) -> List[GeneratedQuestion]:
        logger.info("[mock] follow-ups for module %s from %s answers", module_number, len(previous))
        await self._delay(2.0)
        answered = [p for p in previous if (p.response or "").strip()]
        if not answered:
            return await self.generate_questions(context, count)

        out = []
        # walk answers newest first so module N leans on the latest material
        sources = list(reversed(answered))
        offset = (module_number - 1) * 3
        for i in range(count):
            pair = sources[i % len(sources)]
            text, category = FOLLOW_UP_TEMPLATES[(offset + i) % len(FOLLOW_UP_TEMPLATES)]
            text = self._personalize(text.replace("[THEME]", self.extract_phrase(pair.response)), context)
            source = f"module-{pair.module_number}" if pair.module_number else None
            out.append(GeneratedQuestion(question=text, category=category, order=i + 1, context_source=source))
        return out

    # ---------- chapters ----------

    async def generate_chapter(
        self,
        qa_pairs: Sequence[QAPair],
        narrative: NarrativeSettings,
        *,
        interviewee_name: Optional[str] = None,
        feedback: Optional[str] = None,
        previous_chapter: Optional[str] = None,
    ) -> str:
        size = sum(len(p.response or "") for p in qa_pairs)
        await self._delay(min(5.0, 1.0 + size / 2000))

        name = interviewee_name or "they"
        paragraphs = [TONE_OPENINGS.get(narrative.tone, TONE_OPENINGS["warm"])]
        for pair in qa_pairs:
            answer = (pair.response or "").strip()
            if not answer:
                continue
            if narrative.style == "concise":
                answer = " ".join(re.split(r"(?<=[.!?])\s+", answer)[:2])
            if narrative.person == "third-person":
                paragraphs.append(f"Asked \"{pair.question.strip()}\", {name} remembered: {answer}")
            else:
                paragraphs.append(answer)
        if feedback:
            paragraphs.append(f"Looking back once more, with {feedback.strip().rstrip('.').lower()} in mind, "
                              "the story settles into place.")
        paragraphs.append(STYLE_CLOSINGS.get(narrative.style, STYLE_CLOSINGS["descriptive"]))
        return "\n\n".join(paragraphs)

    # ---------- images ----------

    async def generate_image(
        self, prompt: str, *, size: str = "1024x1024", quality: str = "standard", style: str = "natural"
    ) -> ImageResult:
        await self._delay(3.0)
        try:
            w, h = (int(x) for x in size.lower().split("x", 1))
        except ValueError:
            w, h = 1024, 1024
        # keep the placeholder small; it only needs to be a real image
        w, h = min(w, 512), min(h, 512)
        seed = int(hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:12], 16)
        rng = random.Random(seed)

        img = Image.new("RGB", (w, h), (250, 246, 238))
        draw = ImageDraw.Draw(img)
        for _ in range(60):
            x0, y0 = rng.randrange(w), rng.randrange(h)
            x1, y1 = x0 + rng.randint(-w // 3, w // 3), y0 + rng.randint(-h // 3, h // 3)
            shade = rng.randint(40, 140)
            draw.line((x0, y0, x1, y1), fill=(shade, shade, shade), width=rng.randint(1, 3))

        buf = io.BytesIO()
        img.save(buf, format="PNG")
        url = "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
        return ImageResult(url=url, revised_prompt=prompt)

    # ---------- audio ----------

    async def transcribe_audio_file(
        self, data: bytes, filename: str, *, duration_hint: Optional[float] = None
    ) -> TranscriptionResult:
        # roughly 32 kbit/s compressed speech when the client sent no duration
        duration = float(duration_hint) if duration_hint else round(len(data) / 4000.0, 1)
        logger.info("[mock] transcribing %s (%.1fs)", filename, duration)
        await self._delay(max(1.0, duration / 60.0))
        return TranscriptionResult(text=MOCK_TRANSCRIPT, duration=duration, word_count=count_words(MOCK_TRANSCRIPT))

    async def polish_answer(self, transcript: str, *, question: Optional[str] = None) -> str:
        await self._delay(1.0)
        text = re.sub(r"\[[^\]]*\]", "", transcript or "")
        text = re.sub(r"^(well|so|um|uh),?\s+", "", text.strip(), flags=re.IGNORECASE)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text).strip()
        return text[:1].upper() + text[1:] if text else text
