# mabel/services/illustration.py
from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from typing import Optional, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from mabel.errors import PreconditionError
from mabel.settings.config import settings

logger = logging.getLogger(__name__)

UPLOAD_PROMPT = "User-uploaded custom image"
ALLOWED_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
PIL_FORMATS = {"JPEG": {"image/jpeg", "image/jpg"}, "PNG": {"image/png"}, "WEBP": {"image/webp"}}

# first match wins
THEME_RULES = [
    (("childhood", "growing up", "young", "kid"), "childhood memories"),
    (("school", "education", "teacher", "class"), "school days"),
    (("family", "parents", "mother", "father", "sibling"), "family life"),
    (("work", "career", "job", "factory", "office"), "working life"),
    (("love", "marriage", "partner", "wedding", "spouse"), "love and partnership"),
]

_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)


def derive_theme(chapter_content: str) -> str:
    """Theme keyword taken from the chapter's first sentence."""
    first = re.split(r"(?<=[.!?])\s+", (chapter_content or "").strip(), maxsplit=1)[0].lower()
    for keywords, theme in THEME_RULES:
        if any(k in first for k in keywords):
            return theme
    return "life memories"


def build_illustration_prompt(chapter_content: str, module_title: Optional[str] = None) -> str:
    theme = derive_theme(chapter_content)
    subject = f"{theme} from a chapter titled \"{module_title}\"" if module_title else theme
    return (
        f"A gentle pencil sketch illustration evoking {subject}. "
        "Soft graphite lines on warm cream paper, nostalgic and quiet, in the style of a hand-drawn "
        "memoir illustration. No text, no lettering, no faces in close-up."
    )


def decode_upload(image_data: str, mime_type: str) -> Tuple[bytes, str]:
    """Validate an uploaded image (base64 or data URL) and return (bytes, data URL)."""
    mime_type = (mime_type or "").lower()
    raw = (image_data or "").strip()
    m = _DATA_URL.match(raw)
    if m:
        mime_type = m.group("mime").lower()
        raw = m.group("data")
    if mime_type not in ALLOWED_MIME_TYPES:
        raise PreconditionError("Invalid image type. Allowed types: JPEG, PNG, WebP")

    # reject on encoded size before decoding the payload
    if len(raw) * 3 // 4 > settings.MAX_IMAGE_BYTES:
        raise PreconditionError("Image is too large. Maximum size is 5MB")
    try:
        data = base64.b64decode(raw, validate=False)
    except (binascii.Error, ValueError) as e:
        raise PreconditionError("Image data is not valid base64") from e
    if not data:
        raise PreconditionError("Image data is empty")
    if len(data) > settings.MAX_IMAGE_BYTES:
        raise PreconditionError("Image is too large. Maximum size is 5MB")

    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise PreconditionError("Uploaded file is not a readable image") from e
    if mime_type not in PIL_FORMATS.get(fmt, set()):
        raise PreconditionError(f"Image content ({fmt or 'unknown'}) does not match {mime_type}")

    canonical = "image/jpeg" if mime_type == "image/jpg" else mime_type
    return data, f"data:{canonical};base64," + base64.b64encode(data).decode("ascii")


async def load_image_bytes(url: Optional[str], *, timeout: float = 20.0) -> Optional[bytes]:
    """Fetch illustration bytes from a data URL or http(s) URL; None when unavailable."""
    if not url:
        return None
    m = _DATA_URL.match(url)
    if m:
        try:
            return base64.b64decode(m.group("data"))
        except (binascii.Error, ValueError):
            logger.warning("Illustration data URL is not valid base64")
            return None
    if url.startswith(("http://", "https://")):
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                r = await client.get(url)
                r.raise_for_status()
                return r.content
        except httpx.HTTPError as e:
            logger.warning("Could not download illustration %s: %s", url[:80], e)
            return None
    logger.warning("Unsupported illustration URL scheme: %s", url[:40])
    return None


def normalize_png(data: bytes, max_side: int = 1400) -> Optional[bytes]:
    """Re-encode any Pillow-readable image as an RGB PNG, downscaled for print."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGB")
            img.thumbnail((max_side, max_side))
            out = io.BytesIO()
            img.save(out, format="PNG", optimize=True)
            return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning("Illustration could not be decoded: %s", e)
        return None
