# mabel/services/storage.py
# Audio blobs live on disk under STORAGE_ROOT/audio; rows only keep the key.
import logging
import os
import re
from pathlib import Path

from mabel.background import run_sync
from mabel.settings.config import settings

logger = logging.getLogger(__name__)

AUDIO_FORMATS = {"aac": "m4a", "webm": "webm"}


def audio_key_for(question_id: int, audio_format: str = "aac") -> str:
    return f"module-q-{question_id}.{AUDIO_FORMATS.get(audio_format, 'm4a')}"


def _safe_key(key: str) -> str:
    key = os.path.basename(key or "")
    key = re.sub(r"[^\w\-_.]", "_", key)
    if not key or key.startswith("."):
        raise ValueError("invalid storage key")
    return key


class AudioStore:
    def __init__(self, root: str | os.PathLike):
        self.root = Path(root) / "audio"

    def path_for(self, key: str) -> Path:
        return self.root / _safe_key(key)

    def _write(self, key: str, data: bytes) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        dest = self.path_for(key)
        tmp = dest.with_suffix(dest.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(dest)
        return dest

    async def save(self, key: str, data: bytes) -> Path:
        dest = await run_sync(self._write, key, data)
        logger.info("stored %s (%s bytes)", dest.name, len(data))
        return dest

    async def read(self, key: str) -> bytes:
        return await run_sync(self.path_for(key).read_bytes)

    async def delete(self, key: str) -> None:
        await run_sync(self.path_for(key).unlink, missing_ok=True)


def get_audio_store() -> AudioStore:
    return AudioStore(settings.STORAGE_ROOT)
