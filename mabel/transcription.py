# mabel/transcription.py
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Tuple

from mabel.ai_gateway import TranscriptionResult, count_words, get_gateway
from mabel.background import run_sync
from mabel.settings.config import settings

logger = logging.getLogger(__name__)


async def transcribe_audio(data: bytes, filename: str, *, duration_hint: Optional[float] = None) -> TranscriptionResult:
    """Transcribe one recorded answer with the configured backend."""
    if settings.TRANSCRIPTION_BACKEND == "local":
        return await run_sync(transcribe_locally, data, filename, duration_hint)
    return await get_gateway().transcribe_audio_file(data, filename, duration_hint=duration_hint)


# ---------------------------------------------------------------------------
# FFmpeg + faster-whisper (TRANSCRIPTION_BACKEND=local)
# ---------------------------------------------------------------------------
def convert_to_wav(input_path: Path, target_sr: int = 16000, mono: bool = True) -> Path:
    """
    Convert to mono 16kHz 16-bit WAV (audio-only).
    """
    if not input_path.exists() or input_path.stat().st_size == 0:
        raise RuntimeError(f"Missing audio file: {input_path}")
    out = input_path.with_name(f"{input_path.stem}-16k.wav")
    ac = "1" if mono else "2"
    cmd = [
        "ffmpeg", "-nostdin", "-hide_banner", "-loglevel", "error",
        "-y", "-i", str(input_path),
        "-vn", "-map", "a:0?",
        "-ar", str(target_sr), "-ac", ac, "-c:a", "pcm_s16le", "-f", "wav", str(out)
    ]
    logger.info("ffmpeg: %s -> %s", input_path.name, out.name)
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"ffmpeg failed: {e.stderr.decode('utf-8', 'ignore')}") from e
    if not out.exists() or out.stat().st_size == 0:
        raise RuntimeError("ffmpeg produced no output")
    return out


def _compute_params(device_hint: str) -> Tuple[str, str]:
    compute = settings.WHISPER_COMPUTE.lower()
    if device_hint == "cuda":
        return "cuda", ("float16" if compute in ("auto", "float16") else compute)
    return "cpu", ("int8" if compute in ("auto", "int8") else compute)


def _load_model():
    # faster-whisper is an optional extra; only hosts running local transcription install it
    from faster_whisper import WhisperModel

    preferred = settings.WHISPER_DEVICE.lower()
    first = "cuda" if preferred in ("auto", "cuda") else preferred
    try:
        dev, ctype = _compute_params(first)
        model = WhisperModel(settings.WHISPER_MODEL, device=dev, compute_type=ctype)
    except Exception as e:  # noqa: BLE001  (no CUDA runtime on this host)
        logger.warning("Whisper failed on %s: %s; falling back to CPU", first, e)
        dev, ctype = _compute_params("cpu")
        model = WhisperModel(settings.WHISPER_MODEL, device=dev, compute_type=ctype)
    logger.info("Whisper '%s' loaded on %s (%s)", settings.WHISPER_MODEL, dev, ctype)
    return model


_model_singleton = None


def _model():
    global _model_singleton
    if _model_singleton is None:
        _model_singleton = _load_model()
    return _model_singleton


def transcribe_locally(data: bytes, filename: str, duration_hint: Optional[float] = None) -> TranscriptionResult:
    suffix = Path(filename).suffix or ".m4a"
    with tempfile.TemporaryDirectory(prefix="mabel-audio-") as tmp:
        src = Path(tmp) / f"input{suffix}"
        src.write_bytes(data)
        wav = convert_to_wav(src)
        segments, info = _model().transcribe(
            str(wav),
            language="en",
            vad_filter=True,
            vad_parameters={"min_silence_duration_ms": 500},
            temperature=[0.0],
            beam_size=1,
            condition_on_previous_text=False,
        )
        text = " ".join((getattr(s, "text", "") or "").strip() for s in segments).strip()
    duration = float(getattr(info, "duration", 0.0) or duration_hint or 0.0)
    if not text:
        raise RuntimeError("No clear speech detected in the recording")
    return TranscriptionResult(text=text, duration=duration, word_count=count_words(text))


__all__ = ["transcribe_audio", "transcribe_locally", "convert_to_wav"]
