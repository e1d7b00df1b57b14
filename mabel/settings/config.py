# mabel/settings/config.py  (Pydantic v2)
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # ---------- AI provider ----------
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    # Force the deterministic mock even when a key is configured
    USE_MOCK_OPENAI: bool = Field(default=False)
    OPENAI_BASE_URL: str = Field(default="https://api.openai.com/v1")
    OPENAI_MODEL: str = Field(default="gpt-4-turbo-preview")
    OPENAI_MAX_TOKENS: int = Field(default=4000)
    OPENAI_TIMEOUT: float = Field(default=120.0)
    OPENAI_IMAGE_MODEL: str = Field(default="dall-e-3")
    OPENAI_TRANSCRIBE_MODEL: str = Field(default="whisper-1")
    # 1.0 = realistic simulated latency, 0 = instant (tests)
    MOCK_AI_DELAY_SCALE: float = Field(default=1.0)

    # ---------- Auth ----------
    SECRET: str = Field(default="")
    COOKIE_SECURE: bool = Field(default=False)
    SESSION_LIFETIME_SECONDS: int = Field(default=3600 * 24)

    # ---------- Whisper / transcription ----------
    # "provider" = AI gateway transcription, "local" = faster-whisper on this host
    TRANSCRIPTION_BACKEND: Literal["provider", "local"] = Field(default="provider")
    WHISPER_MODEL: str = Field(default="small")
    WHISPER_DEVICE: str = Field(default="auto")
    WHISPER_COMPUTE: str = Field(default="auto")

    # ---------- Background work ----------
    DISPATCH_MODE: Literal["inline", "background", "bus"] = Field(default="background")
    EVENT_BUS_URL: Optional[str] = Field(default=None)
    EVENT_BUS_KEY: Optional[str] = Field(default=None)
    EVENT_SIGNING_SECRET: Optional[str] = Field(default=None)
    EVENT_BUS_TIMEOUT: float = Field(default=10.0)

    # ---------- Memoir rules ----------
    MODULE_QUESTION_COUNT: int = Field(default=15)
    CHAPTER_MIN_ANSWERED_RATIO: float = Field(default=0.5)
    BOOK_SUGGESTION_THRESHOLD: int = Field(default=3)
    MAX_IMAGE_BYTES: int = Field(default=5 * 1024 * 1024)

    # ---------- Storage ----------
    STORAGE_ROOT: str = Field(default="storage")

    # ---------- Polling ----------
    POLL_MAX_ATTEMPTS: int = Field(default=90)
    POLL_INTERVAL_SECONDS: float = Field(default=2.0)

    # ---------- pydantic-settings config ----------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # allow lower/upper env names
        extra="ignore",
    )

    @property
    def use_mock_ai(self) -> bool:
        return self.USE_MOCK_OPENAI or not (self.OPENAI_API_KEY or "").strip()


settings = Settings()
