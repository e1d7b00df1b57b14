"""Error types raised by the service layer and their HTTP mapping.

Routes let these propagate; ``main`` installs a handler that renders them
as ``{"error": message}`` with the carried status code.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class MabelError(Exception):
    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None, error_type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.error_type = error_type


class NotFoundError(MabelError):
    status_code = 404


class PreconditionError(MabelError):
    status_code = 400


class ConflictError(MabelError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    def __init__(self, entity: str, current: Optional[str], target: str):
        super().__init__(f"Cannot move {entity} from {current or 'unknown'} to {target}")
        self.current = current
        self.target = target


class ProviderError(RuntimeError):
    """An AI gateway call failed (quota, rate limit, auth, timeout, bad payload)."""


@dataclass
class ClassifiedError:
    status_code: int
    message: str
    error_type: str


def classify_provider_error(exc: BaseException | str, fallback: str = "AI request failed") -> ClassifiedError:
    """Pick a status code and user-facing copy from the provider's error text."""
    raw = str(exc) or exc.__class__.__name__
    low = raw.lower()
    if "quota" in low:
        return ClassifiedError(
            429, "AI provider quota exceeded. Please check the account's billing and try again later.", "quota_exceeded"
        )
    if "rate limit" in low or "rate_limit" in low:
        return ClassifiedError(429, "Too many requests to the AI provider. Please wait a moment and try again.", "rate_limited")
    if "api key" in low or "authentication" in low or "unauthorized" in low:
        return ClassifiedError(500, "AI provider authentication failed. Please check the API key configuration.", "auth_error")
    if "timeout" in low or "timed out" in low:
        return ClassifiedError(504, "The AI provider took too long to respond. Please try again.", "timeout")
    if "model" in low and "not" in low:
        return ClassifiedError(400, "The configured AI model is unavailable.", "model_error")
    return ClassifiedError(500, f"{fallback}: {raw}", "provider_error")
