import pytest

from mabel.errors import (
  ConflictError,
  InvalidTransitionError,
  NotFoundError,
  PreconditionError,
  ProviderError,
  classify_provider_error,
)


@pytest.mark.parametrize(
  "raw, status, kind",
  [
    ("OpenAI API error 429: You exceeded your current quota (insufficient_quota)", 429, "quota_exceeded"),
    ("OpenAI API error 429: rate limit: Rate limit reached for requests", 429, "rate_limited"),
    ("OpenAI API error 401: Incorrect API key provided", 500, "auth_error"),
    ("Authentication failed", 500, "auth_error"),
    ("OpenAI request timed out: ReadTimeout", 504, "timeout"),
    ("The model `gpt-9` does not exist", 400, "model_error"),
    ("OpenAI API error 404: model not found", 400, "model_error"),
  ],
)
def test_classification(raw, status, kind):
  c = classify_provider_error(ProviderError(raw))
  assert (c.status_code, c.error_type) == (status, kind)


def test_unrecognized_error_keeps_raw_text():
  c = classify_provider_error("disk on fire", "Failed to generate chapter")
  assert c.status_code == 500
  assert c.message == "Failed to generate chapter: disk on fire"


def test_status_codes():
  assert NotFoundError("x").status_code == 404
  assert PreconditionError("x").status_code == 400
  assert ConflictError("x").status_code == 409
  assert PreconditionError("x", status_code=422).status_code == 422

  e = InvalidTransitionError("module", "APPROVED", "GENERATING_CHAPTER")
  assert e.status_code == 409
  assert (e.current, e.target) == ("APPROVED", "GENERATING_CHAPTER")
  assert str(e) == "Cannot move module from APPROVED to GENERATING_CHAPTER"


def test_model_mention_alone_falls_through():
  raw = "OpenAI API error 400: This model's maximum context length is 8192 tokens"
  c = classify_provider_error(ProviderError(raw), "Failed to generate chapter")
  assert (c.status_code, c.error_type) == (500, "provider_error")
  assert c.message == f"Failed to generate chapter: {raw}"
