"""Exception hierarchy for the translation job processor.

Two families matter to the job loop:

- ``FatalTranslationError`` and its subclasses end the whole job. They are
  never caught below the dispatcher, which marks the job ``failed``.
- Everything else raised while translating a batch is absorbed by the loop
  and counted against the records of that batch.
"""
from typing import Optional


class TranslationServiceError(Exception):
    """Base class for all service errors."""


class StoreError(TranslationServiceError):
    """A read or write against the table store failed."""


class AIServiceError(TranslationServiceError):
    """The AI service answered with an error or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AIRateLimitError(AIServiceError):
    """Rate limited (HTTP 429) and retries are exhausted."""


class TranslationParseError(TranslationServiceError):
    """The model's response could not be read as the expected JSON shape."""


class FatalTranslationError(TranslationServiceError):
    """An error that cannot succeed on retry and terminates the job."""


class AIQuotaExceededError(FatalTranslationError):
    """The AI account has no credits left (HTTP 402)."""


class AIConfigurationError(FatalTranslationError):
    """The AI client is not configured (e.g. missing API key)."""


class UnsupportedJobType(FatalTranslationError):
    """The job references a job_type with no pipeline."""
