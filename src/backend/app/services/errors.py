"""
Extraction error taxonomy.

Provider-level failures are caught by the orchestrator; only the aggregate
AllProvidersFailedError (or, on the single-provider vision path, the
specific error) reaches callers.
"""

from typing import List, Optional, Tuple


class ExtractionError(Exception):
    """Base class for receipt extraction failures."""


class EmptyResponseError(ExtractionError):
    """The model returned no text."""


class ExtractionRejectedError(ExtractionError):
    """The model answered, but the answer cannot become a receipt."""


class MalformedJSONError(ExtractionRejectedError):
    """Cleaned model text is still not a JSON object."""


class MissingFieldError(ExtractionRejectedError):
    """A required receipt field is absent after normalization."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Missing required field: {field}")


class ProviderUnavailableError(ExtractionError):
    """No credential is configured for the provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} integration is not configured")


class AllProvidersFailedError(ExtractionError):
    """Every configured provider failed, or none is configured."""

    def __init__(self, failures: List[Tuple[str, str]]):
        self.failures = failures
        if failures:
            reasons = "; ".join(f"{name}: {reason}" for name, reason in failures)
            message = f"All LLM providers failed ({reasons})"
        else:
            message = "All LLM providers failed or are not configured (no providers configured)"
        super().__init__(message)
