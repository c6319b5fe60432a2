"""
Error taxonomy for the Pokify import service.

Upstream and malformed-response failures are normally turned into
``success=False`` result values at the call site; these exceptions are
for the cases that reach the HTTP layer.
"""
from typing import Optional


class PokifyError(Exception):
    """Base class for all service errors."""
    status_code: int = 500

    def __init__(self, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UpstreamServiceError(PokifyError):
    """Extractor, LLM, screenshot or Shopify call failed or returned non-2xx."""
    status_code = 502


class MalformedResponseError(PokifyError):
    """An upstream service answered with something we could not parse."""
    status_code = 502


class ValidationFailure(PokifyError):
    """A request is missing required fields or carries invalid values."""
    status_code = 400


class PersistenceError(PokifyError):
    """A database write failed."""
    status_code = 500


class NotFoundError(PokifyError):
    """A referenced row does not exist."""
    status_code = 404


class LimitExceededError(PokifyError):
    """The user's plan does not allow the requested operation."""
    status_code = 403


class ServiceUnavailable(PokifyError):
    """An optional integration (e.g. the AI service) is not configured."""
    status_code = 503


class ExtractionFailed(PokifyError):
    """Every extractor strategy (or the vision step) failed for a URL."""
    status_code = 500


class JobStateError(PokifyError):
    """An extraction job was asked to make an invalid state transition."""
    status_code = 409
