"""Error taxonomy shared by the services and the HTTP layer."""


class HavenError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_payload(self) -> dict:
        return {"error": self.error, "detail": self.detail, "status": self.status_code}


class ValidationError(HavenError):
    """Bad caller input, rejected before any work is done."""

    status_code = 400
    error = "validation_error"


class NotFoundError(HavenError):
    """A conversation, journal or user does not exist."""

    status_code = 404
    error = "not_found"


class ForbiddenError(HavenError):
    """The caller does not own the resource."""

    status_code = 403
    error = "forbidden"


class ProviderError(HavenError):
    """Text generation failed after retries, or with a non-retryable error."""

    status_code = 502
    error = "generation_failed"

    def __init__(self, detail: str, retryable: bool = False, status: int | None = None):
        super().__init__(detail)
        self.retryable = retryable
        self.status = status


class QualityGateFailure(Exception):
    """Generated text failed the quality heuristic. Triggers fallback substitution."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CrisisPipelineDegradation(Exception):
    """The AI refinement layer failed; the keyword result stands."""


class GenerationCancelled(Exception):
    """The caller's cancel signal fired before generation finished."""
