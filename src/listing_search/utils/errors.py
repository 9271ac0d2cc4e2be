from typing import Any
from pydantic import ValidationError


class ListingSearchError(Exception):
    """Base error for the listing search client. Carries a stable `code` and free-form details."""
    code: str = "LISTING_SEARCH_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(message)


class SearchValidationError(ListingSearchError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None, original: ValidationError | None = None):
        self.errors = errors or []
        self.original = original
        super().__init__(message, {"errors": self.errors})

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "SearchValidationError":
        errors = exc.errors()
        return cls(f"Invalid search parameters ({len(errors)} issues)", errors=errors, original=exc)

    def summary(self, limit: int = 5) -> str:
        """Human-readable summary of the first few validation issues."""
        lines = []
        for err in self.errors[:limit]:
            loc = ".".join(str(p) for p in err.get("loc", []))
            lines.append(f"- {loc}: {err.get('msg')} ({err.get('type')})")
        if len(self.errors) > limit:
            lines.append(f"... ({len(self.errors) - limit} more)")
        return "\n".join(lines)


class ProviderError(ListingSearchError):
    code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider_name: str, details: dict[str, Any] | None = None):
        self.provider_name = provider_name
        super().__init__(message, {"provider_name": provider_name, **(details or {})})


class UpstreamError(ProviderError):
    """Non-2xx, non-429 response from the upstream API."""

    def __init__(self, message: str, provider_name: str, status_code: int, body_snippet: str = ""):
        self.status_code = status_code
        self.body_snippet = body_snippet
        super().__init__(message, provider_name, {"status_code": status_code, "body_snippet": body_snippet})


class ProviderNetworkError(ProviderError):
    """Transport-level failure that survived every retry."""


class RateLimitError(ListingSearchError):
    code = "RATE_LIMIT_ERROR"

    def __init__(self, message: str, retry_after: float | None = None, details: dict[str, Any] | None = None):
        self.retry_after = retry_after
        # Explicit base call: ProviderRateLimitError puts ProviderError next in the MRO
        ListingSearchError.__init__(self, message, {"retry_after": retry_after, **(details or {})})


class ProviderRateLimitError(RateLimitError, ProviderError):
    def __init__(self, message: str, provider_name: str, retry_after: float | None = None):
        self.provider_name = provider_name
        RateLimitError.__init__(self, message, retry_after, {"provider_name": provider_name})


class CacheError(ListingSearchError):
    code = "CACHE_ERROR"
