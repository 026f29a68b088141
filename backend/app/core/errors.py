"""
Application error taxonomy.

Every failure the API reports is an AppError subclass. Upstream vendor
failures are classified from the vendor's raw error text, so adapters must
always pass that text through unchanged.
"""
from enum import Enum
from typing import Any, Optional


class ProviderErrorCode(str, Enum):
    """Classification of an upstream vendor failure."""
    INVALID_KEY = "invalid_key"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    RATE_LIMITED = "rate_limited"
    BILLING = "billing"
    NETWORK = "network"
    UNKNOWN = "unknown"


# Order matters: the first matching rule wins.
_CLASSIFICATION_RULES: list[tuple[ProviderErrorCode, tuple[str, ...]]] = [
    (ProviderErrorCode.INVALID_KEY, ("unauthorized", "invalid", "api key")),
    (ProviderErrorCode.INSUFFICIENT_PERMISSIONS, ("permission", "access")),
    (ProviderErrorCode.RATE_LIMITED, ("rate limit", "too many requests")),
    (ProviderErrorCode.BILLING, ("quota", "billing", "insufficient")),
    (ProviderErrorCode.NETWORK, ("timeout", "network", "unavailable")),
]


def classify_provider_error(message: Any) -> ProviderErrorCode:
    """
    Map raw vendor error text to a ProviderErrorCode.

    Case-insensitive substring match against a fixed rule table.
    Anything unexpected (None, non-text, no match) is UNKNOWN.
    """
    try:
        lower = str(message or "").lower()
    except Exception:
        return ProviderErrorCode.UNKNOWN

    for code, needles in _CLASSIFICATION_RULES:
        if any(needle in lower for needle in needles):
            return code
    return ProviderErrorCode.UNKNOWN


class AppError(Exception):
    """Base class for errors rendered as {"error": {...}} responses."""

    code: str = "internal_error"
    status_code: int = 500
    retryable: bool = False
    default_message: str = "Internal error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


# ========================================
# Local failures (reported before any upstream call)
# ========================================

class InvalidRequestError(AppError):
    code = "invalid_request"
    status_code = 400
    default_message = "Invalid request"


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class NotFoundError(AppError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class CredentialMissingError(NotFoundError):
    """No active key for the thread's provider."""
    code = "key_missing"
    status_code = 400
    default_message = "Connect a key first"


class RateLimitedError(AppError):
    """Local rate limiter denied the request."""
    code = "rate_limited"
    status_code = 429
    retryable = True
    default_message = "Too many requests"


# ========================================
# Upstream failures
# ========================================

class UpstreamError(AppError):
    """
    A vendor call failed.

    `message` is the raw vendor body (or a short description when the vendor
    sent nothing), so it can be re-classified downstream.
    """
    code = ProviderErrorCode.UNKNOWN.value
    status_code = 502
    default_message = "Upstream request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        provider: Optional[str] = None,
        upstream_status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.provider = provider
        self.upstream_status = upstream_status
        merged = dict(details or {})
        if provider:
            merged.setdefault("provider", provider)
        if upstream_status is not None:
            merged.setdefault("upstreamStatus", upstream_status)
        super().__init__(message, details=merged)


class InvalidCredentialError(UpstreamError):
    code = ProviderErrorCode.INVALID_KEY.value
    status_code = 422
    default_message = "Invalid API key"


class InsufficientPermissionsError(UpstreamError):
    code = ProviderErrorCode.INSUFFICIENT_PERMISSIONS.value
    status_code = 422
    default_message = "Key lacks permission for this operation"


class UpstreamRateLimitedError(UpstreamError):
    code = ProviderErrorCode.RATE_LIMITED.value
    status_code = 429
    retryable = True
    default_message = "Provider rate limit reached"


class UpstreamBillingError(UpstreamError):
    code = ProviderErrorCode.BILLING.value
    status_code = 402
    default_message = "Provider quota or billing problem"


class UpstreamNetworkError(UpstreamError):
    code = ProviderErrorCode.NETWORK.value
    status_code = 504
    retryable = True
    default_message = "Provider unreachable"


class UpstreamUnknownError(UpstreamError):
    code = ProviderErrorCode.UNKNOWN.value


UPSTREAM_ERRORS: dict[ProviderErrorCode, type[UpstreamError]] = {
    ProviderErrorCode.INVALID_KEY: InvalidCredentialError,
    ProviderErrorCode.INSUFFICIENT_PERMISSIONS: InsufficientPermissionsError,
    ProviderErrorCode.RATE_LIMITED: UpstreamRateLimitedError,
    ProviderErrorCode.BILLING: UpstreamBillingError,
    ProviderErrorCode.NETWORK: UpstreamNetworkError,
    ProviderErrorCode.UNKNOWN: UpstreamUnknownError,
}


def upstream_error(
    message: str,
    *,
    provider: Optional[str] = None,
    upstream_status: Optional[int] = None,
) -> UpstreamError:
    """Build the UpstreamError subclass matching the vendor's error text."""
    error_cls = UPSTREAM_ERRORS[classify_provider_error(message)]
    return error_cls(message, provider=provider, upstream_status=upstream_status)


# ========================================
# Failures reported on behalf of an upstream
# ========================================

class KeyValidationError(AppError):
    """
    A vendor refused a key while it was being added or re-validated.
    The code is the classified reason, not a fixed value.
    """
    status_code = 422
    default_message = "Key validation failed"

    def __init__(self, reason: ProviderErrorCode, *, provider: str):
        super().__init__(details={"provider": provider})
        self.code = reason.value
        self.retryable = reason in (ProviderErrorCode.RATE_LIMITED, ProviderErrorCode.NETWORK)


class ModelsUnavailableError(AppError):
    """Model catalog could not be fetched and nothing was cached."""
    code = "models_unavailable"
    status_code = 502
    retryable = True
    default_message = "Could not load models"
