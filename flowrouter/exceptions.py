"""Error taxonomy shared by the router, the broadcast pipeline and the HTTP layer."""

from typing import Optional


class RouterError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.context = context


class ValidationError(RouterError):
    status_code = 400
    code = "validation_error"


class PayloadTooLargeError(ValidationError):
    status_code = 413
    code = "payload_too_large"


class AuthorizationError(RouterError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(RouterError):
    status_code = 404
    code = "not_found"


class RateLimitExceededError(RouterError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, scope: str, retry_after: int):
        super().__init__(f"Rate limit exceeded for {scope}", scope=scope, retry_after=retry_after)
        self.scope = scope
        self.retry_after = retry_after


class DependencyUnavailableError(RouterError):
    status_code = 503
    code = "dependency_unavailable"

    def __init__(self, dependency: str, message: str = "", attempts: Optional[int] = None, target: str = ""):
        super().__init__(
            message or f"{dependency} unavailable",
            dependency=dependency,
            attempts=attempts,
            target=target,
        )
        self.dependency = dependency
        self.attempts = attempts
        self.target = target


class CircuitBreakerOpenError(DependencyUnavailableError):
    code = "circuit_open"

    def __init__(self, name: str, retry_in: float = 0.0):
        super().__init__(name, f"Circuit breaker '{name}' is open")
        self.name = name
        self.retry_in = retry_in


class ProviderError(RouterError):
    """Messaging provider rejected or failed a call."""

    status_code = 502
    code = "provider_error"

    def __init__(self, method: str, description: str, error_code: Optional[int] = None):
        super().__init__(f"Telegram {method} failed: {description}", method=method, error_code=error_code)
        self.method = method
        self.description = description
        self.error_code = error_code


class DecryptionError(RouterError):
    code = "decryption_failed"


class DefinitionError(ValidationError):
    code = "invalid_definition"


def classify_error(error: BaseException) -> tuple[str, int]:
    """Best-effort category and status for an exception that escaped the handlers."""
    if isinstance(error, RouterError):
        return error.code, error.status_code

    name = type(error).__name__.lower()
    message = str(error).lower()
    haystack = f"{name} {message}"

    if "telegram" in haystack:
        return "provider_error", 502
    if "redis" in haystack:
        return "cache_error", 503
    if any(token in haystack for token in ("postgres", "database", "sql", "asyncpg")):
        return "database_error", 503
    if "validation" in haystack or "invalid" in haystack:
        return "validation_error", 400
    return "internal_error", 500
