from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a best-effort call (outbound webhook, integration, provider send)."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    status: Optional[int] = None
    attempts: int = 1

    @staticmethod
    def success(value: T, status: Optional[int] = None, attempts: int = 1) -> "Result[T]":
        return Result(ok=True, value=value, status=status, attempts=attempts)

    @staticmethod
    def failure(
        error: str,
        code: str = "unknown",
        status: Optional[int] = None,
        value: Optional[T] = None,
        attempts: int = 1,
    ) -> "Result[T]":
        return Result(ok=False, value=value, error=error, error_code=code, status=status, attempts=attempts)
