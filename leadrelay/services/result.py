from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an operation whose failure is expected and handled by the caller."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def from_exception(exc: Exception, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=str(exc) or type(exc).__name__, error_code=code)
