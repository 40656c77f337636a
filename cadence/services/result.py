from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a service step: a value, or an error with a machine-readable code."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def skipped(reason: str) -> "Result[T]":
        """Nothing to do; not an error and never retried."""
        return Result(ok=True, value=None, error_code=reason)

    @property
    def is_skipped(self) -> bool:
        return self.ok and self.value is None and self.error_code is not None

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def as_dict(self) -> dict:
        if self.is_skipped:
            return {"status": "skipped", "reason": self.error_code}
        if self.ok:
            return {"status": "completed"}
        return {"status": "failed", "error": self.error, "code": self.error_code}
