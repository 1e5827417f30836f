"""Shared provider adapter types."""

from dataclasses import dataclass


@dataclass(frozen=True)
class BestEffortResult:
    """Outcome of a step whose failure is logged but never raised."""

    ok: bool
    error: str | None = None

    @classmethod
    def success(cls) -> "BestEffortResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: BaseException | str) -> "BestEffortResult":
        if isinstance(error, BaseException):
            return cls(ok=False, error=type(error).__name__)
        return cls(ok=False, error=error)
