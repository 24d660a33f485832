"""
Chain events - notifications produced by the completion controller.

The engine decides when these fire; a Notifier decides how they travel.

- ChainResponse: a non-terminal job completed and its response was stored
- ChainDone: the terminal job completed (fires at most once per run)
- ChainError: a job failed (fires on every fail() call)
"""

from dataclasses import dataclass
from typing import Any, ClassVar


@dataclass(frozen=True)
class Channel:
    """A resolved notification route."""
    name: str
    private: bool = True

    def __str__(self) -> str:
        prefix = "private-" if self.private else ""
        return f"{prefix}{self.name}"


@dataclass(frozen=True)
class ChainEvent:
    """Base class for chain events."""
    name: ClassVar[str] = "chain.event"

    run_id: str
    job_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.name, "run_id": self.run_id, "job_id": self.job_id}


@dataclass(frozen=True)
class ChainResponse(ChainEvent):
    name: ClassVar[str] = "chain.response"

    response: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "response": self.response}


@dataclass(frozen=True)
class ChainDone(ChainEvent):
    name: ClassVar[str] = "chain.done"

    response: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "response": self.response}


@dataclass(frozen=True)
class ChainError(ChainEvent):
    name: ClassVar[str] = "chain.error"

    error: Any = None

    def to_dict(self) -> dict[str, Any]:
        error = self.error
        if isinstance(error, BaseException):
            error = {"type": type(error).__name__, "message": str(error)}
        return {**super().to_dict(), "error": error}
