"""
Run schemas - one execution of a ChainDef.

RunContext binds a chain to its inputs and identity. It is stored in the
state store under the run's "context" key so a worker in another process can
rebind the run and report completions.

StateRecord is a read view over the per-job keys in the state store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class JobState(str, Enum):
    """Per-job lifecycle within a run."""
    NOT_DISPATCHED = "not_dispatched"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RunContext:
    """
    Context of a single run.

    Attributes:
        run_id: Unique run token (caller-suppliable for correlation)
        chain_name: Name of the ChainDef being run
        inputs: External inputs, name -> value
        lifetime: TTL in seconds for all run state
        namespace: Target prefix (copied from the chain)
        user: Opaque identity used for `{user}` in channel routes
    """
    run_id: str
    chain_name: str
    inputs: dict[str, Any] = field(default_factory=dict)
    lifetime: int = 0
    namespace: str = ""
    user: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage."""
        result = {
            "run_id": self.run_id,
            "chain_name": self.chain_name,
            "inputs": self.inputs,
            "lifetime": self.lifetime,
            "namespace": self.namespace,
        }
        if self.user is not None:
            result["user"] = self.user
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunContext":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            chain_name=data["chain_name"],
            inputs=data.get("inputs", {}),
            lifetime=data.get("lifetime", 0),
            namespace=data.get("namespace", ""),
            user=data.get("user"),
        )


@dataclass(frozen=True)
class StateRecord:
    """
    Snapshot of one job's state within a run.

    Attributes:
        job_id: The job
        dispatched: Whether the dispatched flag is set
        completed: Whether the job completed successfully
        response: The stored response, if any (never stored for the terminal job)
        error: The stored error, if any
    """
    job_id: str
    dispatched: bool = False
    completed: bool = False
    response: Any = None
    error: Any = None

    @property
    def state(self) -> JobState:
        if self.completed:
            return JobState.COMPLETED
        if self.error is not None:
            return JobState.FAILED
        if self.dispatched:
            return JobState.DISPATCHED
        return JobState.NOT_DISPATCHED
