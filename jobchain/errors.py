"""
Error classes for jobchain.

Taxonomy:
- MissingInputError: a required input is unresolved at start/dispatch time.
  Aborts only that job's dispatch, never the run.
- UnresolvedJobRefError: a job reference has no stored response when the
  resolver runs. The dependency evaluator should make this impossible, so it
  signals a bug rather than a normal failure path.
- InvalidKeyError: a run-scoped key was requested with a suffix but no
  component. Programmer error.
- ExternalExecutionError: an executor reported (or raised) a failure. Only
  ever surfaced through fail(), which always produces a ChainError event.

There is no run-level failure error: a failed job stalls its dependents and
the run simply never reaches ChainDone.
"""

from typing import Any, Optional


class JobChainError(Exception):
    """Base exception for jobchain."""
    pass


class MissingInputError(JobChainError):
    """
    A required input has no value and no default.

    Attributes:
        name: The input name
        job_id: The job whose parameters required it (if known)
    """

    def __init__(self, name: str, job_id: Optional[str] = None):
        self.name = name
        self.job_id = job_id
        where = f" (job '{job_id}')" if job_id else ""
        super().__init__(
            f"Parameter '{name}' is missing and has no default{where}. "
            f"Provide it when starting the chain."
        )


class UnresolvedJobRefError(JobChainError):
    """A job reference was resolved before the referenced job responded."""

    def __init__(self, job_id: str, ref_job_id: str):
        self.job_id = job_id
        self.ref_job_id = ref_job_id
        super().__init__(
            f"Job '{job_id}' references '{ref_job_id}' which has no stored response"
        )


class InvalidKeyError(JobChainError, ValueError):
    """Raised when a key suffix is given without a component key."""
    pass


class ExternalExecutionError(JobChainError):
    """
    Failure reported by the external execution subsystem.

    Attributes:
        job_id: The job that failed
        error: The original error payload or exception
    """

    def __init__(self, job_id: str, error: Any):
        self.job_id = job_id
        self.error = error
        super().__init__(f"Job '{job_id}' failed: {error}")


class UnknownJobError(JobChainError, KeyError):
    """Raised when a job id is not declared in the chain."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ChainNotFoundError(JobChainError):
    """Raised when a chain definition is not found on any search path."""
    pass


class ChainValidationError(JobChainError):
    """Raised when a chain definition fails validation."""
    pass


class ConfigError(JobChainError):
    """Configuration validation error."""
    pass
