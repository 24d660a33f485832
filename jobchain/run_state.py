"""
RunState - the run's view of its keys in the state store.

Wraps a StateStore with the run-scoped key layout so the evaluator, resolver
and controller never build keys themselves:

    <run>.context             RunContext
    <run>.done                completion latch
    <run>.<job>               job response
    <run>.<job>.dispatched    dispatched flag
    <run>.<job>.error         job error
"""

from typing import Any

from jobchain.keys import run_key
from jobchain.schemas import MISSING, RunContext
from jobchain.state_store import StateStore

DISPATCHED = "dispatched"
ERROR = "error"
DONE = "done"
CONTEXT = "context"


class RunState:
    """
    Run-scoped access to a StateStore.

    Attributes:
        store: The underlying StateStore
        chain_name: Chain name used in keys
        run_id: Run identifier used in keys
        lifetime: TTL applied to every write
    """

    def __init__(self, store: StateStore, chain_name: str, run_id: str, lifetime: int):
        self.store = store
        self.chain_name = chain_name
        self.run_id = run_id
        self.lifetime = lifetime

    def key(self, component: str = "", suffix: str = "") -> str:
        return run_key(self.chain_name, self.run_id, component, suffix)

    # Dispatched flag

    def was_dispatched(self, job_id: str) -> bool:
        return bool(self.store.get(self.key(job_id, DISPATCHED)))

    def claim_dispatch(self, job_id: str) -> bool:
        """Set the dispatched flag; True only for the caller that set it."""
        return self.store.compare_and_set(self.key(job_id, DISPATCHED), None, True, self.lifetime)

    # Responses

    def has_response(self, job_id: str) -> bool:
        return self.store.has(self.key(job_id))

    def get_response(self, job_id: str) -> Any:
        """The stored response, or MISSING when the job has not responded."""
        key = self.key(job_id)
        if not self.store.has(key):
            return MISSING
        return self.store.get(key)

    def store_response(self, job_id: str, response: Any) -> bool:
        """Store the first response for a job; later responses are refused."""
        return self.store.compare_and_set(self.key(job_id), None, response, self.lifetime)

    # Errors

    def get_error(self, job_id: str) -> Any:
        return self.store.get(self.key(job_id, ERROR))

    def put_error(self, job_id: str, error: Any) -> None:
        self.store.put(self.key(job_id, ERROR), error, self.lifetime)

    # Completion latch

    def is_done(self) -> bool:
        return bool(self.store.get(self.key(DONE)))

    def mark_done(self) -> bool:
        """Set the completion latch; True only for the first caller."""
        return self.store.compare_and_set(self.key(DONE), None, True, self.lifetime)

    # Run context

    def put_context(self, context: RunContext) -> None:
        self.store.put(self.key(CONTEXT), context.to_dict(), self.lifetime)

    def claim_context(self, context: RunContext) -> bool:
        """Store the run context unless the run already has one; True for the first caller."""
        return self.store.compare_and_set(self.key(CONTEXT), None, context.to_dict(), self.lifetime)

    def get_context(self) -> Any:
        data = self.store.get(self.key(CONTEXT))
        if data is None:
            return None
        return RunContext.from_dict(data)
