"""
CompletionController - the run's state machine.

Per job:  NotDispatched -> Dispatched -> Completed(response) | Failed(error)
Per run:  Running -> Done

Transitions:
- dispatch: resolve params, claim the dispatched flag with compare-and-set,
  then submit. Only the caller that claims the flag submits, so a job is
  dispatched at most once even under concurrent cascades. A submission that
  raises keeps its flag and is reported as a failure of that job.
- complete(job_id, response):
    run done           -> no-op
    terminal job       -> set the done latch (CAS); the winner fires ChainDone.
                          No ChainResponse for the terminal job.
    already responded  -> ignored (first response wins)
    otherwise          -> store response, fire ChainResponse, cascade
- fail(job_id, error): store the error, fire ChainError. Dependents stay
  blocked; the run is not marked done; nothing is retried.

Cascade: rescan every job in declared order and dispatch the ready ones.
Declared order is the tie-break when one completion readies several jobs.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from jobchain.dispatcher import JobManifest
from jobchain.errors import (
    ExternalExecutionError,
    MissingInputError,
    UnknownJobError,
    UnresolvedJobRefError,
)
from jobchain.evaluator import ready_jobs
from jobchain.resolver import resolve_params
from jobchain.schemas import ChainDone, ChainError, ChainEvent, ChainResponse, JobSpec

if TYPE_CHECKING:
    from jobchain.chain import JobChain

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """
    Outcome of one dispatch pass.

    Attributes:
        dispatched: Jobs submitted in this pass, in order
        skipped: Jobs not dispatched because an input was missing
        unresolved: Jobs not dispatched because an upstream response vanished
        failed: Jobs whose submission raised
    """
    dispatched: list[str] = field(default_factory=list)
    skipped: "OrderedDict[str, MissingInputError]" = field(default_factory=OrderedDict)
    unresolved: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _error_payload(error: Any) -> Any:
    """Storable form of an error."""
    if isinstance(error, ExternalExecutionError):
        return _error_payload(error.error)
    if isinstance(error, BaseException):
        return {"type": type(error).__name__, "message": str(error)}
    return error


class CompletionController:
    """
    State machine driving one run.

    The controller holds no state of its own: everything lives in the run's
    state store, so any process bound to the same run can drive it.
    """

    def __init__(self, run: "JobChain"):
        self._run = run

    @property
    def _chain(self):
        return self._run.chain

    @property
    def _state(self):
        return self._run.run_state

    def _require_job(self, job_id: str) -> JobSpec:
        job = self._chain.get_job(job_id)
        if job is None:
            raise UnknownJobError(f"Job '{job_id}' is not declared in chain '{self._chain.name}'")
        return job

    def _notify(self, event: ChainEvent) -> None:
        logger.debug(f"{event.name}: {event.job_id}")
        self._run.notifier.publish(event, self._run.channels())

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch_ready(self) -> DispatchResult:
        """
        Dispatch every ready job, in declared order.

        Returns:
            DispatchResult for the pass
        """
        result = DispatchResult()
        for job in ready_jobs(self._chain, self._state):
            self._dispatch(job, result)
        return result

    def _dispatch(self, job: JobSpec, result: DispatchResult) -> None:
        try:
            params = resolve_params(job, self._run.inputs, self._state.get_response)
        except MissingInputError as e:
            logger.warning(f"Not dispatching {job.id}: {e}")
            result.skipped[job.id] = e
            return
        except UnresolvedJobRefError as e:
            logger.error(f"Not dispatching {job.id}: {e}")
            result.unresolved.append(job.id)
            return

        if not self._state.claim_dispatch(job.id):
            logger.debug(f"Job {job.id} already dispatched, skipping")
            return

        manifest = JobManifest(
            run_id=self._run.run_id,
            chain_name=self._chain.name,
            job_id=job.id,
            target=self._chain.target_for(job.id),
            params=params,
        )
        logger.debug(
            f"Dispatching job {job.id}",
            extra={"event": "job.dispatched", "metadata": manifest.to_dict()},
        )

        try:
            self._run.dispatcher.submit(manifest, self._run)
        except Exception as e:
            logger.error(f"Submitting job {job.id} failed: {e}", exc_info=True)
            result.failed.append(job.id)
            self.fail(job.id, ExternalExecutionError(job.id, e))
            return

        result.dispatched.append(job.id)

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def complete(self, job_id: str, response: Any = None) -> bool:
        """
        Record a successful job.

        Args:
            job_id: The job that completed
            response: Its response

        Returns:
            True if the completion changed the run's state, False if ignored

        Raises:
            UnknownJobError: If job_id is not declared in the chain
        """
        self._require_job(job_id)
        run_id = self._run.run_id

        if self._state.is_done():
            logger.debug(f"Run {run_id} is done, ignoring completion of {job_id}")
            return False

        if job_id == self._chain.done:
            if not self._state.mark_done():
                logger.debug(f"Run {run_id} already marked done by another caller")
                return False
            self._notify(ChainDone(run_id, job_id, response))
            return True

        if not self._state.store_response(job_id, response):
            logger.debug(f"Job {job_id} already responded, ignoring duplicate completion")
            return False

        self._notify(ChainResponse(run_id, job_id, response))

        result = self.dispatch_ready()
        if result.dispatched:
            logger.debug(f"Cascade after {job_id} dispatched {result.dispatched}")
        return True

    def fail(self, job_id: str, error: Any = None) -> None:
        """
        Record a failed job and fire ChainError.

        Dependents of the job stay blocked for the rest of the run.

        Raises:
            UnknownJobError: If job_id is not declared in the chain
        """
        self._require_job(job_id)
        self._state.put_error(job_id, _error_payload(error))
        self._notify(ChainError(self._run.run_id, job_id, error))
