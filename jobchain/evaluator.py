"""
Dependency evaluation - decide which jobs may run next.

A job is ready when:
- it has not been dispatched in this run,
- the run is not done, and
- every JobRef anywhere in its params names a job with a stored response.

Edges come only from JobRefs in params; there is no adjacency declaration.
No cycle detection happens here. A job that references itself never becomes
ready (ChainDef.validate_graph() rejects such chains at load time).
"""

from typing import Iterator

from jobchain.run_state import RunState
from jobchain.schemas import ChainDef, JobSpec


def dependencies_met(job: JobSpec, state: RunState) -> bool:
    """True if every job the params reference has a stored response."""
    return all(state.has_response(dep) for dep in job.dependencies)


def is_ready(chain: ChainDef, job_id: str, state: RunState) -> bool:
    """
    Check whether a job may be dispatched now.

    Args:
        chain: The chain definition
        job_id: The job to check
        state: The run's state

    Returns:
        True if the job is not dispatched, the run is not done and all
        dependencies have responded
    """
    job = chain.get_job(job_id)
    if job is None:
        return False
    return (
        not state.was_dispatched(job_id)
        and not state.is_done()
        and dependencies_met(job, state)
    )


def ready_jobs(chain: ChainDef, state: RunState) -> Iterator[JobSpec]:
    """Yield ready jobs in declared order (the tie-break for dispatch)."""
    for job in chain.jobs:
        if is_ready(chain, job.id, state):
            yield job
