"""
JobChain - one run of a ChainDef.

Usage:
    registry = ChainRegistry(["chains"])
    run = JobChain(registry.load("orders.fulfil"), InMemoryStateStore(), dispatcher)
    run_id = run.start({"order_id": 42})

    # later, from the executor, once per job:
    run.complete("reserve", {"sku": "A1"})
    run.fail("charge", "card declined")

A worker in another process rebinds the run from the shared store:
    run = JobChain.resume(chain_def, run_id, store, dispatcher)
    run.complete("charge", {"receipt": "r-1"})

start(), complete() and fail() are synchronous, non-blocking transitions.
They can be called concurrently for different jobs of one run and for
different runs; atomicity comes from the state store's compare-and-set.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from jobchain.controller import CompletionController, DispatchResult
from jobchain.dispatcher import Dispatcher, NoOpDispatcher
from jobchain.errors import JobChainError
from jobchain.keys import generate_run_id
from jobchain.notifier import LoggingNotifier, Notifier
from jobchain.run_state import RunState
from jobchain.schemas import ChainDef, Channel, JobState, RunContext, StateRecord
from jobchain.state_store import StateStore

logger = logging.getLogger(__name__)


class JobChain:
    """
    Run instance of a chain.

    Attributes:
        chain: The chain definition
        store: State store holding all run state
        dispatcher: Where ready jobs are submitted
        notifier: Where chain events are delivered
        run_id: Run identifier (None until start() or resume())
        inputs: Run inputs
        user: Identity used for `{user}` in channel routes
    """

    def __init__(
        self,
        chain: ChainDef,
        store: StateStore,
        dispatcher: Optional[Dispatcher] = None,
        notifier: Optional[Notifier] = None,
        user: Optional[str] = None,
    ):
        logger.debug(f"Initializing JobChain named {chain.name}")
        self.chain = chain
        self.store = store
        self.dispatcher = dispatcher or NoOpDispatcher()
        self.notifier = notifier or LoggingNotifier()
        self.user = user
        self.run_id: Optional[str] = None
        self.inputs: dict[str, Any] = {}
        self._run_state: Optional[RunState] = None
        self._controller = CompletionController(self)

    @classmethod
    def resume(
        cls,
        chain: ChainDef,
        run_id: str,
        store: StateStore,
        dispatcher: Optional[Dispatcher] = None,
        notifier: Optional[Notifier] = None,
    ) -> "JobChain":
        """
        Bind to a run started elsewhere.

        Inputs and user are read back from the stored run context.

        Raises:
            JobChainError: If the run context is absent (unknown or expired run)
        """
        run = cls(chain, store, dispatcher, notifier)
        state = RunState(store, chain.name, run_id, chain.lifetime)
        context = state.get_context()
        if context is None:
            raise JobChainError(f"Run '{run_id}' of chain '{chain.name}' not found or expired")
        run._bind(context)
        return run

    def _bind(self, context: RunContext) -> None:
        self.run_id = context.run_id
        self.inputs = dict(context.inputs)
        self.user = context.user
        self._run_state = RunState(self.store, self.chain.name, context.run_id, context.lifetime)

    @property
    def run_state(self) -> RunState:
        if self._run_state is None:
            raise JobChainError(f"Chain '{self.chain.name}' has not been started")
        return self._run_state

    @property
    def lifetime(self) -> int:
        return self.chain.lifetime

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def start(self, inputs: Optional[dict[str, Any]] = None, key: Optional[str] = None) -> str:
        """
        Start the run and dispatch every initially ready job.

        Args:
            inputs: External inputs for InputRefs
            key: Caller-supplied run id for idempotent correlation. Starting
                twice with the same key never dispatches a job twice, and the
                first start's inputs and user stay in effect.

        Returns:
            The run id

        Raises:
            MissingInputError: If a root job has an unmet required input.
                Raised after the pass: that job is not dispatched but every
                other ready job is.
        """
        context = RunContext(
            run_id=key or generate_run_id(self.chain.key),
            chain_name=self.chain.name,
            inputs=dict(inputs or {}),
            lifetime=self.chain.lifetime,
            namespace=self.chain.namespace,
            user=self.user,
        )
        self._bind(context)
        if not self.run_state.claim_context(context):
            existing = self.run_state.get_context()
            if existing is None:
                # expired between the claim and the read
                self.run_state.put_context(context)
            else:
                if existing.inputs != context.inputs:
                    logger.warning(
                        f"Run {self.run_id} of chain {self.chain.name} already started; "
                        f"keeping its original inputs"
                    )
                self._bind(existing)
        logger.info(f"Starting chain {self.chain.name} run={self.run_id}")

        result = self._controller.dispatch_ready()
        for job in self.chain.jobs:
            if job.id in result.dispatched:
                logger.debug(
                    f"Job {job.id} has no job dependencies and parameter requirements are met, dispatched"
                )
            elif not job.is_root:
                logger.debug(f"Job {job.id} depends on another job, skipping")

        if result.skipped:
            raise next(iter(result.skipped.values()))
        return self.run_id

    def complete(self, job_id: str, response: Any = None) -> bool:
        """
        Report a job's success.

        Returns:
            True if the completion was applied, False if it was ignored
            (run already done, or a duplicate completion)
        """
        return self._controller.complete(job_id, response)

    def fail(self, job_id: str, error: Any = None) -> None:
        """Report a job's failure. Always fires ChainError."""
        self._controller.fail(job_id, error)

    def done(self, job_id: str, error: Any = None, response: Any = None) -> None:
        """Single entry point for executors: error set means fail, else complete."""
        if error:
            self.fail(job_id, error)
        else:
            self.complete(job_id, response)

    def dispatch_ready(self) -> DispatchResult:
        """Run a dispatch pass now (e.g. after state was corrected externally)."""
        return self._controller.dispatch_ready()

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def key(self, component: str = "", suffix: str = "") -> str:
        """Run-scoped state key; see jobchain.keys.run_key."""
        return self.run_state.key(component, suffix)

    def is_done(self) -> bool:
        return self.run_state.is_done()

    def response(self, job_id: str) -> Any:
        """Stored response of a job, or None."""
        return self.run_state.store.get(self.run_state.key(job_id))

    def state(self, job_id: str) -> StateRecord:
        """Snapshot of one job's state."""
        state = self.run_state
        has_response = state.has_response(job_id)
        completed = has_response or (job_id == self.chain.done and state.is_done())
        return StateRecord(
            job_id=job_id,
            dispatched=state.was_dispatched(job_id),
            completed=completed,
            response=self.response(job_id) if has_response else None,
            error=state.get_error(job_id),
        )

    def status(self) -> dict[str, JobState]:
        """job_id -> JobState for every job, in declared order."""
        return {job.id: self.state(job.id).state for job in self.chain.jobs}

    def params(self) -> list[str]:
        """Input names used by the chain."""
        return self.chain.params()

    def channels(self) -> list[Channel]:
        """
        Routes events of this run are broadcast on.

        Always the private run channel, then each configured channel with
        `{user}` substituted (empty when the run has no user).
        """
        channels = [Channel(f"job-chain.{self.chain.name}.{self.run_id}", private=True)]
        for channel in self.chain.channels:
            route = channel.route.replace("{user}", str(self.user) if self.user is not None else "")
            channels.append(Channel(route, private=channel.visibility == "private"))
        return channels

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize the run's definition and identity."""
        return {
            "key": self.chain.key or "",
            "run_id": self.run_id or "",
            "done": self.chain.done,
            "lifetime": self.chain.lifetime,
            "jobs": {job.id: job.to_dict() for job in self.chain.jobs},
        }

    def to_yaml(self, path: Path | str) -> "JobChain":
        """Write the chain definition, with param/job tags, to a YAML file."""
        from jobchain.registry import dump_yaml

        Path(path).write_text(dump_yaml(self.chain))
        return self
