"""
Dispatcher boundary - hand resolved jobs to an execution subsystem.

The engine calls Dispatcher.submit() with a JobManifest once per job per run
and expects only an acknowledgement. Results come back later, keyed by job id,
through JobChain.complete() / JobChain.fail().

Implementations:
- NoOpDispatcher: logs and drops submissions
- RecordingDispatcher: keeps submissions in order (tests, dry runs)
- LocalDispatcher: queues submissions and runs them in-process on demand,
  resolving each target to an importable callable
"""

import importlib
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence, TYPE_CHECKING

from jobchain.errors import ExternalExecutionError

if TYPE_CHECKING:
    from jobchain.chain import JobChain

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobManifest:
    """
    A dispatchable unit: one job of one run with resolved params.

    Attributes:
        run_id: The run
        chain_name: The chain the run belongs to
        job_id: The job
        target: Executor type identifier, namespace already applied
        params: Fully resolved params
        dispatched_at: When the job was dispatched
    """
    run_id: str
    chain_name: str
    job_id: str
    target: str
    params: dict[str, Any] = field(default_factory=dict)
    dispatched_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "run_id": self.run_id,
            "chain_name": self.chain_name,
            "job_id": self.job_id,
            "target": self.target,
            "params": self.params,
            "dispatched_at": self.dispatched_at.isoformat(),
        }


class Dispatcher(ABC):
    """
    Abstract base class for dispatchers.

    submit() must not wait for the job to finish. The run is passed so
    in-process dispatchers can report back; remote dispatchers only need
    manifest.run_id and manifest.job_id to route the reply.
    """

    @abstractmethod
    def submit(self, manifest: JobManifest, run: "JobChain") -> None:
        """
        Submit a job for execution.

        Args:
            manifest: The resolved job
            run: The run to report completion / failure to

        Raises:
            Exception: If the submission itself fails
        """
        pass


class NoOpDispatcher(Dispatcher):
    """No-op dispatcher: logs the submission and drops it."""

    def submit(self, manifest: JobManifest, run: "JobChain") -> None:
        logger.debug(f"[noop] {manifest.run_id}:{manifest.job_id} -> {manifest.target}")


class RecordingDispatcher(Dispatcher):
    """Keeps every submission, in order, without executing anything."""

    def __init__(self) -> None:
        self.submitted: list[JobManifest] = []

    def submit(self, manifest: JobManifest, run: "JobChain") -> None:
        self.submitted.append(manifest)

    @property
    def job_ids(self) -> list[str]:
        return [m.job_id for m in self.submitted]

    def params_for(self, job_id: str) -> Optional[dict[str, Any]]:
        for manifest in self.submitted:
            if manifest.job_id == job_id:
                return manifest.params
        return None

    def clear(self) -> None:
        self.submitted.clear()


def _is_allowed_module(module_path: str, allowed: Sequence[str]) -> bool:
    """Check if module is in allowlist (exact match or submodule)."""
    for prefix in allowed:
        if module_path == prefix or module_path.startswith(prefix + "."):
            return True
    return False


def load_target(target: str, allowed_modules: Optional[Sequence[str]] = None) -> Callable[..., Any]:
    """
    Load a job target by import path.

    Accepts "package.module:function" or "package.module.function".

    Args:
        target: The import path
        allowed_modules: Optional allowlist of modules (exact or submodules)

    Returns:
        The callable (function or job class)

    Raises:
        ValueError: If path not in allowlist or malformed
        ImportError: If module not found
        AttributeError: If attribute not found in module
        TypeError: If attribute is not callable
    """
    if ":" in target:
        module_path, attr = target.rsplit(":", 1)
    elif "." in target:
        module_path, attr = target.rsplit(".", 1)
    else:
        raise ValueError(f"Target must be 'module:function' or 'module.function', got: {target}")

    if allowed_modules is not None and not _is_allowed_module(module_path, allowed_modules):
        raise ValueError(
            f"Target module '{module_path}' not in allowlist. Allowed: {list(allowed_modules)}"
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ImportError(f"Cannot import target module '{module_path}': {e}") from e

    try:
        func = getattr(module, attr)
    except AttributeError as e:
        raise AttributeError(f"Target '{attr}' not found in '{module_path}': {e}") from e

    if not callable(func):
        raise TypeError(f"{target} is not callable")

    return func


def invoke_target(func: Callable[..., Any], params: dict[str, Any]) -> Any:
    """
    Run a target with resolved params.

    Functions are called with params as keyword arguments. Job classes (any
    class with a handle() method) are constructed with the params and their
    handle() return value is the response.
    """
    if isinstance(func, type) and hasattr(func, "handle"):
        return func(**params).handle()
    return func(**params)


class LocalDispatcher(Dispatcher):
    """
    In-process dispatcher.

    Submissions are queued; run_pending() executes them in FIFO order and
    reports each outcome to its run. Executing inside submit() would re-enter
    the cascade, so nothing runs until run_pending() is called.

    Usage:
        dispatcher = LocalDispatcher()
        dispatcher.register("JobOne", job_one)
        run = JobChain(chain_def, store, dispatcher)
        run.start({"filePath": "/tmp/in.txt"})
        dispatcher.run_pending()
    """

    def __init__(
        self,
        targets: Optional[dict[str, Callable[..., Any]]] = None,
        allowed_modules: Optional[Sequence[str]] = None,
    ):
        """
        Args:
            targets: Explicit target name -> callable registrations
            allowed_modules: Allowlist used when importing unregistered targets
        """
        self._targets: dict[str, Callable[..., Any]] = dict(targets or {})
        self._allowed_modules = allowed_modules
        self._pending: deque[tuple[JobManifest, "JobChain"]] = deque()

    def register(self, target: str, func: Callable[..., Any]) -> None:
        """Register a callable for a target name."""
        self._targets[target] = func

    def resolve(self, target: str) -> Callable[..., Any]:
        """Registered callable for target, else import it."""
        if target in self._targets:
            return self._targets[target]
        func = load_target(target, self._allowed_modules)
        self._targets[target] = func
        return func

    def submit(self, manifest: JobManifest, run: "JobChain") -> None:
        self._pending.append((manifest, run))

    @property
    def pending(self) -> int:
        return len(self._pending)

    def run_pending(self, max_jobs: Optional[int] = None) -> int:
        """
        Execute queued jobs, including those queued by cascades on the way.

        Args:
            max_jobs: Stop after this many jobs (None = until the queue is empty)

        Returns:
            Number of jobs executed
        """
        executed = 0
        while self._pending and (max_jobs is None or executed < max_jobs):
            manifest, run = self._pending.popleft()
            executed += 1
            logger.debug(f"Running {manifest.job_id} ({manifest.target})")
            try:
                func = self.resolve(manifest.target)
                response = invoke_target(func, manifest.params)
            except Exception as e:
                logger.warning(f"Job {manifest.job_id} failed: {e}", exc_info=True)
                run.fail(manifest.job_id, ExternalExecutionError(manifest.job_id, e))
                continue
            run.complete(manifest.job_id, response)
        return executed
