"""
ChainDef schema - the declarative chain definition.

A ChainDef is the static, immutable description of a chain: an ordered set of
jobs, each with an executor target and a params template. Dependencies are not
declared; they are derived from the JobRefs in each job's params.

Document form (YAML or JSON):
    name: optional chain name
    key: optional run-correlation seed
    lifetime: optional TTL in seconds
    namespace: optional prefix for every job type
    done: optional terminal job id (default: last declared job)
    channels: optional list of {route, visibility}
    jobs: ordered mapping job_id -> {type, params}
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from jobchain.errors import ChainValidationError

from .params import InputRef, from_document, input_refs, job_refs, to_document

# Default run lifetime: one day
DEFAULT_LIFETIME = 60 * 60 * 24

VISIBILITIES = ("private", "public")

# Run-level state keys share the job namespace
RESERVED_JOB_IDS = frozenset({"done", "context"})

# Characters stripped from both ends of a namespace
_NAMESPACE_STRIP = ".:\\ \n\r\t\v\x00"


@dataclass(frozen=True)
class JobSpec:
    """
    A job within a chain.

    Attributes:
        id: Unique job identifier within the chain
        target: Opaque executor type identifier (document key `type`)
        params: Ordered mapping of name -> ParamValue (possibly nested)
    """
    id: str
    target: str
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Upstream job ids referenced anywhere in params, de-duplicated."""
        return tuple(dict.fromkeys(ref.job_id for ref in job_refs(self.params)))

    @property
    def is_root(self) -> bool:
        return not self.dependencies

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.target, "params": to_document(self.params)}


@dataclass(frozen=True)
class ChannelDef:
    """
    A notification route.

    Attributes:
        route: Route template, `{user}` is replaced by the run's user
        visibility: "private" or "public"
    """
    route: str
    visibility: str = "private"

    def __post_init__(self):
        if self.visibility not in VISIBILITIES:
            raise ChainValidationError(
                f"Channel visibility must be one of {VISIBILITIES}, got '{self.visibility}'"
            )

    def to_dict(self) -> dict[str, Any]:
        return {"route": self.route, "visibility": self.visibility}


@dataclass(frozen=True)
class ChainDef:
    """
    A chain definition.

    Attributes:
        name: Chain name (used in run-scoped keys and channel names)
        jobs: Jobs in declared order
        done: Terminal job id; defaults to the last declared job
        lifetime: TTL in seconds for all run state
        namespace: Prefix applied to every job target
        key: Optional run-correlation seed
        channels: Extra notification routes
    """
    name: str
    jobs: tuple[JobSpec, ...]
    done: Optional[str] = None
    lifetime: int = DEFAULT_LIFETIME
    namespace: str = ""
    key: Optional[str] = None
    channels: tuple[ChannelDef, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.jobs:
            raise ChainValidationError(f"Chain '{self.name}' declares no jobs")

        job_ids = [job.id for job in self.jobs]
        if len(job_ids) != len(set(job_ids)):
            duplicates = {jid for jid in job_ids if job_ids.count(jid) > 1}
            raise ChainValidationError(f"Duplicate job IDs: {duplicates}")

        for job_id in job_ids:
            if job_id in RESERVED_JOB_IDS:
                raise ChainValidationError(f"Job ID '{job_id}' is reserved")
            if not job_id or "." in job_id or any(c.isspace() for c in job_id):
                raise ChainValidationError(
                    f"Invalid job ID '{job_id}': must be non-empty without '.' or whitespace"
                )

        # frozen: go through object.__setattr__ for normalisation
        if self.done is None:
            object.__setattr__(self, "done", job_ids[-1])
        elif self.done not in job_ids:
            raise ChainValidationError(
                f"Terminal job '{self.done}' is not declared in chain '{self.name}'"
            )

        object.__setattr__(self, "namespace", (self.namespace or "").strip(_NAMESPACE_STRIP))

        if self.lifetime <= 0:
            raise ChainValidationError(f"lifetime must be positive, got {self.lifetime}")

    @property
    def job_ids(self) -> tuple[str, ...]:
        return tuple(job.id for job in self.jobs)

    def get_job(self, job_id: str) -> Optional[JobSpec]:
        """Get a job by ID."""
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def has_job(self, job_id: str) -> bool:
        return self.get_job(job_id) is not None

    def target_for(self, job_id: str) -> str:
        """The job's target with the chain namespace applied."""
        target = self.get_job(job_id).target
        if self.namespace:
            return f"{self.namespace}.{target}"
        return target

    def roots(self) -> tuple[JobSpec, ...]:
        """Jobs with no job dependencies, in declared order."""
        return tuple(job for job in self.jobs if job.is_root)

    def params(self) -> list[str]:
        """Names of every input used anywhere in the chain, in declared order."""
        names: dict[str, None] = {}
        for job in self.jobs:
            for ref in input_refs(job.params):
                names.setdefault(ref.name, None)
        return list(names)

    def required_inputs(self, job_id: str) -> list[InputRef]:
        """InputRefs of a job that have no default."""
        return [ref for ref in input_refs(self.get_job(job_id).params) if ref.required]

    def validate_graph(self) -> None:
        """
        Pre-flight check: every JobRef names a declared job and the graph is
        acyclic (Kahn's algorithm). Self-references count as cycles.

        Raises:
            ChainValidationError: On unknown references or cycles
        """
        declared = set(self.job_ids)
        indegree = {job.id: 0 for job in self.jobs}
        downstream: dict[str, list[str]] = {job.id: [] for job in self.jobs}

        for job in self.jobs:
            for dep in job.dependencies:
                if dep not in declared:
                    raise ChainValidationError(
                        f"Job '{job.id}' references unknown job '{dep}'"
                    )
                indegree[job.id] += 1
                downstream[dep].append(job.id)

        queue = deque(jid for jid in self.job_ids if indegree[jid] == 0)
        visited = 0
        while queue:
            current = queue.popleft()
            visited += 1
            for nxt in downstream[current]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    queue.append(nxt)

        if visited != len(self.jobs):
            cyclic = sorted(jid for jid, n in indegree.items() if n > 0)
            raise ChainValidationError(
                f"Chain '{self.name}' has a dependency cycle involving: {cyclic}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "name": self.name,
            **({"key": self.key} if self.key else {}),
            "done": self.done,
            "lifetime": self.lifetime,
            **({"namespace": self.namespace} if self.namespace else {}),
            **({"channels": [c.to_dict() for c in self.channels]} if self.channels else {}),
            "jobs": {job.id: job.to_dict() for job in self.jobs},
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        name: Optional[str] = None,
        default_lifetime: int = DEFAULT_LIFETIME,
    ) -> "ChainDef":
        """
        Deserialize from a document.

        Params may already contain ParamValues (YAML custom tags) or use the
        JSON {"$param": ...} / {"$job": ...} spelling.

        Args:
            data: Parsed document
            name: Chain name to use when the document has none
            default_lifetime: Lifetime when the document has none
        """
        if not isinstance(data, dict):
            raise ChainValidationError(f"Chain document must be a mapping, got {type(data).__name__}")

        jobs_data = data.get("jobs")
        if not isinstance(jobs_data, dict):
            raise ChainValidationError("Chain document requires a 'jobs' mapping")

        jobs = []
        for job_id, job_data in jobs_data.items():
            job_data = job_data or {}
            if "type" not in job_data:
                raise ChainValidationError(f"Job '{job_id}' is missing 'type'")
            jobs.append(JobSpec(
                id=str(job_id),
                target=str(job_data["type"]),
                params=from_document(job_data.get("params") or {}),
            ))

        channels = []
        for channel in data.get("channels") or []:
            if isinstance(channel, str):
                channels.append(ChannelDef(route=channel))
            else:
                channels.append(ChannelDef(
                    route=channel.get("route", ""),
                    visibility=channel.get("visibility", "private"),
                ))

        lifetime = data.get("lifetime")
        if lifetime is None:
            lifetime = default_lifetime

        chain_name = data.get("name") or name
        if not chain_name:
            raise ChainValidationError("Chain has no name")

        return cls(
            name=str(chain_name),
            jobs=tuple(jobs),
            done=data.get("done"),
            lifetime=int(lifetime),
            namespace=data.get("namespace") or "",
            key=data.get("key"),
            channels=tuple(channels),
        )
