"""
jobchain.schemas - Schema definitions for chains and runs.

ChainDef -> RunContext -> StateRecord, plus the events a run emits.

Lifecycle:
1. ChainDef: Static chain definition; jobs with param templates (param/job tags)
2. RunContext: One run of a ChainDef bound to inputs and a run_id
3. StateRecord: Per-job view of the run's state in the state store
4. ChainResponse / ChainDone / ChainError: Notifications fired by the run
"""

from .params import (
    MISSING,
    Literal,
    InputRef,
    JobRef,
    ParamValue,
    parse_tag,
    parse_reference,
    from_document,
    to_document,
    iter_refs,
    job_refs,
    input_refs,
)
from .chain_def import (
    DEFAULT_LIFETIME,
    JobSpec,
    ChannelDef,
    ChainDef,
)
from .run_context import (
    JobState,
    RunContext,
    StateRecord,
)
from .events import (
    Channel,
    ChainEvent,
    ChainResponse,
    ChainDone,
    ChainError,
)

__all__ = [
    # Params
    "MISSING",
    "Literal",
    "InputRef",
    "JobRef",
    "ParamValue",
    "parse_tag",
    "parse_reference",
    "from_document",
    "to_document",
    "iter_refs",
    "job_refs",
    "input_refs",
    # Chain definition
    "DEFAULT_LIFETIME",
    "JobSpec",
    "ChannelDef",
    "ChainDef",
    # Run
    "JobState",
    "RunContext",
    "StateRecord",
    # Events
    "Channel",
    "ChainEvent",
    "ChainResponse",
    "ChainDone",
    "ChainError",
]
