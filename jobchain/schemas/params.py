"""
Parameter values - the closed tagged union used in job params.

A job's params is an ordered mapping of name -> value where any value, at any
depth inside mappings and sequences, may be one of:

- Literal(value): a plain value passed through unchanged
- InputRef(name, default): resolved from the run's inputs
- JobRef(job_id, field_path): resolved from another job's stored response

Plain Python values (str, int, dict, list, ...) are treated as literals, so a
params tree only needs explicit Literal wrapping when a value would otherwise
be ambiguous.

Tags are decided once, at parse time:
    param <name> [default]       -> InputRef
    job <job_id>[.<field_path>]  -> JobRef

Dependency edges between jobs are implicit: they are exactly the JobRefs that
appear in a job's params.
"""

from dataclasses import dataclass
from typing import Any, Iterator, Union

from jobchain.errors import ChainValidationError


class _Missing:
    """Sentinel for 'no value' where None is a legitimate value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Missing, ())


MISSING = _Missing()

# JSON documents spell tags as single-key objects: {"$param": "foo bar"}
JSON_TAG_PREFIX = "$"


@dataclass(frozen=True)
class Literal:
    """
    An explicit literal value (scalar, mapping or sequence).

    The wrapped value is opaque: references inside it are not resolved.
    """
    value: Any


@dataclass(frozen=True)
class InputRef:
    """
    Reference to a run input.

    Attributes:
        name: The input name
        default: Value used when the input is absent (MISSING = required)
    """
    name: str
    default: Any = MISSING

    @property
    def required(self) -> bool:
        return self.default is MISSING

    @property
    def tag_payload(self) -> Any:
        """Payload for the `param` tag (string form when possible)."""
        if self.required:
            return self.name
        if isinstance(self.default, str) and self.default and self.default == self.default.strip():
            return f"{self.name} {self.default}"
        return {"name": self.name, "default": self.default}


@dataclass(frozen=True)
class JobRef:
    """
    Reference to another job's response.

    Attributes:
        job_id: The upstream job
        field_path: Path segments projected into the response (empty = whole)
    """
    job_id: str
    field_path: tuple[str, ...] = ()

    @property
    def tag_payload(self) -> str:
        return ".".join((self.job_id,) + self.field_path)


ParamValue = Union[Literal, InputRef, JobRef]


def parse_tag(tag: str, payload: Any) -> ParamValue:
    """
    Build a ParamValue from a tag name and its payload.

    Args:
        tag: "param" or "job" (a leading "!" or "$" is ignored)
        payload: Tag payload. Strings use the compact syntax
            ("foo bar", "jobOne.a.b"); mappings use explicit keys
            ({"name": ..., "default": ...} / {"job": ..., "path": ...}).

    Returns:
        InputRef or JobRef

    Raises:
        ChainValidationError: If the tag is unknown or the payload malformed
    """
    tag = tag.lstrip("!" + JSON_TAG_PREFIX)

    if tag == "param":
        if isinstance(payload, dict):
            if "name" not in payload:
                raise ChainValidationError(f"param tag requires 'name': {payload!r}")
            return InputRef(str(payload["name"]), payload.get("default", MISSING))
        parts = str(payload).strip().split(None, 1)
        if not parts:
            raise ChainValidationError("param tag requires a name")
        if len(parts) == 2:
            return InputRef(parts[0], parts[1])
        return InputRef(parts[0])

    if tag == "job":
        if isinstance(payload, dict):
            if "job" not in payload:
                raise ChainValidationError(f"job tag requires 'job': {payload!r}")
            job_id = str(payload["job"])
            path = payload.get("path") or ""
        else:
            text = str(payload).strip()
            if not text:
                raise ChainValidationError("job tag requires a job id")
            job_id, _, path = text.partition(".")
        if isinstance(path, (list, tuple)):
            field_path = tuple(str(p) for p in path)
        else:
            field_path = tuple(p for p in str(path).split(".") if p)
        return JobRef(job_id, field_path)

    raise ChainValidationError(f"Unhandled tag '{tag}' with value {payload!r}")


def parse_reference(text: str) -> ParamValue:
    """
    Parse the string form "param foo bar" / "job X.a.b".

    >>> parse_reference("param foo bar")
    InputRef(name='foo', default='bar')
    """
    tag, _, payload = text.strip().partition(" ")
    return parse_tag(tag, payload)


def from_document(value: Any) -> Any:
    """
    Convert a JSON-style params tree into ParamValues.

    {"$param": ...} and {"$job": ...} single-key objects become InputRef /
    JobRef; everything else is copied recursively.
    """
    if isinstance(value, dict):
        if len(value) == 1:
            (only_key, payload), = value.items()
            if isinstance(only_key, str) and only_key in ("$param", "$job"):
                return parse_tag(only_key, payload)
        return {k: from_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [from_document(v) for v in value]
    return value


def to_document(value: Any) -> Any:
    """Inverse of from_document, used for JSON export and hashing."""
    if isinstance(value, InputRef):
        return {"$param": value.tag_payload}
    if isinstance(value, JobRef):
        return {"$job": value.tag_payload}
    if isinstance(value, Literal):
        return to_document(value.value)
    if isinstance(value, dict):
        return {k: to_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_document(v) for v in value]
    return value


def iter_refs(value: Any) -> Iterator[Union[InputRef, JobRef]]:
    """Yield every InputRef and JobRef in a params tree, depth first."""
    if isinstance(value, (InputRef, JobRef)):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_refs(v)


def job_refs(params: Any) -> list[JobRef]:
    """All JobRefs in a params tree."""
    return [ref for ref in iter_refs(params) if isinstance(ref, JobRef)]


def input_refs(params: Any) -> list[InputRef]:
    """All InputRefs in a params tree."""
    return [ref for ref in iter_refs(params) if isinstance(ref, InputRef)]
