"""
Parameter resolution - substitute run inputs and upstream responses.

Resolution walks a job's params tree once, at the moment of dispatch:

- InputRef(name, default): the run input if present, else the default,
  else MissingInputError(name)
- JobRef(job_id, field_path): the stored response of job_id, projected by
  field_path. A missing path segment yields None, not an error.
- Literal(value): value, unchanged
- dict / list: resolved element-wise
- anything else: unchanged

The dependency evaluator guarantees every JobRef has a stored response
before resolution runs; an absent response raises UnresolvedJobRefError.
"""

from typing import Any, Callable, Mapping

from jobchain.errors import MissingInputError, UnresolvedJobRefError
from jobchain.schemas import MISSING, InputRef, JobRef, JobSpec, Literal

# job_id -> stored response, or MISSING
ResponseLookup = Callable[[str], Any]


def project(value: Any, field_path: tuple[str, ...]) -> Any:
    """
    Project into a value by successive path segments.

    Mapping segments are keys; sequence segments are decimal indexes.
    Any segment that cannot be followed yields None.

    >>> project({"a": {"b": 5}}, ("a", "b"))
    5
    >>> project({"a": {"b": 5}}, ("a", "c")) is None
    True
    """
    for part in field_path:
        if isinstance(value, Mapping):
            if part not in value:
                return None
            value = value[part]
        elif isinstance(value, (list, tuple)):
            try:
                value = value[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return value


def resolve_value(
    value: Any,
    inputs: Mapping[str, Any],
    get_response: ResponseLookup,
    job_id: str = "",
) -> Any:
    """
    Recursively resolve ParamValues in a value.

    Args:
        value: The value to resolve (may be a ParamValue, dict, list or primitive)
        inputs: Run inputs
        get_response: Lookup returning the stored response or MISSING
        job_id: Job being resolved, for error messages

    Returns:
        The resolved value

    Raises:
        MissingInputError: If a required input is absent
        UnresolvedJobRefError: If a referenced job has no stored response
    """
    if isinstance(value, InputRef):
        if value.name in inputs:
            return inputs[value.name]
        if not value.required:
            return value.default
        raise MissingInputError(value.name, job_id or None)
    elif isinstance(value, JobRef):
        response = get_response(value.job_id)
        if response is MISSING:
            raise UnresolvedJobRefError(job_id, value.job_id)
        return project(response, value.field_path)
    elif isinstance(value, Literal):
        return value.value
    elif isinstance(value, dict):
        return {k: resolve_value(v, inputs, get_response, job_id) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_value(v, inputs, get_response, job_id) for v in value]
    else:
        return value


def resolve_params(
    job: JobSpec,
    inputs: Mapping[str, Any],
    get_response: ResponseLookup,
) -> dict[str, Any]:
    """
    Resolve a job's params for dispatch.

    Args:
        job: The job spec
        inputs: Run inputs
        get_response: Lookup returning the stored response or MISSING

    Returns:
        Fully resolved params, same keys and order as the template
    """
    return resolve_value(job.params, inputs, get_response, job.id)

