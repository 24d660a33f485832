"""
Utility functions for jobchain.

Includes logging setup and console rendering for the CLI.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from jobchain.schemas import JobState


# Global console for pretty output
console = Console()

_STATE_STYLES = {
    JobState.NOT_DISPATCHED: "dim",
    JobState.DISPATCHED: "yellow",
    JobState.COMPLETED: "green",
    JobState.FAILED: "red",
}


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for the jobchain package.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        log_file: Optional path to log file
        console_output: Also log to console (stderr)

    Returns:
        Configured logger
    """
    logger = logging.getLogger("jobchain")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_time=False
            )
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def parse_assignments(pairs: tuple[str, ...]) -> dict[str, Any]:
    """
    Parse key=value pairs from the command line.

    Values are read as YAML scalars, so `n=3` gives an int and `flag=true`
    a bool; anything unparseable stays a string.

    Raises:
        ValueError: If a pair has no '='
    """
    import yaml

    result: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got '{pair}'")
        key, raw = pair.split("=", 1)
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        result[key.strip()] = value
    return result


def print_status(title: str, status: Mapping[str, JobState], responses: Mapping[str, Any]) -> None:
    """Print a table of job states and responses."""
    table = Table(title=escape(title))
    table.add_column("Job")
    table.add_column("State")
    table.add_column("Response", overflow="fold")

    for job_id, state in status.items():
        response = responses.get(job_id)
        table.add_row(
            escape(job_id),
            f"[{_STATE_STYLES[state]}]{state.value}[/]",
            "" if response is None else escape(json.dumps(response, default=str)),
        )

    console.print(table)
