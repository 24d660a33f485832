"""
Configuration management for jobchain.

Loads config.yaml from the jobchain home directory:
    $JOBCHAIN_HOME/config.yaml   (default ~/.config/jobchain/config.yaml)

Environment overrides (applied after the file):
    JOB_CHAIN_PATHS       chain search paths, os.pathsep separated
    JOB_CHAIN_LIFETIME    default run lifetime in seconds
    JOB_CHAIN_CACHE       state store backend: memory | redis
    JOB_CHAIN_REDIS_URL   redis connection URL

A missing config file yields defaults; `jobchain init` writes one.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from jobchain.errors import ConfigError
from jobchain.schemas import DEFAULT_LIFETIME

STORES = ("memory", "redis")
LOG_FORMATS = ("pretty", "structured")


def get_jobchain_home() -> Path:
    """Directory holding config.yaml and .env."""
    return Path(os.environ.get("JOBCHAIN_HOME", "~/.config/jobchain")).expanduser()


@dataclass
class JobChainConfig:
    """
    jobchain settings.

    Attributes:
        paths: Ordered chain search directories
        lifetime: Run lifetime for chains that do not set one (seconds)
        store: State store backend ("memory" or "redis")
        redis_url: Connection URL for the redis store
        log_level: Logging level name
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional log file
        env_file: Optional .env file loaded into the environment
    """
    paths: list[str] = field(default_factory=lambda: ["chains"])
    lifetime: int = DEFAULT_LIFETIME
    store: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def validate(self) -> None:
        if self.store not in STORES:
            raise ConfigError(f"store must be one of {STORES}, got '{self.store}'")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got '{self.log_format}'")
        if self.lifetime <= 0:
            raise ConfigError(f"lifetime must be positive, got {self.lifetime}")
        if not self.paths:
            raise ConfigError("At least one chain search path is required")

    def search_paths(self, base: Optional[Path] = None) -> list[Path]:
        """Search paths with ~ expanded; relative paths are taken from base (default cwd)."""
        base = base or Path.cwd()
        resolved = []
        for p in self.paths:
            path = Path(p).expanduser()
            resolved.append(path if path.is_absolute() else base / path)
        return resolved

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _apply_env(data: dict[str, Any]) -> None:
    if os.environ.get("JOB_CHAIN_PATHS"):
        data["paths"] = [p for p in os.environ["JOB_CHAIN_PATHS"].split(os.pathsep) if p]
    if os.environ.get("JOB_CHAIN_LIFETIME"):
        data["lifetime"] = os.environ["JOB_CHAIN_LIFETIME"]
    if os.environ.get("JOB_CHAIN_CACHE"):
        data["store"] = os.environ["JOB_CHAIN_CACHE"]
    if os.environ.get("JOB_CHAIN_REDIS_URL"):
        data["redis_url"] = os.environ["JOB_CHAIN_REDIS_URL"]


def load_config(config_path: Optional[Path] = None) -> JobChainConfig:
    """
    Load jobchain configuration.

    Args:
        config_path: Path to config file. Defaults to $JOBCHAIN_HOME/config.yaml

    Returns:
        JobChainConfig instance

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    if config_path is None:
        config_path = get_jobchain_home() / "config.yaml"

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")

    env_file = data.get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    _apply_env(data)

    known = set(JobChainConfig.__dataclass_fields__)
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {sorted(unknown)}")

    if isinstance(data.get("paths"), str):
        data["paths"] = [data["paths"]]
    if "lifetime" in data:
        try:
            data["lifetime"] = int(data["lifetime"])
        except (TypeError, ValueError):
            raise ConfigError(f"lifetime must be an integer, got {data['lifetime']!r}")

    config = JobChainConfig(**data)
    config.validate()
    return config
