"""
ChainRegistry - Load and validate ChainDefs from search paths.

The registry provides:
- Loading ChainDefs from YAML or JSON files across ordered search paths
- Dotted lookup names: "orders.fulfil" -> orders/fulfil.yml
- `!param` / `!job` YAML tags for parameter references
- Caching loaded definitions
- Graph validation (unknown refs, cycles) at load time
- Content-addressable lookup via SHA256 hash
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from jobchain.errors import ChainNotFoundError, ChainValidationError
from jobchain.schemas import ChainDef, InputRef, JobRef, Literal, parse_tag, to_document

logger = logging.getLogger(__name__)

EXTENSIONS = (".yml", ".yaml", ".json")


# =============================================================================
# YAML tags
# =============================================================================


class ChainLoader(yaml.SafeLoader):
    """SafeLoader that understands `!param` and `!job`."""


class ChainDumper(yaml.SafeDumper):
    """SafeDumper that writes InputRef / JobRef back as tags."""


def _construct_ref(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    if isinstance(node, yaml.ScalarNode):
        payload = loader.construct_scalar(node)
    elif isinstance(node, yaml.MappingNode):
        payload = loader.construct_mapping(node, deep=True)
    else:
        raise ChainValidationError(f"Tag !{tag_suffix} does not accept a sequence")
    return parse_tag(tag_suffix, payload)


def _construct_unknown(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    raise ChainValidationError(f"Unhandled tag '!{tag_suffix}'")


ChainLoader.add_constructor("!param", lambda l, n: _construct_ref(l, "param", n))
ChainLoader.add_constructor("!job", lambda l, n: _construct_ref(l, "job", n))
ChainLoader.add_multi_constructor("!", _construct_unknown)


def _represent_input_ref(dumper: yaml.SafeDumper, ref: InputRef) -> yaml.Node:
    payload = ref.tag_payload
    if isinstance(payload, dict):
        return dumper.represent_mapping("!param", payload)
    return dumper.represent_scalar("!param", payload)


def _represent_job_ref(dumper: yaml.SafeDumper, ref: JobRef) -> yaml.Node:
    return dumper.represent_scalar("!job", ref.tag_payload)


def _represent_literal(dumper: yaml.SafeDumper, literal: Literal) -> yaml.Node:
    return dumper.represent_data(literal.value)


ChainDumper.add_representer(InputRef, _represent_input_ref)
ChainDumper.add_representer(JobRef, _represent_job_ref)
ChainDumper.add_representer(Literal, _represent_literal)


def load_yaml(text: str) -> Any:
    """Parse a YAML chain document, constructing tags into ParamValues."""
    return yaml.load(text, Loader=ChainLoader)


def dump_yaml(chain_def: ChainDef) -> str:
    """Serialize a ChainDef to YAML with `!param` / `!job` tags."""
    data: dict[str, Any] = {"name": chain_def.name}
    if chain_def.key:
        data["key"] = chain_def.key
    data["done"] = chain_def.done
    data["lifetime"] = chain_def.lifetime
    if chain_def.namespace:
        data["namespace"] = chain_def.namespace
    if chain_def.channels:
        data["channels"] = [c.to_dict() for c in chain_def.channels]
    data["jobs"] = {
        job.id: {"type": job.target, "params": job.params}
        for job in chain_def.jobs
    }
    return yaml.dump(data, Dumper=ChainDumper, sort_keys=False, default_flow_style=False)


# =============================================================================
# Registry
# =============================================================================


class ChainRegistry:
    """
    Registry for loading and caching ChainDefs.

    Search paths are tried in order; the first file found wins.

    Example directory structure:
        chains/
            chain1.yml
            orders/
                fulfil.yaml
                refund.json
    """

    def __init__(self, paths: Iterable[Path | str], default_lifetime: Optional[int] = None):
        """
        Initialize the registry.

        Args:
            paths: Ordered directories to search for chain files
            default_lifetime: Lifetime for chains that do not set one
        """
        self._paths = [Path(p).expanduser() for p in paths]
        self._default_lifetime = default_lifetime
        self._cache: dict[str, ChainDef] = {}
        self._hash_index: dict[str, str] = {}  # sha256 -> chain name

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    def load(self, name: str) -> ChainDef:
        """
        Load a ChainDef by dotted name.

        Args:
            name: Dotted chain name ("a.b" -> a/b.yml)

        Returns:
            The loaded, validated ChainDef

        Raises:
            ChainNotFoundError: If no search path has the chain
            ChainValidationError: If the file cannot be parsed or is invalid
        """
        if name in self._cache:
            return self._cache[name]

        def_path = self.find(name)
        if def_path is None:
            raise ChainNotFoundError(
                f"Chain '{name}' not found in: {', '.join(str(p) for p in self._paths)}"
            )

        logger.debug(f"Loading chain {name} from {def_path}")
        try:
            data = self._load_file(def_path)
        except ChainValidationError:
            raise
        except Exception as e:
            raise ChainValidationError(f"Failed to load {def_path}: {e}") from e

        kwargs: dict[str, Any] = {"name": name}
        if self._default_lifetime is not None:
            kwargs["default_lifetime"] = self._default_lifetime
        try:
            chain_def = ChainDef.from_dict(data, **kwargs)
        except ChainValidationError as e:
            raise ChainValidationError(f"Invalid chain in {def_path}: {e}") from e

        chain_def.validate_graph()

        self._cache[name] = chain_def
        self._hash_index[self.compute_hash(chain_def)] = name
        return chain_def

    def _load_file(self, path: Path) -> Any:
        """
        Load a chain file (YAML or JSON).

        Raises:
            ValueError: If file format is unsupported
        """
        suffix = path.suffix.lower()
        text = path.read_text()
        if suffix in (".yaml", ".yml"):
            return load_yaml(text)
        if suffix == ".json":
            return json.loads(text)
        raise ValueError(f"Unsupported file format: {suffix}")

    def find(self, name: str) -> Optional[Path]:
        """
        Find the definition file for a dotted chain name.

        Returns:
            Path to the file, or None if not found
        """
        relative = Path(*name.split("."))
        for base in self._paths:
            for ext in EXTENSIONS:
                candidate = base / relative.with_name(relative.name + ext)
                if candidate.is_file():
                    return candidate
        return None

    def load_by_hash(self, sha256: str) -> Optional[ChainDef]:
        """The cached ChainDef with this content hash, if any."""
        name = self._hash_index.get(sha256)
        if name is None:
            return None
        return self._cache.get(name)

    def list_chains(self) -> list[str]:
        """
        List all available chain names.

        Returns:
            Sorted dotted names found across all search paths
        """
        names = set()
        for base in self._paths:
            if not base.is_dir():
                continue
            for ext in EXTENSIONS:
                for f in base.glob(f"**/*{ext}"):
                    relative = f.relative_to(base).with_suffix("")
                    names.add(".".join(relative.parts))
        return sorted(names)

    @staticmethod
    def compute_hash(chain_def: ChainDef) -> str:
        """
        Compute SHA256 hash of a ChainDef for content addressing.

        Uses canonical JSON serialization (sorted keys, no whitespace)
        to ensure consistent hashing.
        """
        canonical = json.dumps(
            to_document(chain_def.to_dict()), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def clear_cache(self) -> None:
        """Clear the definition cache."""
        self._cache.clear()
        self._hash_index.clear()

    def preload_all(self) -> int:
        """
        Load every chain into the cache.

        Returns:
            Number of chains loaded

        Raises:
            ChainValidationError: If any chain is invalid
        """
        count = 0
        for name in self.list_chains():
            self.load(name)
            count += 1
        return count
