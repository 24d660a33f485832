"""Tests for jobchain.registry module.

Tests ChainRegistry lookup across search paths, YAML tags, JSON documents,
caching, graph validation and YAML export.
"""

import json
from pathlib import Path

import pytest
import yaml

from jobchain.errors import ChainNotFoundError, ChainValidationError
from jobchain.registry import ChainRegistry, dump_yaml, load_yaml
from jobchain.schemas import ChannelDef, InputRef, JobRef, Literal, ChainDef, JobSpec

from conftest import CHAINS_DIR


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


CHAIN_YAML = """
jobs:
  a:
    type: A
    params:
      x: !param x
  b:
    type: B
    params:
      y: !job a.k
"""


class TestYamlTags:
    """Tests for the !param / !job constructors."""

    def test_scalar_forms(self):
        data = load_yaml("a: !param foo\nb: !param foo bar baz\nc: !job X.a.b\nd: !job X\n")
        assert data == {
            "a": InputRef("foo"),
            "b": InputRef("foo", "bar baz"),
            "c": JobRef("X", ("a", "b")),
            "d": JobRef("X"),
        }

    def test_mapping_forms(self):
        data = load_yaml("a: !param {name: n, default: 3}\nb: !job {job: X, path: items.0}\n")
        assert data == {"a": InputRef("n", 3), "b": JobRef("X", ("items", "0"))}

    def test_tags_nested_in_sequences(self):
        data = load_yaml("a:\n  - !param p\n  - {k: !job j}\n")
        assert data == {"a": [InputRef("p"), {"k": JobRef("j")}]}

    def test_unknown_tag_rejected(self):
        with pytest.raises(ChainValidationError, match="Unhandled tag '!env'"):
            load_yaml("a: !env HOME\n")

    def test_sequence_payload_rejected(self):
        with pytest.raises(ChainValidationError, match="does not accept a sequence"):
            load_yaml("a: !param [x, y]\n")

    def test_python_tags_not_constructed(self):
        with pytest.raises(yaml.constructor.ConstructorError):
            load_yaml("a: !!python/object/apply:os.system ['true']\n")


class TestChainRegistryLoad:
    """Tests for ChainRegistry.load."""

    def test_load_fixture_chain(self):
        chain = ChainRegistry([CHAINS_DIR]).load("chain1")
        assert chain.name == "chain1"
        assert chain.job_ids == ("jobOne", "jobTwo", "jobThree")
        assert chain.done == "jobThree"
        assert chain.namespace == "sample_jobs"
        assert chain.get_job("jobOne").params == {"file_path": InputRef("filePath", "/tmp/input.txt")}

    def test_dotted_name_maps_to_subdirectory(self):
        chain = ChainRegistry([CHAINS_DIR]).load("orders.fulfil")
        assert chain.name == "orders.fulfil"
        assert chain.key == "orders"
        assert chain.lifetime == 3600
        assert chain.channels == (ChannelDef("users.{user}"), ChannelDef("orders", "public"))
        assert chain.get_job("ship").params["sku"] == JobRef("reserve", ("items", "0", "sku"))

    def test_json_document(self):
        chain = ChainRegistry([CHAINS_DIR]).load("orders.refund")
        assert chain.get_job("ship").params == {"receipt": JobRef("charge", ("receipt",)), "sku": "A1"}

    def test_extension_preference(self, tmp_path):
        _write(tmp_path / "c.json", json.dumps({"jobs": {"fromjson": {"type": "T"}}}))
        _write(tmp_path / "c.yaml", "jobs:\n  fromyaml: {type: T}\n")
        _write(tmp_path / "c.yml", "jobs:\n  fromyml: {type: T}\n")
        assert ChainRegistry([tmp_path]).load("c").job_ids == ("fromyml",)

    def test_first_search_path_wins(self, tmp_path):
        _write(tmp_path / "one" / "c.json", json.dumps({"jobs": {"first": {"type": "T"}}}))
        _write(tmp_path / "two" / "c.yml", "jobs:\n  second: {type: T}\n")
        registry = ChainRegistry([tmp_path / "missing", tmp_path / "one", tmp_path / "two"])
        assert registry.load("c").job_ids == ("first",)

    def test_not_found(self, tmp_path):
        with pytest.raises(ChainNotFoundError, match="Chain 'nope' not found"):
            ChainRegistry([tmp_path]).load("nope")

    def test_invalid_yaml(self, tmp_path):
        _write(tmp_path / "bad.yml", "jobs: [unclosed\n")
        with pytest.raises(ChainValidationError, match="Failed to load"):
            ChainRegistry([tmp_path]).load("bad")

    def test_invalid_document_mentions_file(self, tmp_path):
        _write(tmp_path / "bad.yml", "jobs:\n  a: {params: {}}\n")
        with pytest.raises(ChainValidationError, match=r"bad\.yml.*missing 'type'"):
            ChainRegistry([tmp_path]).load("bad")

    def test_cycle_rejected_at_load(self, tmp_path):
        _write(tmp_path / "loop.yml", "jobs:\n  a:\n    type: T\n    params: {x: !job b}\n  b:\n    type: T\n    params: {x: !job a}\n")
        with pytest.raises(ChainValidationError, match="cycle"):
            ChainRegistry([tmp_path]).load("loop")

    def test_default_lifetime(self, tmp_path):
        _write(tmp_path / "c.yml", CHAIN_YAML)
        assert ChainRegistry([tmp_path], default_lifetime=120).load("c").lifetime == 120

    def test_cache_and_clear(self, tmp_path):
        path = _write(tmp_path / "c.yml", CHAIN_YAML)
        registry = ChainRegistry([tmp_path])
        first = registry.load("c")
        path.write_text("jobs:\n  z: {type: T}\n")
        assert registry.load("c") is first

        registry.clear_cache()
        assert registry.load("c").job_ids == ("z",)


class TestChainRegistryListing:
    """Tests for listing, hashing and preloading."""

    def test_list_chains(self):
        assert ChainRegistry([CHAINS_DIR]).list_chains() == ["chain1", "orders.fulfil", "orders.refund"]

    def test_list_across_paths(self, tmp_path):
        _write(tmp_path / "c.yml", CHAIN_YAML)
        registry = ChainRegistry([tmp_path, CHAINS_DIR, tmp_path / "missing"])
        assert registry.list_chains() == ["c", "chain1", "orders.fulfil", "orders.refund"]

    def test_compute_hash_is_stable(self, tmp_path):
        _write(tmp_path / "c.yml", CHAIN_YAML)
        _write(tmp_path / "d.json", json.dumps({
            "name": "c",
            "jobs": {
                "a": {"type": "A", "params": {"x": {"$param": "x"}}},
                "b": {"type": "B", "params": {"y": {"$job": "a.k"}}},
            },
        }))
        registry = ChainRegistry([tmp_path])
        yaml_hash = registry.compute_hash(registry.load("c"))
        assert yaml_hash == registry.compute_hash(registry.load("d"))
        assert len(yaml_hash) == 64
        assert registry.load_by_hash(yaml_hash) is not None
        assert registry.load_by_hash("0" * 64) is None

    def test_preload_all(self):
        assert ChainRegistry([CHAINS_DIR]).preload_all() == 3


class TestDumpYaml:
    """Tests for YAML export with tags."""

    def test_round_trip_through_loader(self):
        chain = ChainRegistry([CHAINS_DIR]).load("orders.fulfil")
        reloaded = ChainDef.from_dict(load_yaml(dump_yaml(chain)))
        assert reloaded == chain

    def test_literal_written_as_plain_value(self):
        chain = ChainDef("c", (JobSpec("a", "T", {"cfg": Literal({"k": [1, 2]})}),))
        assert load_yaml(dump_yaml(chain))["jobs"]["a"]["params"] == {"cfg": {"k": [1, 2]}}

    def test_tags_in_output(self):
        text = dump_yaml(ChainRegistry([CHAINS_DIR]).load("orders.fulfil"))
        assert "!param order_id" in text
        assert "!job reserve.items.0.sku" in text
