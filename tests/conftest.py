from pathlib import Path

import pytest

from jobchain.chain import JobChain
from jobchain.dispatcher import RecordingDispatcher
from jobchain.notifier import RecordingNotifier
from jobchain.schemas import ChainDef, InputRef, JobRef, JobSpec
from jobchain.state_store import InMemoryStateStore

FIXTURES_DIR = Path(__file__).parent / "fixtures"
CHAINS_DIR = FIXTURES_DIR / "chains"


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Keep every test away from the real ~/.config/jobchain and JOB_CHAIN_* env."""
    monkeypatch.setenv("JOBCHAIN_HOME", str(tmp_path / "jobchain_home"))
    for var in ("JOB_CHAIN_PATHS", "JOB_CHAIN_LIFETIME", "JOB_CHAIN_CACHE", "JOB_CHAIN_REDIS_URL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def sample_jobs_path(monkeypatch):
    """Make tests/fixtures/sample_jobs.py importable as `sample_jobs`."""
    monkeypatch.syspath_prepend(str(FIXTURES_DIR))
    return FIXTURES_DIR


@pytest.fixture
def chain1():
    """jobOne and jobTwo are roots; jobThree (terminal) references both."""
    return ChainDef(
        name="chain1",
        jobs=(
            JobSpec("jobOne", "JobOne", {"file_path": InputRef("filePath", "/tmp/input.txt")}),
            JobSpec("jobTwo", "JobTwo", {"message": InputRef("message", "hello")}),
            JobSpec("jobThree", "JobThree", {"x": JobRef("jobOne"), "y": JobRef("jobTwo")}),
        ),
    )


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_run(store, dispatcher, notifier):
    """Build a JobChain over the shared in-memory store, recorder and notifier."""
    def _make(chain_def, **kwargs):
        return JobChain(chain_def, store, dispatcher, notifier, **kwargs)
    return _make
