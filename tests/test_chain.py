"""Tests for JobChain and the completion controller.

Drives runs through start / complete / fail with a recording dispatcher and
notifier and checks dispatch order, events, idempotence and failure locality.
"""

import logging
import threading

import pytest

from jobchain.chain import JobChain
from jobchain.dispatcher import Dispatcher, RecordingDispatcher
from jobchain.errors import (
    ExternalExecutionError,
    JobChainError,
    MissingInputError,
    UnknownJobError,
)
from jobchain.notifier import RecordingNotifier
from jobchain.schemas import (
    ChainDef,
    ChainDone,
    ChainError,
    ChainResponse,
    Channel,
    ChannelDef,
    InputRef,
    JobRef,
    JobSpec,
    JobState,
)
from jobchain.state_store import InMemoryStateStore


# =============================================================================
# Scenario
# =============================================================================


class TestChainScenario:
    """jobOne, jobTwo -> jobThree (terminal)."""

    def test_start_dispatches_roots_once(self, chain1, make_run, dispatcher):
        run = make_run(chain1)
        run.start({})

        assert dispatcher.job_ids == ["jobOne", "jobTwo"]
        assert dispatcher.params_for("jobOne") == {"file_path": "/tmp/input.txt"}
        assert dispatcher.params_for("jobTwo") == {"message": "hello"}

    def test_inputs_override_defaults(self, chain1, make_run, dispatcher):
        make_run(chain1).start({"filePath": "/data/in.csv"})
        assert dispatcher.params_for("jobOne") == {"file_path": "/data/in.csv"}

    def test_full_run(self, chain1, make_run, dispatcher, notifier):
        run = make_run(chain1)
        run_id = run.start({})

        assert run.complete("jobOne", "A")
        assert notifier.events == [ChainResponse(run_id, "jobOne", "A")]
        assert "jobThree" not in dispatcher.job_ids

        assert run.complete("jobTwo", "B")
        assert notifier.events[-1] == ChainResponse(run_id, "jobTwo", "B")
        assert dispatcher.job_ids == ["jobOne", "jobTwo", "jobThree"]
        assert dispatcher.params_for("jobThree") == {"x": "A", "y": "B"}

        assert run.complete("jobThree", "C")
        assert notifier.events[-1] == ChainDone(run_id, "jobThree", "C")
        assert len(notifier.of_type(ChainDone)) == 1
        assert [e.job_id for e in notifier.of_type(ChainResponse)] == ["jobOne", "jobTwo"]
        assert run.is_done()

    def test_manifest_carries_run_identity(self, chain1, make_run, dispatcher):
        run = make_run(chain1)
        run_id = run.start()
        manifest = dispatcher.submitted[0]
        assert manifest.run_id == run_id
        assert manifest.chain_name == "chain1"
        assert manifest.target == "JobOne"
        assert manifest.to_dict()["dispatched_at"]

    def test_status(self, chain1, make_run):
        run = make_run(chain1)
        run.start()
        run.complete("jobOne", "A")
        run.fail("jobTwo", "boom")
        assert run.status() == {
            "jobOne": JobState.COMPLETED,
            "jobTwo": JobState.FAILED,
            "jobThree": JobState.NOT_DISPATCHED,
        }
        assert run.response("jobOne") == "A"
        assert run.state("jobTwo").error == "boom"


# =============================================================================
# Idempotence
# =============================================================================


class TestIdempotence:
    """Duplicate and late calls never duplicate events or dispatches."""

    def test_duplicate_complete_ignored(self, chain1, make_run, dispatcher, notifier):
        run = make_run(chain1)
        run.start()
        run.complete("jobOne", "A")
        run.complete("jobTwo", "B")

        assert not run.complete("jobTwo", "B")
        assert not run.complete("jobOne", "other")

        assert len(notifier.of_type(ChainResponse)) == 2
        assert dispatcher.job_ids.count("jobThree") == 1
        assert run.response("jobOne") == "A"

    def test_terminal_completes_once(self, chain1, make_run, notifier):
        run = make_run(chain1)
        run.start()
        run.complete("jobOne", "A")
        run.complete("jobTwo", "B")
        assert run.complete("jobThree", "C")
        assert not run.complete("jobThree", "C")
        assert len(notifier.of_type(ChainDone)) == 1

    def test_complete_after_done_is_noop(self, chain1, make_run, notifier):
        run = make_run(chain1)
        run.start()
        run.complete("jobThree", "early")
        assert not run.complete("jobOne", "A")
        assert notifier.of_type(ChainResponse) == []

    def test_terminal_response_not_stored(self, chain1, make_run):
        run = make_run(chain1)
        run.start()
        run.complete("jobThree", "C")
        assert run.response("jobThree") is None
        assert run.state("jobThree").state == JobState.COMPLETED

    def test_start_twice_with_same_key(self, chain1, make_run, dispatcher):
        make_run(chain1).start(key="order-42")
        make_run(chain1).start(key="order-42")
        assert dispatcher.job_ids == ["jobOne", "jobTwo"]

    def test_restart_with_same_key_keeps_first_inputs(self, store, dispatcher, notifier, caplog):
        chain = ChainDef("restart", (
            JobSpec("a", "T", {"p": InputRef("x", 0)}),
            JobSpec("b", "T", {"a": JobRef("a"), "need": InputRef("y")}),
        ))
        JobChain(chain, store, dispatcher, notifier, user="bob").start({"x": 1, "y": 2}, key="k")

        again = JobChain(chain, store, dispatcher, notifier)
        with caplog.at_level(logging.WARNING, logger="jobchain.chain"):
            assert again.start({}, key="k") == "k"
        assert again.inputs == {"x": 1, "y": 2}
        assert again.user == "bob"
        assert "keeping its original inputs" in caplog.text

        JobChain.resume(chain, "k", store, dispatcher, notifier).complete("a", "A")
        assert dispatcher.job_ids == ["a", "b"]
        assert dispatcher.params_for("b") == {"a": "A", "need": 2}


# =============================================================================
# Ordering
# =============================================================================


class TestDeclaredOrder:
    """Declared order breaks ties when several jobs become ready together."""

    def test_fan_out_dispatches_in_declared_order(self, make_run, dispatcher, notifier):
        chain = ChainDef("fan", (
            JobSpec("src", "T"),
            JobSpec("c", "T", {"x": JobRef("src")}),
            JobSpec("a", "T", {"x": JobRef("src")}),
            JobSpec("b", "T", {"x": JobRef("src")}),
            JobSpec("sink", "T", {"a": JobRef("a"), "b": JobRef("b"), "c": JobRef("c")}),
        ))
        run = make_run(chain)
        run.start()
        run.complete("src", 1)
        assert dispatcher.job_ids == ["src", "c", "a", "b"]

        for job_id in ("b", "a", "c"):
            run.complete(job_id, job_id)
        assert [e.job_id for e in notifier.of_type(ChainResponse)] == ["src", "b", "a", "c"]
        assert dispatcher.job_ids[-1] == "sink"
        assert dispatcher.params_for("sink") == {"a": "a", "b": "b", "c": "c"}

    def test_explicit_terminal_job(self, make_run, notifier):
        chain = ChainDef("c", (JobSpec("a", "T"), JobSpec("b", "T", {"x": JobRef("a")})), done="a")
        run = make_run(chain)
        run.start()
        run.complete("a", "A")
        assert notifier.events == [ChainDone(run.run_id, "a", "A")]


# =============================================================================
# Missing inputs
# =============================================================================


class TestMissingInputs:
    """A missing required input aborts only that job's dispatch."""

    @pytest.fixture
    def chain(self):
        return ChainDef("inputs", (
            JobSpec("needs", "T", {"path": InputRef("path")}),
            JobSpec("free", "T", {"msg": InputRef("msg", "hi")}),
            JobSpec("also", "T", {"other": InputRef("other")}),
            JobSpec("end", "T", {"a": JobRef("needs"), "b": JobRef("free")}),
        ))

    def test_start_raises_first_missing_and_dispatches_the_rest(self, chain, make_run, dispatcher):
        run = make_run(chain)
        with pytest.raises(MissingInputError) as exc:
            run.start({})

        assert exc.value.name == "path"
        assert exc.value.job_id == "needs"
        assert dispatcher.job_ids == ["free"]
        assert run.run_id is not None
        assert run.state("needs").state == JobState.NOT_DISPATCHED

    def test_all_inputs_present(self, chain, make_run, dispatcher):
        make_run(chain).start({"path": "/p", "other": 1})
        assert dispatcher.job_ids == ["needs", "free", "also"]


# =============================================================================
# Failure
# =============================================================================


class ExplodingDispatcher(Dispatcher):
    """Submission raises for selected jobs."""

    def __init__(self, failing):
        self.failing = set(failing)
        self.submitted = []

    def submit(self, manifest, run):
        if manifest.job_id in self.failing:
            raise ConnectionError("queue unavailable")
        self.submitted.append(manifest.job_id)


class TestFailure:
    """fail() reports per job and blocks dependents."""

    def test_fail_fires_error_and_blocks_dependents(self, chain1, make_run, dispatcher, notifier):
        run = make_run(chain1)
        run_id = run.start()
        run.complete("jobOne", "A")
        run.fail("jobTwo", "boom")

        assert notifier.events[-1] == ChainError(run_id, "jobTwo", "boom")
        assert "jobThree" not in dispatcher.job_ids
        assert not run.is_done()

    def test_every_fail_call_fires(self, chain1, make_run, notifier):
        run = make_run(chain1)
        run.start()
        run.fail("jobOne", "x")
        run.fail("jobOne", "y")
        assert len(notifier.of_type(ChainError)) == 2

    def test_exception_error_stored_as_payload(self, chain1, make_run):
        run = make_run(chain1)
        run.start()
        run.fail("jobOne", ExternalExecutionError("jobOne", ValueError("bad row")))
        assert run.state("jobOne").error == {"type": "ValueError", "message": "bad row"}

    def test_submit_exception_keeps_flag_and_reports(self, chain1, notifier):
        dispatcher = ExplodingDispatcher({"jobOne"})
        run = JobChain(chain1, InMemoryStateStore(), dispatcher, notifier)
        run.start()

        assert dispatcher.submitted == ["jobTwo"]
        [error] = notifier.of_type(ChainError)
        assert error.job_id == "jobOne"
        assert isinstance(error.error, ExternalExecutionError)
        assert run.state("jobOne").dispatched

        result = run.dispatch_ready()
        assert result.dispatched == []
        assert dispatcher.submitted == ["jobTwo"]

    def test_vanished_response_skips_only_that_job(self, make_run, dispatcher, monkeypatch):
        chain = ChainDef("vanish", (
            JobSpec("a", "T"),
            JobSpec("e", "T"),
            JobSpec("b", "T", {"x": JobRef("a")}),
            JobSpec("d", "T", {"x": JobRef("e")}),
            JobSpec("f", "T", {"b": JobRef("b"), "d": JobRef("d")}),
        ))
        run = make_run(chain)
        run.start()
        run.run_state.store_response("e", "E")
        # a's response expired between the readiness check and resolution
        monkeypatch.setattr(run.run_state, "has_response", lambda job_id: True)

        result = run.dispatch_ready()

        assert result.unresolved == ["b", "f"]
        assert result.dispatched == ["d"]
        assert dispatcher.params_for("d") == {"x": "E"}
        assert not run.run_state.was_dispatched("b")

    def test_events_logged_once_at_info(self, chain1, store, dispatcher, caplog):
        run = JobChain(chain1, store, dispatcher)
        run.start()
        with caplog.at_level(logging.INFO, logger="jobchain"):
            run.complete("jobOne", "A")
        loggers = [r.name for r in caplog.records if "chain.response" in r.getMessage()]
        assert loggers == ["jobchain.notifier"]

    def test_unknown_job(self, chain1, make_run):
        run = make_run(chain1)
        run.start()
        with pytest.raises(UnknownJobError, match="'ghost' is not declared"):
            run.complete("ghost", 1)
        with pytest.raises(KeyError):
            run.fail("ghost", "x")

    def test_done_entry_point(self, chain1, make_run, notifier):
        run = make_run(chain1)
        run.start()
        run.done("jobOne", error="boom")
        run.done("jobTwo", response="B")
        assert [type(e) for e in notifier.events] == [ChainError, ChainResponse]


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    """Concurrent completions rely on the store's compare-and-set."""

    def test_sink_dispatched_once_under_concurrent_completions(self):
        roots = tuple(JobSpec(f"r{i}", "T") for i in range(12))
        sink = JobSpec("sink", "T", {f"r{i}": JobRef(f"r{i}") for i in range(12)})
        after = JobSpec("after", "T", {"s": JobRef("sink")})
        chain = ChainDef("wide", roots + (sink, after))

        for _ in range(20):
            dispatcher = RecordingDispatcher()
            run = JobChain(chain, InMemoryStateStore(), dispatcher, RecordingNotifier())
            run.start()

            barrier = threading.Barrier(len(roots))

            def finish(job_id):
                barrier.wait()
                run.complete(job_id, job_id)

            threads = [threading.Thread(target=finish, args=(j.id,)) for j in roots]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert dispatcher.job_ids.count("sink") == 1

    def test_single_chain_done_under_concurrent_terminal_completions(self, chain1):
        notifier = RecordingNotifier()
        run = JobChain(chain1, InMemoryStateStore(), RecordingDispatcher(), notifier)
        run.start()
        barrier = threading.Barrier(8)

        def finish():
            barrier.wait()
            run.complete("jobThree", "C")

        threads = [threading.Thread(target=finish) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(notifier.of_type(ChainDone)) == 1


# =============================================================================
# Identity, channels, resume
# =============================================================================


class TestRunIdentity:
    """Run ids, keys and channels."""

    def test_caller_key_is_run_id(self, chain1, make_run):
        run = make_run(chain1)
        assert run.start(key="order-42") == "order-42"
        assert run.key("jobOne", "dispatched") == "job-chain.chain1.order-42.jobOne.dispatched"

    def test_chain_key_seeds_run_id(self, make_run):
        chain = ChainDef("c", (JobSpec("a", "T"),), key="orders")
        assert make_run(chain).start().startswith("orders-")

    def test_concurrent_runs_are_isolated(self, chain1, make_run, dispatcher):
        first = make_run(chain1)
        second = make_run(chain1)
        first.start()
        second.start()
        first.complete("jobOne", "A")
        assert second.response("jobOne") is None
        assert dispatcher.job_ids == ["jobOne", "jobTwo", "jobOne", "jobTwo"]

    def test_not_started(self, chain1, make_run):
        with pytest.raises(JobChainError, match="has not been started"):
            make_run(chain1).complete("jobOne", "A")

    def test_channels(self, make_run, notifier):
        chain = ChainDef(
            "c",
            (JobSpec("a", "T"),),
            channels=(ChannelDef("users.{user}"), ChannelDef("orders", "public")),
        )
        run = make_run(chain, user="alice")
        run_id = run.start()
        assert run.channels() == [
            Channel(f"job-chain.c.{run_id}"),
            Channel("users.alice"),
            Channel("orders", private=False),
        ]
        run.complete("a", 1)
        assert notifier.channels[-1] == tuple(run.channels())

    def test_channels_without_user(self, make_run):
        chain = ChainDef("c", (JobSpec("a", "T"),), channels=(ChannelDef("users.{user}"),))
        run = make_run(chain)
        run.start()
        assert run.channels()[1] == Channel("users.")

    def test_resume_from_another_instance(self, chain1, store, dispatcher, notifier):
        first = JobChain(chain1, store, dispatcher, notifier, user="bob")
        run_id = first.start({"message": "yo"})
        first.complete("jobOne", "A")

        worker = JobChain.resume(chain1, run_id, store, dispatcher, notifier)
        assert worker.inputs == {"message": "yo"}
        assert worker.user == "bob"
        worker.complete("jobTwo", "B")

        assert dispatcher.params_for("jobThree") == {"x": "A", "y": "B"}

    def test_resume_unknown_run(self, chain1, store):
        with pytest.raises(JobChainError, match="not found or expired"):
            JobChain.resume(chain1, "nope", store)


class TestExport:
    """to_dict / to_yaml / params."""

    def test_to_dict(self, chain1, make_run):
        run = make_run(chain1)
        run.start(key="r1")
        data = run.to_dict()
        assert data["run_id"] == "r1"
        assert data["done"] == "jobThree"
        assert data["jobs"]["jobThree"] == {
            "type": "JobThree",
            "params": {"x": {"$job": "jobOne"}, "y": {"$job": "jobTwo"}},
        }

    def test_to_yaml_writes_tags(self, chain1, make_run, tmp_path):
        path = tmp_path / "out.yml"
        make_run(chain1).to_yaml(path)
        text = path.read_text()
        assert "!param filePath /tmp/input.txt" in text
        assert "!job jobOne" in text

    def test_params(self, chain1, make_run):
        assert make_run(chain1).params() == ["filePath", "message"]
