# tests/test_scheduler.py
"""
Scheduling behaviour against the scripted provider: parallel and sequential
stages, failure propagation, scoped runs, abort and sandbox cleanup.
"""
from __future__ import annotations

import signal
import threading
import time

import pytest

from forge import pipeline, stage, step
from forge.errors import INTERNAL_ERROR, IMAGE_NOT_FOUND, RUNTIME_CRASHED, ProviderError, StepExitError
from forge.events import EventKind
from forge.results import NodeState, PipelineStatus, StepOutcome

from conftest import FakeSandboxProvider


def _assert_disposed_once(provider: FakeSandboxProvider) -> None:
    prepared = len(provider.calls_of("prepare")) - len(
        [c for c in provider.calls_of("prepare") if c[1] in provider.missing_images]
    )
    disposed = [c[1] for c in provider.calls_of("dispose")]
    assert len(disposed) == prepared
    assert len(set(disposed)) == len(disposed)


def test_parallel_stage_runs_steps_concurrently(run_config):
    barrier = threading.Barrier(3, timeout=5)

    def meet(sb):
        # only returns once all three steps are inside their sandboxes
        barrier.wait()
        return 0

    provider = FakeSandboxProvider({"a": meet, "b": meet, "c": meet})
    config = pipeline(stage("test", step("A", "a"), step("B", "b"), step("C", "c"), parallel=True))

    result = run_config(config, provider=provider)

    assert result.status is PipelineStatus.SUCCEEDED
    assert [s.step for s in result.stage("test").steps] == ["A", "B", "C"]
    # every start precedes every end
    starts = [provider.index("start", c) for c in "abc"]
    ends = [provider.index("end", c) for c in "abc"]
    assert max(starts) < min(ends)


def test_sequential_stage_runs_in_declaration_order(run_config, provider):
    config = pipeline(stage("build", step("X", "echo x"), step("Y", "echo y"), step("Z", "echo z")))

    result = run_config(config)

    assert result.succeeded
    assert provider.started() == ["echo x", "echo y", "echo z"]
    assert provider.index("start", "echo y") > provider.index("end", "echo x")
    assert provider.index("start", "echo z") > provider.index("end", "echo y")


def test_failed_stage_skips_dependents_only(run_config, provider):
    config = pipeline(
        stage("lint", step("lint", "echo lint")),
        stage("test", step("unit", "exit 1")),
        stage("build2", step("pack", "echo pack"), depends_on=["test"]),
    )

    result = run_config(config)

    assert result.status is PipelineStatus.FAILED
    assert result.exit_code == 1
    assert result.stage("lint").status is NodeState.SUCCEEDED
    assert result.stage("test").status is NodeState.FAILED
    assert result.stage("build2").status is NodeState.SKIPPED
    assert result.stage("build2").step("pack").outcome is StepOutcome.SKIPPED
    assert "echo pack" not in provider.started()
    assert result.skipped_nodes() == ["build2"]


def test_non_zero_exit_is_a_result(run_config):
    config = pipeline(stage("test", step("unit", "exit 3")))

    result = run_config(config)

    unit = result.stage("test").step("unit")
    assert unit.outcome is StepOutcome.NON_ZERO_EXIT
    assert unit.exit_code == 3
    assert isinstance(unit.error, StepExitError)
    assert result.error is unit.error
    assert result.failed_steps() == [unit]


def test_failed_step_skips_later_steps_of_sequential_stage(run_config, provider):
    config = pipeline(stage("build", step("one", "exit 1"), step("two", "echo two")))

    result = run_config(config)

    build = result.stage("build")
    assert build.status is NodeState.FAILED
    assert build.step("two").status is NodeState.SKIPPED
    assert "echo two" not in provider.started()


def test_running_siblings_finish_after_a_failure(run_config):
    failed = threading.Event()

    def fail(sb):
        failed.set()
        return 1

    def slow(sb):
        assert failed.wait(5)
        time.sleep(0.05)
        sb.write("done\n")
        return 0

    provider = FakeSandboxProvider({"fail": fail, "slow": slow})
    config = pipeline(
        stage(
            "test",
            step("bad", "fail"),
            step("good", "slow"),
            step("after", "echo after", depends_on=["bad"]),
            parallel=True,
        ),
        stage("deploy", step("ship", "echo ship"), depends_on=["test"]),
    )

    result = run_config(config, provider=provider)

    test = result.stage("test")
    assert test.status is NodeState.FAILED
    assert test.step("bad").status is NodeState.FAILED
    assert test.step("good").status is NodeState.SUCCEEDED
    assert test.step("after").status is NodeState.SKIPPED
    assert result.stage("deploy").status is NodeState.SKIPPED
    _assert_disposed_once(provider)


def test_independent_stages_overlap(run_config):
    barrier = threading.Barrier(2, timeout=5)

    def meet(sb):
        barrier.wait()
        return 0

    provider = FakeSandboxProvider({"a": meet, "b": meet})
    config = pipeline(stage("one", step("a", "a")), stage("two", step("b", "b")))

    assert run_config(config, provider=provider).succeeded


def test_sequential_stages_do_not_overlap(run_config, provider):
    config = pipeline(stage("one", step("a", "echo a")), stage("two", step("b", "echo b")))

    result = run_config(config, concurrent_stages=False)

    assert result.succeeded
    assert provider.index("start", "echo b") > provider.index("end", "echo a")


def test_scoped_run_excludes_unrelated_stages(run_config, provider):
    config = pipeline(
        stage("setup", step("deps", "echo deps")),
        stage("build", step("compile", "echo compile"), depends_on=["setup"]),
        stage("deploy", step("ship", "echo ship")),
    )

    result = run_config(config, stage="build")

    assert result.succeeded
    assert [s.stage for s in result.stages] == ["setup", "build"]
    assert provider.started() == ["echo deps", "echo compile"]


def test_scoped_run_unknown_stage_is_invalid(run_config, provider):
    config = pipeline(stage("setup", step("deps", "true")))
    result = run_config(config, stage="nope")
    assert result.status is PipelineStatus.INVALID
    assert provider.calls == []


def test_every_prepared_sandbox_is_disposed_once(run_config, provider):
    config = pipeline(
        stage("a", step("one", "echo 1"), step("two", "exit 2"), parallel=True),
        stage("b", step("three", "echo 3")),
    )
    run_config(config)
    _assert_disposed_once(provider)
    assert len(provider.calls_of("dispose")) == 3


def test_missing_image_is_an_execution_error(run_config):
    provider = FakeSandboxProvider(missing_images={"ghost:1"})
    config = pipeline(stage("build", step("pull", "true", image="ghost:1")))

    result = run_config(config, provider=provider)

    pull = result.stage("build").step("pull")
    assert pull.outcome is StepOutcome.EXECUTION_ERROR
    assert isinstance(pull.error, ProviderError)
    assert pull.error.kind == IMAGE_NOT_FOUND
    assert pull.exit_code is None
    assert provider.calls_of("run") == []
    assert provider.calls_of("dispose") == []


def test_runtime_crash_still_disposes(run_config):
    class CrashingProvider(FakeSandboxProvider):
        def wait(self, handle):
            super().wait(handle)
            raise ProviderError(kind=RUNTIME_CRASHED, message="runtime went away")

    provider = CrashingProvider()
    result = run_config(pipeline(stage("build", step("x", "echo x"))), provider=provider)

    x = result.stage("build").step("x")
    assert x.outcome is StepOutcome.EXECUTION_ERROR
    assert x.error.kind == RUNTIME_CRASHED
    assert x.log is not None and x.log.read_text() == "x\n"
    assert len(provider.calls_of("dispose")) == 1


def test_unexpected_provider_exception_fails_only_that_step(run_config):
    def boom(sb):
        raise RuntimeError("provider bug")

    provider = FakeSandboxProvider({"boom": boom})
    config = pipeline(
        stage("a", step("bad", "boom")),
        stage("b", step("fine", "echo fine")),
    )

    result = run_config(config, provider=provider)

    bad = result.stage("a").step("bad")
    assert bad.outcome is StepOutcome.EXECUTION_ERROR
    assert bad.error.kind == INTERNAL_ERROR
    assert result.stage("b").status is NodeState.SUCCEEDED
    assert len(provider.calls_of("dispose")) == 2


def test_abort_skips_everything_not_started(make_scheduler, provider):
    config = pipeline(
        stage("build", step("first", "first"), step("second", "echo second")),
        stage("deploy", step("ship", "echo ship"), depends_on=["build"]),
        stage("docs", step("site", "echo site"), depends_on=["build"]),
    )
    scheduler = make_scheduler(config)

    def first(sb):
        scheduler.abort()
        return 0

    provider.behaviors["first"] = first

    result = scheduler.run()

    assert scheduler.aborted
    assert result.aborted
    assert result.exit_code == 130
    assert result.status is PipelineStatus.FAILED
    build = result.stage("build")
    assert build.step("first").status is NodeState.SUCCEEDED
    assert build.step("second").status is NodeState.SKIPPED
    assert build.status is NodeState.SKIPPED
    assert result.stage("deploy").status is NodeState.SKIPPED
    assert result.stage("docs").status is NodeState.SKIPPED
    assert provider.started() == ["first"]
    _assert_disposed_once(provider)


@pytest.mark.skipif(not hasattr(signal, "setitimer"), reason="needs POSIX interval timers")
def test_abort_from_signal_handler_while_coordinator_waits(make_scheduler, provider):
    config = pipeline(
        stage("build", step("hold", "hold"), step("next", "echo next")),
        stage("deploy", step("ship", "echo ship"), depends_on=["build"]),
    )
    scheduler = make_scheduler(config)

    def hold(sb):
        # keeps the coordinator blocked on its inbox until the signal lands
        deadline = time.monotonic() + 5
        while not scheduler.aborted and time.monotonic() < deadline:
            time.sleep(0.01)
        return 0

    provider.behaviors["hold"] = hold

    previous = signal.signal(signal.SIGALRM, lambda signum, frame: scheduler.abort())
    signal.setitimer(signal.ITIMER_REAL, 0.1)
    try:
        result = scheduler.run()
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, previous)

    assert result.aborted
    assert result.stage("build").step("hold").status is NodeState.SUCCEEDED
    assert result.stage("build").step("next").status is NodeState.SKIPPED
    assert result.stage("deploy").status is NodeState.SKIPPED
    assert provider.started() == ["hold"]


def test_abort_from_the_event_callback(make_scheduler, provider):
    config = pipeline(stage("build", step("one", "echo one"), step("two", "echo two")))
    scheduler = None

    def on_event(event):
        # runs on the coordinator thread, between two inbox reads
        if event.kind is EventKind.NODE_FINISHED and event.node == "build/one":
            scheduler.abort()

    scheduler = make_scheduler(config, on_event=on_event)
    result = scheduler.run()

    assert result.aborted
    assert result.stage("build").step("two").status is NodeState.SKIPPED
    assert provider.started() == ["echo one"]


def test_events_follow_node_lifecycle(run_config):
    events = []
    config = pipeline(
        stage("build", step("compile", "echo hi")),
        stage("test", step("unit", "exit 1"), depends_on=["build"]),
        stage("deploy", step("ship", "true"), depends_on=["test"]),
    )

    run_config(config, on_event=events.append)

    kinds = [(e.kind, e.node) for e in events if e.kind is not EventKind.STEP_OUTPUT]
    assert kinds[:4] == [
        (EventKind.NODE_STARTED, "build"),
        (EventKind.NODE_STARTED, "build/compile"),
        (EventKind.NODE_FINISHED, "build/compile"),
        (EventKind.NODE_FINISHED, "build"),
    ]
    assert (EventKind.NODE_SKIPPED, "deploy") in kinds
    output = [e.data for e in events if e.kind is EventKind.STEP_OUTPUT]
    assert output == [b"hi\n"]
    finished = {e.node: e.status for e in events if e.kind is EventKind.NODE_FINISHED}
    assert finished["test/unit"] is NodeState.FAILED
    assert finished["test"] is NodeState.FAILED


def test_step_log_holds_output(run_config):
    config = pipeline(stage("build", step("compile", "echo compiled")))

    result = run_config(config)

    log = result.stage("build").step("compile").log
    assert log is not None
    assert log.read_text() == "compiled\n"
    assert result.run_id in log.path


def test_results_follow_declaration_order_not_completion_order(run_config):
    provider = FakeSandboxProvider()

    def late(sb):
        # only finish once the other sandbox has been waited on
        assert provider.wait_for("end", "early")
        return 0

    provider.behaviors["late"] = late
    config = pipeline(stage("s", step("first", "late"), step("second", "early"), parallel=True))

    result = run_config(config, provider=provider)

    assert [s.step for s in result.stage("s").steps] == ["first", "second"]
    assert provider.index("end", "early") < provider.index("end", "late")
