import io
import threading

import pytest

from relayci.dag import build_job_instances
from relayci.dsl import job, uses, wf
from relayci.executor import JobExecutor
from relayci.model import Event, JobStatus, Run, StepStatus
from relayci.secrets import MappingSecretProvider
from relayci.slots import SlotPool
from relayci.steps import run_process
from relayci.ui.console import Console


def _setup(recorder, tmp_path, *jobs, secrets=None, env=None, registry=None, **kw):
    definition = wf(*jobs, env=env)
    run = Run(workflow=definition, event=Event("push", "main"))
    run.set_jobs(build_job_instances(definition))
    executor = JobExecutor(
        registry=registry or recorder.registry(),
        secrets=MappingSecretProvider(secrets),
        workspace_root=tmp_path / "work",
        inherit_env=False,
        **kw,
    )
    return run, executor


def _execute(executor, run, name):
    slot = SlotPool(1).try_acquire(name)
    outcome = executor.execute(run, run.job(name), slot)
    return outcome, slot


def test_steps_run_in_declared_order(recorder, tmp_path):
    run, executor = _setup(recorder, tmp_path, job("j", uses("ok", "a"), uses("ok", "b"), uses("ok", "c")))
    outcome, slot = _execute(executor, run, "j")

    assert outcome.status is JobStatus.SUCCEEDED
    assert recorder.steps_of("j") == ["a", "b", "c"]
    assert [s.status for s in run.job("j").steps] == [StepStatus.SUCCEEDED] * 3
    assert run.job("j").steps[0].output == "a ok\n"
    assert slot.released


def test_failing_step_stops_the_job(recorder, tmp_path):
    run, executor = _setup(
        recorder, tmp_path,
        job("j", uses("ok", "a"), uses("fail", "b", with_={"code": 3}), uses("ok", "c")),
    )
    outcome, slot = _execute(executor, run, "j")

    assert outcome.status is JobStatus.FAILED
    assert outcome.reason == "exit-code"
    steps = run.job("j").steps
    assert [s.status for s in steps] == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]
    assert steps[1].exit_code == 3
    assert recorder.steps_of("j") == ["a", "b"]
    assert slot.released


def test_continue_on_error_keeps_going(recorder, tmp_path):
    run, executor = _setup(
        recorder, tmp_path,
        job("j", uses("fail", "lint", continue_on_error=True), uses("ok", "after")),
    )
    outcome, _ = _execute(executor, run, "j")

    assert outcome.status is JobStatus.SUCCEEDED
    steps = run.job("j").steps
    assert steps[0].status is StepStatus.FAILED
    assert steps[1].status is StepStatus.SUCCEEDED


def test_exports_reach_later_steps_of_the_same_job_only(recorder, tmp_path):
    run, executor = _setup(
        recorder, tmp_path,
        job("one",
            uses("export", "set", with_={"key": "FOO", "value": "bar"}),
            uses("capture", "read", with_={"key": "FOO"})),
        job("two", uses("capture", "read", with_={"key": "FOO"})),
    )
    _execute(executor, run, "one")
    _execute(executor, run, "two")

    assert recorder.seen[("one", "read")] == "bar"
    assert recorder.seen[("two", "read")] is None


def test_environment_layers(recorder, tmp_path):
    run, executor = _setup(
        recorder, tmp_path,
        job("j",
            uses("capture", "a", with_={"key": "A"}),
            uses("capture", "b", with_={"key": "B"}),
            uses("capture", "c", with_={"key": "C"}, env={"C": "step"}),
            uses("capture", "job", with_={"key": "RELAYCI_JOB"}),
            uses("capture", "ci", with_={"key": "CI"}),
            env={"B": "job", "C": "job"}),
        env={"A": "wf", "B": "wf"},
    )
    _execute(executor, run, "j")

    seen = {step: value for (_, step), value in recorder.seen.items()}
    assert seen == {"a": "wf", "b": "job", "c": "step", "job": "j", "ci": "true"}


def test_unknown_step_kind_fails_the_job(recorder, tmp_path):
    run, executor = _setup(recorder, tmp_path, job("j", uses("nope", "x"), uses("ok", "y")))
    outcome, _ = _execute(executor, run, "j")

    assert outcome.status is JobStatus.FAILED
    assert outcome.reason == "step-unresolvable"
    assert [s.status for s in run.job("j").steps] == [StepStatus.FAILED, StepStatus.SKIPPED]


def test_secrets_are_rendered_for_the_step_and_masked_in_output(recorder, tmp_path):
    step = uses(
        "capture", "token",
        with_={"key": "TOKEN", "token": "${{ secrets.API_TOKEN }}"},
        env={"TOKEN": "${{ secrets.API_TOKEN }}"},
    )
    run, executor = _setup(recorder, tmp_path, job("j", step), secrets={"API_TOKEN": "s3cret"})
    outcome, _ = _execute(executor, run, "j")

    assert outcome.status is JobStatus.SUCCEEDED
    assert recorder.seen[("j", "token")] == "s3cret"
    assert recorder.configs[("j", "token")]["token"] == "s3cret"
    instance = run.job("j").steps[0]
    assert instance.config["token"] == "${{ secrets.API_TOKEN }}"
    assert instance.output == "value=***\n"


@pytest.mark.parametrize("level", ["job", "workflow"])
def test_secrets_in_job_and_workflow_env_are_masked(recorder, tmp_path, level):
    env = {"TOKEN": "${{ secrets.API_TOKEN }}"}
    step = uses("capture", "token", with_={"key": "TOKEN"})
    if level == "job":
        run, executor = _setup(recorder, tmp_path, job("j", step, env=env), secrets={"API_TOKEN": "s3cret"})
    else:
        run, executor = _setup(recorder, tmp_path, job("j", step), env=env, secrets={"API_TOKEN": "s3cret"})
    outcome, _ = _execute(executor, run, "j")

    assert outcome.status is JobStatus.SUCCEEDED
    assert recorder.seen[("j", "token")] == "s3cret"
    out = run.job("j").steps[0].output
    assert "s3cret" not in out
    assert out == "value=***\n"


def test_missing_tool_hint_reaches_the_console(recorder, tmp_path):
    registry = recorder.registry()

    @registry.register("missing-tool")
    def _missing(ctx):
        return run_process(ctx, ["relayci-no-such-tool", "--version"])

    stream = io.StringIO()
    run, executor = _setup(
        recorder, tmp_path, job("j", uses("missing-tool", "x")),
        registry=registry, console=Console(stream=stream),
    )
    outcome, _ = _execute(executor, run, "j")

    assert outcome.status is JobStatus.FAILED
    assert outcome.reason == "step-unresolvable"
    assert "Hint: Install relayci-no-such-tool or fix PATH." in stream.getvalue()


def test_missing_secret_fails_the_step(recorder, tmp_path):
    step = uses("ok", "needs-secret", with_={"token": "${{ secrets.MISSING }}"})
    run, executor = _setup(recorder, tmp_path, job("j", step))
    outcome, _ = _execute(executor, run, "j")

    assert outcome.status is JobStatus.FAILED
    assert outcome.reason == "secret-unavailable"
    assert recorder.calls == []


def test_runner_exception_is_a_step_error(recorder, tmp_path):
    registry = recorder.registry()

    @registry.register("explode")
    def _explode(ctx):
        raise RuntimeError("kaboom")

    run, executor = _setup(recorder, tmp_path, job("j", uses("explode", "x")), registry=registry)
    outcome, slot = _execute(executor, run, "j")

    assert outcome.status is JobStatus.FAILED
    assert outcome.reason == "step-error"
    assert "kaboom" in run.job("j").steps[0].output
    assert slot.released


def test_slot_released_when_execution_crashes(recorder, tmp_path, monkeypatch):
    run, executor = _setup(recorder, tmp_path, job("j", uses("ok", "a")))

    def _boom(*args):
        raise RuntimeError("crash")

    monkeypatch.setattr(executor, "_execute", _boom)
    slot = SlotPool(1).try_acquire("j")
    with pytest.raises(RuntimeError):
        executor.execute(run, run.job("j"), slot)
    assert slot.released


def test_cancel_before_start_runs_nothing(recorder, tmp_path):
    run, executor = _setup(recorder, tmp_path, job("j", uses("ok", "a"), uses("ok", "b")))
    run.cancel_event.set()
    outcome, _ = _execute(executor, run, "j")

    assert outcome.status is JobStatus.CANCELLED
    assert recorder.calls == []
    assert all(s.status is StepStatus.SKIPPED for s in run.job("j").steps)


def test_cancel_interrupts_the_running_step(recorder, tmp_path):
    run, executor = _setup(recorder, tmp_path, job("j", uses("block", "wait"), uses("ok", "after")))
    result = {}

    def _target():
        result["outcome"], _ = _execute(executor, run, "j")

    worker = threading.Thread(target=_target)
    worker.start()
    assert recorder.wait_running(1)
    run.cancel_event.set()
    worker.join(5)

    assert result["outcome"].status is JobStatus.CANCELLED
    steps = run.job("j").steps
    assert steps[0].status is StepStatus.CANCELLED
    assert steps[1].status is StepStatus.SKIPPED


def test_workspaces_are_per_run_and_job(recorder, tmp_path):
    run, executor = _setup(recorder, tmp_path, job("a b", uses("ok")), job("c", uses("ok")))
    first = executor.workspace_for(run, run.job("a b"))
    second = executor.workspace_for(run, run.job("c"))
    assert first != second
    assert first.name == "a_b"
    assert run.id in first.parts

    executor.isolate = False
    assert executor.workspace_for(run, run.job("c")) == (tmp_path / "work").resolve()


def test_output_is_truncated_to_tail(recorder, tmp_path):
    run, executor = _setup(recorder, tmp_path, job("j", uses("ok", "step")), output_tail=3)
    _execute(executor, run, "j")
    assert run.job("j").steps[0].output == "ok\n"
