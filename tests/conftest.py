from __future__ import annotations

import threading
from typing import Dict, List, Tuple

import pytest

from relayci.config import EngineConfig
from relayci.dsl import job, on, uses, wf
from relayci.steps import StepContext, StepRegistry, StepResult
from relayci.ui.console import Console, set_console


class Recorder:
    """
    In-process step kinds for scheduling tests:

        ok       succeed
        fail     exit with `code` (default 1)
        export   succeed and export `key`=`value` to later steps
        capture  remember env[`key`] as seen by the step
        block    wait until released or cancelled
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.seen: Dict[Tuple[str, str], str | None] = {}
        self.configs: Dict[Tuple[str, str], dict] = {}
        self.release = threading.Event()
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()
        self._started = threading.Condition(self._lock)

    def _record(self, ctx: StepContext) -> None:
        with self._lock:
            self.calls.append((ctx.job, ctx.step))
            self.configs[(ctx.job, ctx.step)] = dict(ctx.config)

    def steps_of(self, job_name: str) -> List[str]:
        return [s for j, s in self.calls if j == job_name]

    def ok(self, ctx: StepContext) -> StepResult:
        self._record(ctx)
        return StepResult.success(output=f"{ctx.step} ok\n")

    def fail(self, ctx: StepContext) -> StepResult:
        self._record(ctx)
        return StepResult.failure(exit_code=int(ctx.option("code", "1")), output="boom\n")

    def export(self, ctx: StepContext) -> StepResult:
        self._record(ctx)
        return StepResult.success(env={ctx.option("key"): ctx.option("value")})

    def capture(self, ctx: StepContext) -> StepResult:
        self._record(ctx)
        self.seen[(ctx.job, ctx.step)] = ctx.env.get(ctx.option("key"))
        return StepResult.success(output=f"value={ctx.env.get(ctx.option('key'))}\n")

    def block(self, ctx: StepContext) -> StepResult:
        self._record(ctx)
        with self._started:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            self._started.notify_all()
        try:
            while not self.release.is_set():
                if ctx.cancel.wait(0.01):
                    return StepResult(exit_code=None, cancelled=True, reason="cancelled")
            return StepResult.success()
        finally:
            with self._lock:
                self.running -= 1

    def wait_running(self, n: int, timeout: float = 5.0) -> bool:
        with self._started:
            return self._started.wait_for(lambda: self.running >= n, timeout=timeout)

    def registry(self) -> StepRegistry:
        reg = StepRegistry()
        reg.register("ok", self.ok, aliases=["actions/checkout", "actions-rs/toolchain"])
        reg.register("fail", self.fail)
        reg.register("export", self.export)
        reg.register("capture", self.capture)
        reg.register("block", self.block)
        return reg


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(workspace=tmp_path / "work", kill_grace=1.0)


def _rust_workflow(check_kind: str = "ok", step_kind: str = "ok"):
    """The clippy/check/test workflow with in-process step kinds."""
    return wf(
        job(
            "clippy",
            uses("actions/checkout", "checkout"),
            uses(step_kind, "fmt-check"),
            uses(step_kind, "clippy-check"),
        ),
        job(
            "check",
            uses("actions/checkout", "checkout"),
            uses(check_kind, "check"),
        ),
        job(
            "test",
            uses("actions/checkout", "checkout"),
            uses(step_kind, "test"),
        ),
        name="Rumba",
        triggers=[on("push", "main"), on("pull_request", "main")],
    )


@pytest.fixture
def rust_workflow():
    return _rust_workflow
