# steps.py
"""
Step kinds and the process-running primitive they share.

A step kind is an opaque executable reference (`run`, `checkout`,
`actions-rs/cargo`, ...). The registry maps kinds to runner callables; a
runner receives a StepContext and returns a StepResult. Runners may export
environment variables for later steps of the same job through
`StepResult.env`; shell commands do it by appending `KEY=VALUE` lines to the
file named by $RELAYCI_ENV (and directories to $RELAYCI_PATH).
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import TOOL_HINTS, StepUnresolvable
from .model import Event, Scalar

log = logging.getLogger(__name__)

ENV_FILE_VAR = "RELAYCI_ENV"
PATH_FILE_VAR = "RELAYCI_PATH"

EXIT_CODE = "exit-code"
STEP_TIMEOUT = "step-timeout"
CANCELLED = "cancelled"

_POLL_SECONDS = 0.1


@dataclass
class StepContext:
    job: str
    step: str
    config: Dict[str, Scalar]
    env: Dict[str, str]
    workspace: Path
    event: Event
    cancel: threading.Event = field(default_factory=threading.Event)
    timeout: Optional[float] = None
    kill_grace: float = 5.0

    def option(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.config.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def flag(self, key: str, default: bool = False) -> bool:
        value = self.config.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class StepResult:
    exit_code: Optional[int]
    output: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None
    cancelled: bool = False
    hint: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled and self.reason is None

    @classmethod
    def success(cls, output: str = "", env: Optional[Dict[str, str]] = None) -> StepResult:
        return cls(exit_code=0, output=output, env=dict(env or {}))

    @classmethod
    def failure(cls, exit_code: int = 1, output: str = "", reason: str = EXIT_CODE) -> StepResult:
        return cls(exit_code=exit_code, output=output, reason=reason)


StepRunner = Callable[[StepContext], StepResult]


def normalize_kind(kind: str) -> str:
    """`actions-rs/cargo@v1` -> `actions-rs/cargo`"""
    return kind.split("@", 1)[0].strip()


class StepRegistry:
    def __init__(self) -> None:
        self._runners: Dict[str, StepRunner] = {}

    def register(self, kind: str, runner: Optional[StepRunner] = None, *, aliases: Iterable[str] = ()):
        """Register a runner; usable directly or as a decorator."""
        def _add(fn: StepRunner) -> StepRunner:
            for name in (kind, *aliases):
                self._runners[normalize_kind(name)] = fn
            return fn

        if runner is not None:
            return _add(runner)
        return _add

    def resolve(self, kind: str) -> StepRunner:
        try:
            return self._runners[normalize_kind(kind)]
        except KeyError:
            raise StepUnresolvable(
                f"no runner registered for step kind {kind!r}",
                kind=kind,
                known=sorted(self._runners),
            ) from None

    def __contains__(self, kind: str) -> bool:
        return normalize_kind(kind) in self._runners

    def kinds(self) -> List[str]:
        return sorted(self._runners)


def default_registry() -> StepRegistry:
    from .step_workflows import register_builtin_steps

    registry = StepRegistry()
    register_builtin_steps(registry)
    return registry


# ----------------------------------------------------------------------
# Process primitive
# ----------------------------------------------------------------------

def _read_env_file(path: Path) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not path.exists():
        return out
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        out[key.strip()] = value
    return out


def _read_path_file(path: Path) -> List[str]:
    if not path.exists():
        return []
    return [ln.strip() for ln in path.read_text(encoding="utf-8").splitlines() if ln.strip()]


def _terminate(proc: subprocess.Popen, grace: float) -> None:
    """SIGTERM the step's process group, then SIGKILL after `grace` seconds."""
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        proc.wait()


def _tail(text: str, limit: int = 4000) -> str:
    return text[-limit:] if len(text) > limit else text


def run_process(
    ctx: StepContext,
    cmd: str | Sequence[str],
    *,
    shell: bool = False,
    extra_env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> StepResult:
    """
    Run one external command for a step.

    Blocks until the process exits, the step timeout expires, or the job's
    cancel flag is set. Output (stdout+stderr) is captured; exported env and
    path additions are collected from $RELAYCI_ENV / $RELAYCI_PATH.
    """
    workdir = (cwd or ctx.workspace).resolve()
    if not workdir.exists():
        raise StepUnresolvable(f"working directory not found: {workdir}", job=ctx.job, step=ctx.step)

    with tempfile.TemporaryDirectory(prefix="relayci-step-") as tmp:
        tmp_dir = Path(tmp)
        env_file = tmp_dir / "env"
        path_file = tmp_dir / "path"
        out_file = tmp_dir / "output"
        env_file.touch()
        path_file.touch()

        env = dict(ctx.env)
        env.update(extra_env or {})
        env[ENV_FILE_VAR] = str(env_file)
        env[PATH_FILE_VAR] = str(path_file)

        display = cmd if isinstance(cmd, str) else " ".join(cmd)
        log.debug("[%s] %s: exec %s (cwd=%s)", ctx.job, ctx.step, display, workdir)

        with out_file.open("w+", encoding="utf-8", errors="replace") as out:
            try:
                proc = subprocess.Popen(
                    cmd,
                    shell=shell,
                    cwd=str(workdir),
                    env=env,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    start_new_session=(os.name == "posix"),
                )
            except FileNotFoundError:
                tool = cmd if isinstance(cmd, str) else cmd[0]
                raise StepUnresolvable(
                    f"{tool} is not available",
                    job=ctx.job,
                    step=ctx.step,
                    tool=tool,
                    hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
                ) from None

            deadline = time.monotonic() + ctx.timeout if ctx.timeout else None
            reason: Optional[str] = None
            cancelled = False
            while True:
                try:
                    proc.wait(timeout=_POLL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if ctx.cancel.is_set():
                    cancelled = True
                    reason = CANCELLED
                    _terminate(proc, ctx.kill_grace)
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    reason = STEP_TIMEOUT
                    _terminate(proc, ctx.kill_grace)
                    break

            out.flush()
            out.seek(0)
            output = out.read()

        exports = _read_env_file(env_file)
        paths = _read_path_file(path_file)
        if paths:
            base = exports.get("PATH", ctx.env.get("PATH", os.environ.get("PATH", "")))
            exports["PATH"] = os.pathsep.join([*paths, base]) if base else os.pathsep.join(paths)

    code = proc.returncode
    if reason is None and code != 0:
        reason = EXIT_CODE
    return StepResult(
        exit_code=code,
        output=_tail(output),
        env=exports if code == 0 and reason is None else {},
        reason=reason,
        cancelled=cancelled,
    )
