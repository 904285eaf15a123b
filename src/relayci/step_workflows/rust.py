# step_workflows/rust.py
from __future__ import annotations

import shlex
from typing import List

from ..errors import StepUnresolvable
from ..steps import StepContext, StepResult, run_process


def _split(value: str | None) -> List[str]:
    # Split args string into list, handling quoted strings
    return shlex.split(value) if value else []


def _listing(value: str | None) -> List[str]:
    if not value:
        return []
    return [v for v in value.replace(",", " ").split() if v]


# ---------------------------------------------------------------------
# Toolchain setup
# ---------------------------------------------------------------------

def toolchain_step(ctx: StepContext) -> StepResult:
    """
    Install a Rust toolchain with rustup and select it for the rest of the job.

    Exports RUSTUP_TOOLCHAIN so later steps (cargo, clippy) use it.
    """
    toolchain = ctx.option("toolchain", "stable")
    profile = ctx.option("profile", "minimal")

    cmd = ["rustup", "toolchain", "install", toolchain, "--profile", profile]
    for component in _listing(ctx.option("components")):
        cmd += ["--component", component]
    for target in _listing(ctx.option("target") or ctx.option("targets")):
        cmd += ["--target", target]

    result = run_process(ctx, cmd)
    if not result.ok:
        return result

    output = result.output
    if ctx.flag("default"):
        default = run_process(ctx, ["rustup", "default", toolchain])
        output += default.output
        if not default.ok:
            default.output = output
            return default
    if ctx.flag("override"):
        override = run_process(ctx, ["rustup", "override", "set", toolchain])
        output += override.output
        if not override.ok:
            override.output = output
            return override

    return StepResult.success(output=output, env={"RUSTUP_TOOLCHAIN": toolchain})


# ---------------------------------------------------------------------
# Cargo commands
# ---------------------------------------------------------------------

def _cargo_argv(ctx: StepContext, command: str) -> List[str]:
    cmd = ["cargo"]
    toolchain = ctx.option("toolchain")
    if toolchain:
        cmd.append(f"+{toolchain}")
    cmd.append(command)
    cmd.extend(_split(ctx.option("args")))
    return cmd


def cargo_step(ctx: StepContext) -> StepResult:
    """`cargo <command> <args>`, e.g. command=fmt args='--all -- --check'."""
    command = ctx.option("command")
    if not command:
        raise StepUnresolvable("cargo step requires a 'command' option", job=ctx.job, step=ctx.step)
    return run_process(ctx, _cargo_argv(ctx, command))


def clippy_check_step(ctx: StepContext) -> StepResult:
    """
    `cargo clippy <args>`.

    A `token` option is passed to the process as GITHUB_TOKEN only; it never
    appears on the command line.
    """
    extra_env = {}
    token = ctx.option("token")
    if token:
        extra_env["GITHUB_TOKEN"] = token
    return run_process(ctx, _cargo_argv(ctx, "clippy"), extra_env=extra_env)
