# step_workflows/shell.py
from __future__ import annotations

from ..errors import StepUnresolvable
from ..steps import StepContext, StepResult, run_process

SHELLS = {
    "sh": ["sh", "-e", "-c"],
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
}


def shell_step(ctx: StepContext) -> StepResult:
    """Run the `run` script of a step through a POSIX shell."""
    script = ctx.option("run")
    if not script:
        raise StepUnresolvable("run step has no script", job=ctx.job, step=ctx.step)

    shell = ctx.option("shell", "sh")
    if shell not in SHELLS:
        raise StepUnresolvable(
            f"unsupported shell {shell!r}",
            job=ctx.job,
            step=ctx.step,
            supported=sorted(SHELLS),
        )

    cwd = ctx.workspace
    working_dir = ctx.option("working-directory")
    if working_dir:
        cwd = ctx.workspace / working_dir

    return run_process(ctx, [*SHELLS[shell], script], cwd=cwd)
