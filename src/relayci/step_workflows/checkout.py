# step_workflows/checkout.py
from __future__ import annotations

import shutil
from pathlib import Path

from ..errors import StepUnresolvable
from ..steps import StepContext, StepResult, run_process

SOURCE_IGNORE = shutil.ignore_patterns(".relayci", "target", "__pycache__", "node_modules")


def _copy_source(ctx: StepContext, source: Path, target: Path) -> StepResult:
    source = source.expanduser().resolve()
    if not source.is_dir():
        raise StepUnresolvable(f"checkout source not found: {source}", job=ctx.job, step=ctx.step)
    if source == target.resolve():
        return StepResult.success(output=f"using existing workspace {target}\n")
    shutil.copytree(source, target, ignore=SOURCE_IGNORE, dirs_exist_ok=True, symlinks=True)
    return StepResult.success(output=f"copied {source} -> {target}\n")


def checkout_step(ctx: StepContext) -> StepResult:
    """
    Populate the job workspace with the repository at the event's ref.

    Config:
        repository: clone URL (defaults to event metadata `repository`)
        ref:        ref or sha to check out (defaults to metadata `sha`, then event ref)
        path:       sub-directory of the workspace to check out into

    Without a repository URL, a local `source` directory from the event
    metadata is copied in (local runs); with neither, the workspace is used
    as-is.
    """
    target = ctx.workspace / (ctx.option("path") or ".")
    target.mkdir(parents=True, exist_ok=True)

    repo_url = ctx.option("repository") or ctx.event.metadata.get("repository")
    if not repo_url:
        source = ctx.event.metadata.get("source")
        if source:
            return _copy_source(ctx, Path(str(source)), target)
        return StepResult.success(output=f"using existing workspace {ctx.workspace}\n")

    ref = ctx.option("ref") or ctx.event.metadata.get("sha") or ctx.event.ref or "HEAD"

    outputs = []
    if (target / ".git").exists():
        commands = [["git", "fetch", "--tags", "origin"]]
    else:
        commands = [["git", "clone", "--no-checkout", str(repo_url), "."]]
    commands.append(["git", "checkout", "--force", str(ref)])

    for cmd in commands:
        result = run_process(ctx, cmd, cwd=target)
        outputs.append(result.output)
        if not result.ok:
            result.output = "".join(outputs)
            return result

    return StepResult.success(output="".join(outputs))
