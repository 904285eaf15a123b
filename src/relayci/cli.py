# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

import click

from relayci.config import EngineConfig, load_config
from relayci.controller import RunController
from relayci.dag import validate_graph
from relayci.errors import DefinitionError
from relayci.git_facts.git import changed_since, current_ref, head_sha, remote_url, repo_root
from relayci.loader import load_workflow
from relayci.model import Event, RunStatus
from relayci.report import run_report
from relayci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2
EXIT_REJECTED = 3
EXIT_CANCELLED = 130

DEFAULT_WORKFLOW_FILES = ("relayci_workflow.py", "relayci.yml", "relayci.yaml")


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    found: list[Path] = []
    for name in DEFAULT_WORKFLOW_FILES:
        candidate = root / name
        if candidate.exists():
            found.append(candidate)

    for path in root.glob("*_workflow.py"):
        if path not in found:
            found.append(path)

    gh = root / ".github" / "workflows"
    if gh.is_dir():
        found.extend(sorted(gh.glob("*.yml")) + sorted(gh.glob("*.yaml")))

    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default locations.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow ci.yml",
            )
            sys.exit(EXIT_DEFINITION)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                *(f"  {n}" for n in DEFAULT_WORKFLOW_FILES),
                "  *_workflow.py",
                "  .github/workflows/*.yml",
            ],
            suggestion="Specify a workflow explicitly:\n  relayci run --workflow ci.yml",
        )
        sys.exit(EXIT_DEFINITION)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  relayci run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_DEFINITION)

    return workflow_files[0]


def _load_or_exit(ctx, workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except DefinitionError as e:
        console.print_error(
            "Invalid workflow",
            f"{workflow_path}: {e.message}",
            details=[f"kind: {e.kind}"] + [f"{k}: {v}" for k, v in e.details.items()],
        )
        sys.exit(EXIT_DEFINITION)
    except Exception as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_DEFINITION)


def _parse_meta(pairs: tuple[str, ...]) -> dict[str, str]:
    meta: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--meta")
        key, value = pair.split("=", 1)
        meta[key] = value
    return meta


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, step output and debug logs)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: declarative CI workflow runner."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.json/.py)")
@click.option("--event", "event_kind", default="push", show_default=True, help="Triggering event kind")
@click.option("--ref", default=None, help="Git ref/branch (defaults to the current branch)")
@click.option("--meta", multiple=True, help="Extra event metadata as KEY=VALUE (repeatable)")
@click.option("--config", "config_path", default=None, help="Engine config file (defaults to relayci.yaml)")
@click.option("--workers", "max_parallel", default=None, type=int, help="Max jobs running in parallel")
@click.option("--slots", default=None, type=int, help="Number of execution slots (runners)")
@click.option("--slot-timeout", default=None, type=float, help="Seconds a ready job may wait for a slot")
@click.option("--workspace", default=None, help="Directory for per-job workspaces")
@click.option("--in-place", is_flag=True, default=False, help="Run every job directly in the repository")
@click.option("--git-diff/--no-git-diff", default=False, help="Skip jobs whose paths filter matches no changed file")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--json-report", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.pass_context
def run(ctx, workflow, event_kind, ref, meta, config_path, max_parallel, slots, slot_timeout, workspace,
        in_place, git_diff, compare_ref, json_report):
    """Run a workflow locally against a synthetic event."""
    console = get_console()
    workflow_path, definition = _load_or_exit(ctx, workflow)

    try:
        config = load_config(config_path)
    except Exception as e:
        console.print_error("Invalid engine config", str(e))
        sys.exit(EXIT_DEFINITION)

    overrides = {
        "max_parallel_jobs": max_parallel,
        "slots": slots,
        "slot_timeout": slot_timeout,
        "workspace": workspace,
    }
    data = config.model_dump()
    data.update({k: v for k, v in overrides.items() if v is not None})
    if in_place:
        data["isolate_jobs"] = False
        data["workspace"] = workspace or "."
    config = EngineConfig(**data)

    metadata: dict = {}
    try:
        root = repo_root()
        metadata["source"] = str(root)
        if ref is None:
            ref = current_ref(root)
        metadata["sha"] = head_sha(root)
        try:
            metadata["remote"] = remote_url("origin", root)
        except subprocess.CalledProcessError:
            pass
        if git_diff:
            metadata["changed_files"] = changed_since(compare_ref, cwd=root)
    except (subprocess.CalledProcessError, FileNotFoundError):
        metadata["source"] = str(Path(".").resolve())
        console.print_debug("not inside a git repository; using the current directory as source")
    metadata.update(_parse_meta(meta))

    event = Event(kind=event_kind, ref=ref, metadata=metadata)

    try:
        controller = RunController(definition, config=config, console=console)
        active = controller.start(event)
        if active is None:
            sys.exit(EXIT_REJECTED)
        try:
            while True:
                finished = controller.wait(active.id, timeout=0.5)
                if finished.status.terminal or not controller.is_active(active.id):
                    break
        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user, cancelling run...")
            controller.cancel(active.id)
            finished = controller.wait(active.id)
    except DefinitionError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_DEFINITION)

    console.print_results(finished.status.value, {j.name: j.status.value for j in finished.jobs})

    if json_report:
        Path(json_report).write_text(run_report(finished).model_dump_json(indent=2), encoding="utf-8")
        console.print_info(f"Report written to {json_report}")

    if finished.status is RunStatus.SUCCEEDED:
        sys.exit(EXIT_OK)
    if finished.status is RunStatus.CANCELLED:
        sys.exit(EXIT_CANCELLED)
    sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.json/.py)")
@click.pass_context
def validate(ctx, workflow):
    """Validate a workflow definition (triggers, dependencies, cycles)."""
    workflow_path, definition = _load_or_exit(ctx, workflow)
    get_console().print_info(f"OK: {workflow_path} ({definition.name}, {len(definition.jobs)} job(s))")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.json/.py)")
@click.pass_context
def plan(ctx, workflow):
    """Print triggers and the execution stages of a workflow."""
    console = get_console()
    _path, definition = _load_or_exit(ctx, workflow)

    console.print_header(f"Workflow: {definition.name}")
    for t in definition.triggers:
        branches = ", ".join(t.branches) if t.branches else "any ref"
        console.print_info(f"on {t.event}: {branches}")
    console.print_header("Stages")
    console.print_plan(validate_graph(definition))


@cli.command()
@click.option("--workflow", default=None, help="Workflow file served by the webhook endpoint")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx, workflow, host, port):
    """Serve the webhook endpoint that starts runs on incoming events."""
    import uvicorn

    from relayci.service.main import create_app

    workflow_path, definition = _load_or_exit(ctx, workflow)
    get_console().print_info(f"Serving {definition.name} ({workflow_path}) on http://{host}:{port}")
    uvicorn.run(create_app(workflow=definition), host=host, port=port)


if __name__ == "__main__":
    cli()
