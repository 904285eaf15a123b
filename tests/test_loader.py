import json
import textwrap
from pathlib import Path

import pytest

from relayci.errors import DefinitionError
from relayci.loader import definition_from_mapping, load_workflow
from relayci.model import TriggerFilter

EXAMPLE = Path(__file__).resolve().parents[1] / "examples" / "rust.yml"


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def test_loads_the_rust_workflow():
    definition = load_workflow(EXAMPLE)
    assert definition.name == "Rumba"
    assert [j.name for j in definition.jobs] == ["cargo_clippy", "cargo_check", "cargo_test"]
    assert definition.triggers == (
        TriggerFilter("push", ("main",)),
        TriggerFilter("pull_request", ("main",)),
    )

    clippy = definition.job("cargo_clippy")
    assert [s.kind for s in clippy.steps] == [
        "actions/checkout",
        "actions-rs/toolchain",
        "actions-rs/cargo",
        "actions-rs/clippy-check",
    ]
    assert clippy.steps[1].display_name == "Run actions-rs/toolchain"
    assert clippy.steps[2].config == {"command": "fmt", "args": "--all -- --check"}
    # secret references stay unrendered in the definition
    assert clippy.steps[3].config["token"] == "${{ secrets.GITHUB_TOKEN }}"
    assert all(not j.needs for j in definition.jobs)


def test_on_forms(tmp_path):
    as_string = definition_from_mapping({"on": "push", "jobs": {"a": {"steps": [{"run": "true"}]}}})
    assert as_string.triggers == (TriggerFilter("push"),)

    as_list = definition_from_mapping({"on": ["push", "pull_request"], "jobs": {"a": {"steps": [{"run": "true"}]}}})
    assert [t.event for t in as_list.triggers] == ["push", "pull_request"]

    path = _write(tmp_path, "wf.yml", """
        on:
          push:
            branches: main
          workflow_dispatch:
        jobs:
          a:
            steps:
              - run: echo hi
    """)
    definition = load_workflow(path)
    assert definition.name == "wf"
    assert definition.triggers == (TriggerFilter("push", ("main",)), TriggerFilter("workflow_dispatch"))


def test_run_steps_and_options(tmp_path):
    path = _write(tmp_path, "wf.yaml", """
        name: opts
        on: push
        env:
          GLOBAL: "1"
        jobs:
          build:
            env:
              DEBUG: true
            timeout-minutes: 2
            steps:
              - name: compile
                run: make
                shell: bash
                working-directory: sub
                continue-on-error: true
                timeout-minutes: 0.5
                env:
                  LEVEL: 3
          deploy:
            needs: build
            steps:
              - run: ./deploy.sh
    """)
    definition = load_workflow(path)
    build = definition.job("build")
    step = build.steps[0]
    assert step.kind == "run"
    assert step.config == {"run": "make", "shell": "bash", "working-directory": "sub"}
    assert step.continue_on_error is True
    assert step.timeout == 30
    assert step.env == {"LEVEL": "3"}
    assert build.env == {"DEBUG": "true"}
    assert build.timeout == 120
    assert definition.env == {"GLOBAL": "1"}
    assert definition.job("deploy").needs == ("build",)


def test_json_documents(tmp_path):
    path = tmp_path / "wf.json"
    path.write_text(json.dumps({"name": "j", "on": {"push": {"branches": ["main"]}},
                                "jobs": {"a": {"steps": [{"uses": "actions/checkout@v4"}]}}}))
    definition = load_workflow(path)
    assert definition.jobs[0].steps[0].kind == "actions/checkout"


def test_step_needs_uses_or_run():
    with pytest.raises(DefinitionError) as exc:
        definition_from_mapping({"on": "push", "jobs": {"a": {"steps": [{"name": "nothing"}]}}})
    assert exc.value.kind == "invalid-definition"

    with pytest.raises(DefinitionError):
        definition_from_mapping({"on": "push", "jobs": {"a": {"steps": [{"run": "x", "uses": "y"}]}}})


def test_job_without_steps_is_invalid():
    with pytest.raises(DefinitionError):
        definition_from_mapping({"on": "push", "jobs": {"a": {"steps": []}}})


def test_glob_branch_filter_fails_at_load_time():
    with pytest.raises(DefinitionError) as exc:
        definition_from_mapping({
            "on": {"push": {"branches": ["release/**"]}},
            "jobs": {"a": {"steps": [{"run": "true"}]}},
        })
    assert exc.value.kind == "invalid-trigger"


def test_unknown_dependency_fails_at_load_time():
    with pytest.raises(DefinitionError) as exc:
        definition_from_mapping({"on": "push", "jobs": {"a": {"needs": ["b"], "steps": [{"run": "true"}]}}})
    assert exc.value.kind == "unknown-dependency"


def test_cycle_fails_at_load_time():
    with pytest.raises(DefinitionError) as exc:
        definition_from_mapping({"on": "push", "jobs": {
            "a": {"needs": "b", "steps": [{"run": "true"}]},
            "b": {"needs": "a", "steps": [{"run": "true"}]},
        }})
    assert exc.value.kind == "cyclic-dependency"


def test_matrix_expands_jobs_and_dependencies():
    definition = definition_from_mapping({
        "on": "push",
        "jobs": {
            "test": {
                "strategy": {"matrix": {"toolchain": ["stable", "nightly"]}},
                "steps": [{
                    "name": "test on ${{ matrix.toolchain }}",
                    "uses": "actions-rs/cargo@v1",
                    "with": {"command": "test", "toolchain": "${{ matrix.toolchain }}"},
                }],
            },
            "publish": {"needs": ["test"], "steps": [{"run": "true"}]},
        },
    })
    assert [j.name for j in definition.jobs] == ["test (stable)", "test (nightly)", "publish"]
    assert definition.jobs[1].steps[0].name == "test on nightly"
    assert definition.jobs[1].steps[0].config["toolchain"] == "nightly"
    assert definition.job("publish").needs == ("test (stable)", "test (nightly)")


def test_multi_axis_matrix_is_rejected():
    with pytest.raises(DefinitionError):
        definition_from_mapping({"on": "push", "jobs": {"a": {
            "strategy": {"matrix": {"os": ["x"], "rust": ["y"]}},
            "steps": [{"run": "true"}],
        }}})


def test_python_workflow_file(tmp_path):
    path = _write(tmp_path, "py_workflow.py", """
        from relayci.dsl import wf, job, sh, on

        def workflow():
            return wf(
                job("lint", sh("lint", "echo lint")),
                job("test", sh("test", "echo test"), needs=["lint"]),
                name="py",
                triggers=[on("push", "main")],
            )
    """)
    definition = load_workflow(path)
    assert definition.name == "py"
    assert definition.job("test").needs == ("lint",)


def test_python_workflow_must_return_a_definition(tmp_path):
    path = _write(tmp_path, "bad_workflow.py", "WORKFLOW = []\n")
    with pytest.raises(TypeError):
        load_workflow(path)


def test_missing_file_and_bad_yaml(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "nope.yml")
    bad = _write(tmp_path, "bad.yml", "jobs: [unclosed\n")
    with pytest.raises(DefinitionError):
        load_workflow(bad)


def test_project_workflow_file():
    definition = load_workflow(EXAMPLE.parents[1] / "relayci_workflow.py")
    assert definition.name == "relayci"
    assert [j.name for j in definition.jobs] == ["lint", "format-check", "test"]
    assert definition.job("test").needs == ("lint",)
