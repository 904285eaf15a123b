# relayci_workflow.py
# Workflow for relayci itself: lint, then tests.
from __future__ import annotations

from relayci.dsl import job, on, sh, wf


def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            paths=["src/**", "tests/**", "pyproject.toml"],
        ),
        job(
            "format-check",
            sh("Ruff format check", "ruff format --check src tests"),
            paths=["src/**", "tests/**"],
        ),
        job(
            "test",
            sh("Install package", "python -m pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            needs=["lint"],
            paths=["src/**", "tests/**", "pyproject.toml"],
        ),
        name="relayci",
        triggers=[on("push", "main"), on("pull_request", "main")],
    )
