# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - structured run reports
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DefinitionError(CIError):
    """
    Invalid workflow definition (bad triggers, unknown or cyclic dependencies).

    Raised before any job starts; a run is never created from a definition
    that fails validation.
    """


class StepUnresolvable(CIError):
    """The step's kind has no registered runner, or its config is unusable."""

    def __init__(self, message: str, *, job: str | None = None, step: str | None = None, **details):
        super().__init__(kind="step-unresolvable", message=message, job=job, step=step, details=details)


class SecretUnavailable(CIError):
    def __init__(self, name: str):
        super().__init__(
            kind="secret-unavailable",
            message=f"secret {name!r} is not available from the secret provider",
            details={"secret": name},
        )


TOOL_HINTS = {
    "git": "Install Git or fix PATH.",
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "sh": "A POSIX shell is required to run `run:` steps.",
}
