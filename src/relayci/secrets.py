# secrets.py
"""
Secret references and `${{ ... }}` expression rendering for step config.

Secret values only ever live in the rendered config/environment handed to a
single step. StepInstance.config keeps the unrendered template, and captured
output is masked before it is stored.
"""
from __future__ import annotations

import os
import re
from typing import Dict, Mapping, Optional, Protocol

from .errors import SecretUnavailable, StepUnresolvable
from .model import Event, Scalar

EXPR_RE = re.compile(r"\$\{\{\s*([A-Za-z_][\w\-]*(?:\.[\w\-]+)*)\s*\}\}")
MASK = "***"


class SecretProvider(Protocol):
    def get(self, name: str) -> Optional[str]:
        ...


class MappingSecretProvider:
    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets = dict(secrets or {})

    def get(self, name: str) -> Optional[str]:
        return self._secrets.get(name)


class EnvSecretProvider:
    """Reads RELAYCI_SECRET_<NAME>, then <NAME>, from the process environment."""

    def __init__(self, prefix: str = "RELAYCI_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        value = self._environ.get(f"{self.prefix}{name}")
        if value is None:
            value = self._environ.get(name)
        return value


class ExpressionContext:
    """Resolves `${{ secrets.X }}`, `${{ env.X }}`, `${{ event.ref }}` and friends."""

    def __init__(
        self,
        *,
        secrets: SecretProvider,
        env: Mapping[str, str],
        event: Event,
        job: str,
        matrix: Optional[Mapping[str, Scalar]] = None,
    ):
        self.secrets = secrets
        self.env = env
        self.event = event
        self.job = job
        self.matrix = dict(matrix or {})
        self.used_secrets: Dict[str, str] = {}

    def lookup(self, expr: str) -> str:
        head, _, rest = expr.partition(".")
        if head == "secrets" and rest:
            value = self.secrets.get(rest)
            if value is None:
                raise SecretUnavailable(rest)
            self.used_secrets[rest] = value
            return value
        if head == "env" and rest:
            return self.env.get(rest, "")
        if head in ("event", "github"):
            if rest in ("ref",):
                return self.event.ref or ""
            if rest in ("kind", "event_name"):
                return self.event.kind
            if rest in ("branch", "ref_name"):
                return self.event.branch or ""
            if rest.startswith("metadata."):
                return str(self.event.metadata.get(rest[len("metadata."):], ""))
            if rest in self.event.metadata:
                return str(self.event.metadata[rest])
            return ""
        if head == "job" and rest == "name":
            return self.job
        if head == "matrix" and rest in self.matrix:
            return str(self.matrix[rest])
        raise StepUnresolvable(f"unknown expression '${{{{ {expr} }}}}'", job=self.job)

    def render(self, value: Scalar) -> Scalar:
        if not isinstance(value, str) or "${{" not in value:
            return value
        return EXPR_RE.sub(lambda m: self.lookup(m.group(1)), value)

    def render_mapping(self, values: Mapping[str, Scalar]) -> Dict[str, Scalar]:
        return {k: self.render(v) for k, v in values.items()}


def mask(text: str, secret_values: Mapping[str, str] | list[str]) -> str:
    values = secret_values.values() if isinstance(secret_values, Mapping) else secret_values
    # longest first so a secret containing another is fully masked
    for value in sorted({v for v in values if v}, key=len, reverse=True):
        text = text.replace(value, MASK)
    return text
