# triggers.py
"""
Trigger evaluation: does an incoming event start a run of this workflow?

Refs are matched by exact string. Glob-style patterns are not supported and
are rejected when the workflow is loaded (`validate_triggers`), never at
evaluation time.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .errors import DefinitionError
from .model import Event, TriggerFilter

PATTERN_CHARS = frozenset("*?[]!{}")

ACCEPTED = "accepted"
MALFORMED_EVENT = "malformed-event"
EVENT_NOT_DECLARED = "event-not-declared"
REF_NOT_MATCHED = "ref-not-matched"


@dataclass(frozen=True)
class TriggerDecision:
    accepted: bool
    reason: str

    def __bool__(self) -> bool:
        return self.accepted


def _normalize_ref(ref: str) -> str:
    return Event(kind="", ref=ref).branch or ref


def validate_triggers(triggers: Iterable[TriggerFilter]) -> None:
    seen: set[str] = set()
    for t in triggers:
        if not t.event or not isinstance(t.event, str):
            raise DefinitionError(kind="invalid-trigger", message="trigger has no event kind")
        if t.event in seen:
            raise DefinitionError(
                kind="invalid-trigger",
                message=f"event {t.event!r} is declared more than once",
            )
        seen.add(t.event)
        for branch in t.branches or ():
            if not isinstance(branch, str) or not branch:
                raise DefinitionError(
                    kind="invalid-trigger",
                    message=f"branch filter for {t.event!r} must be a non-empty string",
                    details={"branch": branch},
                )
            bad = sorted(set(branch) & PATTERN_CHARS)
            if bad:
                raise DefinitionError(
                    kind="invalid-trigger",
                    message=f"branch pattern {branch!r} is not supported (only exact names)",
                    details={"event": t.event, "characters": "".join(bad)},
                )


def evaluate(event: Event, triggers: Iterable[TriggerFilter]) -> TriggerDecision:
    """Pure accept/reject decision. Never raises on a malformed event."""
    kind = getattr(event, "kind", None)
    ref = getattr(event, "ref", None)
    if not isinstance(kind, str) or not kind or not isinstance(ref, str) or not ref:
        return TriggerDecision(False, MALFORMED_EVENT)

    for t in triggers:
        if t.event != kind:
            continue
        if t.branches is None:
            return TriggerDecision(True, ACCEPTED)
        branch = _normalize_ref(ref)
        if any(branch == _normalize_ref(b) for b in t.branches):
            return TriggerDecision(True, ACCEPTED)
        return TriggerDecision(False, REF_NOT_MATCHED)

    return TriggerDecision(False, EVENT_NOT_DECLARED)
