import pytest

from relayci.errors import DefinitionError
from relayci.model import Event, TriggerFilter
from relayci.triggers import evaluate, validate_triggers

TRIGGERS = (
    TriggerFilter("push", ("main",)),
    TriggerFilter("pull_request", ("main", "release")),
    TriggerFilter("workflow_dispatch"),
)


def test_push_to_declared_branch_is_accepted():
    decision = evaluate(Event("push", "main"), TRIGGERS)
    assert decision.accepted
    assert decision.reason == "accepted"


def test_push_to_other_branch_is_rejected():
    decision = evaluate(Event("push", "dev"), TRIGGERS)
    assert not decision
    assert decision.reason == "ref-not-matched"


def test_full_ref_names_are_normalised():
    assert evaluate(Event("push", "refs/heads/main"), TRIGGERS).accepted
    assert not evaluate(Event("push", "refs/heads/main-2"), TRIGGERS).accepted


def test_undeclared_event_is_rejected():
    assert evaluate(Event("release", "main"), TRIGGERS).reason == "event-not-declared"


def test_event_without_branch_filter_accepts_any_ref():
    assert evaluate(Event("workflow_dispatch", "feature/x"), TRIGGERS).accepted


def test_matching_is_exact_not_prefix():
    assert not evaluate(Event("pull_request", "releases"), TRIGGERS).accepted


@pytest.mark.parametrize("event", [Event("push", None), Event("push", ""), Event("", "main"), object()])
def test_malformed_event_is_rejected_without_raising(event):
    decision = evaluate(event, TRIGGERS)
    assert not decision.accepted
    assert decision.reason == "malformed-event"


def test_glob_patterns_are_a_load_time_error():
    with pytest.raises(DefinitionError) as exc:
        validate_triggers([TriggerFilter("push", ("release/*",))])
    assert exc.value.kind == "invalid-trigger"


def test_duplicate_event_kinds_are_rejected():
    with pytest.raises(DefinitionError):
        validate_triggers([TriggerFilter("push", ("main",)), TriggerFilter("push", ("dev",))])


def test_exact_names_validate():
    validate_triggers(TRIGGERS)
