# tests/test_resolver.py
"""Tests for stageflow/core/engine/resolver.py"""
from __future__ import annotations

from unittest.mock import Mock

import pytest

from stageflow.core.engine.domain import Stage, Transition
from stageflow.core.engine.errors import GuardEvaluationError, TransitionError
from stageflow.core.engine.resolver import resolve_transition


def _stage(*transitions: Transition) -> Stage:
    return Stage(name="form", transitions=list(transitions))


class TestResolveTransition:
    def test_exact_match(self):
        resolution = resolve_transition(_stage(Transition(event="submit", target="done")), "submit")
        assert resolution.found
        assert resolution.target == "done"

    def test_event_match_is_case_sensitive(self):
        resolution = resolve_transition(_stage(Transition(event="submit", target="done")), "SUBMIT")
        assert not resolution.found
        assert resolution.target is None

    def test_first_passing_guard_wins(self):
        stage = _stage(
            Transition(event="submit", target="rejected", guard=lambda data, payload: False),
            Transition(event="submit", target="review", guard=lambda data, payload: True),
            Transition(event="submit", target="done"),
        )
        resolution = resolve_transition(stage, "submit")
        assert resolution.target == "review"
        assert resolution.rejected_by_guard == 1

    def test_unguarded_declared_first_wins(self):
        stage = _stage(
            Transition(event="submit", target="done"),
            Transition(event="submit", target="review", guard=lambda data, payload: True),
        )
        assert resolve_transition(stage, "submit").target == "done"

    def test_all_guards_fail(self):
        stage = _stage(
            Transition(event="submit", target="a", guard=lambda data, payload: False),
            Transition(event="submit", target="b", guard=lambda data, payload: False),
        )
        resolution = resolve_transition(stage, "submit")
        assert not resolution.found
        assert resolution.rejected_by_guard == 2

    def test_guard_receives_data_and_payload(self):
        guard = Mock(return_value=True)
        stage = _stage(Transition(event="submit", target="done", guard=guard))
        resolve_transition(stage, "submit", data={"n": 1}, payload={"extra": True})
        guard.assert_called_once_with({"n": 1}, {"extra": True})

    def test_guard_uses_payload(self):
        stage = _stage(
            Transition(event="pay", target="paid", guard=lambda data, payload: payload["amount"] >= data["due"]),
            Transition(event="pay", target="partial"),
        )
        assert resolve_transition(stage, "pay", {"due": 10}, {"amount": 12}).target == "paid"
        assert resolve_transition(stage, "pay", {"due": 10}, {"amount": 3}).target == "partial"

    def test_raising_guard(self):
        def guard(data, payload):
            raise KeyError("missing")

        stage = _stage(Transition(event="submit", target="done", guard=guard))
        with pytest.raises(GuardEvaluationError) as exc_info:
            resolve_transition(stage, "submit")
        assert isinstance(exc_info.value, TransitionError)
        assert isinstance(exc_info.value.__cause__, KeyError)

    def test_non_matching_guards_not_evaluated(self):
        guard = Mock(return_value=True)
        stage = _stage(Transition(event="other", target="done", guard=guard))
        resolve_transition(stage, "submit")
        guard.assert_not_called()
