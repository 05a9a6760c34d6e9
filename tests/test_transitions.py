"""
Tests for the transition rules.

Pure functions: no database needed.
"""
import pytest

from olio_monitor.models.audit import ActionLogType
from olio_monitor.models.enums import ReportStatus as S
from olio_monitor.services.errors import InvalidTransition
from olio_monitor.services.transitions import (
    ALLOWED_TRANSITIONS,
    action_type_for,
    available_transitions,
    describe_transition,
    ensure_legal,
    is_legal,
    sorted_transitions,
)


class TestAdjacency:
    """The workflow graph."""

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(S)

    def test_archived_is_terminal(self):
        """
        INVARIANT: ARCHIVED has no outgoing edges.
        """
        assert available_transitions(S.ARCHIVED) == frozenset()
        for target in S:
            assert not is_legal(S.ARCHIVED, target)

    def test_closed_only_archives(self):
        assert available_transitions(S.CLOSED) == {S.ARCHIVED}

    def test_no_self_loops(self):
        for status in S:
            assert not is_legal(status, status)

    def test_draft_cannot_skip_to_verification(self):
        assert not is_legal(S.DRAFT, S.UNDER_VERIFICATION)
        assert is_legal(S.DRAFT, S.IN_PROGRESS)

    def test_in_progress_cannot_close_directly(self):
        """
        INVARIANT: A case is only closed after verification, clarification or authority feedback.
        """
        assert not is_legal(S.IN_PROGRESS, S.CLOSED)
        assert not is_legal(S.IN_PROGRESS, S.REPORTED_TO_AUTHORITY)

    def test_authority_can_send_back_to_verification(self):
        assert available_transitions(S.REPORTED_TO_AUTHORITY) == {S.CLOSED, S.UNDER_VERIFICATION}

    def test_sorted_transitions_follow_workflow_order(self):
        assert sorted_transitions(S.UNDER_VERIFICATION) == [
            S.IN_PROGRESS,
            S.CLARIFICATION_REQUESTED,
            S.REPORTED_TO_AUTHORITY,
            S.CLOSED,
        ]

    def test_accepts_plain_string_values(self):
        assert is_legal("IN_PROGRESS", "UNDER_VERIFICATION")


class TestEnsureLegal:

    def test_legal_edge_passes(self):
        ensure_legal(S.CLARIFICATION_REQUESTED, S.CLOSED)

    def test_illegal_edge_reports_the_legal_set(self):
        with pytest.raises(InvalidTransition) as exc:
            ensure_legal(S.IN_PROGRESS, S.CLOSED)

        err = exc.value
        assert err.details["from_status"] == "IN_PROGRESS"
        assert err.details["to_status"] == "CLOSED"
        assert err.details["available_transitions"] == [
            "UNDER_VERIFICATION", "CLARIFICATION_REQUESTED", "ARCHIVED"
        ]
        assert err.to_dict()["code"] == "invalid_transition"

    def test_terminal_state_message(self):
        with pytest.raises(InvalidTransition) as exc:
            ensure_legal(S.ARCHIVED, S.IN_PROGRESS)

        assert "terminal" in exc.value.message
        assert exc.value.details["available_transitions"] == []


class TestDescriptions:

    def test_every_edge_has_a_description(self):
        for source, targets in ALLOWED_TRANSITIONS.items():
            for target in targets:
                assert not describe_transition(source, target).startswith("Transition from")

    def test_unknown_edge_falls_back(self):
        assert describe_transition(S.DRAFT, S.CLOSED) == "Transition from DRAFT to CLOSED"

    def test_action_types_name_the_path(self):
        assert action_type_for(S.UNDER_VERIFICATION, S.CLOSED) == ActionLogType.CLOSED_AFTER_INSPECTION
        assert action_type_for(S.CLARIFICATION_REQUESTED, S.CLOSED) == ActionLogType.CLOSED_AFTER_CLARIFICATION
        assert action_type_for(S.REPORTED_TO_AUTHORITY, S.CLOSED) == ActionLogType.CLOSED_AFTER_AUTHORITY_FEEDBACK
        assert action_type_for(S.DRAFT, S.CLOSED) == ActionLogType.STATUS_CHANGED
