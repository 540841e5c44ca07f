"""Unit tests for result sheet workflow rules."""

import itertools

import pytest

from collation_engine.core.errors import (
    InvalidTransition,
    MissingRejectionReason,
    SheetLocked,
    SheetNotEditable,
    StaleState,
)
from collation_engine.services import sheet_workflow as workflow

VALID_REASON = "Entry for candidate B does not match the pink sheet"


def _plan(sheet, action, **kwargs):
    kwargs.setdefault("expected_version", sheet["version"])
    kwargs.setdefault("entry_count", 3)
    if action == workflow.REJECT:
        kwargs.setdefault("reason", VALID_REASON)
    return workflow.plan_transition(sheet, action, **kwargs)


def _apply(sheet, plan):
    return {**sheet, "status": plan.to_status, "version": plan.to_version}


class TestForwardPath:
    """Test the draft to certified pipeline."""

    def test_full_pipeline(self, make_sheet):
        sheet = make_sheet()
        seen = []
        for action in (workflow.SUBMIT, workflow.VERIFY, workflow.APPROVE, workflow.CERTIFY):
            plan = _plan(sheet, action)
            seen.append((plan.from_status, plan.to_status, plan.event_action))
            sheet = _apply(sheet, plan)

        assert seen == [
            ("draft", "submitted", "submitted"),
            ("submitted", "verified", "verified"),
            ("verified", "approved", "approved"),
            ("approved", "certified", "certified"),
        ]
        assert sheet["status"] == "certified"
        assert sheet["version"] == 5

    def test_plan_increments_version(self, make_sheet):
        plan = _plan(make_sheet(version=7), workflow.SUBMIT)
        assert plan.from_version == 7
        assert plan.to_version == 8

    def test_submit_requires_an_entry(self, make_sheet):
        with pytest.raises(InvalidTransition) as exc_info:
            _plan(make_sheet(), workflow.SUBMIT, entry_count=0)

        details = exc_info.value.details
        assert details["current_status"] == "draft"
        assert "entry" in details["violated_precondition"]

    @pytest.mark.parametrize(
        "status,action",
        [
            (status, action)
            for status, action in itertools.product(
                ("draft", "submitted", "verified", "approved"), workflow.ACTIONS
            )
            if (status, action) not in workflow.TRANSITIONS
        ],
    )
    def test_illegal_pairs_are_refused(self, make_sheet, status, action):
        with pytest.raises(InvalidTransition) as exc_info:
            _plan(make_sheet(status=status), action)

        assert exc_info.value.details["current_status"] == status
        assert exc_info.value.details["attempted_action"] == action

    def test_certified_is_only_reachable_through_the_pipeline(self):
        """Every path into certified comes from approved, verified and submitted in turn."""
        predecessors = {to: frm for (frm, _), to in workflow.TRANSITIONS.items() if to != "draft"}
        chain = ["certified"]
        while chain[-1] in predecessors:
            chain.append(predecessors[chain[-1]])
        assert chain == ["certified", "approved", "verified", "submitted", "draft"]


class TestRejection:
    """Test rejection back to draft."""

    @pytest.mark.parametrize("status", ["submitted", "verified", "approved"])
    def test_reject_lands_in_draft(self, make_sheet, status):
        plan = _plan(make_sheet(status=status, version=4), workflow.REJECT)

        assert plan.to_status == "draft"
        assert plan.event_action == "rejected"
        assert plan.is_rejection
        assert plan.notes == VALID_REASON
        assert plan.to_version == 5

    def test_reason_is_stripped(self, make_sheet):
        plan = _plan(
            make_sheet(status="submitted"),
            workflow.REJECT,
            reason=f"   {VALID_REASON}  \n",
        )
        assert plan.notes == VALID_REASON

    @pytest.mark.parametrize("reason", [None, "", "   ", "too short", "  123456789  "])
    def test_short_reason_refused(self, make_sheet, reason):
        with pytest.raises(MissingRejectionReason) as exc_info:
            _plan(make_sheet(status="verified"), workflow.REJECT, reason=reason)

        assert exc_info.value.retryable is True
        assert exc_info.value.details["min_length"] == 10

    def test_reject_draft_is_invalid(self, make_sheet):
        with pytest.raises(InvalidTransition):
            _plan(make_sheet(status="draft"), workflow.REJECT)


class TestConcurrencyAndLocking:
    """Test version checks and the certified lock."""

    @pytest.mark.parametrize("action", workflow.ACTIONS)
    def test_stale_version_always_refused(self, make_sheet, action):
        sheet = make_sheet(status="submitted", version=3)

        with pytest.raises(StaleState) as exc_info:
            _plan(sheet, action, expected_version=2)

        details = exc_info.value.details
        assert details["expected_version"] == 2
        assert details["current_version"] == 3
        assert exc_info.value.retryable is True

    def test_stale_checked_before_lock(self, make_sheet):
        sheet = make_sheet(status="certified", version=5)
        with pytest.raises(StaleState):
            _plan(sheet, workflow.REJECT, expected_version=4)

    def test_stale_checked_before_transition_rule(self, make_sheet):
        sheet = make_sheet(status="draft", version=2)
        with pytest.raises(StaleState):
            _plan(sheet, workflow.CERTIFY, expected_version=1)

    @pytest.mark.parametrize("action", workflow.ACTIONS)
    def test_certified_is_locked(self, make_sheet, action):
        with pytest.raises(SheetLocked) as exc_info:
            _plan(make_sheet(status="certified", version=5), action)
        assert exc_info.value.http_status == 423

    def test_allowed_actions(self):
        assert workflow.allowed_actions("draft") == ["submit"]
        assert workflow.allowed_actions("submitted") == ["verify", "reject"]
        assert workflow.allowed_actions("approved") == ["certify", "reject"]
        assert workflow.allowed_actions("certified") == []


class TestEditability:
    """Test which sheets accept entry and totals changes."""

    def test_draft_is_editable(self, make_sheet):
        workflow.ensure_editable(make_sheet(), 1)

    def test_no_version_skips_stale_check(self, make_sheet):
        workflow.ensure_editable(make_sheet(version=9), None)

    @pytest.mark.parametrize("status", ["submitted", "verified", "approved"])
    def test_in_review_not_editable(self, make_sheet, status):
        with pytest.raises(SheetNotEditable) as exc_info:
            workflow.ensure_editable(make_sheet(status=status))
        assert exc_info.value.details["current_status"] == status

    def test_certified_locked_not_merely_uneditable(self, make_sheet):
        with pytest.raises(SheetLocked):
            workflow.ensure_editable(make_sheet(status="certified"))

    def test_stale_edit(self, make_sheet):
        with pytest.raises(StaleState):
            workflow.ensure_editable(make_sheet(version=2), 1)
