"""Result sheet workflow rules.

Pure functions deciding whether an operation on a result sheet is legal.
They take the sheet as read from the database and either return a plan for
the write or raise a ``CollationError``. Persistence lives in
``result_sheets``.

Check order for every write: stale version, certified lock, status rule,
then action preconditions.
"""

from dataclasses import dataclass
from typing import Any

from collation_engine.core.errors import (
    InvalidTransition,
    MissingRejectionReason,
    SheetLocked,
    SheetNotEditable,
    StaleState,
)

DRAFT = "draft"
SUBMITTED = "submitted"
VERIFIED = "verified"
APPROVED = "approved"
CERTIFIED = "certified"

STATUSES = (DRAFT, SUBMITTED, VERIFIED, APPROVED, CERTIFIED)
IN_PROGRESS_STATUSES = (SUBMITTED, VERIFIED, APPROVED)

SUBMIT = "submit"
VERIFY = "verify"
APPROVE = "approve"
CERTIFY = "certify"
REJECT = "reject"

ACTIONS = (SUBMIT, VERIFY, APPROVE, CERTIFY, REJECT)

# (from_status, action) -> to_status
TRANSITIONS: dict[tuple[str, str], str] = {
    (DRAFT, SUBMIT): SUBMITTED,
    (SUBMITTED, VERIFY): VERIFIED,
    (VERIFIED, APPROVE): APPROVED,
    (APPROVED, CERTIFY): CERTIFIED,
    (SUBMITTED, REJECT): DRAFT,
    (VERIFIED, REJECT): DRAFT,
    (APPROVED, REJECT): DRAFT,
}

# Past-tense action recorded on the activity feed
EVENT_ACTIONS = {
    SUBMIT: "submitted",
    VERIFY: "verified",
    APPROVE: "approved",
    CERTIFY: "certified",
    REJECT: "rejected",
}

# Timestamp / actor columns stamped by each forward action
STAGE_COLUMNS = {
    SUBMIT: ("submitted_at", "submitted_by"),
    VERIFY: ("verified_at", "verified_by"),
    APPROVE: ("approved_at", "approved_by"),
    CERTIFY: ("certified_at", "certified_by"),
}

# Stage columns cleared when a sheet is sent back to draft
PIPELINE_COLUMNS = (
    "submitted_at",
    "submitted_by",
    "verified_at",
    "verified_by",
    "approved_at",
    "approved_by",
)


@dataclass(frozen=True)
class TransitionPlan:
    """An accepted transition, ready to be written."""

    action: str
    from_status: str
    to_status: str
    from_version: int
    notes: str | None = None

    @property
    def to_version(self) -> int:
        return self.from_version + 1

    @property
    def event_action(self) -> str:
        return EVENT_ACTIONS[self.action]

    @property
    def is_rejection(self) -> bool:
        return self.action == REJECT


def allowed_actions(status: str) -> list[str]:
    """Actions that are legal from ``status``, in pipeline order."""
    return [action for action in ACTIONS if (status, action) in TRANSITIONS]


def check_version(
    sheet: dict[str, Any],
    expected_version: int | None,
    *,
    action: str | None = None,
) -> None:
    """Raise StaleState when the caller's version is not the stored one."""
    if expected_version is None:
        return
    if int(sheet["version"]) != int(expected_version):
        raise StaleState(
            expected_version,
            sheet["version"],
            current_status=sheet["status"],
            action=action,
        )


def ensure_editable(
    sheet: dict[str, Any],
    expected_version: int | None = None,
    *,
    operation: str = "edit",
) -> None:
    """Entries and totals may only change while the sheet is a draft."""
    check_version(sheet, expected_version, action=operation)
    if sheet["status"] == CERTIFIED:
        raise SheetLocked(current_version=sheet["version"], action=operation)
    if sheet["status"] != DRAFT:
        raise SheetNotEditable(sheet["status"], current_version=sheet["version"])


def plan_transition(
    sheet: dict[str, Any],
    action: str,
    *,
    expected_version: int,
    entry_count: int = 0,
    reason: str | None = None,
    notes: str | None = None,
    min_reason_length: int = 10,
) -> TransitionPlan:
    """Validate ``action`` against the sheet and return the transition to apply."""
    current = sheet["status"]
    check_version(sheet, expected_version, action=action)

    if current == CERTIFIED:
        raise SheetLocked(current_version=sheet["version"], action=action)

    target = TRANSITIONS.get((current, action))
    if target is None:
        raise InvalidTransition(current, action, current_version=sheet["version"])

    if action == SUBMIT and entry_count < 1:
        raise InvalidTransition(
            current,
            action,
            current_version=sheet["version"],
            violated_precondition="at least one result entry is required",
        )

    if action == REJECT:
        reason = (reason or "").strip()
        if len(reason) < min_reason_length:
            raise MissingRejectionReason(min_reason_length, current_status=current)
        notes = reason

    return TransitionPlan(
        action=action,
        from_status=current,
        to_status=target,
        from_version=int(sheet["version"]),
        notes=notes,
    )
