"""Collation workflow errors.

Every rule violation in the engine is a ``CollationError``. Each carries a
stable ``code``, the HTTP status it maps to, whether the caller may retry,
and a ``details`` dict with enough state (current status, current version,
violated precondition) for the calling UI to resynchronise.
"""

from typing import Any

from fastapi import status


class CollationError(Exception):
    """Base class for expected, caller-recoverable collation failures."""

    code = "collation_error"
    http_status = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "retryable": self.retryable,
            **self.details,
        }


class SheetNotFound(CollationError):
    code = "sheet_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, sheet_id: Any) -> None:
        super().__init__("Result sheet not found", sheet_id=str(sheet_id))


class InvalidTransition(CollationError):
    code = "invalid_transition"
    http_status = status.HTTP_409_CONFLICT

    def __init__(
        self,
        current_status: str,
        action: str,
        *,
        current_version: int | None = None,
        violated_precondition: str | None = None,
    ) -> None:
        if violated_precondition:
            message = f"Cannot {action} sheet with status '{current_status}': {violated_precondition}"
        else:
            message = f"Cannot {action} sheet with status '{current_status}'"
        super().__init__(
            message,
            current_status=current_status,
            current_version=current_version,
            attempted_action=action,
            violated_precondition=violated_precondition,
        )


class StaleState(CollationError):
    code = "stale_state"
    http_status = status.HTTP_409_CONFLICT
    retryable = True

    def __init__(
        self,
        expected_version: int,
        current_version: int,
        *,
        current_status: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(
            f"Result sheet was modified (expected version {expected_version}, "
            f"found {current_version}); reload and retry",
            expected_version=expected_version,
            current_version=current_version,
            current_status=current_status,
            attempted_action=action,
        )


class SheetNotEditable(CollationError):
    code = "sheet_not_editable"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, current_status: str, *, current_version: int | None = None) -> None:
        super().__init__(
            f"Result sheet can only be edited in draft (status is '{current_status}')",
            current_status=current_status,
            current_version=current_version,
            violated_precondition="status == draft",
        )


class SheetLocked(CollationError):
    code = "sheet_locked"
    http_status = status.HTTP_423_LOCKED

    def __init__(
        self,
        *,
        current_version: int | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(
            "Result sheet is certified and can no longer be changed",
            current_status="certified",
            current_version=current_version,
            attempted_action=action,
        )


class InvalidVoteCount(CollationError):
    code = "invalid_vote_count"
    http_status = 422

    def __init__(self, value: Any, *, index: int | None = None, field: str = "votes") -> None:
        where = f" at entry {index}" if index is not None else ""
        super().__init__(
            f"{field} must be a non-negative integer{where} (got {value!r})",
            field=field,
            index=index,
            value=repr(value),
        )


class InvalidEntryTarget(CollationError):
    code = "invalid_entry_target"
    http_status = 422

    def __init__(self, *, index: int) -> None:
        super().__init__(
            f"Entry {index} must reference exactly one of candidate_id or poll_option_id",
            index=index,
        )


class MissingRejectionReason(CollationError):
    code = "missing_rejection_reason"
    http_status = 422
    retryable = True

    def __init__(self, min_length: int, *, current_status: str | None = None) -> None:
        super().__init__(
            f"A rejection reason of at least {min_length} characters is required",
            min_length=min_length,
            current_status=current_status,
            violated_precondition=f"len(reason) >= {min_length}",
        )
