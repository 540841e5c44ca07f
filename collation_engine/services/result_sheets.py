"""Result sheets service for election collation.

Owns sheet status, totals and entries. Every write follows the same shape:
open a transaction, lock the sheet row, check the caller's version and the
workflow rules, write, bump ``version``, and (for transitions) append the
workflow event, so the sheet, its entries and the event commit together.
"""

from typing import Any
from uuid import UUID

import asyncpg

from collation_engine.core.config import settings
from collation_engine.core.database import record_to_dict, records_to_list
from collation_engine.core.errors import CollationError, SheetNotFound, StaleState
from collation_engine.core.logging_config import collation_logger
from collation_engine.services import activity_feed
from collation_engine.services import consistency
from collation_engine.services import result_entries
from collation_engine.services import sheet_workflow as workflow

TOTAL_FIELDS = (
    "total_registered_voters",
    "total_votes_cast",
    "total_valid_votes",
    "total_rejected_votes",
)


# ============================================
# RESULT SHEET READS
# ============================================


async def open_result_sheet(
    conn: asyncpg.Connection,
    *,
    election_id: UUID,
    polling_station_id: UUID,
    created_by: UUID | str,
) -> dict[str, Any] | None:
    """
    Open the draft sheet for a polling station, or return the existing one.

    Returns None when the station is not an active station of the election.
    """
    in_election = await conn.fetchval(
        """
        SELECT EXISTS (
            SELECT 1 FROM election_polling_stations
            WHERE election_id = $1 AND polling_station_id = $2 AND status = 'active'
        )
        """,
        election_id,
        polling_station_id,
    )
    if not in_election:
        return None

    row = await conn.fetchrow(
        """
        INSERT INTO result_sheets (election_id, polling_station_id, status, created_by)
        VALUES ($1, $2, 'draft', $3)
        ON CONFLICT (election_id, polling_station_id) DO NOTHING
        RETURNING *
        """,
        election_id,
        polling_station_id,
        created_by,
    )
    if row is None:
        row = await conn.fetchrow(
            "SELECT * FROM result_sheets WHERE election_id = $1 AND polling_station_id = $2",
            election_id,
            polling_station_id,
        )
    return record_to_dict(row)


async def get_result_sheet(
    conn: asyncpg.Connection,
    sheet_id: UUID,
) -> dict[str, Any] | None:
    """Get a result sheet by ID with its location details."""
    row = await conn.fetchrow(
        """
        SELECT
            rs.*,
            ps.name as polling_station_name,
            ps.code as polling_station_code,
            ea.id as electoral_area_id,
            ea.name as electoral_area_name,
            c.id as constituency_id,
            c.name as constituency_name,
            r.id as region_id,
            r.name as region_name
        FROM result_sheets rs
        LEFT JOIN polling_stations ps ON rs.polling_station_id = ps.id
        LEFT JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        LEFT JOIN constituencies c ON ea.constituency_id = c.id
        LEFT JOIN regions r ON c.region_id = r.id
        WHERE rs.id = $1
        """,
        sheet_id,
    )
    return record_to_dict(row)


async def list_result_sheets(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    status: str | None = None,
    constituency_id: UUID | None = None,
    region_id: UUID | None = None,
    has_discrepancy: bool | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """List result sheets with filtering."""
    query = """
        SELECT
            rs.*,
            ps.name as polling_station_name,
            ps.code as polling_station_code,
            ea.name as electoral_area_name,
            c.name as constituency_name,
            r.name as region_name
        FROM result_sheets rs
        LEFT JOIN polling_stations ps ON rs.polling_station_id = ps.id
        LEFT JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        LEFT JOIN constituencies c ON ea.constituency_id = c.id
        LEFT JOIN regions r ON c.region_id = r.id
        WHERE rs.election_id = $1
    """
    params: list[Any] = [election_id]
    param_count = 1

    if status:
        param_count += 1
        query += f" AND rs.status = ${param_count}"
        params.append(status)

    if constituency_id:
        param_count += 1
        query += f" AND c.id = ${param_count}"
        params.append(constituency_id)

    if region_id:
        param_count += 1
        query += f" AND r.id = ${param_count}"
        params.append(region_id)

    if has_discrepancy is not None:
        param_count += 1
        query += f" AND rs.has_discrepancy = ${param_count}"
        params.append(has_discrepancy)

    query += f" ORDER BY rs.updated_at DESC, rs.id LIMIT ${param_count + 1} OFFSET ${param_count + 2}"
    params.extend([limit, offset])

    rows = await conn.fetch(query, *params)
    return records_to_list(rows)


async def get_sheet_summary(
    conn: asyncpg.Connection,
    sheet_id: UUID,
) -> dict[str, Any]:
    """Get a result sheet with entries, consistency report and history."""
    sheet = await get_result_sheet(conn, sheet_id)
    if not sheet:
        return {}

    entries = await result_entries.get_result_entries(conn, sheet_id)
    history = await activity_feed.get_workflow_history(conn, sheet_id)

    # Group entries by position
    positions: dict[str, list[dict[str, Any]]] = {}
    for entry in entries:
        pos_title = entry.get("position_title") or "Poll"
        positions.setdefault(pos_title, []).append(entry)

    return {
        **sheet,
        "entries": entries,
        "entries_by_position": positions,
        "total_entries": len(entries),
        "consistency": consistency.check_consistency(sheet, entries),
        "allowed_actions": workflow.allowed_actions(sheet["status"]),
        "workflow_history": history,
    }


# ============================================
# LOCKED WRITES
# ============================================


async def _lock_sheet(conn: asyncpg.Connection, sheet_id: UUID | str) -> dict[str, Any]:
    """Read the sheet row under FOR UPDATE. Call inside a transaction."""
    row = await conn.fetchrow(
        "SELECT * FROM result_sheets WHERE id = $1 FOR UPDATE",
        sheet_id,
    )
    if row is None:
        raise SheetNotFound(sheet_id)
    return record_to_dict(row)


async def _bump_version(
    conn: asyncpg.Connection,
    sheet: dict[str, Any],
    updates: dict[str, Any] | None = None,
    expressions: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Write ``updates`` and advance the version, guarded on the version read.

    ``expressions`` are raw SET clauses such as ``"verified_at = NOW()"``.
    """
    updates = updates or {}
    set_clauses = []
    params: list[Any] = [sheet["id"], sheet["version"]]
    for key, value in updates.items():
        params.append(value)
        set_clauses.append(f"{key} = ${len(params)}")

    set_clauses.extend(expressions)
    set_clauses.extend(["version = version + 1", "updated_at = NOW()"])
    row = await conn.fetchrow(
        f"""
        UPDATE result_sheets
        SET {', '.join(set_clauses)}
        WHERE id = $1 AND version = $2
        RETURNING *
        """,
        *params,
    )
    if row is None:
        current = await conn.fetchval(
            "SELECT version FROM result_sheets WHERE id = $1", sheet["id"]
        )
        raise StaleState(sheet["version"], current, current_status=sheet["status"])
    return record_to_dict(row)


async def update_totals(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    *,
    expected_version: int,
    totals: dict[str, Any],
) -> dict[str, Any]:
    """
    Update the reported totals of a draft sheet.

    Returns the updated sheet and its consistency report.
    """
    filtered = {k: v for k, v in totals.items() if k in TOTAL_FIELDS}
    try:
        async with conn.transaction():
            sheet = await _lock_sheet(conn, sheet_id)
            workflow.ensure_editable(sheet, expected_version, operation="update_totals")
            for field, value in filtered.items():
                if value is not None:
                    filtered[field] = result_entries.normalize_vote_count(value, field=field)

            sheet = await _bump_version(conn, sheet, filtered)
            report = await consistency.run_consistency_check(conn, sheet)
    except CollationError as e:
        collation_logger.log_refused(str(sheet_id), "update_totals", e.code, e.details)
        raise

    sheet.update(
        calculated_total=report["calculated_total"],
        has_discrepancy=report["discrepancy"],
        discrepancy_delta=report["delta"],
    )
    return {"sheet": sheet, "consistency": report}


async def bulk_add_entries(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    entries: list[dict[str, Any]],
    *,
    expected_version: int | None = None,
) -> dict[str, Any]:
    """
    Upsert a batch of vote entries on a draft sheet, all or nothing.

    Safe to retry: the same batch applied twice leaves the same entry set.
    When ``expected_version`` is given a concurrent change fails the call
    with StaleState.
    """
    try:
        async with conn.transaction():
            sheet = await _lock_sheet(conn, sheet_id)
            workflow.ensure_editable(sheet, expected_version, operation="bulk_add_entries")
            prepared = result_entries.prepare_entries(entries)

            saved = await result_entries.upsert_entries(conn, sheet["id"], prepared)
            sheet = await _bump_version(conn, sheet)
            report = await consistency.run_consistency_check(conn, sheet)
    except CollationError as e:
        collation_logger.log_refused(str(sheet_id), "bulk_add_entries", e.code, e.details)
        raise

    collation_logger.log_bulk_upsert(str(sheet_id), len(saved), sheet["version"])
    sheet.update(
        calculated_total=report["calculated_total"],
        has_discrepancy=report["discrepancy"],
        discrepancy_delta=report["delta"],
    )
    return {
        "sheet": sheet,
        "entries": saved,
        "entries_updated": len(saved),
        "consistency": report,
    }


# ============================================
# WORKFLOW OPERATIONS
# ============================================


async def _apply_transition(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    action: str,
    *,
    expected_version: int,
    performed_by: UUID | str,
    notes: str | None = None,
    reason: str | None = None,
) -> dict[str, Any]:
    report = None
    try:
        async with conn.transaction():
            sheet = await _lock_sheet(conn, sheet_id)
            entry_count = 0
            if action == workflow.SUBMIT:
                entry_count = await result_entries.count_entries(conn, sheet["id"])

            plan = workflow.plan_transition(
                sheet,
                action,
                expected_version=expected_version,
                entry_count=entry_count,
                reason=reason,
                notes=notes,
                min_reason_length=settings.REJECTION_REASON_MIN_LENGTH,
            )

            if plan.is_rejection:
                updates: dict[str, Any] = {column: None for column in workflow.PIPELINE_COLUMNS}
                updates.update(
                    status=plan.to_status,
                    rejected_by=performed_by,
                    rejection_reason=plan.notes,
                )
                updated = await _bump_version(
                    conn,
                    sheet,
                    updates,
                    ("rejected_at = NOW()", "rejection_count = rejection_count + 1"),
                )
            else:
                at_column, by_column = workflow.STAGE_COLUMNS[action]
                updated = await _bump_version(
                    conn,
                    sheet,
                    {"status": plan.to_status, by_column: performed_by},
                    (f"{at_column} = NOW()",),
                )

            if action == workflow.SUBMIT:
                report = await consistency.run_consistency_check(conn, updated)

            await activity_feed.log_workflow_action(
                conn,
                result_sheet_id=sheet["id"],
                election_id=sheet["election_id"],
                action=plan.event_action,
                performed_by=performed_by,
                from_status=plan.from_status,
                to_status=plan.to_status,
                sheet_version=plan.to_version,
                notes=plan.notes,
            )
    except CollationError as e:
        collation_logger.log_refused(str(sheet_id), action, e.code, e.details)
        raise

    collation_logger.log_transition(
        str(sheet_id),
        plan.event_action,
        plan.from_status,
        plan.to_status,
        plan.to_version,
        str(performed_by),
    )

    if report is not None:
        updated.update(
            calculated_total=report["calculated_total"],
            has_discrepancy=report["discrepancy"],
            discrepancy_delta=report["delta"],
        )
        updated["consistency"] = report
    return updated


async def submit_result_sheet(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    submitted_by: UUID | str,
    *,
    expected_version: int,
    notes: str | None = None,
) -> dict[str, Any]:
    """Submit a draft result sheet for verification."""
    return await _apply_transition(
        conn,
        sheet_id,
        workflow.SUBMIT,
        expected_version=expected_version,
        performed_by=submitted_by,
        notes=notes,
    )


async def verify_result_sheet(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    verified_by: UUID | str,
    *,
    expected_version: int,
    notes: str | None = None,
) -> dict[str, Any]:
    """Mark a submitted result sheet as verified."""
    return await _apply_transition(
        conn,
        sheet_id,
        workflow.VERIFY,
        expected_version=expected_version,
        performed_by=verified_by,
        notes=notes,
    )


async def approve_result_sheet(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    approved_by: UUID | str,
    *,
    expected_version: int,
    notes: str | None = None,
) -> dict[str, Any]:
    """Approve a verified result sheet."""
    return await _apply_transition(
        conn,
        sheet_id,
        workflow.APPROVE,
        expected_version=expected_version,
        performed_by=approved_by,
        notes=notes,
    )


async def certify_result_sheet(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    certified_by: UUID | str,
    *,
    expected_version: int,
    notes: str | None = None,
) -> dict[str, Any]:
    """Certify an approved result sheet (final status)."""
    return await _apply_transition(
        conn,
        sheet_id,
        workflow.CERTIFY,
        expected_version=expected_version,
        performed_by=certified_by,
        notes=notes,
    )


async def reject_result_sheet(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    rejected_by: UUID | str,
    reason: str,
    *,
    expected_version: int,
) -> dict[str, Any]:
    """Reject a result sheet back to draft."""
    return await _apply_transition(
        conn,
        sheet_id,
        workflow.REJECT,
        expected_version=expected_version,
        performed_by=rejected_by,
        reason=reason,
    )
