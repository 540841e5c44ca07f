"""Collation activity feed.

Append-only log of accepted result sheet transitions. Rows are written
inside the transition's transaction and are never edited or removed; a
correction shows up as a new ``rejected`` event followed by a fresh
``submitted`` one.
"""

from typing import Any
from uuid import UUID

import asyncpg

from collation_engine.core.config import settings
from collation_engine.core.database import record_to_dict, records_to_list

FEED_ACTIONS = ("submitted", "verified", "approved", "certified", "rejected")


def clamp_limit(limit: int | None) -> int:
    """Bound a requested feed size to ``[1, ACTIVITY_FEED_MAX_LIMIT]``."""
    if limit is None:
        return settings.ACTIVITY_FEED_DEFAULT_LIMIT
    return max(1, min(int(limit), settings.ACTIVITY_FEED_MAX_LIMIT))


async def log_workflow_action(
    conn: asyncpg.Connection,
    *,
    result_sheet_id: UUID | str,
    election_id: UUID | str,
    action: str,
    performed_by: UUID | str,
    from_status: str,
    to_status: str,
    sheet_version: int,
    notes: str | None = None,
) -> dict[str, Any]:
    """Append one workflow event. Call inside the transition's transaction."""
    if action not in FEED_ACTIONS:
        raise ValueError(f"Unknown workflow action: {action}")

    row = await conn.fetchrow(
        """
        INSERT INTO collation_workflow_log (
            result_sheet_id, election_id, action, from_status, to_status,
            sheet_version, performed_by, notes
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        RETURNING *
        """,
        result_sheet_id,
        election_id,
        action,
        from_status,
        to_status,
        sheet_version,
        performed_by,
        notes,
    )
    return record_to_dict(row) or {}


async def get_activity_feed(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    limit: int | None = None,
    region_id: UUID | None = None,
) -> list[dict[str, Any]]:
    """Most recent workflow events for an election, newest first."""
    query = """
        SELECT
            cwl.id,
            cwl.sequence,
            cwl.result_sheet_id,
            cwl.action,
            cwl.from_status,
            cwl.to_status,
            cwl.sheet_version,
            cwl.performed_by,
            cwl.performed_at,
            cwl.notes,
            ps.id as polling_station_id,
            ps.name as polling_station_name,
            ps.code as polling_station_code,
            ea.name as electoral_area_name,
            c.name as constituency_name,
            r.id as region_id,
            r.name as region_name
        FROM collation_workflow_log cwl
        LEFT JOIN result_sheets rs ON cwl.result_sheet_id = rs.id
        LEFT JOIN polling_stations ps ON rs.polling_station_id = ps.id
        LEFT JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        LEFT JOIN constituencies c ON ea.constituency_id = c.id
        LEFT JOIN regions r ON c.region_id = r.id
        WHERE cwl.election_id = $1
    """
    params: list[Any] = [election_id]

    if region_id:
        query += " AND r.id = $2"
        params.append(region_id)

    query += f" ORDER BY cwl.performed_at DESC, cwl.sequence DESC LIMIT ${len(params) + 1}"
    params.append(clamp_limit(limit))

    rows = await conn.fetch(query, *params)
    return records_to_list(rows)


async def get_workflow_history(
    conn: asyncpg.Connection,
    result_sheet_id: UUID,
) -> list[dict[str, Any]]:
    """Complete workflow history of one result sheet, newest first."""
    rows = await conn.fetch(
        """
        SELECT *
        FROM collation_workflow_log
        WHERE result_sheet_id = $1
        ORDER BY performed_at DESC, sequence DESC
        """,
        result_sheet_id,
    )
    return records_to_list(rows)
