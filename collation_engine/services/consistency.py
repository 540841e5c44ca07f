"""Result sheet consistency checks.

Compares the sum of a sheet's entries with the totals reported on the
physical sheet. A mismatch is advisory: it is stored on the sheet and shown
to the submitting agent and the verifier, who either accepts the sheet as
is or rejects it with a reason. It never blocks a transition.
"""

from typing import Any
from uuid import UUID

import asyncpg

from collation_engine.core.database import records_to_list
from collation_engine.core.logging_config import collation_logger


def _warning(code: str, message: str, expected: int, reported: int) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "expected": expected,
        "reported": reported,
        "difference": reported - expected,
    }


def check_consistency(
    sheet: dict[str, Any],
    entries: list[dict[str, Any]],
) -> dict[str, Any]:
    """
    Build the consistency report for a sheet.

    The primary tally is the candidate entries. Poll option entries are
    summed separately and only become the primary tally on a sheet with no
    candidate entries (a referendum sheet).
    """
    candidate_total = 0
    poll_option_total = 0
    has_candidates = False
    position_totals: dict[str, int] = {}

    for entry in entries:
        votes = int(entry["votes"])
        if entry.get("candidate_id"):
            has_candidates = True
            candidate_total += votes
            key = str(entry["position_id"]) if entry.get("position_id") else "unassigned"
            position_totals[key] = position_totals.get(key, 0) + votes
        elif entry.get("poll_option_id"):
            poll_option_total += votes

    calculated_total = candidate_total if has_candidates else poll_option_total

    reported = sheet.get("total_valid_votes")
    if reported is None:
        discrepancy = False
        delta = None
    else:
        delta = calculated_total - int(reported)
        discrepancy = delta != 0

    warnings: list[dict[str, Any]] = []
    cast = sheet.get("total_votes_cast")
    rejected = sheet.get("total_rejected_votes")
    registered = sheet.get("total_registered_voters")

    if cast is not None and reported is not None and rejected is not None:
        expected_cast = int(reported) + int(rejected)
        if int(cast) != expected_cast:
            warnings.append(
                _warning(
                    "votes_cast_mismatch",
                    "Votes cast does not equal valid plus rejected votes",
                    expected_cast,
                    int(cast),
                )
            )

    if cast is not None and registered is not None and int(cast) > int(registered):
        warnings.append(
            _warning(
                "votes_exceed_registered",
                "Votes cast exceeds registered voters",
                int(registered),
                int(cast),
            )
        )

    return {
        "calculated_total": calculated_total,
        "candidate_total": candidate_total,
        "poll_option_total": poll_option_total,
        "position_totals": position_totals,
        "reported_total": reported,
        "discrepancy": discrepancy,
        "delta": delta,
        "warnings": warnings,
    }


async def store_consistency(
    conn: asyncpg.Connection,
    sheet_id: UUID,
    report: dict[str, Any],
) -> None:
    """Persist the latest consistency result on the sheet row."""
    await conn.execute(
        """
        UPDATE result_sheets
        SET
            calculated_total = $2,
            has_discrepancy = $3,
            discrepancy_delta = $4
        WHERE id = $1
        """,
        sheet_id,
        report["calculated_total"],
        report["discrepancy"],
        report["delta"],
    )

    if report["discrepancy"]:
        collation_logger.log_discrepancy(
            str(sheet_id),
            report["calculated_total"],
            report["reported_total"],
            report["delta"],
        )


async def run_consistency_check(
    conn: asyncpg.Connection,
    sheet: dict[str, Any],
) -> dict[str, Any]:
    """Recompute and store the consistency report for a sheet."""
    rows = await conn.fetch(
        """
        SELECT position_id, candidate_id, poll_option_id, votes
        FROM result_sheet_entries
        WHERE result_sheet_id = $1
        """,
        sheet["id"],
    )
    report = check_consistency(sheet, records_to_list(rows))
    await store_consistency(conn, sheet["id"], report)
    return report


async def list_discrepancies(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """List sheets whose entries currently disagree with their reported total."""
    query = """
        SELECT
            rs.id,
            rs.status,
            rs.version,
            rs.calculated_total,
            rs.total_valid_votes,
            rs.discrepancy_delta,
            rs.updated_at,
            ps.name as polling_station_name,
            ps.code as polling_station_code,
            c.name as constituency_name,
            r.name as region_name
        FROM result_sheets rs
        JOIN polling_stations ps ON rs.polling_station_id = ps.id
        LEFT JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        LEFT JOIN constituencies c ON ea.constituency_id = c.id
        LEFT JOIN regions r ON c.region_id = r.id
        WHERE rs.election_id = $1 AND rs.has_discrepancy = TRUE
    """
    params: list[Any] = [election_id]
    param_count = 1

    if status:
        param_count += 1
        query += f" AND rs.status = ${param_count}"
        params.append(status)

    query += (
        f" ORDER BY ABS(rs.discrepancy_delta) DESC, rs.id"
        f" LIMIT ${param_count + 1} OFFSET ${param_count + 2}"
    )
    params.extend([limit, offset])

    rows = await conn.fetch(query, *params)
    return records_to_list(rows)
