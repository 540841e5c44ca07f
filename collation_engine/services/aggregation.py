"""Collation aggregation.

Dashboards and roll-ups are recomputed from the stored sheets on every read.
Loaders fetch one row per active station of the election (with its sheet, if
any) and one row per certified entry; the ``build_*`` functions fold those
rows into the response shapes without touching the database.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import asyncpg

from collation_engine.core.config import settings
from collation_engine.core.database import record_to_dict, records_to_list
from collation_engine.services import sheet_workflow as workflow

LEVELS: dict[str, tuple[str | None, str | None]] = {
    "polling_station": ("polling_station_id", "polling_station_name"),
    "electoral_area": ("electoral_area_id", "electoral_area_name"),
    "constituency": ("constituency_id", "constituency_name"),
    "region": ("region_id", "region_name"),
    "national": (None, None),
}

TOTAL_FIELDS = (
    "total_registered_voters",
    "total_votes_cast",
    "total_valid_votes",
    "total_rejected_votes",
)


# ============================================
# FOLDS
# ============================================


def build_status_breakdown(stations: list[dict[str, Any]]) -> dict[str, int]:
    """Count sheets per exact status."""
    counts = {status: 0 for status in workflow.STATUSES}
    for row in stations:
        status = row.get("status")
        if status in counts:
            counts[status] += 1
    return counts


def build_summary(stations: list[dict[str, Any]]) -> dict[str, Any]:
    """Progress summary over all active stations of an election."""
    total_stations = len(stations)
    counts = build_status_breakdown(stations)

    completed = counts[workflow.CERTIFIED]
    in_progress = sum(counts[status] for status in workflow.IN_PROGRESS_STATUSES)
    pending = max(0, total_stations - completed - in_progress)

    returned = sum(
        1
        for row in stations
        if row.get("status") == workflow.DRAFT and row.get("rejected_at") is not None
    )
    not_started = sum(1 for row in stations if row.get("sheet_id") is None)

    return {
        "total_stations": total_stations,
        "completed": completed,
        "in_progress": in_progress,
        "pending": pending,
        "returned_for_correction": returned,
        "not_started": not_started,
        "completion_percentage": round(
            (completed / total_stations * 100) if total_stations else 0, 2
        ),
    }


def build_regional_breakdown(
    stations: list[dict[str, Any]],
    region_id: str | None = None,
) -> list[dict[str, Any]]:
    """Per region station counts and certified valid votes, ordered by name."""
    regions: dict[str, dict[str, Any]] = {}

    for row in stations:
        key = row.get("region_id")
        if region_id and key != str(region_id):
            continue
        region = regions.setdefault(
            key,
            {
                "region_id": key,
                "region_name": row.get("region_name"),
                "total_stations": 0,
                "completed_stations": 0,
                "total_votes": 0,
            },
        )
        region["total_stations"] += 1
        if row.get("status") == workflow.CERTIFIED:
            region["completed_stations"] += 1
            region["total_votes"] += row.get("total_valid_votes") or 0

    return sorted(
        regions.values(),
        key=lambda r: (r["region_name"] or "", r["region_id"] or ""),
    )


def build_submission_progress(
    stations: list[dict[str, Any]],
    region_id: str | None = None,
    constituency_id: str | None = None,
) -> dict[str, Any]:
    """
    Sheet submission progress over the stations in scope.

    ``completion_rate`` is the share of stations whose sheet has been
    submitted at least once and not sent back (submitted through certified).
    """
    scoped = [
        row
        for row in stations
        if (not region_id or row.get("region_id") == str(region_id))
        and (not constituency_id or row.get("constituency_id") == str(constituency_id))
    ]
    counts = build_status_breakdown(scoped)
    total = len(scoped)
    submitted = sum(
        counts[status] for status in (*workflow.IN_PROGRESS_STATUSES, workflow.CERTIFIED)
    )

    return {
        "total_stations": total,
        "sheets_created": sum(1 for row in scoped if row.get("sheet_id") is not None),
        "drafts": counts[workflow.DRAFT],
        "submitted": counts[workflow.SUBMITTED],
        "verified": counts[workflow.VERIFIED],
        "approved": counts[workflow.APPROVED],
        "certified": counts[workflow.CERTIFIED],
        "completion_rate": round((submitted / total * 100) if total else 0, 2),
    }


def _rank(totals: dict[str, dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(totals.values(), key=lambda item: (-item["total_votes"], item["id"]))


def _tally(entries: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    candidates: dict[str, dict[str, Any]] = {}
    poll_options: dict[str, dict[str, Any]] = {}

    for entry in entries:
        if entry.get("status", workflow.CERTIFIED) != workflow.CERTIFIED:
            continue
        votes = int(entry.get("votes") or 0)
        if entry.get("candidate_id"):
            key = str(entry["candidate_id"])
            item = candidates.setdefault(
                key,
                {
                    "id": key,
                    "candidate_id": key,
                    "candidate_name": entry.get("candidate_name"),
                    "party": entry.get("party"),
                    "position_id": entry.get("position_id"),
                    "total_votes": 0,
                },
            )
            item["total_votes"] += votes
        elif entry.get("poll_option_id"):
            key = str(entry["poll_option_id"])
            item = poll_options.setdefault(
                key,
                {
                    "id": key,
                    "poll_option_id": key,
                    "option_text": entry.get("option_text"),
                    "total_votes": 0,
                },
            )
            item["total_votes"] += votes

    return _rank(candidates), _rank(poll_options)


def rank_candidates(
    entries: list[dict[str, Any]],
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """
    Rank candidates by summed votes.

    Entries of sheets that are not certified are ignored. Ties are broken by
    candidate id so the order is stable across reads.
    """
    candidates, _ = _tally(entries)
    if limit is None:
        limit = settings.TOP_CANDIDATES_LIMIT
    return [
        {k: v for k, v in item.items() if k != "id"} for item in candidates[: max(0, limit)]
    ]


def rollup(
    stations: list[dict[str, Any]],
    entries: list[dict[str, Any]],
    level: str,
    area_id: str | None = None,
) -> list[dict[str, Any]]:
    """Roll certified sheets up to the nodes of ``level``."""
    if level not in LEVELS:
        raise ValueError(f"Unknown aggregation level: {level}")
    id_field, name_field = LEVELS[level]
    if id_field is None:
        area_id = None

    nodes: dict[str | None, dict[str, Any]] = {}
    node_of_station: dict[str, str | None] = {}
    entries_by_node: dict[str | None, list[dict[str, Any]]] = {}

    for row in stations:
        key = row.get(id_field) if id_field else None
        if area_id and key != str(area_id):
            continue
        node = nodes.setdefault(
            key,
            {
                "level": level,
                "area_id": key,
                "area_name": row.get(name_field) if name_field else "National",
                "total_stations": 0,
                "certified_stations": 0,
                **{field: 0 for field in TOTAL_FIELDS},
            },
        )
        node["total_stations"] += 1
        node_of_station[str(row["polling_station_id"])] = key
        if row.get("status") == workflow.CERTIFIED:
            node["certified_stations"] += 1
            for field in TOTAL_FIELDS:
                node[field] += row.get(field) or 0

    for entry in entries:
        station = str(entry.get("polling_station_id"))
        if station in node_of_station:
            entries_by_node.setdefault(node_of_station[station], []).append(entry)

    results = []
    for key, node in nodes.items():
        candidates, poll_options = _tally(entries_by_node.get(key, []))
        node["candidates"] = [{k: v for k, v in c.items() if k != "id"} for c in candidates]
        node["poll_options"] = [{k: v for k, v in p.items() if k != "id"} for p in poll_options]
        results.append(node)

    return sorted(results, key=lambda n: (n["area_name"] or "", n["area_id"] or ""))


# ============================================
# LOADERS
# ============================================


async def _load_stations(conn: asyncpg.Connection, election_id: UUID) -> list[dict[str, Any]]:
    """One row per active station of the election, with its sheet if opened."""
    rows = await conn.fetch(
        """
        SELECT
            ps.id as polling_station_id,
            ps.name as polling_station_name,
            ea.id as electoral_area_id,
            ea.name as electoral_area_name,
            c.id as constituency_id,
            c.name as constituency_name,
            r.id as region_id,
            r.name as region_name,
            rs.id as sheet_id,
            rs.status,
            rs.rejected_at,
            rs.total_registered_voters,
            rs.total_votes_cast,
            rs.total_valid_votes,
            rs.total_rejected_votes
        FROM election_polling_stations eps
        JOIN polling_stations ps ON eps.polling_station_id = ps.id
        LEFT JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        LEFT JOIN constituencies c ON ea.constituency_id = c.id
        LEFT JOIN regions r ON c.region_id = r.id
        LEFT JOIN result_sheets rs
            ON rs.polling_station_id = ps.id AND rs.election_id = eps.election_id
        WHERE eps.election_id = $1 AND eps.status = 'active'
        """,
        election_id,
    )
    return records_to_list(rows)


async def _load_certified_entries(
    conn: asyncpg.Connection,
    election_id: UUID,
    region_id: UUID | None = None,
) -> list[dict[str, Any]]:
    """Entries of certified sheets only."""
    query = """
        SELECT
            rs.polling_station_id,
            rs.status,
            rse.position_id,
            rse.candidate_id,
            rse.poll_option_id,
            rse.votes,
            cand.name as candidate_name,
            cand.party,
            po.option_text
        FROM result_sheet_entries rse
        JOIN result_sheets rs ON rse.result_sheet_id = rs.id
        LEFT JOIN candidates cand ON rse.candidate_id = cand.id
        LEFT JOIN poll_options po ON rse.poll_option_id = po.id
    """
    params: list[Any] = [election_id]

    if region_id:
        query += """
        JOIN polling_stations ps ON rs.polling_station_id = ps.id
        JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        JOIN constituencies c ON ea.constituency_id = c.id
        """
        query += " WHERE rs.election_id = $1 AND rs.status = 'certified' AND c.region_id = $2"
        params.append(region_id)
    else:
        query += " WHERE rs.election_id = $1 AND rs.status = 'certified'"

    rows = await conn.fetch(query, *params)
    return records_to_list(rows)


async def _get_election(conn: asyncpg.Connection, election_id: UUID) -> dict[str, Any] | None:
    row = await conn.fetchrow(
        "SELECT id, title, status FROM elections WHERE id = $1",
        election_id,
    )
    return record_to_dict(row)


# ============================================
# READS
# ============================================


async def get_collation_dashboard(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    region_id: UUID | None = None,
    top_limit: int | None = None,
) -> dict[str, Any]:
    """
    Get the collation dashboard for an election.

    ``region_id`` narrows the regional breakdown and top candidates only;
    the summary and status breakdown always cover the whole election.
    """
    election = await _get_election(conn, election_id)
    if not election:
        return {}

    stations = await _load_stations(conn, election_id)
    entries = await _load_certified_entries(conn, election_id, region_id)

    return {
        "election": election,
        "summary": build_summary(stations),
        "status_breakdown": build_status_breakdown(stations),
        "regional_breakdown": build_regional_breakdown(stations, region_id),
        "top_candidates": rank_candidates(entries, top_limit),
        "last_updated": datetime.now(UTC).isoformat(),
    }


get_summary = get_collation_dashboard


async def get_status_breakdown(conn: asyncpg.Connection, election_id: UUID) -> dict[str, int]:
    return build_status_breakdown(await _load_stations(conn, election_id))


async def get_submission_progress(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    region_id: UUID | None = None,
    constituency_id: UUID | None = None,
) -> dict[str, Any]:
    """Get result sheet submission progress for an election."""
    stations = await _load_stations(conn, election_id)
    return build_submission_progress(stations, region_id, constituency_id)


async def get_regional_breakdown(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    region_id: UUID | None = None,
) -> list[dict[str, Any]]:
    stations = await _load_stations(conn, election_id)
    return build_regional_breakdown(stations, region_id)


async def get_top_candidates(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    region_id: UUID | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Candidates ranked by votes on certified sheets."""
    entries = await _load_certified_entries(conn, election_id, region_id)
    return rank_candidates(entries, limit)


async def aggregate_results(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    level: str,
    area_id: UUID | None = None,
) -> list[dict[str, Any]]:
    """
    Aggregate certified results to a geographic level.

    Levels: polling_station, electoral_area, constituency, region, national.
    """
    if level not in LEVELS:
        raise ValueError(f"Unknown aggregation level: {level}")

    stations = await _load_stations(conn, election_id)
    entries = await _load_certified_entries(conn, election_id)
    return rollup(stations, entries, level, str(area_id) if area_id else None)
