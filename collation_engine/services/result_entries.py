"""Result sheet entries (vote counts).

One entry per (sheet, candidate) or (sheet, poll option). Writes are
upserts keyed on that pair, so replaying a batch never duplicates rows.
Callers validate the whole batch with ``prepare_entries`` before writing
anything; ``result_sheets.bulk_add_entries`` is the only writer.
"""

from typing import Any
from uuid import UUID

import asyncpg

from collation_engine.core.database import record_to_dict, records_to_list
from collation_engine.core.errors import InvalidEntryTarget, InvalidVoteCount


def normalize_vote_count(value: Any, *, index: int | None = None, field: str = "votes") -> int:
    """Return ``value`` as a non-negative int or raise InvalidVoteCount."""
    if isinstance(value, bool):
        raise InvalidVoteCount(value, index=index, field=field)
    if isinstance(value, int):
        if value < 0:
            raise InvalidVoteCount(value, index=index, field=field)
        return value
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    raise InvalidVoteCount(value, index=index, field=field)


def entry_key(entry: dict[str, Any]) -> tuple[str, str]:
    if entry.get("candidate_id"):
        return ("candidate", str(entry["candidate_id"]))
    return ("poll_option", str(entry["poll_option_id"]))


def prepare_entries(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Validate a batch of entries before any of it is written.

    Raises on the first invalid entry so a bad batch is rejected whole.
    When the same target appears more than once the last occurrence wins.
    """
    prepared: dict[tuple[str, str], dict[str, Any]] = {}

    for index, entry in enumerate(entries):
        candidate_id = entry.get("candidate_id")
        poll_option_id = entry.get("poll_option_id")
        if bool(candidate_id) == bool(poll_option_id):
            raise InvalidEntryTarget(index=index)

        votes = normalize_vote_count(entry.get("votes"), index=index)

        item = {
            "position_id": entry.get("position_id"),
            "candidate_id": candidate_id,
            "poll_option_id": poll_option_id,
            "votes": votes,
            "votes_in_words": entry.get("votes_in_words"),
        }
        prepared[entry_key(item)] = item

    return list(prepared.values())


async def upsert_entry(
    conn: asyncpg.Connection,
    result_sheet_id: UUID | str,
    entry: dict[str, Any],
) -> dict[str, Any]:
    """Insert an entry or replace the votes of the existing one."""
    if entry.get("candidate_id"):
        conflict_target = "(result_sheet_id, candidate_id) WHERE candidate_id IS NOT NULL"
    else:
        conflict_target = "(result_sheet_id, poll_option_id) WHERE poll_option_id IS NOT NULL"

    row = await conn.fetchrow(
        f"""
        INSERT INTO result_sheet_entries (
            result_sheet_id, position_id, candidate_id, poll_option_id,
            votes, votes_in_words
        )
        VALUES ($1, $2, $3, $4, $5, $6)
        ON CONFLICT {conflict_target}
        DO UPDATE SET
            position_id = EXCLUDED.position_id,
            votes = EXCLUDED.votes,
            votes_in_words = EXCLUDED.votes_in_words,
            updated_at = NOW()
        RETURNING *
        """,
        result_sheet_id,
        entry.get("position_id"),
        entry.get("candidate_id"),
        entry.get("poll_option_id"),
        entry["votes"],
        entry.get("votes_in_words"),
    )
    return record_to_dict(row) or {}


async def upsert_entries(
    conn: asyncpg.Connection,
    result_sheet_id: UUID | str,
    entries: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Upsert an already prepared batch. Call inside a transaction."""
    return [await upsert_entry(conn, result_sheet_id, entry) for entry in entries]


async def count_entries(conn: asyncpg.Connection, result_sheet_id: UUID | str) -> int:
    count = await conn.fetchval(
        "SELECT COUNT(*) FROM result_sheet_entries WHERE result_sheet_id = $1",
        result_sheet_id,
    )
    return int(count or 0)


async def get_result_entries(
    conn: asyncpg.Connection,
    result_sheet_id: UUID | str,
) -> list[dict[str, Any]]:
    """Get all vote entries for a result sheet."""
    rows = await conn.fetch(
        """
        SELECT
            rse.*,
            ep.title as position_title,
            c.name as candidate_name,
            c.party as candidate_party,
            po.option_text as poll_option_text
        FROM result_sheet_entries rse
        LEFT JOIN election_positions ep ON rse.position_id = ep.id
        LEFT JOIN candidates c ON rse.candidate_id = c.id
        LEFT JOIN poll_options po ON rse.poll_option_id = po.id
        WHERE rse.result_sheet_id = $1
        ORDER BY rse.votes DESC, rse.id
        """,
        result_sheet_id,
    )
    return records_to_list(rows)
