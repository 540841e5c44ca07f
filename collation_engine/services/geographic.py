"""Geographic reference reads.

Regions, constituencies, electoral areas and polling stations are maintained
outside the collation engine; this module only reads them.
"""

from typing import Any
from uuid import UUID

import asyncpg

from collation_engine.core.database import record_to_dict, records_to_list


async def list_regions(conn: asyncpg.Connection) -> list[dict[str, Any]]:
    rows = await conn.fetch("SELECT id, name, code FROM regions ORDER BY name, id")
    return records_to_list(rows)


async def get_polling_station_with_hierarchy(
    conn: asyncpg.Connection,
    station_id: UUID,
) -> dict[str, Any] | None:
    """Get a polling station with full hierarchy information."""
    result = await conn.fetchrow(
        """
        SELECT
            ps.*,
            ea.name as electoral_area_name,
            ea.code as electoral_area_code,
            c.id as constituency_id,
            c.name as constituency_name,
            c.code as constituency_code,
            r.id as region_id,
            r.name as region_name,
            r.code as region_code
        FROM polling_stations ps
        JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        JOIN constituencies c ON ea.constituency_id = c.id
        JOIN regions r ON c.region_id = r.id
        WHERE ps.id = $1
        """,
        station_id,
    )

    data = record_to_dict(result)
    if data:
        data["hierarchy"] = {
            level: {
                "id": data.get(f"{level}_id"),
                "name": data.get(f"{level}_name"),
                "code": data.get(f"{level}_code"),
            }
            for level in ("electoral_area", "constituency", "region")
        }
    return data


async def list_election_stations(
    conn: asyncpg.Connection,
    election_id: UUID,
    *,
    region_id: UUID | None = None,
    constituency_id: UUID | None = None,
    limit: int = 500,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """Active stations of an election with the status of their sheet."""
    query = """
        SELECT
            ps.id,
            ps.name,
            ps.code,
            ea.name as electoral_area_name,
            c.id as constituency_id,
            c.name as constituency_name,
            r.id as region_id,
            r.name as region_name,
            rs.id as result_sheet_id,
            rs.status as result_sheet_status
        FROM election_polling_stations eps
        JOIN polling_stations ps ON eps.polling_station_id = ps.id
        JOIN electoral_areas ea ON ps.electoral_area_id = ea.id
        JOIN constituencies c ON ea.constituency_id = c.id
        JOIN regions r ON c.region_id = r.id
        LEFT JOIN result_sheets rs
            ON rs.polling_station_id = ps.id AND rs.election_id = eps.election_id
        WHERE eps.election_id = $1 AND eps.status = 'active'
    """
    params: list[Any] = [election_id]
    param_count = 1

    if region_id:
        param_count += 1
        query += f" AND r.id = ${param_count}"
        params.append(region_id)

    if constituency_id:
        param_count += 1
        query += f" AND c.id = ${param_count}"
        params.append(constituency_id)

    query += f" ORDER BY ps.code, ps.id LIMIT ${param_count + 1} OFFSET ${param_count + 2}"
    params.extend([limit, offset])

    rows = await conn.fetch(query, *params)
    return records_to_list(rows)
