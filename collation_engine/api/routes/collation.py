"""Collation API routes.

Handles result sheets, the collation workflow, aggregation and the live feed.
Rule violations raised by the services are ``CollationError`` subclasses and
are rendered by the application's exception handler.
"""

from typing import Annotated, Any
from uuid import UUID

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from collation_engine.api.deps import get_current_user
from collation_engine.core.database import get_db
from collation_engine.core.responses import success_response
from collation_engine.services import activity_feed
from collation_engine.services import aggregation
from collation_engine.services import consistency
from collation_engine.services import geographic
from collation_engine.services import result_entries
from collation_engine.services import result_sheets as sheets_service

router = APIRouter(prefix="/collation", tags=["Collation"])


# ============================================
# PYDANTIC MODELS
# ============================================


class ResultSheetOpen(BaseModel):
    """Open result sheet request."""

    election_id: UUID
    polling_station_id: UUID


class ResultEntryCreate(BaseModel):
    """Vote count entry. ``votes`` is checked by the entry store."""

    position_id: UUID | None = None
    candidate_id: UUID | None = None
    poll_option_id: UUID | None = None
    votes: Any = Field(..., description="Non-negative whole number of votes")
    votes_in_words: str | None = None


class BulkEntriesRequest(BaseModel):
    """Bulk entries request."""

    entries: list[ResultEntryCreate]
    version: int


class SheetTotalsUpdate(BaseModel):
    """Update sheet totals."""

    version: int
    total_registered_voters: Any = None
    total_votes_cast: Any = None
    total_valid_votes: Any = None
    total_rejected_votes: Any = None


class WorkflowActionRequest(BaseModel):
    """Workflow action request."""

    version: int
    notes: str | None = None


class RejectRequest(BaseModel):
    """Reject request with reason."""

    version: int
    reason: str | None = None


def _not_found(detail: str = "Result sheet not found") -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# ============================================
# RESULT SHEETS
# ============================================


@router.post("/sheets")
async def open_result_sheet(
    request: ResultSheetOpen,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Open the result sheet of a polling station, or return the existing one."""
    sheet = await sheets_service.open_result_sheet(
        conn,
        election_id=request.election_id,
        polling_station_id=request.polling_station_id,
        created_by=current_user["id"],
    )
    if not sheet:
        raise _not_found("Polling station is not active in this election")
    return success_response(data=sheet, message="Result sheet ready")


@router.get("/sheets")
async def list_result_sheets(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    status: str | None = Query(
        None, pattern="^(draft|submitted|verified|approved|certified)$"
    ),
    constituency_id: UUID | None = None,
    region_id: UUID | None = None,
    has_discrepancy: bool | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List result sheets for an election."""
    sheets = await sheets_service.list_result_sheets(
        conn,
        election_id,
        status=status,
        constituency_id=constituency_id,
        region_id=region_id,
        has_discrepancy=has_discrepancy,
        limit=limit,
        offset=offset,
    )
    return success_response(data={"sheets": sheets, "count": len(sheets)})


@router.get("/sheets/{sheet_id}")
async def get_result_sheet(
    sheet_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Get a result sheet with entries, consistency report and history."""
    sheet = await sheets_service.get_sheet_summary(conn, sheet_id)
    if not sheet:
        raise _not_found()
    return success_response(data=sheet)


@router.patch("/sheets/{sheet_id}/totals")
async def update_sheet_totals(
    sheet_id: UUID,
    request: SheetTotalsUpdate,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Update result sheet totals."""
    totals = request.model_dump(exclude_unset=True, exclude={"version"})
    result = await sheets_service.update_totals(
        conn, sheet_id, expected_version=request.version, totals=totals
    )
    return success_response(data=result, message="Totals updated successfully")


# ============================================
# RESULT ENTRIES
# ============================================


@router.post("/sheets/{sheet_id}/entries/bulk")
async def bulk_add_entries(
    sheet_id: UUID,
    request: BulkEntriesRequest,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Bulk add/update vote entries."""
    entries = [e.model_dump() for e in request.entries]
    result = await sheets_service.bulk_add_entries(
        conn, sheet_id, entries, expected_version=request.version
    )
    count = result["entries_updated"]
    return success_response(
        data=result,
        message=f"{count} entries updated successfully",
    )


@router.get("/sheets/{sheet_id}/entries")
async def get_result_entries(
    sheet_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Get all vote entries for a result sheet."""
    if not await sheets_service.get_result_sheet(conn, sheet_id):
        raise _not_found()
    entries = await result_entries.get_result_entries(conn, sheet_id)
    return success_response(data={"entries": entries, "count": len(entries)})


# ============================================
# WORKFLOW
# ============================================


@router.post("/sheets/{sheet_id}/submit")
async def submit_result_sheet(
    sheet_id: UUID,
    request: WorkflowActionRequest,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Submit a result sheet for verification."""
    sheet = await sheets_service.submit_result_sheet(
        conn,
        sheet_id,
        current_user["id"],
        expected_version=request.version,
        notes=request.notes,
    )
    return success_response(data=sheet, message="Result sheet submitted for verification")


@router.post("/sheets/{sheet_id}/verify")
async def verify_result_sheet(
    sheet_id: UUID,
    request: WorkflowActionRequest,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Verify a submitted result sheet."""
    sheet = await sheets_service.verify_result_sheet(
        conn,
        sheet_id,
        current_user["id"],
        expected_version=request.version,
        notes=request.notes,
    )
    return success_response(data=sheet, message="Result sheet verified")


@router.post("/sheets/{sheet_id}/approve")
async def approve_result_sheet(
    sheet_id: UUID,
    request: WorkflowActionRequest,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Approve a verified result sheet."""
    sheet = await sheets_service.approve_result_sheet(
        conn,
        sheet_id,
        current_user["id"],
        expected_version=request.version,
        notes=request.notes,
    )
    return success_response(data=sheet, message="Result sheet approved")


@router.post("/sheets/{sheet_id}/certify")
async def certify_result_sheet(
    sheet_id: UUID,
    request: WorkflowActionRequest,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Certify an approved result sheet (final status)."""
    sheet = await sheets_service.certify_result_sheet(
        conn,
        sheet_id,
        current_user["id"],
        expected_version=request.version,
        notes=request.notes,
    )
    return success_response(data=sheet, message="Result sheet certified")


@router.post("/sheets/{sheet_id}/reject")
async def reject_result_sheet(
    sheet_id: UUID,
    request: RejectRequest,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Reject a result sheet back to draft for correction."""
    sheet = await sheets_service.reject_result_sheet(
        conn,
        sheet_id,
        current_user["id"],
        request.reason or "",
        expected_version=request.version,
    )
    return success_response(data=sheet, message="Result sheet returned for correction")


@router.get("/sheets/{sheet_id}/history")
async def get_workflow_history(
    sheet_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Get the workflow history of a result sheet."""
    if not await sheets_service.get_result_sheet(conn, sheet_id):
        raise _not_found()
    history = await activity_feed.get_workflow_history(conn, sheet_id)
    return success_response(data={"history": history, "count": len(history)})


# ============================================
# AGGREGATION
# ============================================


@router.get("/elections/{election_id}/dashboard")
async def get_collation_dashboard(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    region_id: UUID | None = None,
):
    """Get the collation dashboard for an election."""
    dashboard = await aggregation.get_collation_dashboard(
        conn, election_id, region_id=region_id
    )
    if not dashboard:
        raise _not_found("Election not found")
    return success_response(data=dashboard)


@router.get("/elections/{election_id}/status-breakdown")
async def get_status_breakdown(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    breakdown = await aggregation.get_status_breakdown(conn, election_id)
    return success_response(data=breakdown)


@router.get("/elections/{election_id}/progress")
async def get_submission_progress(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    region_id: UUID | None = None,
    constituency_id: UUID | None = None,
):
    """Get result sheet submission progress."""
    progress = await aggregation.get_submission_progress(
        conn, election_id, region_id=region_id, constituency_id=constituency_id
    )
    return success_response(data=progress)


@router.get("/elections/{election_id}/regional-breakdown")
async def get_regional_breakdown(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    region_id: UUID | None = None,
):
    """Per region collation progress."""
    regions = await aggregation.get_regional_breakdown(
        conn, election_id, region_id=region_id
    )
    return success_response(data={"regions": regions, "count": len(regions)})


@router.get("/elections/{election_id}/top-candidates")
async def get_top_candidates(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    region_id: UUID | None = None,
    limit: int | None = Query(None, ge=1, le=100),
):
    """Candidates ranked by votes on certified sheets."""
    candidates = await aggregation.get_top_candidates(
        conn, election_id, region_id=region_id, limit=limit
    )
    return success_response(data={"candidates": candidates, "count": len(candidates)})


@router.get("/elections/{election_id}/aggregate")
async def aggregate_results(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    level: str = Query(
        "national",
        pattern="^(polling_station|electoral_area|constituency|region|national)$",
    ),
    area_id: UUID | None = None,
):
    """Aggregate certified results to a geographic level."""
    results = await aggregation.aggregate_results(
        conn, election_id, level=level, area_id=area_id
    )
    return success_response(data={"level": level, "results": results, "count": len(results)})


@router.get("/elections/{election_id}/discrepancies")
async def get_discrepancies(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    status: str | None = Query(
        None, pattern="^(draft|submitted|verified|approved|certified)$"
    ),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Sheets whose entries disagree with their reported valid votes."""
    sheets = await consistency.list_discrepancies(
        conn, election_id, status=status, limit=limit, offset=offset
    )
    return success_response(data={"discrepancies": sheets, "count": len(sheets)})


@router.get("/elections/{election_id}/live-feed")
async def get_live_feed(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    limit: int | None = None,
    region_id: UUID | None = None,
):
    """Most recent workflow activity, newest first."""
    feed = await activity_feed.get_activity_feed(
        conn, election_id, limit=limit, region_id=region_id
    )
    return success_response(data={"feed": feed, "count": len(feed)})


# ============================================
# GEOGRAPHY
# ============================================


@router.get("/elections/{election_id}/stations")
async def list_election_stations(
    election_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
    region_id: UUID | None = None,
    constituency_id: UUID | None = None,
    limit: int = Query(500, ge=1, le=2000),
    offset: int = Query(0, ge=0),
):
    """Active polling stations of an election with their sheet status."""
    stations = await geographic.list_election_stations(
        conn,
        election_id,
        region_id=region_id,
        constituency_id=constituency_id,
        limit=limit,
        offset=offset,
    )
    return success_response(data={"stations": stations, "count": len(stations)})


@router.get("/stations/{station_id}")
async def get_polling_station(
    station_id: UUID,
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """Polling station with its electoral area, constituency and region."""
    station = await geographic.get_polling_station_with_hierarchy(conn, station_id)
    if not station:
        raise _not_found("Polling station not found")
    return success_response(data=station)


@router.get("/regions")
async def list_regions(
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    """All regions."""
    regions = await geographic.list_regions(conn)
    return success_response(data={"regions": regions, "count": len(regions)})
