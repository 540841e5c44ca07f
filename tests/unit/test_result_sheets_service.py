"""Unit tests for result sheets service."""

import pytest

from collation_engine.core.errors import (
    InvalidTransition,
    InvalidVoteCount,
    MissingRejectionReason,
    SheetLocked,
    SheetNotEditable,
    SheetNotFound,
    StaleState,
)
from collation_engine.services import result_sheets as sheets_service

REASON = "Votes for candidate B do not match the pink sheet"


def _entry_row(candidate, votes):
    return {
        "id": f"entry-{candidate}",
        "candidate_id": candidate,
        "poll_option_id": None,
        "position_id": "pos-1",
        "votes": votes,
    }


def _writes(statements):
    return [s for s in statements if s.startswith(("UPDATE", "INSERT", "DELETE"))]


# ============================================
# OPEN / READ
# ============================================


@pytest.mark.asyncio
async def test_open_sheet_for_inactive_station(conn, user_id):
    conn.fetchval.return_value = False

    sheet = await sheets_service.open_result_sheet(
        conn, election_id="e-1", polling_station_id="ps-1", created_by=user_id
    )

    assert sheet is None
    conn.fetchrow.assert_not_awaited()


@pytest.mark.asyncio
async def test_open_sheet_returns_existing(conn, make_sheet, user_id):
    existing = make_sheet(version=4)
    conn.fetchval.return_value = True
    conn.fetchrow.side_effect = [None, existing]

    sheet = await sheets_service.open_result_sheet(
        conn,
        election_id=existing["election_id"],
        polling_station_id=existing["polling_station_id"],
        created_by=user_id,
    )

    assert sheet == existing
    insert_query = conn.fetchrow.await_args_list[0].args[0]
    assert "ON CONFLICT (election_id, polling_station_id) DO NOTHING" in insert_query


@pytest.mark.asyncio
async def test_sheet_summary(conn, make_sheet):
    sheet = make_sheet(status="submitted", total_valid_votes=100)
    conn.fetchrow.return_value = sheet
    conn.fetch.side_effect = [
        [
            {**_entry_row("a", 50), "position_title": "President"},
            {**_entry_row("b", 40), "position_title": "President"},
            {
                "id": "entry-yes",
                "candidate_id": None,
                "poll_option_id": "yes",
                "position_id": None,
                "position_title": None,
                "votes": 10,
            },
        ],
        [{"id": "ev-1", "action": "submitted"}],
    ]

    summary = await sheets_service.get_sheet_summary(conn, sheet["id"])

    assert summary["total_entries"] == 3
    assert summary["consistency"]["discrepancy"] is True
    assert summary["allowed_actions"] == ["verify", "reject"]
    assert summary["workflow_history"][0]["action"] == "submitted"
    by_position = summary["entries_by_position"]
    assert sorted(by_position) == ["Poll", "President"]
    assert [e["id"] for e in by_position["President"]] == ["entry-a", "entry-b"]
    assert [e["poll_option_id"] for e in by_position["Poll"]] == ["yes"]


@pytest.mark.asyncio
async def test_sheet_summary_missing(conn):
    assert await sheets_service.get_sheet_summary(conn, "nope") == {}


# ============================================
# BULK ENTRIES
# ============================================


class TestBulkAddEntries:
    """Test bulk entry upsert on a sheet."""

    @pytest.mark.asyncio
    async def test_upserts_batch_and_bumps_version(self, conn, make_sheet, executed_sql):
        sheet = make_sheet(total_valid_votes=100)
        conn.fetchrow.side_effect = [
            sheet,
            _entry_row("a", 70),
            _entry_row("b", 50),
            {**sheet, "version": 2},
        ]
        conn.fetch.return_value = [_entry_row("a", 70), _entry_row("b", 50)]

        result = await sheets_service.bulk_add_entries(
            conn,
            sheet["id"],
            [{"candidate_id": "a", "votes": 70}, {"candidate_id": "b", "votes": 50}],
            expected_version=1,
        )

        assert result["entries_updated"] == 2
        assert result["sheet"]["version"] == 2
        assert result["consistency"]["delta"] == 20
        assert result["sheet"]["has_discrepancy"] is True
        assert conn.commits == 1

        statements = executed_sql(conn)
        assert statements[0].endswith("FOR UPDATE")
        inserts = [s for s in statements if s.startswith("INSERT INTO result_sheet_entries")]
        assert len(inserts) == 2
        assert all("ON CONFLICT" in s for s in inserts)

    @pytest.mark.asyncio
    async def test_replay_sends_identical_upserts(self, conn, make_sheet):
        sheet = make_sheet()
        batch = [
            {"candidate_id": "a", "votes": 70},
            {"poll_option_id": "yes", "votes": 5},
            {"candidate_id": "a", "votes": 72},
        ]
        conn.fetchrow.side_effect = [
            sheet,
            _entry_row("a", 72),
            {"id": "entry-yes"},
            {**sheet, "version": 2},
            {**sheet, "version": 2},
            _entry_row("a", 72),
            {"id": "entry-yes"},
            {**sheet, "version": 3},
        ]

        first = await sheets_service.bulk_add_entries(conn, sheet["id"], batch)
        second = await sheets_service.bulk_add_entries(conn, sheet["id"], batch)

        upserts = [
            call.args[1:]
            for call in conn.fetchrow.await_args_list
            if call.args[0].strip().startswith("INSERT INTO result_sheet_entries")
        ]
        assert len(upserts) == 4
        assert upserts[:2] == upserts[2:]
        assert upserts[0][4] == 72
        assert first["entries_updated"] == second["entries_updated"] == 2
        assert second["sheet"]["version"] == 3

    @pytest.mark.asyncio
    async def test_certified_sheet_is_locked_without_writes(self, conn, make_sheet, executed_sql):
        conn.fetchrow.side_effect = [make_sheet(status="certified", version=5)]

        with pytest.raises(SheetLocked):
            await sheets_service.bulk_add_entries(
                conn, "rs-1", [{"candidate_id": "a", "votes": 1}], expected_version=5
            )

        assert _writes(executed_sql(conn)) == []
        assert conn.rollbacks == 1

    @pytest.mark.asyncio
    async def test_stale_version(self, conn, make_sheet, executed_sql):
        conn.fetchrow.side_effect = [make_sheet(version=3)]

        with pytest.raises(StaleState) as exc_info:
            await sheets_service.bulk_add_entries(
                conn, "rs-1", [{"candidate_id": "a", "votes": 1}], expected_version=2
            )

        assert exc_info.value.details["current_version"] == 3
        assert _writes(executed_sql(conn)) == []

    @pytest.mark.asyncio
    async def test_submitted_sheet_not_editable(self, conn, make_sheet):
        conn.fetchrow.side_effect = [make_sheet(status="submitted", version=2)]

        with pytest.raises(SheetNotEditable):
            await sheets_service.bulk_add_entries(conn, "rs-1", [{"candidate_id": "a", "votes": 1}])

    @pytest.mark.asyncio
    async def test_invalid_entry_rejects_whole_batch(self, conn, make_sheet, executed_sql):
        conn.fetchrow.side_effect = [make_sheet()]

        with pytest.raises(InvalidVoteCount) as exc_info:
            await sheets_service.bulk_add_entries(
                conn,
                "rs-1",
                [{"candidate_id": "a", "votes": 10}, {"candidate_id": "b", "votes": 2.5}],
            )

        assert exc_info.value.details["index"] == 1
        assert _writes(executed_sql(conn)) == []

    @pytest.mark.asyncio
    async def test_missing_sheet(self, conn):
        conn.fetchrow.side_effect = [None]

        with pytest.raises(SheetNotFound):
            await sheets_service.bulk_add_entries(conn, "rs-x", [])


# ============================================
# TOTALS
# ============================================


class TestUpdateTotals:
    @pytest.mark.asyncio
    async def test_updates_totals_and_checks_consistency(self, conn, make_sheet):
        sheet = make_sheet()
        conn.fetchrow.side_effect = [sheet, {**sheet, "version": 2, "total_valid_votes": 100}]
        conn.fetch.return_value = [_entry_row("a", 100)]

        result = await sheets_service.update_totals(
            conn,
            sheet["id"],
            expected_version=1,
            totals={"total_valid_votes": 100.0, "total_rejected_votes": None, "bogus": 3},
        )

        query, *params = conn.fetchrow.await_args_list[1].args
        assert "total_valid_votes = $3" in query
        assert "total_rejected_votes = $4" in query
        assert "bogus" not in query
        assert params == [sheet["id"], 1, 100, None]
        assert result["sheet"]["version"] == 2
        assert result["consistency"]["discrepancy"] is False

    @pytest.mark.asyncio
    async def test_negative_total_refused(self, conn, make_sheet, executed_sql):
        conn.fetchrow.side_effect = [make_sheet()]

        with pytest.raises(InvalidVoteCount) as exc_info:
            await sheets_service.update_totals(
                conn, "rs-1", expected_version=1, totals={"total_votes_cast": -3}
            )

        assert exc_info.value.details["field"] == "total_votes_cast"
        assert _writes(executed_sql(conn)) == []

    @pytest.mark.asyncio
    async def test_certified_totals_locked(self, conn, make_sheet):
        conn.fetchrow.side_effect = [make_sheet(status="certified", version=5)]

        with pytest.raises(SheetLocked):
            await sheets_service.update_totals(
                conn, "rs-1", expected_version=5, totals={"total_valid_votes": 1}
            )


# ============================================
# WORKFLOW
# ============================================


class TestTransitions:
    """Test workflow transitions against the connection double."""

    @pytest.mark.asyncio
    async def test_submit_runs_consistency_and_logs_event(self, conn, make_sheet, user_id, executed_sql):
        sheet = make_sheet(total_valid_votes=100)
        submitted = {**sheet, "status": "submitted", "version": 2, "submitted_by": user_id}
        conn.fetchval.return_value = 2
        conn.fetchrow.side_effect = [sheet, submitted, {"id": "ev-1"}]
        conn.fetch.return_value = [_entry_row("a", 70), _entry_row("b", 50)]

        result = await sheets_service.submit_result_sheet(
            conn, sheet["id"], user_id, expected_version=1
        )

        assert result["status"] == "submitted"
        assert result["version"] == 2
        assert result["consistency"]["delta"] == 20
        assert result["has_discrepancy"] is True

        update_query, *update_params = conn.fetchrow.await_args_list[1].args
        assert "submitted_at = NOW()" in update_query
        assert "WHERE id = $1 AND version = $2" in update_query
        assert update_params == [sheet["id"], 1, "submitted", user_id]

        event_params = conn.fetchrow.await_args_list[2].args[1:]
        assert event_params[2:6] == ("submitted", "draft", "submitted", 2)

        events = [s for s in executed_sql(conn) if s.startswith("INSERT INTO collation_workflow_log")]
        assert len(events) == 1
        assert conn.commits == 1

    @pytest.mark.asyncio
    async def test_submit_without_entries(self, conn, make_sheet, user_id, executed_sql):
        conn.fetchval.return_value = 0
        conn.fetchrow.side_effect = [make_sheet()]

        with pytest.raises(InvalidTransition) as exc_info:
            await sheets_service.submit_result_sheet(conn, "rs-1", user_id, expected_version=1)

        assert "violated_precondition" in exc_info.value.details
        assert _writes(executed_sql(conn)) == []

    @pytest.mark.asyncio
    async def test_verify_notes_on_event(self, conn, make_sheet, user_id):
        sheet = make_sheet(status="submitted", version=2)
        conn.fetchrow.side_effect = [sheet, {**sheet, "status": "verified", "version": 3}, {"id": "ev"}]

        await sheets_service.verify_result_sheet(
            conn, sheet["id"], user_id, expected_version=2, notes="Checked against photo"
        )

        event_params = conn.fetchrow.await_args_list[2].args[1:]
        assert event_params[2] == "verified"
        assert event_params[-1] == "Checked against photo"
        conn.fetchval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reject_resets_pipeline_and_logs_reason(self, conn, make_sheet, user_id, executed_sql):
        sheet = make_sheet(
            status="approved",
            version=4,
            submitted_by="u-agent",
            verified_by="u-verifier",
            approved_by="u-approver",
        )
        rejected = {**sheet, "status": "draft", "version": 5, "rejection_count": 1}
        conn.fetchrow.side_effect = [sheet, rejected, {"id": "ev"}]

        result = await sheets_service.reject_result_sheet(
            conn, sheet["id"], user_id, f"  {REASON} ", expected_version=4
        )

        assert result["status"] == "draft"

        update_query, *update_params = conn.fetchrow.await_args_list[1].args
        assert "rejected_at = NOW()" in update_query
        assert "rejection_count = rejection_count + 1" in update_query
        for column in ("submitted_at", "submitted_by", "verified_at", "verified_by", "approved_at", "approved_by"):
            assert f"{column} = $" in update_query
        assert update_params[:2] == [sheet["id"], 4]
        assert update_params[2:8] == [None] * 6
        assert update_params[8:] == ["draft", user_id, REASON]

        events = [s for s in executed_sql(conn) if s.startswith("INSERT INTO collation_workflow_log")]
        assert len(events) == 1
        event_params = conn.fetchrow.await_args_list[2].args[1:]
        assert event_params[2:6] == ("rejected", "approved", "draft", 5)
        assert event_params[-1] == REASON

    @pytest.mark.asyncio
    async def test_reject_without_reason(self, conn, make_sheet, user_id, executed_sql):
        conn.fetchrow.side_effect = [make_sheet(status="verified", version=3)]

        with pytest.raises(MissingRejectionReason):
            await sheets_service.reject_result_sheet(conn, "rs-1", user_id, "bad", expected_version=3)

        assert _writes(executed_sql(conn)) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "action",
        ["submit_result_sheet", "verify_result_sheet", "approve_result_sheet", "certify_result_sheet"],
    )
    async def test_stale_transition_writes_nothing(self, conn, make_sheet, user_id, executed_sql, action):
        conn.fetchval.return_value = 3
        conn.fetchrow.side_effect = [make_sheet(status="approved", version=7)]

        with pytest.raises(StaleState):
            await getattr(sheets_service, action)(conn, "rs-1", user_id, expected_version=6)

        assert _writes(executed_sql(conn)) == []
        assert conn.rollbacks == 1

    @pytest.mark.asyncio
    async def test_certified_sheet_cannot_be_rejected(self, conn, make_sheet, user_id, executed_sql):
        conn.fetchrow.side_effect = [make_sheet(status="certified", version=5)]

        with pytest.raises(SheetLocked):
            await sheets_service.reject_result_sheet(conn, "rs-1", user_id, REASON, expected_version=5)

        assert _writes(executed_sql(conn)) == []

    @pytest.mark.asyncio
    async def test_lost_version_race_is_stale(self, conn, make_sheet, user_id):
        sheet = make_sheet(status="verified", version=3)
        conn.fetchrow.side_effect = [sheet, None]
        conn.fetchval.return_value = 4

        with pytest.raises(StaleState) as exc_info:
            await sheets_service.approve_result_sheet(conn, sheet["id"], user_id, expected_version=3)

        assert exc_info.value.details["current_version"] == 4
