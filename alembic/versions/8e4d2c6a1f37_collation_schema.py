"""collation_schema

Revision ID: 8e4d2c6a1f37
Revises: 3f1c7a2b9d10
Create Date: 2026-10-18

Result sheet collation:
- Result sheets with versioned approval workflow and stored consistency result
- Vote entries keyed by candidate or poll option
- Append-only workflow log (UPDATE and DELETE refused by trigger)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "8e4d2c6a1f37"
down_revision = "3f1c7a2b9d10"
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=False)


def upgrade() -> None:
    # ============================================
    # RESULT SHEETS
    # ============================================

    op.create_table(
        "result_sheets",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("election_id", UUID, sa.ForeignKey("elections.id"), nullable=False),
        sa.Column("polling_station_id", UUID, sa.ForeignKey("polling_stations.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        # Totals as written on the physical sheet
        sa.Column("total_registered_voters", sa.Integer, nullable=True),
        sa.Column("total_votes_cast", sa.Integer, nullable=True),
        sa.Column("total_valid_votes", sa.Integer, nullable=True),
        sa.Column("total_rejected_votes", sa.Integer, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_by", UUID, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        # Workflow stamps
        sa.Column("submitted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("submitted_by", UUID, nullable=True),
        sa.Column("verified_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("verified_by", UUID, nullable=True),
        sa.Column("approved_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("approved_by", UUID, nullable=True),
        sa.Column("certified_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("certified_by", UUID, nullable=True),
        sa.Column("rejected_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("rejected_by", UUID, nullable=True),
        sa.Column("rejection_reason", sa.Text, nullable=True),
        sa.Column("rejection_count", sa.Integer, nullable=False, server_default="0"),
        # Last consistency check
        sa.Column("calculated_total", sa.Integer, nullable=True),
        sa.Column("has_discrepancy", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("discrepancy_delta", sa.Integer, nullable=True),
        sa.UniqueConstraint("election_id", "polling_station_id", name="uq_result_sheet_station"),
        sa.CheckConstraint(
            "status IN ('draft', 'submitted', 'verified', 'approved', 'certified')",
            name="ck_result_sheet_status",
        ),
        sa.CheckConstraint("version >= 1", name="ck_result_sheet_version"),
        sa.CheckConstraint(
            "(total_registered_voters IS NULL OR total_registered_voters >= 0)"
            " AND (total_votes_cast IS NULL OR total_votes_cast >= 0)"
            " AND (total_valid_votes IS NULL OR total_valid_votes >= 0)"
            " AND (total_rejected_votes IS NULL OR total_rejected_votes >= 0)",
            name="ck_result_sheet_totals",
        ),
    )
    op.create_index("idx_result_sheets_election_status", "result_sheets", ["election_id", "status"])
    op.create_index(
        "idx_result_sheets_discrepancy",
        "result_sheets",
        ["election_id"],
        postgresql_where=sa.text("has_discrepancy"),
    )

    # ============================================
    # RESULT ENTRIES
    # ============================================

    op.create_table(
        "result_sheet_entries",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("result_sheet_id", UUID, sa.ForeignKey("result_sheets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position_id", UUID, sa.ForeignKey("election_positions.id"), nullable=True),
        sa.Column("candidate_id", UUID, sa.ForeignKey("candidates.id"), nullable=True),
        sa.Column("poll_option_id", UUID, sa.ForeignKey("poll_options.id"), nullable=True),
        sa.Column("votes", sa.Integer, nullable=False),
        sa.Column("votes_in_words", sa.String(255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.CheckConstraint("votes >= 0", name="ck_result_entry_votes"),
        sa.CheckConstraint(
            "(candidate_id IS NOT NULL) <> (poll_option_id IS NOT NULL)",
            name="ck_result_entry_target",
        ),
    )
    op.create_index(
        "uq_result_entry_candidate",
        "result_sheet_entries",
        ["result_sheet_id", "candidate_id"],
        unique=True,
        postgresql_where=sa.text("candidate_id IS NOT NULL"),
    )
    op.create_index(
        "uq_result_entry_poll_option",
        "result_sheet_entries",
        ["result_sheet_id", "poll_option_id"],
        unique=True,
        postgresql_where=sa.text("poll_option_id IS NOT NULL"),
    )

    # ============================================
    # WORKFLOW LOG
    # ============================================

    op.create_table(
        "collation_workflow_log",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("sequence", sa.BigInteger, sa.Identity(always=True), nullable=False, unique=True),
        sa.Column("result_sheet_id", UUID, sa.ForeignKey("result_sheets.id"), nullable=False),
        sa.Column("election_id", UUID, sa.ForeignKey("elections.id"), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=False),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("sheet_version", sa.Integer, nullable=False),
        sa.Column("performed_by", UUID, nullable=False),
        sa.Column("performed_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("notes", sa.Text, nullable=True),
        sa.CheckConstraint(
            "action IN ('submitted', 'verified', 'approved', 'certified', 'rejected')",
            name="ck_workflow_log_action",
        ),
    )
    op.create_index(
        "idx_workflow_log_feed",
        "collation_workflow_log",
        ["election_id", sa.text("performed_at DESC"), sa.text("sequence DESC")],
    )
    op.create_index("idx_workflow_log_sheet", "collation_workflow_log", ["result_sheet_id"])

    op.execute("""
        CREATE OR REPLACE FUNCTION refuse_workflow_log_change()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'collation_workflow_log is append-only (% refused)', TG_OP;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER trigger_workflow_log_append_only
        BEFORE UPDATE OR DELETE ON collation_workflow_log
        FOR EACH ROW
        EXECUTE FUNCTION refuse_workflow_log_change();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trigger_workflow_log_append_only ON collation_workflow_log")
    op.execute("DROP FUNCTION IF EXISTS refuse_workflow_log_change()")
    op.drop_table("collation_workflow_log")
    op.drop_table("result_sheet_entries")
    op.drop_table("result_sheets")
