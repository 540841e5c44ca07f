"""reference_schema

Revision ID: 3f1c7a2b9d10
Revises:
Create Date: 2026-10-18

Reference data read by the collation engine:
- Geographic hierarchy (regions, constituencies, electoral areas, polling stations)
- Elections, positions, candidates and poll options
- Stations participating in each election
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f1c7a2b9d10"
down_revision = None
branch_labels = None
depends_on = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=False),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # ============================================
    # GEOGRAPHIC HIERARCHY
    # ============================================

    op.create_table(
        "regions",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_regions_code", "regions", ["code"])

    op.create_table(
        "constituencies",
        _id_column(),
        sa.Column("region_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("regions.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_constituencies_region", "constituencies", ["region_id"])

    op.create_table(
        "electoral_areas",
        _id_column(),
        sa.Column("constituency_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("constituencies.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_electoral_areas_constituency", "electoral_areas", ["constituency_id"])

    op.create_table(
        "polling_stations",
        _id_column(),
        sa.Column("electoral_area_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("electoral_areas.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(50), nullable=False),
        sa.Column("registered_voters", sa.Integer, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_polling_stations_area", "polling_stations", ["electoral_area_id"])
    op.create_index("idx_polling_stations_code", "polling_stations", ["code"], unique=True)

    # ============================================
    # ELECTIONS
    # ============================================

    op.create_table(
        "elections",
        _id_column(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), server_default="draft"),
        *_timestamps(),
    )

    op.create_table(
        "election_positions",
        _id_column(),
        sa.Column("election_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("elections.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("display_order", sa.Integer, server_default="0"),
        *_timestamps(),
    )
    op.create_index("idx_election_positions_election", "election_positions", ["election_id"])

    op.create_table(
        "candidates",
        _id_column(),
        sa.Column("election_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("elections.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("election_positions.id", ondelete="CASCADE"), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("party", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_candidates_election", "candidates", ["election_id"])

    op.create_table(
        "poll_options",
        _id_column(),
        sa.Column("election_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("elections.id", ondelete="CASCADE"), nullable=False),
        sa.Column("option_text", sa.String(500), nullable=False),
        sa.Column("display_order", sa.Integer, server_default="0"),
        *_timestamps(),
    )
    op.create_index("idx_poll_options_election", "poll_options", ["election_id"])

    op.create_table(
        "election_polling_stations",
        _id_column(),
        sa.Column("election_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("elections.id", ondelete="CASCADE"), nullable=False),
        sa.Column("polling_station_id", postgresql.UUID(as_uuid=False), sa.ForeignKey("polling_stations.id"), nullable=False),
        sa.Column("status", sa.String(20), server_default="active"),
        *_timestamps(),
        sa.UniqueConstraint("election_id", "polling_station_id", name="uq_election_polling_station"),
    )
    op.create_index("idx_eps_election_status", "election_polling_stations", ["election_id", "status"])


def downgrade() -> None:
    op.drop_table("election_polling_stations")
    op.drop_table("poll_options")
    op.drop_table("candidates")
    op.drop_table("election_positions")
    op.drop_table("elections")
    op.drop_table("polling_stations")
    op.drop_table("electoral_areas")
    op.drop_table("constituencies")
    op.drop_table("regions")
