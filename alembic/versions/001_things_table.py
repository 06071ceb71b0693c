"""Things table: local mirror of BGG board games

Revision ID: 001_things_table
Revises: None
Create Date: 2025-10-12

Adds:
  - things table keyed by the BGG id; numerics stored as strings as BGG emits them
  - last_refreshed_at drives the one-week cache TTL
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001_things_table"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "things",
        sa.Column("id", sa.String(), nullable=False, primary_key=True, comment="BGG thing id"),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("subtype", sa.String(), nullable=True),
        sa.Column("thumbnail", sa.String(), nullable=True),
        sa.Column("image", sa.String(), nullable=True),
        sa.Column("primary_name", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("year_published", sa.String(), nullable=True),
        sa.Column("min_players", sa.String(), nullable=True),
        sa.Column("max_players", sa.String(), nullable=True),
        sa.Column("playing_time", sa.String(), nullable=True),
        sa.Column("min_play_time", sa.String(), nullable=True),
        sa.Column("max_play_time", sa.String(), nullable=True),
        sa.Column("min_age", sa.String(), nullable=True),
        sa.Column("users_rated", sa.String(), nullable=True),
        sa.Column("average", sa.String(), nullable=True),
        sa.Column("bayes_average", sa.String(), nullable=True),
        sa.Column("rank", sa.String(), nullable=True),
        sa.Column("owned", sa.String(), nullable=True),
        sa.Column("average_weight", sa.String(), nullable=True),
        sa.Column("last_refreshed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "inserted_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_things_last_refreshed_at", "things", ["last_refreshed_at"])
    op.create_index("ix_things_type", "things", ["type"])
    op.create_index(
        "ix_things_lower_primary_name",
        "things",
        [sa.text("lower(primary_name)")],
    )


def downgrade() -> None:
    op.drop_index("ix_things_lower_primary_name", table_name="things")
    op.drop_index("ix_things_type", table_name="things")
    op.drop_index("ix_things_last_refreshed_at", table_name="things")
    op.drop_table("things")
