"""Tags (BGG mechanics) and the thing_tags join table

Revision ID: 003_tags_schema
Revises: 002_schema_versioning
Create Date: 2025-10-15

Adds:
  - tags table (id, name, slug), both name and slug unique
  - thing_tags join table, unique (thing_id, tag_id), cascading FKs
  - things.tags_checksum: sha256 of the tag names at last sync
  - PostgreSQL only: safe-cast expression indexes on the string-encoded
    numerics, plus (rating, lower(name)) for "min rating + sort by name"
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "003_tags_schema"
down_revision: Union[str, None] = "002_schema_versioning"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_INT = r"^[0-9]{1,18}$"
_FLOAT = r"^([0-9]+\.?[0-9]*|\.[0-9]+)$"

# Must compile identically to bggcache.cache.casts or the planner will not
# use these indexes.
_CAST_INDEXES = {
    "ix_things_min_players_int": ("min_players", _INT, "BIGINT"),
    "ix_things_max_players_int": ("max_players", _INT, "BIGINT"),
    "ix_things_min_play_time_int": ("min_play_time", _INT, "BIGINT"),
    "ix_things_max_play_time_int": ("max_play_time", _INT, "BIGINT"),
    "ix_things_rank_int": ("rank", _INT, "BIGINT"),
    "ix_things_average_float": ("average", _FLOAT, "DOUBLE PRECISION"),
    "ix_things_average_weight_float": ("average_weight", _FLOAT, "DOUBLE PRECISION"),
}


def _safe_cast(column: str, pattern: str, sql_type: str) -> str:
    value = f"btrim({column})"
    return f"CASE WHEN {value} ~ '{pattern}' THEN CAST({value} AS {sql_type}) END"


def upgrade() -> None:
    # ------------------------------------------------------------------
    # 1. tags
    # ------------------------------------------------------------------
    op.create_table(
        "tags",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
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
    op.create_index("ix_tags_name", "tags", ["name"], unique=True)
    op.create_index("ix_tags_slug", "tags", ["slug"], unique=True)

    # ------------------------------------------------------------------
    # 2. thing_tags
    # ------------------------------------------------------------------
    op.create_table(
        "thing_tags",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "thing_id",
            sa.String(),
            sa.ForeignKey("things.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "tag_id",
            sa.Uuid(),
            sa.ForeignKey("tags.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "inserted_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("thing_id", "tag_id", name="uq_thing_tags_thing_id_tag_id"),
    )
    op.create_index("ix_thing_tags_thing_id", "thing_tags", ["thing_id"])
    op.create_index("ix_thing_tags_tag_id", "thing_tags", ["tag_id"])

    # ------------------------------------------------------------------
    # 3. things.tags_checksum
    # ------------------------------------------------------------------
    op.add_column("things", sa.Column("tags_checksum", sa.String(), nullable=True))
    op.create_index("ix_things_tags_checksum", "things", ["tags_checksum"])

    # ------------------------------------------------------------------
    # 4. Expression indexes for numeric filters and sorts (PostgreSQL)
    # ------------------------------------------------------------------
    if op.get_bind().dialect.name != "postgresql":
        return
    for name, (column, pattern, sql_type) in _CAST_INDEXES.items():
        op.execute(
            f"CREATE INDEX {name} ON things (({_safe_cast(column, pattern, sql_type)}))"
        )
    rating = _safe_cast("average", _FLOAT, "DOUBLE PRECISION")
    op.execute(
        f"CREATE INDEX ix_things_rating_lower_name ON things (({rating}), lower(primary_name))"
    )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP INDEX IF EXISTS ix_things_rating_lower_name")
        for name in _CAST_INDEXES:
            op.execute(f"DROP INDEX IF EXISTS {name}")

    op.drop_index("ix_things_tags_checksum", table_name="things")
    op.drop_column("things", "tags_checksum")
    op.drop_index("ix_thing_tags_tag_id", table_name="thing_tags")
    op.drop_index("ix_thing_tags_thing_id", table_name="thing_tags")
    op.drop_table("thing_tags")
    op.drop_index("ix_tags_slug", table_name="tags")
    op.drop_index("ix_tags_name", table_name="tags")
    op.drop_table("tags")
