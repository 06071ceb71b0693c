"""Schema versioning on things

Revision ID: 002_schema_versioning
Revises: 001_things_table
Create Date: 2025-10-14

Adds:
  - things.schema_version (nullable int). Rows below the version the code
    expects are refreshed regardless of last_refreshed_at; existing rows
    stay NULL so they are picked up on their next request.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "002_schema_versioning"
down_revision: Union[str, None] = "001_things_table"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "things",
        sa.Column("schema_version", sa.INTEGER(), nullable=True),
    )
    op.create_index("ix_things_schema_version", "things", ["schema_version"])


def downgrade() -> None:
    op.drop_index("ix_things_schema_version", table_name="things")
    op.drop_column("things", "schema_version")
