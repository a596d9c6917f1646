"""Create kv_store table

Revision ID: 0a1f3c9d2b7e
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0a1f3c9d2b7e"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """One row per logical namespace, each a whole-snapshot JSON document."""
    op.create_table(
        "kv_store",
        sa.Column("namespace", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("kv_store")
