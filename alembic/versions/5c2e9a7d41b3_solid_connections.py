"""solid connections

Revision ID: 5c2e9a7d41b3
Revises:
Create Date: 2026-10-18 10:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c2e9a7d41b3"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "solid_connections",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("web_id", sa.String(1024), nullable=False),
        sa.Column("issuer", sa.String(1024), nullable=False),
        sa.Column("encrypted_tokens", sa.Text, nullable=False),
        sa.Column("scopes", sa.JSON, nullable=False),
        sa.Column("id_token_claims", sa.JSON, nullable=True),
        sa.Column("token_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resource_uris", sa.JSON, nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_solid_connections_web_id", "solid_connections", ["web_id"])


def downgrade() -> None:
    op.drop_index("ix_solid_connections_web_id", table_name="solid_connections")
    op.drop_table("solid_connections")
