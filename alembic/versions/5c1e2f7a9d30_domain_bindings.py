"""domain bindings

Revision ID: 5c1e2f7a9d30
Revises:
Create Date: 2026-10-19 09:12:41.508113

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e2f7a9d30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "domain_bindings",
        sa.Column("domain", sa.String(253), primary_key=True),
        sa.Column("did", sa.String(512), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_domain_bindings_did", "domain_bindings", ["did"])


def downgrade() -> None:
    op.drop_index("idx_domain_bindings_did", table_name="domain_bindings")
    op.drop_table("domain_bindings")
