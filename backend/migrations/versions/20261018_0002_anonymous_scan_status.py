"""scan status for anonymous files

Revision ID: 20261018_0002
Revises: 20261018_0001
Create Date: 2026-10-18 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


scan_status = sa.Enum("PENDING", "CLEAN", "INFECTED", "ERROR", "SKIPPED", name="virusscanstatus")


def upgrade() -> None:
    with op.batch_alter_table("anonymous_files") as batch_op:
        batch_op.add_column(sa.Column("virus_scan_status", scan_status, nullable=False, server_default="SKIPPED"))
        batch_op.add_column(sa.Column("scanned_at", sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(sa.Column("threat_name", sa.String(length=255), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("anonymous_files") as batch_op:
        batch_op.drop_column("threat_name")
        batch_op.drop_column("scanned_at")
        batch_op.drop_column("virus_scan_status")
