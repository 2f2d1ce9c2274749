"""remember deleted recurring occurrences so sweeps do not recreate them

Revision ID: 202601121000
Revises: 202601050900
Create Date: 2026-01-12 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601121000"
down_revision = "202601050900"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "skipped_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "recurring_rule_id",
            sa.Integer(),
            sa.ForeignKey("recurring_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("occurrence_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "recurring_rule_id", "occurrence_date", name="uq_skip_rule_occurrence"
        ),
    )


def downgrade():
    op.drop_table("skipped_occurrences")
