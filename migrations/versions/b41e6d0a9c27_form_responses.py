"""form_responses

Add response storage for form instances:
form_responses, form_response_history.

Revision ID: b41e6d0a9c27
Revises: 7f3a9c21d4e0
Create Date: 2026-10-19 14:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "b41e6d0a9c27"
down_revision = "7f3a9c21d4e0"
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "form_responses" not in existing_tables:
        op.create_table(
            "form_responses",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("data_json", sa.Text(), nullable=False),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("submitted_by", sa.String(length=100), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["instance_id"], ["form_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_form_response_instance", "form_responses", ["instance_id", "id"])

    if "form_response_history" not in existing_tables:
        op.create_table(
            "form_response_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("response_id", sa.Integer(), nullable=False),
            sa.Column("data_json", sa.Text(), nullable=False),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="DRAFT"),
            sa.Column("change_type", sa.String(length=30), nullable=False,
                      server_default="CREATED"),
            sa.Column("changed_by", sa.String(length=100), nullable=False),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["response_id"], ["form_responses.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_form_response_history_response_id", "form_response_history", ["response_id"],
        )


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "form_response_history" in existing_tables:
        op.drop_index("ix_form_response_history_response_id", table_name="form_response_history")
        op.drop_table("form_response_history")

    if "form_responses" in existing_tables:
        op.drop_index("idx_form_response_instance", table_name="form_responses")
        op.drop_table("form_responses")
