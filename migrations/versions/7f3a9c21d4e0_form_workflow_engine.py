"""form_workflow_engine

Create project structure and form workflow tables:
projects, phases, project_tasks, form_templates, form_template_versions,
form_completion_requirements, form_requirement_prerequisites,
form_instances, form_status_history.

Revision ID: 7f3a9c21d4e0
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7f3a9c21d4e0"
down_revision = None
branch_labels = None
depends_on = None

_FORM_STATUS_CHECK = (
    "status IN ('ACTIVE','IN_PROGRESS','PENDING_REVIEW',"
    "'COMPLETED','ARCHIVED','ON_HOLD')"
)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if "phases" not in existing_tables:
        op.create_table(
            "phases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phases_project_id", "phases", ["project_id"])

    if "project_tasks" not in existing_tables:
        op.create_table(
            "project_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_project_tasks_phase_id", "project_tasks", ["phase_id"])

    if "form_templates" not in existing_tables:
        op.create_table(
            "form_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("schema_json", sa.Text(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if "form_template_versions" not in existing_tables:
        op.create_table(
            "form_template_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("schema_json", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["form_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("template_id", "version", name="uq_form_template_version"),
        )
        op.create_index(
            "ix_form_template_versions_template_id", "form_template_versions", ["template_id"],
        )

    if "form_completion_requirements" not in existing_tables:
        op.create_table(
            "form_completion_requirements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=True),
            sa.Column("completion_order", sa.Integer(), nullable=True),
            sa.Column("required_for_phase", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["form_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_form_completion_requirements_template_id",
            "form_completion_requirements", ["template_id"],
        )

    if "form_requirement_prerequisites" not in existing_tables:
        op.create_table(
            "form_requirement_prerequisites",
            sa.Column("requirement_id", sa.Integer(), nullable=False),
            sa.Column("depends_on_template_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(
                ["requirement_id"], ["form_completion_requirements.id"], ondelete="CASCADE",
            ),
            sa.ForeignKeyConstraint(
                ["depends_on_template_id"], ["form_templates.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("requirement_id", "depends_on_template_id"),
        )
        op.create_index(
            "ix_form_requirement_prerequisites_depends_on_template_id",
            "form_requirement_prerequisites", ["depends_on_template_id"],
        )

    if "form_instances" not in existing_tables:
        op.create_table(
            "form_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("template_version", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="ACTIVE"),
            sa.Column("response_ref", sa.String(length=100), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["form_templates.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["task_id"], ["project_tasks.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "project_id", "template_id", name="uq_form_instance_project_template",
            ),
            sa.CheckConstraint(_FORM_STATUS_CHECK, name="ck_form_instance_status"),
        )
        op.create_index("ix_form_instances_template_id", "form_instances", ["template_id"])
        op.create_index("ix_form_instances_project_id", "form_instances", ["project_id"])
        op.create_index("ix_form_instances_task_id", "form_instances", ["task_id"])

    if "form_status_history" not in existing_tables:
        op.create_table(
            "form_status_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=30), nullable=True),
            sa.Column("to_status", sa.String(length=30), nullable=False),
            sa.Column("actor_id", sa.String(length=100), nullable=False),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["instance_id"], ["form_instances.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "idx_form_history_instance_ts", "form_status_history", ["instance_id", "created_at"],
        )
        op.create_index("idx_form_history_actor", "form_status_history", ["actor_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "form_status_history" in existing_tables:
        op.drop_index("idx_form_history_actor", table_name="form_status_history")
        op.drop_index("idx_form_history_instance_ts", table_name="form_status_history")
        op.drop_table("form_status_history")

    if "form_instances" in existing_tables:
        op.drop_index("ix_form_instances_task_id", table_name="form_instances")
        op.drop_index("ix_form_instances_project_id", table_name="form_instances")
        op.drop_index("ix_form_instances_template_id", table_name="form_instances")
        op.drop_table("form_instances")

    if "form_requirement_prerequisites" in existing_tables:
        op.drop_index(
            "ix_form_requirement_prerequisites_depends_on_template_id",
            table_name="form_requirement_prerequisites",
        )
        op.drop_table("form_requirement_prerequisites")

    if "form_completion_requirements" in existing_tables:
        op.drop_index(
            "ix_form_completion_requirements_template_id",
            table_name="form_completion_requirements",
        )
        op.drop_table("form_completion_requirements")

    if "form_template_versions" in existing_tables:
        op.drop_index(
            "ix_form_template_versions_template_id", table_name="form_template_versions",
        )
        op.drop_table("form_template_versions")

    if "form_templates" in existing_tables:
        op.drop_table("form_templates")

    if "project_tasks" in existing_tables:
        op.drop_index("ix_project_tasks_phase_id", table_name="project_tasks")
        op.drop_table("project_tasks")

    if "phases" in existing_tables:
        op.drop_index("ix_phases_project_id", table_name="phases")
        op.drop_table("phases")

    if "projects" in existing_tables:
        op.drop_table("projects")
