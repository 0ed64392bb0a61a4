"""
Formflow
Form workflow domain models.

Models:
    - FormTemplate:           reusable form definition (sections / items schema)
    - FormTemplateVersion:    immutable published schema snapshot of a template
    - CompletionRequirement:  dependency / phase-gating rule declared on a template
    - FormInstance:           one occurrence of a template attached to a project
    - FormStatusHistory:      immutable, append-only audit record of one status change
    - FormResponse:           one saved answer payload for an instance
    - FormResponseHistory:    change record written alongside every saved response

Architecture:
    FormTemplate ──1:N──▶ FormTemplateVersion
    FormTemplate ──1:N──▶ CompletionRequirement ──N:M──▶ FormTemplate  (depends_on)
    FormTemplate ──1:N──▶ FormInstance ──1:N──▶ FormStatusHistory
    FormInstance ──1:N──▶ FormResponse ──1:N──▶ FormResponseHistory
    Project ──1:N──▶ FormInstance  (one instance per template per project)

Lifecycle states:
    FormInstance:  ACTIVE → IN_PROGRESS → PENDING_REVIEW → COMPLETED → ARCHIVED
                   ON_HOLD reachable from ACTIVE / IN_PROGRESS / PENDING_REVIEW

Only the forward edge (requirement → prerequisite template) is stored.
The inverse "dependent forms" edge is derived from it on read.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import event

from formflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

FORM_STATUSES = (
    "ACTIVE", "IN_PROGRESS", "PENDING_REVIEW",
    "COMPLETED", "ARCHIVED", "ON_HOLD",
)

INITIAL_FORM_STATUS = "ACTIVE"

COMPLETED = "COMPLETED"


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

FORM_TRANSITIONS = {
    "ACTIVE":         ["IN_PROGRESS", "ON_HOLD"],
    "IN_PROGRESS":    ["PENDING_REVIEW", "ON_HOLD", "COMPLETED"],
    "PENDING_REVIEW": ["IN_PROGRESS", "COMPLETED", "ON_HOLD"],
    "COMPLETED":      ["ARCHIVED"],
    "ARCHIVED":       [],
    "ON_HOLD":        ["IN_PROGRESS", "ACTIVE"],
}


def is_valid_transition(current, requested):
    """Return True if FormInstance status transition is valid."""
    return requested in FORM_TRANSITIONS.get(current, [])


def available_transitions(status):
    """Return the statuses reachable from *status* in one step."""
    return list(FORM_TRANSITIONS.get(status, []))


# ── Cycle Detection ──────────────────────────────────────────────────────────


def validate_no_cycle(session, template_id, new_prerequisite_id):
    """
    Check that declaring template_id → depends on → new_prerequisite_id
    does not create a cycle in the template dependency graph.

    Iterative DFS from new_prerequisite_id, walking its existing
    prerequisite chains.  Returns True if safe, False if cycle found.
    """
    if template_id == new_prerequisite_id:
        return False

    visited = set()
    stack = [new_prerequisite_id]

    while stack:
        current = stack.pop()
        if current == template_id:
            return False
        if current in visited:
            continue
        visited.add(current)

        prereqs = (
            session.query(requirement_prerequisites.c.depends_on_template_id)
            .join(
                CompletionRequirement,
                CompletionRequirement.id == requirement_prerequisites.c.requirement_id,
            )
            .filter(CompletionRequirement.template_id == current)
            .all()
        )
        for (prereq_id,) in prereqs:
            stack.append(prereq_id)

    return True


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _loads(raw):
    try:
        return json.loads(raw or "{}")
    except (json.JSONDecodeError, TypeError):
        return {}


# ═════════════════════════════════════════════════════════════════════════════
# Association: requirement → prerequisite template
# ═════════════════════════════════════════════════════════════════════════════

requirement_prerequisites = db.Table(
    "form_requirement_prerequisites",
    db.Column(
        "requirement_id", db.Integer,
        db.ForeignKey("form_completion_requirements.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.Column(
        "depends_on_template_id", db.Integer,
        db.ForeignKey("form_templates.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    ),
)


# ═════════════════════════════════════════════════════════════════════════════
# 1. FormTemplate
# ═════════════════════════════════════════════════════════════════════════════


class FormTemplate(db.Model):
    """
    Reusable form definition. ``version`` points at the current published
    FormTemplateVersion; schema edits publish a new version row.
    """

    __tablename__ = "form_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    schema_json = db.Column(
        db.Text, default="{}",
        comment='JSON: {"sections": [{"id", "title", "items": [{"id", "label", "required"}]}]}',
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    requirements = db.relationship(
        "CompletionRequirement",
        backref="template",
        lazy="dynamic",
        order_by="CompletionRequirement.id",
        cascade="all, delete-orphan",
    )
    versions = db.relationship(
        "FormTemplateVersion",
        backref="template",
        lazy="dynamic",
        order_by="FormTemplateVersion.version",
        cascade="all, delete-orphan",
    )

    @property
    def schema(self) -> dict:
        return _loads(self.schema_json)

    def dependent_templates(self):
        """Templates whose requirements list this template as a prerequisite."""
        return (
            FormTemplate.query
            .join(CompletionRequirement, CompletionRequirement.template_id == FormTemplate.id)
            .join(
                requirement_prerequisites,
                requirement_prerequisites.c.requirement_id == CompletionRequirement.id,
            )
            .filter(requirement_prerequisites.c.depends_on_template_id == self.id)
            .distinct()
            .order_by(FormTemplate.id)
            .all()
        )

    def to_dict(self, include_requirements=False):
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "schema": self.schema,
            "version": self.version,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_requirements:
            result["requirements"] = [r.to_dict() for r in self.requirements]
            result["dependent_template_ids"] = [t.id for t in self.dependent_templates()]
        return result

    def __repr__(self):
        return f"<FormTemplate {self.id}: {self.name} v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. FormTemplateVersion
# ═════════════════════════════════════════════════════════════════════════════


class FormTemplateVersion(db.Model):
    """Published, immutable schema snapshot of a template."""

    __tablename__ = "form_template_versions"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("form_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    schema_json = db.Column(db.Text, default="{}")
    created_by = db.Column(db.String(100), default="system")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("template_id", "version", name="uq_form_template_version"),
    )

    @property
    def schema(self) -> dict:
        return _loads(self.schema_json)

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "version": self.version,
            "schema": self.schema,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<FormTemplateVersion {self.template_id} v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. CompletionRequirement
# ═════════════════════════════════════════════════════════════════════════════


class CompletionRequirement(db.Model):
    """
    Dependency / gating rule declared on a template.

    ``depends_on`` lists prerequisite templates that must be COMPLETED in the
    same project before an instance of ``template`` may complete.
    ``required_for_phase`` marks the template as a hard gate for closing
    the phase its instance is attached to.
    """

    __tablename__ = "form_completion_requirements"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("form_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), default="")
    completion_order = db.Column(
        db.Integer, nullable=True,
        comment="Display / sequencing order within a project",
    )
    required_for_phase = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    depends_on = db.relationship(
        "FormTemplate",
        secondary=requirement_prerequisites,
        order_by="FormTemplate.id",
    )

    @property
    def dependent_forms(self):
        """Inverse edge: templates that depend on this requirement's template."""
        return self.template.dependent_templates()

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "name": self.name,
            "completion_order": self.completion_order,
            "required_for_phase": self.required_for_phase,
            "depends_on": [t.id for t in self.depends_on],
            "dependent_forms": [t.id for t in self.dependent_forms],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<CompletionRequirement {self.id}: template={self.template_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. FormInstance
# ═════════════════════════════════════════════════════════════════════════════


class FormInstance(db.Model):
    """
    One occurrence of a template attached to a project, optionally to a task.
    Status changes only through form_status_service so every value lands
    in FormStatusHistory.
    """

    __tablename__ = "form_instances"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("form_templates.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    template_version = db.Column(
        db.Integer, nullable=True,
        comment="Template version the instance was created from",
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    task_id = db.Column(
        db.Integer, db.ForeignKey("project_tasks.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    status = db.Column(
        db.String(30), nullable=False, default=INITIAL_FORM_STATUS,
        comment="ACTIVE | IN_PROGRESS | PENDING_REVIEW | COMPLETED | ARCHIVED | ON_HOLD",
    )
    response_ref = db.Column(
        db.String(100), nullable=True,
        comment="Id of the latest FormResponse, as text",
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint(
            "project_id", "template_id",
            name="uq_form_instance_project_template",
        ),
        db.CheckConstraint(
            "status IN ('ACTIVE','IN_PROGRESS','PENDING_REVIEW',"
            "'COMPLETED','ARCHIVED','ON_HOLD')",
            name="ck_form_instance_status",
        ),
    )

    # ── Relationships ────────────────────────────────────────────────────
    template = db.relationship(
        "FormTemplate", backref=db.backref("instances", lazy="dynamic"),
    )
    project = db.relationship(
        "Project", backref=db.backref("form_instances", lazy="dynamic"),
    )
    task = db.relationship(
        "ProjectTask", backref=db.backref("form_instances", lazy="dynamic"),
    )
    history = db.relationship(
        "FormStatusHistory",
        backref="instance",
        lazy="dynamic",
        order_by="FormStatusHistory.id",
    )
    responses = db.relationship(
        "FormResponse",
        backref="instance",
        lazy="dynamic",
        order_by="FormResponse.id.desc()",
    )

    def to_dict(self, include_transitions=False):
        result = {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template.name if self.template else None,
            "template_version": self.template_version,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "status": self.status,
            "response_ref": self.response_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_transitions:
            result["available_transitions"] = available_transitions(self.status)
        return result

    def __repr__(self):
        return f"<FormInstance {self.id}: template={self.template_id} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. FormStatusHistory
# ═════════════════════════════════════════════════════════════════════════════


class FormStatusHistory(db.Model):
    """
    Immutable audit record of one status value held by an instance.

    The first row per instance has ``from_status = None`` and records the
    initial ACTIVE status.  ``created_at`` is strictly increasing per
    instance (enforced by the writer in form_status_service).
    """

    __tablename__ = "form_status_history"
    __table_args__ = (
        db.Index("idx_form_history_instance_ts", "instance_id", "created_at"),
        db.Index("idx_form_history_actor", "actor_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("form_instances.id", ondelete="RESTRICT"),
        nullable=False,
    )
    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=False)
    actor_id = db.Column(db.String(100), nullable=False, default="system")
    comments = db.Column(db.Text, nullable=True)
    metadata_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def meta(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        return _loads(self.metadata_json)

    @property
    def created_at_utc(self):
        return as_utc(self.created_at)

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "comments": self.comments,
            "metadata": self.meta,
            "created_at": self.created_at_utc.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<FormStatusHistory {self.id}: {self.from_status} → {self.to_status}>"


@event.listens_for(FormStatusHistory, "before_update")
def _block_history_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError("form_status_history is append-only; rows cannot be updated")


@event.listens_for(FormStatusHistory, "before_delete")
def _block_history_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError("form_status_history is append-only; rows cannot be deleted")


# ═════════════════════════════════════════════════════════════════════════════
# 6. FormResponse
# ═════════════════════════════════════════════════════════════════════════════


class FormResponse(db.Model):
    """
    Answers captured for an instance, keyed by schema item id.

    Every save inserts a new row; the newest row is the one completion
    checks read.  ``version`` is the template version the answers were
    given against.
    """

    __tablename__ = "form_responses"
    __table_args__ = (
        db.Index("idx_form_response_instance", "instance_id", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("form_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    data_json = db.Column(db.Text, nullable=False, default="{}")
    metadata_json = db.Column(db.Text, default="{}")
    version = db.Column(db.Integer, nullable=False, default=1)
    submitted_by = db.Column(db.String(100), nullable=False, default="system")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    history = db.relationship(
        "FormResponseHistory",
        backref="response",
        lazy="dynamic",
        order_by="FormResponseHistory.id",
    )

    @property
    def data(self) -> dict:
        return _loads(self.data_json)

    @property
    def meta(self) -> dict:
        return _loads(self.metadata_json)

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "data": self.data,
            "metadata": self.meta,
            "version": self.version,
            "submitted_by": self.submitted_by,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<FormResponse {self.id}: instance={self.instance_id} v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# 7. FormResponseHistory
# ═════════════════════════════════════════════════════════════════════════════


class FormResponseHistory(db.Model):
    """Append-only record of a response save (payload snapshot + who)."""

    __tablename__ = "form_response_history"

    id = db.Column(db.Integer, primary_key=True)
    response_id = db.Column(
        db.Integer, db.ForeignKey("form_responses.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    data_json = db.Column(db.Text, nullable=False, default="{}")
    metadata_json = db.Column(db.Text, default="{}")
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    change_type = db.Column(
        db.String(30), nullable=False, default="CREATED",
        comment="CREATED (only value written today)",
    )
    changed_by = db.Column(db.String(100), nullable=False, default="system")
    changed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "response_id": self.response_id,
            "data": _loads(self.data_json),
            "metadata": _loads(self.metadata_json),
            "status": self.status,
            "change_type": self.change_type,
            "changed_by": self.changed_by,
            "changed_at": as_utc(self.changed_at).isoformat() if self.changed_at else None,
        }

    def __repr__(self):
        return f"<FormResponseHistory {self.id}: response={self.response_id} {self.change_type}>"


@event.listens_for(FormResponseHistory, "before_update")
def _block_response_history_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError("form_response_history is append-only; rows cannot be updated")
