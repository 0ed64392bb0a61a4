"""
Formflow
Project structure models — the minimal collaborators the form engine joins through.

Models:
    - Project:      a production job (vehicle wrap / sign build)
    - Phase:        ordered stage of a project
    - ProjectTask:  unit of work inside a phase; forms may be attached to it

Architecture:
    Project ──1:N──▶ Phase ──1:N──▶ ProjectTask
    Project ──1:N──▶ FormInstance ◀──N:1── ProjectTask (optional)
"""

from datetime import datetime, timezone

from formflow.models import db


class Project(db.Model):
    """A production job that form instances are attached to."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=True)
    name = db.Column(db.String(200), nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    phases = db.relationship(
        "Phase", backref="project", lazy="dynamic",
        order_by="Phase.sort_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


class Phase(db.Model):
    """Ordered stage of a project (design, print, install, ...)."""

    __tablename__ = "phases"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    tasks = db.relationship(
        "ProjectTask", backref="phase", lazy="dynamic",
        order_by="ProjectTask.sort_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<Phase {self.id}: {self.name}>"


class ProjectTask(db.Model):
    """Unit of work inside a phase."""

    __tablename__ = "project_tasks"

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "name": self.name,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<ProjectTask {self.id}: {self.name}>"
