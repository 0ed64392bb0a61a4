"""
Form Catalog Service — templates, completion requirements and instance creation.

Business logic for:
    - Template creation:        template row + published version 1
    - Version publishing:       immutable FormTemplateVersion, bumps template.version
    - Requirement authoring:    prerequisite edges with cycle detection
    - Instance creation:        one instance per template per project, initial
                                ACTIVE status recorded in history
"""

import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from formflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from formflow.models import db
from formflow.models.form import (
    INITIAL_FORM_STATUS,
    CompletionRequirement,
    FormInstance,
    FormTemplate,
    FormTemplateVersion,
    validate_no_cycle,
)
from formflow.models.project import Phase, Project, ProjectTask
from formflow.services.form_status_service import append_history

logger = logging.getLogger(__name__)


def _get_or_404(model, pk, label=None):
    obj = db.session.get(model, pk)
    if not obj:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def _commit(operation: str):
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Commit failed during %s", operation)
        raise PersistenceError(operation, exc) from exc


def _dump_schema(schema) -> str:
    if schema is None:
        return "{}"
    if not isinstance(schema, dict):
        raise ValidationError("schema must be an object", details={"schema": "expected object"})
    return json.dumps(schema)


# ── Templates ────────────────────────────────────────────────────────────────


def create_template(name: str, *, description: str = "", schema: dict | None = None,
                    actor_id: str = "system") -> FormTemplate:
    """Create a template and publish its first version."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    schema_json = _dump_schema(schema)

    template = FormTemplate(
        name=name,
        description=description or "",
        schema_json=schema_json,
        version=1,
    )
    db.session.add(template)
    db.session.flush()
    db.session.add(FormTemplateVersion(
        template_id=template.id,
        version=1,
        schema_json=schema_json,
        created_by=actor_id,
    ))
    _commit("create_template")
    logger.info("Form template %s created: %s", template.id, template.name)
    return template


def publish_template_version(template_id: int, schema: dict, *,
                             actor_id: str = "system") -> FormTemplateVersion:
    """Publish a new immutable schema version; existing instances keep theirs."""
    template = _get_or_404(FormTemplate, template_id)
    schema_json = _dump_schema(schema)

    next_version = template.version + 1
    version = FormTemplateVersion(
        template_id=template.id,
        version=next_version,
        schema_json=schema_json,
        created_by=actor_id,
    )
    template.version = next_version
    template.schema_json = schema_json
    db.session.add(version)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("FormTemplateVersion", "version", str(next_version)) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError("publish_template_version", exc) from exc
    logger.info("Form template %s published v%d", template.id, next_version)
    return version


# ── Completion requirements ──────────────────────────────────────────────────


def add_requirement(
    template_id: int,
    *,
    depends_on: list[int] | None = None,
    completion_order: int | None = None,
    required_for_phase: bool = False,
    name: str = "",
) -> CompletionRequirement:
    """
    Declare a completion requirement on a template.

    Each prerequisite is checked against the existing template graph; an
    edge that would close a cycle is rejected with ConflictError and
    nothing is written.
    """
    template = _get_or_404(FormTemplate, template_id)
    prereq_ids = list(dict.fromkeys(depends_on or []))
    if completion_order is not None and (
        isinstance(completion_order, bool) or not isinstance(completion_order, int)
    ):
        raise ValidationError(
            "completion_order must be an integer",
            details={"completion_order": "expected integer"},
        )

    prereqs = []
    for prereq_id in prereq_ids:
        prereq = _get_or_404(FormTemplate, prereq_id)
        if not validate_no_cycle(db.session, template.id, prereq.id):
            raise ConflictError("CompletionRequirement", "depends_on", str(prereq.id))
        prereqs.append(prereq)

    requirement = CompletionRequirement(
        template_id=template.id,
        name=name or "",
        completion_order=completion_order,
        required_for_phase=bool(required_for_phase),
    )
    requirement.depends_on = prereqs
    db.session.add(requirement)
    _commit("add_requirement")
    logger.info(
        "Requirement %s added to template %s (depends_on=%s, gate=%s)",
        requirement.id, template.id, prereq_ids, requirement.required_for_phase,
    )
    return requirement


def remove_requirement(requirement_id: int) -> None:
    requirement = _get_or_404(CompletionRequirement, requirement_id)
    db.session.delete(requirement)
    _commit("remove_requirement")
    logger.info("Requirement %s removed", requirement_id)


# ── Instances ────────────────────────────────────────────────────────────────


def create_instance(
    template_id: int,
    project_id: int,
    *,
    task_id: int | None = None,
    actor_id: str = "system",
) -> FormInstance:
    """
    Attach a template to a project (and optionally one of its tasks).

    The initial ACTIVE status is written to history in the same
    transaction, so every status an instance ever held is recorded.
    """
    template = _get_or_404(FormTemplate, template_id)
    project = _get_or_404(Project, project_id)
    if task_id is not None:
        task = _get_or_404(ProjectTask, task_id)
        phase = db.session.get(Phase, task.phase_id)
        if phase is None or phase.project_id != project.id:
            raise ValidationError(
                "Task does not belong to the project",
                details={"task_id": task_id, "project_id": project.id},
            )

    existing = db.session.execute(
        select(FormInstance.id).where(
            FormInstance.project_id == project.id,
            FormInstance.template_id == template.id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("FormInstance", "template_id", str(template.id))

    instance = FormInstance(
        template_id=template.id,
        template_version=template.version,
        project_id=project.id,
        task_id=task_id,
        status=INITIAL_FORM_STATUS,
    )
    try:
        db.session.add(instance)
        db.session.flush()
        append_history(
            instance_id=instance.id,
            from_status=None,
            to_status=INITIAL_FORM_STATUS,
            actor_id=actor_id,
        )
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("FormInstance", "template_id", str(template.id)) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Form instance creation failed")
        raise PersistenceError("create_instance", exc) from exc

    logger.info(
        "Form instance %s created from template %s", instance.id, template.id,
        extra={"instance_id": instance.id, "project_id": project.id, "actor_id": actor_id,
               "event_type": "form_instance.created"},
    )
    return instance


def get_instance(instance_id: int) -> FormInstance:
    return _get_or_404(FormInstance, instance_id)


def get_template(template_id: int) -> FormTemplate:
    return _get_or_404(FormTemplate, template_id)
