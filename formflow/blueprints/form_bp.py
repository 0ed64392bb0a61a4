"""
Form Workflow Blueprint.

Endpoints:
  FormTemplate:           POST /forms/templates, GET /forms/templates/<id>
                          POST /forms/templates/<id>/versions
  CompletionRequirement:  POST /forms/templates/<id>/requirements
                          DELETE /forms/requirements/<id>
  FormInstance:           POST /forms/instances, GET /forms/instances/<id>
                          GET  /forms/instances/<id>/history
                          POST /forms/instances/<id>/responses
                          GET  /forms/instances/<id>/responses
                          PATCH /forms/instances/<id>/status
                          PATCH /forms/instances/batch-status
                          GET  /forms/instances/<id>/completion
                          GET  /forms/instances/<id>/dependencies
  Project read models:    GET /projects/<id>/forms/dependency-graph
                          GET /projects/<id>/forms/next?limit=5
                          GET /projects/<id>/forms/attention
  Phase:                  GET /phases/<id>/can-complete

The acting user comes from the X-Actor-Id header (set by the identity
layer) or ``actor_id`` in the JSON body.  Service layer owns all business
logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import formflow.services.form_catalog_service as catalog
import formflow.services.form_dependency_service as deps
import formflow.services.form_response_service as responses
import formflow.services.form_status_service as status_svc
from formflow.core.exceptions import (
    ConflictError,
    DependenciesNotSatisfiedError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RequiredItemsMissingError,
    ValidationError,
)
from formflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

form_bp = Blueprint("forms", __name__, url_prefix="/api/v1")


# ── Request helpers ──────────────────────────────────────────────────────────


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _actor_id(data: dict) -> str | None:
    actor = request.headers.get("X-Actor-Id") or data.get("actor_id")
    if actor is None:
        return None
    actor = str(actor).strip()
    return actor or None


def _actor_required(data: dict) -> tuple[str | None, tuple | None]:
    actor = _actor_id(data)
    if not actor:
        return None, api_error(E.VALIDATION_REQUIRED, "actor_id is required")
    return actor, None


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ── Error handlers ───────────────────────────────────────────────────────────


@form_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@form_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@form_bp.errorhandler(DependenciesNotSatisfiedError)
def _handle_dependencies(error: DependenciesNotSatisfiedError):
    return api_error(
        E.DEPENDENCIES_NOT_SATISFIED, str(error),
        details={
            "from_status": error.from_status,
            "to_status": error.to_status,
            "missing_requirements": error.missing_requirements,
        },
    )


@form_bp.errorhandler(RequiredItemsMissingError)
def _handle_required_items(error: RequiredItemsMissingError):
    return api_error(
        E.REQUIRED_ITEMS_MISSING, str(error),
        details={
            "from_status": error.from_status,
            "to_status": error.to_status,
            "missing_items": error.missing_items,
        },
    )


@form_bp.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(error: InvalidTransitionError):
    return api_error(
        E.INVALID_TRANSITION, str(error),
        details={"from_status": error.from_status, "to_status": error.to_status},
    )


@form_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(
        E.CONFLICT_STATE, str(error),
        details={"resource": error.resource, "field": error.field, "value": error.value},
    )


@form_bp.errorhandler(PersistenceError)
def _handle_persistence(error: PersistenceError):
    logger.error("Persistence error in forms endpoint=%s: %s", request.endpoint, error)
    return api_error(E.DATABASE, "Database error")


# ═════════════════════════════════════════════════════════════════════════════
# Templates & requirements
# ═════════════════════════════════════════════════════════════════════════════


@form_bp.route("/forms/templates", methods=["POST"])
def create_template():
    """Create a form template.

    Body: { name, description?, schema?, actor_id? }
    Returns: template dict (201).
    """
    data = _json_body()
    template = catalog.create_template(
        data.get("name"),
        description=data.get("description", ""),
        schema=data.get("schema"),
        actor_id=_actor_id(data) or "system",
    )
    return jsonify(template.to_dict()), 201


@form_bp.route("/forms/templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    """Get a template with its requirements and derived dependents."""
    template = catalog.get_template(template_id)
    return jsonify(template.to_dict(include_requirements=True))


@form_bp.route("/forms/templates/<int:template_id>/versions", methods=["POST"])
def publish_version(template_id):
    """Publish a new schema version.

    Body: { schema }
    """
    data = _json_body()
    if "schema" not in data:
        return api_error(E.VALIDATION_REQUIRED, "schema is required")
    version = catalog.publish_template_version(
        template_id, data["schema"], actor_id=_actor_id(data) or "system",
    )
    return jsonify(version.to_dict()), 201


@form_bp.route("/forms/templates/<int:template_id>/requirements", methods=["POST"])
def add_requirement(template_id):
    """Declare a completion requirement on a template.

    Body: { depends_on?: [template_id], completion_order?, required_for_phase?, name? }
    Returns: requirement dict (201), 409 when an edge would create a cycle.
    """
    data = _json_body()
    depends_on = data.get("depends_on") or []
    if not isinstance(depends_on, list) or not all(_is_int(i) for i in depends_on):
        return api_error(E.VALIDATION_INVALID, "depends_on must be a list of template ids")
    requirement = catalog.add_requirement(
        template_id,
        depends_on=depends_on,
        completion_order=data.get("completion_order"),
        required_for_phase=bool(data.get("required_for_phase", False)),
        name=data.get("name", ""),
    )
    return jsonify(requirement.to_dict()), 201


@form_bp.route("/forms/requirements/<int:requirement_id>", methods=["DELETE"])
def remove_requirement(requirement_id):
    catalog.remove_requirement(requirement_id)
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Instances & status
# ═════════════════════════════════════════════════════════════════════════════


@form_bp.route("/forms/instances", methods=["POST"])
def create_instance():
    """Attach a template to a project.

    Body: { template_id, project_id, task_id?, actor_id? }
    Returns: instance dict (201), 409 if the project already has one.
    """
    data = _json_body()
    if not data.get("template_id") or not data.get("project_id"):
        return api_error(E.VALIDATION_REQUIRED, "template_id and project_id are required")
    for key in ("template_id", "project_id", "task_id"):
        if data.get(key) is not None and not _is_int(data[key]):
            return api_error(E.VALIDATION_INVALID, f"{key} must be an integer")
    instance = catalog.create_instance(
        data["template_id"],
        data["project_id"],
        task_id=data.get("task_id"),
        actor_id=_actor_id(data) or "system",
    )
    return jsonify(instance.to_dict(include_transitions=True)), 201


@form_bp.route("/forms/instances/<int:instance_id>", methods=["GET"])
def get_instance(instance_id):
    """Get an instance with the statuses it may move to next."""
    instance = catalog.get_instance(instance_id)
    return jsonify(instance.to_dict(include_transitions=True))


@form_bp.route("/forms/instances/<int:instance_id>/history", methods=["GET"])
def get_status_history(instance_id):
    """Status history, newest first."""
    entries = status_svc.get_status_history(instance_id)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)})


@form_bp.route("/forms/instances/<int:instance_id>/responses", methods=["POST"])
def save_response(instance_id):
    """Save answers for an instance.

    Body: { data, metadata?, version?, actor_id? }
    Returns: response dict (201); 409 once the instance is COMPLETED or ARCHIVED.
    """
    data = _json_body()
    actor, err = _actor_required(data)
    if err:
        return err
    if "data" not in data:
        return api_error(E.VALIDATION_REQUIRED, "data is required")
    response = responses.save_response(
        instance_id, data["data"],
        actor_id=actor,
        metadata=data.get("metadata"),
        version=data.get("version"),
    )
    return jsonify(response.to_dict()), 201


@form_bp.route("/forms/instances/<int:instance_id>/responses", methods=["GET"])
def list_responses(instance_id):
    """Responses, newest first."""
    items = responses.list_responses(instance_id)
    return jsonify({"items": [r.to_dict() for r in items], "total": len(items)})


@form_bp.route("/forms/instances/<int:instance_id>/status", methods=["PATCH"])
def update_status(instance_id):
    """Transition one instance.

    Body: { status, comments?, metadata?, actor_id? }
    Returns: updated instance (200); 409 on an illegal transition.
    """
    data = _json_body()
    actor, err = _actor_required(data)
    if err:
        return err
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")

    instance = status_svc.update_status(
        instance_id, actor, data["status"],
        comments=data.get("comments"),
        metadata=metadata,
    )
    return jsonify(instance.to_dict(include_transitions=True))


@form_bp.route("/forms/instances/batch-status", methods=["PATCH"])
def batch_update_status():
    """Transition several instances to the same status.

    Body: { instance_ids: [id], status, comment?, metadata?, actor_id? }
    Returns: { updated_count, updated_ids, errors } (200).  Rejected
    instances are listed individually in ``errors``.
    """
    data = _json_body()
    actor, err = _actor_required(data)
    if err:
        return err
    instance_ids = data.get("instance_ids")
    if not isinstance(instance_ids, list) or not all(_is_int(i) for i in instance_ids):
        return api_error(E.VALIDATION_INVALID, "instance_ids must be a list of integers")
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")

    result = status_svc.batch_update_status(
        instance_ids, actor, data["status"],
        comment=data.get("comment"),
        metadata=metadata,
    )
    return jsonify(result.to_dict())


@form_bp.route("/forms/instances/<int:instance_id>/completion", methods=["GET"])
def check_completion(instance_id):
    return jsonify(deps.check_completion(instance_id).to_dict())


@form_bp.route("/forms/instances/<int:instance_id>/dependencies", methods=["GET"])
def get_instance_dependencies(instance_id):
    """The instance node followed by its direct prerequisites and dependents."""
    nodes = deps.build_instance_graph(instance_id)
    return jsonify({"items": [n.to_dict() for n in nodes], "total": len(nodes)})


# ═════════════════════════════════════════════════════════════════════════════
# Project / phase read models
# ═════════════════════════════════════════════════════════════════════════════


@form_bp.route("/projects/<int:project_id>/forms/dependency-graph", methods=["GET"])
def get_dependency_graph(project_id):
    nodes = deps.build_dependency_graph(project_id)
    return jsonify({"items": [n.to_dict() for n in nodes], "total": len(nodes)})


@form_bp.route("/projects/<int:project_id>/forms/next", methods=["GET"])
def get_next_forms(project_id):
    """Open forms in completion order. Query: limit (default FORMS_NEXT_LIMIT)."""
    limit = request.args.get("limit", type=int)
    nodes = deps.get_next_forms_in_sequence(project_id, limit=limit)
    return jsonify({"items": [n.to_dict() for n in nodes], "total": len(nodes)})


@form_bp.route("/projects/<int:project_id>/forms/attention", methods=["GET"])
def get_forms_needing_attention(project_id):
    nodes = deps.get_forms_needing_attention(project_id)
    return jsonify({"items": [n.to_dict() for n in nodes], "total": len(nodes)})


@form_bp.route("/phases/<int:phase_id>/can-complete", methods=["GET"])
def can_complete_phase(phase_id):
    return jsonify(deps.can_complete_phase(phase_id).to_dict())
