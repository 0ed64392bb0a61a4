"""
Form Response Service — answer payloads captured against a form instance.

Business logic for:
    - Saving a response:   FormResponse + FormResponseHistory (DRAFT / CREATED)
                           in one transaction; instance.response_ref points at it
    - Listing responses:   newest first
    - Required items:      which ``required`` schema items the latest response
                           leaves unanswered (read by the COMPLETED guard)

Schema shape (template / version ``schema_json``)::

    {"sections": [{"id": "s1", "title": "...",
                   "items": [{"id": "q1", "label": "...", "required": true}]}]}

Response ``data`` is keyed by item id.
"""

import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from formflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from formflow.models import db
from formflow.models.form import (
    FormInstance,
    FormResponse,
    FormResponseHistory,
    FormTemplateVersion,
)

logger = logging.getLogger(__name__)

# Instances in these statuses no longer accept answers.
LOCKED_STATUSES = ("COMPLETED", "ARCHIVED")

_EMPTY_ANSWERS = (None, "", [], {})


def _get_instance(instance_id) -> FormInstance:
    instance = db.session.get(FormInstance, instance_id)
    if not instance:
        raise NotFoundError(resource="FormInstance", resource_id=instance_id)
    return instance


# ── Schema helpers ───────────────────────────────────────────────────────────


def required_items(schema) -> list[dict]:
    """Flatten ``sections[].items[]`` to the items flagged ``required``."""
    if not isinstance(schema, dict):
        return []
    found = []
    for section in schema.get("sections") or []:
        if not isinstance(section, dict):
            continue
        for item in section.get("items") or []:
            if isinstance(item, dict) and item.get("required") and item.get("id") is not None:
                found.append({
                    "item_id": item["id"],
                    "label": item.get("label", ""),
                    "section_id": section.get("id"),
                })
    return found


def _instance_schema(instance: FormInstance) -> dict:
    """Schema of the version the instance was created from, else the template's current one."""
    if instance.template_version is not None:
        version = db.session.execute(
            select(FormTemplateVersion).where(
                FormTemplateVersion.template_id == instance.template_id,
                FormTemplateVersion.version == instance.template_version,
            )
        ).scalar_one_or_none()
        if version is not None:
            return version.schema
    return instance.template.schema if instance.template else {}


def latest_response(instance: FormInstance) -> FormResponse | None:
    return instance.responses.first()


def find_missing_items(instance: FormInstance) -> list[dict]:
    """
    Required items the latest response leaves unanswered.

    A schema without required items needs no response at all.  ``None``,
    empty strings and empty lists / objects count as unanswered; ``0`` and
    ``False`` are answers.
    """
    items = required_items(_instance_schema(instance))
    if not items:
        return []
    response = latest_response(instance)
    data = response.data if response is not None else {}
    return [
        item for item in items
        if data.get(str(item["item_id"])) in _EMPTY_ANSWERS
    ]


# ── Writes ───────────────────────────────────────────────────────────────────


def save_response(
    instance_id: int,
    data: dict,
    *,
    actor_id: str,
    metadata: dict | None = None,
    version: int | None = None,
) -> FormResponse:
    """
    Store a new response and its CREATED history entry atomically.

    Raises:
        ValidationError: ``data`` / ``metadata`` not objects, bad ``version``, no actor.
        NotFoundError: instance does not exist.
        ConflictError: instance is COMPLETED or ARCHIVED.
        PersistenceError: the store failed; nothing is written.
    """
    if not isinstance(data, dict):
        raise ValidationError("data must be an object", details={"data": "expected object"})
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object",
                              details={"metadata": "expected object"})
    if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
        raise ValidationError("version must be an integer", details={"version": "expected integer"})
    if actor_id is None or not str(actor_id).strip():
        raise ValidationError("actor_id is required", details={"actor_id": "required"})
    actor_id = str(actor_id).strip()

    instance = _get_instance(instance_id)
    if instance.status in LOCKED_STATUSES:
        raise ConflictError("FormInstance", "status", instance.status)

    data_json = json.dumps(data, default=str)
    metadata_json = json.dumps(metadata or {}, default=str)
    try:
        response = FormResponse(
            instance_id=instance.id,
            data_json=data_json,
            metadata_json=metadata_json,
            version=version if version is not None else (instance.template_version or 1),
            submitted_by=actor_id,
        )
        db.session.add(response)
        db.session.flush()
        db.session.add(FormResponseHistory(
            response_id=response.id,
            data_json=data_json,
            metadata_json=metadata_json,
            status="DRAFT",
            change_type="CREATED",
            changed_by=actor_id,
        ))
        instance.response_ref = str(response.id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception(
            "Saving response failed for form instance %s", instance_id,
            extra={"instance_id": instance_id, "event_type": "form_response.db_error"},
        )
        raise PersistenceError("save_response", exc) from exc

    logger.info(
        "Response %s saved on form instance %s", response.id, instance_id,
        extra={"instance_id": instance_id, "actor_id": actor_id,
               "event_type": "form_response.created"},
    )
    return response


# ── Reads ────────────────────────────────────────────────────────────────────


def list_responses(instance_id: int) -> list[FormResponse]:
    """Responses of an instance, newest first."""
    _get_instance(instance_id)
    return db.session.execute(
        select(FormResponse)
        .where(FormResponse.instance_id == instance_id)
        .order_by(FormResponse.created_at.desc(), FormResponse.id.desc())
    ).scalars().all()
