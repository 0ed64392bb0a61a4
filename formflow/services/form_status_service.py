"""
Form Status Service — status transitions with an append-only audit trail.

Manages FormInstance status changes with:
  - Status literal validation (FORM_STATUSES)
  - Transition validation (FORM_TRANSITIONS)
  - Prerequisite guard before COMPLETED (FORMS_REQUIRE_DEPENDENCIES_FOR_COMPLETION)
  - Required-item guard before COMPLETED (FORMS_REQUIRE_RESPONSES_FOR_COMPLETION)
  - Compare-and-update so two concurrent requests cannot both move the
    same instance from the same status
  - Exactly one FormStatusHistory row per accepted transition, written in
    the same transaction as the status update

Batch updates run one independent unit of work per instance.  A rejected
instance is reported in ``errors`` and never rolls back the others.

Usage:
    from formflow.services.form_status_service import update_status

    instance = update_status(42, actor_id="u-7", new_status="IN_PROGRESS")
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from formflow.core.exceptions import (
    ConflictError,
    DependenciesNotSatisfiedError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RequiredItemsMissingError,
    ValidationError,
)
from formflow.models import db
from formflow.models.form import (
    COMPLETED,
    FORM_STATUSES,
    FormInstance,
    FormStatusHistory,
    as_utc,
    is_valid_transition,
)
from formflow.utils.errors import E

logger = logging.getLogger(__name__)


def _config(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def validate_status(value) -> str:
    """Return *value* if it is one of the six status literals, else raise ValidationError."""
    if value not in FORM_STATUSES:
        raise ValidationError(
            f"Unknown status: {value!r}",
            details={"status": f"must be one of {', '.join(FORM_STATUSES)}"},
        )
    return value


def _require_actor(actor_id):
    if actor_id is None or not str(actor_id).strip():
        raise ValidationError("actor_id is required", details={"actor_id": "required"})
    return str(actor_id).strip()


# ── History writer ───────────────────────────────────────────────────────────


def _next_history_timestamp(instance_id: int) -> datetime:
    """Now, nudged past the instance's newest history row so timestamps stay strictly increasing."""
    now = datetime.now(timezone.utc)
    last = db.session.execute(
        select(func.max(FormStatusHistory.created_at))
        .where(FormStatusHistory.instance_id == instance_id)
    ).scalar()
    last = as_utc(last)
    if last is not None and now <= last:
        now = last + timedelta(microseconds=1)
    return now


def append_history(
    *,
    instance_id: int,
    from_status: str | None,
    to_status: str,
    actor_id: str,
    comments: str | None = None,
    metadata: dict | None = None,
    created_at: datetime | None = None,
) -> FormStatusHistory:
    """
    Append a single history row.  Uses ``flush`` so callers keep
    transaction control.
    """
    entry = FormStatusHistory(
        instance_id=instance_id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        comments=comments,
        metadata_json=json.dumps(metadata or {}, default=str),
        created_at=created_at or _next_history_timestamp(instance_id),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


# ── Single-instance transition ───────────────────────────────────────────────


def _load_current(instance_id) -> FormInstance:
    instance = db.session.execute(
        select(FormInstance)
        .where(FormInstance.id == instance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not instance:
        raise NotFoundError(resource="FormInstance", resource_id=instance_id)
    return instance


def _check_transition(instance: FormInstance, new_status: str, actor_id: str) -> None:
    """Status machine plus the completion guards; rolls back before raising."""
    old = instance.status
    if not is_valid_transition(old, new_status):
        logger.warning(
            "Rejected transition %s → %s on form instance %s", old, new_status, instance.id,
            extra={"instance_id": instance.id, "actor_id": actor_id,
                   "from_status": old, "to_status": new_status,
                   "event_type": "form_status.rejected"},
        )
        inst_id = instance.id
        db.session.rollback()
        raise InvalidTransitionError(old, new_status, instance_id=inst_id)

    if new_status != COMPLETED:
        return

    if _config("FORMS_REQUIRE_DEPENDENCIES_FOR_COMPLETION", True):
        from formflow.services.form_dependency_service import find_missing_requirements

        missing = find_missing_requirements(instance)
        if missing:
            logger.warning(
                "Completion of form instance %s blocked by %d prerequisite(s)",
                instance.id, len(missing),
                extra={"instance_id": instance.id, "actor_id": actor_id,
                       "event_type": "form_status.blocked"},
            )
            inst_id = instance.id
            db.session.rollback()
            raise DependenciesNotSatisfiedError(old, inst_id, missing)

    if _config("FORMS_REQUIRE_RESPONSES_FOR_COMPLETION", True):
        from formflow.services.form_response_service import find_missing_items

        missing_items = find_missing_items(instance)
        if missing_items:
            logger.warning(
                "Completion of form instance %s blocked by %d unanswered required item(s)",
                instance.id, len(missing_items),
                extra={"instance_id": instance.id, "actor_id": actor_id,
                       "event_type": "form_status.incomplete_response"},
            )
            inst_id = instance.id
            db.session.rollback()
            raise RequiredItemsMissingError(old, inst_id, missing_items)


def _compare_and_update(instance_id, old, new_status, actor_id, comments, metadata) -> bool:
    """UPDATE ... WHERE status = old plus its history row; False when another writer won."""
    now = _next_history_timestamp(instance_id)
    result = db.session.execute(
        update(FormInstance)
        .where(FormInstance.id == instance_id, FormInstance.status == old)
        .values(status=new_status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        return False
    append_history(
        instance_id=instance_id,
        from_status=old,
        to_status=new_status,
        actor_id=actor_id,
        comments=comments,
        metadata=metadata,
        created_at=now,
    )
    db.session.commit()
    return True


def update_status(
    instance_id: int,
    actor_id: str,
    new_status: str,
    comments: str | None = None,
    metadata: dict | None = None,
) -> FormInstance:
    """
    Apply one validated status transition and record it.

    Raises:
        ValidationError: unknown status literal or missing actor.
        NotFoundError: instance does not exist.
        InvalidTransitionError: pair not in FORM_TRANSITIONS (no writes).
        DependenciesNotSatisfiedError: COMPLETED requested with open prerequisites.
        RequiredItemsMissingError: COMPLETED requested before every required item is answered.
        ConflictError: another writer changed the status first (no writes).
        PersistenceError: the store failed at any step; the transaction is rolled back.
    """
    new_status = validate_status(new_status)
    actor_id = _require_actor(actor_id)

    try:
        instance = _load_current(instance_id)
        old = instance.status
        project_id = instance.project_id
        _check_transition(instance, new_status, actor_id)
        swapped = _compare_and_update(instance_id, old, new_status, actor_id, comments, metadata)
        if swapped:
            db.session.refresh(instance)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception(
            "Status update failed for form instance %s", instance_id,
            extra={"instance_id": instance_id, "event_type": "form_status.db_error"},
        )
        raise PersistenceError("update_status", exc) from exc

    if not swapped:
        logger.warning(
            "Concurrent status change on form instance %s (expected %s)", instance_id, old,
            extra={"instance_id": instance_id, "event_type": "form_status.conflict"},
        )
        raise ConflictError("FormInstance", "status", old)

    logger.info(
        "Form instance %s transitioned: %s → %s", instance_id, old, new_status,
        extra={"instance_id": instance_id, "project_id": project_id, "actor_id": actor_id,
               "from_status": old, "to_status": new_status,
               "event_type": "form_status.changed"},
    )
    return instance


# ── Batch transition ─────────────────────────────────────────────────────────


@dataclass
class BatchUpdateResult:
    """Outcome of batch_update_status; one error entry per rejected instance."""
    requested_status: str
    updated_ids: list[int] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return len(self.updated_ids)

    def to_dict(self) -> dict:
        return {
            "status": self.requested_status,
            "updated_count": self.updated_count,
            "updated_ids": self.updated_ids,
            "errors": self.errors,
        }


def _batch_error(instance_id, exc: Exception, new_status: str) -> dict:
    entry = {
        "instance_id": instance_id,
        "message": str(exc),
        "from_status": None,
        "to_status": new_status,
    }
    if isinstance(exc, RequiredItemsMissingError):
        entry["code"] = E.REQUIRED_ITEMS_MISSING
        entry["from_status"] = exc.from_status
        entry["missing_items"] = exc.missing_items
    elif isinstance(exc, DependenciesNotSatisfiedError):
        entry["code"] = E.DEPENDENCIES_NOT_SATISFIED
        entry["from_status"] = exc.from_status
        entry["missing_requirements"] = exc.missing_requirements
    elif isinstance(exc, InvalidTransitionError):
        entry["code"] = E.INVALID_TRANSITION
        entry["from_status"] = exc.from_status
    elif isinstance(exc, NotFoundError):
        entry["code"] = E.NOT_FOUND
    elif isinstance(exc, ConflictError):
        entry["code"] = E.CONFLICT_STATE
        entry["from_status"] = exc.value
    else:
        entry["code"] = E.DATABASE
    return entry


def batch_update_status(
    instance_ids: list[int],
    actor_id: str,
    new_status: str,
    comment: str | None = None,
    metadata: dict | None = None,
) -> BatchUpdateResult:
    """
    Move every selected instance to *new_status*, each validated against its
    own current status and committed on its own.

    Input problems (empty selection, unknown status, oversized batch) raise
    ValidationError before anything is read.  Per-instance failures land in
    ``result.errors``.
    """
    if not instance_ids:
        raise ValidationError(
            "At least one form instance must be selected",
            details={"instance_ids": "required"},
        )
    new_status = validate_status(new_status)
    actor_id = _require_actor(actor_id)

    unique_ids = list(dict.fromkeys(instance_ids))
    max_size = _config("FORMS_MAX_BATCH_SIZE", 500)
    if len(unique_ids) > max_size:
        raise ValidationError(
            f"Batch exceeds maximum size of {max_size} instances",
            details={"instance_ids": f"at most {max_size}"},
        )

    batch_meta = dict(metadata or {})
    batch_meta.update({"batch_update": True, "batch_size": len(unique_ids)})

    result = BatchUpdateResult(requested_status=new_status)
    for instance_id in unique_ids:
        try:
            update_status(instance_id, actor_id, new_status, comment, batch_meta)
        except (NotFoundError, InvalidTransitionError, ConflictError, PersistenceError) as exc:
            result.errors.append(_batch_error(instance_id, exc, new_status))
        else:
            result.updated_ids.append(instance_id)

    logger.info(
        "Batch status update to %s: %d updated, %d rejected",
        new_status, result.updated_count, len(result.errors),
        extra={"actor_id": actor_id, "to_status": new_status,
               "event_type": "form_status.batch"},
    )
    return result


# ── History read ─────────────────────────────────────────────────────────────


def get_status_history(instance_id: int) -> list[FormStatusHistory]:
    """Every status the instance has held, newest first."""
    if not db.session.get(FormInstance, instance_id):
        raise NotFoundError(resource="FormInstance", resource_id=instance_id)
    return db.session.execute(
        select(FormStatusHistory)
        .where(FormStatusHistory.instance_id == instance_id)
        .order_by(FormStatusHistory.created_at.desc(), FormStatusHistory.id.desc())
    ).scalars().all()
