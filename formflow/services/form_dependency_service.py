"""
Form Dependency Service — read models over the form dependency graph.

Business logic for:
    - Dependency graph:   DependencyNode projection of every instance in a project
    - Completion check:   can one instance be marked COMPLETED right now
    - Phase blocking:     which phase-gating forms keep a phase open
    - Sequencing:         "what's next" ordered by completion_order
    - Attention query:    forms stuck in PENDING_REVIEW / ON_HOLD and since when

The graph is rebuilt from persisted state on every call and never cached;
instance status is volatile and a stale projection gives wrong blocking
answers.  No cycle detection happens here: requirements are checked for
cycles when they are authored (form_catalog_service.add_requirement).

One instance per template per project is enforced by a unique constraint,
so "the sibling instance of a prerequisite template" is unambiguous.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.orm import joinedload, selectinload

from formflow.core.exceptions import NotFoundError, ValidationError
from formflow.models import db
from formflow.models.form import (
    COMPLETED,
    CompletionRequirement,
    FormInstance,
    FormStatusHistory,
    as_utc,
)
from formflow.models.project import Phase, Project, ProjectTask
from formflow.services.form_response_service import find_missing_items

logger = logging.getLogger(__name__)

DEFAULT_NEXT_LIMIT = 5
DEFAULT_ATTENTION_STATUSES = ("PENDING_REVIEW", "ON_HOLD")


def _config(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class DependencyNode:
    """Derived, request-scoped projection of one form instance."""
    form_id: int
    form_name: str
    status: str
    template_id: int
    dependencies: list[int] = field(default_factory=list)
    dependents: list[int] = field(default_factory=list)
    order: int | None = None
    is_blocking: bool = False
    last_status: str | None = None
    last_updated: datetime | None = None

    def to_dict(self) -> dict:
        result = {
            "form_id": self.form_id,
            "form_name": self.form_name,
            "template_id": self.template_id,
            "status": self.status,
            "dependencies": list(self.dependencies),
            "dependents": list(self.dependents),
            "order": self.order,
            "is_blocking": self.is_blocking,
        }
        if self.last_status is not None or self.last_updated is not None:
            result["last_status"] = self.last_status
            result["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return result


@dataclass
class FormCompletionCheck:
    """Result of check_completion for one instance."""
    instance_id: int
    is_complete: bool
    missing_requirements: list[dict] = field(default_factory=list)
    missing_items: list[dict] = field(default_factory=list)
    next_required_forms: list[DependencyNode] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "is_complete": self.is_complete,
            "missing_requirements": self.missing_requirements,
            "missing_items": self.missing_items,
            "next_required_forms": [n.to_dict() for n in self.next_required_forms],
        }


@dataclass
class PhaseCompletionCheck:
    """Result of can_complete_phase."""
    phase_id: int
    can_complete: bool
    blocking_forms: list[DependencyNode] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "phase_id": self.phase_id,
            "can_complete": self.can_complete,
            "blocking_forms": [n.to_dict() for n in self.blocking_forms],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Graph construction
# ═════════════════════════════════════════════════════════════════════════════


class ProjectFormGraph:
    """
    Dependency projection of one project's form instances.

    Template-level prerequisite edges are resolved to the sibling instance
    of each prerequisite template in the same project.  The inverse
    ``dependents`` edges are derived from the forward edges here, never read
    from storage.
    """

    def __init__(self, project_id: int):
        self.project_id = project_id
        self.instances = (
            FormInstance.query
            .options(joinedload(FormInstance.template))
            .filter(FormInstance.project_id == project_id)
            .order_by(FormInstance.id)
            .all()
        )
        self.by_template = {i.template_id: i for i in self.instances}
        self.requirements = self._load_requirements(
            {i.template_id for i in self.instances}
        )
        self.nodes: dict[int, DependencyNode] = {}
        for instance in self.instances:
            self.nodes[instance.id] = self._project(instance)
        for node in self.nodes.values():
            for dep_id in node.dependencies:
                self.nodes[dep_id].dependents.append(node.form_id)
        for node in self.nodes.values():
            node.dependents.sort()

    @staticmethod
    def _load_requirements(template_ids) -> dict[int, list[CompletionRequirement]]:
        if not template_ids:
            return {}
        rows = (
            CompletionRequirement.query
            .options(selectinload(CompletionRequirement.depends_on))
            .filter(CompletionRequirement.template_id.in_(template_ids))
            .order_by(CompletionRequirement.id)
            .all()
        )
        grouped = defaultdict(list)
        for req in rows:
            grouped[req.template_id].append(req)
        return grouped

    def prerequisite_templates(self, template_id):
        """Distinct prerequisite templates across all requirements, in declaration order."""
        seen = set()
        result = []
        for req in self.requirements.get(template_id, []):
            for tmpl in req.depends_on:
                if tmpl.id not in seen:
                    seen.add(tmpl.id)
                    result.append(tmpl)
        return result

    def _project(self, instance: FormInstance) -> DependencyNode:
        reqs = self.requirements.get(instance.template_id, [])
        dependencies = [
            self.by_template[tmpl.id].id
            for tmpl in self.prerequisite_templates(instance.template_id)
            if tmpl.id in self.by_template
        ]
        return DependencyNode(
            form_id=instance.id,
            form_name=instance.template.name,
            status=instance.status,
            template_id=instance.template_id,
            dependencies=dependencies,
            # First requirement wins when several declare an order
            order=reqs[0].completion_order if reqs else None,
            is_blocking=any(r.required_for_phase for r in reqs),
        )

    def missing_requirements(self, instance: FormInstance) -> list[dict]:
        missing = []
        for tmpl in self.prerequisite_templates(instance.template_id):
            sibling = self.by_template.get(tmpl.id)
            if sibling is None:
                missing.append({
                    "form_id": None,
                    "form_name": tmpl.name,
                    "template_id": tmpl.id,
                    "status": None,
                    "reason": "missing",
                })
            elif sibling.status != COMPLETED:
                missing.append({
                    "form_id": sibling.id,
                    "form_name": tmpl.name,
                    "template_id": tmpl.id,
                    "status": sibling.status,
                    "reason": "not_completed",
                })
        return missing

    def next_in_sequence(self, *, after_order=None, exclude_id=None, limit=DEFAULT_NEXT_LIMIT):
        candidates = [
            n for n in self.nodes.values()
            if n.order is not None
            and n.status != COMPLETED
            and n.form_id != exclude_id
            and (after_order is None or n.order > after_order)
        ]
        candidates.sort(key=lambda n: (n.order, n.form_id))
        return candidates[:limit]


def _get_project_or_404(project_id) -> Project:
    project = db.session.get(Project, project_id)
    if not project:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def _get_instance_or_404(instance_id) -> FormInstance:
    instance = db.session.get(FormInstance, instance_id)
    if not instance:
        raise NotFoundError(resource="FormInstance", resource_id=instance_id)
    return instance


# ═════════════════════════════════════════════════════════════════════════════
# Public operations
# ═════════════════════════════════════════════════════════════════════════════


def build_dependency_graph(project_id: int) -> list[DependencyNode]:
    """Return the DependencyNode projection of every form instance in a project."""
    _get_project_or_404(project_id)
    graph = ProjectFormGraph(project_id)
    return list(graph.nodes.values())


def build_instance_graph(instance_id: int) -> list[DependencyNode]:
    """
    Return one instance's neighbourhood: the instance itself first, then its
    direct prerequisites, then its direct dependents.
    """
    instance = _get_instance_or_404(instance_id)
    graph = ProjectFormGraph(instance.project_id)
    root = graph.nodes[instance.id]
    related = [graph.nodes[i] for i in root.dependencies]
    related += [graph.nodes[i] for i in root.dependents if i not in root.dependencies]
    return [root] + related


def find_missing_requirements(instance: FormInstance) -> list[dict]:
    """Prerequisite forms of *instance* that are absent or not COMPLETED."""
    return ProjectFormGraph(instance.project_id).missing_requirements(instance)


def check_completion(instance_id: int) -> FormCompletionCheck:
    """
    Decide whether an instance can be marked COMPLETED right now.

    Reports open prerequisites and, unless
    FORMS_REQUIRE_RESPONSES_FOR_COMPLETION is off, required items the
    latest response leaves unanswered.  Does not
    transition anything; callers still go through
    form_status_service.update_status.
    """
    instance = _get_instance_or_404(instance_id)
    graph = ProjectFormGraph(instance.project_id)
    missing = graph.missing_requirements(instance)
    missing_items = []
    if _config("FORMS_REQUIRE_RESPONSES_FOR_COMPLETION", True):
        missing_items = find_missing_items(instance)
    node = graph.nodes[instance.id]
    next_forms = graph.next_in_sequence(
        after_order=node.order,
        exclude_id=instance.id,
        limit=_config("FORMS_NEXT_LIMIT", DEFAULT_NEXT_LIMIT),
    )
    return FormCompletionCheck(
        instance_id=instance.id,
        is_complete=not missing and not missing_items,
        missing_requirements=missing,
        missing_items=missing_items,
        next_required_forms=next_forms,
    )


def can_complete_phase(phase_id: int) -> PhaseCompletionCheck:
    """
    A phase may close once every phase-gating form attached to its tasks is
    COMPLETED.  Prerequisite edges play no part here.
    """
    phase = db.session.get(Phase, phase_id)
    if not phase:
        raise NotFoundError(resource="Phase", resource_id=phase_id)

    instances = db.session.execute(
        select(FormInstance)
        .join(ProjectTask, FormInstance.task_id == ProjectTask.id)
        .where(ProjectTask.phase_id == phase_id)
        .order_by(FormInstance.id)
    ).scalars().all()

    graphs = {pid: ProjectFormGraph(pid) for pid in {i.project_id for i in instances}}
    blocking = []
    for instance in instances:
        node = graphs[instance.project_id].nodes[instance.id]
        if node.is_blocking and node.status != COMPLETED:
            blocking.append(node)

    if blocking:
        logger.debug(
            "Phase %s blocked by %d form(s)", phase_id, len(blocking),
            extra={"phase_id": phase_id},
        )
    return PhaseCompletionCheck(
        phase_id=phase.id,
        can_complete=not blocking,
        blocking_forms=blocking,
    )


def get_next_forms_in_sequence(project_id: int, limit: int | None = None) -> list[DependencyNode]:
    """Project-level "what's next": open forms with a completion order, lowest first."""
    if limit is None:
        limit = _config("FORMS_NEXT_LIMIT", DEFAULT_NEXT_LIMIT)
    if limit < 1:
        raise ValidationError("limit must be a positive integer", details={"limit": limit})
    _get_project_or_404(project_id)
    return ProjectFormGraph(project_id).next_in_sequence(limit=limit)


def get_forms_needing_attention(project_id: int) -> list[DependencyNode]:
    """
    Forms waiting in review or on hold, each annotated with the status and
    timestamp of its newest history entry.  Longest-waiting first.
    """
    _get_project_or_404(project_id)
    statuses = tuple(_config("FORMS_ATTENTION_STATUSES", DEFAULT_ATTENTION_STATUSES))
    graph = ProjectFormGraph(project_id)
    stuck = [n for n in graph.nodes.values() if n.status in statuses]
    if not stuck:
        return []

    rows = db.session.execute(
        select(FormStatusHistory)
        .where(FormStatusHistory.instance_id.in_([n.form_id for n in stuck]))
        .order_by(FormStatusHistory.created_at.desc(), FormStatusHistory.id.desc())
    ).scalars().all()
    latest = {}
    for entry in rows:
        latest.setdefault(entry.instance_id, entry)

    instances = {i.id: i for i in graph.instances}
    for node in stuck:
        entry = latest.get(node.form_id)
        if entry is not None:
            node.last_status = entry.to_status
            node.last_updated = entry.created_at_utc
        else:
            node.last_status = node.status
            node.last_updated = as_utc(instances[node.form_id].updated_at)

    stuck.sort(key=lambda n: (n.last_updated is None, n.last_updated or datetime.min, n.form_id))
    return stuck
