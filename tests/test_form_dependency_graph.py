"""
Tests for form_dependency_service — graph projection, completion checks,
sequencing and the attention query.

Covers:
    1.  Dependencies resolve to sibling instances; dependents are derived
    2.  Graph is idempotent over unchanged state
    3.  Completion check lists open and missing prerequisites
    4.  Completion flips once every prerequisite is COMPLETED
    5.  Next-in-sequence ordering, limit and exclusion of completed forms
    6.  Attention query annotates latest history entry, oldest first
    7.  Unknown project / instance raise NotFoundError
"""

import pytest

from formflow.core.exceptions import NotFoundError, ValidationError
from formflow.models import db
from formflow.models.project import Project
from formflow.services import form_catalog_service as catalog
from formflow.services.form_dependency_service import (
    build_dependency_graph,
    build_instance_graph,
    check_completion,
    get_forms_needing_attention,
    get_next_forms_in_sequence,
)
from formflow.services.form_status_service import update_status


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _template(name, **req):
    template = catalog.create_template(name)
    if req:
        catalog.add_requirement(template.id, **req)
    return template


def _instance(template, project):
    return catalog.create_instance(template.id, project.id, actor_id="seed")


def _complete(instance):
    update_status(instance.id, "u-1", "IN_PROGRESS")
    update_status(instance.id, "u-1", "COMPLETED")


@pytest.fixture()
def abc(project):
    """A depends on B and C; returns the three instances."""
    b_tmpl = _template("Measure")
    c_tmpl = _template("Artwork Proof")
    a_tmpl = _template("Install Sign-off", depends_on=[b_tmpl.id, c_tmpl.id])
    b = _instance(b_tmpl, project)
    c = _instance(c_tmpl, project)
    a = _instance(a_tmpl, project)
    return a, b, c


# ═════════════════════════════════════════════════════════════════════════════
# Graph projection
# ═════════════════════════════════════════════════════════════════════════════


class TestDependencyGraph:
    def test_edges_resolve_to_instances(self, project, abc):
        a, b, c = abc
        nodes = {n.form_id: n for n in build_dependency_graph(project.id)}

        assert nodes[a.id].dependencies == [b.id, c.id]
        assert nodes[b.id].dependents == [a.id]
        assert nodes[c.id].dependents == [a.id]
        assert nodes[a.id].dependents == []
        assert nodes[a.id].form_name == "Install Sign-off"
        assert nodes[a.id].status == "ACTIVE"

    def test_graph_is_idempotent(self, project, abc):
        first = [n.to_dict() for n in build_dependency_graph(project.id)]
        second = [n.to_dict() for n in build_dependency_graph(project.id)]
        assert first == second

    def test_graph_reflects_status_changes(self, project, abc):
        _, b, _ = abc
        update_status(b.id, "u-1", "IN_PROGRESS")
        nodes = {n.form_id: n for n in build_dependency_graph(project.id)}
        assert nodes[b.id].status == "IN_PROGRESS"

    def test_prerequisite_without_instance_has_no_edge(self, project):
        b_tmpl = _template("Measure")
        a = _instance(_template("Install", depends_on=[b_tmpl.id]), project)
        nodes = build_dependency_graph(project.id)
        assert len(nodes) == 1
        assert nodes[0].form_id == a.id
        assert nodes[0].dependencies == []

    def test_empty_project(self, project):
        assert build_dependency_graph(project.id) == []

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            build_dependency_graph(9999)

    def test_projects_are_isolated(self, project, abc):
        other = Project(name="Other Job")
        db.session.add(other)
        db.session.commit()
        assert build_dependency_graph(other.id) == []

    def test_instance_graph_neighbourhood(self, abc):
        a, b, c = abc
        assert [n.form_id for n in build_instance_graph(a.id)] == [a.id, b.id, c.id]
        assert [n.form_id for n in build_instance_graph(b.id)] == [b.id, a.id]


# ═════════════════════════════════════════════════════════════════════════════
# Completion check
# ═════════════════════════════════════════════════════════════════════════════


class TestCompletionCheck:
    def test_open_prerequisites_reported(self, abc):
        a, b, c = abc
        _complete(b)

        check = check_completion(a.id)

        assert check.is_complete is False
        assert [m["form_id"] for m in check.missing_requirements] == [c.id]
        assert check.missing_requirements[0]["status"] == "ACTIVE"

    def test_all_prerequisites_completed(self, abc):
        a, b, c = abc
        _complete(b)
        _complete(c)

        check = check_completion(a.id)

        assert check.is_complete is True
        assert check.missing_requirements == []

    def test_archived_prerequisite_counts_as_not_completed(self, abc):
        a, b, c = abc
        _complete(b)
        _complete(c)
        update_status(c.id, "u-1", "ARCHIVED")

        check = check_completion(a.id)

        assert check.is_complete is False
        assert check.missing_requirements[0]["status"] == "ARCHIVED"

    def test_missing_sibling_instance_reported(self, project):
        b_tmpl = _template("Measure")
        a = _instance(_template("Install", depends_on=[b_tmpl.id]), project)

        check = check_completion(a.id)

        assert check.is_complete is False
        assert check.missing_requirements == [{
            "form_id": None,
            "form_name": "Measure",
            "template_id": b_tmpl.id,
            "status": None,
            "reason": "missing",
        }]

    def test_no_requirements_is_complete(self, project):
        inst = _instance(_template("Standalone"), project)
        assert check_completion(inst.id).is_complete is True

    def test_unknown_instance(self):
        with pytest.raises(NotFoundError):
            check_completion(9999)


# ═════════════════════════════════════════════════════════════════════════════
# Sequencing
# ═════════════════════════════════════════════════════════════════════════════


class TestSequencing:
    @pytest.fixture()
    def ordered(self, project):
        forms = {}
        for order, name in [(3, "Install"), (1, "Measure"), (2, "Print")]:
            forms[order] = _instance(_template(name, completion_order=order), project)
        forms[None] = _instance(_template("Notes"), project)
        return forms

    def test_next_forms_ordered(self, project, ordered):
        nodes = get_next_forms_in_sequence(project.id)
        assert [n.order for n in nodes] == [1, 2, 3]
        assert ordered[None].id not in [n.form_id for n in nodes]

    def test_completed_forms_skipped(self, project, ordered):
        _complete(ordered[1])
        assert [n.order for n in get_next_forms_in_sequence(project.id)] == [2, 3]

    def test_limit(self, project, ordered):
        assert [n.order for n in get_next_forms_in_sequence(project.id, limit=2)] == [1, 2]

    def test_invalid_limit(self, project):
        with pytest.raises(ValidationError):
            get_next_forms_in_sequence(project.id, limit=0)

    def test_completion_check_suggests_later_forms(self, ordered):
        check = check_completion(ordered[1].id)
        assert [n.order for n in check.next_required_forms] == [2, 3]

    def test_unordered_instance_suggests_all_open_ordered_forms(self, ordered):
        check = check_completion(ordered[None].id)
        assert [n.order for n in check.next_required_forms] == [1, 2, 3]


# ═════════════════════════════════════════════════════════════════════════════
# Attention query
# ═════════════════════════════════════════════════════════════════════════════


class TestAttention:
    def test_stuck_forms_annotated(self, project):
        review = _instance(_template("Proof"), project)
        hold = _instance(_template("Permit"), project)
        _instance(_template("Measure"), project)
        update_status(review.id, "u-1", "IN_PROGRESS")
        update_status(review.id, "u-1", "PENDING_REVIEW")
        update_status(hold.id, "u-2", "ON_HOLD")

        nodes = get_forms_needing_attention(project.id)

        by_id = {n.form_id: n for n in nodes}
        assert set(by_id) == {review.id, hold.id}
        assert by_id[review.id].last_status == "PENDING_REVIEW"
        assert by_id[hold.id].last_status == "ON_HOLD"
        assert by_id[review.id].last_updated is not None
        # review entered its status before hold did
        assert [n.form_id for n in nodes] == [review.id, hold.id]

    def test_nothing_stuck(self, project):
        _instance(_template("Measure"), project)
        assert get_forms_needing_attention(project.id) == []

    def test_to_dict_includes_annotation(self, project):
        inst = _instance(_template("Permit"), project)
        update_status(inst.id, "u-1", "ON_HOLD")
        payload = get_forms_needing_attention(project.id)[0].to_dict()
        assert payload["last_status"] == "ON_HOLD"
        assert payload["last_updated"]
