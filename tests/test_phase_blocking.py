"""
Tests for can_complete_phase — phase-gating forms attached to a phase's tasks.

Covers:
    1.  Phase with no gating forms can complete
    2.  One open gating form blocks; completing it unblocks
    3.  Non-gating forms never block, whatever their status
    4.  Forms on other phases are ignored
    5.  Unknown phase raises NotFoundError
"""

import pytest

from formflow.core.exceptions import NotFoundError
from formflow.models import db
from formflow.models.form import FormInstance
from formflow.models.project import Phase, Project, ProjectTask
from formflow.services import form_catalog_service as catalog
from formflow.services.form_dependency_service import can_complete_phase
from formflow.services.form_status_service import update_status


# ═════════════════════════════════════════════════════════════════════════════
# ORM Helper Factories
# ═════════════════════════════════════════════════════════════════════════════


def _phase(project, name="Install", tasks=1):
    phase = Phase(project_id=project.id, name=name)
    db.session.add(phase)
    db.session.flush()
    created = []
    for idx in range(tasks):
        task = ProjectTask(phase_id=phase.id, name=f"{name} task {idx + 1}", sort_order=idx)
        db.session.add(task)
        created.append(task)
    db.session.commit()
    return phase, created


def _gated_form(project, task, name, gate=True):
    template = catalog.create_template(name)
    catalog.add_requirement(template.id, required_for_phase=gate)
    return catalog.create_instance(template.id, project.id, task_id=task.id)


def _force_status(instance, status):
    instance.status = status
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# Tests
# ═════════════════════════════════════════════════════════════════════════════


class TestPhaseBlocking:
    def test_phase_without_forms_can_complete(self, project):
        phase, _ = _phase(project)
        check = can_complete_phase(phase.id)
        assert check.can_complete is True
        assert check.blocking_forms == []

    def test_single_open_gate_blocks_until_completed(self, project):
        phase, tasks = _phase(project, tasks=3)
        gates = [
            _gated_form(project, task, f"Gate {i}")
            for i, task in enumerate(tasks, start=1)
        ]
        _force_status(gates[0], "COMPLETED")
        _force_status(gates[1], "COMPLETED")
        _force_status(gates[2], "ON_HOLD")

        check = can_complete_phase(phase.id)

        assert check.can_complete is False
        assert [n.form_id for n in check.blocking_forms] == [gates[2].id]
        assert check.blocking_forms[0].status == "ON_HOLD"
        assert check.blocking_forms[0].is_blocking is True

        update_status(gates[2].id, "u-1", "IN_PROGRESS")
        update_status(gates[2].id, "u-1", "COMPLETED")

        check = can_complete_phase(phase.id)
        assert check.can_complete is True
        assert check.blocking_forms == []

    def test_non_gating_forms_do_not_block(self, project):
        phase, tasks = _phase(project)
        _gated_form(project, tasks[0], "Optional checklist", gate=False)

        assert can_complete_phase(phase.id).can_complete is True

    def test_archived_gate_still_blocks(self, project):
        phase, tasks = _phase(project)
        gate = _gated_form(project, tasks[0], "Gate")
        _force_status(gate, "ARCHIVED")

        assert can_complete_phase(phase.id).can_complete is False

    def test_other_phases_ignored(self, project):
        install, install_tasks = _phase(project, "Install")
        survey, survey_tasks = _phase(project, "Survey")
        _gated_form(project, survey_tasks[0], "Survey gate")

        assert can_complete_phase(install.id).can_complete is True
        assert can_complete_phase(survey.id).can_complete is False

    def test_form_without_task_not_counted(self, project):
        phase, _ = _phase(project)
        template = catalog.create_template("Loose gate")
        catalog.add_requirement(template.id, required_for_phase=True)
        catalog.create_instance(template.id, project.id)

        assert FormInstance.query.count() == 1
        assert can_complete_phase(phase.id).can_complete is True

    def test_unknown_phase(self):
        with pytest.raises(NotFoundError):
            can_complete_phase(9999)

    def test_to_dict(self, project):
        phase, tasks = _phase(project)
        gate = _gated_form(project, tasks[0], "Gate")
        payload = can_complete_phase(phase.id).to_dict()
        assert payload["phase_id"] == phase.id
        assert payload["can_complete"] is False
        assert payload["blocking_forms"][0]["form_id"] == gate.id


def test_project_fixture_shape(project):
    assert isinstance(project, Project)
    assert project.phases.count() == 1
