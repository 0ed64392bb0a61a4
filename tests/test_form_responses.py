"""
Tests for form_response_service — saved answers and the required-item guard.

Covers:
    1.  Saving a response writes one FormResponseHistory row (DRAFT / CREATED)
        and points instance.response_ref at the new response
    2.  Responses are listed newest first
    3.  Input validation (data / metadata objects, integer version, actor)
    4.  COMPLETED / ARCHIVED instances refuse new responses
    5.  A store failure writes neither the response nor its history row
    6.  Required items are read from the instance's template version
    7.  COMPLETED is refused until the latest response answers every required
        item; check_completion reports the same items
    8.  The guard can be switched off
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from formflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    RequiredItemsMissingError,
    ValidationError,
)
from formflow.models import db
from formflow.models.form import FormInstance, FormResponse, FormResponseHistory
from formflow.services import form_catalog_service as catalog
from formflow.services.form_dependency_service import check_completion
from formflow.services.form_response_service import (
    find_missing_items,
    list_responses,
    required_items,
    save_response,
)
from formflow.services.form_status_service import batch_update_status, update_status

BASE = "/api/v1"
ACTOR = {"X-Actor-Id": "u-api"}

SURVEY_SCHEMA = {
    "sections": [
        {"id": "site", "title": "Site", "items": [
            {"id": "address", "label": "Address", "required": True},
            {"id": "notes", "label": "Notes"},
        ]},
        {"id": "measure", "title": "Measurements", "items": [
            {"id": "width_mm", "label": "Width (mm)", "required": True},
            {"id": "power_on_site", "label": "Power on site", "required": True},
        ]},
    ],
}


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _survey(project, schema=SURVEY_SCHEMA, status=None):
    template = catalog.create_template("Site Survey", schema=schema)
    inst = catalog.create_instance(template.id, project.id, actor_id="seed")
    if status:
        inst.status = status
        db.session.commit()
    return inst


# ═════════════════════════════════════════════════════════════════════════════
# Saving & listing
# ═════════════════════════════════════════════════════════════════════════════


class TestSaveResponse:
    def test_save_writes_history_and_reference(self, project):
        inst = _survey(project)

        response = save_response(
            inst.id, {"address": "1 Dock Rd"}, actor_id="u-1", metadata={"device": "tablet"},
        )

        assert response.data == {"address": "1 Dock Rd"}
        assert response.meta == {"device": "tablet"}
        assert response.version == 1
        assert response.submitted_by == "u-1"
        entries = FormResponseHistory.query.filter_by(response_id=response.id).all()
        assert len(entries) == 1
        assert entries[0].status == "DRAFT"
        assert entries[0].change_type == "CREATED"
        assert entries[0].changed_by == "u-1"
        db.session.expire_all()
        assert db.session.get(FormInstance, inst.id).response_ref == str(response.id)

    def test_responses_listed_newest_first(self, project):
        inst = _survey(project)
        first = save_response(inst.id, {"address": "draft"}, actor_id="u-1")
        second = save_response(inst.id, {"address": "final"}, actor_id="u-2")

        assert [r.id for r in list_responses(inst.id)] == [second.id, first.id]

    def test_explicit_version_kept(self, project):
        inst = _survey(project)
        assert save_response(inst.id, {}, actor_id="u-1", version=3).version == 3

    @pytest.mark.parametrize("kwargs", [
        {"data": ["address"]},
        {"data": {}, "metadata": "tablet"},
        {"data": {}, "version": "2"},
        {"data": {}, "version": True},
        {"data": {}, "actor_id": " "},
    ])
    def test_invalid_input_rejected(self, project, kwargs):
        inst = _survey(project)
        params = {"actor_id": "u-1", **kwargs}
        data = params.pop("data")
        with pytest.raises(ValidationError):
            save_response(inst.id, data, **params)
        assert FormResponse.query.count() == 0

    def test_unknown_instance(self):
        with pytest.raises(NotFoundError):
            save_response(9999, {}, actor_id="u-1")
        with pytest.raises(NotFoundError):
            list_responses(9999)

    @pytest.mark.parametrize("status", ["COMPLETED", "ARCHIVED"])
    def test_closed_instance_refuses_answers(self, project, status):
        inst = _survey(project, status=status)
        with pytest.raises(ConflictError):
            save_response(inst.id, {"address": "late"}, actor_id="u-1")
        assert FormResponse.query.count() == 0

    def test_store_failure_writes_nothing(self, project):
        inst = _survey(project)
        with patch.object(db.session, "commit", side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(PersistenceError):
                save_response(inst.id, {"address": "1 Dock Rd"}, actor_id="u-1")

        assert FormResponse.query.count() == 0
        assert FormResponseHistory.query.count() == 0
        assert db.session.get(FormInstance, inst.id).response_ref is None


# ═════════════════════════════════════════════════════════════════════════════
# Required items
# ═════════════════════════════════════════════════════════════════════════════


class TestRequiredItems:
    def test_required_items_flattened_across_sections(self):
        assert required_items(SURVEY_SCHEMA) == [
            {"item_id": "address", "label": "Address", "section_id": "site"},
            {"item_id": "width_mm", "label": "Width (mm)", "section_id": "measure"},
            {"item_id": "power_on_site", "label": "Power on site", "section_id": "measure"},
        ]

    def test_malformed_schema_has_no_required_items(self):
        assert required_items({}) == []
        assert required_items({"sections": "none"}) == []
        assert required_items({"sections": [{"items": [{"label": "no id", "required": True}]}]}) == []

    def test_no_response_leaves_every_item_open(self, project):
        inst = _survey(project)
        assert [m["item_id"] for m in find_missing_items(inst)] == [
            "address", "width_mm", "power_on_site",
        ]

    def test_empty_values_unanswered_zero_and_false_answered(self, project):
        inst = _survey(project)
        save_response(inst.id, {"address": "  ", "width_mm": 0, "power_on_site": False},
                      actor_id="u-1")
        save_response(inst.id, {"address": "", "width_mm": 0, "power_on_site": False},
                      actor_id="u-1")

        assert [m["item_id"] for m in find_missing_items(inst)] == ["address"]

    def test_only_latest_response_counts(self, project):
        inst = _survey(project)
        save_response(inst.id, {"address": "1 Dock Rd", "width_mm": 1200,
                                "power_on_site": True}, actor_id="u-1")
        save_response(inst.id, {"address": "1 Dock Rd"}, actor_id="u-1")

        assert [m["item_id"] for m in find_missing_items(inst)] == ["width_mm", "power_on_site"]

    def test_schema_without_required_items_needs_no_response(self, project):
        inst = _survey(project, schema={"sections": [{"id": "s", "items": [{"id": "n"}]}]})
        assert find_missing_items(inst) == []

    def test_instance_keeps_schema_of_its_version(self, project):
        inst = _survey(project)
        catalog.publish_template_version(inst.template_id, {"sections": []})

        assert len(find_missing_items(inst)) == 3


# ═════════════════════════════════════════════════════════════════════════════
# Completion guard
# ═════════════════════════════════════════════════════════════════════════════


class TestResponseCompletionGuard:
    def test_unanswered_items_block_completion(self, project):
        inst = _survey(project, status="IN_PROGRESS")
        save_response(inst.id, {"address": "1 Dock Rd"}, actor_id="u-1")

        with pytest.raises(RequiredItemsMissingError) as exc_info:
            update_status(inst.id, "u-1", "COMPLETED")

        assert exc_info.value.from_status == "IN_PROGRESS"
        assert [m["item_id"] for m in exc_info.value.missing_items] == [
            "width_mm", "power_on_site",
        ]
        db.session.expire_all()
        assert db.session.get(FormInstance, inst.id).status == "IN_PROGRESS"

        check = check_completion(inst.id)
        assert check.is_complete is False
        assert check.missing_requirements == []
        assert [m["item_id"] for m in check.missing_items] == ["width_mm", "power_on_site"]

    def test_answered_items_allow_completion(self, project):
        inst = _survey(project, status="IN_PROGRESS")
        save_response(inst.id, {"address": "1 Dock Rd", "width_mm": 1200,
                                "power_on_site": True}, actor_id="u-1")

        assert check_completion(inst.id).is_complete is True
        assert update_status(inst.id, "u-1", "COMPLETED").status == "COMPLETED"

    def test_batch_reports_missing_items(self, project):
        inst = _survey(project, status="PENDING_REVIEW")

        result = batch_update_status([inst.id], "u-1", "COMPLETED")

        assert result.updated_ids == []
        assert result.errors[0]["code"] == "ERR_REQUIRED_ITEMS_MISSING"
        assert result.errors[0]["from_status"] == "PENDING_REVIEW"
        assert len(result.errors[0]["missing_items"]) == 3

    def test_guard_can_be_disabled(self, app, project):
        inst = _survey(project, status="IN_PROGRESS")
        app.config["FORMS_REQUIRE_RESPONSES_FOR_COMPLETION"] = False
        try:
            assert check_completion(inst.id).missing_items == []
            assert update_status(inst.id, "u-1", "COMPLETED").status == "COMPLETED"
        finally:
            app.config["FORMS_REQUIRE_RESPONSES_FOR_COMPLETION"] = True


# ═════════════════════════════════════════════════════════════════════════════
# HTTP
# ═════════════════════════════════════════════════════════════════════════════


class TestResponseApi:
    def test_save_and_list(self, client, project):
        inst = _survey(project)

        rv = client.post(f"{BASE}/forms/instances/{inst.id}/responses",
                         json={"data": {"address": "1 Dock Rd"}, "metadata": {"app": "ios"}},
                         headers=ACTOR)
        assert rv.status_code == 201
        saved = rv.get_json()
        assert saved["data"] == {"address": "1 Dock Rd"}
        assert saved["submitted_by"] == "u-api"

        rv = client.get(f"{BASE}/forms/instances/{inst.id}/responses")
        body = rv.get_json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == saved["id"]

        detail = client.get(f"{BASE}/forms/instances/{inst.id}").get_json()
        assert detail["response_ref"] == str(saved["id"])

    def test_actor_and_data_required(self, client, project):
        inst = _survey(project)
        url = f"{BASE}/forms/instances/{inst.id}/responses"
        assert client.post(url, json={"data": {}}).status_code == 400
        assert client.post(url, json={}, headers=ACTOR).status_code == 400
        assert client.post(url, json={"data": "x"}, headers=ACTOR).status_code == 400

    def test_closed_instance_conflict(self, client, project):
        inst = _survey(project, status="ARCHIVED")
        rv = client.post(f"{BASE}/forms/instances/{inst.id}/responses",
                         json={"data": {}}, headers=ACTOR)
        assert rv.status_code == 409

    def test_completion_blocked_by_missing_items(self, client, project):
        inst = _survey(project, status="IN_PROGRESS")

        rv = client.patch(f"{BASE}/forms/instances/{inst.id}/status",
                          json={"status": "COMPLETED"}, headers=ACTOR)

        assert rv.status_code == 409
        body = rv.get_json()
        assert body["code"] == "ERR_REQUIRED_ITEMS_MISSING"
        assert len(body["details"]["missing_items"]) == 3

        completion = client.get(f"{BASE}/forms/instances/{inst.id}/completion").get_json()
        assert completion["is_complete"] is False
        assert len(completion["missing_items"]) == 3
