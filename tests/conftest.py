"""
Shared pytest fixtures for the Form Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project: Pre-created Project with one phase and one task
"""

import pytest

from formflow import create_app
from formflow.models import db as _db
from formflow.models.project import Phase, Project, ProjectTask


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project():
    """Create and return a Project with a single phase and task."""
    proj = Project(code="JOB-001", name="Fleet Wrap")
    _db.session.add(proj)
    _db.session.flush()
    phase = Phase(project_id=proj.id, name="Install", sort_order=1)
    _db.session.add(phase)
    _db.session.flush()
    _db.session.add(ProjectTask(phase_id=phase.id, name="Site survey", sort_order=1))
    _db.session.commit()
    return proj
