"""Shared test fixtures for the pipeline test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- stages: two open stages (A, B) plus Won and Lost
"""

import pytest

from dealflow import create_app
from dealflow.extensions import db as _db
from dealflow.services import stage_service


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def stages(db_session):
    """Seed Stage A (20%, 10d), Stage B (60%, 10d), Won and Lost.

    Returns a dict of plain ids so tests never depend on expired objects.
    """
    stage_a = stage_service.create_stage(
        "Stage A", color="#5a9bd5", win_probability=20, rotting_days=10,
    )
    stage_b = stage_service.create_stage(
        "Stage B", color="#f4b942", win_probability=60, rotting_days=10,
    )
    won = stage_service.create_stage("Won", color="#4a7c59", is_won=True)
    lost = stage_service.create_stage("Lost", color="#c25a5a", is_lost=True)

    return {
        "a": stage_a.id,
        "b": stage_b.id,
        "won": won.id,
        "lost": lost.id,
    }
