"""
Shared pytest fixtures for the exception tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - sla_rules: default SLA rule table (critical 24h ... low 120h)
    - break_commit: installer that makes every session commit fail
    - principal fixtures for every role, verticals 5 and 7
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from exception_tracker import create_app
from exception_tracker.models import db as _db
from exception_tracker.services.access_policy import Principal, Role


VERTICAL_A = 5
VERTICAL_B = 7


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


@pytest.fixture()
def sla_rules():
    """Seed the default SLA rule table and return it as {severity: hours}."""
    from exception_tracker.services.sla_engine import seed_default_sla_rules

    defaults = {"critical": 24, "high": 48, "medium": 72, "low": 120}
    seed_default_sla_rules(defaults)
    return defaults


@pytest.fixture()
def break_commit(monkeypatch):
    """Return a callable that makes every later Session.commit raise."""

    def _install():
        def _fail(self):
            raise SQLAlchemyError("database unavailable")

        monkeypatch.setattr(Session, "commit", _fail)

    return _install


# ── Principals ───────────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Principal(id=1, role=Role.GLOBAL_ADMIN, vertical_id=None)


@pytest.fixture()
def secondary():
    return Principal(id=2, role=Role.SECONDARY_GLOBAL, vertical_id=None)


@pytest.fixture()
def lead():
    return Principal(id=10, role=Role.VERTICAL_LEAD, vertical_id=VERTICAL_A)


@pytest.fixture()
def other_lead():
    return Principal(id=11, role=Role.VERTICAL_LEAD, vertical_id=VERTICAL_B)


@pytest.fixture()
def staff():
    return Principal(id=20, role=Role.STAFF, vertical_id=VERTICAL_A)


@pytest.fixture()
def other_staff():
    return Principal(id=21, role=Role.STAFF, vertical_id=VERTICAL_B)
