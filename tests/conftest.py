"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from olio_monitor.database import get_db, init_db
from olio_monitor.main import app
from olio_monitor.models.domain import Report
from olio_monitor.models.enums import InspectionType, RecipientCategory, ReportStatus
from olio_monitor.services.feedback import FeedbackReconciler
from olio_monitor.services.state_machine import ReportWorkflow

ACTOR = "inspector_42"


class FixedClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    init_db(bind=engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 15, 9, 30))


@pytest.fixture
def workflow(db_session, clock):
    return ReportWorkflow(db_session, clock=clock)


@pytest.fixture
def reconciler(workflow):
    return FeedbackReconciler(workflow)


@pytest.fixture
def make_report(db_session, clock):
    """Insert a report directly in the given status."""
    def _make(status=ReportStatus.IN_PROGRESS, title="Mislabelled extra virgin oil"):
        report = Report(
            title=title,
            description="Label claims 100% Italian origin; supplier invoices say otherwise",
            status=status,
            created_by_id=ACTOR,
            created_at=clock(),
            updated_at=clock(),
        )
        db_session.add(report)
        db_session.commit()
        db_session.refresh(report)
        return report
    return _make


@pytest.fixture
def sample_report(make_report):
    """A basic report in IN_PROGRESS state."""
    return make_report()


def inspection_metadata(**overrides):
    data = {
        "type": "inspection",
        "inspection_type": InspectionType.SITE_VISIT.value,
        "date": "2025-01-20",
        "location": "Frantoio Rossi, Andria",
    }
    data.update(overrides)
    return data


def clarification_metadata(**overrides):
    data = {
        "type": "clarification",
        "recipient_category": RecipientCategory.PRODUCER.value,
        "subject": "Origin of the olives",
        "questions": ["Which groves supplied the 2024 harvest?"],
    }
    data.update(overrides)
    return data


def authority_metadata(**overrides):
    data = {
        "type": "authority_notice",
        "authority_type": "ICQRF",
        "authority_name": "ICQRF Bari",
        "subject": "Suspected origin fraud",
        "violations": ["Reg. EU 29/2012 art. 4"],
        "severity": "HIGH",
    }
    data.update(overrides)
    return data


@pytest.fixture
def api_session_factory():
    """One in-memory database shared by every request of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def client(api_session_factory):
    def override_get_db():
        db = api_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, headers={"X-Actor-Id": ACTOR})
    app.dependency_overrides.clear()
