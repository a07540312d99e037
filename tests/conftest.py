"""Shared fixtures: a reference backend and a client controller stack."""

import httpx
import pytest

from student_tracker.client import TrackerClient
from student_tracker.config import Settings
from student_tracker.models import CurrentUser, RiskAssessment, RiskLevel, Role
from student_tracker.server import create_app

BASE_URL = "http://testserver/api"

USERS = {
    "counselor-token": CurrentUser(user_id="c1", name="Casey", role=Role.COUNSELOR),
    "exam-token": CurrentUser(user_id="e1", name="Exam Office", role=Role.EXAM_DEPARTMENT),
    "faculty-token": CurrentUser(user_id="f1", name="Prof", role=Role.FACULTY),
    "guardian-token": CurrentUser(user_id="g1", name="Guardian", role=Role.LOCAL_GUARDIAN),
    "student-token": CurrentUser(user_id="s1", name="Sam", role=Role.STUDENT, student_id="S001"),
}


@pytest.fixture
def anyio_backend():
    return "asyncio"


def attendance_scorer(record):
    """Stand-in for the external scoring service."""
    rate = record.attendance_rate or 0.0
    if rate < 60:
        return RiskAssessment(risk_level=RiskLevel.HIGH, risk_score=85.0, risk_factors=["low_attendance"])
    if rate < 75:
        return RiskAssessment(risk_level=RiskLevel.MEDIUM, risk_score=55.0, risk_factors=["attendance_warning"])
    return RiskAssessment(risk_level=RiskLevel.LOW, risk_score=10.0)


@pytest.fixture
def make_backend():
    def factory(**kwargs):
        kwargs.setdefault("settings", Settings())
        kwargs.setdefault("scorer", attendance_scorer)
        return create_app(users=dict(USERS), **kwargs)
    return factory


@pytest.fixture
def backend(make_backend):
    return make_backend()


@pytest.fixture
def make_client():
    """Build a TrackerClient on `transport`, optionally signed in with a test token."""
    def factory(transport, token=None, path="/dashboard"):
        client = TrackerClient(Settings(api_base_url=BASE_URL, refresh_debounce_ms=20), transport=transport, path=path)
        if token:
            client.login(token, USERS[token])
        return client
    return factory


@pytest.fixture
def asgi_transport(backend):
    return httpx.ASGITransport(app=backend)
