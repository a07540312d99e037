"""End-to-end tests against the FastAPI reference backend."""

import asyncio
import contextlib
import time

import httpx
import pytest

from student_tracker.config import Settings
from student_tracker.models import (
    ActionStatus,
    FeesStatus,
    NotificationKind,
    RiskAssessment,
    RiskLevel,
    Role,
    StudentRecord,
)
from student_tracker.server import parse_token_users, serialize_student


def csv_bytes(text):
    return text.strip().encode("utf-8")


EXAM_CSV = csv_bytes("""
Student ID,Student Name,Exam Type,Math,Physics
S001,Ada Lovelace,end sem,72,64
S002,Alan Turing,end sem,48,51
""")

ATTENDANCE_CSV = csv_bytes("""
Student ID,Attendance
S001,0.75
S002,55
""")

FEES_CSV = csv_bytes("""
Student ID,Fee Status,Amount Paid,Amount Due,Due Date
S001,Complete,5000,0,2024-06-30
S002,Overdue,1000,4000,2024-05-01
""")


def raw_client(transport, token=None):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(transport=transport, base_url="http://testserver", headers=headers)


async def upload_all(make_client, transport):
    for token, filename, content in (
        ("exam-token", "exam.csv", EXAM_CSV),
        ("faculty-token", "attendance.csv", ATTENDANCE_CSV),
        ("guardian-token", "fees.csv", FEES_CSV),
    ):
        client = make_client(transport, token=token, path="/upload")
        result = await client.pipeline.run_batch([(filename, content)])
        assert result.outcomes[0].ok, result.outcomes[0].error_message


@pytest.mark.anyio
async def test_health(asgi_transport):
    async with raw_client(asgi_transport) as http:
        response = await http.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.anyio
async def test_requests_without_valid_token_are_rejected(asgi_transport):
    async with raw_client(asgi_transport) as http:
        assert (await http.get("/api/students")).status_code == 401
    async with raw_client(asgi_transport, token="forged") as http:
        response = await http.get("/api/students")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or expired token"


@pytest.mark.anyio
async def test_three_actor_uploads_merge_into_one_record(make_client, backend, asgi_transport):
    await upload_all(make_client, asgi_transport)

    repo = backend.state.repository
    assert len(repo) == 2
    ada = repo.get("S001")
    assert ada.name == "Ada Lovelace"
    assert ada.grades == {"Math": 72.0, "Physics": 64.0}
    assert ada.attendance_rate == 75.0
    assert ada.fees_status == FeesStatus.COMPLETE
    assert ada.data_complete is True
    assert ada.risk_level == RiskLevel.LOW

    alan = repo.get("S002")
    assert alan.risk_level == RiskLevel.HIGH
    assert alan.amount_due == 4000.0

    counselor = make_client(asgi_transport, token="counselor-token")
    await counselor.sync.refresh_now()
    assert sorted(counselor.store.state.student_ids) == ["S001", "S002"]
    summary = counselor.store.state.summary
    assert (summary.total, summary.high, summary.low) == (2, 1, 1)
    assert summary.data_completion.all_complete == 2


@pytest.mark.anyio
async def test_reupload_updates_without_clobbering(make_client, backend, asgi_transport):
    await upload_all(make_client, asgi_transport)

    faculty = make_client(asgi_transport, token="faculty-token", path="/upload")
    completed = []
    await faculty.pipeline.run_batch(
        [("attendance.csv", csv_bytes("Student ID,Attendance\nS001,70"))],
        on_complete=completed.append,
    )

    ada = backend.state.repository.get("S001")
    assert ada.attendance_rate == 70.0
    assert ada.grades == {"Math": 72.0, "Physics": 64.0}
    assert ada.fees_status == FeesStatus.COMPLETE
    assert ada.risk_level == RiskLevel.MEDIUM
    assert len(backend.state.repository) == 2
    assert completed[0].affected_count == 1


@pytest.mark.anyio
async def test_upload_role_restrictions(asgi_transport):
    files = {"file": ("exam.csv", EXAM_CSV, "text/csv")}
    async with raw_client(asgi_transport, token="faculty-token") as http:
        response = await http.post("/api/upload/exam", files=files)
    assert response.status_code == 403

    async with raw_client(asgi_transport, token="counselor-token") as http:
        response = await http.post("/api/upload/exam", files=files)
    assert response.status_code == 200
    assert response.json()["createdCount"] == 2


@pytest.mark.anyio
async def test_upload_rejects_unreadable_files(asgi_transport):
    async with raw_client(asgi_transport, token="faculty-token") as http:
        bad_type = await http.post("/api/upload/attendance", files={"file": ("a.txt", b"x", "text/plain")})
        no_column = await http.post(
            "/api/upload/attendance", files={"file": ("a.csv", b"Student ID\nS1", "text/csv")}
        )
    assert bad_type.status_code == 400
    assert "Unsupported file type" in bad_type.json()["detail"]
    assert no_column.status_code == 400
    assert no_column.json()["detail"] == "Attendance column not found in file"


@pytest.mark.anyio
async def test_upload_size_limit(make_backend):
    app = make_backend(settings=Settings(max_upload_size_mb=0))
    async with raw_client(httpx.ASGITransport(app=app), token="faculty-token") as http:
        response = await http.post("/api/upload/attendance", files={"file": ("a.csv", ATTENDANCE_CSV, "text/csv")})
    assert response.status_code == 413


@pytest.mark.anyio
async def test_student_sees_own_record_without_risk(make_client, asgi_transport):
    await upload_all(make_client, asgi_transport)

    student = make_client(asgi_transport, token="student-token")
    students = await student.sync.fetch_students()

    assert [s.student_id for s in students] == ["S001"]
    assert students[0].risk_level is None
    assert students[0].risk_score is None

    async with raw_client(asgi_transport, token="student-token") as http:
        own = await http.get("/api/students/S001")
        other = await http.get("/api/students/S002")
        summary = await http.get("/api/students/dashboard/summary")
    assert own.status_code == 200
    assert "risk_level" not in own.json()["student"]
    assert other.status_code == 403
    assert summary.status_code == 403


@pytest.mark.anyio
async def test_risk_level_filter_and_pagination(make_client, asgi_transport):
    await upload_all(make_client, asgi_transport)

    async with raw_client(asgi_transport, token="counselor-token") as http:
        high = (await http.get("/api/students", params={"risk_level": "high"})).json()
        paged = (await http.get("/api/students", params={"limit": 1, "page": 2})).json()
        missing = await http.get("/api/students/NOPE")

    assert [s["student_id"] for s in high["students"]] == ["S002"]
    assert paged["pagination"] == {"page": 2, "totalPages": 2, "total": 2}
    assert len(paged["students"]) == 1
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_recalculate_uses_scorer(make_client, backend, asgi_transport):
    await upload_all(make_client, asgi_transport)

    async with raw_client(asgi_transport, token="faculty-token") as http:
        response = await http.post("/api/students/S002/recalculate")
    assert response.status_code == 200
    assert response.json()["student"]["risk_level"] == "high"

    async with raw_client(asgi_transport, token="guardian-token") as http:
        assert (await http.post("/api/students/S002/recalculate")).status_code == 403


@pytest.mark.anyio
async def test_delete_permissions(make_client, asgi_transport):
    await upload_all(make_client, asgi_transport)

    async with raw_client(asgi_transport, token="faculty-token") as http:
        assert (await http.delete("/api/students/S001")).status_code == 403
        assert (await http.delete("/api/students")).status_code == 403
        assert (await http.delete("/api/students/S001/fees-data")).status_code == 403
        assert (await http.delete("/api/students/S001/unknown-data")).status_code == 404
        cleared = await http.delete("/api/students/S001/attendance-data")
    assert cleared.status_code == 200
    assert cleared.json()["student"]["risk_level"] == "pending"


@pytest.mark.anyio
async def test_notifications_alert_medium_and_high(make_client, make_backend):
    sent = []
    app = make_backend(alert_sender=lambda student, recipient, email: sent.append((student.student_id, recipient, email)))
    transport = httpx.ASGITransport(app=app)
    await upload_all(make_client, transport)

    counselor = make_client(transport, token="counselor-token")
    report = await counselor.sync.send_notifications()

    assert (report.sent, report.successful, report.failed) == (2, 2, 0)
    assert [(s, r) for s, r, _ in sent] == [("S002", "student"), ("S002", "guardian")]
    assert sent[0][2]["subject"] == "Student Alert: Alan Turing (HIGH)"
    assert "Dear Parent/Guardian" in sent[1][2]["body"]


@pytest.mark.anyio
async def test_failed_alerts_are_counted(make_client, make_backend):
    def broken_sender(student, recipient, email):
        raise ConnectionError("SMTP down")

    transport = httpx.ASGITransport(app=make_backend(alert_sender=broken_sender))
    await upload_all(make_client, transport)

    async with raw_client(transport, token="counselor-token") as http:
        body = (await http.post("/api/notifications")).json()
    assert (body["sent"], body["failed"]) == (2, 2)


@pytest.mark.anyio
async def test_recalculate_all_scores_complete_and_resets_incomplete(make_client, make_backend):
    def picky_scorer(record):
        if record.student_id == "S002":
            return None
        return RiskAssessment(risk_level=RiskLevel.LOW, risk_score=12.0)

    app = make_backend(scorer=picky_scorer)
    transport = httpx.ASGITransport(app=app)
    await upload_all(make_client, transport)
    repo = app.state.repository
    repo.save(StudentRecord(student_id="S003", risk_level=RiskLevel.HIGH, risk_score=80))

    counselor = make_client(transport, token="counselor-token")
    results = await counselor.sync.recalculate_all()
    await counselor.sync.wait_for_refresh()

    assert results == {"successCount": 2, "errorCount": 1, "total": 3}
    assert repo.get("S001").risk_level == RiskLevel.LOW
    assert repo.get("S003").risk_level == RiskLevel.PENDING
    assert repo.get("S003").risk_score is None
    assert counselor.bus.notifications[-1].kind == NotificationKind.WARNING
    assert "2 successful, 1 errors" in counselor.bus.notifications[-1].message
    assert sorted(counselor.store.state.student_ids) == ["S001", "S002", "S003"]

    async with raw_client(transport, token="student-token") as http:
        assert (await http.post("/api/students/recalculate-all-risks")).status_code == 403


@pytest.mark.anyio
async def test_action_approval_flow(make_client, make_backend):
    sent = []
    app = make_backend(alert_sender=lambda student, recipient, email: sent.append((student.student_id, recipient, email)))
    transport = httpx.ASGITransport(app=app)
    await upload_all(make_client, transport)

    counselor = make_client(transport, token="counselor-token", path="/students/S001")
    action = await counselor.sync.create_action("S001", "Weekly tutoring", counselor_notes="Math support", priority="high")

    assert action.status == ActionStatus.PENDING
    assert counselor.store.state.get("S001").actions[0].action_id == action.action_id
    assert sent[0][:2] == ("S001", "guardian")
    assert sent[0][2]["subject"] == "Action Required: Weekly tutoring"
    assert "Priority: HIGH" in sent[0][2]["body"]

    guardian = make_client(transport, token="guardian-token")
    decided = await guardian.sync.decide_action("S001", action.action_id, approve=False, rejection_reason="Clashes with work")
    assert decided.status == ActionStatus.REJECTED
    assert decided.rejection_reason == "Clashes with work"
    assert decided.approved_by == "g1"

    path = f"/api/students/S001/actions/{action.action_id}"
    async with raw_client(transport, token="guardian-token") as http:
        again = await http.put(path, json={"status": "approved"})
        missing = await http.put("/api/students/S001/actions/nope", json={"status": "approved"})
        undecided = await http.put(path, json={"status": "pending"})
    assert again.status_code == 400
    assert again.json()["detail"] == "Action has already been processed"
    assert missing.status_code == 404
    assert undecided.status_code == 422

    async with raw_client(transport, token="faculty-token") as http:
        assert (await http.post("/api/students/S001/actions", json={"description": "x"})).status_code == 403

    student = make_client(transport, token="student-token")
    actions = await student.sync.fetch_actions("S001")
    assert [a.status for a in actions] == [ActionStatus.REJECTED]
    async with raw_client(transport, token="student-token") as http:
        assert (await http.get("/api/students/S002/actions")).status_code == 403


@pytest.mark.anyio
async def test_action_email_failure_does_not_fail_request(make_client, make_backend):
    def broken_sender(student, recipient, email):
        raise ConnectionError("SMTP down")

    transport = httpx.ASGITransport(app=make_backend(alert_sender=broken_sender))
    await upload_all(make_client, transport)

    async with raw_client(transport, token="counselor-token") as http:
        created = await http.post("/api/students/S001/actions", json={"description": "Meet advisor"})
        unknown = await http.post("/api/students/NOPE/actions", json={"description": "Meet advisor"})
    assert created.status_code == 201
    assert created.json()["message"] == "Action created successfully"
    assert unknown.status_code == 404


async def longest_stall(operation):
    """Run `operation` while a 20ms ticker runs; return the longest gap between ticks."""
    loop = asyncio.get_running_loop()
    ticks = []

    async def ticker():
        while True:
            ticks.append(loop.time())
            await asyncio.sleep(0.02)

    task = asyncio.ensure_future(ticker())
    try:
        result = await operation()
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    ticks.append(loop.time())
    return result, max(b - a for a, b in zip(ticks, ticks[1:]))


@pytest.mark.anyio
async def test_slow_scoring_does_not_block_event_loop(make_backend):
    def slow_scorer(record):
        time.sleep(0.3)
        return RiskAssessment(risk_level=RiskLevel.LOW, risk_score=10.0)

    transport = httpx.ASGITransport(app=make_backend(scorer=slow_scorer))
    async with raw_client(transport, token="counselor-token") as http:
        await http.post("/api/upload/exam", files={"file": ("exam.csv", EXAM_CSV, "text/csv")})
        await http.post("/api/upload/attendance", files={"file": ("attendance.csv", ATTENDANCE_CSV, "text/csv")})

        async def upload_fees():
            return await http.post("/api/upload/fees", files={"file": ("fees.csv", FEES_CSV, "text/csv")})

        async def recalculate():
            return await http.post("/api/students/S001/recalculate")

        async def recalculate_all():
            return await http.post("/api/students/recalculate-all-risks")

        for operation in (upload_fees, recalculate, recalculate_all):
            response, stall = await longest_stall(operation)
            assert response.status_code == 200
            assert stall < 0.25, operation.__name__


def test_parse_token_users():
    users = parse_token_users("abc=u1:counselor, xyz=u2:student:S001,")
    assert users["abc"].role == Role.COUNSELOR
    assert users["xyz"].student_id == "S001"

    with pytest.raises(ValueError):
        parse_token_users("broken")


def test_serialize_student_strips_risk_for_students():
    record = StudentRecord(student_id="S1", risk_level=RiskLevel.HIGH, risk_score=90)
    assert "risk_score" not in serialize_student(record, Role.PARENT)
    assert serialize_student(record, Role.COUNSELOR)["risk_score"] == 90
