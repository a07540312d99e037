"""Unit tests for actor field ownership and merging."""

from datetime import datetime, timezone

import pytest

from student_tracker.errors import ValidationFailure
from student_tracker.models import Actor, FeesStatus, RiskAssessment, RiskLevel
from student_tracker.ownership import (
    PARTITION_FIELDS,
    apply_assessment,
    apply_contribution,
    clear_partition,
    owner_of,
)
from student_tracker.repository import StudentRepository


def test_partitions_are_disjoint():
    seen = set()
    for fields in PARTITION_FIELDS.values():
        assert not seen & set(fields)
        seen |= set(fields)
    assert owner_of("attendance_rate") == Actor.FACULTY
    assert owner_of("risk_level") is None


def test_first_contribution_creates_record():
    record = apply_contribution(None, " S1 ", Actor.FACULTY, {"attendance_rate": 80.0}, name="Ada")

    assert record.student_id == "S1"
    assert record.name == "Ada"
    assert record.attendance_rate == 80.0
    assert record.data_completion.faculty is True
    assert record.data_completion.exam_department is False
    assert record.data_complete is False


def test_same_actor_second_contribution_wins():
    first = apply_contribution(None, "S1", Actor.EXAM_DEPARTMENT, {"grades": {"Math": 40.0}, "exam_type": "mid_sem"})
    second = apply_contribution(first, "S1", Actor.EXAM_DEPARTMENT, {"grades": {"Math": 75.0}, "exam_type": "end_sem"})

    assert second.grades == {"Math": 75.0}
    assert second.exam_type == "end_sem"
    # The earlier object is unchanged
    assert first.grades == {"Math": 40.0}


def test_cross_actor_contribution_does_not_clobber():
    record = apply_contribution(None, "S1", Actor.EXAM_DEPARTMENT, {"grades": {"Math": 55.0}, "exam_type": "end_sem"})
    record = apply_contribution(record, "S1", Actor.LOCAL_GUARDIAN, {
        "fees_status": FeesStatus.OVERDUE, "amount_paid": 100.0, "amount_due": 400.0, "due_date": "2024-05-01",
    })
    before = record

    after = apply_contribution(record, "S1", Actor.FACULTY, {"attendance_rate": 92.0})

    assert after.grades == before.grades
    assert after.exam_type == before.exam_type
    assert after.fees_status == FeesStatus.OVERDUE
    assert after.amount_due == 400.0
    assert after.due_date == "2024-05-01"
    assert after.attendance_rate == 92.0
    assert after.data_complete is True


def test_foreign_fields_rejected():
    with pytest.raises(ValidationFailure):
        apply_contribution(None, "S1", Actor.FACULTY, {"attendance_rate": 50.0, "grades": {"Math": 1.0}})
    with pytest.raises(ValidationFailure):
        apply_contribution(None, "S1", Actor.LOCAL_GUARDIAN, {"risk_level": "low"})


def test_contribution_for_other_student_rejected():
    record = apply_contribution(None, "S1", Actor.FACULTY, {"attendance_rate": 50.0})
    with pytest.raises(ValidationFailure):
        apply_contribution(record, "S2", Actor.FACULTY, {"attendance_rate": 60.0})


def test_none_values_keep_current():
    record = apply_contribution(None, "S1", Actor.FACULTY, {"attendance_rate": 70.0})
    record = apply_contribution(record, "S1", Actor.FACULTY, {"attendance_rate": None})
    assert record.attendance_rate == 70.0


def test_unknown_name_does_not_overwrite():
    record = apply_contribution(None, "S1", Actor.FACULTY, {"attendance_rate": 70.0}, name="Grace")
    record = apply_contribution(record, "S1", Actor.FACULTY, {"attendance_rate": 71.0}, name="Unknown Student")
    assert record.name == "Grace"


def test_clear_partition_resets_only_that_partition():
    record = apply_contribution(None, "S1", Actor.EXAM_DEPARTMENT, {"grades": {"Math": 55.0}})
    record = apply_contribution(record, "S1", Actor.FACULTY, {"attendance_rate": 60.0})
    record = apply_contribution(record, "S1", Actor.LOCAL_GUARDIAN, {"fees_status": FeesStatus.DUE})
    record = apply_assessment(record, RiskAssessment(risk_level=RiskLevel.MEDIUM, risk_score=50.0))

    cleared = clear_partition(record, Actor.FACULTY)

    assert cleared.attendance_rate is None
    assert cleared.grades == {"Math": 55.0}
    assert cleared.fees_status == FeesStatus.DUE
    assert cleared.data_completion.faculty is False
    assert cleared.data_complete is False
    assert cleared.risk_level == RiskLevel.PENDING
    assert cleared.has_risk is False


def test_repository_ingest_is_idempotent_per_student():
    repo = StudentRepository()
    contributions = [
        {"student_id": "S1", "name": "Ada", "actor": Actor.FACULTY, "fields": {"attendance_rate": 50.0}},
    ]
    assert repo.ingest(contributions) == (1, 0)

    contributions[0]["fields"] = {"attendance_rate": 65.0}
    assert repo.ingest(contributions) == (0, 1)

    assert len(repo) == 1
    assert repo.get("S1").attendance_rate == 65.0


def test_repository_scores_complete_records_only():
    calls = []

    def scorer(record):
        calls.append(record.student_id)
        return RiskAssessment(risk_level=RiskLevel.HIGH, risk_score=88.0, risk_factors=["fees"])

    repo = StudentRepository(scorer=scorer)
    repo.ingest([{"student_id": "S1", "actor": Actor.EXAM_DEPARTMENT, "fields": {"grades": {"Math": 30.0}}}])
    repo.ingest([{"student_id": "S1", "actor": Actor.FACULTY, "fields": {"attendance_rate": 40.0}}])
    assert calls == []
    assert repo.summary().high == 0

    repo.ingest([{"student_id": "S1", "actor": Actor.LOCAL_GUARDIAN, "fields": {"fees_status": FeesStatus.OVERDUE}}])
    assert calls == ["S1"]
    summary = repo.summary()
    assert (summary.total, summary.high) == (1, 1)
    assert summary.data_completion.all_complete == 1


def test_repository_cleanup_duplicates_keeps_latest():
    repo = StudentRepository()
    old = apply_contribution(None, "S1", Actor.FACULTY, {"attendance_rate": 10.0}, now=datetime(2024, 1, 1, tzinfo=timezone.utc))
    new = apply_contribution(old, "S1", Actor.FACULTY, {"attendance_rate": 90.0}, now=datetime(2024, 2, 1, tzinfo=timezone.utc))
    repo.add(old)
    repo.add(new)
    repo.add(apply_contribution(None, "S2", Actor.FACULTY, {"attendance_rate": 50.0}))

    assert repo.cleanup_duplicates() == 1
    assert repo.cleanup_duplicates() == 0
    assert [r.student_id for r in repo.all()] == ["S1", "S2"]
    assert repo.get("S1").attendance_rate == 90.0
