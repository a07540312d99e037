"""Field ownership map and merge rules for actor contributions.

Each contributing actor owns one partition of a StudentRecord. An ingestion
from actor A may only set A's partition plus the shared identity fields;
everything else on the record is carried over untouched.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import ValidationFailure
from .models import (
    Actor,
    RiskAssessment,
    RiskLevel,
    Role,
    StudentRecord,
)

SHARED_FIELDS = ('student_id', 'name')

PARTITION_FIELDS: Dict[Actor, Tuple[str, ...]] = {
    Actor.EXAM_DEPARTMENT: ('grades', 'exam_type'),
    Actor.FACULTY: ('attendance_rate',),
    Actor.LOCAL_GUARDIAN: ('fees_status', 'amount_paid', 'amount_due', 'due_date'),
}

# Written only by the external risk collaborator
DERIVED_FIELDS = ('risk_level', 'risk_score', 'risk_factors', 'recommendations')

ACTOR_FOR_ROLE = {
    Role.EXAM_DEPARTMENT: Actor.EXAM_DEPARTMENT,
    Role.FACULTY: Actor.FACULTY,
    Role.LOCAL_GUARDIAN: Actor.LOCAL_GUARDIAN,
}

UNKNOWN_NAME = "Unknown Student"

_PARTITION_DEFAULTS = {
    name: field.get_default(call_default_factory=True)
    for name, field in StudentRecord.model_fields.items()
    if any(name in fields for fields in PARTITION_FIELDS.values())
}


def owner_of(field_name: str) -> Optional[Actor]:
    """Return the actor owning `field_name`, or None for shared/derived fields."""
    for actor, fields in PARTITION_FIELDS.items():
        if field_name in fields:
            return actor
    return None


def check_ownership(actor: Actor, fields: Iterable[str]) -> None:
    """Raise ValidationFailure if any field lies outside `actor`'s partition."""
    allowed = set(PARTITION_FIELDS[Actor(actor)])
    foreign = sorted(f for f in fields if f not in allowed)
    if foreign:
        raise ValidationFailure(
            f"{Actor(actor).value} may not write fields: {', '.join(foreign)}"
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rebuild(record: StudentRecord, update: Dict[str, Any]) -> StudentRecord:
    data = record.model_dump()
    data.update(update)
    return StudentRecord.model_validate(data)


def apply_contribution(
    existing: Optional[StudentRecord],
    student_id: str,
    actor: Actor,
    fields: Dict[str, Any],
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StudentRecord:
    """
    Merge one actor's contribution into a student record.

    Re-applying the same actor's data updates in place; the second
    contribution's values win for that partition only.

    Args:
        existing: Current record, or None to create one
        student_id: Identity of the student
        actor: Contributing actor
        fields: Partition fields to set; None values keep the current value
        name: Optional display name (shared field)
        now: Timestamp for last_updated

    Returns:
        The merged record (a new object; `existing` is not modified)
    """
    actor = Actor(actor)
    check_ownership(actor, fields.keys())
    now = now or _utcnow()

    if existing is None:
        existing = StudentRecord(student_id=student_id, name=name or UNKNOWN_NAME)
    elif existing.student_id != str(student_id).strip():
        raise ValidationFailure(
            f"Contribution for {student_id} cannot be applied to {existing.student_id}"
        )

    update = {k: v for k, v in fields.items() if v is not None}
    if name and name != UNKNOWN_NAME:
        update['name'] = name

    completion = existing.data_completion.model_copy(
        update={actor.value: True, 'last_updated': now}
    )
    update['data_completion'] = completion
    update['data_complete'] = completion.is_complete()
    update['last_updated'] = now
    return _rebuild(existing, update)


def clear_partition(record: StudentRecord, actor: Actor, now: Optional[datetime] = None) -> StudentRecord:
    """Remove one actor's data; the record's risk assessment is reset to pending."""
    actor = Actor(actor)
    now = now or _utcnow()
    update = {name: _PARTITION_DEFAULTS[name] for name in PARTITION_FIELDS[actor]}
    update['data_completion'] = record.data_completion.model_copy(
        update={actor.value: False, 'last_updated': now}
    )
    update['data_complete'] = False
    update.update(pending_risk())
    update['last_updated'] = now
    return _rebuild(record, update)


def pending_risk() -> Dict[str, Any]:
    return {
        'risk_level': RiskLevel.PENDING,
        'risk_score': None,
        'risk_factors': [],
        'recommendations': [],
    }


def apply_assessment(record: StudentRecord, assessment: RiskAssessment,
                     now: Optional[datetime] = None) -> StudentRecord:
    """Write the external collaborator's classification onto the record."""
    update = assessment.model_dump()
    update['last_updated'] = now or _utcnow()
    return _rebuild(record, update)



def reset_risk(record: StudentRecord, now: Optional[datetime] = None) -> StudentRecord:
    """Drop any classification from a record whose data is incomplete."""
    update = pending_risk()
    update['last_updated'] = now or _utcnow()
    return _rebuild(record, update)
