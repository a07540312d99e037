"""Read-only projections of student records for role-specific screens.

Nothing here writes to a record. Risk tier, score and completeness come
only from the external classification; absent values render as PENDING.
"""

from typing import Any, Dict, List

from .models import Actor, Role, StudentRecord, Summary
from .ownership import ACTOR_FOR_ROLE, PARTITION_FIELDS

PENDING = "Pending"

ACTOR_LABELS = {
    Actor.EXAM_DEPARTMENT: "Exam Department",
    Actor.FACULTY: "Faculty",
    Actor.LOCAL_GUARDIAN: "Local Guardian",
}

# Roles allowed to see risk assessment data
RISK_VISIBLE_ROLES = frozenset({
    Role.EXAM_DEPARTMENT,
    Role.FACULTY,
    Role.LOCAL_GUARDIAN,
    Role.COUNSELOR,
})


def completion_view(record: StudentRecord) -> Dict[str, Any]:
    """Which actors have contributed, which are missing, and overall progress."""
    flags = {actor.value: bool(getattr(record.data_completion, actor.value)) for actor in Actor}
    missing = [ACTOR_LABELS[actor] for actor in Actor if not flags[actor.value]]
    return {
        'student_id': record.student_id,
        'flags': flags,
        'missing': missing,
        'progress': (len(flags) - len(missing)) / len(flags),
        'data_complete': record.data_complete,
        'status': "Complete" if record.data_complete else f"Waiting for {', '.join(missing)}",
    }


def risk_view(record: StudentRecord) -> Dict[str, Any]:
    if not record.has_risk:
        return {
            'student_id': record.student_id,
            'risk_level': PENDING,
            'risk_score': PENDING,
            'risk_factors': [],
            'recommendations': [],
        }
    return {
        'student_id': record.student_id,
        'risk_level': record.risk_level.value,
        'risk_score': record.risk_score if record.risk_score is not None else PENDING,
        'risk_factors': list(record.risk_factors),
        'recommendations': [r.action for r in record.recommendations],
    }


def _partition_view(record: StudentRecord, actor: Actor) -> Dict[str, Any]:
    data = {}
    for name in PARTITION_FIELDS[actor]:
        value = getattr(record, name)
        if hasattr(value, 'value'):
            value = value.value
        if name == 'attendance_rate' and value is None:
            value = PENDING
        data[name] = value
    return data


def view_for_role(record: StudentRecord, role: Role) -> Dict[str, Any]:
    """
    Build the record as shown to `role`.

    Contributing actors see their own partition; counselors see every
    partition. Students and parents never see risk assessment data.
    """
    role = Role(role)
    view = {
        'student_id': record.student_id,
        'name': record.name,
        'completion': completion_view(record),
    }

    own_actor = ACTOR_FOR_ROLE.get(role)
    if own_actor is not None:
        view[own_actor.value] = _partition_view(record, own_actor)
    else:
        for actor in Actor:
            view[actor.value] = _partition_view(record, actor)

    if role in RISK_VISIBLE_ROLES:
        view['risk'] = risk_view(record)
    return view


def table_rows(records: List[StudentRecord], role: Role) -> List[Dict[str, Any]]:
    return [view_for_role(record, role) for record in records]


def summary_view(summary: Summary) -> Dict[str, Any]:
    """Tier counts with percentages of the total."""
    def pct(count: int) -> float:
        return round(100.0 * count / summary.total, 1) if summary.total else 0.0

    return {
        'total': summary.total,
        'high': {'count': summary.high, 'pct': pct(summary.high)},
        'medium': {'count': summary.medium, 'pct': pct(summary.medium)},
        'low': {'count': summary.low, 'pct': pct(summary.low)},
        'pending': max(summary.total - summary.high - summary.medium - summary.low, 0),
    }
