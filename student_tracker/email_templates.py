"""Alert email templates for at-risk students."""

from typing import Dict, Optional

from .models import RiskLevel, StudentAction, StudentRecord


def get_advisor_info(name: Optional[str] = None, email: Optional[str] = None) -> Dict[str, str]:
    """Advisor signature; defaults match the ADVISOR_NAME/ADVISOR_EMAIL settings."""
    return {
        'name': name or 'Academic Advisor',
        'email': email or 'advisor@example.com',
    }


def _attendance_str(student: StudentRecord) -> str:
    if student.attendance_rate is None:
        return "not yet recorded"
    return f"{student.attendance_rate:.1f}%"


def _factors_str(student: StudentRecord) -> str:
    if not student.risk_factors:
        return ""
    lines = "\n".join(f"  - {factor}" for factor in student.risk_factors)
    return f"\nThe main concerns flagged are:\n{lines}\n"


def generate_alert_email(student: StudentRecord, recipient: str, advisor: Dict[str, str]) -> Dict[str, str]:
    """
    Build an alert email for a classified student.

    Args:
        student: Record with a medium or high risk level
        recipient: "student" or "guardian"
        advisor: Signature from get_advisor_info

    Returns:
        Dict with 'subject' and 'body'
    """
    if student.risk_level == RiskLevel.HIGH:
        return _high_risk_email(student, recipient, advisor)
    return _medium_risk_email(student, recipient, advisor)


def _greeting(student: StudentRecord, recipient: str) -> str:
    if recipient == "guardian":
        return f"Dear Parent/Guardian of {student.name},"
    return f"Hi {student.name},"


def _medium_risk_email(student: StudentRecord, recipient: str, advisor: Dict[str, str]) -> Dict[str, str]:
    subject = f"Student Alert: {student.name} (MEDIUM)"
    body = f"""{_greeting(student, recipient)}

We are writing because recent exam, attendance and fees data show some early warning signs. Attendance is currently {_attendance_str(student)}.
{_factors_str(student)}
A short conversation with the student's advisor now can prevent bigger problems later. Please reply to arrange a time.

{advisor['name']}
{advisor['email']}"""
    return {'subject': subject, 'body': body}


def _high_risk_email(student: StudentRecord, recipient: str, advisor: Dict[str, str]) -> Dict[str, str]:
    subject = f"Student Alert: {student.name} (HIGH)"
    body = f"""{_greeting(student, recipient)}

Our records indicate that {student.name} is currently at high academic risk. Attendance is {_attendance_str(student)}.
{_factors_str(student)}
Please contact the counseling office as soon as possible so we can agree on a support plan together.

{advisor['name']}
{advisor['email']}"""
    return {'subject': subject, 'body': body}


def generate_action_email(action: StudentAction, student: StudentRecord, advisor: Dict[str, str]) -> Dict[str, str]:
    """Approval request sent to the guardian when a counselor proposes an action."""
    subject = f"Action Required: {action.description}"
    due = f"\nDue date: {action.due_date}" if action.due_date else ""
    body = f"""{_greeting(student, "guardian")}

A new action has been recommended for {student.name} (ID: {student.student_id}) and needs your approval.

Action: {action.description}
Counselor notes: {action.counselor_notes or "none"}
Priority: {action.priority.value.upper()}{due}

Please sign in to approve or reject it.

{advisor['name']}
{advisor['email']}"""
    return {'subject': subject, 'body': body}
