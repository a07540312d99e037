"""Data models for the Student Risk Tracker."""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Actor(str, Enum):
    """Contributing actor categories; each owns one partition of a record."""
    EXAM_DEPARTMENT = "exam_department"
    FACULTY = "faculty"
    LOCAL_GUARDIAN = "local_guardian"


class Role(str, Enum):
    EXAM_DEPARTMENT = "exam-department"
    FACULTY = "faculty"
    LOCAL_GUARDIAN = "local-guardian"
    COUNSELOR = "counselor"
    STUDENT = "student"
    PARENT = "parent"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    PENDING = "pending"


class FeesStatus(str, Enum):
    COMPLETE = "Complete"
    PARTIAL = "Partial"
    DUE = "Due"
    OVERDUE = "Overdue"
    PENDING = "Pending"


class UploadCategory(str, Enum):
    EXAM = "exam"
    ATTENDANCE = "attendance"
    FEES = "fees"
    GENERAL = "general"


class UploadStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class CurrentUser(BaseModel):
    """Identity of the signed-in user."""
    user_id: str
    name: str = ""
    role: Role
    student_id: Optional[str] = None


class Recommendation(BaseModel):
    action: str
    description: str = ""
    urgency: Optional[str] = None
    completed: bool = False


class ActionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ActionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class StudentAction(BaseModel):
    """Counselor-recommended intervention awaiting guardian or parent approval."""
    model_config = ConfigDict(frozen=True)

    action_id: str
    description: str = Field(min_length=1)
    counselor_notes: str = ""
    priority: ActionPriority = ActionPriority.MEDIUM
    due_date: Optional[str] = None
    status: ActionStatus = ActionStatus.PENDING
    rejection_reason: str = ""
    created_by: str = ""
    approved_by: str = ""
    last_updated: Optional[datetime] = None


class DataCompletion(BaseModel):
    """Per-actor completion flags."""
    model_config = ConfigDict(frozen=True)

    exam_department: bool = False
    faculty: bool = False
    local_guardian: bool = False
    last_updated: Optional[datetime] = None

    def is_complete(self) -> bool:
        return self.exam_department and self.faculty and self.local_guardian


class StudentRecord(BaseModel):
    """A student entity merged from exam, faculty and guardian contributions."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    student_id: str
    name: str = "Unknown Student"

    # Exam department partition
    grades: Dict[str, float] = Field(default_factory=dict)
    exam_type: Optional[str] = None

    # Faculty partition
    attendance_rate: Optional[float] = Field(default=None, ge=0, le=100)

    # Local guardian partition
    fees_status: FeesStatus = FeesStatus.PENDING
    amount_paid: float = 0.0
    amount_due: float = 0.0
    due_date: str = ""

    # Derived by the external risk collaborator
    risk_level: Optional[RiskLevel] = None
    risk_score: Optional[float] = Field(default=None, ge=0, le=100)
    risk_factors: List[str] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    data_complete: bool = False
    data_completion: DataCompletion = Field(default_factory=DataCompletion)

    # Counselor interventions; not owned by any contributing actor
    actions: List[StudentAction] = Field(default_factory=list)

    last_updated: Optional[datetime] = None

    @field_validator('student_id')
    @classmethod
    def _strip_student_id(cls, value: str) -> str:
        value = str(value).strip()
        if not value:
            raise ValueError("student_id must not be empty")
        return value

    @property
    def has_risk(self) -> bool:
        """True once the external collaborator has classified this student."""
        return self.risk_level is not None and self.risk_level != RiskLevel.PENDING


class RiskAssessment(BaseModel):
    """Response contract of the external risk collaborator."""
    risk_level: RiskLevel
    risk_score: float = Field(ge=0, le=100)
    risk_factors: List[str] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)


class PartitionCompletion(BaseModel):
    completed: int = 0
    pending: int = 0


class CompletionStats(BaseModel):
    exam_department: PartitionCompletion = Field(default_factory=PartitionCompletion)
    faculty: PartitionCompletion = Field(default_factory=PartitionCompletion)
    local_guardian: PartitionCompletion = Field(default_factory=PartitionCompletion)
    all_complete: int = 0
    pending_calculation: int = 0


class Summary(BaseModel):
    """Aggregate counts by risk tier over the current records."""
    model_config = ConfigDict(frozen=True)

    total: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    data_completion: Optional[CompletionStats] = None

    @classmethod
    def zero(cls) -> "Summary":
        return cls()


class UploadOutcome(BaseModel):
    """Result of submitting one file in a batch."""
    model_config = ConfigDict(frozen=True)

    filename: str
    status: UploadStatus
    affected_count: Optional[int] = None
    error_message: Optional[str] = None
    summary: Optional[Summary] = None

    @property
    def ok(self) -> bool:
        return self.status == UploadStatus.SUCCESS


class BatchResult(BaseModel):
    """Ordered outcomes of one multi-file upload interaction."""
    outcomes: List[UploadOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return any(o.ok for o in self.outcomes)

    @property
    def partial(self) -> bool:
        return self.succeeded and any(not o.ok for o in self.outcomes)

    @property
    def last_success(self) -> Optional[UploadOutcome]:
        for outcome in reversed(self.outcomes):
            if outcome.ok:
                return outcome
        return None


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    message: str
    kind: NotificationKind = NotificationKind.INFO
    expires_at: Optional[datetime] = None


class NotificationReport(BaseModel):
    """Response from the /notifications endpoint."""
    sent: int = 0
    successful: int = 0
    failed: int = 0
    duration: float = 0.0


class ActionCreate(BaseModel):
    """Request body for proposing a new action."""
    description: str = Field(min_length=1)
    counselor_notes: str = ""
    priority: ActionPriority = ActionPriority.MEDIUM
    due_date: Optional[str] = None


class ActionDecision(BaseModel):
    """Guardian or parent verdict on a pending action."""
    status: ActionStatus
    rejection_reason: str = ""

    @field_validator('status')
    @classmethod
    def _must_decide(cls, value: ActionStatus) -> ActionStatus:
        if value == ActionStatus.PENDING:
            raise ValueError("status must be approved or rejected")
        return value
