"""FastAPI reference backend for the Student Risk Tracker REST contract."""

import asyncio
import logging
import time
import traceback
from typing import Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import Settings, load_settings
from .email_templates import generate_action_email, generate_alert_email, get_advisor_info
from .errors import ValidationFailure
from .models import (
    ActionCreate,
    ActionDecision,
    Actor,
    CurrentUser,
    RiskLevel,
    Role,
    StudentRecord,
    UploadCategory,
)
from .ownership import ACTOR_FOR_ROLE, DERIVED_FIELDS
from .parsers import extract_contributions, load_table
from .repository import StudentRepository
from .scoring import HttpRiskScorer, RiskScorer
from .views import RISK_VISIBLE_ROLES

logger = logging.getLogger(__name__)

AlertSender = Callable[[StudentRecord, str, Dict[str, str]], None]

STAFF_ROLES = (Role.COUNSELOR, Role.FACULTY, Role.EXAM_DEPARTMENT, Role.LOCAL_GUARDIAN)

UPLOAD_ROLES = {
    UploadCategory.EXAM: Role.EXAM_DEPARTMENT,
    UploadCategory.ATTENDANCE: Role.FACULTY,
    UploadCategory.FEES: Role.LOCAL_GUARDIAN,
    UploadCategory.GENERAL: Role.COUNSELOR,
}

PARTITION_ROUTES = {
    'exam-data': Actor.EXAM_DEPARTMENT,
    'attendance-data': Actor.FACULTY,
    'fees-data': Actor.LOCAL_GUARDIAN,
}

ALERT_LEVELS = (RiskLevel.MEDIUM, RiskLevel.HIGH)


def parse_token_users(spec: str) -> Dict[str, CurrentUser]:
    """
    Parse API_TOKENS entries of the form 'token=user_id:role[:student_id]'.

    Args:
        spec: Comma-separated entries

    Returns:
        Mapping of bearer token to CurrentUser
    """
    users = {}
    for entry in spec.split(','):
        entry = entry.strip()
        if not entry:
            continue
        token, _, identity = entry.partition('=')
        parts = identity.split(':')
        if not token or len(parts) < 2:
            raise ValueError(f"Invalid API_TOKENS entry: {entry!r}")
        users[token.strip()] = CurrentUser(
            user_id=parts[0].strip(),
            role=Role(parts[1].strip()),
            student_id=parts[2].strip() if len(parts) > 2 else None,
        )
    return users


def log_alert(student: StudentRecord, recipient: str, email: Dict[str, str]) -> None:
    """Default alert sender: write the alert to the log."""
    logger.info("Alert to %s of %s: %s", recipient, student.student_id, email['subject'])


def serialize_student(record: StudentRecord, role: Role) -> Dict:
    """JSON form of a record; risk data is stripped for roles that may not see it."""
    data = record.model_dump(mode='json')
    if role not in RISK_VISIBLE_ROLES:
        for name in DERIVED_FIELDS:
            data.pop(name, None)
    return data


def create_app(
    settings: Optional[Settings] = None,
    users: Optional[Dict[str, CurrentUser]] = None,
    scorer: Optional[RiskScorer] = None,
    alert_sender: Optional[AlertSender] = None,
    repository: Optional[StudentRepository] = None,
) -> FastAPI:
    """
    Build the backend application.

    Args:
        settings: Runtime settings; loaded from the environment when omitted
        users: Bearer token -> user; defaults to API_TOKENS
        scorer: External risk scorer; defaults to HttpRiskScorer(ML_API_URL)
            when configured, otherwise records stay pending
        alert_sender: Delivers alert emails; defaults to logging them
        repository: Student storage; a fresh in-memory one by default
    """
    settings = settings or load_settings()
    if users is None:
        users = parse_token_users(settings.api_tokens)
    if scorer is None and settings.ml_api_url:
        scorer = HttpRiskScorer(settings.ml_api_url, timeout=settings.request_timeout)
    repo = repository or StudentRepository(scorer=scorer)
    sender = alert_sender or log_alert

    app = FastAPI(title="Student Risk Tracker", version=__version__)
    app.state.repository = repo
    app.state.users = users

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        """Auth, permission and not-found errors as {"success": false, "detail": message}."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "detail": exc.detail}
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        """Malformed query or body: 422 with pydantic's error list under "detail"."""
        return JSONResponse(
            status_code=422,
            content={"success": False, "detail": jsonable_encoder(exc.errors())}
        )

    @app.exception_handler(ValidationFailure)
    async def validation_failure(request: Request, exc: ValidationFailure):
        """Unreadable upload or rejected contribution: 400 with the reason under "detail"."""
        return JSONResponse(
            status_code=400,
            content={"success": False, "detail": str(exc)}
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        """Anything else is a 500; the traceback is included only in debug mode."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error_detail = str(exc)
        if settings.debug:
            error_detail = f"{str(exc)}\n\n{traceback.format_exc()}"
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "detail": f"Internal server error: {error_detail}",
                "type": type(exc).__name__
            }
        )

    bearer = HTTPBearer(auto_error=False)

    def current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> CurrentUser:
        if credentials is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        user = app.state.users.get(credentials.credentials)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return user

    def authorize(*roles: Role):
        def dependency(user: CurrentUser = Depends(current_user)) -> CurrentUser:
            if user.role not in roles:
                raise HTTPException(status_code=403, detail="Insufficient permissions")
            return user
        return dependency

    def get_or_404(student_id: str) -> StudentRecord:
        record = repo.get(student_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Student not found")
        return record

    router = APIRouter(prefix="/api")

    @router.get("/students")
    async def list_students(
        risk_level: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
        user: CurrentUser = Depends(current_user),
    ):
        """List students, newest first, filtered by the caller's role."""
        if page < 1 or limit < 1:
            raise HTTPException(status_code=400, detail="page and limit must be positive")
        own_id = user.student_id if user.role in (Role.STUDENT, Role.PARENT) else None
        if user.role in (Role.STUDENT, Role.PARENT) and not own_id:
            return {"success": True, "students": [], "pagination": {"page": page, "totalPages": 0, "total": 0}}

        records, total = repo.query(risk_level=risk_level, student_id=own_id, page=page, limit=limit)
        return {
            "success": True,
            "students": [serialize_student(r, user.role) for r in records],
            "pagination": {
                "page": page,
                "totalPages": (total + limit - 1) // limit,
                "total": total,
            },
        }

    @router.get("/students/dashboard/summary")
    async def dashboard_summary(user: CurrentUser = Depends(authorize(*STAFF_ROLES))):
        return {"success": True, "summary": repo.summary().model_dump(mode='json')}

    @router.post("/students/cleanup-duplicates")
    def cleanup_duplicates(user: CurrentUser = Depends(authorize(Role.COUNSELOR))):
        deleted = repo.cleanup_duplicates()
        return {
            "success": True,
            "message": f"Cleaned up {deleted} duplicate student records",
            "deletedCount": deleted,
        }

    @router.post("/students/recalculate-all-risks")
    def recalculate_all_risks(user: CurrentUser = Depends(authorize(*STAFF_ROLES))):
        """Re-score every complete record; incomplete ones go back to pending."""
        successes, errors = repo.recalculate_all()
        return {
            "success": True,
            "message": f"Risk recalculation completed: {successes} successful, {errors} errors",
            "results": {
                "successCount": successes,
                "errorCount": errors,
                "total": successes + errors,
            },
        }

    @router.get("/students/{student_id}")
    async def get_student(student_id: str, user: CurrentUser = Depends(current_user)):
        if user.role in (Role.STUDENT, Role.PARENT) and user.student_id != student_id:
            raise HTTPException(status_code=403, detail="Access denied to this student's data")
        return {"success": True, "student": serialize_student(get_or_404(student_id), user.role)}

    @router.post("/students/{student_id}/recalculate")
    def recalculate_risk(
        student_id: str,
        user: CurrentUser = Depends(authorize(Role.COUNSELOR, Role.FACULTY, Role.EXAM_DEPARTMENT)),
    ):
        get_or_404(student_id)
        record = repo.recalculate(student_id)
        logger.info("Recalculated %s: %s", student_id, record.risk_level)
        return {"success": True, "student": serialize_student(record, user.role)}

    @router.post("/students/{student_id}/actions", status_code=201)
    def create_action(
        student_id: str,
        body: ActionCreate,
        user: CurrentUser = Depends(authorize(Role.COUNSELOR)),
    ):
        """Propose an action and ask the student's guardian to approve it."""
        action = repo.add_action(student_id, created_by=user.user_id, **body.model_dump())
        if action is None:
            raise HTTPException(status_code=404, detail="Student not found")
        student = repo.get(student_id)
        email = generate_action_email(action, student, get_advisor_info(settings.advisor_name, settings.advisor_email))
        try:
            sender(student, "guardian", email)
        except Exception as e:
            logger.error("Failed to send action approval email for %s: %s", student_id, e)
        return {"success": True, "message": "Action created successfully", "action": action.model_dump(mode='json')}

    @router.put("/students/{student_id}/actions/{action_id}")
    def decide_action(
        student_id: str,
        action_id: str,
        body: ActionDecision,
        user: CurrentUser = Depends(authorize(Role.LOCAL_GUARDIAN, Role.PARENT)),
    ):
        """Approve or reject a pending action."""
        if user.role == Role.PARENT and user.student_id != student_id:
            raise HTTPException(status_code=403, detail="Access denied to this student's data")
        get_or_404(student_id)
        try:
            action = repo.decide_action(
                student_id, action_id, body.status, user.user_id, rejection_reason=body.rejection_reason
            )
        except KeyError:
            raise HTTPException(status_code=404, detail="Action not found")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.info("Action %s for %s %s by %s", action_id, student_id, action.status.value, user.user_id)
        return {"success": True, "message": f"Action {action.status.value}", "action": action.model_dump(mode='json')}

    @router.get("/students/{student_id}/actions")
    async def list_actions(student_id: str, user: CurrentUser = Depends(current_user)):
        if user.role in (Role.STUDENT, Role.PARENT) and user.student_id != student_id:
            raise HTTPException(status_code=403, detail="Access denied to this student's data")
        record = get_or_404(student_id)
        return {"success": True, "actions": [a.model_dump(mode='json') for a in record.actions]}

    @router.delete("/students/{student_id}/{partition}")
    def delete_partition_data(student_id: str, partition: str, user: CurrentUser = Depends(current_user)):
        actor = PARTITION_ROUTES.get(partition)
        if actor is None:
            raise HTTPException(status_code=404, detail="Not found")
        if user.role != Role.COUNSELOR and ACTOR_FOR_ROLE.get(user.role) != actor:
            raise HTTPException(status_code=403, detail=f"Only {actor.value} can delete {partition}")
        get_or_404(student_id)
        record = repo.clear_partition(student_id, actor)
        return {
            "success": True,
            "message": f"{partition} deleted successfully",
            "student": serialize_student(record, user.role),
        }

    @router.delete("/students/{student_id}")
    def delete_student(student_id: str, user: CurrentUser = Depends(authorize(Role.COUNSELOR))):
        get_or_404(student_id)
        deleted = repo.delete(student_id)
        logger.info("Deleted student %s", student_id)
        return {"success": True, "message": f"Student {student_id} deleted", "deletedCount": deleted}

    @router.delete("/students")
    def delete_all_students(
        user: CurrentUser = Depends(authorize(Role.COUNSELOR, Role.EXAM_DEPARTMENT)),
    ):
        deleted = repo.delete_all()
        logger.warning("%s deleted all %d student records", user.user_id, deleted)
        return {
            "success": True,
            "message": f"Successfully deleted {deleted} student records",
            "deletedCount": deleted,
        }

    @router.post("/upload/{category}")
    async def upload_file(
        category: UploadCategory,
        file: UploadFile = File(...),
        user: CurrentUser = Depends(current_user),
    ):
        """Upload one actor file and merge it into the student records."""
        if user.role not in (UPLOAD_ROLES[category], Role.COUNSELOR):
            raise HTTPException(status_code=403, detail="Insufficient permissions for file upload")

        file_bytes = await file.read()
        if len(file_bytes) > settings.max_upload_size:
            raise HTTPException(
                status_code=413,
                detail=f"File too large. Maximum size: {settings.max_upload_size_mb}MB"
            )

        df = load_table(file_bytes, file.filename or "")
        if df.empty:
            raise HTTPException(status_code=400, detail="No student records found in the uploaded file.")

        contributions = extract_contributions(df, category)
        created, updated = await asyncio.to_thread(repo.ingest, contributions)
        summary = repo.summary()
        logger.info(
            "Upload %s by %s: %d created, %d updated (%d total)",
            category.value, user.user_id, created, updated, summary.total,
        )
        return {
            "success": True,
            "message": f"Processed {created + updated} students",
            "createdCount": created,
            "updatedCount": updated,
            "summary": summary.model_dump(mode='json'),
        }

    @router.post("/notifications")
    async def send_notifications(user: CurrentUser = Depends(authorize(*STAFF_ROLES))):
        """Send alert emails to students and guardians of medium/high risk students."""
        started = time.perf_counter()
        advisor = get_advisor_info(settings.advisor_name, settings.advisor_email)
        successful = failed = 0
        for student in repo.all():
            if student.risk_level not in ALERT_LEVELS:
                continue
            for recipient in ("student", "guardian"):
                email = generate_alert_email(student, recipient, advisor)
                try:
                    sender(student, recipient, email)
                    successful += 1
                except Exception as e:
                    logger.error("Failed to send %s alert for %s: %s", recipient, student.student_id, e)
                    failed += 1
        return {
            "success": True,
            "sent": successful + failed,
            "successful": successful,
            "failed": failed,
            "duration": round(time.perf_counter() - started, 3),
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint to test server connectivity."""
        return JSONResponse(content={"status": "ok", "message": "Server is running"})

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=5000)
