"""Ingestion pipeline: sequential multi-file uploads with per-file outcomes."""

import logging
from typing import Callable, Optional, Sequence, Tuple

from pydantic import ValidationError

from .api import ApiClient
from .errors import AuthorizationFailure, TransientNetworkFailure, ValidationFailure
from .models import (
    BatchResult,
    Role,
    Summary,
    UploadCategory,
    UploadOutcome,
    UploadStatus,
)
from .notifications import NotificationBus
from .parsers import file_category, has_identifying_column, load_table
from .session import SessionGuard
from .sync import SyncController

logger = logging.getLogger(__name__)

CATEGORY_FOR_ROLE = {
    Role.EXAM_DEPARTMENT: UploadCategory.EXAM,
    Role.FACULTY: UploadCategory.ATTENDANCE,
    Role.LOCAL_GUARDIAN: UploadCategory.FEES,
    Role.COUNSELOR: UploadCategory.GENERAL,
}

UploadFile = Tuple[str, bytes]


class IngestionPipeline:
    """
    Submits the files of a batch one after another.

    A file failing local validation never reaches the network; it is recorded
    as an error outcome and the remaining files are still processed.
    """

    def __init__(self, api: ApiClient, session: SessionGuard,
                 sync: Optional[SyncController] = None,
                 bus: Optional[NotificationBus] = None,
                 max_upload_size: int = 10 * 1024 * 1024):
        self.api = api
        self.session = session
        self.sync = sync
        self.bus = bus
        self.max_upload_size = max_upload_size

    def category_for(self, role: Role) -> UploadCategory:
        try:
            return CATEGORY_FOR_ROLE[Role(role)]
        except KeyError:
            raise ValidationFailure(f"Role '{Role(role).value}' cannot upload data") from None

    def validate_file(self, filename: str, content: bytes) -> None:
        """
        Local checks run before submission.

        Raises:
            ValidationFailure: unsupported extension, oversized or unreadable
                file, or no student id/name column
        """
        if file_category(filename) is None:
            raise ValidationFailure(
                f"Invalid file type for '{filename}'. Please upload a spreadsheet (.xlsx, .xls) or CSV file"
            )
        if len(content) > self.max_upload_size:
            raise ValidationFailure(
                f"'{filename}' is too large. Maximum size: {self.max_upload_size // (1024 * 1024)}MB"
            )
        df = load_table(content, filename)
        if not has_identifying_column(df):
            raise ValidationFailure(f"'{filename}' has no student ID or name column")

    async def _process_file(self, filename: str, content: bytes, category: UploadCategory) -> UploadOutcome:
        try:
            self.validate_file(filename, content)
        except ValidationFailure as e:
            logger.info("Rejected %s before upload: %s", filename, e)
            return UploadOutcome(filename=filename, status=UploadStatus.ERROR, error_message=str(e))

        try:
            payload = await self.api.upload(category, filename, content)
        except (AuthorizationFailure, TransientNetworkFailure) as e:
            logger.warning("Upload of %s failed: %s", filename, e)
            return UploadOutcome(filename=filename, status=UploadStatus.ERROR, error_message=str(e))

        if not payload.get('success', False):
            message = payload.get('error') or payload.get('message') or "Upload was not accepted"
            return UploadOutcome(filename=filename, status=UploadStatus.ERROR, error_message=str(message))

        affected = int(payload.get('createdCount') or 0) + int(payload.get('updatedCount') or 0)
        summary = None
        if payload.get('summary'):
            try:
                summary = Summary.model_validate(payload['summary'])
            except ValidationError as e:
                logger.warning("Ignoring malformed upload summary for %s: %s", filename, e)

        return UploadOutcome(
            filename=filename,
            status=UploadStatus.SUCCESS,
            affected_count=affected,
            summary=summary,
        )

    async def run_batch(
        self,
        files: Sequence[UploadFile],
        category: Optional[UploadCategory] = None,
        on_complete: Optional[Callable[[UploadOutcome], None]] = None,
    ) -> BatchResult:
        """
        Upload every file in order and collect one outcome per file.

        Args:
            files: (filename, content) pairs, processed in the given order
            category: Upload endpoint; defaults to the one for the user's role
            on_complete: Called once, after the last file, with the last
                successful outcome; not called when every file failed

        Returns:
            BatchResult with outcomes in submission order
        """
        if not files:
            raise ValidationFailure("No files selected")

        if category is None:
            user = self.session.current_user
            if user is None:
                raise AuthorizationFailure("Not signed in")
            category = self.category_for(user.role)
        category = UploadCategory(category)

        outcomes = []
        for filename, content in files:
            outcomes.append(await self._process_file(filename, content, category))

        result = BatchResult(outcomes=outcomes)
        failed = sum(1 for o in outcomes if not o.ok)
        logger.info("Batch finished: %d files, %d failed", len(outcomes), failed)

        if result.succeeded:
            if on_complete is not None:
                on_complete(result.last_success)
            if self.sync is not None:
                self.sync.refresh_data()

        if self.bus is not None:
            if not result.succeeded:
                self.bus.error(f"Upload failed for all {len(outcomes)} file(s)")
            elif result.partial:
                self.bus.warning(f"Uploaded {len(outcomes) - failed} of {len(outcomes)} files; {failed} failed")
            else:
                self.bus.success(f"Uploaded {len(outcomes)} file(s) successfully")

        return result
