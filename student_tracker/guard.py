"""Destructive operation guard: confirmation protocol for irreversible deletes.

States per operation::

    IDLE -> AWAITING_CONFIRMATION -> CANCELLED
                                  -> AWAITING_TYPED_CONFIRMATION -> CANCELLED
                                  -> CONFIRMED -> EXECUTING -> SUCCEEDED | FAILED

Only "delete all" passes through AWAITING_TYPED_CONFIRMATION. Every terminal
state returns the guard to IDLE.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .api import ApiClient
from .config import DELETE_ALL_PHRASE
from .errors import (
    AuthorizationFailure,
    ConfirmationMismatch,
    InvalidTransition,
    TransientNetworkFailure,
)
from .models import Actor, StudentRecord
from .notifications import NotificationBus
from .store import RecordStore
from .sync import SyncController

logger = logging.getLogger(__name__)


class GuardState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_TYPED_CONFIRMATION = "awaiting_typed_confirmation"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TargetKind(str, Enum):
    SINGLE = "single"
    ALL = "all"
    PARTITION = "partition"
    DUPLICATES = "duplicates"


@dataclass(frozen=True)
class DeleteTarget:
    kind: TargetKind
    student_id: Optional[str] = None
    actor: Optional[Actor] = None

    def describe(self) -> str:
        if self.kind == TargetKind.SINGLE:
            return f"student {self.student_id}"
        if self.kind == TargetKind.PARTITION:
            return f"{self.actor.value} data for student {self.student_id}"
        if self.kind == TargetKind.DUPLICATES:
            return "duplicate student records"
        return "all student records"


class DestructiveOperationGuard:
    """
    Runs one destructive operation at a time through explicit confirmation.

    The record store is only changed after the server confirms success, and
    it is refreshed (or cleared, for delete-all) before the guard reports
    that success and returns to IDLE.
    """

    def __init__(self, api: ApiClient, store: RecordStore,
                 sync: Optional[SyncController] = None,
                 bus: Optional[NotificationBus] = None,
                 phrase: str = DELETE_ALL_PHRASE):
        self.api = api
        self.store = store
        self.sync = sync
        self.bus = bus
        self.phrase = phrase

        self.state = GuardState.IDLE
        self.target: Optional[DeleteTarget] = None
        self.message: Optional[str] = None
        self.last_outcome: Optional[GuardState] = None
        self.transitions: List[GuardState] = [GuardState.IDLE]

    def _move(self, state: GuardState) -> None:
        logger.debug("guard %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def _finish(self, outcome: GuardState) -> None:
        self._move(outcome)
        self.last_outcome = outcome
        self.target = None
        self._move(GuardState.IDLE)

    def _require(self, *states: GuardState) -> None:
        if self.state not in states:
            raise InvalidTransition(
                f"Cannot do that while {self.state.value}"
            )

    def _begin(self, target: DeleteTarget) -> None:
        self._require(GuardState.IDLE)
        self.target = target
        self.message = None
        self._move(GuardState.AWAITING_CONFIRMATION)

    def request_delete(self, student_id: str) -> None:
        self._begin(DeleteTarget(TargetKind.SINGLE, student_id=student_id))

    def request_delete_all(self) -> None:
        self._begin(DeleteTarget(TargetKind.ALL))

    def request_delete_partition(self, student_id: str, actor: Actor) -> None:
        self._begin(DeleteTarget(TargetKind.PARTITION, student_id=student_id, actor=Actor(actor)))

    def request_cleanup_duplicates(self) -> None:
        self._begin(DeleteTarget(TargetKind.DUPLICATES))

    def cancel(self) -> None:
        self._require(GuardState.AWAITING_CONFIRMATION, GuardState.AWAITING_TYPED_CONFIRMATION)
        self._finish(GuardState.CANCELLED)

    async def confirm(self) -> Optional[bool]:
        """
        Answer "yes" to the first prompt.

        Returns:
            None when a typed confirmation is still required (delete-all),
            otherwise True/False for the executed operation's success
        """
        self._require(GuardState.AWAITING_CONFIRMATION)
        if self.target.kind == TargetKind.ALL:
            self._move(GuardState.AWAITING_TYPED_CONFIRMATION)
            return None
        return await self._execute()

    def _check_phrase(self, text: str) -> None:
        if text != self.phrase:
            raise ConfirmationMismatch(f'Type "{self.phrase}" exactly to confirm')

    async def confirm_phrase(self, text: str) -> bool:
        """Second step of delete-all; any mismatch aborts without a network call."""
        self._require(GuardState.AWAITING_TYPED_CONFIRMATION)
        try:
            self._check_phrase(text)
        except ConfirmationMismatch as e:
            logger.info("Delete-all aborted: confirmation phrase mismatch")
            self._finish(GuardState.CANCELLED)
            self.message = str(e)
            return False
        return await self._execute()

    async def _call(self, target: DeleteTarget) -> Dict[str, Any]:
        if target.kind == TargetKind.SINGLE:
            return await self.api.delete_student(target.student_id)
        if target.kind == TargetKind.ALL:
            return await self.api.delete_all()
        if target.kind == TargetKind.PARTITION:
            return await self.api.delete_partition(target.student_id, target.actor)
        return await self.api.cleanup_duplicates()

    def _apply_locally(self, target: DeleteTarget, payload: Dict[str, Any]) -> None:
        if target.kind == TargetKind.SINGLE:
            self.store.remove(target.student_id)
        elif target.kind == TargetKind.ALL:
            self.store.clear()
        elif target.kind == TargetKind.PARTITION and payload.get('student'):
            try:
                self.store.upsert(StudentRecord.model_validate(payload['student']))
            except ValidationError as e:
                logger.warning("Ignoring malformed student in delete response: %s", e)

    async def _execute(self) -> bool:
        target = self.target
        self._move(GuardState.CONFIRMED)
        self._move(GuardState.EXECUTING)

        try:
            payload = await self._call(target)
        except (AuthorizationFailure, TransientNetworkFailure) as e:
            logger.error("Deleting %s failed: %s", target.describe(), e)
            self._finish(GuardState.FAILED)
            if self.bus is not None:
                self.bus.error(f"Failed to delete {target.describe()}: {e}")
            return False

        self._apply_locally(target, payload)
        if self.sync is not None:
            await self.sync.refresh_now()

        deleted = payload.get('deletedCount')
        logger.info("Deleted %s (deletedCount=%s)", target.describe(), deleted)
        if self.bus is not None:
            if deleted is not None:
                self.bus.success(f"Deleted {deleted} record(s)")
            else:
                self.bus.success(f"Deleted {target.describe()}")
        self._finish(GuardState.SUCCEEDED)
        return True
