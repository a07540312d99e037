"""Sync controller: decides when to (re)fetch records and summary."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from .api import ApiClient
from .errors import AuthorizationFailure, TransientNetworkFailure
from .models import NotificationReport, StudentAction, StudentRecord, Summary
from .notifications import NotificationBus
from .routes import RouteGate
from .session import SessionGuard
from .store import Action, RecordStore, SET_ERROR, SET_FILTERS, SET_LOADING

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Session expired, please sign in again"


class SyncController:
    """
    Keeps the RecordStore in step with the backend.

    Fetches only run while the session is authenticated and the current route
    is on the sync allow-list; otherwise they return immediately without
    touching the network. Results arriving after a logout are discarded.
    """

    def __init__(self, session: SessionGuard, api: ApiClient, store: RecordStore,
                 gate: RouteGate, bus: NotificationBus, debounce_ms: int = 100):
        self.session = session
        self.api = api
        self.store = store
        self.gate = gate
        self.bus = bus
        self.debounce_ms = debounce_ms

        self._epoch = 0
        self._pending: Optional[asyncio.TimerHandle] = None
        self._pending_done: Optional[asyncio.Future] = None
        self._inflight_done: Optional[asyncio.Future] = None
        self._tasks: Set[asyncio.Task] = set()

        session.on_logout(self.teardown)

    def can_sync(self) -> bool:
        return self.session.is_authenticated and self.gate.is_sync_allowed()

    def _is_stale(self, epoch: int) -> bool:
        return epoch != self._epoch or not self.session.is_authenticated

    def _recover_authorization(self, error: AuthorizationFailure) -> None:
        logger.info("Authorization failure (%s), resetting to empty state", error)
        self.store.clear(message=SESSION_EXPIRED_MESSAGE, auth_required=True)

    async def fetch_students(self, filters: Optional[Dict[str, Any]] = None) -> Optional[List[StudentRecord]]:
        """
        Replace the cached student list with the server's.

        Args:
            filters: risk_level/page/limit; defaults to the store's filters

        Returns:
            The new list, an empty list after an authorization failure, or
            None when the fetch was skipped or failed
        """
        if not self.can_sync():
            return None

        epoch = self._epoch
        params = filters if filters is not None else self.store.state.filters
        self.store.dispatch(Action(SET_LOADING, True))

        try:
            payload = await self.api.get_students(params)
        except AuthorizationFailure as e:
            if not self._is_stale(epoch):
                self._recover_authorization(e)
            return []
        except TransientNetworkFailure as e:
            if not self._is_stale(epoch):
                self._report_failure(f"Failed to load students: {e}")
            return None

        if self._is_stale(epoch):
            logger.info("Discarding student list received after session change")
            return None

        raw_students = payload.get('students') if isinstance(payload, dict) else None
        if not isinstance(raw_students, list):
            self._report_failure("Failed to load students: unexpected response from server")
            return None
        try:
            students = [StudentRecord.model_validate(item) for item in raw_students]
        except ValidationError as e:
            logger.error("Invalid student payload: %s", e)
            self._report_failure("Failed to load students: invalid student data")
            return None

        self.store.set_students(students)
        logger.debug("Loaded %d students", len(students))
        return students

    async def fetch_summary(self) -> Optional[Summary]:
        """Replace the cached summary; any failure leaves a zeroed summary."""
        if not self.can_sync():
            return None

        epoch = self._epoch
        try:
            payload = await self.api.get_summary()
        except AuthorizationFailure as e:
            if not self._is_stale(epoch):
                logger.info("Authorization failure loading summary: %s", e)
                self.store.set_summary(Summary.zero())
            return None
        except TransientNetworkFailure as e:
            if not self._is_stale(epoch):
                self.store.set_summary(Summary.zero())
                self.bus.error(f"Failed to load summary: {e}")
            return None

        if self._is_stale(epoch):
            return None

        try:
            summary = Summary.model_validate(payload['summary'])
        except (KeyError, TypeError, ValidationError) as e:
            logger.error("Invalid summary payload: %s", e)
            self.store.set_summary(Summary.zero())
            self.bus.error("Failed to load summary: unexpected response from server")
            return None

        self.store.set_summary(summary)
        return summary

    def _report_failure(self, message: str) -> None:
        self.store.dispatch(Action(SET_ERROR, message))
        self.bus.error(message)

    async def refresh_now(self) -> None:
        """Fetch students and summary concurrently, bypassing the debounce."""
        await asyncio.gather(self.fetch_students(), self.fetch_summary())

    def refresh_data(self) -> asyncio.Future:
        """
        Schedule a debounced refresh.

        Calls within the debounce window replace the pending timer, so a burst
        of calls yields a single fetch_students + fetch_summary pair.

        Returns:
            A future resolved once the coalesced refresh has run
        """
        loop = asyncio.get_running_loop()
        if self._pending is not None:
            self._pending.cancel()
        if self._pending_done is None or self._pending_done.done():
            self._pending_done = loop.create_future()
        self._pending = loop.call_later(self.debounce_ms / 1000.0, self._fire_refresh)
        return self._pending_done

    def _fire_refresh(self) -> None:
        done = self._pending_done
        self._pending = None
        self._pending_done = None
        self._inflight_done = done
        task = asyncio.ensure_future(self._run_refresh(done))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_refresh(self, done: Optional[asyncio.Future]) -> None:
        try:
            await self.refresh_now()
        except Exception as e:
            logger.exception("Refresh failed")
            if done is not None and not done.done():
                done.set_exception(e)
            return
        if done is not None and not done.done():
            done.set_result(None)

    async def wait_for_refresh(self) -> None:
        """Wait for the pending or in-flight debounced refresh, if any."""
        for future in (self._pending_done, self._inflight_done):
            if future is not None and not future.done():
                await asyncio.shield(future)

    def cancel_pending_refresh(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._pending_done is not None and not self._pending_done.done():
            self._pending_done.set_result(None)
        self._pending_done = None

    def teardown(self) -> None:
        """Clear cached records on logout; in-flight responses become stale."""
        self._epoch += 1
        self.cancel_pending_refresh()
        self.store.clear()

    def set_filters(self, **filters: Any) -> None:
        self.store.dispatch(Action(SET_FILTERS, filters))

    async def recalculate_student(self, student_id: str) -> Optional[StudentRecord]:
        """Ask the backend to re-run risk scoring for one student."""
        epoch = self._epoch
        try:
            payload = await self.api.recalculate(student_id)
        except AuthorizationFailure as e:
            self._recover_authorization(e)
            return None
        except TransientNetworkFailure as e:
            self.bus.error(f"Failed to recalculate risk for {student_id}: {e}")
            return None

        if self._is_stale(epoch):
            return None
        try:
            record = StudentRecord.model_validate(payload['student'])
        except (KeyError, TypeError, ValidationError) as e:
            logger.error("Invalid recalculate payload: %s", e)
            self.bus.error(f"Failed to recalculate risk for {student_id}: unexpected response")
            return None

        self.store.upsert(record)
        self.refresh_data()
        return record

    async def refresh_student(self, student_id: str) -> Optional[StudentRecord]:
        """
        Re-read one record and upsert it into the cached list.

        A 404 removes the record from the cache; other failures leave the
        cache untouched and are reported on the bus.
        """
        epoch = self._epoch
        try:
            payload = await self.api.get_student(student_id)
        except AuthorizationFailure as e:
            self._recover_authorization(e)
            return None
        except TransientNetworkFailure as e:
            if self._is_stale(epoch):
                return None
            if e.status_code == 404:
                self.store.remove(student_id)
            else:
                self.bus.error(f"Failed to load student {student_id}: {e}")
            return None

        if self._is_stale(epoch):
            return None
        try:
            record = StudentRecord.model_validate(payload['student'])
        except (KeyError, TypeError, ValidationError) as e:
            logger.error("Invalid student payload: %s", e)
            self.bus.error(f"Failed to load student {student_id}: unexpected response")
            return None

        self.store.upsert(record)
        return record

    async def recalculate_all(self) -> Optional[Dict[str, int]]:
        """Re-score every student on the backend, then refresh the cached list."""
        try:
            payload = await self.api.recalculate_all()
        except AuthorizationFailure as e:
            self._recover_authorization(e)
            return None
        except TransientNetworkFailure as e:
            self.bus.error(f"Failed to recalculate risks: {e}")
            return None

        results = payload.get('results') or {}
        if results.get('errorCount'):
            self.bus.warning(payload.get('message') or "Risk recalculation finished with errors")
        else:
            self.bus.success(payload.get('message') or "Risk recalculation completed")
        self.refresh_data()
        return results

    async def fetch_actions(self, student_id: str) -> Optional[List[StudentAction]]:
        try:
            payload = await self.api.get_actions(student_id)
        except AuthorizationFailure as e:
            self._recover_authorization(e)
            return None
        except TransientNetworkFailure as e:
            self.bus.error(f"Failed to load actions for {student_id}: {e}")
            return None
        try:
            return [StudentAction.model_validate(item) for item in payload['actions']]
        except (KeyError, TypeError, ValidationError) as e:
            logger.error("Invalid actions payload: %s", e)
            self.bus.error(f"Failed to load actions for {student_id}: unexpected response")
            return None

    async def create_action(self, student_id: str, description: str, **details: Any) -> Optional[StudentAction]:
        """Propose an action (counselor only) and refresh the student's record."""
        return await self._mutate_action(
            student_id, self.api.create_action(student_id, {'description': description, **details}),
            "Action created, awaiting guardian approval",
        )

    async def decide_action(self, student_id: str, action_id: str, approve: bool,
                            rejection_reason: str = "") -> Optional[StudentAction]:
        """Approve or reject a pending action (guardian or parent)."""
        status = 'approved' if approve else 'rejected'
        return await self._mutate_action(
            student_id, self.api.decide_action(student_id, action_id, status, rejection_reason),
            f"Action {status}",
        )

    async def _mutate_action(self, student_id: str, request, message: str) -> Optional[StudentAction]:
        try:
            payload = await request
        except AuthorizationFailure as e:
            self._recover_authorization(e)
            return None
        except TransientNetworkFailure as e:
            self.bus.error(f"Action update failed for {student_id}: {e}")
            return None
        try:
            action = StudentAction.model_validate(payload['action'])
        except (KeyError, TypeError, ValidationError) as e:
            logger.error("Invalid action payload: %s", e)
            self.bus.error(f"Action update failed for {student_id}: unexpected response")
            return None
        self.bus.success(message)
        await self.refresh_student(student_id)
        return action

    async def send_notifications(self) -> Optional[NotificationReport]:
        """Trigger risk alert emails on the backend and report the outcome."""
        try:
            payload = await self.api.send_notifications()
        except AuthorizationFailure as e:
            self._recover_authorization(e)
            return None
        except TransientNetworkFailure as e:
            self.bus.error(f"Failed to send notifications: {e}")
            return None

        report = NotificationReport.model_validate(payload)
        if report.failed:
            self.bus.warning(f"Sent {report.successful} of {report.sent} alerts, {report.failed} failed")
        else:
            self.bus.success(f"Sent {report.successful} alerts in {report.duration:.1f}s")
        return report
