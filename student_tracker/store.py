"""Record store: in-memory cache of student records and the risk summary.

All writes go through `reduce`, a pure transition function keyed by action
type. `RecordStore` wraps the current state and notifies subscribers.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from .models import StudentRecord, Summary

logger = logging.getLogger(__name__)

SET_LOADING = "SET_LOADING"
SET_STUDENTS = "SET_STUDENTS"
SET_SUMMARY = "SET_SUMMARY"
UPDATE_ONE = "UPDATE_ONE"
REMOVE_ONE = "REMOVE_ONE"
CLEAR = "CLEAR"
SET_ERROR = "SET_ERROR"
SET_FILTERS = "SET_FILTERS"

DEFAULT_FILTERS = {'risk_level': '', 'page': 1, 'limit': 50}


class Action(NamedTuple):
    type: str
    payload: Any = None


@dataclass(frozen=True)
class StoreState:
    students: Tuple[StudentRecord, ...] = ()
    summary: Summary = field(default_factory=Summary.zero)
    loading: bool = False
    error: Optional[str] = None
    auth_required: bool = False
    filters: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_FILTERS))

    def get(self, student_id: str) -> Optional[StudentRecord]:
        for student in self.students:
            if student.student_id == student_id:
                return student
        return None

    @property
    def student_ids(self) -> List[str]:
        return [s.student_id for s in self.students]


def reduce(state: StoreState, action: Action) -> StoreState:
    """Return the state that results from applying `action` to `state`."""
    kind = action.type
    payload = action.payload

    if kind == SET_LOADING:
        return replace(state, loading=bool(payload))

    if kind == SET_STUDENTS:
        # Full replace: the server is the source of truth per fetch
        return replace(state, students=tuple(payload), loading=False, error=None, auth_required=False)

    if kind == SET_SUMMARY:
        return replace(state, summary=payload if payload is not None else Summary.zero())

    if kind == UPDATE_ONE:
        record: StudentRecord = payload
        students = list(state.students)
        for idx, existing in enumerate(students):
            if existing.student_id == record.student_id:
                students[idx] = record
                break
        else:
            students.insert(0, record)
        return replace(state, students=tuple(students))

    if kind == REMOVE_ONE:
        return replace(state, students=tuple(s for s in state.students if s.student_id != payload))

    if kind == CLEAR:
        # payload, when given, is the error/message to leave behind
        message, auth_required = payload if payload else (None, False)
        return replace(
            state,
            students=(),
            summary=Summary.zero(),
            loading=False,
            error=message,
            auth_required=auth_required,
        )

    if kind == SET_ERROR:
        return replace(state, error=payload, loading=False)

    if kind == SET_FILTERS:
        filters = dict(state.filters)
        filters.update(payload or {})
        return replace(state, filters=filters)

    raise ValueError(f"Unknown action type: {kind}")


class RecordStore:
    """Holds the single mutable StoreState for a client session."""

    def __init__(self, state: Optional[StoreState] = None):
        self._state = state or StoreState()
        self._listeners: List[Callable[[StoreState], None]] = []

    @property
    def state(self) -> StoreState:
        return self._state

    def dispatch(self, action: Action) -> StoreState:
        self._state = reduce(self._state, action)
        logger.debug("dispatch %s -> %d students", action.type, len(self._state.students))
        for listener in list(self._listeners):
            listener(self._state)
        return self._state

    def subscribe(self, listener: Callable[[StoreState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Convenience action creators

    def set_students(self, students: List[StudentRecord]) -> StoreState:
        return self.dispatch(Action(SET_STUDENTS, students))

    def set_summary(self, summary: Optional[Summary]) -> StoreState:
        return self.dispatch(Action(SET_SUMMARY, summary))

    def upsert(self, record: StudentRecord) -> StoreState:
        return self.dispatch(Action(UPDATE_ONE, record))

    def remove(self, student_id: str) -> StoreState:
        return self.dispatch(Action(REMOVE_ONE, student_id))

    def clear(self, message: Optional[str] = None, auth_required: bool = False) -> StoreState:
        payload = (message, auth_required) if message or auth_required else None
        return self.dispatch(Action(CLEAR, payload))
