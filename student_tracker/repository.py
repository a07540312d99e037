"""In-memory student repository used by the reference backend."""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import (
    ActionStatus,
    Actor,
    CompletionStats,
    PartitionCompletion,
    RiskLevel,
    StudentAction,
    StudentRecord,
    Summary,
)
from .ownership import apply_assessment, apply_contribution, clear_partition, reset_risk
from .scoring import RiskScorer

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _updated_at(record: StudentRecord) -> datetime:
    stamp = record.last_updated
    if stamp is None:
        return _EPOCH
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp


class StudentRepository:
    """
    Ordered collection of student records.

    Ingestion upserts by student_id through the ownership rules, so it never
    creates duplicates. `add` is a raw insert for imports and may introduce
    duplicates, which `cleanup_duplicates` repairs.

    Mutations take an internal lock, so blocking work such as scoring can
    run on worker threads.
    """

    def __init__(self, scorer: Optional[RiskScorer] = None):
        self.scorer = scorer
        self._records: List[StudentRecord] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._records)

    def all(self) -> List[StudentRecord]:
        return list(self._records)

    def _index(self, student_id: str) -> Optional[int]:
        for idx, record in enumerate(self._records):
            if record.student_id == student_id:
                return idx
        return None

    def get(self, student_id: str) -> Optional[StudentRecord]:
        for record in list(self._records):
            if record.student_id == student_id:
                return record
        return None

    def add(self, record: StudentRecord) -> None:
        with self._lock:
            self._records.append(record)

    def save(self, record: StudentRecord) -> StudentRecord:
        with self._lock:
            idx = self._index(record.student_id)
            if idx is None:
                self._records.append(record)
            else:
                self._records[idx] = record
        return record

    def query(self, risk_level: Optional[str] = None, student_id: Optional[str] = None,
              page: int = 1, limit: int = 50) -> Tuple[List[StudentRecord], int]:
        """Filter, sort by last_updated (newest first) and paginate."""
        records = self._records
        if risk_level:
            records = [r for r in records if r.risk_level is not None and r.risk_level.value == risk_level]
        if student_id:
            records = [r for r in records if r.student_id == student_id]
        records = sorted(records, key=_updated_at, reverse=True)
        total = len(records)
        start = max(page - 1, 0) * limit
        return records[start:start + limit], total

    def ingest(self, contributions: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
        """
        Merge parsed contributions into the collection.

        Returns:
            (created_count, updated_count), counting each student once
        """
        created, updated = set(), set()
        with self._lock:
            for item in contributions:
                student_id = item['student_id']
                existing = self.get(student_id)
                merged = apply_contribution(
                    existing, student_id, item['actor'], item['fields'], name=item.get('name')
                )
                (updated if existing is not None else created).add(student_id)
                if merged.data_complete:
                    merged = self.score(merged)
                self.save(merged)
        updated -= created
        return len(created), len(updated)

    def score(self, record: StudentRecord) -> StudentRecord:
        """Ask the external scorer to classify a complete record."""
        if self.scorer is None or not record.data_complete:
            return record
        assessment = self.scorer(record)
        if assessment is None:
            return record
        return apply_assessment(record, assessment)

    def recalculate(self, student_id: str) -> Optional[StudentRecord]:
        with self._lock:
            record = self.get(student_id)
            if record is None:
                return None
            return self.save(self.score(record))

    def recalculate_all(self) -> Tuple[int, int]:
        """
        Re-score every complete record and reset incomplete ones to pending.

        Returns:
            (success_count, error_count); a complete record the scorer could
            not classify counts as an error and keeps its previous risk data
        """
        successes = errors = 0
        with self._lock:
            for record in self.all():
                if not record.data_complete:
                    self.save(reset_risk(record))
                    successes += 1
                    continue
                assessment = self.scorer(record) if self.scorer is not None else None
                if assessment is None:
                    logger.warning("No risk assessment returned for %s", record.student_id)
                    errors += 1
                    continue
                self.save(apply_assessment(record, assessment))
                successes += 1
        logger.info("Risk recalculation completed: %d successful, %d errors", successes, errors)
        return successes, errors

    def delete(self, student_id: str) -> int:
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.student_id != student_id]
            return before - len(self._records)

    def delete_all(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records = []
            return count

    def clear_partition(self, student_id: str, actor: Actor) -> Optional[StudentRecord]:
        with self._lock:
            record = self.get(student_id)
            if record is None:
                return None
            return self.save(clear_partition(record, actor))

    def add_action(self, student_id: str, description: str, created_by: str,
                   **details: Any) -> Optional[StudentAction]:
        """Attach a pending action to a student; None if the student is unknown."""
        with self._lock:
            record = self.get(student_id)
            if record is None:
                return None
            action = StudentAction(
                action_id=uuid.uuid4().hex,
                description=description,
                created_by=created_by,
                last_updated=datetime.now(timezone.utc),
                **details,
            )
            self.save(record.model_copy(update={'actions': record.actions + [action]}))
            return action

    def decide_action(self, student_id: str, action_id: str, status: ActionStatus,
                      decided_by: str, rejection_reason: str = "") -> StudentAction:
        """
        Approve or reject a pending action.

        Raises:
            KeyError: unknown student or action
            ValueError: the action was already approved or rejected
        """
        with self._lock:
            record = self.get(student_id)
            if record is None:
                raise KeyError(student_id)
            for idx, action in enumerate(record.actions):
                if action.action_id == action_id:
                    break
            else:
                raise KeyError(action_id)
            if action.status != ActionStatus.PENDING:
                raise ValueError("Action has already been processed")

            update = {
                'status': ActionStatus(status),
                'approved_by': decided_by,
                'last_updated': datetime.now(timezone.utc),
            }
            if update['status'] == ActionStatus.REJECTED and rejection_reason:
                update['rejection_reason'] = rejection_reason
            decided = action.model_copy(update=update)
            actions = list(record.actions)
            actions[idx] = decided
            self.save(record.model_copy(update={'actions': actions}))
            return decided

    def cleanup_duplicates(self) -> int:
        """Keep the most recently updated record per student_id; return how many were removed."""
        with self._lock:
            latest: Dict[str, StudentRecord] = {}
            for record in self._records:
                current = latest.get(record.student_id)
                if current is None or _updated_at(record) > _updated_at(current):
                    latest[record.student_id] = record
            kept = []
            seen = set()
            for record in self._records:
                if record.student_id in seen:
                    continue
                seen.add(record.student_id)
                kept.append(latest[record.student_id])
            removed = len(self._records) - len(kept)
            if removed:
                logger.info("Removed %d duplicate student records", removed)
            self._records = kept
            return removed

    def summary(self) -> Summary:
        """Tier counts over records whose data is complete, plus completion stats."""
        total = len(self._records)
        counts = {RiskLevel.HIGH: 0, RiskLevel.MEDIUM: 0, RiskLevel.LOW: 0}
        done = {actor: 0 for actor in Actor}
        all_complete = 0
        for record in self._records:
            for actor in Actor:
                if getattr(record.data_completion, actor.value):
                    done[actor] += 1
            if record.data_complete:
                all_complete += 1
                if record.risk_level in counts:
                    counts[record.risk_level] += 1

        stats = CompletionStats(
            **{
                actor.value: PartitionCompletion(completed=done[actor], pending=total - done[actor])
                for actor in Actor
            },
            all_complete=all_complete,
            pending_calculation=total - all_complete,
        )
        return Summary(
            total=total,
            high=counts[RiskLevel.HIGH],
            medium=counts[RiskLevel.MEDIUM],
            low=counts[RiskLevel.LOW],
            data_completion=stats,
        )
