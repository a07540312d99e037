"""Client for the external risk-scoring service.

The tier/score formula lives in that service; this module only prepares the
feature payload and validates the response contract.
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from .models import RiskAssessment, StudentRecord

logger = logging.getLogger(__name__)

PASS_MARK = 60.0

RiskScorer = Callable[[StudentRecord], Optional[RiskAssessment]]


def build_features(record: StudentRecord, pass_mark: float = PASS_MARK) -> Dict[str, Any]:
    """Feature vector sent to the scoring service."""
    scores = list(record.grades.values())
    return {
        'student_id': record.student_id,
        'attendance_rate': record.attendance_rate or 0.0,
        'avg_grade': sum(scores) / len(scores) if scores else 0.0,
        'failing_count': sum(1 for s in scores if s < pass_mark),
        'fees_status': record.fees_status.value,
        'amount_due': record.amount_due,
    }


class HttpRiskScorer:
    """POSTs features to `<base_url>/predict` and parses a RiskAssessment."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __call__(self, record: StudentRecord) -> Optional[RiskAssessment]:
        features = build_features(record)
        try:
            response = self._client.post(f"{self.base_url}/predict", json=features)
            response.raise_for_status()
            return RiskAssessment.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            # Leave the record pending rather than inventing a tier
            logger.error("Risk scoring failed for %s: %s", record.student_id, e)
            return None
