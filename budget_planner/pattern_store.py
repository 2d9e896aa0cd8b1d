"""Persistence and approval workflow for detected recurring patterns."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from . import db
from .models import (
    ApprovalStatus,
    CandidatePattern,
    DetectionData,
    GroupKey,
    Occurrence,
    StoredPattern,
    TransitionConflict,
    TransitionResult,
    approve as approve_transition,
    describe_pattern,
    reject as reject_transition,
    utc_now,
    validate_month,
)
from .pattern_matching import matches_month

logger = logging.getLogger(__name__)


def _occurrences_to_json(pattern: StoredPattern) -> str:
    return json.dumps([
        {
            'year': occ.year,
            'month': occ.month,
            'amount': occ.amount,
            'transaction_id': occ.transaction_id,
            'date': occ.date.isoformat(),
        }
        for occ in pattern.occurrences
    ])


def _occurrence_from_dict(data: Dict[str, Any]) -> Occurrence:
    return Occurrence(
        year=int(data['year']),
        month=int(data['month']),
        amount=float(data['amount']),
        transaction_id=data.get('transaction_id'),
        date=date.fromisoformat(data['date']),
    )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def pattern_to_row(pattern: StoredPattern) -> Dict[str, Any]:
    key = pattern.group_key
    return {
        'pattern_id': pattern.pattern_id,
        'user_id': pattern.user_id,
        'signature': key.signature,
        'category_id': key.category_id,
        'sub_category_id': key.sub_category_id,
        'amount_bucket': key.amount_bucket,
        'periodicity': pattern.periodicity.value,
        'scheduled_months': json.dumps(list(pattern.scheduled_months)),
        'average_amount': pattern.average_amount,
        'direction': pattern.direction.value,
        'confidence': pattern.confidence,
        'detection_data': json.dumps(pattern.detection_data.to_dict(), sort_keys=True),
        'occurrences': _occurrences_to_json(pattern),
        'approval_status': pattern.approval_status.value,
        'is_active': 1 if pattern.is_active else 0,
        'approved_at': pattern.approved_at.isoformat() if pattern.approved_at else None,
        'created_at': pattern.created_at.isoformat(),
        'updated_at': pattern.updated_at.isoformat(),
    }


def pattern_from_row(row: Dict[str, Any]) -> StoredPattern:
    """Rebuild a :class:`StoredPattern` from a ``db.fetch_patterns`` row."""
    return StoredPattern(
        pattern_id=row['pattern_id'],
        user_id=row['user_id'],
        group_key=GroupKey(
            signature=row['signature'],
            category_id=row['category_id'],
            sub_category_id=row['sub_category_id'],
            amount_bucket=row['amount_bucket'],
        ),
        periodicity=int(row['periodicity']),
        scheduled_months=tuple(row['scheduled_months']),
        average_amount=float(row['average_amount']),
        direction=row['direction'],
        confidence=float(row['confidence']),
        detection_data=DetectionData.from_dict(row['detection_data']),
        occurrences=tuple(_occurrence_from_dict(o) for o in row['occurrences']),
        approval_status=row['approval_status'],
        is_active=bool(row['is_active']),
        approved_at=_parse_timestamp(row['approved_at']),
        created_at=_parse_timestamp(row['created_at']),
        updated_at=_parse_timestamp(row['updated_at']),
    )


class PatternStore:
    """SQLite-backed store for detected patterns.

    Every call opens its own connection, so one store can be shared between
    threads.  Status changes go through the pure transition functions in
    :mod:`budget_planner.models` and are persisted with a compare-and-swap
    update, so two concurrent approvals of one pattern cannot both win.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        db.init_db(db_path)

    def store_detected_patterns(self, candidates: Iterable[CandidatePattern]) -> List[StoredPattern]:
        """Persist new candidates as pending; returns only the newly stored ones.

        Candidates whose ``(user_id, group_key)`` is already stored are
        skipped, whatever that pattern's status.  A database failure on one
        candidate is logged and does not stop the others.
        """
        stored: List[StoredPattern] = []
        skipped = 0
        for candidate in candidates:
            key = candidate.group_key
            try:
                if db.pattern_exists(
                    candidate.user_id, key.signature, key.category_id, key.sub_category_id,
                    key.amount_bucket, db_path=self.db_path,
                ):
                    skipped += 1
                    continue
                pattern = StoredPattern.from_candidate(candidate, pattern_id=uuid.uuid4().hex)
                if db.insert_pattern(pattern_to_row(pattern), db_path=self.db_path):
                    stored.append(pattern)
                else:
                    skipped += 1
            except (sqlite3.Error, TypeError, ValueError):
                logger.exception("Failed to store pattern %s", describe_pattern(candidate))
        logger.info("Stored %d new pattern(s), skipped %d already known", len(stored), skipped)
        return stored

    def get_patterns(self, user_id: str, status: Optional[ApprovalStatus] = None) -> List[StoredPattern]:
        status_value = ApprovalStatus(status).value if status is not None else None
        rows = db.fetch_patterns(user_id=user_id, status=status_value, db_path=self.db_path)
        return [pattern_from_row(r) for r in rows]

    def get_pending_patterns(self, user_id: str) -> List[StoredPattern]:
        return self.get_patterns(user_id, ApprovalStatus.PENDING)

    def get_active_patterns(self, user_id: str) -> List[StoredPattern]:
        return [p for p in self.get_patterns(user_id, ApprovalStatus.APPROVED) if p.is_active]

    def get_pattern(self, pattern_id: str) -> Optional[StoredPattern]:
        rows = db.fetch_patterns(pattern_id=pattern_id, db_path=self.db_path)
        return pattern_from_row(rows[0]) if rows else None

    def get_patterns_for_month(self, user_id: str, month: int) -> List[StoredPattern]:
        """Active patterns expected to occur in calendar ``month``."""
        validate_month(month)
        return [
            p for p in self.get_active_patterns(user_id)
            if matches_month(p.periodicity, p.scheduled_months, month)
        ]

    def count_patterns(self, user_id: str, status: Optional[ApprovalStatus] = None) -> int:
        status_value = ApprovalStatus(status).value if status is not None else None
        return db.count_patterns(user_id, status_value, db_path=self.db_path)

    def approve(self, pattern_id: str, now: Optional[datetime] = None) -> TransitionResult:
        return self._apply(pattern_id, ApprovalStatus.APPROVED, now)

    def reject(self, pattern_id: str, now: Optional[datetime] = None) -> TransitionResult:
        return self._apply(pattern_id, ApprovalStatus.REJECTED, now)

    def _apply(self, pattern_id: str, target: ApprovalStatus, now: Optional[datetime]) -> TransitionResult:
        current = self.get_pattern(pattern_id)
        if current is None:
            return TransitionConflict(
                pattern_id=pattern_id,
                current_status=None,
                requested_status=target,
                reason='pattern not found',
            )

        transition = approve_transition if target is ApprovalStatus.APPROVED else reject_transition
        result = transition(current, now or utc_now())
        if isinstance(result, TransitionConflict):
            logger.info("Ignoring %s of pattern %s: %s", target.value, pattern_id, result.reason)
            return result

        won = db.update_pattern_status(
            pattern_id,
            expected_status=current.approval_status.value,
            new_status=result.approval_status.value,
            is_active=result.is_active,
            approved_at=result.approved_at.isoformat() if result.approved_at else None,
            updated_at=result.updated_at.isoformat(),
            db_path=self.db_path,
        )
        if not won:
            latest = self.get_pattern(pattern_id)
            latest_status = latest.approval_status if latest is not None else None
            logger.info("Lost race to %s pattern %s; now %s", target.value, pattern_id,
                        latest_status.value if latest_status else 'missing')
            return TransitionConflict(
                pattern_id=pattern_id,
                current_status=latest_status,
                requested_status=target,
                reason='pattern was resolved concurrently',
            )

        logger.info("Pattern %s %s: %s", pattern_id, result.approval_status.value, describe_pattern(result))
        return result
