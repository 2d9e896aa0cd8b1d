"""Domain types shared by detection, storage and budget calculation.

Every type here is an immutable value object.  Enumerations are closed and
validate their input at construction, so a stray string such as
``'aproved'`` fails loudly instead of slipping into the database.

The approval workflow is expressed as pure transition functions
(:func:`approve` / :func:`reject`) that return either a new
:class:`StoredPattern` or a :class:`TransitionConflict`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple, Union


class Periodicity(Enum):
    """Recurrence interval of a pattern, valued in months."""

    BI_MONTHLY = 2
    QUARTERLY = 3
    YEARLY = 12

    @property
    def months(self) -> int:
        return self.value

    @property
    def label(self) -> str:
        return _PERIODICITY_LABELS[self]

    @classmethod
    def from_label(cls, label: str) -> 'Periodicity':
        for member, text in _PERIODICITY_LABELS.items():
            if text == label:
                return member
        raise ValueError(f"Unknown periodicity label: {label!r}")


_PERIODICITY_LABELS = {
    Periodicity.BI_MONTHLY: 'bi-monthly',
    Periodicity.QUARTERLY: 'quarterly',
    Periodicity.YEARLY: 'yearly',
}


class ApprovalStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'

class FlowDirection(str, Enum):
    """Shared sign of every occurrence in a pattern."""

    EXPENSE = 'expense'
    INCOME = 'income'

class SpendingClassification(str, Enum):
    REGULAR = 'REGULAR'
    MOSTLY_REGULAR = 'MOSTLY_REGULAR'
    SEMI_REGULAR = 'SEMI_REGULAR'
    IRREGULAR = 'IRREGULAR'

class BudgetType(str, Enum):
    FIXED = 'fixed'
    VARIABLE = 'variable'

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def validate_month(month: int, label: str = 'month') -> int:
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise ValueError(f"Invalid {label}: {month!r}. Must be integer between 1-12.")
    return month

def _validate_schedule(months) -> Tuple[int, ...]:
    schedule = tuple(sorted({validate_month(int(m), 'scheduled month') for m in months}))
    if not schedule:
        raise ValueError('scheduled_months cannot be empty')
    return schedule

@dataclass(frozen=True)
class GroupKey:
    """Identity of a candidate recurring series."""

    signature: str
    category_id: str
    sub_category_id: Optional[str]
    amount_bucket: float

    def __post_init__(self) -> None:
        if not self.signature:
            raise ValueError('GroupKey signature cannot be empty')
        if not self.category_id:
            raise ValueError('GroupKey requires a category_id')
        if self.amount_bucket < 0:
            raise ValueError('amount_bucket must be non-negative')
        object.__setattr__(self, 'category_id', str(self.category_id))
        if self.sub_category_id is not None:
            object.__setattr__(self, 'sub_category_id', str(self.sub_category_id))
        object.__setattr__(self, 'amount_bucket', round(float(self.amount_bucket), 2))

    @property
    def category_key(self) -> Tuple[str, Optional[str]]:
        return (self.category_id, self.sub_category_id)

@dataclass(frozen=True)
class Occurrence:
    year: int
    month: int
    amount: float
    transaction_id: Optional[str]
    date: date

    def __post_init__(self) -> None:
        validate_month(self.month)

    @property
    def month_index(self) -> int:
        """Absolute month number, so deltas work across year boundaries."""
        return self.year * 12 + self.month - 1

@dataclass(frozen=True)
class TransactionGroup:
    """Transactions sharing a :class:`GroupKey`, ordered by date."""

    group_key: GroupKey
    occurrences: Tuple[Occurrence, ...]

    @property
    def distinct_months(self) -> Tuple[int, ...]:
        return tuple(sorted({occ.month_index for occ in self.occurrences}))

@dataclass(frozen=True)
class DetectionData:
    """Supporting statistics recorded when a pattern is detected."""

    observed_occurrences: int
    expected_occurrences: int
    coverage_ratio: float
    coefficient_of_variation: float
    amount_min: float
    amount_max: float
    analysis_months: int
    detected_at: datetime
    sample_transaction_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            'observed_occurrences': self.observed_occurrences,
            'expected_occurrences': self.expected_occurrences,
            'coverage_ratio': self.coverage_ratio,
            'coefficient_of_variation': self.coefficient_of_variation,
            'amount_min': self.amount_min,
            'amount_max': self.amount_max,
            'analysis_months': self.analysis_months,
            'detected_at': self.detected_at.isoformat(),
            'sample_transaction_ids': list(self.sample_transaction_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'DetectionData':
        return cls(
            observed_occurrences=int(data['observed_occurrences']),
            expected_occurrences=int(data['expected_occurrences']),
            coverage_ratio=float(data['coverage_ratio']),
            coefficient_of_variation=float(data['coefficient_of_variation']),
            amount_min=float(data['amount_min']),
            amount_max=float(data['amount_max']),
            analysis_months=int(data['analysis_months']),
            detected_at=datetime.fromisoformat(str(data['detected_at'])),
            sample_transaction_ids=tuple(str(t) for t in data.get('sample_transaction_ids') or ()),
        )

@dataclass(frozen=True)
class CandidatePattern:
    """Unpersisted result of one detection run."""

    user_id: str
    group_key: GroupKey
    occurrences: Tuple[Occurrence, ...]
    periodicity: Periodicity
    scheduled_months: Tuple[int, ...]
    average_amount: float
    direction: FlowDirection
    confidence: float
    detection_data: DetectionData

    def __post_init__(self) -> None:
        object.__setattr__(self, 'periodicity', Periodicity(self.periodicity))
        object.__setattr__(self, 'direction', FlowDirection(self.direction))
        object.__setattr__(self, 'scheduled_months', _validate_schedule(self.scheduled_months))
        if not self.occurrences:
            raise ValueError('CandidatePattern requires at least one occurrence')
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if self.average_amount < 0:
            raise ValueError('average_amount is a magnitude and cannot be negative')

@dataclass(frozen=True)
class StoredPattern:
    """A persisted pattern carrying its approval state."""

    pattern_id: str
    user_id: str
    group_key: GroupKey
    periodicity: Periodicity
    scheduled_months: Tuple[int, ...]
    average_amount: float
    direction: FlowDirection
    confidence: float
    detection_data: DetectionData
    occurrences: Tuple[Occurrence, ...] = ()
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    is_active: bool = False
    approved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'periodicity', Periodicity(self.periodicity))
        object.__setattr__(self, 'direction', FlowDirection(self.direction))
        object.__setattr__(self, 'approval_status', ApprovalStatus(self.approval_status))
        object.__setattr__(self, 'scheduled_months', _validate_schedule(self.scheduled_months))
        if self.is_active != (self.approval_status is ApprovalStatus.APPROVED):
            raise ValueError('is_active must be true exactly when the pattern is approved')

    @classmethod
    def from_candidate(
        cls,
        candidate: CandidatePattern,
        pattern_id: str,
        now: Optional[datetime] = None,
    ) -> 'StoredPattern':
        created = now or utc_now()
        return cls(
            pattern_id=pattern_id,
            user_id=candidate.user_id,
            group_key=candidate.group_key,
            periodicity=candidate.periodicity,
            scheduled_months=candidate.scheduled_months,
            average_amount=candidate.average_amount,
            direction=candidate.direction,
            confidence=candidate.confidence,
            detection_data=candidate.detection_data,
            occurrences=candidate.occurrences,
            created_at=created,
            updated_at=created,
        )

@dataclass(frozen=True)
class TransitionConflict:
    """Returned instead of a pattern when a transition is not allowed."""

    pattern_id: str
    current_status: Optional[ApprovalStatus]
    requested_status: ApprovalStatus
    reason: str

TransitionResult = Union[StoredPattern, TransitionConflict]

def _transition(pattern: StoredPattern, target: ApprovalStatus, now: Optional[datetime]) -> TransitionResult:
    if pattern.approval_status is not ApprovalStatus.PENDING:
        return TransitionConflict(
            pattern_id=pattern.pattern_id,
            current_status=pattern.approval_status,
            requested_status=target,
            reason=f"pattern is already {pattern.approval_status.value}",
        )
    stamp = now or utc_now()
    approved = target is ApprovalStatus.APPROVED
    return replace(
        pattern,
        approval_status=target,
        is_active=approved,
        approved_at=stamp if approved else None,
        updated_at=stamp,
    )

def approve(pattern: StoredPattern, now: Optional[datetime] = None) -> TransitionResult:
    return _transition(pattern, ApprovalStatus.APPROVED, now)

def reject(pattern: StoredPattern, now: Optional[datetime] = None) -> TransitionResult:
    return _transition(pattern, ApprovalStatus.REJECTED, now)

def describe_pattern(pattern: Union[CandidatePattern, StoredPattern]) -> str:
    """Human-readable label, e.g. ``municipal tax (cat-1 → sub-2) bi-monthly``."""
    key = pattern.group_key
    category = key.category_id
    if key.sub_category_id:
        category = f"{category} → {key.sub_category_id}"
    return f"{key.signature} ({category}) {pattern.periodicity.label}"

@dataclass(frozen=True)
class SpendingAnalysis:
    classification: SpendingClassification
    confidence: float
    coverage_percentage: float
    months_present: int
    window_months: int
    effective_window_months: int
    present_months: Tuple[str, ...]

@dataclass(frozen=True)
class AveragingStrategy:
    denominator: int
    analysis: SpendingAnalysis
    reasoning: str

@dataclass(frozen=True)
class BudgetLine:
    category_id: str
    sub_category_id: Optional[str]
    budgeted_amount: float
    regular_average: float
    pattern_contribution: float
    budget_type: BudgetType
    monthly_amounts: Dict[int, float]
    strategy: Optional[AveragingStrategy] = None
    pattern_ids: Tuple[str, ...] = ()

    @property
    def category_key(self) -> Tuple[str, Optional[str]]:
        return (self.category_id, self.sub_category_id)

@dataclass(frozen=True)
class BudgetCalculationResult:
    user_id: str
    year: int
    month: int
    months_analyzed: int
    lines: Tuple[BudgetLine, ...]
    total_patterns_detected: int
    patterns_for_this_month: int
    requires_approval: bool

    def line_for(self, category_id: str, sub_category_id: Optional[str] = None) -> Optional[BudgetLine]:
        for line in self.lines:
            if line.category_key == (str(category_id), sub_category_id):
                return line
        return None
