import sqlite3
from dataclasses import replace
from datetime import datetime, timezone

import pandas as pd
import pytest

from budget_planner import db, pattern_store
from budget_planner.config import DetectionConfig
from budget_planner.models import (
    ApprovalStatus,
    GroupKey,
    StoredPattern,
    TransitionConflict,
    approve,
    reject,
)
from budget_planner.pattern_store import PatternStore
from budget_planner.recurring import detect_patterns_in_frame

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _build_df(rows):
    return pd.DataFrame(rows)


def _candidates():
    rows = []
    for month in (1, 3, 5):
        rows.append({'id': month, 'Transaction Date': f'2024-{month:02d}-12', 'Description': 'Municipal Tax',
                     'Amount': -450.0, 'category_id': 'taxes', 'sub_category_id': 'city'})
    for month in (1, 4):
        rows.append({'id': 10 + month, 'Transaction Date': f'2024-{month:02d}-03', 'Description': 'Car Insurance',
                     'Amount': -1200.0, 'category_id': 'insurance', 'sub_category_id': None})
    rows.append({'id': 20, 'Transaction Date': '2023-10-03', 'Description': 'Car Insurance',
                 'Amount': -1200.0, 'category_id': 'insurance', 'sub_category_id': None})
    return detect_patterns_in_frame(_build_df(rows), 'u1', 12, DetectionConfig(), detected_at=NOW)


@pytest.fixture
def store(tmp_path):
    return PatternStore(str(tmp_path / 'patterns.db'))


def test_store_persists_candidates_as_pending(store):
    candidates = _candidates()
    assert len(candidates) == 2

    stored = store.store_detected_patterns(candidates)

    assert len(stored) == 2
    assert all(p.approval_status is ApprovalStatus.PENDING for p in stored)
    assert all(not p.is_active and p.approved_at is None for p in stored)
    reloaded = store.get_pattern(stored[0].pattern_id)
    assert reloaded == stored[0]


def test_store_round_trips_pattern_details(store):
    tax = next(c for c in _candidates() if c.group_key.signature == 'municipal tax')

    stored = store.store_detected_patterns([tax])[0]
    reloaded = store.get_pattern(stored.pattern_id)

    assert reloaded.group_key == GroupKey('municipal tax', 'taxes', 'city', tax.group_key.amount_bucket)
    assert reloaded.scheduled_months == (1, 3, 5, 7, 9, 11)
    assert reloaded.detection_data == tax.detection_data
    assert [o.month for o in reloaded.occurrences] == [1, 3, 5]


def test_restoring_the_same_candidates_never_duplicates(store):
    first = store.store_detected_patterns(_candidates())
    second = store.store_detected_patterns(_candidates())

    assert len(first) == 2
    assert second == []
    assert store.count_patterns('u1') == 2


def test_resolved_patterns_are_not_redetected(store):
    stored = store.store_detected_patterns(_candidates())
    store.reject(stored[0].pattern_id)

    assert store.store_detected_patterns(_candidates()) == []
    assert store.count_patterns('u1', ApprovalStatus.REJECTED) == 1


def test_approve_activates_pattern(store):
    pattern = store.store_detected_patterns(_candidates())[0]

    result = store.approve(pattern.pattern_id, now=NOW)

    assert isinstance(result, StoredPattern)
    assert result.is_active
    assert result.approved_at == NOW
    assert [p.pattern_id for p in store.get_active_patterns('u1')] == [pattern.pattern_id]
    assert len(store.get_pending_patterns('u1')) == 1


def test_reject_leaves_pattern_inactive(store):
    pattern = store.store_detected_patterns(_candidates())[0]

    result = store.reject(pattern.pattern_id)

    assert result.approval_status is ApprovalStatus.REJECTED
    assert not result.is_active
    assert result.approved_at is None
    assert store.get_active_patterns('u1') == []


def test_second_transition_is_a_conflict(store):
    pattern = store.store_detected_patterns(_candidates())[0]
    store.approve(pattern.pattern_id)

    again = store.approve(pattern.pattern_id)
    flipped = store.reject(pattern.pattern_id)

    assert isinstance(again, TransitionConflict)
    assert again.current_status is ApprovalStatus.APPROVED
    assert isinstance(flipped, TransitionConflict)
    assert store.get_pattern(pattern.pattern_id).is_active


def test_unknown_pattern_is_a_conflict(store):
    result = store.approve('does-not-exist')

    assert isinstance(result, TransitionConflict)
    assert result.current_status is None
    assert result.requested_status is ApprovalStatus.APPROVED


def test_lost_race_returns_conflict(store, monkeypatch):
    pattern = store.store_detected_patterns(_candidates())[0]
    original = db.update_pattern_status

    def racing_update(pattern_id, expected_status, *args, **kwargs):
        # another reviewer approves between our read and our write
        original(pattern_id, 'pending', 'approved', True, NOW.isoformat(), NOW.isoformat(),
                 db_path=kwargs.get('db_path'))
        return original(pattern_id, expected_status, *args, **kwargs)

    monkeypatch.setattr(db, 'update_pattern_status', racing_update)

    result = store.reject(pattern.pattern_id)

    assert isinstance(result, TransitionConflict)
    assert result.current_status is ApprovalStatus.APPROVED
    assert store.get_pattern(pattern.pattern_id).is_active


def test_failed_insert_does_not_block_other_candidates(store, monkeypatch):
    original = db.insert_pattern

    def flaky_insert(row, db_path=None):
        if row['signature'] == 'municipal tax':
            raise sqlite3.OperationalError('disk I/O error')
        return original(row, db_path=db_path)

    monkeypatch.setattr(db, 'insert_pattern', flaky_insert)

    stored = store.store_detected_patterns(_candidates())

    assert [p.group_key.signature for p in stored] == ['car insurance']
    assert store.count_patterns('u1') == 1


@pytest.mark.parametrize('error', [TypeError('unserialisable detection data'), ValueError('bad amount')])
def test_unconvertible_candidate_does_not_block_the_rest(store, monkeypatch, error):
    original = pattern_store.pattern_to_row

    def fragile_to_row(pattern):
        if pattern.group_key.signature == 'municipal tax':
            raise error
        return original(pattern)

    monkeypatch.setattr(pattern_store, 'pattern_to_row', fragile_to_row)

    stored = store.store_detected_patterns(_candidates())

    assert [p.group_key.signature for p in stored] == ['car insurance']
    assert store.count_patterns('u1') == 1


def test_patterns_for_month_uses_schedule(store):
    stored = store.store_detected_patterns(_candidates())
    for pattern in stored:
        store.approve(pattern.pattern_id)

    july = {p.group_key.signature for p in store.get_patterns_for_month('u1', 7)}
    june = {p.group_key.signature for p in store.get_patterns_for_month('u1', 6)}

    assert july == {'municipal tax', 'car insurance'}
    assert june == set()
    with pytest.raises(ValueError):
        store.get_patterns_for_month('u1', 13)


def test_patterns_are_scoped_per_user(store):
    store.store_detected_patterns(_candidates())

    assert store.get_patterns('someone-else') == []
    assert store.count_patterns('someone-else') == 0


def test_pure_transitions_do_not_mutate():
    candidate = _candidates()[0]
    pattern = StoredPattern.from_candidate(candidate, pattern_id='p1', now=NOW)

    approved = approve(pattern, now=NOW)
    rejected = reject(pattern, now=NOW)

    assert pattern.approval_status is ApprovalStatus.PENDING
    assert approved.is_active and approved.updated_at == NOW
    assert not rejected.is_active
    assert isinstance(approve(approved), TransitionConflict)
    assert isinstance(reject(rejected), TransitionConflict)


def test_invalid_states_are_rejected():
    pattern = StoredPattern.from_candidate(_candidates()[0], pattern_id='p1', now=NOW)

    with pytest.raises(ValueError):
        replace(pattern, is_active=True)
    with pytest.raises(ValueError):
        replace(pattern, approval_status='aproved')
    with pytest.raises(ValueError):
        replace(pattern, scheduled_months=(0, 3))
