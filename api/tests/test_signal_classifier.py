"""
Signal classification tests

Tests:
1. Every mapped event type classifies the same way on every call
2. Check-in events are Immediate, behavioural events batch daily
3. Excluded and unknown event types never enter the queue
4. Urgent pattern promotion to Immediate/Critical
5. Expiry follows the priority TTL

Run: cd api && python tests/test_signal_classifier.py
"""

import os
import sys
from datetime import timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import TEST_USER_ID, make_signal, utc
from services.recommendations.models import DomainEvent, SignalPriority, WindowType
from services.recommendations.signal_classifier import (
    DEFAULT_CLASSIFICATION_TABLE,
    DEFAULT_SIGNAL_TTL,
    NO_SIGNAL,
    SignalClassification,
    SignalClassifier,
    matches_urgent_pattern,
)


def test_classification_is_deterministic():
    """Classifying the same event twice gives the same outcome for every table entry."""
    classifier = SignalClassifier()
    for event_type, expected in DEFAULT_CLASSIFICATION_TABLE.items():
        first = classifier.classify(event_type)
        second = classifier.classify(event_type)
        assert first is second, f"{event_type} classified inconsistently"
        assert first is expected
    print(f"  ✓ {len(DEFAULT_CLASSIFICATION_TABLE)} event types stable")
    print("✅ classification_is_deterministic: PASSED")


def test_check_ins_are_immediate():
    classifier = SignalClassifier()
    for event_type in ("MorningCheckInSubmitted", "EveningCheckInSubmitted", "MorningWindowStart"):
        outcome = classifier.classify(event_type)
        assert outcome == SignalClassification(SignalPriority.HIGH, WindowType.IMMEDIATE), event_type

    reminder = classifier.classify("CheckInReminderDue")
    assert reminder.priority == SignalPriority.CRITICAL
    assert reminder.window_type == WindowType.IMMEDIATE

    skipped = classifier.classify("CheckInSkipped")
    assert skipped == SignalClassification(SignalPriority.HIGH, WindowType.DAILY)
    print("✅ check_ins_are_immediate: PASSED")


def test_behavioural_and_structural_windows():
    classifier = SignalClassifier()
    for event_type in ("HabitMissed", "TaskCompleted", "TaskRescheduled", "GoalStatusChanged"):
        outcome = classifier.classify(event_type)
        assert outcome.window_type == WindowType.DAILY, event_type
        assert outcome.priority == SignalPriority.MEDIUM, event_type

    for event_type in ("GoalCreated", "ProjectUpdated", "UserProfileUpdated"):
        outcome = classifier.classify(event_type)
        assert outcome.window_type == WindowType.WEEKLY, event_type
        assert outcome.priority == SignalPriority.LOW, event_type
    print("✅ behavioural_and_structural_windows: PASSED")


def test_excluded_and_unknown_events_dropped():
    classifier = SignalClassifier()
    now = utc(2026, 10, 16, 9)

    for event_type in ("HabitUndone", "RecommendationAccepted", "TaskCancelled"):
        assert classifier.classify(event_type) is NO_SIGNAL
        event = DomainEvent(user_id=TEST_USER_ID, event_type=event_type, occurred_at=now)
        assert classifier.to_signal_entry(event, now=now) is None
        print(f"  ✓ {event_type} excluded")

    assert classifier.classify("SomethingNobodyMapped") is None
    event = DomainEvent(user_id=TEST_USER_ID, event_type="SomethingNobodyMapped", occurred_at=now)
    assert classifier.to_signal_entry(event, now=now) is None
    print("✅ excluded_and_unknown_events_dropped: PASSED")


def test_urgent_pattern_promotes():
    """Third missed habit in the queue promotes the signal to Immediate/Critical."""
    classifier = SignalClassifier()
    now = utc(2026, 10, 16, 9)
    pending = [make_signal("HabitMissed", created_at=now), make_signal("HabitMissed", created_at=now)]

    event = DomainEvent(user_id=TEST_USER_ID, event_type="HabitMissed", occurred_at=now)
    entry = classifier.to_signal_entry(event, pending=pending, window_closes_at=now + timedelta(hours=15), now=now)

    assert entry.priority == SignalPriority.CRITICAL
    assert entry.window_type == WindowType.IMMEDIATE
    assert entry.window_closes_at == now
    assert entry.expires_at == now + DEFAULT_SIGNAL_TTL[SignalPriority.CRITICAL]

    # One missed habit alone stays batched
    single = classifier.to_signal_entry(event, window_closes_at=now + timedelta(hours=15), now=now)
    assert single.window_type == WindowType.DAILY
    assert single.window_closes_at == now + timedelta(hours=15)
    print("✅ urgent_pattern_promotes: PASSED")


def test_urgent_pattern_combinations():
    assert matches_urgent_pattern(["TaskRescheduled"] * 3)
    assert matches_urgent_pattern(["CheckInSkipped", "CheckInSkipped", "HabitMissed"])
    assert not matches_urgent_pattern(["CheckInSkipped", "CheckInSkipped"])
    assert not matches_urgent_pattern(["HabitMissed", "HabitMissed", "TaskCompleted"])
    print("✅ urgent_pattern_combinations: PASSED")


def test_expiry_follows_priority():
    classifier = SignalClassifier()
    now = utc(2026, 10, 16, 9)
    closes = now + timedelta(hours=15)

    event = DomainEvent(user_id=TEST_USER_ID, event_type="TaskCreated", occurred_at=now)
    entry = classifier.to_signal_entry(event, window_closes_at=closes, now=now)
    assert entry.priority == SignalPriority.LOW
    assert entry.expires_at == closes + timedelta(hours=72)
    assert entry.payload == {}
    print("✅ expiry_follows_priority: PASSED")


def test_custom_table():
    """An injected table replaces the default mapping entirely."""
    table = {"Ping": SignalClassification(SignalPriority.LOW, WindowType.WEEKLY)}
    classifier = SignalClassifier(table=table)
    assert classifier.classify("Ping").window_type == WindowType.WEEKLY
    assert classifier.classify("HabitMissed") is None
    print("✅ custom_table: PASSED")


if __name__ == "__main__":
    print("\n🧪 Running signal classifier tests...\n")

    test_classification_is_deterministic()
    test_check_ins_are_immediate()
    test_behavioural_and_structural_windows()
    test_excluded_and_unknown_events_dropped()
    test_urgent_pattern_promotes()
    test_urgent_pattern_combinations()
    test_expiry_follows_priority()
    test_custom_table()

    print("\n✅ All signal classifier tests passed!")
