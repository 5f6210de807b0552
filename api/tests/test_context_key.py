"""
ContextKey bucketing tests

Run: cd api && python tests/test_context_key.py
"""

import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import TEST_USER_ID, utc
from services.recommendations.context_key import (
    BucketThresholds,
    CapacityBucket,
    ContextKey,
    DayTypeBucket,
    EnergyBucket,
    SeasonIntensityBucket,
)
from services.recommendations.snapshot import CheckInState, TaskSnapshot, UserStateSnapshot


def test_example_key():
    """Low energy, 130% planned, on a Saturday in an intense season."""
    key = ContextKey.from_values(
        energy_level=2,
        capacity_utilization=1.3,
        day=date(2026, 10, 17),
        season_intensity=4,
    )
    assert key.to_storage_key() == "Low:Overloaded:Weekend:High"
    assert str(key) == "Low:Overloaded:Weekend:High"
    print("✅ example_key: PASSED")


def test_bucket_edges():
    monday = date(2026, 10, 19)
    assert ContextKey.from_values(3, 0.5, monday, 3).energy == EnergyBucket.MEDIUM
    assert ContextKey.from_values(4, 0.5, monday, 3).energy == EnergyBucket.HIGH
    assert ContextKey.from_values(0, 0.5, monday, 3).energy == EnergyBucket.LOW

    assert ContextKey.from_values(3, 0.79, monday, 3).capacity == CapacityBucket.LIGHT
    assert ContextKey.from_values(3, 0.8, monday, 3).capacity == CapacityBucket.FULL
    assert ContextKey.from_values(3, 1.2, monday, 3).capacity == CapacityBucket.FULL
    assert ContextKey.from_values(3, 1.21, monday, 3).capacity == CapacityBucket.OVERLOADED

    assert ContextKey.from_values(3, 0.5, monday, 3).day_type == DayTypeBucket.WEEKDAY
    assert ContextKey.from_values(3, 0.5, monday, 2).season_intensity == SeasonIntensityBucket.LOW
    assert ContextKey.from_values(3, 0.5, monday, 3).season_intensity == SeasonIntensityBucket.MEDIUM
    print("✅ bucket_edges: PASSED")


def test_storage_round_trip():
    for energy in EnergyBucket:
        for capacity in CapacityBucket:
            for day_type in DayTypeBucket:
                for season in SeasonIntensityBucket:
                    key = ContextKey(energy, capacity, day_type, season)
                    assert ContextKey.from_storage_key(key.to_storage_key()) == key
    print("  ✓ all 54 keys round-trip")

    for malformed in (None, "", "Low:Full:Weekday", "Low:Full:Weekday:High:Extra", "Tired:Full:Weekday:High"):
        assert ContextKey.from_storage_key(malformed) is None, malformed
    print("✅ storage_round_trip: PASSED")


def test_custom_thresholds():
    thresholds = BucketThresholds(energy_low_max=3, weekend_days=frozenset({4, 5, 6}))
    key = ContextKey.from_values(3, 0.5, date(2026, 10, 16), 3, thresholds=thresholds)
    assert key.energy == EnergyBucket.LOW
    assert key.day_type == DayTypeBucket.WEEKEND
    print("✅ custom_thresholds: PASSED")


def test_snapshot_key():
    """Snapshots derive their key from local date, today's planned minutes and check-in energy."""
    now = utc(2026, 10, 17, 15)
    snapshot = UserStateSnapshot(
        user_id=TEST_USER_ID,
        as_of=now,
        daily_capacity_minutes=100,
        season_intensity=5,
        tasks=(
            TaskSnapshot(id="t1", title="Write", scheduled_on=date(2026, 10, 17), estimated_minutes=90),
            TaskSnapshot(id="t2", title="Edit", scheduled_on=date(2026, 10, 17), estimated_minutes=40),
            TaskSnapshot(id="t3", title="Done", scheduled_on=date(2026, 10, 17), estimated_minutes=500, status="Completed"),
        ),
        check_in=CheckInState(morning_done=True, energy_level=1),
    )
    assert snapshot.capacity_utilization == 1.3
    assert snapshot.context_key().to_storage_key() == "Low:Overloaded:Weekend:High"

    # No check-in yet: energy defaults to the midpoint
    plain = UserStateSnapshot(user_id=TEST_USER_ID, as_of=now)
    assert plain.context_key().energy == EnergyBucket.MEDIUM
    print("✅ snapshot_key: PASSED")


if __name__ == "__main__":
    print("\n🧪 Running context key tests...\n")

    test_example_key()
    test_bucket_edges()
    test_storage_round_trip()
    test_custom_thresholds()
    test_snapshot_key()

    print("\n✅ All context key tests passed!")
