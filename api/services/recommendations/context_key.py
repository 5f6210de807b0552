"""
Context bucketing for playbook lookups.

A ContextKey discretizes the continuous situation (energy, capacity
utilization, day of week, season intensity) into four small buckets.
Rules and the escalation controller both derive keys through
`ContextKey.from_values` so a given snapshot always lands in the same
playbook row.

Storage form: "{energy}:{capacity}:{day_type}:{season_intensity}",
e.g. "Low:Overloaded:Weekend:High".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union


class EnergyBucket(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class CapacityBucket(str, Enum):
    LIGHT = "Light"
    FULL = "Full"
    OVERLOADED = "Overloaded"


class DayTypeBucket(str, Enum):
    WEEKDAY = "Weekday"
    WEEKEND = "Weekend"


class SeasonIntensityBucket(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


@dataclass(frozen=True)
class BucketThresholds:
    """Fixed cut points. Pass an alternate instance to test other mappings."""
    energy_low_max: int = 2
    energy_high_min: int = 4
    capacity_overloaded_above: float = 1.2
    capacity_full_min: float = 0.8
    season_low_max: int = 2
    season_high_min: int = 4
    weekend_days: frozenset = frozenset({5, 6})  # Saturday, Sunday


DEFAULT_THRESHOLDS = BucketThresholds()

_SEPARATOR = ":"


@dataclass(frozen=True)
class ContextKey:
    energy: EnergyBucket
    capacity: CapacityBucket
    day_type: DayTypeBucket
    season_intensity: SeasonIntensityBucket

    @classmethod
    def from_values(
        cls,
        energy_level: int,
        capacity_utilization: float,
        day: Union[date, datetime],
        season_intensity: int,
        thresholds: BucketThresholds = DEFAULT_THRESHOLDS,
    ) -> "ContextKey":
        """Total over its inputs: every int/float/date combination maps to a key."""
        if energy_level <= thresholds.energy_low_max:
            energy = EnergyBucket.LOW
        elif energy_level >= thresholds.energy_high_min:
            energy = EnergyBucket.HIGH
        else:
            energy = EnergyBucket.MEDIUM

        if capacity_utilization > thresholds.capacity_overloaded_above:
            capacity = CapacityBucket.OVERLOADED
        elif capacity_utilization >= thresholds.capacity_full_min:
            capacity = CapacityBucket.FULL
        else:
            capacity = CapacityBucket.LIGHT

        day_type = (
            DayTypeBucket.WEEKEND
            if day.weekday() in thresholds.weekend_days
            else DayTypeBucket.WEEKDAY
        )

        if season_intensity <= thresholds.season_low_max:
            season = SeasonIntensityBucket.LOW
        elif season_intensity >= thresholds.season_high_min:
            season = SeasonIntensityBucket.HIGH
        else:
            season = SeasonIntensityBucket.MEDIUM

        return cls(energy=energy, capacity=capacity, day_type=day_type, season_intensity=season)

    def to_storage_key(self) -> str:
        return _SEPARATOR.join((
            self.energy.value,
            self.capacity.value,
            self.day_type.value,
            self.season_intensity.value,
        ))

    @classmethod
    def from_storage_key(cls, key: Optional[str]) -> Optional["ContextKey"]:
        """Parse a storage key. Returns None for anything malformed."""
        if not key:
            return None
        parts = key.split(_SEPARATOR)
        if len(parts) != 4:
            return None
        try:
            return cls(
                energy=EnergyBucket(parts[0]),
                capacity=CapacityBucket(parts[1]),
                day_type=DayTypeBucket(parts[2]),
                season_intensity=SeasonIntensityBucket(parts[3]),
            )
        except ValueError:
            return None

    def __str__(self) -> str:
        return self.to_storage_key()
