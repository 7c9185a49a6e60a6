"""
Forecast Comparison for Sky Compare

Lines up the next 24 hours of every successful provider and measures
how far apart they are. For each metric the disagreement is the
max-minus-min spread across providers at each shared timestamp, and the
reported figure is the largest of those spreads: the worst disagreement
in the window, not a statistical variance.

Timestamps are matched exactly. A provider with no point at an instant
simply does not take part there; nothing is interpolated.

SERIES UNITS (display units):
- Temperature: °F
- Precipitation chance: %
- Wind speed: mph
- Humidity: %

AGREEMENT THRESHOLDS (temperature spread, °F):
- LOW: spread < 5°F
- MODERATE: spread 5-10°F
- CRITICAL: spread >= 10°F
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import numpy as np

from sky_compare.models import HourlyPoint, ProviderId, WeatherSnapshot, sort_by_priority, utc_now
from sky_compare.normalizer import celsius_to_fahrenheit, meters_per_second_to_mph

logger = logging.getLogger(__name__)


@dataclass
class DataPoint:
    """One provider's value at one instant, in display units."""
    time: datetime
    value: float
    provider: ProviderId


Series = Dict[ProviderId, List[DataPoint]]


@dataclass
class ComparisonData:
    temperatures: Series = field(default_factory=dict)
    precipitation: Series = field(default_factory=dict)
    wind: Series = field(default_factory=dict)
    humidity: Series = field(default_factory=dict)

    temperature_variance: float = 0.0      # °F
    precipitation_difference: float = 0.0  # percentage points
    wind_variance: float = 0.0             # mph
    humidity_variance: float = 0.0         # percentage points
    temperature_agreement: str = "LOW"

    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    @property
    def providers(self) -> List[ProviderId]:
        return sort_by_priority(self.temperatures)


def max_spread(series: Series) -> float:
    """
    Largest max-minus-min across providers at any single timestamp.

    Timestamps where fewer than two providers have a value are skipped;
    with no such timestamp at all the spread is 0.
    """
    by_time: Dict[datetime, List[float]] = {}
    for points in series.values():
        for point in points:
            by_time.setdefault(point.time, []).append(point.value)

    spreads = [
        float(np.max(values) - np.min(values))
        for values in map(np.array, by_time.values())
        if len(values) > 1
    ]
    return max(spreads) if spreads else 0.0


class ComparisonAnalyzer:
    """
    Builds per-metric series for the forward window and their worst spreads.

    Args:
        window_hours: Length of the forward window starting at `now`
    """

    # Temperature agreement thresholds (Fahrenheit)
    VARIANCE_MODERATE = 5.0
    VARIANCE_CRITICAL = 10.0

    def __init__(self, window_hours: float = 24.0):
        self.window = timedelta(hours=window_hours)

    def analyze(self, snapshot: WeatherSnapshot, now: Optional[datetime] = None) -> ComparisonData:
        """
        Compare the successful providers in a snapshot.

        Args:
            snapshot: Aggregated result; fewer than two sources yields zero spreads
            now: Window start (defaults to the current UTC time)
        """
        start = now or utc_now()
        end = start + self.window

        data = ComparisonData(window_start=start, window_end=end)
        for pid in snapshot.available_sources:
            hours = [h for h in snapshot.records[pid].hourly if start <= h.time <= end]
            data.temperatures[pid] = self._series(hours, pid, lambda h: celsius_to_fahrenheit(h.temperature))
            data.precipitation[pid] = self._series(hours, pid, lambda h: _percent(h.precipitation_chance))
            data.wind[pid] = self._series(hours, pid, lambda h: _mph(h.wind_speed))
            data.humidity[pid] = self._series(hours, pid, lambda h: _percent(h.humidity))

        data.temperature_variance = max_spread(data.temperatures)
        data.precipitation_difference = max_spread(data.precipitation)
        data.wind_variance = max_spread(data.wind)
        data.humidity_variance = max_spread(data.humidity)
        data.temperature_agreement = self.agreement_level(data.temperature_variance)

        if len(snapshot.available_sources) < 2:
            logger.debug(f"[ComparisonAnalyzer] {len(snapshot.available_sources)} source(s), nothing to compare")
        elif data.temperature_agreement == "CRITICAL":
            logger.warning(
                f"[ComparisonAnalyzer] CRITICAL disagreement: temperature spread "
                f"{data.temperature_variance:.1f}°F across {len(snapshot.available_sources)} sources"
            )
        else:
            logger.info(
                f"[ComparisonAnalyzer] temp {data.temperature_variance:.1f}°F ({data.temperature_agreement}), "
                f"precip {data.precipitation_difference:.0f}%, wind {data.wind_variance:.1f} mph, "
                f"humidity {data.humidity_variance:.0f}%"
            )
        return data

    def agreement_level(self, spread_f: float) -> str:
        if spread_f < self.VARIANCE_MODERATE:
            return "LOW"
        elif spread_f < self.VARIANCE_CRITICAL:
            return "MODERATE"
        return "CRITICAL"

    @staticmethod
    def _series(
        hours: List[HourlyPoint],
        provider: ProviderId,
        value: Callable[[HourlyPoint], Optional[float]],
    ) -> List[DataPoint]:
        points = []
        for hour in hours:
            v = value(hour)
            if v is not None:
                points.append(DataPoint(time=hour.time, value=v, provider=provider))
        return points


def _percent(fraction: Optional[float]) -> Optional[float]:
    return None if fraction is None else fraction * 100


def _mph(speed: Optional[float]) -> Optional[float]:
    return None if speed is None else meters_per_second_to_mph(speed)
