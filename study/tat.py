"""
Turnaround-time (TAT) engine.

Pure functions that turn a study's timestamp fields into whole-minute
durations, compact human units and performance tiers. No database access:
services feed it model instances, the reporting layer feeds it rows.

Baselines:
    BASELINE_FIELDS names the Study attribute behind every baseline. The
    reporting layer's date-range filters read the same table, so a filter on
    "assigned_date" and the assign_to_report metric always refer to the same
    column.

Null handling:
    A metric is None when either endpoint is missing. Negative deltas are
    kept as-is, logged, and bucketed as the anomaly tier.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from django.utils import timezone

from common.config import TATConfig

logger = logging.getLogger(__name__)


# Baseline name -> Study attribute
BASELINE_FIELDS: dict[str, str] = {
    'study_date': 'study_date',
    'upload_date': 'created_at',
    'assigned_date': 'assigned_at',
    'report_date': 'report_finalized_at',
}

DEFAULT_BASELINE = 'upload_date'

# Metric name -> (start baseline, end baseline)
TAT_PAIRS: dict[str, tuple[str, str]] = {
    'study_to_report': ('study_date', 'report_date'),
    'upload_to_report': ('upload_date', 'report_date'),
    'assign_to_report': ('assigned_date', 'report_date'),
}

# Metric name -> cached Study column
TIMING_FIELDS: dict[str, str] = {
    'study_to_report': 'study_to_report_minutes',
    'upload_to_report': 'upload_to_report_minutes',
    'assign_to_report': 'assign_to_report_minutes',
}


@dataclass(frozen=True)
class TATResult:
    """Minutes per baseline pair; None when an endpoint is missing."""

    study_to_report: int | None = None
    upload_to_report: int | None = None
    assign_to_report: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        return asdict(self)

    def formatted(self) -> dict[str, str | None]:
        return {name: format_duration(value) for name, value in self.as_dict().items()}

    def tiers(self) -> dict[str, str | None]:
        return {name: bucket_tat(value) for name, value in self.as_dict().items()}

    @property
    def anomalies(self) -> list[str]:
        """Names of metrics with a negative duration."""
        return [name for name, value in self.as_dict().items() if value is not None and value < 0]


def parse_study_date(value: str | None) -> datetime | None:
    """Parse a YYYYMMDD study date as midnight in the default time zone.

    Returns None for empty or malformed values; malformed ones are logged.
    """
    if not value:
        return None
    try:
        naive = datetime.strptime(value, TATConfig.STUDY_DATE_FORMAT)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable study date: {value!r}")
        return None
    return timezone.make_aware(naive, timezone.get_default_timezone())


def baseline_value(study: Any, baseline: str) -> datetime | None:
    """Read one baseline timestamp off a study (study date parsed to datetime)."""
    raw = getattr(study, BASELINE_FIELDS[baseline], None)
    if baseline == 'study_date':
        return parse_study_date(raw)
    return raw


def minutes_between(start: datetime | None, end: datetime | None) -> int | None:
    """Whole minutes from start to end, truncated toward zero."""
    if start is None or end is None:
        return None
    return int((end - start) / timedelta(minutes=1))


def compute_tat(study: Any) -> TATResult:
    """
    Compute every TAT metric for a study.

    Args:
        study: Anything exposing the BASELINE_FIELDS attributes (a Study
            instance or an equivalent row object)

    Returns:
        TATResult with minutes per baseline pair

    Example:
        >>> result = compute_tat(study)  # created 00:00, finalized 04:30
        >>> result.upload_to_report
        270
    """
    values = {
        name: minutes_between(baseline_value(study, start), baseline_value(study, end))
        for name, (start, end) in TAT_PAIRS.items()
    }
    result = TATResult(**values)

    if result.anomalies:
        logger.warning(
            f"Negative TAT for study {getattr(study, 'pk', None)}: "
            f"{ {name: values[name] for name in result.anomalies} }"
        )
    return result


def format_duration(minutes: int | None) -> str | None:
    """
    Format minutes into compact units using integer division with remainder.

    Rules:
        < 1 hour  -> "Xm"
        < 1 day   -> "Xh Ym"
        < 1 week  -> "Xd Yh"
        otherwise -> "Xw Yd"

    Negative values keep their sign ("-1h 5m") so they stay visible.

    Example:
        >>> format_duration(270)
        '4h 30m'
    """
    if minutes is None:
        return None
    if minutes < 0:
        return f'-{format_duration(-minutes)}'

    hour, day, week = TATConfig.MINUTES_PER_HOUR, TATConfig.MINUTES_PER_DAY, TATConfig.MINUTES_PER_WEEK
    if minutes < hour:
        return f'{minutes}m'
    if minutes < day:
        return f'{minutes // hour}h {minutes % hour}m'
    if minutes < week:
        return f'{minutes // day}d {(minutes % day) // hour}h'
    return f'{minutes // week}w {(minutes % week) // day}d'


def bucket_tat(minutes: int | float | None) -> str | None:
    """Map minutes to a performance tier for color-coded display."""
    if minutes is None:
        return None
    if minutes < 0:
        return TATConfig.ANOMALY_TIER
    for upper_bound, tier in TATConfig.TIER_THRESHOLDS:
        if minutes <= upper_bound:
            return tier
    return TATConfig.CRITICAL_TIER


def completion_rate(completed: int, total: int) -> float:
    """completed/total, 0.0 when total is 0."""
    if total <= 0:
        return 0.0
    return completed / total


def mean_minutes(values: Iterable[int | float | None]) -> float | None:
    """Mean over non-null values; None when there are none."""
    present = [value for value in values if value is not None]
    if not present:
        return None
    return sum(present) / len(present)
