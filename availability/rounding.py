"""Snap datetimes to the half-hour grid."""
from datetime import datetime, timedelta

ROUND_TO_MINUTES = 30


def _truncate(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def ceil_half_hour(value: datetime) -> datetime:
    """
    Round up to the next half-hour boundary.

    Seconds are discarded, so 10:00:45 rounds to 10:00. The result may roll
    over into the next hour or day.

    Args:
        value: Datetime to round

    Returns:
        Rounded datetime
    """
    remainder = value.minute % ROUND_TO_MINUTES
    truncated = _truncate(value)
    if remainder == 0:
        return truncated
    return truncated + timedelta(minutes=ROUND_TO_MINUTES - remainder)


def floor_half_hour(value: datetime) -> datetime:
    """
    Round down to the previous half-hour boundary, discarding seconds.

    Args:
        value: Datetime to round

    Returns:
        Rounded datetime
    """
    remainder = value.minute % ROUND_TO_MINUTES
    return _truncate(value) - timedelta(minutes=remainder)
