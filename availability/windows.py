"""Post-processing of selected availability windows."""
from datetime import timedelta
from itertools import groupby
from typing import Iterable, List

from availability.models import Availability


def split_availability(avails: Iterable[Availability], duration: timedelta) -> List[Availability]:
    """
    Split windows into consecutive fixed-length slots.

    Slots start at each window's start; a remainder shorter than `duration`
    is dropped.

    Args:
        avails: Windows to split
        duration: Length of every slot

    Returns:
        Slots in input order
    """
    if duration <= timedelta(0):
        raise ValueError("Slot duration must be positive")

    slots = []
    for avail in avails:
        curr = avail.start
        while curr + duration <= avail.end:
            slots.append(Availability(start=curr, end=curr + duration))
            curr += duration
    return slots


def merge_overlapping(avails: Iterable[Availability]) -> List[Availability]:
    """
    Fold start-sorted windows left to right, combining overlapping neighbours.

    Windows that only touch are merged as well.

    Args:
        avails: Windows sorted by start

    Returns:
        Minimal non-overlapping cover of the input
    """
    merged: List[Availability] = []
    for avail in avails:
        if merged and merged[-1].overlaps(avail):
            merged[-1] = merged[-1].merged_with(avail)
        else:
            merged.append(avail)
    return merged


def format_availability(avails: Iterable[Availability]) -> str:
    """Render windows grouped under one header line per day."""
    lines = []
    for day, day_avails in groupby(avails, key=lambda a: a.start.date()):
        lines.append(day.strftime('%a %b %d %Y'))
        for avail in day_avails:
            lines.append(
                f"- {avail.start.strftime('%I:%M %p')} to "
                f"{avail.end.strftime('%I:%M %p')}"
            )
    return '\n'.join(lines) + '\n' if lines else ''
