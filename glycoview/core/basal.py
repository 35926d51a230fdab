"""Basal delivery helpers.

Functions here operate on normalized basal records (``normalTime`` and
``duration`` in ms, ``rate`` in U/hr). Window arithmetic always clips a
delivery to its overlap with ``[start, end)``.
"""

from typing import Any

from glycoview.constants import MS_IN_HOUR
from glycoview.enums import DeliveryType


def basal_end(datum: dict[str, Any]) -> int:
    """End instant of a basal delivery."""
    return datum["normalTime"] + (datum.get("duration") or 0)


def overlap_duration(datum: dict[str, Any], start: int, end: int) -> int:
    """Portion of a delivery's duration that falls inside ``[start, end)``."""
    lo = max(datum["normalTime"], start)
    hi = min(basal_end(datum), end)
    return max(0, hi - lo)


def get_basal_path_group_type(datum: dict[str, Any]) -> str:
    """Return 'automated' if the delivery or what it suppressed is automated."""
    delivery_type = datum.get("subType", datum.get("deliveryType"))
    suppressed = datum.get("suppressed") or {}
    suppressed_type = suppressed.get("subType", suppressed.get("deliveryType"))
    if DeliveryType.automated in (delivery_type, suppressed_type):
        return "automated"
    return "manual"


def get_basal_path_groups(basals: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    """Split time-ordered basals into runs of alternating automated/manual."""
    groups: list[list[dict[str, Any]]] = []
    current = None
    for datum in basals:
        path_type = get_basal_path_group_type(datum)
        if path_type != current:
            current = path_type
            groups.append([])
        groups[-1].append(datum)
    return groups


def get_segment_dose(duration: int, rate: float) -> float:
    """Insulin delivered by ``rate`` U/hr over ``duration`` ms, to 3 places."""
    return round(duration / MS_IN_HOUR * rate, 3)


def get_total_basal_from_endpoints(
    basals: list[dict[str, Any]], start: int, end: int
) -> float:
    """Total basal insulin delivered within ``[start, end)``.

    Args:
        basals: Normalized basal records
        start: Window start in epoch ms
        end: Window end in epoch ms

    Returns:
        Units of insulin, rounded to 3 decimal places
    """
    dose = 0.0
    for datum in basals:
        dose += get_segment_dose(overlap_duration(datum, start, end), datum.get("rate") or 0)
    return round(dose, 3)


def get_basal_group_durations_from_endpoints(
    basals: list[dict[str, Any]], start: int, end: int
) -> dict[str, int]:
    """Automated and manual delivery time within ``[start, end)``, in ms."""
    durations = {"automated": 0, "manual": 0}
    for datum in basals:
        durations[get_basal_path_group_type(datum)] += overlap_duration(datum, start, end)
    return durations


def count_automated_basal_events(day: dict[str, Any], basals: list[dict[str, Any]]) -> None:
    """Add ``automatedStop`` events for one day's basals, in place.

    The first run is dropped because only transitions between automated
    and manual delivery are counted.
    """
    groups = get_basal_path_groups(basals)[1:]
    automated_stop = 0
    for group in groups:
        sub_type = group[0].get("subType", group[0].get("deliveryType"))
        if sub_type != DeliveryType.automated:
            automated_stop += 1
    day["subtotals"]["automatedStop"] = automated_stop
    day["total"] += automated_stop


def count_distinct_suspends(day: dict[str, Any], basals: list[dict[str, Any]]) -> None:
    """Collapse contiguous suspends into one event, in place.

    A suspend that begins exactly where the previous suspend ended is a
    continuation rather than a new event.
    """
    distinct = 0
    skipped = 0
    prev_end = None
    for datum in basals:
        if datum.get("deliveryType") != DeliveryType.suspend:
            continue
        if prev_end is not None and prev_end == datum["normalTime"]:
            skipped += 1
        else:
            distinct += 1
        prev_end = basal_end(datum)
    day["subtotals"]["suspend"] = distinct
    day["total"] -= skipped
