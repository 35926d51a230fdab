"""Per-day tag aggregations for calendar-style summaries.

Records in the current window are grouped by local calendar date. Only
dates from the window's first local date through its last are kept; a
window ending exactly on local midnight does not include that date.
"""

import math
import time
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any, Final

from glycoview.config import Settings
from glycoview.constants import RECORD_TAGS
from glycoview.core.basal import count_automated_basal_events, count_distinct_suspends
from glycoview.core.bloodglucose import classify_bg_value, to_display
from glycoview.core.datetime_utils import (
    is_local_midnight,
    local_date,
    local_date_key,
    local_midnight,
)
from glycoview.core.exceptions import UnknownAggregationError
from glycoview.core.indexed_view import IndexedView
from glycoview.core.normalizer import Normalizer
from glycoview.enums import AggregationType, BgRange, RecordType
from glycoview.logging_config import get_logger
from glycoview.services.stats import StatEngine, WindowContext

logger = get_logger(__name__)

Record = dict[str, Any]

SITE_CHANGE_TAGS: Final[tuple[str, ...]] = ("cannulaPrime", "reservoirChange", "tubingPrime")
SITE_CHANGE_SUBTYPES: Final[tuple[str, ...]] = ("prime", "reservoirChange")


def resolve_aggregations(names: list[str]) -> list[AggregationType]:
    """Map requested aggregation names to registered aggregations.

    Raises:
        UnknownAggregationError: If any name is not a registered aggregation
    """
    resolved = []
    for name in names:
        try:
            resolved.append(AggregationType(name))
        except ValueError:
            raise UnknownAggregationError(name) from None
    return resolved


class AggregationEngine:
    """Aggregates the current window's records by local date."""

    def __init__(
        self,
        view: IndexedView,
        normalizer: Normalizer,
        settings: Settings,
        context: WindowContext,
        types: list[str] | None = None,
        stats: list[str] | None = None,
    ):
        self.view = view
        self.normalizer = normalizer
        self.settings = settings
        self.ctx = context
        self.types = types or []
        self.stats = stats or []

        tz = context.timezone_name
        self.first_date = local_date(context.start, tz)
        self.last_date = local_date(context.end, tz)
        if is_local_midnight(context.end, tz):
            self.last_date -= timedelta(days=1)

    def aggregate(self, names: list[str]) -> dict[str, Any]:
        """Run each requested aggregation against the current window."""
        results = {}
        for agg in resolve_aggregations(names):
            started = time.perf_counter()
            results[agg.value] = AGGREGATION_REGISTRY[agg](self)
            logger.debug(
                "Aggregation computed",
                aggregation=agg.value,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        return results

    def _in_range(self, key: str) -> bool:
        return self.first_date <= date.fromisoformat(key) <= self.last_date

    def _group_by_date(self, record_types: list[str]) -> dict[str, list[Record]]:
        """Window records of ``record_types``, sorted and grouped by local date."""
        with self.view.preserve_filters():
            self.view.filter_set("type", record_types)
            records = IndexedView.sort_by_time(self.view.top_all())

        grouped: dict[str, list[Record]] = {}
        for datum in records:
            key = local_date_key(datum["normalTime"], datum.get("displayOffset", 0))
            if self._in_range(key):
                grouped.setdefault(key, []).append(datum)
        return dict(sorted(grouped.items()))

    def _count_tags(self, records: list[Record], tags: tuple[str, ...]) -> dict[str, int]:
        return {tag: sum(1 for d in records if (d.get("tags") or {}).get(tag)) for tag in tags}

    def _summarize(self, by_date: dict[str, dict[str, Any]]) -> dict[str, Any]:
        total = sum(day["total"] for day in by_date.values())
        subtotals: dict[str, dict[str, float]] = {}
        for day in by_date.values():
            for tag, count in day["subtotals"].items():
                subtotals.setdefault(tag, {"count": 0})
                subtotals[tag]["count"] += count
        for entry in subtotals.values():
            entry["percentage"] = entry["count"] / total if total else math.nan
        return {
            "summary": {
                "avgPerDay": total / self.ctx.active_days if self.ctx.active_days else math.nan,
                "total": total,
                "subtotals": subtotals,
            },
            "byDate": by_date,
        }

    def _tag_aggregation(
        self, record_type: str, tags: tuple[str, ...], keep_empty: bool = False
    ) -> dict[str, Any]:
        by_date = {}
        for key, records in self._group_by_date([record_type]).items():
            subtotals = self._count_tags(records, tags)
            total = len(records) if keep_empty else sum(subtotals.values())
            if total:
                by_date[key] = {"total": total, "subtotals": subtotals}
        return self._summarize(by_date)

    def aggregate_basals(self) -> dict[str, Any]:
        """Suspend and temp basal counts per day.

        Each day also counts automated-delivery stops, and collapses
        back-to-back suspends into a single event.
        """
        by_date = {}
        for key, basals in self._group_by_date([RecordType.basal]).items():
            subtotals = self._count_tags(basals, RECORD_TAGS[RecordType.basal])
            day = {"total": sum(subtotals.values()), "subtotals": subtotals}
            count_automated_basal_events(day, basals)
            count_distinct_suspends(day, basals)
            by_date[key] = day
        return self._summarize(by_date)

    def aggregate_boluses(self) -> dict[str, Any]:
        return self._tag_aggregation(
            RecordType.bolus, RECORD_TAGS[RecordType.bolus], keep_empty=True
        )

    def aggregate_fingersticks(self) -> dict[str, Any]:
        """Fingerstick tag and extreme-band counts, plus CGM calibrations."""
        very_low = self.ctx.bg_bounds.get("veryLowThreshold") is not None
        very_high = self.ctx.bg_bounds.get("veryHighThreshold") is not None
        by_date = {}
        for key, readings in self._group_by_date([RecordType.smbg]).items():
            subtotals = self._count_tags(readings, RECORD_TAGS[RecordType.smbg])
            bands = [
                classify_bg_value(
                    self.ctx.bg_bounds,
                    self.ctx.bg_units,
                    to_display(d["value"], self.ctx.bg_units),
                )
                for d in readings
            ]
            if very_high:
                subtotals["veryHigh"] = bands.count(BgRange.very_high)
            if very_low:
                subtotals["veryLow"] = bands.count(BgRange.very_low)
            by_date[key] = {"total": len(readings), "subtotals": subtotals}

        return {
            "smbg": self._summarize(by_date),
            "calibration": self._tag_aggregation(RecordType.device_event, ("calibration",)),
        }

    def _previous_site_change_dates(self, before: int) -> dict[str, str]:
        """Most recent date of each site change type before ``before``.

        Looks through all history, ignoring the day-of-week filter.
        """
        with self.view.preserve_filters():
            self.view.filter_all("dayOfWeek")
            self.view.filter_range("time", None, before)
            self.view.filter_exact("type", RecordType.device_event)
            events = IndexedView.sort_by_time(self.view.top_all())

        dates: dict[str, str] = {}
        for event in events:
            for tag in SITE_CHANGE_TAGS:
                if (event.get("tags") or {}).get(tag):
                    dates[tag] = local_date_key(event["normalTime"], event.get("displayOffset", 0))
        return dates

    def aggregate_site_changes(self) -> dict[str, Any]:
        """Site change events per day, with days since the previous one."""
        grouped = {
            key: [d for d in events if d.get("subType") in SITE_CHANGE_SUBTYPES]
            for key, events in self._group_by_date([RecordType.device_event]).items()
        }
        grouped = {key: events for key, events in grouped.items() if events}
        if not grouped:
            return {"byDate": {}}

        first_event = next(iter(grouped.values()))[0]
        previous = self._previous_site_change_dates(first_event["normalTime"])

        by_date = {}
        for key, events in grouped.items():
            subtotals = self._count_tags(events, SITE_CHANGE_TAGS)
            days_since = {}
            for tag in SITE_CHANGE_TAGS:
                if not subtotals[tag]:
                    continue
                if tag in previous:
                    days_since[tag] = (
                        date.fromisoformat(key) - date.fromisoformat(previous[tag])
                    ).days
                previous[tag] = key
            by_date[key] = {
                "data": [
                    self.normalizer.normalize_out(d, ["*"], self.ctx.bg_units) for d in events
                ],
                "summary": {"daysSince": days_since},
                "subtotals": subtotals,
            }
        return {"byDate": by_date}

    def _day_endpoints(self, key: str) -> tuple[int, int]:
        day = date.fromisoformat(key)
        tz = self.ctx.timezone_name
        return local_midnight(day, tz), local_midnight(day + timedelta(days=1), tz)

    def _day_context(self, start: int, end: int) -> WindowContext:
        return WindowContext(
            start=start,
            end=end,
            days=1,
            active_days=1,
            bg_units=self.ctx.bg_units,
            bg_bounds=self.ctx.bg_bounds,
            bg_source=self.ctx.bg_source,
            timezone_name=self.ctx.timezone_name,
        )

    def aggregate_data_by_date(self) -> dict[str, Any]:
        """Requested record types grouped by day, in display form.

        Each day's basals start with the delivery, if any, that began
        on an earlier day and runs into this one.
        """
        types = self.types or sorted({d["type"] for d in self.view.top_all()})
        by_date = {}
        for key, records in self._group_by_date(types).items():
            grouped: dict[str, list[Record]] = {}
            for datum in records:
                grouped.setdefault(datum["type"], []).append(datum)

            if RecordType.basal in types:
                start, end = self._day_endpoints(key)
                day_stats = StatEngine(
                    self.view, self.normalizer, self.settings, self._day_context(start, end)
                )
                previous = day_stats.overlapping_start(RecordType.basal)
                if previous is not None:
                    grouped.setdefault(RecordType.basal.value, []).insert(0, previous)

            by_date[key] = {
                record_type: [
                    self.normalizer.normalize_out(d, ["*"], self.ctx.bg_units) for d in data
                ]
                for record_type, data in grouped.items()
            }
        return by_date

    def aggregate_stats_by_date(self) -> dict[str, Any]:
        """The query's statistics, computed for each day in the window."""
        by_date = {}
        days = self._group_by_date(sorted({d["type"] for d in self.view.top_all()}))
        for key in days:
            start, end = self._day_endpoints(key)
            start, end = max(start, self.ctx.start), min(end, self.ctx.end)
            with self.view.preserve_filters():
                self.view.filter_range("time", start, end)
                engine = StatEngine(
                    self.view, self.normalizer, self.settings, self._day_context(start, end)
                )
                by_date[key] = engine.get_stats(self.stats)
        return by_date


AGGREGATION_REGISTRY: Final[dict[AggregationType, Callable[[AggregationEngine], Any]]] = {
    AggregationType.basals: AggregationEngine.aggregate_basals,
    AggregationType.boluses: AggregationEngine.aggregate_boluses,
    AggregationType.fingersticks: AggregationEngine.aggregate_fingersticks,
    AggregationType.site_changes: AggregationEngine.aggregate_site_changes,
    AggregationType.data_by_date: AggregationEngine.aggregate_data_by_date,
    AggregationType.stats_by_date: AggregationEngine.aggregate_stats_by_date,
}
