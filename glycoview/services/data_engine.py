"""Data engine: ingest, store and query device records.

The engine owns the normalized record store and its indexed view. A
query validates its descriptor, sets the time and glucose preferences,
then walks the current, next and previous windows. Statistics and
aggregations are computed for the current window only.
"""

import time
import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from glycoview.config import Settings, settings as default_settings
from glycoview.constants import DEFAULT_BG_BOUNDS, MS_IN_DAY, MS_IN_HOUR
from glycoview.core.datetime_utils import (
    day_of_week,
    from_ms,
    local_date,
    local_date_key,
    local_midnight,
    ms_per_24,
    to_ms,
    tz_for,
    utc_offset_minutes,
)
from glycoview.core.device import (
    get_latest_pump_upload,
    get_manufacturer,
    is_automated_basal_device,
    is_automated_bolus_device,
    is_settings_override_device,
)
from glycoview.core.exceptions import QueryError
from glycoview.core.indexed_view import DimensionSpec, IndexedView
from glycoview.core.normalizer import IngestResult, Normalizer, RejectedRecord
from glycoview.enums import BgSource, BgUnits, RecordType
from glycoview.logging_config import correlation_id_ctx, get_logger, setup_logging
from glycoview.schemas.query import FillData, QueryDescriptor, TypeProjection
from glycoview.services.aggregations import AggregationEngine, resolve_aggregations
from glycoview.services.stats import StatEngine, WindowContext, resolve_stats

logger = get_logger(__name__)

Record = dict[str, Any]

ALL_DAYS = frozenset(range(7))
WINDOW_NAMES = ("current", "next", "prev")


def _field(name: str) -> Callable[[Record], Any]:
    def key(datum: Record) -> Any:
        value = datum.get(name)
        return value if isinstance(value, str) else None

    return key


def _sample_interval(datum: Record) -> int | None:
    if datum["type"] != RecordType.cbg:
        return None
    return datum.get("sampleInterval")


def build_dimensions() -> dict[str, DimensionSpec]:
    """Dimensions of the engine's indexed view.

    Each is indexed the first time a filter on it is read. ``date`` and
    ``id`` are not filtered by queries; they serve callers that filter
    ``DataEngine.view`` directly.
    """
    return {
        "time": DimensionSpec(lambda d: d["normalTime"], ordered=True),
        "date": DimensionSpec(
            lambda d: local_date_key(d["normalTime"], d.get("displayOffset", 0)), ordered=True
        ),
        "dayOfWeek": DimensionSpec(
            lambda d: day_of_week(d["normalTime"], d.get("displayOffset", 0)), ordered=True
        ),
        "type": DimensionSpec(lambda d: d["type"]),
        "subType": DimensionSpec(_field("subType")),
        "id": DimensionSpec(lambda d: d["id"]),
        "deviceId": DimensionSpec(_field("deviceId")),
        "sampleInterval": DimensionSpec(_sample_interval, ordered=True),
    }


def count_active_days(
    start: int, end: int, active_days: frozenset[int], timezone_name: str | None
) -> float:
    """Days in ``[start, end)`` that fall on an active weekday.

    The range is walked in one-day chunks from ``start``; each chunk
    counts when its first instant lands on an active local weekday. A
    trailing partial chunk counts fractionally.
    """
    if active_days == ALL_DAYS:
        return (end - start) / MS_IN_DAY
    total = 0.0
    chunk_start = start
    while chunk_start < end:
        chunk_end = min(chunk_start + MS_IN_DAY, end)
        offset = utc_offset_minutes(chunk_start, timezone_name) if timezone_name else 0
        if day_of_week(chunk_start, offset) in active_days:
            total += (chunk_end - chunk_start) / MS_IN_DAY
        chunk_start = chunk_end
    return total


class DataEngine:
    """In-memory store and query engine for diabetes device records.

    Example:
        engine = DataEngine()
        engine.add_data(records)
        result = engine.query({
            "endpoints": ["2024-01-01T00:00:00Z", "2024-01-15T00:00:00Z"],
            "stats": ["averageGlucose", "timeInRange"],
            "types": {"cbg": {"select": "normalTime,value"}},
        })

    Pass ``configure_logging=True`` to install the root log handler from
    the settings' log format, level and service name.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        records: list[Any] | None = None,
        configure_logging: bool = False,
    ):
        self.settings = settings or default_settings
        # Root logging is left alone unless requested
        if configure_logging:
            setup_logging(
                log_format=self.settings.log_format,
                log_level=self.settings.log_level,
                service_name=self.settings.service_name,
            )
        self.normalizer = Normalizer(self.settings)
        self.view = IndexedView(build_dimensions())
        if records:
            self.add_data(records)

    @property
    def size(self) -> int:
        """Number of stored records."""
        return len(self.view)

    def add_data(self, raw_records: list[Any]) -> IngestResult:
        """Validate, normalize and store a batch of raw records.

        Args:
            raw_records: Raw device records; accepted mappings are taken
                over by the engine and normalized in place

        Returns:
            IngestResult listing accepted and rejected records
        """
        started = time.perf_counter()
        result = self.normalizer.ingest(raw_records, known_ids=self.view.ids())
        self.view.add(result.accepted)
        logger.info(
            "Ingested records",
            accepted=len(result.accepted),
            rejected=len(result.rejected),
            duplicates=result.duplicates,
            size=self.size,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return result

    def update_datum(self, raw: Any) -> IngestResult:
        """Replace the stored record sharing ``raw``'s id.

        The replacement is validated and normalized like a fresh record.
        If it is rejected, the stored record is left untouched.
        """
        record_id = raw.get("id") if isinstance(raw, dict) else None
        existing = self.view.get(record_id) if isinstance(record_id, str) else None
        if existing is None:
            reason = f"id: no stored record with id {record_id!r}"
            logger.warning("Update for unknown record", record_id=record_id)
            return IngestResult(rejected=[RejectedRecord(record=raw, reasons=[reason])])

        reasons = self.normalizer.prepare(raw)
        if reasons:
            logger.warning("Rejected record update", record_id=record_id, reasons=reasons)
            return IngestResult(rejected=[RejectedRecord(record=raw, reasons=reasons)])

        self.normalizer.unlink(existing)
        self.view.replace(raw)
        self.normalizer.join([raw])
        self.normalizer.tag(raw)
        logger.info("Updated record", record_id=record_id, record_type=raw["type"])
        return IngestResult(accepted=[raw])

    def remove_data(self, predicate: Callable[[Record], bool]) -> int:
        """Remove every stored record matching ``predicate``.

        Returns:
            Number of records removed
        """
        self.view.clear_all()
        removed = self.view.remove(predicate)
        for datum in removed:
            self.normalizer.unlink(datum)
        logger.info("Removed records", removed=len(removed), size=self.size)
        return len(removed)

    def query(self, descriptor: QueryDescriptor | dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a query descriptor against the store.

        Args:
            descriptor: QueryDescriptor or its camelCase mapping form

        Returns:
            Result with per-window data, the applied preferences and
            requested metadata

        Raises:
            QueryError: If the descriptor is invalid, or names an unknown
                statistic or aggregation
        """
        query = self._parse(descriptor)
        token = correlation_id_ctx.set(str(uuid.uuid4()))
        started = time.perf_counter()
        try:
            timezone_name = self._apply_time_prefs(query)
            bg_units = query.bg_prefs.bg_units or self.settings.default_bg_units
            if query.bg_prefs.bg_bounds is not None:
                bg_bounds = query.bg_prefs.bg_bounds.as_dict()
            else:
                bg_bounds = dict(DEFAULT_BG_BOUNDS[bg_units])

            self.view.clear_all()
            bg_sources = self._bg_sources(query.bg_source)
            meta_data = self._meta_data(query, bg_sources, bg_units)

            windows = self._windows(query.endpoints)
            data = {
                name: self._run_window(
                    name,
                    windows.get(name),
                    query,
                    bg_units,
                    bg_bounds,
                    BgSource(bg_sources["current"] or BgSource.cbg),
                    timezone_name,
                )
                for name in WINDOW_NAMES
            }

            result: dict[str, Any] = {
                "data": data,
                "timePrefs": {
                    "timezoneAware": timezone_name is not None,
                    "timezoneName": timezone_name,
                },
                "bgPrefs": {"bgUnits": BgUnits(bg_units).value, "bgBounds": bg_bounds},
            }
            if meta_data is not None:
                result["metaData"] = meta_data

            logger.info(
                "Query completed",
                endpoints=list(query.endpoints) if query.endpoints else None,
                stats=query.stats,
                aggregations=query.aggregations_by_date,
                types=[t.type for t in query.types],
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return result
        finally:
            self.view.clear_all()
            correlation_id_ctx.reset(token)

    def _parse(self, descriptor: QueryDescriptor | dict[str, Any] | None) -> QueryDescriptor:
        if isinstance(descriptor, QueryDescriptor):
            query = descriptor
        else:
            try:
                query = QueryDescriptor.model_validate(descriptor or {})
            except ValidationError as e:
                logger.warning("Invalid query descriptor", errors=e.error_count())
                msg = f"Invalid query descriptor: {e}"
                raise QueryError(msg) from e

        resolve_stats(query.stats)
        resolve_aggregations(query.aggregations_by_date)
        if (query.stats or query.aggregations_by_date) and query.endpoints is None:
            msg = "statistics and aggregations require endpoints"
            raise QueryError(msg)
        return query

    def _apply_time_prefs(self, query: QueryDescriptor) -> str | None:
        """Switch the store's time mode to the query's, renormalizing if it changed."""
        prefs = query.time_prefs
        timezone_name = None
        if prefs.timezone_aware:
            timezone_name = prefs.timezone_name or self.settings.default_timezone

        if self.normalizer.set_timezone(timezone_name):
            records = list(self.view.records())
            for datum in records:
                self.normalizer.normalize_time(datum)
            self.normalizer.join([d for d in records if d["type"] == RecordType.wizard])
            self.view.rebuild()
            logger.info(
                "Renormalized record times",
                timezone_name=timezone_name,
                records=len(records),
            )
        return timezone_name

    def _windows(self, endpoints: tuple[int, int] | None) -> dict[str, tuple[int, int]]:
        if endpoints is None:
            return {}
        start, end = endpoints
        duration = end - start
        return {
            "current": (start, end),
            "next": (end, end + duration),
            "prev": (start - duration, start),
        }

    def _bg_sources(self, requested: BgSource | None) -> dict[str, Any]:
        """Which glucose sources have data, and the one statistics should use."""
        with self.view.preserve_filters():
            available = {}
            for source in BgSource:
                self.view.filter_exact("type", source)
                available[source.value] = bool(self.view.top_all())

        if requested is not None and available[requested]:
            current = requested.value
        elif available[BgSource.cbg]:
            current = BgSource.cbg.value
        elif available[BgSource.smbg]:
            current = BgSource.smbg.value
        else:
            current = None
        return {**available, "current": current}

    def _meta_data(
        self, query: QueryDescriptor, bg_sources: dict[str, Any], bg_units: BgUnits
    ) -> dict[str, Any] | None:
        """Dataset-wide metadata, computed once per query over every record."""
        keys = query.meta_data
        if keys is not None and not keys:
            return None
        wanted = set(keys) if keys is not None else {
            "bgSources",
            "devices",
            "latestDatumByType",
            "latestPumpUpload",
            "size",
        }

        records = IndexedView.sort_by_time(list(self.view.records()))
        meta: dict[str, Any] = {}

        if "bgSources" in wanted:
            meta["bgSources"] = bg_sources
        if "size" in wanted:
            meta["size"] = len(records)
        if "devices" in wanted:
            meta["devices"] = sorted(
                {d["deviceId"] for d in records if isinstance(d.get("deviceId"), str)}
            )
        if "latestDatumByType" in wanted:
            latest: dict[str, Record] = {}
            for datum in records:
                latest[datum["type"]] = datum
            meta["latestDatumByType"] = {
                record_type: self.normalizer.normalize_out(datum, ["*"], bg_units)
                for record_type, datum in sorted(latest.items())
            }
        if "latestPumpUpload" in wanted:
            meta["latestPumpUpload"] = self._latest_pump_upload(records, bg_units)
        return meta

    def _latest_pump_upload(self, records: list[Record], bg_units: BgUnits) -> Record | None:
        uploads = [d for d in records if d["type"] == RecordType.upload]
        upload = get_latest_pump_upload(uploads)
        if upload is None:
            return None

        pump_settings = [d for d in records if d["type"] == RecordType.pump_settings]
        matching = [d for d in pump_settings if d.get("uploadId") == upload.get("uploadId")]
        settings = (matching or pump_settings or [None])[-1]

        manufacturer = get_manufacturer(upload)
        device_model = upload.get("deviceModel") or ""
        return {
            "deviceModel": device_model,
            "manufacturer": manufacturer,
            "isAutomatedBasalDevice": is_automated_basal_device(
                manufacturer, settings, device_model
            ),
            "isAutomatedBolusDevice": is_automated_bolus_device(manufacturer, settings),
            "isSettingsOverrideDevice": is_settings_override_device(manufacturer, settings),
            "settings": (
                self.normalizer.normalize_out(settings, ["*"], bg_units) if settings else None
            ),
        }

    def _run_window(
        self,
        name: str,
        endpoints: tuple[int, int] | None,
        query: QueryDescriptor,
        bg_units: BgUnits,
        bg_bounds: dict[str, float | None],
        bg_source: BgSource,
        timezone_name: str | None,
    ) -> dict[str, Any]:
        self.view.clear_all()
        if query.excluded_devices:
            self.view.filter_set("deviceId", query.excluded_devices, exclude=True)

        if endpoints is None:
            if name != "current":
                return {}
            return {"data": self._project(query.types, bg_units)} if query.types else {}

        start, end = endpoints
        active_days = frozenset(query.active_days) if query.active_days is not None else ALL_DAYS
        self.view.filter_range("time", start, end)
        if active_days != ALL_DAYS:
            self.view.filter_set("dayOfWeek", active_days)

        context = WindowContext(
            start=start,
            end=end,
            days=(end - start) / MS_IN_DAY,
            active_days=count_active_days(start, end, active_days, timezone_name),
            bg_units=bg_units,
            bg_bounds=bg_bounds,
            bg_source=bg_source,
            timezone_name=timezone_name,
        )
        window: dict[str, Any] = {
            "endpoints": {
                "range": [start, end],
                "days": context.days,
                "activeDays": context.active_days,
            }
        }

        if name == "current":
            if query.stats:
                engine = StatEngine(self.view, self.normalizer, self.settings, context)
                window["stats"] = engine.get_stats(query.stats)
            if query.aggregations_by_date:
                aggregator = AggregationEngine(
                    self.view,
                    self.normalizer,
                    self.settings,
                    context,
                    types=[t.type for t in query.types],
                    stats=query.stats,
                )
                window["aggregationsByDate"] = aggregator.aggregate(query.aggregations_by_date)

        if query.types or query.fill_data:
            data = self._project(query.types, bg_units)
            if query.fill_data is not None:
                data[RecordType.fill.value] = fill_bins(start, end, query.fill_data, timezone_name)
            window["data"] = data

        logger.debug("Window evaluated", window=name, start=start, end=end)
        return window

    def _project(self, projections: list[TypeProjection], bg_units: BgUnits) -> dict[str, list]:
        """Filtered records per requested type, sorted and field-selected."""
        data = {}
        for projection in projections:
            with self.view.preserve_filters():
                self.view.filter_exact("type", projection.type)
                records = self.view.top_all()

            select = projection.select
            out = [self.normalizer.normalize_out(d, select, bg_units) for d in records]
            out = IndexedView.sort_by_time(
                out, field=projection.sort.field, reverse=projection.sort.order == "desc"
            )
            if "*" not in select:
                out = [{f: d[f] for f in select if f in d} for d in out]
            data[projection.type] = out
        return data


def fill_bins(
    start: int, end: int, fill: FillData, timezone_name: str | None
) -> list[dict[str, Any]]:
    """Fixed-length time bins covering ``[start, end)``.

    Bins are aligned to the local midnight on or before ``start``. With
    ``adjust_for_dst_changes`` each bin steps by wall-clock hours, so a
    bin spanning a DST change is an hour shorter or longer.
    """
    tz = tz_for(timezone_name)
    step_ms = int(fill.duration * MS_IN_HOUR)
    current = local_midnight(local_date(start, timezone_name), timezone_name)

    bins = []
    while current < end:
        if fill.adjust_for_dst_changes:
            following = to_ms(from_ms(current, tz) + timedelta(milliseconds=step_ms))
        else:
            following = current + step_ms
        if following > start:
            offset = utc_offset_minutes(current, timezone_name) if timezone_name else 0
            per_24 = ms_per_24(current, offset)
            bins.append(
                {
                    "type": RecordType.fill.value,
                    "id": f"fill-{current}",
                    "normalTime": current,
                    "normalEnd": following,
                    "duration": following - current,
                    "fillDate": local_date_key(current, offset),
                    "startsAtMidnight": per_24 == 0,
                    "msPer24": per_24,
                }
            )
        current = following
    return bins
