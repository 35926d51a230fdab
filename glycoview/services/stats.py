"""Clinical statistics over the active window.

Every statistic reads the indexed view as the orchestrator left it for
the current window, narrows it further inside ``preserve_filters`` and
leaves the window's filters exactly as it found them.

Insufficient data is reported with ``insufficientData: True`` and a NaN
value rather than an exception, so a zero can be told apart from an
unknown.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

from glycoview.config import Settings
from glycoview.constants import (
    BASAL_OVERLAP_LOOKBACK_MS,
    GMI_INTERCEPT,
    GMI_MIN_CGM_COVERAGE,
    GMI_MIN_DAYS,
    GMI_SLOPE,
    MIN_READINGS_FOR_STANDARD_DEVIATION,
    MS_IN_DAY,
)
from glycoview.core.basal import (
    basal_end,
    get_basal_group_durations_from_endpoints,
    get_total_basal_from_endpoints,
    overlap_duration,
)
from glycoview.core.bloodglucose import (
    cgm_sample_interval,
    classify_bg_value,
    convert_to_mgdl,
    to_display,
)
from glycoview.core.bolus import get_total_bolus
from glycoview.core.datetime_utils import local_date_key
from glycoview.core.exceptions import UnknownStatError
from glycoview.core.indexed_view import IndexedView
from glycoview.core.normalizer import Normalizer
from glycoview.enums import BgRange, BgSource, BgUnits, RecordType, StatType
from glycoview.logging_config import get_logger

logger = get_logger(__name__)

Record = dict[str, Any]

SETTINGS_OVERRIDE_SUBTYPE: Final[str] = "pumpSettingsOverride"


@dataclass(frozen=True)
class WindowContext:
    """Everything a statistic needs to know about the window it runs in."""

    start: int
    end: int
    days: float
    active_days: float
    bg_units: BgUnits
    bg_bounds: dict[str, float | None]
    bg_source: BgSource
    timezone_name: str | None = None


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else math.nan


def _date_key(datum: Record) -> str:
    return local_date_key(datum["normalTime"], datum.get("displayOffset", 0))


def resolve_stats(names: list[str]) -> list[StatType]:
    """Map requested statistic names to registered statistics.

    Raises:
        UnknownStatError: If any name is not a registered statistic
    """
    resolved = []
    for name in names:
        try:
            resolved.append(StatType(name))
        except ValueError:
            raise UnknownStatError(name) from None
    return resolved


class StatEngine:
    """Computes statistics for one window of an engine's indexed view."""

    def __init__(
        self,
        view: IndexedView,
        normalizer: Normalizer,
        settings: Settings,
        context: WindowContext,
    ):
        self.view = view
        self.normalizer = normalizer
        self.settings = settings
        self.ctx = context

    def get_stats(self, names: list[str]) -> dict[str, dict[str, Any]]:
        """Run each requested statistic against the current window."""
        results = {}
        for stat in resolve_stats(names):
            started = time.perf_counter()
            results[stat.value] = STAT_REGISTRY[stat](self)
            logger.debug(
                "Statistic computed",
                stat=stat.value,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        return results

    def _filtered(self, record_type: str, sample_interval: bool = False) -> list[Record]:
        with self.view.preserve_filters():
            self.view.filter_exact("type", record_type)
            if sample_interval:
                self.view.filter_range(
                    "sampleInterval", self.settings.cgm_sample_interval_minimum_ms, None
                )
            return IndexedView.sort_by_time(self.view.top_all())

    def _bg_data(self) -> list[Record]:
        source = self.ctx.bg_source
        return self._filtered(source, sample_interval=source == BgSource.cbg)

    def _cbg_data(self) -> list[Record]:
        return self._filtered(RecordType.cbg, sample_interval=True)

    def _display(self, datum: Record) -> float:
        return to_display(datum["value"], self.ctx.bg_units)

    def overlapping_start(
        self, record_type: str, sub_type: str | None = None
    ) -> Record | None:
        """Latest record that began before the window and runs into it.

        Looks back one day before the window start, ignoring the
        day-of-week filter.
        """
        start = self.ctx.start
        with self.view.preserve_filters():
            self.view.filter_all("dayOfWeek")
            self.view.filter_range("time", start - BASAL_OVERLAP_LOOKBACK_MS, start)
            self.view.filter_exact("type", record_type)
            if sub_type is not None:
                self.view.filter_exact("subType", sub_type)
            candidates = IndexedView.sort_by_time(self.view.top_all(), reverse=True)
        for datum in candidates:
            if basal_end(datum) > start:
                return datum
        return None

    def _with_start_overlap(self, record_type: str, sub_type: str | None = None) -> list[Record]:
        data = self._filtered(record_type)
        if sub_type is not None:
            data = [d for d in data if d.get("subType") == sub_type]
        previous = self.overlapping_start(record_type, sub_type)
        if previous is not None:
            data.insert(0, previous)
        return data

    def _daily_average_durations(self, durations: dict[str, float]) -> dict[str, float]:
        """Rescale durations to the share of one full day they represent."""
        total = durations.get("total") or sum(v for k, v in durations.items() if k != "total")
        if not total:
            return durations
        return {
            k: v if k == "total" else v / total * MS_IN_DAY for k, v in durations.items()
        }

    def get_average_glucose_data(self) -> dict[str, Any]:
        values = [self._display(d) for d in self._bg_data()]
        return {"averageGlucose": _mean(values), "total": len(values)}

    def get_standard_dev_data(self) -> dict[str, Any]:
        """Sample standard deviation (n - 1) of glucose values."""
        values = [self._display(d) for d in self._bg_data()]
        average = _mean(values)
        if len(values) < MIN_READINGS_FOR_STANDARD_DEVIATION:
            return {
                "averageGlucose": average,
                "insufficientData": True,
                "standardDeviation": math.nan,
                "total": len(values),
            }
        squared_diffs = sum((v - average) ** 2 for v in values)
        return {
            "averageGlucose": average,
            "standardDeviation": math.sqrt(squared_diffs / (len(values) - 1)),
            "total": len(values),
        }

    def get_coefficient_of_variation_data(self) -> dict[str, Any]:
        sd = self.get_standard_dev_data()
        result = {
            "coefficientOfVariation": sd["standardDeviation"] / sd["averageGlucose"] * 100
            if sd["averageGlucose"]
            else math.nan,
            "total": sd["total"],
        }
        if sd.get("insufficientData"):
            result["insufficientData"] = True
        return result

    def get_glucose_management_indicator_data(self) -> dict[str, Any]:
        """GMI from mean glucose.

        The display value needs CGM data covering at least 70% of 14
        active days. The AGP value is always computed because the AGP
        report applies its own sufficiency rule.
        """
        bg_data = self._bg_data()
        average = _mean([self._display(d) for d in bg_data])
        mean_mgdl = average if self.ctx.bg_units == BgUnits.mgdl else convert_to_mgdl(average)
        gmi = GMI_INTERCEPT + GMI_SLOPE * mean_mgdl

        cbg_duration = (
            sum(cgm_sample_interval(d) for d in bg_data)
            if self.ctx.bg_source == BgSource.cbg
            else 0
        )
        insufficient = (
            self.ctx.bg_source == BgSource.smbg
            or self.ctx.active_days < GMI_MIN_DAYS
            or cbg_duration < GMI_MIN_DAYS * MS_IN_DAY * GMI_MIN_CGM_COVERAGE
        )

        result = {
            "glucoseManagementIndicator": math.nan if insufficient else gmi,
            "glucoseManagementIndicatorAGP": gmi,
            "total": len(bg_data),
        }
        if insufficient:
            result["insufficientData"] = True
        return result

    def _empty_bands(self) -> dict[str, float]:
        bands = {band.value: 0 for band in BgRange}
        if self.ctx.bg_bounds.get("veryLowThreshold") is None:
            del bands[BgRange.very_low]
        if self.ctx.bg_bounds.get("veryHighThreshold") is None:
            del bands[BgRange.very_high]
        return bands

    def get_readings_in_range_data(self) -> dict[str, Any]:
        """Fingerstick counts per glucose band, per day when over a day."""
        counts = self._empty_bands()
        counts["total"] = 0
        for datum in self._filtered(RecordType.smbg):
            band = classify_bg_value(self.ctx.bg_bounds, self.ctx.bg_units, self._display(datum))
            counts[band] += 1
            counts["total"] += 1

        if self.ctx.active_days > 1:
            counts = {
                k: v if k == "total" else v / self.ctx.active_days for k, v in counts.items()
            }
        return counts

    def get_time_in_range_data(self) -> dict[str, Any]:
        """CGM time per glucose band, in ms.

        Over more than one day each band is rescaled to its share of a
        24 hour day. Raw reading counts per band are kept in ``counts``.
        """
        durations = self._empty_bands()
        durations["total"] = 0
        counts = dict(durations)
        for datum in self._cbg_data():
            band = classify_bg_value(self.ctx.bg_bounds, self.ctx.bg_units, self._display(datum))
            interval = cgm_sample_interval(datum)
            durations[band] += interval
            durations["total"] += interval
            counts[band] += 1
            counts["total"] += 1

        if self.ctx.active_days > 1:
            durations = self._daily_average_durations(durations)
        durations["counts"] = counts
        return durations

    def get_sensor_usage(self) -> dict[str, Any]:
        """CGM wear time and coverage.

        ``sensorUsagePercent`` is covered time over the active window.
        ``sensorUsageAGP`` follows the AGP report convention: readings
        over the readings expected between the first and last one,
        inclusive of both.
        """
        cbg_data = self._cbg_data()
        duration = sum(cgm_sample_interval(d) for d in cbg_data)
        total = self.ctx.active_days * MS_IN_DAY
        count = len(cbg_data)
        sample_interval = min(
            (cgm_sample_interval(d) for d in cbg_data),
            default=self.settings.cgm_sample_interval_minimum_ms,
        )

        sensor_usage_agp = 0.0
        if count:
            span = cbg_data[-1]["normalTime"] - cbg_data[0]["normalTime"]
            sensor_usage_agp = count / (span / sample_interval + 1) * 100

        return {
            "sensorUsage": duration,
            "sensorUsagePercent": duration / total * 100 if total else math.nan,
            "sensorUsageAGP": sensor_usage_agp,
            "total": total,
            "count": count,
            "sampleInterval": sample_interval,
        }

    def get_bg_extents_data(self) -> dict[str, Any]:
        bg_data = self._bg_data()
        values = [self._display(d) for d in bg_data]
        newest = oldest = None
        if bg_data:
            newest = self.normalizer.normalize_out(bg_data[-1], ["*"], self.ctx.bg_units)
            oldest = self.normalizer.normalize_out(bg_data[0], ["*"], self.ctx.bg_units)
        return {
            "bgMin": min(values, default=math.nan),
            "bgMax": max(values, default=math.nan),
            "bgDaysWorn": len({_date_key(d) for d in bg_data}),
            "newestDatum": newest,
            "oldestDatum": oldest,
        }

    def get_carbs_data(self) -> dict[str, Any]:
        """Carbohydrates from bolus calculator inputs and food logs.

        Exchanges are converted to grams with the configured factor and
        also reported on their own. Over more than one day, values are
        averaged over the days that have carb entries.
        """
        wizard_data = self._filtered(RecordType.wizard)
        food_data = self._filtered(RecordType.food)
        grams = 0.0
        exchanges = 0.0
        carb_days = set()

        for datum in wizard_data:
            carb_input = datum.get("carbInput") or 0
            if datum.get("carbUnits") == "exchanges":
                exchanges += carb_input
                grams += carb_input * self.settings.carb_exchange_grams
            else:
                grams += carb_input
            if carb_input:
                carb_days.add(_date_key(datum))

        for datum in food_data:
            net = (
                ((datum.get("nutrition") or {}).get("carbohydrate") or {}).get("net") or 0
            )
            grams += net
            if net:
                carb_days.add(_date_key(datum))

        if self.ctx.active_days > 1 and carb_days:
            grams /= len(carb_days)
            exchanges /= len(carb_days)

        return {
            "carbs": {"grams": grams, "exchanges": exchanges},
            "total": len(wizard_data) + len(food_data),
        }

    def get_basal_bolus_data(self) -> dict[str, Any]:
        """Basal, bolus and other insulin delivered in the window.

        Basal is integrated over each delivery's overlap with the window,
        including a delivery that began up to a day before it. Over more
        than one day, values are averaged over the days with insulin data.
        """
        start, end = self.ctx.start, self.ctx.end
        basal_data = self._with_start_overlap(RecordType.basal)
        bolus_data = self._filtered(RecordType.bolus)
        insulin_data = self._filtered(RecordType.insulin)

        values = {
            "basal": get_total_basal_from_endpoints(basal_data, start, end)
            if basal_data
            else math.nan,
            "bolus": get_total_bolus(bolus_data) if bolus_data else math.nan,
            "insulin": sum(((d.get("dose") or {}).get("total") or 0) for d in insulin_data)
            if insulin_data
            else math.nan,
        }

        if self.ctx.active_days > 1:
            insulin_days = {
                _date_key(d)
                for d in [*basal_data, *bolus_data, *insulin_data]
                if start <= d["normalTime"] < end
            }
            if insulin_days:
                values = {k: v / len(insulin_days) for k, v in values.items()}

        values["totalInsulin"] = sum(v for v in values.values() if not math.isnan(v))
        return values

    def get_total_insulin_data(self) -> dict[str, Any]:
        return {"totalInsulin": self.get_basal_bolus_data()["totalInsulin"]}

    def get_time_in_auto_data(self) -> dict[str, Any]:
        """Automated versus manual basal delivery time, in ms."""
        basal_data = self._with_start_overlap(RecordType.basal)
        if not basal_data:
            return {"automated": math.nan, "manual": math.nan, "total": math.nan}

        durations: dict[str, float] = dict(
            get_basal_group_durations_from_endpoints(basal_data, self.ctx.start, self.ctx.end)
        )
        durations["total"] = durations["automated"] + durations["manual"]
        if self.ctx.active_days > 1:
            durations = self._daily_average_durations(durations)
        return durations

    def get_time_in_override_data(self) -> dict[str, Any]:
        """Time spent in each settings override type, in ms.

        Over more than one day, each duration is averaged per active day.
        """
        events = self._with_start_overlap(RecordType.device_event, SETTINGS_OVERRIDE_SUBTYPE)
        durations: dict[str, float] = {}
        for event in events:
            override_type = event.get("overrideType") or "unknown"
            durations[override_type] = durations.get(override_type, 0) + overlap_duration(
                event, self.ctx.start, self.ctx.end
            )
        durations["total"] = sum(durations.values())
        if self.ctx.active_days > 1:
            durations = {
                k: v if k == "total" else v / self.ctx.active_days for k, v in durations.items()
            }
        return durations


STAT_REGISTRY: Final[dict[StatType, Callable[[StatEngine], dict[str, Any]]]] = {
    StatType.average_glucose: StatEngine.get_average_glucose_data,
    StatType.average_daily_dose: StatEngine.get_total_insulin_data,
    StatType.bg_extents: StatEngine.get_bg_extents_data,
    StatType.carbs: StatEngine.get_carbs_data,
    StatType.coefficient_of_variation: StatEngine.get_coefficient_of_variation_data,
    StatType.glucose_management_indicator: StatEngine.get_glucose_management_indicator_data,
    StatType.readings_in_range: StatEngine.get_readings_in_range_data,
    StatType.sensor_usage: StatEngine.get_sensor_usage,
    StatType.standard_dev: StatEngine.get_standard_dev_data,
    StatType.time_in_auto: StatEngine.get_time_in_auto_data,
    StatType.time_in_override: StatEngine.get_time_in_override_data,
    StatType.time_in_range: StatEngine.get_time_in_range_data,
    StatType.total_insulin: StatEngine.get_basal_bolus_data,
}
