"""Tests for window statistics."""

import logging
import math

import pytest

from glycoview.constants import MS_IN_DAY, MS_IN_HOUR, MS_IN_MIN
from glycoview.core.exceptions import QueryError, UnknownStatError
from glycoview.services.stats import resolve_stats

from conftest import START, at, make_basal, make_cbg, make_smbg

FIVE_MINUTES = 5 * MS_IN_MIN


def cgm_day(day: int, value: float) -> list[dict]:
    """A full day of 5-minute CGM readings at a constant value."""
    return [
        make_cbg(f"cbg-{day}-{i}", day * 24 + i * 5 / 60, value) for i in range(288)
    ]


def stats_for(engine, stats: list[str], days: int = 1, **query) -> dict:
    """Run ``stats`` over ``days`` days from START."""
    result = engine.query(
        {"endpoints": [START, START + days * MS_IN_DAY], "stats": stats, **query}
    )
    return result["data"]["current"]["stats"]


class TestResolveStats:
    """Tests for statistic name lookup."""

    def test_known_names(self):
        assert [s.value for s in resolve_stats(["averageGlucose", "timeInRange"])] == [
            "averageGlucose",
            "timeInRange",
        ]

    def test_unknown_name(self):
        with pytest.raises(UnknownStatError, match="Unknown statistic: bogus") as exc_info:
            resolve_stats(["averageGlucose", "bogus"])
        assert exc_info.value.name == "bogus"

    def test_unknown_stat_is_query_error(self, engine):
        with pytest.raises(QueryError):
            engine.query({"endpoints": [START, START + MS_IN_DAY], "stats": ["bogus"]})


class TestGlucoseStats:
    """Tests for glucose averages and variability."""

    def test_average_glucose(self, engine):
        engine.add_data([make_cbg("c1", 1, 100), make_cbg("c2", 2, 200)])
        stats = stats_for(engine, ["averageGlucose"])
        assert stats["averageGlucose"]["averageGlucose"] == pytest.approx(150)
        assert stats["averageGlucose"]["total"] == 2

    def test_average_glucose_in_mmoll(self, engine):
        engine.add_data([make_cbg("c1", 1, 5.5, units="mmol/L")])
        stats = stats_for(engine, ["averageGlucose"], bgPrefs={"bgUnits": "mmol/L"})
        assert stats["averageGlucose"]["averageGlucose"] == pytest.approx(5.5)

    def test_readings_outside_window_ignored(self, engine):
        engine.add_data([make_cbg("c1", 1, 100), make_cbg("c2", 25, 300)])
        stats = stats_for(engine, ["averageGlucose"])
        assert stats["averageGlucose"]["total"] == 1

    def test_no_data_is_nan(self, engine):
        stats = stats_for(engine, ["averageGlucose"])
        assert math.isnan(stats["averageGlucose"]["averageGlucose"])
        assert stats["averageGlucose"]["total"] == 0

    def test_standard_deviation_needs_enough_readings(self, engine):
        engine.add_data([make_cbg(f"c{i}", i / 12, 100 + i) for i in range(10)])
        sd = stats_for(engine, ["standardDev"])["standardDev"]
        assert sd["insufficientData"]
        assert math.isnan(sd["standardDeviation"])

    def test_standard_deviation(self, engine):
        """Alternating 100 and 200 mg/dL gives a sample SD just over 50."""
        engine.add_data(
            [make_cbg(f"c{i}", i / 12, 100 if i % 2 else 200) for i in range(40)]
        )
        sd = stats_for(engine, ["standardDev", "coefficientOfVariation"])
        assert sd["standardDev"]["standardDeviation"] == pytest.approx(50.64, abs=0.01)
        assert sd["coefficientOfVariation"]["coefficientOfVariation"] == pytest.approx(
            33.76, abs=0.01
        )

    def test_fast_sampled_cgm_excluded(self, engine):
        """Readings sampled more often than every 5 minutes are left out."""
        engine.add_data(
            [
                make_cbg("c1", 1, 100),
                make_cbg("c2", 2, 300, sampleInterval=60_000),
            ]
        )
        stats = stats_for(engine, ["averageGlucose"])
        assert stats["averageGlucose"]["averageGlucose"] == pytest.approx(100)

    def test_bg_extents(self, engine):
        engine.add_data([make_cbg("c1", 1, 80), make_cbg("c2", 2, 240)])
        extents = stats_for(engine, ["bgExtents"])["bgExtents"]
        assert extents["bgMin"] == pytest.approx(80)
        assert extents["bgMax"] == pytest.approx(240)
        assert extents["bgDaysWorn"] == 1
        assert extents["newestDatum"]["id"] == "c2"
        assert extents["oldestDatum"]["id"] == "c1"


class TestRangeStats:
    """Tests for readings and time in range."""

    def test_readings_in_range(self, engine):
        """Five fingersticks spread across every band."""
        engine.add_data(
            [make_smbg(f"s{i}", i, value) for i, value in enumerate([50, 70, 90, 150, 300])]
        )
        counts = stats_for(engine, ["readingsInRange"])["readingsInRange"]
        assert counts == {
            "veryLow": 1,
            "low": 1,
            "target": 2,
            "high": 0,
            "veryHigh": 1,
            "total": 5,
        }

    def test_readings_in_range_averaged_per_day(self, engine):
        engine.add_data([make_smbg("s1", 1, 100), make_smbg("s2", 30, 100)])
        counts = stats_for(engine, ["readingsInRange"], days=2)["readingsInRange"]
        assert counts["target"] == pytest.approx(1)
        assert counts["total"] == 2

    def test_bands_follow_custom_bounds(self, engine):
        """Without extreme thresholds only three bands are reported."""
        engine.add_data([make_smbg("s1", 1, 40), make_smbg("s2", 2, 400)])
        counts = stats_for(
            engine,
            ["readingsInRange"],
            bgPrefs={
                "bgUnits": "mg/dL",
                "bgBounds": {"targetLowerBound": 70, "targetUpperBound": 180},
            },
        )["readingsInRange"]
        assert counts == {"low": 1, "target": 0, "high": 1, "total": 2}

    def test_time_in_range(self, engine):
        engine.add_data(
            [make_cbg("c1", 1, 50), make_cbg("c2", 2, 100), make_cbg("c3", 3, 100)]
        )
        tir = stats_for(engine, ["timeInRange"])["timeInRange"]
        assert tir["veryLow"] == FIVE_MINUTES
        assert tir["target"] == 2 * FIVE_MINUTES
        assert tir["total"] == 3 * FIVE_MINUTES
        assert tir["counts"]["target"] == 2

    def test_time_in_range_rescaled_over_days(self, engine):
        """Over several days each band is its share of a 24 hour day."""
        engine.add_data(cgm_day(0, 100) + cgm_day(1, 200))
        tir = stats_for(engine, ["timeInRange"], days=2)["timeInRange"]
        assert tir["target"] == pytest.approx(MS_IN_DAY / 2)
        assert tir["high"] == pytest.approx(MS_IN_DAY / 2)
        assert tir["total"] == 2 * 288 * FIVE_MINUTES


class TestSensorStats:
    """Tests for GMI and sensor usage."""

    def test_gmi_from_two_weeks_of_cgm(self, engine):
        """Mean glucose of 154 mg/dL gives a GMI of 6.99%."""
        engine.add_data([r for day in range(14) for r in cgm_day(day, 154)])
        gmi = stats_for(engine, ["glucoseManagementIndicator"], days=14)[
            "glucoseManagementIndicator"
        ]
        assert gmi["glucoseManagementIndicator"] == pytest.approx(6.99, abs=0.01)
        assert "insufficientData" not in gmi

    def test_gmi_insufficient_days(self, engine):
        engine.add_data(cgm_day(0, 154))
        gmi = stats_for(engine, ["glucoseManagementIndicator"])["glucoseManagementIndicator"]
        assert gmi["insufficientData"]
        assert math.isnan(gmi["glucoseManagementIndicator"])
        assert gmi["glucoseManagementIndicatorAGP"] == pytest.approx(6.99, abs=0.01)

    def test_gmi_insufficient_coverage(self, engine):
        """Fourteen days at a third of full sensor coverage is not enough."""
        engine.add_data([r for day in range(14) for r in cgm_day(day, 154)[::3]])
        gmi = stats_for(engine, ["glucoseManagementIndicator"], days=14)[
            "glucoseManagementIndicator"
        ]
        assert gmi["insufficientData"]
        assert math.isnan(gmi["glucoseManagementIndicator"])
        assert gmi["glucoseManagementIndicatorAGP"] == pytest.approx(6.99, abs=0.01)

    def test_full_sensor_usage(self, engine):
        engine.add_data(cgm_day(0, 120))
        usage = stats_for(engine, ["sensorUsage"])["sensorUsage"]
        assert usage["sensorUsage"] == MS_IN_DAY
        assert usage["sensorUsagePercent"] == pytest.approx(100)
        assert usage["sensorUsageAGP"] == pytest.approx(100)
        assert usage["count"] == 288

    def test_partial_sensor_usage(self, engine):
        engine.add_data(cgm_day(0, 120)[:144])
        usage = stats_for(engine, ["sensorUsage"])["sensorUsage"]
        assert usage["sensorUsagePercent"] == pytest.approx(50)
        assert usage["sensorUsageAGP"] == pytest.approx(100)


class TestInsulinStats:
    """Tests for insulin and carbohydrate totals."""

    def test_basal_carried_in_from_previous_day(self, engine):
        """A basal from 23:00 the day before contributes its last hour."""
        engine.add_data([make_basal("b1", -1, 2, 1.0)])
        totals = stats_for(engine, ["totalInsulin"])["totalInsulin"]
        assert totals["basal"] == pytest.approx(1.0)

    def test_basal_overlapping_one_hour_window(self, engine):
        """An automated basal from an hour before counts only inside the window."""
        engine.add_data([make_basal("b1", -1, 2, 1.0, deliveryType="automated")])
        result = engine.query(
            {"endpoints": [START, START + MS_IN_HOUR], "stats": ["totalInsulin", "timeInAuto"]}
        )
        stats = result["data"]["current"]["stats"]

        assert stats["totalInsulin"]["basal"] == pytest.approx(1.0)
        assert stats["totalInsulin"]["totalInsulin"] == pytest.approx(1.0)
        assert stats["timeInAuto"]["automated"] == MS_IN_HOUR
        assert stats["timeInAuto"]["manual"] == 0
        assert stats["timeInAuto"]["total"] == MS_IN_HOUR

    def test_basal_and_bolus(self, engine):
        engine.add_data(
            [
                make_basal("b1", 0, 24, 0.5),
                {"id": "bo1", "type": "bolus", "time": at(8), "normal": 4.0},
                {"id": "in1", "type": "insulin", "time": at(12), "dose": {"total": 1.5}},
            ]
        )
        totals = stats_for(engine, ["totalInsulin", "averageDailyDose"])
        assert totals["totalInsulin"]["basal"] == pytest.approx(12.0)
        assert totals["totalInsulin"]["bolus"] == pytest.approx(4.0)
        assert totals["totalInsulin"]["insulin"] == pytest.approx(1.5)
        assert totals["totalInsulin"]["totalInsulin"] == pytest.approx(17.5)
        assert totals["averageDailyDose"]["totalInsulin"] == pytest.approx(17.5)

    def test_missing_insulin_sources_are_nan(self, engine):
        engine.add_data([{"id": "bo1", "type": "bolus", "time": at(8), "normal": 4.0}])
        totals = stats_for(engine, ["totalInsulin"])["totalInsulin"]
        assert math.isnan(totals["basal"])
        assert totals["totalInsulin"] == pytest.approx(4.0)

    def test_insulin_averaged_over_days_with_data(self, engine):
        """Two boluses on one day of a three-day window average over one day."""
        engine.add_data(
            [
                {"id": "bo1", "type": "bolus", "time": at(8), "normal": 4.0},
                {"id": "bo2", "type": "bolus", "time": at(12), "normal": 2.0},
            ]
        )
        totals = stats_for(engine, ["totalInsulin"], days=3)["totalInsulin"]
        assert totals["bolus"] == pytest.approx(6.0)

    def test_carbs(self, engine):
        engine.add_data(
            [
                {"id": "w1", "type": "wizard", "time": at(8), "carbInput": 30},
                {
                    "id": "w2",
                    "type": "wizard",
                    "time": at(12),
                    "carbInput": 2,
                    "carbUnits": "exchanges",
                },
                {
                    "id": "f1",
                    "type": "food",
                    "time": at(15),
                    "nutrition": {"carbohydrate": {"net": 20}},
                },
            ]
        )
        carbs = stats_for(engine, ["carbs"])["carbs"]
        assert carbs["carbs"] == {"grams": pytest.approx(80), "exchanges": pytest.approx(2)}
        assert carbs["total"] == 3


class TestDeliveryModeStats:
    """Tests for time in automated delivery and in overrides."""

    def test_time_in_auto(self, engine):
        engine.add_data(
            [
                make_basal("b1", 0, 18, 1.0, deliveryType="automated"),
                make_basal("b2", 18, 6, 1.0),
            ]
        )
        auto = stats_for(engine, ["timeInAuto"])["timeInAuto"]
        assert auto["automated"] == 18 * MS_IN_HOUR
        assert auto["manual"] == 6 * MS_IN_HOUR
        assert auto["total"] == MS_IN_DAY

    def test_time_in_auto_without_basals(self, engine):
        auto = stats_for(engine, ["timeInAuto"])["timeInAuto"]
        assert math.isnan(auto["automated"])

    def test_time_in_override(self, engine):
        engine.add_data(
            [
                {
                    "id": "o1",
                    "type": "deviceEvent",
                    "subType": "pumpSettingsOverride",
                    "overrideType": "sleep",
                    "time": at(-2),
                    "duration": 4 * MS_IN_HOUR,
                },
                {
                    "id": "o2",
                    "type": "deviceEvent",
                    "subType": "pumpSettingsOverride",
                    "overrideType": "physicalActivity",
                    "time": at(17),
                    "duration": MS_IN_HOUR,
                },
            ]
        )
        override = stats_for(engine, ["timeInOverride"])["timeInOverride"]
        assert override["sleep"] == 2 * MS_IN_HOUR
        assert override["physicalActivity"] == MS_IN_HOUR
        assert override["total"] == 3 * MS_IN_HOUR


class TestStatLogging:
    """Tests for per-statistic timing logs."""

    def test_each_statistic_logged_at_debug(self, engine, caplog):
        engine.add_data(cgm_day(0, 120))
        with caplog.at_level(logging.DEBUG, logger="glycoview.services.stats"):
            stats_for(engine, ["averageGlucose", "sensorUsage"])

        logged = [r.extra_fields["stat"] for r in caplog.records if r.msg == "Statistic computed"]
        assert logged == ["averageGlucose", "sensorUsage"]
