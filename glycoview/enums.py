"""Enumerations shared across the engine."""

from enum import StrEnum


class BgUnits(StrEnum):
    """Blood glucose unit systems."""

    mgdl = "mg/dL"
    mmoll = "mmol/L"


class RecordType(StrEnum):
    """Device record variants understood by the engine.

    Records of any other type are still validated against the common
    rules and stored, but carry no variant-specific normalization.
    """

    basal = "basal"
    bolus = "bolus"
    wizard = "wizard"
    cbg = "cbg"
    smbg = "smbg"
    device_event = "deviceEvent"
    food = "food"
    upload = "upload"
    pump_settings = "pumpSettings"
    insulin = "insulin"
    fill = "fill"


class BgSource(StrEnum):
    """Blood glucose data sources a query can select."""

    cbg = "cbg"
    smbg = "smbg"


class DeliveryType(StrEnum):
    """Basal delivery types."""

    scheduled = "scheduled"
    temp = "temp"
    suspend = "suspend"
    automated = "automated"


class BgRange(StrEnum):
    """Five-way glucose classification bands."""

    very_low = "veryLow"
    low = "low"
    target = "target"
    high = "high"
    very_high = "veryHigh"


class StatType(StrEnum):
    """Statistics a query can request by name."""

    average_glucose = "averageGlucose"
    average_daily_dose = "averageDailyDose"
    bg_extents = "bgExtents"
    carbs = "carbs"
    coefficient_of_variation = "coefficientOfVariation"
    glucose_management_indicator = "glucoseManagementIndicator"
    readings_in_range = "readingsInRange"
    sensor_usage = "sensorUsage"
    standard_dev = "standardDev"
    time_in_auto = "timeInAuto"
    time_in_override = "timeInOverride"
    time_in_range = "timeInRange"
    total_insulin = "totalInsulin"


class AggregationType(StrEnum):
    """Per-day aggregations a query can request by name."""

    basals = "basals"
    boluses = "boluses"
    fingersticks = "fingersticks"
    site_changes = "siteChanges"
    data_by_date = "dataByDate"
    stats_by_date = "statsByDate"
