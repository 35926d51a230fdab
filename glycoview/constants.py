"""Clinical and unit constants.

Values here are not user-tunable. Anything a deployment might want to
change lives in glycoview.config instead.
"""

from typing import Final

from glycoview.enums import BgUnits

MS_IN_MIN: Final[int] = 60_000
MS_IN_HOUR: Final[int] = 60 * MS_IN_MIN
MS_IN_DAY: Final[int] = 24 * MS_IN_HOUR

# Conversion factor between mg/dL and mmol/L, derived from the molar
# mass of glucose (180.1559 g/mol).
MGDL_PER_MMOLL: Final[float] = 18.01559

# Glucose values are stored in this unit and converted on read.
CANONICAL_BG_UNITS: Final[BgUnits] = BgUnits.mmoll

# Default target-range bounds per unit. These follow the international
# consensus on CGM time-in-range (Battelino et al., Diabetes Care 2019):
# very low < 54 mg/dL, target 70-180 mg/dL, very high > 250 mg/dL.
DEFAULT_BG_BOUNDS: Final[dict[BgUnits, dict[str, float]]] = {
    BgUnits.mgdl: {
        "veryLowThreshold": 54,
        "targetLowerBound": 70,
        "targetUpperBound": 180,
        "veryHighThreshold": 250,
        "extremeHighThreshold": 350,
        "clampThreshold": 600,
    },
    BgUnits.mmoll: {
        "veryLowThreshold": 3.0,
        "targetLowerBound": 3.9,
        "targetUpperBound": 10.0,
        "veryHighThreshold": 13.9,
        "extremeHighThreshold": 19.4,
        "clampThreshold": 33.3,
    },
}

# Decimal places used when rounding a display value before banding.
BG_DISPLAY_PRECISION: Final[dict[BgUnits, int]] = {
    BgUnits.mgdl: 0,
    BgUnits.mmoll: 1,
}

# Nominal CGM sampling interval when a reading does not declare one.
DEFAULT_CGM_SAMPLE_INTERVAL_MS: Final[int] = 5 * MS_IN_MIN

# Standard deviation is not meaningful on fewer readings than this.
MIN_READINGS_FOR_STANDARD_DEVIATION: Final[int] = 30

# GMI (Bergenstal et al., Diabetes Care 2018): 3.31 + 0.02392 * mean mg/dL.
GMI_INTERCEPT: Final[float] = 3.31
GMI_SLOPE: Final[float] = 0.02392

# GMI is only shown with 14 days of data and at least 70% CGM wear
# across those days.
GMI_MIN_DAYS: Final[int] = 14
GMI_MIN_CGM_COVERAGE: Final[float] = 0.7

# Bolus override/underride detection threshold, in units. Differences
# below this are within pump delivery precision.
BOLUS_OVERRIDE_THRESHOLD: Final[float] = 0.01

# Lookback used to find a basal that started before a window and
# carries into it.
BASAL_OVERLAP_LOOKBACK_MS: Final[int] = MS_IN_DAY

# Medtronic models capable of automated basal delivery.
AUTOMATED_BASAL_DEVICE_MODELS: Final[dict[str, tuple[str, ...]]] = {
    "medtronic": ("1580", "1581", "1582", "1780", "1781", "1782"),
}

# Upload sources that report under a different manufacturer name.
MANUFACTURER_ALIASES: Final[dict[str, str]] = {
    "carelink": "medtronic",
}

INSULIN_PUMP_DEVICE_TAG: Final[str] = "insulin-pump"

# Tags derived per record type during ingest.
RECORD_TAGS: Final[dict[str, tuple[str, ...]]] = {
    "basal": ("suspend", "temp"),
    "bolus": (
        "correction",
        "extended",
        "interrupted",
        "manual",
        "override",
        "underride",
        "wizard",
    ),
    "smbg": ("manual", "meter"),
    "deviceEvent": ("calibration", "reservoirChange", "cannulaPrime", "tubingPrime"),
}
