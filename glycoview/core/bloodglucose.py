"""Blood glucose unit conversion and range classification."""

from typing import Any

from glycoview.constants import (
    BG_DISPLAY_PRECISION,
    CANONICAL_BG_UNITS,
    DEFAULT_CGM_SAMPLE_INTERVAL_MS,
    MGDL_PER_MMOLL,
)
from glycoview.enums import BgRange, BgUnits


def convert_to_mmoll(value: float) -> float:
    """Convert a mg/dL value to mmol/L, unrounded."""
    return value / MGDL_PER_MMOLL


def convert_to_mgdl(value: float) -> float:
    """Convert a mmol/L value to mg/dL, unrounded."""
    return value * MGDL_PER_MMOLL


def to_canonical(value: float, units: BgUnits | str | None) -> float:
    """Convert a value reported in ``units`` to the canonical unit."""
    if units is None or BgUnits(units) == CANONICAL_BG_UNITS:
        return value
    return convert_to_mmoll(value)


def to_display(value: float, units: BgUnits | str) -> float:
    """Convert a canonical value to ``units`` for display."""
    if BgUnits(units) == CANONICAL_BG_UNITS:
        return value
    return convert_to_mgdl(value)


def classify_bg_value(
    bg_bounds: dict[str, float | None],
    bg_units: BgUnits | str,
    value: float,
) -> BgRange:
    """Classify a display-unit glucose value into one of five bands.

    The value is first rounded half-to-even to the display precision so
    that unit conversion noise cannot push a boundary reading across a
    band. Very low and very high are strict comparisons against their
    thresholds, and a band is absent when its threshold is unset. Low and
    target are inclusive of their upper bound.

    Args:
        bg_bounds: Threshold mapping in display units
        bg_units: Display units of ``value`` and ``bg_bounds``
        value: Glucose value in display units

    Returns:
        The band the value falls into

    Raises:
        ValueError: If the target bounds are missing
    """
    lower = bg_bounds.get("targetLowerBound")
    upper = bg_bounds.get("targetUpperBound")
    if lower is None or upper is None:
        msg = "bg_bounds requires targetLowerBound and targetUpperBound"
        raise ValueError(msg)

    very_low = bg_bounds.get("veryLowThreshold")
    very_high = bg_bounds.get("veryHighThreshold")

    rounded = round(value, BG_DISPLAY_PRECISION[BgUnits(bg_units)])
    if very_low is not None and rounded < very_low:
        return BgRange.very_low
    if very_high is not None and rounded > very_high:
        return BgRange.very_high
    if rounded <= lower:
        return BgRange.low
    if rounded <= upper:
        return BgRange.target
    return BgRange.high


def cgm_sample_interval(datum: dict[str, Any]) -> int:
    """Sample interval of a CGM reading in ms, defaulting to 5 minutes."""
    return datum.get("sampleInterval") or DEFAULT_CGM_SAMPLE_INTERVAL_MS
