"""Bolus and bolus-calculator helpers.

These accept either a bolus record or a wizard record. A wizard's
``bolus`` field holds the joined bolus record once ingest has linked
them; a bolus's ``wizard`` field holds the joined wizard.
"""

import math
from typing import Any

from glycoview.constants import BOLUS_OVERRIDE_THRESHOLD
from glycoview.enums import RecordType


def _fix(value: float) -> float:
    return round(value, 3)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value)


def get_bolus_from_insulin_event(event: dict[str, Any]) -> dict[str, Any]:
    """Return the bolus portion of a bolus or wizard record."""
    if event.get("type") == RecordType.wizard:
        bolus = event.get("bolus")
        return bolus if isinstance(bolus, dict) else {}
    return event


def get_wizard_from_insulin_event(event: dict[str, Any]) -> dict[str, Any]:
    """Return the calculator portion of a bolus or wizard record."""
    if event.get("type") == RecordType.bolus:
        wizard = event.get("wizard")
        return wizard if isinstance(wizard, dict) else {}
    return event


def get_programmed(event: dict[str, Any]) -> float:
    """Amount originally programmed for delivery, in units.

    Returns NaN for a wizard with no delivered bolus.

    Raises:
        ValueError: For a combo bolus with a cancelled normal portion
            but an uncancelled extended portion
    """
    bolus = get_bolus_from_insulin_event(event)
    if event.get("type") == RecordType.wizard and not (
        _is_number(bolus.get("normal")) or _is_number(bolus.get("extended"))
    ):
        return math.nan

    normal = bolus.get("normal")
    extended = bolus.get("extended")
    expected_normal = bolus.get("expectedNormal")
    expected_extended = bolus.get("expectedExtended")

    if extended is not None and expected_extended is not None:
        if normal is not None:
            if expected_normal is not None:
                return _fix(expected_normal + expected_extended)
            return _fix(normal + expected_extended)
        return expected_extended
    if extended is not None:
        if normal is not None:
            if expected_normal is not None:
                msg = "combo bolus with a cancelled normal and uncancelled extended portion"
                raise ValueError(msg)
            return _fix(normal + extended)
        return extended
    return expected_normal or normal or 0.0


def get_recommended(event: dict[str, Any]) -> float:
    """Net amount recommended by the bolus calculator, or NaN if none."""
    calc = get_wizard_from_insulin_event(event)
    recommended = calc.get("recommended")
    if not recommended:
        return math.nan
    if recommended.get("net") is not None:
        return recommended["net"]
    return _fix(recommended.get("carb", 0) + recommended.get("correction", 0))


def get_delivered(event: dict[str, Any]) -> float:
    """Amount actually delivered, in units. NaN for a wizard with no bolus."""
    bolus = get_bolus_from_insulin_event(event)
    normal = bolus.get("normal")
    extended = bolus.get("extended")
    if event.get("type") == RecordType.wizard and not (
        _is_number(normal) or _is_number(extended)
    ):
        return math.nan
    if extended is not None:
        if normal is not None:
            return _fix(extended + normal)
        return extended
    return normal or 0.0


def get_total_bolus(events: list[dict[str, Any]]) -> float:
    """Sum of delivered amounts across bolus records."""
    return _fix(sum(get_delivered(e) for e in events))


def has_extended(event: dict[str, Any]) -> bool:
    """Whether the bolus has a non-zero extended portion."""
    bolus = get_bolus_from_insulin_event(event)
    return bool(bolus.get("extended") or bolus.get("expectedExtended"))


def is_interrupted(event: dict[str, Any]) -> bool:
    """Whether delivery was cancelled before the programmed amount."""
    bolus = get_bolus_from_insulin_event(event)
    normal = bolus.get("normal")
    extended = bolus.get("extended")
    expected_normal = bolus.get("expectedNormal")
    expected_extended = bolus.get("expectedExtended")

    cancelled_during_normal = (
        _is_number(normal) and _is_number(expected_normal) and normal < expected_normal
    )
    cancelled_during_extended = (
        _is_number(extended)
        and _is_number(expected_extended)
        and extended < expected_extended
    )

    if _is_number(normal) and normal >= 0:
        if not extended:
            return cancelled_during_normal
        return cancelled_during_normal or cancelled_during_extended
    return cancelled_during_extended


def is_override(event: dict[str, Any]) -> bool:
    """Programmed amount exceeds the recommendation."""
    return (get_programmed(event) - get_recommended(event)) >= BOLUS_OVERRIDE_THRESHOLD


def is_underride(event: dict[str, Any]) -> bool:
    """Programmed amount falls short of the recommendation."""
    return (get_recommended(event) - get_programmed(event)) >= BOLUS_OVERRIDE_THRESHOLD


def is_correction(event: dict[str, Any]) -> bool:
    """Recommendation was purely a correction with no carb component."""
    recommended = get_wizard_from_insulin_event(event).get("recommended")
    if not recommended:
        return False
    return (recommended.get("correction") or 0) > 0 and recommended.get("carb", 0) == 0


def is_automated(event: dict[str, Any]) -> bool:
    """Whether the bolus was issued by an automated delivery system."""
    return get_bolus_from_insulin_event(event).get("subType") == "automated"
