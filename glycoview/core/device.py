"""Device capability helpers for upload and pump settings records."""

import re
from typing import Any

from glycoview.constants import (
    AUTOMATED_BASAL_DEVICE_MODELS,
    INSULIN_PUMP_DEVICE_TAG,
    MANUFACTURER_ALIASES,
)

_DIY_LOOP = re.compile(r"^com\.[a-zA-Z0-9]*\.?loopkit\.Loop")
_TIDEPOOL_LOOP = re.compile(r"^org\.[a-zA-Z0-9]*\.?tidepool\.Loop")
_CONTROL_IQ_PREFIX = "tandemCIQ"


def get_latest_pump_upload(uploads: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Latest upload tagged as coming from an insulin pump.

    Args:
        uploads: Upload records sorted oldest first
    """
    for upload in reversed(uploads):
        if INSULIN_PUMP_DEVICE_TAG in (upload.get("deviceTags") or []):
            return upload
    return None


def get_manufacturer(upload: dict[str, Any] | None) -> str:
    """Normalized lower-case manufacturer name for an upload."""
    if not upload:
        return ""
    source = (upload.get("source") or "").lower()
    if not source:
        manufacturers = upload.get("deviceManufacturers") or []
        source = manufacturers[0].lower() if manufacturers else ""
    return MANUFACTURER_ALIASES.get(source, source)


def _origin_name(datum: dict[str, Any]) -> str:
    return (datum.get("origin") or {}).get("name", "")


def is_diy_loop(datum: dict[str, Any]) -> bool:
    return bool(_DIY_LOOP.match(_origin_name(datum)))


def is_tidepool_loop(datum: dict[str, Any]) -> bool:
    return bool(_TIDEPOOL_LOOP.match(_origin_name(datum)))


def is_loop(datum: dict[str, Any]) -> bool:
    return is_diy_loop(datum) or is_tidepool_loop(datum)


def _is_control_iq(manufacturer: str, pump_settings: dict[str, Any]) -> bool:
    return manufacturer == "tandem" and (pump_settings.get("deviceId") or "").startswith(
        _CONTROL_IQ_PREFIX
    )


def is_automated_basal_device(
    manufacturer: str, pump_settings: dict[str, Any] | None, device_model: str
) -> bool:
    """Whether the pump can deliver automated basal."""
    pump_settings = pump_settings or {}
    return (
        device_model in AUTOMATED_BASAL_DEVICE_MODELS.get(manufacturer, ())
        or _is_control_iq(manufacturer, pump_settings)
        or is_loop(pump_settings)
    )


def is_automated_bolus_device(manufacturer: str, pump_settings: dict[str, Any] | None) -> bool:
    """Whether the pump can deliver automated boluses."""
    pump_settings = pump_settings or {}
    return _is_control_iq(manufacturer, pump_settings) or is_diy_loop(pump_settings)


def is_settings_override_device(
    manufacturer: str, pump_settings: dict[str, Any] | None
) -> bool:
    """Whether the pump supports temporary settings overrides."""
    pump_settings = pump_settings or {}
    return _is_control_iq(manufacturer, pump_settings) or is_diy_loop(pump_settings)
