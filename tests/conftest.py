"""Pytest configuration, shared fixtures and record factories.

Factories build raw device records as an upload would deliver them,
placed ``hours`` after START. Test modules import them directly.
"""

import pytest

from glycoview.config import Settings
from glycoview.constants import MS_IN_HOUR
from glycoview.core.datetime_utils import to_iso
from glycoview.services.data_engine import DataEngine

START = 1_704_067_200_000  # 2024-01-01T00:00:00Z, a Monday


def at(hours: float) -> str:
    """ISO timestamp ``hours`` after START."""
    return to_iso(START + round(hours * MS_IN_HOUR))


def make_cbg(record_id: str = "cbg-1", hours: float = 8, value: float = 120, **fields) -> dict:
    """Create a raw CGM reading in mg/dL."""
    return {
        "id": record_id,
        "type": "cbg",
        "time": at(hours),
        "value": value,
        "units": "mg/dL",
        **fields,
    }


def make_smbg(
    record_id: str = "smbg-1", hours: float = 8, value: float = 120, **fields
) -> dict:
    """Create a raw fingerstick reading in mg/dL."""
    return {
        "id": record_id,
        "type": "smbg",
        "time": at(hours),
        "value": value,
        "units": "mg/dL",
        **fields,
    }


def make_basal(
    record_id: str = "basal-1",
    hours: float = 8,
    duration_hours: float = 1,
    rate: float | None = 1.0,
    **fields,
) -> dict:
    """Create a raw scheduled basal."""
    basal = {
        "id": record_id,
        "type": "basal",
        "time": at(hours),
        "deliveryType": "scheduled",
        "duration": int(duration_hours * MS_IN_HOUR),
        "rate": rate,
    }
    basal.update(fields)
    return basal


def make_bolus(
    record_id: str = "bolus-1", hours: float = 8, normal: float = 2.0, **fields
) -> dict:
    return {"id": record_id, "type": "bolus", "time": at(hours), "normal": normal, **fields}


def make_wizard(
    record_id: str = "wizard-1", hours: float = 8, bolus: str = "bolus-1", **fields
) -> dict:
    """Create a bolus calculator record referencing ``bolus`` by id."""
    return {
        "id": record_id,
        "type": "wizard",
        "time": at(hours),
        "bolus": bolus,
        "carbInput": 30,
        "recommended": {"carb": 2.0, "correction": 0, "net": 2.0},
        **fields,
    }


def make_event(record_id: str, hours: float, sub_type: str, **fields) -> dict:
    return {
        "id": record_id,
        "type": "deviceEvent",
        "subType": sub_type,
        "time": at(hours),
        **fields,
    }


def make_normalized_basal(
    offset_hours: float,
    duration_hours: float,
    rate: float = 1.0,
    delivery_type: str = "scheduled",
    **extra,
) -> dict:
    """Create an already normalized basal starting ``offset_hours`` after START."""
    return {
        "type": "basal",
        "deliveryType": delivery_type,
        "normalTime": START + int(offset_hours * MS_IN_HOUR),
        "duration": int(duration_hours * MS_IN_HOUR),
        "rate": rate,
        **extra,
    }


@pytest.fixture
def settings() -> Settings:
    """Engine settings isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def engine(settings) -> DataEngine:
    """An empty engine using the test settings."""
    return DataEngine(settings=settings)
