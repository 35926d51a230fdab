"""Device record validation schemas.

One model per record type, checked against the raw record before any
normalization runs. Models only validate: the engine keeps working on
the raw mapping, which it owns after ingest. Unknown fields are allowed
since device uploads carry many fields the engine never reads.
"""

import re
from typing import Annotated, Any, Final, Self

from pydantic import (
    AllowInfNan,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from glycoview.core.datetime_utils import parse_device_time, parse_instant
from glycoview.enums import BgUnits, DeliveryType, RecordType

ID_PATTERN: Final = re.compile(r"^[A-Za-z0-9\-_]+$")
ISO_DATE_PATTERN: Final = re.compile(
    r"^\d{4}-[01]\d-[0-3]\dT[0-2]\d:[0-5]\d(:[0-5]\d(\.\d+)?)?([+-][0-2]\d:[0-5]\d|Z)$"
)
DEVICE_TIME_PATTERN: Final = re.compile(r"^\d{4}-[01]\d-[0-3]\dT[0-2]\d:[0-5]\d:[0-5]\d$")

# Strict finite floats: ints pass, numeric strings, booleans, NaN and inf do not
Number = Annotated[StrictFloat, AllowInfNan(False)]


class CommonRecord(BaseModel):
    """Rules every record must satisfy, whatever its type."""

    model_config = ConfigDict(
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: StrictStr
    type: StrictStr
    time: StrictStr | StrictInt
    device_time: StrictStr | StrictInt | None = None
    device_id: StrictStr | None = None
    upload_id: StrictStr | None = None
    timezone_offset: Number | None = None
    conversion_offset: Number | None = None

    @field_validator("id", "upload_id")
    @classmethod
    def check_id(cls, v: str | None) -> str | None:
        if v is not None and not ID_PATTERN.match(v):
            msg = "must contain only letters, digits, '-' and '_'"
            raise ValueError(msg)
        return v

    @field_validator("time")
    @classmethod
    def check_time(cls, v: str | int) -> str | int:
        if not isinstance(v, str):
            return v
        if not ISO_DATE_PATTERN.match(v):
            msg = "must be an ISO 8601 timestamp with a UTC offset"
            raise ValueError(msg)
        # The pattern admits impossible dates such as February 30
        try:
            parse_instant(v)
        except ValueError as e:
            msg = f"is not a valid timestamp ({e})"
            raise ValueError(msg) from e
        return v

    @field_validator("device_time")
    @classmethod
    def check_device_time(cls, v: str | int | None) -> str | int | None:
        if not isinstance(v, str):
            return v
        if not DEVICE_TIME_PATTERN.match(v):
            msg = "must be a local timestamp formatted YYYY-MM-DDTHH:MM:SS"
            raise ValueError(msg)
        try:
            parse_device_time(v)
        except ValueError as e:
            msg = f"is not a valid local timestamp ({e})"
            raise ValueError(msg) from e
        return v


class BasalRecord(CommonRecord):
    """Basal delivery. Rates may be resolved later from ``suppressed``."""

    delivery_type: DeliveryType
    duration: StrictInt = Field(ge=0)
    rate: Number | None = Field(default=None, ge=0)
    percent: Number | None = Field(default=None, ge=0)
    suppressed: dict[str, Any] | None = None


class BolusRecord(CommonRecord):
    """Bolus delivery, possibly linked to a bolus calculator record."""

    sub_type: StrictStr | None = None
    normal: Number | None = Field(default=None, ge=0)
    extended: Number | None = Field(default=None, ge=0)
    expected_normal: Number | None = Field(default=None, ge=0)
    expected_extended: Number | None = Field(default=None, ge=0)
    duration: StrictInt | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_amounts(self) -> Self:
        """Require a delivered amount and a consistent combo bolus."""
        if self.normal is None and self.extended is None:
            msg = "bolus requires a normal or extended amount"
            raise ValueError(msg)
        if (
            self.extended is not None
            and self.expected_extended is None
            and self.normal is not None
            and self.expected_normal is not None
        ):
            msg = "combo bolus cannot have a cancelled normal and an uncancelled extended portion"
            raise ValueError(msg)
        return self


class WizardRecord(CommonRecord):
    """Bolus calculator record."""

    carb_input: Number | None = Field(default=None, ge=0)
    carb_units: str | None = None
    bg_input: Number | None = Field(default=None, ge=0)
    units: BgUnits | None = None
    recommended: dict[str, Any] | None = None
    bolus: StrictStr | dict[str, Any] | None = None

    @field_validator("carb_units")
    @classmethod
    def check_carb_units(cls, v: str | None) -> str | None:
        if v is not None and v not in ("grams", "exchanges"):
            msg = "must be 'grams' or 'exchanges'"
            raise ValueError(msg)
        return v


class GlucoseRecord(CommonRecord):
    """Continuous or fingerstick glucose reading."""

    value: Number = Field(gt=0)
    units: BgUnits
    sample_interval: StrictInt | None = Field(default=None, gt=0)


class DeviceEventRecord(CommonRecord):
    """Site change, calibration, settings override and similar events."""

    sub_type: StrictStr
    duration: StrictInt | None = Field(default=None, ge=0)
    prime_target: StrictStr | None = None
    override_type: StrictStr | None = None


class FoodRecord(CommonRecord):
    nutrition: dict[str, Any] | None = None


class InsulinRecord(CommonRecord):
    dose: dict[str, Any] | None = None

    @field_validator("dose")
    @classmethod
    def check_dose(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        if v is not None:
            total = v.get("total")
            if total is not None and (not isinstance(total, int | float) or total < 0):
                msg = "dose.total must be a non-negative number"
                raise ValueError(msg)
        return v


class UploadRecord(CommonRecord):
    device_tags: list[str] | None = None
    device_model: StrictStr | None = None
    source: StrictStr | None = None


RECORD_SCHEMAS: Final[dict[str, type[CommonRecord]]] = {
    RecordType.basal: BasalRecord,
    RecordType.bolus: BolusRecord,
    RecordType.wizard: WizardRecord,
    RecordType.cbg: GlucoseRecord,
    RecordType.smbg: GlucoseRecord,
    RecordType.device_event: DeviceEventRecord,
    RecordType.food: FoodRecord,
    RecordType.insulin: InsulinRecord,
    RecordType.upload: UploadRecord,
}


def _format_error(error: dict[str, Any]) -> str:
    loc = ".".join(str(part) for part in error["loc"])
    return f"{loc}: {error['msg']}" if loc else error["msg"]


def validate_record(raw: Any) -> list[str]:
    """Validate a raw record against the rules for its type.

    Args:
        raw: Raw record as received from an upload

    Returns:
        Ordered list of reasons the record is invalid; empty when valid
    """
    if not isinstance(raw, dict):
        return ["record must be a mapping"]
    schema = RECORD_SCHEMAS.get(raw.get("type"), CommonRecord)
    try:
        schema.model_validate(raw)
    except ValidationError as e:
        return [_format_error(err) for err in e.errors()]
    return []
