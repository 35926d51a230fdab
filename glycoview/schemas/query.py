"""Query descriptor schema.

Field names follow the camelCase wire format of the surrounding
reporting layer; list-valued options also accept comma-separated
strings.
"""

from typing import Any, Literal, Self
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from glycoview.core.datetime_utils import parse_instant
from glycoview.enums import BgSource, BgUnits

MetaDataKey = Literal["bgSources", "devices", "latestDatumByType", "latestPumpUpload", "size"]

_BG_SOURCE_ALIASES = {"cgm": BgSource.cbg, "bgm": BgSource.smbg}


def _split(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class _QueryModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class BgBounds(_QueryModel):
    """Glucose band thresholds in display units.

    Very-low and very-high thresholds are optional; without them the
    corresponding band is not reported.
    """

    very_low_threshold: float | None = Field(default=None, gt=0)
    target_lower_bound: float = Field(gt=0)
    target_upper_bound: float = Field(gt=0)
    very_high_threshold: float | None = Field(default=None, gt=0)
    extreme_high_threshold: float | None = Field(default=None, gt=0)
    clamp_threshold: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_ordering(self) -> Self:
        """Validate ordering of any provided thresholds."""
        pairs = [
            ("very_low_threshold", "target_lower_bound"),
            ("target_lower_bound", "target_upper_bound"),
            ("target_upper_bound", "very_high_threshold"),
        ]
        for lower_name, upper_name in pairs:
            lower, upper = getattr(self, lower_name), getattr(self, upper_name)
            if lower is not None and upper is not None and lower >= upper:
                msg = f"{to_camel(lower_name)} must be less than {to_camel(upper_name)}"
                raise ValueError(msg)
        return self

    def as_dict(self) -> dict[str, float | None]:
        return self.model_dump(by_alias=True)


class BgPrefs(_QueryModel):
    bg_units: BgUnits | None = None
    bg_bounds: BgBounds | None = None


class TimePrefs(_QueryModel):
    timezone_aware: bool = False
    timezone_name: str | None = None

    @field_validator("timezone_name")
    @classmethod
    def check_timezone(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"unknown timezone: {v}"
            raise ValueError(msg) from e
        return v


class SortSpec(_QueryModel):
    field: str = "normalTime"
    order: Literal["asc", "desc"] = "asc"


class TypeProjection(_QueryModel):
    """One record type to return, with the fields to keep and its order."""

    type: str
    select: list[str] = Field(default_factory=lambda: ["*"])
    sort: SortSpec = Field(default_factory=SortSpec)

    @field_validator("select", mode="before")
    @classmethod
    def split_select(cls, v: Any) -> Any:
        return _split(v)

    @field_validator("sort", mode="before")
    @classmethod
    def parse_sort(cls, v: Any) -> Any:
        if isinstance(v, str):
            parts = _split(v)
            sort: dict[str, str] = {}
            if parts:
                sort["field"] = parts[0]
            if len(parts) > 1:
                sort["order"] = parts[1]
            return sort
        return v


class FillData(_QueryModel):
    """Gap-fill bin generation parameters."""

    duration: float = Field(gt=0, le=24, description="Bin length in hours.")
    adjust_for_dst_changes: bool = False


class QueryDescriptor(_QueryModel):
    """Declarative query against one engine instance."""

    bg_prefs: BgPrefs = Field(default_factory=BgPrefs)
    time_prefs: TimePrefs = Field(default_factory=TimePrefs)
    bg_source: BgSource | None = None
    endpoints: tuple[int, int] | None = None
    active_days: list[int] | None = None
    types: list[TypeProjection] = Field(default_factory=list)
    stats: list[str] = Field(default_factory=list)
    aggregations_by_date: list[str] = Field(default_factory=list)
    fill_data: FillData | None = None
    excluded_devices: list[str] = Field(default_factory=list)
    meta_data: list[MetaDataKey] | None = None

    @field_validator("bg_source", mode="before")
    @classmethod
    def alias_bg_source(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _BG_SOURCE_ALIASES.get(v, v)
        return v

    @field_validator("endpoints", mode="before")
    @classmethod
    def parse_endpoints(cls, v: Any) -> Any:
        if v is None:
            return v
        if not isinstance(v, list | tuple) or len(v) != 2:
            msg = "endpoints must be a [start, end] pair"
            raise ValueError(msg)
        return tuple(parse_instant(e) if isinstance(e, str) else e for e in v)

    @field_validator("endpoints")
    @classmethod
    def check_endpoints(cls, v: tuple[int, int] | None) -> tuple[int, int] | None:
        if v is not None and v[1] <= v[0]:
            msg = "end endpoint must be after start endpoint"
            raise ValueError(msg)
        return v

    @field_validator("active_days")
    @classmethod
    def check_active_days(cls, v: list[int] | None) -> list[int] | None:
        if v is not None and any(day < 0 or day > 6 for day in v):
            msg = "active days must be between 0 (Sunday) and 6 (Saturday)"
            raise ValueError(msg)
        return v

    @field_validator("types", mode="before")
    @classmethod
    def normalize_types(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return [{"type": type_, **(opts or {})} for type_, opts in v.items()]
        return v

    @field_validator("stats", "aggregations_by_date", "excluded_devices", mode="before")
    @classmethod
    def split_names(cls, v: Any) -> Any:
        return _split(v) if v is not None else []

    @field_validator("meta_data", mode="before")
    @classmethod
    def split_meta_data(cls, v: Any) -> Any:
        return _split(v)
