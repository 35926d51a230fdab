"""Record normalization: validate, time-convert, join and tag.

Ingest hands ownership of each raw mapping to the engine. Records are
normalized in place; read paths go through ``normalize_out`` which
always returns a copy.
"""

import copy
from dataclasses import dataclass, field
from itertools import pairwise
from typing import Any

from glycoview.config import Settings
from glycoview.constants import CANONICAL_BG_UNITS, MS_IN_MIN
from glycoview.core import bolus as bolus_utils
from glycoview.core.bloodglucose import cgm_sample_interval, to_canonical, to_display
from glycoview.core.datetime_utils import (
    local_date_key,
    ms_per_24,
    parse_device_time,
    parse_instant,
    utc_offset_minutes,
)
from glycoview.enums import BgUnits, DeliveryType, RecordType
from glycoview.logging_config import get_logger
from glycoview.schemas.records import validate_record

logger = get_logger(__name__)

GLUCOSE_TYPES = (RecordType.cbg, RecordType.smbg)


@dataclass
class RejectedRecord:
    """A record excluded from the store, with the reasons why."""

    record: Any
    reasons: list[str]


@dataclass
class IngestResult:
    """Outcome of one ingest call."""

    accepted: list[dict[str, Any]] = field(default_factory=list)
    rejected: list[RejectedRecord] = field(default_factory=list)
    duplicates: int = 0


class Normalizer:
    """Validates and normalizes raw device records.

    Keeps the bolus/wizard join maps across ingest calls so a wizard can
    be linked to a bolus that arrived in an earlier batch.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.timezone_name: str | None = None
        self._bolus_by_id: dict[str, dict[str, Any]] = {}
        self._wizard_by_id: dict[str, dict[str, Any]] = {}
        self._wizard_id_by_bolus_id: dict[str, str] = {}

    def ingest(self, raw_records: list[Any], known_ids: set[str] | None = None) -> IngestResult:
        """Validate and normalize a batch of raw records.

        Duplicate ids, within the batch or against ``known_ids``, keep the
        first occurrence; later ones are dropped without being reported
        as rejections.

        Args:
            raw_records: Raw records in upload order
            known_ids: Ids already present in the store

        Returns:
            IngestResult with accepted (normalized) and rejected records
        """
        result = IngestResult()
        seen = set(known_ids or ())

        for raw in raw_records:
            record_id = raw.get("id") if isinstance(raw, dict) else None
            if isinstance(record_id, str) and record_id in seen:
                result.duplicates += 1
                logger.debug("Dropped duplicate record", record_id=record_id)
                continue
            if isinstance(record_id, str):
                seen.add(record_id)

            reasons = self.prepare(raw)
            if reasons:
                result.rejected.append(RejectedRecord(record=raw, reasons=reasons))
                logger.debug(
                    "Rejected record",
                    record_id=record_id,
                    record_type=raw.get("type") if isinstance(raw, dict) else None,
                    reasons=reasons,
                )
                continue

            result.accepted.append(raw)

        self.join(result.accepted)
        for datum in result.accepted:
            self.tag(datum)

        return result

    def prepare(self, raw: Any) -> list[str]:
        """Validate and normalize one record in place, without joining it.

        Returns:
            Reasons the record was rejected; empty on success
        """
        reasons = validate_record(raw)
        if reasons:
            return reasons

        raw["time"] = parse_instant(raw["time"])
        if raw.get("deviceTime") is not None:
            raw["deviceTime"] = parse_device_time(raw["deviceTime"])
        self.normalize_time(raw)

        record_type = raw["type"]
        if record_type in GLUCOSE_TYPES:
            raw["value"] = to_canonical(raw["value"], raw["units"])
            raw["units"] = CANONICAL_BG_UNITS.value
            if record_type == RecordType.cbg:
                raw["sampleInterval"] = cgm_sample_interval(raw)
        elif record_type == RecordType.wizard:
            self._canonicalize_wizard(raw)
        elif record_type == RecordType.basal:
            return self._normalize_suppressed(raw)

        return []

    def _canonicalize_wizard(self, datum: dict[str, Any]) -> None:
        units = datum.get("units")
        if units is None:
            return
        if datum.get("bgInput") is not None:
            datum["bgInput"] = to_canonical(datum["bgInput"], units)
        bg_target = datum.get("bgTarget")
        if isinstance(bg_target, dict):
            datum["bgTarget"] = {
                k: to_canonical(v, units) if isinstance(v, int | float) else v
                for k, v in bg_target.items()
            }
        datum["units"] = CANONICAL_BG_UNITS.value

    def normalize_time(self, datum: dict[str, Any]) -> None:
        """Set ``normalTime`` and ``displayOffset`` for the active time mode.

        Timezone-aware sessions keep absolute time and derive the display
        offset from the zone. Otherwise the device's local wall-clock time
        is used directly and the display offset is zero.
        """
        if self.timezone_name:
            datum["normalTime"] = datum["time"]
            datum["displayOffset"] = utc_offset_minutes(datum["time"], self.timezone_name)
        else:
            timezone_offset = datum.get("timezoneOffset")
            conversion_offset = datum.get("conversionOffset")
            if timezone_offset is not None and conversion_offset is not None:
                datum["normalTime"] = int(
                    datum["time"] + timezone_offset * MS_IN_MIN + conversion_offset
                )
            elif datum.get("deviceTime") is not None:
                datum["normalTime"] = datum["deviceTime"]
            else:
                datum["normalTime"] = datum["time"]
            datum["displayOffset"] = 0

        suppressed = datum.get("suppressed")
        depth = 0
        while isinstance(suppressed, dict) and depth < self.settings.max_suppressed_depth:
            suppressed["normalTime"] = datum["normalTime"]
            suppressed["displayOffset"] = datum["displayOffset"]
            suppressed = suppressed.get("suppressed")
            depth += 1

    def set_timezone(self, timezone_name: str | None) -> bool:
        """Switch the active time mode. Returns True if it changed."""
        if timezone_name == self.timezone_name:
            return False
        self.timezone_name = timezone_name
        return True

    def _normalize_suppressed(self, datum: dict[str, Any]) -> list[str]:
        """Resolve a basal's ``suppressed`` chain and its effective rates.

        Each suppressed level inherits duration and device time from its
        parent. Rates are then filled bottom-up: a suspend without a rate
        delivers nothing, and a percentage temp basal takes its rate from
        the schedule it suppressed.
        """
        max_depth = self.settings.max_suppressed_depth
        chain = [datum]
        seen = {id(datum)}
        suppressed = datum.get("suppressed")
        while suppressed is not None:
            if not isinstance(suppressed, dict):
                return ["suppressed: must be a mapping"]
            if id(suppressed) in seen:
                return ["suppressed: cycle detected"]
            if len(chain) > max_depth:
                return [f"suppressed: nested deeper than {max_depth} levels"]
            seen.add(id(suppressed))
            chain.append(suppressed)
            suppressed = suppressed.get("suppressed")

        for parent, child in pairwise(chain):
            child.setdefault("type", RecordType.basal.value)
            if child.get("duration") is None:
                child["duration"] = parent.get("duration")
            if isinstance(child.get("deviceTime"), str):
                child["deviceTime"] = parse_device_time(child["deviceTime"])
            elif parent.get("deviceTime") is not None:
                child.setdefault("deviceTime", parent["deviceTime"])
            child["normalTime"] = parent["normalTime"]
            child["displayOffset"] = parent["displayOffset"]

        child_rate = None
        for level in reversed(chain):
            rate = level.get("rate")
            if rate is not None and (
                not isinstance(rate, int | float) or isinstance(rate, bool) or rate < 0
            ):
                return ["suppressed.rate: must be a non-negative number"]
            if rate is None:
                delivery_type = level.get("deliveryType")
                percent = level.get("percent")
                if delivery_type == DeliveryType.suspend:
                    level["rate"] = 0
                elif (
                    delivery_type == DeliveryType.temp
                    and isinstance(percent, int | float)
                    and child_rate is not None
                ):
                    level["rate"] = percent * child_rate
            child_rate = level.get("rate")

        if len(chain) > 1 and chain[-1].get("rate") is None:
            return ["suppressed: leaf delivery has no rate"]
        if datum.get("rate") is None:
            return ["rate: could not be resolved"]
        return []

    def join(self, records: list[dict[str, Any]]) -> None:
        """Link bolus and wizard records to each other.

        The first pass indexes boluses by id and wizards by the bolus id
        they reference; the second pass attaches each side to the other.
        A wizard holds the full bolus record; a bolus holds a shallow
        copy of the wizard without its ``bolus`` field.
        """
        for datum in records:
            if datum["type"] == RecordType.bolus:
                self._bolus_by_id[datum["id"]] = datum
            elif datum["type"] == RecordType.wizard:
                self._wizard_by_id[datum["id"]] = datum
                bolus_id = _bolus_ref(datum)
                if bolus_id is not None:
                    self._wizard_id_by_bolus_id[bolus_id] = datum["id"]

        for datum in records:
            if datum["type"] == RecordType.bolus:
                wizard_id = self._wizard_id_by_bolus_id.get(datum["id"])
                wizard = self._wizard_by_id.get(wizard_id) if wizard_id else None
                if wizard is not None:
                    self._link(wizard, datum)
            elif datum["type"] == RecordType.wizard:
                bolus = self._bolus_by_id.get(_bolus_ref(datum) or "")
                if bolus is not None:
                    self._link(datum, bolus)

    def _link(self, wizard: dict[str, Any], bolus: dict[str, Any]) -> None:
        wizard["bolus"] = bolus
        bolus["wizard"] = {k: v for k, v in wizard.items() if k != "bolus"}
        self.tag(bolus)

    def unlink(self, datum: dict[str, Any]) -> None:
        """Drop a record from the join maps and detach its counterpart."""
        if datum["type"] == RecordType.bolus:
            if self._bolus_by_id.get(datum["id"]) is datum:
                del self._bolus_by_id[datum["id"]]
            wizard = self._wizard_by_id.get(self._wizard_id_by_bolus_id.get(datum["id"], ""))
            if wizard is not None and wizard.get("bolus") is datum:
                wizard["bolus"] = datum["id"]
        elif datum["type"] == RecordType.wizard:
            if self._wizard_by_id.get(datum["id"]) is datum:
                del self._wizard_by_id[datum["id"]]
            bolus_id = _bolus_ref(datum)
            if bolus_id is not None and self._wizard_id_by_bolus_id.get(bolus_id) == datum["id"]:
                del self._wizard_id_by_bolus_id[bolus_id]
                bolus = self._bolus_by_id.get(bolus_id)
                if bolus is not None:
                    bolus.pop("wizard", None)
                    self.tag(bolus)

    def tag(self, datum: dict[str, Any]) -> None:
        """Derive the boolean classification tags for a record."""
        record_type = datum["type"]
        if record_type == RecordType.basal:
            datum["tags"] = {
                "suspend": datum.get("deliveryType") == DeliveryType.suspend,
                "temp": datum.get("deliveryType") == DeliveryType.temp,
            }
        elif record_type == RecordType.bolus:
            has_wizard = isinstance(datum.get("wizard"), dict)
            datum["tags"] = {
                "correction": bolus_utils.is_correction(datum),
                "extended": bolus_utils.has_extended(datum),
                "interrupted": bolus_utils.is_interrupted(datum),
                "manual": not has_wizard and not bolus_utils.is_automated(datum),
                "override": bolus_utils.is_override(datum),
                "underride": bolus_utils.is_underride(datum),
                "wizard": has_wizard,
            }
        elif record_type == RecordType.smbg:
            manual = datum.get("subType") == "manual"
            datum["tags"] = {"manual": manual, "meter": not manual}
        elif record_type == RecordType.device_event:
            sub_type = datum.get("subType")
            prime_target = datum.get("primeTarget")
            datum["tags"] = {
                "calibration": sub_type == "calibration",
                "reservoirChange": sub_type == "reservoirChange",
                "cannulaPrime": sub_type == "prime" and prime_target == "cannula",
                "tubingPrime": sub_type == "prime" and prime_target == "tubing",
            }

    def normalize_out(
        self,
        datum: dict[str, Any],
        fields: list[str] | None = None,
        bg_units: BgUnits | str = BgUnits.mgdl,
    ) -> dict[str, Any]:
        """Return a display copy of a stored record.

        Adds ``normalEnd`` for records with a duration and converts
        glucose values to ``bg_units``. Local ``msPer24`` and
        ``localDate`` are only computed when ``fields`` asks for them.
        The stored record is never modified.

        Args:
            datum: Stored record
            fields: Fields the caller will select, or ['*'] for all
            bg_units: Display units for glucose values
        """
        fields = fields or ["*"]
        select_all = "*" in fields
        out = copy.deepcopy(datum)

        if out.get("duration") is not None:
            out["normalEnd"] = out["normalTime"] + out["duration"]

        if out["type"] in GLUCOSE_TYPES:
            out["value"] = to_display(out["value"], bg_units)
            out["units"] = BgUnits(bg_units).value
        elif out["type"] == RecordType.wizard and out.get("units"):
            if out.get("bgInput") is not None:
                out["bgInput"] = to_display(out["bgInput"], bg_units)
            if isinstance(out.get("bgTarget"), dict):
                out["bgTarget"] = {
                    k: to_display(v, bg_units) if isinstance(v, int | float) else v
                    for k, v in out["bgTarget"].items()
                }
            out["units"] = BgUnits(bg_units).value

        if select_all or "msPer24" in fields:
            out["msPer24"] = ms_per_24(out["normalTime"], out.get("displayOffset", 0))
        if select_all or "localDate" in fields:
            out["localDate"] = local_date_key(out["normalTime"], out.get("displayOffset", 0))

        return out


def _bolus_ref(wizard: dict[str, Any]) -> str | None:
    ref = wizard.get("bolus")
    if isinstance(ref, dict):
        ref = ref.get("id")
    return ref if isinstance(ref, str) else None
