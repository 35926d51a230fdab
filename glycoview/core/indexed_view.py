"""Indexed view over the normalized record store.

Each dimension projects a record to a key and keeps two indexes: a
sorted (key, slot) list for range filters and a key -> slots hash for
exact and set filters. Setting or clearing a filter only records the
filter; the work happens when ``top_all`` intersects the matching slot
sets of every filtered dimension.
"""

from bisect import bisect_left
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from glycoview.core.exceptions import DimensionError
from glycoview.logging_config import get_logger

logger = get_logger(__name__)

Record = dict[str, Any]
KeyFn = Callable[[Record], Any]


def _sort_key(value: Any) -> tuple[int, str, Any]:
    """Order missing values first, then group by kind so keys always compare."""
    if value is None:
        return (0, "", 0)
    if isinstance(value, bool):
        return (1, "bool", value)
    if isinstance(value, int | float):
        return (1, "number", value)
    if isinstance(value, str):
        return (1, "str", value)
    return (1, type(value).__name__, repr(value))


@dataclass(frozen=True)
class Filter:
    """One dimension's active filter."""

    kind: str  # 'range', 'exact' or 'set'
    lo: Any = None
    hi: Any = None
    value: Any = None
    values: frozenset = frozenset()
    exclude: bool = False


@dataclass(frozen=True)
class DimensionSpec:
    """How to project a record into a dimension.

    Ordered dimensions accept range filters; records whose key is None
    never pass a range filter.
    """

    key: KeyFn
    ordered: bool = False


class Dimension:
    """Indexes for one projection of the record store."""

    def __init__(self, name: str, spec: DimensionSpec):
        self.name = name
        self.spec = spec
        self.filter: Filter | None = None
        self._keys: list[Any] = []
        self._slots: list[int] = []
        self._buckets: dict[Any, list[int]] = {}
        self._size = 0
        self._matches: set[int] | None = None
        self._stale = True

    def build(self, records: list[Record]) -> None:
        buckets: dict[Any, list[int]] = {}
        pairs = []
        for slot, record in enumerate(records):
            key = self.spec.key(record)
            buckets.setdefault(key, []).append(slot)
            if self.spec.ordered and key is not None:
                pairs.append((key, slot))
        pairs.sort()
        self._keys = [key for key, _ in pairs]
        self._slots = [slot for _, slot in pairs]
        self._buckets = buckets
        self._size = len(records)
        self._matches = None
        self._stale = False
        logger.debug("Built dimension index", dimension=self.name, records=self._size)

    def invalidate(self) -> None:
        """Drop the indexes; they are rebuilt when a filter next needs them."""
        self._stale = True
        self._matches = None

    def set_filter(self, filter_: Filter | None) -> None:
        if filter_ is not None and filter_.kind == "range" and not self.spec.ordered:
            msg = f"dimension '{self.name}' does not support range filters"
            raise DimensionError(msg)
        if filter_ != self.filter:
            self.filter = filter_
            self._matches = None

    def matches(self, records: list[Record]) -> set[int] | None:
        """Slots passing this dimension's filter, or None if unfiltered.

        Unfiltered dimensions are never indexed, so key functions only run
        for dimensions a reader actually filters on.
        """
        if self.filter is None:
            return None
        if self._stale:
            self.build(records)
        if self._matches is None:
            self._matches = self._compute_matches(self.filter)
        return self._matches

    def _compute_matches(self, f: Filter) -> set[int]:
        if f.kind == "range":
            lo = 0 if f.lo is None else bisect_left(self._keys, f.lo)
            hi = len(self._keys) if f.hi is None else bisect_left(self._keys, f.hi)
            return set(self._slots[lo:hi])
        if f.kind == "exact":
            return set(self._buckets.get(f.value, ()))
        selected: set[int] = set()
        for value in f.values:
            selected.update(self._buckets.get(value, ()))
        if f.exclude:
            return set(range(self._size)) - selected
        return selected


class IndexedView:
    """Filterable, intersectable projections over a record store.

    The view owns the store. Slots freed by ``remove`` are compacted the
    next time the indexes are rebuilt. Filter state is shared by every
    reader of the instance, so a read sequence that changes filters must
    restore them when it is done (see ``preserve_filters``).
    """

    def __init__(self, dimensions: Mapping[str, DimensionSpec]):
        self._records: list[Record | None] = []
        self._slot_by_id: dict[str, int] = {}
        self._dimensions = {name: Dimension(name, spec) for name, spec in dimensions.items()}
        self._dirty = True

    def __len__(self) -> int:
        return len(self._slot_by_id)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._slot_by_id

    def ids(self) -> set[str]:
        return set(self._slot_by_id)

    def get(self, record_id: str) -> Record | None:
        slot = self._slot_by_id.get(record_id)
        return self._records[slot] if slot is not None else None

    def records(self) -> Iterator[Record]:
        """All stored records, ignoring filters."""
        return (r for r in self._records if r is not None)

    def add(self, records: Iterable[Record]) -> int:
        """Append records to the store. Returns how many were added."""
        added = 0
        for record in records:
            self._slot_by_id[record["id"]] = len(self._records)
            self._records.append(record)
            added += 1
        if added:
            self._dirty = True
        return added

    def remove(self, predicate: Callable[[Record], bool]) -> list[Record]:
        """Remove every stored record matching ``predicate``."""
        removed = []
        for slot, record in enumerate(self._records):
            if record is not None and predicate(record):
                removed.append(record)
                self._records[slot] = None
                del self._slot_by_id[record["id"]]
        if removed:
            self._dirty = True
        return removed

    def replace(self, record: Record) -> Record | None:
        """Replace the stored record sharing ``record``'s id, in its slot."""
        slot = self._slot_by_id.get(record["id"])
        if slot is None:
            return None
        previous = self._records[slot]
        self._records[slot] = record
        self._dirty = True
        return previous

    def rebuild(self) -> None:
        """Mark every dimension for re-projection on its next filtered read.

        Needed whenever a key function's inputs change for records
        already in the store, such as switching the active time field.
        """
        self._dirty = True

    def _ensure_built(self) -> None:
        if not self._dirty:
            return
        if len(self._records) != len(self._slot_by_id):
            self._records = [r for r in self._records if r is not None]
            self._slot_by_id = {r["id"]: slot for slot, r in enumerate(self._records)}
        for dimension in self._dimensions.values():
            dimension.invalidate()
        self._dirty = False
        logger.debug("Invalidated indexed view", records=len(self._records))

    def _dimension(self, name: str) -> Dimension:
        try:
            return self._dimensions[name]
        except KeyError:
            msg = f"unknown dimension '{name}'"
            raise DimensionError(msg) from None

    def filter_range(self, dimension: str, lo: Any = None, hi: Any = None) -> None:
        """Keep records whose key falls in ``[lo, hi)``; None leaves a side open."""
        self._dimension(dimension).set_filter(Filter(kind="range", lo=lo, hi=hi))

    def filter_exact(self, dimension: str, value: Any) -> None:
        """Keep records whose key equals ``value``."""
        self._dimension(dimension).set_filter(Filter(kind="exact", value=value))

    def filter_set(self, dimension: str, values: Iterable[Any], exclude: bool = False) -> None:
        """Keep records whose key is in ``values`` (or not in, with ``exclude``)."""
        self._dimension(dimension).set_filter(
            Filter(kind="set", values=frozenset(values), exclude=exclude)
        )

    def filter_all(self, dimension: str) -> None:
        """Clear one dimension's filter."""
        self._dimension(dimension).set_filter(None)

    def clear_all(self) -> None:
        for dimension in self._dimensions.values():
            dimension.set_filter(None)

    def snapshot(self) -> dict[str, Filter | None]:
        return {name: dim.filter for name, dim in self._dimensions.items()}

    def restore(self, filters: Mapping[str, Filter | None]) -> None:
        for name, filter_ in filters.items():
            self._dimensions[name].set_filter(filter_)

    @contextmanager
    def preserve_filters(self) -> Iterator["IndexedView"]:
        """Restore the current filter state on exit, even on error."""
        filters = self.snapshot()
        try:
            yield self
        finally:
            self.restore(filters)

    def top_all(self) -> list[Record]:
        """Records passing every active filter, in store order."""
        self._ensure_built()
        selections = [
            m
            for m in (dim.matches(self._records) for dim in self._dimensions.values())
            if m is not None
        ]
        if not selections:
            return [r for r in self._records if r is not None]
        selections.sort(key=len)
        active = set(selections[0])
        for selection in selections[1:]:
            active.intersection_update(selection)
            if not active:
                break
        return [self._records[slot] for slot in sorted(active)]

    @staticmethod
    def sort_by_time(
        records: list[Record], field: str = "normalTime", reverse: bool = False
    ) -> list[Record]:
        """Stable sort by a time field, or any other field a projection names.

        Records missing the field sort first. Values of different kinds
        never compare directly, so mixed or nested fields cannot raise.
        """
        return sorted(records, key=lambda r: _sort_key(r.get(field)), reverse=reverse)
