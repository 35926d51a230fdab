"""Tests for the indexed view over the record store."""

import pytest

from glycoview.core.exceptions import DimensionError
from glycoview.core.indexed_view import DimensionSpec, IndexedView


def make_record(record_id: str, time: int, record_type: str = "cbg", **fields) -> dict:
    return {"id": record_id, "normalTime": time, "type": record_type, **fields}


@pytest.fixture
def view() -> IndexedView:
    view = IndexedView(
        {
            "time": DimensionSpec(lambda d: d["normalTime"], ordered=True),
            "type": DimensionSpec(lambda d: d["type"]),
            "deviceId": DimensionSpec(lambda d: d.get("deviceId")),
        }
    )
    view.add(
        [
            make_record("a", 30, "cbg", deviceId="pump"),
            make_record("b", 10, "smbg", deviceId="meter"),
            make_record("c", 20, "cbg", deviceId="cgm"),
            make_record("d", 40, "basal"),
        ]
    )
    return view


def ids(records: list[dict]) -> list[str]:
    return [r["id"] for r in records]


class TestStore:
    """Tests for store access and mutation."""

    def test_len_and_contains(self, view):
        assert len(view) == 4
        assert "a" in view
        assert "z" not in view

    def test_get(self, view):
        assert view.get("c")["normalTime"] == 20
        assert view.get("z") is None

    def test_remove(self, view):
        removed = view.remove(lambda r: r["type"] == "cbg")
        assert sorted(ids(removed)) == ["a", "c"]
        assert len(view) == 2
        assert ids(view.top_all()) == ["b", "d"]

    def test_replace_keeps_slot(self, view):
        previous = view.replace(make_record("b", 50, "smbg"))
        assert previous["normalTime"] == 10
        assert ids(view.top_all()) == ["a", "b", "c", "d"]
        assert view.get("b")["normalTime"] == 50

    def test_replace_unknown(self, view):
        assert view.replace(make_record("z", 1)) is None

    def test_add_after_remove(self, view):
        view.remove(lambda r: r["id"] == "a")
        view.add([make_record("e", 5)])
        view.filter_range("time", 0, 25)
        assert ids(view.top_all()) == ["b", "c", "e"]


class TestFilters:
    """Tests for dimension filters and intersection."""

    def test_unfiltered(self, view):
        assert ids(view.top_all()) == ["a", "b", "c", "d"]

    def test_range_is_half_open(self, view):
        view.filter_range("time", 10, 30)
        assert ids(view.top_all()) == ["b", "c"]

    def test_open_ended_range(self, view):
        view.filter_range("time", 25)
        assert ids(view.top_all()) == ["a", "d"]

    def test_exact(self, view):
        view.filter_exact("type", "cbg")
        assert ids(view.top_all()) == ["a", "c"]

    def test_intersection(self, view):
        view.filter_exact("type", "cbg")
        view.filter_range("time", 25, 100)
        assert ids(view.top_all()) == ["a"]

    def test_set_exclude_keeps_missing_keys(self, view):
        """Excluding devices keeps records without a device id."""
        view.filter_set("deviceId", ["pump", "meter"], exclude=True)
        assert ids(view.top_all()) == ["c", "d"]

    def test_filter_all_clears_one_dimension(self, view):
        view.filter_exact("type", "cbg")
        view.filter_range("time", 25, 100)
        view.filter_all("type")
        assert ids(view.top_all()) == ["a", "d"]

    def test_clear_all(self, view):
        view.filter_exact("type", "smbg")
        view.clear_all()
        assert len(view.top_all()) == 4

    def test_range_on_unordered_dimension(self, view):
        with pytest.raises(DimensionError):
            view.filter_range("type", "a", "z")

    def test_unknown_dimension(self, view):
        with pytest.raises(DimensionError, match="unknown dimension"):
            view.filter_exact("color", "red")

    def test_rebuild_picks_up_key_changes(self, view):
        view.get("d")["normalTime"] = 5
        view.rebuild()
        view.filter_range("time", 0, 10)
        assert ids(view.top_all()) == ["d"]

    def test_dimension_indexed_only_when_filtered(self):
        projected = []

        def counting_key(record: dict) -> str:
            projected.append(record["id"])
            return record["type"]

        view = IndexedView(
            {
                "time": DimensionSpec(lambda d: d["normalTime"], ordered=True),
                "type": DimensionSpec(counting_key),
            }
        )
        view.add([make_record("a", 10), make_record("b", 20, "smbg")])

        view.filter_range("time", 0, 15)
        assert ids(view.top_all()) == ["a"]
        assert projected == []

        view.filter_exact("type", "smbg")
        view.filter_all("time")
        assert ids(view.top_all()) == ["b"]
        assert projected == ["a", "b"]

        view.top_all()
        assert projected == ["a", "b"]


class TestPreserveFilters:
    """Tests for filter snapshots."""

    def test_restores_on_exit(self, view):
        view.filter_range("time", 0, 35)
        with view.preserve_filters():
            view.filter_exact("type", "smbg")
            assert ids(view.top_all()) == ["b"]
        assert ids(view.top_all()) == ["a", "b", "c"]

    def test_restores_on_error(self, view):
        view.filter_exact("type", "cbg")
        with pytest.raises(RuntimeError), view.preserve_filters():
            view.filter_exact("type", "basal")
            raise RuntimeError("boom")
        assert ids(view.top_all()) == ["a", "c"]


class TestSortByTime:
    """Tests for time ordering helper."""

    def test_ascending(self, view):
        assert ids(IndexedView.sort_by_time(view.top_all())) == ["b", "c", "a", "d"]

    def test_descending(self, view):
        assert ids(IndexedView.sort_by_time(view.top_all(), reverse=True)) == ["d", "a", "c", "b"]

    def test_missing_field_sorts_first(self):
        records = [{"id": "x", "value": 2}, {"id": "y"}, {"id": "z", "value": 1}]
        assert ids(IndexedView.sort_by_time(records, field="value")) == ["y", "z", "x"]

    def test_mixed_value_kinds_sort_without_error(self):
        records = [
            {"id": "w", "value": "prime"},
            {"id": "x", "value": 3},
            {"id": "y", "value": ""},
            {"id": "z"},
        ]
        assert ids(IndexedView.sort_by_time(records, field="value")) == ["z", "x", "y", "w"]

    def test_mapping_values_sort_without_error(self):
        records = [
            {"id": "x", "value": {"carb": 2}},
            {"id": "y", "value": {"carb": 1}},
        ]
        assert ids(IndexedView.sort_by_time(records, field="value")) == ["y", "x"]
