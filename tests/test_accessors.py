"""
Tests for field accessors and memoized statistics.

Tests:
- Built-in statistics on a datapoint series
- Memoization per (statistic, series) and per-accessor caches
- Retroactive statistic registration
- Path accessors and cache purging

Run tests:
    pytest tests/test_accessors.py -v
"""

import gc
import math
from unittest.mock import Mock

import pytest

from tsquery.accessors import (
    FieldAccessor,
    Series,
    StatRegistry,
    accessor,
    default_registry,
    dq,
    set_query_prop,
)


@pytest.fixture
def registry():
    return StatRegistry()


@pytest.fixture
def series():
    return Series([{"t": 1, "d": 2}, {"t": 2, "d": 4}, {"t": 3, "d": None}])


# ============================================================================
# Built-in Statistics Tests
# ============================================================================


class TestBuiltinStats:
    """Statistics over the value accessor."""

    def test_value_statistics(self, registry, series):
        d = registry.value

        assert d.nonNull(series) == 2
        assert d.sum(series) == 6
        assert d.mean(series) == 3
        assert d.min(series) == 2
        assert d.max(series) == 4
        assert d.stddev(series) == pytest.approx(math.sqrt(2))

    def test_timestamp_and_duration(self, registry, series):
        assert registry.timestamp.min(series) == 1
        assert registry.timestamp.max(series) == 3
        # Datapoints without dt have zero duration
        assert registry.duration.sum(series) == 0
        assert registry.duration.nonNull(series) == 3

    def test_stddev_single_value_is_nan(self, registry):
        assert math.isnan(registry.value.stddev(Series([{"t": 1, "d": 5}])))

    def test_data_type(self, registry):
        d = registry.value
        assert d.dataType(Series([{"d": 1}, {"d": 2.5}])) == "number"
        assert d.dataType(Series([{"d": True}, {"d": None}])) == "boolean"
        assert d.dataType(Series([{"d": "a"}])) == "string"
        assert d.dataType(Series([{"d": {"x": 1}}])) == "object"
        assert d.dataType(Series([{"d": 1}, {"d": "a"}])) == "mixed"
        assert d.dataType(Series([{"d": None}])) == "null"

    def test_keys_in_first_seen_order(self, registry):
        arr = Series([{"d": {"b": 1, "a": 2}}, {"d": 3}, {"d": {"c": 1, "a": 0}}])
        assert registry.value.keys(arr) == ["b", "a", "c"]

    def test_min_max_of_unorderable_values(self, registry):
        arr = Series([{"d": {"x": 1}}, {"d": {"x": 2}}])
        assert registry.value.min(arr) is None
        assert registry.value.max(arr) is None

    def test_numeric_helpers(self, registry, series):
        d = registry.value
        assert d.is_numeric(series)
        assert not d.is_boolean(series)
        assert not d.no_nulls(series)
        assert registry.timestamp.no_nulls(series)


# ============================================================================
# Memoization Tests
# ============================================================================


class TestMemoization:
    """Each statistic is computed once per series."""

    def test_statistic_computed_once(self, registry, series):
        counter = Mock(return_value=42)
        registry.register("answer", counter)

        assert registry.value.answer(series) == 42
        assert registry.value.answer(series) == 42
        assert counter.call_count == 1

    def test_distinct_series_computed_separately(self, registry, series):
        counter = Mock(return_value=1)
        registry.register("count", counter)
        other = Series(list(series))

        registry.value.count(series)
        registry.value.count(other)

        assert counter.call_count == 2

    def test_accessors_have_independent_caches(self, registry, series):
        registry.value.sum(series)
        assert "sum" in registry.value.cached(series)
        assert registry.timestamp.cached(series) == {}

    def test_nested_statistics_share_entry(self, registry, series):
        registry.value.stddev(series)
        cached = registry.value.cached(series)
        assert {"stddev", "sum", "nonNull"} <= set(cached)

    def test_plain_list_is_not_cached(self, registry):
        counter = Mock(return_value=0)
        registry.register("zero", counter)
        arr = [{"d": 1}]

        registry.value.zero(arr)
        registry.value.zero(arr)

        assert counter.call_count == 2
        assert registry.value.cache_size() == 0

    def test_cache_purged_when_series_collected(self, registry):
        arr = Series([{"d": 1}])
        registry.value.sum(arr)
        assert registry.value.cache_size() == 1

        del arr
        gc.collect()

        assert registry.value.cache_size() == 0


# ============================================================================
# Registry Tests
# ============================================================================


class TestStatRegistry:
    """Registering statistics and building accessors."""

    def test_register_attaches_to_existing_accessors(self, registry, series):
        nested = registry.accessor(["d", "temp"])
        assert not nested.has_stat("span")

        registry.register("span", lambda f, arr: f.max(arr) - f.min(arr))

        assert nested.has_stat("span")
        assert registry.value.span(series) == 2
        assert registry.timestamp.span(series) == 2

    def test_replacing_statistic_drops_memoized_values(self, registry, series):
        registry.register("span", lambda f, arr: 0)
        registry.register("scaled", lambda f, arr: f.span(arr) * 10)
        assert registry.value.span(series) == 0
        assert registry.value.scaled(series) == 0

        registry.register("span", lambda f, arr: f.max(arr) - f.min(arr))

        assert registry.value.span(series) == 2
        assert registry.value.scaled(series) == 20

    def test_reregistering_same_statistic_keeps_cache(self, registry, series):
        counter = Mock(return_value=3)
        registry.register("three", counter)
        registry.value.three(series)

        registry.register("three", counter)
        registry.value.three(series)

        assert counter.call_count == 1

    def test_new_accessor_gets_registered_stats(self, registry):
        registry.register("first", lambda f, arr: f(arr[0]))
        arr = Series([{"d": {"temp": 7}}])
        assert registry.accessor(["d", "temp"]).first(arr) == 7

    def test_same_path_returns_same_accessor(self, registry):
        assert registry.accessor(["d", "temp"]) is registry.accessor(["d", "temp"])
        assert registry.accessor(["d"]) is registry.value
        assert registry.accessor(["t"]) is registry.timestamp
        assert registry.accessor(["dt"]) is registry.duration

    def test_path_accessor_reads_nested_values(self, registry):
        f = registry.accessor(["d", "readings", 1])
        assert f({"d": {"readings": [10, 20]}}) == 20
        assert f({"d": {"readings": [10]}}) is None
        assert f({"d": 5}) is None

    def test_unknown_statistic_raises(self, registry):
        with pytest.raises(AttributeError):
            registry.value.nonexistent

    def test_standalone_accessor(self):
        f = FieldAccessor(lambda dp: dp["d"] * 2, name="double")
        assert f({"d": 3}) == 6
        assert not f.has_stat("sum")


# ============================================================================
# Default Registry Tests
# ============================================================================


class TestDefaultRegistry:
    """Module-level helpers bound to the default registry."""

    def test_set_query_prop_reaches_default_accessors(self, series):
        set_query_prop("test_accessors_last_t", lambda f, arr: arr[-1]["t"])
        assert dq.has_stat("test_accessors_last_t")
        assert dq.test_accessors_last_t(series) == 3

    def test_accessor_helper_uses_default_registry(self):
        assert accessor(["d"]) is default_registry.value
