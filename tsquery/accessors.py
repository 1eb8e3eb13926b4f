"""
Field accessors with memoized per-series statistics.

A field accessor is a function ``datapoint -> value`` for one path into a
datapoint (``["d"]`` for the value, ``["t"]`` for the timestamp, ``["d",
"temp"]`` for a key of an object value, ...). Each accessor also carries a
cache of derived statistics, so analyzers can ask for ``min``, ``sum`` or
``stddev`` of the same series over and over and only pay for the first call.

The cache is keyed by the identity of the series object and does not hold a
reference to it: entries are purged when the series is garbage collected.
Series must therefore support weak references. ``Series`` (a list subclass)
and numpy arrays do; plain lists do not, and their statistics are computed
on every call instead of cached.

Statistics live in a StatRegistry. Registering a new statistic attaches it
to every accessor the registry has produced so far.
"""

import json
import weakref
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from .shared.logger import get_logger

logger = get_logger(__name__)

StatFunction = Callable[["FieldAccessor", Sequence], Any]


class Series(list):
    """A datapoint array that can be weakly referenced (and so cached)."""


# ============= Built-in statistics =============


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.number)) and not isinstance(value, str)


def _kind(value: Any) -> str:
    if isinstance(value, (bool, np.bool_)):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return "unknown"


def non_null_values(f: "FieldAccessor", arr: Sequence) -> List[Any]:
    """Extract the field from every datapoint, dropping nulls."""
    return [v for v in (f(dp) for dp in arr) if v is not None]


def get_keys(f: "FieldAccessor", arr: Sequence) -> List[str]:
    """Keys of all object-valued items, in first-seen order."""
    keys: Dict[str, bool] = {}
    for value in non_null_values(f, arr):
        if isinstance(value, dict):
            for k in value:
                keys[k] = True
    return list(keys)


def get_type(f: "FieldAccessor", arr: Sequence) -> str:
    """Common type of the non-null values.

    One of ``number``, ``boolean``, ``string``, ``object``, ``array``;
    ``null`` when there are no values and ``mixed`` when they disagree.
    """
    kinds = {_kind(v) for v in non_null_values(f, arr)}
    if not kinds:
        return "null"
    if len(kinds) > 1:
        return "mixed"
    return kinds.pop()


def get_min(f: "FieldAccessor", arr: Sequence) -> Any:
    values = non_null_values(f, arr)
    if not values:
        return None
    try:
        return min(values)
    except TypeError:
        # Values are not orderable (objects, mixed types)
        return None


def get_max(f: "FieldAccessor", arr: Sequence) -> Any:
    values = non_null_values(f, arr)
    if not values:
        return None
    try:
        return max(values)
    except TypeError:
        return None


def get_sum(f: "FieldAccessor", arr: Sequence) -> Any:
    return sum(v for v in non_null_values(f, arr) if _is_number(v))


def get_non_null(f: "FieldAccessor", arr: Sequence) -> int:
    return len(non_null_values(f, arr))


def get_stddev(f: "FieldAccessor", arr: Sequence) -> float:
    """Sample standard deviation of the numeric values.

    Divides by ``nonNull - 1``: a single value gives NaN.
    """
    mu = f.mean(arr)
    values = np.asarray([v for v in non_null_values(f, arr) if _is_number(v)], dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        variance = np.sum((values - mu) ** 2) / np.float64(f.stat("nonNull", arr) - 1)
        return float(np.sqrt(variance))


BUILTIN_STATS: Dict[str, StatFunction] = {
    "keys": get_keys,
    "dataType": get_type,
    "min": get_min,
    "max": get_max,
    "sum": get_sum,
    "nonNull": get_non_null,
    "stddev": get_stddev,
}


# ============= Accessors =============


class FieldAccessor:
    """
    A datapoint field getter with attached, memoized statistics.

    Registered statistics are reachable by name, either through
    ``f.stat("min", arr)`` or as attributes: ``f.min(arr)``.
    """

    def __init__(
        self,
        getter: Callable[[Any], Any],
        registry: Optional["StatRegistry"] = None,
        name: str = "",
    ):
        self._getter = getter
        self.name = name
        self._stats: Dict[str, StatFunction] = {}
        # id(series) -> {stat name: value}
        self._cache: Dict[int, Dict[str, Any]] = {}
        if registry is not None:
            registry.track(self)

    def __call__(self, datapoint: Any) -> Any:
        return self._getter(datapoint)

    def __repr__(self) -> str:
        return f"FieldAccessor({self.name!r})"

    def __getattr__(self, name: str):
        stats = self.__dict__.get("_stats")
        if stats is not None and name in stats:
            return lambda arr: self.get(name, stats[name], arr)
        raise AttributeError(f"{type(self).__name__!r} has no statistic {name!r}")

    def get(self, key: str, fn: StatFunction, arr: Sequence) -> Any:
        """Return ``fn(self, arr)``, computed at most once per ``(key, arr)``."""
        ident = id(arr)
        entry = self._cache.get(ident)
        if entry is not None and key in entry:
            return entry[key]

        value = fn(self, arr)

        # fn may itself have cached other statistics for arr
        entry = self._cache.get(ident)
        if entry is None:
            try:
                weakref.finalize(arr, self._cache.pop, ident, None)
            except TypeError:
                return value
            entry = self._cache[ident] = {}
        entry[key] = value
        return value

    def set(self, key: str, fn: StatFunction) -> None:
        """Attach a statistic to this accessor.

        Replacing a statistic drops every memoized value, since other
        statistics may have been computed through the old one.
        """
        previous = self._stats.get(key)
        self._stats[key] = fn
        if previous is not None and previous is not fn:
            for entry in self._cache.values():
                entry.clear()

    def stat(self, key: str, arr: Sequence) -> Any:
        return self.get(key, self._stats[key], arr)

    def has_stat(self, key: str) -> bool:
        return key in self._stats

    def cached(self, arr: Sequence) -> Dict[str, Any]:
        """Statistics computed so far for ``arr`` (a copy)."""
        return dict(self._cache.get(id(arr), {}))

    def cache_size(self) -> int:
        return len(self._cache)

    # Derived statistics, composed from the memoized ones

    def mean(self, arr: Sequence) -> float:
        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.float64(self.stat("sum", arr)) / np.float64(self.stat("nonNull", arr)))

    def no_nulls(self, arr: Sequence) -> bool:
        return self.stat("nonNull", arr) == len(arr)

    def is_numeric(self, arr: Sequence) -> bool:
        return self.stat("dataType", arr) in ("number", "boolean")

    def is_boolean(self, arr: Sequence) -> bool:
        return self.stat("dataType", arr) == "boolean"


def _path_getter(path: Sequence[Any]) -> Callable[[Any], Any]:
    path = tuple(path)

    def getter(datapoint: Any) -> Any:
        for segment in path:
            if isinstance(datapoint, dict):
                if segment not in datapoint:
                    return None
                datapoint = datapoint[segment]
            elif (
                isinstance(datapoint, (list, tuple))
                and isinstance(segment, int)
                and -len(datapoint) <= segment < len(datapoint)
            ):
                datapoint = datapoint[segment]
            else:
                return None
        return datapoint

    return getter


class StatRegistry:
    """
    Named statistics plus the accessors they are attached to.

    The canonical value/timestamp/duration accessors are built once per
    registry. Accessors for other paths are memoized by the serialized path
    tail (paths are rooted at the datapoint value), so the same path always
    returns the same accessor and therefore the same cache.
    """

    def __init__(self, stats: Optional[Dict[str, StatFunction]] = None):
        self._stats: Dict[str, StatFunction] = dict(BUILTIN_STATS if stats is None else stats)
        self._accessors: "weakref.WeakSet[FieldAccessor]" = weakref.WeakSet()
        self._path_cache: Dict[str, FieldAccessor] = {}

        self.value = FieldAccessor(lambda dp: dp.get("d"), self, name="d")
        self.timestamp = FieldAccessor(lambda dp: dp.get("t"), self, name="t")
        self.duration = FieldAccessor(lambda dp: dp.get("dt", 0), self, name="dt")

    @property
    def stats(self) -> Dict[str, StatFunction]:
        return dict(self._stats)

    def track(self, accessor: FieldAccessor) -> None:
        """Attach every known statistic to ``accessor`` and keep it updated."""
        for key, fn in self._stats.items():
            accessor.set(key, fn)
        self._accessors.add(accessor)

    def register(self, key: str, fn: StatFunction) -> None:
        """Register a statistic and attach it to all existing accessors."""
        if key in self._stats:
            logger.debug("Replacing statistic '%s'", key)
        self._stats[key] = fn
        self.attach_all(key, fn)

    def attach_all(self, key: str, fn: StatFunction) -> None:
        for accessor in list(self._accessors):
            accessor.set(key, fn)

    def accessor(self, path: Iterable[Any]) -> FieldAccessor:
        """Return the accessor for a datapoint path."""
        path = list(path)
        if len(path) == 1:
            if path[0] == "d":
                return self.value
            if path[0] == "t":
                return self.timestamp
            if path[0] == "dt":
                return self.duration
        key = json.dumps(path[1:])
        accessor = self._path_cache.get(key)
        if accessor is None:
            accessor = FieldAccessor(_path_getter(path), self, name=".".join(str(p) for p in path))
            self._path_cache[key] = accessor
        return accessor


# Default registry used by the engine
default_registry = StatRegistry()

dq = default_registry.value
tq = default_registry.timestamp
dtq = default_registry.duration


def accessor(path: Iterable[Any]) -> FieldAccessor:
    """Accessor for ``path`` from the default registry."""
    return default_registry.accessor(path)


def set_query_prop(key: str, fn: StatFunction) -> None:
    """Register a statistic globally on the default registry."""
    default_registry.register(key, fn)
