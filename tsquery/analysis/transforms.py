"""
Series transforms used when turning query data into tables.
"""

from typing import Any, Dict, Optional, Sequence

from ..accessors import Series
from ..shared.logger import get_logger

logger = get_logger(__name__)


def transform(arr: Sequence[Dict[str, Any]], script: Optional[str]) -> Sequence[Dict[str, Any]]:
    """Apply a named transform to a series.

    ``expand`` turns the first datapoint's object value into one row per key,
    ``{"t": t, "d": {"k": key, "v": value}}``. Unknown or empty transforms
    return the series unchanged.
    """
    if script == "expand":
        if len(arr) == 0:
            return arr
        dp = arr[0]
        value = dp.get("d")
        if not isinstance(value, dict):
            return arr
        return Series({"t": dp.get("t"), "d": {"k": k, "v": v}} for k, v in value.items())

    if script:
        logger.debug("Unrecognized transform %r", script)
    return arr


def flatten(obj: Dict[str, Any], prefix: str = "", out: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten nested objects into one level, joining keys with ``_``.

    ``{"t": 1, "d": {"a": 2}}`` becomes ``{"t": 1, "d_a": 2}``.
    """
    if out is None:
        out = {}
    for k, v in obj.items():
        name = f"{prefix}{k}"
        if isinstance(v, dict):
            flatten(v, name + "_", out)
        else:
            out[name] = v
    return out
