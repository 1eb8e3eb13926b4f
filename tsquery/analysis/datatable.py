"""
Table analyzer and preprocessor.

The analyzer proposes a "datatable" visualization for small datasets: one
row per datapoint and one column per observed field. The preprocessor turns
that proposal into flat rows ready for rendering.
"""

import json
from typing import Any, Dict, List

from ..context import QueryContext
from .transforms import flatten, transform

# Tables stop being useful (and get expensive) past these sizes
MAX_SERIES = 6
MAX_POINTS = 50000

RAW_DATA_PROP = "d_"


def _series_columns(qd: QueryContext, label: str, data) -> Dict[str, Any]:
    first = data[0].get("d")

    # A single object datapoint reads better as key/value rows
    if len(data) == 1 and isinstance(first, dict) and len(first) > 1:
        return {
            "label": label,
            "transform": "expand",
            "columns": [{"prop": "d_k", "name": "Key"}, {"prop": "d_v", "name": "Value"}],
        }

    columns = [{"prop": "t", "name": "Timestamp"}]
    if any("dt" in dp for dp in data):
        columns.append({"prop": "dt", "name": "Duration"})

    if not isinstance(first, dict):
        columns.append({"prop": "d", "name": "Data"})
    elif any(not isinstance(dp.get("d"), dict) for dp in data):
        # Inconsistently shaped values: show them raw
        columns.append({"prop": RAW_DATA_PROP, "name": "Data"})
    else:
        for k in qd.registry.value.stat("keys", data):
            columns.append({"prop": "d_" + k, "name": k})

    return {"label": label, "columns": columns}


async def analyze(qd: QueryContext, results: Dict[str, Any]) -> Dict[str, Any]:
    """Propose a data table, unless the dataset is too big or empty."""
    if len(qd.keys) > MAX_SERIES or not all(0 < len(ds) < MAX_POINTS for ds in qd.dataset_array):
        return {}

    config = [_series_columns(qd, label, data) for label, data in zip(qd.keys, qd.dataset_array)]
    return {
        "datatable": {
            "weight": 20,
            "title": "Data Table",
            "visualization": "datatable",
            "config": config,
        },
    }


def _row(dp: Dict[str, Any], props: List[str]) -> Dict[str, Any]:
    flat = flatten(dp)
    if RAW_DATA_PROP in props:
        value = dp.get("d")
        if isinstance(value, (dict, list)):
            value = json.dumps(value, sort_keys=True)
        flat[RAW_DATA_PROP] = value
    return {prop: flat.get(prop) for prop in props}


def preprocess(qd: QueryContext, candidate: Dict[str, Any]) -> Dict[str, Any]:
    """Build the rows of each table proposed by ``analyze``."""
    tables = []
    for series, table in zip(qd.dataset_array, candidate["config"]):
        props = [c["prop"] for c in table["columns"]]
        rows = [_row(dp, props) for dp in transform(series, table.get("transform"))]
        tables.append({"label": table["label"], "columns": table["columns"], "rows": rows})
    return {"tables": tables}
