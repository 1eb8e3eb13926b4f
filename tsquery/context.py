"""
Query result container passed through the analysis pipeline.
"""

from typing import Any, Dict, List, Optional

from .accessors import FieldAccessor, Series, StatRegistry, default_registry


class QueryContext:
    """
    Raw dataset query result, wrapped for analyzers and preprocessors.

    The server answers a dataset query with one datapoint array per named
    element of the query. Arrays are kept in response order and wrapped as
    ``Series`` so their statistics can be memoized.

    Attributes:
        dataset: name -> Series
        keys: dataset names, in response order
        dataset_array: the Series, aligned with ``keys``
        registry: statistics registry accessors are taken from
    """

    def __init__(self, data: Dict[str, Any], registry: Optional[StatRegistry] = None):
        if not isinstance(data, dict):
            raise ValueError(f"Dataset result must be an object, got {type(data).__name__}")
        self.registry = registry or default_registry
        self.dataset: Dict[str, Series] = {}
        for name, points in data.items():
            if not isinstance(points, list):
                raise ValueError(f"Dataset '{name}' must be an array of datapoints")
            self.dataset[name] = points if isinstance(points, Series) else Series(points)
        self.keys: List[str] = list(self.dataset)
        self.dataset_array: List[Series] = [self.dataset[k] for k in self.keys]

    def query(self, path) -> FieldAccessor:
        """Field accessor for ``path`` from this context's registry."""
        return self.registry.accessor(path)

    def __len__(self) -> int:
        return len(self.keys)

    def to_dict(self) -> Dict[str, Any]:
        return {k: list(v) for k, v in self.dataset.items()}
