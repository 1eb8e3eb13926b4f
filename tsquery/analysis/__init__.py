"""
Two-stage analysis of query data.

Stage one folds the registered analyzers over the data, producing named
candidate visualizations. Stage two runs, for each candidate, the
preprocessor registered for its visualization tag (or the default one) to
produce the final output entry.

Analyzer:      (qdata, results so far) -> {name: candidate}, sync or async
Preprocessor:  (qdata, candidate) -> dict, sync or async
Candidate:     {"weight", "title", "visualization", "config"}
Output entry:  preprocessor result + {"config": candidate}
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..context import QueryContext
from ..errors import ProcessingError
from ..shared.logger import get_logger
from . import datatable
from .transforms import flatten, transform

logger = get_logger(__name__)

Candidate = Dict[str, Any]
Analyzer = Callable[[QueryContext, Dict[str, Candidate]], Union[Dict[str, Candidate], Awaitable[Dict[str, Candidate]]]]
Preprocessor = Callable[[QueryContext, Candidate], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


def _name(fn: Callable) -> str:
    module = getattr(fn, "__module__", None) or ""
    return f"{module}.{getattr(fn, '__qualname__', repr(fn))}".lstrip(".")


def default_preprocessor(qd: QueryContext, candidate: Candidate) -> Dict[str, Any]:
    """Pass the raw series through untouched."""
    return {"data": {k: list(v) for k, v in qd.dataset.items()}}


class AnalyzerPipeline:
    """Ordered analyzers folded over a query result."""

    def __init__(self, analyzers: Optional[List[Analyzer]] = None):
        self._analyzers: List[Analyzer] = list(analyzers or [])

    def register(self, analyzer: Analyzer) -> Analyzer:
        """Append an analyzer. Returns it, so this works as a decorator."""
        self._analyzers.append(analyzer)
        return analyzer

    def unregister(self, analyzer: Analyzer) -> None:
        try:
            self._analyzers.remove(analyzer)
        except ValueError:
            pass

    @property
    def analyzers(self) -> List[Analyzer]:
        return list(self._analyzers)

    async def run(self, qd: QueryContext) -> Dict[str, Candidate]:
        """Fold every analyzer over ``qd``, merging their contributions.

        Raises:
            ProcessingError: if an analyzer raises or returns a non-mapping.
        """
        results: Dict[str, Candidate] = {}
        for analyzer in list(self._analyzers):
            try:
                partial = analyzer(qd, dict(results))
                if inspect.isawaitable(partial):
                    partial = await partial
            except Exception as e:
                raise ProcessingError(f"analyzer {_name(analyzer)} failed: {e}") from e
            if not partial:
                continue
            if not isinstance(partial, dict):
                raise ProcessingError(
                    f"analyzer {_name(analyzer)} returned {type(partial).__name__}, expected a mapping"
                )
            results.update(partial)
        return results


class PreprocessorRegistry:
    """Visualization tag -> preprocessor, with a default fallback."""

    def __init__(self, default: Preprocessor = default_preprocessor):
        self._preprocessors: Dict[str, Preprocessor] = {}
        self.default = default

    def register(self, tag: str, preprocessor: Preprocessor) -> None:
        if tag in self._preprocessors:
            logger.debug("Replacing preprocessor for '%s'", tag)
        self._preprocessors[tag] = preprocessor

    def unregister(self, tag: str) -> None:
        self._preprocessors.pop(tag, None)

    def get(self, tag: Optional[str]) -> Preprocessor:
        return self._preprocessors.get(tag, self.default)

    def __contains__(self, tag: str) -> bool:
        return tag in self._preprocessors

    async def apply(self, qd: QueryContext, results: Dict[str, Candidate]) -> Dict[str, Dict[str, Any]]:
        """Turn every candidate into its output entry.

        Raises:
            ProcessingError: if a preprocessor raises.
        """
        output: Dict[str, Dict[str, Any]] = {}
        for name, candidate in results.items():
            preprocessor = self.get(candidate.get("visualization"))
            try:
                entry = preprocessor(qd, candidate)
                if inspect.isawaitable(entry):
                    entry = await entry
            except Exception as e:
                raise ProcessingError(f"preprocessor for '{name}' failed: {e}") from e
            output[name] = {**(entry or {}), "config": candidate}
        return output


def default_pipeline() -> AnalyzerPipeline:
    """Pipeline preloaded with the built-in analyzers."""
    return AnalyzerPipeline([datatable.analyze])


def default_preprocessors() -> PreprocessorRegistry:
    """Registry preloaded with the built-in preprocessors."""
    registry = PreprocessorRegistry()
    registry.register("datatable", datatable.preprocess)
    return registry


__all__ = [
    "Analyzer",
    "AnalyzerPipeline",
    "Candidate",
    "Preprocessor",
    "PreprocessorRegistry",
    "default_pipeline",
    "default_preprocessor",
    "default_preprocessors",
    "flatten",
    "transform",
]
