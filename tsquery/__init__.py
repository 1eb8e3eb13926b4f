"""
tsquery: reactive timeseries query engine.

This package provides:
- Event channel client with filtered, keyed subscriptions (events.py)
- Field accessors with memoized per-series statistics (accessors.py)
- Analyzer/preprocessor pipeline producing visualization output (analysis/)
- Reactive, single-flight dataset queries (query.py) and their cache (manager.py)
- The engine facade wiring it all together (engine.py)
"""

__version__ = "0.4.0"

from .accessors import FieldAccessor, Series, StatRegistry, accessor, default_registry, set_query_prop
from .analysis import AnalyzerPipeline, PreprocessorRegistry
from .client import ApiClient, ApiResponse, ApiResult
from .config import EngineConfig
from .context import QueryContext
from .engine import QueryEngine
from .errors import EngineError, FetchError, MalformedEvent, ProcessingError, TransportError
from .events import Event, EventFilter, EventRouter, Subscription
from .manager import QueryManager
from .query import Query, QueryState

__all__ = [
    "ApiClient",
    "ApiResponse",
    "ApiResult",
    "AnalyzerPipeline",
    "EngineConfig",
    "EngineError",
    "Event",
    "EventFilter",
    "EventRouter",
    "FetchError",
    "FieldAccessor",
    "MalformedEvent",
    "PreprocessorRegistry",
    "ProcessingError",
    "Query",
    "QueryContext",
    "QueryEngine",
    "QueryManager",
    "QueryState",
    "Series",
    "StatRegistry",
    "Subscription",
    "TransportError",
    "accessor",
    "default_registry",
    "set_query_prop",
]
