"""
Engine facade: wires configuration, HTTP client, event router, statistics
registry, analysis pipeline and query cache together.
"""

from typing import Any, Dict, Optional, Union

from .accessors import StatFunction, StatRegistry, default_registry
from .analysis import (
    Analyzer,
    AnalyzerPipeline,
    Preprocessor,
    PreprocessorRegistry,
    default_pipeline,
    default_preprocessors,
)
from .client import ApiClient, ApiResult
from .config import EngineConfig
from .events import EventCallback, EventFilter, EventRouter, Subscription
from .manager import QueryManager
from .query import OutputCallback, Query, StatusCallback
from .shared.logger import get_logger

logger = get_logger(__name__)


class QueryEngine:
    """
    The public surface of the query engine.

    Usage:
        engine = QueryEngine(EngineConfig.from_env())
        await engine.start()
        engine.open("chart-1", {"x": {"timeseries": ts_id}}, on_output, on_status)
        ...
        await engine.stop()
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        client: Optional[ApiClient] = None,
        router: Optional[EventRouter] = None,
        registry: Optional[StatRegistry] = None,
        pipeline: Optional[AnalyzerPipeline] = None,
        preprocessors: Optional[PreprocessorRegistry] = None,
    ):
        self.config = config or EngineConfig.from_env()
        self.client = client or ApiClient(self.config)
        self.router = router or EventRouter(
            self.config.events_url,
            self.config.username,
            reconnect=bool(self.config.reconnect),
            reset_timeout=self.config.reset_timeout,
            retry_timeout_delta=self.config.retry_timeout_delta,
            headers=self.config.headers,
        )
        self.registry = registry or default_registry
        self.pipeline = pipeline or default_pipeline()
        self.preprocessors = preprocessors or default_preprocessors()
        self.queries = QueryManager(self.create_query, router=self.router)

    @property
    def connected(self) -> bool:
        return self.router.isopen

    async def start(self) -> None:
        logger.info("Starting query engine against %s", self.config.server_url)
        await self.router.start()

    async def stop(self) -> None:
        self.queries.close_all()
        await self.router.stop()
        await self.client.close()
        logger.info("Query engine stopped")

    async def request(self, method: str, path: str, body: Any = None) -> ApiResult:
        return await self.client.request(method, path, body)

    # ============= Events =============

    def subscribe(
        self,
        key: str,
        event_filter: Union[EventFilter, Dict[str, Any]],
        callback: EventCallback,
    ) -> Subscription:
        return self.router.subscribe(key, event_filter, callback)

    def unsubscribe(self, key: str) -> None:
        self.router.unsubscribe(key)

    # ============= Queries =============

    def create_query(
        self,
        spec: Dict[str, Any],
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
        activate: bool = True,
    ) -> Query:
        """Create a standalone Query bound to this engine."""
        return Query(
            spec,
            on_output,
            on_status,
            request=self.request,
            router=self.router,
            pipeline=self.pipeline,
            preprocessors=self.preprocessors,
            registry=self.registry,
            dataset_path=self.config.dataset_path,
            activate=activate,
        )

    def open(
        self,
        key: str,
        spec: Dict[str, Any],
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> Query:
        """Open a cached query under ``key`` (reuses an equal cached query)."""
        return self.queries.open(key, spec, on_output, on_status)

    def close(self, key: str) -> None:
        self.queries.close(key)

    # ============= Extension points =============

    def set_query_prop(self, key: str, fn: StatFunction) -> None:
        self.registry.register(key, fn)

    def register_analyzer(self, analyzer: Analyzer) -> Analyzer:
        return self.pipeline.register(analyzer)

    def register_preprocessor(self, tag: str, preprocessor: Preprocessor) -> None:
        self.preprocessors.register(tag, preprocessor)
