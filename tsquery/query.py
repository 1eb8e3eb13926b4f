"""
Reactive dataset queries.

A Query owns one query specification and keeps a visualization-ready output
for it: it fetches the dataset, runs the analysis pipeline over the result,
and re-runs the relevant stage whenever the event channel reports that one
of its timeseries changed.

Data events (datapoints written or deleted) invalidate the fetched data and
trigger a full re-query. Object events (metadata changed) only invalidate
the output, which is recomputed from the data already held.

At most one fetch or recompute runs per Query. Triggers arriving while one
runs set a flag instead, and the flags are drained by the same runner once
the current operation settles, so a burst of events collapses into at most
one follow-up operation. A pending re-query wins over a pending recompute,
since a re-query recomputes anyway.
"""

import asyncio
import copy
import json
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set

from .accessors import StatRegistry, default_registry
from .analysis import AnalyzerPipeline, PreprocessorRegistry
from .client import ApiResult
from .context import QueryContext
from .errors import EngineError, FetchError, ProcessingError
from .events import Event, EventRouter
from .shared.logger import get_logger

logger = get_logger(__name__)

# Events meaning a timeseries' datapoints changed
DATA_EVENTS = ("timeseries_data_write", "timeseries_actions_write", "timeseries_data_delete")
# Events meaning a timeseries' metadata changed
OBJECT_EVENTS = ("object_update",)

RequestFn = Callable[[str, str, Any], Awaitable[ApiResult]]
OutputCallback = Callable[[QueryContext, Dict[str, Any]], Any]
StatusCallback = Callable[[str], Any]

FETCH = "fetch"
PREPARE = "prepare"


class QueryState(str, Enum):
    """Lifecycle state of a Query."""

    IDLE = "idle"
    FETCHING = "fetching"
    RECOMPUTING = "recomputing"
    READY = "ready"


def get_query_element_objects(elem: Dict[str, Any]) -> Set[str]:
    """Timeseries ids referenced by one query element, recursively."""
    objects: Set[str] = set()
    if not isinstance(elem, dict):
        return objects
    if elem.get("timeseries") is not None:
        objects.add(elem["timeseries"])
    for sub in elem.get("merge") or []:
        objects |= get_query_element_objects(sub)
    for sub in (elem.get("dataset") or {}).values():
        objects |= get_query_element_objects(sub)
    return objects


def get_query_objects(spec: Dict[str, Any]) -> FrozenSet[str]:
    """All timeseries ids referenced anywhere in a query spec."""
    objects: Set[str] = set()
    for elem in spec.values():
        objects |= get_query_element_objects(elem)
    return frozenset(objects)


def canonical_spec(spec: Any) -> str:
    """Serialize a spec so equal specs give equal strings (key order ignored)."""
    return json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)


def specs_equal(a: Any, b: Any) -> bool:
    return canonical_spec(a) == canonical_spec(b)


class Query:
    """
    One reactive dataset query.

    Constructing a Query subscribes it to its timeseries' events and, unless
    ``activate=False``, activates it, which starts the first fetch. Must be
    created inside a running event loop.
    """

    def __init__(
        self,
        spec: Dict[str, Any],
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
        *,
        request: RequestFn,
        router: Optional[EventRouter] = None,
        pipeline: Optional[AnalyzerPipeline] = None,
        preprocessors: Optional[PreprocessorRegistry] = None,
        registry: Optional[StatRegistry] = None,
        dataset_path: str = "api/timeseries/dataset",
        activate: bool = True,
    ):
        """Create a query.

        Args:
            spec: Dataset query specification (copied, never mutated)
            on_output: Called with ``(qdata, output)`` whenever output is ready
            on_status: Called with human-readable progress/failure strings
            request: ``request(method, path, body) -> ApiResult``
            router: Event router used for invalidation
            pipeline: Analyzers run over fetched data
            preprocessors: Preprocessors keyed by visualization tag
            registry: Statistics registry handed to the QueryContext
            dataset_path: Endpoint the spec is POSTed to
            activate: Whether to activate (and start fetching) immediately
        """
        self.id = uuid.uuid4().hex[:8]
        self.spec = copy.deepcopy(spec)
        self.objects: FrozenSet[str] = get_query_objects(self.spec)

        self._request = request
        self._router = router
        self._pipeline = pipeline or AnalyzerPipeline()
        self._preprocessors = preprocessors or PreprocessorRegistry()
        self.registry = registry or default_registry
        self.dataset_path = dataset_path

        self.on_output: Optional[OutputCallback] = None
        self.on_status: Optional[StatusCallback] = None
        self._deactivator: Optional[Callable[[], Any]] = None
        self.outdated = False
        self.closed = False

        self.qdata: Optional[QueryContext] = None
        self.output: Optional[Dict[str, Any]] = None

        # Single-flight marker and coalesced re-trigger flags
        self._operation: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self.requery = False
        self.reprepare = False

        logger.debug("Query %s includes the following timeseries: %s", self.id, sorted(self.objects))

        self._subscription_keys: List[str] = []
        self._subscribe_objects()

        if activate:
            self.activate(on_output, on_status)

    def __repr__(self) -> str:
        return f"Query(id={self.id!r}, state={self.state.value!r}, objects={sorted(self.objects)!r})"

    @property
    def state(self) -> QueryState:
        if self._operation == FETCH:
            return QueryState.FETCHING
        if self._operation == PREPARE:
            return QueryState.RECOMPUTING
        if self.qdata is not None and self.output is not None:
            return QueryState.READY
        return QueryState.IDLE

    @property
    def active(self) -> bool:
        return not self.closed and self._deactivator is None

    @property
    def deactivating(self) -> bool:
        return self._deactivator is not None

    @property
    def busy(self) -> bool:
        return self._operation is not None

    def is_equal(self, other: Any) -> bool:
        """True if ``other`` (a Query or a spec) describes the same dataset."""
        if isinstance(other, Query):
            other = other.spec
        return specs_equal(self.spec, other)

    # ============= Subscriptions =============

    def _subscribe_objects(self) -> None:
        if self._router is None:
            return
        for obj in sorted(self.objects):
            for name in DATA_EVENTS:
                self._subscribe(obj, name, self.on_data_event)
            for name in OBJECT_EVENTS:
                self._subscribe(obj, name, self.on_object_event)

    def _subscribe(self, obj: str, name: str, callback: Callable[[Event], Any]) -> None:
        key = f"query:{self.id}:{obj}:{name}"
        self._router.subscribe(key, {"event": name, "object": obj}, callback)
        self._subscription_keys.append(key)

    def close(self) -> None:
        """Drop all event subscriptions. The Query will not run again."""
        logger.debug("Query %s: closing", self.id)
        if self._router is not None:
            for key in self._subscription_keys:
                self._router.unsubscribe(key)
        self._subscription_keys = []
        self.requery = False
        self.reprepare = False
        self.closed = True

    # ============= Activation =============

    def activate(
        self,
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        """Attach callbacks and make sure they get current output."""
        if self.closed:
            raise RuntimeError(f"Query {self.id} is closed")
        self.on_output = on_output
        self.on_status = on_status
        self._deactivator = None
        self.outdated = self._router is not None and self._router.status is None

        if self.qdata is None:
            if self._operation is None:
                self.run_query()
        elif self.output is None:
            # Must recompute output from the raw data
            self.prepare_output()
        elif on_output is not None:
            on_output(self.qdata, self.output)

    def deactivate(self, on_idle: Optional[Callable[[], Any]] = None) -> None:
        """Detach callbacks.

        ``on_idle`` is called once the Query's data can no longer be trusted:
        when the in-flight operation settles, or, if nothing is in flight,
        when one of its timeseries reports new data. At that point the Query
        closes.
        """
        self._deactivator = on_idle or (lambda: None)
        self.requery = False
        self.reprepare = False
        self.on_output = None
        self.on_status = None

    def _fire_idle(self) -> None:
        deactivator, self._deactivator = self._deactivator, None
        self.close()
        if deactivator is None:
            return
        try:
            deactivator()
        except Exception as e:
            logger.error("Query %s: error in deactivation callback: %s", self.id, e)

    # ============= Event handlers =============

    def on_data_event(self, event: Event) -> None:
        if self.closed or event.object not in self.objects:
            return
        if self._deactivator is not None:
            logger.debug("Query %s: output might have changed, removing from cache (%s)", self.id, event.event)
            self._fire_idle()
        else:
            logger.debug("Query %s: output might have changed, rerunning query (%s)", self.id, event.event)
            self.run_query()

    def on_object_event(self, event: Event) -> None:
        if self.closed:
            return
        logger.debug("Query %s: object event %s", self.id, event.event)
        if self._deactivator is None:
            self.prepare_output()
        else:
            # Recomputed lazily on the next activation
            self.output = None

    def mark_outdated(self) -> None:
        self.outdated = True

    # ============= Single-flight runner =============

    def run_query(self) -> Optional[asyncio.Task]:
        """Fetch and reprocess, or flag a re-query if an operation is running."""
        if self.closed:
            return None
        if self._operation is not None:
            logger.debug("Query %s: waiting until current operation finishes before re-querying", self.id)
            self.requery = True
            return None
        return self._start(FETCH)

    def prepare_output(self) -> Optional[asyncio.Task]:
        """Reprocess held data, or flag a recompute if an operation is running."""
        if self.closed:
            return None
        if self._operation is not None:
            logger.debug("Query %s: waiting until current operation finishes before re-processing", self.id)
            self.reprepare = True
            return None
        return self._start(PREPARE)

    def _start(self, kind: str) -> asyncio.Task:
        self._operation = kind
        self._task = asyncio.get_running_loop().create_task(self._drain(kind))
        return self._task

    async def settled(self) -> None:
        """Wait until no operation is running (including follow-ups)."""
        while self._task is not None and not self._task.done():
            await self._task

    async def _drain(self, kind: Optional[str]) -> None:
        try:
            while kind is not None:
                self._operation = kind
                await self._run_operation(kind)
                kind = self._next_operation()
                if kind is not None:
                    # Yield so queued events land before the follow-up starts
                    await asyncio.sleep(0)
                    kind = self._next_operation()
        finally:
            self._operation = None

    def _next_operation(self) -> Optional[str]:
        if self.closed or self._deactivator is not None:
            return None
        if self.requery:
            return FETCH
        if self.reprepare:
            return PREPARE
        return None

    async def _run_operation(self, kind: str) -> None:
        try:
            if kind == FETCH:
                await self._fetch()
            else:
                await self._prepare()
        except Exception as e:
            self._report_failure(kind, e)

        if self._deactivator is not None:
            self._fire_idle()

    def _report_failure(self, kind: str, error: Exception) -> None:
        if isinstance(error, EngineError):
            message = error.status_message()
            logger.error("Query %s: %s", self.id, message)
        else:
            prefix = FetchError.status_prefix if kind == FETCH else ProcessingError.status_prefix
            message = f"{prefix}: {error}"
            logger.exception("Query %s: %s", self.id, message)
        if self._deactivator is None:
            self._status(message)

    def _status(self, message: str) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(message)
        except Exception as e:
            logger.error("Query %s: error in status callback: %s", self.id, e)

    def _stopping(self) -> bool:
        return self.closed or self._deactivator is not None

    # ============= Operations =============

    async def _fetch(self) -> None:
        logger.debug("Query %s: getting dataset for %s", self.id, self.spec)
        self._status("Querying Data...")
        self.requery = False

        try:
            result = await self._request("POST", self.dataset_path, self.spec)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(str(e)) from e

        if not result.response.ok:
            description = None
            if isinstance(result.data, dict):
                description = result.data.get("error_description")
            raise FetchError(
                description or f"server responded with status {result.response.status}",
                status=result.response.status,
                data=result.data,
            )

        # Fresh data while the event channel is up means nothing was missed
        if self._router is not None and self._router.status is not None:
            self.outdated = False

        try:
            qdata = QueryContext(result.data, self.registry)
        except ValueError as e:
            raise FetchError(f"unexpected dataset format: {e}") from e
        self.qdata = qdata
        self.output = None

        if self._stopping():
            return
        try:
            await self._prepare()
        except EngineError:
            raise
        except Exception as e:
            raise ProcessingError(str(e)) from e

    async def _prepare(self) -> None:
        logger.debug("Query %s: processing data", self.id)
        self._status("Processing Data...")
        self.reprepare = False

        qdata = self.qdata
        if qdata is None:
            return

        results = await self._pipeline.run(qdata)
        if self._stopping():
            return

        output = await self._preprocessors.apply(qdata, results)
        if self._stopping():
            return
        self.output = output

        if self.on_output is not None:
            self.on_output(qdata, output)
