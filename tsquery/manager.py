"""
Keyed query cache.

UI views open queries under their own keys. When a view closes, its Query
is deactivated but kept around: if another view (or the same one, later)
opens an equal spec before the Query's data goes stale, the cached output is
replayed without touching the network. A cached Query drops out as soon as
it reports idle, which happens when one of its timeseries changes.
"""

from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from .events import EventRouter
from .query import OutputCallback, Query, StatusCallback
from .shared.logger import get_logger

logger = get_logger(__name__)

QueryFactory = Callable[..., Query]


class QueryManager:
    """
    Tracks active queries by key and deactivated queries awaiting reuse.
    """

    def __init__(
        self,
        factory: QueryFactory,
        router: Optional[EventRouter] = None,
        max_cached: int = 32,
    ):
        """Initialize the manager.

        Args:
            factory: ``factory(spec, on_output, on_status) -> Query`` (activated)
            router: Event router whose connection status drives staleness
            max_cached: Deactivated queries kept for reuse before the oldest is dropped
        """
        self._factory = factory
        self._router = router
        self.max_cached = max_cached
        self._active: Dict[str, Query] = {}
        # id -> deactivated Query, oldest first
        self._cached: "OrderedDict[str, Query]" = OrderedDict()

        if router is not None:
            router.add_status_listener(self._on_connection_status)

    def __len__(self) -> int:
        return len(self._active)

    def get(self, key: str) -> Optional[Query]:
        return self._active.get(key)

    @property
    def active(self) -> Dict[str, Query]:
        return dict(self._active)

    @property
    def cached(self) -> List[Query]:
        return list(self._cached.values())

    def open(
        self,
        key: str,
        spec: Dict[str, Any],
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> Query:
        """Open (or replace) the query stored under ``key``."""
        if key in self._active:
            self.close(key)

        query = self._take_cached(spec)
        if query is not None:
            logger.debug("Reusing cached query %s for '%s'", query.id, key)
            query.activate(on_output, on_status)
        else:
            query = self._factory(spec, on_output, on_status)
        self._active[key] = query
        return query

    def close(self, key: str) -> None:
        """Deactivate the query under ``key`` and keep it cached."""
        query = self._active.pop(key, None)
        if query is None:
            return
        self._cached[query.id] = query
        query.deactivate(lambda: self._evict(query))

        while len(self._cached) > self.max_cached:
            _, oldest = self._cached.popitem(last=False)
            logger.debug("Dropping cached query %s", oldest.id)
            oldest.close()

    def close_all(self) -> None:
        for key in list(self._active):
            self.close(key)
        for query in list(self._cached.values()):
            query.close()
        self._cached.clear()

    def _take_cached(self, spec: Dict[str, Any]) -> Optional[Query]:
        for qid, query in self._cached.items():
            if not query.closed and query.is_equal(spec):
                del self._cached[qid]
                return query
        return None

    def _evict(self, query: Query) -> None:
        logger.debug("Query %s no longer up to date, evicting", query.id)
        self._cached.pop(query.id, None)

    def _on_connection_status(self, status: Optional[float]) -> None:
        if status is None:
            # Events may be missed from now on
            for query in list(self._active.values()) + list(self._cached.values()):
                query.mark_outdated()
            return
        for key, query in list(self._active.items()):
            if query.outdated:
                logger.debug("Refreshing outdated query '%s' after reconnect", key)
                query.run_query()
