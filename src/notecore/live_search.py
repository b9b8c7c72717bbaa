"""Search-as-you-type on top of the storage coordinator.

Each keystroke submits the whole query text. Only the most recently
submitted query may produce results: an older request still waiting out
its debounce is cancelled, and one already running on the storage worker
has its result dropped when it arrives.
"""
import asyncio
import logging
from typing import List, Optional

from notecore.coordinator import StorageCoordinator
from notecore.models.schema import SearchHit

logger = logging.getLogger(__name__)


class LiveSearch:
    """Debounced, cancellable, last-submitted-wins search session.

    Args:
        coordinator: A started StorageCoordinator
        debounce_ms: Quiet period before a query is sent to the worker;
            defaults to ``live_search_debounce_ms``
        limit: Result limit per query; defaults to ``search_limit``
    """

    def __init__(
        self,
        coordinator: StorageCoordinator,
        debounce_ms: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        self.coordinator = coordinator
        cfg = coordinator.config
        self.debounce_ms = cfg.live_search_debounce_ms if debounce_ms is None else debounce_ms
        self.limit = limit
        self.generation = 0
        self._task: Optional[asyncio.Task] = None

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    async def _run(self, query: str, regex: bool) -> List[SearchHit]:
        if self.debounce_ms > 0:
            await asyncio.sleep(self.debounce_ms / 1000.0)
        return await self.coordinator.search(query, limit=self.limit, regex=regex)

    async def submit(self, query: str, regex: bool = False) -> Optional[List[SearchHit]]:
        """Search for ``query`` unless a newer query arrives first.

        Returns:
            The hits, or None when this query was superseded before its
            results could be shown.

        Raises:
            QuerySyntaxError: The query is malformed and still current.
        """
        self.generation += 1
        generation = self.generation
        if self._task is not None and not self._task.done():
            self._task.cancel()
        task = asyncio.ensure_future(self._run(query, regex))
        self._task = task
        try:
            hits = await task
        except asyncio.CancelledError:
            if not self.is_current(generation):
                return None
            raise
        except Exception:
            if not self.is_current(generation):
                return None
            raise
        if not self.is_current(generation):
            logger.debug(f"Dropped stale results for {query!r}")
            return None
        return hits

    def cancel(self) -> None:
        """Invalidate whatever is in flight (e.g. the search box was closed)."""
        self.generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
