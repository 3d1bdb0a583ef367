"""
Query cache for the dashboard

Entries are keyed by tuples such as ('admin', 'vf', 'stats'). Data stays fresh
until invalidated (stale time is infinite by default), failed fetches are not
retried, and concurrent fetches of one key share a single in-flight task.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

QueryKey = Tuple[Any, ...]
Fetcher = Callable[[], Awaitable[Any]]


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    return tuple(key[:len(prefix)]) == tuple(prefix)


@dataclass
class QueryState:
    key: QueryKey
    fetcher: Optional[Fetcher] = None
    data: Any = None
    error: Optional[BaseException] = None
    updated_at: Optional[float] = None
    invalidated: bool = False
    in_flight: Optional['asyncio.Task'] = None
    observers: int = 0
    # bumped when a refetch supersedes the running fetch
    generation: int = 0

    @property
    def has_data(self) -> bool:
        return self.updated_at is not None


@dataclass
class QueryObserver:
    """An active subscription; active queries refetch when invalidated"""
    client: 'QueryClient'
    key: QueryKey
    refetch_interval: Optional[float] = None
    _task: Optional['asyncio.Task'] = field(default=None, repr=False)
    active: bool = True

    @property
    def data(self) -> Any:
        return self.client.get_query_data(self.key)

    @property
    def error(self) -> Optional[BaseException]:
        state = self.client.get_query_state(self.key)
        return state.error if state else None

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        state = self.client.get_query_state(self.key)
        if state is not None and state.observers > 0:
            state.observers -= 1


class QueryClient:
    def __init__(self, stale_time: float = math.inf, clock: Callable[[], float] = time.monotonic):
        self.stale_time = stale_time
        self._clock = clock
        self._queries: Dict[QueryKey, QueryState] = {}

    def _state(self, key: QueryKey) -> QueryState:
        key = tuple(key)
        state = self._queries.get(key)
        if state is None:
            state = QueryState(key=key)
            self._queries[key] = state
        return state

    def get_query_state(self, key: QueryKey) -> Optional[QueryState]:
        return self._queries.get(tuple(key))

    def get_query_data(self, key: QueryKey) -> Any:
        state = self.get_query_state(key)
        return state.data if state else None

    def set_query_data(self, key: QueryKey, data: Any) -> Any:
        """Replace cached data; a callable receives the previous value"""
        state = self._state(key)
        value = data(state.data) if callable(data) else data
        state.data = value
        state.error = None
        state.updated_at = self._clock()
        state.invalidated = False
        return value

    def is_stale(self, key: QueryKey, stale_time: Optional[float] = None) -> bool:
        state = self.get_query_state(key)
        if state is None or not state.has_data or state.invalidated:
            return True
        limit = self.stale_time if stale_time is None else stale_time
        return (self._clock() - state.updated_at) >= limit

    async def _run(self, state: QueryState, generation: int) -> Any:
        try:
            data = await state.fetcher()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation == state.generation:
                state.error = e
            logger.debug(f"Query {state.key} failed: {e}")
            raise
        finally:
            if generation == state.generation:
                state.in_flight = None
        if generation != state.generation:
            # superseded; the newer fetch owns the cache entry
            return data
        state.data = data
        state.error = None
        state.updated_at = self._clock()
        state.invalidated = False
        return data

    async def fetch_query(self, key: QueryKey, fetcher: Optional[Fetcher] = None,
                          stale_time: Optional[float] = None, cancel_refetch: bool = False) -> Any:
        """
        Return fresh cached data, join an in-flight fetch, or start a new one

        With cancel_refetch a running fetch is superseded rather than joined:
        its result is dropped and a new fetch fills the cache.
        """
        state = self._state(key)
        if fetcher is not None:
            state.fetcher = fetcher
        if state.fetcher is None:
            raise ValueError(f"No fetcher registered for query {state.key}")

        if state.in_flight is not None:
            if not cancel_refetch:
                return await asyncio.shield(state.in_flight)
            state.generation += 1
        elif not self.is_stale(state.key, stale_time):
            return state.data

        state.in_flight = asyncio.ensure_future(self._run(state, state.generation))
        return await asyncio.shield(state.in_flight)

    async def refetch_query(self, key: QueryKey) -> Any:
        state = self._state(key)
        state.invalidated = True
        return await self.fetch_query(state.key, cancel_refetch=True)

    def watch(self, key: QueryKey, fetcher: Fetcher, refetch_interval: Optional[float] = None) -> QueryObserver:
        """
        Subscribe to a query and fetch it in the background

        With refetch_interval (seconds) the query is refetched on that period
        until the observer unsubscribes.
        """
        state = self._state(key)
        state.fetcher = fetcher
        state.observers += 1
        observer = QueryObserver(self, state.key, refetch_interval)
        observer._task = asyncio.ensure_future(self._observe(observer))
        return observer

    async def _observe(self, observer: QueryObserver) -> None:
        try:
            await self._fetch_quietly(observer.key)
            if not observer.refetch_interval:
                return
            while observer.active:
                await asyncio.sleep(observer.refetch_interval)
                if observer.active:
                    await self._fetch_quietly(observer.key, force=True)
        except asyncio.CancelledError:
            pass

    async def _fetch_quietly(self, key: QueryKey, force: bool = False) -> None:
        try:
            if force:
                await self.refetch_query(key)
            else:
                await self.fetch_query(key)
        except Exception as e:
            # Kept on the query state for observers to read
            logger.debug(f"Background fetch of {key} failed: {e}")

    def find_queries(self, prefix: QueryKey) -> List[QueryState]:
        return [state for key, state in self._queries.items() if key_matches(key, prefix)]

    async def invalidate_queries(self, prefix: QueryKey) -> None:
        """
        Mark matching queries stale and refetch the ones with active observers

        A fetch already running when the query is invalidated may hold data from
        before the change, so it never marks the entry fresh again.
        """
        refetches = []
        for state in self.find_queries(prefix):
            state.invalidated = True
            if state.observers > 0 and state.fetcher is not None:
                refetches.append(self._fetch_quietly(state.key, force=True))
            elif state.in_flight is not None:
                state.generation += 1
                state.in_flight = None
        if refetches:
            await asyncio.gather(*refetches)

    async def cancel_queries(self, prefix: QueryKey) -> None:
        for state in self.find_queries(prefix):
            task = state.in_flight
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"Cancelled query {state.key} ended with error: {e}")
            state.in_flight = None

    def remove_queries(self, prefix: QueryKey) -> None:
        for state in self.find_queries(prefix):
            del self._queries[state.key]

    def clear(self) -> None:
        self._queries.clear()
