import asyncio
import time
from collections import OrderedDict
from typing import Callable, Generic, Optional, TypeVar

from core.exceptions import RequestNotFoundError
from domain.interfaces import RequestStore
from domain.models import GenerationRequest, GenerationResult

V = TypeVar("V")


class _ExpiringTable(Generic[V]):
    """
    Insertion-ordered mapping mimicking a DB table with a retention policy:
    - at most ``max_entries`` rows, the oldest is evicted first
    - rows older than ``ttl_seconds`` are treated as gone
    """

    def __init__(self, max_entries: int, ttl_seconds: Optional[float], clock: Callable[[], float]):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        # key -> (stored_at, value)
        self.rows: "OrderedDict[str, tuple[float, V]]" = OrderedDict()

    def put(self, key: str, value: V) -> None:
        self.purge_expired()
        self.rows.pop(key, None)
        self.rows[key] = (self.clock(), value)

        while len(self.rows) > self.max_entries:
            self.rows.popitem(last=False)

    def get(self, key: str) -> Optional[V]:
        self.purge_expired()
        row = self.rows.get(key)
        return row[1] if row else None

    def purge_expired(self) -> None:
        if self.ttl_seconds is None:
            return
        cutoff = self.clock() - self.ttl_seconds
        # Rows are in insertion order, so stop at the first fresh one
        while self.rows:
            key, (stored_at, _) = next(iter(self.rows.items()))
            if stored_at > cutoff:
                break
            del self.rows[key]

    def __len__(self) -> int:
        return len(self.rows)


class InMemoryRequestStore(RequestStore):
    """
    Bounded, time-expiring in-memory store for local runs and tests.
    A single asyncio lock serializes access to both tables.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: Optional[float] = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        # request_id -> GenerationRequest
        self.requests: _ExpiringTable[GenerationRequest] = _ExpiringTable(max_entries, ttl_seconds, clock)
        # request_id -> GenerationResult
        self.results: _ExpiringTable[GenerationResult] = _ExpiringTable(max_entries, ttl_seconds, clock)
        self._lock = asyncio.Lock()

    async def save(self, request: GenerationRequest) -> None:
        async with self._lock:
            self.requests.put(request.id, request)

    async def find_by_id(self, request_id: str) -> GenerationRequest:
        async with self._lock:
            request = self.requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(f"request not found: {request_id}")
        return request

    async def save_result(self, result: GenerationResult) -> None:
        async with self._lock:
            self.results.put(result.request_id, result)

    async def find_result_by_request_id(self, request_id: str) -> GenerationResult:
        async with self._lock:
            result = self.results.get(request_id)
        if result is None:
            raise RequestNotFoundError(f"result not found for request: {request_id}")
        return result
