"""
batchloader.base
~~~~~~~~~~~~~~~~

Loader collects keys requested by concurrent callers into batches and
calls fetch function once per batch. Every key has a cell in the loader's
cache, so the same key is never fetched twice until it is cleared::

    def fetch_users(ids):
        users = db.get_users(ids)
        return [users.get(i) for i in ids], None

    loader = Loader(fetch_users, batch_capacity=100)
    loader.load(1)

Batch is dispatched when it reaches ``batch_capacity`` keys or when ``wait``
seconds have passed since its first key was added, whichever happens first.

Fetch function receives a list of distinct keys and returns
``(values, errors)`` pair of sequences aligned with keys. ``errors`` may be
``None`` when there are no errors. Raising an exception (or returning a
single error for several keys) fails the whole batch.

Errors are cached the same way as values.
"""

import abc
import logging
import time

from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ContextManager,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from .batch import Batch, Cell, K, Signal, V
from .error import BatchLoaderError, FetchContractError, LoadTimeout

if TYPE_CHECKING:
    from .telemetry.prometheus import LoaderMetrics


log = logging.getLogger(__name__)

DEFAULT_WAIT = 0.016

FetchFn = Callable[[List[K]], Any]
LoadAllResult = Tuple[List[Optional[V]], List[Optional[BaseException]]]


class BaseLoader(abc.ABC, Generic[K, V]):
    _lock: ContextManager

    def __init__(
        self,
        fetch: FetchFn,
        *,
        batch_capacity: Optional[int] = None,
        wait: float = DEFAULT_WAIT,
        name: Optional[str] = None,
        metrics: Optional["LoaderMetrics"] = None,
    ) -> None:
        if batch_capacity is not None and batch_capacity < 1:
            raise ValueError(
                "batch_capacity should be a positive integer, "
                "got {!r}".format(batch_capacity)
            )
        if wait < 0:
            raise ValueError("wait can't be negative, got {!r}".format(wait))
        self.fetch = fetch
        self.batch_capacity = batch_capacity
        self.wait = wait
        self.name = name or getattr(
            fetch, "__qualname__", type(fetch).__qualname__
        )
        self.metrics = metrics

        self._cache: Dict[K, Cell[V]] = {}
        self._batch: Optional[Batch[K, V]] = None

    def __repr__(self) -> str:
        return "{}({!r}, batch_capacity={!r}, wait={!r})".format(
            type(self).__name__, self.name, self.batch_capacity, self.wait
        )

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: K) -> bool:
        return key in self._cache

    @abc.abstractmethod
    def _new_signal(self) -> Signal:
        raise NotImplementedError

    @abc.abstractmethod
    def _start_timer(self, batch: Batch[K, V]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _cancel_timer(self, batch: Batch[K, V]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _dispatch_now(self, batch: Batch[K, V]) -> None:
        """Runs fetch for the closed batch without blocking the caller"""
        raise NotImplementedError

    def _resolve(self, key: K) -> Cell[V]:
        full = None
        with self._lock:
            cell = self._cache.get(key)
            if cell is not None:
                hit = True
            else:
                hit = False
                batch = self._batch
                if batch is None:
                    batch = self._batch = Batch(self._new_signal())
                    self._start_timer(batch)
                cell = self._cache[key] = batch.add(key)
                if (
                    self.batch_capacity is not None
                    and len(batch) >= self.batch_capacity
                ):
                    self._close(batch)
                    full = batch

        if self.metrics is not None:
            self.metrics.track(hits=int(hit), misses=int(not hit))
        if full is not None:
            log.debug(
                "%s: batch of %d keys is full, dispatching",
                self.name,
                len(full),
            )
            self._dispatch_now(full)
        return cell

    def _close(self, batch: Batch[K, V]) -> None:
        # must be called with the lock held
        batch.closed = True
        if self._batch is batch:
            self._batch = None
        self._cancel_timer(batch)

    def _expire(self, batch: Batch[K, V]) -> bool:
        """Closes batch when its wait window is over

        Returns False if the batch was already closed by reaching capacity.
        """
        with self._lock:
            if batch.closed:
                return False
            self._close(batch)
        log.debug(
            "%s: wait window is over, dispatching %d keys",
            self.name,
            len(batch),
        )
        return True

    def _complete(
        self,
        batch: Batch[K, V],
        result: Any,
        error: Optional[BaseException],
        start_time: float,
    ) -> None:
        duration = time.perf_counter() - start_time
        try:
            if error is not None:
                log.debug("%s: fetch failed: %r", self.name, error)
                batch.fail(error)
            else:
                try:
                    batch.fill(result)
                except FetchContractError as exc:
                    self._violation(batch, exc)
                except Exception as exc:
                    violation = FetchContractError(
                        "Can't match fetch result with keys: {!r}".format(exc)
                    )
                    violation.__cause__ = exc
                    self._violation(batch, violation)
            if self.metrics is not None:
                self.metrics.observe_batch(len(batch), duration)
        finally:
            batch.done.set()

    def _violation(
        self, batch: Batch[K, V], error: FetchContractError
    ) -> None:
        log.error("%s: %s (keys: %r)", self.name, error.message, batch.keys)
        # cells may be partially filled already
        for cell in batch.cells:
            cell.value = None
        batch.fail(error)

    def _abort(self, batch: Batch[K, V], error: BatchLoaderError) -> None:
        """Releases callers of the batch whose fetch didn't finish

        Its keys are removed from the cache, so they are fetched again
        by the next load.
        """
        with self._lock:
            for key, cell in zip(batch.keys, batch.cells):
                if self._cache.get(key) is cell:
                    del self._cache[key]
        log.warning("%s: %s (keys: %r)", self.name, error, batch.keys)
        batch.fail(error)
        batch.done.set()

    def _collect(
        self, keys: Sequence[K], cells: Sequence[Cell[V]]
    ) -> LoadAllResult:
        values: List[Optional[V]] = []
        errors: List[Optional[BaseException]] = []
        for key, cell in zip(keys, cells):
            if cell.pending:
                values.append(None)
                errors.append(LoadTimeout(key))
            elif cell.error is not None:
                values.append(None)
                errors.append(cell.error)
            else:
                values.append(cell.value)
                errors.append(None)
        return values, errors

    def prime(self, key: K, value: V) -> bool:
        """Stores value for the key unless the key is already known

        Returns True when the value was stored.
        """
        with self._lock:
            if key in self._cache:
                return False
            self._cache[key] = Cell.resolved(value)
            return True

    def prime_many(self, items: Mapping[K, V]) -> None:
        for key, value in items.items():
            self.prime(key, value)

    def clear(self, key: K) -> None:
        """Forgets the key, next load will fetch it again

        Callers which are already waiting for this key still receive the
        result of the current fetch, but it is not stored in the cache.
        """
        with self._lock:
            self._cache.pop(key, None)

    def clear_all(self) -> None:
        with self._lock:
            self._cache.clear()

    def _resolve_many(
        self, keys: Iterable[K]
    ) -> Tuple[List[K], List[Cell[V]]]:
        keys = list(keys)
        return keys, [self._resolve(key) for key in keys]
