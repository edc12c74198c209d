import time
import inspect
import contextlib

from asyncio import (
    CancelledError,
    Event,
    Task,
    TimeoutError as AsyncIOTimeoutError,
    ensure_future,
    get_running_loop,
    wait,
    wait_for,
)
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Iterable,
    Optional,
    Sequence,
    Set,
)

from .base import DEFAULT_WAIT, BaseLoader, FetchFn, LoadAllResult
from .batch import Batch, Cell, K, V
from .error import BatchLoaderError, LoadTimeout

if TYPE_CHECKING:
    from .telemetry.prometheus import LoaderMetrics


class AsyncLoader(BaseLoader[K, V]):
    """AsyncLoader collects keys on the running asyncio event loop.

    Fetch function can be either a coroutine function or a regular
    function - its result is awaited only if it is awaitable. Keys are
    collected without any awaits in between, so no lock is needed.

    Cancelling a task which waits for a key doesn't cancel the fetch and
    doesn't affect other tasks waiting for the same key.

    :param fetch: fetch function
    :param batch_capacity: maximum number of keys per fetch call
    :param wait: seconds to collect keys before calling fetch function
    :param name: name of the loader, used in logs and task names
    :param metrics: :py:class:`LoaderMetrics` to report to
    """

    def __init__(
        self,
        fetch: FetchFn,
        *,
        batch_capacity: Optional[int] = None,
        wait: float = DEFAULT_WAIT,
        name: Optional[str] = None,
        metrics: Optional["LoaderMetrics"] = None,
    ) -> None:
        super().__init__(
            fetch,
            batch_capacity=batch_capacity,
            wait=wait,
            name=name,
            metrics=metrics,
        )
        self._lock = contextlib.nullcontext()
        self._tasks: Set[Task] = set()

    def _new_signal(self) -> Event:
        return Event()

    def _start_timer(self, batch: Batch[K, V]) -> None:
        loop = get_running_loop()
        batch.timer = loop.call_later(self.wait, self._on_timer, batch)

    def _cancel_timer(self, batch: Batch[K, V]) -> None:
        if batch.timer is not None:
            batch.timer.cancel()

    def _on_timer(self, batch: Batch[K, V]) -> None:
        if self._expire(batch):
            self._dispatch_now(batch)

    def _dispatch_now(self, batch: Batch[K, V]) -> None:
        loop = get_running_loop()
        task = loop.create_task(
            self._dispatch(batch), name="{}-fetch".format(self.name)
        )
        # event loop keeps only weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, batch: Batch[K, V]) -> None:
        start_time = time.perf_counter()
        try:
            result = self.fetch(list(batch.keys))
            if inspect.isawaitable(result):
                result = await result
        except CancelledError:
            self._abort(batch, BatchLoaderError("fetch was cancelled"))
            raise
        except Exception as exc:
            self._complete(batch, None, exc, start_time)
        else:
            self._complete(batch, result, None, start_time)

    async def _wait(
        self, key: K, cell: Cell[V], timeout: Optional[float]
    ) -> Optional[V]:
        if cell.pending:
            assert isinstance(cell.done, Event)
            try:
                await wait_for(cell.done.wait(), timeout)
            except AsyncIOTimeoutError:
                raise LoadTimeout(key) from None
        return cell.result()

    async def _wait_all(
        self,
        keys: Sequence[K],
        cells: Sequence[Cell[V]],
        timeout: Optional[float],
    ) -> LoadAllResult:
        signals = {cell.done for cell in cells if cell.pending}
        if signals:
            waiters = [
                ensure_future(signal.wait())  # type: ignore[union-attr]
                for signal in signals
            ]
            try:
                await wait(waiters, timeout=timeout)
            finally:
                for waiter in waiters:
                    waiter.cancel()
        return self._collect(keys, cells)

    async def load(
        self, key: K, timeout: Optional[float] = None
    ) -> Optional[V]:
        """Returns value for the key or raises its error

        :raises LoadTimeout: if the result is not ready in ``timeout``
                             seconds, the key is still being loaded
        """
        cell = self._resolve(key)
        return await self._wait(key, cell, timeout)

    def load_thunk(
        self, key: K, timeout: Optional[float] = None
    ) -> Callable[[], Awaitable[Optional[V]]]:
        """Adds the key to the batch now, returns a function to await
        the result later
        """
        cell = self._resolve(key)

        def thunk() -> Awaitable[Optional[V]]:
            return self._wait(key, cell, timeout)

        return thunk

    async def load_all(
        self, keys: Iterable[K], timeout: Optional[float] = None
    ) -> LoadAllResult:
        """Returns values and errors in the same order as the keys

        Keys which weren't loaded in ``timeout`` seconds have
        :py:class:`LoadTimeout` in their errors.
        """
        keys, cells = self._resolve_many(keys)
        return await self._wait_all(keys, cells, timeout)

    def load_all_thunk(
        self, keys: Iterable[K], timeout: Optional[float] = None
    ) -> Callable[[], Awaitable[LoadAllResult]]:
        keys, cells = self._resolve_many(keys)

        def thunk() -> Awaitable[LoadAllResult]:
            return self._wait_all(keys, cells, timeout)

        return thunk
