import inspect
import threading
import time

from functools import partial
from typing import (
    TYPE_CHECKING,
    Callable,
    Iterable,
    Optional,
    Sequence,
)

from .base import DEFAULT_WAIT, BaseLoader, FetchFn, LoadAllResult
from .batch import Batch, Cell, K, V
from .error import BatchLoaderError, LoadTimeout

if TYPE_CHECKING:
    from .telemetry.prometheus import LoaderMetrics


class Loader(BaseLoader[K, V]):
    """Loader for multi-threaded programs

    Fetch function is called in a separate thread: in a timer thread when
    the wait window is over or in a new thread when the batch is full.
    Callers block until the result for their key is ready.

    :param fetch: synchronous fetch function
    :param batch_capacity: maximum number of keys per fetch call
    :param wait: seconds to collect keys before calling fetch function
    :param name: name of the loader, used in logs and thread names
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
        self._lock = threading.Lock()

    def _new_signal(self) -> threading.Event:
        return threading.Event()

    def _start_timer(self, batch: Batch[K, V]) -> None:
        timer = threading.Timer(self.wait, self._on_timer, args=(batch,))
        timer.name = "{}-wait".format(self.name)
        timer.daemon = True
        batch.timer = timer
        timer.start()

    def _cancel_timer(self, batch: Batch[K, V]) -> None:
        if batch.timer is not None:
            batch.timer.cancel()

    def _on_timer(self, batch: Batch[K, V]) -> None:
        if self._expire(batch):
            self._dispatch(batch)

    def _dispatch_now(self, batch: Batch[K, V]) -> None:
        thread = threading.Thread(
            target=self._dispatch,
            args=(batch,),
            name="{}-fetch".format(self.name),
            daemon=True,
        )
        thread.start()

    def _dispatch(self, batch: Batch[K, V]) -> None:
        start_time = time.perf_counter()
        try:
            result = self.fetch(list(batch.keys))
            if inspect.isawaitable(result):
                if inspect.iscoroutine(result):
                    result.close()
                raise TypeError(
                    "{!r} returned awaitable object, use AsyncLoader "
                    "for asynchronous fetch functions".format(self.fetch)
                )
        except Exception as exc:
            self._complete(batch, None, exc, start_time)
        except BaseException as exc:
            error = BatchLoaderError("fetch was interrupted: {!r}".format(exc))
            error.__cause__ = exc
            self._abort(batch, error)
            raise
        else:
            self._complete(batch, result, None, start_time)

    def _wait(
        self, key: K, cell: Cell[V], timeout: Optional[float]
    ) -> Optional[V]:
        if cell.pending:
            assert cell.done is not None
            if not cell.done.wait(timeout):  # type: ignore[attr-defined]
                raise LoadTimeout(key)
        return cell.result()

    def _wait_all(
        self,
        keys: Sequence[K],
        cells: Sequence[Cell[V]],
        timeout: Optional[float],
    ) -> LoadAllResult:
        deadline = None if timeout is None else time.monotonic() + timeout
        for cell in cells:
            if not cell.pending:
                continue
            remaining = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0)
            cell.done.wait(remaining)  # type: ignore[union-attr]
        return self._collect(keys, cells)

    def load(self, key: K, timeout: Optional[float] = None) -> Optional[V]:
        """Returns value for the key or raises its error

        :raises LoadTimeout: if the result is not ready in ``timeout``
                             seconds, the key is still being loaded
        """
        cell = self._resolve(key)
        return self._wait(key, cell, timeout)

    def load_thunk(
        self, key: K, timeout: Optional[float] = None
    ) -> Callable[[], Optional[V]]:
        """Adds the key to the batch now, thunk waits for the result later

        ``timeout`` is counted from the moment thunk is called.
        """
        cell = self._resolve(key)
        return partial(self._wait, key, cell, timeout)

    def load_all(
        self, keys: Iterable[K], timeout: Optional[float] = None
    ) -> LoadAllResult:
        """Returns values and errors in the same order as the keys

        Keys which weren't loaded in ``timeout`` seconds have
        :py:class:`LoadTimeout` in their errors.
        """
        keys, cells = self._resolve_many(keys)
        return self._wait_all(keys, cells, timeout)

    def load_all_thunk(
        self, keys: Iterable[K], timeout: Optional[float] = None
    ) -> Callable[[], LoadAllResult]:
        keys, cells = self._resolve_many(keys)
        return partial(self._wait_all, keys, cells, timeout)
