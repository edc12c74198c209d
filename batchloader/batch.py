from typing import (
    Any,
    Dict,
    Generic,
    Hashable,
    List,
    Optional,
    Protocol,
    TypeVar,
)

from .error import FetchContractError


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class Signal(Protocol):
    """One-shot completion flag, ``threading.Event`` or ``asyncio.Event``"""

    def is_set(self) -> bool: ...

    def set(self) -> None: ...


class Cell(Generic[V]):
    """Result of a single key

    Pending while its ``done`` signal is not set, afterwards it holds either
    a value or an error and never changes again.
    """

    __slots__ = ("done", "value", "error")

    def __init__(self, done: Optional[Signal] = None) -> None:
        self.done = done
        self.value: Optional[V] = None
        self.error: Optional[BaseException] = None

    @classmethod
    def resolved(cls, value: V) -> "Cell[V]":
        cell: Cell[V] = cls()
        cell.value = value
        return cell

    def __repr__(self) -> str:
        if self.pending:
            return "<Cell pending>"
        elif self.error is not None:
            return "<Cell error={!r}>".format(self.error)
        return "<Cell value={!r}>".format(self.value)

    @property
    def pending(self) -> bool:
        return self.done is not None and not self.done.is_set()

    def result(self) -> Optional[V]:
        if self.error is not None:
            raise self.error
        return self.value


class Batch(Generic[K, V]):
    """Keys collected for a single fetch call

    ``keys`` and ``cells`` are parallel lists, position of the key in the
    batch is the position of its result in the fetched sequences.
    """

    __slots__ = ("keys", "cells", "done", "closed", "timer", "_index")

    def __init__(self, done: Signal) -> None:
        self.keys: List[K] = []
        self.cells: List[Cell[V]] = []
        self.done = done
        self.closed = False
        self.timer: Any = None
        self._index: Dict[K, int] = {}

    def __len__(self) -> int:
        return len(self.keys)

    def __repr__(self) -> str:
        return "<Batch keys={!r} closed={!r}>".format(self.keys, self.closed)

    def add(self, key: K) -> Cell[V]:
        assert not self.closed, "Batch is already closed"
        pos = self._index.get(key)
        if pos is not None:
            return self.cells[pos]
        cell: Cell[V] = Cell(self.done)
        self._index[key] = len(self.keys)
        self.keys.append(key)
        self.cells.append(cell)
        return cell

    def fail(self, error: BaseException) -> None:
        for cell in self.cells:
            cell.error = error

    def fill(self, result: Any) -> None:
        """Distributes fetch function result between cells

        :param result: ``(values, errors)`` pair, where ``errors`` is either
                       aligned with the keys, holds a single error for the
                       whole batch, or is ``None``
        :raises FetchContractError: when result can't be aligned with keys
        """
        if not isinstance(result, tuple) or len(result) != 2:
            raise FetchContractError(
                "Fetch function must return (values, errors) pair, "
                "got {!r}".format(type(result).__name__)
            )
        values, errors = result
        size = len(self.keys)
        values_len = _length(values, "values")
        errors_len = _length(errors, "errors")

        if (
            errors is not None
            and errors_len == 1
            and size > 1
            and errors[0] is not None
        ):
            self.fail(errors[0])
            return

        if values is None:
            values, values_len = [None] * size, size
        if errors is None:
            errors, errors_len = [None] * size, size
        if values_len != size or errors_len != size:
            raise FetchContractError(
                "Fetch function returned {} values and {} errors "
                "for {} keys".format(values_len, errors_len, size)
            )

        for cell, value, error in zip(self.cells, values, errors):
            if error is None:
                cell.value = value
            else:
                cell.error = error


def _length(items: Any, what: str) -> Optional[int]:
    if items is None:
        return None
    try:
        return len(items)
    except TypeError:
        raise FetchContractError(
            "Fetch function must return {} as a sequence, "
            "got {!r}".format(what, type(items).__name__)
        ) from None
