"""Lazy, single-pass result sequences handed to callers."""

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Callable, Generic, NoReturn, Optional, TypeVar

from sqlstream.exceptions import MultipleResultsFoundError, NotFoundError, UnsupportedOperationError

if TYPE_CHECKING:
    from types import TracebackType

__all__ = ("ResultSequence",)

T = TypeVar("T")
U = TypeVar("U")


class ResultSequence(Generic[T]):
    """Forward-only iterator over the results of one statement.

    Rows are produced on demand. The underlying resources are released once
    the sequence is exhausted, fails or is closed, whichever comes first.
    Closing early is always safe.

    Operations that need the whole result up front (``len()``, indexing,
    ``reversed()``) and iterating a sequence a second time raise
    :class:`~sqlstream.exceptions.UnsupportedOperationError`.
    """

    __slots__ = ("_closed", "_iterated", "_iterator", "_on_close")

    def __init__(self, iterator: "Iterator[T]", on_close: "Optional[Callable[[], None]]" = None) -> None:
        self._iterator = iterator
        self._on_close = on_close
        self._closed = False
        self._iterated = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __iter__(self) -> "ResultSequence[T]":
        if self._closed:
            msg = "Result sequence is closed and cannot be iterated again"
            raise UnsupportedOperationError(msg)
        if self._iterated:
            msg = "Result sequence can only be iterated once"
            raise UnsupportedOperationError(msg)
        self._iterated = True
        return self

    def __next__(self) -> T:
        if self._closed:
            raise StopIteration
        try:
            return next(self._iterator)
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        """Release the resources behind the sequence. Repeated calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "ResultSequence[T]":
        return self

    def __exit__(
        self,
        exc_type: "Optional[type[BaseException]]",
        exc_val: "Optional[BaseException]",
        exc_tb: "Optional[TracebackType]",
    ) -> None:
        self.close()

    def _claim(self) -> "Iterator[T]":
        iter(self)
        return self._pull()

    def _pull(self) -> "Iterator[T]":
        while True:
            try:
                item = self.__next__()
            except StopIteration:
                return
            yield item

    def map(self, function: "Callable[[T], U]") -> "ResultSequence[U]":
        """Lazily apply ``function`` to every element."""
        source = self._claim()
        return ResultSequence((function(item) for item in source), self.close)

    def filter(self, predicate: "Callable[[T], bool]") -> "ResultSequence[T]":
        """Lazily keep the elements for which ``predicate`` is true."""
        source = self._claim()
        return ResultSequence((item for item in source if predicate(item)), self.close)

    def first(self) -> Optional[T]:
        """Return the first element, or ``None`` when there is none, and close the sequence."""
        with self:
            for item in self:
                return item
        return None

    def one(self) -> T:
        """Return the only element and close the sequence.

        Raises:
            NotFoundError: If the sequence is empty
            MultipleResultsFoundError: If there is more than one element
        """
        with self:
            iterator = iter(self)
            try:
                item = next(iterator)
            except StopIteration:
                msg = "No result found when exactly one was expected"
                raise NotFoundError(msg) from None
            try:
                next(iterator)
            except StopIteration:
                return item
            msg = "Multiple results found when exactly one was expected"
            raise MultipleResultsFoundError(msg)

    def all(self) -> "list[T]":
        """Collect the remaining elements into a list and close the sequence."""
        with self:
            return list(self)

    def for_each(self, action: "Callable[[T], Any]") -> None:
        """Call ``action`` for every element, then close the sequence."""
        with self:
            for item in self:
                action(item)

    def _unsupported(self, operation: str) -> NoReturn:
        msg = f"{operation} is not supported on a lazily evaluated result sequence"
        raise UnsupportedOperationError(msg)

    def __bool__(self) -> bool:
        return True

    def __len__(self) -> int:
        self._unsupported("len()")

    def __getitem__(self, index: Any) -> NoReturn:
        self._unsupported("Indexing")

    def __reversed__(self) -> NoReturn:
        self._unsupported("reversed()")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<ResultSequence {state}>"
