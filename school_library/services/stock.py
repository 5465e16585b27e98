import logging
from typing import Optional

from ..commands import StockCorrectionCommand
from ..errors import NotFoundError, StockAnomalyError, ValidationError
from ..store import SQLiteStore

logger = logging.getLogger(__name__)


class StockLedger:
    """Sole writer of ``books.available``.

    Callers are the loan lifecycle (approve / manual loan), the waitlist
    dispatcher (restock) and explicit librarian corrections. Every change is a
    single guarded UPDATE, never a read followed by a write.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def _book(self, book_id: int) -> dict:
        row = self.store.get("books", book_id)
        if row is None:
            raise NotFoundError(f"Book {book_id} not found.")
        return row

    def available(self, book_id: int) -> int:
        return int(self._book(book_id)["available"])

    def decrement(self, book_id: int, force: bool = False) -> int:
        """Take one copy off the shelf; returns the new available count."""
        with self.store.transaction():
            new_value = self.store.adjust("books", book_id, "available", -1, floor=0)
            if new_value is not None:
                return new_value

            current = self.available(book_id)
            if not force:
                logger.warning(f"Stock anomaly: book {book_id} has {current} available, decrement refused")
                raise StockAnomalyError(
                    f"Book {book_id} has no available copies ({current}); "
                    "the catalog counts may have drifted. Use force to override.",
                    book_id=book_id,
                    available=current,
                )
            new_value = self.store.adjust("books", book_id, "available", -1)
            logger.warning(f"Forced decrement: book {book_id} available now {new_value}")
            return new_value

    def increment(self, book_id: int) -> int:
        """Put one copy back on the shelf, never above the total owned."""
        with self.store.transaction():
            new_value = self.store.adjust("books", book_id, "available", 1, ceiling_column="total")
            if new_value is not None:
                return new_value
            book = self._book(book_id)
            logger.warning(
                f"Restock clamped: book {book_id} already has {book['available']}/{book['total']} available"
            )
            return int(book["available"])

    def correct(self, command: StockCorrectionCommand) -> dict:
        """Manual override of the counts by a librarian."""
        values = {"available": command.available}
        if command.total is not None:
            values["total"] = command.total
        with self.store.transaction():
            book = self._book(command.book_id)
            total: Optional[int] = command.total if command.total is not None else int(book["total"])
            if command.available > total:
                raise ValidationError(f"Available ({command.available}) cannot exceed total ({total}).")
            updated = self.store.update("books", command.book_id, values)
        logger.info(
            f"Stock corrected by {command.acting_staff}: book {command.book_id} "
            f"{book['available']}/{book['total']} -> {updated['available']}/{updated['total']}"
        )
        return updated
