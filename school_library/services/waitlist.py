import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..commands import JoinWaitlistCommand, RemoveFromWaitlistCommand
from ..config import settings
from ..errors import DuplicateError, NotFoundError
from ..models import (
    Loan,
    LoanStatus,
    Notification,
    NotificationType,
    WaitlistEntry,
    to_iso,
    utcnow,
)
from ..store import SQLiteStore
from .lifecycle import find_open_loan
from .stock import StockLedger

logger = logging.getLogger(__name__)

ASSIGNED_MESSAGE = (
    'The book you were waiting for, "{title}", was returned! '
    "A loan request has been created for you automatically."
)


class DispatchResult(str, Enum):
    REASSIGNED = "reassigned"
    RESTOCKED = "restocked"


@dataclass
class DispatchOutcome:
    """What happened to a freed copy: exactly one of reassign or restock."""
    book_id: int
    result: DispatchResult
    loan: Optional[Loan] = None
    consumed_entry: Optional[WaitlistEntry] = None
    notification: Optional[Notification] = None
    available: Optional[int] = None
    skipped: List[WaitlistEntry] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "book_id": self.book_id,
            "result": self.result.value,
            "loan": self.loan.to_dict() if self.loan else None,
            "consumed_entry": self.consumed_entry.to_dict() if self.consumed_entry else None,
            "notification": self.notification.to_dict() if self.notification else None,
            "available": self.available,
            "skipped_borrowers": [e.borrower_id for e in self.skipped],
        }


class WaitlistDispatcher:
    """Hands a freed copy to the next eligible reader in line, or back to the shelf."""

    def __init__(self, store: SQLiteStore, stock: StockLedger,
                 clock: Callable[[], datetime] = utcnow, loan_days: Optional[int] = None) -> None:
        self.store = store
        self.stock = stock
        self.clock = clock
        self.loan_days = loan_days or settings.default_loan_days

    def _book(self, book_id: int) -> dict:
        book = self.store.get("books", book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found.")
        return book

    def queue(self, book_id: int) -> List[WaitlistEntry]:
        """Entries for a book, oldest first, with 1-based positions."""
        rows = self.store.find("waitlist", {"book_id": book_id}, order_by=["joined_at", "id"])
        entries = [WaitlistEntry.from_row(r) for r in rows]
        for position, entry in enumerate(entries, 1):
            entry.position = position
        return entries

    # ------------------------- Dispatch ------------------------- #
    def dispatch(self, book_id: int, now: Optional[datetime] = None) -> DispatchOutcome:
        """Reassign the freed copy to the oldest eligible entry, else restock.

        A reader who already holds an open loan is not eligible; their entry
        keeps its place for a later return.
        """
        now = now or self.clock()
        with self.store.transaction():
            book = self._book(book_id)
            skipped: List[WaitlistEntry] = []
            for entry in self.queue(book_id):
                if find_open_loan(self.store, entry.borrower_id) is not None:
                    logger.warning(
                        f"Waitlist entry {entry.id} skipped: reader {entry.borrower_id} already has an open loan"
                    )
                    skipped.append(entry)
                    continue

                loan_row = self.store.insert("loans", {
                    "book_id": book_id,
                    "borrower_id": entry.borrower_id,
                    "requested_at": to_iso(now),
                    "due_at": to_iso(now + timedelta(days=self.loan_days)),
                    "status": LoanStatus.REQUESTED.value,
                    "reserved": 1,
                })
                self.store.delete("waitlist", entry.id)
                notification_row = self.store.insert("notifications", {
                    "borrower_id": entry.borrower_id,
                    "type": NotificationType.LOAN_ASSIGNED.value,
                    "message": ASSIGNED_MESSAGE.format(title=book["title"]),
                    "loan_id": loan_row["id"],
                    "book_id": book_id,
                    "created_at": to_iso(now),
                    "read": 0,
                })
                logger.info(
                    f"Book {book_id} reassigned to waitlisted reader {entry.borrower_id} (loan {loan_row['id']})"
                )
                return DispatchOutcome(
                    book_id=book_id,
                    result=DispatchResult.REASSIGNED,
                    loan=Loan.from_row(loan_row),
                    consumed_entry=entry,
                    notification=Notification.from_row(notification_row),
                    available=int(book["available"]),
                    skipped=skipped,
                )

            available = self.stock.increment(book_id)
            logger.info(f"Book {book_id} restocked, {available} available")
            return DispatchOutcome(
                book_id=book_id,
                result=DispatchResult.RESTOCKED,
                available=available,
                skipped=skipped,
            )

    # ------------------------- Queue management ------------------------- #
    def join(self, command: JoinWaitlistCommand, now: Optional[datetime] = None) -> WaitlistEntry:
        """Put a reader in line for a book, regardless of its current stock."""
        now = now or self.clock()
        with self.store.transaction():
            self._book(command.book_id)
            existing = self.store.find_one(
                "waitlist", {"book_id": command.book_id, "borrower_id": command.borrower_id}
            )
            if existing is not None:
                raise DuplicateError(
                    f"Reader {command.borrower_id} is already on the waitlist for book {command.book_id}."
                )
            row = self.store.insert("waitlist", {
                "book_id": command.book_id,
                "borrower_id": command.borrower_id,
                "joined_at": to_iso(now),
            })
            entry = WaitlistEntry.from_row(row)
            entry.position = self.store.count("waitlist", {"book_id": command.book_id})
        logger.info(f"Reader {command.borrower_id} joined the waitlist for book {command.book_id}")
        return entry

    def remove(self, command: RemoveFromWaitlistCommand) -> None:
        if not self.store.delete("waitlist", command.entry_id):
            raise NotFoundError(f"Waitlist entry {command.entry_id} not found.")
        logger.info(f"Waitlist entry {command.entry_id} removed")

    def list_waitlist(self, book_id: Optional[int] = None) -> List[WaitlistEntry]:
        if book_id is not None:
            return self.queue(book_id)
        rows = self.store.find("waitlist", order_by=["joined_at", "id"])
        positions: Dict[int, int] = {}
        entries = []
        for row in rows:
            entry = WaitlistEntry.from_row(row)
            positions[entry.book_id] = positions.get(entry.book_id, 0) + 1
            entry.position = positions[entry.book_id]
            entries.append(entry)
        return entries

    def entries_for_reader(self, borrower_id: str) -> List[WaitlistEntry]:
        entries = []
        for row in self.store.find("waitlist", {"borrower_id": borrower_id}, order_by=["joined_at", "id"]):
            book_queue = self.queue(row["book_id"])
            entries.extend(e for e in book_queue if e.id == row["id"])
        return entries

    def position_of(self, borrower_id: str, book_id: int) -> Optional[int]:
        for entry in self.queue(book_id):
            if entry.borrower_id == borrower_id:
                return entry.position
        return None
