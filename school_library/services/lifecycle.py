"""Loan lifecycle.

    requested --approve--> approved --return--> returned
        |
        +------reject----> rejected

``rejected`` and ``returned`` are terminal. Every transition is a
compare-and-set on the loan's current status, executed in the same store
transaction as the stock change (approve, manual loan) or the waitlist
dispatch (return) it drives.

Loans created by the waitlist are ``reserved``: the returned copy never went
back on the shelf, so approving them does not take stock and rejecting them
hands the copy on again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..commands import (
    ApproveCommand,
    ManualLoanCommand,
    RejectCommand,
    RequestLoanCommand,
    ReturnCommand,
)
from ..errors import ConflictError, InvalidStateError, NotFoundError
from ..models import Loan, LoanStatus, can_transition, is_overdue, to_iso, utcnow
from ..store import SQLiteStore
from .stock import StockLedger

if TYPE_CHECKING:
    from .waitlist import DispatchOutcome, WaitlistDispatcher

logger = logging.getLogger(__name__)


def find_open_loan(store: SQLiteStore, borrower_id: str) -> Optional[Loan]:
    """The reader's open loan: requested, or approved and not yet returned."""
    rows = store.find(
        "loans", {"borrower_id": borrower_id, "status": LoanStatus.REQUESTED.value},
        order_by="requested_at", limit=1,
    )
    if not rows:
        rows = store.find(
            "loans",
            {"borrower_id": borrower_id, "status": LoanStatus.APPROVED.value, "returned_at": None},
            order_by="requested_at", limit=1,
        )
    return Loan.from_row(rows[0]) if rows else None


@dataclass
class ReturnOutcome:
    loan: Loan
    dispatch: "DispatchOutcome"

    def to_dict(self) -> Dict[str, Any]:
        return {"loan": self.loan.to_dict(), "dispatch": self.dispatch.to_dict()}


class LoanLifecycleEngine:
    """Owns every Loan.status transition."""

    def __init__(self, store: SQLiteStore, stock: StockLedger, dispatcher: "WaitlistDispatcher",
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.stock = stock
        self.dispatcher = dispatcher
        self.clock = clock

    # ------------------------- Reads ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        row = self.store.get("loans", loan_id)
        if row is None:
            raise NotFoundError(f"Loan {loan_id} not found.")
        return Loan.from_row(row)

    def open_loan_for(self, borrower_id: str) -> Optional[Loan]:
        return find_open_loan(self.store, borrower_id)

    def list_loans(self, status: Optional[LoanStatus] = None, borrower_id: Optional[str] = None,
                   book_id: Optional[int] = None, overdue: Optional[bool] = None,
                   now: Optional[datetime] = None) -> List[Loan]:
        """Loans newest first. ``overdue`` is evaluated against the clock on read."""
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = LoanStatus(status).value
        if borrower_id is not None:
            filters["borrower_id"] = borrower_id
        if book_id is not None:
            filters["book_id"] = book_id
        loans = [Loan.from_row(r) for r in self.store.find("loans", filters, order_by=["-requested_at", "-id"])]
        if overdue is not None:
            now = now or self.clock()
            loans = [l for l in loans if is_overdue(l, now) == overdue]
        return loans

    @staticmethod
    def is_overdue(loan: Loan, now: datetime) -> bool:
        return is_overdue(loan, now)

    # ------------------------- Helpers ------------------------- #
    def _require_book(self, book_id: int) -> dict:
        book = self.store.get("books", book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found.")
        return book

    def _ensure_no_open_loan(self, borrower_id: str) -> None:
        current = self.open_loan_for(borrower_id)
        if current is not None:
            raise ConflictError(
                f"Reader {borrower_id} already has an open loan ({current.id}). "
                "Return the current book before borrowing another."
            )

    def _transition(self, loan_id: int, target: LoanStatus, values: Dict[str, Any]) -> Loan:
        loan = self.get_loan(loan_id)
        if not can_transition(loan.status, target):
            raise InvalidStateError(
                f"Loan {loan_id} is {loan.status.value}; cannot move to {target.value}.",
                loan_id=loan_id,
                status=loan.status.value,
            )
        expected: Dict[str, Any] = {"status": loan.status.value}
        if loan.status == LoanStatus.APPROVED:
            expected["returned_at"] = None
        row = self.store.update("loans", loan_id, {"status": target.value, **values}, expected=expected)
        if row is None:
            current = self.get_loan(loan_id)
            raise InvalidStateError(
                f"Loan {loan_id} changed while being updated (now {current.status.value}).",
                loan_id=loan_id,
                status=current.status.value,
            )
        return Loan.from_row(row)

    # ------------------------- Transitions ------------------------- #
    def request_loan(self, command: RequestLoanCommand, now: Optional[datetime] = None) -> Loan:
        """Create a loan request. Stock is not touched and need not be positive."""
        now = now or self.clock()
        with self.store.transaction():
            self._require_book(command.book_id)
            self._ensure_no_open_loan(command.borrower_id)
            row = self.store.insert("loans", {
                "book_id": command.book_id,
                "borrower_id": command.borrower_id,
                "requested_at": to_iso(now),
                "due_at": to_iso(now + timedelta(days=command.duration_days)),
                "status": LoanStatus.REQUESTED.value,
            })
        loan = Loan.from_row(row)
        logger.info(f"Loan {loan.id} requested by {loan.borrower_id} for book {loan.book_id}")
        return loan

    def approve(self, command: ApproveCommand) -> Loan:
        """Approve a request. A reserved loan already holds its copy, so stock is left alone."""
        with self.store.transaction():
            loan = self._transition(command.loan_id, LoanStatus.APPROVED, {"actioned_by": command.acting_staff})
            if loan.reserved:
                available = self.stock.available(loan.book_id)
            else:
                available = self.stock.decrement(loan.book_id, force=command.force)
        logger.info(
            f"Loan {loan.id} approved by {command.acting_staff}; book {loan.book_id} now has {available} available"
        )
        return loan

    def reject(self, command: RejectCommand, now: Optional[datetime] = None) -> Loan:
        """Reject a request. The copy held by a reserved loan is handed on like a return."""
        # returned_at doubles as the decision timestamp; status stays authoritative
        now = now or self.clock()
        with self.store.transaction():
            loan = self._transition(command.loan_id, LoanStatus.REJECTED, {
                "returned_at": to_iso(now),
                "actioned_by": command.acting_staff,
            })
            outcome = self.dispatcher.dispatch(loan.book_id, now) if loan.reserved else None
        logger.info(f"Loan {loan.id} rejected by {command.acting_staff}")
        if outcome is not None:
            logger.info(f"Reserved copy of book {loan.book_id} released: {outcome.result.value}")
        return loan

    def return_book(self, command: ReturnCommand, now: Optional[datetime] = None) -> ReturnOutcome:
        """Receive a returned copy and hand it on in the same transaction."""
        now = now or self.clock()
        with self.store.transaction():
            current = self.get_loan(command.loan_id)
            if current.status == LoanStatus.APPROVED and current.returned_at is not None:
                raise InvalidStateError(
                    f"Loan {current.id} already has a return timestamp.",
                    loan_id=current.id,
                    status=current.status.value,
                )
            loan = self._transition(command.loan_id, LoanStatus.RETURNED, {
                "returned_at": to_iso(now),
                "actioned_by": command.acting_staff,
            })
            outcome = self.dispatcher.dispatch(loan.book_id, now)
        logger.info(f"Loan {loan.id} returned to {command.acting_staff}: {outcome.result.value}")
        return ReturnOutcome(loan=loan, dispatch=outcome)

    def create_manual_loan(self, command: ManualLoanCommand, now: Optional[datetime] = None) -> Loan:
        """Librarian override: an approved loan created directly.

        ``force`` lets the stock go below zero; without it an empty shelf
        raises StockAnomalyError and nothing is written.
        """
        now = now or self.clock()
        with self.store.transaction():
            self._require_book(command.book_id)
            self._ensure_no_open_loan(command.borrower_id)
            row = self.store.insert("loans", {
                "book_id": command.book_id,
                "borrower_id": command.borrower_id,
                "requested_at": to_iso(now),
                "due_at": to_iso(now + timedelta(days=command.duration_days)),
                "status": LoanStatus.APPROVED.value,
                "actioned_by": command.acting_staff,
            })
            available = self.stock.decrement(command.book_id, force=command.force)
        loan = Loan.from_row(row)
        if command.force and available < 0:
            logger.warning(f"Manual loan {loan.id} forced by {command.acting_staff}; book {loan.book_id} at {available}")
        else:
            logger.info(f"Manual loan {loan.id} created by {command.acting_staff} for {loan.borrower_id}")
        return loan
