import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .commands import (
    ApproveCommand,
    JoinWaitlistCommand,
    ManualLoanCommand,
    RejectCommand,
    RemoveFromWaitlistCommand,
    RequestLoanCommand,
    ReturnCommand,
    SessionContext,
    StockCorrectionCommand,
    build,
)
from .errors import ValidationError
from .models import Book, Comment, Loan, LoanStatus, Notification, WaitlistEntry, utcnow
from .services import (
    CatalogService,
    CommentService,
    LoanLifecycleEngine,
    NotificationService,
    ReportService,
    ReturnOutcome,
    StockLedger,
    WaitlistDispatcher,
)
from .store import SQLiteStore

logger = logging.getLogger(__name__)


def _given(**values: Any) -> Dict[str, Any]:
    # let command defaults apply for anything the caller left out
    return {k: v for k, v in values.items() if v is not None}


class Library:
    """Entry point for the library: wires the store and services together.

    Every state-changing call takes the caller's SessionContext. Reader
    operations default the borrower to the session's actor; staff operations
    record the session's name as the acting staff member.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.clock = clock or utcnow
        self.store = SQLiteStore(db_file)
        self.stock = StockLedger(self.store)
        self.dispatcher = WaitlistDispatcher(self.store, self.stock, clock=self.clock)
        self.loans = LoanLifecycleEngine(self.store, self.stock, self.dispatcher, clock=self.clock)
        self.catalog = CatalogService(self.store, clock=self.clock)
        self.comments = CommentService(self.store, clock=self.clock)
        self.notifications = NotificationService(self.store, clock=self.clock)
        self.reports = ReportService(self.store, clock=self.clock)

    def close(self) -> None:
        self.store.close()

    @staticmethod
    def _borrower(session: SessionContext, borrower_id: Optional[str]) -> str:
        borrower = borrower_id or session.actor_id
        if not borrower:
            raise ValidationError("No reader given and the session has no actor id.")
        return borrower

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: str, author: str, total: int = 1, **details: Any) -> Book:
        return self.catalog.add_book(title, author, total=total, **details)

    def get_book(self, book_id: int) -> Book:
        return self.catalog.get_book(book_id)

    def update_book(self, book_id: int, **changes: Any) -> Book:
        return self.catalog.update_book(book_id, **changes)

    def remove_book(self, book_id: int) -> None:
        self.catalog.remove_book(book_id)

    def list_books(self, query: Optional[str] = None, genre: Optional[str] = None,
                   page: int = 1, page_size: Optional[int] = None) -> Dict[str, Any]:
        return self.catalog.list_books(query=query, genre=genre, page=page, page_size=page_size)

    def genres(self) -> List[str]:
        return self.catalog.genres()

    def top_books(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self.catalog.top_books(limit)

    def correct_stock(self, session: SessionContext, book_id: int, available: int,
                      total: Optional[int] = None) -> Book:
        command = build(StockCorrectionCommand, book_id=book_id, available=available,
                        total=total, acting_staff=session.staff_name)
        return Book.from_dict(self.stock.correct(command))

    # ------------------------- Loans ------------------------- #
    def request_loan(self, session: SessionContext, book_id: int, duration_days: Optional[int] = None,
                     borrower_id: Optional[str] = None) -> Loan:
        command = build(RequestLoanCommand, **_given(
            borrower_id=self._borrower(session, borrower_id), book_id=book_id, duration_days=duration_days,
        ))
        return self.loans.request_loan(command)

    def approve_loan(self, session: SessionContext, loan_id: int, force: bool = False) -> Loan:
        command = build(ApproveCommand, loan_id=loan_id, acting_staff=session.staff_name, force=force)
        return self.loans.approve(command)

    def reject_loan(self, session: SessionContext, loan_id: int) -> Loan:
        command = build(RejectCommand, loan_id=loan_id, acting_staff=session.staff_name)
        return self.loans.reject(command)

    def return_loan(self, session: SessionContext, loan_id: int) -> ReturnOutcome:
        command = build(ReturnCommand, loan_id=loan_id, acting_staff=session.staff_name)
        return self.loans.return_book(command)

    def create_manual_loan(self, session: SessionContext, borrower_id: str, book_id: int,
                           duration_days: Optional[int] = None, force: bool = False) -> Loan:
        command = build(ManualLoanCommand, **_given(
            borrower_id=borrower_id, book_id=book_id, duration_days=duration_days,
            acting_staff=session.staff_name, force=force,
        ))
        return self.loans.create_manual_loan(command)

    def get_loan(self, loan_id: int) -> Loan:
        return self.loans.get_loan(loan_id)

    def open_loan_for(self, borrower_id: str) -> Optional[Loan]:
        """The reader's current request or unreturned loan, if any."""
        return self.loans.open_loan_for(borrower_id)

    def list_loans(self, status: Optional[str] = None, borrower_id: Optional[str] = None,
                   book_id: Optional[int] = None, overdue: Optional[bool] = None) -> List[Loan]:
        if status is not None:
            try:
                status = LoanStatus(status)
            except ValueError as exc:
                raise ValidationError(f"Unknown loan status: {status}") from exc
        return self.loans.list_loans(status=status, borrower_id=borrower_id, book_id=book_id, overdue=overdue)

    def is_overdue(self, loan: Loan, now: Optional[datetime] = None) -> bool:
        return self.loans.is_overdue(loan, now or self.clock())

    # ------------------------- Waitlist ------------------------- #
    def join_waitlist(self, session: SessionContext, book_id: int,
                      borrower_id: Optional[str] = None) -> WaitlistEntry:
        command = build(JoinWaitlistCommand, borrower_id=self._borrower(session, borrower_id), book_id=book_id)
        return self.dispatcher.join(command)

    def leave_waitlist(self, entry_id: int) -> None:
        self.dispatcher.remove(build(RemoveFromWaitlistCommand, entry_id=entry_id))

    def list_waitlist(self, book_id: Optional[int] = None) -> List[WaitlistEntry]:
        return self.dispatcher.list_waitlist(book_id)

    def waitlist_for(self, borrower_id: str) -> List[WaitlistEntry]:
        return self.dispatcher.entries_for_reader(borrower_id)

    # ------------------------- Comments ------------------------- #
    def add_comment(self, session: SessionContext, book_id: int, text: str,
                    rating: Optional[int] = None) -> Comment:
        return self.comments.add_comment(self._borrower(session, None), book_id, text, rating)

    def approve_comment(self, comment_id: int) -> Comment:
        return self.comments.approve(comment_id)

    def reject_comment(self, comment_id: int) -> Comment:
        return self.comments.reject(comment_id)

    def delete_comment(self, comment_id: int) -> None:
        self.comments.delete(comment_id)

    # ------------------------- Notifications ------------------------- #
    def notifications_for(self, borrower_id: str, unread_only: bool = False) -> List[Notification]:
        return self.notifications.list_for(borrower_id, unread_only=unread_only)

    def mark_notification_read(self, notification_id: int) -> Notification:
        return self.notifications.mark_read(notification_id)

    def dismiss_notification(self, notification_id: int) -> None:
        self.notifications.dismiss(notification_id)

    # ------------------------- Reports ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        return self.reports.librarian_overview()

    def reader_summary(self, borrower_id: str) -> Dict[str, Any]:
        return self.reports.reader_summary(borrower_id)

    def overdue_report(self) -> List[Dict[str, Any]]:
        return self.reports.overdue_report()

    def monthly_loans(self, year: int, month: int) -> List[Dict[str, Any]]:
        return self.reports.monthly_loans(year, month)

    def top_readers(self, limit: int = 5) -> List[Dict[str, Any]]:
        return self.reports.top_readers(limit)
