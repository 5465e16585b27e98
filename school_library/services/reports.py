"""Dashboard read models for librarians, teachers and readers.

Everything here is read-only and computed against the clock on request;
overdue status is never stored.
"""
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..errors import SchemaError, ValidationError
from ..models import Loan, LoanStatus, is_overdue, to_iso, utcnow
from ..store import SQLiteStore

logger = logging.getLogger(__name__)

TOP_LIMIT = 5
RECENT_LIMIT = 5


class ReportService:
    def __init__(self, store: SQLiteStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def _loans(self, filters: Optional[Dict[str, Any]] = None) -> List[Loan]:
        return [Loan.from_row(r) for r in self.store.find("loans", filters, order_by=["-requested_at", "-id"])]

    def librarian_overview(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        loans = self._loans()
        books = {r["id"]: r for r in self.store.find("books")}

        borrowed = [l for l in loans if l.status in (LoanStatus.APPROVED, LoanStatus.RETURNED)]
        by_book = Counter(l.book_id for l in borrowed)
        by_genre = Counter(books[l.book_id]["genre"] for l in borrowed
                           if l.book_id in books and books[l.book_id]["genre"])
        total_loans = len(borrowed)

        return {
            "total_books": len(books),
            "total_copies": sum(int(b["total"]) for b in books.values()),
            "available_copies": sum(int(b["available"]) for b in books.values()),
            "active_loans": sum(1 for l in loans if l.status == LoanStatus.APPROVED and l.returned_at is None),
            "overdue_loans": sum(1 for l in loans if is_overdue(l, now)),
            "pending_requests": sum(1 for l in loans if l.status == LoanStatus.REQUESTED),
            "waitlist_size": self.store.count("waitlist"),
            "top_books": [
                {"book_id": book_id, "title": books[book_id]["title"], "count": count}
                for book_id, count in by_book.most_common(TOP_LIMIT) if book_id in books
            ],
            "top_genres": [
                {"genre": genre, "count": count, "percentage": round(count * 100 / total_loans)}
                for genre, count in by_genre.most_common(TOP_LIMIT)
            ],
        }

    def reader_summary(self, borrower_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        loans = self._loans({"borrower_id": borrower_id})
        try:
            comments = self.store.count("comments", {"borrower_id": borrower_id})
        except SchemaError as exc:
            logger.warning(f"Comment count unavailable for {borrower_id}: {exc}")
            comments = 0
        return {
            "borrower_id": borrower_id,
            "total_loans": len(loans),
            "active_loans": sum(1 for l in loans if l.status == LoanStatus.APPROVED and l.returned_at is None),
            "pending_requests": sum(1 for l in loans if l.status == LoanStatus.REQUESTED),
            "overdue": [l.to_dict() for l in loans if is_overdue(l, now)],
            "comments": comments,
            "recent_loans": [l.to_dict() for l in loans[:RECENT_LIMIT]],
        }

    def overdue_report(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Overdue loans, most late first, with the book title and days late."""
        now = now or self.clock()
        overdue = [l for l in self._loans({"status": LoanStatus.APPROVED.value, "returned_at": None})
                   if is_overdue(l, now)]
        overdue.sort(key=lambda l: l.due_at)
        titles = {r["id"]: r["title"] for r in self.store.find("books", {"id": [l.book_id for l in overdue]})}
        report = []
        for loan in overdue:
            entry = loan.to_dict()
            entry["title"] = titles.get(loan.book_id)
            # a loan a few hours past due counts as one day late
            entry["days_late"] = max(1, -loan.days_remaining(now))
            report.append(entry)
        return report

    def monthly_loans(self, year: int, month: int) -> List[Dict[str, Any]]:
        """Loans requested in the given calendar month (UTC), newest first."""
        if not 1 <= month <= 12:
            raise ValidationError(f"Month must be between 1 and 12, got {month}.")
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        if month == 12:
            end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
        rows = self.store.select(
            "SELECT loans.*, books.title AS title FROM loans "
            "LEFT JOIN books ON books.id = loans.book_id "
            "WHERE loans.requested_at >= ? AND loans.requested_at < ? "
            "ORDER BY loans.requested_at DESC, loans.id DESC",
            (to_iso(start), to_iso(end)),
        )
        report = []
        for row in rows:
            entry = Loan.from_row(row).to_dict()
            entry["title"] = row["title"]
            report.append(entry)
        return report

    def top_readers(self, limit: int = TOP_LIMIT) -> List[Dict[str, Any]]:
        # same notion of "borrowed" as the top books ranking
        rows = self.store.select(
            "SELECT borrower_id, COUNT(*) AS count FROM loans "
            "WHERE status IN (?, ?) GROUP BY borrower_id "
            "ORDER BY count DESC, borrower_id LIMIT ?",
            (LoanStatus.APPROVED.value, LoanStatus.RETURNED.value, limit),
        )
        return [{"borrower_id": r["borrower_id"], "count": r["count"]} for r in rows]
