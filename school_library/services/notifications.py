import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..config import settings
from ..errors import NotFoundError
from ..models import Loan, LoanStatus, Notification, NotificationType, is_overdue, utcnow
from ..store import SQLiteStore

logger = logging.getLogger(__name__)

OVERDUE_MESSAGE = 'Return "{title}" as soon as possible, it is past its due date.'
DUE_SOON_MESSAGE = '"{title}" is due back in {days} day(s).'
RATE_MESSAGE = 'What did you think of "{title}"? Leave a rating.'

# how many of the reader's most recent loans are scanned for reminders
RECENT_LOANS = 20


class NotificationService:
    """A reader's inbox: stored notifications plus reminders derived from their loans."""

    def __init__(self, store: SQLiteStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def stored_for(self, borrower_id: str, unread_only: bool = False) -> List[Notification]:
        filters: Dict[str, object] = {"borrower_id": borrower_id}
        if unread_only:
            filters["read"] = 0
        rows = self.store.find("notifications", filters, order_by=["-created_at", "-id"])
        return [Notification.from_row(r) for r in rows]

    def reminders_for(self, borrower_id: str, now: Optional[datetime] = None) -> List[Notification]:
        """Reminders computed from the reader's loans. Never stored."""
        now = now or self.clock()
        loans = [
            Loan.from_row(r)
            for r in self.store.find("loans", {"borrower_id": borrower_id},
                                     order_by=["-requested_at", "-id"], limit=RECENT_LOANS)
        ]
        if not loans:
            return []
        titles = {
            r["id"]: r["title"]
            for r in self.store.find("books", {"id": sorted({l.book_id for l in loans})})
        }
        commented = {r["book_id"] for r in self.store.find("comments", {"borrower_id": borrower_id})}

        reminders: List[Notification] = []
        for loan in loans:
            title = titles.get(loan.book_id, "")
            if is_overdue(loan, now):
                reminders.append(self._derived(loan, NotificationType.LOAN_OVERDUE,
                                               OVERDUE_MESSAGE.format(title=title), loan.due_at))
            elif loan.is_open and loan.status == LoanStatus.APPROVED:
                days = loan.days_remaining(now)
                if days <= settings.due_soon_days:
                    reminders.append(self._derived(loan, NotificationType.LOAN_DUE_SOON,
                                                   DUE_SOON_MESSAGE.format(title=title, days=days), now))
            if (loan.status == LoanStatus.RETURNED and loan.returned_at is not None
                    and loan.book_id not in commented
                    and now - loan.returned_at < timedelta(days=settings.rate_prompt_days)):
                reminders.append(self._derived(loan, NotificationType.RATE_BOOK,
                                               RATE_MESSAGE.format(title=title), loan.returned_at))
        return reminders

    @staticmethod
    def _derived(loan: Loan, kind: NotificationType, message: str, at: datetime) -> Notification:
        return Notification(
            borrower_id=loan.borrower_id,
            type=kind,
            message=message,
            created_at=at,
            loan_id=loan.id,
            book_id=loan.book_id,
            stored=False,
        )

    def list_for(self, borrower_id: str, unread_only: bool = False,
                 now: Optional[datetime] = None) -> List[Notification]:
        """Stored notifications and current reminders, newest first."""
        items = self.stored_for(borrower_id, unread_only) + self.reminders_for(borrower_id, now)
        return sorted(items, key=lambda n: n.created_at, reverse=True)

    def mark_read(self, notification_id: int) -> Notification:
        row = self.store.update("notifications", notification_id, {"read": 1})
        if row is None:
            raise NotFoundError(f"Notification {notification_id} not found.")
        return Notification.from_row(row)

    def dismiss(self, notification_id: int) -> None:
        if not self.store.delete("notifications", notification_id):
            raise NotFoundError(f"Notification {notification_id} not found.")
        logger.info(f"Notification {notification_id} dismissed")
