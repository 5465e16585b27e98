from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="microseconds")


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Book:
    """A catalog item and its stock counts."""

    def __init__(self, title: str, author: str, id: int | None = None, genre: str | None = None,
                 publisher: str | None = None, total: int = 1, available: int | None = None,
                 cover_url: str | None = None, location: str | None = None,
                 publication_year: str | None = None, pages: int | None = None,
                 description: str | None = None, created_at: str | None = None,
                 # Read-model fields from approved comments
                 rating: float = 0.0, rating_count: int = 0) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.genre = genre.strip() if genre else None
        self.publisher = publisher
        self.total = total
        # New books start fully on the shelf
        self.available = total if available is None else available
        self.cover_url = cover_url
        self.location = location
        self.publication_year = publication_year
        self.pages = pages
        self.description = description
        self.created_at = created_at
        self.rating = rating
        self.rating_count = rating_count

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available}/{self.total} available)"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "genre": self.genre,
            "publisher": self.publisher,
            "total": self.total,
            "available": self.available,
            "cover_url": self.cover_url,
            "location": self.location,
            "publication_year": self.publication_year,
            "pages": self.pages,
            "description": self.description,
            "created_at": self.created_at,
            "rating": self.rating,
            "rating_count": self.rating_count,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            genre=data.get("genre"),
            publisher=data.get("publisher"),
            total=int(data.get("total") or 0),
            available=int(data["available"]) if data.get("available") is not None else None,
            cover_url=data.get("cover_url"),
            location=data.get("location"),
            publication_year=data.get("publication_year"),
            pages=data.get("pages"),
            description=data.get("description"),
            created_at=data.get("created_at"),
            rating=float(data.get("rating") or 0.0),
            rating_count=int(data.get("rating_count") or 0),
        )


class LoanStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.REJECTED, LoanStatus.RETURNED)


# Legal transitions; anything else is an InvalidStateError
TRANSITIONS = {
    LoanStatus.REQUESTED: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.RETURNED}),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.RETURNED: frozenset(),
}


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class Loan:
    id: int
    book_id: int
    borrower_id: str
    requested_at: datetime
    due_at: datetime
    status: LoanStatus = LoanStatus.REQUESTED
    returned_at: Optional[datetime] = None
    actioned_by: Optional[str] = None
    # created by the waitlist with the returned copy already set aside
    reserved: bool = False

    @property
    def is_open(self) -> bool:
        if self.status == LoanStatus.REQUESTED:
            return True
        return self.status == LoanStatus.APPROVED and self.returned_at is None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return is_overdue(self, now or utcnow())

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        """Whole days until the due date; negative when late."""
        seconds = (self.due_at - (now or utcnow())).total_seconds()
        return math.ceil(seconds / 86400)

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Loan":
        return Loan(
            id=row["id"],
            book_id=row["book_id"],
            borrower_id=row["borrower_id"],
            requested_at=parse_ts(row["requested_at"]),
            due_at=parse_ts(row["due_at"]),
            status=LoanStatus(row["status"]),
            returned_at=parse_ts(row.get("returned_at")),
            actioned_by=row.get("actioned_by"),
            reserved=bool(row.get("reserved")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "requested_at": to_iso(self.requested_at),
            "due_at": to_iso(self.due_at),
            "returned_at": to_iso(self.returned_at),
            "status": self.status.value,
            "actioned_by": self.actioned_by,
            "reserved": self.reserved,
        }


def is_overdue(loan: Loan, now: datetime) -> bool:
    """True iff the loan is approved, not yet returned and past its due date."""
    return loan.status == LoanStatus.APPROVED and loan.returned_at is None and now > loan.due_at


@dataclass
class WaitlistEntry:
    id: int
    book_id: int
    borrower_id: str
    joined_at: datetime
    position: Optional[int] = None

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "WaitlistEntry":
        return WaitlistEntry(
            id=row["id"],
            book_id=row["book_id"],
            borrower_id=row["borrower_id"],
            joined_at=parse_ts(row["joined_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["joined_at"] = to_iso(self.joined_at)
        return data


class NotificationType(str, Enum):
    LOAN_ASSIGNED = "loan_assigned"
    LOAN_OVERDUE = "loan_overdue"
    LOAN_DUE_SOON = "loan_due_soon"
    RATE_BOOK = "rate_book"


@dataclass
class Notification:
    borrower_id: str
    type: NotificationType
    message: str
    created_at: datetime
    id: Optional[int] = None
    loan_id: Optional[int] = None
    book_id: Optional[int] = None
    read: bool = False
    # Derived reminders are computed on read and never stored
    stored: bool = True

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Notification":
        return Notification(
            id=row["id"],
            borrower_id=row["borrower_id"],
            type=NotificationType(row["type"]),
            message=row["message"],
            loan_id=row.get("loan_id"),
            book_id=row.get("book_id"),
            created_at=parse_ts(row["created_at"]),
            read=bool(row.get("read")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "borrower_id": self.borrower_id,
            "type": self.type.value,
            "message": self.message,
            "loan_id": self.loan_id,
            "book_id": self.book_id,
            "created_at": to_iso(self.created_at),
            "read": self.read,
            "stored": self.stored,
        }


@dataclass
class Comment:
    id: int
    book_id: int
    borrower_id: str
    text: str
    created_at: datetime
    rating: Optional[int] = None
    # None = pending, True = approved, False = rejected
    approved: Optional[bool] = None
    approved_at: Optional[datetime] = None

    @property
    def moderation_status(self) -> str:
        if self.approved is None:
            return "pending"
        return "approved" if self.approved else "rejected"

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Comment":
        approved = row.get("approved")
        return Comment(
            id=row["id"],
            book_id=row["book_id"],
            borrower_id=row["borrower_id"],
            text=row.get("text") or "",
            rating=row.get("rating"),
            created_at=parse_ts(row["created_at"]),
            approved=None if approved is None else bool(approved),
            approved_at=parse_ts(row.get("approved_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "text": self.text,
            "rating": self.rating,
            "created_at": to_iso(self.created_at),
            "approved": self.approved,
            "approved_at": to_iso(self.approved_at),
            "status": self.moderation_status,
        }
