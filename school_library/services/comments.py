import logging
from datetime import datetime
from typing import Callable, List, Optional

from ..errors import NotFoundError, ValidationError
from ..models import Comment, to_iso, utcnow
from ..store import SQLiteStore
from ..validators import RatingValidator, TextValidator

logger = logging.getLogger(__name__)

# moderation status -> value of comments.approved
STATUS_FILTERS = {
    "pending": None,
    "approved": 1,
    "rejected": 0,
}


class CommentService:
    """Reader comments and star ratings, held for librarian moderation."""

    def __init__(self, store: SQLiteStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def get(self, comment_id: int) -> Comment:
        row = self.store.get("comments", comment_id)
        if row is None:
            raise NotFoundError(f"Comment {comment_id} not found.")
        return Comment.from_row(row)

    def add_comment(self, borrower_id: str, book_id: int, text: str, rating: Optional[int] = None) -> Comment:
        cleaned = TextValidator.sanitize_text(text)
        if not cleaned and rating is None:
            raise ValidationError("A comment needs text or a rating.")
        if len(cleaned) > TextValidator.MAX_COMMENT_LENGTH:
            raise ValidationError(f"Comment is longer than {TextValidator.MAX_COMMENT_LENGTH} characters.")
        if not RatingValidator.is_valid(rating):
            raise ValidationError("Rating must be between 1 and 5.")
        if not borrower_id or not borrower_id.strip():
            raise ValidationError("A comment needs a reader.")
        if self.store.get("books", book_id) is None:
            raise NotFoundError(f"Book {book_id} not found.")

        row = self.store.insert("comments", {
            "book_id": book_id,
            "borrower_id": borrower_id.strip(),
            "text": cleaned,
            "rating": rating,
            "created_at": to_iso(self.clock()),
            "approved": None,
        })
        logger.info(f"Comment {row['id']} by {row['borrower_id']} on book {book_id} awaiting moderation")
        return Comment.from_row(row)

    def _moderate(self, comment_id: int, approved: bool) -> Comment:
        row = self.store.update("comments", comment_id, {
            "approved": 1 if approved else 0,
            "approved_at": to_iso(self.clock()),
        })
        if row is None:
            raise NotFoundError(f"Comment {comment_id} not found.")
        comment = Comment.from_row(row)
        logger.info(f"Comment {comment_id} {comment.moderation_status}")
        return comment

    def approve(self, comment_id: int) -> Comment:
        return self._moderate(comment_id, True)

    def reject(self, comment_id: int) -> Comment:
        return self._moderate(comment_id, False)

    def delete(self, comment_id: int) -> None:
        if not self.store.delete("comments", comment_id):
            raise NotFoundError(f"Comment {comment_id} not found.")
        logger.info(f"Comment {comment_id} deleted")

    def list_comments(self, status: str = "pending") -> List[Comment]:
        """Comments newest first, filtered by pending/approved/rejected/all."""
        if status == "all":
            filters = None
        elif status in STATUS_FILTERS:
            filters = {"approved": STATUS_FILTERS[status]}
        else:
            raise ValidationError(f"Unknown comment status: {status}")
        rows = self.store.find("comments", filters, order_by=["-created_at", "-id"])
        return [Comment.from_row(r) for r in rows]

    def approved_for_book(self, book_id: int) -> List[Comment]:
        rows = self.store.find("comments", {"book_id": book_id, "approved": 1}, order_by=["-created_at", "-id"])
        return [Comment.from_row(r) for r in rows]

    def for_reader(self, borrower_id: str) -> List[Comment]:
        rows = self.store.find("comments", {"borrower_id": borrower_id}, order_by=["-created_at", "-id"])
        return [Comment.from_row(r) for r in rows]
