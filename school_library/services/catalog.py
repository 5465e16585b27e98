import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import settings
from ..errors import ConflictError, NotFoundError, SchemaError, ValidationError
from ..models import Book, to_iso, utcnow
from ..store import SQLiteStore
from ..validators import TextValidator

logger = logging.getLogger(__name__)

# Fields a librarian may edit through update_book; stock goes through StockLedger.correct
EDITABLE_FIELDS = (
    "title", "author", "genre", "publisher", "cover_url",
    "location", "publication_year", "pages", "description",
)

_RATED_SELECT = """
    SELECT b.*,
           COALESCE(AVG(c.rating), 0) AS rating,
           COUNT(c.rating) AS rating_count
    FROM books b
    LEFT JOIN comments c
           ON c.book_id = b.id AND c.approved = 1 AND c.rating IS NOT NULL
    {where}
    GROUP BY b.id
    ORDER BY b.title COLLATE NOCASE, b.id
    LIMIT ? OFFSET ?
"""

_PLAIN_SELECT = """
    SELECT b.*, 0 AS rating, 0 AS rating_count
    FROM books b
    {where}
    ORDER BY b.title COLLATE NOCASE, b.id
    LIMIT ? OFFSET ?
"""


class CatalogService:
    """Book CRUD and the paginated catalog read."""

    def __init__(self, store: SQLiteStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    # ------------------------- Core operations ------------------------- #
    def add_book(self, title: str, author: str, total: int = 1, **details: Any) -> Book:
        if not TextValidator.validate_title(title):
            raise ValidationError("Title must contain letters.")
        if not TextValidator.validate_author(author):
            raise ValidationError("Author cannot be empty or numeric.")
        if total < 1:
            raise ValidationError("A book needs at least one copy.")
        unknown = set(details) - set(EDITABLE_FIELDS[2:])
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")

        book = Book(title=title, author=author, total=total, **details)
        values = book.to_dict()
        for key in ("id", "rating", "rating_count"):
            values.pop(key)
        values["created_at"] = to_iso(self.clock())
        row = self.store.insert("books", values)
        logger.info(f"Book {row['id']} added: {row['title']} ({row['total']} copies)")
        return Book.from_dict(row)

    def get_book(self, book_id: int) -> Book:
        row = self.store.get("books", book_id)
        if row is None:
            raise NotFoundError(f"Book {book_id} not found.")
        return Book.from_dict(row)

    def update_book(self, book_id: int, **changes: Any) -> Book:
        """Partial update of descriptive fields. Unset (None) fields are ignored."""
        if "available" in changes or "total" in changes:
            raise ValidationError("Stock counts are changed with a stock correction, not a book update.")
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in changes.items() if v is not None}
        if not values:
            raise ValidationError("Nothing to update.")
        if "title" in values:
            if not TextValidator.validate_title(values["title"]):
                raise ValidationError("Title must contain letters.")
            values["title"] = values["title"].strip()
        if "author" in values:
            if not TextValidator.validate_author(values["author"]):
                raise ValidationError("Author cannot be empty or numeric.")
            values["author"] = values["author"].strip()

        row = self.store.update("books", book_id, values)
        if row is None:
            raise NotFoundError(f"Book {book_id} not found.")
        logger.info(f"Book {book_id} updated: {', '.join(sorted(values))}")
        return Book.from_dict(row)

    def remove_book(self, book_id: int) -> None:
        """Delete a book that no loan or waitlist entry refers to."""
        with self.store.transaction():
            self.get_book(book_id)
            if self.store.count("loans", {"book_id": book_id}):
                raise ConflictError(f"Book {book_id} has loan history and cannot be removed.")
            if self.store.count("waitlist", {"book_id": book_id}):
                raise ConflictError(f"Book {book_id} has readers on its waitlist and cannot be removed.")
            self.store.delete("books", book_id)
        logger.info(f"Book {book_id} removed")

    # ------------------------- Catalog read ------------------------- #
    @staticmethod
    def _filters(query: Optional[str], genre: Optional[str]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if query and query.strip():
            like = f"%{query.strip().lower()}%"
            clauses.append("(LOWER(b.title) LIKE ? OR LOWER(b.author) LIKE ?)")
            params.extend([like, like])
        if genre:
            clauses.append("b.genre = ?")
            params.append(genre)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    def list_books(self, query: Optional[str] = None, genre: Optional[str] = None,
                   page: int = 1, page_size: Optional[int] = None) -> Dict[str, Any]:
        """One page of the catalog, with ratings from approved comments.

        If the rated read fails on a schema or permission problem the plain
        read is used and every rating is 0. Other failures propagate.
        """
        page = max(1, int(page))
        page_size = page_size or settings.default_page_size
        if page_size < 1 or page_size > settings.max_page_size:
            raise ValidationError(f"page_size must be between 1 and {settings.max_page_size}.")

        where, params = self._filters(query, genre)
        paging = [page_size, (page - 1) * page_size]
        try:
            rows = self.store.select(_RATED_SELECT.format(where=where), params + paging)
        except SchemaError as exc:
            logger.warning(f"Rated catalog read failed ({exc}); falling back to plain read")
            rows = self.store.select(_PLAIN_SELECT.format(where=where), params + paging)

        total = self.store.select(f"SELECT COUNT(*) AS n FROM books b{where}", params)[0]["n"]
        return {
            "items": [Book.from_dict(r) for r in rows],
            "page": page,
            "page_size": page_size,
            "total": int(total),
            "pages": (int(total) + page_size - 1) // page_size,
        }

    def genres(self) -> List[str]:
        rows = self.store.select(
            "SELECT DISTINCT genre FROM books WHERE genre IS NOT NULL AND genre != '' ORDER BY genre"
        )
        return [r["genre"] for r in rows]

    def top_books(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Books ordered by how many times they were borrowed."""
        rows = self.store.select(
            """
            SELECT b.id, b.title, b.author, b.genre, COUNT(l.id) AS loans
            FROM books b
            JOIN loans l ON l.book_id = b.id AND l.status IN ('approved', 'returned')
            GROUP BY b.id
            ORDER BY loans DESC, b.title COLLATE NOCASE
            LIMIT ?
            """,
            (limit,),
        )
        return rows
