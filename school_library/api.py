import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .commands import Role, SessionContext
from .config import settings
from .errors import (
    ConflictError,
    InvalidStateError,
    LibraryError,
    NotFoundError,
    StockAnomalyError,
    StorageUnavailableError,
    ValidationError,
)
from .library import Library

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.library = Library(settings.database_file)
    logger.info(f"{settings.app_name} API started ({settings.environment}), database {settings.database_file}")
    try:
        yield
    finally:
        app.state.library.close()


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Error mapping ---
# most specific first; DuplicateError is caught as a ConflictError
STATUS_CODES = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (StockAnomalyError, 422),
    (ValidationError, 422),
    (StorageUnavailableError, 503),
)


def status_for(exc: LibraryError) -> int:
    for kind, code in STATUS_CODES:
        if isinstance(exc, kind):
            return code
    return 400


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    content: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InvalidStateError):
        content.update(loan_id=exc.loan_id, status=exc.status)
    if isinstance(exc, StockAnomalyError):
        content.update(book_id=exc.book_id, available=exc.available)
    return JSONResponse(status_code=status_for(exc), content=content)


# --- Dependencies ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Staff endpoints need the configured API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_library(request: Request) -> Library:
    return request.app.state.library


def get_session(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_name: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> SessionContext:
    """The caller's session, as forwarded by the front end. Stored verbatim."""
    try:
        role = Role(x_actor_role.lower()) if x_actor_role else Role.STUDENT
    except ValueError as exc:
        raise ValidationError(f"Unknown role: {x_actor_role}") from exc
    return SessionContext(actor_id=x_actor_id, name=x_actor_name, role=role)


staff = [Depends(get_api_key)]


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    genre: Optional[str] = None
    publisher: Optional[str] = None
    total: int
    available: int
    cover_url: Optional[str] = None
    location: Optional[str] = None
    publication_year: Optional[str] = None
    pages: Optional[int] = None
    description: Optional[str] = None
    rating: float = 0.0
    rating_count: int = 0


class BookPageModel(BaseModel):
    items: List[BookModel]
    page: int
    page_size: int
    total: int
    pages: int


class BookCreateModel(BaseModel):
    title: str
    author: str
    total: int = Field(default=1, ge=1)
    genre: Optional[str] = None
    publisher: Optional[str] = None
    cover_url: Optional[str] = None
    location: Optional[str] = None
    publication_year: Optional[str] = None
    pages: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = None


class BookUpdateModel(BaseModel):
    # stock counts are not accepted here; use PUT /books/{id}/stock
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    cover_url: Optional[str] = None
    location: Optional[str] = None
    publication_year: Optional[str] = None
    pages: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = None


class StockModel(BaseModel):
    available: int
    total: Optional[int] = None


class LoanModel(BaseModel):
    id: int
    book_id: int
    borrower_id: str
    requested_at: str
    due_at: str
    returned_at: Optional[str] = None
    status: str
    actioned_by: Optional[str] = None
    reserved: bool = False
    overdue: bool = False


class LoanRequestModel(BaseModel):
    book_id: int
    duration_days: Optional[int] = None
    borrower_id: Optional[str] = None


class ManualLoanModel(BaseModel):
    borrower_id: str
    book_id: int
    duration_days: Optional[int] = None
    force: bool = False


class WaitlistEntryModel(BaseModel):
    id: int
    book_id: int
    borrower_id: str
    joined_at: str
    position: Optional[int] = None


class WaitlistJoinModel(BaseModel):
    book_id: int
    borrower_id: Optional[str] = None


class DispatchModel(BaseModel):
    book_id: int
    result: str
    loan: Optional[LoanModel] = None
    consumed_entry: Optional[WaitlistEntryModel] = None
    notification: Optional[Dict[str, Any]] = None
    available: Optional[int] = None
    skipped_borrowers: List[str] = []


class ReturnModel(BaseModel):
    loan: LoanModel
    dispatch: DispatchModel


class CommentModel(BaseModel):
    id: int
    book_id: int
    borrower_id: str
    text: str
    rating: Optional[int] = None
    created_at: str
    approved: Optional[bool] = None
    approved_at: Optional[str] = None
    status: str


class CommentCreateModel(BaseModel):
    text: str = ""
    rating: Optional[int] = None


class NotificationModel(BaseModel):
    id: Optional[int] = None
    borrower_id: str
    type: str
    message: str
    loan_id: Optional[int] = None
    book_id: Optional[int] = None
    created_at: str
    read: bool
    stored: bool


def _loan(lib: Library, loan) -> LoanModel:
    return LoanModel(**loan.to_dict(), overdue=lib.is_overdue(loan))


# --- Health ---
@app.get("/health")
def health(lib: Library = Depends(get_library)):
    db_ok = True
    try:
        lib.store.select("SELECT 1 AS ok")
    except StorageUnavailableError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Catalog ---
@app.get("/books", response_model=BookPageModel)
def list_books(
    q: Optional[str] = Query(None, description="Search in title and author"),
    genre: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    lib: Library = Depends(get_library),
):
    result = lib.list_books(query=q, genre=genre, page=page, page_size=page_size)
    result["items"] = [b.to_dict() for b in result["items"]]
    return result


@app.get("/books/top")
def top_books(limit: int = Query(10, ge=1, le=50), lib: Library = Depends(get_library)):
    return lib.top_books(limit)


@app.get("/genres", response_model=List[str])
def list_genres(lib: Library = Depends(get_library)):
    return lib.genres()


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, lib: Library = Depends(get_library)):
    return lib.get_book(book_id).to_dict()


@app.post("/books", response_model=BookModel, status_code=201, dependencies=staff)
def add_book(payload: BookCreateModel, lib: Library = Depends(get_library)):
    data = payload.model_dump(exclude_none=True)
    book = lib.add_book(data.pop("title"), data.pop("author"), total=data.pop("total"), **data)
    return book.to_dict()


@app.put("/books/{book_id}", response_model=BookModel, dependencies=staff)
def update_book(book_id: int, payload: BookUpdateModel, lib: Library = Depends(get_library)):
    return lib.update_book(book_id, **payload.model_dump(exclude_none=True)).to_dict()


@app.delete("/books/{book_id}", status_code=204, dependencies=staff)
def delete_book(book_id: int, lib: Library = Depends(get_library)):
    lib.remove_book(book_id)


@app.put("/books/{book_id}/stock", response_model=BookModel, dependencies=staff)
def correct_stock(book_id: int, payload: StockModel, lib: Library = Depends(get_library),
                  session: SessionContext = Depends(get_session)):
    return lib.correct_stock(session, book_id, payload.available, payload.total).to_dict()


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201)
def request_loan(payload: LoanRequestModel, lib: Library = Depends(get_library),
                 session: SessionContext = Depends(get_session)):
    loan = lib.request_loan(session, payload.book_id, payload.duration_days, payload.borrower_id)
    return _loan(lib, loan)


@app.post("/loans/manual", response_model=LoanModel, status_code=201, dependencies=staff)
def manual_loan(payload: ManualLoanModel, lib: Library = Depends(get_library),
                session: SessionContext = Depends(get_session)):
    loan = lib.create_manual_loan(session, payload.borrower_id, payload.book_id,
                                  payload.duration_days, force=payload.force)
    return _loan(lib, loan)


@app.post("/loans/{loan_id}/approve", response_model=LoanModel, dependencies=staff)
def approve_loan(loan_id: int, force: bool = False, lib: Library = Depends(get_library),
                 session: SessionContext = Depends(get_session)):
    return _loan(lib, lib.approve_loan(session, loan_id, force=force))


@app.post("/loans/{loan_id}/reject", response_model=LoanModel, dependencies=staff)
def reject_loan(loan_id: int, lib: Library = Depends(get_library),
                session: SessionContext = Depends(get_session)):
    return _loan(lib, lib.reject_loan(session, loan_id))


@app.post("/loans/{loan_id}/return", response_model=ReturnModel, dependencies=staff)
def return_loan(loan_id: int, lib: Library = Depends(get_library),
                session: SessionContext = Depends(get_session)):
    return lib.return_loan(session, loan_id).to_dict()


@app.get("/loans", response_model=List[LoanModel])
def list_loans(
    status: Optional[str] = None,
    borrower_id: Optional[str] = None,
    book_id: Optional[int] = None,
    overdue: Optional[bool] = None,
    lib: Library = Depends(get_library),
):
    loans = lib.list_loans(status=status, borrower_id=borrower_id, book_id=book_id, overdue=overdue)
    return [_loan(lib, l) for l in loans]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, lib: Library = Depends(get_library)):
    return _loan(lib, lib.get_loan(loan_id))


# --- Waitlist ---
@app.post("/waitlist", response_model=WaitlistEntryModel, status_code=201)
def join_waitlist(payload: WaitlistJoinModel, lib: Library = Depends(get_library),
                  session: SessionContext = Depends(get_session)):
    return lib.join_waitlist(session, payload.book_id, payload.borrower_id).to_dict()


@app.delete("/waitlist/{entry_id}", status_code=204)
def leave_waitlist(entry_id: int, lib: Library = Depends(get_library)):
    lib.leave_waitlist(entry_id)


@app.get("/waitlist", response_model=List[WaitlistEntryModel])
def list_waitlist(book_id: Optional[int] = None, borrower_id: Optional[str] = None,
                  lib: Library = Depends(get_library)):
    if borrower_id is not None:
        return [e.to_dict() for e in lib.waitlist_for(borrower_id)]
    return [e.to_dict() for e in lib.list_waitlist(book_id)]


# --- Comments ---
@app.post("/books/{book_id}/comments", response_model=CommentModel, status_code=201)
def add_comment(book_id: int, payload: CommentCreateModel, lib: Library = Depends(get_library),
                session: SessionContext = Depends(get_session)):
    return lib.add_comment(session, book_id, payload.text, payload.rating).to_dict()


@app.get("/books/{book_id}/comments", response_model=List[CommentModel])
def book_comments(book_id: int, lib: Library = Depends(get_library)):
    return [c.to_dict() for c in lib.comments.approved_for_book(book_id)]


@app.get("/comments", response_model=List[CommentModel], dependencies=staff)
def list_comments(status: str = Query("pending", pattern="^(pending|approved|rejected|all)$"),
                  lib: Library = Depends(get_library)):
    return [c.to_dict() for c in lib.comments.list_comments(status)]


@app.post("/comments/{comment_id}/approve", response_model=CommentModel, dependencies=staff)
def approve_comment(comment_id: int, lib: Library = Depends(get_library)):
    return lib.approve_comment(comment_id).to_dict()


@app.post("/comments/{comment_id}/reject", response_model=CommentModel, dependencies=staff)
def reject_comment(comment_id: int, lib: Library = Depends(get_library)):
    return lib.reject_comment(comment_id).to_dict()


@app.delete("/comments/{comment_id}", status_code=204)
def delete_comment(comment_id: int, lib: Library = Depends(get_library)):
    lib.delete_comment(comment_id)


# --- Notifications and dashboards ---
@app.get("/readers/{borrower_id}/notifications", response_model=List[NotificationModel])
def reader_notifications(borrower_id: str, unread_only: bool = False, lib: Library = Depends(get_library)):
    return [n.to_dict() for n in lib.notifications_for(borrower_id, unread_only=unread_only)]


@app.post("/notifications/{notification_id}/read", response_model=NotificationModel)
def read_notification(notification_id: int, lib: Library = Depends(get_library)):
    return lib.mark_notification_read(notification_id).to_dict()


@app.delete("/notifications/{notification_id}", status_code=204)
def dismiss_notification(notification_id: int, lib: Library = Depends(get_library)):
    lib.dismiss_notification(notification_id)


@app.get("/readers/{borrower_id}/summary")
def reader_summary(borrower_id: str, lib: Library = Depends(get_library)):
    return lib.reader_summary(borrower_id)


@app.get("/stats", dependencies=staff)
def get_library_stats(lib: Library = Depends(get_library)):
    return lib.get_statistics()


@app.get("/reports/overdue")
def overdue_report(lib: Library = Depends(get_library)):
    return lib.overdue_report()


@app.get("/reports/monthly")
def monthly_report(year: int = Query(..., ge=2000, le=2100), month: int = Query(..., ge=1, le=12),
                   lib: Library = Depends(get_library)):
    return lib.monthly_loans(year, month)


@app.get("/reports/top-readers", dependencies=staff)
def top_readers(limit: int = Query(5, ge=1, le=50), lib: Library = Depends(get_library)):
    return lib.top_readers(limit)
