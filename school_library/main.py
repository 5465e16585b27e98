import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from .commands import Role, SessionContext
from .config import settings
from .errors import LibraryError
from .library import Library
from .ui_helpers import (
    print_list_result,
    print_loans_result,
    print_stats_result,
    print_waitlist_result,
    set_output_mode,
)

APP_NAME = "School Library CLI"

console = Console()
logger = logging.getLogger(__name__)


class LibraryManager:
    """One Library per CLI invocation, rebuilt when the database file changes."""
    _instance: Optional[Library] = None
    _db_file: Optional[str] = None
    session: SessionContext = SessionContext(name=settings.default_staff_name, role=Role.LIBRARIAN)

    @classmethod
    def configure(cls, db_file: Optional[str]) -> None:
        db_file = db_file or settings.database_file
        if cls._instance is not None and db_file != cls._db_file:
            cls._instance.close()
            cls._instance = None
        cls._db_file = db_file

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library(cls._db_file or settings.database_file)
        return cls._instance


def _fail(exc: LibraryError) -> None:
    console.print(f"[bold red]Error:[/] {escape(str(exc))}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", envvar="LIBRARY_DB_FILE", help="SQLite database file"),
    actor: Optional[str] = typer.Option(None, "--actor", envvar="LIB_CLI_ACTOR", help="Acting reader or staff id"),
    name: Optional[str] = typer.Option(None, "--name", envvar="LIB_CLI_NAME", help="Acting staff name"),
    role: Role = typer.Option(Role.LIBRARIAN, "--role", help="Role of the acting user"),
):
    """Global options (output mode, database, acting user)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)
    LibraryManager.configure(db)
    LibraryManager.session = SessionContext(actor_id=actor, name=name or settings.default_staff_name, role=role)


# --- Catalog ---
@app.command("books")
def cli_books(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search title and author"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    page: int = typer.Option(1, "--page", "-p", min=1),
):
    """List the catalog."""
    lib = LibraryManager.get_instance()
    try:
        result = lib.list_books(query=query, genre=genre, page=page)
    except LibraryError as e:
        _fail(e)
    print_list_result(result["items"])


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    total: int = typer.Option(1, "--total", "-n", min=1, help="Copies owned"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    location: Optional[str] = typer.Option(None, "--location", help="Shelf"),
):
    """Add a book to the catalog."""
    lib = LibraryManager.get_instance()
    details = {k: v for k, v in {"genre": genre, "location": location}.items() if v}
    try:
        book = lib.add_book(title, author, total=total, **details)
    except LibraryError as e:
        _fail(e)
    print(f"Successfully added: {book.title} by {book.author} (id {book.id}, {book.total} copies)")


@app.command("stock")
def cli_stock(
    book_id: int,
    available: int,
    total: Optional[int] = typer.Option(None, "--total", help="Also change the number of copies owned"),
):
    """Correct a book's stock counts."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.correct_stock(LibraryManager.session, book_id, available, total)
    except LibraryError as e:
        _fail(e)
    print(f"Book {book.id} stock: {book.available}/{book.total}")


# --- Loans ---
@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", "-s"),
    reader: Optional[str] = typer.Option(None, "--reader", "-r"),
    overdue: bool = typer.Option(False, "--overdue", help="Only overdue loans"),
):
    """List loans, newest first."""
    lib = LibraryManager.get_instance()
    try:
        loans = lib.list_loans(status=status, borrower_id=reader, overdue=True if overdue else None)
    except LibraryError as e:
        _fail(e)
    print_loans_result(loans, lib.clock())


@app.command("request")
def cli_request(
    book_id: int,
    reader: Optional[str] = typer.Option(None, "--reader", "-r", help="Defaults to --actor"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Loan duration in days"),
):
    """Request a loan for a reader."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.request_loan(LibraryManager.session, book_id, days, reader)
    except LibraryError as e:
        _fail(e)
    print(f"Loan {loan.id} requested for {loan.borrower_id} (due {loan.due_at.date().isoformat()})")


@app.command("approve")
def cli_approve(loan_id: int, force: bool = typer.Option(False, "--force", help="Allow stock to go below zero")):
    """Approve a requested loan."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.approve_loan(LibraryManager.session, loan_id, force=force)
    except LibraryError as e:
        _fail(e)
    print(f"Loan {loan.id} approved.")


@app.command("reject")
def cli_reject(loan_id: int):
    """Reject a requested loan."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.reject_loan(LibraryManager.session, loan_id)
    except LibraryError as e:
        _fail(e)
    print(f"Loan {loan.id} rejected.")


@app.command("return")
def cli_return(loan_id: int):
    """Receive a returned book and hand it to the waitlist or the shelf."""
    lib = LibraryManager.get_instance()
    try:
        outcome = lib.return_loan(LibraryManager.session, loan_id)
    except LibraryError as e:
        _fail(e)
    print(f"Loan {outcome.loan.id} returned.")
    dispatch = outcome.dispatch
    if dispatch.loan is not None:
        print(f"Reassigned to {dispatch.loan.borrower_id} (loan {dispatch.loan.id}).")
    else:
        print(f"Back on the shelf: {dispatch.available} available.")


@app.command("manual-loan")
def cli_manual_loan(
    reader: str,
    book_id: int,
    days: Optional[int] = typer.Option(None, "--days", "-d"),
    force: bool = typer.Option(False, "--force", help="Allow stock to go below zero"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Create an approved loan directly (librarian override)."""
    lib = LibraryManager.get_instance()
    if not yes and not typer.confirm(f"Lend book {book_id} to {reader} now?"):
        print("Cancelled.")
        raise typer.Exit(code=0)
    try:
        loan = lib.create_manual_loan(LibraryManager.session, reader, book_id, days, force=force)
    except LibraryError as e:
        _fail(e)
    print(f"Loan {loan.id} created for {loan.borrower_id} (due {loan.due_at.date().isoformat()})")


# --- Waitlist ---
@app.command("waitlist")
def cli_waitlist(book_id: Optional[int] = typer.Option(None, "--book", "-b")):
    """Show the waitlist, in queue order."""
    lib = LibraryManager.get_instance()
    try:
        entries = lib.list_waitlist(book_id)
    except LibraryError as e:
        _fail(e)
    print_waitlist_result(entries)


@app.command("join")
def cli_join(book_id: int, reader: Optional[str] = typer.Option(None, "--reader", "-r")):
    """Put a reader on a book's waitlist."""
    lib = LibraryManager.get_instance()
    try:
        entry = lib.join_waitlist(LibraryManager.session, book_id, reader)
    except LibraryError as e:
        _fail(e)
    print(f"{entry.borrower_id} is #{entry.position} in line for book {entry.book_id} (entry {entry.id})")


@app.command("leave")
def cli_leave(entry_id: int):
    """Remove a waitlist entry."""
    lib = LibraryManager.get_instance()
    try:
        lib.leave_waitlist(entry_id)
    except LibraryError as e:
        _fail(e)
    print(f"Waitlist entry {entry_id} removed.")


@app.command("stats")
def cli_stats():
    """Librarian overview."""
    lib = LibraryManager.get_instance()
    try:
        stats = lib.get_statistics()
    except LibraryError as e:
        _fail(e)
    print_stats_result(stats)


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "school_library.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        start_new_session = os.name != "nt"
        proc = subprocess.Popen(args, start_new_session=start_new_session)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=3)
    else:
        if settings.debug:
            args.append("--reload")
        subprocess.run(args)


if __name__ == "__main__":
    app()
