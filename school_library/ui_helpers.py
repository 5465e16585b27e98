import os
import json
from typing import List, Any, Dict, Sequence

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def print_list_result(books: Sequence[Any]) -> None:
    """Print books in the current output mode.
    - plain: '<id> - Title by Author (available/total)' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _print_json([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="dim")
        table.add_column("Available", justify="right")
        for b in books:
            style = "red" if b.available <= 0 else "green"
            table.add_row(str(b.id), b.title, b.author, b.genre or "",
                          f"[{style}]{b.available}/{b.total}[/]")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} ({b.available}/{b.total})")


def print_loans_result(loans: Sequence[Any], now: Any = None) -> None:
    mode = get_output_mode()

    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        _print_json([l.to_dict() for l in loans])
    elif mode == "rich":
        table = Table(title="🔖 Loans", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book", justify="right")
        table.add_column("Reader")
        table.add_column("Status")
        table.add_column("Due")
        for l in loans:
            status = l.status.value
            if l.is_overdue(now):
                status = f"[bold red]{status} (overdue)[/]"
            table.add_row(str(l.id), str(l.book_id), l.borrower_id, status, l.due_at.date().isoformat())
        _console.print(table)
    else:
        for l in loans:
            flag = " OVERDUE" if l.is_overdue(now) else ""
            print(f"{l.id} - book {l.book_id} for {l.borrower_id}: {l.status.value} "
                  f"(due {l.due_at.date().isoformat()}){flag}")


def print_waitlist_result(entries: Sequence[Any]) -> None:
    mode = get_output_mode()

    if not entries:
        print("Waitlist is empty.")
        return

    if mode == "json":
        _print_json([e.to_dict() for e in entries])
    elif mode == "rich":
        table = Table(title="⏳ Waitlist", header_style="bold cyan")
        table.add_column("Entry", style="magenta")
        table.add_column("Book", justify="right")
        table.add_column("Position", justify="right")
        table.add_column("Reader")
        for e in entries:
            table.add_row(str(e.id), str(e.book_id), str(e.position or ""), e.borrower_id)
        _console.print(table)
    else:
        for e in entries:
            print(f"{e.id} - book {e.book_id} #{e.position}: {e.borrower_id}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print the librarian overview.
    - plain: one 'Label: value' line per headline number
    - json: the whole overview as a JSON object
    - rich: Panel with the headline numbers
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    headline: List[tuple] = [
        ("Total Books", stats.get("total_books", 0)),
        ("Active Loans", stats.get("active_loans", 0)),
        ("Overdue Loans", stats.get("overdue_loans", 0)),
        ("Pending Requests", stats.get("pending_requests", 0)),
        ("Waitlist", stats.get("waitlist_size", 0)),
    ]

    if mode == "json":
        _print_json(stats)
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in headline)
        top = stats.get("top_books") or []
        if top:
            content += "\n\n[bold]Most borrowed:[/]\n" + "\n".join(f"  {t['title']} ({t['count']})" for t in top)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, value in headline:
            print(f"{label}: {value}")
