import logging
import subprocess
import sys
from typing import Callable, Optional, TypeVar

import typer
from rich.console import Console

from lendingdesk import database
from lendingdesk.config import settings
from lendingdesk.errors import LibraryError
from lendingdesk.library import Library
from lendingdesk.models import AuthContext
from lendingdesk.ui_helpers import (
    print_error,
    print_fines_result,
    print_loans_result,
    print_result,
    set_output_mode,
)

console = Console()
T = TypeVar("T")

app = typer.Typer(help="Lending desk CLI")

ACTOR_OPTION = typer.Option(..., "--as", help="ID of the acting user")


def get_library() -> Library:
    """A fresh Library bound to the configured database (LIBRARY_DB_FILE)."""
    return Library()


def _run(fn: Callable[[], T]) -> T:
    """Call ``fn``; domain errors become a printed message and exit code 1."""
    try:
        return fn()
    except LibraryError as e:
        print_error(e.code, e.message)
        raise typer.Exit(code=1)


def _auth(lib: Library, actor: int) -> AuthContext:
    return _run(lambda: lib.resolve_auth(actor))


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log lending activity to stderr"),
):
    """Global CLI options (output mode, logging)."""
    if output:
        set_output_mode(output)
    logging.basicConfig(
        level=settings.log_level.upper() if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# ------------------------- Setup ------------------------- #
@app.command("init-db")
def cli_init_db():
    """Create the database schema."""
    db_file = database.resolve_db_file()
    database.initialize_database(db_file)
    print(f"Database ready: {db_file}")


@app.command("add-user")
def cli_add_user(
    name: str,
    email: str,
    role: str = typer.Option("reader", "--role", help="reader | librarian | admin"),
):
    """Register a user."""
    lib = get_library()
    user = _run(lambda: lib.create_user(name, email, role=role.lower()))
    print_result("User created", user.to_dict())


@app.command("add-book")
def cli_add_book(
    title: str,
    authors: str,
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    copies: int = typer.Option(0, "--copies", min=0, help="Initial number of copies"),
):
    """Add a book to the catalog."""
    lib = get_library()
    book = _run(lambda: lib.add_book(title, authors, isbn=isbn, copies=copies))
    print_result("Book added", book.to_dict())


# ------------------------- Loans ------------------------- #
@app.command("borrow")
def cli_borrow(
    actor: int = ACTOR_OPTION,
    user: Optional[int] = typer.Option(None, "--user", help="Borrower (defaults to the acting user)"),
    book: Optional[int] = typer.Option(None, "--book", help="Borrow any available copy of this book"),
    copy: Optional[int] = typer.Option(None, "--copy", help="Borrow this specific copy"),
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Loan period in days"),
):
    """Borrow a book."""
    lib = get_library()
    auth = _auth(lib, actor)
    receipt = _run(
        lambda: lib.create_loan(
            auth, user if user is not None else actor, book_id=book, copy_id=copy, loan_period_days=days
        )
    )
    print_result("Loan created", receipt.to_dict())


@app.command("return")
def cli_return(
    loan_id: Optional[int] = typer.Argument(None),
    actor: int = ACTOR_OPTION,
    book: Optional[int] = typer.Option(None, "--book", help="Return your own loan of this book"),
):
    """Return a loan by id, or your own loan of a book with --book."""
    lib = get_library()
    auth = _auth(lib, actor)
    if loan_id is None and book is None:
        print_error("invalid", "Give a loan id or --book.")
        raise typer.Exit(code=1)
    if loan_id is not None:
        receipt = _run(lambda: lib.close_loan(auth, loan_id))
    else:
        receipt = _run(lambda: lib.self_return(auth, book))
    print_result("Loan returned", receipt.to_dict())


@app.command("extend")
def cli_extend(loan_id: int, actor: int = ACTOR_OPTION):
    """Extend one of your loans."""
    lib = get_library()
    auth = _auth(lib, actor)
    receipt = _run(lambda: lib.extend_loan(auth, loan_id))
    print_result("Loan extended", receipt.to_dict())


@app.command("loans")
def cli_loans(
    actor: int = ACTOR_OPTION,
    user: Optional[int] = typer.Option(None, "--user", help="Whose loans (staff only for others)"),
    all_loans: bool = typer.Option(False, "--all", help="Every loan in the library (staff)"),
    status: Optional[str] = typer.Option(None, "--status", help="ACTIVE | OVERDUE | RETURNED, with --all"),
):
    """List loans. Overdue fines are accrued before listing."""
    lib = get_library()
    auth = _auth(lib, actor)
    if all_loans or status:
        views = _run(lambda: lib.list_loans(auth, status))
    else:
        views = _run(lambda: lib.list_loans_with_accrual(auth, user))
    print_loans_result([v.to_dict() for v in views])


# ------------------------- Inventory ------------------------- #
@app.command("stock")
def cli_stock(
    book_id: int,
    delta: int = typer.Option(..., "--delta", help="Copies to add (positive) or remove (negative)"),
    actor: int = ACTOR_OPTION,
):
    """Add or remove copies of a book."""
    lib = get_library()
    auth = _auth(lib, actor)
    result = _run(lambda: lib.adjust_stock(auth, book_id, delta))
    print_result("Stock updated", result)


@app.command("copy-status")
def cli_copy_status(copy_id: int, status: str, actor: int = ACTOR_OPTION):
    """Mark a copy available, damaged, lost or reserved."""
    lib = get_library()
    auth = _auth(lib, actor)
    copy = _run(lambda: lib.set_copy_status(auth, copy_id, status.lower()))
    print_result("Copy updated", copy.to_dict())


@app.command("force-return")
def cli_force_return(book_id: int, actor: int = ACTOR_OPTION):
    """Close every active loan of a book."""
    lib = get_library()
    auth = _auth(lib, actor)
    closed = _run(lambda: lib.force_return_all(auth, book_id))
    print_result("Force return", {"book_id": book_id, "closed_count": closed})


@app.command("reconcile")
def cli_reconcile(actor: int = ACTOR_OPTION):
    """Recompute copy counters from the copies table (admin)."""
    lib = get_library()
    auth = _auth(lib, actor)
    drifts = _run(lambda: lib.reconcile_counters(auth))
    print_result("Counters reconciled", {"fixed": len(drifts)})
    for d in drifts:
        print(
            f"book {d['book_id']}: total {d['total_before']} -> {d['total_after']}, "
            f"available {d['available_before']} -> {d['available_after']}"
        )


# ------------------------- Fines ------------------------- #
@app.command("fines")
def cli_fines(
    actor: int = ACTOR_OPTION,
    user: Optional[int] = typer.Option(None, "--user"),
    status: Optional[str] = typer.Option(None, "--status", help="accrued | paid | cancelled"),
):
    """List fines: your own, a user's, or every unpaid fine (staff)."""
    lib = get_library()
    auth = _auth(lib, actor)
    rows = _run(lambda: lib.list_fines(auth, user_id=user, status=status.lower() if status else None))
    print_fines_result(rows)


@app.command("settle")
def cli_settle(fine_id: int, status: str, actor: int = ACTOR_OPTION):
    """Mark a fine paid or cancelled (staff)."""
    lib = get_library()
    auth = _auth(lib, actor)
    fine = _run(lambda: lib.settle_fine(auth, fine_id, status.lower()))
    print_result("Fine settled", fine.to_dict())


# ------------------------- Server ------------------------- #
@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"[bold green]Starting {settings.app_name} on http://{host}:{port}[/]")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lendingdesk.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be found. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
