import threading
from datetime import timedelta

from conftest import as_auth
from lendingdesk.database import read_connection
from lendingdesk.errors import LoanAlreadyReturned, NoCopyAvailable


def run_in_threads(targets):
    """Start every callable at once and collect (result, error) pairs."""
    barrier = threading.Barrier(len(targets))
    results = [None] * len(targets)

    def worker(index, fn):
        barrier.wait()
        try:
            results[index] = (fn(), None)
        except Exception as e:
            results[index] = (None, e)

    threads = [threading.Thread(target=worker, args=(i, fn)) for i, fn in enumerate(targets)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_racing_borrowers_get_exactly_k_copies(lib):
    copies, borrowers = 3, 8
    book = lib.add_book("Emma", "Jane Austen", copies=copies)
    readers = [as_auth(lib.create_user(f"Reader {i}", f"reader{i}@example.com")) for i in range(borrowers)]

    results = run_in_threads(
        [lambda a=a: lib.create_loan(a, a.user_id, book_id=book.id) for a in readers]
    )

    succeeded = [r for r, e in results if e is None]
    failed = [e for r, e in results if e is not None]
    assert len(succeeded) == copies
    assert len(failed) == borrowers - copies
    assert all(isinstance(e, NoCopyAvailable) for e in failed)
    assert len({r.copy_id for r in succeeded}) == copies

    after = lib.get_book(book.id)
    assert after.available_copies == 0
    with read_connection(lib.db_file) as conn:
        active = conn.execute("SELECT COUNT(*) AS n FROM loans WHERE status = 'active'").fetchone()["n"]
    assert active == copies


def test_racing_returns_release_the_copy_once(lib, reader, librarian, book):
    receipt = lib.create_loan(reader, reader.user_id, book_id=book.id)

    results = run_in_threads([
        lambda: lib.close_loan(reader, receipt.loan_id),
        lambda: lib.close_loan(librarian, receipt.loan_id),
    ])

    errors = [e for _, e in results if e is not None]
    assert len(errors) == 1
    assert isinstance(errors[0], LoanAlreadyReturned)
    assert lib.get_book(book.id).available_copies == 1


def test_racing_readers_accrue_one_fine(lib, clock, reader, librarian, book):
    receipt = lib.create_loan(reader, reader.user_id, book_id=book.id)
    clock.current = receipt.due_at + timedelta(days=4)

    results = run_in_threads(
        [lambda: lib.list_loans_with_accrual(reader) for _ in range(3)]
        + [lambda: lib.list_loans_with_accrual(librarian, reader.user_id) for _ in range(3)]
    )

    assert all(e is None for _, e in results)
    with read_connection(lib.db_file) as conn:
        rows = conn.execute("SELECT amount FROM fines WHERE loan_id = ?", (receipt.loan_id,)).fetchall()
    assert [r["amount"] for r in rows] == [8]
