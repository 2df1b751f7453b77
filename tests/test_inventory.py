import pytest

from lendingdesk import inventory
from lendingdesk.database import read_connection, transaction
from lendingdesk.errors import (
    BookNotFound,
    CopyNotFound,
    InsufficientAvailableCopies,
    InvalidCopyTransition,
    PermissionDenied,
    ValidationError,
)
from lendingdesk.models import CopyStatus


def counted_available(lib, book_id):
    with read_connection(lib.db_file) as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM copies WHERE book_id = ? AND status = 'available' AND is_deleted = 0",
            (book_id,),
        ).fetchone()
    return row["n"]


def assert_counter_matches(lib, book_id):
    assert lib.get_book(book_id).available_copies == counted_available(lib, book_id)


def test_add_copies_updates_both_counters(lib, librarian, book):
    new_ids = lib.add_copies(librarian, book.id, 3)

    assert len(new_ids) == 3
    updated = lib.get_book(book.id)
    assert updated.total_copies == 4
    assert updated.available_copies == 4
    copies = lib.list_copies(book.id)
    assert len({c.inventory_label for c in copies}) == 4
    assert all(c.status is CopyStatus.AVAILABLE for c in copies)
    assert_counter_matches(lib, book.id)


def test_inventory_labels_use_isbn_suffix(lib, book):
    copy = lib.list_copies(book.id)[0]
    assert copy.inventory_label.startswith("2719-")


@pytest.mark.parametrize("count", [0, -2])
def test_add_copies_requires_positive_count(lib, librarian, book, count):
    with pytest.raises(ValidationError):
        lib.add_copies(librarian, book.id, count)


def test_add_copies_requires_staff(lib, reader, book):
    with pytest.raises(PermissionDenied):
        lib.add_copies(reader, book.id, 1)


def test_add_copies_unknown_book(lib, librarian):
    with pytest.raises(BookNotFound):
        lib.add_copies(librarian, 999, 1)


def test_remove_more_than_available_changes_nothing(lib, admin):
    book = lib.add_book("Emma", "Jane Austen", copies=2)
    labels_before = [c.inventory_label for c in lib.list_copies(book.id)]

    with pytest.raises(InsufficientAvailableCopies):
        lib.remove_copies(admin, book.id, 3)

    after = lib.get_book(book.id)
    assert after.total_copies == 2
    assert after.available_copies == 2
    assert [c.inventory_label for c in lib.list_copies(book.id)] == labels_before


def test_remove_copies_never_touches_borrowed(lib, librarian, reader):
    book = lib.add_book("Emma", "Jane Austen", copies=3)
    receipt = lib.create_loan(reader, reader.user_id, book_id=book.id)

    removed = lib.remove_copies(librarian, book.id, 2)

    assert removed == 2
    after = lib.get_book(book.id)
    assert after.total_copies == 1
    assert after.available_copies == 0
    remaining = lib.list_copies(book.id)
    assert [c.id for c in remaining] == [receipt.copy_id]
    assert remaining[0].status is CopyStatus.BORROWED

    with pytest.raises(InsufficientAvailableCopies):
        lib.remove_copies(librarian, book.id, 1)


def test_adjust_stock_positive_and_negative(lib, librarian, book):
    added = lib.adjust_stock(librarian, book.id, 2)
    assert len(added["new_copy_ids"]) == 2
    assert added["total_copies"] == 3

    removed = lib.adjust_stock(librarian, book.id, -1)
    assert removed["removed_count"] == 1
    assert removed["total_copies"] == 2
    assert removed["available_copies"] == 2

    with pytest.raises(ValidationError):
        lib.adjust_stock(librarian, book.id, 0)


def test_release_copy_is_idempotent(lib, reader, book):
    receipt = lib.create_loan(reader, reader.user_id, book_id=book.id)
    assert lib.get_book(book.id).available_copies == 0

    with transaction(lib.db_file) as conn:
        assert inventory.release_copy(conn, receipt.copy_id) is True
        assert inventory.release_copy(conn, receipt.copy_id) is False

    assert lib.get_book(book.id).available_copies == 1
    assert_counter_matches(lib, book.id)


def test_release_unknown_copy(lib):
    with transaction(lib.db_file) as conn:
        with pytest.raises(CopyNotFound):
            inventory.release_copy(conn, 12345)


def test_copy_status_moves_counter_only_across_available(lib, librarian, book):
    copy_id = lib.list_copies(book.id)[0].id

    lib.set_copy_status(librarian, copy_id, "damaged")
    assert lib.get_book(book.id).available_copies == 0

    lib.set_copy_status(librarian, copy_id, CopyStatus.LOST)
    assert lib.get_book(book.id).available_copies == 0

    copy = lib.set_copy_status(librarian, copy_id, "available")
    assert copy.status is CopyStatus.AVAILABLE
    assert lib.get_book(book.id).available_copies == 1
    assert_counter_matches(lib, book.id)


def test_copy_status_same_value_is_noop(lib, librarian, book):
    copy_id = lib.list_copies(book.id)[0].id
    lib.set_copy_status(librarian, copy_id, "available")
    assert lib.get_book(book.id).available_copies == 1


def test_borrowed_belongs_to_loans(lib, librarian, reader, book):
    copy_id = lib.list_copies(book.id)[0].id
    with pytest.raises(InvalidCopyTransition):
        lib.set_copy_status(librarian, copy_id, "borrowed")

    lib.create_loan(reader, reader.user_id, book_id=book.id)
    with pytest.raises(InvalidCopyTransition):
        lib.set_copy_status(librarian, copy_id, "damaged")


def test_copy_status_rejects_unknown_value(lib, librarian, book):
    copy_id = lib.list_copies(book.id)[0].id
    with pytest.raises(ValidationError):
        lib.set_copy_status(librarian, copy_id, "shredded")


def test_reconcile_counters_fixes_drift(lib, admin, book):
    with transaction(lib.db_file) as conn:
        conn.execute("UPDATE books SET available_copies = 0 WHERE id = ?", (book.id,))

    drifts = lib.reconcile_counters(admin)

    assert drifts == [{
        "book_id": book.id,
        "total_before": 1,
        "total_after": 1,
        "available_before": 0,
        "available_after": 1,
    }]
    assert lib.get_book(book.id).available_copies == 1
    assert lib.reconcile_counters(admin) == []


def test_reconcile_counters_is_admin_only(lib, librarian):
    with pytest.raises(PermissionDenied):
        lib.reconcile_counters(librarian)
