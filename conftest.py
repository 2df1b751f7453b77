import os
from datetime import datetime, timedelta

import pytest

from lendingdesk.library import Library
from lendingdesk.models import AuthContext


class FakeClock:
    """Settable clock so tests can move a loan past its due date."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def as_auth(user) -> AuthContext:
    return AuthContext(user_id=user.id, role=user.role)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 10, 0, 0))


@pytest.fixture
def lib(tmp_path, request, clock):
    # A fresh database file for each test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def admin(lib):
    return as_auth(lib.create_user("Ada Admin", "admin@example.com", role="admin"))


@pytest.fixture
def librarian(lib):
    return as_auth(lib.create_user("Libby Librarian", "librarian@example.com", role="librarian"))


@pytest.fixture
def reader(lib):
    return as_auth(lib.create_user("Rita Reader", "rita@example.com"))


@pytest.fixture
def other_reader(lib):
    return as_auth(lib.create_user("Otto Reader", "otto@example.com"))


@pytest.fixture
def book(lib):
    """A book with a single copy."""
    return lib.add_book("Dune", "Frank Herbert", isbn="9780441172719", copies=1)
