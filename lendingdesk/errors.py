"""Domain errors raised by the lending core.

Every error carries a stable ``code`` that callers map to a localized message
and an HTTP ``status_code`` used by the API layer. Messages never contain raw
store errors.
"""


class LibraryError(Exception):
    code = "library_error"
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


# --- inventory ---
class NoCopyAvailable(LibraryError):
    """No copy of this book is available."""
    code = "no_copy_available"
    status_code = 409


class CopyNotAvailable(LibraryError):
    """The requested copy is not available."""
    code = "copy_not_available"
    status_code = 409


class InsufficientAvailableCopies(LibraryError):
    """Not enough available copies to remove."""
    code = "insufficient_available_copies"
    status_code = 409


class InvalidCopyTransition(LibraryError):
    """This copy status change is not allowed."""
    code = "invalid_copy_transition"
    status_code = 409


# --- loans ---
class UnpaidFinesBlock(LibraryError):
    """The user has unpaid fines."""
    code = "unpaid_fines"
    status_code = 409


class AlreadyBorrowed(LibraryError):
    """The user already has this book on loan."""
    code = "already_borrowed"
    status_code = 409


class ExtensionLimitReached(LibraryError):
    """The loan has reached the maximum number of extensions."""
    code = "extension_limit_reached"
    status_code = 409


class UnpaidFineBlocksExtension(LibraryError):
    """The loan has an unpaid fine and cannot be extended."""
    code = "unpaid_fine_blocks_extension"
    status_code = 409


class NoActiveLoanForBook(LibraryError):
    """No active loan for this book."""
    code = "no_active_loan_for_book"
    status_code = 404


class LoanAlreadyReturned(LibraryError):
    """The loan has already been returned."""
    code = "loan_already_returned"
    status_code = 409


class NotAReader(LibraryError):
    """Only readers can borrow books."""
    code = "not_a_reader"
    status_code = 400


class UserInactive(LibraryError):
    """The user account is inactive."""
    code = "user_inactive"
    status_code = 403


# --- fines ---
class FineAlreadySettled(LibraryError):
    """The fine has already been settled."""
    code = "fine_already_settled"
    status_code = 409


# --- lookups ---
class NotFound(LibraryError):
    code = "not_found"
    status_code = 404


class UserNotFound(NotFound):
    """User not found."""
    code = "user_not_found"


class BookNotFound(NotFound):
    """Book not found."""
    code = "book_not_found"


class CopyNotFound(NotFound):
    """Copy not found."""
    code = "copy_not_found"


class LoanNotFound(NotFound):
    """Loan not found."""
    code = "loan_not_found"


class FineNotFound(NotFound):
    """Fine not found."""
    code = "fine_not_found"


# --- access and input ---
class PermissionDenied(LibraryError):
    """You are not allowed to perform this operation."""
    code = "permission_denied"
    status_code = 403


class ValidationError(LibraryError):
    """Invalid input."""
    code = "invalid"
    status_code = 400


class DuplicateEntry(LibraryError):
    """The entry already exists."""
    code = "duplicate"
    status_code = 409


# --- store ---
class StoreUnavailable(LibraryError):
    """The library store is temporarily unavailable."""
    code = "store_unavailable"
    status_code = 503
