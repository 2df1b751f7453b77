import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from lendingdesk.config import settings
from lendingdesk.database import get_db_connection
from lendingdesk.errors import LibraryError, NotFound, UserInactive
from lendingdesk.library import Library
from lendingdesk.models import AuthContext

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

library = Library()

app = FastAPI(title=settings.app_name, version=settings.app_version)


# --- Errors ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the API key used for catalog administration."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def current_user(x_user_id: Optional[int] = Header(None, alias="X-User-Id")) -> AuthContext:
    """Resolve the acting user from the session header."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        return library.resolve_auth(x_user_id)
    except NotFound:
        raise HTTPException(status_code=401, detail="Unknown user")
    except UserInactive:
        raise HTTPException(status_code=403, detail="User account is inactive")


# --- Models ---
class UserCreateModel(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str
    role: str = "reader"
    active: bool = True


class BookCreateModel(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    authors: str = Field(..., min_length=1, max_length=500)
    isbn: Optional[str] = None
    copies: int = Field(0, ge=0, le=1000)


class LoanCreateModel(BaseModel):
    """Borrow a book (any available copy) or one specific copy.

    ``user_id`` defaults to the acting user (self-service); staff set it to
    lend to a reader.
    """

    user_id: Optional[int] = None
    book_id: Optional[int] = None
    copy_id: Optional[int] = None
    loan_period_days: Optional[int] = Field(None, ge=1, le=365)


class SelfReturnModel(BaseModel):
    book_id: int


class StockModel(BaseModel):
    delta: int


class CopyUpdateModel(BaseModel):
    status: str


class FineUpdateModel(BaseModel):
    status: str


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round-trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": db_ok,
        "version": settings.app_version,
    }


# --- Catalog ---
@app.post("/users", status_code=201, dependencies=[Depends(get_api_key)])
def create_user(payload: UserCreateModel):
    user = library.create_user(payload.name, payload.email, role=payload.role, active=payload.active)
    return user.to_dict()


@app.post("/books", status_code=201, dependencies=[Depends(get_api_key)])
def create_book(payload: BookCreateModel):
    book = library.add_book(payload.title, payload.authors, isbn=payload.isbn, copies=payload.copies)
    return book.to_dict()


@app.get("/books/{book_id}")
def get_book(book_id: int):
    book = library.get_book(book_id)
    data = book.to_dict()
    data["copies"] = [c.to_dict() for c in library.list_copies(book_id)]
    return data


@app.post("/books/{book_id}/stock")
def adjust_stock(book_id: int, payload: StockModel, auth: AuthContext = Depends(current_user)):
    return library.adjust_stock(auth, book_id, payload.delta)


@app.post("/books/{book_id}/force-return")
def force_return(book_id: int, auth: AuthContext = Depends(current_user)):
    closed = library.force_return_all(auth, book_id)
    return {"book_id": book_id, "closed_count": closed}


@app.patch("/copies/{copy_id}")
def update_copy(copy_id: int, payload: CopyUpdateModel, auth: AuthContext = Depends(current_user)):
    return library.set_copy_status(auth, copy_id, payload.status.lower()).to_dict()


# --- Loans ---
@app.post("/loans", status_code=201)
def create_loan(payload: LoanCreateModel, auth: AuthContext = Depends(current_user)):
    user_id = payload.user_id if payload.user_id is not None else auth.user_id
    receipt = library.create_loan(
        auth,
        user_id,
        book_id=payload.book_id,
        copy_id=payload.copy_id,
        loan_period_days=payload.loan_period_days,
    )
    return receipt.to_dict()


@app.post("/loans/return")
def self_return(payload: SelfReturnModel, auth: AuthContext = Depends(current_user)):
    return library.self_return(auth, payload.book_id).to_dict()


@app.post("/loans/{loan_id}/return")
def close_loan(loan_id: int, auth: AuthContext = Depends(current_user)):
    return library.close_loan(auth, loan_id).to_dict()


@app.post("/loans/{loan_id}/extend")
def extend_loan(loan_id: int, auth: AuthContext = Depends(current_user)):
    return library.extend_loan(auth, loan_id).to_dict()


@app.get("/loans/me")
def my_loans(auth: AuthContext = Depends(current_user)) -> List[Dict[str, Any]]:
    return [v.to_dict() for v in library.list_loans_with_accrual(auth)]


@app.get("/users/{user_id}/loans")
def user_loans(user_id: int, auth: AuthContext = Depends(current_user)) -> List[Dict[str, Any]]:
    return [v.to_dict() for v in library.list_loans_with_accrual(auth, user_id)]


@app.get("/loans")
def all_loans(
    status: Optional[str] = Query(None, description="ACTIVE, OVERDUE or RETURNED"),
    auth: AuthContext = Depends(current_user),
) -> List[Dict[str, Any]]:
    return [v.to_dict() for v in library.list_loans(auth, status)]


# --- Fines ---
@app.get("/fines")
def list_fines(
    user_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    auth: AuthContext = Depends(current_user),
):
    return library.list_fines(auth, user_id=user_id, status=status.lower() if status else None)


@app.patch("/fines/{fine_id}")
def settle_fine(fine_id: int, payload: FineUpdateModel, auth: AuthContext = Depends(current_user)):
    return library.settle_fine(auth, fine_id, payload.status.lower()).to_dict()


# --- Notifications ---
@app.get("/notifications")
def list_notifications(unread_only: bool = Query(False), auth: AuthContext = Depends(current_user)):
    return library.list_notifications(auth, unread_only=unread_only)


@app.post("/notifications/{notification_id}/read")
def read_notification(notification_id: int, auth: AuthContext = Depends(current_user)):
    return library.mark_notification_read(auth, notification_id)


# --- Admin ---
@app.get("/admin/logs")
def list_logs(limit: int = Query(100, ge=1, le=1000), auth: AuthContext = Depends(current_user)):
    return library.list_logs(auth, limit=limit)


@app.post("/admin/reconcile")
def reconcile(auth: AuthContext = Depends(current_user)):
    drifts = library.reconcile_counters(auth)
    return {"fixed": len(drifts), "drifts": drifts}
