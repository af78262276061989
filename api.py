import asyncio
import logging
import os
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from lending import FailureReason, LendingError
from library import Library

logger = logging.getLogger(__name__)

# Read the database location at import time so a reload can point at a scratch file
library = Library(db_file=os.environ.get("LIBRARY_DB_FILE") or None)

# Requests share one connection; handle them one at a time
_db_lock = asyncio.Lock()


async def serialize_access():
    async with _db_lock:
        yield


app = FastAPI(
    title=f"{settings.app_name} API",
    version=settings.app_version,
    dependencies=[Depends(serialize_access)],
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the X-API-Key header."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
_STATUS_BY_REASON: Dict[FailureReason, int] = {
    FailureReason.UNKNOWN_MEMBER: 404,
    FailureReason.UNKNOWN_BOOK: 404,
    FailureReason.UNKNOWN_LOAN: 404,
    FailureReason.PERSISTENCE_FAILURE: 500,
}


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    status = _STATUS_BY_REASON.get(exc.reason, 409)
    logger.info(f"{request.method} {request.url.path} refused: {exc.reason.value}")
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


# --- Models ---
class BookModel(BaseModel):
    book_id: int
    title: str
    author: str
    isbn: str
    publication_year: int | None = None
    total_copies: int
    available_copies: int


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    publication_year: int | None = None
    total_copies: int = Field(default=1, ge=1)


class AddCopiesModel(BaseModel):
    copies: int = Field(ge=1)


class MemberModel(BaseModel):
    member_id: int
    first_name: str
    last_name: str
    email: str
    phone_number: str | None = None
    join_date: date
    total_fine_due: float


class MemberCreateModel(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone_number: str | None = None


class MemberUpdateModel(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone_number: str | None = None


class LoanModel(BaseModel):
    loan_id: int
    book_id: int
    member_id: int
    loan_date: date
    due_date: date
    return_date: date | None = None
    renewed: bool
    fine_amount: float
    fine_paid: bool


class BorrowModel(BaseModel):
    member_id: int
    book_id: int


class ReturnResultModel(BaseModel):
    loan_id: int
    fine: float


class PaymentResultModel(BaseModel):
    member_id: int
    paid: float


class MemberStatusModel(BaseModel):
    member: MemberModel
    balance: float
    max_loans: int
    open_loans: List[LoanModel]


class FineDetailsModel(BaseModel):
    member_id: int
    balance: float
    unpaid_loans: List[LoanModel]


class OverdueEntryModel(BaseModel):
    loan: LoanModel
    title: str | None = None
    member_name: str | None = None
    days_overdue: int
    fine: float


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    total_members: int
    active_loans: int
    overdue_loans: int
    outstanding_fines: float


def _loan_models(loans) -> List[LoanModel]:
    return [LoanModel(**loan.to_dict()) for loan in loans]


# --- Health ---
@app.get("/health")
def health_check():
    """Lightweight health endpoint with a quick database probe."""
    db_ok = True
    try:
        library.conn.execute("SELECT 1")
    except Exception:
        logger.exception("Health check database probe failed")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now().isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    """Catalogue, membership and lending counters."""
    return StatsModel(**library.get_statistics())


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    q: Optional[str] = Query(None, description="Title, author or ISBN fragment"),
    available: bool = Query(False, description="Only books with a copy on the shelf"),
):
    """List the catalogue, optionally filtered."""
    if q and available:
        books = library.check_availability(q)
    elif q:
        books = library.search_books(q)
    elif available:
        books = library.available_books()
    else:
        books = library.list_books()
    return [BookModel(**b.to_dict()) for b in books]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    """Add a new title with all copies on the shelf."""
    try:
        book = library.add_book(payload.title, payload.author, payload.isbn,
                                publication_year=payload.publication_year,
                                total_copies=payload.total_copies)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BookModel(**book.to_dict())


@app.post("/books/{book_id}/copies", response_model=BookModel, dependencies=[Depends(get_api_key)])
def add_copies(book_id: int, payload: AddCopiesModel):
    book = library.add_copies(book_id, payload.copies)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int):
    """Delete a title that has no copies out and no unpaid fines."""
    if library.find_book(book_id) is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    if not library.remove_book(book_id):
        raise HTTPException(status_code=409, detail="Book has active loans or unpaid fines.")
    return {"message": "Book removed."}


# --- Members ---
@app.get("/members", response_model=List[MemberModel])
def get_members():
    return [MemberModel(**m.to_dict()) for m in library.list_members()]


@app.post("/members", response_model=MemberModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_member(payload: MemberCreateModel):
    try:
        member = library.add_member(payload.first_name, payload.last_name, payload.email, payload.phone_number)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return MemberModel(**member.to_dict())


@app.put("/members/{member_id}", response_model=MemberModel, dependencies=[Depends(get_api_key)])
def update_member(member_id: int, update: MemberUpdateModel):
    """Update a member's contact details."""
    try:
        member = library.update_member(member_id, first_name=update.first_name, last_name=update.last_name,
                                       email=update.email, phone_number=update.phone_number)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not member:
        raise HTTPException(status_code=404, detail="Member not found.")
    return MemberModel(**member.to_dict())


@app.delete("/members/{member_id}", dependencies=[Depends(get_api_key)])
def delete_member(member_id: int):
    if library.find_member(member_id) is None:
        raise HTTPException(status_code=404, detail="Member not found.")
    if not library.remove_member(member_id):
        raise HTTPException(status_code=409, detail="Member has active loans or outstanding fines.")
    return {"message": "Member removed."}


@app.get("/members/{member_id}", response_model=MemberStatusModel)
def get_member_status(member_id: int):
    """Profile, balance and currently borrowed books."""
    status = library.member_status(member_id)
    return MemberStatusModel(
        member=MemberModel(**status.member.to_dict()),
        balance=status.balance,
        max_loans=status.max_loans,
        open_loans=_loan_models(status.open_loans),
    )


@app.get("/members/{member_id}/loans", response_model=List[LoanModel])
def get_member_loans(member_id: int, history: bool = Query(False, description="Include returned loans")):
    if history:
        if library.find_member(member_id) is None:
            raise HTTPException(status_code=404, detail="Member not found.")
        return _loan_models(library.loan_history(member_id))
    return _loan_models(library.borrowed_books(member_id))


@app.get("/members/{member_id}/fines", response_model=FineDetailsModel)
def get_member_fines(member_id: int):
    details = library.fine_details(member_id)
    return FineDetailsModel(member_id=member_id, balance=details.balance,
                            unpaid_loans=_loan_models(details.unpaid_loans))


@app.post("/members/{member_id}/pay", response_model=PaymentResultModel, dependencies=[Depends(get_api_key)])
def pay_fines(member_id: int):
    """Settle a member's whole outstanding balance."""
    paid = library.pay_fines(member_id)
    return PaymentResultModel(member_id=member_id, paid=paid)


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def borrow_book(payload: BorrowModel, on: Optional[date] = Query(None, description="Loan date")):
    loan = library.borrow_book(payload.member_id, payload.book_id, today=on)
    return LoanModel(**loan.to_dict())


@app.get("/loans/overdue", response_model=List[OverdueEntryModel])
def get_overdue(on: Optional[date] = Query(None, description="Report date")):
    """Every open loan past its due date, with the fine accrued so far."""
    return [
        OverdueEntryModel(
            loan=LoanModel(**e.loan.to_dict()),
            title=e.book.title if e.book else None,
            member_name=e.member.full_name if e.member else None,
            days_overdue=e.days_overdue,
            fine=e.fine,
        )
        for e in library.overdue_report(today=on)
    ]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int):
    loan = library.find_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found.")
    return LoanModel(**loan.to_dict())


@app.post("/loans/{loan_id}/return", response_model=ReturnResultModel, dependencies=[Depends(get_api_key)])
def return_book(loan_id: int, on: Optional[date] = Query(None, description="Return date")):
    """Close a loan; returning it again reports the fine recorded the first time."""
    fine = library.return_book(loan_id, today=on)
    return ReturnResultModel(loan_id=loan_id, fine=fine)


@app.post("/loans/{loan_id}/renew", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def renew_book(loan_id: int, on: Optional[date] = Query(None, description="Renewal date")):
    loan = library.renew_book(loan_id, today=on)
    return LoanModel(**loan.to_dict())
