import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation.errors import (
    CirculationError,
    ConflictError,
    ConsistencyError,
    LockTimeout,
    NotFound,
    ValidationError,
)
from circulation.models import CopyStatus, FineStatus, LoanStatus
from circulation.service import CirculationService
from circulation.services.http_client import cleanup_http_client
from config import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_circulation: Optional[CirculationService] = None


def get_circulation() -> CirculationService:
    """Dependency returning the process-wide circulation service."""
    global _circulation
    if _circulation is None:
        _circulation = CirculationService(settings.database_file)
    return _circulation


async def _overdue_sweep(interval: int) -> None:
    """Periodically turn expired loans into visibly overdue ones."""
    while True:
        try:
            count = await asyncio.to_thread(get_circulation().refresh_all)
            logger.info(f"Overdue sweep refreshed {count} open loans")
        except (CirculationError, sqlite3.Error) as e:
            logger.error(f"Overdue sweep failed: {e}")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_task = None
    if settings.enable_overdue_sweep:
        sweep_task = asyncio.create_task(_overdue_sweep(settings.sweep_interval_seconds))
    try:
        yield
    finally:
        if sweep_task is not None:
            sweep_task.cancel()
            await asyncio.gather(sweep_task, return_exceptions=True)
        cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

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
    """Dependency validating the API key on mutating endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
def _status_for(exc: CirculationError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, LockTimeout):
        return 503
    return 500


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    status = _status_for(exc)
    if isinstance(exc, ConsistencyError):
        logger.error(f"{request.method} {request.url.path} failed closed: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": exc.__class__.__name__})


# --- Models ---
class LoanModel(BaseModel):
    id: int
    patron_id: int
    book_id: int
    copy_id: int
    issued_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    status: LoanStatus
    fine_amount: Decimal
    fine_status: FineStatus


class IssueRequest(BaseModel):
    school_id: str = Field(..., description="Patron school or guest id")
    isbn: Optional[str] = Field(default=None, description="ISBN, call number or book id")
    accession_number: Optional[str] = Field(default=None, description="Specific copy; first available copy if omitted")
    due_at: datetime = Field(..., description="Naive values are read in the library timezone")


class ReturnRequest(BaseModel):
    fine_status: Optional[FineStatus] = Field(default=None, description="unpaid (default) or cleared")


class FineStatusUpdate(BaseModel):
    fine_status: FineStatus


class ReturnReceiptModel(BaseModel):
    loan: LoanModel
    fine: Decimal


class CopyModel(BaseModel):
    id: int
    book_id: int
    accession_number: str
    status: CopyStatus


class CopyStatusUpdate(BaseModel):
    status: CopyStatus


class BookStatusModel(BaseModel):
    id: int
    isbn: str
    call_number: str
    title: str
    author: str
    copies_total: int
    copies_available: int
    status: str
    is_active: bool
    copies: List[CopyModel]


class RefreshResult(BaseModel):
    refreshed: int


def _loan_model(loan) -> LoanModel:
    return LoanModel(**loan.to_dict())


# --- Health ---
@app.get("/health")
def health(service: CirculationService = Depends(get_circulation)):
    """Lightweight health check touching the database."""
    try:
        service.ledger.open_loan_ids()
        database = "ok"
    except sqlite3.Error as e:
        database = f"error: {str(e)[:80]}"
    return {"status": "ok", "database": database, "timezone": settings.library_timezone}


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def issue_book(payload: IssueRequest, service: CirculationService = Depends(get_circulation)):
    """Issue a copy to a patron."""
    loan = service.issue(payload.school_id, payload.isbn, payload.accession_number, payload.due_at)
    return _loan_model(loan)


@app.put("/loans/{loan_id}/return", response_model=ReturnReceiptModel, dependencies=[Depends(get_api_key)])
def return_book(
    loan_id: int,
    payload: Optional[ReturnRequest] = None,
    service: CirculationService = Depends(get_circulation),
):
    """Return a loan; the fine is computed and frozen."""
    fine_status = payload.fine_status if payload else None
    receipt = service.return_book(loan_id, fine_status=fine_status)
    return ReturnReceiptModel(loan=_loan_model(receipt.loan), fine=receipt.fine)


@app.get("/loans", response_model=List[LoanModel])
def list_loans(
    school_id: Optional[str] = Query(None),
    status: Optional[LoanStatus] = Query(None),
    service: CirculationService = Depends(get_circulation),
):
    return [_loan_model(loan) for loan in service.list_loans(patron=school_id, status=status)]


@app.post("/loans/refresh", response_model=RefreshResult, dependencies=[Depends(get_api_key)])
def refresh_loans(service: CirculationService = Depends(get_circulation)):
    """Run one overdue sweep now."""
    return RefreshResult(refreshed=service.refresh_all())


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, service: CirculationService = Depends(get_circulation)):
    return _loan_model(service.get_loan(loan_id))


@app.put("/loans/{loan_id}/fine-status", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def update_fine_status(
    loan_id: int, payload: FineStatusUpdate, service: CirculationService = Depends(get_circulation)
):
    """Bookkeeping override after an out-of-band payment."""
    return _loan_model(service.update_fine_status(loan_id, payload.fine_status))


@app.get("/fines", response_model=List[LoanModel])
def list_fines(
    fine_status: Optional[FineStatus] = Query(None),
    service: CirculationService = Depends(get_circulation),
):
    return [_loan_model(loan) for loan in service.list_fines(fine_status)]


# --- Books and copies ---
@app.get("/books/{book}/status", response_model=BookStatusModel)
def book_status(book: str, service: CirculationService = Depends(get_circulation)):
    """Book aggregates plus the state of every copy."""
    return BookStatusModel(**service.book_status(book))


@app.put("/copies/{accession_number}/status", response_model=CopyModel, dependencies=[Depends(get_api_key)])
def update_copy_status(
    accession_number: str, payload: CopyStatusUpdate, service: CirculationService = Depends(get_circulation)
):
    """Administrative copy transitions: reserve, release or archive."""
    if payload.status == CopyStatus.RESERVE:
        copy = service.reserve_copy(accession_number)
    elif payload.status == CopyStatus.AVAILABLE:
        copy = service.release_copy(accession_number)
    elif payload.status == CopyStatus.BORROWED:
        raise HTTPException(status_code=422, detail="Copies are borrowed by issuing a loan.")
    else:
        copy = service.archive_copy(accession_number, payload.status)
    return CopyModel(**copy.to_dict())
