import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

import errors
from config import settings
from library import Library

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.app_name} {settings.app_version} starting (db={library.db_file})")
    yield
    library.close()
    logger.info(f"{settings.app_name} stopped")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error mapping ---
@app.exception_handler(errors.ValidationError)
async def validation_error_handler(request: Request, exc: errors.ValidationError):
    return JSONResponse(status_code=400, content=exc.to_dict())


@app.exception_handler(errors.NotFoundError)
async def not_found_handler(request: Request, exc: errors.NotFoundError):
    return JSONResponse(status_code=404, content=exc.to_dict())


@app.exception_handler(errors.ConflictError)
async def conflict_handler(request: Request, exc: errors.ConflictError):
    return JSONResponse(status_code=409, content=exc.to_dict())


@app.exception_handler(errors.InfrastructureError)
async def infrastructure_error_handler(request: Request, exc: errors.InfrastructureError):
    logger.error(f"Infrastructure failure on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=503,
        content={"kind": exc.kind, "detail": "Storage is temporarily unavailable. Try again later."},
    )


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def _require_staff(agent_id: int) -> None:
    """Only staff may act as the agent of a loan, return or manual fine."""
    agent = library.get_user(agent_id)
    if not library.identity.is_staff(agent):
        raise HTTPException(status_code=403, detail=f"User {agent_id} is not allowed to act as staff.")


# --- Models ---
class LoanModel(BaseModel):
    id: int
    borrower_id: int
    copy_id: int
    agent_id: int
    loan_date: str
    due_date: str
    status: str
    notes: str | None = None
    effective_status: str | None = None
    overdue: bool | None = None
    days_overdue: int | None = None


class LoanCreateModel(BaseModel):
    borrower_id: int
    copy_id: int
    agent_id: int
    loan_date: date | None = Field(default=None, description="Defaults to today")
    due_date: date | None = Field(default=None, description="Defaults to loan date plus the default loan period")
    notes: str | None = None


class ReturnModel(BaseModel):
    id: int
    loan_id: int
    return_date: str
    agent_id: int
    days_late: int
    condition: str
    notes: str | None = None


class ReturnCreateModel(BaseModel):
    loan_id: int
    agent_id: int
    return_date: date | None = Field(default=None, description="Defaults to today")
    condition: str | None = Field(default=None, description="Good, Fair, Damaged or Lost")
    notes: str | None = None


class ReturnUpdateModel(BaseModel):
    condition: str | None = None
    notes: str | None = None


class FineModel(BaseModel):
    id: int
    return_id: int | None = None
    user_id: int
    kind: str
    amount: str
    paid: bool
    payment_date: str | None = None
    description: str | None = None
    created_on: str
    overdue: bool | None = None


class FineCreateModel(BaseModel):
    user_id: int
    agent_id: int
    kind: str = Field(description="Damage or Loss")
    amount: Decimal
    description: str | None = None
    return_id: int | None = None


class PaymentModel(BaseModel):
    payment_date: date | None = Field(default=None, description="Defaults to today")


class TotalOwedModel(BaseModel):
    user_id: int
    total_owed: str
    currency: str | None = None


def _loan_model(loan) -> LoanModel:
    return LoanModel(**loan.to_dict(as_of=library.today()))


def _fine_model(fine) -> FineModel:
    return FineModel(**fine.to_dict(), overdue=library.is_fine_overdue(fine))


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint; reports whether the database answers."""
    db_ok = True
    try:
        library.ping()
    except errors.InfrastructureError:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Loans ---
@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def open_loan(payload: LoanCreateModel):
    """Lend a copy to a borrower."""
    _require_staff(payload.agent_id)
    loan = library.open_loan(
        payload.borrower_id,
        payload.copy_id,
        payload.agent_id,
        loan_date=payload.loan_date,
        due_date=payload.due_date,
        notes=payload.notes,
    )
    return _loan_model(loan)


@app.get("/loans", response_model=List[LoanModel])
def list_loans(
    status: Optional[str] = Query(default=None, description="Active, Overdue, Returned or Cancelled"),
    borrower_id: Optional[int] = None,
    overdue_only: bool = False,
):
    loans = library.list_loans(status=status, borrower_id=borrower_id, overdue_only=overdue_only)
    return [_loan_model(l) for l in loans]


@app.get("/loans/active", response_model=List[LoanModel])
def active_loans(borrower_id: Optional[int] = None):
    return [_loan_model(l) for l in library.get_active_loans(borrower_id)]


@app.get("/loans/overdue", response_model=List[LoanModel])
def overdue_loans(as_of: Optional[date] = None):
    cutoff = as_of or library.today()
    return [LoanModel(**l.to_dict(as_of=cutoff)) for l in library.get_overdue_loans(cutoff)]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int):
    return _loan_model(library.get_loan(loan_id))


@app.post("/loans/{loan_id}/cancel", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def cancel_loan(loan_id: int):
    return _loan_model(library.cancel_loan(loan_id))


@app.delete("/loans/{loan_id}", dependencies=[Depends(get_api_key)])
def delete_loan(loan_id: int):
    library.delete_loan(loan_id)
    return {"message": f"Loan {loan_id} deleted."}


# --- Returns ---
@app.post("/returns", status_code=201, dependencies=[Depends(get_api_key)])
def record_return(payload: ReturnCreateModel):
    """Record a return. The response carries the closed loan and any overdue fine."""
    _require_staff(payload.agent_id)
    outcome = library.record_return(
        payload.loan_id,
        payload.agent_id,
        return_date=payload.return_date,
        condition=payload.condition,
        notes=payload.notes,
    )
    return {
        "return": outcome.record.to_dict(),
        "loan": outcome.loan.to_dict(as_of=library.today()),
        "fine": _fine_model(outcome.fine).model_dump() if outcome.fine else None,
        "fine_error": outcome.fine_error,
    }


@app.get("/returns", response_model=List[ReturnModel])
def list_returns(late_only: bool = False):
    return [ReturnModel(**r.to_dict()) for r in library.list_returns(late_only=late_only)]


@app.get("/returns/{return_id}", response_model=ReturnModel)
def get_return(return_id: int):
    return ReturnModel(**library.get_return(return_id).to_dict())


@app.patch("/returns/{return_id}", response_model=ReturnModel, dependencies=[Depends(get_api_key)])
def correct_return(return_id: int, update: ReturnUpdateModel):
    record = library.correct_return(return_id, condition=update.condition, notes=update.notes)
    return ReturnModel(**record.to_dict())


@app.delete("/returns/{return_id}", dependencies=[Depends(get_api_key)])
def delete_return(return_id: int):
    library.delete_return(return_id)
    return {"message": f"Return {return_id} deleted."}


# --- Fines ---
@app.get("/fines", response_model=List[FineModel])
def list_fines(user_id: Optional[int] = None, paid_only: bool = False, unpaid_only: bool = False):
    if paid_only and unpaid_only:
        raise errors.ValidationError("Use either paid_only or unpaid_only, not both.", field="paid_only")
    paid = True if paid_only else (False if unpaid_only else None)
    return [_fine_model(f) for f in library.list_fines(user_id=user_id, paid=paid)]


@app.get("/fines/{fine_id}", response_model=FineModel)
def get_fine(fine_id: int):
    return _fine_model(library.get_fine(fine_id))


@app.post("/fines", response_model=FineModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_manual_fine(payload: FineCreateModel):
    """Issue a damage or loss fine."""
    _require_staff(payload.agent_id)
    fine = library.create_manual_fine(
        payload.user_id,
        payload.kind,
        payload.amount,
        description=payload.description,
        return_id=payload.return_id,
    )
    return _fine_model(fine)


@app.post("/fines/{fine_id}/pay", response_model=FineModel, dependencies=[Depends(get_api_key)])
def pay_fine(fine_id: int, payload: Optional[PaymentModel] = None):
    payment_date = payload.payment_date if payload else None
    return _fine_model(library.mark_paid(fine_id, payment_date))


@app.post("/fines/{fine_id}/unpay", response_model=FineModel, dependencies=[Depends(get_api_key)])
def unpay_fine(fine_id: int):
    return _fine_model(library.mark_unpaid(fine_id))


@app.get("/users/{user_id}/fines/total", response_model=TotalOwedModel)
def total_owed(user_id: int):
    library.get_user(user_id)
    return TotalOwedModel(
        user_id=user_id,
        total_owed=str(library.total_owed(user_id)),
        currency=settings.currency_symbol,
    )
