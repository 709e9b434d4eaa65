"""Records for the circulation core: loans, returns and fines, plus the
catalog and identity references they point at.

Cross-record links are plain ids; navigation goes through the stores, never
through embedded objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional, Union

from errors import ValidationError

CENT = Decimal("0.01")
# Largest value a SQLite INTEGER column holds.
MAX_CENTS = 2**63 - 1

DateLike = Union[date, datetime, str]


class LoanStatus(str, Enum):
    ACTIVE = "Active"
    RETURNED = "Returned"
    CANCELLED = "Cancelled"
    # Derived at read time from the due date; never written to the loans table.
    OVERDUE = "Overdue"


class ReturnCondition(str, Enum):
    GOOD = "Good"
    FAIR = "Fair"
    DAMAGED = "Damaged"
    LOST = "Lost"


class FineKind(str, Enum):
    OVERDUE = "Overdue"
    DAMAGE = "Damage"
    LOSS = "Loss"


# ------------------------- Conversion helpers ------------------------- #
def to_date(value: DateLike, field: str = "date") -> date:
    """Coerce a date, datetime or ISO string to a calendar date, dropping any time part."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if "T" in text or " " in text:
                return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
            return date.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"Invalid date: {value!r}", field=field) from e
    raise ValidationError(f"Invalid date: {value!r}", field=field)


def whole_days_between(start: DateLike, end: DateLike) -> int:
    """Signed number of calendar days from start to end."""
    return (to_date(end) - to_date(start)).days


def to_money(value: Any, field: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}", field=field) from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}", field=field)
    if abs(amount) * 100 > MAX_CENTS:
        raise ValidationError(f"Amount is too large: {value!r}", field=field)
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {value!r}", field=field) from e


def to_cents(amount: Decimal, field: str = "amount") -> int:
    """Whole cents for storage; amounts beyond a signed 64-bit column are rejected."""
    try:
        cents = int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())
    except InvalidOperation as e:
        raise ValidationError(f"Amount is too large: {amount}", field=field) from e
    if abs(cents) > MAX_CENTS:
        raise ValidationError(f"Amount is too large: {amount}", field=field)
    return cents


def from_cents(cents: Optional[int]) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(CENT)


def _opt_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


# ------------------------- Reference records ------------------------- #
@dataclass
class User:
    id: int
    name: str
    active: bool
    role: str
    email: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "active": self.active,
            "role": self.role,
        }

    @staticmethod
    def from_row(row: Any) -> "User":
        data = dict(row)
        return User(
            id=data["id"],
            name=data["name"],
            email=data.get("email"),
            active=bool(data["active"]),
            role=data["role"],
        )


@dataclass
class Copy:
    id: int
    code: str
    status: str
    permits_loan: bool
    book_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "book_id": self.book_id,
            "status": self.status,
            "permits_loan": self.permits_loan,
        }

    @staticmethod
    def from_row(row: Any) -> "Copy":
        data = dict(row)
        return Copy(
            id=data["id"],
            code=data["code"],
            book_id=data.get("book_id"),
            status=data["status"],
            permits_loan=bool(data["permits_loan"]),
        )


# ------------------------- Core records ------------------------- #
@dataclass
class Loan:
    id: int
    borrower_id: int
    copy_id: int
    agent_id: int
    loan_date: date
    due_date: date
    status: LoanStatus
    notes: Optional[str] = None

    def is_overdue(self, as_of: DateLike) -> bool:
        """Active and past its due date on ``as_of``."""
        return self.status == LoanStatus.ACTIVE and self.due_date < to_date(as_of)

    def days_overdue(self, as_of: DateLike) -> int:
        if self.status != LoanStatus.ACTIVE:
            return 0
        return max(0, whole_days_between(self.due_date, as_of))

    def effective_status(self, as_of: DateLike) -> LoanStatus:
        return LoanStatus.OVERDUE if self.is_overdue(as_of) else self.status

    def to_dict(self, as_of: Optional[DateLike] = None) -> dict:
        payload = {
            "id": self.id,
            "borrower_id": self.borrower_id,
            "copy_id": self.copy_id,
            "agent_id": self.agent_id,
            "loan_date": self.loan_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "status": self.status.value,
            "notes": self.notes,
        }
        if as_of is not None:
            payload["effective_status"] = self.effective_status(as_of).value
            payload["overdue"] = self.is_overdue(as_of)
            payload["days_overdue"] = self.days_overdue(as_of)
        return payload

    @staticmethod
    def from_row(row: Any) -> "Loan":
        data = dict(row)
        return Loan(
            id=data["id"],
            borrower_id=data["borrower_id"],
            copy_id=data["copy_id"],
            agent_id=data["agent_id"],
            loan_date=date.fromisoformat(data["loan_date"]),
            due_date=date.fromisoformat(data["due_date"]),
            status=LoanStatus(data["status"]),
            notes=data.get("notes"),
        )


@dataclass
class ReturnRecord:
    id: int
    loan_id: int
    return_date: date
    agent_id: int
    days_late: int
    condition: ReturnCondition
    notes: Optional[str] = None

    @property
    def is_late(self) -> bool:
        return self.days_late > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "return_date": self.return_date.isoformat(),
            "agent_id": self.agent_id,
            "days_late": self.days_late,
            "condition": self.condition.value,
            "notes": self.notes,
        }

    @staticmethod
    def from_row(row: Any) -> "ReturnRecord":
        data = dict(row)
        return ReturnRecord(
            id=data["id"],
            loan_id=data["loan_id"],
            return_date=date.fromisoformat(data["return_date"]),
            agent_id=data["agent_id"],
            days_late=data["days_late"],
            condition=ReturnCondition(data["condition"]),
            notes=data.get("notes"),
        )


@dataclass
class Fine:
    id: int
    user_id: int
    kind: FineKind
    amount: Decimal
    paid: bool
    created_on: date
    return_id: Optional[int] = None
    payment_date: Optional[date] = None
    description: Optional[str] = None

    def is_overdue(self, as_of: DateLike, grace_days: int = 30) -> bool:
        """Unpaid for longer than the grace period."""
        if self.paid:
            return False
        return whole_days_between(self.created_on, as_of) > grace_days

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "paid": self.paid,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "description": self.description,
            "created_on": self.created_on.isoformat(),
        }

    @staticmethod
    def from_row(row: Any) -> "Fine":
        data = dict(row)
        return Fine(
            id=data["id"],
            return_id=data.get("return_id"),
            user_id=data["user_id"],
            kind=FineKind(data["kind"]),
            amount=from_cents(data["amount_cents"]),
            paid=bool(data["paid"]),
            payment_date=_opt_date(data.get("payment_date")),
            description=data.get("description"),
            created_on=date.fromisoformat(data["created_on"]),
        )
