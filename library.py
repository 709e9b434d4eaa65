from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Union

import database
from catalog import CatalogStore, IdentityStore
from database import db_session, initialize_database
from fines import FineEngine
from loans import LoanLedger
from models import Copy, DateLike, Fine, FineKind, Loan, LoanStatus, ReturnCondition, ReturnRecord, User
from returns import ReturnOutcome, ReturnRecorder


class Library:
    """Circulation desk: loans, returns and fines over one database file."""

    def __init__(
        self,
        db_file: Optional[str] = None,
        today: Optional[Callable[[], date]] = None,
        daily_rate: Optional[Union[Decimal, str]] = None,
        grace_days: Optional[int] = None,
        staff_roles: Optional[List[str]] = None,
    ) -> None:
        # An explicit file also becomes the module default so helpers called
        # without a path (health checks, scripts) see the same database.
        if db_file:
            database.DATABASE_FILE = db_file
        self.db_file = database.resolve_database_file(db_file)
        self.today = today or date.today

        initialize_database(self.db_file)

        self.catalog = CatalogStore(self.db_file)
        self.identity = IdentityStore(self.db_file, staff_roles=staff_roles)
        self.loans = LoanLedger(self.catalog, self.identity, self.db_file, today=self.today)
        self.fines = FineEngine(
            self.identity, self.db_file, daily_rate=daily_rate, grace_days=grace_days, today=self.today
        )
        self.returns = ReturnRecorder(self.loans, self.fines, self.identity, self.db_file, today=self.today)

    # ------------------------- Reference data ------------------------- #
    def add_user(self, name: str, role: str = "Member", email: Optional[str] = None, active: bool = True) -> User:
        return self.identity.add_user(name, role=role, email=email, active=active)

    def get_user(self, user_id: int) -> User:
        return self.identity.get_user(user_id)

    def add_copy(self, code: str, book_id: Optional[int] = None) -> Copy:
        return self.catalog.add_copy(code, book_id=book_id)

    def get_copy(self, copy_id: int) -> Copy:
        return self.catalog.get_copy(copy_id)

    def list_copies(self) -> List[Copy]:
        return self.catalog.list_copies()

    # ------------------------- Loans ------------------------- #
    def open_loan(
        self,
        borrower_id: int,
        copy_id: int,
        agent_id: int,
        loan_date: Optional[DateLike] = None,
        due_date: Optional[DateLike] = None,
        notes: Optional[str] = None,
    ) -> Loan:
        return self.loans.open_loan(borrower_id, copy_id, agent_id, loan_date, due_date, notes)

    def cancel_loan(self, loan_id: int) -> Loan:
        return self.loans.cancel_loan(loan_id)

    def delete_loan(self, loan_id: int) -> None:
        self.loans.delete_loan(loan_id)

    def get_loan(self, loan_id: int) -> Loan:
        return self.loans.get_loan(loan_id)

    def get_active_loans(self, borrower_id: Optional[int] = None) -> List[Loan]:
        return list(self.loans.get_active_loans(borrower_id))

    def get_overdue_loans(self, as_of: Optional[DateLike] = None) -> List[Loan]:
        return self.loans.get_overdue_loans(as_of)

    def list_loans(
        self,
        status: Optional[Union[LoanStatus, str]] = None,
        borrower_id: Optional[int] = None,
        overdue_only: bool = False,
        as_of: Optional[DateLike] = None,
    ) -> List[Loan]:
        return self.loans.list_loans(status, borrower_id, overdue_only, as_of)

    # ------------------------- Returns ------------------------- #
    def record_return(
        self,
        loan_id: int,
        agent_id: int,
        return_date: Optional[DateLike] = None,
        condition: Optional[Union[ReturnCondition, str]] = None,
        notes: Optional[str] = None,
    ) -> ReturnOutcome:
        return self.returns.record_return(loan_id, agent_id, return_date, condition, notes)

    def get_return(self, return_id: int) -> ReturnRecord:
        return self.returns.get_return(return_id)

    def get_return_for_loan(self, loan_id: int) -> ReturnRecord:
        return self.returns.get_return_for_loan(loan_id)

    def list_returns(self, late_only: bool = False) -> List[ReturnRecord]:
        return self.returns.list_returns(late_only)

    def correct_return(
        self,
        return_id: int,
        condition: Optional[Union[ReturnCondition, str]] = None,
        notes: Optional[str] = None,
    ) -> ReturnRecord:
        return self.returns.correct_return(return_id, condition, notes)

    def delete_return(self, return_id: int) -> None:
        self.returns.delete_return(return_id)

    # ------------------------- Fines ------------------------- #
    def create_manual_fine(
        self,
        user_id: int,
        kind: Union[FineKind, str],
        amount,
        description: Optional[str] = None,
        return_id: Optional[int] = None,
    ) -> Fine:
        return self.fines.create_manual_fine(user_id, kind, amount, description, return_id)

    def mark_paid(self, fine_id: int, payment_date: Optional[DateLike] = None) -> Fine:
        return self.fines.mark_paid(fine_id, payment_date)

    def mark_unpaid(self, fine_id: int) -> Fine:
        return self.fines.mark_unpaid(fine_id)

    def total_owed(self, user_id: int) -> Decimal:
        return self.fines.total_owed(user_id)

    def get_fine(self, fine_id: int) -> Fine:
        return self.fines.get_fine(fine_id)

    def list_fines(self, user_id: Optional[int] = None, paid: Optional[bool] = None) -> List[Fine]:
        return self.fines.list_fines(user_id, paid)

    def pending_fines(self, user_id: Optional[int] = None) -> List[Fine]:
        return self.fines.pending_fines(user_id)

    def is_fine_overdue(self, fine: Fine, as_of: Optional[DateLike] = None) -> bool:
        return self.fines.is_overdue(fine, as_of)

    # ------------------------- Housekeeping ------------------------- #
    def ping(self) -> bool:
        """True when the database answers a trivial query."""
        with db_session(self.db_file) as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
