import logging
import sqlite3
from datetime import date, timedelta
from typing import Callable, Iterator, List, Optional, Union

from catalog import AVAILABLE, ON_LOAN, CatalogStore, IdentityStore
from config import settings
from database import db_session, transaction, use_connection
from errors import ConflictError, NotFoundError, ValidationError
from models import DateLike, Loan, LoanStatus, to_date

logger = logging.getLogger(__name__)

_FETCH_BATCH = 100


class LoanLedger:
    """Owns loan records and their state machine.

    Stored statuses are Active, Returned and Cancelled. Overdue is never
    stored: it is the read-time predicate ``Active and due_date < as_of``.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        identity: IdentityStore,
        db_file: Optional[str] = None,
        today: Optional[Callable[[], date]] = None,
        default_loan_days: Optional[int] = None,
    ) -> None:
        self.catalog = catalog
        self.identity = identity
        self.db_file = db_file
        self.today = today or date.today
        self.default_loan_days = default_loan_days or settings.default_loan_days

    # ------------------------- Writes ------------------------- #
    def open_loan(
        self,
        borrower_id: int,
        copy_id: int,
        agent_id: int,
        loan_date: Optional[DateLike] = None,
        due_date: Optional[DateLike] = None,
        notes: Optional[str] = None,
    ) -> Loan:
        """Lend a copy. The copy must be free and its status must permit lending."""
        start = to_date(loan_date, "loan_date") if loan_date is not None else self.today()
        due = (
            to_date(due_date, "due_date")
            if due_date is not None
            else start + timedelta(days=self.default_loan_days)
        )
        if due <= start:
            raise ValidationError("Due date must be after the loan date.", field="due_date")

        with transaction(self.db_file) as conn:
            borrower = self.identity.get_user(borrower_id, conn=conn)
            if not borrower.active:
                raise ValidationError(f"User {borrower_id} is not active.", field="borrower_id")
            self.identity.get_user(agent_id, conn=conn)
            copy = self.catalog.get_copy(copy_id, conn=conn)

            active = conn.execute(
                "SELECT id FROM loans WHERE copy_id = ? AND status = ?",
                (copy_id, LoanStatus.ACTIVE.value),
            ).fetchone()
            if active is not None:
                raise ConflictError(f"Copy {copy_id} is already on loan (loan {active['id']}).")
            if not copy.permits_loan:
                raise ValidationError(
                    f"Copy {copy_id} cannot be lent while its status is '{copy.status}'.",
                    field="copy_id",
                )

            try:
                cursor = conn.execute(
                    """
                    INSERT INTO loans (borrower_id, copy_id, agent_id, loan_date, due_date, status, notes)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (borrower_id, copy_id, agent_id, start.isoformat(), due.isoformat(),
                     LoanStatus.ACTIVE.value, notes),
                )
            except sqlite3.IntegrityError as e:
                # The partial unique index rejects a second Active loan on the same copy.
                raise ConflictError(f"Copy {copy_id} is already on loan.") from e
            self.catalog.set_copy_status(copy_id, ON_LOAN, conn=conn)
            loan = self.get_loan(cursor.lastrowid, conn=conn)

        logger.info(f"Loan {loan.id} opened: copy={copy_id} borrower={borrower_id} due={due.isoformat()}")
        return loan

    def cancel_loan(self, loan_id: int) -> Loan:
        with transaction(self.db_file) as conn:
            loan = self.get_loan(loan_id, conn=conn)
            if loan.status == LoanStatus.RETURNED:
                raise ConflictError(f"Loan {loan_id} has already been returned.")
            if loan.status == LoanStatus.CANCELLED:
                raise ConflictError(f"Loan {loan_id} is already cancelled.")
            self._set_status(conn, loan_id, LoanStatus.CANCELLED)
            self.catalog.set_copy_status(loan.copy_id, AVAILABLE, conn=conn)
            loan = self.get_loan(loan_id, conn=conn)
        logger.info(f"Loan {loan_id} cancelled")
        return loan

    def close_loan(
        self,
        loan_id: int,
        conn: Optional[sqlite3.Connection] = None,
        copy_status: str = AVAILABLE,
    ) -> Loan:
        """Mark an Active loan as Returned and release its copy.

        Called by the return recorder with its own connection so the status
        flip commits together with the return record.
        """
        if conn is None:
            with transaction(self.db_file) as own:
                return self.close_loan(loan_id, conn=own, copy_status=copy_status)

        loan = self.get_loan(loan_id, conn=conn)
        if loan.status != LoanStatus.ACTIVE:
            raise ConflictError(f"Loan {loan_id} is not active (status: {loan.status.value}).")
        self._set_status(conn, loan_id, LoanStatus.RETURNED)
        self.catalog.set_copy_status(loan.copy_id, copy_status, conn=conn)
        logger.info(f"Loan {loan_id} closed, copy {loan.copy_id} -> {copy_status}")
        return self.get_loan(loan_id, conn=conn)

    def delete_loan(self, loan_id: int) -> None:
        """Physically remove a loan. Refused while a return references it."""
        with transaction(self.db_file) as conn:
            loan = self.get_loan(loan_id, conn=conn)
            referenced = conn.execute("SELECT id FROM returns WHERE loan_id = ?", (loan_id,)).fetchone()
            if referenced is not None:
                raise ConflictError(f"Loan {loan_id} has a return record and cannot be deleted.")
            try:
                conn.execute("DELETE FROM loans WHERE id = ?", (loan_id,))
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Loan {loan_id} is still referenced and cannot be deleted.") from e
            if loan.status == LoanStatus.ACTIVE:
                self.catalog.set_copy_status(loan.copy_id, AVAILABLE, conn=conn)
        logger.info(f"Loan {loan_id} deleted")

    # ------------------------- Reads ------------------------- #
    def get_loan(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> Loan:
        with use_connection(conn, self.db_file) as c:
            row = c.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Loan {loan_id} not found.")
        return Loan.from_row(row)

    def get_active_loans(self, borrower_id: Optional[int] = None) -> Iterator[Loan]:
        """Lazily yield Active loans, newest loan date first.

        Each call runs a fresh query, so iterating again gives a new snapshot.
        """
        sql = "SELECT * FROM loans WHERE status = ?"
        params: list = [LoanStatus.ACTIVE.value]
        if borrower_id is not None:
            sql += " AND borrower_id = ?"
            params.append(borrower_id)
        sql += " ORDER BY loan_date DESC, id DESC"
        return self._iter_loans(sql, params)

    def get_overdue_loans(self, as_of: Optional[DateLike] = None) -> List[Loan]:
        """Active loans whose due date is before ``as_of`` (default: today), oldest due first."""
        cutoff = to_date(as_of, "as_of") if as_of is not None else self.today()
        with db_session(self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM loans WHERE status = ? AND due_date < ? ORDER BY due_date ASC, id ASC",
                (LoanStatus.ACTIVE.value, cutoff.isoformat()),
            ).fetchall()
        return [Loan.from_row(r) for r in rows]

    def is_overdue(self, loan: Loan, as_of: Optional[DateLike] = None) -> bool:
        return loan.is_overdue(as_of if as_of is not None else self.today())

    def list_loans(
        self,
        status: Optional[Union[LoanStatus, str]] = None,
        borrower_id: Optional[int] = None,
        overdue_only: bool = False,
        as_of: Optional[DateLike] = None,
    ) -> List[Loan]:
        """Filter loans by effective status, borrower and overdue-ness.

        Filtering by Active excludes overdue loans and filtering by Overdue
        returns only them, so no loan ever matches both.
        """
        cutoff = (to_date(as_of, "as_of") if as_of is not None else self.today()).isoformat()
        clauses: List[str] = []
        params: list = []

        if status is not None:
            wanted = self._parse_status(status)
            if wanted == LoanStatus.ACTIVE:
                clauses.append("status = ? AND due_date >= ?")
                params.extend([LoanStatus.ACTIVE.value, cutoff])
            elif wanted == LoanStatus.OVERDUE:
                clauses.append("status = ? AND due_date < ?")
                params.extend([LoanStatus.ACTIVE.value, cutoff])
            else:
                clauses.append("status = ?")
                params.append(wanted.value)
        if borrower_id is not None:
            clauses.append("borrower_id = ?")
            params.append(borrower_id)
        if overdue_only:
            clauses.append("status = ? AND due_date < ?")
            params.extend([LoanStatus.ACTIVE.value, cutoff])

        sql = "SELECT * FROM loans"
        if clauses:
            sql += " WHERE " + " AND ".join(f"({c})" for c in clauses)
        sql += " ORDER BY loan_date DESC, id DESC"
        with db_session(self.db_file) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Loan.from_row(r) for r in rows]

    # ------------------------- Helpers ------------------------- #
    def _iter_loans(self, sql: str, params: list) -> Iterator[Loan]:
        with db_session(self.db_file) as conn:
            cursor = conn.execute(sql, params)
            while True:
                rows = cursor.fetchmany(_FETCH_BATCH)
                if not rows:
                    break
                for row in rows:
                    yield Loan.from_row(row)

    @staticmethod
    def _set_status(conn: sqlite3.Connection, loan_id: int, status: LoanStatus) -> None:
        conn.execute(
            "UPDATE loans SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status.value, loan_id),
        )

    @staticmethod
    def _parse_status(status: Union[LoanStatus, str]) -> LoanStatus:
        if isinstance(status, LoanStatus):
            return status
        for candidate in LoanStatus:
            if candidate.value.lower() == str(status).strip().lower():
                return candidate
        raise ValidationError(f"Unknown loan status: {status}", field="status")
