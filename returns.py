import logging
import sqlite3
from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Optional, Union

from catalog import AVAILABLE, DAMAGED, LOST, IdentityStore
from database import db_session, transaction, use_connection
from errors import ConflictError, LibraryError, NotFoundError, ValidationError
from fines import FineEngine
from loans import LoanLedger
from models import (
    DateLike,
    Fine,
    Loan,
    LoanStatus,
    ReturnCondition,
    ReturnRecord,
    to_date,
    whole_days_between,
)

logger = logging.getLogger(__name__)

# Copy status applied when the loan closes, by condition on return.
COPY_STATUS_AFTER_RETURN = {
    ReturnCondition.GOOD: AVAILABLE,
    ReturnCondition.FAIR: AVAILABLE,
    ReturnCondition.DAMAGED: DAMAGED,
    ReturnCondition.LOST: LOST,
}


def days_late(due_date: DateLike, return_date: DateLike) -> int:
    """Whole calendar days past the due date, never negative.

    Time-of-day is dropped from both sides before subtracting.
    """
    return max(0, whole_days_between(due_date, return_date))


def parse_condition(value: Optional[Union[ReturnCondition, str]]) -> ReturnCondition:
    if value is None:
        return ReturnCondition.GOOD
    if isinstance(value, ReturnCondition):
        return value
    for candidate in ReturnCondition:
        if candidate.value.lower() == str(value).strip().lower():
            return candidate
    allowed = ", ".join(c.value for c in ReturnCondition)
    raise ValidationError(f"Condition must be one of: {allowed}", field="condition")


@dataclass
class ReturnOutcome:
    """Result of recording a return: the return, the closed loan and any fine."""

    record: ReturnRecord
    loan: Loan
    fine: Optional[Fine] = None
    fine_error: Optional[str] = None


class ReturnRecorder:
    """Records returns, computes lateness and closes the loan."""

    def __init__(
        self,
        ledger: LoanLedger,
        fines: FineEngine,
        identity: IdentityStore,
        db_file: Optional[str] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.ledger = ledger
        self.fines = fines
        self.identity = identity
        self.db_file = db_file
        self.today = today or date.today

    def record_return(
        self,
        loan_id: int,
        agent_id: int,
        return_date: Optional[DateLike] = None,
        condition: Optional[Union[ReturnCondition, str]] = None,
        notes: Optional[str] = None,
    ) -> ReturnOutcome:
        """Record the return of a loan.

        The return row and the loan's switch to Returned commit together.
        An overdue fine is created afterwards; if that fails the return still
        stands and the failure is reported in ``fine_error``.
        """
        returned_on = to_date(return_date, "return_date") if return_date is not None else self.today()
        cond = parse_condition(condition)

        with transaction(self.db_file) as conn:
            loan = self.ledger.get_loan(loan_id, conn=conn)
            existing = conn.execute("SELECT id FROM returns WHERE loan_id = ?", (loan_id,)).fetchone()
            if existing is not None:
                raise ConflictError(f"Loan {loan_id} already has a return (return {existing['id']}).")
            if loan.status != LoanStatus.ACTIVE:
                raise ConflictError(f"Loan {loan_id} is not active (status: {loan.status.value}).")
            if returned_on < loan.loan_date:
                raise ValidationError("Return date cannot be before the loan date.", field="return_date")
            self.identity.get_user(agent_id, conn=conn)

            late = days_late(loan.due_date, returned_on)
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO returns (loan_id, return_date, agent_id, days_late, condition, notes)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (loan_id, returned_on.isoformat(), agent_id, late, cond.value, notes),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Loan {loan_id} already has a return.") from e
            loan = self.ledger.close_loan(loan_id, conn=conn, copy_status=COPY_STATUS_AFTER_RETURN[cond])
            record = self.get_return(cursor.lastrowid, conn=conn)

        logger.info(
            f"Return {record.id} recorded for loan {loan_id}: "
            f"date={returned_on.isoformat()} days_late={late} condition={cond.value}"
        )

        fine: Optional[Fine] = None
        fine_error: Optional[str] = None
        if late > 0:
            try:
                fine = self.fines.create_overdue_fine(record, loan.borrower_id, late)
            except LibraryError as e:
                logger.exception(f"Overdue fine for return {record.id} could not be created")
                fine_error = str(e)
        return ReturnOutcome(record=record, loan=loan, fine=fine, fine_error=fine_error)

    def get_return(self, return_id: int, conn: Optional[sqlite3.Connection] = None) -> ReturnRecord:
        with use_connection(conn, self.db_file) as c:
            row = c.execute("SELECT * FROM returns WHERE id = ?", (return_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Return {return_id} not found.")
        return ReturnRecord.from_row(row)

    def get_return_for_loan(self, loan_id: int) -> ReturnRecord:
        with db_session(self.db_file) as conn:
            row = conn.execute("SELECT * FROM returns WHERE loan_id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"No return recorded for loan {loan_id}.")
        return ReturnRecord.from_row(row)

    def list_returns(self, late_only: bool = False) -> List[ReturnRecord]:
        sql = "SELECT * FROM returns"
        if late_only:
            sql += " WHERE days_late > 0"
        sql += " ORDER BY return_date DESC, id DESC"
        with db_session(self.db_file) as conn:
            rows = conn.execute(sql).fetchall()
        return [ReturnRecord.from_row(r) for r in rows]

    def correct_return(
        self,
        return_id: int,
        condition: Optional[Union[ReturnCondition, str]] = None,
        notes: Optional[str] = None,
    ) -> ReturnRecord:
        """Administrative correction. Only condition and notes may change."""
        if condition is None and notes is None:
            raise ValidationError("Nothing to update. Provide condition and/or notes.")
        with transaction(self.db_file) as conn:
            record = self.get_return(return_id, conn=conn)
            new_condition = parse_condition(condition) if condition is not None else record.condition
            new_notes = notes if notes is not None else record.notes
            conn.execute(
                "UPDATE returns SET condition = ?, notes = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (new_condition.value, new_notes, return_id),
            )
            record = self.get_return(return_id, conn=conn)
        logger.info(f"Return {return_id} corrected: condition={record.condition.value}")
        return record

    def delete_return(self, return_id: int) -> None:
        """Remove a return record. Refused while a fine references it."""
        with transaction(self.db_file) as conn:
            self.get_return(return_id, conn=conn)
            fine = conn.execute("SELECT id FROM fines WHERE return_id = ?", (return_id,)).fetchone()
            if fine is not None:
                raise ConflictError(f"Return {return_id} is referenced by fine {fine['id']}.")
            try:
                conn.execute("DELETE FROM returns WHERE id = ?", (return_id,))
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Return {return_id} is still referenced.") from e
        logger.info(f"Return {return_id} deleted")
