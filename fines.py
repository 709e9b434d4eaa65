import logging
import sqlite3
from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Union

from catalog import IdentityStore
from config import settings
from database import db_session, transaction, use_connection
from errors import NotFoundError, ValidationError
from models import (
    DateLike,
    Fine,
    FineKind,
    ReturnRecord,
    from_cents,
    to_cents,
    to_date,
    to_money,
)

logger = logging.getLogger(__name__)

MANUAL_FINE_KINDS = (FineKind.DAMAGE, FineKind.LOSS)


class FineEngine:
    """Derives fines from late returns and tracks their payment.

    The per-day rate and the grace period are injected so callers (and tests)
    can vary them; ``settings`` only supplies the defaults.
    """

    def __init__(
        self,
        identity: IdentityStore,
        db_file: Optional[str] = None,
        daily_rate: Optional[Union[Decimal, str]] = None,
        grace_days: Optional[int] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.identity = identity
        self.db_file = db_file
        self.daily_rate = to_money(daily_rate if daily_rate is not None else settings.fine_daily_rate,
                                   "daily_rate")
        if self.daily_rate < 0:
            raise ValidationError("Daily fine rate cannot be negative.", field="daily_rate")
        self.grace_days = grace_days if grace_days is not None else settings.fine_grace_days
        self.today = today or date.today

    # ------------------------- Creation ------------------------- #
    def create_overdue_fine(self, return_record: ReturnRecord, user_id: int, days_late: int) -> Fine:
        """Fine for a late return: ``days_late`` times the daily rate."""
        if days_late <= 0:
            raise ValidationError("An overdue fine needs at least one day late.", field="days_late")
        amount = self.daily_rate * days_late
        description = (
            f"Late return of loan {return_record.loan_id}: "
            f"{days_late} day(s) x {settings.currency_symbol}{self.daily_rate}"
        )
        fine = self._insert(user_id, FineKind.OVERDUE, amount, description, return_id=return_record.id)
        logger.info(f"Overdue fine {fine.id} created for user {user_id}: {fine.amount} ({days_late} days)")
        return fine

    def create_manual_fine(
        self,
        user_id: int,
        kind: Union[FineKind, str],
        amount,
        description: Optional[str] = None,
        return_id: Optional[int] = None,
    ) -> Fine:
        """Damage or loss fine reported by staff, optionally tied to a return."""
        fine_kind = self._parse_kind(kind)
        if fine_kind not in MANUAL_FINE_KINDS:
            raise ValidationError("Manual fines must be of kind Damage or Loss.", field="kind")
        money = to_money(amount, "amount")
        fine = self._insert(user_id, fine_kind, money, description, return_id=return_id)
        logger.info(f"{fine_kind.value} fine {fine.id} created for user {user_id}: {fine.amount}")
        return fine

    # ------------------------- Payment ------------------------- #
    def mark_paid(self, fine_id: int, payment_date: Optional[DateLike] = None) -> Fine:
        today = self.today()
        paid_on = to_date(payment_date, "payment_date") if payment_date is not None else today
        if paid_on > today:
            raise ValidationError("Payment date cannot be in the future.", field="payment_date")
        with transaction(self.db_file) as conn:
            self.get_fine(fine_id, conn=conn)
            conn.execute(
                "UPDATE fines SET paid = 1, payment_date = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (paid_on.isoformat(), fine_id),
            )
            fine = self.get_fine(fine_id, conn=conn)
        logger.info(f"Fine {fine_id} marked paid on {paid_on.isoformat()}")
        return fine

    def mark_unpaid(self, fine_id: int) -> Fine:
        with transaction(self.db_file) as conn:
            self.get_fine(fine_id, conn=conn)
            conn.execute(
                "UPDATE fines SET paid = 0, payment_date = NULL, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (fine_id,),
            )
            fine = self.get_fine(fine_id, conn=conn)
        logger.info(f"Fine {fine_id} marked unpaid")
        return fine

    # ------------------------- Queries ------------------------- #
    def total_owed(self, user_id: int) -> Decimal:
        """Sum of unpaid fines for the user; 0.00 when there are none."""
        with db_session(self.db_file) as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount_cents), 0) AS total FROM fines WHERE user_id = ? AND paid = 0",
                (user_id,),
            ).fetchone()
        return from_cents(row["total"])

    def is_overdue(self, fine: Fine, as_of: Optional[DateLike] = None) -> bool:
        return fine.is_overdue(as_of if as_of is not None else self.today(), self.grace_days)

    def get_fine(self, fine_id: int, conn: Optional[sqlite3.Connection] = None) -> Fine:
        with use_connection(conn, self.db_file) as c:
            row = c.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Fine {fine_id} not found.")
        return Fine.from_row(row)

    def list_fines(self, user_id: Optional[int] = None, paid: Optional[bool] = None) -> List[Fine]:
        clauses = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if paid is not None:
            clauses.append("paid = ?")
            params.append(1 if paid else 0)
        sql = "SELECT * FROM fines"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_on DESC, id DESC"
        with db_session(self.db_file) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Fine.from_row(r) for r in rows]

    def pending_fines(self, user_id: Optional[int] = None) -> List[Fine]:
        return self.list_fines(user_id=user_id, paid=False)

    # ------------------------- Helpers ------------------------- #
    def _insert(
        self,
        user_id: int,
        kind: FineKind,
        amount: Decimal,
        description: Optional[str],
        return_id: Optional[int] = None,
    ) -> Fine:
        if amount < 0:
            raise ValidationError("Fine amount cannot be negative.", field="amount")
        cents = to_cents(amount)
        with transaction(self.db_file) as conn:
            self.identity.get_user(user_id, conn=conn)
            if return_id is not None:
                found = conn.execute("SELECT id FROM returns WHERE id = ?", (return_id,)).fetchone()
                if found is None:
                    raise NotFoundError(f"Return {return_id} not found.")
            cursor = conn.execute(
                """
                INSERT INTO fines (return_id, user_id, kind, amount_cents, paid, description, created_on)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (return_id, user_id, kind.value, cents, description, self.today().isoformat()),
            )
            return self.get_fine(cursor.lastrowid, conn=conn)

    @staticmethod
    def _parse_kind(kind: Union[FineKind, str]) -> FineKind:
        if isinstance(kind, FineKind):
            return kind
        for candidate in FineKind:
            if candidate.value.lower() == str(kind).strip().lower():
                return candidate
        raise ValidationError(f"Unknown fine kind: {kind}", field="kind")
