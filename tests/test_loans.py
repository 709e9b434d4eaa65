import sqlite3
from datetime import date, timedelta

import pytest

from database import get_db_connection
from errors import ConflictError, NotFoundError, ValidationError
from models import LoanStatus


def _lend(lib, desk, copy=None, borrower=None, loan_date="2024-01-01", due_date="2024-01-15"):
    return lib.open_loan(
        (borrower or desk.alice).id,
        (copy or desk.copy).id,
        desk.librarian.id,
        loan_date=loan_date,
        due_date=due_date,
    )


def test_open_loan_marks_copy_on_loan(lib, desk):
    loan = _lend(lib, desk)

    assert loan.status == LoanStatus.ACTIVE
    assert loan.loan_date == date(2024, 1, 1)
    assert loan.due_date == date(2024, 1, 15)
    assert lib.get_copy(desk.copy.id).status == "On loan"
    assert lib.get_loan(loan.id) == loan


def test_open_loan_defaults_dates_from_clock(lib, desk):
    loan = lib.open_loan(desk.alice.id, desk.copy.id, desk.librarian.id)
    assert loan.loan_date == date(2024, 1, 20)
    assert loan.due_date == date(2024, 1, 20) + timedelta(days=14)


@pytest.mark.parametrize("due", ["2024-01-01", "2023-12-31"])
def test_due_date_must_be_after_loan_date(lib, desk, due):
    with pytest.raises(ValidationError, match="Due date must be after") as exc:
        _lend(lib, desk, due_date=due)
    assert exc.value.field == "due_date"
    assert lib.get_active_loans() == []


def test_second_loan_on_same_copy_conflicts(lib, desk):
    _lend(lib, desk)
    with pytest.raises(ConflictError, match="already on loan"):
        _lend(lib, desk, borrower=desk.carol)


def test_copy_status_must_permit_lending(lib, desk):
    lib.catalog.set_copy_status(desk.copy.id, "Maintenance")
    with pytest.raises(ValidationError, match="cannot be lent"):
        _lend(lib, desk)


def test_unknown_references_are_not_found(lib, desk):
    with pytest.raises(NotFoundError, match="Copy 999"):
        lib.open_loan(desk.alice.id, 999, desk.librarian.id)
    with pytest.raises(NotFoundError, match="User 999"):
        lib.open_loan(999, desk.copy.id, desk.librarian.id)
    with pytest.raises(NotFoundError, match="User 998"):
        lib.open_loan(desk.alice.id, desk.copy.id, 998)


def test_inactive_borrower_is_rejected(lib, desk):
    lib.identity.set_active(desk.alice.id, False)
    with pytest.raises(ValidationError, match="not active"):
        _lend(lib, desk)


def test_store_rejects_second_active_loan_even_without_app_checks(lib, desk):
    _lend(lib, desk)
    conn = get_db_connection(lib.db_file)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO loans (borrower_id, copy_id, agent_id, loan_date, due_date, status) "
                "VALUES (?, ?, ?, '2024-01-02', '2024-01-10', 'Active')",
                (desk.carol.id, desk.copy.id, desk.librarian.id),
            )
    finally:
        conn.close()


def test_cancel_loan_releases_copy(lib, desk):
    loan = _lend(lib, desk)
    cancelled = lib.cancel_loan(loan.id)

    assert cancelled.status == LoanStatus.CANCELLED
    assert lib.get_copy(desk.copy.id).status == "Available"
    # the copy can be lent again
    assert _lend(lib, desk, borrower=desk.carol).status == LoanStatus.ACTIVE


def test_cancel_twice_conflicts(lib, desk):
    loan = _lend(lib, desk)
    lib.cancel_loan(loan.id)
    with pytest.raises(ConflictError, match="already cancelled"):
        lib.cancel_loan(loan.id)


def test_close_loan_only_once(lib, desk):
    loan = _lend(lib, desk)
    closed = lib.loans.close_loan(loan.id)
    assert closed.status == LoanStatus.RETURNED
    assert lib.get_copy(desk.copy.id).status == "Available"
    with pytest.raises(ConflictError, match="not active"):
        lib.loans.close_loan(loan.id)


def test_desk_does_not_expose_close_loan(lib):
    # closing goes through record_return so every Returned loan has a return row
    assert not hasattr(lib, "close_loan")


def test_active_loans_newest_first_and_by_borrower(lib, desk):
    older = _lend(lib, desk, loan_date="2024-01-01", due_date="2024-01-15")
    newer = _lend(lib, desk, copy=desk.other_copy, borrower=desk.carol,
                  loan_date="2024-01-10", due_date="2024-01-24")

    assert [l.id for l in lib.get_active_loans()] == [newer.id, older.id]
    assert [l.id for l in lib.get_active_loans(desk.carol.id)] == [newer.id]


def test_active_loans_query_runs_on_iteration(lib, desk):
    loans = lib.loans.get_active_loans()
    _lend(lib, desk)
    # the query runs on first iteration, so the new loan is visible
    assert len(list(loans)) == 1
    assert list(loans) == []


def test_overdue_loans_ordered_by_due_date(lib, desk):
    due_19th = _lend(lib, desk, loan_date="2024-01-01", due_date="2024-01-19")
    due_5th = _lend(lib, desk, copy=desk.other_copy, borrower=desk.carol,
                  loan_date="2024-01-01", due_date="2024-01-05")

    assert [l.id for l in lib.get_overdue_loans()] == [due_5th.id, due_19th.id]
    assert [l.id for l in lib.get_overdue_loans("2024-01-10")] == [due_5th.id]
    assert lib.get_overdue_loans("2024-01-05") == []


def test_overdue_is_exclusive_of_active_in_listings(lib, desk):
    overdue = _lend(lib, desk, loan_date="2024-01-01", due_date="2024-01-15")
    current = _lend(lib, desk, copy=desk.other_copy, borrower=desk.carol,
                    loan_date="2024-01-18", due_date="2024-02-01")

    active_ids = {l.id for l in lib.list_loans(status="Active")}
    overdue_ids = {l.id for l in lib.list_loans(status="overdue")}

    assert active_ids == {current.id}
    assert overdue_ids == {overdue.id}
    assert {l.id for l in lib.list_loans(overdue_only=True)} == {overdue.id}
    assert lib.loans.is_overdue(lib.get_loan(overdue.id))
    assert not lib.loans.is_overdue(lib.get_loan(current.id))
    # stored status is untouched
    assert lib.get_loan(overdue.id).status == LoanStatus.ACTIVE


def test_list_loans_rejects_unknown_status(lib):
    with pytest.raises(ValidationError, match="Unknown loan status"):
        lib.list_loans(status="Lost")


def test_delete_loan_releases_active_copy(lib, desk):
    loan = _lend(lib, desk)
    lib.delete_loan(loan.id)

    with pytest.raises(NotFoundError):
        lib.get_loan(loan.id)
    assert lib.get_copy(desk.copy.id).status == "Available"


def test_delete_loan_with_return_is_refused(lib, desk):
    loan = _lend(lib, desk)
    lib.record_return(loan.id, desk.librarian.id, return_date="2024-01-10")
    with pytest.raises(ConflictError, match="return record"):
        lib.delete_loan(loan.id)
