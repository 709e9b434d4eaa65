from concurrent.futures import ThreadPoolExecutor

from errors import ConflictError, LibraryError
from models import LoanStatus


def test_concurrent_loans_on_one_copy_have_a_single_winner(lib, desk):
    borrowers = [lib.add_user(f"Reader {i}") for i in range(8)]

    def attempt(borrower):
        try:
            return lib.open_loan(borrower.id, desk.copy.id, desk.librarian.id,
                                 loan_date="2024-01-10", due_date="2024-01-24")
        except LibraryError as e:
            return e

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, borrowers))

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]

    assert len(winners) == 1
    assert all(isinstance(e, ConflictError) for e in losers)
    active = lib.get_active_loans()
    assert [l.id for l in active] == [winners[0].id]
    assert active[0].status == LoanStatus.ACTIVE


def test_concurrent_returns_record_only_one(lib, desk):
    loan = lib.open_loan(desk.alice.id, desk.copy.id, desk.librarian.id,
                         loan_date="2024-01-01", due_date="2024-01-15")

    def attempt(_):
        try:
            return lib.record_return(loan.id, desk.librarian.id, return_date="2024-01-18")
        except LibraryError as e:
            return e

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(attempt, range(4)))

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
    assert len(lib.list_returns()) == 1
    assert len(lib.list_fines()) == 1
