import logging
from datetime import timedelta
from typing import Any, Dict

from library import Library

logger = logging.getLogger(__name__)


def seed_demo_data(lib: Library) -> Dict[str, Any]:
    """Populate an empty database with a small circulation scenario.

    Does nothing when copies already exist.
    """
    if lib.list_copies():
        logger.info("Database already has copies; skipping demo data")
        return {"seeded": False}

    # users
    librarian = lib.add_user("Bob Librarian", role="Librarian", email="bob@example.com")
    lib.add_user("Ava Admin", role="Admin", email="admin@example.com")
    alice = lib.add_user("Alice Reader", email="alice@example.com")
    carol = lib.add_user("Carol Reader", email="carol@example.com")

    # copies
    dune_1 = lib.add_copy("DUNE-001", book_id=1)
    dune_2 = lib.add_copy("DUNE-002", book_id=1)
    clean_code = lib.add_copy("CLEAN-001", book_id=2)
    lib.add_copy("HP1-001", book_id=3)

    today = lib.today()

    # a loan still running
    lib.open_loan(alice.id, dune_1.id, librarian.id, loan_date=today - timedelta(days=3))

    # a loan already past its due date
    lib.open_loan(
        carol.id,
        clean_code.id,
        librarian.id,
        loan_date=today - timedelta(days=20),
        due_date=today - timedelta(days=6),
    )

    # a late return, which produces an overdue fine
    late = lib.open_loan(
        alice.id,
        dune_2.id,
        librarian.id,
        loan_date=today - timedelta(days=30),
        due_date=today - timedelta(days=16),
    )
    outcome = lib.record_return(late.id, librarian.id, return_date=today - timedelta(days=12))

    summary = {
        "seeded": True,
        "users": 4,
        "copies": len(lib.list_copies()),
        "active_loans": len(lib.get_active_loans()),
        "fines": len(lib.list_fines()),
    }
    logger.info(f"Demo data created: {summary} (late return fine: {outcome.fine.amount if outcome.fine else 'none'})")
    return summary
