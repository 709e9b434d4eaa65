import os
from datetime import date
from types import SimpleNamespace

import pytest

from library import Library

# All tests run against a fixed calendar day.
TODAY = date(2024, 1, 20)


@pytest.fixture
def lib(tmp_path, request):
    # A fresh database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, today=lambda: TODAY)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def desk(lib):
    """A librarian, two borrowers and two lendable copies."""
    return SimpleNamespace(
        librarian=lib.add_user("Bob Librarian", role="Librarian"),
        alice=lib.add_user("Alice Reader"),
        carol=lib.add_user("Carol Reader"),
        copy=lib.add_copy("DUNE-001", book_id=1),
        other_copy=lib.add_copy("DUNE-002", book_id=1),
    )
