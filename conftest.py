import os
from datetime import date

import pytest

import database
from lending import LendingPolicy
from library import Library


@pytest.fixture
def lib(tmp_path, request):
    # Every test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, policy=LendingPolicy(fine_per_day=10.0))
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    """Point the CLI's shared Library at a scratch database."""
    from main import LibraryManager

    db_file = str(tmp_path / "cli_test.db")
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
    LibraryManager.reset()
    yield db_file
    LibraryManager.reset()


@pytest.fixture
def stocked(lib):
    """A member and two titles: one with two copies, one with a single copy."""
    member = lib.add_member("Ada", "Lovelace", "ada@example.com", "+44 20 7946 0000", join_date=date(2024, 1, 1))
    dune = lib.add_book("Dune", "Frank Herbert", "9780441172719", publication_year=1965, total_copies=2)
    hobbit = lib.add_book("The Hobbit", "J.R.R. Tolkien", "9780547928227", publication_year=1937)
    return member, dune, hobbit
