import pytest

import database
from access import AccessControl
from book import Book
from ledger import LoanLedger
from library import Library
from loan_service import LoanService


@pytest.fixture
def lib(tmp_path, request, monkeypatch):
    # Her test için benzersiz bir veritabanı dosyası; monkeypatch sonrasında modül varsayılanını geri yükler
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def ledger(lib):
    return LoanLedger()


@pytest.fixture
def access(lib):
    return AccessControl()


@pytest.fixture
def service(lib, ledger, access):
    return LoanService(lib, ledger, access, max_active_loans=5)


@pytest.fixture
def make_user(access):
    def _make(username, password="secret1", role="user"):
        return access.register(username, password, password, "Test", "Reader",
                               f"{username}@example.com", role=role)
    return _make


@pytest.fixture
def make_book(lib):
    def _make(book_id, quantity=5, title=None, **kwargs):
        return lib.add_book(Book(book_id, title or f"Title {book_id}", "Some Author", quantity=quantity, **kwargs))
    return _make
