from concurrent.futures import ThreadPoolExecutor

from errors import BookUnavailable, LibraryError, LoanLimitExceeded


def _attempt(service, username, book_id):
    try:
        service.borrow(username, book_id)
        return "ok"
    except LibraryError as e:
        return type(e)


def test_last_copy_goes_to_exactly_one_borrower(service, make_user, make_book):
    users = [f"reader{i}" for i in range(8)]
    for name in users:
        make_user(name)
    make_book("B001", quantity=1)

    with ThreadPoolExecutor(max_workers=len(users)) as pool:
        results = list(pool.map(lambda name: _attempt(service, name, "B001"), users))

    assert results.count("ok") == 1
    assert results.count(BookUnavailable) == len(users) - 1
    assert service.library.find_book("B001").available_copies == 0
    assert service.ledger.open_loan_count_for_book("B001") == 1


def test_loan_limit_holds_under_concurrent_borrows(service, make_user, make_book):
    make_user("alice")
    book_ids = [f"B{i:03d}" for i in range(1, 9)]
    for book_id in book_ids:
        make_book(book_id, quantity=2)

    with ThreadPoolExecutor(max_workers=len(book_ids)) as pool:
        results = list(pool.map(lambda book_id: _attempt(service, "alice", book_id), book_ids))

    assert results.count("ok") == 5
    assert results.count(LoanLimitExceeded) == 3
    assert service.ledger.active_loan_count_for_user("alice") == 5
    stats = service.library.get_statistics()
    assert stats["on_loan"] == 5


def test_concurrent_borrow_and_return_keep_stock_consistent(service, make_user, make_book):
    users = [f"reader{i}" for i in range(6)]
    for name in users:
        make_user(name)
    make_book("B001", quantity=3)

    def cycle(name):
        for _ in range(3):
            if _attempt(service, name, "B001") == "ok":
                service.return_book(name, "B001")

    with ThreadPoolExecutor(max_workers=len(users)) as pool:
        list(pool.map(cycle, users))

    book = service.library.find_book("B001")
    assert book.available_copies == 3
    assert service.ledger.open_loan_count_for_book("B001") == 0
