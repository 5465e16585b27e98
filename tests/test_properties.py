"""Seeded random operation sequences against a real store.

After every step the ledger must balance: for each book, copies on the shelf
plus copies out on approved loans plus copies reserved for waitlisted readers
equals the number owned.
"""
import random
from collections import Counter

import pytest

from school_library.commands import Role, SessionContext
from school_library.errors import LibraryError
from school_library.models import LoanStatus
from school_library.services import DispatchResult

READERS = ["r1", "r2", "r3", "r4"]
OPERATIONS = ["request", "approve", "reject", "return", "join", "leave", "manual"]
STAFF = SessionContext(actor_id="staff", name="Librarian", role=Role.LIBRARIAN)


def _choose(rng, items):
    return rng.choice(items) if items else None


def check_invariants(lib):
    books = {r["id"]: r for r in lib.store.find("books")}
    loans = lib.store.find("loans")

    for book_id, book in books.items():
        assert 0 <= book["available"] <= book["total"], book
        out = sum(1 for l in loans if l["book_id"] == book_id
                  and l["status"] == LoanStatus.APPROVED.value and l["returned_at"] is None)
        held = sum(1 for l in loans if l["book_id"] == book_id
                   and l["status"] == LoanStatus.REQUESTED.value and l["reserved"])
        assert book["available"] + out + held == book["total"], (book, out, held)

    open_per_reader = Counter(
        l["borrower_id"] for l in loans
        if l["status"] == LoanStatus.REQUESTED.value
        or (l["status"] == LoanStatus.APPROVED.value and l["returned_at"] is None)
    )
    assert all(n <= 1 for n in open_per_reader.values()), open_per_reader

    pairs = Counter((w["book_id"], w["borrower_id"]) for w in lib.store.find("waitlist"))
    assert all(n == 1 for n in pairs.values()), pairs


def check_return(lib, loan_id):
    """A return ends in exactly one of reassign or restock."""
    book_id = lib.get_loan(loan_id).book_id
    before_available = lib.get_book(book_id).available
    before_loans = lib.store.count("loans")
    before_queue = lib.store.count("waitlist", {"book_id": book_id})

    outcome = lib.return_loan(STAFF, loan_id)

    after_available = lib.get_book(book_id).available
    if outcome.dispatch.result == DispatchResult.REASSIGNED:
        assert after_available == before_available
        assert lib.store.count("loans") == before_loans + 1
        assert lib.store.count("waitlist", {"book_id": book_id}) == before_queue - 1
    else:
        assert after_available == before_available + 1
        assert lib.store.count("loans") == before_loans
        assert lib.store.count("waitlist", {"book_id": book_id}) == before_queue


def apply(lib, rng, book_ids):
    kind = rng.choice(OPERATIONS)
    loans = lib.store.find("loans", order_by="id")
    if kind == "request":
        lib.request_loan(SessionContext(actor_id=rng.choice(READERS)), rng.choice(book_ids))
    elif kind == "join":
        lib.join_waitlist(SessionContext(actor_id=rng.choice(READERS)), rng.choice(book_ids))
    elif kind == "manual":
        lib.create_manual_loan(STAFF, rng.choice(READERS), rng.choice(book_ids))
    elif kind == "leave":
        entry = _choose(rng, lib.store.find("waitlist", order_by="id"))
        if entry is not None:
            lib.leave_waitlist(entry["id"])
    else:
        loan = _choose(rng, loans)
        if loan is None:
            return
        if kind == "approve":
            lib.approve_loan(STAFF, loan["id"])
        elif kind == "reject":
            lib.reject_loan(STAFF, loan["id"])
        else:
            check_return(lib, loan["id"])


@pytest.mark.parametrize("seed", range(25))
def test_random_operations_keep_the_ledger_consistent(lib, seed):
    rng = random.Random(seed)
    book_ids = [lib.add_book(f"Livro {i}", "Autor", total=rng.randint(1, 3)).id
                for i in range(rng.randint(1, 3))]
    check_invariants(lib)

    for _ in range(40):
        try:
            apply(lib, rng, book_ids)
        except LibraryError:
            # refused operations must leave no trace
            pass
        check_invariants(lib)


@pytest.mark.parametrize("seed", range(15))
def test_terminal_loans_never_move(lib, seed):
    rng = random.Random(seed)
    book = lib.add_book("Livro", "Autor", total=1)
    loan_id = lib.request_loan(SessionContext(actor_id="r1"), book.id).id
    actions = {"approve": lib.approve_loan, "reject": lib.reject_loan, "return": lib.return_loan}

    seen = [LoanStatus.REQUESTED]
    for _ in range(8):
        try:
            actions[rng.choice(sorted(actions))](STAFF, loan_id)
        except LibraryError:
            pass
        status = lib.get_loan(loan_id).status
        if seen[-1].is_terminal:
            assert status == seen[-1]
        seen.append(status)
