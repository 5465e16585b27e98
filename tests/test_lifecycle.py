from datetime import timedelta

import pytest

from school_library.commands import ApproveCommand, ManualLoanCommand, RequestLoanCommand, SessionContext, build
from school_library.errors import (
    ConflictError,
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    StockAnomalyError,
    StorageUnavailableError,
    ValidationError,
)
from school_library.models import Loan, LoanStatus, TRANSITIONS, can_transition, is_overdue
from school_library.services import DispatchResult


@pytest.fixture
def book(lib):
    return lib.add_book("Dom Casmurro", "Machado de Assis", total=1, genre="Romance")


def test_request_creates_requested_loan_without_touching_stock(lib, book, as_reader, clock):
    loan = lib.request_loan(as_reader("A"), book.id, duration_days=15)

    assert loan.status == LoanStatus.REQUESTED
    assert loan.requested_at == clock.now
    assert loan.due_at == clock.now + timedelta(days=15)
    assert lib.get_book(book.id).available == 1
    assert lib.list_waitlist(book.id) == []


def test_request_rejects_unlisted_duration(lib, book, as_reader):
    with pytest.raises(ValidationError, match="duration"):
        lib.request_loan(as_reader("A"), book.id, duration_days=9)


def test_request_unknown_book(lib, as_reader):
    with pytest.raises(NotFoundError):
        lib.request_loan(as_reader("A"), 404)


def test_approve_out_of_stock_needs_force(lib, book, as_reader, librarian):
    # Scenario 1
    loan_a = lib.request_loan(as_reader("A"), book.id)
    approved = lib.approve_loan(librarian, loan_a.id)
    assert approved.status == LoanStatus.APPROVED
    assert approved.actioned_by == "Ms. Reyes"
    assert lib.get_book(book.id).available == 0

    loan_b = lib.request_loan(as_reader("B"), book.id)
    assert loan_b.status == LoanStatus.REQUESTED

    with pytest.raises(StockAnomalyError) as exc_info:
        lib.approve_loan(librarian, loan_b.id)
    assert exc_info.value.book_id == book.id
    assert exc_info.value.available == 0
    # the failed approval rolled back the status write
    assert lib.get_loan(loan_b.id).status == LoanStatus.REQUESTED
    assert lib.get_book(book.id).available == 0

    forced = lib.approve_loan(librarian, loan_b.id, force=True)
    assert forced.status == LoanStatus.APPROVED
    assert lib.get_book(book.id).available == -1


def test_stock_anomaly_is_logged(lib, book, as_reader, librarian, caplog):
    lib.approve_loan(librarian, lib.request_loan(as_reader("A"), book.id).id)
    loan_b = lib.request_loan(as_reader("B"), book.id)

    with caplog.at_level("WARNING"):
        with pytest.raises(StockAnomalyError):
            lib.approve_loan(librarian, loan_b.id)
    assert any("Stock anomaly" in r.message for r in caplog.records)


def test_join_waitlist_twice_conflicts(lib, book, as_reader, librarian):
    # Scenario 2
    lib.approve_loan(librarian, lib.request_loan(as_reader("A"), book.id).id)
    entry = lib.join_waitlist(as_reader("C"), book.id)
    assert entry.position == 1

    with pytest.raises(ConflictError):
        lib.join_waitlist(as_reader("C"), book.id)
    with pytest.raises(DuplicateError):
        lib.join_waitlist(as_reader("C"), book.id)
    assert len(lib.list_waitlist(book.id)) == 1


def test_return_reassigns_to_waiting_reader(lib, book, as_reader, librarian, clock):
    # Scenario 3
    loan_a = lib.approve_loan(librarian, lib.request_loan(as_reader("A"), book.id).id)
    lib.join_waitlist(as_reader("C"), book.id)
    clock.advance(days=3)

    outcome = lib.return_loan(librarian, loan_a.id)

    assert outcome.loan.status == LoanStatus.RETURNED
    assert outcome.loan.returned_at == clock.now
    assert outcome.dispatch.result == DispatchResult.REASSIGNED
    new_loan = outcome.dispatch.loan
    assert new_loan.borrower_id == "C"
    assert new_loan.status == LoanStatus.REQUESTED
    assert new_loan.due_at == clock.now + timedelta(days=7)
    assert lib.list_waitlist(book.id) == []
    notes = lib.notifications.stored_for("C")
    assert len(notes) == 1
    assert notes[0].loan_id == new_loan.id
    assert "Dom Casmurro" in notes[0].message
    assert lib.get_book(book.id).available == 0


def test_return_with_empty_waitlist_restocks(lib, book, as_reader, librarian):
    # Scenario 4
    loan_a = lib.approve_loan(librarian, lib.request_loan(as_reader("A"), book.id).id)
    loans_before = len(lib.list_loans())

    outcome = lib.return_loan(librarian, loan_a.id)

    assert outcome.dispatch.result == DispatchResult.RESTOCKED
    assert outcome.dispatch.loan is None
    assert lib.get_book(book.id).available == 1
    assert len(lib.list_loans()) == loans_before


def test_reject_then_approve_is_invalid(lib, book, as_reader, librarian, clock):
    # Scenario 5
    loan = lib.request_loan(as_reader("A"), book.id)
    rejected = lib.reject_loan(librarian, loan.id)

    assert rejected.status == LoanStatus.REJECTED
    assert rejected.returned_at == clock.now
    assert lib.get_book(book.id).available == 1

    with pytest.raises(InvalidStateError) as exc_info:
        lib.approve_loan(librarian, loan.id)
    assert exc_info.value.status == "rejected"
    assert exc_info.value.loan_id == loan.id


def test_second_open_loan_conflicts(lib, book, as_reader, librarian):
    # Scenario 6
    other = lib.add_book("Iracema", "José de Alencar", total=2)
    lib.request_loan(as_reader("D"), book.id)

    with pytest.raises(ConflictError):
        lib.request_loan(as_reader("D"), other.id)


def test_approved_loan_still_counts_as_open(lib, book, as_reader, librarian):
    other = lib.add_book("Iracema", "José de Alencar", total=2)
    loan = lib.request_loan(as_reader("D"), book.id)
    lib.approve_loan(librarian, loan.id)

    with pytest.raises(ConflictError):
        lib.request_loan(as_reader("D"), other.id)

    lib.return_loan(librarian, loan.id)
    assert lib.request_loan(as_reader("D"), other.id).status == LoanStatus.REQUESTED


def test_rejected_loan_frees_the_reader(lib, book, as_reader, librarian):
    loan = lib.request_loan(as_reader("D"), book.id)
    lib.reject_loan(librarian, loan.id)

    assert lib.request_loan(as_reader("D"), book.id).status == LoanStatus.REQUESTED


@pytest.mark.parametrize("current", list(LoanStatus))
@pytest.mark.parametrize("target", list(LoanStatus))
def test_transition_table_is_closed(current, target):
    allowed = {
        (LoanStatus.REQUESTED, LoanStatus.APPROVED),
        (LoanStatus.REQUESTED, LoanStatus.REJECTED),
        (LoanStatus.APPROVED, LoanStatus.RETURNED),
    }
    assert can_transition(current, target) == ((current, target) in allowed)


def test_terminal_states_have_no_exits():
    for status in LoanStatus:
        assert status.is_terminal == (not TRANSITIONS[status])


def test_illegal_transitions_raise(lib, book, as_reader, librarian):
    loan = lib.request_loan(as_reader("A"), book.id)
    with pytest.raises(InvalidStateError):
        lib.return_loan(librarian, loan.id)

    lib.approve_loan(librarian, loan.id)
    with pytest.raises(InvalidStateError):
        lib.approve_loan(librarian, loan.id)
    with pytest.raises(InvalidStateError):
        lib.reject_loan(librarian, loan.id)

    lib.return_loan(librarian, loan.id)
    for action in (lib.approve_loan, lib.reject_loan, lib.return_loan):
        with pytest.raises(InvalidStateError):
            action(librarian, loan.id)
    assert lib.get_book(book.id).available == 1


def test_unknown_loan(lib, librarian):
    with pytest.raises(NotFoundError):
        lib.approve_loan(librarian, 999)


def test_is_overdue_is_computed_from_the_clock(lib, book, as_reader, librarian, clock):
    loan = lib.approve_loan(librarian, lib.request_loan(as_reader("A"), book.id, duration_days=7).id)

    assert not lib.is_overdue(loan)
    clock.advance(days=7)
    assert not lib.is_overdue(loan)
    clock.advance(seconds=1)
    assert lib.is_overdue(loan)
    assert [l.id for l in lib.list_loans(overdue=True)] == [loan.id]

    returned = lib.return_loan(librarian, loan.id).loan
    assert not is_overdue(returned, clock.now)


def test_is_overdue_ignores_requested_loans(clock):
    loan = Loan(id=1, book_id=1, borrower_id="A", requested_at=clock.now - timedelta(days=30),
                due_at=clock.now - timedelta(days=20), status=LoanStatus.REQUESTED)
    assert not is_overdue(loan, clock.now)


def test_manual_loan_creates_approved_loan(lib, book, librarian, clock):
    loan = lib.create_manual_loan(librarian, "E", book.id, duration_days=10)

    assert loan.status == LoanStatus.APPROVED
    assert loan.actioned_by == "Ms. Reyes"
    assert loan.due_at == clock.now + timedelta(days=10)
    assert lib.get_book(book.id).available == 0


def test_manual_loan_respects_open_loan_rule(lib, book, as_reader, librarian):
    lib.request_loan(as_reader("E"), book.id)
    with pytest.raises(ConflictError):
        lib.create_manual_loan(librarian, "E", book.id)


def test_manual_loan_on_empty_shelf(lib, book, librarian):
    lib.create_manual_loan(librarian, "E", book.id)

    with pytest.raises(StockAnomalyError):
        lib.create_manual_loan(librarian, "F", book.id)
    # nothing written for F
    assert lib.list_loans(borrower_id="F") == []

    forced = lib.create_manual_loan(librarian, "F", book.id, force=True)
    assert forced.status == LoanStatus.APPROVED
    assert lib.get_book(book.id).available == -1


def test_manual_loan_duration_is_capped():
    with pytest.raises(ValidationError):
        build(ManualLoanCommand, borrower_id="E", book_id=1, duration_days=45, acting_staff="Ms. Reyes")


def test_commands_reject_bad_input():
    with pytest.raises(ValidationError):
        build(RequestLoanCommand, borrower_id="", book_id=1)
    with pytest.raises(ValidationError):
        build(ApproveCommand, loan_id=0, acting_staff="x")
    with pytest.raises(ValidationError):
        build(ApproveCommand, loan_id=1, acting_staff="x", extra_field=True)


def test_list_loans_filters(lib, book, as_reader, librarian, clock):
    first = lib.request_loan(as_reader("A"), book.id)
    clock.advance(minutes=1)
    second = lib.request_loan(as_reader("B"), book.id)
    lib.reject_loan(librarian, first.id)

    assert [l.id for l in lib.list_loans()] == [second.id, first.id]
    assert [l.id for l in lib.list_loans(status="rejected")] == [first.id]
    assert [l.id for l in lib.list_loans(borrower_id="B")] == [second.id]
    with pytest.raises(ValidationError):
        lib.list_loans(status="lost")


def test_request_without_reader_needs_actor(lib, book):
    with pytest.raises(ValidationError):
        lib.request_loan(SessionContext(), book.id)


def test_approve_rolls_back_when_stock_write_fails(lib, book, as_reader, librarian, monkeypatch):
    loan = lib.request_loan(as_reader("A"), book.id)

    def broken_adjust(*args, **kwargs):
        raise StorageUnavailableError("disk I/O error")

    # the status write has already happened when the stock update fails
    monkeypatch.setattr(lib.store, "adjust", broken_adjust)
    with pytest.raises(StorageUnavailableError):
        lib.approve_loan(librarian, loan.id)
    monkeypatch.undo()

    stored = lib.get_loan(loan.id)
    assert stored.status == LoanStatus.REQUESTED
    assert stored.actioned_by is None
    assert lib.get_book(book.id).available == 1


def test_open_loan_for(lib, book, as_reader, librarian):
    assert lib.open_loan_for("A") is None

    loan = lib.request_loan(as_reader("A"), book.id)
    assert lib.open_loan_for("A").id == loan.id

    lib.approve_loan(librarian, loan.id)
    assert lib.open_loan_for("A").status == LoanStatus.APPROVED

    lib.return_loan(librarian, loan.id)
    assert lib.open_loan_for("A") is None
