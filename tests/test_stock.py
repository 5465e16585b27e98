import pytest

from school_library.commands import StockCorrectionCommand, build
from school_library.errors import NotFoundError, StockAnomalyError, ValidationError


@pytest.fixture
def book(lib):
    return lib.add_book("O Cortiço", "Aluísio Azevedo", total=2)


def test_new_book_starts_fully_available(lib, book):
    assert book.available == 2
    assert lib.stock.available(book.id) == 2


def test_decrement_and_floor(lib, book):
    assert lib.stock.decrement(book.id) == 1
    assert lib.stock.decrement(book.id) == 0
    with pytest.raises(StockAnomalyError):
        lib.stock.decrement(book.id)
    assert lib.stock.available(book.id) == 0


def test_forced_decrement_goes_negative_and_warns(lib, book, caplog):
    lib.stock.decrement(book.id)
    lib.stock.decrement(book.id)
    with caplog.at_level("WARNING"):
        assert lib.stock.decrement(book.id, force=True) == -1
    assert any("Forced decrement" in r.message for r in caplog.records)


def test_increment_is_clamped_at_total(lib, book, caplog):
    lib.stock.decrement(book.id)
    assert lib.stock.increment(book.id) == 2
    with caplog.at_level("WARNING"):
        assert lib.stock.increment(book.id) == 2
    assert any("clamped" in r.message for r in caplog.records)


def test_unknown_book(lib):
    with pytest.raises(NotFoundError):
        lib.stock.decrement(123)
    with pytest.raises(NotFoundError):
        lib.stock.increment(123)


def test_correction(lib, book, librarian, caplog):
    with caplog.at_level("INFO"):
        updated = lib.correct_stock(librarian, book.id, available=4, total=5)
    assert (updated.available, updated.total) == (4, 5)
    assert any("Stock corrected by Ms. Reyes" in r.message for r in caplog.records)

    updated = lib.correct_stock(librarian, book.id, available=1)
    assert (updated.available, updated.total) == (1, 5)


def test_correction_cannot_exceed_total(lib, book, librarian):
    with pytest.raises(ValidationError):
        lib.correct_stock(librarian, book.id, available=3)
    with pytest.raises(ValidationError):
        lib.correct_stock(librarian, book.id, available=6, total=5)
    with pytest.raises(ValidationError):
        lib.correct_stock(librarian, book.id, available=-1)
    assert lib.stock.available(book.id) == 2


def test_correction_of_unknown_book(lib):
    command = build(StockCorrectionCommand, book_id=9, available=0, acting_staff="Ms. Reyes")
    with pytest.raises(NotFoundError):
        lib.stock.correct(command)


def test_book_update_cannot_touch_stock(lib, book):
    with pytest.raises(ValidationError):
        lib.update_book(book.id, available=10)
    with pytest.raises(ValidationError):
        lib.update_book(book.id, total=10)
