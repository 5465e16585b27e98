import pytest

from school_library.errors import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def shelf(lib):
    return [
        lib.add_book("Grande Sertão: Veredas", "Guimarães Rosa", total=2, genre="Romance", location="A1"),
        lib.add_book("A Hora da Estrela", "Clarice Lispector", genre="Romance"),
        lib.add_book("Auto da Compadecida", "Ariano Suassuna", genre="Teatro"),
    ]


def test_add_book_persists(lib):
    book = lib.add_book("  Quarto de Despejo ", "Carolina Maria de Jesus", total=3, pages=200)

    stored = lib.get_book(book.id)
    assert stored.title == "Quarto de Despejo"
    assert (stored.available, stored.total) == (3, 3)
    assert stored.pages == 200
    assert stored.created_at is not None


@pytest.mark.parametrize("title,author,total", [
    ("", "Someone", 1),
    ("12345", "Someone", 1),
    ("Valid", "   ", 1),
    ("Valid", "2024", 1),
    ("Valid", "Someone", 0),
])
def test_add_book_validation(lib, title, author, total):
    with pytest.raises(ValidationError):
        lib.add_book(title, author, total=total)


def test_add_book_rejects_unknown_fields(lib):
    with pytest.raises(ValidationError):
        lib.add_book("Valid", "Someone", isbn="123")


def test_update_book_is_partial(lib, shelf):
    book = shelf[0]
    updated = lib.update_book(book.id, location="B7", title=None)

    assert updated.location == "B7"
    assert updated.title == book.title
    assert updated.available == book.available


def test_update_book_validation(lib, shelf):
    with pytest.raises(ValidationError):
        lib.update_book(shelf[0].id)
    with pytest.raises(ValidationError):
        lib.update_book(shelf[0].id, title="   ")
    with pytest.raises(NotFoundError):
        lib.update_book(999, title="Ghost")


def test_remove_book(lib, shelf):
    lib.remove_book(shelf[2].id)
    with pytest.raises(NotFoundError):
        lib.get_book(shelf[2].id)
    with pytest.raises(NotFoundError):
        lib.remove_book(shelf[2].id)


def test_remove_book_with_history_is_refused(lib, shelf, as_reader, librarian):
    loan = lib.request_loan(as_reader("A"), shelf[0].id)
    lib.reject_loan(librarian, loan.id)
    with pytest.raises(ConflictError):
        lib.remove_book(shelf[0].id)

    lib.join_waitlist(as_reader("B"), shelf[1].id)
    with pytest.raises(ConflictError):
        lib.remove_book(shelf[1].id)


def test_list_books_is_paginated_and_title_ordered(lib, shelf):
    page = lib.list_books(page=1, page_size=2)

    assert [b.title for b in page["items"]] == ["A Hora da Estrela", "Auto da Compadecida"]
    assert (page["total"], page["pages"]) == (3, 2)
    assert [b.title for b in lib.list_books(page=2, page_size=2)["items"]] == ["Grande Sertão: Veredas"]


def test_list_books_search_and_genre(lib, shelf):
    assert [b.title for b in lib.list_books(query="clarice")["items"]] == ["A Hora da Estrela"]
    assert [b.title for b in lib.list_books(query="VEREDAS")["items"]] == ["Grande Sertão: Veredas"]
    assert len(lib.list_books(genre="Romance")["items"]) == 2
    assert lib.list_books(query="nothing here")["items"] == []


def test_list_books_page_size_limits(lib):
    with pytest.raises(ValidationError):
        lib.list_books(page_size=1000)


def test_ratings_come_from_approved_comments(lib, shelf, as_reader):
    book = shelf[0]
    first = lib.add_comment(as_reader("A"), book.id, "Obra-prima", rating=5)
    second = lib.add_comment(as_reader("B"), book.id, "Difícil", rating=2)
    lib.add_comment(as_reader("C"), book.id, "Pendente", rating=1)
    lib.approve_comment(first.id)
    lib.approve_comment(second.id)

    listed = {b.id: b for b in lib.list_books()["items"]}
    assert listed[book.id].rating == pytest.approx(3.5)
    assert listed[book.id].rating_count == 2
    assert listed[shelf[1].id].rating == 0


def test_catalog_falls_back_when_ratings_are_unavailable(lib, shelf, caplog):
    # without the comments table the rated read fails with a schema error
    lib.store.select("DROP TABLE comments")

    with caplog.at_level("WARNING"):
        page = lib.list_books()

    assert len(page["items"]) == 3
    assert all(b.rating == 0 for b in page["items"])
    assert any("falling back" in r.message for r in caplog.records)


def test_genres_and_top_books(lib, shelf, as_reader, librarian):
    assert lib.genres() == ["Romance", "Teatro"]

    for reader_id in ("A", "B"):
        loan = lib.request_loan(as_reader(reader_id), shelf[0].id)
        lib.approve_loan(librarian, loan.id)
    lib.approve_loan(librarian, lib.request_loan(as_reader("C"), shelf[2].id).id)
    lib.request_loan(as_reader("D"), shelf[1].id)

    top = lib.top_books()
    assert [(t["id"], t["loans"]) for t in top] == [(shelf[0].id, 2), (shelf[2].id, 1)]


def test_added_books_are_stamped_with_the_library_clock(lib, clock):
    book = lib.add_book("Sagarana", "Guimarães Rosa")
    assert lib.get_book(book.id).created_at == clock.now.isoformat(timespec="microseconds")
