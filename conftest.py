import os
from datetime import datetime, timedelta, timezone

import pytest

from school_library.commands import Role, SessionContext
from school_library.library import Library


class FakeClock:
    """Settable clock so due dates and reminders can be tested."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, clock):
    # tmp_path is unique per test, so every test gets its own database
    db_file = str(tmp_path / "library.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def librarian():
    return SessionContext(actor_id="lib-1", name="Ms. Reyes", role=Role.LIBRARIAN)


@pytest.fixture
def student():
    return SessionContext(actor_id="S100", name="Ana", role=Role.STUDENT)


@pytest.fixture
def as_reader():
    def make(borrower_id: str) -> SessionContext:
        return SessionContext(actor_id=borrower_id, role=Role.STUDENT)
    return make
