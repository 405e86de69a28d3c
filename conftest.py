"""
Shared pytest fixtures: an app bound to an in-memory database and a clock
that tests can move forward.
"""

from datetime import date, timedelta

import pytest

from app import create_app
from config import TestConfig
from models import db, Book, User


class FakeClock:
    """Callable clock whose date only changes when a test advances it"""

    def __init__(self, today):
        self.today = today

    def __call__(self):
        return self.today

    def advance(self, days):
        self.today += timedelta(days=days)


@pytest.fixture
def clock():
    return FakeClock(date(2026, 3, 2))


@pytest.fixture
def app(clock):
    app = create_app(TestConfig, {'CLOCK': clock})
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_book(app):
    """Factory fixture adding an active book straight to the database"""
    counter = {'n': 0}

    def _make_book(quantity=2, available=None, title=None):
        counter['n'] += 1
        book = Book(
            title=title or f'Book {counter["n"]}',
            author='Jane Doe',
            isbn=f'978013235{counter["n"]:04d}',
            quantity=quantity,
            available_quantity=quantity if available is None else available,
        )
        db.session.add(book)
        db.session.commit()
        return book

    return _make_book


@pytest.fixture
def librarian(app):
    user = User(username='librarian', full_name='Head Librarian', api_token='secret-token')
    db.session.add(user)
    db.session.commit()
    return user
