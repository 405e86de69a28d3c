"""
Pytest tests for catalog.py
"""

from datetime import date, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

import catalog
import circulation
import schemas
from errors import InvalidState, NotFound, ValidationError
from models import ActivityLog, Book
from schemas import BookCreate, BookUpdate, BorrowRequest


@pytest.fixture
def book_data():
    return BookCreate(title='Noli Me Tangere', author='Jose Rizal', isbn='978-0-14-303969-2', quantity=3)


def lend(book, clock, student_id='S1'):
    return circulation.borrow_book(BorrowRequest(
        book_id=book.id,
        student_name='Student',
        student_id_number=student_id,
        borrowed_date=clock(),
        due_date=clock() + timedelta(days=7),
    ))


@pytest.mark.parametrize('raw, expected', [
    ('978-0-14-303969-2', '9780143039692'),
    (' 0-8044-2957-x ', '080442957X'),
    ('ISBN 978 0 14 303969 2', '9780143039692'),
    ('', None),
    ('---', None),
])
def test_normalize_isbn(raw, expected):
    """Test that ISBNs are reduced to digits and a trailing X"""
    assert catalog.normalize_isbn(raw) == expected


def test_normalize_isbn_caps_length():
    """Test that normalized ISBNs never exceed 13 characters"""
    assert catalog.normalize_isbn('97801430396921234') == '9780143039692'


def test_create_book_starts_fully_available(app, book_data):
    """Test that a new book has every copy on the shelf"""
    book = catalog.create_book(book_data)

    assert book.isbn == '9780143039692'
    assert book.quantity == 3
    assert book.available_quantity == 3
    assert ActivityLog.query.filter_by(action_type='ADD_BOOK').count() == 1


def test_create_book_rejects_duplicate_isbn(app, book_data):
    """Test that the same ISBN written differently is still a duplicate"""
    catalog.create_book(book_data)
    duplicate = book_data.model_copy(update={'isbn': '9780143039692'})

    with pytest.raises(ValidationError, match='already exists'):
        catalog.create_book(duplicate)
    assert Book.query.count() == 1


def test_create_book_rejects_unusable_isbn(app, book_data):
    """Test that an ISBN with no digits is refused"""
    with pytest.raises(ValidationError, match='Invalid ISBN'):
        catalog.create_book(book_data.model_copy(update={'isbn': 'n/a'}))


def test_update_quantity_shifts_available(app, clock, book_data):
    """Test that adding copies adds them to the shelf"""
    book = catalog.create_book(book_data)
    lend(book, clock)

    update = BookUpdate(**book_data.model_dump(exclude={'quantity'}), quantity=5)
    updated = catalog.update_book(book.id, update)

    assert updated.quantity == 5
    assert updated.available_quantity == 4


def test_update_quantity_below_borrowed_is_rejected(app, clock, book_data):
    """Test that quantity cannot drop under the copies currently lent"""
    book = catalog.create_book(book_data)
    lend(book, clock, 'S1')
    lend(book, clock, 'S2')

    update = BookUpdate(**book_data.model_dump(exclude={'quantity'}), quantity=1)
    with pytest.raises(ValidationError, match='currently borrowed'):
        catalog.update_book(book.id, update)

    assert book.quantity == 3
    assert book.available_quantity == 1


def test_delete_book_with_open_loan_fails(app, clock, book_data):
    """Test that a book on loan cannot be removed"""
    book = catalog.create_book(book_data)
    lend(book, clock)

    with pytest.raises(InvalidState, match='active borrowings'):
        catalog.delete_book(book.id)
    assert book.is_active


def test_delete_book_soft_deletes(app, clock, book_data):
    """Test that deleting hides the book without removing its history"""
    book = catalog.create_book(book_data)
    txn = lend(book, clock)
    circulation.return_book(txn.id, clock(), '5.00')

    catalog.delete_book(book.id)

    assert Book.query.count() == 1
    assert catalog.list_books() == []
    with pytest.raises(NotFound):
        catalog.get_book(book.id)


def test_available_books_and_stats(make_book):
    """Test shelf listings and catalog counters"""
    make_book(quantity=2, available=0, title='Out')
    make_book(quantity=3, available=1, title='In')

    assert [b.title for b in catalog.available_books()] == ['In']
    assert catalog.book_stats() == {
        'total_books': 2,
        'total_copies': 5,
        'available_copies': 1,
        'borrowed_copies': 4,
    }


def test_search_books_by_author_and_isbn(app, book_data):
    """Test that search matches author and ISBN fragments"""
    catalog.create_book(book_data)

    assert len(catalog.search_books('rizal')) == 1
    assert len(catalog.search_books('303969')) == 1
    assert catalog.search_books('tolkien') == []


def test_deleted_book_isbn_can_be_added_again(app, book_data):
    """Test that a soft-deleted book does not block its ISBN"""
    old = catalog.create_book(book_data)
    catalog.delete_book(old.id)

    new = catalog.create_book(book_data)

    assert new.id != old.id
    assert new.isbn == old.isbn
    assert [b.id for b in catalog.list_books()] == [new.id]


def test_update_to_deleted_book_isbn_is_allowed(app, book_data):
    """Test that only active books count as ISBN duplicates on edit"""
    old = catalog.create_book(book_data)
    catalog.delete_book(old.id)
    other = catalog.create_book(book_data.model_copy(update={'isbn': '0-8044-2957-X'}))

    update = BookUpdate(**book_data.model_dump(exclude={'quantity'}), quantity=3)
    updated = catalog.update_book(other.id, update)

    assert updated.isbn == '9780143039692'


def test_search_treats_wildcards_literally(make_book):
    """Test that % and _ in a search term match only themselves"""
    make_book(title='100% Cotton')
    make_book(title='1000 Cottages')
    make_book(title='snake_case')
    make_book(title='snakeXcase')

    assert [b.title for b in catalog.search_books('100%')] == ['100% Cotton']
    assert [b.title for b in catalog.search_books('snake_')] == ['snake_case']


def test_published_year_limit_follows_current_date(monkeypatch):
    """Test that the latest allowed year is read at validation time"""
    class FrozenDate(date):
        @classmethod
        def today(cls):
            return cls(2030, 6, 1)

    monkeypatch.setattr(schemas, 'date', FrozenDate)
    fields = {'title': 'T', 'author': 'A', 'isbn': '9780143039692'}

    assert BookCreate(**fields, published_year=2031).published_year == 2031
    with pytest.raises(PydanticValidationError):
        BookCreate(**fields, published_year=2032)
