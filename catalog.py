import logging
import re

from sqlalchemy import func, or_

from audit import record_activity
from circulation import LIKE_ESCAPE, atomic, contains_pattern
from errors import InvalidState, NotFound, ValidationError
from models import db, Book, Transaction, OPEN_STATUSES

logger = logging.getLogger(__name__)

_NOT_ISBN_CHARS = re.compile(r'[^0-9X]')


def normalize_isbn(isbn):
    """Upper-case, drop everything but digits and ``X``, cap at 13 chars."""
    if not isbn:
        return None
    normalized = _NOT_ISBN_CHARS.sub('', isbn.strip().upper())[:13]
    return normalized or None


def _require_isbn(isbn, exclude_book_id=None):
    """Normalized ISBN, refused if another active book already uses it."""
    normalized = normalize_isbn(isbn)
    if not normalized:
        raise ValidationError('Invalid ISBN format')
    query = Book.query.filter(Book.isbn == normalized, Book.is_active.is_(True))
    if exclude_book_id is not None:
        query = query.filter(Book.id != exclude_book_id)
    if query.first():
        raise ValidationError('A book with this ISBN already exists')
    return normalized


def get_book(book_id):
    book = db.session.get(Book, book_id)
    if book is None or not book.is_active:
        raise NotFound('Book not found')
    return book


def list_books():
    return Book.query.filter_by(is_active=True).order_by(Book.created_at.desc(), Book.id.desc()).all()


def available_books():
    return (
        Book.query
        .filter(Book.is_active.is_(True), Book.available_quantity > 0)
        .order_by(Book.title)
        .all()
    )


def search_books(term):
    pattern = contains_pattern(term)
    return (
        Book.query
        .filter(Book.is_active.is_(True))
        .filter(or_(
            Book.title.ilike(pattern, escape=LIKE_ESCAPE),
            Book.author.ilike(pattern, escape=LIKE_ESCAPE),
            Book.isbn.ilike(pattern, escape=LIKE_ESCAPE),
            Book.category.ilike(pattern, escape=LIKE_ESCAPE),
        ))
        .order_by(Book.created_at.desc(), Book.id.desc())
        .all()
    )


def book_stats():
    total_books, total_copies, available_copies = (
        db.session.query(
            func.count(Book.id),
            func.coalesce(func.sum(Book.quantity), 0),
            func.coalesce(func.sum(Book.available_quantity), 0),
        )
        .filter(Book.is_active.is_(True))
        .one()
    )
    return {
        'total_books': total_books,
        'total_copies': int(total_copies),
        'available_copies': int(available_copies),
        'borrowed_copies': int(total_copies) - int(available_copies),
    }


def create_book(data, actor_id=None):
    with atomic('Create book'):
        isbn = _require_isbn(data.isbn)
        book = Book(
            title=data.title,
            author=data.author,
            isbn=isbn,
            quantity=data.quantity,
            available_quantity=data.quantity,
            category=data.category,
            publisher=data.publisher,
            published_year=data.published_year,
            description=data.description,
            location=data.location,
        )
        db.session.add(book)

    logger.info('Book %s added with ISBN %s', book.id, book.isbn)
    record_activity(actor_id, 'ADD_BOOK', 'books', book.id, f'Added book: {book.title}')
    return book


def update_book(book_id, data, actor_id=None):
    """Edit a book; a quantity change shifts the shelf count by the same amount."""
    with atomic('Update book'):
        book = db.session.get(Book, book_id, with_for_update=True)
        if book is None or not book.is_active:
            raise NotFound('Book not found')

        borrowed = book.borrowed_quantity
        if data.quantity < borrowed:
            raise ValidationError(
                f'Quantity cannot be less than the {borrowed} copies currently borrowed')

        book.isbn = _require_isbn(data.isbn, exclude_book_id=book.id)
        book.available_quantity = data.quantity - borrowed
        book.quantity = data.quantity
        book.title = data.title
        book.author = data.author
        book.category = data.category
        book.publisher = data.publisher
        book.published_year = data.published_year
        book.description = data.description
        book.location = data.location

    record_activity(actor_id, 'UPDATE_BOOK', 'books', book.id, f'Updated book: {book.title}')
    return book


def delete_book(book_id, actor_id=None):
    """Soft delete a book that nobody currently has out."""
    with atomic('Delete book'):
        book = db.session.get(Book, book_id, with_for_update=True)
        if book is None or not book.is_active:
            raise NotFound('Book not found')

        open_loans = Transaction.query.filter(
            Transaction.book_id == book.id,
            Transaction.status.in_(OPEN_STATUSES),
        ).count()
        if open_loans:
            raise InvalidState('Cannot delete book with active borrowings')

        book.is_active = False

    logger.info('Book %s soft deleted', book.id)
    record_activity(actor_id, 'DELETE_BOOK', 'books', book.id, f'Deleted book: {book.title}')
    return book
