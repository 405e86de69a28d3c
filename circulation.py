"""Borrow/return lifecycle of library transactions.

Each lifecycle function runs as one database transaction: the transaction row
and the book's availability counter change together or not at all. Rows that
are about to change are read ``FOR UPDATE`` so concurrent requests for the
last copy serialize on the book row.

Status is always derived from the due date when a transaction is touched:
``overdue`` if ``due_date < today``, ``active`` otherwise, ``returned`` once
closed. Functions that need the current date take ``today`` explicitly; the
routes supply it from the configured clock.
"""

import logging
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, or_

from audit import record_activity
from errors import CapacityExhausted, CirculationError, InvalidState, NotFound, ValidationError
from fines import calculate_fine, days_overdue
from models import (
    db, Book, Fine, Transaction,
    STATUS_ACTIVE, STATUS_OVERDUE, STATUS_RETURNED,
    FINE_UNPAID, FINE_PAID,
)

logger = logging.getLogger(__name__)


@contextmanager
def atomic(operation):
    """Commit the session on success, roll it back on any error."""
    try:
        yield db.session
        db.session.commit()
    except CirculationError as e:
        db.session.rollback()
        logger.warning('%s rejected: %s', operation, e.message)
        raise
    except Exception:
        db.session.rollback()
        logger.error('%s failed, rolled back', operation, exc_info=True)
        raise


def status_for(due_date, today):
    return STATUS_OVERDUE if due_date < today else STATUS_ACTIVE


LIKE_ESCAPE = '\\'


def contains_pattern(term):
    """LIKE pattern matching ``term`` anywhere, with its own wildcards escaped."""
    escaped = (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace('%', LIKE_ESCAPE + '%')
        .replace('_', LIKE_ESCAPE + '_')
    )
    return f'%{escaped}%'


def transaction_number_for(transaction_id):
    return f'T{transaction_id:03d}'


def _lock_book(book_id):
    book = db.session.get(Book, book_id, with_for_update=True)
    if book is None:
        raise NotFound('Book not found')
    return book


def _lock_transaction(transaction_id):
    txn = db.session.get(Transaction, transaction_id, with_for_update=True)
    if txn is None:
        raise NotFound('Transaction not found')
    return txn


# --- Lifecycle ---

def borrow_book(request, loan_days=14, actor_id=None):
    """Lend one copy of ``request.book_id`` and open a transaction for it.

    Without an explicit due date the loan runs ``loan_days`` from the borrow date.
    """
    due_date = request.due_date or request.borrowed_date + timedelta(days=loan_days)
    with atomic('Borrow'):
        book = _lock_book(request.book_id)
        if not book.is_active or book.available_quantity <= 0:
            raise CapacityExhausted('Book is not available for borrowing')

        txn = Transaction(
            book_id=book.id,
            student_name=request.student_name,
            student_id_number=request.student_id_number,
            course=request.course,
            year_level=request.year_level,
            address=request.address,
            contact_number=request.contact_number,
            email=request.email,
            borrowed_date=request.borrowed_date,
            due_date=due_date,
            status=STATUS_ACTIVE,
            fine_amount=Decimal('0.00'),
            notes=request.notes,
        )
        db.session.add(txn)
        db.session.flush()
        txn.transaction_number = transaction_number_for(txn.id)

        book.available_quantity -= 1

    logger.info('Book %s borrowed by %s (%s) as %s',
                book.id, txn.student_name, txn.student_id_number, txn.transaction_number)
    record_activity(actor_id, 'BORROW_BOOK', 'transactions', txn.id,
                    f'Book borrowed by: {txn.student_name} ({txn.student_id_number})')
    return txn


def return_book(transaction_id, today, daily_rate, actor_id=None):
    """Close a transaction, release its copy and charge any overdue fine."""
    with atomic('Return'):
        txn = _lock_transaction(transaction_id)
        if txn.status == STATUS_RETURNED:
            raise InvalidState('Book already returned')

        book = _lock_book(txn.book_id)
        if book.available_quantity >= book.quantity:
            logger.error('Book %s already has all %s copies on the shelf; cannot return %s',
                         book.id, book.quantity, txn.transaction_number)
            raise InvalidState('Availability count is inconsistent; return not recorded')

        txn.status = STATUS_RETURNED
        txn.return_date = today
        book.available_quantity += 1

        if txn.due_date < today:
            late_days = days_overdue(txn.due_date, today)
            amount = calculate_fine(txn.due_date, today, daily_rate)
            txn.fine_amount = amount
            db.session.add(Fine(
                transaction_id=txn.id,
                student_id_number=txn.student_id_number,
                fine_amount=amount,
                days_overdue=late_days,
                payment_status=FINE_UNPAID,
            ))
            logger.info('Fine of %s charged on %s (%s days late)',
                        amount, txn.transaction_number, late_days)

    logger.info('Transaction %s returned', txn.transaction_number)
    record_activity(actor_id, 'RETURN_BOOK', 'transactions', txn.id,
                    f'Book returned by: {txn.student_name}')
    return txn


def undo_return(transaction_id, today, actor_id=None):
    """Reopen a transaction that was marked returned by mistake."""
    with atomic('Undo return'):
        txn = _lock_transaction(transaction_id)
        if txn.status != STATUS_RETURNED:
            raise InvalidState('Book is not in returned status')
        if txn.return_date is None:
            raise InvalidState('Cannot undo return - no return date found')

        for fine in txn.fines:
            if fine.payment_status != FINE_UNPAID:
                raise InvalidState(f'Cannot undo return - fine already {fine.payment_status}')

        book = _lock_book(txn.book_id)
        if not book.is_active:
            raise InvalidState('Cannot undo return - book has been deleted')
        if book.available_quantity <= 0:
            logger.error('Book %s has no copies on the shelf; undoing return of %s would go negative',
                         book.id, txn.transaction_number)
            raise InvalidState('Availability count is inconsistent; return cannot be undone')

        for fine in list(txn.fines):
            db.session.delete(fine)
        txn.fine_amount = Decimal('0.00')
        txn.return_date = None
        txn.status = status_for(txn.due_date, today)
        book.available_quantity -= 1

    logger.info('Return of %s undone, now %s', txn.transaction_number, txn.status)
    record_activity(actor_id, 'UNDO_RETURN', 'transactions', txn.id,
                    f'Return undone for: {txn.student_name}')
    return txn


def extend_due_date(transaction_id, today, new_due_date=None, days=None, max_days=365, actor_id=None):
    """Move the due date of an open transaction.

    Either ``new_due_date`` or ``days`` (added to the current due date) must be
    given. Status is recomputed against ``today``.
    """
    if (new_due_date is None) == (days is None):
        raise ValidationError('Provide either a number of days or a new due date')
    if days is not None and not 1 <= days <= max_days:
        raise ValidationError(f'Days must be a number between 1 and {max_days}')

    with atomic('Extend due date'):
        txn = _lock_transaction(transaction_id)
        if txn.status == STATUS_RETURNED:
            raise InvalidState('Cannot extend due date for returned book')

        if new_due_date is None:
            new_due_date = txn.due_date + timedelta(days=days)
        if new_due_date < txn.borrowed_date:
            raise ValidationError('Due date must not be before borrow date')

        txn.due_date = new_due_date
        txn.status = status_for(new_due_date, today)

    logger.info('Due date of %s moved to %s, now %s',
                txn.transaction_number, new_due_date, txn.status)
    record_activity(actor_id, 'EXTEND_DUE_DATE', 'transactions', txn.id,
                    f'Due date extended to {new_due_date.isoformat()} for {txn.student_name}')
    return txn


def update_overdue_status(today):
    """Flag every open, past-due ``active`` transaction as ``overdue``.

    Returns the number of transactions changed.
    """
    with atomic('Overdue sweep'):
        count = Transaction.query.filter(
            Transaction.status == STATUS_ACTIVE,
            Transaction.return_date.is_(None),
            Transaction.due_date < today,
        ).update({Transaction.status: STATUS_OVERDUE}, synchronize_session=False)

    logger.info('Overdue sweep for %s updated %s transactions', today, count)
    return count


# --- Fines ---

def settle_fine(fine_id, today, payment_status, payment_method=None, notes=None, actor_id=None):
    with atomic('Settle fine'):
        fine = db.session.get(Fine, fine_id, with_for_update=True)
        if fine is None:
            raise NotFound('Fine not found')
        if fine.payment_status != FINE_UNPAID:
            raise InvalidState(f'Fine is already {fine.payment_status}')

        fine.payment_status = payment_status
        fine.payment_date = today
        fine.payment_method = payment_method if payment_status == FINE_PAID else None
        if notes:
            fine.notes = notes

    record_activity(actor_id, 'SETTLE_FINE', 'fines', fine.id,
                    f'Fine of {fine.fine_amount} marked {payment_status}')
    return fine


def list_fines(payment_status=None):
    query = Fine.query
    if payment_status:
        query = query.filter(Fine.payment_status == payment_status)
    return query.order_by(Fine.created_at.desc(), Fine.id.desc()).all()


# --- Ledger queries ---

def describe(txn, today, daily_rate):
    """Serialize a transaction with its fine as of ``today``."""
    data = txn.to_dict()
    if txn.status == STATUS_RETURNED:
        data['days_overdue'] = days_overdue(txn.due_date, txn.return_date)
        data['accrued_fine'] = data['fine_amount']
    else:
        data['days_overdue'] = days_overdue(txn.due_date, today)
        data['accrued_fine'] = str(calculate_fine(txn.due_date, today, daily_rate))
    return data


def get_transaction(transaction_id):
    txn = db.session.get(Transaction, transaction_id)
    if txn is None:
        raise NotFound('Transaction not found')
    return txn


def list_transactions():
    return Transaction.query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).all()


def search_transactions(term):
    pattern = contains_pattern(term)
    return (
        Transaction.query
        .outerjoin(Book, Transaction.book_id == Book.id)
        .filter(or_(
            Book.title.ilike(pattern, escape=LIKE_ESCAPE),
            Transaction.student_name.ilike(pattern, escape=LIKE_ESCAPE),
            Transaction.student_id_number.ilike(pattern, escape=LIKE_ESCAPE),
            Transaction.transaction_number.ilike(pattern, escape=LIKE_ESCAPE),
        ))
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .all()
    )


def transaction_stats():
    counts = dict(
        db.session.query(Transaction.status, func.count(Transaction.id))
        .group_by(Transaction.status)
        .all()
    )
    return {
        'total_transactions': sum(counts.values()),
        'active_count': counts.get(STATUS_ACTIVE, 0),
        'overdue_count': counts.get(STATUS_OVERDUE, 0),
        'returned_count': counts.get(STATUS_RETURNED, 0),
    }


def unique_borrowers():
    total = func.count(Transaction.id).label('total_borrows')
    rows = (
        db.session.query(
            Transaction.student_id_number,
            Transaction.student_name,
            Transaction.course,
            Transaction.year_level,
            total,
        )
        .group_by(
            Transaction.student_id_number,
            Transaction.student_name,
            Transaction.course,
            Transaction.year_level,
        )
        .order_by(total.desc())
        .all()
    )
    return [
        {
            'student_id_number': row.student_id_number,
            'student_name': row.student_name,
            'course': row.course,
            'year_level': row.year_level,
            'total_borrows': row.total_borrows,
        }
        for row in rows
    ]
