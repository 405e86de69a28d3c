from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime
from decimal import Decimal

db = SQLAlchemy()

# Transaction statuses
STATUS_ACTIVE = 'active'
STATUS_OVERDUE = 'overdue'
STATUS_RETURNED = 'returned'
OPEN_STATUSES = (STATUS_ACTIVE, STATUS_OVERDUE)

# Fine payment statuses
FINE_UNPAID = 'unpaid'
FINE_PAID = 'paid'
FINE_WAIVED = 'waived'


def _iso(value):
    return value.isoformat() if value is not None else None


# ----------------- User Model -----------------
class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False)
    full_name = db.Column(db.String(100), nullable=False)
    api_token = db.Column(db.String(64), unique=True, nullable=True, index=True)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    # Flask-Login asks this to decide whether a loaded user may act
    @property
    def is_active(self):
        return self.is_enabled

    def __repr__(self):
        return f'<User {self.username}>'


# ----------------- Book Model -----------------
class Book(db.Model):
    __tablename__ = 'books'
    __table_args__ = (
        db.CheckConstraint('available_quantity >= 0', name='ck_books_available_non_negative'),
        db.CheckConstraint('available_quantity <= quantity', name='ck_books_available_le_quantity'),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    author = db.Column(db.String(255), nullable=False)
    # unique among active books only, checked in catalog
    isbn = db.Column(db.String(13), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    available_quantity = db.Column(db.Integer, nullable=False, default=1)
    category = db.Column(db.String(100), nullable=True)
    publisher = db.Column(db.String(255), nullable=True)
    published_year = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)  # soft delete flag
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationship: A book can be involved in many transactions
    transactions = db.relationship('Transaction', back_populates='book', lazy=True)

    @property
    def borrowed_quantity(self):
        return self.quantity - self.available_quantity

    def to_dict(self):
        return {
            'book_id': self.id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'quantity': self.quantity,
            'available_quantity': self.available_quantity,
            'category': self.category,
            'publisher': self.publisher,
            'published_year': self.published_year,
            'description': self.description,
            'location': self.location,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Book {self.title} by {self.author}>'


# ----------------- Transaction Model -----------------
class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    transaction_number = db.Column(db.String(20), unique=True, nullable=True)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id'), nullable=False, index=True)

    # Borrower identity is embedded, there is no separate student table
    student_name = db.Column(db.String(150), nullable=False)
    student_id_number = db.Column(db.String(50), nullable=False, index=True)
    course = db.Column(db.String(100), nullable=True)
    year_level = db.Column(db.String(20), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    contact_number = db.Column(db.String(30), nullable=True)
    email = db.Column(db.String(120), nullable=True)

    borrowed_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    return_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_ACTIVE, index=True)
    fine_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    book = db.relationship('Book', back_populates='transactions')
    fines = db.relationship('Fine', back_populates='transaction', lazy=True,
                            cascade='all, delete-orphan')

    @property
    def is_returned(self):
        return self.status == STATUS_RETURNED

    def to_dict(self):
        return {
            'transaction_id': self.id,
            'transaction_number': self.transaction_number,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'book_author': self.book.author if self.book else None,
            'isbn': self.book.isbn if self.book else None,
            'student_name': self.student_name,
            'student_id_number': self.student_id_number,
            'course': self.course,
            'year_level': self.year_level,
            'address': self.address,
            'contact_number': self.contact_number,
            'email': self.email,
            'borrowed_date': _iso(self.borrowed_date),
            'due_date': _iso(self.due_date),
            'return_date': _iso(self.return_date),
            'status': self.status,
            'fine_amount': str(self.fine_amount if self.fine_amount is not None else Decimal('0.00')),
            'notes': self.notes,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Transaction {self.transaction_number or self.id} Book:{self.book_id} {self.status}>'


# ----------------- Fine Model -----------------
class Fine(db.Model):
    __tablename__ = 'fines'

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'), nullable=False, index=True)
    student_id_number = db.Column(db.String(50), nullable=False, index=True)
    fine_amount = db.Column(db.Numeric(10, 2), nullable=False)
    days_overdue = db.Column(db.Integer, nullable=False)
    payment_status = db.Column(db.String(10), nullable=False, default=FINE_UNPAID, index=True)
    payment_date = db.Column(db.Date, nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transaction = db.relationship('Transaction', back_populates='fines')

    def to_dict(self):
        return {
            'fine_id': self.id,
            'transaction_id': self.transaction_id,
            'student_id_number': self.student_id_number,
            'fine_amount': str(self.fine_amount),
            'days_overdue': self.days_overdue,
            'payment_status': self.payment_status,
            'payment_date': _iso(self.payment_date),
            'payment_method': self.payment_method,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Fine {self.id} Transaction:{self.transaction_id} {self.fine_amount} {self.payment_status}>'


# ----------------- Activity Log Model -----------------
class ActivityLog(db.Model):
    __tablename__ = 'activity_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    action_type = db.Column(db.String(50), nullable=False)
    table_name = db.Column(db.String(50), nullable=False)
    record_id = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<ActivityLog {self.action_type} {self.table_name}:{self.record_id}>'
