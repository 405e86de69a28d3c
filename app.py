import logging
import os
import secrets

import click
from flask import Flask, Blueprint, current_app, jsonify, request
from flask.cli import with_appcontext
from flask_login import LoginManager, current_user
from werkzeug.exceptions import HTTPException

import catalog
import circulation
from config import Config
from errors import CirculationError, ValidationError
from models import db, User
from schemas import BookCreate, BookUpdate, BorrowRequest, ExtendRequest, SettleFineRequest, parse

logger = logging.getLogger(__name__)

login_manager = LoginManager()
api = Blueprint('api', __name__, url_prefix='/api')

MAX_SEARCH_LENGTH = 200


# --- Flask-Login loaders: the actor recorded in the activity log ---
@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get('Authorization', '')
    if not header.startswith('Token '):
        return None
    token = header[len('Token '):].strip()
    if not token:
        return None
    return User.query.filter_by(api_token=token, is_enabled=True).first()


def actor_id():
    return current_user.id if current_user.is_authenticated else None


def today():
    return current_app.config['CLOCK']()


def daily_rate():
    return current_app.config['FINE_DAILY_RATE']


def ok(data=None, status=200, **extra):
    body = {'success': True}
    if data is not None:
        body['data'] = data
    body.update(extra)
    return jsonify(body), status


def search_term():
    term = (request.args.get('q') or '').strip()
    if not term:
        raise ValidationError('Search query is required')
    if len(term) > MAX_SEARCH_LENGTH:
        raise ValidationError(f'Search query must not exceed {MAX_SEARCH_LENGTH} characters')
    return term


def describe_all(transactions):
    as_of, rate = today(), daily_rate()
    return [circulation.describe(txn, as_of, rate) for txn in transactions]


# --- Health ---

@api.route('/health')
def health():
    return ok(status_text='ok', date=today().isoformat())


# --- Book Routes ---

@api.route('/books', methods=['GET'])
def list_books():
    books = [book.to_dict() for book in catalog.list_books()]
    return ok(books, count=len(books))


@api.route('/books/search', methods=['GET'])
def search_books():
    books = [book.to_dict() for book in catalog.search_books(search_term())]
    return ok(books, count=len(books))


@api.route('/books/stats', methods=['GET'])
def book_stats():
    return ok(catalog.book_stats())


@api.route('/books/<int:book_id>', methods=['GET'])
def get_book(book_id):
    return ok(catalog.get_book(book_id).to_dict())


@api.route('/books', methods=['POST'])
def add_book():
    data = parse(BookCreate, request.get_json(silent=True))
    book = catalog.create_book(data, actor_id=actor_id())
    return ok(book.to_dict(), status=201, message='Book added successfully')


@api.route('/books/<int:book_id>', methods=['PUT'])
def update_book(book_id):
    data = parse(BookUpdate, request.get_json(silent=True))
    book = catalog.update_book(book_id, data, actor_id=actor_id())
    return ok(book.to_dict(), message='Book updated successfully')


@api.route('/books/<int:book_id>', methods=['DELETE'])
def delete_book(book_id):
    catalog.delete_book(book_id, actor_id=actor_id())
    return ok(message='Book deleted successfully')


# --- Transaction Routes ---

@api.route('/transactions', methods=['GET'])
def list_transactions():
    data = describe_all(circulation.list_transactions())
    return ok(data, count=len(data))


@api.route('/transactions/stats', methods=['GET'])
def transaction_stats():
    return ok(circulation.transaction_stats())


@api.route('/transactions/search', methods=['GET'])
def search_transactions():
    data = describe_all(circulation.search_transactions(search_term()))
    return ok(data, count=len(data))


@api.route('/transactions/helpers/available-books', methods=['GET'])
def available_books():
    books = [book.to_dict() for book in catalog.available_books()]
    return ok(books, count=len(books))


@api.route('/transactions/helpers/borrowers', methods=['GET'])
def borrowers():
    rows = circulation.unique_borrowers()
    return ok(rows, count=len(rows))


@api.route('/transactions/<int:transaction_id>', methods=['GET'])
def get_transaction(transaction_id):
    txn = circulation.get_transaction(transaction_id)
    return ok(circulation.describe(txn, today(), daily_rate()))


@api.route('/transactions', methods=['POST'])
def borrow_book():
    borrow = parse(BorrowRequest, request.get_json(silent=True))
    txn = circulation.borrow_book(borrow, loan_days=current_app.config['DEFAULT_LOAN_DAYS'],
                                  actor_id=actor_id())
    return ok(circulation.describe(txn, today(), daily_rate()), status=201,
              message='Book borrowed successfully')


@api.route('/transactions/update-overdue', methods=['POST'])
def update_overdue():
    count = circulation.update_overdue_status(today())
    return ok(message=f'Updated {count} transactions to overdue', count=count)


@api.route('/transactions/<int:transaction_id>/return', methods=['PUT'])
def return_book(transaction_id):
    txn = circulation.return_book(transaction_id, today(), daily_rate(), actor_id=actor_id())
    return ok(circulation.describe(txn, today(), daily_rate()), message='Book returned successfully')


@api.route('/transactions/<int:transaction_id>/undo-return', methods=['PUT'])
def undo_return(transaction_id):
    txn = circulation.undo_return(transaction_id, today(), actor_id=actor_id())
    return ok(circulation.describe(txn, today(), daily_rate()), message='Return undone successfully')


@api.route('/transactions/<int:transaction_id>/extend', methods=['PUT'])
def extend_due_date(transaction_id):
    extend = parse(ExtendRequest, request.get_json(silent=True))
    txn = circulation.extend_due_date(transaction_id, today(), new_due_date=extend.due_date,
                                      days=extend.days,
                                      max_days=current_app.config['MAX_EXTENSION_DAYS'],
                                      actor_id=actor_id())
    if extend.days is not None:
        message = f'Due date extended by {extend.days} days'
    else:
        message = f'Due date set to {txn.due_date.isoformat()}'
    return ok(circulation.describe(txn, today(), daily_rate()), message=message)


# --- Fine Routes ---

@api.route('/fines', methods=['GET'])
def list_fines():
    status = request.args.get('status')
    if status and status not in ('unpaid', 'paid', 'waived'):
        raise ValidationError('Status must be one of unpaid, paid, waived')
    fines = [fine.to_dict() for fine in circulation.list_fines(status)]
    return ok(fines, count=len(fines))


@api.route('/fines/<int:fine_id>/settle', methods=['PUT'])
def settle_fine(fine_id):
    settle = parse(SettleFineRequest, request.get_json(silent=True))
    fine = circulation.settle_fine(fine_id, today(), settle.payment_status,
                                   payment_method=settle.payment_method, notes=settle.notes,
                                   actor_id=actor_id())
    return ok(fine.to_dict(), message=f'Fine marked {fine.payment_status}')


# --- Error Handlers ---

def handle_circulation_error(e):
    return jsonify(e.to_dict()), e.status_code


def handle_http_error(e):
    if e.code and e.code >= 500:
        logger.error('HTTP %s on %s %s', e.code, request.method, request.path)
    return jsonify({
        'success': False,
        'message': e.description,
        'code': e.name.upper().replace(' ', '_'),
    }), e.code


def handle_unexpected_error(e):
    logger.exception('Unhandled error on %s %s', request.method, request.path)
    return jsonify({
        'success': False,
        'message': 'An internal server error occurred',
        'code': 'INTERNAL_ERROR',
    }), 500


# --- CLI ---

@click.command('sweep-overdue')
@with_appcontext
def sweep_overdue_command():
    """Flag past-due active transactions as overdue."""
    count = circulation.update_overdue_status(today())
    click.echo(f'Updated {count} transactions to overdue')


@click.command('create-librarian')
@click.argument('username')
@click.argument('full_name')
@with_appcontext
def create_librarian_command(username, full_name):
    """Register a librarian and print their API token."""
    if User.query.filter_by(username=username).first():
        raise click.ClickException(f'Username {username} already exists')
    token = secrets.token_hex(32)
    db.session.add(User(username=username, full_name=full_name, api_token=token))
    db.session.commit()
    click.echo(token)


# --- Application Factory ---

def create_app(config_object=Config, overrides=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    db.init_app(app)
    login_manager.init_app(app)

    app.register_blueprint(api)
    app.register_error_handler(CirculationError, handle_circulation_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)

    app.cli.add_command(sweep_overdue_command)
    app.cli.add_command(create_librarian_command)

    # Tables are created once at startup
    with app.app_context():
        db.create_all()

    return app


if __name__ == '__main__':
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host='0.0.0.0', port=port)
