import logging

from sqlalchemy.exc import SQLAlchemyError

from errors import AuditFailure
from models import db, ActivityLog

logger = logging.getLogger(__name__)


def _write_entry(entry):
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise AuditFailure(f'could not store activity entry: {e}') from e


def record_activity(actor_id, action_type, table_name, record_id, description):
    """Append an entry to the activity log.

    Called after the operation it describes has committed. A failure is
    logged and swallowed; the caller's outcome never depends on it.
    """
    entry = ActivityLog(
        user_id=actor_id,
        action_type=action_type,
        table_name=table_name,
        record_id=record_id,
        description=description,
    )
    try:
        _write_entry(entry)
    except AuditFailure as e:
        logger.warning('Activity logging failed for %s %s:%s: %s',
                       action_type, table_name, record_id, e.message)
        return False
    return True
