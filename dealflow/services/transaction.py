"""Unit-of-work wrapper for pipeline commands.

Services flush as they go; the decorated command commits once at the
end. Any exception rolls the whole command back, so a deal mutation and
its activity row are committed together or not at all.
"""

import logging
from functools import wraps

from sqlalchemy.orm.exc import StaleDataError

from dealflow.extensions import db
from dealflow.services.errors import ConflictError

logger = logging.getLogger(__name__)


def transactional(f):
    """Commit on success, roll back on any error."""

    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            result = f(*args, **kwargs)
            db.session.commit()
        except StaleDataError as e:
            db.session.rollback()
            logger.warning(f"{f.__name__} rejected by row version check: {e}")
            raise ConflictError(
                "The deal was modified by another request. Reload and retry."
            ) from e
        except Exception:
            db.session.rollback()
            raise
        return result

    return decorated
