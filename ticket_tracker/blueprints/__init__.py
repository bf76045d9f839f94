"""
Ticket Tracker
Helpers shared by the API blueprints.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from ticket_tracker.core.exceptions import (
    ConflictError,
    NotFoundError,
    SyncBusyError,
    ValidationError,
)
from ticket_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 200
MAX_PAGE_SIZE = 1000

_ERROR_CODES = (
    (NotFoundError, E.NOT_FOUND),
    (ValidationError, E.VALIDATION_RULE),
    (SyncBusyError, E.SYNC_BUSY),
    (ConflictError, E.CONFLICT_STATE),
)


def _int_arg(name, default, minimum):
    try:
        return max(int(request.args.get(name, default)), minimum)
    except (TypeError, ValueError):
        return default


def paginate_query(query, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE):
    """``(items, total)`` for ?limit=&offset=; bad values fall back to defaults."""
    limit = min(_int_arg("limit", default_limit, 1), max_limit)
    offset = _int_arg("offset", 0, 0)
    return query.limit(limit).offset(offset).all(), query.count()


def register_error_handlers(bp):
    """Render domain exceptions raised under ``bp`` as JSON errors."""

    def _domain_handler(code):
        def handle(error):
            return api_error(code, str(error), details=error.details)
        return handle

    for exc_class, code in _ERROR_CODES:
        bp.register_error_handler(exc_class, _domain_handler(code))

    @bp.errorhandler(Exception)
    def _unexpected(error):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unhandled error in %s (%s)", request.endpoint, bp.name)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
