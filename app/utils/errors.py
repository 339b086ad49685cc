"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E, register_error_handlers

    return api_error(E.NOT_FOUND, "ChangeEvent not found")
    return api_error(E.VALIDATION_REQUIRED, "actor_id is required")

    register_error_handlers(change_bp)
"""

from __future__ import annotations

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from app.core.exceptions import (
    ConflictError,
    FatalError,
    NotFoundError,
    RestoreFailedError,
    TransientError,
    ValidationError,
)
from app.models import db

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Retry-eligible – HTTP 503
    TRANSIENT = "ERR_TRANSIENT"

    # Server – HTTP 500
    RESTORE_FAILED = "ERR_RESTORE_FAILED"
    SNAPSHOT_CORRUPTED = "ERR_SNAPSHOT_CORRUPTED"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.TRANSIENT: 503,
    E.RESTORE_FAILED: 500,
    E.SNAPSHOT_CORRUPTED: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Map the service exception hierarchy onto a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @bp.errorhandler(ValidationError)
    def _handle_validation(exc):
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(exc):
        return api_error(E.CONFLICT_STATE, str(exc))

    @bp.errorhandler(TransientError)
    def _handle_transient(exc):
        db.session.rollback()
        logger.warning("Transient failure in %s: %s", bp.name, exc)
        return api_error(E.TRANSIENT, str(exc))

    @bp.errorhandler(RestoreFailedError)
    def _handle_restore_failed(exc):
        return api_error(
            E.RESTORE_FAILED, str(exc),
            details={"version_id": exc.version_id, "fatal": exc.fatal},
        )

    @bp.errorhandler(FatalError)
    def _handle_fatal(exc):
        db.session.rollback()
        logger.critical("Fatal error in %s: %s", bp.name, exc)
        return api_error(E.SNAPSHOT_CORRUPTED, str(exc))

    @bp.errorhandler(Exception)
    def _handle_unexpected(exc):
        if isinstance(exc, HTTPException):
            return exc
        db.session.rollback()
        logger.exception("Unhandled error in %s", bp.name)
        return api_error(E.INTERNAL, "Internal server error")
