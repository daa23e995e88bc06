import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException
from ...extensions import db
from ...errors import MarketError
from . import errors_bp

log = logging.getLogger(__name__)


def _body(error, reason, message, details=None):
    return {"error": error, "reason": reason, "message": message, "details": details or {}}


# Billing / domain errors carry their own status and reason
@errors_bp.app_errorhandler(MarketError)
def err_market(e: MarketError):
    if e.status_code >= 500:
        log.warning("%s on %s %s: %s", e.code, request.method, request.path, e.message)
    return jsonify(e.to_dict()), e.status_code

# 401 – Unauthorized (no identity header)
@errors_bp.app_errorhandler(401)
def err_401(e):
    return jsonify(_body("UNAUTHORIZED", "forbidden", "Authentication required")), 401

# 404 – Not Found
@errors_bp.app_errorhandler(404)
def err_404(e):
    return jsonify(_body("NOT_FOUND", "not_found", "Not found", {"path": request.path})), 404

# 405 – Method Not Allowed
@errors_bp.app_errorhandler(405)
def err_405(e):
    return jsonify(_body("METHOD_NOT_ALLOWED", "invalid_input", e.description)), 405

# 500 – Internal Server Error
@errors_bp.app_errorhandler(500)
def err_500(e):
    # leave no half-written transaction on the scoped session
    db.session.rollback()
    return jsonify(_body("INTERNAL_ERROR", "internal", "Internal server error")), 500

# Fallback for any other HTTPException
@errors_bp.app_errorhandler(HTTPException)
def err_http(e: HTTPException):
    return jsonify(_body(e.name.upper().replace(" ", "_"), "invalid_input", e.description)), e.code

# Last-resort: any other Exception
@errors_bp.app_errorhandler(Exception)
def err_unexpected(e):
    db.session.rollback()
    log.exception("Unhandled error on %s %s", request.method, request.path)
    # Don't leak internals
    return jsonify(_body("INTERNAL_ERROR", "internal", "Internal server error")), 500
