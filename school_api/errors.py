from flask import jsonify, current_app
from werkzeug.exceptions import HTTPException
from marshmallow import ValidationError
from sqlalchemy.exc import IntegrityError
import logging

from models import storage
from utils.audit import AuditEventType, AuditSeverity, get_audit_logger
from utils.exceptions import AuthError, RateLimitExceeded


def error_response(error: str, message: str, status: int, details: dict | None = None):
    payload = {"error": error, "message": message, "status": status}
    if details:
        payload["details"] = details
    return jsonify(payload), status


def _expose_details() -> bool:
    return bool(current_app and (current_app.debug or current_app.config.get("EXPOSE_ERROR_DETAILS")))


def register_error_handlers(app):
    # Auth core taxonomy: credential/token errors carry fixed messages already
    @app.errorhandler(AuthError)
    def handle_auth_error(err: AuthError):
        response, status = error_response(err.code, err.message, err.status, details=err.details)
        if isinstance(err, RateLimitExceeded) and err.retry_after:
            response.headers["Retry-After"] = str(err.retry_after)
        if err.status == 401:
            response.headers["WWW-Authenticate"] = "Bearer"
        return response, status

    # 400 Bad Request (generic)
    @app.errorhandler(400)
    def bad_request(e):
        message = getattr(e, "description", "Bad request")
        return error_response("BAD_REQUEST", message, 400)

    # 404 Not Found
    @app.errorhandler(404)
    def not_found(e):
        return error_response("NOT_FOUND", "Resource not found", 404)

    # 405 Method Not Allowed
    @app.errorhandler(405)
    def method_not_allowed(e):
        return error_response("METHOD_NOT_ALLOWED", "Method not allowed", 405)

    # Marshmallow validation errors map to 422
    @app.errorhandler(ValidationError)
    def handle_validation_error(err: ValidationError):
        # err.messages contains field-level details
        return error_response("VALIDATION_ERROR", "Invalid input", 422, details=err.messages)

    # Integrity errors (unique constraints, FK violations, check constraints)
    @app.errorhandler(IntegrityError)
    def handle_integrity_error(err: IntegrityError):
        storage.rollback()
        message = str(getattr(err, "orig", err))
        lower_msg = message.lower()
        details = {"db_error": message} if _expose_details() else None
        if "unique constraint" in lower_msg or "unique violation" in lower_msg:
            return error_response("CONFLICT", "Unique constraint violated.", 409, details=details)
        if "foreign key constraint" in lower_msg or "foreign key mismatch" in lower_msg:
            return error_response("BAD_REQUEST", "Foreign key constraint failed.", 400, details=details)
        return error_response("BAD_REQUEST", "Integrity error.", 400, details=details)

    # Werkzeug HTTPExceptions map to their status codes
    @app.errorhandler(HTTPException)
    def handle_http_exception(err: HTTPException):
        code = (err.name or "Bad Request").upper().replace(" ", "_")
        return error_response(code, err.description, err.code or 400)

    # 500 Internal Error (catch-all)
    @app.errorhandler(Exception)
    def internal_error(err: Exception):
        logging.exception("Unhandled exception", exc_info=err)
        storage.rollback()
        get_audit_logger().from_request(
            AuditEventType.SUSPICIOUS_ACTIVITY,
            AuditSeverity.CRITICAL,
            success=False,
            details={"status": 500, "error_type": err.__class__.__name__},
            error_message="Unhandled exception",
        )
        # Outside production include exception details to speed up debugging
        details = None
        if _expose_details():
            details = {"type": err.__class__.__name__, "message": str(err)}
        return error_response("INTERNAL_ERROR", "An unexpected error occurred", 500, details=details)
