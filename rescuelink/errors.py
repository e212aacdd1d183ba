"""API error types and the JSON handlers that render them."""
import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from .extensions import db

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """An error whose message is safe to show to the user."""

    status_code = 400

    def __init__(self, message, status_code=None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self):
        body = {"success": False, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(ApiError):
    status_code = 404


class Forbidden(ApiError):
    status_code = 403


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({"success": False, "error": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        logger.exception("Unhandled error: %s", error)
        return jsonify({"success": False, "error": str(error)}), 500
