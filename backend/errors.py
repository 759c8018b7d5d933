from typing import Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    status_code = 500
    default_message = "Internal server error."

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        self.message = message or self.default_message
        self.code = code
        super().__init__(self.message)

    def to_dict(self):
        payload = {"message": self.message}
        if self.code:
            payload["code"] = self.code
        return payload


class BadRequest(ApiError):
    status_code = 400
    default_message = "The request could not be processed."


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Authorization required."

    MISSING_CREDENTIALS = "missing_credentials"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    INVALID_CREDENTIALS = "invalid_credentials"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Access denied."


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found."


class Conflict(ApiError):
    status_code = 409
    default_message = "The resource already exists."


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception("Unhandled error: %s", error)
        return jsonify({"message": ApiError.default_message}), 500
