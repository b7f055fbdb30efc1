from flask import jsonify
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException

from sosdispatch import db


class DispatchError(Exception):
    """Base class for errors the API reports back to the caller."""

    status_code = 500

    def __init__(self, message, **payload):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self):
        body = {'success': False, 'message': self.message}
        body.update(self.payload)
        return body


class ValidationError(DispatchError):
    status_code = 400


class ForbiddenError(DispatchError):
    status_code = 403


class NotFoundError(DispatchError):
    status_code = 404


class ConflictError(DispatchError):
    """Raised when the stored state moved on since the caller last read it.

    For hospital claims ``assigned_to`` names the hospital that won; the
    caller must refresh before doing anything else with the emergency.
    """

    status_code = 409

    def __init__(self, message, assigned_to=None, **payload):
        if assigned_to is not None:
            payload['assigned_to'] = assigned_to
        super().__init__(message, **payload)
        self.assigned_to = assigned_to


class UpstreamUnavailableError(DispatchError):
    status_code = 503


def register_error_handlers(app):
    @app.errorhandler(DispatchError)
    def handle_dispatch_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(OperationalError)
    def handle_store_unavailable(e):
        db.session.rollback()
        app.logger.error(f'Data store unavailable: {str(e)}', exc_info=True)
        error = UpstreamUnavailableError('Service temporarily unavailable. Please try again.')
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return jsonify({'success': False, 'message': e.description}), e.code
        db.session.rollback()
        app.logger.error(f'Unexpected error: {str(e)}', exc_info=True)
        return jsonify({'success': False, 'message': 'An unexpected error occurred. Please try again.'}), 500
