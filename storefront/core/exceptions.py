"""
Domain errors raised by the service layer.

Views turn them into JSON responses with `error_response`; the `message`
is what the end user sees.
"""
import logging
from functools import wraps

from django.db import DatabaseError
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    error = 'Request failed'
    default_message = 'Request failed'

    def __init__(self, message=None, status_code=None, **details):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class PermissionDeniedError(StorefrontError):
    status_code = status.HTTP_403_FORBIDDEN
    error = 'Permission denied'
    default_message = 'You do not have permission to perform this action'


class ValidationFailure(StorefrontError):
    error = 'Validation failed'
    default_message = 'Invalid request'


class NotFoundError(ValidationFailure):
    status_code = status.HTTP_404_NOT_FOUND
    error = 'Not found'
    default_message = 'Not found'


class InsufficientStockError(ValidationFailure):
    error = 'Insufficient stock'
    default_message = 'Not enough stock available'


class AuthenticationFailure(StorefrontError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = 'Authentication failed'
    default_message = 'Failed to sign in'


class RemoteFailure(StorefrontError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = 'Service unavailable'
    default_message = 'The request could not be completed'


def error_response(exc):
    """Build the JSON error payload for a StorefrontError"""
    payload = {'error': exc.error, 'message': exc.message}
    payload.update(exc.details)
    return Response(payload, status=exc.status_code)


def reports_remote_failure(message):
    """
    Decorator for service operations: a database error is logged and
    re-raised as RemoteFailure carrying a user-facing message.

    Usage:
        @reports_remote_failure('Failed to place order')
        def create_order(session):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except DatabaseError as e:
                logger.error(f"{func.__name__} failed: {str(e)}", exc_info=True)
                raise RemoteFailure(message) from e
        return wrapper
    return decorator
