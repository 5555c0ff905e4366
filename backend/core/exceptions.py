import logging

from django.db import IntegrityError, OperationalError, ProgrammingError
from django.http import Http404
from rest_framework import exceptions, status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class LedgerError(exceptions.APIException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Unexpected server error."
    default_code = "server_error"
    reason = "SERVER_ERROR"

    def __init__(self, detail=None, reason=None, code=None):
        super().__init__(detail=detail, code=code)
        if reason:
            self.reason = reason


class InvalidInput(LedgerError):
    """Malformed or out-of-range input. ``detail`` may be a field -> errors dict."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input."
    default_code = "invalid"
    reason = "VALIDATION"


class NotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."
    default_code = "not_found"
    reason = "NOT_FOUND"


class Conflict(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflicts with the current state."
    default_code = "conflict"
    reason = "CONFLICT"


class SchemaMismatch(LedgerError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Storage is not in the expected shape. Retry after migrations are applied."
    default_code = "schema_mismatch"
    reason = "SCHEMA_MISMATCH"


class ServerError(LedgerError):
    pass


_DRF_REASONS = {
    status.HTTP_400_BAD_REQUEST: "VALIDATION",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHENTICATED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_409_CONFLICT: "CONFLICT",
    status.HTTP_429_TOO_MANY_REQUESTS: "THROTTLED",
}


def _payload(reason, detail):
    return {"success": False, "reason": reason, "detail": detail}


def ledger_exception_handler(exc, context):
    """DRF exception handler: every failure gets a stable ``reason`` code."""
    view = context.get("view")
    request = context.get("request")
    path = getattr(request, "path", "")

    if isinstance(exc, IntegrityError):
        logger.warning("Integrity violation on %s: %s", path, exc)
        exc = Conflict("The operation conflicts with an existing record.")
    elif isinstance(exc, (ProgrammingError, OperationalError)):
        logger.warning("Schema mismatch on %s: %s", path, exc)
        exc = SchemaMismatch()

    response = exception_handler(exc, context)
    if response is None:
        logger.exception(
            "Unhandled error in %s on %s",
            view.__class__.__name__ if view else "unknown view",
            path,
            exc_info=exc,
        )
        return Response(
            _payload(ServerError.reason, ServerError.default_detail),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if isinstance(exc, LedgerError):
        reason = exc.reason
    elif isinstance(exc, Http404):
        reason = "NOT_FOUND"
    else:
        reason = _DRF_REASONS.get(response.status_code, "ERROR")

    detail = response.data.get("detail", response.data) if isinstance(response.data, dict) else response.data
    response.data = _payload(reason, detail)
    if isinstance(exc, SchemaMismatch):
        response["Retry-After"] = "5"
    return response
