"""Domain error taxonomy shared by the bidding and escrow services.

Services raise these; the HTTP layer maps ``status_code`` onto an HTTPException.
"""

from fastapi import HTTPException, status


class DomainError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Bad input or a business-rule violation. Never retried automatically."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: object | None = None):
        message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class ForbiddenError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(DomainError):
    """Lost a race on an auction or escrow row. Safe to retry with fresh state."""

    status_code = status.HTTP_409_CONFLICT


class PaymentProcessorError(DomainError):
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        code: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.operation = operation
        self.code = code
        self.retryable = retryable


def http_error(exc: DomainError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
