"""Error taxonomy for the reconciliation core.

WHAT:
    Typed exceptions raised by services and translated to HTTP responses
    by the exception handler registered in postmatch/main.py.

WHY:
    Services stay framework-agnostic (no HTTPException in business logic),
    while the HTTP layer still returns a consistent `{error, message}` payload.
"""

from typing import Optional


class PostmatchError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class FetchError(PostmatchError):
    """Remote call failed: non-OK status, missing body, or GraphQL/user errors."""

    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[list] = None):
        super().__init__(message)
        self.remote_status = status_code
        self.errors = errors or []


class ParseError(PostmatchError):
    """A single export line could not be decoded into an order record."""

    status_code = 422

    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(message)
        self.line_number = line_number


class NotFoundError(PostmatchError):
    status_code = 404


class ValidationError(PostmatchError):
    status_code = 400


class WebhookSignatureError(ValidationError):
    status_code = 401


class TransactionError(PostmatchError):
    """A persistence transaction failed and was rolled back."""

    status_code = 500

    def __init__(self, message: str, batch_index: Optional[int] = None):
        super().__init__(message)
        self.batch_index = batch_index
        # Set by order_store when some batches committed before the failure
        self.partial_result = None


class TransactionTimeout(TransactionError):
    status_code = 504
