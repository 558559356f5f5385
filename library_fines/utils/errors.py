"""Error types raised by the fine, payment and reconciliation services.

The HTTP-facing errors reuse the Werkzeug exception hierarchy so the Flask
error handler can turn any of them into a JSON response with the right
status code.
"""
from werkzeug.exceptions import (BadGateway, BadRequest, Conflict, Forbidden,
                                 HTTPException, NotFound, ServiceUnavailable)


class VerificationFailed(BadRequest):
    """Payment signature did not match.

    The message is always the same so a caller cannot learn anything about
    how close a forged signature came.
    """

    description = 'Payment verification failed'

    def __init__(self):
        super().__init__(self.description)


class GatewayUnavailable(ServiceUnavailable):
    """The payment gateway timed out, was unreachable or returned a 5xx."""

    description = 'Payment gateway is currently unavailable. Please try again later.'


class GatewayRejected(BadGateway):
    """The gateway refused a request (4xx other than a missing resource)."""

    description = 'Payment gateway rejected the request.'


class StaleRecordError(Exception):
    """Raised when a conditional update finds a newer version of the row."""

    def __init__(self, table: str, record_id: str):
        super().__init__(f'{table} record {record_id} was modified concurrently')
        self.table = table
        self.record_id = record_id


__all__ = [
    'HTTPException',
    'BadRequest',
    'Conflict',
    'Forbidden',
    'NotFound',
    'VerificationFailed',
    'GatewayUnavailable',
    'GatewayRejected',
    'StaleRecordError',
]
