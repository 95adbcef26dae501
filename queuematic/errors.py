"""Error taxonomy shared by the queue engine and its HTTP binding.

Every engine failure is one of these classes. Each carries a stable ``code``
so clients can tell "branch unavailable" apart from a retryable datastore
hiccup without parsing messages.
"""

from __future__ import annotations


class QueueError(Exception):
    code = 'error'
    status_code = 400
    default_message = 'Request could not be processed'

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Invalid(QueueError, ValueError):
    code = 'invalid'
    status_code = 400
    default_message = 'Invalid request'


class NotFound(QueueError, LookupError):
    code = 'not_found'
    status_code = 404
    default_message = 'Not found'


class Unavailable(QueueError):
    code = 'unavailable'
    status_code = 409
    default_message = 'Resource is not available'


class Conflict(QueueError, ValueError):
    code = 'conflict'
    status_code = 409
    default_message = 'Request conflicts with the current state'


class Forbidden(QueueError, PermissionError):
    code = 'forbidden'
    status_code = 403
    default_message = 'Not allowed'


class Transient(QueueError):
    code = 'transient'
    status_code = 503
    default_message = 'Temporary failure, please retry'
