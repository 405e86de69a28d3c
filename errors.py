"""Error taxonomy for circulation operations.

Every error carries an HTTP status code and a short machine-readable code so
the routes in ``app`` can turn it into a JSON body without inspecting
messages. Messages are safe to show to library staff.
"""


class CirculationError(Exception):
    status_code = 500
    code = 'CIRCULATION_ERROR'

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'success': False, 'message': self.message, 'code': self.code}


class NotFound(CirculationError):
    status_code = 404
    code = 'NOT_FOUND'


class InvalidState(CirculationError):
    status_code = 409
    code = 'INVALID_STATE'


class CapacityExhausted(CirculationError):
    status_code = 409
    code = 'CAPACITY_EXHAUSTED'


class ValidationError(CirculationError):
    status_code = 400
    code = 'VALIDATION_ERROR'

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        super().__init__(errors[0])
        self.errors = list(errors)

    def to_dict(self):
        body = super().to_dict()
        body['errors'] = self.errors
        return body


class AuditFailure(CirculationError):
    """Raised inside the activity log only; never reaches a caller."""
    code = 'AUDIT_FAILURE'
