"""
Error taxonomy shared by services and blueprints.

Each error knows its HTTP status and what may be shown to the client.
Persistence and rendering errors never leak internals; the details go
to the log instead.
"""


class CRMError(Exception):
    """Base class for all expected application errors."""
    http_status = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or ''

    def public_message(self):
        return self.message

    def to_dict(self):
        return {'error': self.public_message()}


class ValidationError(CRMError):
    """Malformed input: bad decimal, missing field, mismatching line total."""
    http_status = 400

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field

    def to_dict(self):
        data = super().to_dict()
        if self.field:
            data['field'] = self.field
        return data


class NotFound(CRMError):
    http_status = 404


class StateConflict(CRMError):
    """The target is not in a state that allows the operation."""
    http_status = 409


class InvalidTransition(StateConflict):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current, requested, reason=None):
        message = reason or (
            f'Statuswechsel von "{current}" nach "{requested}" ist nicht erlaubt.'
        )
        super().__init__(message)
        self.current = current
        self.requested = requested

    def to_dict(self):
        data = super().to_dict()
        data['current'] = self.current
        data['requested'] = self.requested
        return data


class DuplicateNumber(ValidationError):
    """Unique number collision; the client may retry with a fresh number."""
    http_status = 409

    def to_dict(self):
        data = super().to_dict()
        data['retryable'] = True
        return data


class PersistenceError(CRMError):
    """Storage failure. Logged in full, reported generically."""
    http_status = 500

    def public_message(self):
        return 'Interner Fehler beim Speichern. Bitte erneut versuchen.'


class RenderingError(CRMError):
    """XML/PDF generation failure. Logged in full, reported generically."""
    http_status = 500

    def public_message(self):
        return 'Das Dokument konnte nicht erzeugt werden.'
