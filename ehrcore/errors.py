"""
Error taxonomy for ehrcore.

Every precondition violation raised by the core is a subclass of
EhrCoreError carrying a stable code and the HTTP status the service
layer answers with.
"""

from typing import Optional


class EhrCoreError(Exception):
    """Base class for typed failures returned to the immediate caller."""
    code = "EHRCORE_ERROR"
    status_code = 500
    default_message = "Operation failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class AlreadySigned(EhrCoreError):
    code = "ALREADY_SIGNED"
    status_code = 409
    default_message = "Note is already signed"


class NotAProvider(EhrCoreError):
    code = "NOT_A_PROVIDER"
    status_code = 403
    default_message = "User is not a provider"


class NoteNotFound(EhrCoreError):
    code = "NOTE_NOT_FOUND"
    status_code = 404
    default_message = "Note not found"


class OriginalNotSigned(EhrCoreError):
    code = "ORIGINAL_NOT_SIGNED"
    status_code = 409
    default_message = "Only signed notes can be amended"


class MissingJustification(EhrCoreError):
    code = "MISSING_JUSTIFICATION"
    status_code = 400
    default_message = "A justification is required"


class CannotEditSignedNote(EhrCoreError):
    code = "CANNOT_EDIT_SIGNED_NOTE"
    status_code = 409
    default_message = "Cannot edit a signed note. Create an amendment instead."


class Unauthorized(EhrCoreError):
    code = "UNAUTHORIZED"
    status_code = 403
    default_message = "Caller is not permitted to perform this action"


class AlreadyReviewed(EhrCoreError):
    code = "ALREADY_REVIEWED"
    status_code = 409
    default_message = "Entry has already been reviewed"


class InvalidCredential(EhrCoreError):
    code = "INVALID_CREDENTIAL"
    status_code = 401
    default_message = "Invalid token"


class ResourceNotFound(EhrCoreError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ValidationError(EhrCoreError):
    """Raised when input validation fails."""
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")
