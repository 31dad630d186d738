"""Error taxonomy for the directory service.

Every error carries the HTTP status it maps to and a public message that is
safe to show to callers. Internal detail belongs in the logs, never in
``public_message``.
"""
from typing import Any, Dict, List, Optional


class DirectoryError(Exception):
    """Base exception for directory service errors."""

    status_code = 500
    public_message = "Server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.public_message
        self.details = details or {}
        super().__init__(self.message)


class ValidationFailed(DirectoryError):
    """Raised when input is malformed; carries field-level errors."""

    status_code = 400
    public_message = "Validation failed"

    def __init__(self, errors: List[Dict[str, str]]):
        super().__init__(details={"errors": errors})
        self.errors = errors


class NotFound(DirectoryError):
    status_code = 404
    public_message = "Not found"

    def __init__(self, entity: str = "Entry"):
        super().__init__(f"{entity} not found")
        self.public_message = self.message


class Conflict(DirectoryError):
    """Raised when a write collides with the unique email constraint."""

    status_code = 409
    public_message = "Email already exists"

    def __init__(self, field: str = "email"):
        super().__init__()
        self.field = field


class Unauthorized(DirectoryError):
    status_code = 401
    public_message = "Invalid credentials"


class InvalidCredentials(Unauthorized):
    """Unknown email or wrong password; the two are indistinguishable."""


class InvalidCode(Unauthorized):
    """Second-factor code rejected."""


class InvalidOrExpiredToken(Unauthorized):
    public_message = "Invalid or expired token"


class TokenExpired(InvalidOrExpiredToken):
    pass


class TokenMalformed(InvalidOrExpiredToken):
    pass


class TokenBadSignature(InvalidOrExpiredToken):
    pass


class UpstreamFailure(DirectoryError):
    """Store or signing infrastructure failed."""

    status_code = 500
    public_message = "Server error"
