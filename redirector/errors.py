"""Exception taxonomy for link management and resolution.

Routes translate these into HTTP responses; nothing below the route layer
knows about status codes. Expired and inactive links are resolver outcomes,
not exceptions, because they are ordinary answers on the redirect path.
"""

__all__ = [
    "RedirectorError",
    "LinkNotFoundError",
    "LinkConflictError",
    "CodeGenerationError",
    "StoreUnavailableError",
    "PermissionDeniedError",
]


class RedirectorError(Exception):
    """Base class for all service errors."""


class LinkNotFoundError(RedirectorError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Short link '{code}' not found")
        self.code = code


class LinkConflictError(RedirectorError):
    """The short code is already in use or belonged to a deleted link."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Short code '{code}' is already taken")
        self.code = code


class CodeGenerationError(RedirectorError):
    """Every generated candidate collided with an existing code."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Could not generate a unique short code after {attempts} attempts")
        self.attempts = attempts


class StoreUnavailableError(RedirectorError):
    """The backing database failed or could not be reached."""


class PermissionDeniedError(RedirectorError):
    pass
