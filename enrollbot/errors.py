# enrollbot/errors.py


class EnrollbotError(Exception):
    """
    Base class for every business failure the core can report.
    `code` is a stable, locale-independent reason the router turns into a reply key.
    """

    def __init__(self, code: str, message: str = "", **details):
        self.code = code
        self.details = details
        super().__init__(message or code)


class ValidationError(EnrollbotError):
    """Malformed email / id / admin secret / required field. Never touches storage."""


class NotFoundError(EnrollbotError):
    """Unknown user, subject, career or enrollment period. No state change."""


class ConflictError(EnrollbotError):
    """No seats, already enrolled, not enrolled, already assigned or duplicate unique field."""


class TransientStoreError(EnrollbotError):
    """Connection or lock-wait failure. The transaction was rolled back; callers may retry."""

    def __init__(self, message: str = ""):
        super().__init__("transient", message)
