"""
errors.py – Exception hierarchy shared by every layer of the core.

The OTP engine and the stores raise these; they never return placeholder
values.  The presentation layer catches AuthenticatorError to show a
recoverable message and leaves its previous state untouched.
"""

from typing import Optional


class AuthenticatorError(Exception):
    """Base class for every error raised by the authenticator core."""


class ValidationError(AuthenticatorError, ValueError):
    """
    Raised when an input fails validation (secret encoding, digits, period…).

    Attributes
    ----------
    field : str or None
        Name of the offending field ('secret', 'digits', 'period', …) so the
        caller can focus the matching input.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field: Optional[str] = field


class DuplicateError(ValidationError):
    """Raised by create() when a record with the same key already exists."""


class NotFoundError(AuthenticatorError, LookupError):
    """Raised by update() / delete() / get() when the key does not exist."""


class PersistenceError(AuthenticatorError):
    """Raised when the vault cannot be read, decrypted or written."""


class ConcurrencyError(AuthenticatorError):
    """Raised when a reorder or rename raced with another mutation."""


class InvalidPasswordError(AuthenticatorError):
    """Raised when the master password does not match the key-check token."""
