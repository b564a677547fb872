"""
exceptions.py
--------------
Error taxonomy for the reflection engine.

Absence of input (no transactions, no baseline) is never an error: the
detection layers return empty results. The classes below cover the cases
that callers must be able to tell apart.
"""


class ReflectionEngineError(Exception):
    """Base class for all engine errors."""


class AuthenticationError(ReflectionEngineError):
    """Raised when a request arrives without a resolved user identity."""


class PreferencesValidationError(ReflectionEngineError, ValueError):
    """Raised when a notification preference blob fails validation."""


class RecordNotFoundError(ReflectionEngineError, KeyError):
    """Raised when a referenced transaction, event or pattern does not exist."""


class TextGenerationError(ReflectionEngineError):
    """
    Raised when the text-generation collaborator fails.

    Attributes:
        retryable: True for transient failures (rate limit, timeout) that the
            presentation layer may offer to retry.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ToneViolationError(TextGenerationError):
    """Raised when generated text breaks the narrative tone policy."""
