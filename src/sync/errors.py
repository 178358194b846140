"""Error taxonomy for the sync & encryption engine.

ConfigurationError   — missing passphrase / server URL / device secret.  Fails fast.
DecodeError          — malformed encrypted envelope.
AuthenticationError  — AEAD tag mismatch (wrong key or tampering).  Subclass of
                       DecodeError so callers can never tell the two apart.
TransportError       — network or HTTP failure.  Retried on the next tick only.
PartialFailure       — backfill batch N failed after N-1 batches were uploaded.
"""

from __future__ import annotations


class ContexterError(Exception):
    """Base class for all sync engine errors."""


class ConfigurationError(ContexterError):
    """Raised when a required setting (passphrase, server URL, secret) is missing."""


class DecodeError(ContexterError):
    """Raised when an encrypted envelope cannot be parsed."""


class AuthenticationError(DecodeError):
    """Raised when the AEAD tag does not verify."""


class TransportError(ContexterError):
    """Raised when an upload fails.

    Attributes:
        status: HTTP status code, or None for a network failure (no response).
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PartialFailure(ContexterError):
    """Raised when a backfill batch fails after earlier batches succeeded.

    Earlier uploads are not rolled back.

    Attributes:
        failed_batch:   1-based index of the upload batch that failed.
        items_uploaded: Items confirmed uploaded before the failure.
    """

    def __init__(self, message: str, failed_batch: int, items_uploaded: int) -> None:
        super().__init__(message)
        self.failed_batch = failed_batch
        self.items_uploaded = items_uploaded
