"""Error taxonomy for credential lifecycle operations."""

from typing import Optional


class CredentialError(Exception):
    """Base class for errors surfaced to callers of the lifecycle manager."""

    error_code = "CREDENTIAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, blockchain_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.blockchain_id = blockchain_id

    def to_dict(self) -> dict:
        """Serializable error body."""
        return {
            "detail": self.message,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }


class InvalidInput(CredentialError):
    """The request itself is invalid; retrying it unchanged will fail again."""

    error_code = "INVALID_INPUT"
    http_status = 400


class InvalidTransition(InvalidInput):
    """The requested lifecycle transition is not allowed from the current state."""

    error_code = "INVALID_TRANSITION"


class NotFound(CredentialError):
    """Credential or subject does not exist."""

    error_code = "NOT_FOUND"
    http_status = 404


class AccessDenied(CredentialError):
    """Disclosure refused: credential not active, or consent missing at the ledger."""

    error_code = "ACCESS_DENIED"
    http_status = 403


class PermissionDenied(CredentialError):
    """The ledger refused a consent or administrative change for this caller."""

    error_code = "PERMISSION_DENIED"
    http_status = 403


class SubjectAlreadyCredentialed(CredentialError):
    """The subject already holds an ACTIVE credential."""

    error_code = "SUBJECT_ALREADY_CREDENTIALED"
    http_status = 409


class LedgerUnavailable(CredentialError):
    """The ledger could not be reached; no local state was written."""

    error_code = "LEDGER_UNAVAILABLE"
    http_status = 502
    retryable = True


class LocalPersistenceFailure(Exception):
    """A ledger-confirmed fact could not be written locally.

    Never surfaced to API callers; raised inside reconciliation replay so the
    worker retries until the local store matches the ledger.
    """

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
