"""
Error taxonomy shared by the notification, storage, QR and POS layers.
"""
import enum


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    NOT_READY = "not_ready"
    PERMANENT = "permanent"


class CanteenError(Exception):
    """Base exception for the canteen backend core."""

    kind = ErrorKind.PERMANENT
    default_message = "An error occurred"

    def __init__(self, message=None, code=None, details=None):
        self.message = message or self.default_message
        self.code = code
        self.details = details
        super().__init__(self.message)

    def __str__(self):
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message

    def to_dict(self):
        error_dict = {
            "error": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.code:
            error_dict["code"] = self.code
        if self.details:
            error_dict["details"] = self.details
        return error_dict


# ========== Database ==========

class DatabaseNotReadyError(CanteenError):
    """Database handle is not in the connected state."""
    kind = ErrorKind.NOT_READY
    default_message = "Database connection is not ready"


class TransientDatabaseError(CanteenError):
    kind = ErrorKind.TRANSIENT
    default_message = "Transient database error"


class RetryExhaustedError(DatabaseNotReadyError):
    """A query kept failing with transient errors until its retry budget ran out."""

    def __init__(self, query_name, attempts, cause=None):
        self.query_name = query_name
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"{query_name} failed after {attempts} attempts: {cause}",
            code="RETRY_EXHAUSTED",
            details={"query": query_name, "attempts": attempts},
        )


# ========== Storage ==========

class StorageError(CanteenError):
    default_message = "Storage operation failed"


class StorageUnavailableError(StorageError):
    kind = ErrorKind.NOT_READY
    default_message = "Storage root is not available"


class InvalidStorageURLError(StorageError):
    default_message = "Unsupported storage URL"


# ========== QR pipeline ==========

class PayloadTooLargeError(CanteenError):
    default_message = "QR payload exceeds capacity at error-correction level H"


class ArtifactPersistError(CanteenError):
    default_message = "QR artifact could not be persisted"


# ========== POS / settings ==========

class SubscriptionClosedError(CanteenError):
    default_message = "POS subscription transport is closed"


class SettingsValidationError(CanteenError):
    default_message = "Invalid settings"


# ========== Lookup ==========

class NotFoundError(CanteenError):
    default_message = "Resource not found"
