"""
Exceptions for the entitlement engine.

Entitlement denials are not errors: they come back as result objects with a
``reason``. The classes here cover malformed input, missing records, rejected
lifecycle operations and infrastructure failures. ``PersistenceError`` is the
only retryable one and must never be turned into an allow or a deny.
"""

from typing import Optional, Dict, Any
import logging

from entitlements.utils.logging import get_logger

logger = get_logger(__name__)


class EntitlementError(Exception):
    """Base exception for all entitlement errors"""

    log_level: int = logging.ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.cause = cause

        self._log_error()

    def _log_error(self) -> None:
        """Log the error with appropriate level and context"""
        log_message = f"{self.error_code}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            log_message += f" (Context: {context_str})"

        if self.cause:
            log_message += f" (Caused by: {self.cause})"

        logger.log(self.log_level, log_message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization"""
        return {
            'error_type': self.__class__.__name__,
            'error_code': self.error_code,
            'message': self.message,
            'context': self.context,
            'retryable': self.retryable
        }


class ConfigurationError(EntitlementError):
    """Raised when settings or the plan catalog cannot be loaded"""
    pass


class CredentialFormatError(EntitlementError):
    """Raised when a license code or forex key is malformed"""

    log_level = logging.WARNING

    def __init__(self, message: str, credential: Optional[str] = None, error_code: str = "INVALID_FORMAT"):
        super().__init__(
            message,
            error_code=error_code,
            context={'credential': credential} if credential else None
        )


class ChecksumMismatchError(CredentialFormatError):
    """Raised when a well-formed license code carries the wrong checksum"""

    def __init__(self, credential: Optional[str] = None):
        super().__init__(
            "Invalid license code checksum",
            credential=credential,
            error_code="CHECKSUM_MISMATCH"
        )


class RecordNotFoundError(EntitlementError):
    """Base class for lookups that found nothing"""

    log_level = logging.INFO


class SubscriptionNotFoundError(RecordNotFoundError):
    """Raised when a user has no subscription record"""

    def __init__(self, user_id: str, message: str = "No subscription found"):
        super().__init__(
            message,
            error_code="SUBSCRIPTION_NOT_FOUND",
            context={'user_id': user_id}
        )


class LicenseNotFoundError(RecordNotFoundError):
    """Raised when a license key or code does not exist"""

    def __init__(self, credential: str, message: str = "License not found"):
        super().__init__(
            message,
            error_code="LICENSE_NOT_FOUND",
            context={'credential': credential}
        )


class LicenseOperationError(EntitlementError):
    """Raised when a lifecycle operation is not allowed for a record"""

    log_level = logging.WARNING

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="OPERATION_REJECTED", context=context)


class PersistenceError(EntitlementError):
    """Raised when the backing store is unreachable, slow or conflicting"""

    retryable = True

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Persistence operation '{operation}' failed",
            error_code="PERSISTENCE_UNAVAILABLE",
            context={'operation': operation},
            cause=cause
        )
