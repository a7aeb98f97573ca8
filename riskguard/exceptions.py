"""
Exception hierarchy for the risk service.

Policy violations and integrity mismatches are reported as results, not
raised. Storage and crypto failures are raised so callers can tell them apart.
"""

from typing import Any, Dict, Optional


class RiskGuardError(Exception):
    """Base exception for the risk service"""

    error_code = "riskguard_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None,
                 error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "exception_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class StorageError(RiskGuardError):
    """Persistence collaborator is unavailable or rejected a write"""
    error_code = "storage_error"


class RecordNotFoundError(StorageError):
    error_code = "record_not_found"


class UnknownUserError(StorageError):
    error_code = "unknown_user"


class CryptoError(RiskGuardError):
    error_code = "crypto_error"


class EncryptionError(CryptoError):
    error_code = "encryption_failed"


class DecryptionError(CryptoError):
    error_code = "decryption_failed"


class ModelNotAvailableError(RiskGuardError):
    error_code = "model_not_available"
