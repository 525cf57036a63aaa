"""
Error taxonomy for the offline resource subsystem.

Every caller-facing failure is an `OfflineDRMError` carrying a stable `code`,
a short public `message` and the HTTP-ish `status` the API layer maps it to.
Internal detail (origin status codes, filesystem errors, cipher failures) is
kept on `detail` for logging and never leaves the process through `to_dict()`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OfflineDRMError(Exception):
    """Base error for all caller-facing offline resource failures."""

    code = "internal_error"
    status = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(detail or self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigurationError(OfflineDRMError):
    """Raised when settings are invalid or incomplete."""

    code = "configuration_error"
    default_message = "Invalid configuration"


class AuthenticationRequired(OfflineDRMError):
    code = "authentication_required"
    status = 401
    default_message = "Not authenticated"


class Forbidden(OfflineDRMError):
    """The caller does not own the resource."""

    code = "forbidden"
    status = 403
    default_message = "Access denied"


class NotFound(OfflineDRMError):
    code = "not_found"
    status = 404
    default_message = "Resource not found"


class Invalid(OfflineDRMError):
    """Token unknown, consumed or expired. Which one is never disclosed."""

    code = "invalid_token"
    status = 401
    default_message = "Invalid or expired token"


class Expired(OfflineDRMError):
    code = "expired"
    status = 403
    default_message = "Resource has expired"


class NotReady(OfflineDRMError):
    """The resource is registered but its ciphertext is not committed yet."""

    code = "not_ready"
    status = 409
    default_message = "Resource is still being prepared"


class ValidationError(OfflineDRMError):
    """Malformed request. Carries field-level errors."""

    code = "validation_error"
    status = 400
    default_message = "Invalid request"

    def __init__(self, errors: Optional[List[Dict[str, str]]] = None, message: Optional[str] = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = self.errors
        return payload


# Pipeline failures share one public message; the cause stays in `detail`.

class UpstreamFetchFailure(OfflineDRMError):
    code = "resource_unavailable"
    status = 502
    default_message = "Failed to download or encrypt resource"


class EncryptionFailure(OfflineDRMError):
    code = "resource_unavailable"
    default_message = "Failed to download or encrypt resource"


class StorageFailure(OfflineDRMError):
    code = "storage_failure"
    default_message = "Failed to store or read resource"
