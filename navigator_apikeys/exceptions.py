"""
API Key Errors — exception taxonomy for the key lifecycle manager.

``ConfigurationError`` is fatal at startup, ``PermissionDenied`` and
``KeyUnavailable`` are surfaced to callers, ``DecryptionError`` is recovered
locally by the memory storage, and ``RotationFailure`` is retried by the
rotation scheduler.
"""
from typing import Optional


class ApiKeyError(Exception):
    """Base error for the API key lifecycle manager."""


class ConfigurationError(ApiKeyError):
    """A bootstrap secret is missing or too weak to serve traffic."""

    def __init__(self, message: str, missing: Optional[list] = None, weak: Optional[list] = None):
        super().__init__(message)
        self.missing = list(missing or [])
        self.weak = list(weak or [])


class PermissionDenied(ApiKeyError):
    """The calling module is not allowed to read the service credential."""

    def __init__(self, module_id: str, service: str):
        super().__init__(
            f"Module {module_id!r} is not allowed to access API key for {service!r}"
        )
        self.module_id = module_id
        self.service = service


class KeyUnavailable(ApiKeyError):
    """No credential is loaded for the requested service."""

    def __init__(self, service: str, message: Optional[str] = None):
        super().__init__(message or f"No API key loaded for service {service!r}")
        self.service = service


class DecryptionError(ApiKeyError):
    """Ciphertext could not be authenticated (corrupted or wrong key)."""


class RotationFailure(ApiKeyError):
    """A credential could not be rotated."""

    def __init__(self, service: str, reason: str):
        super().__init__(f"Rotation failed for {service!r}: {reason}")
        self.service = service
        self.reason = reason


class ManagerStopped(ApiKeyError):
    """The lifecycle manager was stopped and accepts no new operations."""

    def __init__(self, message: str = "API key manager stopped"):
        super().__init__(message)
