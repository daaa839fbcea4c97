"""Navigator API Keys — Secure API key lifecycle manager.

Security Note (Threat Model):
    Key material is encrypted in the memory cache and in key files, but is
    decrypted in process memory whenever a caller receives a key. A memory
    dump of the application process taken at that moment could expose it.
    This is an accepted limitation; mitigation requires HSM/secure enclave
    integration which is out of scope.
"""

from .version import __version__
from .conf import ApiKeySettings
from .exceptions import (
    ApiKeyError,
    ConfigurationError,
    PermissionDenied,
    KeyUnavailable,
    DecryptionError,
    RotationFailure,
    ManagerStopped,
)
from .secret_manager import SecretManager
from .storage import SecureMemoryStorage
from .permissions import PermissionRegistry, DEFAULT_PERMISSIONS
from .models import KeyState, KeySlot, ServiceCredential, RotationEvent
from .rotation import KeyRotationManager
from .monitoring import Alert, AlertThresholds, AlertType, MetricSnapshot, MonitoringService
from .keystore import KeyStore
from .manager import LifecycleManager

__all__ = [
    "__version__",
    "ApiKeySettings",
    "ApiKeyError",
    "ConfigurationError",
    "PermissionDenied",
    "KeyUnavailable",
    "DecryptionError",
    "RotationFailure",
    "ManagerStopped",
    "SecretManager",
    "SecureMemoryStorage",
    "PermissionRegistry",
    "DEFAULT_PERMISSIONS",
    "KeyState",
    "KeySlot",
    "ServiceCredential",
    "RotationEvent",
    "KeyRotationManager",
    "Alert",
    "AlertThresholds",
    "AlertType",
    "MetricSnapshot",
    "MonitoringService",
    "KeyStore",
    "LifecycleManager",
]
