"""
Secret Manager — presence and strength checks for bootstrap secrets.

Bootstrap secrets (the master encryption key, the JWT secret) are read once at
startup and never cached by this module.

Security Note:
    Never log secret values. Only log secret names.
"""
import os
import base64
import string
import secrets
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .conf import MASTER_SECRET_ENV, JWT_SECRET_ENV
from .exceptions import ConfigurationError

logger = logging.getLogger("navigator.apikeys.secrets")

MIN_SECRET_LENGTH = 32
MIN_ENTROPY_CLASSES = 3

# URL/path-unsafe base64 characters and their replacements (reversible).
_SAFE_TRANSLATION = str.maketrans("+/", "-_")


@dataclass(frozen=True)
class Secret:
    """A required bootstrap secret and its strength rule."""

    name: str
    min_length: int = MIN_SECRET_LENGTH
    min_entropy_classes: int = MIN_ENTROPY_CLASSES


DEFAULT_SECRETS = (
    Secret(MASTER_SECRET_ENV),
    Secret(JWT_SECRET_ENV),
)


def entropy_classes(value: str) -> int:
    """Count the character classes (lower, upper, digit, symbol) present in value."""
    classes = 0
    if any(c in string.ascii_lowercase for c in value):
        classes += 1
    if any(c in string.ascii_uppercase for c in value):
        classes += 1
    if any(c in string.digits for c in value):
        classes += 1
    if any(not c.isalnum() and not c.isspace() for c in value):
        classes += 1
    return classes


class SecretManager:
    """Validates the secrets required to bootstrap the key manager."""

    def __init__(
        self,
        required: Optional[list] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._environ = os.environ if environ is None else environ
        self._secrets: dict[str, Secret] = {}
        for item in required if required is not None else DEFAULT_SECRETS:
            secret = item if isinstance(item, Secret) else Secret(item)
            self._secrets[secret.name] = secret

    @property
    def required(self) -> list[str]:
        return list(self._secrets)

    def get_secret(self, name: str) -> Optional[str]:
        """Read a secret from the environment; empty values count as unset."""
        value = self._environ.get(name)
        if value is None or not value.strip():
            return None
        return value

    def validate_required_secrets(self) -> dict:
        """Check that every required secret is set and non-empty.

        Returns:
            ``{"valid": bool, "missing": [names]}``.
        """
        missing = [name for name in self._secrets if self.get_secret(name) is None]
        if missing:
            logger.error("Missing required secrets: %s", ", ".join(missing))
        return {"valid": not missing, "missing": missing}

    def validate_secret_strength(self, name: str) -> dict:
        """Check length and character diversity of a secret.

        Returns:
            ``{"valid": bool, "reason": str}``; ``reason`` only on failure.
        """
        rule = self._secrets.get(name) or Secret(name)
        value = self.get_secret(name)
        if value is None:
            return {"valid": False, "reason": "missing"}
        if len(value) < rule.min_length:
            return {
                "valid": False,
                "reason": f"too short ({len(value)} < {rule.min_length} characters)",
            }
        classes = entropy_classes(value)
        if classes < rule.min_entropy_classes:
            return {
                "valid": False,
                "reason": (
                    f"not enough character classes ({classes} < "
                    f"{rule.min_entropy_classes} of lowercase, uppercase, digit, symbol)"
                ),
            }
        return {"valid": True}

    @staticmethod
    def generate_strong_secret(length: int = 48) -> str:
        """Generate a random secret safe for paths and URLs.

        The value is base64 of CSPRNG bytes with ``+`` and ``/`` replaced by
        ``-`` and ``_``; regenerated until it passes the strength rule.

        Args:
            length: Number of characters (minimum 32).

        Returns:
            Secret string.
        """
        if length < MIN_SECRET_LENGTH:
            raise ValueError(f"Secret length must be at least {MIN_SECRET_LENGTH}")
        while True:
            raw = base64.b64encode(secrets.token_bytes(length)).decode("ascii")
            candidate = raw.translate(_SAFE_TRANSLATION).rstrip("=")[:length]
            if entropy_classes(candidate) >= MIN_ENTROPY_CLASSES:
                return candidate

    def initialize(self, throw_on_error: bool = True) -> dict:
        """Run presence and strength checks.

        A missing secret is always fatal. A weak secret is fatal only when
        ``throw_on_error`` is true; otherwise it is reported (audit mode).

        Raises:
            ConfigurationError: On a missing secret, or a weak one in strict mode.

        Returns:
            ``{"valid": bool, "missing": [...], "weak": {name: reason}}``.
        """
        presence = self.validate_required_secrets()
        if not presence["valid"]:
            raise ConfigurationError(
                f"Missing required secrets: {', '.join(presence['missing'])}",
                missing=presence["missing"],
            )
        weak = {}
        for name in self._secrets:
            result = self.validate_secret_strength(name)
            if not result["valid"]:
                weak[name] = result["reason"]
        if weak:
            if throw_on_error:
                raise ConfigurationError(
                    f"Weak secrets: {', '.join(sorted(weak))}", weak=sorted(weak),
                )
            for name, reason in weak.items():
                logger.warning("Secret %s is weak: %s", name, reason)
        else:
            logger.info("All %d required secrets validated", len(self._secrets))
        return {"valid": not weak, "missing": [], "weak": weak}
