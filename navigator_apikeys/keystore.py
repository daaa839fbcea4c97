"""
Key Store — one encrypted JSON file per service, plus timestamped backups.

File format (``<keys_directory>/<service>.json``)::

    {
        "version": 1,
        "service": "mapbox",
        "metadata": {... schedule and grace-window metadata, no keys ...},
        "updated_at": 1700000000.0,
        "payload": {"nonce": "<b64>", "ciphertext": "<b64>", "tag": "<b64>"}
    }

The payload is the full credential record, encrypted with a key derived from
the master secret (HKDF context ``navigator-apikeys-keystore``) and bound to
the service id as associated data.

Security Note:
    Never log payloads. Only service ids and key ids.
"""
import os
import time
import shutil
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

import orjson

from .crypto import KEYSTORE_CONTEXT, AEADCipher, b64decode, b64encode
from .exceptions import DecryptionError
from .models import ServiceCredential

logger = logging.getLogger("navigator.apikeys.keystore")

FORMAT_VERSION = 1
BACKUPS_DIRNAME = "backups"
_DEFAULT_MAX_BACKUPS = 10


class KeyStore:
    """Persists credential records for restart survivability."""

    def __init__(
        self,
        directory: Union[str, Path],
        master_secret: str,
        max_backups: int = _DEFAULT_MAX_BACKUPS,
        backend: str = "aesgcm",
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self.max_backups = max_backups
        self._cipher = AEADCipher.from_secret(master_secret, KEYSTORE_CONTEXT, backend=backend)
        self._clock = clock
        self.directory.mkdir(parents=True, exist_ok=True)

    @property
    def backups_directory(self) -> Path:
        return self.directory / BACKUPS_DIRNAME

    def path_for(self, service: str) -> Path:
        if not service or "/" in service or os.sep in service or service.startswith("."):
            raise ValueError(f"Invalid service id: {service!r}")
        return self.directory / f"{service}.json"

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def save(self, credential: ServiceCredential) -> Path:
        """Encrypt and atomically write a credential record."""
        service = credential.service_id
        record = credential.model_dump(mode="json", context={"reveal": True})
        nonce, ciphertext, tag = self._cipher.encrypt(
            orjson.dumps(record), service.encode("utf-8"),
        )
        document = {
            "version": FORMAT_VERSION,
            "service": service,
            "metadata": credential.metadata(),
            "updated_at": self._clock(),
            "payload": {
                "nonce": b64encode(nonce),
                "ciphertext": b64encode(ciphertext),
                "tag": b64encode(tag),
            },
        }
        path = self.path_for(service)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{service}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(orjson.dumps(document, option=orjson.OPT_INDENT_2))
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug("Credential saved: service=%s key_id=%s", service, credential.active_key_id)
        return path

    def load(self, service: str) -> Optional[ServiceCredential]:
        """Read and decrypt a service record.

        Returns:
            The credential, or None if no file exists.

        Raises:
            DecryptionError: If the file is corrupted or was written with
                another master secret.
        """
        path = self.path_for(service)
        if not path.exists():
            return None
        try:
            document = orjson.loads(path.read_bytes())
            payload = document["payload"]
            plaintext = self._cipher.decrypt(
                b64decode(payload["nonce"]),
                b64decode(payload["ciphertext"]),
                b64decode(payload["tag"]),
                service.encode("utf-8"),
            )
        except DecryptionError:
            logger.error("Key file for service=%s cannot be authenticated", service)
            raise
        except (KeyError, TypeError, ValueError, orjson.JSONDecodeError) as err:
            raise DecryptionError(f"Malformed key file for {service!r}: {err}") from err
        return ServiceCredential.model_validate(orjson.loads(plaintext))

    def read_metadata(self, service: str) -> Optional[dict]:
        """Clear-text schedule metadata, readable without the master secret."""
        path = self.path_for(service)
        if not path.exists():
            return None
        return orjson.loads(path.read_bytes()).get("metadata")

    def delete(self, service: str) -> bool:
        path = self.path_for(service)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Key file removed: service=%s", service)
        return True

    def list_services(self) -> list[str]:
        return sorted(
            p.stem for p in self.directory.glob("*.json") if not p.name.startswith(".")
        )

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def list_backups(self) -> list[Path]:
        """Backup directories, oldest first."""
        if not self.backups_directory.exists():
            return []
        return sorted(p for p in self.backups_directory.iterdir() if p.is_dir())

    def backup(self) -> Optional[Path]:
        """Copy every key file into a timestamped backup directory.

        Keeps the ``max_backups`` most recent backups and deletes the rest.

        Returns:
            The new backup directory, or None if there was nothing to back up.
        """
        services = self.list_services()
        if not services:
            return None
        stamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime(
            "%Y%m%dT%H%M%S%fZ"
        )
        target = self.backups_directory / stamp
        target.mkdir(parents=True, exist_ok=True)
        for service in services:
            shutil.copy2(self.path_for(service), target / f"{service}.json")
        logger.info("Key backup created: %s (%d services)", target.name, len(services))
        self.prune_backups()
        return target

    def prune_backups(self) -> int:
        backups = self.list_backups()
        excess = backups[:-self.max_backups] if len(backups) > self.max_backups else []
        for path in excess:
            shutil.rmtree(path)
            logger.debug("Old key backup removed: %s", path.name)
        return len(excess)
