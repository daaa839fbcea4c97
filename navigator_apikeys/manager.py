"""
LifecycleManager — the single entry point for API key consumers.

Composes the secret checks, the encrypted memory cache, the permission
registry, the rotation manager, the key store and the monitoring service:
- ``initialize()``: validate bootstrap secrets, load credentials, start timers
- ``get_api_key(service, module_id)``: permission check → cache → source of truth
- ``add_key`` / ``rotate_keys`` / ``is_valid_key``: key administration
- ``generate_report()``: credential, permission and monitoring overview
- ``stop()``: cancel timers, flush the cache, refuse further calls

The manager is built by application bootstrap and passed to its consumers;
there is no module-level instance.

Security Note:
    Never log key values. Only service ids, module ids and key ids.
"""
import os
import asyncio
import time
import logging
from typing import Callable, Mapping, Optional

from .conf import ApiKeySettings
from .exceptions import ApiKeyError, ManagerStopped, PermissionDenied, KeyUnavailable
from .keystore import KeyStore
from .models import RotationEvent, ServiceCredential
from .monitoring import AlertThresholds, MonitoringService
from .permissions import PermissionRegistry
from .rotation import KeyProvider, KeyRotationManager
from .secret_manager import SecretManager
from .storage import SecureMemoryStorage
from .utils import PeriodicTask

logger = logging.getLogger("navigator.apikeys")


def _cache_key(service: str) -> str:
    return f"apikey:{service}:active"


class LifecycleManager:
    """Secure API key lifecycle manager.

    Args:
        settings: Validated configuration; defaults to ``ApiKeySettings.from_env()``.
        environ: Mapping holding bootstrap secrets and service keys
            (defaults to ``os.environ``).
        permissions: Permission registry; defaults to the least-privilege policy.
        monitoring: Monitoring service; one is created from the settings if omitted.
        key_provider: Optional ``(service) -> new key`` callable for rotations.
        thresholds: Alert thresholds for the default monitoring service.
        clock: Time source returning POSIX seconds.
    """

    def __init__(
        self,
        settings: Optional[ApiKeySettings] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
        permissions: Optional[PermissionRegistry] = None,
        monitoring: Optional[MonitoringService] = None,
        key_provider: Optional[KeyProvider] = None,
        thresholds: Optional[AlertThresholds] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._environ = os.environ if environ is None else environ
        self.settings = settings or ApiKeySettings.from_env(self._environ)
        self._clock = clock
        self.secret_manager = SecretManager(
            required=self.settings.required_secrets, environ=self._environ,
        )
        self.permissions = permissions or PermissionRegistry(services=self.settings.services)
        self.monitoring = monitoring or MonitoringService(
            thresholds=thresholds,
            interval=self.settings.metrics_interval,
            retention=self.settings.metrics_retention,
            clock=clock,
        )
        self.rotation = KeyRotationManager(
            rotation_interval=self.settings.rotation_interval,
            grace_period=self.settings.grace_period,
            auto_rotate=self.settings.auto_rotate,
            check_interval=self.settings.rotation_check_interval,
            key_provider=key_provider,
            clock=clock,
        )
        self.rotation.subscribe(self.monitoring.observe_rotation)
        self.rotation.subscribe(self._on_rotation)
        self.memory: Optional[SecureMemoryStorage] = None
        self.keystore: Optional[KeyStore] = None
        self._backup_task: Optional[PeriodicTask] = None
        self._initialized = False
        self._stopped = False

    # ------------------------------------------------------------------
    # State guards
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _ensure_running(self) -> None:
        if self._stopped:
            raise ManagerStopped()
        if not self._initialized:
            raise ApiKeyError("API key manager is not initialized; call initialize() first")

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self) -> dict:
        """Validate secrets, load every configured credential and start timers.

        Raises:
            ConfigurationError: If a bootstrap secret is missing (or weak in
                strict mode).
            ManagerStopped: If the manager was already stopped.

        Returns:
            The secret validation report.
        """
        if self._stopped:
            raise ManagerStopped()
        report = self.secret_manager.initialize(throw_on_error=self.settings.strict_secrets)
        if self._initialized:
            return report
        master_secret = self.secret_manager.get_secret(self.settings.master_secret_name)
        self.memory = SecureMemoryStorage(
            master_secret,
            ttl=self.settings.memory_ttl,
            cleanup_interval=self.settings.cleanup_interval,
            clock=self._clock,
            backend=self.settings.cipher_backend,
        )
        if self.settings.keys_directory is not None:
            self.keystore = KeyStore(
                self.settings.keys_directory,
                master_secret,
                max_backups=self.settings.max_backups,
                backend=self.settings.cipher_backend,
                clock=self._clock,
            )
            self._backup_task = PeriodicTask(
                "keystore-backup", self.settings.backup_interval, self._backup,
            )
        await self._load_services()
        self._initialized = True
        self.memory.start()
        self.monitoring.start()
        self.rotation.start()
        if self._backup_task is not None:
            self._backup_task.start()
        logger.info(
            "API key manager initialized: %d/%d services loaded",
            len(self.rotation.services()), len(self.settings.services),
        )
        return report

    async def _load_services(self) -> None:
        services = dict(self.settings.services)
        if self.keystore is not None:
            for service in await asyncio.to_thread(self.keystore.list_services):
                services.setdefault(service, [])
        for service, env_names in services.items():
            credential = await self._load_from_keystore(service)
            if credential is None:
                credential = await self._load_from_environment(service, env_names)
            if credential is None:
                logger.warning("No API key found for service=%s; it stays unavailable", service)
                continue
            self.permissions.register_service(service)

    async def _load_from_keystore(self, service: str) -> Optional[ServiceCredential]:
        if self.keystore is None:
            return None
        credential = await asyncio.to_thread(self.keystore.load, service)
        if credential is not None:
            self.rotation.register(credential)
            logger.info("Loaded key file for service=%s", service)
        return credential

    async def _load_from_environment(self, service: str, env_names: list) -> Optional[ServiceCredential]:
        for name in env_names:
            value = self._environ.get(name)
            if value and value.strip():
                credential = self.rotation.create_credential(service, value.strip())
                await self._persist(credential)
                logger.info("Loaded API key for service=%s from %s", service, name)
                return credential
        return None

    # ------------------------------------------------------------------
    # Key files (file I/O runs in worker threads)
    # ------------------------------------------------------------------

    async def _persist(self, credential: Optional[ServiceCredential]) -> None:
        if self.keystore is not None and credential is not None:
            await asyncio.to_thread(self.keystore.save, credential)

    async def _backup(self):
        return await asyncio.to_thread(self.keystore.backup)

    # ------------------------------------------------------------------
    # Rotation events
    # ------------------------------------------------------------------

    async def _on_rotation(self, event: RotationEvent) -> None:
        if not event.success:
            return
        if self.memory is not None:
            self.memory.delete(_cache_key(event.service))
        await self._persist(self.rotation.get_credential(event.service))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_api_key(self, service: str, module_id: str) -> str:
        """Return the active key of ``service`` for ``module_id``.

        Raises:
            PermissionDenied: If the module may not read the service key.
            KeyUnavailable: If no credential is loaded for the service.
            ManagerStopped: After ``stop()``.
        """
        self._ensure_running()
        started = time.perf_counter()
        success = False
        try:
            if not self.permissions.has_permission(module_id, service):
                logger.warning("Permission denied: module=%s service=%s", module_id, service)
                raise PermissionDenied(module_id, service)
            cached = self.memory.get(_cache_key(service))
            if cached is not None:
                success = True
                return cached["key"]
            credential = self.rotation.require_credential(service)
            self.memory.set(_cache_key(service), {
                "key_id": credential.active_key_id,
                "key": credential.active_key,
            })
            logger.debug("API key reloaded for service=%s module=%s", service, module_id)
            success = True
            return credential.active_key
        finally:
            self.monitoring.track_api_key_access(
                service,
                module=module_id,
                success=success,
                duration=time.perf_counter() - started,
            )

    async def get_all_valid_keys(self, service: str, module_id: str) -> list[str]:
        """Active key plus the retiring key while its grace window is open."""
        self._ensure_running()
        if not self.permissions.has_permission(module_id, service):
            raise PermissionDenied(module_id, service)
        return self.rotation.get_valid_keys(service)

    async def add_key(self, service: str, key: str) -> bool:
        """Add a key: a new service gets it as active key, an existing one stages it.

        Returns:
            False if the key is already known to the service.
        """
        self._ensure_running()
        if service not in self.rotation:
            credential = self.rotation.create_credential(service, key)
            self.permissions.register_service(service)
            await self._persist(credential)
            logger.info("New service added: %s", service)
            return True
        staged = await self.rotation.stage_key(service, key)
        if staged:
            await self._persist(self.rotation.get_credential(service))
        return staged

    async def rotate_keys(self, service: str, new_key: Optional[str] = None) -> ServiceCredential:
        self._ensure_running()
        return await self.rotation.force_rotation(service, new_key)

    def is_valid_key(self, service: str, key: str) -> bool:
        self._ensure_running()
        return self.rotation.is_valid_key(service, key)

    async def update_rotation_config(
        self,
        service: str,
        rotation_interval: Optional[float] = None,
        grace_period: Optional[float] = None,
    ) -> ServiceCredential:
        self._ensure_running()
        credential = await self.rotation.update_rotation_config(
            service, rotation_interval=rotation_interval, grace_period=grace_period,
        )
        await self._persist(credential)
        return credential

    def list_services(self) -> list[str]:
        self._ensure_running()
        return self.rotation.services()

    async def remove_service(self, service: str) -> bool:
        """Administrative removal of a service and its key material."""
        self._ensure_running()
        removed = await self.rotation.remove(service)
        if not removed:
            raise KeyUnavailable(service)
        self.memory.delete(_cache_key(service))
        self.permissions.unregister_service(service)
        if self.keystore is not None:
            await asyncio.to_thread(self.keystore.delete, service)
        return removed

    async def backup(self):
        """Write a key store backup now; None without a keys directory."""
        self._ensure_running()
        if self.keystore is None:
            return None
        return await self._backup()

    def generate_report(self, period: str = "day") -> dict:
        """Credential counts, per-service schedule, permission exposure and metrics."""
        self._ensure_running()
        now = self._clock()
        services = {}
        summary = {"total_services": 0, "active_keys": 0, "retiring_keys": 0, "staged_keys": 0}
        for service in self.rotation.services():
            credential = self.rotation.get_credential(service)
            if credential is None:
                continue
            retiring = credential.retiring is not None and credential.is_valid_key(
                credential.retiring_key, now,
            )
            summary["total_services"] += 1
            summary["active_keys"] += 1
            summary["retiring_keys"] += int(retiring)
            summary["staged_keys"] += len(credential.staged)
            services[service] = {
                **credential.metadata(),
                "retiring_valid": retiring,
                "rotation_due": now >= credential.next_rotation_at,
                "permissions": self.permissions.get_modules_with_access(service),
            }
        return {
            "timestamp": now,
            "summary": summary,
            "services": services,
            "unavailable": sorted(set(self.settings.services) - set(services)),
            "permissions": self.permissions.generate_permissions_report(),
            "memory": self.memory.get_stats(),
            "monitoring": self.monitoring.generate_metrics_report(period),
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Cancel background tasks and flush the memory cache. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        await self.rotation.stop()
        await self.monitoring.stop()
        if self._backup_task is not None:
            await self._backup_task.stop()
        if self.memory is not None:
            await self.memory.stop()
            self.memory.clear()
        logger.info("API key manager stopped")
