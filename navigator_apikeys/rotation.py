"""
Key Rotation — Per-service rotation schedule with an overlapping grace window.

Each service owns one immutable ``ServiceCredential``. Rotation builds the
next record (old Active -> Retiring until ``now + grace_period``, replacement
-> Active) and swaps it in with one assignment, so readers never observe a
partial record. Rotations of the same service are serialized by a
per-service lock; different services never wait on each other.

Security Note:
    Only key ids (fingerprints) are logged, never key values.
"""
import time
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from .exceptions import KeyUnavailable, RotationFailure
from .models import RotationEvent, ServiceCredential
from .utils import PeriodicTask, maybe_await

logger = logging.getLogger("navigator.apikeys.rotation")

KeyProvider = Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]
RotationObserver = Callable[[RotationEvent], Any]

_DEFAULT_ROTATION_INTERVAL = 30 * 24 * 3600
_DEFAULT_GRACE_PERIOD = 24 * 3600
_DEFAULT_CHECK_INTERVAL = 60


class KeyRotationManager:
    """Owns the credential records and their rotation state machine.

    Args:
        rotation_interval: Default seconds between scheduled rotations.
        grace_period: Default seconds a retired key stays valid.
        auto_rotate: Whether ``start()`` runs the rotation scheduler.
        check_interval: Seconds between scheduler ticks.
        key_provider: Optional callable ``(service) -> new key`` used when no
            key is supplied or staged.
        clock: Time source returning POSIX seconds.
    """

    def __init__(
        self,
        rotation_interval: float = _DEFAULT_ROTATION_INTERVAL,
        grace_period: float = _DEFAULT_GRACE_PERIOD,
        auto_rotate: bool = True,
        check_interval: float = _DEFAULT_CHECK_INTERVAL,
        key_provider: Optional[KeyProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rotation_interval = rotation_interval
        self.grace_period = grace_period
        self.auto_rotate = auto_rotate
        self._key_provider = key_provider
        self._clock = clock
        self._credentials: dict[str, ServiceCredential] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._observers: list[RotationObserver] = []
        self._scheduler = PeriodicTask("rotation-scheduler", check_interval, self.check_rotations)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: RotationObserver) -> None:
        """Register a sync or async callable receiving every RotationEvent."""
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: RotationObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _publish(self, event: RotationEvent) -> None:
        for observer in list(self._observers):
            try:
                await maybe_await(observer(event))
            except Exception as err:
                logger.exception(
                    "Rotation observer failed for service=%s: %s", event.service, err,
                )

    # ------------------------------------------------------------------
    # Credential records
    # ------------------------------------------------------------------

    def _lock_for(self, service: str) -> asyncio.Lock:
        return self._locks.setdefault(service, asyncio.Lock())

    def register(self, credential: ServiceCredential) -> ServiceCredential:
        """Install a credential record (used at load time)."""
        self._credentials[credential.service_id] = credential
        logger.info(
            "Credential registered: service=%s key_id=%s",
            credential.service_id, credential.active_key_id,
        )
        return credential

    def create_credential(
        self,
        service: str,
        key: str,
        rotation_interval: Optional[float] = None,
        grace_period: Optional[float] = None,
    ) -> ServiceCredential:
        if not key:
            raise ValueError(f"Empty API key for service {service!r}")
        credential = ServiceCredential.create(
            service,
            key,
            now=self._clock(),
            rotation_interval=rotation_interval or self.rotation_interval,
            grace_period=self.grace_period if grace_period is None else grace_period,
        )
        return self.register(credential)

    def get_credential(self, service: str) -> Optional[ServiceCredential]:
        """Current snapshot for ``service`` (lock-free read)."""
        return self._credentials.get(service)

    def require_credential(self, service: str) -> ServiceCredential:
        credential = self._credentials.get(service)
        if credential is None:
            raise KeyUnavailable(service)
        return credential

    def services(self) -> list[str]:
        return sorted(self._credentials)

    def __contains__(self, service: object) -> bool:
        return service in self._credentials

    async def remove(self, service: str) -> bool:
        # Keep the lock entry: coroutines queued on it still serialize against
        # writers of a service re-added under the same id.
        async with self._lock_for(service):
            removed = self._credentials.pop(service, None) is not None
        if removed:
            logger.info("Credential removed: service=%s", service)
        return removed

    async def stage_key(self, service: str, key: str) -> bool:
        """Queue a replacement key for the service's next rotation.

        Returns:
            False if the key is already known to the service.
        """
        if not key:
            raise ValueError(f"Empty API key for service {service!r}")
        async with self._lock_for(service):
            current = self.require_credential(service)
            if current.knows_key(key):
                logger.warning("Key already known for service=%s", service)
                return False
            self._credentials[service] = current.stage(key, self._clock())
        logger.info("Replacement key staged for service=%s", service)
        return True

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def _next_key(self, service: str, current: ServiceCredential, new_key: Optional[str]) -> str:
        if new_key:
            return new_key
        if current.staged:
            return current.staged[0].value
        if self._key_provider is not None:
            try:
                key = await maybe_await(self._key_provider(service))
            except Exception as err:
                raise RotationFailure(service, f"key provider error: {err}") from err
            if key:
                return key
        raise RotationFailure(service, "no replacement key available")

    async def force_rotation(self, service: str, new_key: Optional[str] = None) -> ServiceCredential:
        """Rotate ``service`` to a supplied, staged or provided key.

        Raises:
            KeyUnavailable: If the service has no credential.
            RotationFailure: If no usable replacement key is available.

        Returns:
            The new credential record.
        """
        failure: Optional[RotationFailure] = None
        async with self._lock_for(service):
            current = self.require_credential(service)
            now = self._clock()
            try:
                key = await self._next_key(service, current, new_key)
                if current.active.matches(key):
                    raise RotationFailure(service, "replacement key equals the active key")
                rotated = current.rotate(key, now)
                self._credentials[service] = rotated
            except RotationFailure as err:
                failure = err
        if failure is not None:
            logger.error("Rotation failed for service=%s: %s", service, failure.reason)
            await self._publish(RotationEvent(
                service=service,
                success=False,
                timestamp=now,
                previous_key_id=current.active_key_id,
                error=failure.reason,
            ))
            raise failure
        logger.info(
            "Rotated service=%s: %s -> %s (retiring until %s)",
            service, current.active_key_id, rotated.active_key_id, rotated.retire_at,
        )
        await self._publish(RotationEvent(
            service=service,
            success=True,
            timestamp=now,
            key_id=rotated.active_key_id,
            previous_key_id=current.active_key_id,
        ))
        return rotated

    def is_valid_key(self, service: str, key: str) -> bool:
        """Active key, or retiring key before its ``retire_at``."""
        credential = self._credentials.get(service)
        if credential is None or not key:
            return False
        return credential.is_valid_key(key, self._clock())

    def get_valid_keys(self, service: str) -> list[str]:
        return self.require_credential(service).valid_keys(self._clock())

    async def update_rotation_config(
        self,
        service: str,
        rotation_interval: Optional[float] = None,
        grace_period: Optional[float] = None,
    ) -> ServiceCredential:
        """Adjust the service's schedule without rotating it."""
        async with self._lock_for(service):
            updated = self.require_credential(service).reschedule(
                rotation_interval=rotation_interval, grace_period=grace_period,
            )
            self._credentials[service] = updated
        logger.info(
            "Rotation config updated: service=%s interval=%.0fs grace=%.0fs",
            service, updated.rotation_interval, updated.grace_period,
        )
        return updated

    async def purge_expired(self) -> int:
        """Drop retiring slots whose grace window ended. Returns how many."""
        purged = 0
        for service in self.services():
            async with self._lock_for(service):
                current = self._credentials.get(service)
                if current is None:
                    continue
                cleaned = current.purge(self._clock())
                if cleaned is not current:
                    self._credentials[service] = cleaned
                    purged += 1
                    logger.debug(
                        "Retired key purged: service=%s key_id=%s",
                        service, current.retiring_key_id,
                    )
        return purged

    def due_services(self) -> list[str]:
        now = self._clock()
        return [
            service for service, credential in sorted(self._credentials.items())
            if now >= credential.next_rotation_at
        ]

    async def check_rotations(self) -> dict:
        """One scheduler tick: purge expired keys and rotate due services.

        Failed rotations keep their schedule, so they are retried next tick.
        """
        stats = {"purged": await self.purge_expired(), "rotated": 0, "failed": 0}
        for service in self.due_services():
            try:
                await self.force_rotation(service)
                stats["rotated"] += 1
            except RotationFailure:
                stats["failed"] += 1
            except KeyUnavailable:
                continue
        if stats["rotated"] or stats["failed"]:
            logger.info("Scheduled rotation tick: %s", stats)
        return stats

    def start(self) -> None:
        if self.auto_rotate:
            self._scheduler.start()

    async def stop(self) -> None:
        await self._scheduler.stop()
