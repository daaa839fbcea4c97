"""
Permission Registry — module to service access control for API keys.

The table maps each calling module to the set of services whose keys it may
read. Every write builds a new immutable table and swaps it in, so readers
always see a complete snapshot.
"""
import time
import logging
import threading
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

logger = logging.getLogger("navigator.apikeys.permissions")

ADMIN_MODULE = "admin"

# Least-privilege defaults: each module only gets the services it calls.
DEFAULT_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "weather-module": ("weatherService",),
    "map-module": ("mapbox", "openRouteService"),
    "route-module": ("openRouteService",),
    "activity-module": ("strava",),
    "ai-module": ("openai",),
}


class PermissionRegistry:
    """Copy-on-write RBAC table of ``module_id -> frozenset[service]``."""

    def __init__(
        self,
        permissions: Optional[Mapping[str, Iterable[str]]] = None,
        services: Optional[Iterable[str]] = None,
        admin_module: str = ADMIN_MODULE,
    ):
        self.admin_module = admin_module
        self._lock = threading.Lock()
        table = {
            module: frozenset(granted)
            for module, granted in (
                permissions if permissions is not None else DEFAULT_PERMISSIONS
            ).items()
        }
        known = set(services or ())
        for granted in table.values():
            known.update(granted)
        if admin_module:
            table[admin_module] = frozenset(known) | table.get(admin_module, frozenset())
        self._table: Mapping[str, frozenset] = MappingProxyType(table)

    def _replace(self, module_id: str, services: Optional[frozenset]) -> None:
        """Swap in a new table with ``module_id`` set to ``services`` (None removes)."""
        table = dict(self._table)
        if services is None:
            table.pop(module_id, None)
        else:
            table[module_id] = services
        self._table = MappingProxyType(table)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def set_permissions(self, module_id: str, services: Iterable[str]) -> frozenset:
        """Replace the module's entire access set."""
        granted = frozenset(services)
        with self._lock:
            self._replace(module_id, granted)
        logger.info("Permissions set: module=%s services=%s", module_id, sorted(granted))
        return granted

    def add_permissions(self, module_id: str, services: Iterable[str]) -> frozenset:
        """Grant services to a module; already granted services are a no-op."""
        with self._lock:
            current = self._table.get(module_id, frozenset())
            granted = current | frozenset(services)
            if granted != current:
                self._replace(module_id, granted)
                logger.info(
                    "Permissions added: module=%s services=%s",
                    module_id, sorted(granted - current),
                )
        return granted

    def remove_permissions(self, module_id: str, services: Iterable[str]) -> frozenset:
        """Revoke services from a module."""
        with self._lock:
            current = self._table.get(module_id)
            if current is None:
                return frozenset()
            granted = current - frozenset(services)
            if granted != current:
                self._replace(module_id, granted)
                logger.info(
                    "Permissions removed: module=%s services=%s",
                    module_id, sorted(current - granted),
                )
        return granted

    def remove_module(self, module_id: str) -> bool:
        with self._lock:
            if module_id not in self._table:
                return False
            self._replace(module_id, None)
        logger.info("Module removed from permissions: %s", module_id)
        return True

    def register_service(self, service: str) -> None:
        """Make a newly added service reachable by the admin module."""
        if self.admin_module:
            self.add_permissions(self.admin_module, [service])

    def unregister_service(self, service: str) -> None:
        """Revoke a removed service from every module."""
        with self._lock:
            table = {
                module: granted - {service}
                for module, granted in self._table.items()
            }
            self._table = MappingProxyType(table)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def has_permission(self, module_id: str, service: str) -> bool:
        """Unknown modules have no access."""
        granted = self._table.get(module_id)
        return granted is not None and service in granted

    def get_permissions(self, module_id: str) -> frozenset:
        return self._table.get(module_id, frozenset())

    def modules(self) -> list[str]:
        return sorted(self._table)

    def get_modules_with_access(self, service: str) -> list[str]:
        table = self._table
        return sorted(module for module, granted in table.items() if service in granted)

    def generate_permissions_report(self) -> dict:
        """Return the full table plus a reverse ``service -> modules`` index."""
        table = self._table
        services: dict[str, list[str]] = {}
        for module, granted in table.items():
            for service in granted:
                services.setdefault(service, []).append(module)
        return {
            "generated_at": time.time(),
            "admin_module": self.admin_module,
            "modules": {module: sorted(granted) for module, granted in sorted(table.items())},
            "services": {service: sorted(mods) for service, mods in sorted(services.items())},
        }
