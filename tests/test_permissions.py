"""
Tests for PermissionRegistry.

Tests cover:
- Replacing, adding and removing module permissions
- Idempotent grants and unknown modules
- Least-privilege default policy and the admin module
- Reverse index and reports
"""
import pytest

from navigator_apikeys.permissions import (
    ADMIN_MODULE,
    DEFAULT_PERMISSIONS,
    PermissionRegistry,
)


@pytest.fixture
def registry():
    """Registry with no modules and three known services."""
    return PermissionRegistry(permissions={}, services=["a", "b", "c"])


class TestSetPermissions:
    """Tests for set/add/remove."""

    def test_set_permissions(self, registry):
        """Test set_permissions() grants exactly the listed services."""
        registry.set_permissions("m", ["a", "b"])
        assert registry.has_permission("m", "a")
        assert registry.has_permission("m", "b")
        assert not registry.has_permission("m", "c")

    def test_set_replaces_whole_set(self, registry):
        """Test set_permissions() replaces the previous set."""
        registry.set_permissions("m", ["a", "b"])
        registry.set_permissions("m", ["c"])
        assert registry.get_permissions("m") == frozenset({"c"})

    def test_add_is_idempotent(self, registry):
        """Test re-adding a granted service leaves the table untouched."""
        registry.set_permissions("m", ["a"])
        before = registry._table
        assert registry.add_permissions("m", ["a"]) == frozenset({"a"})
        assert registry._table is before

    def test_add_extends(self, registry):
        """Test add_permissions() extends the current set."""
        registry.set_permissions("m", ["a"])
        registry.add_permissions("m", ["b"])
        assert registry.get_permissions("m") == frozenset({"a", "b"})

    def test_add_to_new_module(self, registry):
        """Test add_permissions() creates an unknown module."""
        registry.add_permissions("new", ["c"])
        assert registry.has_permission("new", "c")

    def test_remove_permissions(self, registry):
        """Test remove_permissions() revokes only the listed services."""
        registry.set_permissions("m", ["a", "b"])
        registry.remove_permissions("m", ["a"])
        assert not registry.has_permission("m", "a")
        assert registry.has_permission("m", "b")

    def test_remove_from_unknown_module(self, registry):
        """Test revoking from an unknown module is a no-op."""
        assert registry.remove_permissions("ghost", ["a"]) == frozenset()

    def test_remove_module(self, registry):
        """Test removing a module and removing it twice."""
        registry.set_permissions("m", ["a"])
        assert registry.remove_module("m") is True
        assert registry.remove_module("m") is False
        assert not registry.has_permission("m", "a")

    def test_unknown_module_has_no_access(self, registry):
        """Test unknown modules are denied."""
        assert registry.has_permission("ghost", "a") is False
        assert registry.get_permissions("ghost") == frozenset()

    def test_snapshot_unaffected_by_later_writes(self, registry):
        """Test a table snapshot does not change after writes."""
        registry.set_permissions("m", ["a"])
        snapshot = registry._table
        registry.set_permissions("m", ["b"])
        assert snapshot["m"] == frozenset({"a"})


class TestDefaultPolicy:
    """The least-privilege default table."""

    def test_weather_module_cannot_read_mapbox(self):
        """Test weather-module only reads weatherService."""
        registry = PermissionRegistry()
        assert registry.has_permission("weather-module", "weatherService")
        assert not registry.has_permission("weather-module", "mapbox")

    def test_map_module_reads_mapbox(self):
        """Test map-module reads mapbox."""
        registry = PermissionRegistry()
        assert registry.has_permission("map-module", "mapbox")

    def test_admin_has_every_service(self):
        """Test the admin module is granted every known service."""
        registry = PermissionRegistry(services=["extra"])
        known = {s for granted in DEFAULT_PERMISSIONS.values() for s in granted}
        assert registry.get_permissions(ADMIN_MODULE) == frozenset(known | {"extra"})

    def test_register_service_grants_admin(self):
        """Test a registered service is granted to admin only."""
        registry = PermissionRegistry()
        registry.register_service("newService")
        assert registry.has_permission(ADMIN_MODULE, "newService")
        assert not registry.has_permission("map-module", "newService")

    def test_unregister_service(self):
        """Test an unregistered service is revoked from every module."""
        registry = PermissionRegistry()
        registry.unregister_service("mapbox")
        assert registry.get_modules_with_access("mapbox") == []


class TestReports:
    """Reverse index and reports."""

    def test_modules_with_access(self):
        """Test the reverse index is sorted."""
        registry = PermissionRegistry()
        assert registry.get_modules_with_access("mapbox") == [ADMIN_MODULE, "map-module"]

    def test_permissions_report(self, registry):
        """Test the report holds the table and its reverse index."""
        registry.set_permissions("m1", ["a"])
        registry.set_permissions("m2", ["a", "b"])
        report = registry.generate_permissions_report()
        assert report["modules"]["m1"] == ["a"]
        assert report["modules"]["m2"] == ["a", "b"]
        assert report["services"]["a"] == [ADMIN_MODULE, "m1", "m2"]
        assert report["services"]["c"] == [ADMIN_MODULE]
        assert report["admin_module"] == ADMIN_MODULE
