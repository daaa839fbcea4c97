"""
Tests for KeyRotationManager and credential records.

Tests cover:
- Active / Retiring / Revoked key states and the grace window
- Replacement key selection (supplied, staged, provider) and failures
- Per-service serialization of concurrent rotations
- Schedule updates, purge of retired keys and scheduler ticks
- Rotation observers
"""
import asyncio
import itertools

import pytest
from pydantic import ValidationError

from navigator_apikeys.exceptions import KeyUnavailable, RotationFailure
from navigator_apikeys.models import KeySlot, KeyState, ServiceCredential, key_fingerprint
from navigator_apikeys.rotation import KeyRotationManager


@pytest.fixture
def rotation(clock):
    """Rotation manager with one service and a 2 second grace period."""
    manager = KeyRotationManager(rotation_interval=3600, grace_period=2.0, clock=clock)
    manager.create_credential("openRouteService", "ors-key-1")
    return manager


class TestCredentialModel:
    """Immutable credential records."""

    def test_create(self, clock):
        """Test creating a credential with a single active key."""
        credential = ServiceCredential.create("svc", "k1", clock(), 100, 10)
        assert credential.active_key == "k1"
        assert credential.active_key_id == key_fingerprint("k1")
        assert credential.retiring is None
        assert credential.next_rotation_at == clock() + 100

    def test_records_are_frozen(self, clock):
        """Test that credential records cannot be mutated."""
        credential = ServiceCredential.create("svc", "k1", clock(), 100, 10)
        with pytest.raises(ValidationError):
            credential.service_id = "other"

    def test_rotate_returns_new_record(self, clock):
        """Test rotate() leaves the original record untouched."""
        credential = ServiceCredential.create("svc", "k1", clock(), 100, 10)
        rotated = credential.rotate("k2", clock())
        assert rotated is not credential
        assert credential.active_key == "k1"
        assert rotated.active_key == "k2"
        assert rotated.retiring_key == "k1"
        assert rotated.retiring.state is KeyState.RETIRING
        assert rotated.retire_at == clock() + 10
        assert rotated.rotation_count == 1

    def test_key_state(self, clock):
        """Test the effective state of each key over time."""
        credential = ServiceCredential.create("svc", "k1", clock(), 100, 10).rotate("k2", clock())
        assert credential.key_state("k2", clock()) is KeyState.ACTIVE
        assert credential.key_state("k1", clock() + 5) is KeyState.RETIRING
        assert credential.key_state("k1", clock() + 10) is KeyState.REVOKED
        assert credential.key_state("unknown", clock()) is KeyState.REVOKED

    def test_secret_not_in_repr(self, clock):
        """Test keys are masked in repr and default JSON dumps."""
        credential = ServiceCredential.create("svc", "super-secret", clock(), 100, 10)
        assert "super-secret" not in repr(credential)
        assert "super-secret" not in str(credential.model_dump(mode="json"))

    def test_reveal_context(self, clock):
        """Test keys are dumped in clear only with the reveal context."""
        credential = ServiceCredential.create("svc", "super-secret", clock(), 100, 10)
        dumped = credential.model_dump(mode="json", context={"reveal": True})
        assert dumped["active"]["key"] == "super-secret"
        assert ServiceCredential.model_validate(dumped) == credential

    def test_retiring_slot_requires_retire_at(self, clock):
        """Test a retiring slot without retire_at is rejected."""
        with pytest.raises(ValidationError):
            KeySlot(key_id="x", key="x", created_at=clock(), state=KeyState.RETIRING)


class TestGraceWindow:
    """isValidKey around the grace window."""

    @pytest.mark.asyncio
    async def test_old_key_valid_during_grace(self, rotation, clock):
        """Test the old key is valid at 1s and revoked at 2.5s."""
        await rotation.force_rotation("openRouteService", "ors-key-2")
        clock.advance(1.0)
        assert rotation.is_valid_key("openRouteService", "ors-key-1") is True
        clock.advance(1.5)
        assert rotation.is_valid_key("openRouteService", "ors-key-1") is False

    @pytest.mark.asyncio
    async def test_grace_boundaries(self, rotation, clock):
        """Test validity one millisecond either side of the grace period."""
        await rotation.force_rotation("openRouteService", "ors-key-2")
        clock.advance(2.0 - 0.001)
        assert rotation.is_valid_key("openRouteService", "ors-key-1") is True
        clock.advance(0.002)
        assert rotation.is_valid_key("openRouteService", "ors-key-1") is False

    @pytest.mark.asyncio
    async def test_active_key_always_valid(self, rotation, clock):
        """Test the active key never expires on its own."""
        assert rotation.is_valid_key("openRouteService", "ors-key-1")
        await rotation.force_rotation("openRouteService", "ors-key-2")
        clock.advance(10_000)
        assert rotation.is_valid_key("openRouteService", "ors-key-2")

    @pytest.mark.asyncio
    async def test_only_one_retiring_key(self, rotation):
        """Test a second rotation replaces the retiring key."""
        await rotation.force_rotation("openRouteService", "ors-key-2")
        await rotation.force_rotation("openRouteService", "ors-key-3")
        credential = rotation.get_credential("openRouteService")
        assert credential.active_key == "ors-key-3"
        assert credential.retiring_key == "ors-key-2"
        assert not rotation.is_valid_key("openRouteService", "ors-key-1")

    def test_unknown_service_or_empty_key(self, rotation):
        """Test unknown services and empty keys are never valid."""
        assert rotation.is_valid_key("ghost", "x") is False
        assert rotation.is_valid_key("openRouteService", "") is False

    @pytest.mark.asyncio
    async def test_valid_keys(self, rotation, clock):
        """Test get_valid_keys() drops the retiring key after the grace period."""
        await rotation.force_rotation("openRouteService", "ors-key-2")
        assert rotation.get_valid_keys("openRouteService") == ["ors-key-2", "ors-key-1"]
        clock.advance(3)
        assert rotation.get_valid_keys("openRouteService") == ["ors-key-2"]


class TestReplacementKeys:
    """Selection of the replacement key."""

    @pytest.mark.asyncio
    async def test_staged_key_is_used(self, rotation):
        """Test a staged key is consumed by the next rotation."""
        assert await rotation.stage_key("openRouteService", "ors-staged") is True
        credential = await rotation.force_rotation("openRouteService")
        assert credential.active_key == "ors-staged"
        assert credential.staged == ()

    @pytest.mark.asyncio
    async def test_stage_duplicate_key(self, rotation):
        """Test staging an already known key is refused."""
        assert await rotation.stage_key("openRouteService", "ors-key-1") is False
        assert await rotation.stage_key("openRouteService", "ors-staged") is True
        assert await rotation.stage_key("openRouteService", "ors-staged") is False

    @pytest.mark.asyncio
    async def test_sync_key_provider(self, clock):
        """Test rotation with a synchronous key provider."""
        manager = KeyRotationManager(clock=clock, key_provider=lambda service: f"{service}-new")
        manager.create_credential("svc", "old")
        credential = await manager.force_rotation("svc")
        assert credential.active_key == "svc-new"

    @pytest.mark.asyncio
    async def test_async_key_provider(self, clock):
        """Test rotation with a coroutine key provider."""
        async def provider(service):
            return "async-new"

        manager = KeyRotationManager(clock=clock, key_provider=provider)
        manager.create_credential("svc", "old")
        assert (await manager.force_rotation("svc")).active_key == "async-new"

    @pytest.mark.asyncio
    async def test_no_replacement_key(self, rotation):
        """Test a rotation without any key fails and publishes the failure."""
        events = []
        rotation.subscribe(events.append)
        with pytest.raises(RotationFailure):
            await rotation.force_rotation("openRouteService")
        assert rotation.get_credential("openRouteService").active_key == "ors-key-1"
        assert len(events) == 1
        assert events[0].success is False
        assert events[0].error == "no replacement key available"

    @pytest.mark.asyncio
    async def test_provider_error_is_rotation_failure(self, clock):
        """Test provider exceptions surface as RotationFailure."""
        def provider(service):
            raise ConnectionError("backend down")

        manager = KeyRotationManager(clock=clock, key_provider=provider)
        manager.create_credential("svc", "old")
        with pytest.raises(RotationFailure) as exc:
            await manager.force_rotation("svc")
        assert "backend down" in exc.value.reason

    @pytest.mark.asyncio
    async def test_same_key_rejected(self, rotation):
        """Test rotating to the active key is refused."""
        with pytest.raises(RotationFailure):
            await rotation.force_rotation("openRouteService", "ors-key-1")

    @pytest.mark.asyncio
    async def test_unknown_service(self, rotation):
        """Test rotating an unknown service raises KeyUnavailable."""
        with pytest.raises(KeyUnavailable):
            await rotation.force_rotation("ghost", "k")


class TestConcurrency:
    """Single writer per service, lock-free readers."""

    @pytest.mark.asyncio
    async def test_concurrent_rotations_serialize(self, clock):
        """Test concurrent rotations apply one after the other."""
        keys = iter(["k2", "k3"])
        seen = []

        async def provider(service):
            await asyncio.sleep(0.01)
            return next(keys)

        manager = KeyRotationManager(clock=clock, key_provider=provider)
        manager.create_credential("svc", "k1")

        async def reader():
            for _ in range(20):
                credential = manager.get_credential("svc")
                seen.append((credential.active_key, credential.retiring_key))
                await asyncio.sleep(0.001)

        await asyncio.gather(
            manager.force_rotation("svc"),
            manager.force_rotation("svc"),
            reader(),
        )
        credential = manager.get_credential("svc")
        assert credential.rotation_count == 2
        assert credential.active_key == "k3"
        assert credential.retiring_key == "k2"
        assert set(seen) <= {("k1", None), ("k2", "k1"), ("k3", "k2")}

    @pytest.mark.asyncio
    async def test_services_do_not_block_each_other(self, clock):
        """Test a slow rotation does not delay another service."""
        gate = asyncio.Event()

        async def provider(service):
            if service == "slow":
                await gate.wait()
            return f"{service}-new"

        manager = KeyRotationManager(clock=clock, key_provider=provider)
        manager.create_credential("slow", "s1")
        manager.create_credential("fast", "f1")
        slow = asyncio.create_task(manager.force_rotation("slow"))
        await asyncio.sleep(0)
        fast = await asyncio.wait_for(manager.force_rotation("fast"), timeout=1)
        assert fast.active_key == "fast-new"
        assert not slow.done()
        gate.set()
        assert (await slow).active_key == "slow-new"

    @pytest.mark.asyncio
    async def test_readded_service_shares_lock(self, rotation):
        """Test a removed and re-added service keeps a single lock."""
        lock = rotation._lock_for("openRouteService")
        await rotation.remove("openRouteService")
        rotation.create_credential("openRouteService", "ors-key-9")
        assert rotation._lock_for("openRouteService") is lock

    @pytest.mark.asyncio
    async def test_rotation_queued_behind_remove(self, clock):
        """Test a rotation queued during remove() excludes rotations of the re-added service."""
        gate = asyncio.Event()
        counter = itertools.count()
        active = []
        overlaps = []

        async def provider(service):
            if active:
                overlaps.append(service)
            active.append(service)
            await gate.wait()
            await asyncio.sleep(0.01)
            active.pop()
            return f"{service}-{next(counter)}"

        manager = KeyRotationManager(clock=clock, key_provider=provider)
        manager.create_credential("svc", "k1")

        async def remove_and_readd():
            await manager.remove("svc")
            manager.create_credential("svc", "k1-again")
            return asyncio.create_task(manager.force_rotation("svc"))

        holder = asyncio.create_task(manager.force_rotation("svc"))
        await asyncio.sleep(0)
        remover = asyncio.create_task(remove_and_readd())
        queued = asyncio.create_task(manager.force_rotation("svc"))
        await asyncio.sleep(0)
        gate.set()
        readded = await remover
        await asyncio.gather(holder, queued, readded)
        assert overlaps == []
        assert manager.get_credential("svc").rotation_count == 2


class TestSchedule:
    """Schedule updates, purge and scheduler ticks."""

    @pytest.mark.asyncio
    async def test_update_rotation_config(self, rotation, clock):
        """Test rescheduling keeps the keys and recomputes the next rotation."""
        before = rotation.get_credential("openRouteService")
        updated = await rotation.update_rotation_config(
            "openRouteService", rotation_interval=60, grace_period=5,
        )
        assert updated.active_key == before.active_key
        assert updated.rotation_count == 0
        assert updated.next_rotation_at == before.created_at + 60
        assert updated.grace_period == 5

    @pytest.mark.asyncio
    async def test_invalid_rotation_config(self, rotation):
        """Test a negative rotation interval is rejected."""
        with pytest.raises(ValidationError):
            await rotation.update_rotation_config("openRouteService", rotation_interval=-1)

    @pytest.mark.asyncio
    async def test_purge_expired(self, rotation, clock):
        """Test purge_expired() drops only retiring keys past their grace period."""
        await rotation.force_rotation("openRouteService", "ors-key-2")
        assert await rotation.purge_expired() == 0
        clock.advance(3)
        assert await rotation.purge_expired() == 1
        assert rotation.get_credential("openRouteService").retiring is None

    @pytest.mark.asyncio
    async def test_check_rotations_rotates_due_services(self, clock):
        """Test a scheduler tick rotates services that are due."""
        manager = KeyRotationManager(
            rotation_interval=100, clock=clock, key_provider=lambda s: f"{s}-{clock()}",
        )
        manager.create_credential("svc", "k1")
        assert (await manager.check_rotations())["rotated"] == 0
        clock.advance(100)
        stats = await manager.check_rotations()
        assert stats["rotated"] == 1
        assert manager.get_credential("svc").next_rotation_at == clock() + 100

    @pytest.mark.asyncio
    async def test_failed_rotation_is_retried(self, rotation, clock):
        """Test a failed scheduled rotation is retried on the next tick."""
        events = []
        rotation.subscribe(events.append)
        clock.advance(3600)
        assert (await rotation.check_rotations())["failed"] == 1
        await rotation.stage_key("openRouteService", "ors-key-2")
        clock.advance(60)
        assert (await rotation.check_rotations())["rotated"] == 1
        assert [e.success for e in events] == [False, True]

    @pytest.mark.asyncio
    async def test_scheduler_task(self, clock):
        """Test the background scheduler rotates a due service."""
        manager = KeyRotationManager(
            rotation_interval=100, check_interval=0.01, clock=clock,
            key_provider=lambda s: "k2",
        )
        manager.create_credential("svc", "k1")
        clock.advance(100)
        manager.start()
        try:
            for _ in range(100):
                if manager.get_credential("svc").active_key == "k2":
                    break
                await asyncio.sleep(0.01)
            assert manager.get_credential("svc").active_key == "k2"
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_remove(self, rotation):
        """Test removing a service and removing it twice."""
        assert await rotation.remove("openRouteService") is True
        assert await rotation.remove("openRouteService") is False
        assert rotation.services() == []


class TestObservers:
    """Rotation events."""

    @pytest.mark.asyncio
    async def test_success_event(self, rotation):
        """Test observers receive the new and previous key ids."""
        events = []

        async def observer(event):
            events.append(event)

        rotation.subscribe(observer)
        await rotation.force_rotation("openRouteService", "ors-key-2")
        assert events[0].success is True
        assert events[0].key_id == key_fingerprint("ors-key-2")
        assert events[0].previous_key_id == key_fingerprint("ors-key-1")

    @pytest.mark.asyncio
    async def test_observer_errors_do_not_break_rotation(self, rotation):
        """Test a failing observer does not fail the rotation."""
        def broken(event):
            raise RuntimeError("boom")

        rotation.subscribe(broken)
        credential = await rotation.force_rotation("openRouteService", "ors-key-2")
        assert credential.active_key == "ors-key-2"

    @pytest.mark.asyncio
    async def test_unsubscribe(self, rotation):
        """Test unsubscribed observers receive nothing."""
        events = []
        rotation.subscribe(events.append)
        rotation.unsubscribe(events.append)
        await rotation.force_rotation("openRouteService", "ors-key-2")
        assert events == []
