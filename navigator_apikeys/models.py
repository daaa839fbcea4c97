"""
Credential Models — immutable snapshots of a service's key material.

A ``ServiceCredential`` is never mutated: rotation, staging and purging each
return a new record, which the rotation manager swaps in with a single
reference assignment.

Security Note:
    Keys are held as ``SecretStr`` so reprs and default JSON dumps mask them.
    Plain key values are only dumped with ``context={"reveal": True}``.
"""
import hmac
import hashlib
from enum import Enum
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    SerializationInfo,
    field_serializer,
    model_validator,
)


def key_fingerprint(key: str) -> str:
    """Short, non-reversible identifier for a key, safe to log."""
    return "k_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def keys_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class KeyState(str, Enum):
    """Logical state of a key slot."""

    ACTIVE = "active"
    RETIRING = "retiring"
    REVOKED = "revoked"


class _SecretModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: str
    key: SecretStr
    created_at: float

    @field_serializer("key", when_used="json")
    def _dump_key(self, value: SecretStr, info: SerializationInfo) -> str:
        if info.context and info.context.get("reveal"):
            return value.get_secret_value()
        return str(value)

    @property
    def value(self) -> str:
        return self.key.get_secret_value()

    def matches(self, key: str) -> bool:
        return keys_equal(self.value, key)


class StagedKey(_SecretModel):
    """Replacement key waiting for the next rotation."""

    @classmethod
    def create(cls, key: str, now: float) -> "StagedKey":
        return cls(key_id=key_fingerprint(key), key=key, created_at=now)


class KeySlot(_SecretModel):
    """A key in the Active or Retiring position of a credential."""

    state: KeyState = KeyState.ACTIVE
    retire_at: Optional[float] = None

    @model_validator(mode="after")
    def validate_state(self) -> "KeySlot":
        if self.state is KeyState.RETIRING and self.retire_at is None:
            raise ValueError("a retiring key slot needs retire_at")
        if self.state is KeyState.ACTIVE and self.retire_at is not None:
            raise ValueError("an active key slot cannot have retire_at")
        return self

    def status(self, now: float) -> KeyState:
        """Effective state at ``now``: a retiring slot past ``retire_at`` is revoked."""
        if self.state is KeyState.RETIRING and now >= self.retire_at:
            return KeyState.REVOKED
        return self.state

    def retire(self, retire_at: float) -> "KeySlot":
        return self.model_copy(update={"state": KeyState.RETIRING, "retire_at": retire_at})


class ServiceCredential(BaseModel):
    """Immutable credential record for one service."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    active: KeySlot
    retiring: Optional[KeySlot] = None
    staged: tuple[StagedKey, ...] = ()
    rotation_interval: float = Field(gt=0)
    grace_period: float = Field(ge=0)
    next_rotation_at: float
    last_rotation_at: Optional[float] = None
    rotation_count: int = 0
    created_at: float

    @model_validator(mode="after")
    def validate_slots(self) -> "ServiceCredential":
        if self.active.state is not KeyState.ACTIVE:
            raise ValueError("the active slot must be in ACTIVE state")
        if self.retiring is not None and self.retiring.state is not KeyState.RETIRING:
            raise ValueError("the retiring slot must be in RETIRING state")
        return self

    @classmethod
    def create(
        cls,
        service_id: str,
        key: str,
        now: float,
        rotation_interval: float,
        grace_period: float,
    ) -> "ServiceCredential":
        return cls(
            service_id=service_id,
            active=KeySlot(key_id=key_fingerprint(key), key=key, created_at=now),
            rotation_interval=rotation_interval,
            grace_period=grace_period,
            next_rotation_at=now + rotation_interval,
            created_at=now,
        )

    # --- Accessors ---

    @property
    def active_key_id(self) -> str:
        return self.active.key_id

    @property
    def active_key(self) -> str:
        return self.active.value

    @property
    def retiring_key_id(self) -> Optional[str]:
        return self.retiring.key_id if self.retiring else None

    @property
    def retiring_key(self) -> Optional[str]:
        return self.retiring.value if self.retiring else None

    @property
    def retire_at(self) -> Optional[float]:
        return self.retiring.retire_at if self.retiring else None

    def key_state(self, key: str, now: float) -> KeyState:
        """State of ``key`` for this service at ``now``."""
        if self.active.matches(key):
            return KeyState.ACTIVE
        if self.retiring is not None and self.retiring.matches(key):
            return self.retiring.status(now)
        return KeyState.REVOKED

    def is_valid_key(self, key: str, now: float) -> bool:
        return self.key_state(key, now) is not KeyState.REVOKED

    def valid_keys(self, now: float) -> list[str]:
        keys = [self.active_key]
        if self.retiring is not None and self.retiring.status(now) is KeyState.RETIRING:
            keys.append(self.retiring.value)
        return keys

    def knows_key(self, key: str) -> bool:
        slots = [self.active, *self.staged]
        if self.retiring is not None:
            slots.append(self.retiring)
        return any(slot.matches(key) for slot in slots)

    # --- Copy-on-write transitions ---

    def stage(self, key: str, now: float) -> "ServiceCredential":
        return self.model_copy(update={"staged": (*self.staged, StagedKey.create(key, now))})

    def rotate(self, key: str, now: float) -> "ServiceCredential":
        """Return the record after rotating to ``key``.

        The current active key becomes retiring until ``now + grace_period``;
        a staged copy of ``key`` is consumed.
        """
        staged = tuple(s for s in self.staged if not s.matches(key))
        return self.model_copy(update={
            "active": KeySlot(key_id=key_fingerprint(key), key=key, created_at=now),
            "retiring": self.active.retire(now + self.grace_period),
            "staged": staged,
            "last_rotation_at": now,
            "next_rotation_at": now + self.rotation_interval,
            "rotation_count": self.rotation_count + 1,
        })

    def purge(self, now: float) -> "ServiceCredential":
        """Drop the retiring slot once its grace window is over."""
        if self.retiring is not None and self.retiring.status(now) is KeyState.REVOKED:
            return self.model_copy(update={"retiring": None})
        return self

    def reschedule(
        self,
        rotation_interval: Optional[float] = None,
        grace_period: Optional[float] = None,
    ) -> "ServiceCredential":
        interval = self.rotation_interval if rotation_interval is None else rotation_interval
        grace = self.grace_period if grace_period is None else grace_period
        anchor = self.last_rotation_at if self.last_rotation_at is not None else self.created_at
        return self.model_validate({
            **self.model_dump(),
            "rotation_interval": interval,
            "grace_period": grace,
            "next_rotation_at": anchor + interval,
        })

    def metadata(self) -> dict:
        """Schedule and grace-window metadata, without key material."""
        return {
            "service": self.service_id,
            "active_key_id": self.active_key_id,
            "retiring_key_id": self.retiring_key_id,
            "retire_at": self.retire_at,
            "staged_keys": len(self.staged),
            "rotation_interval": self.rotation_interval,
            "grace_period": self.grace_period,
            "next_rotation_at": self.next_rotation_at,
            "last_rotation_at": self.last_rotation_at,
            "rotation_count": self.rotation_count,
            "created_at": self.created_at,
        }


class RotationEvent(BaseModel):
    """Outcome of one rotation attempt, published to rotation observers."""

    model_config = ConfigDict(frozen=True)

    service: str
    success: bool
    timestamp: float
    key_id: Optional[str] = None
    previous_key_id: Optional[str] = None
    error: Optional[str] = None
