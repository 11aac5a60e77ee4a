"""Identity variants: authenticated users and guest devices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


USER_PREFIX = "user:"
GUEST_PREFIX = "guest:"


@dataclass(frozen=True)
class UserIdentity:
    user_id: str

    @property
    def key(self) -> str:
        return f"{USER_PREFIX}{self.user_id}"

    @property
    def kind(self) -> str:
        return "user"

    @property
    def is_guest(self) -> bool:
        return False

    def owner_values(self) -> dict:
        """Column values for rows owned by this identity."""
        return {"user_id": self.user_id, "guest_device_id": None}

    def owner_clause(self, model: Any):
        return model.user_id == self.user_id


@dataclass(frozen=True)
class GuestIdentity:
    device_id: str

    @property
    def key(self) -> str:
        return f"{GUEST_PREFIX}{self.device_id}"

    @property
    def kind(self) -> str:
        return "guest"

    @property
    def is_guest(self) -> bool:
        return True

    def owner_values(self) -> dict:
        return {"user_id": None, "guest_device_id": self.device_id}

    def owner_clause(self, model: Any):
        return model.guest_device_id == self.device_id


Identity = Union[UserIdentity, GuestIdentity]


def normalize_device_id(value: Any) -> str:
    """Trim and bound client-generated device identifiers."""
    text = str(value or "").strip()
    return text[:128]


def identity_from_key(value: Any) -> Identity:
    """Parse `user:<id>` / `guest:<device>`; bare values are user ids."""
    text = str(value or "").strip()
    if not text:
        raise ValueError("identity key is empty")
    if text.startswith(GUEST_PREFIX):
        device_id = normalize_device_id(text[len(GUEST_PREFIX):])
        if not device_id:
            raise ValueError("guest identity is missing a device id")
        return GuestIdentity(device_id)
    if text.startswith(USER_PREFIX):
        text = text[len(USER_PREFIX):]
    if not text:
        raise ValueError("user identity is missing a user id")
    return UserIdentity(text)


def identity_for_owner(user_id: Any, guest_device_id: Any) -> Identity:
    """Rebuild the owning identity of a generation or job row."""
    if user_id:
        return UserIdentity(str(user_id))
    if guest_device_id:
        return GuestIdentity(str(guest_device_id))
    raise ValueError("row has no owning identity")
