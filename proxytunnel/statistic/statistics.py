"""User statistics interfaces and the authenticator registry."""

from __future__ import annotations

import abc
import logging
import threading
from typing import Any, Callable, Iterable, Optional, Protocol, runtime_checkable

NAME = "STATISTICS"

log = logging.getLogger(__name__)


class StatisticError(Exception):
    """Raised for unknown users, duplicate users and bad drivers."""


@runtime_checkable
class UserMetadata(Protocol):
    """What is stored about a user."""

    hash: str

    def traffic(self) -> tuple[int, int]: ...

    def speed_limit(self) -> tuple[int, int]: ...

    def ip_limit(self) -> int: ...


@runtime_checkable
class Persistencer(Protocol):
    """Storage for user metadata."""

    def save_user(self, user: UserMetadata) -> None: ...

    def load_user(self, hash: str) -> UserMetadata: ...

    def delete_user(self, hash: str) -> None: ...

    def list_users(self) -> Iterable[UserMetadata]: ...

    def update_user_traffic(self, hash: str, sent: int, recv: int) -> None: ...


class Authenticator(abc.ABC):
    """Validates user hashes and keeps their traffic accounting."""

    @abc.abstractmethod
    def auth_user(self, hash: str) -> Optional[Any]:
        """Return the user for a hash, or None if it is unknown."""

    @abc.abstractmethod
    def add_user(self, hash: str) -> None: ...

    @abc.abstractmethod
    def del_user(self, hash: str) -> None: ...

    @abc.abstractmethod
    def set_user_traffic(self, hash: str, sent: int, recv: int) -> None: ...

    @abc.abstractmethod
    def set_user_speed_limit(self, hash: str, send: int, recv: int) -> None: ...

    @abc.abstractmethod
    def set_user_ip_limit(self, hash: str, limit: int) -> None: ...

    @abc.abstractmethod
    def list_users(self) -> list: ...

    @abc.abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> "Authenticator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


Creator = Callable[[Any], Authenticator]

_lock = threading.Lock()
_creators: dict[str, Creator] = {}
_created: dict[int, tuple[Any, Authenticator]] = {}


def register_authenticator_creator(name: str, creator: Creator) -> None:
    _creators[name] = creator


def new_authenticator(config: Any, name: str) -> Authenticator:
    """Create the named authenticator, or return the one already made for this config."""
    with _lock:
        cached = _created.get(id(config))
        if cached is not None and cached[0] is config:
            log.debug("authenticator has been created: %s", name)
            return cached[1]
        creator = _creators.get(name.upper())
        if creator is None:
            raise StatisticError(f"auth driver name {name} not found")
        auth = creator(config)
        _created[id(config)] = (config, auth)
        return auth