"""In-memory user accounting with optional SQLite persistence."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from proxytunnel.statistic.sqlite_store import SqlitePersistencer
from proxytunnel.statistic.statistics import (
    Authenticator,
    Persistencer,
    StatisticError,
    register_authenticator_creator,
)

NAME = "MEMORY"

SPEED_INTERVAL = 1.0
TRAFFIC_SYNC_INTERVAL = 10.0

_MASK = (1 << 64) - 1

log = logging.getLogger(__name__)


@dataclass
class MemoryConfig:
    passwords: list[str] = field(default_factory=list)
    sqlite: str = ""


class RateLimiter:
    """Token bucket allowing `rate` tokens per second with bursts up to `burst`."""

    def __init__(self, rate: float, burst: int) -> None:
        self.rate = float(rate)
        self.burst = int(burst)
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def _advance(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    def wait(self, n: int, cancelled: Optional[threading.Event] = None) -> bool:
        """Block until n tokens are available; False if n exceeds the burst or on cancel."""
        if n > self.burst:
            return False
        if cancelled is not None and cancelled.is_set():
            return False
        with self._lock:
            self._advance(time.monotonic())
            self._tokens -= n
            delay = -self._tokens / self.rate if self._tokens < 0 else 0.0
        if delay <= 0:
            return True
        if cancelled is None:
            time.sleep(delay)
            return True
        if cancelled.wait(delay):
            with self._lock:
                self._tokens = min(float(self.burst), self._tokens + n)
            return False
        return True


class MemoryUser:
    """A user's traffic counters, speed and IP limits."""

    def __init__(self, hash: str) -> None:
        self.hash = hash
        self._lock = threading.Lock()
        self._sent = 0
        self._recv = 0
        self._last_sent = 0
        self._last_recv = 0
        self._send_speed = 0
        self._recv_speed = 0
        self._max_ip = 0
        self._ips: set[str] = set()
        self._send_limiter: Optional[RateLimiter] = None
        self._recv_limiter: Optional[RateLimiter] = None
        self._stop = threading.Event()

    def close(self) -> None:
        self.reset_traffic()
        self._stop.set()

    def _halt(self) -> None:
        self._stop.set()

    def add_ip(self, ip: str) -> bool:
        with self._lock:
            if self._max_ip <= 0 or ip in self._ips:
                return True
            if len(self._ips) + 1 > self._max_ip:
                return False
            self._ips.add(ip)
            return True

    def del_ip(self, ip: str) -> bool:
        with self._lock:
            if self._max_ip <= 0:
                return True
            if ip not in self._ips:
                return False
            self._ips.discard(ip)
            return True

    def ip_count(self) -> int:
        with self._lock:
            return len(self._ips)

    def ip_limit(self) -> int:
        return self._max_ip

    def set_ip_limit(self, limit: int) -> None:
        self._max_ip = limit

    def add_sent_traffic(self, sent: int) -> None:
        with self._lock:
            limiter = self._send_limiter
        if limiter is not None and sent >= 0:
            limiter.wait(sent, self._stop)
        with self._lock:
            self._sent = (self._sent + sent) & _MASK

    def add_recv_traffic(self, recv: int) -> None:
        with self._lock:
            limiter = self._recv_limiter
        if limiter is not None and recv >= 0:
            limiter.wait(recv, self._stop)
        with self._lock:
            self._recv = (self._recv + recv) & _MASK

    def set_speed_limit(self, send: int, recv: int) -> None:
        with self._lock:
            self._send_limiter = RateLimiter(send, send * 2) if send > 0 else None
            self._recv_limiter = RateLimiter(recv, recv * 2) if recv > 0 else None

    def speed_limit(self) -> tuple[int, int]:
        with self._lock:
            send = int(self._send_limiter.rate) if self._send_limiter else 0
            recv = int(self._recv_limiter.rate) if self._recv_limiter else 0
        return send, recv

    def set_traffic(self, sent: int, recv: int) -> None:
        with self._lock:
            self._sent = sent & _MASK
            self._recv = recv & _MASK

    def traffic(self) -> tuple[int, int]:
        with self._lock:
            return self._sent, self._recv

    def reset_traffic(self) -> tuple[int, int]:
        with self._lock:
            sent, recv = self._sent, self._recv
            self._sent = self._recv = 0
            self._last_sent = self._last_recv = 0
        return sent, recv

    def speed(self) -> tuple[int, int]:
        with self._lock:
            return self._send_speed, self._recv_speed

    def start(self, persistencer: Optional[Persistencer] = None) -> None:
        """Start the background speed meter and, with a persistencer, traffic syncing."""
        threading.Thread(target=self._update_speed, daemon=True).start()
        if persistencer is not None:
            threading.Thread(target=self._sync_traffic, args=(persistencer,), daemon=True).start()

    def _update_speed(self) -> None:
        while not self._stop.wait(SPEED_INTERVAL):
            with self._lock:
                self._send_speed = (self._sent - self._last_sent) & _MASK
                self._recv_speed = (self._recv - self._last_recv) & _MASK
                self._last_sent = self._sent
                self._last_recv = self._recv

    def _sync_traffic(self, persistencer: Persistencer) -> None:
        last = (0, 0)
        while not self._stop.wait(TRAFFIC_SYNC_INTERVAL):
            current = self.traffic()
            if current == last:
                continue
            log.debug("Update %s traffic", self.hash)
            try:
                persistencer.update_user_traffic(self.hash, *current)
            except Exception as exc:  # storage failures must not stop the loop
                log.debug("Update user %s traffic failed: %s", self.hash, exc)
                continue
            last = current


def _sha224_hex(text: str) -> str:
    return hashlib.sha224(text.encode("utf-8")).hexdigest()


class MemoryAuthenticator(Authenticator):
    """Keeps users in memory, optionally mirrored to a persistencer."""

    def __init__(self, config: Optional[MemoryConfig] = None,
                 persistencer: Optional[Persistencer] = None) -> None:
        config = config if config is not None else MemoryConfig()
        self._users: dict[str, MemoryUser] = {}
        self._lock = threading.Lock()
        self._persistencer = persistencer
        if persistencer is not None:
            self._load_persisted(persistencer)
        for password in config.passwords:
            try:
                self.add_user(_sha224_hex(password))
            except StatisticError as exc:
                log.debug("%s", exc)
        log.debug("memory authenticator created")

    def _load_persisted(self, persistencer: Persistencer) -> None:
        try:
            stored = list(persistencer.list_users())
        except Exception as exc:  # a broken store still leaves a usable authenticator
            log.error("List user from persistencer: %s", exc)
            return
        for record in stored:
            with self._lock:
                if record.hash in self._users:
                    log.error("hash %s is already exist", record.hash)
                    continue
                user = MemoryUser(record.hash)
                user.set_ip_limit(record.ip_limit())
                user.set_speed_limit(*record.speed_limit())
                user.set_traffic(*record.traffic())
                user.start(persistencer)
                self._users[record.hash] = user

    def _persist(self, user: MemoryUser) -> None:
        if self._persistencer is None:
            return
        try:
            self._persistencer.save_user(user)
        except Exception as exc:  # persisting is best effort
            log.error("Save user %s failed: %s", user.hash, exc)

    def _get(self, hash: str) -> MemoryUser:
        with self._lock:
            user = self._users.get(hash)
        if user is None:
            raise StatisticError(f"user {hash} not found")
        return user

    def auth_user(self, hash: str) -> Optional[MemoryUser]:
        with self._lock:
            return self._users.get(hash)

    def add_user(self, hash: str) -> None:
        with self._lock:
            if hash in self._users:
                raise StatisticError(f"hash {hash} is already exist")
            user = MemoryUser(hash)
            user.start(self._persistencer)
            self._users[hash] = user
        self._persist(user)

    def del_user(self, hash: str) -> None:
        with self._lock:
            user = self._users.pop(hash, None)
        if user is None:
            raise StatisticError(f"hash {hash} not found")
        user.close()
        if self._persistencer is not None:
            try:
                self._persistencer.delete_user(hash)
            except Exception as exc:  # removal from memory already happened
                log.error("Delete user %s failed: %s", hash, exc)

    def list_users(self) -> list[MemoryUser]:
        with self._lock:
            return list(self._users.values())

    def set_user_traffic(self, hash: str, sent: int, recv: int) -> None:
        user = self._get(hash)
        user.set_traffic(sent, recv)
        self._persist(user)

    def set_user_speed_limit(self, hash: str, send: int, recv: int) -> None:
        user = self._get(hash)
        user.set_speed_limit(send, recv)
        self._persist(user)

    def set_user_ip_limit(self, hash: str, limit: int) -> None:
        user = self._get(hash)
        user.set_ip_limit(limit)
        self._persist(user)

    def close(self) -> None:
        """Stop the background workers of all users."""
        for user in self.list_users():
            user._halt()


def new_memory_authenticator(config: MemoryConfig) -> MemoryAuthenticator:
    """Build a memory authenticator, backed by SQLite when the config names a file."""
    persistencer = SqlitePersistencer(config.sqlite) if config.sqlite else None
    return MemoryAuthenticator(config, persistencer)


register_authenticator_creator(NAME, new_memory_authenticator)