"""SQLite storage for user metadata."""

from __future__ import annotations

import sqlite3
import struct
import threading
from dataclasses import dataclass
from typing import Optional

from proxytunnel.statistic.statistics import StatisticError, UserMetadata

_MASK = (1 << 64) - 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    hash TEXT PRIMARY KEY,
    sent TEXT,
    recv TEXT,
    max_ip_num INTEGER,
    send_limit INTEGER,
    recv_limit INTEGER
)
"""

_COLUMNS = "hash, sent, recv, max_ip_num, send_limit, recv_limit"


def _encode_counter(value: int) -> bytes:
    # counters are kept as 8-byte big-endian values
    return struct.pack(">Q", value & _MASK)


def _decode_counter(raw: Optional[object]) -> int:
    if raw is None:
        return 0
    data = raw.encode("latin-1") if isinstance(raw, str) else bytes(raw)
    if len(data) < 8:
        raise StatisticError(f"corrupt traffic counter of {len(data)} bytes")
    return struct.unpack(">Q", data[:8])[0]


@dataclass
class StoredUser:
    """A user as kept in the database."""

    hash: str
    sent: int = 0
    recv: int = 0
    max_ip_num: int = 0
    send_limit: int = 0
    recv_limit: int = 0

    def traffic(self) -> tuple[int, int]:
        return self.sent, self.recv

    def speed_limit(self) -> tuple[int, int]:
        return self.send_limit, self.recv_limit

    def ip_limit(self) -> int:
        return self.max_ip_num


def _row_to_user(row: tuple) -> StoredUser:
    hash_, sent, recv, max_ip, send_limit, recv_limit = row
    return StoredUser(
        hash=hash_,
        sent=_decode_counter(sent),
        recv=_decode_counter(recv),
        max_ip_num=max_ip or 0,
        send_limit=send_limit or 0,
        recv_limit=recv_limit or 0,
    )


class SqlitePersistencer:
    """Keeps users in a SQLite database file."""

    def __init__(self, path: str) -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute(_SCHEMA)

    def save_user(self, user: Optional[UserMetadata]) -> None:
        if user is None:
            raise StatisticError("user is None")
        sent, recv = user.traffic()
        send_limit, recv_limit = user.speed_limit()
        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(hash) DO UPDATE SET sent = excluded.sent, recv = excluded.recv, "
                "max_ip_num = excluded.max_ip_num, send_limit = excluded.send_limit, "
                "recv_limit = excluded.recv_limit",
                (user.hash, _encode_counter(sent), _encode_counter(recv),
                 user.ip_limit(), send_limit, recv_limit),
            )

    def load_user(self, hash: str) -> StoredUser:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM users WHERE hash = ? LIMIT 1", (hash,)
            ).fetchone()
        if row is None:
            raise StatisticError(f"user {hash} not found")
        return _row_to_user(row)

    def delete_user(self, hash: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM users WHERE hash = ?", (hash,))

    def list_users(self) -> list[StoredUser]:
        with self._lock:
            rows = self._conn.execute(f"SELECT {_COLUMNS} FROM users").fetchall()
        return [_row_to_user(row) for row in rows]

    def update_user_traffic(self, hash: str, sent: int, recv: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE users SET sent = ?, recv = ? WHERE hash = ?",
                (_encode_counter(sent), _encode_counter(recv), hash),
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SqlitePersistencer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()