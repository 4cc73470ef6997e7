"""Merges smux SYN/FIN frame headers into neighbouring payload writes."""

from __future__ import annotations

import logging
import queue
import random
from dataclasses import dataclass
from typing import Any

NAME = "MUX"

_MAX_PADDING = 512
# the recognisable prefix makes padding easy to spot when debugging
_PADDING = b"ABCDEF" + bytes(_MAX_PADDING + 8 - 6)
_QUEUE_SIZE = 128
_HEADER_SIZE = 8
_CMD_SYN = 0
_CMD_FIN = 1
_SMUX_VERSIONS = (1, 2)

log = logging.getLogger(__name__)


@dataclass
class MuxConfig:
    enabled: bool = False
    idle_timeout: int = 30
    concurrency: int = 8


def _drain(headers: "queue.Queue[bytes]") -> bytes:
    parts = []
    while True:
        try:
            parts.append(headers.get_nowait())
        except queue.Empty:
            return b"".join(parts)


class StickyConn:
    """Holds back bare SYN/FIN headers and sends them glued to the next write."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._syn: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
        self._fin: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)

    @property
    def metadata(self) -> Any:
        return getattr(self._conn, "metadata", None)

    def _stick(self, payload: bytes) -> bytes:
        return _drain(self._syn) + bytes(payload) + _drain(self._fin)

    def write(self, data: bytes) -> int:
        if len(data) == _HEADER_SIZE:
            if data[0] in _SMUX_VERSIONS:
                if data[1] == _CMD_SYN:
                    self._syn.put(bytes(data))
                    return _HEADER_SIZE
                if data[1] == _CMD_FIN:
                    self._fin.put(bytes(data))
                    return _HEADER_SIZE
            else:
                log.debug("other 8 bytes header")
        self._conn.write(self._stick(data))
        return len(data)

    def read(self, size: int = 8192) -> bytes:
        return self._conn.read(size)

    def close(self) -> None:
        pending = self._stick(b"")
        self.write(pending + _PADDING[:random.randrange(_MAX_PADDING)])
        self._conn.close()

    def __enter__(self) -> "StickyConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()