"""Listener that sorts incoming connections between the SOCKS5 and HTTP front ends."""

from __future__ import annotations

import logging
import os
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Any, Optional

from proxytunnel.tunnel.freedom import Conn, DirectPacketConn
from proxytunnel.tunnel.metadata import TunnelError

NAME = "ADAPTER"

_QUEUE_SIZE = 32
_POLL_INTERVAL = 0.2
_SOCKS_VERSION = 5

log = logging.getLogger(__name__)


@dataclass
class AdapterConfig:
    local_host: str = ""
    local_port: int = 0


def _overlay_name(overlay: Any) -> Optional[str]:
    if isinstance(overlay, str):
        return overlay.upper()
    name = getattr(overlay, "NAME", None)
    return name.upper() if isinstance(name, str) else None


class AdapterServer:
    """Accepts TCP and UDP on one port and hands TCP to the SOCKS or HTTP overlay."""

    NAME = NAME

    def __init__(self, config: Optional[AdapterConfig] = None) -> None:
        config = config if config is not None else AdapterConfig()
        try:
            infos = socket.getaddrinfo(
                config.local_host or None, config.local_port,
                socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE,
            )
            family, _, _, _, sockaddr = infos[0]
            tcp = socket.socket(family, socket.SOCK_STREAM)
        except OSError as exc:
            raise TunnelError("adapter failed to create tcp listener") from exc
        try:
            if os.name != "nt":
                tcp.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            tcp.bind(sockaddr)
            tcp.listen(128)
            tcp.settimeout(_POLL_INTERVAL)
        except OSError as exc:
            tcp.close()
            raise TunnelError("adapter failed to create tcp listener") from exc
        self.port: int = tcp.getsockname()[1]
        try:
            udp = socket.socket(family, socket.SOCK_DGRAM)
        except OSError as exc:
            tcp.close()
            raise TunnelError("adapter failed to create udp listener") from exc
        try:
            # the udp side shares the port the tcp side ended up on
            udp.bind((sockaddr[0], self.port, *sockaddr[2:]))
            udp.settimeout(_POLL_INTERVAL)
        except OSError as exc:
            udp.close()
            tcp.close()
            raise TunnelError("adapter failed to create udp listener") from exc
        self._tcp = tcp
        self._udp = udp
        self._socks: "queue.Queue[Conn]" = queue.Queue(_QUEUE_SIZE)
        self._http: "queue.Queue[Conn]" = queue.Queue(_QUEUE_SIZE)
        self._lock = threading.Lock()
        self._next_socks = False
        self._closed = threading.Event()
        log.info("adapter listening on tcp/udp: %s:%d", config.local_host, self.port)
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _deliver(self, target: "queue.Queue[Conn]", conn: Conn) -> None:
        while not self._closed.is_set():
            try:
                target.put(conn, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                continue
        conn.close()

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                sock, _ = self._tcp.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._closed.is_set():
                    log.debug("exiting")
                    return
                self._closed.wait(_POLL_INTERVAL)
                continue
            sock.settimeout(None)
            try:
                head = sock.recv(3, socket.MSG_PEEK)
            except OSError as exc:
                log.error("failed to detect proxy protocol type: %s", exc)
                sock.close()
                continue
            if not head:
                log.error("failed to detect proxy protocol type: connection closed")
                sock.close()
                continue
            with self._lock:
                to_socks = head[0] == _SOCKS_VERSION and self._next_socks
            if to_socks:
                log.debug("socks5 connection")
                self._deliver(self._socks, Conn(sock))
            else:
                log.debug("http connection")
                self._deliver(self._http, Conn(sock))

    def _take(self, source: "queue.Queue[Conn]") -> Conn:
        while True:
            try:
                return source.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._closed.is_set():
                    raise TunnelError("adapter closed")

    def accept_conn(self, overlay: Any) -> Conn:
        """Next connection for the overlay, named "HTTP" or "SOCKS" or carrying such a NAME."""
        name = _overlay_name(overlay)
        if name == "HTTP":
            return self._take(self._http)
        if name == "SOCKS":
            with self._lock:
                self._next_socks = True
            return self._take(self._socks)
        raise ValueError(f"invalid overlay: {overlay!r}")

    def accept_packet(self, overlay: Any = None) -> DirectPacketConn:
        return DirectPacketConn(self._udp)

    def close(self) -> None:
        self._closed.set()
        self._tcp.close()
        self._udp.close()

    def __enter__(self) -> "AdapterServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()