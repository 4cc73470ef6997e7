"""Port forwarder that sends every TCP connection and UDP packet to one fixed target."""

from __future__ import annotations

import logging
import os
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional

from proxytunnel.tunnel.freedom import Conn
from proxytunnel.tunnel.metadata import Address, Metadata, TunnelError

NAME = "DOKODEMO"
MAX_PACKET_SIZE = 8 * 1024

_QUEUE_SIZE = 32
_SESSION_QUEUE_SIZE = 16
_POLL_INTERVAL = 0.2

log = logging.getLogger(__name__)


@dataclass
class DokodemoConfig:
    local_host: str = ""
    local_port: int = 0
    target_host: str = ""
    target_port: int = 0
    udp_timeout: float = 60


class DokodemoPacketConn:
    """The UDP packets of one source, all addressed to the fixed target."""

    def __init__(self, source: tuple, metadata: Metadata, server_closed: threading.Event) -> None:
        self.source = source
        self.metadata = metadata
        self._input: "queue.Queue[bytes]" = queue.Queue(_SESSION_QUEUE_SIZE)
        self._output: "queue.Queue[bytes]" = queue.Queue(_SESSION_QUEUE_SIZE)
        self._closed = threading.Event()
        self._server_closed = server_closed

    @property
    def closed(self) -> bool:
        return self._closed.is_set() or self._server_closed.is_set()

    def _feed(self, payload: bytes) -> bool:
        while not self.closed:
            try:
                self._input.put(payload, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _next_output(self, timeout: float) -> Optional[bytes]:
        try:
            return self._output.get(timeout=timeout)
        except queue.Empty:
            return None

    def read_with_metadata(self, size: int = MAX_PACKET_SIZE) -> tuple[bytes, Metadata]:
        while True:
            if self.closed:
                raise TunnelError("dokodemo packet conn closed")
            try:
                payload = self._input.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            return payload[:size], self.metadata

    def write_with_metadata(self, payload: bytes, metadata: Optional[Metadata] = None) -> int:
        data = bytes(payload)
        while True:
            if self.closed:
                raise TunnelError("dokodemo packet conn failed to write")
            try:
                self._output.put(data, timeout=_POLL_INTERVAL)
                return len(data)
            except queue.Full:
                continue

    def close(self) -> None:
        # the shared udp socket stays open
        self._closed.set()

    def __enter__(self) -> "DokodemoPacketConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DokodemoServer:
    """Listens on one port for TCP and UDP and tags everything with the target address."""

    NAME = NAME

    def __init__(self, config: Optional[DokodemoConfig] = None) -> None:
        config = config if config is not None else DokodemoConfig()
        self._target = Address.from_host_port("tcp", config.target_host, config.target_port)
        self._timeout = float(config.udp_timeout)
        try:
            infos = socket.getaddrinfo(
                config.local_host or None, config.local_port,
                socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE,
            )
            family, _, _, _, sockaddr = infos[0]
            tcp = socket.socket(family, socket.SOCK_STREAM)
        except OSError as exc:
            raise TunnelError("failed to listen tcp") from exc
        try:
            if os.name != "nt":
                tcp.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            tcp.bind(sockaddr)
            tcp.listen(128)
            tcp.settimeout(_POLL_INTERVAL)
        except OSError as exc:
            tcp.close()
            raise TunnelError("failed to listen tcp") from exc
        self.port: int = tcp.getsockname()[1]
        try:
            udp = socket.socket(family, socket.SOCK_DGRAM)
        except OSError as exc:
            tcp.close()
            raise TunnelError("failed to listen udp") from exc
        try:
            udp.bind((sockaddr[0], self.port, *sockaddr[2:]))
            udp.settimeout(_POLL_INTERVAL)
        except OSError as exc:
            udp.close()
            tcp.close()
            raise TunnelError("failed to listen udp") from exc
        self._tcp = tcp
        self._udp = udp
        self._packets: "queue.Queue[DokodemoPacketConn]" = queue.Queue(_QUEUE_SIZE)
        self._mapping: dict[tuple, DokodemoPacketConn] = {}
        self._mapping_lock = threading.Lock()
        self._closed = threading.Event()
        threading.Thread(target=self._dispatch_loop, daemon=True).start()

    def _forget(self, session: DokodemoPacketConn) -> None:
        with self._mapping_lock:
            if self._mapping.get(session.source) is session:
                del self._mapping[session.source]

    def _session_writer(self, session: DokodemoPacketConn) -> None:
        deadline = time.monotonic() + self._timeout
        while True:
            if self._closed.is_set():
                return
            if session.closed:
                self._forget(session)
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._forget(session)
                session.close()
                log.debug("closing timeout packetConn")
                return
            payload = session._next_output(min(remaining, _POLL_INTERVAL))
            if payload is None:
                continue
            try:
                self._udp.sendto(payload, session.source)
            except OSError as exc:
                log.error("dokodemo udp write error: %s", exc)
                return
            deadline = time.monotonic() + self._timeout

    def _dispatch_loop(self) -> None:
        metadata = Metadata(address=self._target)
        while True:
            try:
                data, source = self._udp.recvfrom(MAX_PACKET_SIZE)
            except socket.timeout:
                if self._closed.is_set():
                    return
                continue
            except OSError as exc:
                if not self._closed.is_set():
                    log.critical("dokodemo failed to read from udp socket: %s", exc)
                return
            log.debug("udp packet from %s", source)
            with self._mapping_lock:
                session = self._mapping.get(source)
                is_new = session is None
                if is_new:
                    session = DokodemoPacketConn(source, metadata, self._closed)
                    self._mapping[source] = session
            session._feed(data)
            if is_new:
                while not self._closed.is_set():
                    try:
                        self._packets.put(session, timeout=_POLL_INTERVAL)
                        break
                    except queue.Full:
                        continue
                threading.Thread(target=self._session_writer, args=(session,), daemon=True).start()

    def accept_conn(self, overlay: object = None) -> Conn:
        while True:
            try:
                sock, _ = self._tcp.accept()
            except socket.timeout:
                if self._closed.is_set():
                    raise TunnelError("dokodemo server closed")
                continue
            except OSError as exc:
                raise TunnelError("dokodemo failed to accept connection") from exc
            sock.settimeout(None)
            return Conn(sock, Metadata(address=self._target))

    def accept_packet(self, overlay: object = None) -> DokodemoPacketConn:
        while True:
            try:
                return self._packets.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._closed.is_set():
                    raise TunnelError("dokodemo server closed")

    def close(self) -> None:
        self._closed.set()
        self._tcp.close()
        self._udp.close()

    def __enter__(self) -> "DokodemoServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()