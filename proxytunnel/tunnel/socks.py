"""SOCKS5 server front end: CONNECT streams and UDP ASSOCIATE sessions."""

from __future__ import annotations

import io
import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from proxytunnel.tunnel.metadata import Address, Metadata, TunnelError

NAME = "SOCKS"
CONNECT = 1
ASSOCIATE = 3
MAX_PACKET_SIZE = 8 * 1024

_SOCKS_VERSION = 5
_QUEUE_SIZE = 32
_SESSION_QUEUE_SIZE = 128
_SESSION_IDLE = 5.0
_POLL_INTERVAL = 0.2
_CONNECT_REPLY = bytes([0x05, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])
_UDP_HEADER = b"\x00\x00\x00"  # RSV, FRAG

log = logging.getLogger(__name__)


@dataclass
class SocksConfig:
    local_host: str = ""
    local_port: int = 0
    udp_timeout: int = 60


def _read_exact(conn: Any, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = conn.read(size - len(data))
        if not chunk:
            raise TunnelError(f"expected {size} bytes, got {len(data)}")
        data += chunk
    return data


class _SocksConn:
    """A stream accepted by CONNECT, carrying the requested destination."""

    def __init__(self, conn: Any, metadata: Metadata) -> None:
        self._conn = conn
        self.metadata = metadata

    def read(self, size: int = MAX_PACKET_SIZE) -> bytes:
        return self._conn.read(size)

    def write(self, data: bytes) -> int:
        return self._conn.write(data)

    def close(self) -> None:
        self._conn.close()

    def remote_address(self) -> Address:
        return self._conn.remote_address()

    def __enter__(self) -> "_SocksConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SocksPacketSession:
    """The UDP packets of one client, addressed by SOCKS5 UDP headers."""

    def __init__(self, source: Address, server_closed: threading.Event) -> None:
        self.source = source
        self._input: "queue.Queue[tuple[bytes, Metadata]]" = queue.Queue(_SESSION_QUEUE_SIZE)
        self._output: "queue.Queue[tuple[bytes, Metadata]]" = queue.Queue(_SESSION_QUEUE_SIZE)
        self._closed = threading.Event()
        self._server_closed = server_closed

    @property
    def closed(self) -> bool:
        return self._closed.is_set() or self._server_closed.is_set()

    def _feed(self, payload: bytes, metadata: Metadata) -> bool:
        try:
            self._input.put_nowait((payload, metadata))
            return True
        except queue.Full:
            return False

    def _next_output(self, timeout: float) -> Optional[tuple[bytes, Metadata]]:
        try:
            return self._output.get(timeout=timeout)
        except queue.Empty:
            return None

    def read_with_metadata(self, size: int = MAX_PACKET_SIZE) -> tuple[bytes, Metadata]:
        while True:
            if self.closed:
                raise TunnelError("socks packet conn closed")
            try:
                payload, metadata = self._input.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            return payload[:size], metadata

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        item = (bytes(payload), metadata)
        while True:
            if self.closed:
                raise TunnelError("socks packet conn closed")
            try:
                self._output.put(item, timeout=_POLL_INTERVAL)
                return len(payload)
            except queue.Full:
                continue

    def close(self) -> None:
        self._closed.set()

    def __enter__(self) -> "SocksPacketSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SocksServer:
    """Speaks SOCKS5 over connections and packets taken from an underlying server."""

    NAME = NAME

    def __init__(self, config: Optional[SocksConfig], underlay: Any) -> None:
        config = config if config is not None else SocksConfig()
        try:
            self._packet_conn = underlay.accept_packet(self)
        except (OSError, TunnelError) as exc:
            raise TunnelError("socks failed to listen packet from underlying server") from exc
        self._underlay = underlay
        self._local_host = config.local_host
        self._local_port = config.local_port
        self._timeout = config.udp_timeout
        self._conns: "queue.Queue[_SocksConn]" = queue.Queue(_QUEUE_SIZE)
        self._packets: "queue.Queue[SocksPacketSession]" = queue.Queue(_QUEUE_SIZE)
        self._mapping: dict[str, SocksPacketSession] = {}
        self._mapping_lock = threading.Lock()
        self._closed = threading.Event()
        threading.Thread(target=self._accept_loop, daemon=True).start()
        threading.Thread(target=self._packet_dispatch_loop, daemon=True).start()
        log.debug("socks server created")

    def _put(self, target: queue.Queue, item: Any) -> None:
        while not self._closed.is_set():
            try:
                target.put(item, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                continue
        item.close()

    def _take(self, source: queue.Queue) -> Any:
        while True:
            try:
                return source.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._closed.is_set():
                    raise TunnelError("socks server closed")

    def _handshake(self, conn: Any) -> _SocksConn:
        try:
            version = _read_exact(conn, 1)[0]
        except TunnelError as exc:
            raise TunnelError("failed to read socks version") from exc
        if version != _SOCKS_VERSION:
            raise TunnelError(f"invalid socks version {version}")
        try:
            nmethods = _read_exact(conn, 1)[0]
        except TunnelError as exc:
            raise TunnelError("failed to read NMETHODS") from exc
        try:
            _read_exact(conn, nmethods)
        except TunnelError as exc:
            raise TunnelError("socks failed to read methods") from exc
        conn.write(b"\x05\x00")
        try:
            request = _read_exact(conn, 3)
        except TunnelError as exc:
            raise TunnelError("failed to read command") from exc
        address = Address.read_from(conn)
        return _SocksConn(conn, Metadata(address=address, command=request[1]))

    def _handle(self, conn: Any) -> None:
        try:
            socks_conn = self._handshake(conn)
        except (OSError, TunnelError) as exc:
            log.error("socks failed to handshake with client: %s", exc)
            return
        metadata = socks_conn.metadata
        log.info("socks connection metadata %s", metadata)
        if metadata.command == CONNECT:
            try:
                conn.write(_CONNECT_REPLY)
            except OSError as exc:
                log.error("socks failed to respond CONNECT: %s", exc)
                conn.close()
                return
            self._put(self._conns, socks_conn)
        elif metadata.command == ASSOCIATE:
            try:
                bound = Address.from_host_port("udp", self._local_host, self._local_port)
                conn.write(b"\x05\x00\x00" + bound.to_bytes())
                # the udp session lasts as long as this control connection
                conn.read(16)
                log.debug("socks udp session ends")
            except (OSError, TunnelError) as exc:
                log.error("socks failed to respond to associate request: %s", exc)
            finally:
                conn.close()
        else:
            log.error("unknown socks command %d", metadata.command)
            conn.close()

    def _accept_loop(self) -> None:
        while True:
            try:
                conn = self._underlay.accept_conn(self)
            except (OSError, TunnelError) as exc:
                log.error("socks accept err: %s", exc)
                return
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _session_writer(self, key: str, session: SocksPacketSession) -> None:
        try:
            deadline = time.monotonic() + _SESSION_IDLE
            while True:
                if session.closed:
                    log.info("socks udp session closed")
                    return
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log.info("socks udp session timeout, closed")
                    with self._mapping_lock:
                        if self._mapping.get(key) is session:
                            del self._mapping[key]
                    return
                item = session._next_output(min(remaining, _POLL_INTERVAL))
                if item is None:
                    continue
                payload, metadata = item
                packet = _UDP_HEADER + metadata.address.to_bytes() + payload
                try:
                    self._packet_conn.write_to(packet, session.source)
                except (OSError, TunnelError) as exc:
                    log.error("socks failed to respond packet to %s: %s", session.source, exc)
                    return
                log.debug("socks respond udp packet to %s metadata %s", session.source, metadata)
                deadline = time.monotonic() + _SESSION_IDLE
        finally:
            session.close()

    def _packet_dispatch_loop(self) -> None:
        while not self._closed.is_set():
            try:
                data, source = self._packet_conn.read_from(MAX_PACKET_SIZE)
            except socket.timeout:
                continue
            except (OSError, TunnelError):
                if self._closed.is_set():
                    log.debug("exiting")
                    return
                self._closed.wait(_POLL_INTERVAL)
                continue
            log.debug("socks recv udp packet from %s", source)
            key = str(source)
            with self._mapping_lock:
                session = self._mapping.get(key)
            if session is None:
                session = SocksPacketSession(source, self._closed)
                threading.Thread(
                    target=self._session_writer, args=(key, session), daemon=True
                ).start()
                with self._mapping_lock:
                    self._mapping[key] = session
                self._put(self._packets, session)
                log.info("socks new udp session from %s", source)
            reader = io.BytesIO(data[3:])
            try:
                address = Address.read_from(reader)
            except TunnelError as exc:
                log.error("socks failed to parse incoming packet: %s", exc)
                continue
            payload = reader.read(MAX_PACKET_SIZE)
            if not session._feed(payload, Metadata(address=address)):
                log.warning("socks udp queue full")

    def accept_conn(self, overlay: Any = None) -> _SocksConn:
        return self._take(self._conns)

    def accept_packet(self, overlay: Any = None) -> SocksPacketSession:
        return self._take(self._packets)

    def close(self) -> None:
        self._closed.set()
        self._underlay.close()

    def __enter__(self) -> "SocksServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()