"""Direct outbound connections, optionally through a SOCKS5 forward proxy."""

from __future__ import annotations

import io
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Optional, Union

from proxytunnel.tunnel.metadata import Address, AddressType, Metadata, TunnelError

NAME = "FREEDOM"
MAX_PACKET_SIZE = 8 * 1024

_SOCKS_VERSION = 5
_CMD_CONNECT = 1
_CMD_UDP_ASSOCIATE = 3
_AUTH_NONE = 0
_AUTH_USER_PASS = 2
_AUTH_REJECTED = 0xFF

log = logging.getLogger(__name__)

Target = Union[Address, tuple]


@dataclass
class TCPConfig:
    prefer_ipv4: bool = False
    keep_alive: bool = True
    no_delay: bool = True


@dataclass
class ForwardProxyConfig:
    enabled: bool = False
    proxy_host: str = ""
    proxy_port: int = 0
    username: str = ""
    password: str = ""


@dataclass
class FreedomConfig:
    local_host: str = ""
    local_port: int = 0
    tcp: TCPConfig = field(default_factory=TCPConfig)
    forward_proxy: ForwardProxyConfig = field(default_factory=ForwardProxyConfig)


def _recv_exact(reader: BinaryIO, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = reader.read(size - len(data))
        if not chunk:
            raise TunnelError("connection closed during socks handshake")
        data += chunk
    return data


def _length_prefixed(data: bytes) -> bytes:
    return bytes([len(data)]) + data


def _host_of(address: Address) -> str:
    if address.address_type == AddressType.DOMAIN_NAME:
        return address.domain_name
    return str(address.ip)


def _dial_tcp(host: str, port: int, family: int = socket.AF_UNSPEC) -> socket.socket:
    last_error: Optional[OSError] = None
    for fam, kind, proto, _, sockaddr in socket.getaddrinfo(host, port, family, socket.SOCK_STREAM):
        sock = socket.socket(fam, kind, proto)
        try:
            sock.connect(sockaddr)
            return sock
        except OSError as exc:
            sock.close()
            last_error = exc
    raise last_error or OSError(f"no address found for {host}")


def _as_address(target: Target) -> Address:
    if isinstance(target, Address):
        return target
    host, port = target[0], target[1]
    return Address.from_host_port("udp", str(host), int(port))


def _peer_address(network: str, peer: tuple) -> Address:
    return Address.from_host_port(network, str(peer[0]), int(peer[1]))


def _udp_sockaddr(sock: socket.socket, ip, port: int) -> tuple:
    if sock.family == socket.AF_INET6:
        if ip.version == 4:
            return (f"::ffff:{ip}", port, 0, 0)
        return (str(ip), port, 0, 0)
    if ip.version == 6:
        mapped = ip.ipv4_mapped
        if mapped is None:
            raise TunnelError(f"cannot send to {ip} from an IPv4 socket")
        ip = mapped
    return (str(ip), port)


def _open_udp(prefer_ipv4: bool) -> socket.socket:
    if not prefer_ipv4 and socket.has_ipv6:
        try:
            sock: Optional[socket.socket] = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
        except OSError:
            sock = None
        if sock is not None:
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                sock.bind(("::", 0))
                return sock
            except OSError:
                sock.close()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("0.0.0.0", 0))
    return sock


def _socks5_negotiate(sock: socket.socket, reader: BinaryIO, username: str, password: str) -> None:
    methods = [_AUTH_NONE]
    if username:
        methods.append(_AUTH_USER_PASS)
    sock.sendall(bytes([_SOCKS_VERSION, len(methods), *methods]))
    version, method = _recv_exact(reader, 2)
    if version != _SOCKS_VERSION:
        raise TunnelError(f"unexpected socks version {version}")
    if method == _AUTH_REJECTED:
        raise TunnelError("no acceptable socks authentication method")
    if method == _AUTH_USER_PASS:
        if not username:
            raise TunnelError("socks proxy requires a username")
        frame = (
            bytes([1])
            + _length_prefixed(username.encode("utf-8"))
            + _length_prefixed(password.encode("utf-8"))
        )
        sock.sendall(frame)
        _, status = _recv_exact(reader, 2)
        if status != 0:
            raise TunnelError("socks authentication failed")
    elif method != _AUTH_NONE:
        raise TunnelError(f"unsupported socks authentication method {method}")


def _socks5_request(sock: socket.socket, reader: BinaryIO, command: int, address: Address) -> Address:
    sock.sendall(bytes([_SOCKS_VERSION, command, 0]) + address.to_bytes())
    version, reply, _ = _recv_exact(reader, 3)
    if version != _SOCKS_VERSION:
        raise TunnelError(f"unexpected socks version {version}")
    if reply != 0:
        raise TunnelError(f"socks request failed with code {reply}")
    return Address.read_from(reader)


class Conn:
    """A stream connection to the destination."""

    def __init__(self, sock: socket.socket, metadata: Optional[Metadata] = None) -> None:
        self._sock = sock
        self.metadata = metadata

    def read(self, size: int = MAX_PACKET_SIZE) -> bytes:
        return self._sock.recv(size)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self._sock.close()

    def remote_address(self) -> Address:
        return _peer_address("tcp", self._sock.getpeername())

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DirectPacketConn:
    """A UDP socket sending straight to destinations."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read_from(self, size: int = MAX_PACKET_SIZE) -> tuple[bytes, Address]:
        data, peer = self._sock.recvfrom(size)
        return data, _peer_address("udp", peer)

    def write_to(self, data: bytes, address: Target) -> int:
        target = _as_address(address)
        ip = target.resolve_ip()
        if ip is None:
            raise TunnelError(f"no IP for {target}")
        return self._sock.sendto(data, _udp_sockaddr(self._sock, ip, target.port))

    def read_with_metadata(self, size: int = MAX_PACKET_SIZE) -> tuple[bytes, Metadata]:
        data, address = self.read_from(size)
        return data, Metadata(address=address)

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        return self.write_to(payload, metadata.address)

    def local_address(self) -> Address:
        return _peer_address("udp", self._sock.getsockname())

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "DirectPacketConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SocksPacketConn:
    """UDP carried through a SOCKS5 proxy's UDP relay."""

    def __init__(self, sock: socket.socket, socks_address: Target, control: socket.socket) -> None:
        self._sock = sock
        self._control = control
        relay = _as_address(socks_address)
        ip = relay.resolve_ip()
        if ip is None:
            raise TunnelError(f"freedom recv invalid socks bind addr {relay}")
        self._relay = _udp_sockaddr(sock, ip, relay.port)

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        packet = b"\x00\x00\x00" + metadata.address.to_bytes() + payload  # RSV, FRAG
        self._sock.sendto(packet, self._relay)
        log.debug("sent udp packet to %s with metadata %s", self._relay, metadata)
        return len(payload)

    def read_with_metadata(self, size: int = MAX_PACKET_SIZE) -> tuple[bytes, Metadata]:
        data, source = self._sock.recvfrom(MAX_PACKET_SIZE)
        log.debug("recv udp packet from %s", source)
        reader = io.BytesIO(data[3:])
        try:
            address = Address.read_from(reader)
        except TunnelError as exc:
            raise TunnelError("socks5 failed to parse addr in the packet") from exc
        payload = reader.read(size)
        if not payload:
            raise TunnelError("socks5 packet carries no payload")
        return payload, Metadata(address=address)

    def close(self) -> None:
        self._control.close()
        self._sock.close()

    def __enter__(self) -> "SocksPacketConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FreedomClient:
    """Dials destinations directly or through a configured SOCKS5 proxy."""

    def __init__(self, config: Optional[FreedomConfig] = None) -> None:
        config = config if config is not None else FreedomConfig()
        self._tcp = config.tcp
        self._proxy = config.forward_proxy
        self._proxy_address = Address.from_host_port(
            "tcp", self._proxy.proxy_host, self._proxy.proxy_port
        )
        self._closed = threading.Event()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise TunnelError("freedom client closed")

    def _dial_proxy(self) -> socket.socket:
        return _dial_tcp(_host_of(self._proxy_address), self._proxy_address.port)

    def dial_conn(self, address: Address, overlay: object = None) -> Conn:
        self._check_open()
        if self._proxy.enabled:
            try:
                sock = self._dial_proxy()
            except OSError as exc:
                raise TunnelError("freedom failed to init socks dialer") from exc
            try:
                reader = sock.makefile("rb", buffering=0)
                _socks5_negotiate(sock, reader, self._proxy.username, self._proxy.password)
                _socks5_request(sock, reader, _CMD_CONNECT, address)
            except (OSError, TunnelError) as exc:
                sock.close()
                raise TunnelError(
                    f"freedom failed to dial target address via socks proxy {address}"
                ) from exc
            return Conn(sock)

        family = socket.AF_INET if self._tcp.prefer_ipv4 else socket.AF_UNSPEC
        try:
            sock = _dial_tcp(_host_of(address), address.port, family)
        except OSError as exc:
            raise TunnelError(f"freedom failed to dial {address}") from exc
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, int(self._tcp.keep_alive))
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(self._tcp.no_delay))
        return Conn(sock)

    def dial_packet(self, overlay: object = None) -> Union[DirectPacketConn, SocksPacketConn]:
        self._check_open()
        if self._proxy.enabled:
            try:
                control = self._dial_proxy()
            except OSError as exc:
                raise TunnelError("freedom failed to negotiate socks") from exc
            try:
                reader = control.makefile("rb", buffering=0)
                _socks5_negotiate(control, reader, self._proxy.username, self._proxy.password)
            except (OSError, TunnelError) as exc:
                control.close()
                raise TunnelError("freedom failed to negotiate socks") from exc
            try:
                unused_target = Address.from_host_port("udp", "1.1.1.1", 53)
                bound = _socks5_request(control, reader, _CMD_UDP_ASSOCIATE, unused_target)
            except (OSError, TunnelError) as exc:
                control.close()
                raise TunnelError("freedom failed to dial udp to socks") from exc
            try:
                udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                udp.bind(("127.0.0.1", 0))
            except OSError as exc:
                control.close()
                raise TunnelError("freedom failed to listen udp") from exc
            try:
                return SocksPacketConn(udp, bound, control)
            except TunnelError:
                udp.close()
                control.close()
                raise

        try:
            sock = _open_udp(self._tcp.prefer_ipv4)
        except OSError as exc:
            raise TunnelError("freedom failed to listen udp socket") from exc
        return DirectPacketConn(sock)

    def close(self) -> None:
        self._closed.set()

    def __enter__(self) -> "FreedomClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()