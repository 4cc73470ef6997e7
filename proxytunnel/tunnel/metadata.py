"""Request metadata and the SOCKS5-style address encoding used on the wire."""

from __future__ import annotations

import enum
import ipaddress
import re
import socket
import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_PORT_RE = re.compile(r"[+-]?\d+")
_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1


class TunnelError(Exception):
    """Raised when tunnel data cannot be parsed, encoded or delivered."""


class AddressType(enum.IntEnum):
    IPV4 = 1
    DOMAIN_NAME = 3
    IPV6 = 4


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = reader.read(size - len(data))
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {len(data)}")
        data += chunk
    return data


def _parse_ip(text: str) -> Optional[IPAddress]:
    if "%" in text:
        return None
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise TunnelError(f"missing ']' in address {addr}")
        host, rest = addr[1:end], addr[end + 1:]
        if not rest.startswith(":"):
            raise TunnelError(f"missing port in address {addr}")
        return host, rest[1:]
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise TunnelError(f"missing port in address {addr}")
    if ":" in host:
        raise TunnelError(f"too many colons in address {addr}")
    return host, port


@dataclass
class Address:
    """A destination: an IP address or a domain name, with a port."""

    address_type: int
    domain_name: str = ""
    ip: Optional[IPAddress] = None
    port: int = 0
    network: str = ""

    def __post_init__(self) -> None:
        try:
            self.address_type = AddressType(self.address_type)
        except ValueError:
            pass

    def __str__(self) -> str:
        if self.address_type == AddressType.IPV4:
            return f"{self.ip}:{self.port}"
        if self.address_type == AddressType.IPV6:
            return f"[{self.ip}]:{self.port}"
        if self.address_type == AddressType.DOMAIN_NAME:
            return f"{self.domain_name}:{self.port}"
        return "INVALID_ADDRESS_TYPE"

    def resolve_ip(self) -> Optional[IPAddress]:
        """Return the IP, resolving and caching it for a domain name."""
        if self.address_type in (AddressType.IPV4, AddressType.IPV6):
            return self.ip
        if self.ip is not None:
            return self.ip
        try:
            infos = socket.getaddrinfo(self.domain_name, None)
        except (OSError, UnicodeError) as exc:
            raise TunnelError(f"failed to resolve {self.domain_name}") from exc
        candidates = [_parse_ip(str(info[4][0])) for info in infos]
        candidates = [ip for ip in candidates if ip is not None]
        if not candidates:
            raise TunnelError(f"no address found for {self.domain_name}")
        ipv4 = [ip for ip in candidates if ip.version == 4]
        self.ip = (ipv4 or candidates)[0]
        return self.ip

    @classmethod
    def from_host_port(cls, network: str, host: str, port: int) -> "Address":
        ip = _parse_ip(host)
        if ip is None:
            return cls(AddressType.DOMAIN_NAME, domain_name=host, port=port, network=network)
        kind = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
        return cls(kind, ip=ip, port=port, network=network)

    @classmethod
    def from_addr(cls, network: str, addr: str) -> "Address":
        host, port_text = _split_host_port(addr)
        if not _PORT_RE.fullmatch(port_text):
            raise TunnelError(f"invalid port {port_text!r} in address {addr}")
        port = int(port_text)
        if not _INT32_MIN <= port <= _INT32_MAX:
            raise TunnelError(f"port out of range in address {addr}")
        return cls.from_host_port(network, host, port)

    @classmethod
    def read_from(cls, reader: BinaryIO) -> "Address":
        """Decode one address (ATYP, address, port) from a binary stream."""
        try:
            atyp = _read_exact(reader, 1)[0]
        except EOFError as exc:
            raise TunnelError("unable to read ATYP") from exc
        if atyp == AddressType.IPV4:
            try:
                buf = _read_exact(reader, 6)
            except EOFError as exc:
                raise TunnelError("failed to read IPv4") from exc
            return cls(AddressType.IPV4, ip=ipaddress.IPv4Address(buf[:4]),
                       port=struct.unpack(">H", buf[4:6])[0])
        if atyp == AddressType.IPV6:
            try:
                buf = _read_exact(reader, 18)
            except EOFError as exc:
                raise TunnelError("failed to read IPv6") from exc
            return cls(AddressType.IPV6, ip=ipaddress.IPv6Address(buf[:16]),
                       port=struct.unpack(">H", buf[16:18])[0])
        if atyp == AddressType.DOMAIN_NAME:
            try:
                length = _read_exact(reader, 1)[0]
            except EOFError as exc:
                raise TunnelError("failed to read domain name length") from exc
            try:
                buf = _read_exact(reader, length + 2)
            except EOFError as exc:
                raise TunnelError("failed to read domain name") from exc
            host = buf[:length].decode("utf-8", errors="surrogateescape")
            port = struct.unpack(">H", buf[length:length + 2])[0]
            # clients sometimes send an IP literal as a domain name
            ip = _parse_ip(host)
            if ip is None:
                return cls(AddressType.DOMAIN_NAME, domain_name=host, port=port)
            kind = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
            return cls(kind, ip=ip, port=port)
        raise TunnelError(f"invalid ATYP {atyp}")

    def to_bytes(self) -> bytes:
        kind = self.address_type
        if kind == AddressType.DOMAIN_NAME:
            name = self.domain_name.encode("utf-8", errors="surrogateescape")
            if len(name) > 255:
                raise TunnelError(f"domain name too long: {self.domain_name}")
            body = bytes([len(name)]) + name
        elif kind == AddressType.IPV4:
            ip = self.ip
            if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
                ip = ip.ipv4_mapped
            if not isinstance(ip, ipaddress.IPv4Address):
                raise TunnelError(f"not an IPv4 address: {self.ip}")
            body = ip.packed
        elif kind == AddressType.IPV6:
            if isinstance(self.ip, ipaddress.IPv4Address):
                body = b"\x00" * 10 + b"\xff\xff" + self.ip.packed
            elif isinstance(self.ip, ipaddress.IPv6Address):
                body = self.ip.packed
            else:
                raise TunnelError(f"not an IPv6 address: {self.ip}")
        else:
            raise TunnelError(f"invalid ATYP {int(kind)}")
        return bytes([kind]) + body + struct.pack(">H", self.port & 0xFFFF)

    def write_to(self, writer: BinaryIO) -> None:
        writer.write(self.to_bytes())


@dataclass
class Metadata:
    """A command byte followed by a destination address."""

    address: Address
    command: int = 0

    @property
    def network(self) -> str:
        return self.address.network

    def __str__(self) -> str:
        return str(self.address)

    @classmethod
    def read_from(cls, reader: BinaryIO) -> "Metadata":
        try:
            command = _read_exact(reader, 1)[0]
        except EOFError as exc:
            raise TunnelError("unable to read command") from exc
        try:
            address = Address.read_from(reader)
        except TunnelError as exc:
            raise TunnelError("failed to marshal address") from exc
        return cls(address=address, command=command)

    def to_bytes(self) -> bytes:
        return bytes([self.command & 0xFF]) + self.address.to_bytes()

    def write_to(self, writer: BinaryIO) -> None:
        data = self.to_bytes()
        # written requests are carried over tcp by default
        self.address.network = "tcp"
        writer.write(data)