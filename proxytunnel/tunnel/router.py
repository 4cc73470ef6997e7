"""Rule-based routing of destinations to proxy, direct or block."""

from __future__ import annotations

import enum
import ipaddress
import logging
import queue
import re
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from proxytunnel.tunnel.freedom import DirectPacketConn, FreedomClient
from proxytunnel.tunnel.metadata import Address, AddressType, Metadata, TunnelError

NAME = "ROUTER"
MAX_PACKET_SIZE = 8 * 1024

_QUEUE_SIZE = 16
_POLL_INTERVAL = 0.2
_ERROR_BACKOFF = 0.1

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class Policy(enum.IntEnum):
    BLOCK = 0
    BYPASS = 1
    PROXY = 2


class DomainStrategy(enum.IntEnum):
    AS_IS = 0
    IP_IF_NON_MATCH = 1
    IP_ON_DEMAND = 2


class DomainRuleType(enum.IntEnum):
    PLAIN = 0
    REGEX = 1
    DOMAIN = 2
    FULL = 3


@dataclass(frozen=True)
class DomainRule:
    type: DomainRuleType
    value: str
    attributes: tuple = ()


@dataclass(frozen=True)
class CidrRule:
    ip: IPAddress
    prefix: int


_STRATEGIES = {
    "as_is": DomainStrategy.AS_IS,
    "as-is": DomainStrategy.AS_IS,
    "asis": DomainStrategy.AS_IS,
    "ip_if_non_match": DomainStrategy.IP_IF_NON_MATCH,
    "ip-if-non-match": DomainStrategy.IP_IF_NON_MATCH,
    "ipifnonmatch": DomainStrategy.IP_IF_NON_MATCH,
    "ip_on_demand": DomainStrategy.IP_ON_DEMAND,
    "ip-on-demand": DomainStrategy.IP_ON_DEMAND,
    "ipondemand": DomainStrategy.IP_ON_DEMAND,
}

_POLICIES = {
    "proxy": Policy.PROXY,
    "bypass": Policy.BYPASS,
    "block": Policy.BLOCK,
}


@dataclass
class RouterConfig:
    enabled: bool = False
    bypass: list[str] = field(default_factory=list)
    proxy: list[str] = field(default_factory=list)
    block: list[str] = field(default_factory=list)
    domain_strategy: str = "as_is"
    default_policy: str = "proxy"
    geoip: str = "geoip.dat"
    geosite: str = "geosite.dat"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RouterConfig":
        """Build a config from a mapping, either the router section or a document holding it."""
        section = data.get("router", data)
        if not isinstance(section, Mapping):
            raise TunnelError("router section must be a mapping")
        values = {str(key).replace("-", "_"): value for key, value in section.items()}
        config = cls()
        if "enabled" in values:
            config.enabled = bool(values["enabled"])
        for name in ("bypass", "proxy", "block"):
            if values.get(name) is not None:
                setattr(config, name, [str(item) for item in values[name]])
        for name in ("domain_strategy", "default_policy", "geoip", "geosite"):
            if values.get(name) is not None:
                setattr(config, name, str(values[name]))
        return config


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _as_v4(ip: IPAddress) -> Optional[ipaddress.IPv4Address]:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    return ip.ipv4_mapped


def match_domain(rules: list[DomainRule], target: str) -> bool:
    """Whether any rule matches the domain name."""
    for rule in rules:
        value = rule.value
        if rule.type == DomainRuleType.FULL:
            if value == target:
                log.debug("domain %s hit domain(full) rule: %s", target, value)
                return True
        elif rule.type == DomainRuleType.DOMAIN:
            if target.endswith(value):
                idx = target.find(value)
                if idx == 0 or target[idx - 1] == ".":
                    log.debug("domain %s hit domain rule: %s", target, value)
                    return True
        elif rule.type == DomainRuleType.PLAIN:
            if value in target:
                log.debug("domain %s hit keyword rule: %s", target, value)
                return True
        elif rule.type == DomainRuleType.REGEX:
            try:
                matched = re.search(value, target) is not None
            except re.error:
                log.error("invalid regex %s", value)
                return False
            if matched:
                log.debug("domain %s hit regex rule: %s", target, value)
                return True
        else:
            log.debug("unknown rule type: %s", rule.type)
    return False


def match_ip(rules: list[CidrRule], ip: Optional[IPAddress]) -> bool:
    """Whether any CIDR of the same IP family contains the address."""
    if ip is None:
        return False
    target_v4 = _as_v4(ip)
    for rule in rules:
        rule_v4 = _as_v4(rule.ip)
        if (rule_v4 is None) != (target_v4 is None):
            continue
        try:
            if target_v4 is not None:
                network = ipaddress.IPv4Network((rule_v4, rule.prefix), strict=False)
                if target_v4 in network:
                    return True
            else:
                network = ipaddress.IPv6Network((rule.ip, rule.prefix), strict=False)
                if ip in network:
                    return True
        except ValueError:
            continue
    return False


def load_codes(config: RouterConfig, prefix: str) -> list[tuple[str, Policy]]:
    """Rules with the given prefix, stripped, from the proxy, bypass and block lists in that order."""
    codes: list[tuple[str, Policy]] = []
    for rules, policy in ((config.proxy, Policy.PROXY),
                          (config.bypass, Policy.BYPASS),
                          (config.block, Policy.BLOCK)):
        for rule in rules:
            if not rule.startswith(prefix):
                continue
            rest = rule[len(prefix):]
            if rest:
                codes.append((rest, policy))
            else:
                log.warning("invalid empty rule: %s", rule)
    return codes


def _resolved_ip(address: Address) -> Optional[IPAddress]:
    try:
        return address.resolve_ip()
    except TunnelError as exc:
        log.debug("router failed to resolve ip: %s", exc)
        return None


def _listen_udp() -> socket.socket:
    if socket.has_ipv6:
        try:
            sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
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


class RouterClient:
    """Sends each destination to the underlying tunnel, directly, or nowhere."""

    def __init__(self, config: RouterConfig, underlay: Any,
                 direct: Optional[FreedomClient] = None) -> None:
        strategy = _STRATEGIES.get(config.domain_strategy.lower())
        if strategy is None:
            raise TunnelError(f"unknown strategy: {config.domain_strategy}")
        policy = _POLICIES.get(config.default_policy.lower())
        if policy is None:
            raise TunnelError(f"unknown strategy: {config.default_policy}")
        self.domain_strategy = strategy
        self.default_policy = policy
        self.domains: dict[Policy, list[DomainRule]] = {p: [] for p in Policy}
        self.cidrs: dict[Policy, list[CidrRule]] = {p: [] for p in Policy}
        self._underlay = underlay
        self._direct = direct if direct is not None else FreedomClient()
        self._load_rules(config)
        log.info("router client created")

    def _load_rules(self, config: RouterConfig) -> None:
        for code, _ in load_codes(config, "geoip:"):
            log.error("geoip:%s could not be loaded from %s: geodata is not supported",
                      code, config.geoip)
        for code, _ in load_codes(config, "geosite:"):
            at = code.find("@")
            if at == 0 or (at > 0 and code.endswith("@")):
                log.warning("geosite:%s invalid", code)
                continue
            log.error("geosite:%s could not be loaded from %s: geodata is not supported",
                      code, config.geosite)

        for code, policy in load_codes(config, "domain:"):
            self.domains[policy].append(DomainRule(DomainRuleType.DOMAIN, code.lower()))
        for code, policy in load_codes(config, "keyword:"):
            self.domains[policy].append(DomainRule(DomainRuleType.PLAIN, code.lower()))
        for prefix in ("regex:", "regexp:"):
            for code, policy in load_codes(config, prefix):
                try:
                    re.compile(code)
                except re.error as exc:
                    raise TunnelError(f"invalid regular expression: {code}") from exc
                self.domains[policy].append(DomainRule(DomainRuleType.REGEX, code))
        for code, policy in load_codes(config, "full:"):
            self.domains[policy].append(DomainRule(DomainRuleType.FULL, code.lower()))
        for code, policy in load_codes(config, "cidr:"):
            parts = code.split("/")
            if len(parts) != 2:
                raise TunnelError(f"invalid cidr: {code}")
            ip = _parse_ip(parts[0])
            if ip is None:
                raise TunnelError(f"invalid cidr ip: {code}")
            try:
                prefix = int(parts[1])
            except ValueError as exc:
                raise TunnelError("invalid prefix") from exc
            self.cidrs[policy].append(CidrRule(ip, prefix))

    def _match_cidrs(self, ip: Optional[IPAddress]) -> Optional[Policy]:
        for policy in Policy:
            if match_ip(self.cidrs[policy], ip):
                return policy
        return None

    def route(self, address: Address) -> Policy:
        """The policy for a destination."""
        if address.address_type == AddressType.DOMAIN_NAME:
            if self.domain_strategy == DomainStrategy.IP_ON_DEMAND:
                hit = self._match_cidrs(_resolved_ip(address))
                if hit is not None:
                    return hit
            for policy in Policy:
                if match_domain(self.domains[policy], address.domain_name):
                    return policy
            if self.domain_strategy == DomainStrategy.IP_IF_NON_MATCH:
                hit = self._match_cidrs(_resolved_ip(address))
                if hit is not None:
                    return hit
        else:
            hit = self._match_cidrs(address.ip)
            if hit is not None:
                return hit
        return self.default_policy

    def dial_conn(self, address: Address, overlay: object = None) -> Any:
        policy = self.route(address)
        if policy == Policy.PROXY:
            return self._underlay.dial_conn(address, overlay)
        if policy == Policy.BLOCK:
            raise TunnelError(f"router blocked address: {address}")
        try:
            return self._direct.dial_conn(address, self)
        except TunnelError as exc:
            raise TunnelError("router dial error") from exc

    def dial_packet(self, overlay: object = None) -> "RouterPacketConn":
        try:
            sock = _listen_udp()
        except OSError as exc:
            raise TunnelError("router failed to dial udp (direct)") from exc
        sock.settimeout(_POLL_INTERVAL)
        direct = DirectPacketConn(sock)
        try:
            proxy = self._underlay.dial_packet(overlay)
        except Exception as exc:
            direct.close()
            raise TunnelError("router failed to dial udp (proxy)") from exc
        return RouterPacketConn(self, direct, proxy)

    def close(self) -> None:
        self._direct.close()
        self._underlay.close()

    def __enter__(self) -> "RouterClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RouterPacketConn:
    """UDP whose packets go through the proxy or straight out, by route."""

    def __init__(self, router: RouterClient, direct: DirectPacketConn, proxy: Any) -> None:
        self._router = router
        self._direct = direct
        self._proxy = proxy
        self._packets: "queue.Queue[tuple[bytes, Metadata]]" = queue.Queue(_QUEUE_SIZE)
        self._closed = threading.Event()
        threading.Thread(target=self._proxy_loop, daemon=True).start()
        threading.Thread(target=self._direct_loop, daemon=True).start()

    def _deliver(self, packet: tuple[bytes, Metadata]) -> None:
        while not self._closed.is_set():
            try:
                self._packets.put(packet, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def _proxy_loop(self) -> None:
        while not self._closed.is_set():
            try:
                packet = self._proxy.read_with_metadata(MAX_PACKET_SIZE)
            except Exception as exc:  # any proxy failure is retried until closed
                if self._closed.is_set():
                    return
                log.error("router packetConn error %s", exc)
                self._closed.wait(_ERROR_BACKOFF)
                continue
            self._deliver(packet)

    def _direct_loop(self) -> None:
        while not self._closed.is_set():
            try:
                packet = self._direct.read_with_metadata(MAX_PACKET_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if self._closed.is_set():
                    return
                log.error("router packetConn error %s", exc)
                self._closed.wait(_ERROR_BACKOFF)
                continue
            self._deliver(packet)

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        policy = self._router.route(metadata.address)
        if policy == Policy.PROXY:
            return self._proxy.write_with_metadata(payload, metadata)
        if policy == Policy.BLOCK:
            raise TunnelError(f"router blocked address (udp): {metadata.address}")
        try:
            metadata.address.resolve_ip()
        except TunnelError as exc:
            raise TunnelError("router failed to resolve udp address") from exc
        return self._direct.write_to(payload, metadata.address)

    def read_with_metadata(self, size: int = MAX_PACKET_SIZE) -> tuple[bytes, Metadata]:
        while True:
            try:
                payload, metadata = self._packets.get(timeout=_POLL_INTERVAL)
                return payload[:size], metadata
            except queue.Empty:
                if self._closed.is_set():
                    raise EOFError("router packet conn closed")

    def close(self) -> None:
        self._closed.set()
        try:
            self._proxy.close()
        finally:
            self._direct.close()

    def __enter__(self) -> "RouterPacketConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()