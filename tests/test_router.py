import ipaddress
import socket

import pytest

from proxytunnel.tunnel.metadata import Address, AddressType, Metadata, TunnelError
from proxytunnel.tunnel.router import (
    CidrRule,
    DomainRule,
    DomainRuleType,
    DomainStrategy,
    Policy,
    RouterClient,
    RouterConfig,
    load_codes,
    match_domain,
    match_ip,
)


class MockPacketConn:
    def __init__(self):
        self.closed = False

    def write_with_metadata(self, payload, metadata):
        raise TunnelError("mockproxy")

    def read_with_metadata(self, size=8192):
        raise TunnelError("mockproxy")

    def close(self):
        self.closed = True


class MockClient:
    def __init__(self):
        self.closed = False

    def dial_conn(self, address, overlay=None):
        raise TunnelError("mockproxy")

    def dial_packet(self, overlay=None):
        return MockPacketConn()

    def close(self):
        self.closed = True


ROUTER_DATA = {
    "router": {
        "enabled": True,
        "bypass": ["regex:bypassreg(.*)", "full:bypassfull", "full:localhost", "domain:bypass.com"],
        "block": ["regexp:blockreg(.*)", "full:blockfull", "domain:block.com"],
        "proxy": ["regexp:proxyreg(.*)", "full:proxyfull", "domain:proxy.com", "cidr:192.168.1.1/16"],
    }
}


@pytest.fixture
def client():
    c = RouterClient(RouterConfig.from_mapping(ROUTER_DATA), MockClient())
    yield c
    c.close()


def domain(name, port=80, ip=None):
    return Address(AddressType.DOMAIN_NAME, domain_name=name, port=port, ip=ip)


@pytest.mark.parametrize("name", ["proxy.com", "proxyreg123456", "proxyfull"])
def test_proxied_domains_reach_underlay(client, name):
    with pytest.raises(TunnelError) as info:
        client.dial_conn(domain(name))
    assert str(info.value) == "mockproxy"


def test_proxied_cidr_reaches_underlay(client):
    addr = Address(AddressType.IPV4, ip=ipaddress.ip_address("192.168.123.123"), port=80)
    with pytest.raises(TunnelError) as info:
        client.dial_conn(addr)
    assert str(info.value) == "mockproxy"


def test_blocked_domain(client):
    with pytest.raises(TunnelError) as info:
        client.dial_conn(domain("block.com"))
    assert "block" in str(info.value)


def test_bypass_dials_directly(client):
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]
    try:
        conn = client.dial_conn(domain("localhost", port))
        peer, _ = server.accept()
        try:
            assert conn.write(b"ping") == 4
            assert peer.recv(4) == b"ping"
        finally:
            peer.close()
            conn.close()
    finally:
        server.close()


def test_packet_proxy_route(client):
    packet = client.dial_packet()
    try:
        meta = Metadata(address=domain("proxyfull", 8080))
        with pytest.raises(TunnelError) as info:
            packet.write_with_metadata(bytes(10), meta)
        assert str(info.value) == "mockproxy"
    finally:
        packet.close()


def test_packet_block_route(client):
    packet = client.dial_packet()
    try:
        with pytest.raises(TunnelError, match="blocked"):
            packet.write_with_metadata(b"x", Metadata(address=domain("blockfull")))
    finally:
        packet.close()


def test_packet_bypass_round_trip(client):
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", 0))
    receiver.settimeout(5)
    port = receiver.getsockname()[1]
    packet = client.dial_packet()
    try:
        target = domain("bypassfull", port, ip=ipaddress.ip_address("127.0.0.1"))
        assert packet.write_with_metadata(b"hello", Metadata(address=target)) == 5
        data, source = receiver.recvfrom(100)
        assert data == b"hello"
        receiver.sendto(b"reply", source)
        payload, meta = packet.read_with_metadata(100)
        assert payload == b"reply"
        assert meta.address.port == port
    finally:
        packet.close()
        receiver.close()


def test_read_after_close_raises_eof(client):
    packet = client.dial_packet()
    packet.close()
    with pytest.raises(EOFError):
        packet.read_with_metadata()


def test_close_closes_underlay():
    underlay = MockClient()
    RouterClient(RouterConfig(), underlay).close()
    assert underlay.closed is True


def test_route_values(client):
    assert client.route(domain("bypass.com")) == Policy.BYPASS
    assert client.route(domain("www.bypass.com")) == Policy.BYPASS
    assert client.route(domain("blockreg42")) == Policy.BLOCK
    assert client.route(domain("unlisted.org")) == Policy.PROXY


def test_default_policy_and_strategy_parsing():
    cfg = RouterConfig(default_policy="Bypass", domain_strategy="IP-IF-NON-MATCH")
    c = RouterClient(cfg, MockClient())
    assert c.default_policy == Policy.BYPASS
    assert c.domain_strategy == DomainStrategy.IP_IF_NON_MATCH


def test_ip_if_non_match_uses_resolved_ip():
    cfg = RouterConfig(domain_strategy="ip_if_non_match", block=["cidr:10.0.0.0/8"])
    c = RouterClient(cfg, MockClient())
    addr = domain("unknown.invalid", ip=ipaddress.ip_address("10.1.2.3"))
    assert c.route(addr) == Policy.BLOCK


def test_as_is_ignores_ip_for_domains():
    cfg = RouterConfig(block=["cidr:10.0.0.0/8"])
    c = RouterClient(cfg, MockClient())
    addr = domain("unknown.invalid", ip=ipaddress.ip_address("10.1.2.3"))
    assert c.route(addr) == Policy.PROXY


def test_unknown_strategy_raises():
    with pytest.raises(TunnelError, match="unknown strategy"):
        RouterClient(RouterConfig(domain_strategy="sometimes"), MockClient())


def test_unknown_policy_raises():
    with pytest.raises(TunnelError, match="unknown strategy"):
        RouterClient(RouterConfig(default_policy="maybe"), MockClient())


def test_invalid_regex_raises():
    with pytest.raises(TunnelError, match="invalid regular expression"):
        RouterClient(RouterConfig(proxy=["regex:(unclosed"]), MockClient())


@pytest.mark.parametrize("rule,message", [
    ("cidr:10.0.0.0", "invalid cidr"),
    ("cidr:notanip/8", "invalid cidr ip"),
    ("cidr:10.0.0.0/x", "invalid prefix"),
])
def test_invalid_cidr_raises(rule, message):
    with pytest.raises(TunnelError, match=message):
        RouterClient(RouterConfig(proxy=[rule]), MockClient())


def test_load_codes_order_and_empty():
    cfg = RouterConfig(proxy=["full:a", "full:"], bypass=["full:b"], block=["full:c", "domain:d"])
    assert load_codes(cfg, "full:") == [("a", Policy.PROXY), ("b", Policy.BYPASS), ("c", Policy.BLOCK)]


def test_match_domain_kinds():
    rules = [DomainRule(DomainRuleType.DOMAIN, "example.com")]
    assert match_domain(rules, "example.com")
    assert match_domain(rules, "a.example.com")
    assert not match_domain(rules, "badexample.com")
    assert match_domain([DomainRule(DomainRuleType.PLAIN, "goo")], "www.google.com")
    assert not match_domain([DomainRule(DomainRuleType.FULL, "google.com")], "www.google.com")
    assert match_domain([DomainRule(DomainRuleType.REGEX, "^ab+c$")], "abbbc")
    assert not match_domain([DomainRule(DomainRuleType.REGEX, "(")], "anything")


def test_match_ip_families():
    rules = [CidrRule(ipaddress.ip_address("192.168.1.1"), 16)]
    assert match_ip(rules, ipaddress.ip_address("192.168.200.1"))
    assert not match_ip(rules, ipaddress.ip_address("192.169.0.1"))
    assert not match_ip(rules, ipaddress.ip_address("fe80::1"))
    v6 = [CidrRule(ipaddress.ip_address("2001:db8::"), 32)]
    assert match_ip(v6, ipaddress.ip_address("2001:db8::5"))
    assert not match_ip(v6, ipaddress.ip_address("10.0.0.1"))
    assert not match_ip(rules, None)


def test_config_from_mapping_defaults_and_keys():
    cfg = RouterConfig.from_mapping({"domain-strategy": "ip_on_demand", "block": ["full:x"]})
    assert cfg.domain_strategy == "ip_on_demand"
    assert cfg.block == ["full:x"]
    assert cfg.default_policy == "proxy"
    assert cfg.geoip == "geoip.dat"