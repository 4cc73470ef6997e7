# proxytunnel

Building blocks for a layered proxy. A tunnel layer accepts or dials
connections and passes them to the layer above it. Every connection
carries a target `Metadata`. The package also keeps per-user traffic
counts and applies IP limits and speed limits.

This is a library. It does not install a command.

## Addresses and metadata

`proxytunnel.tunnel.metadata` implements the SOCKS5 address encoding. An
encoded address is an address-type byte (IPv4, domain name or IPv6),
followed by the address and then a big-endian port.

```python
from proxytunnel.tunnel.metadata import Address

addr = Address.from_host_port("tcp", "example.com", 443)
str(addr)         # "example.com:443"
addr.to_bytes()   # b"\x03\x0bexample.com\x01\xbb"

Address.from_addr("udp", "[::1]:53")   # an IPv6 address
```

`Address.read_from` and `Metadata.read_from` decode that encoding from any
object with a `read` method. They raise `TunnelError` when the input is
truncated or the address type is unknown. A domain name that is actually
an IP literal is decoded as an IPv4 or IPv6 address.

`Metadata` is a command byte followed by an address. `Address.resolve_ip`
resolves a domain name and stores the result on the address. IPv4 results
are preferred.

## Tunnel layers

| Module | What it provides |
| --- | --- |
| `proxytunnel.tunnel.freedom` | `FreedomClient` dials TCP and UDP destinations directly, or through a SOCKS5 forward proxy (`FreedomConfig`, `TCPConfig`, `ForwardProxyConfig`) |
| `proxytunnel.tunnel.router` | `RouterClient` sends each address through the underlying client (proxy), through a direct client (bypass), or rejects it (block) |
| `proxytunnel.tunnel.adapter` | `AdapterServer` listens for TCP and UDP on one port. It looks at the first byte of each connection and passes it to the SOCKS or HTTP overlay |
| `proxytunnel.tunnel.socks` | `SocksServer` handles SOCKS5 CONNECT and UDP ASSOCIATE (one `SocksPacketSession` per UDP client) |
| `proxytunnel.tunnel.http_proxy` | `HttpServer` handles HTTP CONNECT tunnels. It also forwards plain HTTP requests as `HttpForwardConn` exchanges |
| `proxytunnel.tunnel.dokodemo` | `DokodemoServer` labels every TCP connection and UDP packet it receives with one fixed target address |
| `proxytunnel.tunnel.sticky` | `StickyConn` holds back bare 8-byte SYN/FIN stream headers and sends them with the next write. It writes random padding when it closes |

Servers have `accept_conn` and `accept_packet`. Clients have `dial_conn`
and `dial_packet`. Every layer has `close`, and every layer works as a
context manager. Stream connections provide `read`, `write` and `close`.
Packet connections provide `read_with_metadata` and `write_with_metadata`.

### Routing rules

A `RouterConfig` has three rule lists: `proxy`, `bypass` and `block`.
Each rule is a string with a prefix:

- `domain:` matches the domain and its subdomains.
- `keyword:` matches any domain that contains the text.
- `full:` matches one exact name.
- `regex:` or `regexp:` matches a regular expression.
- `cidr:` matches an IP range.

`RouterConfig.from_mapping` accepts either the router section itself or a
document containing a `router` key. Keys may use dashes or underscores.

The domain strategy can be `as_is`, `ip_if_non_match` or `ip_on_demand`.
The default policy can be `proxy`, `bypass` or `block`.

`match_domain` and `match_ip` check a single target against a list of rules.
`load_codes` collects the rules that use a given prefix.

## Traffic accounting

`proxytunnel.statistic` tracks users by their password hash:

- `MemoryAuthenticator` keeps users in memory. For each user it counts sent and received bytes and measures speed once per second. A user can have an IP limit and a token-bucket speed limit (`RateLimiter`). Each password in `MemoryConfig.passwords` is added as its SHA-224 hex hash.
- `SqlitePersistencer` stores users in an SQLite file, so traffic and limits survive a restart. Set `MemoryConfig.sqlite` to a file path and `new_memory_authenticator` uses it.
- `MySQLAuthenticator` writes counted traffic to a MySQL `users` table. Received bytes go to `upload` and sent bytes go to `download`. It then reloads the users that are still under their quota; a negative quota means unlimited. Call `sync_once` to run this once, or `start` to run it every `check_rate` seconds. `connect_database` opens the connection with pymysql.

```python
from proxytunnel.statistic.memory import MemoryAuthenticator, MemoryConfig

auth = MemoryAuthenticator(MemoryConfig(), None)
auth.add_user("user-hash")
user = auth.auth_user("user-hash")
user.add_sent_traffic(100)
user.add_recv_traffic(200)
user.traffic()        # (100, 200)
user.reset_traffic()  # (100, 200); counters are now zero
auth.close()
```

A failed operation, such as adding a hash that already exists or changing
an unknown user, raises `StatisticError`.

Back-ends register themselves by name with `register_authenticator_creator`
when their module is imported: `MEMORY` is registered by
`proxytunnel.statistic.memory` and `MYSQL` by
`proxytunnel.statistic.mysql_auth`. `new_authenticator(config, name)`
creates a back-end by name. It returns the same authenticator each time it
is called with the same config object.

## What it does not do

- `geoip:` and `geosite:` rules are recognised, but the rule data files are not read. The router logs an error for each such rule and ignores it.
- There is no multiplexing session layer. `StickyConn` only coalesces headers on one connection.
- There is no command-line program, and no loader for a full configuration file. You build the layers in Python and connect them yourself.