# overlaynet

Building blocks for a node on an overlay network. The package covers
configuration, a stateful firewall keyed on peer certificates, and DNS
answers about overlay hosts.

## Modules

- **`overlaynet.config`**: `Config` loads one YAML file, or a directory of
  `.yaml`/`.yml` files. Files are read in lexical order and later files win.
  Nested mappings are merged and lists are appended across files. Values are
  read by dotted key through `get`, `is_set`, `get_string`,
  `get_string_slice`, `get_map`, `get_int`, `get_bool` (which also accepts
  `y`/`yes`/`n`/`no`) and `get_duration`. `load_string` parses a YAML string.
  `reload_config` reloads from disk and `reload_config_string` from a string.
  Both run the callbacks added with `register_reload_callback`. Afterwards,
  `has_changed(key)` tells whether a key, or everything for `""`, differs from
  the settings before the reload. `catch_hup` installs a `SIGHUP` handler that
  reloads, and returns a function that restores the previous handler.
  `parse_duration` parses durations such as `"1h30m"` or `"300ms"` into a
  `timedelta`. Missing files and unparsable YAML raise `ConfigError`.
- **`overlaynet.packet`**: `Packet` is the frozen flow tuple: local and remote
  IPv4 address, local and remote port, protocol, fragment flag. Its
  `to_dict` and `to_json` methods describe it. `new_conntrack_cache_ticker(interval)`
  starts a background thread that advances a `ConntrackCacheTicker` every
  `interval`; an interval of zero returns `None`. `ConntrackCacheTicker.get()`
  returns a set of flows that is emptied whenever the ticker has advanced.
- **`overlaynet.firewall_rules`**: the rule tables. `Certificate` holds the
  parts of a peer certificate that the firewall reads. `CAPool` maps CA
  fingerprints to names. `FirewallRule`, `FirewallCA`, `PortTable` and
  `FirewallTable` match flows by protocol, port, group set, host name, CIDR
  and issuing CA. `parse_port` understands `any`, `fragment`, a single port
  and `start-end`. `add_firewall_rules_from_config` reads
  `firewall.inbound` or `firewall.outbound` and raises `FirewallConfigError`
  for malformed rules.
- **`overlaynet.firewall`**: `Firewall` combines inbound and outbound tables
  with connection tracking. `Firewall.drop` returns when a packet may pass. It
  raises `InvalidRemoteIP`, `InvalidLocalIP` or `NoMatchingRule`, all
  subclasses of `DropError`, when the packet must be dropped. A tracked flow
  is re-checked against the current rules when `rules_version` changes.
  `rule_hash()` is a SHA-256 digest of the rules added. `stats()` reports the
  conntrack size, the rules version and the drop counters. For TCP,
  `set_tcp_rtt_tracking` and `Firewall.check_tcp_rtt` sample round-trip times
  into `tcp_rtt_samples`.
- **`overlaynet.dns_records`**: `DnsRecords` holds name-to-address records.
  Given a `cert_lookup` function, it also describes the certificate of an
  overlay address. `handle_request(records, request, remote_ip)` builds the
  reply to a `dns.message.Message`. It answers A queries from the records.
  It answers TXT queries with certificate details, but only when the asker is
  inside `vpn_cidr` or is `127.0.0.1`. `server_address(config)` gives the
  `host:port` from `lighthouse.dns.host` and `lighthouse.dns.port` (default 53).

## Installation

```
pip install .
```

## Configuration example

```python
from datetime import timedelta
from overlaynet.config import Config

config = Config()
config.load_string("""
firewall:
  conntrack:
    tcp_timeout: 12m
  inbound:
    - port: 443
      proto: tcp
      groups: [web, prod]
  outbound:
    - port: any
      proto: any
      host: any
""")

config.get_duration("firewall.conntrack.tcp_timeout", timedelta(0))  # timedelta(seconds=720)
config.get_int("lighthouse.dns.port", 53)                             # 53
```

## Firewall example

```python
from overlaynet.firewall import Firewall, HostInfo, NoMatchingRule
from overlaynet.firewall_rules import CAPool, Certificate
from overlaynet.packet import Packet, PROTO_TCP

local_cert = Certificate(name="me", ips=["10.1.0.1/24"])
firewall = Firewall.from_config(local_cert, config)

peer_cert = Certificate(name="peer", ips=["10.1.0.2/24"], groups=["web", "prod"])
peer = HostInfo(vpn_ip="10.1.0.2", cert=peer_cert)
peer.create_remote_cidr(peer_cert)

packet = Packet(local_ip="10.1.0.1", remote_ip="10.1.0.2",
                local_port=443, remote_port=50000, protocol=PROTO_TCP)
try:
    firewall.drop(b"", packet, True, peer, CAPool(), None)  # passes and is tracked
except NoMatchingRule:
    ...
```

Compare `firewall.rule_hash()` before and after a configuration reload to
see whether the rule set changed.

## DNS example

```python
import dns.message
from overlaynet.dns_records import DnsRecords, handle_request

records = DnsRecords(vpn_cidr="10.1.0.0/24")
records.add("peer.overlay.", "10.1.0.2")

request = dns.message.make_query("peer.overlay.", "A")
reply = handle_request(records, request, "10.1.0.2")
```

## What the package does not do

The package has no command-line program. It opens no sockets: it does not
listen for DNS queries or carry tunnel traffic, because `handle_request` only
builds the reply message. It holds no host map and does no handshakes or
encryption. The caller supplies the `HostInfo` and certificate of each peer,
and `Certificate` objects are taken as given rather than parsed or verified.

## Running the tests

```
pip install .[test]
pytest
```