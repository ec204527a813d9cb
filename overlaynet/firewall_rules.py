"""Firewall rule tables: matching flows against groups, hosts, CIDRs and CAs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from ipaddress import (
    IPv4Address,
    IPv4Interface,
    IPv4Network,
    IPv6Network,
    ip_interface,
    ip_network,
)
from typing import Any, Protocol, Union

from .config import Config, format_value
from .packet import (
    PORT_ANY,
    PORT_FRAGMENT,
    PROTO_ANY,
    PROTO_ICMP,
    PROTO_TCP,
    PROTO_UDP,
    Packet,
)

_log = logging.getLogger(__name__)

Network = Union[IPv4Network, IPv6Network]

_ANY_ADDRESS = IPv4Address("0.0.0.0")
_PORT_NUMBER = re.compile(r"[-+]?[0-9]+")
_PROTOCOLS = {"any": PROTO_ANY, "tcp": PROTO_TCP, "udp": PROTO_UDP, "icmp": PROTO_ICMP}


class FirewallConfigError(ValueError):
    """Raised when firewall rules in the configuration are malformed."""


@dataclass
class Certificate:
    """The parts of a host certificate the firewall looks at."""

    name: str = ""
    ips: list[IPv4Interface] = field(default_factory=list)
    subnets: list[Network] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)
    not_before: datetime | None = None
    not_after: datetime | None = None
    public_key: bytes = b""
    is_ca: bool = False
    issuer: str = ""

    def __post_init__(self) -> None:
        self.ips = [ip if isinstance(ip, IPv4Interface) else ip_interface(ip) for ip in self.ips]
        self.subnets = [ip_network(net, strict=False) for net in self.subnets]
        self.groups = list(self.groups)

    @property
    def inverted_groups(self) -> frozenset[str]:
        return frozenset(self.groups)


class CAPool:
    """Trusted certificate authorities, keyed by fingerprint."""

    def __init__(self) -> None:
        self._names: dict[str, str] = {}

    def add_ca(self, fingerprint: str, name: str) -> None:
        self._names[fingerprint] = name

    def get_ca_name(self, cert: Certificate) -> str | None:
        """Name of the CA that issued ``cert``, or None if it is unknown."""
        if not cert.issuer:
            return None
        return self._names.get(cert.issuer)


def _as_network(ip: Network | str | None) -> Network | None:
    if ip is None or isinstance(ip, (IPv4Network, IPv6Network)):
        return ip
    return ip_network(ip, strict=False)


@dataclass
class FirewallRule:
    """Who may pass: any, or any of the listed group sets, hosts or networks."""

    any: bool = False
    hosts: set[str] = field(default_factory=set)
    groups: list[list[str]] = field(default_factory=list)
    cidrs: list[Network] = field(default_factory=list)

    def add_rule(self, groups: list[str], host: str, ip: Network | str | None) -> None:
        if self.any:
            return
        network = _as_network(ip)
        if self._is_any(groups, host, network):
            self.any = True
            self.groups = []
            self.hosts = set()
            self.cidrs = []
            return
        if groups:
            self.groups.append(list(groups))
        if host:
            self.hosts.add(host)
        if network is not None:
            self.cidrs.append(network)

    @staticmethod
    def _is_any(groups: list[str], host: str, ip: Network | None) -> bool:
        if not groups and not host and ip is None:
            return True
        if "any" in groups or host == "any":
            return True
        return ip is not None and _ANY_ADDRESS in ip

    def match(self, packet: Packet, cert: Certificate) -> bool:
        if self.any:
            return True
        owned = cert.inverted_groups
        if any(group_set and all(g in owned for g in group_set) for group_set in self.groups):
            return True
        if cert.name in self.hosts:
            return True
        return any(packet.remote_ip in network for network in self.cidrs)


@dataclass
class FirewallCA:
    """Rules for one port, split by the CA that must have signed the peer."""

    any: FirewallRule | None = None
    ca_names: dict[str, FirewallRule] = field(default_factory=dict)
    ca_shas: dict[str, FirewallRule] = field(default_factory=dict)

    def add_rule(
        self,
        groups: list[str],
        host: str,
        ip: Network | str | None,
        ca_name: str,
        ca_sha: str,
    ) -> None:
        if not ca_sha and not ca_name:
            if self.any is None:
                self.any = FirewallRule()
            self.any.add_rule(groups, host, ip)
            return
        if ca_sha:
            self.ca_shas.setdefault(ca_sha, FirewallRule()).add_rule(groups, host, ip)
        if ca_name:
            self.ca_names.setdefault(ca_name, FirewallRule()).add_rule(groups, host, ip)

    def match(self, packet: Packet, cert: Certificate, ca_pool: CAPool | None) -> bool:
        if self.any is not None and self.any.match(packet, cert):
            return True
        by_sha = self.ca_shas.get(cert.issuer)
        if by_sha is not None and by_sha.match(packet, cert):
            return True
        if ca_pool is None:
            return False
        name = ca_pool.get_ca_name(cert)
        if name is None:
            return False
        by_name = self.ca_names.get(name)
        return by_name is not None and by_name.match(packet, cert)


class PortTable(dict[int, FirewallCA]):
    """Rules keyed by port; port 0 means any port and -1 means fragments."""

    def add_rule(
        self,
        start_port: int,
        end_port: int,
        groups: list[str],
        host: str,
        ip: Network | str | None,
        ca_name: str,
        ca_sha: str,
    ) -> None:
        if start_port > end_port:
            raise ValueError("start port was lower than end port")
        for port in range(start_port, end_port + 1):
            self.setdefault(port, FirewallCA()).add_rule(groups, host, ip, ca_name, ca_sha)

    def match(
        self, packet: Packet, incoming: bool, cert: Certificate, ca_pool: CAPool | None
    ) -> bool:
        if packet.fragment:
            port = PORT_FRAGMENT
        elif incoming:
            port = packet.local_port
        else:
            port = packet.remote_port
        for key in (port, PORT_ANY):
            rules = self.get(key)
            if rules is not None and rules.match(packet, cert, ca_pool):
                return True
        return False


@dataclass
class FirewallTable:
    """One direction's rules, split by protocol."""

    tcp: PortTable = field(default_factory=PortTable)
    udp: PortTable = field(default_factory=PortTable)
    icmp: PortTable = field(default_factory=PortTable)
    any_proto: PortTable = field(default_factory=PortTable)

    def port_table(self, proto: int) -> PortTable:
        tables = {
            PROTO_TCP: self.tcp,
            PROTO_UDP: self.udp,
            PROTO_ICMP: self.icmp,
            PROTO_ANY: self.any_proto,
        }
        try:
            return tables[proto]
        except KeyError:
            raise ValueError(f"unknown protocol {proto}") from None

    def match(
        self, packet: Packet, incoming: bool, cert: Certificate, ca_pool: CAPool | None
    ) -> bool:
        if self.any_proto.match(packet, incoming, cert, ca_pool):
            return True
        specific = {PROTO_TCP: self.tcp, PROTO_UDP: self.udp, PROTO_ICMP: self.icmp}.get(
            packet.protocol
        )
        return specific is not None and specific.match(packet, incoming, cert, ca_pool)


@dataclass
class Rule:
    """A firewall rule as written in the configuration, every field as text."""

    port: str = ""
    code: str = ""
    proto: str = ""
    host: str = ""
    group: str = ""
    groups: list[str] = field(default_factory=list)
    cidr: str = ""
    ca_name: str = ""
    ca_sha: str = ""


class RuleSink(Protocol):
    def add_rule(
        self,
        incoming: bool,
        proto: int,
        start_port: int,
        end_port: int,
        groups: list[str],
        host: str,
        ip: Network | None,
        ca_name: str,
        ca_sha: str,
    ) -> Any: ...


def convert_rule(raw: Any, table: str, index: int) -> Rule:
    """Turn one configured rule mapping into a :class:`Rule`."""
    if not isinstance(raw, dict):
        raise FirewallConfigError("could not parse rule")

    def text(key: str, value: Any = None, present: bool | None = None) -> str:
        if key not in raw:
            return ""
        return format_value(raw[key])

    group_value = raw.get("group")
    if isinstance(group_value, (list, tuple)):
        if len(group_value) != 1:
            raise FirewallConfigError(
                "group should contain a single value, an array with more than one entry was provided"
            )
        _log.warning(
            "%s rule #%s; group was an array with a single value, converting to simple value",
            table,
            index,
        )
        group = format_value(group_value[0])
    else:
        group = text("group")

    groups: list[str] = []
    raw_groups = raw.get("groups")
    if isinstance(raw_groups, (list, tuple)):
        groups = [format_value(item) for item in raw_groups]
    elif isinstance(raw_groups, str):
        groups = [raw_groups]
    elif raw_groups is not None:
        groups = [format_value(raw_groups)]

    return Rule(
        port=text("port"),
        code=text("code"),
        proto=text("proto"),
        host=text("host"),
        group=group,
        groups=groups,
        cidr=text("cidr"),
        ca_name=text("ca_name"),
        ca_sha=text("ca_sha"),
    )


def _port_number(text: str) -> int | None:
    return int(text) if _PORT_NUMBER.fullmatch(text) else None


def parse_port(text: str) -> tuple[int, int]:
    """Parse ``any``, ``fragment``, a single port or a ``start-end`` range."""
    if text == "any":
        return PORT_ANY, PORT_ANY
    if text == "fragment":
        return PORT_FRAGMENT, PORT_FRAGMENT
    if "-" in text:
        first, _, second = text.partition("-")
        first, second = first.strip(" "), second.strip(" ")
        if not first or not second:
            raise ValueError(f"appears to be a range but could not be parsed; `{text}`")
        start = _port_number(first)
        if start is None:
            raise ValueError(f"beginning range was not a number; `{first}`")
        end = _port_number(second)
        if end is None:
            raise ValueError(f"ending range was not a number; `{second}`")
        if start == PORT_ANY:
            end = PORT_ANY
        return start, end
    port = _port_number(text)
    if port is None:
        raise ValueError(f"was not a number; `{text}`")
    return port, port


def _parse_cidr(text: str) -> Network:
    if "/" not in text:
        raise ValueError(f"invalid CIDR address: {text}")
    try:
        return ip_network(text, strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {text}") from None


def add_firewall_rules_from_config(inbound: bool, config: Config, firewall: RuleSink) -> None:
    """Add the inbound or outbound rules in ``config`` to ``firewall``."""
    table = "firewall.inbound" if inbound else "firewall.outbound"
    rules = config.get(table)
    if rules is None:
        return
    if not isinstance(rules, list):
        raise FirewallConfigError(f"{table} failed to parse, should be an array of rules")

    for index, raw in enumerate(rules):
        prefix = f"{table} rule #{index}"
        try:
            rule = convert_rule(raw, table, index)
        except FirewallConfigError as exc:
            raise FirewallConfigError(f"{prefix}; {exc}") from exc

        if rule.code and rule.port:
            raise FirewallConfigError(f"{prefix}; only one of port or code should be provided")
        if not any((rule.host, rule.groups, rule.group, rule.cidr, rule.ca_name, rule.ca_sha)):
            raise FirewallConfigError(
                f"{prefix}; at least one of host, group, cidr, ca_name, or ca_sha must be provided"
            )

        groups = list(rule.groups)
        if rule.group:
            if groups:
                raise FirewallConfigError(
                    f"{prefix}; only one of group or groups should be defined, both provided"
                )
            groups = [rule.group]

        port_kind, port_text = ("code", rule.code) if rule.code else ("port", rule.port)
        try:
            start_port, end_port = parse_port(port_text)
        except ValueError as exc:
            raise FirewallConfigError(f"{prefix}; {port_kind} {exc}") from exc

        proto = _PROTOCOLS.get(rule.proto)
        if proto is None:
            raise FirewallConfigError(f"{prefix}; proto was not understood; `{rule.proto}`")

        cidr = None
        if rule.cidr:
            try:
                cidr = _parse_cidr(rule.cidr)
            except ValueError as exc:
                raise FirewallConfigError(f"{prefix}; cidr did not parse; {exc}") from exc

        try:
            firewall.add_rule(
                inbound, proto, start_port, end_port, groups, rule.host, cidr, rule.ca_name, rule.ca_sha
            )
        except ValueError as exc:
            raise FirewallConfigError(f"{prefix}; `{exc}`") from exc