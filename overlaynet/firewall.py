"""Stateful firewall: rule tables plus connection tracking and TCP RTT sampling."""

from __future__ import annotations

import hashlib
import heapq
import itertools
import logging
import struct
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from ipaddress import IPv4Address, IPv4Network, ip_network
from typing import Callable, Iterator

from .config import Config, format_value
from .firewall_rules import (
    CAPool,
    Certificate,
    FirewallTable,
    Network,
    add_firewall_rules_from_config,
)
from .packet import PROTO_TCP, PROTO_UDP, Packet

_log = logging.getLogger(__name__)

TCP_ACK = 0x10
TCP_FIN = 0x01
_RTT_SAMPLE_SIZE = 1028


class DropError(Exception):
    """Raised when a packet must be dropped; the subclass says why."""


class InvalidRemoteIP(DropError):
    def __init__(self) -> None:
        super().__init__("remote IP is not in remote certificate subnets")


class InvalidLocalIP(DropError):
    def __init__(self) -> None:
        super().__init__("local IP is not in list of handled local IPs")


class NoMatchingRule(DropError):
    def __init__(self) -> None:
        super().__init__("no matching rule in firewall table")


@dataclass
class Conn:
    """A conntrack entry."""

    expires: float = 0.0
    sent: float = 0.0
    seq: int = 0
    incoming: bool = False
    rules_version: int = 0


@dataclass
class HostInfo:
    """The peer a packet belongs to: its overlay address and certificate."""

    vpn_ip: IPv4Address = IPv4Address(0)
    cert: Certificate | None = None
    remote_cidr: list[Network] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.vpn_ip, IPv4Address):
            self.vpn_ip = IPv4Address(self.vpn_ip)

    def create_remote_cidr(self, cert: Certificate) -> None:
        """Collect the addresses the peer may send from when it has more than one."""
        if len(cert.ips) == 1 and not cert.subnets:
            return
        networks: list[Network] = [IPv4Network(f"{ip.ip}/32") for ip in cert.ips]
        networks.extend(cert.subnets)
        self.remote_cidr = networks


@dataclass
class _DropCounters:
    local_ip: int = 0
    remote_ip: int = 0
    no_rule: int = 0


class _Conntrack:
    """Tracked flows and the deadlines at which they are re-examined."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.conns: dict[Packet, Conn] = {}
        self._deadlines: list[tuple[float, int, Packet]] = []
        self._order = itertools.count()

    def schedule(self, fp: Packet, deadline: float) -> None:
        heapq.heappush(self._deadlines, (deadline, next(self._order), fp))

    def pop_due(self, now: float) -> Iterator[Packet]:
        due = []
        while self._deadlines and self._deadlines[0][0] <= now:
            due.append(heapq.heappop(self._deadlines)[2])
        return iter(due)


def _seconds(value: timedelta) -> float:
    return value.total_seconds()


class Firewall:
    """Inbound and outbound rule tables with connection tracking."""

    def __init__(
        self,
        tcp_timeout: timedelta,
        udp_timeout: timedelta,
        default_timeout: timedelta,
        certificate: Certificate,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.conntrack = _Conntrack()
        self.in_rules = FirewallTable()
        self.out_rules = FirewallTable()
        self.tcp_timeout = tcp_timeout
        self.udp_timeout = udp_timeout
        self.default_timeout = default_timeout
        self.rules_version = 0
        self.tcp_rtt_samples: deque[int] = deque(maxlen=_RTT_SAMPLE_SIZE)
        self.incoming_drops = _DropCounters()
        self.outgoing_drops = _DropCounters()
        self._rules = ""
        self._clock = clock
        self._local_ips: list[Network] = [IPv4Network(f"{ip.ip}/32") for ip in certificate.ips]
        self._local_ips.extend(certificate.subnets)

    @classmethod
    def from_config(cls, certificate: Certificate, config: Config) -> Firewall:
        """Build a firewall with timeouts and rules from ``config``."""
        firewall = cls(
            config.get_duration("firewall.conntrack.tcp_timeout", timedelta(minutes=12)),
            config.get_duration("firewall.conntrack.udp_timeout", timedelta(minutes=3)),
            config.get_duration("firewall.conntrack.default_timeout", timedelta(minutes=10)),
            certificate,
        )
        add_firewall_rules_from_config(False, config, firewall)
        add_firewall_rules_from_config(True, config, firewall)
        return firewall

    def add_rule(
        self,
        incoming: bool,
        proto: int,
        start_port: int,
        end_port: int,
        groups: list[str],
        host: str,
        ip: Network | str | None,
        ca_name: str,
        ca_sha: str,
    ) -> None:
        """Add a rule to the inbound or outbound table."""
        network = None if ip is None else ip_network(ip, strict=False)
        ip_text = "" if network is None else str(network)
        self._rules += (
            f"incoming: {format_value(incoming)}, proto: {proto}, startPort: {start_port}, "
            f"endPort: {end_port}, groups: {format_value(list(groups or []))}, host: {host}, "
            f"ip: {ip_text}, caName: {ca_name}, caSha: {ca_sha}\n"
        )
        _log.info(
            "Firewall rule added: %s",
            {
                "direction": "incoming" if incoming else "outgoing",
                "proto": proto,
                "startPort": start_port,
                "endPort": end_port,
                "groups": groups,
                "host": host,
                "ip": ip_text,
                "caName": ca_name,
                "caSha": ca_sha,
            },
        )
        table = self.in_rules if incoming else self.out_rules
        table.port_table(proto).add_rule(
            start_port, end_port, list(groups or []), host, network, ca_name, ca_sha
        )

    def rule_hash(self) -> str:
        """SHA-256 over every rule added, in order."""
        return hashlib.sha256(self._rules.encode()).hexdigest()

    def _counters(self, incoming: bool) -> _DropCounters:
        return self.incoming_drops if incoming else self.outgoing_drops

    def _timeout(self, protocol: int) -> timedelta:
        if protocol == PROTO_TCP:
            return self.tcp_timeout
        if protocol == PROTO_UDP:
            return self.udp_timeout
        return self.default_timeout

    def _table_match(
        self,
        incoming: bool,
        fp: Packet,
        cert: Certificate | None,
        ca_pool: CAPool | None,
    ) -> bool:
        if cert is None:
            return False
        table = self.in_rules if incoming else self.out_rules
        return table.match(fp, incoming, cert, ca_pool)

    def drop(
        self,
        packet: bytes,
        fp: Packet,
        incoming: bool,
        host: HostInfo,
        ca_pool: CAPool | None,
        local_cache: set[Packet] | None = None,
    ) -> None:
        """Let the packet through or raise a :class:`DropError` saying why not."""
        if self._in_conns(packet, fp, incoming, host, ca_pool, local_cache):
            return

        if host.remote_cidr is not None:
            if not any(fp.remote_ip in network for network in host.remote_cidr):
                self._counters(incoming).remote_ip += 1
                raise InvalidRemoteIP()
        elif fp.remote_ip != host.vpn_ip:
            self._counters(incoming).remote_ip += 1
            raise InvalidRemoteIP()

        if not any(fp.local_ip in network for network in self._local_ips):
            self._counters(incoming).local_ip += 1
            raise InvalidLocalIP()

        if not self._table_match(incoming, fp, host.cert, ca_pool):
            self._counters(incoming).no_rule += 1
            raise NoMatchingRule()

        self._add_conn(packet, fp, incoming)

    def stats(self) -> dict:
        """Current conntrack size, rules version and drop counters."""
        with self.conntrack.lock:
            count = len(self.conntrack.conns)
        return {
            "conntrack_count": count,
            "rules_version": self.rules_version,
            "incoming_dropped": vars(self.incoming_drops).copy(),
            "outgoing_dropped": vars(self.outgoing_drops).copy(),
        }

    def _in_conns(
        self,
        packet: bytes,
        fp: Packet,
        incoming: bool,
        host: HostInfo,
        ca_pool: CAPool | None,
        local_cache: set[Packet] | None,
    ) -> bool:
        if local_cache is not None and fp in local_cache:
            return True

        conntrack = self.conntrack
        with conntrack.lock:
            now = self._clock()
            for due in conntrack.pop_due(now):
                self._evict(due, now)

            conn = conntrack.conns.get(fp)
            if conn is None:
                return False

            if conn.rules_version != self.rules_version:
                if not self._table_match(conn.incoming, fp, host.cert, ca_pool):
                    _log.debug(
                        "dropping old conntrack entry, does not match new ruleset: %s "
                        "(incoming=%s rulesVersion=%s oldRulesVersion=%s)",
                        fp.to_json(), conn.incoming, self.rules_version, conn.rules_version,
                    )
                    del conntrack.conns[fp]
                    return False
                _log.debug(
                    "keeping old conntrack entry, does match new ruleset: %s "
                    "(incoming=%s rulesVersion=%s oldRulesVersion=%s)",
                    fp.to_json(), conn.incoming, self.rules_version, conn.rules_version,
                )
                conn.rules_version = self.rules_version

            conn.expires = now + _seconds(self._timeout(fp.protocol))
            if fp.protocol == PROTO_TCP:
                if incoming:
                    self.check_tcp_rtt(conn, packet)
                else:
                    set_tcp_rtt_tracking(conn, packet)

        if local_cache is not None:
            local_cache.add(fp)
        return True

    def _add_conn(self, packet: bytes, fp: Packet, incoming: bool) -> None:
        timeout = _seconds(self._timeout(fp.protocol))
        conn = Conn()
        if fp.protocol == PROTO_TCP and not incoming:
            set_tcp_rtt_tracking(conn, packet)

        conntrack = self.conntrack
        with conntrack.lock:
            now = self._clock()
            if fp not in conntrack.conns:
                conntrack.schedule(fp, now + timeout)
            conn.incoming = incoming
            conn.rules_version = self.rules_version
            conn.expires = now + timeout
            conntrack.conns[fp] = conn

    def _evict(self, fp: Packet, now: float) -> None:
        """Remove an expired flow or re-arm its deadline; the conntrack lock is held."""
        conn = self.conntrack.conns.get(fp)
        if conn is None:
            return
        if conn.expires > now:
            self.conntrack.schedule(fp, conn.expires)
            return
        del self.conntrack.conns[fp]

    def check_tcp_rtt(self, conn: Conn, packet: bytes) -> bool:
        """Record a round trip if ``packet`` acknowledges the tracked sequence number."""
        if conn.seq == 0:
            return False
        ihl = (packet[0] & 0x0F) << 2
        if len(packet) < ihl + 14:
            return False
        if packet[ihl + 13] & TCP_ACK == 0:
            return False
        (ack,) = struct.unpack_from(">I", packet, ihl + 8)
        diff = (conn.seq - ack) & 0xFFFFFFFF
        if diff >= 0x80000000:
            diff -= 0x100000000
        # Zero acknowledges nothing; positive means the ack is over half the window away.
        if diff >= 0:
            return False
        self.tcp_rtt_samples.append(int((time.monotonic() - conn.sent) * 1e9))
        conn.seq = 0
        return True


def set_tcp_rtt_tracking(conn: Conn, packet: bytes) -> None:
    """Start waiting for the acknowledgement of ``packet``'s sequence number."""
    if conn.seq != 0 or not packet:
        return
    ihl = (packet[0] & 0x0F) << 2
    if len(packet) < ihl + 14:
        return
    if packet[ihl + 13] & TCP_FIN != 0:
        return
    (conn.seq,) = struct.unpack_from(">I", packet, ihl + 4)
    conn.sent = time.monotonic()