"""Firewall packet tuples and the per-routine conntrack cache."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from ipaddress import IPv4Address

_log = logging.getLogger(__name__)

PROTO_ANY = 0
PROTO_TCP = 6
PROTO_UDP = 17
PROTO_ICMP = 1

PORT_ANY = 0
PORT_FRAGMENT = -1

_PROTO_NAMES = {PROTO_TCP: "tcp", PROTO_ICMP: "icmp", PROTO_UDP: "udp"}


def _to_ip(value: IPv4Address | int | str) -> IPv4Address:
    return value if isinstance(value, IPv4Address) else IPv4Address(value)


@dataclass(frozen=True)
class Packet:
    """The flow tuple the firewall and conntrack key on."""

    local_ip: IPv4Address = IPv4Address(0)
    remote_ip: IPv4Address = IPv4Address(0)
    local_port: int = 0
    remote_port: int = 0
    protocol: int = PROTO_ANY
    fragment: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "local_ip", _to_ip(self.local_ip))
        object.__setattr__(self, "remote_ip", _to_ip(self.remote_ip))

    def to_dict(self) -> dict:
        return {
            "LocalIP": str(self.local_ip),
            "RemoteIP": str(self.remote_ip),
            "LocalPort": self.local_port,
            "RemotePort": self.remote_port,
            "Protocol": _PROTO_NAMES.get(self.protocol, f"unknown {self.protocol}"),
            "Fragment": self.fragment,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


class ConntrackCacheTicker:
    """Holds a set of recently seen flows that is emptied whenever the tick advances."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tick = 0
        self._version = 0
        self._cache: set[Packet] = set()

    def tick(self) -> None:
        """Advance to the next cache generation."""
        with self._lock:
            self._tick += 1

    def get(self) -> set[Packet]:
        """Return the cache, replacing it with an empty one if the tick moved."""
        with self._lock:
            tick = self._tick
        if tick != self._version:
            self._version = tick
            if self._cache:
                _log.debug("resetting conntrack cache (len=%d)", len(self._cache))
                self._cache = set()
        return self._cache

    def _run(self, seconds: float) -> None:
        while True:
            time.sleep(seconds)
            self.tick()


def new_conntrack_cache_ticker(interval: float | timedelta) -> ConntrackCacheTicker | None:
    """Start a ticker advancing every ``interval``; a zero interval disables caching."""
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    if seconds == 0:
        return None
    if seconds < 0:
        raise ValueError("interval must not be negative")
    ticker = ConntrackCacheTicker()
    threading.Thread(
        target=ticker._run, args=(seconds,), daemon=True, name="conntrack-cache-ticker"
    ).start()
    return ticker