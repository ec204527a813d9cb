"""Answers A and TXT queries for hosts on the overlay network."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from ipaddress import IPv4Address, IPv4Network, IPv6Address, ip_address, ip_network
from typing import Any, Callable, Iterable

import dns.exception
import dns.message
import dns.opcode
import dns.rdatatype
import dns.rrset

from .config import Config

RECORD_TTL = 3600
_LOCALHOST = "127.0.0.1"


def _format_list(items: Iterable[Any] | None) -> str:
    return "[" + " ".join(str(item) for item in (items or ())) + "]"


def _format_time(moment: datetime | None) -> str:
    if moment is None:
        return "0001-01-01 00:00:00 +0000 UTC"
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.strftime("%Y-%m-%d %H:%M:%S")
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.strftime("%z")
    return f"{text} {offset} {moment.tzname() or offset}"


class DnsRecords:
    """Name to address records plus certificate lookups by overlay address.

    ``cert_lookup`` receives an IPv4 address and returns the certificate of the
    host using it, or None. A certificate exposes ``name``, ``ips``,
    ``subnets``, ``groups``, ``not_before``, ``not_after``, ``public_key``,
    ``is_ca`` and ``issuer``.
    """

    def __init__(
        self,
        cert_lookup: Callable[[IPv4Address], Any] | None = None,
        vpn_cidr: IPv4Network | str | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, str] = {}
        self._cert_lookup = cert_lookup
        self.vpn_cidr = ip_network(vpn_cidr, strict=False) if vpn_cidr is not None else None

    def add(self, host: str, data: str) -> None:
        with self._lock:
            self._records[host] = data

    def query(self, name: str) -> str | None:
        with self._lock:
            return self._records.get(name)

    def query_cert(self, name: str) -> str | None:
        """Describe the certificate of the host whose address is ``name`` (with trailing dot)."""
        try:
            address = ip_address(name[:-1])
        except ValueError:
            return None
        if isinstance(address, IPv6Address):
            address = IPv4Address(address.packed[-4:])
        if self._cert_lookup is None:
            return None
        cert = self._cert_lookup(address)
        if cert is None:
            return None
        return " ".join(
            [
                f'"Name: {cert.name}"',
                f'"Ips: {_format_list(cert.ips)}"',
                f'"Subnets {_format_list(cert.subnets)}"',
                f'"Groups {_format_list(cert.groups)}"',
                f'"NotBefore {_format_time(cert.not_before)}"',
                f'"NotAFter {_format_time(cert.not_after)}"',
                f'"PublicKey {bytes(cert.public_key or b"").hex()}"',
                f'"IsCA {"true" if cert.is_ca else "false"}"',
                f'"Issuer {cert.issuer}"',
            ]
        )

    def _txt_allowed(self, remote_ip: Any) -> bool:
        text = str(remote_ip)
        if text == _LOCALHOST:
            return True
        try:
            address = ip_address(text)
        except ValueError:
            return False
        return self.vpn_cidr is not None and address in self.vpn_cidr


def _append_answer(response: dns.message.Message, name: Any, rdtype: str, value: str) -> None:
    try:
        rrset = dns.rrset.from_text(name, RECORD_TTL, "IN", rdtype, value)
    except (dns.exception.DNSException, ValueError):
        return
    response.answer.append(rrset)


def _answer_questions(
    records: DnsRecords, request: dns.message.Message, response: dns.message.Message, remote_ip: Any
) -> None:
    for question in request.question:
        name = question.name.to_text()
        if question.rdtype == dns.rdatatype.A:
            value = records.query(name)
            if value:
                _append_answer(response, question.name, "A", value)
        elif question.rdtype == dns.rdatatype.TXT:
            # Certificate details are only served to overlay hosts and localhost.
            if not records._txt_allowed(remote_ip):
                return
            value = records.query_cert(name)
            if value:
                _append_answer(response, question.name, "TXT", value)


def handle_request(
    records: DnsRecords, request: dns.message.Message, remote_ip: Any
) -> dns.message.Message:
    """Build the reply to ``request`` received from ``remote_ip``."""
    response = dns.message.make_response(request)
    if request.opcode() == dns.opcode.QUERY:
        _answer_questions(records, request, response, remote_ip)
    return response


def server_address(config: Config) -> str:
    """The ``host:port`` the DNS responder listens on."""
    host = config.get_string("lighthouse.dns.host", "")
    port = config.get_int("lighthouse.dns.port", 53)
    return f"{host}:{port}"