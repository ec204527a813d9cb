import logging
from ipaddress import ip_network

import pytest

from overlaynet.config import Config
from overlaynet.firewall_rules import (
    CAPool,
    Certificate,
    FirewallCA,
    FirewallConfigError,
    FirewallRule,
    FirewallTable,
    PortTable,
    Rule,
    add_firewall_rules_from_config,
    convert_rule,
    parse_port,
)
from overlaynet.packet import PROTO_ANY, PROTO_ICMP, PROTO_TCP, PROTO_UDP, Packet


class MockFirewall:
    def __init__(self):
        self.last_call = None
        self.next_error = None

    def add_rule(self, incoming, proto, start_port, end_port, groups, host, ip, ca_name, ca_sha):
        self.last_call = dict(
            incoming=incoming,
            proto=proto,
            start_port=start_port,
            end_port=end_port,
            groups=groups,
            host=host,
            ip=ip,
            ca_name=ca_name,
            ca_sha=ca_sha,
        )
        error, self.next_error = self.next_error, None
        if error is not None:
            raise error


def call(incoming, proto, groups=(), host="", ca_name="", ca_sha=""):
    return dict(
        incoming=incoming,
        proto=proto,
        start_port=1,
        end_port=1,
        groups=list(groups),
        host=host,
        ip=None,
        ca_name=ca_name,
        ca_sha=ca_sha,
    )


def config_with(direction, rules):
    conf = Config()
    conf.settings["firewall"] = {direction: rules}
    return conf


@pytest.mark.parametrize(
    "text, message",
    [
        ("", "was not a number; ``"),
        ("  ", "was not a number; `  `"),
        ("-", "appears to be a range but could not be parsed; `-`"),
        (" - ", "appears to be a range but could not be parsed; ` - `"),
        ("a-b", "beginning range was not a number; `a`"),
        ("1-b", "ending range was not a number; `b`"),
    ],
)
def test_parse_port_errors(text, message):
    with pytest.raises(ValueError) as info:
        parse_port(text)
    assert str(info.value) == message


@pytest.mark.parametrize(
    "text, expected",
    [(" 1 - 2    ", (1, 2)), ("0-1", (0, 0)), ("9919", (9919, 9919)), ("any", (0, 0)), ("fragment", (-1, -1))],
)
def test_parse_port_values(text, expected):
    assert parse_port(text) == expected


def test_convert_rule_single_group_array(caplog):
    with caplog.at_level(logging.WARNING):
        rule = convert_rule({"group": ["group1"]}, "test", 1)
    assert rule.group == "group1"
    assert "test rule #1; group was an array with a single value, converting to simple value" in caplog.text


def test_convert_rule_group_array_too_long(caplog):
    with caplog.at_level(logging.WARNING):
        with pytest.raises(FirewallConfigError) as info:
            convert_rule({"group": ["group1", "group2"]}, "test", 1)
    assert "more than one entry" in str(info.value)
    assert caplog.text == ""


def test_convert_rule_plain_fields():
    rule = convert_rule({"group": "group1", "port": 1, "groups": ["a", "b"], "proto": "tcp"}, "test", 1)
    assert rule == Rule(port="1", proto="tcp", group="group1", groups=["a", "b"])


def test_convert_rule_rejects_non_mapping():
    with pytest.raises(FirewallConfigError, match="could not parse rule"):
        convert_rule("nope", "test", 0)


@pytest.mark.parametrize(
    "direction, rules, message",
    [
        ("outbound", "asdf", "firewall.outbound failed to parse, should be an array of rules"),
        ("outbound", [{"port": "1", "code": "2"}], "firewall.outbound rule #0; only one of port or code should be provided"),
        (
            "outbound",
            [{}],
            "firewall.outbound rule #0; at least one of host, group, cidr, ca_name, or ca_sha must be provided",
        ),
        ("outbound", [{"code": "a", "host": "testh"}], "firewall.outbound rule #0; code was not a number; `a`"),
        ("outbound", [{"port": "a", "host": "testh"}], "firewall.outbound rule #0; port was not a number; `a`"),
        ("outbound", [{"code": "1", "host": "testh"}], "firewall.outbound rule #0; proto was not understood; ``"),
        (
            "outbound",
            [{"code": "1", "cidr": "testh", "proto": "any"}],
            "firewall.outbound rule #0; cidr did not parse; invalid CIDR address: testh",
        ),
        (
            "inbound",
            [{"port": "1", "proto": "any", "group": "a", "groups": ["b", "c"]}],
            "firewall.inbound rule #0; only one of group or groups should be defined, both provided",
        ),
    ],
)
def test_config_errors(direction, rules, message):
    conf = config_with(direction, rules)
    with pytest.raises(FirewallConfigError) as info:
        add_firewall_rules_from_config(direction == "inbound", conf, MockFirewall())
    assert str(info.value) == message


@pytest.mark.parametrize(
    "inbound, rule, expected",
    [
        (False, {"port": "1", "proto": "tcp", "host": "a"}, call(False, PROTO_TCP, host="a")),
        (False, {"port": "1", "proto": "udp", "host": "a"}, call(False, PROTO_UDP, host="a")),
        (False, {"port": "1", "proto": "icmp", "host": "a"}, call(False, PROTO_ICMP, host="a")),
        (True, {"port": "1", "proto": "any", "host": "a"}, call(True, PROTO_ANY, host="a")),
        (True, {"port": "1", "proto": "any", "ca_sha": "12312313123"}, call(True, PROTO_ANY, ca_sha="12312313123")),
        (True, {"port": "1", "proto": "any", "ca_name": "root01"}, call(True, PROTO_ANY, ca_name="root01")),
        (True, {"port": "1", "proto": "any", "group": "a"}, call(True, PROTO_ANY, groups=["a"])),
        (True, {"port": "1", "proto": "any", "groups": "a"}, call(True, PROTO_ANY, groups=["a"])),
        (True, {"port": "1", "proto": "any", "groups": ["a", "b"]}, call(True, PROTO_ANY, groups=["a", "b"])),
    ],
)
def test_add_rules_from_config(inbound, rule, expected):
    conf = config_with("inbound" if inbound else "outbound", [rule])
    mock = MockFirewall()
    add_firewall_rules_from_config(inbound, conf, mock)
    assert mock.last_call == expected


def test_add_rules_from_config_cidr():
    conf = config_with("outbound", [{"port": "any", "proto": "any", "cidr": "10.1.1.5/24"}])
    mock = MockFirewall()
    add_firewall_rules_from_config(False, conf, mock)
    assert mock.last_call["ip"] == ip_network("10.1.1.0/24")
    assert mock.last_call["start_port"] == 0


def test_add_rules_from_config_add_error():
    conf = config_with("inbound", [{"port": "1", "proto": "any", "host": "a"}])
    mock = MockFirewall()
    mock.next_error = ValueError("test error")
    with pytest.raises(FirewallConfigError) as info:
        add_firewall_rules_from_config(True, conf, mock)
    assert str(info.value) == "firewall.inbound rule #0; `test error`"


def test_missing_table_adds_nothing():
    mock = MockFirewall()
    add_firewall_rules_from_config(True, Config(), mock)
    assert mock.last_call is None


def test_table_empty_rule_is_any():
    table = FirewallTable()
    table.port_table(PROTO_TCP).add_rule(1, 1, [], "", None, "", "")
    rule = table.tcp[1].any
    assert rule.any is True
    assert rule.groups == [] and rule.hosts == set()


def test_table_group_host_and_cidr_rules():
    table = FirewallTable()
    table.port_table(PROTO_UDP).add_rule(1, 1, ["g1"], "", None, "", "")
    table.port_table(PROTO_ICMP).add_rule(1, 1, [], "h1", None, "", "")
    table.port_table(PROTO_ANY).add_rule(1, 1, [], "", ip_network("1.2.3.4/32"), "", "")
    assert table.udp[1].any.any is False
    assert table.udp[1].any.groups == [["g1"]]
    assert table.icmp[1].any.hosts == {"h1"}
    assert table.any_proto[1].any.cidrs == [ip_network("1.2.3.4/32")]


def test_table_ca_rules():
    table = FirewallTable()
    table.port_table(PROTO_UDP).add_rule(1, 1, ["g1"], "", None, "ca-name", "")
    table.port_table(PROTO_UDP).add_rule(1, 1, ["g1"], "", None, "", "ca-sha")
    assert "ca-name" in table.udp[1].ca_names
    assert "ca-sha" in table.udp[1].ca_shas
    assert table.udp[1].any is None


def test_any_clears_existing_fields():
    table = FirewallTable()
    ports = table.port_table(PROTO_ANY)
    ports.add_rule(0, 0, ["g1", "g2"], "h1", ip_network("1.2.3.4/32"), "", "")
    rule = table.any_proto[0].any
    assert rule.groups == [["g1", "g2"]]
    assert "h1" in rule.hosts
    ports.add_rule(0, 0, ["any"], "", None, "", "")
    ports.add_rule(0, 0, [], "any", None, "", "")
    assert rule.any is True
    assert rule.groups == [] and rule.hosts == set() and rule.cidrs == []


@pytest.mark.parametrize("host, ip", [("any", None), ("", ip_network("0.0.0.0/0"))])
def test_any_by_host_or_cidr(host, ip):
    rule = FirewallRule()
    rule.add_rule([], host, ip)
    assert rule.any is True


def test_unknown_protocol_and_bad_range():
    table = FirewallTable()
    with pytest.raises(ValueError, match="unknown protocol 255"):
        table.port_table(255)
    with pytest.raises(ValueError, match="start port was lower than end port"):
        table.port_table(PROTO_ANY).add_rule(10, 0, [], "", None, "", "")


@pytest.fixture
def bench_table():
    table = FirewallTable()
    net = ip_network("172.1.1.1/32")
    for groups in (["good-group"], ["good-group2"], ["good-group3"], ["good-group4"], ["good-group, good-group1"]):
        table.tcp.add_rule(10, 10, groups, "good-host", net, "", "")
    return table


def test_match_fails_on_proto(bench_table):
    assert not bench_table.match(Packet(protocol=PROTO_UDP), True, Certificate(), CAPool())


def test_match_fails_on_port(bench_table):
    assert not bench_table.match(Packet(protocol=PROTO_TCP, local_port=1), True, Certificate(), CAPool())


def test_match_fails_all(bench_table):
    cert = Certificate(name="nope", groups=["nope"], ips=["9.254.254.254/32"])
    assert not bench_table.match(Packet(protocol=PROTO_TCP, local_port=10), True, cert, CAPool())


def test_match_passes_on_group_name_and_ip(bench_table):
    pool = CAPool()
    by_group = Certificate(name="nope", groups=["good-group"])
    by_name = Certificate(name="good-host", groups=["nope"])
    by_ip = Certificate(name="nope", groups=["nope"])
    packet = Packet(protocol=PROTO_TCP, local_port=10)
    assert bench_table.match(packet, True, by_group, pool)
    assert bench_table.match(packet, True, by_name, pool)
    assert bench_table.match(Packet(protocol=PROTO_TCP, local_port=10, remote_ip="172.1.1.1"), True, by_ip, pool)


def test_match_any_port(bench_table):
    cert = Certificate(name="nope", groups=["nope"])
    packet = Packet(protocol=PROTO_TCP, local_port=100, remote_ip="172.1.1.1")
    assert not bench_table.match(packet, True, cert, CAPool())
    bench_table.tcp.add_rule(0, 0, ["good-group"], "good-host", ip_network("172.1.1.1/32"), "", "")
    assert bench_table.match(packet, True, cert, CAPool())


def test_outgoing_uses_remote_port_and_fragments():
    table = PortTable()
    table.add_rule(90, 90, [], "any", None, "", "")
    table.add_rule(-1, -1, [], "any", None, "", "")
    cert = Certificate(name="host1")
    assert table.match(Packet(local_port=10, remote_port=90), False, cert, CAPool())
    assert not table.match(Packet(local_port=10, remote_port=90), True, cert, CAPool())
    assert table.match(Packet(local_port=5, remote_port=5, fragment=True), True, cert, CAPool())


def test_group_sets_require_all_groups():
    table = FirewallTable()
    table.any_proto.add_rule(0, 0, ["default-group", "test-group"], "", None, "", "")
    packet = Packet(local_port=10, remote_port=90, protocol=PROTO_UDP)
    lacking = Certificate(name="host1", groups=["default-group", "test-group-not"])
    having = Certificate(name="host1", groups=["default-group", "test-group"])
    assert not table.match(packet, True, lacking, CAPool())
    assert table.match(packet, True, having, CAPool())


CERT = Certificate(name="host1", ips=["1.2.3.4/24"], groups=["default-group"], issuer="signer-shasum")
PACKET = Packet("1.2.3.4", "1.2.3.4", 10, 90, PROTO_UDP, False)


@pytest.mark.parametrize(
    "first, second, expected",
    [
        ((["nope"], "", "signer-shasum"), (["default-group"], "", "signer-shasum-bad"), False),
        ((["nope"], "", "signer-shasum-bad"), (["default-group"], "", "signer-shasum"), True),
        ((["nope"], "ca-good", ""), (["default-group"], "ca-good-bad", ""), False),
        ((["nope"], "ca-good-bad", ""), (["default-group"], "ca-good", ""), True),
    ],
)
def test_ca_restrictions(first, second, expected):
    pool = CAPool()
    pool.add_ca("signer-shasum", "ca-good")
    ca_rules = FirewallCA()
    for groups, ca_name, ca_sha in (first, second):
        ca_rules.add_rule(groups, "", None, ca_name, ca_sha)
    assert ca_rules.match(PACKET, CERT, pool) is expected


def test_host_or_ca_sha_match():
    table = FirewallTable()
    table.any_proto.add_rule(1, 1, [], "host1", None, "", "")
    table.any_proto.add_rule(1, 1, [], "", None, "", "signer-sha")
    packet = Packet("1.2.3.4", "1.2.3.4", 1, 1, PROTO_UDP, False)
    pool = CAPool()
    assert table.match(packet, True, Certificate(name="host1", issuer="signer-sha-bad"), pool)
    assert table.match(packet, True, Certificate(name="host2", issuer="signer-sha"), pool)
    assert not table.match(packet, True, Certificate(name="host3", issuer="signer-sha-bad"), pool)


def test_ca_pool_lookup():
    pool = CAPool()
    pool.add_ca("abc", "root")
    assert pool.get_ca_name(Certificate(issuer="abc")) == "root"
    assert pool.get_ca_name(Certificate(issuer="zzz")) is None
    assert pool.get_ca_name(Certificate()) is None