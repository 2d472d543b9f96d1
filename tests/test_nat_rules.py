import pytest

from fake_runner import FakeRunner
from routnetd.engine.nat import (
    FORWARD,
    FORWARD_ESTABLISHED,
    MASQUERADE,
    IptablesBackend,
    NftBackend,
    RuleEngine,
    _iptables_cmd,
    rule_set,
    select_backend,
)
from routnetd.errors import RuleApplyFailed
from routnetd.txlog import TransactionLog


def test_rule_set_is_fixed():
    rules = rule_set("wlan0", "wlan0ap")
    assert [(r.kind, r.in_if, r.out_if) for r in rules] == [
        (MASQUERADE, None, "wlan0"),
        (FORWARD_ESTABLISHED, "wlan0", "wlan0ap"),
        (FORWARD, "wlan0ap", "wlan0"),
    ]


def test_iptables_cmd_places_action_after_table():
    stmt = IptablesBackend.statement(rule_set("wlan0", "ap0")[0])
    cmd = _iptables_cmd("/usr/sbin/iptables", "-C", stmt)
    assert cmd[:5] == ["/usr/sbin/iptables", "-t", "nat", "-C", "POSTROUTING"]

    fwd = IptablesBackend.statement(rule_set("wlan0", "ap0")[2])
    assert _iptables_cmd("iptables", "-A", fwd)[:3] == ["iptables", "-A", "FORWARD"]


def test_backend_probe_prefers_nft():
    assert isinstance(select_backend(FakeRunner()), NftBackend)
    assert isinstance(select_backend(FakeRunner(tools=("iptables",))), IptablesBackend)
    with pytest.raises(RuleApplyFailed):
        select_backend(FakeRunner(tools=("ip", "tc")))


def test_nft_apply_twice_yields_one_masquerade_two_forwards():
    runner = FakeRunner()
    txlog = TransactionLog()
    engine = RuleEngine(runner, txlog)

    engine.apply_rules("wlan0", "wlan0ap")
    engine.apply_rules("wlan0", "wlan0ap")

    assert runner.nft_rule_count("postrouting") == 1
    assert runner.nft_rule_count("forward") == 2
    assert txlog.labels() == [
        "ip_forward_restore",
        "nft_delete_table:routnet",
        "nat_remove:routnet:masquerade:-:wlan0",
        "nat_remove:routnet:forward_established:wlan0:wlan0ap",
        "nat_remove:routnet:forward:wlan0ap:wlan0",
    ]


def test_nft_apply_across_runs_does_not_duplicate():
    runner = FakeRunner()
    RuleEngine(runner, TransactionLog()).apply_rules("wlan0", "wlan0ap")
    second = TransactionLog()
    RuleEngine(runner, second).apply_rules("wlan0", "wlan0ap")

    assert runner.nft_rule_count("postrouting") == 1
    assert runner.nft_rule_count("forward") == 2
    # nothing new was created, so nothing to undo
    assert second.labels() == []


def test_nft_drain_removes_rules_and_owned_table():
    runner = FakeRunner()
    txlog = TransactionLog()
    RuleEngine(runner, txlog).apply_rules("wlan0", "wlan0ap")

    txlog.drain()

    assert runner.nft_rules.get("forward", []) == []
    assert runner.nft_rules.get("postrouting", []) == []
    assert runner.nft_tables == set()
    assert runner.ip_forward == "0"


def test_nft_preexisting_table_is_left_in_place():
    runner = FakeRunner()
    runner.nft_tables.add("routnet")
    txlog = TransactionLog()
    RuleEngine(runner, txlog).apply_rules("wlan0", "wlan0ap")
    assert "nft_delete_table:routnet" not in txlog.labels()

    txlog.drain()
    assert runner.nft_tables == {"routnet"}
    assert runner.nft_rule_count("forward") == 0


def test_iptables_apply_twice_and_drain():
    runner = FakeRunner(tools=("iptables", "sysctl"))
    txlog = TransactionLog()
    engine = RuleEngine(runner, txlog)
    assert engine.backend.name == "iptables"

    engine.apply_rules("wlan0", "wlan0ap")
    engine.apply_rules("wlan0", "wlan0ap")

    masq = [r for r in runner.ipt_rules if "MASQUERADE" in r]
    fwd = [r for r in runner.ipt_rules if r[0] == "FORWARD"]
    assert len(masq) == 1
    assert len(fwd) == 2

    txlog.drain()
    assert runner.ipt_rules == []


def test_forwarding_already_enabled_is_never_disabled():
    runner = FakeRunner(ip_forward="1")
    txlog = TransactionLog()
    RuleEngine(runner, txlog).apply_rules("wlan0", "wlan0ap")

    assert "ip_forward_restore" not in txlog.labels()
    assert not any("ip_forward=1" in m for m in runner.mutations())

    txlog.drain()
    assert runner.ip_forward == "1"


def test_insert_failure_raises_rule_apply_failed():
    runner = FakeRunner(tools=("iptables", "sysctl"))
    runner.respond(
        "iptables -t nat -A POSTROUTING -o wlan0 -j MASQUERADE",
        rc=4,
        out="iptables v1.8.9 (legacy): can't initialize iptables table `nat': Permission denied",
    )
    txlog = TransactionLog()
    with pytest.raises(RuleApplyFailed):
        RuleEngine(runner, txlog).apply_rules("wlan0", "wlan0ap")
    # forwarding was flipped before the failure and stays undoable
    assert txlog.labels() == ["ip_forward_restore"]
