import pytest

from routnetd.config import DEFAULT_CONFIG
from routnetd.errors import PolicyError
from routnetd.policy import (
    BLOCKED_FILE,
    PRIORITY_FILE,
    QOS_FILE,
    DevicePolicy,
    PolicyStore,
    format_rate,
    normalize_mac,
    parse_rate_kbit,
)

MAC = "aa:bb:cc:dd:ee:ff"
MAC2 = "11:22:33:44:55:66"


def test_normalize_mac_accepts_common_spellings():
    assert normalize_mac("AA:BB:CC:DD:EE:FF") == MAC
    assert normalize_mac("aa-bb-cc-dd-ee-ff") == MAC
    assert normalize_mac("aabbccddeeff") == MAC


@pytest.mark.parametrize("bad", ["", "aa:bb:cc:dd:ee", "zz:bb:cc:dd:ee:ff", "aa:bb-cc:dd:ee:ff"])
def test_normalize_mac_rejects_malformed(bad):
    with pytest.raises(PolicyError):
        normalize_mac(bad)


def test_parse_rate_units():
    assert parse_rate_kbit("2mbit") == 2000
    assert parse_rate_kbit("512kbit") == 512
    assert parse_rate_kbit("1gbit") == 1000000
    assert parse_rate_kbit("1mbps") == 8000
    assert parse_rate_kbit("300") == 300
    assert parse_rate_kbit("1.5mbit") == 1500


@pytest.mark.parametrize("bad", ["", "fast", "0mbit", "2 furlongs", "-1mbit"])
def test_parse_rate_rejects_garbage(bad):
    with pytest.raises(PolicyError):
        parse_rate_kbit(bad)


def test_format_rate_picks_largest_exact_unit():
    assert format_rate(5000) == "5mbit"
    assert format_rate(7500) == "7500kbit"
    assert format_rate(2000000) == "2gbit"


def test_mutations_persist_and_reload(tmp_path):
    store = PolicyStore(tmp_path)
    store.block("AA-BB-CC-DD-EE-FF")
    store.set_rate(MAC2, "2MBIT")
    store.prioritize(MAC2)

    assert (tmp_path / BLOCKED_FILE).read_text() == f"{MAC}\n"
    assert (tmp_path / QOS_FILE).read_text() == f"{MAC2} 2mbit\n"
    assert (tmp_path / PRIORITY_FILE).read_text() == f"{MAC2}\n"

    reloaded = PolicyStore(tmp_path).load()
    assert reloaded.snapshot() == store.snapshot()


def test_qos_last_write_wins(tmp_path):
    store = PolicyStore(tmp_path)
    store.set_rate(MAC, "2mbit")
    store.set_rate(MAC, "5mbit")

    assert store.rates == {MAC: "5mbit"}
    assert (tmp_path / QOS_FILE).read_text() == f"{MAC} 5mbit\n"


def test_duplicate_qos_lines_on_disk_keep_the_last(tmp_path):
    (tmp_path / QOS_FILE).write_text(f"{MAC} 2mbit\n{MAC2} 1mbit\n{MAC.upper()} 5mbit\n")
    store = PolicyStore(tmp_path).load()
    assert store.rates == {MAC2: "1mbit", MAC: "5mbit"}


def test_malformed_lines_are_skipped(tmp_path):
    (tmp_path / BLOCKED_FILE).write_text(f"# blocked devices\n\nnot-a-mac\n{MAC}\n")
    (tmp_path / QOS_FILE).write_text(f"{MAC2}\n{MAC2} warp9\n{MAC} 1mbit extra\n")
    store = PolicyStore(tmp_path).load()
    assert list(store.blocked) == [MAC]
    assert store.rates == {}


def test_bad_command_input_leaves_store_untouched(tmp_path):
    store = PolicyStore(tmp_path)
    store.set_rate(MAC, "2mbit")
    before = store.snapshot()

    with pytest.raises(PolicyError):
        store.set_rate("nope", "2mbit")
    with pytest.raises(PolicyError):
        store.set_rate(MAC2, "")
    with pytest.raises(PolicyError):
        store.block("12:34")

    assert store.snapshot() == before


def test_block_then_unblock_restores_policy(tmp_path):
    store = PolicyStore(tmp_path)
    store.set_rate(MAC, "2mbit")
    store.set_rate(MAC2, "3mbit")
    store.prioritize(MAC2)
    before = store.policy(DEFAULT_CONFIG)

    store.block(MAC)
    blocked = store.policy(DEFAULT_CONFIG)
    assert MAC not in blocked.devices
    assert blocked.blocked == frozenset({MAC})

    store.unblock(MAC)
    assert store.policy(DEFAULT_CONFIG) == before


def test_reset_clears_all_lists(tmp_path):
    store = PolicyStore(tmp_path)
    store.block(MAC)
    store.set_rate(MAC2, "1mbit")
    store.prioritize(MAC2)
    store.reset()

    assert store.snapshot() == {"blocked": [], "qos": {}, "priority": []}
    assert PolicyStore(tmp_path).load().snapshot() == store.snapshot()


def test_policy_ceilings_and_priority(tmp_path):
    cfg = dict(DEFAULT_CONFIG, link_rate="100mbit", priority_rate="10mbit", ceil_factor=1.5)
    store = PolicyStore(tmp_path)
    store.set_rate(MAC, "2mbit")
    store.prioritize(MAC2)

    policy = store.policy(cfg)

    assert policy.devices[MAC] == DevicePolicy(rate_kbit=2000, ceil_kbit=3000, priority=False)
    # priority without an explicit rate falls back to priority_rate, may borrow the whole link
    assert policy.devices[MAC2] == DevicePolicy(rate_kbit=10000, ceil_kbit=100000, priority=True)


def test_rate_is_capped_at_link_rate(tmp_path):
    cfg = dict(DEFAULT_CONFIG, link_rate="10mbit")
    store = PolicyStore(tmp_path)
    store.set_rate(MAC, "50mbit")
    assert store.policy(cfg).devices[MAC] == DevicePolicy(rate_kbit=10000, ceil_kbit=10000, priority=False)
