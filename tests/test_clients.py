from fake_runner import FakeRunner
from routnetd.clients import _parse_leases, _parse_station_dump, list_clients
from routnetd.policy import PolicyStore

STATION_DUMP = """Station aa:bb:cc:dd:ee:ff (on wlan0ap)
\tinactive time:\t120 ms
\trx bytes:\t102400
\tsignal:  \t-48 [-50, -51] dBm
\ttx bitrate:\t144.4 MBit/s MCS 15 short GI
\trx bitrate:\t65.0 MBit/s MCS 7
Station 11:22:33:44:55:66 (on wlan0ap)
\tinactive time:\t4000 ms
\tsignal:  \t-71 dBm
"""


def test_parse_station_dump():
    stations = _parse_station_dump(STATION_DUMP)
    assert stations[0] == {
        "mac": "aa:bb:cc:dd:ee:ff",
        "inactive_ms": 120,
        "signal_dbm": -48,
        "tx_bitrate_mbps": 144.4,
        "rx_bitrate_mbps": 65.0,
    }
    assert stations[1] == {"mac": "11:22:33:44:55:66", "inactive_ms": 4000, "signal_dbm": -71}


def test_parse_leases(tmp_path):
    leases = tmp_path / "dnsmasq.leases"
    leases.write_text(
        "1760000000 aa:bb:cc:dd:ee:ff 192.168.50.23 pixel-8 01:aa:bb:cc:dd:ee:ff\n"
        "1760000000 11:22:33:44:55:66 192.168.50.42 * *\n"
        "garbage\n"
    )
    assert _parse_leases(leases) == {
        "aa:bb:cc:dd:ee:ff": ("192.168.50.23", "pixel-8"),
        "11:22:33:44:55:66": ("192.168.50.42", None),
    }
    assert _parse_leases(tmp_path / "missing") == {}


def test_list_clients_merges_policy(tmp_path):
    runner = FakeRunner()
    runner.respond("iw dev wlan0ap station dump", out=STATION_DUMP)
    store = PolicyStore(tmp_path / "cfg")
    store.set_rate("AA:BB:CC:DD:EE:FF", "2mbit")
    store.block("11:22:33:44:55:66")

    clients = list_clients(runner, "wlan0ap", store)

    assert [c["mac"] for c in clients] == ["aa:bb:cc:dd:ee:ff", "11:22:33:44:55:66"]
    assert clients[0]["rate"] == "2mbit"
    assert clients[0]["blocked"] is False
    assert clients[1]["blocked"] is True
    assert clients[1]["ip"] is None
