import pytest

from routnetd.engine.apconf import dhcp_pool, write_dnsmasq_conf, write_hostapd_conf


def test_dhcp_pool_uses_gateway_prefix():
    assert dhcp_pool("192.168.50.1") == ("192.168.50.10", "192.168.50.100")
    assert dhcp_pool("10.42.0.1", 2, 254) == ("10.42.0.2", "10.42.0.254")


@pytest.mark.parametrize("start,end", [(0, 100), (100, 10), (10, 255)])
def test_dhcp_pool_rejects_bad_ranges(start, end):
    with pytest.raises(ValueError):
        dhcp_pool("192.168.50.1", start, end)


def test_hostapd_conf_with_passphrase(tmp_path):
    path = tmp_path / "hostapd.conf"
    write_hostapd_conf(
        path=str(path),
        ifname="wlan0ap",
        ssid="ROUTNET",
        passphrase="correct horse",
        channel=11,
        country="de",
    )
    text = path.read_text()
    assert "interface=wlan0ap\n" in text
    assert "channel=11\n" in text
    assert "country_code=DE\n" in text
    assert "wpa=2\n" in text
    assert "wpa_passphrase=correct horse\n" in text
    assert oct(path.stat().st_mode & 0o777) == oct(0o600)


def test_hostapd_conf_open_network_has_no_wpa_block(tmp_path):
    path = tmp_path / "hostapd.conf"
    write_hostapd_conf(path=str(path), ifname="wlan0ap", ssid="Cafe", passphrase="")
    text = path.read_text()
    assert "ssid=Cafe\n" in text
    assert "wpa" not in text.replace("wmm_enabled", "")
    assert "country_code" not in text


def test_dnsmasq_conf(tmp_path):
    path = tmp_path / "dnsmasq.conf"
    write_dnsmasq_conf(
        str(path),
        "wlan0ap",
        "192.168.50.1",
        "192.168.50.10",
        "192.168.50.100",
        lease_time="12h",
        dns_upstream="1.1.1.1, 9.9.9.9",
        leasefile="/tmp/x.leases",
    )
    lines = path.read_text().splitlines()
    assert "interface=wlan0ap" in lines
    assert "dhcp-range=192.168.50.10,192.168.50.100,255.255.255.0,12h" in lines
    assert "dhcp-option=option:router,192.168.50.1" in lines
    assert "no-resolv" in lines
    assert "server=1.1.1.1" in lines and "server=9.9.9.9" in lines
    assert "dhcp-leasefile=/tmp/x.leases" in lines
