from __future__ import annotations

import ipaddress
import os
from typing import Optional, Tuple

MIN_PASSPHRASE_LEN = 8


def dhcp_pool(gateway_ip: str, start_octet: int = 10, end_octet: int = 100) -> Tuple[str, str]:
    """
    Pool bounds on the gateway's /24: first three octets of the gateway plus
    the configured last octets.
    """
    gw = ipaddress.IPv4Address(gateway_ip.strip())
    start = int(start_octet)
    end = int(end_octet)
    if not (1 <= start < end <= 254):
        raise ValueError(f"invalid_dhcp_range:{start}-{end}")
    prefix = ".".join(str(gw).split(".")[:3])
    return f"{prefix}.{start}", f"{prefix}.{end}"


def write_hostapd_conf(
    *,
    path: str,
    ifname: str,
    ssid: str,
    passphrase: str,
    channel: int = 6,
    driver: str = "nl80211",
    hw_mode: str = "g",
    country: Optional[str] = None,
) -> None:
    lines = [
        f"interface={ifname}",
        f"driver={driver}",
        f"ssid={ssid}",
        f"hw_mode={hw_mode}",
        f"channel={int(channel)}",
        "ignore_broadcast_ssid=0",
        "wmm_enabled=1",
    ]

    cc = (country or "").strip().upper()
    if len(cc) == 2:
        lines += [f"country_code={cc}", "ieee80211d=1"]

    # No passphrase => open network, no WPA block at all
    if passphrase:
        lines += [
            "wpa=2",
            "wpa_key_mgmt=WPA-PSK",
            "rsn_pairwise=CCMP",
            f"wpa_passphrase={passphrase}",
        ]

    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    os.chmod(path, 0o600)


def write_dnsmasq_conf(
    path: str,
    ap_if: str,
    gw_ip: str,
    dhcp_start: str,
    dhcp_end: str,
    lease_time: str = "24h",
    dns_upstream: Optional[str] = None,
    leasefile: Optional[str] = None,
) -> None:
    lines = [
        "bind-interfaces",
        f"interface={ap_if}",
        "except-interface=lo",
        "dhcp-authoritative",
        f"dhcp-range={dhcp_start},{dhcp_end},255.255.255.0,{lease_time}",
        f"dhcp-option=option:router,{gw_ip}",
        f"dhcp-option=option:dns-server,{gw_ip}",
        "domain-needed",
        "bogus-priv",
        "log-dhcp",
        "log-facility=-",
    ]
    if dns_upstream:
        lines.append("no-resolv")
        for server in [s.strip() for s in dns_upstream.split(",") if s.strip()]:
            lines.append(f"server={server}")
    if leasefile:
        lines.append(f"dhcp-leasefile={leasefile}")
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
