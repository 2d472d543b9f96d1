from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from routnetd.engine.runner import Runner
from routnetd.policy import PolicyStore

_MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$", re.IGNORECASE)


@dataclass(frozen=True)
class Client:
    mac: str
    ip: Optional[str] = None
    hostname: Optional[str] = None
    signal_dbm: Optional[int] = None
    tx_bitrate_mbps: Optional[float] = None
    rx_bitrate_mbps: Optional[float] = None
    inactive_ms: Optional[int] = None
    blocked: bool = False
    rate: Optional[str] = None
    priority: bool = False


def _is_mac(s: str) -> bool:
    return bool(_MAC_RE.match(s.strip()))


def _parse_station_dump(text: str) -> List[Dict[str, Any]]:
    """
    Parse `iw dev <ap_if> station dump`. Blocks start with: Station <MAC> (on <ifname>)
    """
    stations: List[Dict[str, Any]] = []
    cur: Optional[Dict[str, Any]] = None

    for line in text.splitlines():
        line = line.rstrip()
        if line.startswith("Station "):
            parts = line.split()
            cur = None
            if len(parts) >= 2 and _is_mac(parts[1]):
                cur = {"mac": parts[1].lower()}
                stations.append(cur)
            continue
        if cur is None:
            continue

        s = line.strip().lower()
        if s.startswith("inactive time:"):
            m = re.search(r"(\d+)\s*ms", s)
            if m:
                cur["inactive_ms"] = int(m.group(1))
        elif s.startswith("signal:"):
            # "signal: -48 [-50, -51] dBm": the first number is the combined value
            m = re.search(r"(-?\d+)", s.split(":", 1)[1])
            if m:
                cur["signal_dbm"] = int(m.group(1))
        elif s.startswith("tx bitrate:"):
            m = re.search(r"([\d.]+)\s*mbit/s", s)
            if m:
                cur["tx_bitrate_mbps"] = float(m.group(1))
        elif s.startswith("rx bitrate:"):
            m = re.search(r"([\d.]+)\s*mbit/s", s)
            if m:
                cur["rx_bitrate_mbps"] = float(m.group(1))
    return stations


def _parse_leases(path: Optional[Path]) -> Dict[str, Tuple[str, Optional[str]]]:
    """
    Returns mac -> (ip, hostname?)
    dnsmasq.leases format: <expiry> <mac> <ip> <hostname> <clientid>
    """
    out: Dict[str, Tuple[str, Optional[str]]] = {}
    if path is None or not path.exists():
        return out
    for line in path.read_text(errors="ignore").splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        mac = parts[1].lower()
        if _is_mac(mac):
            out[mac] = (parts[2], parts[3] if parts[3] != "*" else None)
    return out


def list_clients(
    runner: Runner,
    ap_ifname: str,
    store: Optional[PolicyStore] = None,
    leasefile: Optional[Path] = None,
) -> List[Dict[str, Any]]:
    iw = runner.which("iw") or "/usr/sbin/iw"
    res = runner.query([iw, "dev", ap_ifname, "station", "dump"], timeout_s=1.5)
    stations = _parse_station_dump(res.out) if res.ok else []
    leases = _parse_leases(leasefile)

    clients: List[Dict[str, Any]] = []
    for sta in stations:
        mac = sta["mac"]
        ip, hostname = leases.get(mac, (None, None))
        clients.append(
            asdict(
                Client(
                    mac=mac,
                    ip=ip,
                    hostname=hostname,
                    signal_dbm=sta.get("signal_dbm"),
                    tx_bitrate_mbps=sta.get("tx_bitrate_mbps"),
                    rx_bitrate_mbps=sta.get("rx_bitrate_mbps"),
                    inactive_ms=sta.get("inactive_ms"),
                    blocked=bool(store and mac in store.blocked),
                    rate=store.rates.get(mac) if store else None,
                    priority=bool(store and mac in store.priority),
                )
            )
        )
    return clients
