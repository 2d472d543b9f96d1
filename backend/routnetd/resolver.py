from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from routnetd.engine.delegate import NetworkManagerDelegate
from routnetd.engine.runner import Runner
from routnetd.errors import ConcurrencyUnsupported, NoWanRoute, NoWirelessInterface

log = logging.getLogger("routnetd.resolver")

_IW_PHY_RE = re.compile(r"^phy#(\d+)$")
_IW_WIPHY_RE = re.compile(r"^wiphy\s+(\d+)$")
_COMBO_GROUP_RE = re.compile(r"#\{([^}]*)\}")
_COMBO_TOTAL_RE = re.compile(r"total\s*<=\s*(\d+)")


@dataclass(frozen=True)
class CapabilityVerdict:
    phy: str
    concurrent: bool


@dataclass(frozen=True)
class Resolution:
    sta: str
    wan: Optional[str]
    ap_base: str
    verdict: CapabilityVerdict
    shared_radio: bool


def _parse_iw_dev(text: str) -> List[Dict[str, Optional[str]]]:
    """
    Parse `iw dev` into [{"ifname", "phy", "type"}].
    """
    items: List[Dict[str, Optional[str]]] = []
    current_phy: Optional[str] = None
    cur: Optional[Dict[str, Optional[str]]] = None

    for raw in text.splitlines():
        s = raw.strip()
        m = _IW_PHY_RE.match(s)
        if m:
            current_phy = f"phy{m.group(1)}"
            cur = None
            continue
        if s.startswith("Interface "):
            parts = s.split()
            cur = {"ifname": parts[1] if len(parts) > 1 else None, "phy": current_phy, "type": None}
            if cur["ifname"]:
                items.append(cur)
            continue
        if cur is not None and s.startswith("type "):
            cur["type"] = s.split(" ", 1)[1].strip()
    return items


def _split_combination_entries(text: str) -> Optional[List[str]]:
    """
    Return the `valid interface combinations` entries of `iw phy <phy> info`,
    one string per `*` entry (continuation lines joined), or None if the
    section is missing.
    """
    entries: List[str] = []
    in_section = False
    found = False
    for raw in text.splitlines():
        line = raw.strip()
        if "valid interface combinations" in line.lower():
            in_section = True
            found = True
            continue
        if not in_section:
            continue
        if line.startswith("*"):
            entries.append(line.lstrip("*").strip())
            continue
        if entries and line and (line.startswith("total") or line.startswith("#") or line.startswith("=>")):
            entries[-1] = f"{entries[-1]} {line}"
            continue
        if line:
            break
    return entries if found else None


def _parse_ap_managed_concurrency(text: str) -> Optional[bool]:
    """
    True when a single combination entry lists both `managed` and `AP` and
    allows more than one interface in total.
    """
    entries = _split_combination_entries(text or "")
    if entries is None:
        return None
    for entry in entries:
        modes = set()
        for group in _COMBO_GROUP_RE.findall(entry):
            modes.update(tok.strip() for tok in group.split(",") if tok.strip())
        if "managed" not in modes or "AP" not in modes:
            continue
        m = _COMBO_TOTAL_RE.search(entry)
        if m and int(m.group(1)) < 2:
            continue
        return True
    return False


def _parse_route_dev(text: str) -> Optional[str]:
    for raw in (text or "").splitlines():
        parts = raw.strip().split()
        if "dev" in parts:
            idx = parts.index("dev")
            if idx + 1 < len(parts):
                return parts[idx + 1]
    return None


class Resolver:
    def __init__(
        self,
        runner: Runner,
        delegate: Optional[NetworkManagerDelegate] = None,
        probe_destination: str = "1.1.1.1",
    ) -> None:
        self.runner = runner
        self.delegate = delegate
        self.probe_destination = probe_destination

    def _iw(self) -> str:
        return self.runner.which("iw") or "/usr/sbin/iw"

    def _ip(self) -> str:
        return self.runner.which("ip") or "/usr/sbin/ip"

    def wireless_interfaces(self) -> List[Dict[str, Optional[str]]]:
        res = self.runner.query([self._iw(), "dev"])
        if not res.ok:
            return []
        return _parse_iw_dev(res.out)

    def iface_exists(self, ifname: str) -> bool:
        return self.runner.query([self._ip(), "link", "show", ifname]).ok

    def _is_associated(self, ifname: str) -> bool:
        res = self.runner.query([self._iw(), "dev", ifname, "link"])
        return res.ok and "SSID:" in res.out

    def detect_sta(self, user_sta: Optional[str] = None) -> str:
        if user_sta:
            if not self.iface_exists(user_sta):
                raise NoWirelessInterface(f"sta_interface_missing:{user_sta}")
            return user_sta

        if self.delegate is not None and self.delegate.available():
            dev = self.delegate.connected_wifi_device()
            if dev:
                log.info("sta_detected_via_nm:%s", dev)
                return dev

        for item in self.wireless_interfaces():
            ifname = item.get("ifname")
            if not ifname or (item.get("type") or "").upper().startswith("AP"):
                continue
            if self._is_associated(ifname):
                log.info("sta_detected_via_iw:%s", ifname)
                return ifname

        raise NoWirelessInterface("no_connected_sta_interface")

    def detect_wan(self, user_wan: Optional[str] = None) -> Optional[str]:
        if user_wan:
            return user_wan
        res = self.runner.query([self._ip(), "route", "get", self.probe_destination])
        if not res.ok:
            return None
        return _parse_route_dev(res.out)

    def select_ap_base(self, sta: str, wan: Optional[str]) -> tuple:
        """
        Returns (ap_base, shared_radio).
        """
        radios = [
            i["ifname"]
            for i in self.wireless_interfaces()
            if i.get("ifname") and not (i.get("type") or "").upper().startswith("AP")
        ]
        upstream = wan or sta
        for ifname in radios:
            if ifname != upstream:
                return ifname, False
        log.info("single_radio_shared_for_sta_and_ap:%s", upstream)
        return upstream, True

    def phy_of(self, ifname: str) -> Optional[str]:
        res = self.runner.query([self._iw(), "dev", ifname, "info"])
        if not res.ok:
            return None
        for raw in res.out.splitlines():
            m = _IW_WIPHY_RE.match(raw.strip())
            if m:
                return f"phy{m.group(1)}"
        return None

    def capability(self, ifname: str) -> CapabilityVerdict:
        phy = self.phy_of(ifname)
        if not phy:
            raise ConcurrencyUnsupported(f"phy_not_found iface={ifname}")
        res = self.runner.query([self._iw(), "phy", phy, "info"])
        concurrent = bool(res.ok and _parse_ap_managed_concurrency(res.out))
        return CapabilityVerdict(phy=phy, concurrent=concurrent)

    def resolve(
        self,
        user_sta: Optional[str] = None,
        user_wan: Optional[str] = None,
        require_wan: bool = True,
    ) -> Resolution:
        sta = self.detect_sta(user_sta)
        wan = self.detect_wan(user_wan)
        if not wan and require_wan:
            raise NoWanRoute(f"no_route_to:{self.probe_destination}")

        ap_base, shared = self.select_ap_base(sta, wan)
        verdict = self.capability(ap_base)
        if not verdict.concurrent:
            raise ConcurrencyUnsupported(f"no_managed_ap_combination iface={ap_base} phy={verdict.phy}")

        log.info(
            "resolved sta=%s wan=%s ap_base=%s phy=%s shared_radio=%s",
            sta,
            wan,
            ap_base,
            verdict.phy,
            shared,
        )
        return Resolution(sta=sta, wan=wan, ap_base=ap_base, verdict=verdict, shared_radio=shared)
