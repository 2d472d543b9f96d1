"""
Persistent per-device policy: blocked MACs, per-MAC rate limits, priority MACs.

Three line-oriented lists live in the config directory:

    blocked.list    one MAC per line
    qos.list        "MAC rate" per line (last entry for a MAC wins)
    priority.list   one MAC per line

They are read once at startup and rewritten wholesale after every mutation.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from routnetd.config import DEFAULT_CONFIG, config_dir, write_atomic
from routnetd.errors import PolicyError

log = logging.getLogger("routnetd.policy")

BLOCKED_FILE = "blocked.list"
QOS_FILE = "qos.list"
PRIORITY_FILE = "priority.list"

_MAC_RE = re.compile(r"^[0-9a-f]{2}([:-]?)[0-9a-f]{2}(\1[0-9a-f]{2}){4}$", re.IGNORECASE)
_RATE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([a-z]*)$", re.IGNORECASE)

# tc units, expressed in kbit
_RATE_UNITS = {
    "": 1.0,
    "bit": 0.001,
    "kbit": 1.0,
    "mbit": 1000.0,
    "gbit": 1000000.0,
    "bps": 0.008,
    "kbps": 8.0,
    "mbps": 8000.0,
    "gbps": 8000000.0,
}


def normalize_mac(text: str) -> str:
    raw = (text or "").strip()
    if not _MAC_RE.match(raw):
        raise PolicyError(f"invalid_mac:{raw}")
    hexdigits = re.sub(r"[^0-9a-fA-F]", "", raw).lower()
    return ":".join(hexdigits[i:i + 2] for i in range(0, 12, 2))


def parse_rate_kbit(text: str) -> int:
    raw = (text or "").strip().lower()
    m = _RATE_RE.match(raw)
    if not m or m.group(2) not in _RATE_UNITS:
        raise PolicyError(f"invalid_rate:{text}")
    kbit = int(math.ceil(float(m.group(1)) * _RATE_UNITS[m.group(2)]))
    if kbit <= 0:
        raise PolicyError(f"invalid_rate:{text}")
    return kbit


def format_rate(kbit: int) -> str:
    if kbit % 1000000 == 0:
        return f"{kbit // 1000000}gbit"
    if kbit % 1000 == 0:
        return f"{kbit // 1000}mbit"
    return f"{kbit}kbit"


@dataclass(frozen=True)
class DevicePolicy:
    rate_kbit: int
    ceil_kbit: int
    priority: bool = False


@dataclass(frozen=True)
class QosPolicy:
    devices: Mapping[str, DevicePolicy] = field(default_factory=dict)
    blocked: FrozenSet[str] = frozenset()


class PolicyStore:
    """
    In-memory copy of the three policy lists, persisted on every mutation.

    Passed by reference to whoever needs the current policy; there is no
    module-level copy.
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory is not None else config_dir()
        # dicts double as insertion-ordered sets
        self.blocked: Dict[str, None] = {}
        self.rates: Dict[str, str] = {}
        self.priority: Dict[str, None] = {}

    # ---- persistence --------------------------------------------------

    def _read_lines(self, name: str) -> List[str]:
        path = self.directory / name
        if not path.exists():
            return []
        out: List[str] = []
        for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            out.append(line)
        return out

    def load(self) -> "PolicyStore":
        self.blocked = {}
        self.rates = {}
        self.priority = {}

        for line in self._read_lines(BLOCKED_FILE):
            try:
                self.blocked[normalize_mac(line.split()[0])] = None
            except PolicyError:
                log.warning("policy_line_skipped file=%s line=%s", BLOCKED_FILE, line)

        for line in self._read_lines(QOS_FILE):
            parts = line.split()
            try:
                if len(parts) != 2:
                    raise PolicyError(f"invalid_qos_line:{line}")
                mac = normalize_mac(parts[0])
                parse_rate_kbit(parts[1])
            except PolicyError:
                log.warning("policy_line_skipped file=%s line=%s", QOS_FILE, line)
                continue
            self.rates.pop(mac, None)
            self.rates[mac] = parts[1].lower()

        for line in self._read_lines(PRIORITY_FILE):
            try:
                self.priority[normalize_mac(line.split()[0])] = None
            except PolicyError:
                log.warning("policy_line_skipped file=%s line=%s", PRIORITY_FILE, line)
        return self

    def save(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        write_atomic(self.directory / BLOCKED_FILE, "".join(f"{m}\n" for m in self.blocked))
        write_atomic(self.directory / QOS_FILE, "".join(f"{m} {r}\n" for m, r in self.rates.items()))
        write_atomic(self.directory / PRIORITY_FILE, "".join(f"{m}\n" for m in self.priority))

    # ---- mutations (each persists immediately) ------------------------

    def block(self, mac: str) -> str:
        mac = normalize_mac(mac)
        self.blocked[mac] = None
        self.save()
        return mac

    def unblock(self, mac: str) -> str:
        mac = normalize_mac(mac)
        self.blocked.pop(mac, None)
        self.save()
        return mac

    def set_rate(self, mac: str, rate: str) -> str:
        mac = normalize_mac(mac)
        if not rate:
            raise PolicyError("missing_rate")
        parse_rate_kbit(rate)
        # re-insert so the file order reflects the latest write
        self.rates.pop(mac, None)
        self.rates[mac] = rate.strip().lower()
        self.save()
        return mac

    def prioritize(self, mac: str) -> str:
        mac = normalize_mac(mac)
        self.priority[mac] = None
        self.save()
        return mac

    def reset(self) -> None:
        self.blocked = {}
        self.rates = {}
        self.priority = {}
        self.save()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "blocked": list(self.blocked),
            "qos": dict(self.rates),
            "priority": list(self.priority),
        }

    # ---- derived policy ----------------------------------------------

    def policy(self, cfg: Optional[Mapping[str, Any]] = None) -> QosPolicy:
        return build_policy(self, cfg or DEFAULT_CONFIG)


def build_policy(store: PolicyStore, cfg: Mapping[str, Any]) -> QosPolicy:
    """
    Combine the three lists into MAC -> DevicePolicy.

    Blocked MACs get no rate class; they are denied outright by the shaper.
    """
    link_kbit = parse_rate_kbit(str(cfg.get("link_rate") or DEFAULT_CONFIG["link_rate"]))
    priority_kbit = parse_rate_kbit(str(cfg.get("priority_rate") or DEFAULT_CONFIG["priority_rate"]))
    try:
        ceil_factor = max(1.0, float(cfg.get("ceil_factor", DEFAULT_CONFIG["ceil_factor"])))
    except (TypeError, ValueError):
        ceil_factor = float(DEFAULT_CONFIG["ceil_factor"])

    devices: Dict[str, DevicePolicy] = {}
    for mac in list(store.rates) + [m for m in store.priority if m not in store.rates]:
        if mac in store.blocked:
            continue
        prio = mac in store.priority
        if mac in store.rates:
            rate = min(parse_rate_kbit(store.rates[mac]), link_kbit)
            ceil = min(max(rate, int(math.ceil(rate * ceil_factor))), link_kbit)
        else:
            rate = min(priority_kbit, link_kbit)
            ceil = link_kbit
        if prio:
            ceil = link_kbit
        devices[mac] = DevicePolicy(rate_kbit=rate, ceil_kbit=ceil, priority=prio)

    return QosPolicy(devices=devices, blocked=frozenset(store.blocked))
