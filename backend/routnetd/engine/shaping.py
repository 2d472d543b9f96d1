from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from routnetd.engine.runner import Runner
from routnetd.errors import ShapingRebuildFailed
from routnetd.policy import QosPolicy, format_rate, parse_rate_kbit
from routnetd.txlog import TransactionLog

log = logging.getLogger("routnetd.engine.shaping")

ROOT_HANDLE = "1:"
LINK_CLASS = "1:1"
DEFAULT_MINOR = 0xFF
FIRST_CLASS_MINOR = 0x10
INGRESS_HANDLE = "ffff:"

# HTB: lower prio value is served first when classes compete for spare bandwidth
HTB_PRIO_PRIORITY = 0
HTB_PRIO_NORMAL = 1
HTB_PRIO_DEFAULT = 7

# Filter evaluation order: drops before classification
FILTER_PRIO_REDIRECT = "1"
FILTER_PRIO_BLOCK = "1"
FILTER_PRIO_CLASS = "2"


@dataclass(frozen=True)
class ShapingClass:
    minor: int
    rate_kbit: int
    ceil_kbit: int
    prio: int

    @property
    def classid(self) -> str:
        return f"1:{self.minor:x}"


def build_classes(policy: QosPolicy) -> Tuple[List[ShapingClass], Dict[str, ShapingClass]]:
    """
    One class per distinct (rate, priority) pair, numbered in sorted order so the
    same policy always yields the same class ids. Returns (classes, mac -> class).
    """
    keys: Dict[Tuple[int, bool], int] = {}
    for dev in policy.devices.values():
        keys[(dev.rate_kbit, dev.priority)] = dev.ceil_kbit

    ordered = sorted(keys, key=lambda k: (0 if k[1] else 1, k[0]))
    if len(ordered) > DEFAULT_MINOR - FIRST_CLASS_MINOR:
        raise ShapingRebuildFailed(f"too_many_classes:{len(ordered)}")
    by_key: Dict[Tuple[int, bool], ShapingClass] = {}
    classes: List[ShapingClass] = []
    for i, key in enumerate(ordered):
        rate, prio = key
        cls = ShapingClass(
            minor=FIRST_CLASS_MINOR + i,
            rate_kbit=rate,
            ceil_kbit=keys[key],
            prio=HTB_PRIO_PRIORITY if prio else HTB_PRIO_NORMAL,
        )
        by_key[key] = cls
        classes.append(cls)

    mac_map = {
        mac: by_key[(dev.rate_kbit, dev.priority)] for mac, dev in sorted(policy.devices.items())
    }
    return classes, mac_map


class ShapingEngine:
    """
    Per-device shaping on the AP interface.

    Egress on `base` shapes traffic towards clients. Client uploads arrive as
    ingress on `base`, which tc cannot shape, so they are redirected into the
    `ifb` device and shaped there as egress.

    Every rebuild tears everything down and replays plan(policy); the live
    hierarchy is a function of the policy alone.
    """

    def __init__(
        self,
        runner: Runner,
        txlog: TransactionLog,
        base: str,
        ifb: str = "ifb0",
        link_rate: str = "100mbit",
        default_rate: str = "1mbit",
    ) -> None:
        self.runner = runner
        self.txlog = txlog
        self.base = base
        self.ifb = ifb
        self.link_kbit = parse_rate_kbit(link_rate)
        self.default_kbit = min(parse_rate_kbit(default_rate), self.link_kbit)
        self._teardown_registered = False
        self._ifb_registered = False
        self.last_description: Optional[str] = None

    def _tc(self) -> str:
        return self.runner.which("tc") or "tc"

    def _ip(self) -> str:
        return self.runner.which("ip") or "ip"

    # ---- planning ------------------------------------------------------

    def _htb_tree(self, dev: str, classes: List[ShapingClass]) -> List[List[str]]:
        tc = self._tc()
        link = format_rate(self.link_kbit)
        default_minor = f"{DEFAULT_MINOR:x}"
        cmds = [
            [tc, "qdisc", "add", "dev", dev, "root", "handle", ROOT_HANDLE, "htb", "default", default_minor],
            [tc, "class", "add", "dev", dev, "parent", ROOT_HANDLE, "classid", LINK_CLASS, "htb",
             "rate", link, "ceil", link],
            [tc, "class", "add", "dev", dev, "parent", LINK_CLASS, "classid", f"1:{default_minor}", "htb",
             "rate", format_rate(self.default_kbit), "ceil", link, "prio", str(HTB_PRIO_DEFAULT)],
            [tc, "qdisc", "add", "dev", dev, "parent", f"1:{default_minor}", "handle", f"{default_minor}:",
             "sfq", "perturb", "10"],
        ]
        for cls in classes:
            cmds.append(
                [tc, "class", "add", "dev", dev, "parent", LINK_CLASS, "classid", cls.classid, "htb",
                 "rate", format_rate(cls.rate_kbit), "ceil", format_rate(cls.ceil_kbit), "prio", str(cls.prio)]
            )
            cmds.append(
                [tc, "qdisc", "add", "dev", dev, "parent", cls.classid, "handle", f"{cls.minor:x}:",
                 "sfq", "perturb", "10"]
            )
        return cmds

    def _filters(self, dev: str, direction: str, policy: QosPolicy, mac_map: Dict[str, ShapingClass]) -> List[List[str]]:
        tc = self._tc()
        cmds: List[List[str]] = []
        for mac in sorted(policy.blocked):
            cmds.append(
                [tc, "filter", "add", "dev", dev, "parent", ROOT_HANDLE, "protocol", "all", "prio",
                 FILTER_PRIO_BLOCK, "u32", "match", "ether", direction, mac, "action", "drop"]
            )
        for mac, cls in mac_map.items():
            cmds.append(
                [tc, "filter", "add", "dev", dev, "parent", ROOT_HANDLE, "protocol", "all", "prio",
                 FILTER_PRIO_CLASS, "u32", "match", "ether", direction, mac, "flowid", cls.classid]
            )
        return cmds

    def plan(self, policy: QosPolicy) -> List[List[str]]:
        tc = self._tc()
        classes, mac_map = build_classes(policy)
        cmds: List[List[str]] = []
        cmds += self._htb_tree(self.base, classes)
        cmds += [
            [tc, "qdisc", "add", "dev", self.base, "handle", INGRESS_HANDLE, "ingress"],
            [tc, "filter", "add", "dev", self.base, "parent", INGRESS_HANDLE, "protocol", "all", "prio",
             FILTER_PRIO_REDIRECT, "u32", "match", "u32", "0", "0", "action", "mirred", "egress",
             "redirect", "dev", self.ifb],
        ]
        cmds += self._htb_tree(self.ifb, classes)
        # towards clients the device MAC is the destination, from clients the source
        cmds += self._filters(self.base, "dst", policy, mac_map)
        cmds += self._filters(self.ifb, "src", policy, mac_map)
        return cmds

    def describe(self, policy: QosPolicy) -> str:
        return "\n".join(" ".join(cmd) for cmd in self.plan(policy)) + "\n"

    # ---- mutation ------------------------------------------------------

    def _iface_exists(self, ifname: str) -> bool:
        return self.runner.query([self._ip(), "link", "show", ifname]).ok

    def teardown(self) -> None:
        tc = self._tc()
        # "No such file or directory" just means nothing was installed
        self.runner.run([tc, "qdisc", "del", "dev", self.base, "root"])
        self.runner.run([tc, "qdisc", "del", "dev", self.base, "ingress"])
        if self._iface_exists(self.ifb):
            self.runner.run([tc, "qdisc", "del", "dev", self.ifb, "root"])

    def delete_ifb(self) -> None:
        if self._iface_exists(self.ifb):
            self.runner.run([self._ip(), "link", "del", self.ifb])

    def ensure_ifb(self) -> None:
        ip = self._ip()
        if not self._iface_exists(self.ifb):
            modprobe = self.runner.which("modprobe")
            if modprobe:
                self.runner.run([modprobe, "ifb", "numifbs=0"])
            res = self.runner.run([ip, "link", "add", self.ifb, "type", "ifb"])
            if not res.ok:
                raise ShapingRebuildFailed(f"ifb_create_failed iface={self.ifb} err={res.out[:200]}")
            if not self._ifb_registered:
                self.txlog.push(f"delete_ifb:{self.ifb}", self.delete_ifb)
                self._ifb_registered = True
        res = self.runner.run([ip, "link", "set", self.ifb, "up"])
        if not res.ok:
            raise ShapingRebuildFailed(f"ifb_up_failed iface={self.ifb} err={res.out[:200]}")

    def rebuild(self, policy: QosPolicy) -> str:
        """
        Replace the live hierarchy with plan(policy). On any failure the
        hierarchy is torn down completely before ShapingRebuildFailed propagates.
        """
        self.teardown()
        try:
            self.ensure_ifb()
            for cmd in self.plan(policy):
                res = self.runner.run(cmd)
                if not res.ok:
                    raise ShapingRebuildFailed(f"tc_failed cmd={' '.join(cmd)} err={res.out[:200]}")
        except ShapingRebuildFailed:
            log.error("shaping_rebuild_failed base=%s ifb=%s", self.base, self.ifb)
            self.teardown()
            self.last_description = None
            raise

        if not self._teardown_registered:
            self.txlog.push(f"shaping_teardown:{self.base}", self.teardown)
            self._teardown_registered = True

        self.last_description = self.describe(policy)
        log.info(
            "shaping_rebuilt base=%s ifb=%s devices=%s blocked=%s",
            self.base,
            self.ifb,
            len(policy.devices),
            len(policy.blocked),
        )
        return self.last_description
