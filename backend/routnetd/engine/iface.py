from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import List, Optional

from routnetd.engine.delegate import NetworkManagerDelegate
from routnetd.engine.runner import Runner
from routnetd.errors import InterfaceCreateFailed
from routnetd.txlog import TransactionLog

log = logging.getLogger("routnetd.engine.iface")

ROLE_AP = "ap"

IFNAMSIZ = 15
_ALT_SUFFIXES = 8
_RANDOM_ATTEMPTS = 4


@dataclass(frozen=True)
class IfaceDescriptor:
    name: str
    role: str
    owned: bool


def _mk_virt_name(base: str, suffix: str = "ap") -> str:
    token = re.sub(r"[^A-Za-z0-9]", "", str(base or "")) or "wl"
    return token[: IFNAMSIZ - len(suffix)] + suffix


def _virt_name_candidates(base: str, preferred: Optional[str] = None) -> List[str]:
    raw: List[str] = []
    if preferred:
        raw.append(preferred)
    raw.append(_mk_virt_name(base))
    for i in range(_ALT_SUFFIXES):
        raw.append(_mk_virt_name(base, f"ap{i}"))
    out: List[str] = []
    seen = set()
    for cand in raw:
        norm = re.sub(r"[^A-Za-z0-9_.-]", "", str(cand or ""))[:IFNAMSIZ]
        if len(norm) < 2 or norm in seen:
            continue
        seen.add(norm)
        out.append(norm)
    return out


def _random_virt_name() -> str:
    return f"ap{secrets.token_hex(4)}"


def _is_iface_name_conflict_text(text: object) -> bool:
    low = str(text or "").lower()
    return ("name not unique on network" in low) or ("file exists" in low)


class InterfaceManager:
    """
    Creates and destroys the virtual AP interface.

    A created interface always has its deletion on the transaction log before
    create_virtual_ap() returns.
    """

    def __init__(
        self,
        runner: Runner,
        txlog: TransactionLog,
        delegate: Optional[NetworkManagerDelegate] = None,
    ) -> None:
        self.runner = runner
        self.txlog = txlog
        self.delegate = delegate
        self.ap: Optional[IfaceDescriptor] = None

    def _iw(self) -> str:
        return self.runner.which("iw") or "/usr/sbin/iw"

    def _ip(self) -> str:
        return self.runner.which("ip") or "/usr/sbin/ip"

    def exists(self, ifname: str) -> bool:
        return self.runner.query([self._ip(), "link", "show", ifname]).ok

    def create_virtual_ap(self, base: str, preferred: Optional[str] = None) -> IfaceDescriptor:
        if self.ap is not None:
            raise InterfaceCreateFailed(base, f"ap_already_active:{self.ap.name}")

        names = _virt_name_candidates(base, preferred)
        names += [_random_virt_name() for _ in range(_RANDOM_ATTEMPTS)]
        created: Optional[str] = None
        for name in names:
            if self.exists(name):
                log.info("virt_iface_name_taken:%s", name)
                continue
            res = self.runner.run([self._iw(), "dev", base, "interface", "add", name, "type", "__ap"])
            if res.ok:
                created = name
                break
            if _is_iface_name_conflict_text(res.out):
                log.info("virt_iface_name_conflict:%s", name)
                continue
            raise InterfaceCreateFailed(base, res.out.strip() or f"rc={res.rc}")
        if created is None:
            raise InterfaceCreateFailed(base, f"no_free_name tried={','.join(names)}")

        name = created
        desc = IfaceDescriptor(name=name, role=ROLE_AP, owned=True)
        self.ap = desc
        self.txlog.push(f"delete_iface:{name}", lambda: self.destroy(desc))
        log.info("virt_iface_created", extra={"iface": name, "op": "create"})
        return desc

    def adopt(self, name: str, role: str = ROLE_AP) -> IfaceDescriptor:
        """Descriptor for a pre-existing interface; never destroyed by us."""
        desc = IfaceDescriptor(name=name, role=role, owned=False)
        if role == ROLE_AP:
            self.ap = desc
        return desc

    def destroy(self, desc: IfaceDescriptor) -> None:
        if self.ap == desc:
            self.ap = None
        if not desc.owned:
            return
        if self.exists(desc.name):
            res = self.runner.run([self._iw(), "dev", desc.name, "del"])
            if not res.ok:
                log.warning("virt_iface_delete_failed iface=%s err=%s", desc.name, res.out[:200])

    def bring_up(self, desc: IfaceDescriptor) -> bool:
        res = self.runner.run([self._ip(), "link", "set", desc.name, "up"])
        if not res.ok:
            # address assignment re-attempts the link later
            log.warning("iface_up_failed iface=%s err=%s", desc.name, res.out[:200])
        return res.ok

    def assign_address(self, desc: IfaceDescriptor, cidr: str) -> None:
        ip = self._ip()
        self.runner.run([ip, "addr", "flush", "dev", desc.name])
        res = self.runner.run([ip, "addr", "add", cidr, "dev", desc.name])
        if not res.ok:
            raise InterfaceCreateFailed(desc.name, f"addr_add_failed:{res.out.strip()}")
        self.txlog.push(f"flush_addr:{desc.name}", lambda: self.flush_address(desc))
        if not self.bring_up(desc):
            log.warning("iface_still_down_after_addr:%s", desc.name)

    def flush_address(self, desc: IfaceDescriptor) -> None:
        if self.exists(desc.name):
            self.runner.run([self._ip(), "addr", "flush", "dev", desc.name])

    def set_unmanaged(self, ifname: str) -> None:
        """
        Keep NetworkManager away from an interface we drive ourselves; restore on rollback.
        """
        if self.delegate is None or not self.delegate.available() or not self.delegate.knows(ifname):
            return
        if self.delegate.set_managed(ifname, False):
            self.txlog.push(f"nm_managed:{ifname}", lambda: self.delegate.set_managed(ifname, True))
