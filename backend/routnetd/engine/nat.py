from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from routnetd.engine.runner import Runner
from routnetd.errors import RuleApplyFailed
from routnetd.txlog import TransactionLog

log = logging.getLogger("routnetd.engine.nat")

MASQUERADE = "masquerade"
FORWARD_ESTABLISHED = "forward_established"
FORWARD = "forward"

_TABLE_NAME = "routnet"
_NFT_HANDLE_RE = re.compile(r"#\s*handle\s+(\d+)")


@dataclass(frozen=True)
class NatRule:
    kind: str
    in_if: Optional[str]
    out_if: str

    @property
    def tag(self) -> str:
        return f"routnet:{self.kind}:{self.in_if or '-'}:{self.out_if}"


def rule_set(wan: str, ap: str) -> List[NatRule]:
    return [
        NatRule(MASQUERADE, None, wan),
        NatRule(FORWARD_ESTABLISHED, wan, ap),
        NatRule(FORWARD, ap, wan),
    ]


def _iptables_cmd(ipt: str, action: str, rule: List[str]) -> List[str]:
    cmd: List[str] = [ipt]
    if len(rule) >= 2 and rule[0] == "-t":
        # iptables syntax requires table selection before action:
        #   iptables -t nat -A POSTROUTING ...
        cmd.extend(rule[:2])
        cmd.append(action)
        cmd.extend(rule[2:])
        return cmd
    cmd.append(action)
    cmd.extend(rule)
    return cmd


class IptablesBackend:
    name = "iptables"

    def __init__(self, runner: Runner) -> None:
        self.runner = runner

    def _ipt(self) -> str:
        return self.runner.which("iptables") or "iptables"

    @staticmethod
    def statement(rule: NatRule) -> List[str]:
        if rule.kind == MASQUERADE:
            return ["-t", "nat", "POSTROUTING", "-o", rule.out_if, "-j", "MASQUERADE"]
        if rule.kind == FORWARD_ESTABLISHED:
            return [
                "FORWARD",
                "-i",
                str(rule.in_if),
                "-o",
                rule.out_if,
                "-m",
                "state",
                "--state",
                "RELATED,ESTABLISHED",
                "-j",
                "ACCEPT",
            ]
        return ["FORWARD", "-i", str(rule.in_if), "-o", rule.out_if, "-j", "ACCEPT"]

    def prepare(self, txlog: TransactionLog) -> None:
        return None

    def exists(self, rule: NatRule) -> bool:
        return self.runner.query(_iptables_cmd(self._ipt(), "-C", self.statement(rule))).ok

    def insert(self, rule: NatRule) -> None:
        res = self.runner.run(_iptables_cmd(self._ipt(), "-A", self.statement(rule)))
        if not res.ok:
            raise RuleApplyFailed(f"iptables_insert_failed rule={rule.tag} err={res.out[:200]}")

    def remove(self, rule: NatRule) -> None:
        if not self.exists(rule):
            return
        self.runner.run(_iptables_cmd(self._ipt(), "-D", self.statement(rule)))


class NftBackend:
    """
    Rules live in a dedicated `ip routnet` table; every rule carries its tag as
    an nft comment so existence checks and handle lookup need no output parsing
    beyond that.
    """

    name = "nft"

    def __init__(self, runner: Runner, table: str = _TABLE_NAME) -> None:
        self.runner = runner
        self.table = table

    def _nft(self) -> str:
        return self.runner.which("nft") or "nft"

    @staticmethod
    def chain_of(rule: NatRule) -> str:
        return "postrouting" if rule.kind == MASQUERADE else "forward"

    @staticmethod
    def statement(rule: NatRule) -> List[str]:
        if rule.kind == MASQUERADE:
            stmt = ["oifname", f'"{rule.out_if}"', "masquerade"]
        elif rule.kind == FORWARD_ESTABLISHED:
            stmt = [
                "iifname",
                f'"{rule.in_if}"',
                "oifname",
                f'"{rule.out_if}"',
                "ct",
                "state",
                "related,established",
                "accept",
            ]
        else:
            stmt = ["iifname", f'"{rule.in_if}"', "oifname", f'"{rule.out_if}"', "accept"]
        return stmt + ["comment", f'"{rule.tag}"']

    def prepare(self, txlog: TransactionLog) -> None:
        nft = self._nft()
        existed = self.runner.query([nft, "list", "table", "ip", self.table]).ok
        cmds = [
            [nft, "add", "table", "ip", self.table],
            [
                nft,
                "add",
                "chain",
                "ip",
                self.table,
                "postrouting",
                "{",
                "type",
                "nat",
                "hook",
                "postrouting",
                "priority",
                "100",
                ";",
                "}",
            ],
            [
                nft,
                "add",
                "chain",
                "ip",
                self.table,
                "forward",
                "{",
                "type",
                "filter",
                "hook",
                "forward",
                "priority",
                "0",
                ";",
                "policy",
                "accept",
                ";",
                "}",
            ],
        ]
        for i, cmd in enumerate(cmds):
            res = self.runner.run(cmd)
            if not res.ok:
                raise RuleApplyFailed(f"nft_prepare_failed err={res.out[:200]}")
            if i == 0 and not existed:
                txlog.push(f"nft_delete_table:{self.table}", self.delete_table)

    def delete_table(self) -> None:
        nft = self._nft()
        if self.runner.query([nft, "list", "table", "ip", self.table]).ok:
            self.runner.run([nft, "delete", "table", "ip", self.table])

    def _list_chain(self, chain: str, handles: bool = False) -> str:
        cmd = [self._nft()]
        if handles:
            cmd.append("-a")
        cmd += ["list", "chain", "ip", self.table, chain]
        res = self.runner.query(cmd)
        return res.out if res.ok else ""

    def exists(self, rule: NatRule) -> bool:
        return f'comment "{rule.tag}"' in self._list_chain(self.chain_of(rule))

    def insert(self, rule: NatRule) -> None:
        cmd = [self._nft(), "add", "rule", "ip", self.table, self.chain_of(rule)] + self.statement(rule)
        res = self.runner.run(cmd)
        if not res.ok:
            raise RuleApplyFailed(f"nft_insert_failed rule={rule.tag} err={res.out[:200]}")

    def remove(self, rule: NatRule) -> None:
        chain = self.chain_of(rule)
        for line in self._list_chain(chain, handles=True).splitlines():
            if f'comment "{rule.tag}"' not in line:
                continue
            m = _NFT_HANDLE_RE.search(line)
            if m:
                self.runner.run([self._nft(), "delete", "rule", "ip", self.table, chain, "handle", m.group(1)])


def select_backend(runner: Runner):
    if runner.which("nft"):
        return NftBackend(runner)
    if runner.which("iptables"):
        return IptablesBackend(runner)
    raise RuleApplyFailed("no_firewall_backend: neither nft nor iptables found")


class RuleEngine:
    def __init__(self, runner: Runner, txlog: TransactionLog, backend=None) -> None:
        self.runner = runner
        self.txlog = txlog
        self.backend = backend if backend is not None else select_backend(runner)
        self.applied: List[NatRule] = []

    def _sysctl(self) -> str:
        return self.runner.which("sysctl") or "sysctl"

    def enable_forwarding(self) -> None:
        """
        Turn on IPv4 forwarding; only a run that flipped it from 0 restores 0.
        """
        sysctl = self._sysctl()
        res = self.runner.query([sysctl, "-n", "net.ipv4.ip_forward"])
        previous = res.out.strip() if res.ok else None
        if previous == "1":
            log.info("ip_forward_already_enabled")
            return
        res = self.runner.run([sysctl, "-w", "net.ipv4.ip_forward=1"])
        if not res.ok:
            raise RuleApplyFailed(f"ip_forward_enable_failed err={res.out[:200]}")
        if previous == "0":
            self.txlog.push(
                "ip_forward_restore",
                lambda: self.runner.run([sysctl, "-w", "net.ipv4.ip_forward=0"]),
            )

    def apply_rules(self, wan: str, ap: str) -> List[NatRule]:
        self.enable_forwarding()
        self.backend.prepare(self.txlog)
        for rule in rule_set(wan, ap):
            if self.backend.exists(rule):
                log.info("nat_rule_exists:%s", rule.tag)
                continue
            self.backend.insert(rule)
            self.applied.append(rule)
            self.txlog.push(f"nat_remove:{rule.tag}", lambda r=rule: self.backend.remove(r))
        log.info("nat_rules_applied backend=%s wan=%s ap=%s", self.backend.name, wan, ap)
        return list(self.applied)
