from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional

log = logging.getLogger("routnetd.engine.runner")

_CMD_TIMEOUT_S = 4.0


def redact_cmd(cmd: List[str]) -> List[str]:
    out = list(cmd)
    for flag in ("-p", "--passphrase", "password"):
        try:
            i = out.index(flag)
            if i + 1 < len(out):
                out[i + 1] = "********"
        except ValueError:
            pass
    return out


@dataclass(frozen=True)
class CmdResult:
    rc: int
    out: str

    @property
    def ok(self) -> bool:
        return self.rc == 0


class Runner:
    """
    Single seam for every external command (iw, ip, nft, iptables, tc, nmcli, sysctl).

    `query()` is for read-only probes and always executes. `run()` is for
    mutations; with dry_run=True it only echoes the command and reports success.
    Neither raises on a failing command: callers decide what a non-zero rc means.
    """

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name) or shutil.which(name, path="/usr/sbin:/usr/bin:/sbin:/bin")

    def query(self, cmd: List[str], timeout_s: float = _CMD_TIMEOUT_S) -> CmdResult:
        return self._exec(cmd, timeout_s)

    def run(self, cmd: List[str], timeout_s: float = _CMD_TIMEOUT_S) -> CmdResult:
        if self.dry_run:
            print("+ " + " ".join(redact_cmd(cmd)), flush=True)
            return CmdResult(0, "")
        res = self._exec(cmd, timeout_s)
        if not res.ok:
            log.debug("cmd_failed", extra={"cmd": " ".join(redact_cmd(cmd)), "rc": res.rc})
        return res

    def _exec(self, cmd: List[str], timeout_s: float) -> CmdResult:
        try:
            p = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout_s,
                check=False,
                env={**os.environ, "LC_ALL": "C", "LANG": "C"},
            )
        except subprocess.TimeoutExpired as exc:
            out = (exc.stdout or "") if isinstance(exc.stdout, str) else ""
            err = (exc.stderr or "") if isinstance(exc.stderr, str) else ""
            return CmdResult(124, (out + "\n" + err).strip())
        except Exception as exc:
            return CmdResult(127, f"{type(exc).__name__}: {exc}")
        out = (p.stdout or "") + ("\n" + p.stderr if p.stderr else "")
        return CmdResult(p.returncode, out.strip())
