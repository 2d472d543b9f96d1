from __future__ import annotations

import logging
from typing import Optional

from routnetd.engine.runner import Runner

log = logging.getLogger("routnetd.engine.delegate")

HOTSPOT_CON_NAME = "routnet-hotspot"


class NetworkManagerDelegate:
    """
    Narrow view of NetworkManager (via nmcli). Probed, never required.
    """

    def __init__(self, runner: Runner, con_name: str = HOTSPOT_CON_NAME) -> None:
        self.runner = runner
        self.con_name = con_name

    def _nmcli(self) -> Optional[str]:
        return self.runner.which("nmcli")

    def available(self) -> bool:
        nmcli = self._nmcli()
        if not nmcli:
            return False
        res = self.runner.query([nmcli, "-t", "-f", "RUNNING", "g"], timeout_s=1.5)
        return res.ok and res.out.strip() == "running"

    def connected_wifi_device(self) -> Optional[str]:
        nmcli = self._nmcli()
        if not nmcli:
            return None
        res = self.runner.query([nmcli, "-t", "-f", "DEVICE,TYPE,STATE", "dev"])
        if not res.ok:
            return None
        for raw in res.out.splitlines():
            parts = raw.strip().split(":")
            if len(parts) < 3:
                continue
            if parts[1] == "wifi" and parts[2] == "connected":
                return parts[0]
        return None

    def knows(self, ifname: str) -> bool:
        nmcli = self._nmcli()
        if not nmcli:
            return False
        return self.runner.query([nmcli, "dev", "show", ifname]).ok

    def set_managed(self, ifname: str, managed: bool) -> bool:
        nmcli = self._nmcli()
        if not nmcli:
            return False
        state = "yes" if managed else "no"
        res = self.runner.run([nmcli, "dev", "set", ifname, "managed", state])
        if res.ok:
            log.info("nmcli_set_managed iface=%s managed=%s", ifname, state)
        else:
            log.warning("nmcli_set_managed_failed iface=%s managed=%s err=%s", ifname, state, res.out[:200])
        return res.ok

    def start_hotspot(self, ifname: str, ssid: str, passphrase: str) -> bool:
        nmcli = self._nmcli()
        if not nmcli:
            return False
        cmd = [
            nmcli,
            "dev",
            "wifi",
            "hotspot",
            "ifname",
            ifname,
            "con-name",
            self.con_name,
            "ssid",
            ssid,
            "password",
            passphrase,
        ]
        res = self.runner.run(cmd, timeout_s=20.0)
        if not res.ok:
            log.info("nm_hotspot_refused iface=%s err=%s", ifname, res.out[:200])
        return res.ok

    def stop_hotspot(self) -> None:
        nmcli = self._nmcli()
        if not nmcli:
            return
        # Both tolerate an already-absent connection
        self.runner.run([nmcli, "connection", "down", self.con_name], timeout_s=10.0)
        self.runner.run([nmcli, "connection", "delete", self.con_name], timeout_s=10.0)
