"""
Error taxonomy for the hotspot lifecycle.

Every error carries a stable snake_case `code` so the CLI and the runtime
state file can report it without parsing messages.
"""

from typing import Any, Dict, Optional


ERROR_REMEDIATIONS: Dict[str, str] = {
    "no_wireless_interface": (
        "No connected Wi-Fi interface was found. Connect to a network first or pass one with -s."
    ),
    "no_wan_route": (
        "No route to the internet was found. Check the upstream connection or pass one with -w."
    ),
    "concurrency_unsupported": (
        "The driver does not advertise a managed+AP interface combination. "
        "Use an adapter whose `iw phy` output lists both in one combination."
    ),
    "interface_create_failed": (
        "Creating the virtual AP interface failed. Check `iw dev` and the driver log (dmesg)."
    ),
    "weak_passphrase": (
        "WPA2 passphrases need at least 8 characters. Use a longer one or none for an open network."
    ),
    "rule_apply_failed": (
        "Installing NAT/forward rules failed. Make sure nft or iptables is installed and usable as root."
    ),
    "shaping_rebuild_failed": (
        "Building the traffic-control hierarchy failed. Check that `tc` and the ifb module are available."
    ),
    "daemon_spawn_failed": (
        "hostapd or dnsmasq could not be started. Make sure both are installed."
    ),
    "daemon_died_early": (
        "hostapd exited right after start. Read the log tail; another process may own the interface."
    ),
    "invalid_policy": "Check the MAC address (aa:bb:cc:dd:ee:ff) and rate (e.g. 2mbit).",
    "policy_not_reachable": (
        "The running hotspot belongs to another user (usually root). Re-run the command with sudo."
    ),
    "invalid_config": (
        "A config value is malformed. Check gateway_ip and the dhcp_*_octet settings in config.json."
    ),
}


def build_error_detail(code: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "code": code,
        "remediation": ERROR_REMEDIATIONS.get(code, "Check logs for details."),
        "context": context or {},
    }


class HotspotError(RuntimeError):
    code = "hotspot_error"

    def detail(self) -> Dict[str, Any]:
        return build_error_detail(self.code, {"message": str(self)})


class NoWirelessInterface(HotspotError):
    code = "no_wireless_interface"


class NoWanRoute(HotspotError):
    code = "no_wan_route"


class ConcurrencyUnsupported(HotspotError):
    code = "concurrency_unsupported"


class InterfaceCreateFailed(HotspotError):
    code = "interface_create_failed"

    def __init__(self, base: str, err: str) -> None:
        super().__init__(f"virtual_iface_create_failed base={base} err={err}")
        self.base = base
        self.err = err


class WeakPassphrase(HotspotError):
    code = "weak_passphrase"


class RuleApplyFailed(HotspotError):
    code = "rule_apply_failed"


class ShapingRebuildFailed(HotspotError):
    code = "shaping_rebuild_failed"


class DaemonSpawnFailed(HotspotError):
    code = "daemon_spawn_failed"


class DaemonDiedEarly(HotspotError):
    code = "daemon_died_early"


class PolicyError(HotspotError):
    """Malformed policy command input; never affects the running hotspot."""

    code = "invalid_policy"


class PolicyNotReachable(HotspotError):
    """The running hotspot cannot be signalled by this user."""

    code = "policy_not_reachable"


class ConfigInvalid(HotspotError):
    code = "invalid_config"
