import json
import os
from pathlib import Path
from typing import Any, Dict

CONFIG_FILENAME = "config.json"
CONFIG_SCHEMA_VERSION = 1

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_SCHEMA_VERSION,

    # Wi-Fi identity. Empty passphrase => open network.
    "ssid": "ROUTNET",
    "passphrase": "",
    "channel": 6,
    "hw_mode": "g",
    "driver": "nl80211",
    "country": "",

    # Interface overrides (auto-detected when empty)
    "ap_ifname": "",
    "sta_ifname": "",
    "wan_ifname": "",
    "probe_destination": "1.1.1.1",

    # LAN / DHCP / DNS
    "gateway_ip": "192.168.50.1",
    "dhcp_start_octet": 10,
    "dhcp_end_octet": 100,
    "lease_time": "24h",
    "dns_upstream": "1.1.1.1",

    # Prefer NetworkManager's own hotspot when it can host one
    "use_delegate": True,

    # hostapd must stay up this long after spawn
    "ap_grace_s": 1.0,

    # Traffic shaping
    "link_rate": "100mbit",
    "default_rate": "1mbit",
    "priority_rate": "10mbit",
    "ceil_factor": 1.5,
    "ifb_ifname": "ifb0",
}


def config_dir() -> Path:
    override = (os.environ.get("ROUTNET_CONFIG_DIR") or "").strip()
    if override:
        return Path(override)
    return Path.home() / ".config" / "routnet"


def config_path() -> Path:
    return config_dir() / CONFIG_FILENAME


def read_config_file() -> Dict[str, Any]:
    """
    Returns the raw JSON content on disk (or {} if missing/invalid).
    """
    path = config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}


def write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except Exception:
            pass
    os.replace(tmp, path)


def load_config() -> Dict[str, Any]:
    """
    Returns DEFAULT_CONFIG merged with on-disk config.
    """
    cfg = DEFAULT_CONFIG.copy()
    cfg.update(read_config_file())
    cfg["version"] = CONFIG_SCHEMA_VERSION
    return cfg


def write_config_file(partial_updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist a partial update to disk. Unknown keys already on disk are kept.

    Returns the merged config after write.
    """
    if not isinstance(partial_updates, dict):
        partial_updates = {}

    merged: Dict[str, Any] = DEFAULT_CONFIG.copy()
    merged.update(read_config_file())
    merged.update(partial_updates)
    merged["version"] = CONFIG_SCHEMA_VERSION

    path = config_path()
    write_atomic(path, json.dumps(merged, indent=2))
    # May hold the passphrase
    path.chmod(0o600)
    return merged


def ensure_config_file():
    if config_path().exists():
        return
    write_config_file({})
