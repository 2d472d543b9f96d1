import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from routnetd.config import write_atomic

STATE_FILENAME = "state.json"

# Guards load-modify-save cycles between the main loop and signal-driven reloads.
_LOCK = threading.Lock()

SCHEMA_VERSION = 1

DEFAULT_STATE: Dict[str, Any] = {
    "schema_version": SCHEMA_VERSION,

    "pid": None,
    "phase": "idle",             # idle | capability_checked | interface_created | ... | running | stopping | error
    "backend": None,             # delegate | self_hosted
    "sta": None,
    "wan": None,
    "ap_base": None,
    "ap_interface": None,
    "ifb_interface": None,
    "nat_backend": None,
    "shared_radio": False,
    "started_ts": None,

    "warnings": [],
    "last_error": None,
    "last_op": None,
    "last_op_ts": None,
    "leasefile": None,
}


def run_dir() -> Path:
    override = (os.environ.get("ROUTNET_RUN_DIR") or "").strip()
    return Path(override) if override else Path("/run/routnet")


def state_path() -> Path:
    return run_dir() / STATE_FILENAME


def _deepcopy_default() -> Dict[str, Any]:
    # JSON roundtrip is fine here; state is small.
    return json.loads(json.dumps(DEFAULT_STATE))


def load_state() -> Dict[str, Any]:
    """
    Load state from disk and merge into defaults, so new fields roll forward.
    Never throws; returns a valid state dict.
    """
    path = state_path()
    if not path.exists():
        return _deepcopy_default()

    try:
        data = json.loads(path.read_text())
        merged = _deepcopy_default()
        if isinstance(data, dict):
            merged.update(data)
        merged.setdefault("schema_version", SCHEMA_VERSION)
        return merged
    except Exception:
        return _deepcopy_default()


def save_state(state: Dict[str, Any]) -> None:
    state.setdefault("schema_version", SCHEMA_VERSION)
    write_atomic(state_path(), json.dumps(state, indent=2, sort_keys=True))
    # Runtime state is non-secret; 0644 is reasonable.
    try:
        os.chmod(state_path(), 0o644)
    except Exception:
        pass


def update_state(**kwargs) -> Dict[str, Any]:
    """
    Load-modify-save under a lock.
    """
    with _LOCK:
        state = load_state()
        state.update(kwargs)
        state["last_op_ts"] = int(time.time())
        save_state(state)
        return state


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def running_pid() -> Optional[int]:
    """
    PID of the process currently owning a hotspot, or None.
    """
    state = load_state()
    pid = state.get("pid")
    if not isinstance(pid, int) or state.get("phase") in ("idle", "error"):
        return None
    return pid if _pid_running(pid) else None
