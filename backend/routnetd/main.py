import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from routnetd.clients import list_clients
from routnetd.config import ensure_config_file, load_config
from routnetd.engine.runner import Runner
from routnetd.errors import HotspotError, PolicyNotReachable
from routnetd.lifecycle import Hotspot
from routnetd.logging import setup_logging
from routnetd.policy import PolicyStore
from routnetd.state import load_state, running_pid

log = logging.getLogger("routnetd.main")

_STOP_WAIT_S = 15.0


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _fail(exc: HotspotError) -> int:
    print(json.dumps(exc.detail(), indent=2), file=sys.stderr)
    return 1


def _install_signal_handlers(stop_event: threading.Event, reload_event: threading.Event) -> None:
    def _stop(signum, _frame):
        if stop_event.is_set():
            return
        try:
            sig_name = signal.Signals(signum).name
        except Exception:
            sig_name = str(signum)
        log.info("shutdown_signal:%s", sig_name)
        stop_event.set()

    def _reload(_signum, _frame):
        reload_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _stop)
    signal.signal(signal.SIGHUP, _reload)


def _start_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, attr in (
        ("ap_ifname", "ap_if"),
        ("sta_ifname", "sta_if"),
        ("wan_ifname", "wan_if"),
        ("ssid", "ssid"),
        ("passphrase", "passphrase"),
        ("driver", "driver"),
        ("channel", "channel"),
    ):
        v = getattr(args, attr, None)
        if v is not None:
            out[key] = v
    if args.no_delegate:
        out["use_delegate"] = False
    return out


def cmd_start(args: argparse.Namespace) -> int:
    if not args.dry_run and os.geteuid() != 0:
        print("routnet start must run as root (or use --dry-run)", file=sys.stderr)
        return 1

    pid = running_pid()
    if pid is not None and not args.dry_run:
        print(f"a hotspot is already running (pid {pid})", file=sys.stderr)
        return 1

    cfg = load_config()
    cfg.update(_start_overrides(args))
    hotspot = Hotspot(cfg=cfg, runner=Runner(dry_run=args.dry_run))

    stop_event = threading.Event()
    reload_event = threading.Event()
    _install_signal_handlers(stop_event, reload_event)

    try:
        status = hotspot.start()
    except HotspotError as exc:
        return _fail(exc)

    _print_json(status)
    if args.dry_run:
        hotspot.stop()
        return 0

    reason = hotspot.serve(stop_event, reload_event)
    log.info("hotspot_stopped reason=%s", reason)
    return 0 if reason == "stop_requested" else 1


def cmd_stop(_args: argparse.Namespace) -> int:
    pid = running_pid()
    if pid is None:
        print("no hotspot running")
        return 0
    os.kill(pid, signal.SIGTERM)
    deadline = time.time() + _STOP_WAIT_S
    while time.time() < deadline:
        if running_pid() is None:
            print("stopped")
            return 0
        time.sleep(0.2)
    print(f"pid {pid} did not stop within {_STOP_WAIT_S:.0f}s", file=sys.stderr)
    return 1


def cmd_status(_args: argparse.Namespace) -> int:
    state = load_state()
    state["active"] = running_pid() is not None
    _print_json(state)
    return 0


def cmd_show_clients(_args: argparse.Namespace) -> int:
    state = load_state()
    ap_if = state.get("ap_interface")
    if running_pid() is None or not ap_if:
        _print_json([])
        return 0
    leasefile = Path(state["leasefile"]) if state.get("leasefile") else None
    store = PolicyStore().load()
    _print_json(list_clients(Runner(), ap_if, store, leasefile))
    return 0


def _check_signalable(pid: Optional[int]) -> None:
    if pid is None:
        return
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return
    except PermissionError:
        raise PolicyNotReachable(f"hotspot_pid={pid} not_signalable uid={os.geteuid()}")


def _notify_running(pid: Optional[int]) -> Optional[int]:
    """
    Ask the running hotspot (if any) to re-read the policy lists.
    Returns the pid that was signalled, or None when nothing was.
    """
    if pid is None:
        return None
    try:
        os.kill(pid, signal.SIGHUP)
    except ProcessLookupError:
        log.info("hotspot_gone_before_reload pid=%s", pid)
        return None
    except PermissionError:
        raise PolicyNotReachable(f"hotspot_pid={pid} not_signalable uid={os.geteuid()}")
    return pid


def cmd_policy(args: argparse.Namespace) -> int:
    # A hotspot owned by another user reads other lists; refuse before writing ours
    pid = running_pid()
    try:
        _check_signalable(pid)
    except PolicyNotReachable as exc:
        return _fail(exc)

    store = PolicyStore().load()
    try:
        if args.command == "block":
            mac = store.block(args.mac)
        elif args.command == "unblock":
            mac = store.unblock(args.mac)
        elif args.command == "qos":
            mac = store.set_rate(args.mac, args.rate)
        elif args.command == "priority":
            mac = store.prioritize(args.mac)
        else:
            store.reset()
            mac = None
    except HotspotError as exc:
        return _fail(exc)

    payload = {"command": args.command, "mac": mac, "applied_live": False, "policy": store.snapshot()}
    try:
        payload["applied_live"] = _notify_running(pid) is not None
    except PolicyNotReachable as exc:
        _print_json(payload)
        return _fail(exc)
    _print_json(payload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="routnet", description="Share a Wi-Fi uplink through a hotspot on the same adapter")
    ap.add_argument("--log-level", default=None)
    sub = ap.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="create the hotspot and run until stopped")
    start.add_argument("-a", dest="ap_if", default=None, help="virtual AP interface name")
    start.add_argument("-s", dest="sta_if", default=None, help="client/STA interface (auto-detected)")
    start.add_argument("-w", dest="wan_if", default=None, help="upstream interface (auto-detected)")
    start.add_argument("-S", dest="ssid", default=None)
    start.add_argument("-P", dest="passphrase", default=None, help="WPA2 passphrase (omit for open)")
    start.add_argument("--driver", default=None)
    start.add_argument("--channel", type=int, default=None)
    start.add_argument("--no-delegate", action="store_true", help="never use NetworkManager's hotspot")
    start.add_argument("--dry-run", action="store_true", help="print mutating commands instead of running them")
    start.set_defaults(func=cmd_start)

    sub.add_parser("stop").set_defaults(func=cmd_stop)
    sub.add_parser("status").set_defaults(func=cmd_status)
    sub.add_parser("show-clients").set_defaults(func=cmd_show_clients)

    for name in ("block", "unblock", "priority"):
        p = sub.add_parser(name)
        p.add_argument("mac")
        p.set_defaults(func=cmd_policy)
    qos = sub.add_parser("qos")
    qos.add_argument("mac")
    qos.add_argument("rate")
    qos.set_defaults(func=cmd_policy)
    sub.add_parser("reset").set_defaults(func=cmd_policy)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    ensure_config_file()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
