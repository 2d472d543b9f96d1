import logging
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from routnetd.clients import list_clients
from routnetd.config import load_config
from routnetd.engine.apconf import MIN_PASSPHRASE_LEN, dhcp_pool, write_dnsmasq_conf, write_hostapd_conf
from routnetd.engine.daemons import Daemon
from routnetd.engine.delegate import NetworkManagerDelegate
from routnetd.engine.iface import ROLE_AP, IfaceDescriptor, InterfaceManager
from routnetd.engine.nat import RuleEngine
from routnetd.engine.runner import Runner
from routnetd.engine.shaping import ShapingEngine
from routnetd.errors import ConfigInvalid, HotspotError, WeakPassphrase
from routnetd.policy import PolicyStore
from routnetd.resolver import Resolution, Resolver
from routnetd.state import update_state
from routnetd.txlog import TransactionLog

log = logging.getLogger("routnetd.lifecycle")

PHASE_IDLE = "idle"
PHASE_CAPABILITY_CHECKED = "capability_checked"
PHASE_INTERFACE_CREATED = "interface_created"
PHASE_DELEGATE_ACTIVE = "delegate_active"
PHASE_RULES_APPLIED = "rules_applied"
PHASE_SHAPING_APPLIED = "shaping_applied"
PHASE_DAEMONS_RUNNING = "daemons_running"
PHASE_RUNNING = "running"
PHASE_STOPPING = "stopping"
PHASE_ERROR = "error"

BACKEND_DELEGATE = "delegate"
BACKEND_SELF_HOSTED = "self_hosted"

_SERVE_POLL_S = 0.5


def validate_passphrase(passphrase: Optional[str]) -> str:
    """
    Empty means an open network; anything else must satisfy WPA2's minimum.
    """
    pw = passphrase or ""
    if pw and len(pw) < MIN_PASSPHRASE_LEN:
        raise WeakPassphrase(f"passphrase_too_short len={len(pw)} min={MIN_PASSPHRASE_LEN}")
    return pw


def _safe_update_state(**kwargs) -> None:
    # The state file is for status reporting only; a read-only run dir must not stop the hotspot.
    try:
        update_state(**kwargs)
    except OSError as exc:
        log.warning("state_write_failed err=%s", exc)


class Hotspot:
    """
    Drives one hotspot run from resolution to teardown.

    Every mutation pushes its compensation on `txlog` as soon as it succeeds.
    A failure after the first mutation drains the log before the error
    propagates, so a failed start leaves nothing of this run behind.
    """

    def __init__(
        self,
        cfg: Optional[Mapping[str, Any]] = None,
        store: Optional[PolicyStore] = None,
        runner: Optional[Runner] = None,
        delegate: Optional[NetworkManagerDelegate] = None,
        txlog: Optional[TransactionLog] = None,
        nat_backend=None,
        daemon_factory: Callable[..., Daemon] = Daemon,
    ) -> None:
        self.cfg: Dict[str, Any] = dict(cfg if cfg is not None else load_config())
        self.store = store if store is not None else PolicyStore().load()
        self.runner = runner if runner is not None else Runner()
        self.delegate = delegate if delegate is not None else NetworkManagerDelegate(self.runner)
        self.txlog = txlog if txlog is not None else TransactionLog()
        self.nat_backend = nat_backend
        self.daemon_factory = daemon_factory

        self.phase = PHASE_IDLE
        self.backend: Optional[str] = None
        self.resolution: Optional[Resolution] = None
        self.ap: Optional[IfaceDescriptor] = None
        self.ifaces = InterfaceManager(self.runner, self.txlog, self.delegate)
        self.rules: Optional[RuleEngine] = None
        self.shaper: Optional[ShapingEngine] = None
        self.daemons: List[Daemon] = []
        self.workdir: Optional[str] = None
        self.leasefile: Optional[str] = None
        self.warnings: List[str] = []
        self._plan: Tuple[str, str, str, int] = ("192.168.50.1", "", "", 6)
        # Policy commands and rebuilds are serialized with start/stop
        self._op_lock = threading.RLock()

    # ---- helpers -------------------------------------------------------

    def _set_phase(self, phase: str, **fields) -> None:
        self.phase = phase
        log.info("phase:%s", phase, extra={"op": "lifecycle", "phase": phase})
        _safe_update_state(phase=phase, **fields)

    def _cfg_str(self, key: str) -> Optional[str]:
        v = self.cfg.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
        return None

    def _network_plan(self) -> Tuple[str, str, str, int]:
        """Gateway, DHCP pool bounds and channel, checked before anything is touched."""
        gw = str(self.cfg.get("gateway_ip") or "192.168.50.1")
        try:
            start_ip, end_ip = dhcp_pool(
                gw,
                int(self.cfg.get("dhcp_start_octet", 10)),
                int(self.cfg.get("dhcp_end_octet", 100)),
            )
            channel = int(self.cfg.get("channel", 6))
        except (TypeError, ValueError) as exc:
            raise ConfigInvalid(f"bad_network_config gateway={gw} err={exc}") from exc
        return gw, start_ip, end_ip, channel

    def _make_workdir(self) -> str:
        path = tempfile.mkdtemp(prefix="routnet.")
        self.txlog.push(f"remove_workdir:{path}", lambda: shutil.rmtree(path, ignore_errors=True))
        return path

    # ---- start ---------------------------------------------------------

    def start(self) -> Dict[str, Any]:
        with self._op_lock:
            if self.phase not in (PHASE_IDLE, PHASE_ERROR):
                raise HotspotError(f"already_started phase={self.phase}")

            passphrase = validate_passphrase(self.cfg.get("passphrase"))
            self._plan = self._network_plan()
            self.warnings = []

            resolver = Resolver(
                self.runner,
                delegate=self.delegate,
                probe_destination=self._cfg_str("probe_destination") or "1.1.1.1",
            )
            # Raises before anything has been touched
            res = resolver.resolve(
                user_sta=self._cfg_str("sta_ifname"),
                user_wan=self._cfg_str("wan_ifname"),
            )
            self.resolution = res
            if res.shared_radio:
                self.warnings.append(f"single_radio_shared:{res.ap_base}")
            self._set_phase(
                PHASE_CAPABILITY_CHECKED,
                pid=os.getpid(),
                sta=res.sta,
                wan=res.wan,
                ap_base=res.ap_base,
                shared_radio=res.shared_radio,
                last_op="start",
                last_error=None,
                warnings=list(self.warnings),
            )

            try:
                self._start_impl(res, passphrase)
            except Exception as exc:
                log.error("start_failed err=%s", exc, extra={"op": "start"})
                self.txlog.drain()
                self._reset_run()
                self._set_phase(PHASE_ERROR, last_error=str(exc), ap_interface=None, backend=None)
                raise

            self._set_phase(PHASE_RUNNING, started_ts=int(time.time()), warnings=list(self.warnings))
            return self.status()

    def _start_impl(self, res: Resolution, passphrase: str) -> None:
        upstream = res.wan or res.sta

        if self._try_delegate(res, passphrase):
            self.backend = BACKEND_DELEGATE
            self.ap = self.ifaces.adopt(res.ap_base, ROLE_AP)
            self._set_phase(PHASE_DELEGATE_ACTIVE, backend=self.backend, ap_interface=self.ap.name)
        else:
            self.backend = BACKEND_SELF_HOSTED
            self.ap = self.ifaces.create_virtual_ap(res.ap_base, preferred=self._cfg_str("ap_ifname"))
            self._set_phase(PHASE_INTERFACE_CREATED, backend=self.backend, ap_interface=self.ap.name)
            self.ifaces.set_unmanaged(self.ap.name)
            self.ifaces.bring_up(self.ap)
            self.ifaces.assign_address(self.ap, f"{self._plan[0]}/24")

        self.rules = RuleEngine(self.runner, self.txlog, backend=self.nat_backend)
        self.rules.apply_rules(upstream, self.ap.name)
        if self.backend == BACKEND_SELF_HOSTED:
            self._set_phase(PHASE_RULES_APPLIED, nat_backend=self.rules.backend.name)
        else:
            _safe_update_state(nat_backend=self.rules.backend.name)

        self.shaper = ShapingEngine(
            self.runner,
            self.txlog,
            base=self.ap.name,
            ifb=self._cfg_str("ifb_ifname") or "ifb0",
            link_rate=str(self.cfg.get("link_rate") or "100mbit"),
            default_rate=str(self.cfg.get("default_rate") or "1mbit"),
        )
        self.shaper.rebuild(self.store.policy(self.cfg))
        if self.backend == BACKEND_SELF_HOSTED:
            self._set_phase(PHASE_SHAPING_APPLIED, ifb_interface=self.shaper.ifb)
            self._spawn_daemons(passphrase)
            self._set_phase(PHASE_DAEMONS_RUNNING, leasefile=self.leasefile)
        else:
            _safe_update_state(ifb_interface=self.shaper.ifb)

    def _try_delegate(self, res: Resolution, passphrase: str) -> bool:
        if not self.cfg.get("use_delegate", True):
            return False
        if not passphrase:
            # nmcli hotspots always carry WPA
            log.info("delegate_skipped:open_network")
            return False
        if res.shared_radio:
            # taking over the only radio would drop the upstream link
            log.info("delegate_skipped:shared_radio")
            return False
        if not self.delegate.available():
            log.info("delegate_skipped:nm_unavailable")
            return False

        ssid = str(self.cfg.get("ssid") or "ROUTNET")
        if not self.delegate.start_hotspot(res.ap_base, ssid, passphrase):
            self.warnings.append("delegate_hotspot_refused")
            return False
        self.txlog.push(f"nm_hotspot_down:{res.ap_base}", self.delegate.stop_hotspot)
        log.info("delegate_hotspot_active iface=%s", res.ap_base)
        return True

    def _spawn_daemons(self, passphrase: str) -> None:
        assert self.ap is not None
        workdir = self._make_workdir()
        self.workdir = workdir
        gw, start_ip, end_ip, channel = self._plan

        hostapd_conf = os.path.join(workdir, "hostapd.conf")
        write_hostapd_conf(
            path=hostapd_conf,
            ifname=self.ap.name,
            ssid=str(self.cfg.get("ssid") or "ROUTNET"),
            passphrase=passphrase,
            channel=channel,
            driver=str(self.cfg.get("driver") or "nl80211"),
            hw_mode=str(self.cfg.get("hw_mode") or "g"),
            country=self._cfg_str("country"),
        )

        dnsmasq_conf = os.path.join(workdir, "dnsmasq.conf")
        self.leasefile = os.path.join(workdir, "dnsmasq.leases")
        write_dnsmasq_conf(
            dnsmasq_conf,
            self.ap.name,
            gw,
            start_ip,
            end_ip,
            lease_time=str(self.cfg.get("lease_time") or "24h"),
            dns_upstream=self._cfg_str("dns_upstream"),
            leasefile=self.leasefile,
        )

        hostapd = self.daemon_factory(
            "hostapd",
            [self.runner.which("hostapd") or "hostapd", hostapd_conf],
            dry_run=self.runner.dry_run,
        )
        hostapd.start(grace_s=float(self.cfg.get("ap_grace_s", 1.0)))
        self.daemons.append(hostapd)
        self.txlog.push("stop_daemon:hostapd", hostapd.stop)

        dnsmasq = self.daemon_factory(
            "dnsmasq",
            [self.runner.which("dnsmasq") or "dnsmasq", "--no-daemon", f"--conf-file={dnsmasq_conf}"],
            dry_run=self.runner.dry_run,
        )
        dnsmasq.start()
        self.daemons.append(dnsmasq)
        self.txlog.push("stop_daemon:dnsmasq", dnsmasq.stop)

    # ---- stop ----------------------------------------------------------

    def _reset_run(self) -> None:
        self.backend = None
        self.ap = None
        self.rules = None
        self.shaper = None
        self.daemons = []
        self.workdir = None
        self.leasefile = None
        self.ifaces.ap = None

    def stop(self) -> List[Tuple[str, bool]]:
        with self._op_lock:
            if self.phase == PHASE_IDLE and not len(self.txlog):
                return []
            self._set_phase(PHASE_STOPPING, last_op="stop")
            results = self.txlog.drain()
            failed = [label for label, ok in results if not ok]
            self._reset_run()
            self._set_phase(
                PHASE_IDLE,
                pid=None,
                backend=None,
                ap_interface=None,
                ifb_interface=None,
                nat_backend=None,
                leasefile=None,
                warnings=[f"compensation_failed:{label}" for label in failed],
            )
            return results

    def serve(
        self,
        stop_event: threading.Event,
        reload_event: Optional[threading.Event] = None,
        poll_s: float = _SERVE_POLL_S,
    ) -> Optional[str]:
        """
        Block until a stop request or a supervised daemon exits, then tear down.

        Returns the reason the loop ended.
        """
        reason: Optional[str] = None
        try:
            while not stop_event.wait(poll_s):
                if reload_event is not None and reload_event.is_set():
                    reload_event.clear()
                    try:
                        self.reload_policy()
                    except HotspotError as exc:
                        log.error("policy_reload_failed err=%s", exc)
                dead = [d.name for d in self.daemons if not d.alive()]
                if dead:
                    reason = f"daemon_exited:{','.join(dead)}"
                    for d in self.daemons:
                        if d.name in dead:
                            for line in d.tail()[-10:]:
                                log.error("%s: %s", d.name, line)
                    log.error("serve_abort reason=%s", reason)
                    _safe_update_state(last_error=reason)
                    break
            else:
                reason = "stop_requested"
        finally:
            self.stop()
        return reason

    # ---- policy commands -----------------------------------------------

    def rebuild_shaping(self) -> Optional[str]:
        with self._op_lock:
            if self.shaper is None or self.phase != PHASE_RUNNING:
                return None
            return self.shaper.rebuild(self.store.policy(self.cfg))

    def reload_policy(self) -> Optional[str]:
        """Re-read the policy lists from disk (after an out-of-process edit) and rebuild."""
        with self._op_lock:
            self.store.load()
            log.info("policy_reloaded", extra={"op": "reload"})
            return self.rebuild_shaping()

    def block(self, mac: str) -> str:
        with self._op_lock:
            mac = self.store.block(mac)
            self.rebuild_shaping()
            return mac

    def unblock(self, mac: str) -> str:
        with self._op_lock:
            mac = self.store.unblock(mac)
            self.rebuild_shaping()
            return mac

    def set_rate(self, mac: str, rate: str) -> str:
        with self._op_lock:
            mac = self.store.set_rate(mac, rate)
            self.rebuild_shaping()
            return mac

    def prioritize(self, mac: str) -> str:
        with self._op_lock:
            mac = self.store.prioritize(mac)
            self.rebuild_shaping()
            return mac

    def reset(self) -> None:
        with self._op_lock:
            self.store.reset()
            self.rebuild_shaping()

    def show_clients(self) -> List[Dict[str, Any]]:
        if self.ap is None:
            return []
        leasefile = Path(self.leasefile) if self.leasefile else None
        return list_clients(self.runner, self.ap.name, self.store, leasefile)

    def status(self) -> Dict[str, Any]:
        res = self.resolution
        return {
            "phase": self.phase,
            "backend": self.backend,
            "sta": res.sta if res else None,
            "wan": res.wan if res else None,
            "ap_base": res.ap_base if res else None,
            "ap_interface": self.ap.name if self.ap else None,
            "nat_backend": self.rules.backend.name if self.rules else None,
            "ifb_interface": self.shaper.ifb if self.shaper else None,
            "daemons": {d.name: d.pid for d in self.daemons},
            "compensations": self.txlog.labels(),
            "warnings": list(self.warnings),
        }
