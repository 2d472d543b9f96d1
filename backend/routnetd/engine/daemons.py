import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from typing import Deque, List, Optional

from routnetd.engine.runner import redact_cmd
from routnetd.errors import DaemonDiedEarly, DaemonSpawnFailed

log = logging.getLogger("routnetd.engine.daemons")

DAEMON_TAIL_MAX_LINES = 200


def _reader_thread(stream, tail: Deque[str], label: str) -> None:
    try:
        for line in iter(stream.readline, ""):
            if not line:
                break
            tail.append(line.rstrip("\n"))
    except Exception:
        tail.append(f"[{label}] reader error")
    finally:
        try:
            stream.close()
        except Exception:
            pass


def _kill_process_group(pid: int, sig: int) -> None:
    """
    Kill the entire process group for a PID, with fallback to killing just the PID.
    """
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return

    try:
        os.killpg(pgid, sig)
        return
    except ProcessLookupError:
        return
    except PermissionError:
        pass

    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return


class Daemon:
    """
    One supervised child (hostapd or dnsmasq) running in its own session.

    Output is kept in a bounded tail for diagnostics; the engine otherwise
    only looks at liveness.
    """

    def __init__(self, name: str, cmd: List[str], dry_run: bool = False) -> None:
        self.name = name
        self.cmd = list(cmd)
        self.dry_run = dry_run
        self.proc: Optional[subprocess.Popen] = None
        self._tail: Deque[str] = deque(maxlen=DAEMON_TAIL_MAX_LINES)
        self._reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc is not None else None

    def tail(self) -> List[str]:
        return list(self._tail)

    def alive(self) -> bool:
        if self.dry_run:
            return True
        return self.proc is not None and self.proc.poll() is None

    def start(self, grace_s: float = 0.0) -> Optional[int]:
        if self.dry_run:
            print("+ " + " ".join(redact_cmd(self.cmd)), flush=True)
            return None

        try:
            self.proc = subprocess.Popen(
                self.cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                close_fds=True,
                env={**os.environ, "LC_ALL": "C", "LANG": "C"},
                # own session/PGID so the whole tree can be killed
                start_new_session=True,
            )
        except Exception as exc:
            self.proc = None
            raise DaemonSpawnFailed(f"{self.name}_spawn_failed: {exc}") from exc

        assert self.proc.stdout is not None
        self._reader = threading.Thread(
            target=_reader_thread,
            args=(self.proc.stdout, self._tail, self.name),
            name=f"{self.name}-reader",
            daemon=True,
        )
        self._reader.start()

        # Detect immediate exits (common when hostapd rejects the interface)
        deadline = time.time() + grace_s
        while time.time() < deadline:
            rc = self.proc.poll()
            if rc is not None:
                self._reader.join(timeout=0.5)
                tail = self.tail()
                for line in tail[-20:]:
                    log.error("%s: %s", self.name, line)
                self.proc = None
                raise DaemonDiedEarly(
                    f"{self.name}_exited_early rc={rc} tail={' | '.join(tail[-5:])}"
                )
            time.sleep(0.05)

        log.info("daemon_started name=%s pid=%s", self.name, self.proc.pid)
        return self.proc.pid

    def stop(self, timeout_s: float = 5.0) -> Optional[int]:
        if self.dry_run or self.proc is None:
            return None

        if self.proc.poll() is not None:
            rc = self.proc.returncode
            self.proc = None
            return rc

        pid = self.proc.pid
        _kill_process_group(pid, signal.SIGTERM)

        deadline = time.time() + timeout_s
        while time.time() < deadline:
            rc = self.proc.poll()
            if rc is not None:
                self.proc = None
                log.info("daemon_stopped name=%s rc=%s", self.name, rc)
                return rc
            time.sleep(0.05)

        _kill_process_group(pid, signal.SIGKILL)
        time.sleep(0.2)
        rc = self.proc.poll()
        self.proc = None
        log.warning("daemon_killed name=%s rc=%s", self.name, rc)
        return rc
