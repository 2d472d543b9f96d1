import sys

import pytest

from routnetd.engine.daemons import Daemon
from routnetd.errors import DaemonDiedEarly, DaemonSpawnFailed


def test_daemon_exiting_during_grace_is_fatal():
    d = Daemon(
        "hostapd",
        [sys.executable, "-c", "import sys; print('nl80211: Could not configure driver mode'); sys.exit(1)"],
    )
    with pytest.raises(DaemonDiedEarly) as exc_info:
        d.start(grace_s=3.0)
    assert "rc=1" in str(exc_info.value)
    assert "Could not configure driver mode" in str(exc_info.value)
    assert d.alive() is False


def test_missing_binary_is_spawn_failure():
    d = Daemon("dnsmasq", ["/nonexistent/dnsmasq", "--no-daemon"])
    with pytest.raises(DaemonSpawnFailed):
        d.start()


def test_start_and_stop_long_running_child():
    d = Daemon("hostapd", [sys.executable, "-c", "import time; print('AP-ENABLED', flush=True); time.sleep(30)"])
    pid = d.start(grace_s=0.2)
    assert pid is not None
    assert d.alive() is True

    rc = d.stop(timeout_s=5.0)
    assert rc is not None
    assert d.alive() is False
    # stopping twice is harmless
    assert d.stop() is None


def test_dry_run_only_echoes(capsys):
    d = Daemon("hostapd", ["hostapd", "/tmp/routnet.x/hostapd.conf"], dry_run=True)
    assert d.start(grace_s=1.0) is None
    assert d.alive() is True
    assert capsys.readouterr().out == "+ hostapd /tmp/routnet.x/hostapd.conf\n"
    assert d.stop() is None

