import logging
import sys

from routnetd.engine.delegate import NetworkManagerDelegate
from routnetd.engine.runner import Runner, redact_cmd


def test_dry_run_echoes_mutations_but_runs_queries(capsys):
    runner = Runner(dry_run=True)

    res = runner.run(["ip", "link", "set", "wlan0ap", "up"])
    assert res.ok
    assert capsys.readouterr().out == "+ ip link set wlan0ap up\n"

    res = runner.query([sys.executable, "-c", "print('pong')"])
    assert res.ok
    assert res.out == "pong"


def test_failures_are_returned_not_raised():
    runner = Runner()
    res = runner.run([sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"])
    assert res.rc == 3
    assert "boom" in res.out

    missing = runner.query(["/nonexistent/iw", "dev"])
    assert missing.rc == 127
    assert not missing.ok


def test_timeout_maps_to_124():
    res = Runner().query([sys.executable, "-c", "import time; time.sleep(5)"], timeout_s=0.2)
    assert res.rc == 124


def test_redact_cmd_hides_passwords():
    cmd = ["nmcli", "dev", "wifi", "hotspot", "password", "supersecret"]
    assert redact_cmd(cmd)[-1] == "********"
    assert cmd[-1] == "supersecret"


def test_dry_run_echo_never_shows_hotspot_passphrase(monkeypatch, capsys):
    runner = Runner(dry_run=True)
    monkeypatch.setattr(runner, "which", lambda name: f"/usr/bin/{name}")

    assert NetworkManagerDelegate(runner).start_hotspot("wlan1", "ROUTNET", "supersecret123") is True

    out = capsys.readouterr().out
    assert "supersecret123" not in out
    assert "ssid ROUTNET password ********" in out


def test_failed_command_log_is_redacted(caplog):
    runner = Runner()
    with caplog.at_level(logging.DEBUG, logger="routnetd.engine.runner"):
        res = runner.run([sys.executable, "-c", "import sys; sys.exit(2)", "password", "supersecret123"])
    assert res.rc == 2
    logged = [r.cmd for r in caplog.records if r.getMessage() == "cmd_failed"]
    assert logged and "supersecret123" not in logged[0]
    assert "********" in logged[0]
