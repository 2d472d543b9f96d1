import io
import json
import logging

from routnetd.errors import (
    ERROR_REMEDIATIONS,
    ConcurrencyUnsupported,
    HotspotError,
    InterfaceCreateFailed,
    PolicyError,
    build_error_detail,
)
from routnetd.logging import JsonFormatter, setup_logging


def test_json_formatter_includes_structured_fields():
    record = logging.LogRecord("routnetd.engine.iface", logging.INFO, __file__, 1, "virt_iface_created", (), None)
    record.iface = "wlan0ap"
    record.op = "create"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "routnetd.engine.iface"
    assert payload["msg"] == "virt_iface_created"
    assert payload["iface"] == "wlan0ap"
    assert payload["op"] == "create"
    assert "exc" not in payload


def test_json_formatter_skips_unset_fields_and_stringifies_values():
    record = logging.LogRecord("routnetd.lifecycle", logging.INFO, __file__, 1, "phase", (), None)
    record.phase = "running"
    record.backend = None
    record.rc = ValueError("x")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["phase"] == "running"
    assert "backend" not in payload
    assert payload["rc"] == "x"
    assert payload["ts"].endswith("Z")


def test_setup_logging_level_from_env_with_fallback(monkeypatch):
    stream = io.StringIO()
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    try:
        monkeypatch.setenv("ROUTNET_LOG_LEVEL", "debug")
        handler = setup_logging(stream=stream)
        assert root.level == logging.DEBUG
        assert root.handlers == [handler]

        setup_logging("not-a-level", stream=stream)
        assert root.level == logging.INFO

        logging.getLogger("routnetd.test").info("hello", extra={"iface": "wlan0ap"})
        line = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert line["msg"] == "hello"
        assert line["iface"] == "wlan0ap"
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_every_error_code_has_a_remediation():
    for cls in HotspotError.__subclasses__():
        assert cls.code in ERROR_REMEDIATIONS, cls.__name__


def test_error_detail():
    exc = ConcurrencyUnsupported("no_managed_ap_combination iface=wlan0 phy=phy0")
    detail = exc.detail()
    assert detail["code"] == "concurrency_unsupported"
    assert detail["context"] == {"message": "no_managed_ap_combination iface=wlan0 phy=phy0"}
    assert build_error_detail("nope")["remediation"] == "Check logs for details."


def test_interface_create_failed_names_base():
    exc = InterfaceCreateFailed("wlan0", "Operation not supported")
    assert "base=wlan0" in str(exc)
    assert isinstance(PolicyError("x"), RuntimeError)
