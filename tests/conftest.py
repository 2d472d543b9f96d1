import os
import sys

import pytest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))


@pytest.fixture(autouse=True)
def _isolated_dirs(tmp_path, monkeypatch):
    monkeypatch.setenv("ROUTNET_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("ROUTNET_RUN_DIR", str(tmp_path / "run"))
