import sys
from pathlib import Path

import pytest

from hotfolder.__main__ import main


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["hotfolder", *argv])
    with pytest.raises(SystemExit) as excinfo:
        main()
    return excinfo.value.code


def test_missing_config_exits_with_usage_error(monkeypatch, tmp_path: Path):
    assert _run(monkeypatch, "--config", str(tmp_path / "absent.yaml")) == 2


def test_unknown_connection_exits_with_usage_error(monkeypatch, tmp_path: Path):
    config_file = tmp_path / "hotfolder.yaml"
    config_file.write_text(
        "hotfolder:\n"
        "  connection: not-registered\n"
        "  handler:\n"
        "    module: hotfolder.sample_handlers\n"
        "    function: log_file\n"
    )

    assert _run(monkeypatch, "--config", str(config_file), "--log-level", "debug") == 2
