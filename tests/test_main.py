"""plc-collector command line"""

import logging
import sys

import pytest

from plc_collector import main as cli
from plc_collector.common.logging_setup import ROOT_LOGGER, set_log_level

CONFIG = """
site_name: Line 1
devices:
  - id: plc_a
    name: PLC_A
    host: 10.2.13.74
    port: 5000
    start_register: 5000
    points:
      - {name: data1}
      - {name: data2}
calibration:
  rules:
    linear:
      segments:
        - {raw_min: 0, raw_max: 1000, formula: "x / 2"}
  sensors:
    - {device_id: plc_a, point_name: data1, sensor_type: linear}
"""


@pytest.fixture(autouse=True)
def restore_log_level():
    yield
    set_log_level("INFO")


def run_cli(monkeypatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["plc-collector", *args])
    with pytest.raises(SystemExit) as exc_info:
        cli.main()
    return exc_info.value.code


def write(tmp_path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


def test_dry_run_prints_summary_and_exits_zero(tmp_path, monkeypatch, capsys):
    code = run_cli(monkeypatch, "--config", write(tmp_path, CONFIG), "--dry-run")

    assert code == 0
    out = capsys.readouterr().out
    assert "Site: Line 1" in out
    assert "PLC_A (10.2.13.74:5000, unit 1): 2 points, registers 5000-5001" in out
    assert "Calibration: 1 sensor types, 1 sensors" in out


def test_verbose_enables_debug_logging(tmp_path, monkeypatch):
    run_cli(monkeypatch, "-c", write(tmp_path, CONFIG), "--dry-run", "--verbose")
    assert logging.getLogger(ROOT_LOGGER).level == logging.DEBUG


def test_invalid_config_exits_non_zero(tmp_path, monkeypatch):
    assert run_cli(monkeypatch, "--config", write(tmp_path, "devices: []\n"), "--dry-run") == 1


def test_bad_formula_fails_even_in_dry_run(tmp_path, monkeypatch):
    path = write(tmp_path, CONFIG.replace('"x / 2"', '"__import__(\'os\')"'))
    assert run_cli(monkeypatch, "--config", path, "--dry-run") == 1


def test_missing_config_file_exits_non_zero(tmp_path, monkeypatch):
    assert run_cli(monkeypatch, "--config", str(tmp_path / "nope.yaml")) == 1


def test_runs_collector_until_it_returns(tmp_path, monkeypatch):
    started = []

    class StubService:
        def __init__(self, config):
            self.config = config

        async def run(self):
            started.append(self.config.site_name)

    monkeypatch.setattr(cli, "CollectorService", StubService)
    monkeypatch.setattr(sys, "argv", ["plc-collector", "--config", write(tmp_path, CONFIG)])

    cli.main()

    assert started == ["Line 1"]
