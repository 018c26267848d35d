"""Tests for loommon.config."""

import os

import pytest

import loommon.config as config_mod
from loommon.config import (
    MachineConfig,
    load_config,
    machine_from_record,
    resolve_config,
)

_COLLECTOR = (
    '[collector]\n'
    'url = "https://collector.example/api/v1/machine-logs"\n'
    'workspace_id = "ws-1"\n'
    'api_key = "secret"\n'
)

_MACHINES = (
    '[[machines]]\n'
    'id = "L01"\n'
    'address = "192.168.205.2"\n'
    '\n'
    '[[machines]]\n'
    'id = "L02"\n'
    'address = "192.168.205.3"\n'
    'profile = "B"\n'
    'transport = "rs485"\n'
)


def _write_toml(tmp_path, text: str) -> str:
    """Write TOML text to a temp file and return its path."""
    path = os.path.join(tmp_path, "cfg.toml")
    with open(path, "w") as f:
        f.write(text)
    return path


class TestLoadConfig:
    """Tests for load_config()."""

    def test_minimal_config_defaults(self, tmp_path):
        """Only collector and machines are required; the rest defaults."""
        cfg = load_config(_write_toml(tmp_path, _COLLECTOR + _MACHINES))

        assert cfg["port"] == 502
        assert cfg["unit_id"] == 85
        assert cfg["start_addr"] == 5000
        assert cfg["count"] == 74
        assert cfg["timeout_ms"] == 1000
        assert cfg["interval"] == 1.0
        assert cfg["backoff_max"] == 10.0
        assert cfg["publish_interval"] == 4.0
        assert cfg["health_port"] == 3001
        assert cfg["collector_url"].endswith("/machine-logs")
        assert cfg["workspace_id"] == "ws-1"
        assert cfg["directory_url"] is None
        assert cfg["machines"] == [
            MachineConfig("L01", "192.168.205.2", "A", "tcp"),
            MachineConfig("L02", "192.168.205.3", "B", "rs485"),
        ]

    def test_overrides(self, tmp_path):
        """[modbus], [poll] and [health] values replace the defaults."""
        cfg = load_config(_write_toml(tmp_path, (
            '[modbus]\n'
            'port = 1502\n'
            'unit_id = 1\n'
            'start_addr = 4000\n'
            'count = 80\n'
            '\n'
            '[poll]\n'
            'interval = 2\n'
            'backoff_max = 30.0\n'
            '\n'
            '[health]\n'
            'port = 8080\n'
        ) + _COLLECTOR + _MACHINES))

        assert cfg["port"] == 1502
        assert cfg["unit_id"] == 1
        assert cfg["start_addr"] == 4000
        assert cfg["count"] == 80
        assert cfg["interval"] == 2.0
        assert cfg["backoff_max"] == 30.0
        assert cfg["health_port"] == 8080

    def test_directory_instead_of_machines(self, tmp_path):
        """A [directory] section replaces the static machine list."""
        cfg = load_config(_write_toml(tmp_path, _COLLECTOR + (
            '[directory]\n'
            'url = "https://collector.example/api/v1/machine-logs/machine-list"\n'
        )))
        assert cfg["directory_url"].endswith("/machine-list")
        assert cfg["machines"] == []

    def test_missing_collector(self, tmp_path):
        """The [collector] section is required."""
        with pytest.raises(ValueError, match="collector"):
            load_config(_write_toml(tmp_path, _MACHINES))

    def test_missing_api_key(self, tmp_path):
        """Missing collector keys are reported by name."""
        text = _COLLECTOR.replace('api_key = "secret"\n', "") + _MACHINES
        with pytest.raises(ValueError, match="api_key"):
            load_config(_write_toml(tmp_path, text))

    def test_no_machine_source(self, tmp_path):
        """Either [directory] or [[machines]] must be present."""
        with pytest.raises(ValueError, match="directory"):
            load_config(_write_toml(tmp_path, _COLLECTOR))

    def test_wrong_type(self, tmp_path):
        """A string where an int is expected is rejected."""
        text = '[modbus]\nport = "502"\n' + _COLLECTOR + _MACHINES
        with pytest.raises(ValueError, match="port must be int"):
            load_config(_write_toml(tmp_path, text))

    def test_unit_id_range(self, tmp_path):
        """Station ids outside 1-247 are rejected."""
        text = '[modbus]\nunit_id = 300\n' + _COLLECTOR + _MACHINES
        with pytest.raises(ValueError, match="unit_id"):
            load_config(_write_toml(tmp_path, text))

    def test_zero_start_addr(self, tmp_path):
        """The window start is 1-based."""
        text = '[modbus]\nstart_addr = 0\n' + _COLLECTOR + _MACHINES
        with pytest.raises(ValueError, match="1-based"):
            load_config(_write_toml(tmp_path, text))

    def test_backoff_below_interval(self, tmp_path):
        """The backoff cap cannot be below the nominal interval."""
        text = '[poll]\ninterval = 5\nbackoff_max = 2\n' + _COLLECTOR + _MACHINES
        with pytest.raises(ValueError, match="backoff_max"):
            load_config(_write_toml(tmp_path, text))

    def test_duplicate_machine(self, tmp_path):
        """Machine ids must be unique."""
        text = _COLLECTOR + '[[machines]]\nid = "L01"\naddress = "a"\n' * 2
        with pytest.raises(ValueError, match="duplicate"):
            load_config(_write_toml(tmp_path, text))


class TestMachineFromRecord:
    """Tests for machine_from_record()."""

    def test_directory_spelling(self):
        """Directory records use ip and deviceType."""
        m = machine_from_record({"id": 12, "ip": "10.0.0.9", "deviceType": "rs485"})
        assert m == MachineConfig("12", "10.0.0.9", "A", "rs485")

    def test_serial(self):
        """Serial machines carry a device path."""
        m = machine_from_record({
            "id": "L09", "address": "/dev/ttyUSB0", "transport": "serial",
        })
        assert m.transport == "serial"
        assert m.address == "/dev/ttyUSB0"

    def test_missing_address(self):
        """A record without address or ip is rejected."""
        with pytest.raises(ValueError, match="address"):
            machine_from_record({"id": "L01"})

    def test_unknown_profile(self):
        """Unknown profile tags are rejected."""
        with pytest.raises(ValueError, match="profile"):
            machine_from_record({"id": "L01", "address": "a", "profile": "Z"})

    def test_unknown_transport(self):
        """Unknown transports are rejected."""
        with pytest.raises(ValueError, match="transport"):
            machine_from_record({"id": "L01", "address": "a", "transport": "can"})


class TestResolveConfig:
    """Tests for resolve_config()."""

    def test_finds_local_file(self, tmp_path, monkeypatch):
        """A bare name found in the current directory is returned."""
        cfg = tmp_path / "loommon.toml"
        cfg.write_text("")
        monkeypatch.chdir(tmp_path)
        assert resolve_config("loommon.toml") == str(cfg.resolve())

    def test_falls_back_to_etc(self, tmp_path, monkeypatch):
        """A bare name missing locally is looked up in ETC_DIR."""
        etc = tmp_path / "etc_loommon"
        etc.mkdir()
        (etc / "loommon.toml").write_text("")
        monkeypatch.setattr(config_mod, "ETC_DIR", str(etc))
        monkeypatch.chdir(tmp_path)
        assert resolve_config("loommon.toml") == str((etc / "loommon.toml").resolve())

    def test_explicit_path(self, tmp_path):
        """A path with a separator is used as given."""
        cfg = tmp_path / "sub" / "loommon.toml"
        cfg.parent.mkdir()
        cfg.write_text("")
        assert resolve_config(str(cfg)) == str(cfg.resolve())

    def test_not_found(self, tmp_path, monkeypatch):
        """FileNotFoundError names the missing file."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(config_mod, "ETC_DIR", str(tmp_path / "no_etc"))
        with pytest.raises(FileNotFoundError, match="loommon.toml"):
            resolve_config("loommon.toml")
