"""Tests for qvm.config module."""

from __future__ import annotations

import pytest
import yaml

from qvm.config import load_settings, os_defaults
from qvm.exceptions import ManagerError, ValidationError
from qvm.models import Settings


@pytest.fixture
def settings_file(tmp_path):
    def _write(data):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.dump(data) if not isinstance(data, str) else data)
        return path

    return _write


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path, clean_env):
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings.max_vms == 50
        assert settings.max_ports_per_vm == 20
        assert settings.lock_timeout == 30.0
        assert settings.lock_stale_after == 30.0
        assert settings.check_host_ports is True
        assert settings.os_defaults == {}

    def test_file_values(self, settings_file, clean_env):
        path = settings_file(
            {
                "limits": {"max_vms": 5, "max_shares_per_vm": 2},
                "timeouts": {"shutdown": 10, "lock": 60},
                "checks": {"host_ports": False},
                "os_defaults": {"linux": {"memory_mb": 4096, "cores": 4}},
            }
        )
        settings = load_settings(path)
        assert settings.max_vms == 5
        assert settings.max_shares_per_vm == 2
        assert settings.shutdown_timeout == 10.0
        assert settings.lock_timeout == 60.0
        assert settings.lock_stale_after == 60.0
        assert settings.check_host_ports is False
        assert settings.os_defaults == {"linux": {"memory_mb": 4096, "cores": 4}}

    def test_unknown_keys_warn(self, settings_file, clean_env, capsys):
        path = settings_file({"limits": {"max_cpus": 4}, "extras": {}, "os_defaults": {"bsd": {}}})
        settings = load_settings(path)
        assert settings.max_vms == 50
        out = capsys.readouterr().out
        assert "unknown limit 'max_cpus'" in out
        assert "unknown settings section 'extras'" in out
        assert "unknown OS type 'bsd'" in out

    def test_invalid_yaml(self, settings_file, clean_env):
        path = settings_file("limits: [unclosed\n")
        with pytest.raises(ManagerError, match="invalid YAML"):
            load_settings(path)

    def test_top_level_must_be_mapping(self, settings_file, clean_env):
        path = settings_file("- a\n- b\n")
        with pytest.raises(ManagerError, match="must contain a YAML mapping"):
            load_settings(path)

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"limits": {"max_vms": 0}}, "must be > 0"),
            ({"limits": {"max_vms": 2.5}}, "must be an integer"),
            ({"timeouts": {"lock": "soon"}}, "must be a number"),
            ({"checks": {"host_ports": "yes"}}, "must be true or false"),
            ({"limits": [1, 2]}, "'limits' must be a mapping"),
        ],
    )
    def test_invalid_values(self, settings_file, clean_env, data, message):
        with pytest.raises(ManagerError, match=message):
            load_settings(settings_file(data))

    def test_environment_overrides_file(self, settings_file, clean_env, monkeypatch):
        path = settings_file({"limits": {"max_vms": 5}})
        monkeypatch.setenv("QVM_MAX_VMS", "7")
        monkeypatch.setenv("QVM_LOCK_TIMEOUT", "3")
        settings = load_settings(path)
        assert settings.max_vms == 7
        assert settings.lock_timeout == 3.0

    def test_bad_environment_value(self, tmp_path, clean_env, monkeypatch):
        monkeypatch.setenv("QVM_SHUTDOWN_TIMEOUT", "never")
        with pytest.raises(ManagerError, match="QVM_SHUTDOWN_TIMEOUT must be an integer"):
            load_settings(tmp_path / "missing.yaml")


class TestOsDefaults:
    def test_linux(self):
        defaults = os_defaults("linux")
        assert defaults["memory_mb"] == 2048
        assert defaults["disk_interface"] == "virtio"
        assert defaults["machine_type"] == "q35"

    def test_windows(self):
        defaults = os_defaults("windows")
        assert defaults["disk_size"] == "60G"
        assert defaults["enable_virtio"] is False

    def test_settings_override(self):
        settings = Settings(os_defaults={"windows": {"memory_mb": 8192}})
        assert os_defaults("windows", settings)["memory_mb"] == 8192
        assert os_defaults("linux", settings)["memory_mb"] == 2048

    def test_unknown_os(self):
        with pytest.raises(ValidationError, match="Invalid os-type 'bsd'"):
            os_defaults("bsd")
