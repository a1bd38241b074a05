"""Tests for qvm.store module."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from qvm.exceptions import ConfigCorruptedError, NotFoundError, ValidationError
from qvm.models import PortForward, SharedFolder, UsbDevice
from qvm.store import atomic_write, parse_config, record_from_values, record_to_values, render_config


class TestParseConfig:
    def test_accepts_quoted_and_unquoted_values(self):
        values = parse_config('# comment\nNAME="web"\nCORES=2\nCPU_TYPE=\'host\'\n\nMEMORY="2048"\n')
        assert values == {"NAME": "web", "CORES": "2", "CPU_TYPE": "host", "MEMORY": "2048"}

    def test_double_quote_escapes(self):
        values = parse_config('NAME="a \\"b\\" \\\\c"\n')
        assert values["NAME"] == 'a "b" \\c'

    def test_shell_syntax_is_not_expanded(self):
        values = parse_config('NAME="$(rm -rf /)"\nCPU_TYPE="`id`"\n')
        assert values["NAME"] == "$(rm -rf /)"
        assert values["CPU_TYPE"] == "`id`"

    def test_rejects_unquoted_metacharacters(self):
        with pytest.raises(ConfigCorruptedError, match="shell metacharacters"):
            parse_config("NAME=web;reboot\n")

    def test_rejects_command_lines(self):
        with pytest.raises(ConfigCorruptedError, match="expected KEY=value"):
            parse_config('NAME="web"\nrm -rf /\n')

    def test_rejects_lowercase_keys(self):
        with pytest.raises(ConfigCorruptedError, match="expected KEY=value"):
            parse_config("name=web\n")

    def test_rejects_control_characters(self):
        with pytest.raises(ConfigCorruptedError, match="control character"):
            parse_config('NAME="we\x07b"\n')

    def test_rejects_unterminated_quote(self):
        with pytest.raises(ConfigCorruptedError, match="unterminated"):
            parse_config('NAME="web\n')

    def test_rejects_trailing_data_after_quote(self):
        with pytest.raises(ConfigCorruptedError, match="trailing data"):
            parse_config('NAME="web" extra\n')


class TestRecordConversion:
    def test_round_trip_preserves_fields(self, sample_record):
        sample_record.port_forwards = [PortForward(8080, 80, "tcp"), PortForward(5353, 53, "udp")]
        sample_record.shared_folders = [SharedFolder(Path("/srv/data:2024"), "data", "9p")]
        sample_record.usb_devices = [UsbDevice("046d", "c52b"), UsbDevice("1d6b", "0002", "ABC123")]
        sample_record.locked = True
        text = render_config(record_to_values(sample_record))
        loaded = record_from_values(parse_config(text))
        assert loaded == sample_record

    def test_missing_required_field(self):
        with pytest.raises(ConfigCorruptedError, match="missing required field"):
            record_from_values({"NAME": "web", "CORES": "2", "MEMORY": "2048"})

    def test_unknown_keys_are_preserved(self, sample_record):
        values = record_to_values(sample_record)
        values["CUSTOM_FLAG"] = "keep-me"
        record = record_from_values(values)
        assert record.extra == {"CUSTOM_FLAG": "keep-me"}
        assert record_to_values(record)["CUSTOM_FLAG"] == "keep-me"

    def test_memory_with_suffix_is_normalised(self):
        record = record_from_values({"NAME": "web", "CORES": "2", "MEMORY": "4G", "MACHINE_TYPE": "q35"})
        assert record.memory_mb == 4096

    def test_legacy_colon_separated_shares(self):
        record = record_from_values(
            {
                "NAME": "web",
                "CORES": "2",
                "MEMORY": "2048",
                "MACHINE_TYPE": "q35",
                "SHARED_FOLDERS": "/home/user/share:abc12345:virtiofs",
            }
        )
        assert record.shared_folders == [SharedFolder(Path("/home/user/share"), "abc12345", "virtiofs")]

    def test_bad_flag_value(self):
        with pytest.raises(ConfigCorruptedError, match="LOCKED must be 0 or 1"):
            record_from_values(
                {"NAME": "web", "CORES": "2", "MEMORY": "2048", "MACHINE_TYPE": "q35", "LOCKED": "maybe"}
            )

    def test_malformed_port_forward(self):
        with pytest.raises(ConfigCorruptedError, match="PORT_FORWARDS"):
            record_from_values(
                {"NAME": "web", "CORES": "2", "MEMORY": "2048", "MACHINE_TYPE": "q35", "PORT_FORWARDS": "80:x"}
            )

    def test_share_path_with_comma_is_rejected(self, sample_record):
        sample_record.shared_folders = [SharedFolder(Path("/srv/a,b"), "ab")]
        with pytest.raises(ValidationError, match="may not contain"):
            record_to_values(sample_record)


class TestAtomicWrite:
    def test_writes_with_mode_and_no_leftovers(self, tmp_path):
        target = tmp_path / "config"
        atomic_write(target, "NAME=\"x\"\n")
        assert target.read_text() == 'NAME="x"\n'
        assert (target.stat().st_mode & 0o777) == 0o600
        assert [p.name for p in tmp_path.iterdir()] == ["config"]

    def test_failed_replace_removes_temp_file(self, tmp_path):
        target = tmp_path / "config"
        target.write_text("old\n")
        with patch("qvm.store.Path.replace", side_effect=OSError("boom")):
            with pytest.raises(OSError, match="boom"):
                atomic_write(target, "new\n")
        assert target.read_text() == "old\n"
        assert [p.name for p in tmp_path.iterdir()] == ["config"]


class TestConfigStore:
    def test_save_then_load(self, store, write_record, sample_record):
        write_record(sample_record)
        assert store.load("web") == sample_record
        assert (store.paths("web").config.stat().st_mode & 0o777) == 0o600

    def test_load_missing_vm(self, store):
        with pytest.raises(NotFoundError, match="does not exist"):
            store.load("ghost")

    def test_save_requires_directory(self, store, sample_record):
        with pytest.raises(NotFoundError):
            store.save(sample_record)

    def test_insecure_permissions_are_corruption(self, store, write_record, sample_record):
        write_record(sample_record)
        os.chmod(store.paths("web").config, 0o644)
        with pytest.raises(ConfigCorruptedError, match="insecure permissions"):
            store.load("web")

    def test_name_mismatch(self, store, write_record, sample_record):
        write_record(sample_record)
        other = store.paths("other").root
        other.mkdir()
        os.rename(store.paths("web").config, other / "config")
        with pytest.raises(ConfigCorruptedError, match="does not match directory"):
            store.load("other")

    def test_save_refuses_empty_required_field(self, store, write_record, sample_record):
        write_record(sample_record)
        sample_record.machine_type = ""
        with pytest.raises(ConfigCorruptedError, match="MACHINE_TYPE"):
            store.save(sample_record)
        assert store.load("web").machine_type == "q35"

    def test_names_skips_dot_dirs_and_dirs_without_config(self, store, write_record, sample_record, vm_dir):
        write_record(sample_record)
        (vm_dir / ".locks").mkdir()
        (vm_dir / "half-created").mkdir()
        assert store.names() == ["web"]
