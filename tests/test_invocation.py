"""Tests for qvm.invocation module."""

from __future__ import annotations

from pathlib import Path

import pytest

from qvm import invocation
from qvm.exceptions import StateError, ValidationError
from qvm.models import LaunchOptions, PortForward, SharedFolder, UsbDevice


@pytest.fixture
def web(sample_record, write_record, store):
    write_record(sample_record)
    return sample_record, store.paths("web")


def _value_after(args, flag):
    return [args[i + 1] for i, arg in enumerate(args) if arg == flag]


class TestBuild:
    def test_core_arguments_in_order(self, web):
        record, paths = web
        args = invocation.build(record, paths, LaunchOptions(headless=True), qemu_binary="qemu")
        assert args[:3] == ["qemu", "-name", "guest=web,process=qemu-web"]
        assert _value_after(args, "-machine") == ["q35,accel=kvm"]
        assert _value_after(args, "-cpu") == ["host"]
        assert _value_after(args, "-smp") == ["cores=2,threads=1,sockets=1"]
        assert _value_after(args, "-m") == ["2048"]
        assert _value_after(args, "-display") == ["none"]
        assert f"unix:{paths.monitor_socket},server,nowait" in args
        assert "qemu-xhci,id=xhci" in args
        assert "usb-tablet,bus=xhci.0" not in args
        assert args.index("-machine") < args.index("-drive") < args.index("-netdev")

    def test_is_deterministic(self, web):
        record, paths = web
        options = LaunchOptions(headless=False, audio_backend="pa")
        assert invocation.build(record, paths, options) == invocation.build(record, paths, options)

    def test_missing_disk_fails_fast(self, web):
        record, paths = web
        paths.disk.unlink()
        with pytest.raises(StateError, match="Disk image not found"):
            invocation.build(record, paths)

    def test_missing_iso(self, web, tmp_path):
        record, paths = web
        with pytest.raises(ValidationError, match="ISO file does not exist"):
            invocation.build(record, paths, LaunchOptions(iso=tmp_path / "missing.iso"))

    def test_iso_boots_once(self, web, tmp_path):
        record, paths = web
        iso = tmp_path / "install.iso"
        iso.touch()
        args = invocation.build(record, paths, LaunchOptions(iso=iso))
        assert f"file={iso},format=raw,readonly=on,media=cdrom" in args
        assert _value_after(args, "-boot") == ["order=d,once=d"]

    def test_tcg_override_swaps_host_cpu(self, web):
        record, paths = web
        args = invocation.build(record, paths, LaunchOptions(accel="tcg"))
        assert _value_after(args, "-machine") == ["q35,accel=tcg"]
        assert _value_after(args, "-cpu") == ["max"]

    def test_disk_path_commas_are_escaped(self, tmp_path, sample_record, write_record, store):
        store.vm_dir = tmp_path / "a,b"
        store.vm_dir.mkdir()
        write_record(sample_record)
        args = invocation.build(sample_record, store.paths("web"))
        drive = _value_after(args, "-drive")[0]
        assert "a,,b" in drive

    def test_virtio_disk_requires_virtio(self, web):
        record, paths = web
        record.enable_virtio = False
        with pytest.raises(ValidationError, match="ENABLE_VIRTIO"):
            invocation.build(record, paths)


class TestNetwork:
    def test_port_forwards_only_when_enabled(self, web):
        record, paths = web
        record.port_forwards = [PortForward(8080, 80, "tcp"), PortForward(5353, 53, "udp")]
        args = invocation.build(record, paths)
        assert _value_after(args, "-netdev") == ["user,id=net0"]
        record.port_forwarding_enabled = True
        args = invocation.build(record, paths)
        assert _value_after(args, "-netdev") == ["user,id=net0,hostfwd=tcp::8080-:80,hostfwd=udp::5353-:53"]
        assert "virtio-net-pci,netdev=net0,mac=52:54:00:aa:bb:cc" in args

    def test_network_none(self, web):
        record, paths = web
        record.network_type = "none"
        args = invocation.build(record, paths)
        assert _value_after(args, "-nic") == ["none"]
        assert "-netdev" not in args

    def test_virtio_nic_falls_back_without_virtio(self, web):
        record, paths = web
        record.enable_virtio = False
        record.disk_interface = "ide-hd"
        args = invocation.build(record, paths)
        assert "e1000,netdev=net0,mac=52:54:00:aa:bb:cc" in args

    def test_windows_smb_share(self, web, tmp_path):
        record, paths = web
        share = tmp_path / "share"
        share.mkdir()
        record.os_type = "windows"
        record.shared_folders = [SharedFolder(share, "share", "smb")]
        args = invocation.build(record, paths)
        assert _value_after(args, "-netdev") == [f"user,id=net0,smb={share}"]
        assert _value_after(args, "-rtc") == ["base=localtime"]


class TestDevices:
    def test_virtiofs_share_uses_shared_memory(self, web, tmp_path):
        record, paths = web
        record.shared_folders = [SharedFolder(tmp_path, "data", "virtiofs")]
        args = invocation.build(record, paths)
        assert "memory-backend-memfd,id=mem,size=2048M,share=on" in args
        assert _value_after(args, "-numa") == ["node,memdev=mem"]
        assert f"socket,id=char_fs0,path={paths.virtiofs_socket('data')}" in args
        assert "vhost-user-fs-pci,queue-size=1024,chardev=char_fs0,tag=data" in args

    def test_9p_share(self, web, tmp_path):
        record, paths = web
        record.shared_folders = [SharedFolder(tmp_path, "data", "9p")]
        args = invocation.build(record, paths)
        assert f"local,id=fsdev0,path={tmp_path},security_model=mapped-xattr" in args
        assert "virtio-9p-pci,fsdev=fsdev0,mount_tag=data" in args
        assert "-numa" not in args

    def test_missing_9p_share_is_skipped(self, web, tmp_path):
        record, paths = web
        record.shared_folders = [SharedFolder(tmp_path / "gone", "gone", "9p")]
        args = invocation.build(record, paths)
        assert "-fsdev" not in args

    def test_audio_backends(self, web):
        record, paths = web
        record.enable_audio = True
        args = invocation.build(record, paths, LaunchOptions(audio_backend="pipewire"))
        assert "pipewire,id=audio0" in args
        assert "hda-output,audiodev=audio0" in args
        args = invocation.build(record, paths, LaunchOptions(audio_backend="alsa"))
        assert "AC97,audiodev=audio0" in args
        args = invocation.build(record, paths, LaunchOptions(audio_backend=None))
        assert "-audiodev" not in args

    def test_video_types(self, web):
        record, paths = web
        assert "virtio-vga" in invocation.build(record, paths)
        record.video_type = "qxl"
        assert _value_after(invocation.build(record, paths), "-vga") == ["qxl"]
        record.video_type = "bogus"
        assert _value_after(invocation.build(record, paths), "-vga") == ["std"]

    def test_graphical_launch_adds_tablet(self, web):
        record, paths = web
        args = invocation.build(record, paths, LaunchOptions(headless=False))
        assert _value_after(args, "-display") == ["gtk"]
        assert "usb-tablet,bus=xhci.0" in args

    def test_persisted_usb_devices_are_not_static_arguments(self, web):
        record, paths = web
        record.usb_devices = [UsbDevice("046d", "c52b")]
        assert not any("usb-host" in arg for arg in invocation.build(record, paths))


def test_virtiofs_folders_only_for_linux_virtio(sample_record, tmp_path):
    sample_record.shared_folders = [
        SharedFolder(tmp_path, "a", "virtiofs"),
        SharedFolder(Path("/srv"), "b", "9p"),
    ]
    assert [f.tag for f in invocation.virtiofs_folders(sample_record)] == ["a"]
    sample_record.enable_virtio = False
    assert invocation.virtiofs_folders(sample_record) == []
