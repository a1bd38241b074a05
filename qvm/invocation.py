"""Translate a VM record into the qemu command line.

``build`` is deterministic: the same record, paths and options always give
the same argument list. It reads the filesystem only to check that the disk
image and boot media exist, and it raises instead of returning a partial
list.
"""

from __future__ import annotations

from typing import List, Optional

from qvm.constants import DISK_INTERFACES, QEMU_BINARY, VIDEO_DEVICES, VIRTIO_VIDEO_TYPES
from qvm.exceptions import StateError, ValidationError
from qvm.models import LaunchOptions, SharedFolder, VMPaths, VMRecord
from qvm.utils import deterministic_mac, log


def qemu_escape(value: object) -> str:
    """Escape commas inside a qemu option value."""
    return str(value).replace(",", ",,")


def virtiofs_folders(record: VMRecord) -> List[SharedFolder]:
    """Folders that need a virtiofsd daemon when this VM starts."""
    if record.os_type != "linux" or not record.enable_virtio:
        return []
    return [folder for folder in record.shared_folders if folder.transport == "virtiofs"]


def _accel(record: VMRecord, options: LaunchOptions) -> Optional[str]:
    if options.accel:
        return options.accel
    for item in record.machine_options.split(","):
        if item.startswith("accel="):
            return item.split("=", 1)[1]
    return None


def _machine_args(record: VMRecord, options: LaunchOptions) -> List[str]:
    opts = [item for item in record.machine_options.split(",") if item and not item.startswith("accel=")]
    accel = _accel(record, options)
    if accel:
        opts.insert(0, f"accel={accel}")
    machine = ",".join([record.machine_type] + opts)
    cpu = record.cpu_type or "host"
    if cpu == "host" and accel == "tcg":
        # -cpu host needs hardware acceleration
        cpu = "max"
    return ["-machine", machine, "-cpu", cpu]


def _memory_args(record: VMRecord) -> List[str]:
    if virtiofs_folders(record) or record.memory_share:
        backend = f"memory-backend-memfd,id=mem,size={record.memory_mb}M,share=on"
        if record.memory_prealloc:
            backend += ",prealloc=on"
        return ["-object", backend, "-numa", "node,memdev=mem"]
    if record.memory_prealloc:
        return ["-mem-prealloc"]
    return []


def _disk_args(record: VMRecord, paths: VMPaths) -> List[str]:
    device = DISK_INTERFACES.get(record.disk_interface)
    if device is None:
        raise ValidationError(f"Unsupported DISK_INTERFACE '{record.disk_interface}' for VM '{record.name}'")
    if record.disk_interface == "virtio" and not record.enable_virtio:
        raise ValidationError(f"virtio disk requires ENABLE_VIRTIO=1 for VM '{record.name}'")
    drive = (
        f"file={qemu_escape(paths.disk)},format=qcow2,if=none,id=drive0,"
        f"cache={record.disk_cache},aio={record.disk_io},discard={record.disk_discard}"
    )
    return ["-drive", drive, "-device", f"{device},drive=drive0"]


def _video_args(record: VMRecord) -> List[str]:
    video = record.video_type
    if video in VIRTIO_VIDEO_TYPES and not record.enable_virtio:
        log("WARN", f"VirtIO is disabled but VIDEO_TYPE={video}; using std")
        video = "std"
    if video not in VIDEO_DEVICES:
        log("WARN", f"Unsupported VIDEO_TYPE '{video}'; using std")
        video = "std"
    return list(VIDEO_DEVICES[video])


def _audio_args(record: VMRecord, options: LaunchOptions) -> List[str]:
    if not record.enable_audio or not options.audio_backend:
        return []
    backend = options.audio_backend
    if backend == "alsa":
        return ["-audiodev", "alsa,id=audio0", "-device", "AC97,audiodev=audio0"]
    return [
        "-audiodev",
        f"{backend},id=audio0",
        "-device",
        "ich9-intel-hda",
        "-device",
        "hda-output,audiodev=audio0",
    ]


def _network_args(record: VMRecord) -> List[str]:
    if record.network_type == "none":
        return ["-nic", "none"]
    netdev = "user,id=net0"
    if record.port_forwarding_enabled:
        for rule in record.port_forwards:
            netdev += f",hostfwd={rule.protocol}::{rule.host_port}-:{rule.guest_port}"
    if record.os_type == "windows":
        smb = [folder for folder in record.shared_folders if folder.transport == "smb"]
        present = [folder for folder in smb if folder.source.is_dir()]
        for folder in smb:
            if folder not in present:
                log("WARN", f"SMB share {folder.source} does not exist; skipping")
        if present:
            netdev += f",smb={qemu_escape(present[0].source)}"
            for folder in present[1:]:
                log("WARN", f"Only one SMB share is supported per VM; ignoring {folder.source}")
    model = record.network_model
    if model == "virtio-net-pci" and not record.enable_virtio:
        log("WARN", "VirtIO is disabled but virtio-net-pci is selected; using e1000")
        model = "e1000"
    mac = record.mac_address or deterministic_mac(record.name)
    return ["-netdev", netdev, "-device", f"{model},netdev=net0,mac={mac}"]


def _shared_folder_args(record: VMRecord, paths: VMPaths) -> List[str]:
    if record.os_type != "linux":
        return []
    args: List[str] = []
    for index, folder in enumerate(record.shared_folders):
        if folder.transport not in ("virtiofs", "9p"):
            continue
        if not record.enable_virtio:
            log("WARN", f"Shared folder {folder.source} needs VirtIO; skipping")
            continue
        if folder.transport == "virtiofs":
            socket_path = qemu_escape(paths.virtiofs_socket(folder.tag))
            args += ["-chardev", f"socket,id=char_fs{index},path={socket_path}"]
            args += ["-device", f"vhost-user-fs-pci,queue-size=1024,chardev=char_fs{index},tag={folder.tag}"]
        elif folder.source.is_dir():
            source = qemu_escape(folder.source)
            args += ["-fsdev", f"local,id=fsdev{index},path={source},security_model=mapped-xattr"]
            args += ["-device", f"virtio-9p-pci,fsdev=fsdev{index},mount_tag={folder.tag}"]
        else:
            log("WARN", f"Shared folder {folder.source} does not exist; skipping")
    return args


def build(
    record: VMRecord,
    paths: VMPaths,
    options: Optional[LaunchOptions] = None,
    qemu_binary: str = QEMU_BINARY,
) -> List[str]:
    """Return the full qemu argument vector for record."""
    if options is None:
        options = LaunchOptions()
    if not paths.disk.is_file():
        raise StateError(f"Disk image not found for VM '{record.name}': {paths.disk}")
    if options.iso is not None and not options.iso.is_file():
        raise ValidationError(f"ISO file does not exist: {options.iso}")

    args = [qemu_binary, "-name", f"guest={record.name},process=qemu-{record.name}"]
    args += _machine_args(record, options)
    args += ["-smp", f"cores={record.cores},threads=1,sockets=1"]
    args += ["-m", str(record.memory_mb)]
    args += _memory_args(record)
    args += ["-monitor", f"unix:{qemu_escape(paths.monitor_socket)},server,nowait"]
    args += _disk_args(record, paths)
    if options.iso is not None:
        args += ["-drive", f"file={qemu_escape(options.iso)},format=raw,readonly=on,media=cdrom"]
        args += ["-boot", "order=d,once=d"]
    args += _video_args(record)
    args += ["-display", "none" if options.headless else "gtk"]
    args += _audio_args(record, options)
    args += _network_args(record)
    args += _shared_folder_args(record, paths)
    args += ["-device", "qemu-xhci,id=xhci"]
    if not options.headless:
        args += ["-device", "usb-tablet,bus=xhci.0"]
    if record.os_type == "windows":
        args += ["-rtc", "base=localtime"]
    return args
