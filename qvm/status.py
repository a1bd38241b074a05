"""Human-readable rendering of VM state for the qvm CLI."""

from __future__ import annotations

from typing import List

from qvm.models import PortForward, SharedFolder, UsbDevice, VMStatus
from qvm.utils import format_size


def format_vm_table(rows: List[VMStatus]) -> str:
    """Render the `vm list` table, one VM per line in id order."""
    header = f"{'ID':<4} {'NAME':<20} {'STATUS':<8} {'LOCKED':<6} {'MEMORY':>8} {'CORES':>5} {'DISK':>6}"
    lines = [header]
    for row in rows:
        record = row.record
        lines.append(
            f"{row.vm_id:<4} {record.name:<20} {row.state:<8} {'yes' if record.locked else 'no':<6} "
            f"{str(record.memory_mb) + 'M':>8} {record.cores:>5} {record.disk_size:>6}"
        )
    if not rows:
        lines.append("  No VMs found")
    return "\n".join(lines)


def format_port_forwards(rules: List[PortForward]) -> List[str]:
    if not rules:
        return ["  No port forwards configured"]
    return [f"  {rule.host_port} -> {rule.guest_port}/{rule.protocol}" for rule in rules]


def format_shared_folders(folders: List[SharedFolder]) -> List[str]:
    if not folders:
        return ["  No shared folders configured"]
    return [f"  {folder.source} (tag: {folder.tag}, type: {folder.transport})" for folder in folders]


def format_usb_devices(devices: List[UsbDevice]) -> List[str]:
    if not devices:
        return ["  No USB devices configured for passthrough"]
    return [f"  - {device}" for device in devices]


def format_status(status: VMStatus) -> str:
    record = status.record
    lines = [
        f"VM: {record.name} (ID {status.vm_id})",
        f"  Status:   {status.state}" + (f" (PID {status.pid})" if status.pid is not None else ""),
        f"  Locked:   {'yes' if record.locked else 'no'}",
        f"  OS:       {record.os_type}",
        f"  Machine:  {record.machine_type} ({record.machine_options}), CPU {record.cpu_type}",
        f"  Cores:    {record.cores}",
        f"  Memory:   {record.memory_mb}M",
        f"  Disk:     {record.disk_size} ({record.disk_interface}, cache={record.disk_cache}, aio={record.disk_io})",
        f"  Network:  {record.network_type} ({record.network_model}, MAC {record.mac_address})",
        f"  Video:    {record.video_type}",
        f"  Audio:    {'enabled' if record.enable_audio else 'disabled'}",
        f"  VirtIO:   {'enabled' if record.enable_virtio else 'disabled'}",
    ]
    if record.created:
        lines.append(f"  Created:  {record.created}")
    if status.disk is not None:
        lines.append(
            f"  Image:    {format_size(status.disk.virtual_size)} virtual, "
            f"{status.disk.actual_size / 1024**2:.1f}M used ({status.disk.format})"
        )
    if status.daemons:
        lines.append(f"  virtiofsd: {status.daemons} running")
    lines.append("Port forwards:" + ("" if record.port_forwarding_enabled or not record.port_forwards else " (disabled)"))
    lines += format_port_forwards(record.port_forwards)
    lines.append("Shared folders:")
    lines += format_shared_folders(record.shared_folders)
    lines.append("USB devices:")
    lines += format_usb_devices(record.usb_devices)
    return "\n".join(lines)


def mount_instructions(folder: SharedFolder, os_type: str) -> str:
    """Guest-side commands for mounting a freshly added shared folder."""
    if os_type == "windows":
        return "\n".join(
            [
                "The shared folder will be available as a network drive in Windows.",
                "Access it via: \\\\10.0.2.4\\qemu",
            ]
        )
    target = f"/mnt/{folder.tag}"
    if folder.transport == "virtiofs":
        mount = f"sudo mount -t virtiofs {folder.tag} {target}"
        fstab = f"{folder.tag} {target} virtiofs defaults 0 0"
    else:
        mount = f"sudo mount -t 9p -o trans=virtio,version=9p2000.L {folder.tag} {target}"
        fstab = f"{folder.tag} {target} 9p trans=virtio,version=9p2000.L 0 0"
    return "\n".join(
        [
            "To mount this folder in the guest VM:",
            f"  sudo mkdir -p {target}",
            f"  {mount}",
            "",
            "For automatic mounting at boot, add to /etc/fstab:",
            f"  {fstab}",
        ]
    )
