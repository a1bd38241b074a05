"""CLI entry points for qvm."""

from __future__ import annotations

import argparse
import signal
from enum import Enum
from pathlib import Path
from typing import List, Optional

from qvm.config import load_settings
from qvm.exceptions import LockBusyError, ManagerError, OperationCancelled
from qvm.services import UsbHotplug
from qvm.status import (
    format_port_forwards,
    format_shared_folders,
    format_status,
    format_usb_devices,
    format_vm_table,
    mount_instructions,
)
from qvm.utils import confirm, has_controlling_tty, log, parse_port_spec, parse_usb_id
from qvm.vm import CONFIGURABLE_SETTINGS, LifecycleController

# sysexits.h EX_TEMPFAIL: the caller may retry.
EXIT_LOCK_BUSY = 75


class Command(Enum):
    VM_CREATE = "vm create"
    VM_START = "vm start"
    VM_STOP = "vm stop"
    VM_DELETE = "vm delete"
    VM_RESIZE = "vm resize"
    VM_LIST = "vm list"
    VM_STATUS = "vm status"
    VM_CONFIGURE = "vm configure"
    NET_TYPE = "net type"
    NET_MODEL = "net model"
    PORT_ADD = "net port add"
    PORT_REMOVE = "net port remove"
    PORT_LIST = "net port list"
    SHARED_ADD = "shared add"
    SHARED_REMOVE = "shared remove"
    SHARED_LIST = "shared list"
    USB_ADD = "usb add"
    USB_REMOVE = "usb remove"
    USB_LIST = "usb list"
    USB_HOST = "usb host"
    LOCK = "security lock"
    UNLOCK = "security unlock"


def _command_parser(subparsers, command: Command, help_text: str, vm_arg: bool = True) -> argparse.ArgumentParser:
    sub = subparsers.add_parser(command.value.split()[-1], help=help_text)
    sub.set_defaults(command=command)
    if vm_arg:
        sub.add_argument("name", help="VM name or numeric id")
    return sub


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qvm", description="Manage local QEMU virtual machines")
    parser.add_argument("--settings", type=Path, default=None, help="Path to settings.yaml")
    parser.set_defaults(command=None)
    groups = parser.add_subparsers(dest="group", metavar="{vm,net,shared,usb,security}")

    vm = groups.add_parser("vm", help="VM lifecycle").add_subparsers(dest="action", metavar="ACTION")
    create = _command_parser(vm, Command.VM_CREATE, "Create a new VM")
    create.add_argument("--os-type", default="linux", choices=["linux", "windows"])
    create.add_argument("--memory", help="Memory size, e.g. 4096, 2048M, 4G")
    create.add_argument("--cores", help="CPU cores (1-64)")
    create.add_argument("--disk-size", help="Disk size, e.g. 20G")
    create.add_argument("--machine", help="Machine type and accel, e.g. q35,accel=kvm")
    create.add_argument("--enable-audio", action="store_true", default=None)
    start = _command_parser(vm, Command.VM_START, "Start a VM")
    start.add_argument("--headless", action="store_true", help="Run without a graphical display")
    start.add_argument("--iso", help="Boot once from this ISO image")
    stop = _command_parser(vm, Command.VM_STOP, "Stop a running VM")
    stop.add_argument("--force", action="store_true", help="Kill immediately instead of a graceful shutdown")
    delete = _command_parser(vm, Command.VM_DELETE, "Delete a VM and its disk")
    delete.add_argument("--force", action="store_true", help="Skip confirmation; stop and delete even if locked")
    resize = _command_parser(vm, Command.VM_RESIZE, "Grow the VM disk")
    resize.add_argument("size", help="New disk size, e.g. 40G")
    resize.add_argument("--force", action="store_true", help="Bypass the running and locked checks")
    _command_parser(vm, Command.VM_LIST, "List VMs", vm_arg=False)
    _command_parser(vm, Command.VM_STATUS, "Show VM details")
    configure = _command_parser(vm, Command.VM_CONFIGURE, "Show or change cores, memory or audio")
    configure.add_argument("setting", choices=CONFIGURABLE_SETTINGS)
    configure.add_argument("value", nargs="?")

    net = groups.add_parser("net", help="Networking").add_subparsers(dest="action", metavar="ACTION")
    net_type = _command_parser(net, Command.NET_TYPE, "Set the network type (user, nat, none)")
    net_type.add_argument("type")
    net_model = _command_parser(net, Command.NET_MODEL, "Set the NIC model")
    net_model.add_argument("model")
    port = net.add_parser("port", help="Port forwards").add_subparsers(dest="port_action", metavar="ACTION")
    port_add = _command_parser(port, Command.PORT_ADD, "Forward host:guest[:tcp|udp]")
    port_add.add_argument("spec")
    port_remove = _command_parser(port, Command.PORT_REMOVE, "Remove host[:guest][:tcp|udp]")
    port_remove.add_argument("spec")
    _command_parser(port, Command.PORT_LIST, "List port forwards")

    shared = groups.add_parser("shared", help="Shared folders").add_subparsers(dest="action", metavar="ACTION")
    shared_add = _command_parser(shared, Command.SHARED_ADD, "Share a host directory")
    shared_add.add_argument("path")
    shared_add.add_argument("tag", nargs="?")
    shared_add.add_argument("transport", nargs="?", choices=["virtiofs", "9p", "smb"])
    shared_remove = _command_parser(shared, Command.SHARED_REMOVE, "Remove a share by path or tag")
    shared_remove.add_argument("path_or_tag")
    _command_parser(shared, Command.SHARED_LIST, "List shared folders")

    usb = groups.add_parser("usb", help="USB passthrough").add_subparsers(dest="action", metavar="ACTION")
    usb_add = _command_parser(usb, Command.USB_ADD, "Attach (running) or assign (stopped) a USB device")
    usb_add.add_argument("device", help="VENDOR_ID:PRODUCT_ID")
    usb_remove = _command_parser(usb, Command.USB_REMOVE, "Detach or unassign a USB device")
    usb_remove.add_argument("device", help="VENDOR_ID:PRODUCT_ID")
    _command_parser(usb, Command.USB_LIST, "List assigned USB devices")
    _command_parser(usb, Command.USB_HOST, "List USB devices on the host", vm_arg=False)

    security = groups.add_parser("security", help="Protection flags").add_subparsers(dest="action", metavar="ACTION")
    _command_parser(security, Command.LOCK, "Lock a VM against changes and deletion")
    _command_parser(security, Command.UNLOCK, "Unlock a VM")
    return parser


def _interactive_confirm(prompt: str) -> bool:
    if not has_controlling_tty():
        log("WARN", "No TTY available for confirmation; use --force to skip the prompt")
        return False
    return confirm(prompt)


def dispatch(controller: LifecycleController, command: Command, args: argparse.Namespace) -> int:
    if command is Command.VM_LIST:
        print(format_vm_table(controller.list_vms()))
        return 0
    if command is Command.USB_HOST:
        for device, description in UsbHotplug.host_devices():
            print(f"  {device.key}  {description}")
        return 0
    if command is Command.VM_CREATE:
        controller.create(
            args.name,
            os_type=args.os_type,
            memory=args.memory,
            cores=args.cores,
            disk_size=args.disk_size,
            machine=args.machine,
            enable_audio=args.enable_audio,
        )
        return 0

    name = controller.registry.resolve(args.name)
    if command is Command.VM_START:
        controller.start(name, headless=args.headless, iso=args.iso)
    elif command is Command.VM_STOP:
        controller.stop(name, force=args.force)
    elif command is Command.VM_DELETE:
        controller.delete(name, force=args.force)
    elif command is Command.VM_RESIZE:
        controller.resize(name, args.size, force=args.force)
    elif command is Command.VM_STATUS:
        print(format_status(controller.status(name)))
    elif command is Command.VM_CONFIGURE:
        value = controller.configure(name, args.setting, args.value)
        if args.value is None:
            print(f"Current {args.setting}: {value}")
    elif command is Command.NET_TYPE:
        controller.set_network_type(name, args.type)
    elif command is Command.NET_MODEL:
        controller.set_network_model(name, args.model)
    elif command is Command.PORT_ADD:
        rule = parse_port_spec(args.spec)
        controller.ports.add(name, rule.host_port, rule.guest_port, rule.protocol)
    elif command is Command.PORT_REMOVE:
        rule = parse_port_spec(args.spec, require_guest=False)
        controller.ports.remove(name, rule.host_port, rule.protocol, rule.guest_port or None)
    elif command is Command.PORT_LIST:
        print(f"Port forwards for VM '{name}':")
        print("\n".join(format_port_forwards(controller.ports.list(name))))
    elif command is Command.SHARED_ADD:
        folder = controller.add_shared_folder(name, args.path, args.tag, args.transport)
        if folder is not None:
            print()
            print(mount_instructions(folder, controller.store.load(name).os_type))
    elif command is Command.SHARED_REMOVE:
        controller.remove_shared_folder(name, args.path_or_tag)
    elif command is Command.SHARED_LIST:
        print(f"Shared folders for VM '{name}':")
        print("\n".join(format_shared_folders(controller.list_shared_folders(name))))
    elif command is Command.USB_ADD:
        controller.add_usb_device(name, parse_usb_id(args.device))
    elif command is Command.USB_REMOVE:
        controller.remove_usb_device(name, parse_usb_id(args.device))
    elif command is Command.USB_LIST:
        print(f"Configured USB passthrough devices for VM '{name}':")
        print("\n".join(format_usb_devices(controller.list_usb_devices(name))))
    elif command is Command.LOCK:
        controller.set_locked(name, True)
    elif command is Command.UNLOCK:
        controller.set_locked(name, False)
    else:
        raise ManagerError(f"Unhandled command: {command.value}")
    return 0


def _exit_on_signal(signum, frame):
    # SystemExit unwinds through every `finally`, releasing held locks.
    raise SystemExit(128 + signum)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    controller: Optional[LifecycleController] = None
    prev_sigterm = signal.signal(signal.SIGTERM, _exit_on_signal)
    try:
        settings = load_settings(args.settings)
        controller = LifecycleController(settings, confirm=_interactive_confirm)
        return dispatch(controller, args.command, args)
    except LockBusyError as exc:
        log("ERROR", str(exc))
        return EXIT_LOCK_BUSY
    except OperationCancelled as exc:
        log("INFO", str(exc))
        return 1
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        if controller is not None:
            controller.locks.release_all()
        signal.signal(signal.SIGTERM, prev_sigterm)
