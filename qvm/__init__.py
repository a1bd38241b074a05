"""qvm: single-host QEMU virtual machine manager."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "invocation",
    "locking",
    "models",
    "ports",
    "registry",
    "runtime",
    "services",
    "status",
    "store",
    "utils",
    "vm",
]
