"""zm - a lightweight KVM/QEMU virtual machine creation tool."""

__version__ = "0.2.0"

__all__ = [
    "bootstrap",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "domain",
    "exceptions",
    "hypervisor",
    "iso",
    "models",
    "network",
    "ssh_config",
    "utils",
    "vm",
]
