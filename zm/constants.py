"""Global constants and path configuration for zm."""

from __future__ import annotations

import os
import re
from pathlib import Path

CONFIG_ENV_VAR = "ZM_CONFIG"
SYSTEM_CONFIG_PATH = Path("/etc/zm/config.yaml")
USER_CONFIG_PATH = Path.home() / ".config" / "zm" / "config.yaml"

DEFAULT_LIBVIRT_URI = "qemu:///system"
LIBVIRT_URI = os.environ.get("LIBVIRT_URI")
DEFAULT_NETWORK = "default"

CLOUD_INIT_TEMPLATE_NAME = "cloud-init-user-data.yaml"
CLOUD_INIT_VOLUME_ID = "cidata"
DISK_IMAGE_FORMAT = "qcow2"
DISK_IMAGE_MODE = 0o660

SSH_CONFIG_DIR = Path("/etc/ssh/ssh_config.d")

# Locally administered range reserved for QEMU/KVM guests
MAC_PREFIX = (0x52, 0x54, 0x00)
IDENTITY_HASH_VERSION = 1

TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Multipliers in bytes; single-letter forms follow qemu-img conventions.
SIZE_UNITS = {
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
    "TiB": 1024**4,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
}

DEFAULT_MEMORY_KIB = 1024 * 1024
DEFAULT_VCPUS = 2
DEFAULT_MACHINE = "pc-q35-10.0"
DEFAULT_MAX_RETRIES = 30
