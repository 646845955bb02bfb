"""Data models for zm."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, List, NamedTuple, Optional

from zm.constants import DEFAULT_MACHINE, DEFAULT_MEMORY_KIB, DEFAULT_VCPUS
from zm.exceptions import InvalidNameError

if TYPE_CHECKING:
    from zm.config import Config


class InterfaceAddress(NamedTuple):
    mac: str
    ip: str
    interface: str = ""


@dataclass(frozen=True)
class GuestSpec:
    """Requested shape of a guest; memory in KiB, disk size in bytes."""

    memory: int = DEFAULT_MEMORY_KIB
    vcpus: int = DEFAULT_VCPUS
    machine: str = DEFAULT_MACHINE
    disk_size: Optional[int] = None
    image_path: Optional[Path] = None
    start: bool = True
    wait_for_ip: bool = True

    @classmethod
    def from_config(cls, cfg: "Config", **overrides) -> "GuestSpec":
        spec = cls(memory=cfg.default_memory, vcpus=cfg.default_vcpus, machine=cfg.default_machine)
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(spec, **values)


@dataclass(frozen=True)
class GuestIdentity:
    name: str
    mac: str

    @classmethod
    def from_name(cls, name: str) -> "GuestIdentity":
        from zm.network import derive_mac

        return cls(name=validate_guest_name(name), mac=derive_mac(name))


@dataclass
class GuestInfo:
    name: str
    active: bool
    mac: str
    memory: int = 0
    vcpus: int = 0
    disk_path: Optional[Path] = None
    snapshots: List[str] = field(default_factory=list)


@dataclass
class ProvisionResult:
    name: str
    mac: str
    disk_path: Path
    config_image: Path
    started: bool
    ip: Optional[str] = None


def validate_guest_name(name: str) -> str:
    if not name:
        raise InvalidNameError("Guest name must not be empty")
    if "/" in name:
        raise InvalidNameError(f"Invalid guest name '{name}': '/' is not allowed")
    return name
