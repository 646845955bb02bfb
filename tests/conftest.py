"""Shared test fixtures, including an in-memory hypervisor binding."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
from xml.etree.ElementTree import fromstring

import pytest

from zm.config import Config
from zm.exceptions import (
    DefineError,
    GuestNotFoundError,
    SnapshotNotFoundError,
    StartError,
)
from zm.models import InterfaceAddress


class FakeHandle:
    def __init__(self, name: str) -> None:
        self.name = name
        self.released = False

    def release(self) -> None:
        self.released = True

    def __enter__(self) -> "FakeHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class FakeGuest:
    def __init__(self, name: str, xml: str = "", active: bool = False) -> None:
        self.name = name
        self.xml = xml
        self.active = active
        self.shutdown_requested = False
        self.snapshots: List[str] = []
        self.memory = 0
        self.vcpus = 0
        self.disk: Optional[Path] = None
        self.mac = ""
        if xml:
            root = fromstring(xml)
            self.memory = int(root.findtext("memory"))
            self.vcpus = int(root.findtext("vcpu"))
            source = root.find("./devices/disk[@device='disk']/source")
            self.disk = Path(source.get("file")) if source is not None else None
            self.mac = root.find("./devices/interface/mac").get("address")


class FakeHypervisor:
    """In-memory stand-in for LibvirtHypervisor.

    ``address_script`` is consumed one entry per interface query; once it is
    exhausted every further query returns ``[]``.
    """

    def __init__(self) -> None:
        self.guests: Dict[str, FakeGuest] = {}
        self.handles: List[FakeHandle] = []
        self.calls: List[tuple] = []
        self.address_script: List[List[InterfaceAddress]] = []
        self.address_queries = 0
        self.fail_define = False
        self.fail_start = False
        self.network_ensured = 0
        self.closed = False

    def add_guest(self, name: str, active: bool = False, disk: Optional[Path] = None) -> FakeGuest:
        guest = FakeGuest(name, active=active)
        guest.disk = disk
        guest.memory = 2097152
        guest.vcpus = 4
        self.guests[name] = guest
        return guest

    def _handle(self, name: str) -> FakeHandle:
        handle = FakeHandle(name)
        self.handles.append(handle)
        return handle

    def _guest(self, handle: FakeHandle) -> FakeGuest:
        assert not handle.released, f"handle for {handle.name} used after release"
        return self.guests[handle.name]

    def all_released(self) -> bool:
        return all(handle.released for handle in self.handles)

    def close(self) -> None:
        self.closed = True

    def ensure_default_network(self) -> None:
        self.network_ensured += 1

    def lookup(self, name: str) -> FakeHandle:
        if name not in self.guests:
            raise GuestNotFoundError(f"VM '{name}' not found")
        return self._handle(name)

    def exists(self, name: str) -> bool:
        return name in self.guests

    def define(self, xml: str, name: str) -> FakeHandle:
        self.calls.append(("define", name))
        if self.fail_define:
            raise DefineError(f"Failed to define VM '{name}'")
        self.guests[name] = FakeGuest(name, xml=xml)
        return self._handle(name)

    def start(self, handle: FakeHandle) -> None:
        self.calls.append(("start", handle.name))
        if self.fail_start:
            raise StartError(f"Failed to start VM '{handle.name}'")
        self._guest(handle).active = True

    def destroy(self, handle: FakeHandle) -> None:
        self.calls.append(("destroy", handle.name))
        self._guest(handle).active = False

    def shutdown(self, handle: FakeHandle) -> None:
        self.calls.append(("shutdown", handle.name))
        self._guest(handle).shutdown_requested = True

    def undefine(self, handle: FakeHandle) -> None:
        self.calls.append(("undefine", handle.name))
        self._guest(handle)
        del self.guests[handle.name]

    def is_active(self, handle: FakeHandle) -> bool:
        return self._guest(handle).active

    def list_guests(self):
        return [(name, guest.active) for name, guest in self.guests.items()]

    def list_names(self):
        return list(self.guests)

    def resources(self, handle: FakeHandle):
        guest = self._guest(handle)
        return guest.memory, guest.vcpus

    def disk_path(self, handle: FakeHandle) -> Optional[Path]:
        return self._guest(handle).disk

    def interface_addresses(self, handle: FakeHandle) -> List[InterfaceAddress]:
        self._guest(handle)
        self.address_queries += 1
        if self.address_script:
            return self.address_script.pop(0)
        return []

    def create_snapshot(self, handle: FakeHandle, snapshot: str) -> None:
        self._guest(handle).snapshots.append(snapshot)

    def list_snapshots(self, handle: FakeHandle) -> List[str]:
        return list(self._guest(handle).snapshots)

    def revert_snapshot(self, handle: FakeHandle, snapshot: str) -> None:
        if snapshot not in self._guest(handle).snapshots:
            raise SnapshotNotFoundError(f"Snapshot '{snapshot}' not found for VM '{handle.name}'")
        self.calls.append(("revert", handle.name, snapshot))

    def delete_snapshot(self, handle: FakeHandle, snapshot: str) -> None:
        guest = self._guest(handle)
        if snapshot not in guest.snapshots:
            raise SnapshotNotFoundError(f"Snapshot '{snapshot}' not found for VM '{handle.name}'")
        guest.snapshots.remove(snapshot)


class FakeConfigBuilder:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def __call__(self, name: str, template_path: Path, output_path: Path) -> Path:
        self.calls.append((name, template_path, output_path))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"iso")
        return output_path


@pytest.fixture
def zm_config(tmp_path) -> Config:
    """Config rooted under tmp_path with a tiny base image in place."""
    images = tmp_path / "images"
    images.mkdir()
    (images / "zamin").write_bytes(b"base-image")
    template_dir = images / "cloud-init"
    template_dir.mkdir()
    (template_dir / "cloud-init-user-data.yaml").write_text("#cloud-config\nusers: []\n", encoding="utf-8")
    return Config(
        base_image_path=images,
        vm_storage_path=tmp_path / "storage",
        cloud_init_template_path=template_dir,
        max_retries=3,
        username="tester",
        identity_file="~/.ssh/id_test",
    )


@pytest.fixture
def fake_hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def fake_builder() -> FakeConfigBuilder:
    return FakeConfigBuilder()
