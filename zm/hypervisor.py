"""Typed libvirt binding used by the lifecycle manager."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple
from xml.etree.ElementTree import fromstring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from zm.constants import DEFAULT_NETWORK, MAC_ADDRESS_RE
from zm.domain import build_snapshot_xml
from zm.exceptions import (
    ConnectError,
    DefineError,
    GuestNotFoundError,
    ListError,
    ManagerError,
    SnapshotCreateError,
    SnapshotDeleteError,
    SnapshotListError,
    SnapshotNotFoundError,
    SnapshotRevertError,
    StartError,
    StateQueryError,
    StopError,
    UndefineError,
)
from zm.models import InterfaceAddress
from zm.utils import log


def _silence_libvirt(ctx, err) -> None:
    """libvirt prints every error to stderr unless a handler is registered."""


class GuestHandle:
    """Exclusively owned reference to a libvirt domain.

    Use as a context manager so the underlying ``virDomain`` is dropped on
    every exit path.
    """

    def __init__(self, name: str, domain) -> None:
        self.name = name
        self._domain = domain

    @property
    def domain(self):
        if self._domain is None:
            raise ManagerError(f"Handle for {self.name} has already been released")
        return self._domain

    @property
    def released(self) -> bool:
        return self._domain is None

    def release(self) -> None:
        self._domain = None

    def __enter__(self) -> "GuestHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class LibvirtHypervisor:
    def __init__(self, uri: str) -> None:
        self.uri = uri
        self.conn = None

    # ---- connection lifecycle -------------------------------------------

    def open(self) -> "LibvirtHypervisor":
        libvirt.registerErrorHandler(_silence_libvirt, None)
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise ConnectError(f"Failed to open libvirt connection to {self.uri}: {exc}") from exc
        if self.conn is None:
            raise ConnectError(f"Failed to open libvirt connection to {self.uri}")
        log("DEBUG", f"Connected to {self.uri}")
        return self

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Error closing libvirt connection: {exc}")
            self.conn = None

    def __enter__(self) -> "LibvirtHypervisor":
        if self.conn is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_conn(self):
        if self.conn is None:
            raise ConnectError("libvirt connection not established")
        return self.conn

    def ensure_default_network(self, name: str = DEFAULT_NETWORK) -> None:
        """Start the NAT network and mark it autostart; failures only warn."""
        conn = self._require_conn()
        try:
            network = conn.networkLookupByName(name)
        except libvirt.libvirtError:
            log("WARN", f"Network '{name}' not found; guests may not get an address")
            return
        try:
            if not network.isActive():
                log("INFO", f"Starting network '{name}'...")
                network.create()
            if not network.autostart():
                network.setAutostart(1)
        except libvirt.libvirtError as exc:
            log("WARN", f"Could not activate network '{name}': {exc}")

    # ---- guests ----------------------------------------------------------

    def lookup(self, name: str) -> GuestHandle:
        conn = self._require_conn()
        try:
            domain = conn.lookupByName(name)
        except libvirt.libvirtError as exc:
            raise GuestNotFoundError(f"VM '{name}' not found") from exc
        return GuestHandle(name, domain)

    def exists(self, name: str) -> bool:
        try:
            handle = self.lookup(name)
        except GuestNotFoundError:
            return False
        handle.release()
        return True

    def define(self, xml: str, name: str) -> GuestHandle:
        conn = self._require_conn()
        try:
            domain = conn.defineXML(xml)
        except libvirt.libvirtError as exc:
            raise DefineError(f"Failed to define VM '{name}': {exc}") from exc
        if domain is None:
            raise DefineError(f"Failed to define VM '{name}'")
        return GuestHandle(name, domain)

    def start(self, handle: GuestHandle) -> None:
        try:
            handle.domain.create()
        except libvirt.libvirtError as exc:
            raise StartError(f"Failed to start VM '{handle.name}': {exc}") from exc

    def destroy(self, handle: GuestHandle) -> None:
        try:
            handle.domain.destroy()
        except libvirt.libvirtError as exc:
            raise StopError(f"Failed to force stop VM '{handle.name}': {exc}") from exc

    def shutdown(self, handle: GuestHandle) -> None:
        try:
            handle.domain.shutdown()
        except libvirt.libvirtError as exc:
            raise StopError(f"Failed to shut down VM '{handle.name}': {exc}") from exc

    def undefine(self, handle: GuestHandle) -> None:
        try:
            handle.domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA)
        except libvirt.libvirtError as exc:
            raise UndefineError(f"Failed to undefine VM '{handle.name}': {exc}") from exc

    def is_active(self, handle: GuestHandle) -> bool:
        try:
            return bool(handle.domain.isActive())
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise GuestNotFoundError(f"VM '{handle.name}' not found") from exc
            raise StateQueryError(f"Failed to query state of VM '{handle.name}': {exc}") from exc

    def list_guests(self) -> List[Tuple[str, bool]]:
        """All defined guests as (name, active) in hypervisor order."""
        conn = self._require_conn()
        try:
            return [(domain.name(), bool(domain.isActive())) for domain in conn.listAllDomains(0)]
        except libvirt.libvirtError as exc:
            raise ListError(f"Failed to list VMs: {exc}") from exc

    def list_names(self) -> List[str]:
        return [name for name, _ in self.list_guests()]

    def resources(self, handle: GuestHandle) -> Tuple[int, int]:
        """Return (memory KiB, vCPUs) from the domain info."""
        try:
            _state, max_memory, _memory, vcpus, _cpu_time = handle.domain.info()
        except libvirt.libvirtError as exc:
            raise ListError(f"Failed to read info for VM '{handle.name}': {exc}") from exc
        return int(max_memory), int(vcpus)

    def disk_path(self, handle: GuestHandle) -> Optional[Path]:
        try:
            root = fromstring(handle.domain.XMLDesc(0))
        except libvirt.libvirtError as exc:
            raise ListError(f"Failed to read definition of VM '{handle.name}': {exc}") from exc
        source = root.find("./devices/disk[@device='disk']/source")
        if source is None or not source.get("file"):
            return None
        return Path(source.get("file"))

    def interface_addresses(self, handle: GuestHandle) -> List[InterfaceAddress]:
        """Addresses reported by the guest agent, else by DHCP leases.

        An empty list means nothing is known yet; it is not an error.
        """
        domain = handle.domain
        interfaces = {}
        for source in (
            libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_AGENT,
            libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE,
        ):
            try:
                interfaces = domain.interfaceAddresses(source) or {}
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Interface query (source {source}) failed for {handle.name}: {exc}")
                interfaces = {}
            if interfaces:
                break

        addresses: List[InterfaceAddress] = []
        for iface_name, iface in interfaces.items():
            mac = (iface.get("hwaddr") or "").lower()
            if not MAC_ADDRESS_RE.match(mac):
                log("DEBUG", f"Skipping interface {iface_name} of {handle.name} with hardware address '{mac}'")
                continue
            for addr in iface.get("addrs") or []:
                if addr.get("addr"):
                    addresses.append(InterfaceAddress(mac=mac, ip=addr["addr"], interface=iface_name))
        return addresses

    # ---- snapshots -------------------------------------------------------

    def _snapshot(self, handle: GuestHandle, snapshot_name: str):
        try:
            return handle.domain.snapshotLookupByName(snapshot_name, 0)
        except libvirt.libvirtError as exc:
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_name}' not found for VM '{handle.name}'") from exc

    def create_snapshot(self, handle: GuestHandle, snapshot_name: str) -> None:
        try:
            handle.domain.snapshotCreateXML(build_snapshot_xml(snapshot_name), 0)
        except libvirt.libvirtError as exc:
            raise SnapshotCreateError(
                f"Failed to create snapshot '{snapshot_name}' for VM '{handle.name}': {exc}"
            ) from exc

    def revert_snapshot(self, handle: GuestHandle, snapshot_name: str) -> None:
        snapshot = self._snapshot(handle, snapshot_name)
        try:
            handle.domain.revertToSnapshot(snapshot, 0)
        except libvirt.libvirtError as exc:
            raise SnapshotRevertError(
                f"Failed to revert VM '{handle.name}' to snapshot '{snapshot_name}': {exc}"
            ) from exc

    def delete_snapshot(self, handle: GuestHandle, snapshot_name: str) -> None:
        snapshot = self._snapshot(handle, snapshot_name)
        try:
            snapshot.delete(0)
        except libvirt.libvirtError as exc:
            raise SnapshotDeleteError(
                f"Failed to delete snapshot '{snapshot_name}' of VM '{handle.name}': {exc}"
            ) from exc

    def list_snapshots(self, handle: GuestHandle) -> List[str]:
        try:
            return list(handle.domain.snapshotListNames(0))
        except libvirt.libvirtError as exc:
            raise SnapshotListError(f"Failed to list snapshots of VM '{handle.name}': {exc}") from exc