"""Tests for zm.hypervisor module (libvirt binding)."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

libvirt = pytest.importorskip("libvirt")

from zm.exceptions import (  # noqa: E402
    ConnectError,
    DefineError,
    GuestNotFoundError,
    ManagerError,
    SnapshotCreateError,
    SnapshotNotFoundError,
    StartError,
    StateQueryError,
    StopError,
    UndefineError,
)
from zm.hypervisor import GuestHandle, LibvirtHypervisor  # noqa: E402


def _error(message="boom"):
    return libvirt.libvirtError(message)


@pytest.fixture
def conn():
    return MagicMock()


@pytest.fixture
def hv(conn):
    with patch("zm.hypervisor.libvirt.open", return_value=conn), patch("zm.hypervisor.libvirt.registerErrorHandler"):
        yield LibvirtHypervisor("qemu:///system").open()


@pytest.fixture
def domain(conn):
    dom = MagicMock()
    conn.lookupByName.return_value = dom
    return dom


class TestConnection:
    def test_open_registers_silent_handler(self, conn):
        with patch("zm.hypervisor.libvirt.open", return_value=conn) as opener, patch(
            "zm.hypervisor.libvirt.registerErrorHandler"
        ) as register:
            hv = LibvirtHypervisor("qemu:///session").open()
        opener.assert_called_once_with("qemu:///session")
        register.assert_called_once()
        assert hv.conn is conn

    def test_open_failure(self):
        with patch("zm.hypervisor.libvirt.open", side_effect=_error()), patch(
            "zm.hypervisor.libvirt.registerErrorHandler"
        ):
            with pytest.raises(ConnectError):
                LibvirtHypervisor("qemu:///system").open()

    def test_context_manager_closes(self, hv, conn):
        with hv:
            pass
        conn.close.assert_called_once()
        assert hv.conn is None

    def test_requires_connection(self):
        with pytest.raises(ConnectError):
            LibvirtHypervisor("qemu:///system").lookup("web")


class TestDefaultNetwork:
    def test_starts_and_autostarts(self, hv, conn):
        network = conn.networkLookupByName.return_value
        network.isActive.return_value = 0
        network.autostart.return_value = 0
        hv.ensure_default_network()
        network.create.assert_called_once()
        network.setAutostart.assert_called_once_with(1)

    def test_missing_network_only_warns(self, hv, conn, capsys):
        conn.networkLookupByName.side_effect = _error()
        hv.ensure_default_network()
        assert "[WARN" in capsys.readouterr().out


class TestGuests:
    def test_lookup_not_found(self, hv, conn):
        conn.lookupByName.side_effect = _error("no domain")
        with pytest.raises(GuestNotFoundError):
            hv.lookup("web")
        assert hv.exists("web") is False

    def test_handle_release(self, hv, domain):
        with hv.lookup("web") as handle:
            assert handle.domain is domain
        assert handle.released
        with pytest.raises(ManagerError):
            handle.domain

    def test_define(self, hv, conn):
        handle = hv.define("<domain/>", "web")
        conn.defineXML.assert_called_once_with("<domain/>")
        assert isinstance(handle, GuestHandle)

    def test_define_failure(self, hv, conn):
        conn.defineXML.side_effect = _error()
        with pytest.raises(DefineError):
            hv.define("<domain/>", "web")

    @pytest.mark.parametrize(
        "method, native, error",
        [
            ("start", "create", StartError),
            ("destroy", "destroy", StopError),
            ("shutdown", "shutdown", StopError),
            ("undefine", "undefineFlags", UndefineError),
        ],
    )
    def test_typed_failures(self, hv, domain, method, native, error):
        getattr(domain, native).side_effect = _error()
        with pytest.raises(error):
            getattr(hv, method)(hv.lookup("web"))

    def test_state_query_failure(self, hv, domain):
        domain.isActive.side_effect = _error()
        with pytest.raises(StateQueryError):
            hv.is_active(hv.lookup("web"))

    def test_state_query_on_vanished_guest(self, hv, domain):
        domain.isActive.side_effect = _error("domain not found")
        with patch.object(libvirt.libvirtError, "get_error_code", return_value=libvirt.VIR_ERR_NO_DOMAIN):
            with pytest.raises(GuestNotFoundError):
                hv.is_active(hv.lookup("web"))

    def test_undefine_drops_snapshot_metadata(self, hv, domain):
        hv.undefine(hv.lookup("web"))
        domain.undefineFlags.assert_called_once_with(libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA)

    def test_list_guests(self, hv, conn):
        a, b = MagicMock(), MagicMock()
        a.name.return_value, a.isActive.return_value = "a", 1
        b.name.return_value, b.isActive.return_value = "b", 0
        conn.listAllDomains.return_value = [a, b]
        assert hv.list_guests() == [("a", True), ("b", False)]
        assert hv.list_names() == ["a", "b"]

    def test_resources(self, hv, domain):
        domain.info.return_value = [1, 2097152, 2097152, 4, 0]
        assert hv.resources(hv.lookup("web")) == (2097152, 4)

    def test_disk_path(self, hv, domain):
        domain.XMLDesc.return_value = (
            "<domain><devices>"
            "<disk device='cdrom'><source file='/seed.iso'/></disk>"
            "<disk device='disk'><source file='/vms/web.qcow2'/></disk>"
            "</devices></domain>"
        )
        assert hv.disk_path(hv.lookup("web")) == Path("/vms/web.qcow2")


class TestInterfaceAddresses:
    IFACES = {
        "vnet0": {
            "hwaddr": "52:54:00:AA:BB:CC",
            "addrs": [{"type": 0, "addr": "192.168.122.5", "prefix": 24}],
        }
    }

    def test_agent_first(self, hv, domain):
        domain.interfaceAddresses.return_value = self.IFACES
        addresses = hv.interface_addresses(hv.lookup("web"))
        assert [(a.mac, a.ip) for a in addresses] == [("52:54:00:aa:bb:cc", "192.168.122.5")]
        domain.interfaceAddresses.assert_called_once_with(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_AGENT)

    def test_lease_fallback(self, hv, domain):
        domain.interfaceAddresses.side_effect = [_error("no agent"), self.IFACES]
        addresses = hv.interface_addresses(hv.lookup("web"))
        assert addresses[0].ip == "192.168.122.5"
        assert domain.interfaceAddresses.call_args[0][0] == libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE

    def test_skips_interfaces_without_valid_mac(self, hv, domain):
        domain.interfaceAddresses.return_value = {
            "lo": {"hwaddr": None, "addrs": [{"type": 0, "addr": "127.0.0.1", "prefix": 8}]},
            "tun0": {"hwaddr": "garbage", "addrs": [{"type": 0, "addr": "10.8.0.2", "prefix": 24}]},
            **self.IFACES,
        }
        addresses = hv.interface_addresses(hv.lookup("web"))
        assert [a.ip for a in addresses] == ["192.168.122.5"]

    def test_nothing_known_is_empty(self, hv, domain):
        domain.interfaceAddresses.return_value = {}
        assert hv.interface_addresses(hv.lookup("web")) == []


class TestSnapshots:
    def test_create(self, hv, domain):
        hv.create_snapshot(hv.lookup("web"), "clean")
        xml = domain.snapshotCreateXML.call_args[0][0]
        assert "<name>clean</name>" in xml

    def test_create_failure(self, hv, domain):
        domain.snapshotCreateXML.side_effect = _error()
        with pytest.raises(SnapshotCreateError):
            hv.create_snapshot(hv.lookup("web"), "clean")

    def test_revert_missing(self, hv, domain):
        domain.snapshotLookupByName.side_effect = _error()
        with pytest.raises(SnapshotNotFoundError):
            hv.revert_snapshot(hv.lookup("web"), "nope")

    def test_delete(self, hv, domain):
        hv.delete_snapshot(hv.lookup("web"), "clean")
        domain.snapshotLookupByName.return_value.delete.assert_called_once()

    def test_list(self, hv, domain):
        domain.snapshotListNames.return_value = ["a", "b"]
        assert hv.list_snapshots(hv.lookup("web")) == ["a", "b"]
