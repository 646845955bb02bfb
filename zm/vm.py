"""VM lifecycle management for zm."""

from __future__ import annotations

import os
import shutil
import subprocess
import threading
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Tuple

from zm.cloudinit import build_config_image
from zm.config import Config
from zm.constants import DISK_IMAGE_FORMAT, DISK_IMAGE_MODE, SSH_CONFIG_DIR
from zm.domain import build_domain_xml
from zm.exceptions import (
    AlreadyExistsError,
    GuestNotRunningError,
    GuestRunningError,
    ImageCopyError,
    IpNotFoundError,
    PermissionChangeError,
)
from zm.models import GuestIdentity, GuestInfo, GuestSpec, InterfaceAddress, ProvisionResult, validate_guest_name
from zm.network import derive_mac, discover_address
from zm.ssh_config import remove_host_entry, write_host_entry
from zm.utils import ensure_directory, grow_image, log, run

ConfigBuilder = Callable[[str, Path, Path], Path]


class _NameLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class VMManager:
    """Create, inspect and tear down guests on one hypervisor connection.

    The manager keeps no registry of its own: every operation re-checks the
    hypervisor. Operations on the same guest name are serialised within the
    process; hypervisor handles are released before each method returns.
    """

    def __init__(
        self,
        config: Config,
        hypervisor,
        config_builder: ConfigBuilder = build_config_image,
        ssh_config_dir: Path = SSH_CONFIG_DIR,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = config
        self.hypervisor = hypervisor
        self.config_builder = config_builder
        self.ssh_config_dir = ssh_config_dir
        self._sleep = sleep
        self._locks: Dict[str, _NameLock] = {}
        self._locks_guard = threading.Lock()

    # ---- locking ---------------------------------------------------------

    @contextmanager
    def _locked(self, *names: str) -> Iterator[None]:
        # Always acquire in sorted order; idle entries are dropped on exit
        ordered = sorted(set(names))
        with self._locks_guard:
            entries = [self._locks.setdefault(name, _NameLock()) for name in ordered]
            for entry in entries:
                entry.users += 1
        try:
            with ExitStack() as stack:
                for entry in entries:
                    stack.enter_context(entry.lock)
                yield
        finally:
            with self._locks_guard:
                for name, entry in zip(ordered, entries):
                    entry.users -= 1
                    if not entry.users:
                        del self._locks[name]

    # ---- create / fork ---------------------------------------------------

    def create(self, name: str, spec: GuestSpec) -> ProvisionResult:
        validate_guest_name(name)
        with self._locked(name):
            self._ensure_absent(name)
            source = spec.image_path or self.cfg.base_image
            disk_path = self.cfg.disk_path(name)
            log("INFO", f"Copying image {source} -> {disk_path}")
            self._copy_image(source, disk_path)
            self._fix_permissions(disk_path)
            if spec.disk_size:
                grow_image(disk_path, spec.disk_size)
            return self._provision(GuestIdentity.from_name(name), spec, disk_path)

    def fork(self, source: str, dest: str, spec: GuestSpec) -> ProvisionResult:
        """Clone ``source``'s current disk into a new guest ``dest``."""
        validate_guest_name(dest)
        with self._locked(source, dest):
            with self.hypervisor.lookup(source) as handle:
                if self.hypervisor.is_active(handle):
                    raise GuestRunningError(f"VM '{source}' is running. Stop it before forking.")
                source_disk = self.hypervisor.disk_path(handle) or self.cfg.disk_path(source)
            self._ensure_absent(dest)

            disk_path = self.cfg.disk_path(dest)
            log("INFO", f"Cloning disk {source_disk} -> {disk_path}")
            self._convert_image(source_disk, disk_path)
            self._fix_permissions(disk_path)
            if spec.disk_size:
                grow_image(disk_path, spec.disk_size)
            return self._provision(GuestIdentity.from_name(dest), spec, disk_path)

    def _ensure_absent(self, name: str) -> None:
        if self.hypervisor.exists(name):
            raise AlreadyExistsError(f"VM '{name}' already exists")

    def _copy_image(self, source: Path, destination: Path) -> None:
        if destination.exists():
            log("WARN", f"Overwriting leftover disk image {destination}")
        try:
            ensure_directory(destination.parent)
            shutil.copy2(source, destination)
        except OSError as exc:
            raise ImageCopyError(f"Failed to copy image {source} -> {destination}: {exc}") from exc

    def _convert_image(self, source: Path, destination: Path) -> None:
        if destination.exists():
            log("WARN", f"Overwriting leftover disk image {destination}")
        try:
            ensure_directory(destination.parent)
            run(
                ["qemu-img", "convert", "-O", DISK_IMAGE_FORMAT, str(source), str(destination)],
                capture_output=True,
            )
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
            raise ImageCopyError(f"Failed to clone disk {source}: {detail}") from exc
        except OSError as exc:
            raise ImageCopyError(f"Failed to clone disk {source}: {exc}") from exc

    @staticmethod
    def _fix_permissions(path: Path) -> None:
        try:
            if path.stat().st_mode & 0o666 != DISK_IMAGE_MODE:
                os.chmod(path, DISK_IMAGE_MODE)
        except OSError as exc:
            raise PermissionChangeError(f"Failed to set permissions on {path}: {exc}") from exc

    def _provision(self, identity: GuestIdentity, spec: GuestSpec, disk_path: Path) -> ProvisionResult:
        # No rollback: a failure past this point leaves the disk image behind.
        config_image = self.config_builder(
            identity.name,
            self.cfg.cloud_init_template,
            self.cfg.config_image_path(identity.name),
        )
        xml = build_domain_xml(identity, spec, disk_path, config_image)
        log("DEBUG", f"Domain XML:\n{xml}")

        log("INFO", f"Defining VM '{identity.name}' (MAC {identity.mac})")
        result = ProvisionResult(
            name=identity.name,
            mac=identity.mac,
            disk_path=disk_path,
            config_image=config_image,
            started=False,
        )
        with self.hypervisor.define(xml, identity.name) as handle:
            if not spec.start:
                log("SUCCESS", f"VM '{identity.name}' created but not started")
                return result

            self.hypervisor.ensure_default_network()
            log("INFO", f"Starting VM '{identity.name}'...")
            self.hypervisor.start(handle)
            result.started = True
            log("SUCCESS", f"VM '{identity.name}' created and started")

            if spec.wait_for_ip:
                try:
                    result.ip = discover_address(
                        self.hypervisor, handle, identity.mac, self.cfg.max_retries, sleep=self._sleep
                    )
                except IpNotFoundError as exc:
                    log("WARN", f"Could not retrieve IP address: {exc}")
                else:
                    log("SUCCESS", f"VM IP address: {result.ip}")
                    write_host_entry(
                        identity.name,
                        result.ip,
                        self.cfg.username,
                        self.cfg.identity_file,
                        directory=self.ssh_config_dir,
                    )
        return result

    # ---- delete / start / stop ------------------------------------------

    def delete(self, name: str, force: bool = False) -> None:
        with self._locked(name):
            with self.hypervisor.lookup(name) as handle:
                if self.hypervisor.is_active(handle):
                    if not force:
                        raise GuestRunningError(f"VM '{name}' is running. Use --force to stop and delete.")
                    log("INFO", f"Force stopping VM '{name}'")
                    self.hypervisor.destroy(handle)
                disk_path = self.hypervisor.disk_path(handle) or self.cfg.disk_path(name)
                log("INFO", f"Undefining VM '{name}'")
                self.hypervisor.undefine(handle)

            artifacts = [self.cfg.config_image_path(name)]
            if self._in_storage(disk_path):
                artifacts.insert(0, disk_path)
            else:
                log("WARN", f"Leaving disk image {disk_path} in place (outside {self.cfg.vm_storage_path})")
            for artifact in artifacts:
                try:
                    artifact.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    log("WARN", f"Could not delete {artifact}: {exc}")
            remove_host_entry(name, directory=self.ssh_config_dir)
            log("SUCCESS", f"VM '{name}' deleted")

    def _in_storage(self, path: Path) -> bool:
        return self.cfg.vm_storage_path.resolve() in path.resolve().parents

    def start(self, name: str) -> bool:
        """Start ``name``; returns False if it was already running."""
        with self._locked(name):
            with self.hypervisor.lookup(name) as handle:
                if self.hypervisor.is_active(handle):
                    log("INFO", f"VM '{name}' is already running")
                    return False
                log("INFO", f"Starting VM '{name}'")
                self.hypervisor.start(handle)
        log("SUCCESS", f"VM '{name}' started")
        return True

    def stop(self, name: str, force: bool = False) -> bool:
        """Stop ``name``; graceful stops return without waiting for power-off."""
        with self._locked(name):
            with self.hypervisor.lookup(name) as handle:
                if not self.hypervisor.is_active(handle):
                    log("INFO", f"VM '{name}' is not running")
                    return False
                if force:
                    log("INFO", f"Force stopping VM '{name}'")
                    self.hypervisor.destroy(handle)
                    log("SUCCESS", f"VM '{name}' stopped")
                else:
                    log("INFO", f"Gracefully stopping VM '{name}'")
                    self.hypervisor.shutdown(handle)
                    log("SUCCESS", f"Shutdown requested for VM '{name}'")
        return True

    # ---- queries ---------------------------------------------------------

    def get_ip(self, name: str) -> str:
        with self.hypervisor.lookup(name) as handle:
            if not self.hypervisor.is_active(handle):
                raise GuestNotRunningError(f"VM '{name}' is not running")
            return discover_address(
                self.hypervisor, handle, derive_mac(name), self.cfg.max_retries, sleep=self._sleep
            )

    def list(self) -> List[Tuple[str, bool]]:
        return self.hypervisor.list_guests()

    def addresses(self, name: str) -> List[InterfaceAddress]:
        """One non-polling interface query, filtered to the guest's own MAC."""
        mac = derive_mac(name)
        with self.hypervisor.lookup(name) as handle:
            if not self.hypervisor.is_active(handle):
                return []
            return [entry for entry in self.hypervisor.interface_addresses(handle) if entry.mac.lower() == mac]

    def info(self, name: str) -> GuestInfo:
        with self.hypervisor.lookup(name) as handle:
            memory, vcpus = self.hypervisor.resources(handle)
            return GuestInfo(
                name=name,
                active=self.hypervisor.is_active(handle),
                mac=derive_mac(name),
                memory=memory,
                vcpus=vcpus,
                disk_path=self.hypervisor.disk_path(handle),
                snapshots=self.hypervisor.list_snapshots(handle),
            )

    # ---- snapshots -------------------------------------------------------

    def snapshot_create(self, name: str, snapshot: str) -> None:
        with self.hypervisor.lookup(name) as handle:
            log("INFO", f"Creating snapshot '{snapshot}' of VM '{name}'")
            self.hypervisor.create_snapshot(handle, snapshot)
        log("SUCCESS", f"Snapshot '{snapshot}' created")

    def snapshot_list(self, name: str) -> List[str]:
        with self.hypervisor.lookup(name) as handle:
            return self.hypervisor.list_snapshots(handle)

    def snapshot_restore(self, name: str, snapshot: str) -> None:
        with self.hypervisor.lookup(name) as handle:
            log("INFO", f"Reverting VM '{name}' to snapshot '{snapshot}'")
            self.hypervisor.revert_snapshot(handle, snapshot)
        log("SUCCESS", f"VM '{name}' restored to '{snapshot}'")

    def snapshot_delete(self, name: str, snapshot: str) -> None:
        with self.hypervisor.lookup(name) as handle:
            log("INFO", f"Deleting snapshot '{snapshot}' of VM '{name}'")
            self.hypervisor.delete_snapshot(handle, snapshot)
        log("SUCCESS", f"Snapshot '{snapshot}' deleted")
