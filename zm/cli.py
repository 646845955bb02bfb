"""CLI entry points for zm."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional

from zm import __version__
from zm.bootstrap import DEFAULT_IMAGE_URL, InitOptions, run_init
from zm.config import Config, load_config
from zm.constants import SYSTEM_CONFIG_PATH
from zm.exceptions import IpNotFoundError, ManagerError
from zm.models import GuestInfo, GuestSpec
from zm.utils import log, parse_disk_size, parse_memory, require_min, set_verbose
from zm.vm import VMManager


def open_hypervisor(uri: str):
    """Connect to libvirt; imported lazily so `zm init` works without bindings."""
    from zm.hypervisor import LibvirtHypervisor

    return LibvirtHypervisor(uri).open()


def _add_spec_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--memory", help="Memory size (e.g. 2GiB, 512MiB or KiB as a bare integer)")
    parser.add_argument("--vcpus", type=int, help="Number of virtual CPUs")
    parser.add_argument("--machine", help="QEMU machine type")
    parser.add_argument("--disk-size", help="Grow the disk to this size (e.g. 20GiB); never shrinks")
    parser.add_argument("--no-start", action="store_true", help="Define the VM without starting it")
    parser.add_argument("--no-wait-ip", action="store_true", help="Do not wait for an IP address after start")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="zm", description="Lightweight KVM/QEMU virtual machine manager")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--connect", metavar="URI", help="libvirt connection URI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debug output")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    init = sub.add_parser("init", help="Prepare this host (config, cloud-init template, base image)")
    init.add_argument("--username", help="Guest login user")
    init.add_argument("--identity-file", help="SSH private key used to reach guests")
    init.add_argument("--ssh-key", help="SSH public key (default: <identity-file>.pub)")
    init.add_argument("--password", help="Optional guest password (stored as a bcrypt hash)")
    init.add_argument("--output", type=Path, default=SYSTEM_CONFIG_PATH, help="Where to write config.yaml")
    init.add_argument("--image-url", default=DEFAULT_IMAGE_URL, help="Base image tarball to download")
    init.add_argument("--skip-image", action="store_true", help="Do not download the base image")
    init.add_argument("--non-interactive", action="store_true", help="Never prompt")

    create = sub.add_parser("create", help="Create a VM from the base image")
    create.add_argument("name")
    create.add_argument("--image", type=Path, help="Source image (default: configured base image)")
    _add_spec_arguments(create)

    listing = sub.add_parser("list", help="List defined VMs")
    listing.add_argument("--ip", action="store_true", help="Show known addresses of running VMs")

    info = sub.add_parser("info", help="Show VM details")
    info.add_argument("name")

    start = sub.add_parser("start", help="Start a VM")
    start.add_argument("name")

    stop = sub.add_parser("stop", help="Stop a VM (graceful unless --force)")
    stop.add_argument("name")
    stop.add_argument("--force", action="store_true", help="Power off immediately")

    delete = sub.add_parser("delete", help="Delete a VM and its disk")
    delete.add_argument("name")
    delete.add_argument("--force", action="store_true", help="Stop the VM first if it is running")

    ip = sub.add_parser("ip", help="Print the IP address of a running VM")
    ip.add_argument("name")

    snapshot = sub.add_parser("snapshot", help="Manage snapshots")
    snap_sub = snapshot.add_subparsers(dest="snapshot_command", metavar="ACTION")
    snap_sub.required = True
    for action in ("create", "restore", "delete"):
        snap_parser = snap_sub.add_parser(action, help=f"{action.capitalize()} a snapshot")
        snap_parser.add_argument("name")
        snap_parser.add_argument("snapshot")
    snap_list = snap_sub.add_parser("list", help="List snapshots")
    snap_list.add_argument("name")

    fork = sub.add_parser("fork", help="Clone a stopped VM into a new one")
    fork.add_argument("source")
    fork.add_argument("dest")
    _add_spec_arguments(fork)

    return parser


def spec_from_args(args: argparse.Namespace, cfg: Config, inherit: Optional[GuestInfo] = None) -> GuestSpec:
    """Build a GuestSpec from CLI flags; unset memory/vCPUs come from ``inherit`` or config."""
    memory = require_min("Memory", parse_memory(args.memory)) if args.memory else None
    vcpus = require_min("vCPUs", args.vcpus) if args.vcpus is not None else None
    disk_size = require_min("Disk size", parse_disk_size(args.disk_size)) if args.disk_size else None
    if inherit is not None:
        memory = memory or inherit.memory or None
        vcpus = vcpus or inherit.vcpus or None
    return GuestSpec.from_config(
        cfg,
        memory=memory,
        vcpus=vcpus,
        machine=args.machine,
        disk_size=disk_size,
        image_path=getattr(args, "image", None),
        start=not args.no_start,
        wait_for_ip=not args.no_wait_ip,
    )


def show_info(info: GuestInfo) -> None:
    print(f"Name:      {info.name}")
    print(f"Active:    {'yes' if info.active else 'no'}")
    print(f"MAC:       {info.mac}")
    print(f"Memory:    {info.memory} KiB")
    print(f"vCPUs:     {info.vcpus}")
    print(f"Disk:      {info.disk_path or '-'}")
    print(f"Snapshots: {', '.join(info.snapshots) if info.snapshots else '-'}")


def show_list(manager: VMManager, with_addresses: bool) -> None:
    guests = manager.list()
    if not guests:
        log("INFO", "No VMs defined")
        return
    for name, active in guests:
        state = "running" if active else "shut off"
        line = f"{name:<24} {state}"
        if with_addresses and active:
            addresses = manager.addresses(name)
            line += f"  {', '.join(entry.ip for entry in addresses) if addresses else '-'}"
        print(line)


def dispatch(args: argparse.Namespace, cfg: Config, manager: VMManager) -> int:
    command = args.command
    if command == "create":
        result = manager.create(args.name, spec_from_args(args, cfg))
        if result.ip:
            print(f"{result.name}: {result.ip}")
    elif command == "fork":
        source = manager.info(args.source)
        result = manager.fork(args.source, args.dest, spec_from_args(args, cfg, inherit=source))
        if result.ip:
            print(f"{result.name}: {result.ip}")
    elif command == "list":
        show_list(manager, args.ip)
    elif command == "info":
        show_info(manager.info(args.name))
    elif command == "start":
        manager.start(args.name)
    elif command == "stop":
        manager.stop(args.name, force=args.force)
    elif command == "delete":
        manager.delete(args.name, force=args.force)
    elif command == "ip":
        try:
            print(f"{args.name}: {manager.get_ip(args.name)}")
        except IpNotFoundError as exc:
            log("WARN", f"Could not retrieve IP address: {exc}")
    elif command == "snapshot":
        action = args.snapshot_command
        if action == "create":
            manager.snapshot_create(args.name, args.snapshot)
        elif action == "restore":
            manager.snapshot_restore(args.name, args.snapshot)
        elif action == "delete":
            manager.snapshot_delete(args.name, args.snapshot)
        else:
            snapshots = manager.snapshot_list(args.name)
            if not snapshots:
                log("INFO", f"No snapshots for VM '{args.name}'")
            for snap in snapshots:
                print(snap)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)

    try:
        cfg = load_config(args.config)
        if args.connect:
            cfg = dataclasses.replace(cfg, libvirt_uri=args.connect)

        if args.command == "init":
            run_init(
                InitOptions(
                    username=args.username,
                    identity_file=args.identity_file,
                    ssh_key=args.ssh_key,
                    password=args.password,
                    config_path=args.output,
                    image_url=None if args.skip_image else args.image_url,
                    interactive=False if args.non_interactive else None,
                ),
                base=cfg,
            )
            return 0

        hypervisor = open_hypervisor(cfg.libvirt_uri)
        try:
            return dispatch(args, cfg, VMManager(cfg, hypervisor))
        finally:
            hypervisor.close()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug. Please report it with the command you ran and --verbose output.")
        import traceback

        traceback.print_exc()
        return 1
