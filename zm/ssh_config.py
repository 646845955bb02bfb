"""Per-guest OpenSSH client host entries."""

from __future__ import annotations

from pathlib import Path

from zm.constants import SSH_CONFIG_DIR
from zm.utils import ensure_directory, log


def host_entry_path(name: str, directory: Path = SSH_CONFIG_DIR) -> Path:
    return directory / f"{name}.conf"


def render_host_entry(name: str, address: str, user: str, identity_file: str) -> str:
    lines = [
        f"Host {name}",
        f"    HostName {address}",
        f"    User {user}",
        "    Port 22",
    ]
    if identity_file:
        lines.append(f"    IdentityFile {identity_file}")
    return "\n".join(lines) + "\n"


def write_host_entry(name: str, address: str, user: str, identity_file: str, directory: Path = SSH_CONFIG_DIR) -> bool:
    """Write ``<directory>/<name>.conf``; returns False (with a warning) on failure."""
    path = host_entry_path(name, directory)
    try:
        ensure_directory(directory)
        path.write_text(render_host_entry(name, address, user, identity_file), encoding="utf-8")
    except OSError as exc:
        log("WARN", f"Could not write SSH config {path}: {exc}")
        return False
    log("SUCCESS", f"SSH config written: ssh {name}")
    return True


def remove_host_entry(name: str, directory: Path = SSH_CONFIG_DIR) -> bool:
    path = host_entry_path(name, directory)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        log("WARN", f"Could not remove SSH config {path}: {exc}")
        return False
    log("DEBUG", f"Removed SSH config {path}")
    return True
