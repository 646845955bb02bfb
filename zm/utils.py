"""Utility functions for zm."""

from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from zm.constants import _LOG_VERBOSE, SIZE_UNITS
from zm.exceptions import DiskResizeError, InvalidSizeError, ManagerError, ValidationError

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def parse_size(raw: str, unit: int = 1) -> int:
    """Parse ``raw`` into multiples of ``unit`` bytes.

    A recognised suffix (``KiB``, ``MiB``, ``GiB``, ``TiB`` or the single
    letters ``K``/``M``/``G``/``T``) scales the number; anything else is
    parsed as a bare integer already expressed in ``unit``.
    """
    value = raw.strip()
    for suffix in sorted(SIZE_UNITS, key=len, reverse=True):
        number = value[: -len(suffix)]
        if value.endswith(suffix) and number.isdigit():
            return int(number) * SIZE_UNITS[suffix] // unit
    if not value.isdigit():
        raise InvalidSizeError(f"Invalid size '{raw}'. Use an integer with an optional suffix (e.g. 512MiB, 2GiB)")
    return int(value)


def require_min(label: str, value: int, min_val: int = 1) -> int:
    if value < min_val:
        raise ValidationError(f"{label} must be >= {min_val} (got {value})")
    return value


def parse_memory(raw: str) -> int:
    """Parse a memory size into KiB ("1" -> 1, "512MiB" -> 524288)."""
    return parse_size(raw, unit=1024)


def parse_disk_size(raw: str) -> int:
    """Parse a disk size into bytes."""
    return parse_size(raw, unit=1)


def expand_home(path: str) -> Path:
    return Path(os.path.expanduser(path))


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def image_virtual_size(path: Path) -> int:
    """Return the virtual size of a disk image in bytes, or 0 if unknown."""
    info = subprocess.run(
        ["qemu-img", "info", "--output=json", str(path)],
        capture_output=True,
        text=True,
    )
    if info.returncode != 0:
        return 0
    return json.loads(info.stdout).get("virtual-size", 0)


def grow_image(path: Path, size_bytes: int) -> bool:
    """Expand ``path`` to ``size_bytes``; never shrinks. Returns True if resized."""
    current = image_virtual_size(path)
    if size_bytes <= current:
        log("INFO", f"Disk already {current // (1024**3)}G (>= {size_bytes // (1024**3)}G); skip resize")
        return False
    log("INFO", f"Resizing disk {path} to {size_bytes} bytes...")
    try:
        run(["qemu-img", "resize", str(path), str(size_bytes)], capture_output=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        raise DiskResizeError(f"Failed to resize {path}: {exc}") from exc
    log("SUCCESS", f"Disk resized to {size_bytes} bytes")
    return True


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "zm/0.2"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                chunk = response.read(1024 * 256)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(f"\r  {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB", end="", flush=True)
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
            tmp_path.replace(destination)
            elapsed = time.time() - start_time
            log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
