"""`zm init`: prepare a host for creating guests."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from zm.config import Config
from zm.constants import CLOUD_INIT_TEMPLATE_NAME, SYSTEM_CONFIG_PATH
from zm.exceptions import ManagerError, ValidationError
from zm.iso import encoder_available
from zm.utils import download_file, ensure_directory, expand_home, has_controlling_tty, hash_password, log, run

DEFAULT_IMAGE_URL = "https://archive.evgnomon.org/zamin/zamin-0.0.1.tar.gz"


@dataclass
class InitOptions:
    username: Optional[str] = None
    identity_file: Optional[str] = None
    ssh_key: Optional[str] = None
    password: Optional[str] = None
    config_path: Path = SYSTEM_CONFIG_PATH
    image_url: Optional[str] = DEFAULT_IMAGE_URL
    interactive: Optional[bool] = None


def _ask(prompt: Callable[[str], str], question: str, default: str) -> str:
    try:
        answer = prompt(f"{question} [{default}]: ").strip()
    except EOFError:
        answer = ""
    return answer or default


def read_public_key(identity_file: str) -> Optional[str]:
    pub_path = expand_home(f"{identity_file}.pub")
    log("INFO", f"Reading SSH public key from {pub_path}...")
    try:
        key = pub_path.read_text(encoding="utf-8").strip()
    except OSError:
        log("WARN", f"Could not read {pub_path}")
        return None
    return key or None


def render_user_data_template(username: str, ssh_key: str, password_hash: Optional[str] = None) -> str:
    user: Dict[str, Any] = {
        "name": username,
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "shell": "/bin/bash",
        "ssh_authorized_keys": [ssh_key],
    }
    document: Dict[str, Any] = {"users": [user]}
    if password_hash:
        user["lock_passwd"] = False
        user["passwd"] = password_hash
        document["chpasswd"] = {"expire": False}
    return "#cloud-config\n" + yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def render_config_file(cfg: Config) -> str:
    data = {
        "base_image_path": str(cfg.base_image_path),
        "base_image_name": cfg.base_image_name,
        "vm_storage_path": str(cfg.vm_storage_path),
        "cloud_init_template_path": str(cfg.cloud_init_template_path),
        "default_memory": cfg.default_memory,
        "default_vcpus": cfg.default_vcpus,
        "default_machine": cfg.default_machine,
        "max_retries": cfg.max_retries,
        "username": cfg.username,
        "ssh_key": cfg.ssh_key,
        "identity_file": cfg.identity_file,
        "libvirt_uri": cfg.libvirt_uri,
    }
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def fetch_base_image(url: str, images_dir: Path) -> None:
    """Download a base image tarball into ``images_dir`` and unpack it there."""
    archive = images_dir / url.rsplit("/", 1)[-1]
    download_file(url, archive, label="Downloading base image")
    log("INFO", f"Extracting {archive.name}...")
    try:
        run(["tar", "-xzf", str(archive), "-C", str(images_dir)], capture_output=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        raise ManagerError(f"Failed to extract {archive}: {exc}") from exc
    log("SUCCESS", "Base image extracted")


def run_init(options: InitOptions, base: Optional[Config] = None, prompt: Callable[[str], str] = input) -> Config:
    """Write the config file and first-boot template; returns the new config."""
    cfg = base or Config()
    interactive = has_controlling_tty() if options.interactive is None else options.interactive

    username = options.username
    identity_file = options.identity_file
    if interactive:
        username = username or _ask(prompt, "Default username", cfg.username)
        identity_file = identity_file or _ask(prompt, "Identity file", cfg.identity_file)
    username = username or cfg.username
    identity_file = identity_file or cfg.identity_file

    ssh_key = options.ssh_key or read_public_key(identity_file)
    if not ssh_key and interactive:
        try:
            ssh_key = prompt("SSH public key: ").strip()
        except EOFError:
            ssh_key = ""
    if not ssh_key:
        raise ValidationError("SSH public key is required (pass --ssh-key or create <identity>.pub)")

    password_hash = hash_password(options.password) if options.password else None

    cfg = replace(cfg, username=username, ssh_key=ssh_key, identity_file=identity_file)

    log("INFO", "Creating directories...")
    try:
        ensure_directory(options.config_path.parent)
        ensure_directory(cfg.base_image_path)
        ensure_directory(cfg.cloud_init_template_path)
    except OSError as exc:
        raise ManagerError(f"Cannot create directories: {exc}") from exc

    if options.image_url:
        fetch_base_image(options.image_url, cfg.base_image_path)

    log("INFO", f"Writing config to {options.config_path}...")
    template_path = cfg.cloud_init_template_path / CLOUD_INIT_TEMPLATE_NAME
    try:
        options.config_path.write_text(render_config_file(cfg), encoding="utf-8")
        log("INFO", f"Writing cloud-init template to {template_path}...")
        template_path.write_text(render_user_data_template(username, ssh_key, password_hash), encoding="utf-8")
    except OSError as exc:
        raise ManagerError(f"Cannot write configuration: {exc}") from exc

    if not encoder_available():
        log("WARN", "genisoimage not found; install it before creating VMs")
    log("SUCCESS", "zm initialized successfully.")
    return cfg
