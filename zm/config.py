"""Configuration loading for zm."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from zm.constants import (
    CLOUD_INIT_TEMPLATE_NAME,
    CONFIG_ENV_VAR,
    DEFAULT_LIBVIRT_URI,
    DEFAULT_MACHINE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MEMORY_KIB,
    DEFAULT_VCPUS,
    DISK_IMAGE_FORMAT,
    LIBVIRT_URI,
    SYSTEM_CONFIG_PATH,
    USER_CONFIG_PATH,
)
from zm.exceptions import ValidationError
from zm.utils import expand_home, log, parse_memory


@dataclass(frozen=True)
class Config:
    base_image_path: Path = Path("/usr/share/zm/images")
    base_image_name: str = "zamin"
    vm_storage_path: Path = Path("/var/lib/libvirt/images")
    cloud_init_template_path: Path = Path("/usr/share/zm/images/cloud-init")
    default_memory: int = DEFAULT_MEMORY_KIB
    default_vcpus: int = DEFAULT_VCPUS
    default_machine: str = DEFAULT_MACHINE
    max_retries: int = DEFAULT_MAX_RETRIES
    username: str = "zm"
    ssh_key: str = ""
    identity_file: str = "~/.ssh/id_ed25519"
    libvirt_uri: str = DEFAULT_LIBVIRT_URI

    @property
    def base_image(self) -> Path:
        return self.base_image_path / self.base_image_name

    @property
    def cloud_init_template(self) -> Path:
        return self.cloud_init_template_path / CLOUD_INIT_TEMPLATE_NAME

    def disk_path(self, name: str) -> Path:
        return self.vm_storage_path / f"{name}.{DISK_IMAGE_FORMAT}"

    def config_image_path(self, name: str) -> Path:
        return self.vm_storage_path / f"{name}-cloud-init.iso"


_PATH_KEYS = {"base_image_path", "vm_storage_path", "cloud_init_template_path"}
_INT_KEYS = {"default_vcpus", "max_retries"}


def _coerce(key: str, value: Any) -> Any:
    if key in _PATH_KEYS:
        return expand_home(str(value))
    if key == "default_memory":
        return parse_memory(str(value))
    if key in _INT_KEYS:
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{key} must be an integer (got '{value}')")
        if value < 1:
            raise ValidationError(f"{key} must be >= 1 (got {value})")
        return value
    if value is None:
        return ""
    return str(value)


def candidate_paths(explicit: Optional[Path] = None) -> List[Path]:
    if explicit is not None:
        return [explicit]
    paths: List[Path] = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        paths.append(Path(env_path))
    paths.extend([SYSTEM_CONFIG_PATH, USER_CONFIG_PATH])
    return paths


def parse_config(data: Dict[str, Any], source: str = "<config>") -> Config:
    known = {f.name for f in dataclasses.fields(Config)}
    values: Dict[str, Any] = {}
    for key, raw in data.items():
        if key not in known:
            log("DEBUG", f"{source}: ignoring unknown key '{key}'")
            continue
        try:
            values[key] = _coerce(key, raw)
        except ValidationError as exc:
            log("WARN", f"{source}: {exc}; using default")
    return Config(**values)


def load_config(path: Optional[Path] = None) -> Config:
    """Load the first config file found; missing files fall back to defaults."""
    cfg = Config()
    for candidate in candidate_paths(path):
        try:
            text = candidate.read_text(encoding="utf-8")
        except FileNotFoundError:
            log("DEBUG", f"No config at {candidate}")
            continue
        except OSError as exc:
            log("WARN", f"Could not read config {candidate}: {exc}; using defaults")
            break
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            log("WARN", f"Config {candidate} contains invalid YAML: {exc}; using defaults")
            break
        if data is None:
            data = {}
        if not isinstance(data, dict):
            log("WARN", f"Config {candidate} should contain a YAML mapping, got {type(data).__name__}; using defaults")
            break
        log("DEBUG", f"Loaded config from {candidate}")
        cfg = parse_config(data, source=str(candidate))
        break

    if LIBVIRT_URI:
        cfg = dataclasses.replace(cfg, libvirt_uri=LIBVIRT_URI)
    return cfg
