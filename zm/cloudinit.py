"""First-boot (cloud-init NoCloud) config image builder."""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from zm.exceptions import ConfigBuildError
from zm.iso import write_iso
from zm.network import instance_id
from zm.utils import ensure_directory, log

MACHINE_ID_RESET = ["rm -f /etc/machine-id", "systemd-machine-id-setup"]


def render_user_data(template: str) -> str:
    """Inject the machine-id reset into a user-data template.

    Mapping documents get the commands appended to ``bootcmd``; anything
    else gets a ``bootcmd`` block appended as text.
    """
    try:
        document = yaml.safe_load(template)
    except yaml.YAMLError:
        document = None

    if isinstance(document, dict):
        bootcmd = document.get("bootcmd") or []
        if not isinstance(bootcmd, list):
            bootcmd = [bootcmd]
        document["bootcmd"] = bootcmd + MACHINE_ID_RESET
        return "#cloud-config\n" + yaml.safe_dump(document, sort_keys=False, default_flow_style=False)

    lines = [template.rstrip("\n"), "bootcmd:"]
    lines.extend(f"  - {command}" for command in MACHINE_ID_RESET)
    return "\n".join(lines).lstrip("\n") + "\n"


def render_meta_data(name: str) -> str:
    meta: Dict[str, Any] = {"instance-id": instance_id(name), "local-hostname": name}
    return yaml.safe_dump(meta, sort_keys=False, default_flow_style=False)


def build_config_image(name: str, template_path: Path, output_path: Path, workdir: Optional[Path] = None) -> Path:
    """Build the NoCloud seed image for ``name`` at ``output_path``."""
    log("INFO", f"Building cloud-init image for {name}...")
    try:
        template = template_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigBuildError(f"Cannot read cloud-init template {template_path}: {exc}") from exc

    user_data = render_user_data(template)
    meta_data = render_meta_data(name)

    try:
        ensure_directory(output_path.parent)
        with tempfile.TemporaryDirectory(dir=workdir) as tmpdir:
            tmp = Path(tmpdir)
            user_path = tmp / f"{name}-user-data"
            meta_path = tmp / f"{name}-meta-data"
            user_path.write_text(user_data, encoding="utf-8")
            meta_path.write_text(meta_data, encoding="utf-8")
            write_iso(output_path, {"user-data": user_path, "meta-data": meta_path})
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
        raise ConfigBuildError(f"genisoimage failed for {name}: {detail}") from exc
    except FileNotFoundError as exc:
        raise ConfigBuildError(f"genisoimage not found: {exc}") from exc
    except OSError as exc:
        raise ConfigBuildError(f"Cannot write cloud-init data for {name}: {exc}") from exc

    log("SUCCESS", f"Cloud-init image written to {output_path}")
    return output_path
