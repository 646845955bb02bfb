"""ISO9660 image authoring via genisoimage."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict

from zm.constants import CLOUD_INIT_VOLUME_ID
from zm.utils import run


def write_iso(output: Path, files: Dict[str, Path], volume_id: str = CLOUD_INIT_VOLUME_ID) -> Path:
    """Encode ``files`` (image name -> source path) into a Joliet/Rock Ridge ISO.

    Raises CalledProcessError or FileNotFoundError from the encoder; callers
    map them to their own error kind.
    """
    cmd = [
        "genisoimage",
        "-output",
        str(output),
        "-volid",
        volume_id,
        "-joliet",
        "-rock",
        "-graft-points",
    ]
    cmd.extend(f"{image_name}={source}" for image_name, source in files.items())
    run(cmd, capture_output=True)
    return output


def encoder_available() -> bool:
    try:
        run(["genisoimage", "-version"], capture_output=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False
    return True
