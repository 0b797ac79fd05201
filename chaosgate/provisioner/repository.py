"""Acquisition of the repository under test."""

import subprocess
import tempfile
import time
from pathlib import Path
from typing import Optional

from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage


def checkout_path(settings: Settings, now: Optional[float] = None) -> Path:
    """``<workdir>/chaos-test-<unixMillis>``, workdir defaulting to the temp dir."""
    base = Path(settings.workdir or tempfile.gettempdir())
    millis = int((time.time() if now is None else now) * 1000)
    return base / f"chaos-test-{millis}"


def clone_repository(url: str, settings: Settings) -> Path:
    """Shallow-clone a git repository into a fresh directory.

    Args:
        url: Repository URL.
        settings: Runtime settings (git binary, workdir).

    Returns:
        Path to the checkout.

    Raises:
        FatalSetupError: If git is missing or the clone fails.
    """
    dest = checkout_path(settings)
    dest.parent.mkdir(parents=True, exist_ok=True)
    if not settings.quiet:
        print(f"    Cloning {url} into {dest}")

    try:
        subprocess.run(
            [settings.git, "clone", "--depth", "1", "--", url, str(dest)],
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError:
        raise FatalSetupError(
            f"Failed to clone repository: git not found ({settings.git})",
            Stage.REPOSITORY_CLONING,
        )
    except subprocess.CalledProcessError as e:
        raise FatalSetupError(
            f"Failed to clone repository: {url}",
            Stage.REPOSITORY_CLONING,
            details=(e.stderr or "").strip() or str(e),
        )
    return dest
