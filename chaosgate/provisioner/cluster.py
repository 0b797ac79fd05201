"""Disposable local cluster provisioning with kind."""

import subprocess
from typing import List

from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage

DOCKER_PERMISSION_HELP = """Docker permission denied. Solutions:
  1. Add your user to the docker group: sudo usermod -aG docker $USER
  2. Apply the group change: newgrp docker (or log out and back in)
  3. Run chaosgate with sudo"""


class KindCluster:
    """Creates the named kind cluster if it does not already exist."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.name = settings.cluster_name

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self.settings.kind] + args
        if self.settings.verbose:
            print(f"    $ {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=True)
        except FileNotFoundError:
            raise FatalSetupError(
                f"Failed to setup Kubernetes cluster: kind not found ({self.settings.kind})",
                Stage.CLUSTER_SETUP,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            if "docker.sock" in stderr and "permission denied" in stderr.lower():
                raise FatalSetupError(
                    "Failed to setup Kubernetes cluster: docker.sock permission denied",
                    Stage.CLUSTER_SETUP,
                    details=DOCKER_PERMISSION_HELP,
                )
            raise FatalSetupError(
                f"Failed to setup Kubernetes cluster: {stderr or e}",
                Stage.CLUSTER_SETUP,
            )

    def exists(self) -> bool:
        result = self._run(["get", "clusters"])
        return self.name in result.stdout.split()

    def ensure(self) -> bool:
        """Create the cluster when missing.

        Returns:
            True if a cluster was created, False if it already existed.
        """
        if self.exists():
            if not self.settings.quiet:
                print(f"    Using existing kind cluster {self.name}")
            return False
        if not self.settings.quiet:
            print(f"    Creating kind cluster {self.name}")
        self._run(["create", "cluster", "--name", self.name])
        return True
