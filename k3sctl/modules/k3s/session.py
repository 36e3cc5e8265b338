"""Per-invocation context handed to every workflow."""
import dataclasses
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from ...config import Config
from ..ssh import CredentialTable, RemoteGateway
from . import health
from .config import ClusterDescriptor
from .kubectl import Kubectl

logger = logging.getLogger("k3s.session")


def always_confirm(reason: str) -> bool:
    logger.warning(f"⚠️ {reason} (continuing: confirmation disabled)")
    return True


def never_confirm(reason: str) -> bool:
    logger.warning(f"⚠️ {reason} (declined: no confirmation available)")
    return False


@dataclass
class Session:
    """Descriptor, gateway and operator policy for one workflow run.

    ``confirm`` is asked before destructive steps and when a health gate
    fails; it returns True to proceed.
    """
    descriptor: ClusterDescriptor
    gateway: object
    confirm: Callable[[str], bool] = never_confirm
    kubeconfig_path: Path = Config.KUBECONFIG_PATH
    backup_dir: Path = Config.BACKUP_DIR
    dry_run: bool = False
    poll_interval: float = Config.POLL_INTERVAL
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def open(cls, descriptor: ClusterDescriptor, **kwargs) -> "Session":
        """Build a session with an SSH gateway for ``descriptor``."""
        gateway = RemoteGateway(CredentialTable.from_descriptor(descriptor))
        gateway.add_secret(descriptor.token)
        return cls(descriptor=descriptor, gateway=gateway, **kwargs)

    def with_descriptor(self, descriptor: ClusterDescriptor) -> "Session":
        """Same gateway and policy, different (usually extended) descriptor."""
        if hasattr(self.gateway, 'add_secret'):
            self.gateway.add_secret(descriptor.token)
        return dataclasses.replace(self, descriptor=descriptor)

    def kubectl(self, hosts: Optional[Sequence[str]] = None) -> Kubectl:
        return Kubectl(self.gateway, hosts or self.descriptor.control_plane)

    def wait_until(self, predicate: Callable[[], bool], timeout: float, description: str,
                   remediation: Optional[str] = None):
        health.wait_until(
            predicate,
            timeout=timeout,
            interval=self.poll_interval,
            description=description,
            sleep=self.sleep,
            remediation=remediation,
        )

    def pause(self, seconds: float):
        if seconds > 0:
            self.sleep(seconds)

    def close(self):
        if hasattr(self.gateway, 'close'):
            self.gateway.close()
