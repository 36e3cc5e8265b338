"""etcd snapshot backup and restore for the control plane."""
import logging
import shlex
from pathlib import Path
from typing import Union

from ...config import Config
from ...errors import ConfigError, K3sctlError
from ...utils import timestamp
from . import health, installer
from .models import NodeRef, WorkflowReport
from .session import Session

logger = logging.getLogger("k3s.backup")

SNAPSHOT_TIMEOUT = 300


def _relative(path: str) -> str:
    return path.lstrip("/")


class BackupWorkflow:
    """Archives each control-plane node's datastore snapshot and identity.

    Nodes are handled independently: a failure on one is recorded and the
    remaining nodes are still archived.
    """

    def __init__(self, session: Session):
        self.session = session
        self.descriptor = session.descriptor
        self.gateway = session.gateway

    def create(self, include_storage: bool = False) -> WorkflowReport:
        report = WorkflowReport('backup')
        stamp = timestamp()
        target_dir = Path(self.session.backup_dir).expanduser() / self.descriptor.name
        logger.info(f"💾 Backing up {len(self.descriptor.control_plane)} control-plane nodes to {target_dir}")
        for node in self.descriptor.control_plane_nodes:
            self._backup_node(node, stamp, target_dir, include_storage, report)
        return report

    def _archive_members(self, node: NodeRef, snapshot: str, include_storage: bool) -> str:
        members = [
            f"{_relative(installer.K3S_SNAPSHOT_DIR)}/{snapshot}*",
            _relative(installer.K3S_TOKEN_PATH),
            _relative(installer.K3S_TLS_DIR),
            _relative(installer.K3S_CONFIG_DIR),
        ]
        storage = self.descriptor.storage
        if include_storage and storage.enabled and node.role.is_first_control_plane:
            members.append(_relative(storage.mount_path))
        return " ".join(members)

    def _backup_node(self, node: NodeRef, stamp: str, target_dir: Path, include_storage: bool,
                     report: WorkflowReport):
        address = node.address
        snapshot = f"{self.descriptor.name}-{node.name}-{stamp}"
        archive = f"{Config.REMOTE_WORK_DIR}/{snapshot}.tar.gz"
        local = target_dir / f"{snapshot}.tar.gz"

        logger.info(f"💾 Creating etcd snapshot {snapshot} on {node}")
        try:
            self.gateway.ensure_work_dir(address)
            self.gateway.execute(address, f"sudo k3s etcd-snapshot save --name {shlex.quote(snapshot)}",
                                 check=True, timeout=SNAPSHOT_TIMEOUT)
            bundle = f"cd / && tar -czf {shlex.quote(archive)} {self._archive_members(node, snapshot, include_storage)}"
            self.gateway.execute(address, f"sudo sh -c {shlex.quote(bundle)}", check=True, timeout=SNAPSHOT_TIMEOUT)
            self.gateway.execute(address, f"sudo chmod 644 {shlex.quote(archive)}", check=True)
            self.gateway.pull(address, archive, local)
        except (K3sctlError, OSError) as e:
            logger.error(f"❌ Backup failed on {node}: {e}")
            report.failed(address, 'backup', str(e))
            return
        finally:
            try:
                self.gateway.execute(address, f"sudo rm -f {shlex.quote(archive)}")
            except K3sctlError as e:
                logger.warning(f"⚠️ Could not remove {archive} on {node}: {e}")

        logger.info(f"✅ Backup of {node} saved to {local}")
        report.succeeded(address, 'backup', str(local))
        self._prune(node, report)

    def _prune(self, node: NodeRef, report: WorkflowReport):
        retention = self.descriptor.operations.snapshot_retention
        try:
            result = self.gateway.execute(node.address,
                                          f"sudo k3s etcd-snapshot prune --snapshot-retention {retention}")
        except K3sctlError as e:
            report.warning(node.address, 'prune-snapshots', str(e))
            return
        if not result.ok:
            report.warning(node.address, 'prune-snapshots', result.output)

    def restore(self, address: str, archive: Union[str, Path]) -> WorkflowReport:
        """Reset the datastore on one control-plane node from a local archive.

        Destructive; only runs after ``session.confirm`` agrees.
        """
        report = WorkflowReport('restore')
        archive = Path(archive).expanduser()
        try:
            node = self.descriptor.node(address)
        except ConfigError as e:
            return report.abort(str(e))
        if not node.role.is_server:
            return report.abort(f"{node} is not a control-plane node")
        if not archive.is_file():
            return report.abort(f"Backup archive not found: {archive}")

        if not self.session.confirm(f"Restoring {archive.name} on {node} resets the cluster datastore. Continue?"):
            return report.abort("Restore not confirmed", "Rerun with --yes to restore")

        remote = f"{Config.REMOTE_WORK_DIR}/{archive.name}"
        snapshot = ""
        try:
            self.gateway.ensure_work_dir(address)
            logger.info(f"📤 Uploading {archive} to {node}")
            self.gateway.push(address, archive, remote)

            logger.info(f"⏹️ Stopping k3s on {node}")
            self.gateway.execute(address, installer.service_command('stop', 'k3s'), check=True)
            self.gateway.execute(address, f"sudo tar -xzf {shlex.quote(remote)} -C /", check=True)
            listing = self.gateway.execute(
                address, f"tar -tzf {shlex.quote(remote)} | grep -E 'db/snapshots/[^/]+$' | head -n 1", check=True,
            )
            entry = listing.stdout.strip()
            if not entry:
                raise K3sctlError(f"{archive.name} contains no etcd snapshot")
            snapshot = "/" + entry.lstrip("/")

            logger.info(f"🔄 Restoring etcd from {snapshot}")
            self.gateway.execute(
                address,
                f"sudo k3s server --cluster-reset --cluster-reset-restore-path={shlex.quote(snapshot)}",
                check=True,
                timeout=SNAPSHOT_TIMEOUT,
            )
            logger.info(f"▶️ Starting k3s on {node}")
            self.gateway.execute(address, installer.service_command('start', 'k3s'), check=True)

            kubectl = self.session.kubectl([address])
            self.session.wait_until(
                lambda: health.node_ready(kubectl, address),
                timeout=Config.CONTROL_PLANE_READY_TIMEOUT,
                description=f"{node} to become Ready after restore",
            )
        except (K3sctlError, OSError) as e:
            logger.error(f"❌ Restore failed on {node}: {e}")
            report.failed(address, 'restore', str(e))
            try:
                self.gateway.execute(address, installer.service_command('start', 'k3s'))
            except K3sctlError as restart_error:
                logger.warning(f"⚠️ Could not restart k3s on {node}: {restart_error}")
            return report.abort(f"Restore failed on {node}",
                                f"Check `journalctl -u k3s` on {address}; the archive is at {remote}")

        report.succeeded(address, 'restore', snapshot)
        logger.info(f"✅ Restored {node} from {archive.name}")
        return report


def backup_cluster(session: Session, include_storage: bool = False) -> WorkflowReport:
    return BackupWorkflow(session).create(include_storage=include_storage)


def restore_cluster(session: Session, address: str, archive: Union[str, Path]) -> WorkflowReport:
    return BackupWorkflow(session).restore(address, archive)
