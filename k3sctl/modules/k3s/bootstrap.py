"""Fleet bootstrap: proxy, control plane, workers, storage, then local access."""
import logging
from enum import Enum

from ...config import Config
from ...errors import K3sctlError, RemoteCommandError
from ...utils import timestamp
from . import health, installer
from .arguments import agent_args, join_url, server_args
from .kubeconfig import refresh_kubeconfig
from .loadbalancer import UpstreamTransaction
from .models import NodeRef, WorkflowReport
from .session import Session

logger = logging.getLogger("k3s.bootstrap")

LOCAL = "local"


class BootstrapState(str, Enum):
    UNCONFIGURED = 'unconfigured'
    PROXY_READY = 'proxy-ready'
    CONTROL_PLANE_READY = 'control-plane-ready'
    WORKERS_READY = 'workers-ready'
    STORAGE_VERIFIED = 'storage-verified'
    COMPLETE = 'complete'


def _check(result, node: NodeRef, script: str):
    if not result.ok:
        raise RemoteCommandError(node.address, script, result.exit_status, result.stdout, result.stderr)


class FleetBootstrap:
    """Brings a described fleet from bare hosts to a working cluster.

    Control-plane nodes are installed strictly in descriptor order, the first
    one initialising the cluster and each later one joining it only after its
    predecessor reports Ready. Workers are only touched once the whole control
    plane is up.
    """

    def __init__(self, session: Session):
        self.session = session
        self.descriptor = session.descriptor
        self.gateway = session.gateway
        self.first = self.descriptor.control_plane[0]
        self.kubectl = session.kubectl([self.first])
        self.state = BootstrapState.UNCONFIGURED

    def run(self) -> WorkflowReport:
        report = WorkflowReport('bootstrap')
        logger.info(f"🚀 Bootstrapping cluster {self.descriptor.name}: "
                    f"{len(self.descriptor.control_plane)} control-plane, {len(self.descriptor.workers)} workers")

        for step, reached in ((self._proxy, BootstrapState.PROXY_READY),
                              (self._control_plane, BootstrapState.CONTROL_PLANE_READY),
                              (self._workers, BootstrapState.WORKERS_READY),
                              (self._storage, BootstrapState.STORAGE_VERIFIED),
                              (self._finish, BootstrapState.COMPLETE)):
            if not step(report):
                logger.error(f"❌ Bootstrap stopped in state {self.state.value}: {report.reason}")
                return report
            self.state = reached
            logger.debug(f"Bootstrap state: {self.state.value}")

        logger.info(f"✅ Cluster {self.descriptor.name} bootstrapped ({report.verdict.value})")
        return report

    def _proxy(self, report: WorkflowReport) -> bool:
        proxy = self.descriptor.proxy
        members = list(self.descriptor.control_plane)
        try:
            _check(installer.install_proxy(self.gateway, self.descriptor), self.descriptor.node(proxy), 'proxy.sh')
            report.succeeded(proxy, 'install-proxy')
            with UpstreamTransaction(self.gateway, proxy, default=installer.nginx_config(members)) as lb:
                lb.set_members(members)
        except K3sctlError as e:
            report.failed(proxy, 'configure-proxy', str(e))
            report.abort(f"Proxy setup failed on {proxy}",
                         e.remediation or f"Check `journalctl -u nginx` on {proxy}")
            return False
        report.succeeded(proxy, 'configure-load-balancer', ", ".join(members))
        return True

    def _control_plane(self, report: WorkflowReport) -> bool:
        descriptor = self.descriptor
        for node in descriptor.control_plane_nodes:
            first = node.role.is_first_control_plane
            action = 'init-control-plane' if first else 'join-control-plane'
            logger.info(f"🔧 {'Initialising' if first else 'Joining'} control plane on {node}")
            try:
                result = installer.install_server(
                    self.gateway, descriptor, node, descriptor.token, descriptor.version,
                    server_args(descriptor, first),
                )
                _check(result, node, 'server.sh')
                self.session.wait_until(
                    lambda address=node.address: health.node_ready(self.kubectl, address),
                    timeout=Config.CONTROL_PLANE_READY_TIMEOUT,
                    description=f"{node} to become Ready",
                )
            except K3sctlError as e:
                report.failed(node.address, action, str(e))
                report.abort(f"Control-plane bootstrap failed on {node}",
                             f"Check `journalctl -u k3s` on {node.address}")
                return False
            report.succeeded(node.address, action)
        return True

    def _workers(self, report: WorkflowReport) -> bool:
        descriptor = self.descriptor
        url = join_url(descriptor.proxy)
        args = agent_args(descriptor, url)
        for node in descriptor.worker_nodes:
            logger.info(f"🔧 Joining worker {node}")
            try:
                result = installer.install_agent(self.gateway, node, url, descriptor.token, descriptor.version, args)
                _check(result, node, 'agent.sh')
                self.session.wait_until(
                    lambda address=node.address: health.node_registered(self.kubectl, address),
                    timeout=Config.NODE_JOIN_TIMEOUT,
                    description=f"{node} to register",
                )
            except K3sctlError as e:
                logger.error(f"❌ Worker {node} failed: {e}")
                report.failed(node.address, 'join-worker', str(e))
                continue
            report.succeeded(node.address, 'join-worker')
        return True

    def _storage(self, report: WorkflowReport) -> bool:
        storage = self.descriptor.storage
        if not storage.enabled:
            report.skipped(self.first, 'verify-storage', 'no storage mount path configured')
            return True

        claim = f"k3sctl-storage-check-{timestamp()}"
        logger.info(f"💾 Verifying shared storage class {storage.storage_class}")
        try:
            self.kubectl.apply(installer.provisioner_manifest(self.descriptor), 'nfs-provisioner.yaml')
            self.kubectl.apply(installer.storage_check_manifest(self.descriptor, claim), 'storage-check.yaml')
            self.session.wait_until(
                lambda: health.pvc_bound(self.kubectl, claim),
                timeout=self.descriptor.operations.storage_timeout,
                description=f"claim {claim} to bind",
            )
        except K3sctlError as e:
            report.failed(self.first, 'verify-storage', str(e))
            report.abort("Shared storage did not provision a volume",
                         f"Check the NFS export {storage.mount_path} on {self.first} "
                         f"and `kubectl -n {installer.PROVISIONER_NAMESPACE} get pods`")
            return False
        finally:
            try:
                self.kubectl.delete('pvc', claim)
            except K3sctlError as e:
                logger.warning(f"⚠️ Could not delete test claim {claim}: {e}")
        report.succeeded(self.first, 'verify-storage', f"claim bound via {storage.storage_class}")
        return True

    def _finish(self, report: WorkflowReport) -> bool:
        descriptor = self.descriptor
        try:
            path = refresh_kubeconfig(self.gateway, self.first, descriptor.api_endpoint, descriptor.name,
                                      self.session.kubeconfig_path)
            report.succeeded(LOCAL, 'merge-kubeconfig', str(path))
        except (K3sctlError, OSError) as e:
            report.failed(LOCAL, 'merge-kubeconfig', str(e))

        for resource, action in (("nodes -o wide", 'list-nodes'),
                                 ("pods -A", 'list-pods'),
                                 ("storageclass", 'list-storage-classes')):
            try:
                report.succeeded(self.first, action, self.kubectl.listing(resource))
            except K3sctlError as e:
                report.warning(self.first, action, str(e))
        return True


def bootstrap_cluster(session: Session) -> WorkflowReport:
    return FleetBootstrap(session).run()
