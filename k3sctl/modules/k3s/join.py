"""Adding a node to a running cluster."""
import logging
from typing import Union

from ...config import Config
from ...errors import ConfigError, K3sctlError, VerificationTimeout
from . import health, installer
from .arguments import agent_args, join_url, server_args
from .loadbalancer import UpstreamTransaction
from .models import Role, WorkflowReport
from .session import Session

logger = logging.getLogger("k3s.join")


class NodeJoin:
    """Joins one control-plane or worker node using the cluster's live settings.

    The live token (and version, when the descriptor pins none) is read from
    the running control plane so a join never depends on the descriptor
    carrying the original generated token. Success is decided by the node
    appearing in the cluster's node listing, not by the install script's
    exit status.
    """

    def __init__(self, session: Session):
        self.session = session
        self.descriptor = session.descriptor
        self.gateway = session.gateway

    def join(self, address: str, role: Union[Role, str]) -> WorkflowReport:
        role = Role(role)
        report = WorkflowReport('join')
        if role == Role.PROXY:
            return report.abort("Only control-plane and worker nodes can be joined")

        existing = self.descriptor.role_of(address)
        if existing is not None and existing.role != role:
            return report.abort(f"{address} is already the cluster's {existing.role.value}",
                                "Pick a fresh address or remove the node from the descriptor first")

        try:
            token, source = installer.read_live_token(self.gateway, self.descriptor.control_plane)
            version = self.descriptor.version or installer.installed_version(self.gateway, source)
            if not version:
                raise K3sctlError(f"Could not determine the running K3s version on {source}")
        except K3sctlError as e:
            report.failed(address, 'read-cluster-settings', str(e))
            return report.abort("Cannot read the live cluster settings",
                                e.remediation or "Check that at least one control-plane node is reachable")
        report.succeeded(source, 'read-cluster-settings', f"version {version}")

        try:
            descriptor = self.descriptor.extended(
                control_plane=[address] if role == Role.CONTROL_PLANE else None,
                workers=[address] if role == Role.WORKER else None,
                token=token,
                version=version,
            )
        except ConfigError as e:
            report.failed(address, 'validate', str(e))
            return report.abort(str(e))

        session = self.session.with_descriptor(descriptor)
        node = descriptor.node(address)
        kubectl = session.kubectl(self.descriptor.control_plane)

        added = False
        if role == Role.CONTROL_PLANE:
            try:
                with UpstreamTransaction(self.gateway, descriptor.proxy) as lb:
                    added = lb.add_member(address)
            except K3sctlError as e:
                report.failed(descriptor.proxy, 'add-upstream-member', str(e))
                return report.abort(f"Could not add {address} to the proxy upstream set",
                                    e.remediation or f"Check {installer.NGINX_CONFIG_PATH} on {descriptor.proxy}")
            report.succeeded(descriptor.proxy, 'add-upstream-member',
                             "added" if added else "already a member")

        try:
            registered = health.node_registered(kubectl, address)
        except K3sctlError as e:
            logger.warning(f"⚠️ Could not list nodes before joining {node}: {e}")
            registered = False
        if registered:
            logger.info(f"✅ {node} is already registered, skipping installation")
            report.skipped(address, 'install', 'already registered')
            return report

        action = 'join-control-plane' if role == Role.CONTROL_PLANE else 'join-worker'
        logger.info(f"🔧 Joining {node} to cluster {descriptor.name}")
        try:
            if role == Role.CONTROL_PLANE:
                result = installer.install_server(self.gateway, descriptor, node, token, version,
                                                  server_args(descriptor, False))
            else:
                url = join_url(descriptor.proxy)
                result = installer.install_agent(self.gateway, node, url, token, version,
                                                 agent_args(descriptor, url))
        except K3sctlError as e:
            report.failed(address, action, str(e))
            if added:
                self._withdraw(descriptor.proxy, address, report)
            return report.abort(f"Could not run the installer on {node}", e.remediation or "")

        service = node.role.service
        try:
            session.wait_until(
                lambda: health.node_registered(kubectl, address),
                timeout=Config.NODE_JOIN_TIMEOUT,
                description=f"{node} to register",
            )
        except VerificationTimeout as e:
            if not result.ok:
                report.failed(address, action, result.output)
            report.failed(address, 'verify-registration', str(e))
            if added:
                self._withdraw(descriptor.proxy, address, report)
            return report.abort(f"{node} did not register with the cluster",
                                f"Check `journalctl -u {service}` on {address}")

        if result.ok:
            report.succeeded(address, action)
        else:
            report.failed(address, action, f"installer exited {result.exit_status} but the node registered: "
                                           f"{result.output}")
        report.succeeded(address, 'verify-registration')
        logger.info(f"✅ {node} joined cluster {descriptor.name}")
        return report

    def _withdraw(self, proxy: str, address: str, report: WorkflowReport):
        """Take a member added by this join back out of the upstream set."""
        try:
            with UpstreamTransaction(self.gateway, proxy) as lb:
                lb.remove_member(address)
        except K3sctlError as e:
            logger.warning(f"⚠️ {address} is still in the proxy upstream set: {e}")
            report.warning(proxy, 'remove-upstream-member', str(e))
            return
        report.succeeded(proxy, 'remove-upstream-member', f"{address} withdrawn after the failed join")


def join_node(session: Session, address: str, role: Union[Role, str]) -> WorkflowReport:
    return NodeJoin(session).join(address, role)
