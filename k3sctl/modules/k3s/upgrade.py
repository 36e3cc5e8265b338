"""Rolling K3s version upgrades."""
import logging
from typing import Dict, Optional

from ...config import Config
from ...errors import HealthGateFailure, K3sctlError, VerificationTimeout
from ...utils import batched
from . import health, installer
from .arguments import join_url, node_args
from .models import NodeRef, NodeUpgradeState, Role, UpgradePlan, UpgradeStep, WorkflowReport
from .session import Session

logger = logging.getLogger("k3s.upgrade")

CLUSTER = "cluster"


def build_plan(descriptor, target_version: str, batch_size: Optional[int] = None) -> UpgradePlan:
    """Every control-plane node as its own step, then workers in batches.

    Deterministic: the same descriptor and parameters give the same plan.
    """
    batch_size = batch_size or descriptor.operations.batch_size
    steps = []
    for node in descriptor.control_plane_nodes:
        steps.append(UpgradeStep(len(steps) + 1, Role.CONTROL_PLANE, (node,)))
    for batch in batched(descriptor.worker_nodes, batch_size):
        steps.append(UpgradeStep(len(steps) + 1, Role.WORKER, tuple(batch)))
    return UpgradePlan(target_version=target_version, batch_size=batch_size, steps=tuple(steps))


class RollingUpgrade:
    """Upgrades the fleet one step at a time.

    A control-plane failure or version mismatch stops the rollout before any
    further node is touched. A worker failure is recorded, the worker stays
    cordoned, and the rollout continues.
    """

    def __init__(self, session: Session, target_version: str, batch_size: Optional[int] = None,
                 drain_timeout: Optional[int] = None, inter_batch_delay: float = Config.INTER_BATCH_DELAY):
        self.session = session
        self.descriptor = session.descriptor
        self.gateway = session.gateway
        self.target = target_version
        self.plan = build_plan(self.descriptor, target_version, batch_size)
        self.drain_timeout = drain_timeout or self.descriptor.operations.drain_timeout
        self.inter_batch_delay = inter_batch_delay
        self.kubectl = session.kubectl()
        self.states: Dict[str, NodeUpgradeState] = {
            node.address: NodeUpgradeState.PENDING for node in self.descriptor.cluster_nodes
        }

    def run(self) -> WorkflowReport:
        report = WorkflowReport('upgrade')
        try:
            return self._run(report)
        finally:
            report.node_states = {address: state.value for address, state in self.states.items()}

    def _run(self, report: WorkflowReport) -> WorkflowReport:
        if self.session.dry_run:
            for step in self.plan.steps:
                for node in step.nodes:
                    report.skipped(node.address, f"step-{step.index}", f"dry run: would upgrade to {self.target}")
            return report

        logger.info(f"🔄 Starting K3s upgrade of {self.descriptor.name} to {self.target} "
                    f"({len(self.plan.steps)} steps)")
        try:
            token, _ = installer.read_live_token(self.gateway, self.descriptor.control_plane)
        except K3sctlError as e:
            report.failed(CLUSTER, 'preflight', str(e))
            self._skip_from(0, report)
            return report.abort("Pre-flight check failed: the live join token is unreadable", e.remediation or "")
        self.descriptor = self.descriptor.extended(token=token)

        for position, step in enumerate(self.plan.steps):
            if step.role == Role.CONTROL_PLANE:
                if not self._control_plane_step(step, report):
                    self._skip_from(position + 1, report)
                    return report
            else:
                self._worker_step(step, report)
                if position + 1 < len(self.plan.steps):
                    self.session.pause(self.inter_batch_delay)

        self._post_upgrade(report)
        logger.info(f"✅ Upgrade to {self.target} finished ({report.verdict.value})")
        return report

    def _skip_from(self, position: int, report: WorkflowReport):
        for step in self.plan.steps[position:]:
            for node in step.nodes:
                report.skipped(node.address, 'upgrade', 'not attempted: rollout stopped')

    def _upgrade_node(self, node: NodeRef, report: WorkflowReport, skip_if_current: bool = True) -> bool:
        """Stop, reinstall, start and verify one node; records its outcome."""
        address = node.address
        service = node.role.service
        try:
            if skip_if_current and installer.installed_version(self.gateway, address) == self.target:
                report.skipped(address, 'upgrade', f"already at {self.target}")
                self.states[address] = NodeUpgradeState.DONE
                return True

            self.states[address] = NodeUpgradeState.UPGRADING
            logger.info(f"⬆️ Upgrading {node} to {self.target}")
            self.gateway.execute(address, installer.service_command('stop', service), check=True)
            command = installer.reinstall_command(
                self.target,
                self.descriptor.token,
                node_args(self.descriptor, address),
                server=node.role.is_server,
                url=None if node.role.is_server else join_url(self.descriptor.proxy),
            )
            self.gateway.execute(address, command, check=True)
            self.gateway.execute(address, installer.service_command('start', service), check=True)

            self.states[address] = NodeUpgradeState.VERIFYING
            self.session.wait_until(
                lambda: health.service_active(self.gateway, address, service),
                timeout=Config.SERVICE_START_TIMEOUT,
                description=f"{service} on {node} to become active",
            )
            actual = installer.installed_version(self.gateway, address)
            if actual != self.target:
                raise K3sctlError(f"version mismatch on {node}: expected {self.target}, found {actual or 'unknown'}")
        except K3sctlError as e:
            logger.error(f"❌ Upgrade failed on {node}: {e}")
            self.states[address] = NodeUpgradeState.FAILED
            report.failed(address, 'upgrade', str(e))
            return False

        if node.role.is_server:
            self.states[address] = NodeUpgradeState.DONE
        report.succeeded(address, 'upgrade', f"now at {self.target}")
        return True

    def _control_plane_step(self, step: UpgradeStep, report: WorkflowReport) -> bool:
        node = step.nodes[0]
        logger.info(f"🔄 Step {step.index}/{len(self.plan.steps)}: control plane {node}")
        if not self._upgrade_node(node, report):
            report.abort(f"Control-plane upgrade failed on {node}; rollout stopped",
                         f"Check `journalctl -u k3s` on {node.address} and rerun the upgrade once it is healthy")
            return False

        try:
            self.session.wait_until(
                lambda: health.all_nodes_ready(self.kubectl),
                timeout=Config.HEALTH_GATE_TIMEOUT,
                description="all nodes to be Ready",
            )
        except VerificationTimeout:
            try:
                not_ready = ", ".join(health.not_ready_nodes(self.kubectl)) or "none listed"
            except K3sctlError as e:
                not_ready = f"node listing failed: {e}"
            gate = HealthGateFailure(f"Cluster not healthy after upgrading {node} (NotReady: {not_ready})")
            report.warning(node.address, 'health-gate', gate.reason)
            if not self.session.confirm(f"{gate.reason}. Continue the rollout?"):
                report.abort(f"Rollout stopped at the health gate after {node}", gate.remediation)
                return False
            logger.warning(f"⚠️ Continuing past unhealthy gate after {node}")
            return True

        report.succeeded(node.address, 'health-gate')
        return True

    def _worker_step(self, step: UpgradeStep, report: WorkflowReport):
        logger.info(f"🔄 Step {step.index}/{len(self.plan.steps)}: workers "
                    f"{', '.join(step.addresses)}")
        cordoned: Dict[str, str] = {}

        for node in step.nodes:
            address = node.address
            try:
                if installer.installed_version(self.gateway, address) == self.target:
                    report.skipped(address, 'upgrade', f"already at {self.target}")
                    self.states[address] = NodeUpgradeState.DONE
                    continue
                name = self.kubectl.node_name_for(address)
                if not name:
                    raise K3sctlError(f"{node} is not registered in the cluster")
                result = self.kubectl.cordon(name)
                if not result.ok:
                    raise K3sctlError(f"cordon failed: {result.output}")
            except K3sctlError as e:
                self.states[address] = NodeUpgradeState.FAILED
                report.failed(address, 'cordon', str(e))
                continue
            self.states[address] = NodeUpgradeState.CORDONED
            cordoned[address] = name

            try:
                drain = self.kubectl.drain(name, self.drain_timeout)
                detail = drain.output
            except K3sctlError as e:
                drain, detail = None, str(e)
            if drain is not None and drain.ok:
                report.succeeded(address, 'drain')
            else:
                report.warning(address, 'drain',
                               f"drain did not finish within {self.drain_timeout}s, upgrading anyway: {detail}")
            self.states[address] = NodeUpgradeState.DRAINED

        for node in step.nodes:
            address = node.address
            if address not in cordoned:
                continue
            if not self._upgrade_node(node, report, skip_if_current=False):
                logger.warning(f"⚠️ {node} left cordoned after failed upgrade")
                continue
            try:
                result = self.kubectl.uncordon(cordoned[address])
                detail = result.output
            except K3sctlError as e:
                result, detail = None, str(e)
            if result is None or not result.ok:
                # upgraded, but still unschedulable
                self.states[address] = NodeUpgradeState.CORDONED
                report.warning(address, 'uncordon', detail)
                continue
            self.states[address] = NodeUpgradeState.UNCORDONED
            report.succeeded(address, 'uncordon')
            self.states[address] = NodeUpgradeState.DONE

    def _post_upgrade(self, report: WorkflowReport):
        by_address = {n.address: n for n in self.descriptor.cluster_nodes}
        try:
            nodes = self.kubectl.nodes()
        except K3sctlError as e:
            report.warning(CLUSTER, 'verify-versions', str(e))
            return

        for cluster_node in nodes:
            ident = next((a for a in cluster_node.addresses if a in by_address), cluster_node.name)
            if cluster_node.version != self.target:
                report.failed(ident, 'verify-version',
                              f"kubelet reports {cluster_node.version or 'unknown'}, expected {self.target}")

        try:
            pods = self.kubectl.unhealthy_pods()
        except K3sctlError as e:
            report.warning(CLUSTER, 'pod-health', str(e))
            return
        if pods:
            summary = ", ".join(f"{p.namespace}/{p.name} ({p.phase})" for p in pods[:10])
            if len(pods) > 10:
                summary += f" and {len(pods) - 10} more"
            report.warning(CLUSTER, 'pod-health', summary)
        else:
            report.succeeded(CLUSTER, 'pod-health', "all pods Running or Succeeded")


def upgrade_cluster(session: Session, target_version: str, batch_size: Optional[int] = None,
                    drain_timeout: Optional[int] = None) -> WorkflowReport:
    return RollingUpgrade(session, target_version, batch_size=batch_size, drain_timeout=drain_timeout).run()
