"""
Data models for K3s fleet workflows.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Role(str, Enum):
    """Roles a fleet member can have."""
    PROXY = 'proxy'
    CONTROL_PLANE = 'control-plane'
    WORKER = 'worker'


@dataclass(frozen=True)
class NodeRole:
    """A role plus the node's 1-based position in its descriptor list.

    The proxy always has ordinal 1.
    """
    role: Role
    ordinal: int = 1

    @property
    def name(self) -> str:
        return f"{self.role.value}-{self.ordinal}"

    @property
    def is_server(self) -> bool:
        return self.role == Role.CONTROL_PLANE

    @property
    def is_first_control_plane(self) -> bool:
        return self.role == Role.CONTROL_PLANE and self.ordinal == 1

    @property
    def service(self) -> str:
        """systemd unit that runs K3s on this node."""
        return 'k3s' if self.is_server else 'k3s-agent'


@dataclass(frozen=True)
class NodeRef:
    """A fleet member: address plus derived role."""
    address: str
    role: NodeRole

    @property
    def name(self) -> str:
        return self.role.name

    def __str__(self) -> str:
        return f"{self.role.name} ({self.address})"


class OutcomeStatus(str, Enum):
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    WARNING = 'warning'


class Verdict(str, Enum):
    COMPLETE = 'complete'
    PARTIAL_FAILURE = 'partial-failure'
    ABORTED = 'aborted'


@dataclass
class OperationOutcome:
    """Result of one workflow step on one node."""
    node: str
    action: str
    status: OutcomeStatus
    detail: str = ''

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


@dataclass
class WorkflowReport:
    """Ordered outcomes of a top-level workflow plus its verdict."""
    workflow: str
    outcomes: List[OperationOutcome] = field(default_factory=list)
    aborted: bool = False
    reason: str = ''
    remediation: str = ''
    node_states: Dict[str, str] = field(default_factory=dict)

    def record(self, node: str, action: str, status: OutcomeStatus, detail: str = '') -> OperationOutcome:
        outcome = OperationOutcome(node=node, action=action, status=status, detail=detail)
        self.outcomes.append(outcome)
        return outcome

    def succeeded(self, node: str, action: str, detail: str = '') -> OperationOutcome:
        return self.record(node, action, OutcomeStatus.SUCCEEDED, detail)

    def failed(self, node: str, action: str, detail: str = '') -> OperationOutcome:
        return self.record(node, action, OutcomeStatus.FAILED, detail)

    def skipped(self, node: str, action: str, detail: str = '') -> OperationOutcome:
        return self.record(node, action, OutcomeStatus.SKIPPED, detail)

    def warning(self, node: str, action: str, detail: str = '') -> OperationOutcome:
        return self.record(node, action, OutcomeStatus.WARNING, detail)

    def abort(self, reason: str, remediation: str = '') -> 'WorkflowReport':
        """Mark the workflow as hard-stopped."""
        self.aborted = True
        self.reason = reason
        self.remediation = remediation or self.remediation
        return self

    @property
    def verdict(self) -> Verdict:
        if self.aborted:
            return Verdict.ABORTED
        if any(o.failed for o in self.outcomes):
            return Verdict.PARTIAL_FAILURE
        return Verdict.COMPLETE

    @property
    def exit_code(self) -> int:
        return 1 if self.verdict == Verdict.ABORTED else 0

    def for_node(self, node: str) -> List[OperationOutcome]:
        return [o for o in self.outcomes if o.node == node]

    def actions(self, node: Optional[str] = None) -> List[str]:
        return [o.action for o in self.outcomes if node is None or o.node == node]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workflow': self.workflow,
            'verdict': self.verdict.value,
            'reason': self.reason,
            'remediation': self.remediation,
            'outcomes': [
                {'node': o.node, 'action': o.action, 'status': o.status.value, 'detail': o.detail}
                for o in self.outcomes
            ],
            'node_states': dict(self.node_states),
        }


class NodeUpgradeState(str, Enum):
    """Per-node progress through a rolling upgrade."""
    PENDING = 'pending'
    CORDONED = 'cordoned'
    DRAINED = 'drained'
    UPGRADING = 'upgrading'
    VERIFYING = 'verifying'
    UNCORDONED = 'uncordoned'
    DONE = 'done'
    FAILED = 'failed'


@dataclass(frozen=True)
class UpgradeStep:
    """One unit of a rolling upgrade: a single control-plane node or a worker batch."""
    index: int
    role: Role
    nodes: Tuple[NodeRef, ...]

    @property
    def addresses(self) -> Tuple[str, ...]:
        return tuple(n.address for n in self.nodes)


@dataclass(frozen=True)
class UpgradePlan:
    """Ordered, immutable sequence of upgrade steps."""
    target_version: str
    batch_size: int
    steps: Tuple[UpgradeStep, ...]

    @property
    def control_plane_steps(self) -> Tuple[UpgradeStep, ...]:
        return tuple(s for s in self.steps if s.role == Role.CONTROL_PLANE)

    @property
    def worker_steps(self) -> Tuple[UpgradeStep, ...]:
        return tuple(s for s in self.steps if s.role == Role.WORKER)


@dataclass
class ClusterNode:
    """A node as reported by `kubectl get nodes`."""
    name: str
    addresses: List[str] = field(default_factory=list)
    ready: bool = False
    version: str = ''
    unschedulable: bool = False
    roles: List[str] = field(default_factory=list)


@dataclass
class PodSummary:
    namespace: str
    name: str
    phase: str
    node: str = ''
