"""
K3s Cluster Lifecycle Module

This package drives a described K3s fleet through its lifecycle:

- Bootstrap of the proxy, control plane, workers and shared storage
- Joining control-plane and worker nodes to a running cluster
- Rolling version upgrades with drain and health gates
- etcd snapshot backup and restore
- Certificate expiry checks and rotation
- Merging the cluster credential into the local kubeconfig
"""

from .config import ClusterDescriptor, descriptor_from_mapping, load_descriptor
from .models import (
    NodeRef,
    NodeRole,
    OperationOutcome,
    OutcomeStatus,
    Role,
    UpgradePlan,
    UpgradeStep,
    Verdict,
    WorkflowReport,
)
from .session import Session, always_confirm, never_confirm
from .bootstrap import FleetBootstrap, bootstrap_cluster
from .join import NodeJoin, join_node
from .upgrade import RollingUpgrade, build_plan, upgrade_cluster
from .backup import BackupWorkflow, backup_cluster, restore_cluster
from .certs import CertificateWorkflow, check_certificates, rotate_certificates

__all__ = [
    # Configuration
    'ClusterDescriptor',
    'descriptor_from_mapping',
    'load_descriptor',

    # Models
    'NodeRef',
    'NodeRole',
    'OperationOutcome',
    'OutcomeStatus',
    'Role',
    'UpgradePlan',
    'UpgradeStep',
    'Verdict',
    'WorkflowReport',

    # Session
    'Session',
    'always_confirm',
    'never_confirm',

    # Workflows
    'FleetBootstrap',
    'bootstrap_cluster',
    'NodeJoin',
    'join_node',
    'RollingUpgrade',
    'build_plan',
    'upgrade_cluster',
    'BackupWorkflow',
    'backup_cluster',
    'restore_cluster',
    'CertificateWorkflow',
    'check_certificates',
    'rotate_certificates',
]
