"""K3s server/agent argument synthesis.

Pure functions of the descriptor: the same descriptor always yields the same
argument list. The join token is passed to the install scripts separately and
never appears here.
"""
from typing import List

from .config import ClusterDescriptor

API_PORT = 6443


def join_url(address: str) -> str:
    """Supervisor/API URL a node joins through."""
    return f"https://{address}:{API_PORT}"


def _network_args(descriptor: ClusterDescriptor) -> List[str]:
    network = descriptor.network
    args = []
    if network.service_cidr:
        args.append(f"--service-cidr={network.service_cidr}")
    if network.pod_cidr:
        args.append(f"--cluster-cidr={network.pod_cidr}")
    if network.cluster_dns:
        args.append(f"--cluster-dns={network.cluster_dns}")
    if network.cluster_domain:
        args.append(f"--cluster-domain={network.cluster_domain}")
    if network.node_port_range:
        args.append(f"--service-node-port-range={network.node_port_range}")
    return args


def _kubelet_args(descriptor: ClusterDescriptor) -> List[str]:
    if descriptor.network.max_pods:
        return [f"--kubelet-arg=max-pods={descriptor.network.max_pods}"]
    return []


def _extra(args: List[str], extra) -> List[str]:
    for arg in extra:
        if arg not in args:
            args.append(arg)
    return args


def server_args(descriptor: ClusterDescriptor, is_first_control_plane: bool) -> List[str]:
    """Arguments for `k3s server` on a control-plane node.

    Args:
        descriptor: Cluster descriptor
        is_first_control_plane: True for the node that initialises the cluster

    Returns:
        Ordered argument list; only set networking fields produce flags
    """
    if is_first_control_plane:
        args = ["--cluster-init"]
    else:
        args = [f"--server={join_url(descriptor.control_plane[0])}"]

    args.extend(_network_args(descriptor))
    args.extend(f"--tls-san={san}" for san in sorted(set(descriptor.kubernetes.tls_san)))
    args.extend(f"--disable={component}" for component in sorted(set(descriptor.kubernetes.disable)))
    args.extend(_kubelet_args(descriptor))
    return _extra(args, descriptor.kubernetes.server_args)


def agent_args(descriptor: ClusterDescriptor, url: str) -> List[str]:
    """Arguments for `k3s agent`; ``url`` is where the agent registers."""
    args = [f"--server={url}"]
    args.extend(_kubelet_args(descriptor))
    return _extra(args, descriptor.kubernetes.agent_args)


def node_args(descriptor: ClusterDescriptor, address: str) -> List[str]:
    """Arguments for an existing member, derived from its role."""
    role = descriptor.role_of(address)
    if role is not None and role.is_server:
        return server_args(descriptor, role.is_first_control_plane)
    return agent_args(descriptor, join_url(descriptor.proxy))
