"""Cluster queries and node maintenance through `k3s kubectl` on a control-plane node."""
import json
import logging
import shlex
from typing import List, Optional, Sequence

from ...config import Config
from ...errors import ConnectivityError, K3sctlError, RemoteCommandError
from ..ssh import CommandResult
from .models import ClusterNode, PodSummary

logger = logging.getLogger("k3s.kubectl")

HEALTHY_POD_PHASES = ("Running", "Succeeded")

# kubectl output when the local API server is down (k3s stopped or restarting)
API_UNREACHABLE_MARKERS = (
    "The connection to the server",
    "Unable to connect to the server",
    "connection refused",
    "the server is currently unable to handle the request",
)


def api_unreachable(result: CommandResult) -> bool:
    if result.ok:
        return False
    output = f"{result.stdout}\n{result.stderr}"
    return any(marker in output for marker in API_UNREACHABLE_MARKERS)


class Kubectl:
    """Runs kubectl on the first reachable host of ``hosts``."""

    def __init__(self, gateway, hosts: Sequence[str]):
        if not hosts:
            raise K3sctlError("kubectl needs at least one control-plane host")
        self.gateway = gateway
        self.hosts = list(hosts)
        self._preferred: Optional[str] = None

    def run(self, args: str, check: bool = False, timeout: Optional[float] = None) -> CommandResult:
        """Run ``k3s kubectl <args>``, moving to the next host when one is unreachable.

        A host also counts as unreachable when it answers but its API server
        does not (see ``API_UNREACHABLE_MARKERS``).
        """
        order = self.hosts
        if self._preferred in self.hosts:
            order = [self._preferred] + [h for h in self.hosts if h != self._preferred]

        command = f"sudo k3s kubectl {args}"
        last_error: Optional[K3sctlError] = None
        for host in order:
            try:
                result = self.gateway.execute(host, command, timeout=timeout)
            except ConnectivityError as e:
                logger.debug(f"kubectl host {host} unreachable, trying next")
                last_error = e
                continue
            if api_unreachable(result):
                logger.debug(f"API server on {host} is not answering, trying next")
                last_error = RemoteCommandError(host, command, result.exit_status, result.stdout, result.stderr)
                continue
            self._preferred = host
            if check and not result.ok:
                raise RemoteCommandError(host, command, result.exit_status, result.stdout, result.stderr)
            return result
        raise last_error

    def _json(self, args: str) -> dict:
        result = self.run(f"{args} -o json", check=True)
        try:
            return json.loads(result.stdout or "{}")
        except ValueError as e:
            raise K3sctlError(f"Unparsable kubectl output for '{args}': {e}")

    def nodes(self) -> List[ClusterNode]:
        nodes = []
        for item in self._json("get nodes").get('items', []):
            metadata = item.get('metadata', {})
            status = item.get('status', {})
            ready = any(
                c.get('type') == 'Ready' and c.get('status') == 'True'
                for c in status.get('conditions', [])
            )
            labels = metadata.get('labels', {})
            nodes.append(ClusterNode(
                name=metadata.get('name', ''),
                addresses=[a.get('address') for a in status.get('addresses', []) if a.get('address')],
                ready=ready,
                version=status.get('nodeInfo', {}).get('kubeletVersion', ''),
                unschedulable=bool(item.get('spec', {}).get('unschedulable', False)),
                roles=sorted(k.split('/', 1)[1] for k in labels if k.startswith('node-role.kubernetes.io/')),
            ))
        return nodes

    def node_for_address(self, address: str) -> Optional[ClusterNode]:
        for node in self.nodes():
            if address in node.addresses:
                return node
        return None

    def node_name_for(self, address: str) -> Optional[str]:
        node = self.node_for_address(address)
        return node.name if node else None

    def unhealthy_pods(self) -> List[PodSummary]:
        pods = []
        for item in self._json("get pods -A").get('items', []):
            phase = item.get('status', {}).get('phase', 'Unknown')
            if phase in HEALTHY_POD_PHASES:
                continue
            metadata = item.get('metadata', {})
            pods.append(PodSummary(
                namespace=metadata.get('namespace', ''),
                name=metadata.get('name', ''),
                phase=phase,
                node=item.get('spec', {}).get('nodeName', ''),
            ))
        return pods

    def cordon(self, name: str) -> CommandResult:
        return self.run(f"cordon {shlex.quote(name)}")

    def uncordon(self, name: str) -> CommandResult:
        return self.run(f"uncordon {shlex.quote(name)}")

    def drain(self, name: str, timeout: int) -> CommandResult:
        return self.run(
            f"drain {shlex.quote(name)} --ignore-daemonsets --delete-emptydir-data --force "
            f"--timeout={timeout}s",
            timeout=timeout + Config.SSH_CONNECT_TIMEOUT * 3,
        )

    def apply(self, manifest: str, name: str) -> CommandResult:
        """Write ``manifest`` next to the work files on the kubectl host and apply it."""
        host = self._preferred or self.hosts[0]
        remote = f"{Config.REMOTE_WORK_DIR}/{name}"
        self.gateway.write_text(host, remote, manifest)
        return self.run(f"apply -f {shlex.quote(remote)}", check=True)

    def delete(self, kind: str, name: str, namespace: str = "default") -> CommandResult:
        return self.run(
            f"delete {kind} {shlex.quote(name)} -n {shlex.quote(namespace)} --ignore-not-found --wait=false"
        )

    def pvc_phase(self, name: str, namespace: str = "default") -> str:
        result = self.run(
            f"get pvc {shlex.quote(name)} -n {shlex.quote(namespace)} -o jsonpath='{{.status.phase}}'"
        )
        return result.stdout.strip() if result.ok else ""

    def listing(self, resource: str) -> str:
        """Human-readable listing, e.g. ``nodes -o wide``."""
        return self.run(f"get {resource}").output
