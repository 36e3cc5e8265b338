"""K3s cluster health checks and bounded readiness polling."""
import logging
import time
from typing import Callable, List, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ...config import Config
from ...errors import K3sctlError, VerificationTimeout
from .kubectl import Kubectl

logger = logging.getLogger("k3s.health")


def wait_until(predicate: Callable[[], bool], timeout: float, interval: float = Config.POLL_INTERVAL,
               description: str = "condition", sleep: Callable[[float], None] = time.sleep,
               remediation: Optional[str] = None) -> None:
    """Poll ``predicate`` every ``interval`` seconds until it holds.

    Errors raised by the predicate count as "not yet" and the last one is
    reported if the wait runs out.

    Raises:
        VerificationTimeout: The predicate never held within ``timeout``
    """
    attempts = int(timeout // interval) + 1 if interval > 0 else 1
    errors: List[str] = []

    def probe() -> bool:
        try:
            return bool(predicate())
        except K3sctlError as e:
            logger.debug(f"Waiting for {description}: {e}")
            errors.append(str(e))
            return False

    retrying = Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda ok: not ok),
        sleep=sleep,
    )
    logger.debug(f"Waiting up to {timeout:.0f}s for {description}")
    try:
        retrying(probe)
    except RetryError:
        raise VerificationTimeout(description, timeout, errors[-1] if errors else None, remediation)


def service_active(gateway, host: str, service: str) -> bool:
    result = gateway.execute(host, f"systemctl is-active {service}")
    return result.stdout.strip() == "active"


def node_registered(kubectl: Kubectl, address: str) -> bool:
    return kubectl.node_for_address(address) is not None


def node_ready(kubectl: Kubectl, address: str) -> bool:
    node = kubectl.node_for_address(address)
    return node is not None and node.ready


def not_ready_nodes(kubectl: Kubectl) -> List[str]:
    return [n.name for n in kubectl.nodes() if not n.ready]


def all_nodes_ready(kubectl: Kubectl) -> bool:
    nodes = kubectl.nodes()
    return bool(nodes) and all(n.ready for n in nodes)


def pvc_bound(kubectl: Kubectl, name: str, namespace: str = "default") -> bool:
    return kubectl.pvc_phase(name, namespace) == "Bound"
