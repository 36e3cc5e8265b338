"""Certificate expiry checks and rotation."""
import logging
import shlex
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from ...config import Config
from ...errors import K3sctlError
from . import health, installer
from .kubeconfig import refresh_kubeconfig
from .models import NodeRef, WorkflowReport
from .session import Session

logger = logging.getLogger("k3s.certs")

OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"


def _expiry_command(directories: List[str]) -> str:
    globs = " ".join(f"{d}/*.crt" for d in directories)
    script = (
        f'for f in {globs}; do [ -f "$f" ] && '
        'echo "$f $(openssl x509 -enddate -noout -in "$f")"; done; true'
    )
    return f"sudo sh -c {shlex.quote(script)}"


def parse_expiry(output: str) -> List[Tuple[str, datetime]]:
    """Parse ``<path> notAfter=<date>`` lines into (path, UTC expiry) pairs."""
    expiries = []
    for line in output.splitlines():
        if "notAfter=" not in line:
            continue
        path, _, date = line.partition(" notAfter=")
        try:
            expires = datetime.strptime(date.strip(), OPENSSL_DATE_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug(f"Unparsable certificate date: {line}")
            continue
        expiries.append((path.strip(), expires))
    return expiries


class CertificateWorkflow:
    def __init__(self, session: Session, now: Optional[datetime] = None):
        self.session = session
        self.descriptor = session.descriptor
        self.gateway = session.gateway
        self.now = now or datetime.now(timezone.utc)

    def check(self, warn_days: int = 30) -> WorkflowReport:
        """Report expired (failed) and soon-to-expire (warning) certificates per node."""
        report = WorkflowReport('check-certificates')
        horizon = self.now + timedelta(days=warn_days)
        for node in self.descriptor.cluster_nodes:
            directories = [installer.K3S_TLS_DIR, installer.K3S_AGENT_DIR] if node.role.is_server \
                else [installer.K3S_AGENT_DIR]
            try:
                result = self.gateway.execute(node.address, _expiry_command(directories), check=True)
            except K3sctlError as e:
                report.failed(node.address, 'check-certificates', str(e))
                continue

            expiries = parse_expiry(result.stdout)
            if not expiries:
                report.warning(node.address, 'check-certificates', "no K3s certificates found")
                continue

            problems = False
            for path, expires in expiries:
                if expires <= self.now:
                    report.failed(node.address, 'certificate-expired', f"{path} expired {expires:%Y-%m-%d}")
                    problems = True
                elif expires <= horizon:
                    days = (expires - self.now).days
                    report.warning(node.address, 'certificate-expiring', f"{path} expires in {days} days")
                    problems = True
            if not problems:
                earliest = min(e for _, e in expiries)
                report.succeeded(node.address, 'check-certificates',
                                 f"{len(expiries)} certificates valid, earliest expiry {earliest:%Y-%m-%d}")
        return report

    def _rotate_node(self, node: NodeRef, report: WorkflowReport) -> bool:
        address = node.address
        service = node.role.service
        try:
            self.gateway.execute(address, installer.service_command('stop', service), check=True)
            if node.role.is_server:
                self.gateway.execute(address, "sudo k3s certificate rotate", check=True)
            self.gateway.execute(address, installer.service_command('start', service), check=True)
            self.session.wait_until(
                lambda: health.service_active(self.gateway, address, service),
                timeout=Config.SERVICE_START_TIMEOUT,
                description=f"{service} on {node} to become active",
            )
        except K3sctlError as e:
            logger.error(f"❌ Certificate rotation failed on {node}: {e}")
            report.failed(address, 'rotate-certificates', str(e))
            return False
        report.succeeded(address, 'rotate-certificates')
        return True

    def rotate(self) -> WorkflowReport:
        """Rotate certificates node by node, control plane first."""
        report = WorkflowReport('rotate-certificates')
        if not self.session.confirm("Rotating certificates restarts K3s on every node. Continue?"):
            return report.abort("Certificate rotation not confirmed", "Rerun with --yes to rotate")

        control_plane = self.descriptor.control_plane_nodes
        for position, node in enumerate(control_plane):
            logger.info(f"🔐 Rotating certificates on {node}")
            if not self._rotate_node(node, report):
                for remaining in control_plane[position + 1:] + self.descriptor.worker_nodes:
                    report.skipped(remaining.address, 'rotate-certificates', 'not attempted: rotation stopped')
                return report.abort(f"Certificate rotation failed on {node}",
                                    f"Check `journalctl -u k3s` on {node.address}")

        for node in self.descriptor.worker_nodes:
            logger.info(f"🔐 Restarting agent on {node} to renew its certificates")
            self._rotate_node(node, report)

        try:
            path = refresh_kubeconfig(self.gateway, self.descriptor.control_plane[0], self.descriptor.api_endpoint,
                                      self.descriptor.name, self.session.kubeconfig_path)
            report.succeeded('local', 'merge-kubeconfig', str(path))
        except (K3sctlError, OSError) as e:
            report.failed('local', 'merge-kubeconfig', str(e))
        return report


def check_certificates(session: Session, warn_days: int = 30) -> WorkflowReport:
    return CertificateWorkflow(session).check(warn_days)


def rotate_certificates(session: Session) -> WorkflowReport:
    return CertificateWorkflow(session).rotate()
