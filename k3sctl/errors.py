"""Exception hierarchy for k3sctl.

Node-level failures are normally captured into an OperationOutcome by the
workflows; these exceptions are what the lower layers raise and what the
workflows translate into outcomes or hard stops.
"""
from typing import List, Optional


class K3sctlError(Exception):
    """Base class for all k3sctl errors."""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.remediation = remediation


class ConfigError(K3sctlError):
    """The declarative source is missing, unparsable or invalid."""


class ConnectivityError(K3sctlError):
    """No credential candidate could reach the host."""

    def __init__(self, host: str, attempts: List[str]):
        self.host = host
        self.attempts = list(attempts)
        detail = "; ".join(self.attempts) if self.attempts else "no credentials configured"
        super().__init__(
            f"Unable to connect to {host}: {detail}",
            remediation=f"Check that {host} is reachable over SSH and that a configured key is authorized",
        )


class RemoteCommandError(K3sctlError):
    """A remote command exited non-zero."""

    def __init__(self, host: str, command: str, exit_status: int, stdout: str = "", stderr: str = ""):
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        output = (stderr or stdout or "").strip()
        message = f"Command failed on {host} with status {exit_status}: {command}"
        if output:
            message += f"\n{output}"
        super().__init__(message)


class HealthGateFailure(K3sctlError):
    """The cluster did not look healthy at a checkpoint."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason, remediation="Inspect `kubectl get nodes` before continuing the rollout")


class VerificationTimeout(K3sctlError):
    """A bounded wait for an observable condition ran out."""

    def __init__(self, what: str, timeout: float, last_error: Optional[str] = None, remediation: Optional[str] = None):
        self.what = what
        self.timeout = timeout
        self.last_error = last_error
        message = f"Timed out after {timeout:.0f}s waiting for {what}"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message, remediation=remediation)


class LoadBalancerError(K3sctlError):
    """The proxy configuration could not be updated safely."""


class TransferError(K3sctlError):
    """An SFTP upload or download did not complete."""

    def __init__(self, host: str, source: str, target: str, reason: str):
        self.host = host
        self.source = source
        self.target = target
        super().__init__(
            f"Transfer {source} -> {target} failed on {host}: {reason}",
            remediation=f"Check free space and permissions on {host} and that the SSH connection is stable",
        )
