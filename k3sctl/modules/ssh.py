"""
SSH connection management and the remote execution gateway.
"""
import io
import logging
import os
import shlex
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional, Set, Tuple, TYPE_CHECKING

import paramiko

from ..config import Config
from ..errors import ConnectivityError, RemoteCommandError, TransferError
from ..utils import redact_command

if TYPE_CHECKING:
    from .k3s.config import ClusterDescriptor

logger = logging.getLogger("ssh")

# Exit status reported when a command exceeds its timeout (matches coreutils `timeout`)
TIMEOUT_EXIT_STATUS = 124

_READ_CHUNK = 32768

CONNECTION_ERRORS = (
    paramiko.AuthenticationException,
    paramiko.ssh_exception.NoValidConnectionsError,
    paramiko.SSHException,
    socket.timeout,
    EOFError,
    OSError,
)


class CommandResult(NamedTuple):
    """Outcome of a remote command: exit status and captured output, verbatim."""
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def output(self) -> str:
        """stdout, falling back to stderr when stdout is empty."""
        return (self.stdout or self.stderr).strip()


@dataclass(frozen=True)
class Credential:
    """One way of logging into a host."""
    username: str
    key_path: Optional[str] = None
    port: int = 22
    label: str = "default"

    def describe(self) -> str:
        key = self.key_path or "agent"
        return f"{self.label} ({self.username}@:{self.port}, key={key})"


class CredentialTable:
    """Explicit credential candidates per host.

    Candidates are tried most specific first: address override, role+ordinal
    override, role override, then the default credential.
    """

    def __init__(self, default: Credential, overrides: Optional[List[Tuple[dict, Credential]]] = None,
                 role_lookup: Optional[Callable[[str], object]] = None):
        self.default = default
        self.overrides = list(overrides or [])
        self._role_lookup = role_lookup

    @classmethod
    def from_descriptor(cls, descriptor: "ClusterDescriptor") -> "CredentialTable":
        ssh = descriptor.ssh
        default = Credential(username=ssh.user, key_path=ssh.key_path, port=ssh.port)
        overrides = []
        for override in ssh.overrides:
            match = {
                'address': override.address,
                'role': override.role.value if override.role else None,
                'ordinal': override.ordinal,
            }
            overrides.append((match, Credential(
                username=override.user or ssh.user,
                key_path=override.key_path or ssh.key_path,
                port=override.port or ssh.port,
                label=override.label,
            )))
        return cls(default, overrides, role_lookup=descriptor.role_of)

    def candidates(self, host: str) -> List[Credential]:
        node_role = self._role_lookup(host) if self._role_lookup else None
        role = node_role.role.value if node_role is not None else None
        ordinal = node_role.ordinal if node_role is not None else None

        by_address, by_ordinal, by_role = [], [], []
        for match, credential in self.overrides:
            if match.get('address'):
                if match['address'] == host:
                    by_address.append(credential)
            elif match.get('role') and match['role'] == role:
                if match.get('ordinal') is None:
                    by_role.append(credential)
                elif match['ordinal'] == ordinal:
                    by_ordinal.append(credential)

        ordered: List[Credential] = []
        for credential in by_address + by_ordinal + by_role + [self.default]:
            if credential not in ordered:
                ordered.append(credential)
        return ordered


class SSHConnection:
    """A paramiko SSH session to a single host."""

    def __init__(self, host: str, credential: Credential, timeout: int = Config.SSH_CONNECT_TIMEOUT):
        self.host = host
        self.credential = credential
        self.timeout = timeout
        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        self._connect()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _connect(self):
        key_path = os.path.expanduser(self.credential.key_path) if self.credential.key_path else None
        logger.debug(f"Connecting to {self.credential.username}@{self.host}:{self.credential.port} ({self.credential.label})")
        self.client.connect(
            hostname=self.host,
            port=self.credential.port,
            username=self.credential.username,
            key_filename=key_path,
            timeout=self.timeout,
            banner_timeout=self.timeout,
            auth_timeout=self.timeout,
            allow_agent=key_path is None,
            look_for_keys=False,
        )

    @property
    def is_active(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a command to completion and return its status and output.

        Raises paramiko/socket errors when the transport itself fails.
        """
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException(f"Transport to {self.host} is not active")

        channel = transport.open_session()
        channel.exec_command(command)
        stdout, stderr = bytearray(), bytearray()
        deadline = time.monotonic() + timeout if timeout else None

        try:
            while True:
                while channel.recv_ready():
                    stdout += channel.recv(_READ_CHUNK)
                while channel.recv_stderr_ready():
                    stderr += channel.recv_stderr(_READ_CHUNK)
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if deadline is not None and time.monotonic() > deadline:
                    message = f"\nCommand timed out after {timeout} seconds"
                    return CommandResult(TIMEOUT_EXIT_STATUS, _decode(stdout), _decode(stderr) + message)
                time.sleep(0.05)
            return CommandResult(channel.recv_exit_status(), _decode(stdout), _decode(stderr))
        finally:
            channel.close()

    def put(self, local_path: str, remote_path: str):
        with self.client.open_sftp() as sftp:
            sftp.put(str(local_path), remote_path)

    def put_bytes(self, data: bytes, remote_path: str):
        with self.client.open_sftp() as sftp:
            sftp.putfo(io.BytesIO(data), remote_path)

    def get(self, remote_path: str, local_path: str):
        with self.client.open_sftp() as sftp:
            sftp.get(remote_path, str(local_path))

    def close(self):
        self.client.close()


def _decode(data: bytes) -> str:
    return data.decode('utf-8', errors='replace')


class ConnectionPool:
    """Caches, per host, the credential that worked and its open connection."""

    def __init__(self):
        self.connections: Dict[str, Tuple[Credential, SSHConnection]] = {}
        self.lock = threading.RLock()

    def get(self, host: str) -> Optional[Tuple[Credential, SSHConnection]]:
        with self.lock:
            return self.connections.get(host)

    def put(self, host: str, credential: Credential, connection: SSHConnection):
        with self.lock:
            self.connections[host] = (credential, connection)

    def evict(self, host: str):
        with self.lock:
            entry = self.connections.pop(host, None)
        if entry:
            _, connection = entry
            try:
                connection.close()
            except CONNECTION_ERRORS as e:
                logger.debug(f"Error closing connection to {host}: {e}")

    def close_all(self):
        """Close all connections in the pool."""
        with self.lock:
            hosts = list(self.connections)
        for host in hosts:
            self.evict(host)


class RemoteGateway:
    """Executes commands and moves files on fleet hosts over SSH.

    Every workflow talks to hosts only through this class (or an object with
    the same methods in tests).
    """

    def __init__(self, credentials: CredentialTable, pool: Optional[ConnectionPool] = None,
                 connect_timeout: int = Config.SSH_CONNECT_TIMEOUT,
                 command_timeout: int = Config.COMMAND_TIMEOUT,
                 connection_factory: Callable[..., SSHConnection] = SSHConnection):
        self.credentials = credentials
        self.pool = pool or ConnectionPool()
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.connection_factory = connection_factory
        self._secrets: Set[str] = set()

    def add_secret(self, value: str):
        """Register a value that must never appear in logged commands."""
        if value:
            self._secrets.add(value)

    def _redact(self, command: str) -> str:
        return redact_command(command, *self._secrets)

    def _connection(self, host: str) -> SSHConnection:
        cached = self.pool.get(host)
        if cached:
            credential, connection = cached
            if connection.is_active:
                return connection
            logger.debug(f"Cached connection to {host} ({credential.label}) is gone, reconnecting")
            self.pool.evict(host)

        cached_credential = cached[0] if cached else None
        candidates = self.credentials.candidates(host)
        if cached_credential in candidates:
            candidates.remove(cached_credential)
            candidates.insert(0, cached_credential)

        attempts = []
        for credential in candidates:
            connection = None
            try:
                connection = self.connection_factory(host, credential, timeout=self.connect_timeout)
                probe = connection.execute("true", timeout=self.connect_timeout)
                if not probe.ok:
                    raise paramiko.SSHException(f"probe exited with status {probe.exit_status}")
            except CONNECTION_ERRORS as e:
                logger.debug(f"Credential {credential.label} failed for {host}: {e}")
                attempts.append(f"{credential.describe()}: {e}")
                if connection is not None:
                    connection.close()
                continue
            logger.debug(f"Connected to {host} using {credential.label}")
            self.pool.put(host, credential, connection)
            return connection

        raise ConnectivityError(host, attempts)

    def execute(self, host: str, command: str, timeout: Optional[float] = None, check: bool = False) -> CommandResult:
        """Run ``command`` on ``host``.

        Args:
            host: Target address
            command: Shell command line
            timeout: Seconds before the command is abandoned (exit status 124)
            check: Raise RemoteCommandError on a non-zero exit

        Raises:
            ConnectivityError: No credential could reach the host, or the
                transport dropped again after one reconnect
        """
        timeout = timeout or self.command_timeout
        logger.debug(f"[{host}] $ {self._redact(command)}")
        try:
            result = self._connection(host).execute(command, timeout=timeout)
        except CONNECTION_ERRORS as e:
            # Transport dropped mid-command; resolve a fresh connection once
            logger.warning(f"Connection to {host} dropped ({e}), reconnecting")
            self.pool.evict(host)
            try:
                result = self._connection(host).execute(command, timeout=timeout)
            except CONNECTION_ERRORS as again:
                self.pool.evict(host)
                raise ConnectivityError(host, [
                    f"connection dropped twice while running {self._redact(command)}: {again}"]) from again

        if result.exit_status != 0:
            logger.debug(f"[{host}] exit {result.exit_status}: {result.output}")
        if check and not result.ok:
            raise RemoteCommandError(host, self._redact(command), result.exit_status, result.stdout, result.stderr)
        return result

    def ensure_work_dir(self, host: str) -> str:
        self.execute(host, f"mkdir -p {shlex.quote(Config.REMOTE_WORK_DIR)}", check=True)
        return Config.REMOTE_WORK_DIR

    def _transfer(self, host: str, source: str, target: str, operation: Callable[[SSHConnection], None]):
        try:
            operation(self._connection(host))
        except CONNECTION_ERRORS as e:
            self.pool.evict(host)
            raise TransferError(host, source, target, str(e) or type(e).__name__) from e

    def push(self, host: str, local_path, remote_path: str):
        """Upload a local file to ``remote_path`` (owned by the SSH user)."""
        logger.debug(f"Uploading {local_path} to {host}:{remote_path}")
        self._transfer(host, str(local_path), f"{host}:{remote_path}",
                       lambda connection: connection.put(str(local_path), remote_path))

    def pull(self, host: str, remote_path: str, local_path):
        """Download ``remote_path`` into ``local_path``, creating parent directories."""
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Downloading {host}:{remote_path} to {local_path}")
        self._transfer(host, f"{host}:{remote_path}", str(local_path),
                       lambda connection: connection.get(remote_path, str(local_path)))

    def read_text(self, host: str, path: str) -> str:
        """Read a root-owned remote file."""
        return self.execute(host, f"sudo cat {shlex.quote(path)}", check=True).stdout

    def write_text(self, host: str, path: str, content: str, mode: str = "0644"):
        """Atomically replace a root-owned remote file with ``content``."""
        work_dir = self.ensure_work_dir(host)
        upload = f"{work_dir}/{os.path.basename(path)}.upload"
        data = content.encode('utf-8')
        self._transfer(host, path, f"{host}:{upload}", lambda connection: connection.put_bytes(data, upload))

        staged = shlex.quote(f"{path}.k3sctl-tmp")
        target = shlex.quote(path)
        self.execute(
            host,
            f"sudo mkdir -p {shlex.quote(os.path.dirname(path) or '/')} && "
            f"sudo cp {shlex.quote(upload)} {staged} && sudo chmod {mode} {staged} && "
            f"sudo mv -f {staged} {target} && rm -f {shlex.quote(upload)}",
            check=True,
        )

    def close(self):
        self.pool.close_all()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
