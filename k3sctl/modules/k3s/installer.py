"""Remote payloads: install scripts, rendered configs and manifests.

Shell payloads ship as package data under ``templates/`` and are pushed to
the node before running. Configuration files and Kubernetes manifests are
rendered with Jinja2 using strict undefined handling.
"""
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from ...config import Config
from ...errors import ConfigError, ConnectivityError, K3sctlError, RemoteCommandError
from ..ssh import CommandResult
from .config import ClusterDescriptor
from .models import NodeRef

logger = logging.getLogger("k3s.installer")

K3S_INSTALL_URL = "https://get.k3s.io"
K3S_SERVER_DIR = "/var/lib/rancher/k3s/server"
K3S_TOKEN_PATH = f"{K3S_SERVER_DIR}/token"
K3S_TLS_DIR = f"{K3S_SERVER_DIR}/tls"
K3S_AGENT_DIR = "/var/lib/rancher/k3s/agent"
K3S_SNAPSHOT_DIR = f"{K3S_SERVER_DIR}/db/snapshots"
K3S_CONFIG_DIR = "/etc/rancher/k3s"
K3S_KUBECONFIG_PATH = f"{K3S_CONFIG_DIR}/k3s.yaml"
NGINX_CONFIG_PATH = "/etc/nginx/nginx.conf"

PROVISIONER_NAMESPACE = "nfs-provisioner"

_VERSION_PATTERN = re.compile(r"k3s version (\S+)")


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


def render_template(name: str, /, **context) -> str:
    """Render a packaged Jinja2 template.

    Raises:
        ConfigError: The template is missing, malformed or references an
            undefined variable
    """
    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    try:
        return env.get_template(name).render(**context)
    except TemplateNotFound as e:
        raise ConfigError(f"Template not found: {e}") from e
    except TemplateSyntaxError as e:
        raise ConfigError(f"Template syntax error in {name}: {e}") from e
    except UndefinedError as e:
        raise ConfigError(f"Missing required template variable in {name}: {e}") from e


def script_path(name: str) -> Path:
    return Path(get_template_path()) / name


def nginx_config(members: Iterable[str]) -> str:
    """Nginx configuration proxying the Kubernetes API to ``members``."""
    return render_template('nginx.conf.j2', members=list(members))


def provisioner_manifest(descriptor: ClusterDescriptor) -> str:
    """NFS subdir provisioner backed by the first control-plane node's export."""
    return render_template(
        'nfs-provisioner.yaml.j2',
        namespace=PROVISIONER_NAMESPACE,
        nfs_server=descriptor.control_plane[0],
        nfs_path=descriptor.storage.mount_path,
        storage_class=descriptor.storage.storage_class,
    )


def storage_check_manifest(descriptor: ClusterDescriptor, claim: str) -> str:
    """A throwaway PersistentVolumeClaim used to prove dynamic provisioning works."""
    return render_template(
        'storage-check.yaml.j2',
        name=claim,
        namespace="default",
        storage_class=descriptor.storage.storage_class,
    )


def run_script(gateway, host: str, script: str, args: List[str],
               timeout: Optional[float] = None) -> CommandResult:
    """Push a packaged script to ``host`` and run it with sudo."""
    work_dir = gateway.ensure_work_dir(host)
    remote = f"{work_dir}/{script}"
    gateway.push(host, script_path(script), remote)
    command = " ".join(["sudo", "bash", shlex.quote(remote)] + [shlex.quote(str(a)) for a in args])
    logger.info(f"▶️ Running {script} on {host}")
    return gateway.execute(host, command, timeout=timeout or Config.COMMAND_TIMEOUT)


def install_proxy(gateway, descriptor: ClusterDescriptor) -> CommandResult:
    return run_script(gateway, descriptor.proxy, 'proxy.sh', [descriptor.network.lb_subnet])


def install_server(gateway, descriptor: ClusterDescriptor, node: NodeRef, token: str,
                   version: Optional[str], args: List[str]) -> CommandResult:
    """Install K3s in server mode; ordinal 1 also exports shared storage."""
    gateway.add_secret(token)
    storage = descriptor.storage
    return run_script(gateway, node.address, 'server.sh', [
        node.role.ordinal,
        token,
        version or "",
        " ".join(args),
        storage.device or "",
        storage.mount_path or "",
        descriptor.network.lb_subnet,
    ])


def install_agent(gateway, node: NodeRef, url: str, token: str,
                  version: Optional[str], args: List[str]) -> CommandResult:
    gateway.add_secret(token)
    return run_script(gateway, node.address, 'agent.sh', [
        node.role.ordinal,
        url,
        token,
        version or "",
        " ".join(args),
    ])


def reinstall_command(version: str, token: str, args: List[str], server: bool = True,
                      url: Optional[str] = None) -> str:
    """Installer invocation that replaces the binary without starting the service."""
    env = [
        f"INSTALL_K3S_VERSION={shlex.quote(version)}",
        "INSTALL_K3S_SKIP_START=true",
        f"K3S_TOKEN={shlex.quote(token)}",
    ]
    if not server and url:
        env.append(f"K3S_URL={shlex.quote(url)}")
    mode = "server" if server else "agent"
    exec_line = " ".join([mode] + list(args))
    env.append(f"INSTALL_K3S_EXEC={shlex.quote(exec_line)}")
    return f"curl -sfL {K3S_INSTALL_URL} | sudo {' '.join(env)} sh -"


def service_command(action: str, service: str) -> str:
    return f"sudo systemctl {action} {service}"


def installed_version(gateway, host: str) -> Optional[str]:
    """Version reported by the K3s binary on ``host``, or None when unavailable."""
    result = gateway.execute(host, "k3s --version")
    if not result.ok:
        return None
    match = _VERSION_PATTERN.search(result.stdout)
    return match.group(1) if match else None


def read_live_token(gateway, hosts: Sequence[str]) -> Tuple[str, str]:
    """Read the cluster token from the first control-plane host that answers.

    Returns:
        (token, host) tuple

    Raises:
        K3sctlError: No host returned a token
    """
    errors = []
    for host in hosts:
        try:
            token = gateway.read_text(host, K3S_TOKEN_PATH).strip()
        except (ConnectivityError, RemoteCommandError) as e:
            logger.debug(f"Token not readable on {host}: {e}")
            errors.append(f"{host}: {e}")
            continue
        if token:
            gateway.add_secret(token)
            return token, host
        errors.append(f"{host}: empty token file")
    raise K3sctlError(
        "Could not read the cluster token from any control-plane node: " + "; ".join(errors),
        remediation=f"Check that k3s is installed and {K3S_TOKEN_PATH} exists on a control-plane node",
    )
