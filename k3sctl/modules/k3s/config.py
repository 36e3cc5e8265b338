"""Cluster descriptor: the validated, immutable description of a K3s fleet.

Loading goes through two stages. A JSON schema checks the shape of the YAML
document, then the pydantic model checks the semantic invariants and derives
the defaults (join token, TLS SAN set, load-balancer subnet).
"""
import copy
import ipaddress
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml
from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ...errors import ConfigError
from ...utils import generate_token
from .models import NodeRef, NodeRole, Role

logger = logging.getLogger("k3s.config")

_ADDRESS_LIST = {"type": "array", "items": {"type": "string"}}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}

DESCRIPTOR_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "network": {
            "type": "object",
            "properties": {
                "proxy": {"type": "string"},
                "control_plane": _ADDRESS_LIST,
                "workers": _ADDRESS_LIST,
                "lb_subnet": {"type": ["string", "null"]},
                "service_cidr": {"type": ["string", "null"]},
                "pod_cidr": {"type": ["string", "null"]},
                "cluster_dns": {"type": ["string", "null"]},
                "cluster_domain": {"type": ["string", "null"]},
                "node_port_range": {"type": ["string", "null"]},
                "max_pods": {"type": ["integer", "null"]},
            },
            "required": ["proxy", "control_plane"],
        },
        "kubernetes": {
            "type": "object",
            "properties": {
                "version": {"type": ["string", "null"]},
                "token": {"type": ["string", "null"]},
                "tls_san": _STRING_LIST,
                "disable": _STRING_LIST,
                "server_args": _STRING_LIST,
                "agent_args": _STRING_LIST,
            },
        },
        "ssh": {
            "type": "object",
            "properties": {
                "user": {"type": "string"},
                "key_path": {"type": ["string", "null"]},
                "port": {"type": "integer"},
                "overrides": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "address": {"type": "string"},
                            "role": {"enum": [r.value for r in Role]},
                            "ordinal": {"type": "integer", "minimum": 1},
                            "user": {"type": "string"},
                            "key_path": {"type": "string"},
                            "port": {"type": "integer"},
                        },
                    },
                },
            },
        },
        "storage": {
            "type": "object",
            "properties": {
                "device": {"type": ["string", "null"]},
                "mount_path": {"type": ["string", "null"]},
                "storage_class": {"type": "string"},
            },
        },
        "operations": {
            "type": "object",
            "properties": {
                "drain_timeout": {"type": "integer", "minimum": 1},
                "storage_timeout": {"type": "integer", "minimum": 1},
                "batch_size": {"type": "integer", "minimum": 1},
                "snapshot_retention": {"type": "integer", "minimum": 1},
            },
        },
    },
    "required": ["network"],
}


def _unique(values: Iterable[str]) -> Tuple[str, ...]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


class NetworkSpec(BaseModel):
    """Fleet addresses and cluster networking parameters."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    proxy: str = Field(description="Address of the Nginx TCP proxy in front of the API servers")
    control_plane: Tuple[str, ...] = Field(description="Control-plane addresses; the first initialises the cluster")
    workers: Tuple[str, ...] = Field(default=(), description="Worker addresses")
    lb_subnet: Optional[str] = Field(default=None, description="Subnet allowed through the proxy (default: proxy /24)")
    service_cidr: Optional[str] = None
    pod_cidr: Optional[str] = None
    cluster_dns: Optional[str] = None
    cluster_domain: Optional[str] = None
    node_port_range: Optional[str] = None
    max_pods: Optional[int] = Field(default=None, ge=1)

    @field_validator('proxy')
    @classmethod
    def check_proxy(cls, v: str) -> str:
        return _check_address(v)

    @field_validator('control_plane', 'workers')
    @classmethod
    def check_addresses(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(_check_address(a) for a in v)

    @field_validator('control_plane')
    @classmethod
    def check_control_plane(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("at least one control-plane address is required")
        return v


def _check_address(value: str) -> str:
    # IPv4 only: the proxy subnet, join URLs and nginx upstream lines assume it
    try:
        return str(ipaddress.IPv4Address(value.strip()))
    except ValueError:
        raise ValueError(f"{value!r} is not an IPv4 address")


class KubernetesSpec(BaseModel):
    """K3s version, join token and server/agent tuning."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Optional[str] = Field(default=None, description="K3s release, e.g. v1.29.4+k3s1 (default: latest stable)")
    token: Optional[str] = Field(default=None, description="Shared join token (generated when absent)")
    tls_san: Tuple[str, ...] = Field(default=(), description="Extra API server certificate names")
    disable: Tuple[str, ...] = Field(default=(), description="Built-in components to disable")
    server_args: Tuple[str, ...] = ()
    agent_args: Tuple[str, ...] = ()


class SSHOverride(BaseModel):
    """Credential override for one address, one role or one role ordinal."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    address: Optional[str] = None
    role: Optional[Role] = None
    ordinal: Optional[int] = Field(default=None, ge=1)
    user: Optional[str] = None
    key_path: Optional[str] = None
    port: Optional[int] = None

    @model_validator(mode="after")
    def check_selector(self) -> "SSHOverride":
        if not self.address and not self.role:
            raise ValueError("an SSH override needs an address or a role")
        if self.ordinal is not None and not self.role:
            raise ValueError("an SSH override ordinal needs a role")
        return self

    @property
    def label(self) -> str:
        if self.address:
            return f"address {self.address}"
        if self.ordinal is not None:
            return f"{self.role.value}-{self.ordinal}"
        return f"role {self.role.value}"


class SSHSpec(BaseModel):
    """SSH connection configuration."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    user: str = Field(default="ubuntu", description="Default SSH username")
    key_path: Optional[str] = Field(default="~/.ssh/id_rsa", description="Path to SSH private key")
    port: int = Field(default=22, description="SSH port number")
    overrides: Tuple[SSHOverride, ...] = ()


class StorageSpec(BaseModel):
    """Shared storage exported from the first control-plane node over NFS."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    device: Optional[str] = Field(default=None, description="Block device to format and mount, e.g. /dev/sdb")
    mount_path: Optional[str] = Field(default=None, description="Exported directory")
    storage_class: str = "nfs-client"

    @property
    def enabled(self) -> bool:
        return bool(self.mount_path)


class OperationsSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    drain_timeout: int = Field(default=300, ge=1, description="Seconds allowed for draining a worker")
    storage_timeout: int = Field(default=120, ge=1, description="Seconds to wait for the test claim to bind")
    batch_size: int = Field(default=1, ge=1, description="Workers upgraded together")
    snapshot_retention: int = Field(default=5, ge=1, description="etcd snapshots kept per node")


class ClusterDescriptor(BaseModel):
    """Immutable description of the fleet.

    Build it with ``load_descriptor`` or ``descriptor_from_mapping``; derived
    variants come from ``extended``.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "k3s"
    network: NetworkSpec
    kubernetes: KubernetesSpec = Field(default_factory=KubernetesSpec)
    ssh: SSHSpec = Field(default_factory=SSHSpec)
    storage: StorageSpec = Field(default_factory=StorageSpec)
    operations: OperationsSpec = Field(default_factory=OperationsSpec)

    @model_validator(mode="before")
    @classmethod
    def derive_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = copy.deepcopy(data)
        network = data.get('network')
        if not isinstance(network, dict):
            return data
        kubernetes = data.setdefault('kubernetes', {}) or {}
        data['kubernetes'] = kubernetes

        if not kubernetes.get('token'):
            kubernetes['token'] = generate_token()

        proxy = str(network.get('proxy') or '').strip()
        control_plane = [str(a).strip() for a in network.get('control_plane') or []]
        explicit = [str(s).strip() for s in kubernetes.get('tls_san') or []]
        kubernetes['tls_san'] = list(_unique([proxy] + control_plane + explicit))

        if not network.get('lb_subnet') and proxy:
            try:
                network['lb_subnet'] = str(ipaddress.ip_network(f"{proxy}/24", strict=False))
            except ValueError:
                pass  # reported by the proxy address check
        return data

    @model_validator(mode="after")
    def check_roles(self) -> "ClusterDescriptor":
        seen: Dict[str, str] = {}
        for role, addresses in ((Role.PROXY, (self.network.proxy,)),
                                (Role.CONTROL_PLANE, self.network.control_plane),
                                (Role.WORKER, self.network.workers)):
            for address in addresses:
                if address in seen:
                    raise ValueError(f"address {address} appears more than once ({seen[address]} and {role.value})")
                seen[address] = role.value
        return self

    @property
    def proxy(self) -> str:
        return self.network.proxy

    @property
    def control_plane(self) -> Tuple[str, ...]:
        return self.network.control_plane

    @property
    def workers(self) -> Tuple[str, ...]:
        return self.network.workers

    @property
    def token(self) -> str:
        return self.kubernetes.token

    @property
    def version(self) -> Optional[str]:
        return self.kubernetes.version

    @property
    def api_endpoint(self) -> str:
        return f"https://{self.proxy}:6443"

    def role_of(self, address: str) -> Optional[NodeRole]:
        """Derive a node's role and 1-based ordinal from list membership."""
        if address == self.proxy:
            return NodeRole(Role.PROXY, 1)
        if address in self.control_plane:
            return NodeRole(Role.CONTROL_PLANE, self.control_plane.index(address) + 1)
        if address in self.workers:
            return NodeRole(Role.WORKER, self.workers.index(address) + 1)
        return None

    def node(self, address: str) -> NodeRef:
        role = self.role_of(address)
        if role is None:
            raise ConfigError(f"{address} is not part of cluster {self.name}")
        return NodeRef(address, role)

    @property
    def control_plane_nodes(self) -> List[NodeRef]:
        return [self.node(a) for a in self.control_plane]

    @property
    def worker_nodes(self) -> List[NodeRef]:
        return [self.node(a) for a in self.workers]

    @property
    def cluster_nodes(self) -> List[NodeRef]:
        """Every K3s node: control plane first, then workers."""
        return self.control_plane_nodes + self.worker_nodes

    def extended(self, control_plane: Optional[Iterable[str]] = None, workers: Optional[Iterable[str]] = None,
                 token: Optional[str] = None, version: Optional[str] = None) -> "ClusterDescriptor":
        """Return a new descriptor with extra nodes and/or live join settings."""
        data = self.model_dump(mode="json")
        if control_plane:
            data['network']['control_plane'] = list(_unique(list(self.control_plane) + list(control_plane)))
        if workers:
            data['network']['workers'] = list(_unique(list(self.workers) + list(workers)))
        if token:
            data['kubernetes']['token'] = token
        if version:
            data['kubernetes']['version'] = version
        return _validate(data)


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get('loc', ())) or "descriptor"
        lines.append(f"{location}: {item.get('msg')}")
    return "; ".join(lines)


def _validate(data: Dict[str, Any]) -> ClusterDescriptor:
    try:
        return ClusterDescriptor.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid cluster descriptor: {_format_validation_error(e)}")


def descriptor_from_mapping(data: Any) -> ClusterDescriptor:
    """Validate an already-parsed document and build the descriptor."""
    if not isinstance(data, dict):
        raise ConfigError("Cluster descriptor must be a mapping")
    try:
        validate(instance=data, schema=DESCRIPTOR_SCHEMA)
    except SchemaValidationError as ve:
        where = ".".join(str(p) for p in ve.absolute_path) or "document"
        raise ConfigError(f"YAML validation error at {where}: {ve.message}")
    return _validate(data)


def load_descriptor(source: Union[str, Path]) -> ClusterDescriptor:
    """Load and validate a cluster descriptor from a YAML file.

    Raises:
        ConfigError: The file is missing, unparsable or violates an invariant
    """
    path = Path(source).expanduser()
    if not path.is_file():
        raise ConfigError(f"Cluster descriptor not found: {path}",
                          remediation="Pass --config with the path of a cluster YAML file")
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}")

    descriptor = descriptor_from_mapping(data)
    logger.debug(f"Loaded cluster {descriptor.name} from {path}: "
                 f"{len(descriptor.control_plane)} control-plane, {len(descriptor.workers)} workers")
    return descriptor
