import json
import re
import shlex
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from k3sctl.errors import ConnectivityError, RemoteCommandError, TransferError
from k3sctl.modules.k3s import Session, always_confirm, descriptor_from_mapping
from k3sctl.modules.k3s.installer import K3S_KUBECONFIG_PATH, K3S_TOKEN_PATH, NGINX_CONFIG_PATH, nginx_config
from k3sctl.modules.ssh import CommandResult

PROXY = "10.0.0.10"
CONTROL_PLANE = ["10.0.0.11", "10.0.0.12", "10.0.0.13"]
WORKERS = ["10.0.0.21", "10.0.0.22"]
OLD_VERSION = "v1.28.9+k3s1"
NEW_VERSION = "v1.29.4+k3s1"
LIVE_TOKEN = "K10abc::server:livetoken"

K3S_KUBECONFIG = """\
apiVersion: v1
kind: Config
clusters:
- cluster:
    certificate-authority-data: Q0EK
    server: https://127.0.0.1:6443
  name: default
contexts:
- context:
    cluster: default
    user: default
  name: default
current-context: default
users:
- name: default
  user:
    client-certificate-data: Q0VSVAo=
    client-key-data: S0VZCg==
"""

OK = CommandResult(0, "", "")


def base_mapping(**overrides) -> dict:
    data = {
        "name": "lab",
        "network": {
            "proxy": PROXY,
            "control_plane": list(CONTROL_PLANE),
            "workers": list(WORKERS),
        },
        "kubernetes": {"version": OLD_VERSION, "token": "descriptor-token"},
        "storage": {"device": "/dev/sdb", "mount_path": "/srv/nfs"},
    }
    data.update(overrides)
    return data


class FakeFleet:
    """In-memory stand-in for the SSH gateway.

    Keeps just enough state (installed versions, registered nodes, services,
    files) to answer the commands the workflows send. ``fail_on`` scripts a
    result for any command on a host containing a fragment.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.files: Dict[Tuple[str, str], str] = {}
        self.pushed: List[Tuple[str, str]] = []
        self.pulled: List[Tuple[str, str, Path]] = []
        self.secrets = set()
        self.unreachable = set()
        self.versions: Dict[str, str] = {}
        self.nodes: Dict[str, dict] = {}
        self.services: Dict[str, bool] = {}
        self.failures: List[Tuple[Optional[str], str, CommandResult]] = []
        self.drops: List[Tuple[str, str]] = []
        self.failed_uploads = set()
        self.version_after_upgrade: Dict[str, str] = {}
        self.registers_on_install = True
        self.ready_on_install = True
        self.pvc_phase = "Bound"
        self.staged_nginx_ok = True
        self.live_nginx_ok = True
        self.pods: List[dict] = []
        self.cert_output: Dict[str, str] = {}
        self.closed = False

    # helpers for tests

    def fail_on(self, host: Optional[str], fragment: str, exit_status: int = 1, stderr: str = "boom"):
        self.failures.append((host, fragment, CommandResult(exit_status, "", stderr)))

    def drop_on(self, host: str, fragment: str):
        """The transport to ``host`` dies whenever a command contains ``fragment``."""
        self.drops.append((host, fragment))

    def commands(self, host: Optional[str] = None) -> List[str]:
        return [c for h, c in self.calls if host is None or h == host]

    def touched(self, host: str) -> bool:
        return any(h == host for h, _ in self.calls)

    def install(self, host: str, version: str, name: Optional[str] = None, ready: bool = True):
        self.versions[host] = version
        self.services[host] = True
        self.nodes[host] = {
            "name": name or f"node-{host.rsplit('.', 1)[-1]}",
            "ready": ready,
            "version": version,
            "unschedulable": False,
        }

    # gateway interface

    def add_secret(self, value: str):
        self.secrets.add(value)

    def _reachable(self, host: str):
        if host in self.unreachable:
            raise ConnectivityError(host, ["default (ubuntu@:22, key=agent): timed out"])

    def execute(self, host: str, command: str, timeout=None, check: bool = False) -> CommandResult:
        self.calls.append((host, command))
        self._reachable(host)
        if any(h == host and fragment in command for h, fragment in self.drops):
            raise ConnectivityError(host, [f"connection dropped twice while running {command}: EOF"])
        result = self._dispatch(host, command)
        if check and not result.ok:
            raise RemoteCommandError(host, command, result.exit_status, result.stdout, result.stderr)
        return result

    def _scripted(self, host: str, command: str) -> Optional[CommandResult]:
        for fail_host, fragment, result in self.failures:
            if (fail_host is None or fail_host == host) and fragment in command:
                return result
        return None

    def _dispatch(self, host: str, command: str) -> CommandResult:
        scripted = self._scripted(host, command)
        if scripted is not None:
            return scripted

        if "k3s kubectl" in command:
            return self._kubectl(host, command.split("k3s kubectl", 1)[1].strip())
        if "server.sh" in command or "agent.sh" in command:
            return self._install_script(host, command)
        if "k3s --version" in command:
            if host not in self.versions:
                return CommandResult(127, "", "k3s: command not found")
            return CommandResult(0, f"k3s version {self.versions[host]} (abcdef12)\ngo version go1.21\n", "")
        if "get.k3s.io" in command:
            version = re.search(r"INSTALL_K3S_VERSION=(\S+)", command).group(1).strip("'")
            version = self.version_after_upgrade.get(host, version)
            self.versions[host] = version
            if host in self.nodes:
                self.nodes[host]["version"] = version
            return OK
        if "systemctl is-active" in command:
            return CommandResult(0 if self.services.get(host) else 3,
                                 "active\n" if self.services.get(host) else "inactive\n", "")
        if "systemctl stop" in command:
            self.services[host] = False
            return OK
        if "systemctl start" in command:
            self.services[host] = True
            return OK
        if "nginx -t" in command:
            ok = self.staged_nginx_ok if " -c " in command else self.live_nginx_ok
            return OK if ok else CommandResult(1, "", "nginx: [emerg] invalid parameter")
        if command.startswith("sudo cp -p"):
            src, dst = [p.strip("'") for p in command.split()[-2:]]
            if (host, src) in self.files:
                self.files[(host, dst)] = self.files[(host, src)]
            return OK
        if "tar -tzf" in command:
            return CommandResult(0, "var/lib/rancher/k3s/server/db/snapshots/lab-control-plane-1-x-node-1\n", "")
        if "openssl x509" in command:
            return CommandResult(0, self.cert_output.get(host, ""), "")
        return OK

    def _install_script(self, host: str, command: str) -> CommandResult:
        if not self.registers_on_install:
            return OK
        args = shlex.split(command)
        script = next(i for i, a in enumerate(args) if a.endswith(".sh"))
        version = args[script + 3] if "server.sh" in command else args[script + 4]
        self.install(host, version or OLD_VERSION, ready=self.ready_on_install)
        if "server.sh" in command:
            self.files[(host, K3S_TOKEN_PATH)] = LIVE_TOKEN + "\n"
            self.files[(host, K3S_KUBECONFIG_PATH)] = K3S_KUBECONFIG
        return OK

    def _kubectl(self, host: str, args: str) -> CommandResult:
        if host not in self.versions:
            return CommandResult(1, "", "k3s: command not found")
        if args.startswith("get nodes -o json"):
            items = [self._node_json(address, info) for address, info in self.nodes.items()]
            return CommandResult(0, json.dumps({"items": items}), "")
        if args.startswith("get pods -A -o json"):
            return CommandResult(0, json.dumps({"items": self.pods}), "")
        if args.startswith("get pvc"):
            return CommandResult(0, self.pvc_phase, "")
        for verb, flag in (("cordon", True), ("uncordon", False)):
            if args.startswith(verb + " "):
                name = args.split()[1].strip("'")
                for info in self.nodes.values():
                    if info["name"] == name:
                        info["unschedulable"] = flag
                return OK
        if args.startswith("get "):
            return CommandResult(0, f"listing of {args[4:]}\n", "")
        return OK

    @staticmethod
    def _node_json(address: str, info: dict) -> dict:
        return {
            "metadata": {"name": info["name"], "labels": {}},
            "spec": {"unschedulable": info["unschedulable"]},
            "status": {
                "addresses": [{"type": "InternalIP", "address": address},
                              {"type": "Hostname", "address": info["name"]}],
                "conditions": [{"type": "Ready", "status": "True" if info["ready"] else "False"}],
                "nodeInfo": {"kubeletVersion": info["version"]},
            },
        }

    def ensure_work_dir(self, host: str) -> str:
        self.execute(host, "mkdir -p /tmp/k3sctl", check=True)
        return "/tmp/k3sctl"

    def push(self, host: str, local_path, remote_path: str):
        self.calls.append((host, f"push {remote_path}"))
        self._reachable(host)
        if host in self.failed_uploads:
            raise TransferError(host, str(local_path), f"{host}:{remote_path}", "Failure")
        self.pushed.append((host, remote_path))

    def pull(self, host: str, remote_path: str, local_path):
        self.calls.append((host, f"pull {remote_path}"))
        self._reachable(host)
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(b"archive")
        self.pulled.append((host, remote_path, local_path))

    def read_text(self, host: str, path: str) -> str:
        self.calls.append((host, f"sudo cat {path}"))
        self._reachable(host)
        if (host, path) not in self.files:
            raise RemoteCommandError(host, f"sudo cat {path}", 1, "", f"cat: {path}: No such file or directory")
        return self.files[(host, path)]

    def write_text(self, host: str, path: str, content: str, mode: str = "0644"):
        self.calls.append((host, f"write {path}"))
        self._reachable(host)
        self.files[(host, path)] = content

    def close(self):
        self.closed = True


@pytest.fixture
def descriptor():
    return descriptor_from_mapping(base_mapping())


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def running_fleet():
    """A healthy cluster at OLD_VERSION behind a configured proxy."""
    fleet = FakeFleet()
    for index, address in enumerate(CONTROL_PLANE, 1):
        fleet.install(address, OLD_VERSION, name=f"cp-{index}")
        fleet.files[(address, K3S_TOKEN_PATH)] = LIVE_TOKEN + "\n"
        fleet.files[(address, K3S_KUBECONFIG_PATH)] = K3S_KUBECONFIG
    for index, address in enumerate(WORKERS, 1):
        fleet.install(address, OLD_VERSION, name=f"worker-{index}")
    fleet.files[(PROXY, NGINX_CONFIG_PATH)] = nginx_config(CONTROL_PLANE)
    return fleet


def make_session(descriptor, gateway, tmp_path, confirm=always_confirm, **kwargs) -> Session:
    return Session(
        descriptor=descriptor,
        gateway=gateway,
        confirm=confirm,
        kubeconfig_path=tmp_path / "kube" / "config",
        backup_dir=tmp_path / "backups",
        poll_interval=1,
        sleep=lambda seconds: None,
        **kwargs,
    )


@pytest.fixture
def session_factory(tmp_path):
    def factory(descriptor, gateway, **kwargs):
        return make_session(descriptor, gateway, tmp_path, **kwargs)
    return factory
