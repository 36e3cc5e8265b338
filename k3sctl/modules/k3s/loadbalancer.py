"""Structured editing of the proxy's upstream member set.

The Nginx configuration is parsed into a member list, mutated, rendered back
and validated with ``nginx -t`` on a staged copy before the live file is
replaced. The live configuration is never reloaded in a state that fails its
syntax check.
"""
import logging
import re
import shlex
from typing import List, Optional

from ...config import Config
from ...errors import LoadBalancerError, RemoteCommandError
from ...utils import timestamp
from .arguments import API_PORT
from .installer import NGINX_CONFIG_PATH

logger = logging.getLogger("k3s.loadbalancer")

UPSTREAM_NAME = "k3s_servers"

_UPSTREAM_BLOCK = re.compile(
    r"(?P<head>upstream\s+" + UPSTREAM_NAME + r"\s*\{)(?P<body>[^}]*)(?P<tail>\})",
    re.DOTALL,
)
_SERVER_LINE = re.compile(r"^\s*server\s+(?P<host>[^\s:;]+)(?::(?P<port>\d+))?[^;]*;", re.MULTILINE)


class LoadBalancerConfig:
    """An Nginx configuration whose ``k3s_servers`` upstream block is editable."""

    def __init__(self, text: str):
        match = _UPSTREAM_BLOCK.search(text)
        if not match:
            raise LoadBalancerError(f"No 'upstream {UPSTREAM_NAME}' block found in the proxy configuration")
        self.text = text
        self._match = match
        self._members: List[str] = [m.group('host') for m in _SERVER_LINE.finditer(match.group('body'))]
        self.original_members = list(self._members)

    @property
    def members(self) -> List[str]:
        return list(self._members)

    @property
    def changed(self) -> bool:
        return self._members != self.original_members

    def add_member(self, address: str) -> bool:
        """Append ``address``; returns False when it is already a member."""
        if address in self._members:
            return False
        self._members.append(address)
        return True

    def remove_member(self, address: str) -> bool:
        if address not in self._members:
            return False
        if len(self._members) == 1:
            raise LoadBalancerError(f"Refusing to remove {address}: it is the last upstream member")
        self._members.remove(address)
        return True

    def set_members(self, addresses: List[str]):
        if not addresses:
            raise LoadBalancerError("The upstream member set cannot be empty")
        self._members = list(dict.fromkeys(addresses))

    def render(self) -> str:
        """Configuration text with the upstream block rewritten; the rest is preserved."""
        body = self._match.group('body')
        indent_match = re.search(r"\n([ \t]*)server\s", body)
        indent = indent_match.group(1) if indent_match else "        "
        closing_indent = body[body.rfind("\n") + 1:] if "\n" in body else "    "
        lines = "".join(f"\n{indent}server {m}:{API_PORT};" for m in self._members)
        block = f"{self._match.group('head')}{lines}\n{closing_indent}{self._match.group('tail')}"
        return self.text[:self._match.start()] + block + self.text[self._match.end():]


class UpstreamTransaction:
    """Edit the live upstream set on the proxy as one all-or-nothing step.

    Usage::

        with UpstreamTransaction(gateway, proxy) as lb:
            lb.add_member("10.0.0.14")

    On exit with changes: a timestamped backup already exists, the candidate is
    written to a staged path and checked with ``nginx -t``, and only then
    replaces the live file, which is re-checked and reloaded. Any check failure
    restores the original content and raises ``LoadBalancerError`` without
    reloading.
    """

    def __init__(self, gateway, proxy: str, default: Optional[str] = None, path: str = NGINX_CONFIG_PATH):
        self.gateway = gateway
        self.proxy = proxy
        self.default = default
        self.path = path
        self.config: Optional[LoadBalancerConfig] = None
        self.original: Optional[str] = None
        self.backup_path: Optional[str] = None
        self.applied = False

    def __enter__(self) -> LoadBalancerConfig:
        try:
            self.original = self.gateway.read_text(self.proxy, self.path)
        except RemoteCommandError as e:
            if self.default is None:
                raise LoadBalancerError(f"Cannot read {self.path} on {self.proxy}: {e}")
            logger.info(f"No proxy configuration at {self.path} on {self.proxy}, starting from the default")
            self.original = ""

        try:
            self.config = LoadBalancerConfig(self.original)
        except LoadBalancerError:
            if self.default is None:
                raise
            # First install: the distribution's stock config has no upstream block yet
            self.config = LoadBalancerConfig(self.default)
            self.config.original_members = []

        if self.original:
            self.backup_path = f"{self.path}.bak-{timestamp()}"
            self.gateway.execute(
                self.proxy,
                f"sudo cp -p {shlex.quote(self.path)} {shlex.quote(self.backup_path)}",
                check=True,
            )
            logger.debug(f"Backed up {self.path} on {self.proxy} to {self.backup_path}")
        return self.config

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            return False
        if not self.config.changed and self.original:
            logger.info(f"Proxy upstream set unchanged: {', '.join(self.config.members)}")
            return False
        self.commit()
        return False

    def _nginx_test(self, config_path: Optional[str] = None) -> bool:
        command = "sudo nginx -t -q"
        if config_path:
            command += f" -c {shlex.quote(config_path)}"
        result = self.gateway.execute(self.proxy, command, timeout=Config.SSH_CONNECT_TIMEOUT * 3)
        if not result.ok:
            logger.error(f"nginx -t failed on {self.proxy}: {result.output}")
        return result.ok

    def _restore(self):
        if self.original:
            self.gateway.write_text(self.proxy, self.path, self.original)
            logger.warning(f"Restored previous proxy configuration on {self.proxy}")

    def commit(self):
        candidate = self.config.render()
        staged = f"{self.path}.k3sctl-staged"

        self.gateway.write_text(self.proxy, staged, candidate)
        try:
            if not self._nginx_test(staged):
                raise LoadBalancerError(
                    f"Candidate proxy configuration on {self.proxy} failed validation; live configuration untouched",
                    remediation=f"Run `sudo nginx -t` on {self.proxy} and check the upstream members",
                )

            self.gateway.write_text(self.proxy, self.path, candidate)
            if not self._nginx_test():
                self._restore()
                raise LoadBalancerError(
                    f"Proxy configuration on {self.proxy} failed validation after replacement; previous version restored",
                    remediation=f"Compare {self.path} with {self.backup_path} on {self.proxy}",
                )
        finally:
            self.gateway.execute(self.proxy, f"sudo rm -f {shlex.quote(staged)}")

        self.gateway.execute(self.proxy, "sudo systemctl reload-or-restart nginx", check=True)
        self.applied = True
        logger.info(f"✅ Proxy upstream set on {self.proxy}: {', '.join(self.config.members)}")
