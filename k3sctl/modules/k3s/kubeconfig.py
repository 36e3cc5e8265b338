"""Retrieval and local merging of the cluster-access credential."""
import logging
from pathlib import Path
from typing import Any, Dict, Set, Union

import yaml

from ...errors import K3sctlError
from ...utils import read_yaml_file, write_yaml_file
from .installer import K3S_KUBECONFIG_PATH

logger = logging.getLogger("k3s.kubeconfig")

_LOOPBACK_SERVERS = ("https://127.0.0.1:6443", "https://localhost:6443", "https://[::1]:6443")


def fetch_kubeconfig(gateway, host: str) -> str:
    """Read the admin kubeconfig K3s writes on a server node."""
    return gateway.read_text(host, K3S_KUBECONFIG_PATH)


def rewrite_kubeconfig(text: str, server: str, name: str) -> Dict[str, Any]:
    """Point the credential at ``server`` and rename its entries to ``name``.

    K3s names the cluster, user and context ``default`` and uses the loopback
    API address.
    """
    try:
        config = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise K3sctlError(f"Retrieved kubeconfig is not valid YAML: {e}")
    if not isinstance(config, dict) or not config.get('clusters'):
        raise K3sctlError("Retrieved kubeconfig has no clusters")

    renames = {}
    for entry in config.get('clusters', []):
        cluster = entry.setdefault('cluster', {})
        if cluster.get('server', '') in _LOOPBACK_SERVERS or not cluster.get('server'):
            cluster['server'] = server
        renames[entry['name']] = name
        entry['name'] = name
    for entry in config.get('users', []):
        entry['name'] = name
    for entry in config.get('contexts', []):
        context = entry.setdefault('context', {})
        context['cluster'] = renames.get(context.get('cluster'), name)
        context['user'] = name
        entry['name'] = name
    config['current-context'] = name
    return config


def merge_kubeconfig(new: Dict[str, Any], existing: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``new`` into ``existing`` and return the result.

    Entries for the same server endpoint or the same name are replaced, along
    with the contexts and users tied to them. Merging the same credential
    twice yields the same document.
    """
    merged = {
        'apiVersion': existing.get('apiVersion', 'v1'),
        'kind': existing.get('kind', 'Config'),
        'preferences': existing.get('preferences', {}),
        'clusters': list(existing.get('clusters') or []),
        'contexts': list(existing.get('contexts') or []),
        'users': list(existing.get('users') or []),
        'current-context': existing.get('current-context', ''),
    }

    new_servers: Set[str] = {c.get('cluster', {}).get('server') for c in new.get('clusters', [])}
    new_clusters: Set[str] = {c['name'] for c in new.get('clusters', [])}
    new_contexts: Set[str] = {c['name'] for c in new.get('contexts', [])}
    new_users: Set[str] = {u['name'] for u in new.get('users', [])}

    stale_clusters = {
        c['name'] for c in merged['clusters']
        if c['name'] in new_clusters or c.get('cluster', {}).get('server') in new_servers
    }
    stale_contexts = [
        c for c in merged['contexts']
        if c['name'] in new_contexts or c.get('context', {}).get('cluster') in stale_clusters
    ]
    stale_users = {c.get('context', {}).get('user') for c in stale_contexts} | new_users
    stale_context_names = {c['name'] for c in stale_contexts}

    merged['clusters'] = [c for c in merged['clusters'] if c['name'] not in stale_clusters]
    merged['contexts'] = [c for c in merged['contexts'] if c['name'] not in stale_context_names]
    still_used = {c.get('context', {}).get('user') for c in merged['contexts']}
    merged['users'] = [
        u for u in merged['users']
        if u['name'] not in stale_users or (u['name'] in still_used and u['name'] not in new_users)
    ]

    merged['clusters'].extend(new.get('clusters', []))
    merged['contexts'].extend(new.get('contexts', []))
    merged['users'].extend(new.get('users', []))

    if merged['current-context'] in stale_context_names - new_contexts:
        merged['current-context'] = ''
    if not merged['current-context']:
        merged['current-context'] = new.get('current-context', '')
    return merged


def merge_into_file(new: Dict[str, Any], path: Union[str, Path]) -> Path:
    """Merge ``new`` into the kubeconfig at ``path`` (written with mode 0600)."""
    path = Path(path).expanduser()
    existing = read_yaml_file(str(path))
    merged = merge_kubeconfig(new, existing)
    write_yaml_file(str(path), merged, mode=0o600)
    logger.info(f"✅ Merged context '{new.get('current-context')}' into {path}")
    return path


def refresh_kubeconfig(gateway, host: str, server: str, name: str, path: Union[str, Path]) -> Path:
    """Fetch, rewrite and merge in one step."""
    return merge_into_file(rewrite_kubeconfig(fetch_kubeconfig(gateway, host), server, name), path)