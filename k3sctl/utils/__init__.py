"""Utility functions and helpers for the k3sctl application."""
import logging
import os
import re
import secrets
import string
from datetime import datetime, timezone
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, TypeVar

import yaml

from ..config import Config

logger = logging.getLogger("utils")

T = TypeVar('T')

_SECRET_ASSIGNMENT = re.compile(
    r"((?:K3S_TOKEN|--token|--agent-token)[= ])('[^']*'|\"[^\"]*\"|\S+)"
)


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) and v else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def redact_command(command: str, *secrets: str) -> str:
    """Mask tokens in a shell command before it is logged."""
    redacted = _SECRET_ASSIGNMENT.sub(r"\1[REDACTED]", command)
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "[REDACTED]")
    return redacted


def batched(iterable: Iterable[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive chunks of ``size`` items; the last may be shorter."""
    if size < 1:
        raise ValueError("batch size must be positive")
    it = iter(iterable)
    while True:
        chunk = list(islice(it, size))
        if not chunk:
            break
        yield chunk


def timestamp() -> str:
    """UTC timestamp usable in file names."""
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def generate_token(length: int = 48) -> str:
    """Generate a random token for cluster authentication.

    Args:
        length: Length of the token to generate

    Returns:
        str: A random token string
    """
    chars = string.ascii_letters + string.digits
    return ''.join(secrets.choice(chars) for _ in range(length))


def write_yaml_file(path: str, data: Dict[str, Any], mode: int = 0o600) -> None:
    """Write a YAML file with the given data.

    Args:
        path: Path to the YAML file
        data: Data to write as YAML
        mode: File permissions (default: 0o600)

    Raises:
        IOError: If the file cannot be written
    """
    try:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.chmod(path, mode)
    except (IOError, OSError) as e:
        logger.error(f"Failed to write YAML file {path}: {e}")
        raise


def read_yaml_file(path: str) -> Dict[str, Any]:
    """Read a YAML mapping; a missing or empty file yields an empty dict."""
    if not os.path.exists(path):
        return {}
    with open(path, encoding='utf-8') as f:
        return yaml.safe_load(f) or {}
