"""Configuration management for the k3sctl application."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


class Config:
    """Application configuration with sensible defaults.

    These are tool-level knobs. Everything describing the fleet itself lives
    in the cluster descriptor.
    """

    # SSH
    SSH_CONNECT_TIMEOUT: int = int(os.getenv("K3SCTL_SSH_CONNECT_TIMEOUT", "10"))
    COMMAND_TIMEOUT: int = int(os.getenv("K3SCTL_COMMAND_TIMEOUT", "600"))
    REMOTE_WORK_DIR: str = os.getenv("K3SCTL_REMOTE_WORK_DIR", "/tmp/k3sctl")

    # Polling (in seconds)
    POLL_INTERVAL: float = float(os.getenv("K3SCTL_POLL_INTERVAL", "5"))
    CONTROL_PLANE_READY_TIMEOUT: int = int(os.getenv("K3SCTL_CONTROL_PLANE_READY_TIMEOUT", "300"))
    NODE_JOIN_TIMEOUT: int = int(os.getenv("K3SCTL_NODE_JOIN_TIMEOUT", "300"))
    SERVICE_START_TIMEOUT: int = int(os.getenv("K3SCTL_SERVICE_START_TIMEOUT", "180"))
    HEALTH_GATE_TIMEOUT: int = int(os.getenv("K3SCTL_HEALTH_GATE_TIMEOUT", "120"))
    INTER_BATCH_DELAY: float = float(os.getenv("K3SCTL_INTER_BATCH_DELAY", "10"))

    # Local paths
    KUBECONFIG_PATH: Path = Path(os.getenv("K3SCTL_KUBECONFIG", "~/.kube/config")).expanduser()
    BACKUP_DIR: Path = Path(os.getenv("K3SCTL_BACKUP_DIR", "backups"))

    # Logging
    LOG_LEVEL: str = os.getenv("K3SCTL_LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "K3SCTL_LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    LOG_FILE: str = os.getenv("K3SCTL_LOG_FILE", "")
    LOG_MAX_SIZE_MB: int = int(os.getenv("K3SCTL_LOG_MAX_SIZE_MB", "50"))
    LOG_BACKUP_COUNT: int = int(os.getenv("K3SCTL_LOG_BACKUP_COUNT", "3"))

    # Security
    REDACT_KEYS: tuple = ("password", "secret", "token")
