"""k3sctl: lifecycle orchestration for K3s fleets behind a TCP proxy."""

__version__ = "0.1.0"
