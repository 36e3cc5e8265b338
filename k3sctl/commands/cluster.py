"""Cluster creation command."""
from pathlib import Path
from typing import Optional

import typer

from k3sctl.modules.k3s import bootstrap_cluster

from .common import config_option, load_or_exit, open_session, run_workflow

app = typer.Typer(help="Create clusters")


@app.command("create")
def create_cluster_cmd(
    config: Path = config_option(),
    kubeconfig: Optional[Path] = typer.Option(None, "--kubeconfig", help="Local kubeconfig to merge the credential into"),
):
    """Bootstrap the proxy, control plane, workers and storage described in the config."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor, kubeconfig=kubeconfig)
    run_workflow(session, bootstrap_cluster)
