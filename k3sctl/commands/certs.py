"""Certificate commands."""
from pathlib import Path
from typing import Optional

import typer

from k3sctl.modules.k3s import check_certificates, rotate_certificates

from .common import config_option, load_or_exit, open_session, run_workflow

app = typer.Typer(help="Inspect and rotate K3s certificates")


@app.command("check")
def certs_check_cmd(
    warn_days: int = typer.Option(30, "--warn-days", min=1, help="Warn about certificates expiring within N days"),
    config: Path = config_option(),
):
    """List certificate expiry on every node."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor)
    run_workflow(session, lambda s: check_certificates(s, warn_days))


@app.command("rotate")
def certs_rotate_cmd(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    kubeconfig: Optional[Path] = typer.Option(None, "--kubeconfig", help="Local kubeconfig to refresh"),
    config: Path = config_option(),
):
    """Rotate certificates, control plane first, and refresh the local credential."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor, yes=yes, kubeconfig=kubeconfig)
    run_workflow(session, rotate_certificates)
