"""Cluster credential command."""
from pathlib import Path
from typing import Optional

import typer

from k3sctl.errors import K3sctlError
from k3sctl.modules.k3s import WorkflowReport
from k3sctl.modules.k3s.kubeconfig import refresh_kubeconfig

from .common import config_option, load_or_exit, open_session, run_workflow

app = typer.Typer(help="Manage the local cluster credential")


@app.command("fetch")
def kubeconfig_fetch_cmd(
    kubeconfig: Optional[Path] = typer.Option(None, "--kubeconfig", help="Local kubeconfig to merge into"),
    node: Optional[str] = typer.Option(None, "--node", "-n", help="Control-plane address to read from"),
    config: Path = config_option(),
):
    """Fetch the admin credential, point it at the proxy and merge it locally."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor, kubeconfig=kubeconfig)
    source = node or descriptor.control_plane[0]

    def fetch(s) -> WorkflowReport:
        report = WorkflowReport('kubeconfig')
        try:
            path = refresh_kubeconfig(s.gateway, source, descriptor.api_endpoint, descriptor.name,
                                      s.kubeconfig_path)
        except (K3sctlError, OSError) as e:
            report.failed(source, 'merge-kubeconfig', str(e))
            return report.abort(f"Could not fetch the credential from {source}",
                                getattr(e, 'remediation', None) or "")
        report.succeeded(source, 'merge-kubeconfig', str(path))
        return report

    run_workflow(session, fetch)
