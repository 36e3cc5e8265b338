"""Rolling upgrade command."""
from pathlib import Path
from typing import Optional

import typer

from k3sctl.modules.k3s import RollingUpgrade

from .common import config_option, load_or_exit, open_session, render_plan, run_workflow

app = typer.Typer(help="Upgrade K3s")


@app.command("cluster")
def upgrade_cluster_cmd(
    version: str = typer.Option(..., "--version", "-v", help="Target K3s version, e.g. v1.29.4+k3s1"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Workers upgraded together"),
    drain_timeout: Optional[int] = typer.Option(None, "--drain-timeout", min=1, help="Seconds allowed per drain"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without touching any node"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Continue past failed health gates without asking"),
    config: Path = config_option(),
):
    """Upgrade the control plane one node at a time, then workers in batches."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor, yes=yes, dry_run=dry_run)
    upgrade = RollingUpgrade(session, version, batch_size=batch_size, drain_timeout=drain_timeout)
    render_plan(upgrade.plan)
    run_workflow(session, lambda s: upgrade.run())
