"""Backup and restore commands."""
from pathlib import Path
from typing import Optional

import typer

from k3sctl.modules.k3s import backup_cluster, restore_cluster

from .common import config_option, load_or_exit, open_session, run_workflow

app = typer.Typer(help="Back up and restore the cluster datastore")


@app.command("create")
def backup_create_cmd(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Local directory for the archives"),
    include_storage: bool = typer.Option(False, "--include-storage", help="Also archive the shared storage export"),
    config: Path = config_option(),
):
    """Snapshot etcd on every control-plane node and download the archives."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor, backup_dir=output)
    run_workflow(session, lambda s: backup_cluster(s, include_storage=include_storage))


@app.command("restore")
def backup_restore_cmd(
    node: str = typer.Option(..., "--node", "-n", help="Control-plane address to restore on"),
    archive: Path = typer.Option(..., "--archive", help="Archive produced by `backup create`"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    config: Path = config_option(),
):
    """Reset the cluster datastore on one control-plane node from an archive."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor, yes=yes)
    run_workflow(session, lambda s: restore_cluster(s, node, archive))
