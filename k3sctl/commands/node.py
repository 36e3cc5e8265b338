"""Node membership commands."""
from pathlib import Path

import typer

from k3sctl.modules.k3s import Role, join_node

from .common import config_option, load_or_exit, open_session, run_workflow

app = typer.Typer(help="Manage cluster nodes")


@app.command("join")
def join_node_cmd(
    address: str = typer.Option(..., "--address", "-a", help="Address of the node to join"),
    role: Role = typer.Option(Role.WORKER, "--role", "-r", help="control-plane or worker"),
    config: Path = config_option(),
):
    """Join a node using the running cluster's token and version."""
    descriptor = load_or_exit(config)
    session = open_session(descriptor)
    run_workflow(session, lambda s: join_node(s, address, role))
