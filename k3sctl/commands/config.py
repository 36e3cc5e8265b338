"""Descriptor inspection commands."""
from pathlib import Path

import typer
import yaml
from rich.table import Table

from k3sctl.utils import redact_sensitive_data

from .common import config_option, console, load_or_exit

app = typer.Typer(help="Inspect the cluster descriptor")


@app.command("validate")
def config_validate_cmd(config: Path = config_option()):
    """Check the descriptor and print the fleet layout."""
    descriptor = load_or_exit(config)
    table = Table(title=f"Cluster {descriptor.name}")
    table.add_column("Node", style="cyan")
    table.add_column("Role")
    table.add_row(descriptor.proxy, descriptor.role_of(descriptor.proxy).name)
    for node in descriptor.cluster_nodes:
        table.add_row(node.address, node.name)
    console.print(table)
    console.print(f"[green]✅ {config} is valid[/green]")


@app.command("show")
def config_show_cmd(config: Path = config_option()):
    """Print the descriptor with derived defaults filled in (token redacted)."""
    descriptor = load_or_exit(config)
    data = redact_sensitive_data(descriptor.model_dump(mode="json"))
    typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
