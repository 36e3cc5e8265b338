import logging
import sys
from typing import Optional

import typer

from k3sctl.commands import backup, certs, cluster, config, kubeconfig, node, upgrade
from k3sctl.logging import configure_logging

app = typer.Typer(help="k3sctl - K3s fleet lifecycle CLI", no_args_is_help=True)

# Global debug flag
debug_mode = False

# Add all command groups
app.add_typer(cluster.app, name="cluster")
app.add_typer(node.app, name="node")
app.add_typer(upgrade.app, name="upgrade")
app.add_typer(backup.app, name="backup")
app.add_typer(certs.app, name="certs")
app.add_typer(kubeconfig.app, name="kubeconfig")
app.add_typer(config.app, name="config")


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write logs to this rotating file"),
):
    """k3sctl - bootstrap, grow, upgrade and back up K3s clusters over SSH."""
    global debug_mode
    debug_mode = debug
    configure_logging(debug, log_file)
    if debug:
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if debug_mode:
            logging.exception(f"Unhandled exception: {e}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)
