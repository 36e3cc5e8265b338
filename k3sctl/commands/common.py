"""Shared helpers for CLI commands: loading, session setup and report output."""
import logging
from pathlib import Path
from typing import Callable, Optional

import typer
from rich.console import Console
from rich.table import Table

from k3sctl.config import Config
from k3sctl.errors import ConfigError, K3sctlError
from k3sctl.modules.k3s import ClusterDescriptor, Session, WorkflowReport, always_confirm, load_descriptor
from k3sctl.modules.k3s.models import OutcomeStatus, UpgradePlan, Verdict

logger = logging.getLogger(__name__)

console = Console()

DEFAULT_CONFIG = Path("cluster.yaml")

STATUS_STYLES = {
    OutcomeStatus.SUCCEEDED: "green",
    OutcomeStatus.FAILED: "red",
    OutcomeStatus.SKIPPED: "dim",
    OutcomeStatus.WARNING: "yellow",
}

VERDICT_STYLES = {
    Verdict.COMPLETE: "bold green",
    Verdict.PARTIAL_FAILURE: "bold yellow",
    Verdict.ABORTED: "bold red",
}


def config_option() -> Path:
    return typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to the cluster descriptor YAML")


def load_or_exit(path: Path) -> ClusterDescriptor:
    """Load the descriptor; configuration errors end the command with exit code 1."""
    try:
        return load_descriptor(path)
    except ConfigError as e:
        console.print(f"[red]❌ {e}[/red]")
        if e.remediation:
            console.print(f"   {e.remediation}")
        raise typer.Exit(code=1)


def prompt_confirm(reason: str) -> bool:
    return typer.confirm(reason, default=False)


def open_session(descriptor: ClusterDescriptor, yes: bool = False, kubeconfig: Optional[Path] = None,
                 backup_dir: Optional[Path] = None, dry_run: bool = False) -> Session:
    return Session.open(
        descriptor,
        confirm=always_confirm if yes else prompt_confirm,
        kubeconfig_path=kubeconfig or Config.KUBECONFIG_PATH,
        backup_dir=backup_dir or Config.BACKUP_DIR,
        dry_run=dry_run,
    )


def render_report(report: WorkflowReport):
    table = Table(title=f"{report.workflow} report")
    table.add_column("Node", style="cyan")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    for outcome in report.outcomes:
        style = STATUS_STYLES[outcome.status]
        table.add_row(outcome.node, outcome.action, f"[{style}]{outcome.status.value}[/{style}]", outcome.detail)
    console.print(table)

    if report.node_states:
        states = Table(title="Node states")
        states.add_column("Node", style="cyan")
        states.add_column("State")
        for address, state in report.node_states.items():
            states.add_row(address, state)
        console.print(states)

    verdict = report.verdict
    console.print(f"[{VERDICT_STYLES[verdict]}]Result: {verdict.value}[/{VERDICT_STYLES[verdict]}]")
    if report.reason:
        console.print(f"Reason: {report.reason}")
    if report.remediation:
        console.print(f"Next step: {report.remediation}")


def render_plan(plan: UpgradePlan):
    table = Table(title=f"Upgrade plan to {plan.target_version} (batch size {plan.batch_size})")
    table.add_column("Step", justify="right")
    table.add_column("Role")
    table.add_column("Nodes", style="cyan")
    for step in plan.steps:
        table.add_row(str(step.index), step.role.value, ", ".join(step.addresses))
    console.print(table)


def run_workflow(session: Session, workflow: Callable[[Session], WorkflowReport]):
    """Run a workflow, print its report and exit with the report's code."""
    try:
        report = workflow(session)
    except K3sctlError as e:
        logger.debug("Workflow failed", exc_info=True)
        console.print(f"[red]❌ {e}[/red]")
        if e.remediation:
            console.print(f"Next step: {e.remediation}")
        raise typer.Exit(code=1)
    finally:
        session.close()

    render_report(report)
    if report.exit_code:
        raise typer.Exit(code=report.exit_code)
