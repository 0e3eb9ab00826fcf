"""Verax command line.

Commands:
    run     Observe a site against its expectations and commit findings
    verify  Check a run directory's poison marker and integrity manifest
    status  Show a run directory's poison marker and ledger
    rules   List guardrails rules in evaluation order

Usage:
    $ verax run http://localhost:3000 --expectations expectations.json
    $ verax verify .verax/runs/20261017T101500Z-3fa2c1
    $ verax rules --policy guardrails.json
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from verax import __version__
from verax.core.config import load_config
from verax.core.errors import VeraxError
from verax.core.models import Finding, TruthStatus
from verax.guardrails.engine import severity_for_action
from verax.guardrails.policy import load_policy
from verax.integrity.transaction import check_poison_marker, read_ledger, verify_run
from verax.pipeline import load_expectations, run

app = typer.Typer(
    help="Verax: evidence-backed detection of silent failures in web interactions",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    TruthStatus.CONFIRMED: "bold red",
    TruthStatus.SUSPECTED: "yellow",
    TruthStatus.INFORMATIONAL: "cyan",
    TruthStatus.IGNORED: "dim",
}

DEFAULT_OUT_DIR = Path(".verax") / "runs"


def _error(message: str) -> NoReturn:
    """Print error and exit."""
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"verax {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version"),
    ] = False,
) -> None:
    """Verax: evidence-backed detection of silent failures in web interactions."""


def _findings_table(findings: list[Finding]) -> Table:
    table = Table(title="Findings")
    table.add_column("#", justify="right")
    table.add_column("Expectation", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Confidence", justify="center")
    table.add_column("Cause")
    table.add_column("Guardrails")
    for f in findings:
        style = STATUS_STYLES.get(f.status, "")
        score = f"{f.confidence.score:.2f} {f.confidence.level}" if f.confidence else "-"
        rules = ", ".join(f.guardrails.policy_report.applied_rule_ids) if f.guardrails else ""
        table.add_row(
            str(f.exp_num),
            escape(f.expectation_id),
            f.type,
            f"[{style}]{f.status}[/{style}]" if style else str(f.status),
            score,
            str(f.cause or "-"),
            escape(rules) or "[dim]-[/dim]",
        )
    return table


@app.command("run")
def run_command(
    url: Annotated[str, typer.Argument(help="Entry URL of the site under test")],
    expectations: Annotated[
        Path, typer.Option("--expectations", "-e", help="Expectations JSON file")
    ],
    out: Annotated[Path, typer.Option("--out", "-o", help="Parent directory for runs")] = (
        DEFAULT_OUT_DIR
    ),
    policy: Annotated[
        Path | None, typer.Option("--policy", help="Guardrails policy JSON file")
    ] = None,
    config: Annotated[Path | None, typer.Option("--config", help="Run config JSON file")] = None,
    headed: Annotated[bool, typer.Option("--headed", help="Show the browser window")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Observe URL against its expectations and commit findings.

    Artifacts are committed atomically under OUT/<run-id>/. A failed run
    leaves a poison marker and a ledger entry instead.
    """
    _setup_logging(verbose)
    try:
        run_config = load_config(config, headless=False if headed else None)
        guardrails = load_policy(policy)
        exps = load_expectations(expectations)
        result = run(url, exps, out, run_config, guardrails)
    except VeraxError as e:
        _error(str(e))

    stats = result.report.stats
    console.print(f"\n[bold]Run:[/bold] {escape(result.run_id)}")
    console.print(f"  Directory: {escape(str(result.run_dir))}")
    console.print(
        f"  Attempted: {stats.attempted}/{stats.total} "
        f"(coverage {stats.coverage_ratio:.0%}), blocked writes: {stats.blocked_writes}"
    )
    if stats.skipped_reasons:
        skipped = ", ".join(f"{k}={v}" for k, v in stats.skipped_reasons.items())
        console.print(f"  Skipped: {escape(skipped)}")

    if not result.findings:
        console.print("\n[green]No silent failures found.[/green]")
        return
    console.print(_findings_table(result.findings))
    counts = {k: v for k, v in result.counts_by_status().items() if v}
    console.print("  " + "  ".join(f"{k}: {v}" for k, v in counts.items()))


@app.command()
def verify(
    run_dir: Annotated[Path, typer.Argument(help="Run directory to verify")],
) -> None:
    """Check a run's poison marker and re-verify its integrity manifest."""
    if not run_dir.is_dir():
        _error(f"Run directory not found: {run_dir}")
    try:
        result = verify_run(run_dir)
    except VeraxError as e:
        _error(str(e))

    for name in result.verified:
        console.print(f"  [green]OK[/green]   {escape(name)}")
    for failure in result.failed:
        console.print(
            f"  [red]FAIL[/red] {escape(failure['name'])}: {escape(failure['reason'])}"
        )
    if not result.ok:
        _error(f"{len(result.failed)} artifact(s) failed verification")
    console.print(f"[green]Verified {len(result.verified)} artifact(s)[/green]")


@app.command()
def status(
    run_dir: Annotated[Path, typer.Argument(help="Run directory to inspect")],
) -> None:
    """Show whether a run completed, and its ledger entries."""
    if not run_dir.is_dir():
        _error(f"Run directory not found: {run_dir}")
    poison = check_poison_marker(run_dir)
    if poison.has_poison_marker:
        since = (poison.entry or {}).get("timestamp", "unknown time")
        console.print(f"[red]Poisoned:[/red] run started {escape(str(since))} never committed")
    else:
        console.print("[green]Clean:[/green] no poison marker")

    ledger = read_ledger(run_dir)
    if not ledger:
        console.print("[dim]Ledger is empty[/dim]")
        return
    table = Table(title="Ledger")
    table.add_column("Timestamp")
    table.add_column("Status")
    table.add_column("Error")
    for entry in ledger:
        table.add_row(
            escape(str(entry.get("timestamp", ""))),
            escape(str(entry.get("status", ""))),
            escape(str(entry.get("error", ""))),
        )
    console.print(table)


@app.command()
def rules(
    policy: Annotated[
        Path | None, typer.Option("--policy", help="Guardrails policy JSON file")
    ] = None,
) -> None:
    """List guardrails rules in the order they are evaluated."""
    try:
        loaded = load_policy(policy)
    except VeraxError as e:
        _error(str(e))

    table = Table(title=f"Guardrails policy v{loaded.version} ({escape(loaded.source)})")
    table.add_column("Rule ID", style="cyan", no_wrap=True)
    table.add_column("Category")
    table.add_column("Applies To")
    table.add_column("Evaluation")
    table.add_column("Severity")
    table.add_column("Delta", justify="right")
    for rule in loaded.ordered_rules():
        table.add_row(
            rule.id,
            escape(rule.category),
            escape(", ".join(rule.applies_to)),
            str(rule.evaluation.type),
            severity_for_action(rule.action),
            f"{rule.confidence_delta:+.2f}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
