"""Coverline CLI — run quote submissions and inspect the carrier directory.

Uses Typer for argument parsing and Rich for formatted terminal output.

Usage::

    coverline --help
    coverline quote --file request.json
    coverline quote --first-name Ada --last-name Byron --state CA --zip 94105 \\
        --coverage auto --amount 50000 --deductible 500 --age 35 --credit 720
    coverline carriers --coverage auto
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from coverline.config import settings

# ---------------------------------------------------------------------------
# App & console setup
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="coverline",
    help="Coverline quote orchestration CLI — risk scoring, carrier matching and quoting.",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True, style="bold red")

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("coverline.cli")

_SEVERITY_COLORS = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "dim"}

# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------


def _run(coro):
    """Execute a coroutine from synchronous CLI context."""
    return asyncio.run(coro)


async def _orchestrate(payload: dict[str, Any]):
    from coverline.observability import LoggingObserver
    from coverline.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(settings, observer=LoggingObserver())
    try:
        return await orchestrator.orchestrate(payload)
    finally:
        await orchestrator.aclose()


# ---------------------------------------------------------------------------
# Command: quote
# ---------------------------------------------------------------------------


@app.command("quote")
def quote(
    file: Optional[Path] = typer.Option(
        None, "--file", "-f", help="JSON file holding a full quote request", exists=True, dir_okay=False
    ),
    first_name: Optional[str] = typer.Option(None, "--first-name", help="Applicant first name"),
    last_name: Optional[str] = typer.Option(None, "--last-name", help="Applicant last name"),
    state: Optional[str] = typer.Option(None, "--state", "-s", help="State code (e.g. TX, CA)"),
    zip_code: Optional[str] = typer.Option(None, "--zip", help="ZIP code"),
    coverage: str = typer.Option("auto", "--coverage", "-c", help="auto | home | homeowners | renters | life"),
    amount: float = typer.Option(50_000.0, "--amount", help="Coverage amount in USD"),
    deductible: float = typer.Option(500.0, "--deductible", help="Deductible in USD"),
    age: Optional[int] = typer.Option(None, "--age", help="Applicant age"),
    credit: Optional[int] = typer.Option(None, "--credit", help="Credit score (300-850)"),
    vehicle_year: Optional[int] = typer.Option(None, "--vehicle-year", help="Vehicle model year"),
    property_value: Optional[float] = typer.Option(None, "--property-value", help="Property value in USD"),
    year_built: Optional[int] = typer.Option(None, "--year-built", help="Property construction year"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw pipeline result as JSON"),
) -> None:
    """Run one submission through the quote pipeline.

    Examples:

      coverline quote --file request.json

      coverline quote --first-name Ada --last-name Byron --state CA --zip 94105 --coverage auto --age 35
    """
    if file is not None:
        try:
            payload = json.loads(file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            err_console.print(f"Cannot read {file}: {exc}")
            raise typer.Exit(1)
    else:
        missing = [
            flag
            for flag, value in (
                ("--first-name", first_name),
                ("--last-name", last_name),
                ("--state", state),
                ("--zip", zip_code),
            )
            if not value
        ]
        if missing:
            err_console.print(f"Missing required options without --file: {', '.join(missing)}")
            raise typer.Exit(2)
        payload = _inline_payload(
            first_name, last_name, state, zip_code, coverage, amount, deductible,
            age, credit, vehicle_year, property_value, year_built,
        )

    from coverline.errors import QuoteRequestError

    try:
        with console.status("[bold green]Requesting carrier quotes...[/bold green]"):
            result = _run(_orchestrate(payload))
    except QuoteRequestError as exc:
        err_console.print(str(exc))
        for err in exc.errors:
            loc = ".".join(str(part) for part in err.get("loc", ()))
            err_console.print(f"  {loc}: {err.get('msg', '')}")
        raise typer.Exit(2)
    except Exception as exc:
        err_console.print(f"Quote failed: {exc}")
        logger.exception("CLI quote command failed")
        raise typer.Exit(1)

    if as_json:
        console.print_json(result.model_dump_json())
        return

    _print_result(result)


def _inline_payload(
    first_name, last_name, state, zip_code, coverage, amount, deductible,
    age, credit, vehicle_year, property_value, year_built,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "customer": {
            "first_name": first_name,
            "last_name": last_name,
            "age": age,
            "credit_score": credit,
            "address": {"state": state, "zip_code": zip_code},
        },
        "coverage_type": coverage,
        "coverage_amount": amount,
        "deductible": deductible,
    }
    if vehicle_year is not None:
        payload["vehicle"] = {"year": vehicle_year}
    if property_value is not None or year_built is not None:
        payload["property"] = {"value": property_value, "year_built": year_built}
    return payload


def _print_result(result) -> None:
    decision = result.decision
    assessment = result.assessment
    if decision is not None and assessment is not None:
        verdict = "[green]APPROVED[/green]" if decision.approved else "[red]DECLINED[/red]"
        console.print(
            Panel(
                f"[bold cyan]Underwriting[/bold cyan] {verdict} ({decision.basis})\n"
                f"Risk: [yellow]{assessment.risk_score:.1f}[/yellow]  "
                f"Fraud: [yellow]{assessment.fraud_score:.1f}[/yellow]  "
                f"Confidence: [yellow]{assessment.confidence:.0f}%[/yellow]",
                title=result.request_id,
                expand=False,
            )
        )

    if result.quotes:
        table = Table(title=f"Quotes — {len(result.quotes)} carriers", box=box.ROUNDED)
        table.add_column("#", style="dim", width=4)
        table.add_column("Carrier", style="cyan")
        table.add_column("Monthly", justify="right")
        table.add_column("Annual", justify="right")
        table.add_column("Deductible", justify="right")
        table.add_column("Coverage", justify="right")
        table.add_column("Valid Until")
        for i, q in enumerate(result.quotes, 1):
            table.add_row(
                str(i),
                q.carrier_name,
                f"${q.premium:,.2f}",
                f"${q.annual_premium:,.2f}",
                f"${q.deductible:,.0f}",
                f"{q.coverage_score:.0f}",
                q.valid_until.date().isoformat(),
            )
        console.print(table)
    else:
        console.print("[yellow]No quotes returned.[/yellow]")

    if result.issues:
        console.print("\n[bold yellow]Issues:[/bold yellow]")
        for issue in result.issues:
            color = _SEVERITY_COLORS.get(issue.severity, "white")
            console.print(f"  [{color}]- [{issue.severity}/{issue.type}] {issue.message}[/{color}]")

    if result.recommendations:
        console.print("\n[bold]Recommendations:[/bold]")
        for rec in result.recommendations:
            console.print(f"  - {rec}")

    m = result.metrics
    console.print(
        f"\n[dim]avg premium ${m.average_premium:,.2f} | "
        f"diversification {m.carrier_diversification:.2f} | "
        f"{m.carriers_failed} failed | {m.quotes_rejected} rejected | "
        f"{m.processing_time_ms:.0f}ms[/dim]"
    )


# ---------------------------------------------------------------------------
# Command: carriers
# ---------------------------------------------------------------------------


@app.command("carriers")
def carriers(
    coverage: Optional[str] = typer.Option(None, "--coverage", "-c", help="Filter by coverage type"),
) -> None:
    """List the carrier directory.

    Examples:

      coverline carriers

      coverline carriers --coverage homeowners
    """
    from coverline.carriers.directory import CarrierDirectory
    from coverline.errors import DirectoryError

    try:
        snapshot = CarrierDirectory.from_settings(settings).snapshot
    except DirectoryError as exc:
        err_console.print(str(exc))
        raise typer.Exit(1)

    profiles = [p for p in snapshot.all() if coverage is None or p.supports(coverage)]
    if not profiles:
        console.print(f"[yellow]No carriers support {coverage}.[/yellow]")
        return

    table = Table(title=f"Carrier Directory v{snapshot.version} — {snapshot.source}", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Risk Band", justify="right")
    table.add_column("Commission", justify="right")
    table.add_column("Acceptance", justify="right")
    table.add_column("Turnaround", justify="right")
    table.add_column("States")
    table.add_column("Lines")
    table.add_column("Schema", style="dim")

    for p in profiles:
        states = ", ".join(p.accepted_states)
        table.add_row(
            p.id + (" [dim](fallback)[/dim]" if p.fallback else ""),
            p.name,
            f"{p.min_risk_score:.0f}-{p.max_risk_score:.0f}",
            f"{p.commission_rate:.0%}",
            f"{p.acceptance_rate:.0%}",
            f"{p.turnaround_time:g}d",
            states if len(states) <= 24 else states[:21] + "...",
            ", ".join(p.supported_coverage_types),
            p.response_schema,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
