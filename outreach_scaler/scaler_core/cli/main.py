from __future__ import annotations

import json
import os
from typing import Any

import typer
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from scaler_core.config import EngineConfig, resolve_config
from scaler_core.context import EngineContext, build_context
from scaler_core.errors import CatalogError, EngineError
from scaler_core.phases.catalog import PhaseCatalog
from scaler_core.types import RunOutcome
from scaler_core.utils.logs import configure_logging


app = typer.Typer(help="Outreach Scaler phase engine CLI")
catalog_app = typer.Typer(help="Phase catalog operations")
app.add_typer(catalog_app, name="catalog")
console = Console()

EXIT_BY_OUTCOME = {
    RunOutcome.TRANSITIONED: 0,
    RunOutcome.ADVISED: 0,
    RunOutcome.TERMINAL: 0,
    RunOutcome.SKIPPED: 3,
    RunOutcome.ABORTED: 2,
    RunOutcome.FAILED: 1,
}


def _load_runtime_config(config_path: str | None) -> EngineConfig:
    try:
        return resolve_config(config_path or None)
    except (FileNotFoundError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from exc


def _context(config_path: str | None) -> EngineContext:
    cfg = _load_runtime_config(config_path)
    configure_logging(cfg.logging.level, json_format=cfg.logging.json_format)
    try:
        return build_context(cfg)
    except (EngineError, TypeError) as exc:
        console.print(f"[red]Engine wiring failed:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc


def _print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


@app.command("evaluate")
def evaluate(
    config: str = typer.Option("", "--config", help="Path to scaler config"),
    as_json: bool = typer.Option(False, "--json", help="Print the run report as JSON"),
) -> None:
    """Evaluate now: the same run the scheduler performs."""
    ctx = _context(config)
    report = ctx.scheduler.trigger_now(trigger="cli")
    if as_json:
        _print_json(report.to_dict())
    else:
        console.print(f"outcome={report.outcome.value} phase={report.phase_before} -> {report.phase_after} notified={report.notified}")
        if report.verdict is not None:
            table = Table("metric", "comparator", "threshold", "actual", "ok")
            for row in [*report.verdict.passed, *report.verdict.failed]:
                table.add_row(row.metric, row.comparator.value, f"{row.threshold:g}", "-" if row.actual is None else f"{row.actual:g}", str(row.ok))
            console.print(table)
        if report.error:
            console.print(f"[red]{escape(report.error)}[/red]")
    raise typer.Exit(code=EXIT_BY_OUTCOME[report.outcome])


@app.command("status")
def status(config: str = typer.Option("", "--config", help="Path to scaler config")) -> None:
    ctx = _context(config)
    payload = ctx.engine.status()
    table = Table("field", "value")
    for key, value in payload.items():
        table.add_row(key, ", ".join(value) if isinstance(value, list) else str(value))
    console.print(table)


@app.command("history")
def history(config: str = typer.Option("", "--config", help="Path to scaler config")) -> None:
    ctx = _context(config)
    rows = ctx.engine.history()
    if not rows:
        console.print("No transitions yet")
        return
    table = Table("timestamp", "from", "to", "score", "markets", "features", "market_source")
    for row in rows:
        table.add_row(
            row["timestamp"],
            row["fromPhase"],
            row["toPhase"],
            f"{float(row['score']):.2f}",
            str(len(row["marketsActivated"])),
            str(len(row["featuresEnabled"])),
            row["marketSource"],
        )
    console.print(table)


@app.command("targeting")
def targeting(config: str = typer.Option("", "--config", help="Path to scaler config")) -> None:
    ctx = _context(config)
    _print_json(ctx.engine.targeting_criteria())


@app.command("advisories")
def advisories(
    config: str = typer.Option("", "--config", help="Path to scaler config"),
    limit: int = typer.Option(5, "--limit", min=1),
) -> None:
    ctx = _context(config)
    _print_json(ctx.engine.advisories(limit=limit))


@catalog_app.command("show")
def catalog_show(config: str = typer.Option("", "--config", help="Path to scaler config")) -> None:
    ctx = _context(config)
    table = Table("order", "id", "name", "markets", "criteria", "features")
    for phase in ctx.catalog:
        policy = phase.market_policy
        markets = f"{len(policy.explicit or [])} listed" if policy.is_explicit else f"top {policy.select_top}"
        table.add_row(str(phase.order), phase.id, phase.name, markets, str(len(phase.success_criteria)), str(len(phase.feature_set)))
    console.print(table)


@catalog_app.command("validate")
def catalog_validate(path: str = typer.Option(..., "--path", help="Catalog YAML file")) -> None:
    try:
        catalog = PhaseCatalog.load(path)
    except CatalogError as exc:
        console.print(f"[red]Invalid catalog:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc
    console.print(f"Catalog OK: {len(catalog)} phases ({', '.join(row.id for row in catalog)})")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8080, "--port"),
    config: str = typer.Option("", "--config", help="Path to scaler config"),
) -> None:
    if config:
        os.environ["SCALER_CONFIG_PATH"] = config
    uvicorn.run("scaler_core.web.app:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    app()
