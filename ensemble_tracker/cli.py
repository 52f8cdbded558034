"""
Ensemble Tracker — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Build the service (applies schema + migrations).
  4. Execute the operation.
  5. Report result to stdout.

Install and run::

    pip install -e .
    ensemble-tracker --help
    ensemble-tracker init-db
    ensemble-tracker import-portfolio --user alice --file holdings.csv
    ensemble-tracker record-price AAPL 187.20
    ensemble-tracker generate --user alice --portfolio 1
    ensemble-tracker record-action 7 --followed --price 187.50
    ensemble-tracker evaluate-due
    ensemble-tracker performance --user alice
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="ensemble-tracker",
    help="Multi-model stock recommendations with outcome tracking.",
    add_completion=False,
)

_DB_PATH_HELP = "Override DB path from config (e.g. data/db/test.db)."
_CONFIG_HELP = "Path to TOML config file."


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from ensemble_tracker.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from ensemble_tracker.utils.logging import configure_logging
    configure_logging(config.logging)


def _service(config_path: Optional[str], db_path: Optional[str]):
    """Load config, configure logging and build the service."""
    from ensemble_tracker.service import EnsembleTrackerService

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    return EnsembleTrackerService.from_config(config, db_path=db_path)


def _echo_json(payload) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(exc: Exception) -> None:
    typer.echo(f"[ERROR] {exc}", err=True)
    raise typer.Exit(code=1)


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times; all DDL uses IF NOT EXISTS.
    Also runs pending schema migrations.
    """
    from ensemble_tracker.db.connection import get_connection
    from ensemble_tracker.db.migrations import initialize_database
    from ensemble_tracker.db.schema import get_existing_tables

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        migrations_applied = initialize_database(conn)
        tables = get_existing_tables(conn)

    typer.echo(f"  Tables: {len(tables)} present.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
    show_full: bool = typer.Option(False, "--full", help="Print full config including all fields."),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation.
    """
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:    {config.database.db_path}")
    typer.echo(f"  Model server:     {config.ensemble.base_url}")
    typer.echo(f"  Models:           {', '.join(config.ensemble.priority)}")
    typer.echo(f"  Overall timeout:  {config.ensemble.timeout_seconds}s")
    typer.echo(f"  Default horizon:  {config.tracking.default_time_horizon}")
    typer.echo(f"  Tolerance:        {config.tracking.tolerance_pct}%")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        _echo_json(config.model_dump())

    typer.echo("")
    typer.echo("[OK] Config is valid.")


@app.command("import-portfolio")
def import_portfolio(
    user_id: str = typer.Option(..., "--user", help="Owner of the new portfolio."),
    file: str = typer.Option(..., "--file", help="CSV with columns ticker,quantity,purchase_price."),
    name: str = typer.Option("Main", "--name", help="Portfolio display name."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Create a portfolio and load its holdings from CSV."""
    csv_path = Path(file)
    if not csv_path.exists():
        typer.echo(f"[ERROR] File not found: {csv_path}", err=True)
        raise typer.Exit(code=1)

    service = _service(config_path, db_path)
    portfolio = service.create_portfolio(user_id, name)

    count = 0
    with open(csv_path, newline="", encoding="utf-8") as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            try:
                price = (row.get("purchase_price") or "").strip()
                service.add_holding(
                    portfolio.portfolio_id,
                    row["ticker"],
                    float(row["quantity"]),
                    float(price) if price else None,
                )
            except (KeyError, ValueError) as exc:
                typer.echo(f"  [WARN] line {line_no} skipped: {exc}", err=True)
                continue
            count += 1

    typer.echo(f"[OK] Portfolio {portfolio.portfolio_id} created with {count} holding(s).")


@app.command("record-price")
def record_price(
    ticker: str = typer.Argument(..., help="Equity symbol."),
    price: float = typer.Argument(..., help="Observed price."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Store an observed market price."""
    service = _service(config_path, db_path)
    try:
        observed = service.record_price(ticker, price)
    except ValueError as exc:
        _fail(exc)
    typer.echo(f"[OK] {observed.ticker} = {observed.price} at {observed.observed_at.isoformat()}")


@app.command("generate")
def generate(
    user_id: str = typer.Option(..., "--user", help="Portfolio owner."),
    portfolio_id: int = typer.Option(..., "--portfolio", help="Portfolio id."),
    horizon: Optional[str] = typer.Option(None, "--horizon", help="Time horizon, e.g. 90d."),
    risk_tolerance: Optional[str] = typer.Option(None, "--risk", help="Risk tolerance."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Generate one recommendation per holding in a portfolio."""
    from ensemble_tracker.exceptions import NotFound

    service = _service(config_path, db_path)
    try:
        recs = service.generate_for_portfolio(user_id, portfolio_id, horizon, risk_tolerance)
    except NotFound as exc:
        _fail(exc)
    finally:
        service.close()

    for rec in recs:
        flag = " (fallback)" if rec.is_fallback else ""
        typer.echo(
            f"  #{rec.rec_id:<5} {rec.ticker:<6} {rec.action:<4} "
            f"{rec.confidence_label:<6} risk={rec.risk_label:<6} "
            f"consensus={rec.consensus_level:.0%}{flag}"
        )
    typer.echo(f"[OK] {len(recs)} recommendation(s) generated.")


@app.command("record-action")
def record_action(
    tracker_id: int = typer.Argument(..., help="Tracker id."),
    followed: bool = typer.Option(..., "--followed/--ignored", help="Whether the user acted."),
    price: Optional[float] = typer.Option(None, "--price", help="Execution price."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Record whether a recommendation was followed."""
    from ensemble_tracker.exceptions import InvalidState, NotFound

    service = _service(config_path, db_path)
    try:
        tracker = service.record_action(tracker_id, followed, price)
    except (NotFound, InvalidState, ValueError) as exc:
        _fail(exc)
    typer.echo(f"[OK] Tracker {tracker.tracker_id} is now {tracker.status}.")


@app.command("evaluate")
def evaluate(
    tracker_id: int = typer.Argument(..., help="Tracker id."),
    closing_price: float = typer.Argument(..., help="Closing price to score against."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Score one tracker against a closing price."""
    from ensemble_tracker.exceptions import InvalidState, NotFound

    service = _service(config_path, db_path)
    try:
        tracker = service.evaluate(tracker_id, closing_price)
    except (NotFound, InvalidState, ValueError) as exc:
        _fail(exc)
    typer.echo(
        f"[OK] Tracker {tracker.tracker_id}: return={tracker.actual_return:.2f}% "
        f"accurate={tracker.accuracy} target_reached={tracker.target_reached}"
    )


@app.command("evaluate-due")
def evaluate_due(
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Evaluate every acted-on tracker whose horizon has elapsed."""
    service = _service(config_path, db_path)
    evaluated = service.evaluate_due()
    typer.echo(f"[OK] {len(evaluated)} tracker(s) evaluated.")


@app.command("performance")
def performance(
    user_id: str = typer.Option(..., "--user", help="User to summarise."),
    recent: int = typer.Option(0, "--recent", help="Also list the N most recent trackers."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Print accuracy, return and missed-opportunity statistics."""
    service = _service(config_path, db_path)
    _echo_json(service.get_performance(user_id).model_dump())
    if recent:
        _echo_json([t.model_dump() for t in service.get_recent_trackers(user_id, recent)])


@app.command("peers")
def peers(
    user_id: str = typer.Option(..., "--user", help="User to rank."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Compare a user's track record with everyone else's."""
    service = _service(config_path, db_path)
    _echo_json(service.get_peer_comparison(user_id).model_dump())


@app.command("health")
def health(
    portfolio_id: int = typer.Option(..., "--portfolio", help="Portfolio id."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Print the portfolio health score and advice."""
    from ensemble_tracker.exceptions import NotFound

    service = _service(config_path, db_path)
    try:
        result = service.get_portfolio_health(portfolio_id)
    except NotFound as exc:
        _fail(exc)
    _echo_json(result.model_dump())


@app.command("snapshot-portfolio")
def snapshot_portfolio(
    portfolio_id: int = typer.Option(..., "--portfolio", help="Portfolio id."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Store the current valuation as the next health baseline."""
    from ensemble_tracker.exceptions import NotFound

    service = _service(config_path, db_path)
    try:
        snap = service.snapshot_portfolio(portfolio_id)
    except NotFound as exc:
        _fail(exc)
    typer.echo(
        f"[OK] Snapshot {snap.snapshot_id}: value={snap.total_value:.2f} "
        f"cost={snap.total_cost:.2f} return={snap.return_pct:.2f}%"
    )


@app.command("model-health")
def model_health(
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Ping every configured model server."""
    from ensemble_tracker.ensemble.invoker import build_invokers, check_model_health

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    report = check_model_health(build_invokers(config.ensemble))
    _echo_json(report)
    if report["status"] != "healthy":
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
