import json
import logging
from typing import Optional

import typer

from .config import Settings
from .handler import LeaderboardService, LeaderboardUnavailable

app = typer.Typer(help="Weekly on-chain points leaderboard")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _service() -> LeaderboardService:
    try:
        settings = Settings.from_env()
    except RuntimeError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2)
    return LeaderboardService.from_settings(settings)


@app.command()
def query(
    period_start: Optional[int] = typer.Option(None, "--period-start", help="Period start (epoch ms); default: current UTC week"),
    refresh: bool = typer.Option(False, "--refresh", help="Bypass the snapshot cache"),
    names: bool = typer.Option(False, "--names", help="Attach display names (needs a name resolver)"),
    top: Optional[int] = typer.Option(None, "--top", help="Only print the first N entries of each ranking"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    _setup_logging(verbose)
    service = _service()
    try:
        result = service.query(period_start, force_refresh=refresh, include_names=names)
    except LeaderboardUnavailable as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)

    if top is not None:
        result["current_ranking"] = result["current_ranking"][:top]
        result["previous_ranking"] = result["previous_ranking"][:top]
    typer.echo(json.dumps(result, indent=2))


@app.command()
def refresh(
    period_start: Optional[int] = typer.Option(None, "--period-start", help="Period start (epoch ms); default: current UTC week"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Force an update with the long deadline (for cron)."""
    _setup_logging(verbose)
    service = _service()
    try:
        result = service.refresh(period_start)
    except LeaderboardUnavailable as e:
        typer.echo(json.dumps({"ok": False, "error": str(e)}))
        raise typer.Exit(code=1)
    typer.echo(json.dumps({"ok": True, "meta": result["meta"]}))


if __name__ == "__main__":
    app()
