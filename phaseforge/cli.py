"""PhaseForge CLI: inspect exported session histories."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from phaseforge.context.aggregate import reduce_collections
from phaseforge.context.session import Session
from phaseforge.context.state import predicate_state_message, readiness_summary
from phaseforge.core.exceptions import PhaseForgeError
from phaseforge.core.models import PHASE_ORDER, PhaseCompleteEvent


def _setup_logging(verbose: bool = False) -> None:
    """Apply logging configuration from config/default.yaml."""
    from phaseforge.core.config import load_config

    try:
        config = load_config()
        level_name = config.logging.level
        fmt = config.logging.format
    except PhaseForgeError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _load_session(path: Path) -> Session:
    try:
        return Session.load(path)
    except (json.JSONDecodeError, ValidationError, PhaseForgeError) as exc:
        raise click.ClickException(f"Cannot read history {path}: {exc}") from exc


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """PhaseForge command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose=verbose)


@cli.command("status")
@click.option(
    "--history",
    "history_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to an exported session history (JSON list).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print machine-readable JSON.")
def status(history_path: Path, as_json: bool) -> None:
    """Show per-phase readiness of an exported session."""
    session = _load_session(history_path)
    state = session.state()
    summary = readiness_summary(state)

    if as_json:
        click.echo(json.dumps({
            "current_phase": state.current_phase.value if state.current_phase else None,
            "phases": summary,
        }, indent=2))
        return

    current = state.current_phase.value if state.current_phase else "none"
    click.echo(f"Events: {len(session.history)}   Current phase: {current}")
    click.echo("")
    click.echo(f"{'Phase':<10} {'Step':>4}  {'Done':<5} {'Stale':<5} {'Eligible':<8}")
    for phase in PHASE_ORDER:
        row = summary[phase.value]
        step = "-" if row["step"] is None else str(row["step"])
        stale = click.style("yes", fg="yellow") if row["stale"] else "no"
        click.echo(
            f"{phase.value:<10} {step:>4}  {'yes' if row['completed'] else 'no':<5} "
            f"{stale:<5} {'yes' if row['eligible'] else 'no':<8}"
        )

    blocked = [
        (phase, predicate_state_message(state, phase))
        for phase in PHASE_ORDER
        if not summary[phase.value]["completed"] or summary[phase.value]["stale"]
    ]
    if blocked:
        phase, message = blocked[0]
        click.echo("")
        click.echo(f"Next: {phase.value}")
        if message:
            click.echo(message)


@cli.command("usage")
@click.option(
    "--history",
    "history_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to an exported session history (JSON list).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print machine-readable JSON.")
def usage(history_path: Path, as_json: bool) -> None:
    """Show token usage and function-calling metrics per stage."""
    session = _load_session(history_path)
    collection = reduce_collections(
        event.aggregates for event in session.history if isinstance(event, PhaseCompleteEvent)
    )

    if as_json:
        click.echo(collection.model_dump_json(indent=2))
        return

    click.echo(f"{'Stage':<28} {'Tokens':>10} {'Input':>10} {'Cached':>10} {'Output':>10} {'Calls':>6} {'OK':>5}")
    rows = sorted(collection.stages.items()) + [("total", collection.total)]
    for stage, aggregate in rows:
        usage_ = aggregate.token_usage
        metric = aggregate.metric
        click.echo(
            f"{stage:<28} {usage_.total:>10,} {usage_.input.total:>10,} {usage_.input.cached:>10,} "
            f"{usage_.output.total:>10,} {metric.attempt:>6} {metric.success:>5}"
        )


def main() -> None:
    """Entry point used by `phaseforge` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli()


if __name__ == "__main__":
    main()
