"""mnemos CLI: operator commands over the scheduling service."""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer

from mnemos.application.config import EngineConfig, resolve_config
from mnemos.application.factory import build_service, get_stores
from mnemos.application.service import SchedulingService
from mnemos.domain.errors import (
    InvalidTransitionError,
    InvariantViolation,
    SchedulingError,
    StoreUnavailableError,
    UnknownCardError,
    ValidationError,
)
from mnemos.domain.models import CardRef
from mnemos.domain.timeutil import ensure_aware

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="mnemos: spaced-repetition scheduling engine.",
    no_args_is_help=True,
)

cards_app = typer.Typer(help="Manage the cards of a project.", no_args_is_help=True)
app.add_typer(cards_app, name="cards")

config_app = typer.Typer(help="Inspect mnemos configuration.", no_args_is_help=True)
app.add_typer(config_app, name="config")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s:%(name)s:%(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

# Exit codes per error family; anything else from the engine exits 1
EXIT_CODES: dict[type[SchedulingError], int] = {
    ValidationError: 2,
    InvalidTransitionError: 2,
    UnknownCardError: 3,
    InvariantViolation: 4,
    StoreUnavailableError: 5,
}


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose", "-v", count=True, help="Increase verbosity. Repeat for more detail."
        ),
    ] = 0,
    backend: Annotated[
        str | None, typer.Option(help="Storage backend: sqlite or memory.")
    ] = None,
    db_path: Annotated[Path | None, typer.Option(help="SQLite database file.")] = None,
    settings_file: Annotated[
        Path | None, typer.Option(help="YAML file with user defaults and project overrides.")
    ] = None,
):
    """Global settings for mnemos."""
    ctx.ensure_object(dict)
    ctx.obj["overrides"] = {
        "backend": backend,
        "db_path": db_path,
        "settings_file": settings_file,
        "verbose": verbose or None,
    }
    level = logging.DEBUG if verbose >= 2 else logging.INFO if verbose == 1 else logging.WARNING
    logging.getLogger().setLevel(level)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config(ctx: typer.Context) -> EngineConfig:
    return resolve_config((ctx.obj or {}).get("overrides"))


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return ensure_aware(datetime.fromisoformat(value))
    except ValueError as e:
        raise typer.BadParameter(f"not an ISO-8601 timestamp: {value}") from e


def _emit(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _run(ctx: typer.Context, action: Callable[[SchedulingService], Awaitable[T]]) -> T:
    """Build the service, run one operation, and turn engine errors into exit codes."""
    config = _config(ctx)

    async def call() -> T:
        service = build_service(config)
        try:
            return await action(service)
        finally:
            await service.aclose()

    try:
        return asyncio.run(call())
    except SchedulingError as e:
        code = next((c for t, c in EXIT_CODES.items() if isinstance(e, t)), 1)
        typer.secho(f"Error: {e}", fg="red", err=True)
        raise typer.Exit(code) from e


UserArg = Annotated[str, typer.Argument(help="User id.")]
ProjectArg = Annotated[str, typer.Argument(help="Project id.")]
CardArg = Annotated[str, typer.Argument(help="Card id.")]
NowOpt = Annotated[
    str | None, typer.Option("--now", help="Evaluate at this ISO-8601 time instead of now.")
]


# ---------------------------------------------------------------------------
# Study commands
# ---------------------------------------------------------------------------


@app.command("next")
def next_card(
    ctx: typer.Context,
    user: UserArg,
    project: ProjectArg,
    now: NowOpt = None,
    bury: Annotated[
        list[str] | None, typer.Option("--bury", help="Card id buried for this session.")
    ] = None,
):
    """Show the card to study next, or null when nothing is eligible."""
    card_id = _run(
        ctx, lambda s: s.get_next_card(user, project, now=_parse_now(now), buried=bury or ())
    )
    _emit({"card_id": card_id})


@app.command()
def rate(
    ctx: typer.Context,
    user: UserArg,
    project: ProjectArg,
    card: CardArg,
    rating: Annotated[str, typer.Argument(help="again, hard, good, easy (or 1-4).")],
    event_id: Annotated[
        str | None, typer.Option(help="Rating event id; reuse it when retrying.")
    ] = None,
    now: NowOpt = None,
):
    """Record a rating for a card and print its new scheduling state."""
    state = _run(
        ctx,
        lambda s: s.rate_card(
            user, project, card, rating, now=_parse_now(now), event_id=event_id
        ),
    )
    _emit(state.to_dict())


@app.command()
def stats(ctx: typer.Context, user: UserArg, project: ProjectArg, now: NowOpt = None):
    """Queue counts for a project, consistent with what `next` would select."""
    result = _run(ctx, lambda s: s.get_due_stats(user, project, now=_parse_now(now)))
    _emit(asdict(result))


@app.command()
def usage(ctx: typer.Context, user: UserArg, project: ProjectArg, now: NowOpt = None):
    """Today's counters for the project and for the user across projects."""
    result = _run(ctx, lambda s: s.get_daily_usage(user, project, now=_parse_now(now)))
    _emit(asdict(result))


@app.command()
def summary(ctx: typer.Context, user: UserArg, project: ProjectArg, now: NowOpt = None):
    """Today's study figures for a project: counts, lapses and accuracy."""
    result = _run(ctx, lambda s: s.get_review_summary(user, project, now=_parse_now(now)))
    _emit(asdict(result))


@app.command()
def state(ctx: typer.Context, user: UserArg, project: ProjectArg, card: CardArg):
    """Print the scheduling state of a card."""
    result = _run(ctx, lambda s: s.get_card_state(user, project, card))
    _emit(result.to_dict())


# ---------------------------------------------------------------------------
# Maintenance commands
# ---------------------------------------------------------------------------


@app.command()
def undo(
    ctx: typer.Context,
    user: UserArg,
    project: ProjectArg,
    card: CardArg,
    event_id: Annotated[
        str | None, typer.Option(help="Rating to undo; defaults to the card's latest.")
    ] = None,
):
    """Revert a card's latest rating and give back today's counters."""
    result = _run(ctx, lambda s: s.undo_rating(user, project, card, event_id=event_id))
    _emit(result.to_dict())


@app.command("clear-leech")
def clear_leech(ctx: typer.Context, user: UserArg, project: ProjectArg, card: CardArg):
    """Clear a card's leech flag, re-enabling it if it was suspended as a leech."""
    result = _run(ctx, lambda s: s.clear_leech(user, project, card))
    _emit(result.to_dict())


@app.command()
def suspend(ctx: typer.Context, user: UserArg, project: ProjectArg, card: CardArg):
    """Exclude a card from selection until it is unsuspended."""
    result = _run(ctx, lambda s: s.suspend_card(user, project, card))
    _emit(result.to_dict())


@app.command()
def unsuspend(ctx: typer.Context, user: UserArg, project: ProjectArg, card: CardArg):
    """Return a suspended card to the state it had before."""
    result = _run(ctx, lambda s: s.unsuspend_card(user, project, card))
    _emit(result.to_dict())


@app.command()
def reset(ctx: typer.Context, user: UserArg, project: ProjectArg, card: CardArg):
    """Forget a card's progress and make it New again."""
    result = _run(ctx, lambda s: s.reset_card(user, project, card))
    _emit(result.to_dict())


# ---------------------------------------------------------------------------
# Cards subgroup
# ---------------------------------------------------------------------------


@cards_app.command("add")
def cards_add(
    ctx: typer.Context,
    user: UserArg,
    project: ProjectArg,
    card_ids: Annotated[list[str], typer.Argument(help="Card ids to register.")],
    sibling_key: Annotated[
        str | None, typer.Option(help="Mark the cards as siblings of each other.")
    ] = None,
):
    """Register cards with a project so the engine can schedule them."""
    config = _config(ctx)

    async def run() -> list[str]:
        _, catalog, _, _ = get_stores(config)
        added = []
        for card_id in card_ids:
            ref = CardRef(card_id=card_id, sibling_key=sibling_key)
            if await catalog.add_card(user, project, ref):
                added.append(card_id)
        return added

    try:
        added = asyncio.run(run())
    except StoreUnavailableError as e:
        typer.secho(f"Error: {e}", fg="red", err=True)
        raise typer.Exit(EXIT_CODES[StoreUnavailableError]) from e

    skipped = [c for c in card_ids if c not in added]
    if skipped:
        logger.info(f"Already registered: {', '.join(skipped)}")
    _emit({"added": added, "skipped": skipped})


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Display final resolved configuration."""
    config = _config(ctx)
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump().items()}
    typer.echo(json.dumps(d, indent=2))


if __name__ == "__main__":
    app()
