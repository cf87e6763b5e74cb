"""Administrative CLI commands for CarePlan."""

from __future__ import annotations

import click

from .config import BaseConfig
from .context import AppContext, create_app_context
from .errors import CarePlanError
from .logging_config import setup_logging
from .money import format_cents
from .services.rollover import RolloverPolicy, YearRollover


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Care scheduling and budget administration."""

    config = BaseConfig()
    setup_logging(config)
    ctx.obj = config


def _context(ctx: click.Context) -> AppContext:
    return create_app_context(ctx.obj)


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create tables and uniqueness indexes."""

    app = _context(ctx)
    click.echo(f"Database ready: {app.config.DATABASE_URL}")


@cli.command("summary")
@click.argument("client_id")
@click.argument("year", type=int)
@click.pass_context
def summary(ctx: click.Context, client_id: str, year: int) -> None:
    """Print the budget summary for CLIENT_ID in YEAR."""

    app = _context(ctx)
    try:
        result = app.budget.get_budget_summary(client_id, year)
    except CarePlanError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Budget {result.year} for {result.client_id}")
    click.echo(f"  Annual allocated:  {format_cents(result.annual_allocated)}")
    click.echo(f"  Opening carryover: {format_cents(result.opening_carryover)}")
    click.echo(f"  Allocated:         {format_cents(result.allocated)}")
    click.echo(f"  Spent:             {format_cents(result.spent)}")
    click.echo(f"  Remaining:         {format_cents(result.remaining)}")
    click.echo(f"  Surplus:           {format_cents(result.surplus)}")
    if result.overspent_categories:
        click.echo(f"  Overspent: {', '.join(result.overspent_categories)}")


@cli.command("years")
@click.argument("client_id")
@click.pass_context
def years(ctx: click.Context, client_id: str) -> None:
    """List budget years for CLIENT_ID, newest first."""

    app = _context(ctx)
    try:
        found = app.budget.list_years(client_id)
    except CarePlanError as exc:
        raise click.ClickException(str(exc)) from exc
    if not found:
        click.echo("No budget years.")
        return
    for year in found:
        click.echo(str(year))


@cli.command("rollover")
@click.argument("client_id")
@click.argument("year", type=int)
@click.option("--force", is_flag=True, default=False, help="Roll over a year that has not closed yet")
@click.option(
    "--allow-deficit",
    is_flag=True,
    default=False,
    help="Carry a negative surplus forward instead of opening at zero",
)
@click.pass_context
def rollover(ctx: click.Context, client_id: str, year: int, force: bool, allow_deficit: bool) -> None:
    """Carry YEAR's surplus into the next year for CLIENT_ID."""

    app = _context(ctx)
    service = app.rollover
    if allow_deficit:
        service = YearRollover(
            app.budget_repo,
            clock=app.clock,
            policy=RolloverPolicy(clamp_negative=False),
            retry_policy=app.rollover.retry_policy,
        )
    try:
        opened = service.rollover(client_id, year, force=force)
    except CarePlanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"Opened {opened.year} for {opened.client_id} with carryover "
        f"{format_cents(opened.opening_carryover)}"
    )


@cli.command("refundables")
@click.argument("client_id")
@click.argument("year", type=int)
@click.pass_context
def refundables(ctx: click.Context, client_id: str, year: int) -> None:
    """List purchase lines in YEAR that still have an amount left to refund."""

    app = _context(ctx)
    try:
        lines = app.ledger.refundables(client_id, year)
    except CarePlanError as exc:
        raise click.ClickException(str(exc)) from exc
    if not lines:
        click.echo("Nothing to refund.")
        return
    for line in lines:
        click.echo(
            f"{line.purchase_date.isoformat()}  #{line.transaction_id}/{line.line_id}  "
            f"{line.category_id}/{line.care_item_slug}  "
            f"{format_cents(line.remaining)} of {format_cents(line.original_amount)}"
        )


def main() -> None:
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
