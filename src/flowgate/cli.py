# cli.py
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import click

from . import settings
from .budget import ResourceGovernor
from .cache import MemoStore
from .dag import validate_pipeline
from .errors import FlowError
from .loader import load_pipeline
from .log import setup_logging, timer
from .model import RunStatus
from .runner import PipelineExecutor, save_result
from .steps import default_registry
from .ui.console import Console, get_console, set_console


def _fail(ctx: click.Context, exc: Exception) -> None:
    """Report a load/validation problem and exit 1."""
    console = get_console()
    if isinstance(exc, FlowError):
        details = [f"{k}: {v}" for k, v in exc.details.items()]
        if exc.step:
            details.insert(0, f"step: {exc.step}")
        console.print_error(
            "Invalid pipeline",
            exc.message,
            details=details or None,
            suggestion="Check the pipeline file, then run:\n  flowgate validate <pipeline>",
        )
    elif isinstance(exc, FileNotFoundError):
        console.print_error("Pipeline file not found", str(exc))
    else:
        console.print_exception(exc)
    ctx.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--home",
    default=settings.HOME,
    show_default=True,
    help="State directory (budget ledger, cache)",
)
@click.pass_context
def cli(ctx, debug, home):
    """flowgate: budget-aware pipeline runner with memoized steps."""
    console = Console(debug=debug)
    set_console(console)
    setup_logging("DEBUG" if debug else None)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["home"] = home


def _governor(ctx: click.Context) -> ResourceGovernor:
    return ResourceGovernor(settings.ledger_path(ctx.obj["home"]), tier=settings.BUDGET_TIER)


def _memo(ctx: click.Context) -> MemoStore:
    return MemoStore(settings.cache_dir(ctx.obj["home"]), max_bytes=settings.cache_max_bytes())


# ---------------------------------------------------------------------
# run / validate
# ---------------------------------------------------------------------

@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.option("--input", "initial_input", default=None, help="Initial pipeline input")
@click.option("--no-cache", is_flag=True, default=False, help="Do not read or write memoized results")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Override options.max_concurrency")
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Abort on the first failure (default: the pipeline's own setting)",
)
@click.option("--report", default=None, type=click.Path(dir_okay=False), help="Write the run result as JSON")
@click.option("--no-budget", is_flag=True, default=False, help="Skip budget admission and settlement")
@click.pass_context
def run(ctx, pipeline_file, initial_input, no_cache, workers, fail_fast, report, no_budget):
    """Run a pipeline file (.py, .json, .yaml)."""
    console = get_console()
    registry = default_registry()

    try:
        with timer(f"load {Path(pipeline_file).name}"):
            spec = load_pipeline(pipeline_file, registry)
            validate_pipeline(spec)
            bound = registry.bind(spec.steps)
    except Exception as e:
        _fail(ctx, e)
        return

    options = spec.options
    if workers is not None:
        options = replace(options, max_concurrency=workers)
    if fail_fast is not None:
        options = replace(options, fail_fast=fail_fast)
    if no_cache:
        options = replace(options, use_cache=False)
    spec = replace(spec, options=options)

    console.print_run_started(
        pipeline=spec.name,
        source=Path(pipeline_file).name,
        step_count=len(spec.steps),
    )
    for name, impl in bound.items():
        console.print_debug(f"{name}: {type(impl).__name__}")

    memo = None if no_cache else _memo(ctx)
    try:
        governor = None if no_budget else _governor(ctx)
        if governor is not None and workers is not None:
            slots = governor.status().max_concurrency
            if workers > slots:
                console.print_info(
                    f"Note: --workers {workers} exceeds the budget slot limit ({slots}); "
                    f"groups run at most {slots} steps at once"
                )
        executor = PipelineExecutor(registry, governor=governor, memo=memo)
        result = executor.run(spec, initial_input)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        ctx.exit(130)
        return
    except Exception as e:
        console.print_exception(e)
        ctx.exit(1)
        return
    finally:
        if memo is not None:
            memo.close()

    console.print_results(result)
    if report:
        path = save_result(result, report)
        console.print_info(f"Report written to {path}")

    if result.status != RunStatus.SUCCESS:
        ctx.exit(1)


@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.pass_context
def validate(ctx, pipeline_file):
    """Validate a pipeline file and print its execution plan."""
    console = get_console()
    registry = default_registry()
    try:
        spec = load_pipeline(pipeline_file, registry)
        levels = validate_pipeline(spec)
        registry.bind(spec.steps)
    except Exception as e:
        _fail(ctx, e)
        return

    console.print_plan(spec, levels)
    console.print_info(f"\nOK: {spec.name} ({len(spec.steps)} steps)")


# ---------------------------------------------------------------------
# budget
# ---------------------------------------------------------------------

@cli.group()
def budget():
    """Inspect or change the budget ledger."""


@budget.command("status")
@click.pass_context
def budget_status(ctx):
    """Show usage against the current tier."""
    gov = _governor(ctx)
    get_console().print_budget_status(gov.status())


@budget.command("reset")
@click.pass_context
def budget_reset(ctx):
    """Zero recorded usage."""
    _governor(ctx).reset()
    get_console().print_info("Budget usage reset")


@budget.command("tier")
@click.argument("name")
@click.pass_context
def budget_tier(ctx, name):
    """Switch the current tier."""
    gov = _governor(ctx)
    try:
        gov.change_tier(name)
    except KeyError:
        get_console().print_error(
            "Unknown tier",
            f"No budget tier named {name!r}",
            details=[f"Known tiers: {', '.join(sorted(gov.ledger.tiers))}"],
        )
        ctx.exit(1)
        return
    get_console().print_info(f"Budget tier set to {name}")


@budget.command("limits")
@click.option("--max-concurrency", default=None, type=click.IntRange(min=1))
@click.option("--max-wall-time", default=None, type=click.FloatRange(min=0, min_open=True),
              help="Per-attempt wall time limit (seconds)")
@click.option("--warning-at", default=None, type=click.FloatRange(0, 1))
@click.option("--stop-at", default=None, type=click.FloatRange(0, 1))
@click.pass_context
def budget_limits(ctx, max_concurrency, max_wall_time, warning_at, stop_at):
    """Show (or update) limits and alert thresholds."""
    gov = _governor(ctx)
    console = get_console()
    try:
        if max_concurrency is not None or max_wall_time is not None:
            gov.update_limits(max_concurrency=max_concurrency, max_wall_time_per_attempt=max_wall_time)
        if warning_at is not None or stop_at is not None:
            gov.update_alerts(warning_at=warning_at, stop_at=stop_at)
    except ValueError as e:
        console.print_error("Invalid limits", str(e))
        ctx.exit(1)
        return

    ledger = gov.ledger
    console.print_header("LIMITS")
    console.print_info(f"max_concurrency:           {ledger.limits.max_concurrency}")
    console.print_info(f"max_wall_time_per_attempt: {ledger.limits.max_wall_time_per_attempt}s")
    console.print_info(f"warning_at:                {ledger.alerts.warning_at}")
    console.print_info(f"stop_at:                   {ledger.alerts.stop_at}")


# ---------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------

@cli.group()
def cache():
    """Inspect or maintain the memo store."""


@cache.command("stats")
@click.pass_context
def cache_stats(ctx):
    with _memo(ctx) as memo:
        get_console().print_cache_stats(str(memo.root), memo.stats())


@cache.command("clear")
@click.pass_context
def cache_clear(ctx):
    with _memo(ctx) as memo:
        removed = memo.clear()
    get_console().print_info(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")


@cache.command("sweep")
@click.pass_context
def cache_sweep(ctx):
    """Delete expired entries, then enforce the size limit."""
    with _memo(ctx) as memo:
        expired = memo.sweep()
        evicted = memo.enforce_size_limit()
    get_console().print_info(f"Swept {expired} expired, evicted {evicted} over size limit")


if __name__ == "__main__":
    cli()
