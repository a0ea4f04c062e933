"""Console output formatting for the flowgate CLI."""

from __future__ import annotations

import sys
import time
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..budget import BudgetStatus
    from ..cache import CacheStats
    from ..model import PipelineSpec
    from ..runner import RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, pipeline: str, source: str, step_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Pipeline: {pipeline}")
        print(f"Source: {source}")
        print(f"Steps: {step_count}")
        print()

    def print_plan(self, spec: "PipelineSpec", levels: List[List[str]]) -> None:
        """Print the topological plan of a pipeline, one level per line."""
        self.print_header(f"PLAN: {spec.name}")
        for i, level in enumerate(levels, start=1):
            parts = []
            for name in level:
                step = spec.step(name)
                if step.is_parallel:
                    parts.append(f"{name} [{step.group_name}]")
                else:
                    parts.append(name)
            print(f"  {i}. {', '.join(parts)}")
        if spec.groups:
            print("Groups:")
            for g in spec.groups.values():
                print(
                    f"  {g.name}: max_concurrency={g.max_concurrency} "
                    f"timeout={g.per_attempt_timeout} retry_count={g.retry_count} "
                    f"retry_delay={g.retry_delay}"
                )

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for rec in result.steps.values():
            line = f"  {rec.name}: {rec.state.value.upper()}"
            extras = []
            if rec.cached:
                extras.append("cached")
            if rec.attempts > 1:
                extras.append(f"{rec.attempts} attempts")
            if rec.duration_sec:
                extras.append(f"{rec.duration_sec:.2f}s")
            if extras:
                line += f" ({', '.join(extras)})"
            print(line)
            if rec.error and (self.debug or rec.state.value == "failed"):
                kind = f"[{rec.error_kind.value}] " if rec.error_kind else ""
                print(f"      {kind}{rec.error.splitlines()[0]}")
        print()
        print(f"Status: {result.status.value}")
        print(f"Duration: {result.duration_sec:.1f}s")
        print(f"Tokens: {result.total_tokens}")
        print(f"Cost: ${result.total_cost_usd:.4f}")

    def print_budget_status(self, status: "BudgetStatus") -> None:
        self.print_header(f"BUDGET ({status.tier})")
        print(f"Tokens:    {status.tokens} / {status.token_cap} ({status.rates.tokens * 100:.1f}%)")
        print(
            f"Cost:      ${status.cost_usd:.4f} / ${status.monthly_cost_cap:.2f} "
            f"({status.rates.cost * 100:.1f}%)"
        )
        print(
            f"Wall time: {status.wall_time_sec:.0f}s / {status.wall_time_cap:.0f}s "
            f"({status.rates.wall_time * 100:.1f}%)"
        )
        print(f"Active:    {status.active_requests} / {status.max_concurrency}")

    def print_cache_stats(self, root: str, stats: "CacheStats") -> None:
        self.print_header("CACHE")
        print(f"Location: {root}")
        print(f"Entries:  {stats.total_files}")
        print(f"Size:     {stats.total_bytes / 1024:.1f} KiB")
        if stats.oldest_written_at is not None:
            print(f"Oldest:   {_fmt_time(stats.oldest_written_at)}")
            print(f"Newest:   {_fmt_time(stats.newest_written_at)}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


def _fmt_time(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
