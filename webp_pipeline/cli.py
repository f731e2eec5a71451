"""Command line tools for the WebP pipeline."""

from __future__ import annotations

import logging
import sys
from typing import List, Sequence

import click

from webp_pipeline.core.logging import configure_logging
from webp_pipeline.models.job import RetryCandidate, RetryStatusFilter, RetrySweepOptions
from webp_pipeline.services.retry_sweeper import RetrySweeper

TABLE_HEADERS = ["ID", "Owner ID", "Original Name", "Status", "Failed At", "Attempts", "Error"]


def build_sweeper() -> RetrySweeper:
    return RetrySweeper()


def _candidate_row(candidate: RetryCandidate) -> List[str]:
    failed_at = candidate.failed_at.strftime("%Y-%m-%d %H:%M:%S") if candidate.failed_at else "N/A"
    return [
        str(candidate.id),
        str(candidate.owner_id),
        candidate.original_name,
        candidate.status.value,
        failed_at,
        str(candidate.attempts),
        (candidate.error or "N/A")[:30] + "...",
    ]


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]

    border = "+" + "+".join("-" * (w + 2) for w in widths) + "+"

    def line(cells: Sequence[str]) -> str:
        return "| " + " | ".join(cell.ljust(w) for cell, w in zip(cells, widths)) + " |"

    return "\n".join([border, line(headers), border, *(line(r) for r in rows), border])


@click.group()
def cli() -> None:
    """WebP pipeline maintenance commands."""


@cli.command("retry-failed")
@click.option("--hours", default=24, show_default=True, type=int, help="Retry conversions failed in the last N hours")
@click.option("--limit", default=50, show_default=True, type=click.IntRange(min=0), help="Maximum number of images to retry")
@click.option(
    "--status",
    default=RetryStatusFilter.failed.value,
    show_default=True,
    type=click.Choice([s.value for s in RetryStatusFilter]),
    help="Status to retry",
)
@click.option("--force", is_flag=True, help="Retry even if max attempts were reached")
@click.option("--dry-run", is_flag=True, help="Show what would be retried without doing it")
@click.option("-v", "--verbose", is_flag=True, help="Debug output")
def retry_failed(hours: int, limit: int, status: str, force: bool, dry_run: bool, verbose: bool) -> None:
    """Retry failed WebP conversion jobs for images."""

    configure_logging(logging.DEBUG if verbose else logging.WARNING, stream=sys.stderr, json=False)
    options = RetrySweepOptions(hours=hours, limit=limit, status=status, force=force, dry_run=dry_run)

    click.echo("Starting failed WebP conversions retry...\n")
    click.echo("Parameters:")
    click.echo(f"  - Hours: {hours}")
    click.echo(f"  - Limit: {limit}")
    click.echo(f"  - Status: {status}")
    click.echo(f"  - Force: {'Yes' if force else 'No'}")
    click.echo(f"  - Dry run: {'Yes' if dry_run else 'No'}\n")

    sweeper = build_sweeper()
    candidates = sweeper.select(options)
    if not candidates:
        click.secho("No failed conversions found to retry.", fg="yellow")
        return

    click.echo(f"Found {len(candidates)} failed conversion(s).")

    if dry_run:
        report = sweeper.retry(candidates, options)
        click.echo("Dry run results (would retry):\n")
        click.echo(render_table(TABLE_HEADERS, [_candidate_row(c) for c in report.candidates]))
        click.echo(f"\nTotal: {report.selected} image(s) would be retried.")
        return

    with click.progressbar(length=len(candidates), label="Retrying") as bar:
        report = sweeper.retry(candidates, options, on_progress=lambda _record: bar.update(1))

    click.echo("")
    for image_id in report.failed_ids:
        click.secho(f"Failed to retry image ID: {image_id}", fg="red", err=True)

    if report.retried:
        click.secho(f"Successfully retried {report.retried} image(s).", fg="green")
    else:
        click.secho("No images were retried.", fg="yellow")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
