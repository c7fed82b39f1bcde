"""Command-line interface for the inbox triage engine.

Provides commands for configuration validation, database setup, sender rule
seeding, single-conversation reclassification, batch reconciliation,
corrections and the JSON API server.

Usage:
    inbox-triage validate-config
    inbox-triage init-db
    inbox-triage seed-rules ws-1
    inbox-triage reclassify conv-1 --dry-run
    inbox-triage batch ws-1 --mode fast --all
    inbox-triage correct conv-1 supplier_invoice --by sam --rule domain
    inbox-triage serve
"""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from inbox_triage.config import validate_config_file
from inbox_triage.core.errors import TriageError
from inbox_triage.core.logging import configure_logging

if TYPE_CHECKING:
    from inbox_triage.components import TriageComponents
    from inbox_triage.engine.batch import BatchItemError, BatchItemResult, BatchResult

console = Console()


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run an async command body with the CLI's error reporting."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except TriageError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _init_components(use_classifier: bool = True) -> TriageComponents:
    """Load config and build the shared components.

    Prints an actionable error message and calls sys.exit(1) when the
    config cannot be loaded.
    """
    from inbox_triage.components import build_components
    from inbox_triage.config import get_config
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml "
            "or point TRIAGE_CONFIG_PATH at your config file."
        )
        sys.exit(1)

    return await build_components(config, use_default_classifier=use_classifier)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Inbox triage - classification, sender rules and batch reconciliation."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database schema if it does not exist."""

    async def _init() -> None:
        components = await _init_components(use_classifier=False)
        console.print(
            f"[green]✓[/green] Database ready at [cyan]{components.store.db_path}[/cyan]"
        )

    _run(_init())


@cli.command("seed-rules")
@click.argument("workspace_id")
@click.option(
    "--learn",
    is_flag=True,
    help="Also learn domain rules from senders that are almost always auto-handled",
)
def seed_rules(workspace_id: str, learn: bool) -> None:
    """Seed the known automated-sender rules for a workspace.

    Existing patterns, including rules learned from corrections, are left
    untouched.
    """
    from inbox_triage.classifier.sender_rules import learn_rules_from_history, seed_default_rules

    async def _seed() -> None:
        components = await _init_components(use_classifier=False)
        result = await seed_default_rules(components.store, workspace_id)
        console.print(
            f"[bold]Seeded rules[/bold] for [cyan]{workspace_id}[/cyan]: "
            f"{result.inserted} inserted, {result.skipped} skipped, {result.updated} updated"
        )

        if learn:
            learned = await learn_rules_from_history(components.store, workspace_id)
            console.print(
                f"[bold]Learned rules[/bold] from history: "
                f"{learned.inserted} inserted, {learned.skipped} skipped"
            )

    _run(_seed())


@cli.command("reclassify")
@click.argument("conversation_id")
@click.option("--dry-run", "is_dry_run", is_flag=True, help="Show the change without writing")
@click.option("--skip-llm", is_flag=True, help="Apply sender rules only")
def reclassify(conversation_id: str, is_dry_run: bool, skip_llm: bool) -> None:
    """Re-run classification and bucket resolution for one conversation."""
    from inbox_triage.engine.reclassify import ReclassifyOptions

    async def _reclassify() -> None:
        components = await _init_components(use_classifier=not skip_llm)
        config = components.config
        result = await components.pipeline.reclassify(
            conversation_id,
            ReclassifyOptions(
                dry_run=is_dry_run,
                skip_llm=skip_llm,
                prefer_rules=config.pipeline.prefer_sender_rules,
                review_threshold=config.review.message_threshold,
                triggered_by="cli",
            ),
        )

        if is_dry_run:
            console.print("[cyan]Dry-run mode:[/cyan] nothing was written\n")

        table = Table(title=f"Conversation {conversation_id}")
        table.add_column("Field")
        table.add_column("Before")
        table.add_column("After")
        before = result.original.to_dict()
        after = result.updated.to_dict()
        for field_name in before:
            style = "bold" if before[field_name] != after[field_name] else ""
            table.add_row(
                field_name,
                str(before[field_name]),
                str(after[field_name]),
                style=style,
            )
        console.print(table)

        if result.rule_applied:
            console.print(f"Sender rule applied: [cyan]{result.rule_pattern}[/cyan]")
        if not result.changed:
            console.print("[dim]Classification and bucket unchanged.[/dim]")

    _run(_reclassify())


def _print_batch_page(page: BatchResult) -> None:
    console.print(
        f"[dim]offset {page.offset}:[/dim] processed={page.processed} "
        f"changed={page.changed} skipped={page.skipped} ({page.duration_ms}ms)"
    )


def _print_batch_items(
    results: list[BatchItemResult],
    errors: list[BatchItemError],
    dry_run: bool,
) -> None:
    if results:
        title = "Would change" if dry_run else "Changed"
        table = Table(title=title)
        table.add_column("Conversation")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Rule")
        for item in results:
            table.add_row(
                item.id,
                item.original_bucket or "-",
                item.new_bucket or "-",
                "yes" if item.rule_applied else "",
            )
        console.print(table)

    for error in errors:
        retry = " (retryable)" if error.retryable else ""
        console.print(f"[yellow]Skipped {error.id}:[/yellow] {error.error_type}{retry}: {error.message}")


@cli.command("batch")
@click.argument("workspace_id")
@click.option(
    "--mode",
    type=click.Choice(["fast", "full"]),
    default="fast",
    help="fast: sender rules only; full: AI re-analysis",
)
@click.option("--dry-run", "is_dry_run", is_flag=True, help="Report changes without writing")
@click.option("--limit", default=None, type=int, help="Page size")
@click.option("--offset", default=0, type=int, help="Start offset")
@click.option("--all", "run_all", is_flag=True, help="Page until the workspace is exhausted")
def batch(
    workspace_id: str,
    mode: str,
    is_dry_run: bool,
    limit: int | None,
    offset: int,
    run_all: bool,
) -> None:
    """Reclassify a workspace's conversations page by page."""
    from inbox_triage.engine.batch import BatchMode, BatchOptions

    batch_mode = BatchMode(mode)

    async def _batch() -> None:
        components = await _init_components(use_classifier=not batch_mode.skip_llm)

        console.print(f"[bold]{batch_mode.label}[/bold] for [cyan]{workspace_id}[/cyan]")
        if is_dry_run:
            console.print("[cyan]Dry-run mode:[/cyan] nothing will be written\n")

        if not run_all:
            page = await components.reconciler.run_batch(
                workspace_id,
                BatchOptions(
                    limit=limit,
                    offset=offset,
                    dry_run=is_dry_run,
                    skip_llm=batch_mode.skip_llm,
                ),
            )
            _print_batch_page(page)
            _print_batch_items(page.results, page.errors, is_dry_run)
            if not page.exhausted:
                console.print(f"More conversations remain; next offset is {page.next_offset}.")
            return

        from inbox_triage.config import get_config, reload_config_if_changed

        def on_page(page: BatchResult) -> None:
            _print_batch_page(page)
            # Batch, review and pipeline edits apply from the next page; other
            # sections keep their startup values until restart
            if reload_config_if_changed():
                components.reconciler.update_config(get_config())
                console.print("[dim]Config reloaded (batch, review and pipeline settings).[/dim]")

        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)

        summary = await components.reconciler.run_all(
            workspace_id,
            batch_mode,
            dry_run=is_dry_run,
            cancel_event=cancel_event,
            page_size=limit,
            start_offset=offset,
            on_page=on_page,
        )
        loop.remove_signal_handler(signal.SIGINT)

        _print_batch_items(summary.results, summary.errors, is_dry_run)
        console.print(f"\n[bold]Batch Summary[/bold] (run {summary.batch_run_id[:8]}...)")
        console.print(f"  Pages:      {summary.pages}")
        console.print(f"  Processed:  {summary.processed}")
        console.print(f"  Changed:    {summary.changed}")
        console.print(f"  Skipped:    {summary.skipped}")
        console.print(f"  Duration:   {summary.duration_ms}ms")
        if summary.cancelled:
            console.print(
                f"  [yellow]Cancelled; resume with --offset {summary.next_offset}[/yellow]"
            )

    _run(_batch())


@cli.command("correct")
@click.argument("conversation_id")
@click.argument("label")
@click.option("--by", "corrected_by", required=True, help="Reviewer identity")
@click.option(
    "--rule",
    "rule_mode",
    type=click.Choice(["email", "domain", "rule", "review", "none"]),
    default="review",
    help="email/domain: create a sender rule now; rule: at the configured scope; "
    "review: learn after repeated "
    "corrections; none: no rule learning",
)
def correct(conversation_id: str, label: str, corrected_by: str, rule_mode: str) -> None:
    """Record a human correction for a conversation."""
    from inbox_triage.engine.corrections import (
        ExplicitRuleCorrection,
        NoRuleCorrection,
        ReviewCorrection,
    )

    if rule_mode == "rule":
        mode = ExplicitRuleCorrection()
    elif rule_mode in ("email", "domain"):
        mode = ExplicitRuleCorrection(scope=rule_mode)
    elif rule_mode == "none":
        mode = NoRuleCorrection()
    else:
        mode = ReviewCorrection()

    async def _correct() -> None:
        components = await _init_components(use_classifier=False)
        outcome = await components.recorder.record_correction(
            conversation_id,
            label,
            corrected_by=corrected_by,
            mode=mode,
        )
        console.print(
            f"[green]✓[/green] {conversation_id} is now [bold]{outcome.new_classification}[/bold] "
            f"({outcome.decision_bucket})"
        )
        if outcome.rule_created:
            console.print(f"  Created sender rule [cyan]{outcome.pattern}[/cyan]")
        elif outcome.rule_updated:
            console.print(f"  Updated sender rule [cyan]{outcome.pattern}[/cyan]")
        elif outcome.domain and rule_mode == "review":
            console.print(
                f"  [dim]{outcome.domain_correction_count} correction(s) for "
                f"{outcome.domain}; a domain rule is learned at "
                f"{components.config.learning.auto_rule_threshold}[/dim]"
            )

    _run(_correct())


@cli.command("rules")
@click.argument("workspace_id")
@click.option("--active-only", is_flag=True, help="Hide deactivated rules")
def rules(workspace_id: str, active_only: bool) -> None:
    """List a workspace's sender rules, most used first."""

    async def _rules() -> None:
        components = await _init_components(use_classifier=False)
        sender_rules = await components.store.list_sender_rules(workspace_id, active_only)
        if not sender_rules:
            console.print(f"No sender rules for [cyan]{workspace_id}[/cyan].")
            return

        table = Table(title=f"Sender rules for {workspace_id}")
        table.add_column("ID", justify="right")
        table.add_column("Pattern")
        table.add_column("Classification")
        table.add_column("Reply")
        table.add_column("Hits", justify="right")
        table.add_column("Active")
        for rule in sender_rules:
            table.add_row(
                str(rule.id),
                rule.pattern,
                rule.default_classification,
                "yes" if rule.default_requires_reply else "no",
                str(rule.hit_count),
                "yes" if rule.is_active else "[dim]no[/dim]",
            )
        console.print(table)

    _run(_rules())


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the JSON API server."""
    import uvicorn

    from inbox_triage.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This app has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
