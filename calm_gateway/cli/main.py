"""
CLI interface for the Calm Sphere gateway.

Provides command-line access to the companion chat, journaling, mood
insights and credit usage.
"""

import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from calm_gateway.config.loader import GatewayConfig, default_config, load_gateway_config
from calm_gateway.core.context import ContextAssembler, DEFAULT_LANGUAGE
from calm_gateway.core.gateway import Gateway
from calm_gateway.core.insights import (
    activity_streak_days,
    analyze_mood,
    comment_on_journal,
    most_active_weekday,
    recent_activity,
)
from calm_gateway.core.ledger import (
    LedgerContentionError,
    QuotaExceededError,
    UsageLedger,
    UserNotFoundError,
)
from calm_gateway.sdk.generation_client import GenerationClient
from calm_gateway.storage.models import TurnRole
from calm_gateway.storage.repository import (
    JournalRepository,
    MessageRepository,
    UserRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_QUOTA = 2

ConfigOption = typer.Option(None, "--config", "-c", help="Path to a YAML gateway config")
DbOption = typer.Option(None, "--db", help="Override the SQLite database path")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_config(config_path: Optional[str], db: Optional[str]) -> GatewayConfig:
    try:
        config = load_gateway_config(config_path) if config_path else default_config()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        config = replace(config, storage=replace(config.storage, db_path=db))
    return config


def build_ledger(config: GatewayConfig) -> UsageLedger:
    return UsageLedger(
        UserRepository(config.storage.db_path),
        policy=config.credits,
        max_attempts=config.storage.max_save_attempts,
    )


def build_gateway(config: GatewayConfig) -> Gateway:
    """Wire a gateway from configuration."""
    settings = config.generation
    messages = MessageRepository(config.storage.db_path)
    client = GenerationClient(
        model=settings.model,
        base_url=settings.base_url,
        timeout=settings.timeout_seconds,
        api_key_env=settings.api_key_env,
    )
    return Gateway(
        ledger=build_ledger(config),
        client=client,
        assembler=ContextAssembler(messages, config.context),
        messages=messages,
        output_estimate=settings.output_estimate_tokens,
        timeout=settings.timeout_seconds,
    )


def _print_usage_line(snapshot) -> None:
    console.print(f"[dim]Credits: {snapshot.remaining:,} of {snapshot.limit:,} remaining today[/]")


def _exit_for_quota(error: QuotaExceededError) -> None:
    console.print(f"[yellow]Daily credit limit reached.[/] {error.remaining:,} credits remaining; try again tomorrow.")
    sys.exit(EXIT_CODE_QUOTA)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Calm Sphere gateway CLI."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("Calm Sphere gateway - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Initialize the gateway database."""
    try:
        settings = _load_config(config, db)
        initialize_schema(settings.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-user")
def add_user(user_id: str, config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Register a user with a fresh daily allowance."""
    settings = _load_config(config, db)
    try:
        UserRepository(settings.storage.db_path).create_user(user_id)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Added user {user_id}")


@app.command()
def usage(user_id: str, config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Show a user's credit usage for today."""
    settings = _load_config(config, db)
    try:
        snapshot = build_ledger(settings).snapshot(user_id)
    except UserNotFoundError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Credit usage for {user_id}")
    table.add_column("Date (UTC)")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Daily limit", justify="right")
    table.add_row(snapshot.date, f"{snapshot.used:,}", f"{snapshot.remaining:,}", f"{snapshot.limit:,}")
    console.print(table)


@app.command()
def chat(
    user_id: str,
    message: str,
    language: str = typer.Option(DEFAULT_LANGUAGE, "--language", "-l", help="Reply language"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Send one message to the companion."""
    settings = _load_config(config, db)
    try:
        gateway = build_gateway(settings)
        recent = gateway.messages.recent_turns(
            user_id, limit=settings.context.casual_window, newest_first=False
        )
        reply = gateway.request_generation(user_id, message, recent, language)
    except QuotaExceededError as e:
        _exit_for_quota(e)
    except (UserNotFoundError, LedgerContentionError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold magenta]Calm Sphere:[/] {reply.reply_text}")
    if reply.degraded:
        console.print(f"[dim]Generation unavailable ({reply.failure}).[/]")
    _print_usage_line(reply.usage)


@app.command()
def history(
    user_id: str,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent messages"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Show a user's recent conversation."""
    settings = _load_config(config, db)
    turns = MessageRepository(settings.storage.db_path).recent_turns(user_id, limit=limit, newest_first=False)
    if not turns:
        console.print("[dim]No previous conversation.[/]")
        return

    table = Table(title=f"Conversation with {user_id}")
    table.add_column("Time (UTC)")
    table.add_column("From")
    table.add_column("Message")
    for turn in turns:
        sender = "You" if turn.role == TurnRole.USER else "Calm Sphere"
        table.add_row(turn.timestamp.strftime("%Y-%m-%d %H:%M"), sender, turn.content)
    console.print(table)


@app.command("clear-history")
def clear_history(user_id: str, config: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Delete a user's entire conversation."""
    settings = _load_config(config, db)
    removed = MessageRepository(settings.storage.db_path).clear_all(user_id)
    console.print(f"[green]✓[/] Chat history cleared ({removed} messages)")


@app.command()
def journal(
    user_id: str,
    content: str,
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Prompt the entry answers"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Save a journal entry and get a supportive comment."""
    settings = _load_config(config, db)
    try:
        gateway = build_gateway(settings)
        if gateway.ledger.users.get_user(user_id) is None:
            raise UserNotFoundError(user_id)
        journal_repo = JournalRepository(settings.storage.db_path)
        entry = journal_repo.append_entry(user_id, content)
        comment = comment_on_journal(gateway, user_id, content, prompt)
        if not comment.degraded:
            journal_repo.set_comment(entry.id, comment.value)
    except QuotaExceededError as e:
        console.print("[green]✓[/] Journal entry saved")
        _exit_for_quota(e)
    except (UserNotFoundError, LedgerContentionError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] Journal entry saved")
    console.print(f"[bold magenta]Calm Sphere:[/] {comment.value}")
    _print_usage_line(comment.usage)


@app.command()
def mood(
    user_id: str,
    days: int = typer.Option(30, "--days", "-d", help="Days of activity to analyze"),
    config: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Analyze a user's recent mood from journal entries and chats."""
    settings = _load_config(config, db)
    try:
        gateway = build_gateway(settings)
        entries = JournalRepository(settings.storage.db_path).recent_entries(user_id, days=days)
        turns = gateway.messages.recent_turns(user_id, limit=settings.context.history_fetch_limit)
        outcome = analyze_mood(gateway, user_id, entries, turns)
    except QuotaExceededError as e:
        _exit_for_quota(e)
    except (UserNotFoundError, LedgerContentionError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    analysis = outcome.value
    active_dates = [entry.created_at.date() for entry in entries] + [
        turn.timestamp.date() for turn in turns if turn.role == TurnRole.USER
    ]

    console.print(f"\n[bold]Overall mood:[/] {analysis['overallMood']} ({analysis['moodScore']:+})")
    if analysis.get("emotions"):
        console.print(f"Emotions: {', '.join(str(e) for e in analysis['emotions'])}")
    for insight in analysis.get("insights", []):
        console.print(f"  • {insight}")
    console.print(f"Streak: {activity_streak_days(active_dates, datetime.now(timezone.utc).date())} days")
    console.print(f"Most active day: {most_active_weekday(active_dates)}")
    activity = recent_activity(entries, turns)
    if activity:
        table = Table(title="Recent activity")
        table.add_column("When (UTC)")
        table.add_column("Type")
        table.add_column("Mood")
        table.add_column("Entry")
        for item in activity:
            table.add_row(
                item.timestamp.strftime("%Y-%m-%d %H:%M"),
                item.kind,
                item.mood or "-",
                item.preview,
            )
        console.print(table)
    _print_usage_line(outcome.usage)


if __name__ == "__main__":
    app()
