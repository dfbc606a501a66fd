"""
ACTIONGATE CLI: The Interface

  actiongate chat --submission <id> --section actor_summary   (interactive)
  actiongate history --conversation <id>                       (stored thread)
  actiongate status                                            (config + API keys)
  actiongate init <path>                                       (bootstrap .actiongate)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from actiongate.audit_logger import AuditLogger
from actiongate.config_loader import load_config, validate_api_keys
from actiongate.controller import Controller
from actiongate.identity import BANNER, __codename__, __tagline__, __version__
from actiongate.session import build_store
from actiongate.state import ChatMessage, ConversationContext, Section

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".actiongate" / ".env")

app = typer.Typer(
    name="actiongate",
    help=f"{__codename__} — {__tagline__}\nConversational action gating.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    submission: str = typer.Option(..., "--submission", "-s", help="Submission the conversation belongs to"),
    section: Section = typer.Option(Section.GENERAL, "--section", help="Analysis section being discussed"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project name shown to the assistant"),
    step: Optional[str] = typer.Option(None, "--step", help="Current analysis step"),
    conversation: Optional[str] = typer.Option(None, "--conversation", "-c", help="Resume a conversation id"),
    base_dir: Optional[Path] = typer.Option(None, "--dir", "-d", help="Directory holding .actiongate/config.yaml"),
    audit_log: Optional[Path] = typer.Option(None, "--audit-log", help="Append turn events to this JSONL file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Interactive chat. `/new` starts a fresh conversation, `/history` shows this one, `/quit` exits."""
    _print_banner()
    _configure_logging(verbose)

    config = load_config(base_dir.resolve() if base_dir else None)
    controller = Controller(config=config)
    if audit_log:
        AuditLogger(str(audit_log), controller.bus)
    context = ConversationContext(
        submission_id=submission,
        section=section,
        conversation_id=conversation,
        project_name=project,
        current_step=step,
    )

    asyncio.run(_chat_loop(controller, context))


async def _chat_loop(controller: Controller, context: ConversationContext) -> None:
    conversation_id, display = await controller.sessions.open_session(
        context.submission_id, context.section, context.conversation_id
    )
    context = context.model_copy(update={"conversation_id": conversation_id})
    console.print(f"[dim]Conversation {conversation_id}[/]")
    for message in reversed(display):
        _print_message(message)

    while True:
        user_text = await asyncio.to_thread(console.input, "[bold]>> [/]")
        command = user_text.strip()
        if not command:
            continue
        if command in ("/quit", "/exit"):
            return
        if command == "/new":
            new_id = await controller.start_new_conversation(context)
            context = context.model_copy(update={"conversation_id": new_id})
            console.print(f"[dim]Started conversation {new_id}[/]")
            console.print(Panel(controller.config.messages.greeting, border_style="cyan"))
            continue
        if command == "/history":
            history = await controller.sessions.load_history(context.conversation_id, newest_first=True)
            console.print(_history_table(history))
            continue

        with console.status("[dim]Thinking...[/]"):
            result = await controller.handle_turn(context, user_text)

        if result.conversation_id != context.conversation_id:
            context = context.model_copy(update={"conversation_id": result.conversation_id})
            console.print(f"[dim]New topic — continuing in conversation {result.conversation_id}[/]")

        _print_reply(result.reply_text, result.classification)


@app.command()
def history(
    conversation: str = typer.Option(..., "--conversation", "-c", help="Conversation id"),
    base_dir: Optional[Path] = typer.Option(None, "--dir", "-d", help="Directory holding .actiongate/config.yaml"),
    count: int = typer.Option(20, "--count", "-n", help="Number of messages to show"),
):
    """Show a stored conversation, newest first."""
    config = load_config(base_dir.resolve() if base_dir else None)
    if config.storage.backend != "jsonl":
        console.print("[yellow]History is only kept across runs with storage.backend: jsonl[/]")
        raise typer.Exit(1)

    store = build_store(config.storage.backend, config.storage.directory)
    messages = asyncio.run(store.list(conversation))
    if not messages:
        console.print(f"[dim]No messages for conversation {conversation}.[/]")
        return

    messages = sorted(messages, key=lambda m: m.timestamp, reverse=True)[:count]
    console.print(_history_table(messages))


@app.command()
def status(
    base_dir: Optional[Path] = typer.Option(None, "--dir", "-d", help="Directory holding .actiongate/config.yaml"),
):
    """Check ACTIONGATE configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    config = load_config(base_dir.resolve() if base_dir else None)
    console.print(f"\n[bold]Routing:[/]")
    console.print(f"  Classifier:  {config.routing.classifier}")
    console.print(f"  Continuity:  {config.routing.continuity}")
    console.print(f"  Checklist:   {config.routing.checklist}")
    console.print(f"  Responder:   {config.routing.responder}")

    console.print(f"\n[bold]Gate:[/]")
    console.print(f"  Significance threshold: {config.gate.significance_threshold}")
    console.print(f"  Confirm tokens:         {', '.join(config.gate.confirmation_tokens)}")
    console.print(f"  Cancel tokens:          {', '.join(config.gate.cancellation_tokens)}")

    console.print(f"\n[bold]Execution:[/] {config.execution.base_url}")
    console.print(f"[bold]Storage:[/]   {config.storage.backend} ({config.storage.directory})")


@app.command()
def init(
    base_dir: Optional[Path] = typer.Argument(None, help="Directory to initialize"),
):
    """Initialize an .actiongate directory with a config override file."""
    _print_banner()

    base_dir = (base_dir or Path.cwd()).resolve()
    ag_dir = base_dir / ".actiongate"
    ag_dir.mkdir(exist_ok=True)
    (ag_dir / "conversations").mkdir(exist_ok=True)

    config_path = ag_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# ACTIONGATE local config overrides
# These merge with the built-in defaults.

# Keep conversations across runs:
storage:
  backend: "jsonl"
  directory: ".actiongate/conversations"

# Point at the analysis service:
# execution:
#   base_url: "https://analysis.example.com"

# Route an agent to a different model:
# routing:
#   responder: "anthropic/claude-sonnet-4-20250514"
""")

    console.print(f"[green]✅ Initialized ACTIONGATE in {ag_dir}[/]")
    console.print(f"  Config:         {config_path}")
    console.print(f"  Conversations:  {ag_dir / 'conversations'}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _print_message(message: ChatMessage) -> None:
    if message.role == "user":
        console.print(f"[bold]>> [/]{message.content}")
    else:
        _print_reply(message.content, message.classification)


def _print_reply(text: str, classification=None) -> None:
    border = "cyan"
    subtitle = None
    if classification is not None:
        if classification.needs_confirmation:
            border = "yellow"
            subtitle = "awaiting confirmation — reply yes to proceed or no to cancel"
        elif classification.action_taken:
            border = "green"
            subtitle = "action submitted"
    console.print(Panel(text, border_style=border, subtitle=subtitle))


def _history_table(messages: list[ChatMessage]) -> Table:
    table = Table(title="Conversation (newest first)", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Role")
    table.add_column("Message")
    table.add_column("Intent", style="dim")

    for message in messages:
        intent = ""
        if message.classification:
            c = message.classification
            intent = f"{c.action.value}/{c.step.value} {c.confidence:.2f}"
            if c.needs_confirmation:
                intent += " [yellow]pending[/]"
            if c.action_taken:
                intent += " [green]taken[/]"
        table.add_row(message.timestamp.strftime("%H:%M:%S"), message.role, message.content[:120], intent)
    return table


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
