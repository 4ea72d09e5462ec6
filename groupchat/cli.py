"""CLI entry point for the group chat orchestrator.

Commands:
- groupchat init: Create the data directory, default config and database
- groupchat create: Create a conversation
- groupchat list: List conversations
- groupchat show: Show a conversation and its participants
- groupchat log: Print a conversation's chat log
- groupchat delete: Delete a conversation
- groupchat agents: List agent types and whether they are installed
- groupchat send: Send a message and run one moderator turn
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from groupchat import __version__
from groupchat.core.agents import AgentDetector
from groupchat.core.chat_log import read_log
from groupchat.core.config import CONFIG_FILENAME, ConfigError, GroupChatConfig, load_config
from groupchat.core.events import EventEmitter
from groupchat.core.models import Conversation, GroupChatError, LogEntry, SessionInfo
from groupchat.core.output_buffer import OutputBufferRegistry
from groupchat.core.process import SubprocessManager
from groupchat.core.relay import OutputRelay
from groupchat.core.router import MessageRouter
from groupchat.core.sessions import SessionRegistry
from groupchat.core.storage import ConversationStore

console = Console()
err_console = Console(stderr=True)

DEFAULT_CONFIG = """# Group chat configuration
# See groupchat/defaults/agents.yaml for built-in agent types.

# Log entries included in each moderator prompt
history_limit: 20

# Max characters kept from a participant's last response
summary_length: 50

# Per-process timeout in seconds (remove for no limit)
process_timeout: 600

# Extra or overridden agent definitions
agents: {}
#  my-agent:
#    name: My Agent
#    command: my-agent-cli
#    args: ["--batch"]

# Environment overrides per agent type
env: {}
#  claude-code:
#    ANTHROPIC_LOG: info
"""


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _get_config(ctx: click.Context) -> GroupChatConfig:
    config_path = ctx.obj.get("config_path") if ctx.obj else None
    try:
        return load_config(config_path)
    except ConfigError as e:
        err_console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)


def _get_store(ctx: click.Context) -> ConversationStore:
    return ConversationStore(_get_config(ctx).data_dir)


def _require_conversation(store: ConversationStore, conversation_id: str) -> Conversation:
    conversation = store.load_conversation(conversation_id)
    if conversation is None:
        err_console.print(f"[red]Group chat not found:[/red] {conversation_id}")
        sys.exit(1)
    return conversation


def _parse_session(value: str) -> SessionInfo:
    """Parse NAME:AGENT_TYPE[:CWD] into a SessionInfo."""
    parts = value.split(":", 2)
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise click.BadParameter(f"Expected NAME:AGENT_TYPE[:CWD], got '{value}'")
    name, agent_type = parts[0], parts[1]
    cwd = parts[2] if len(parts) == 3 and parts[2] else str(Path.cwd())
    return SessionInfo(id=f"cli-{name}", name=name, agent_type=agent_type, cwd=cwd)


def _print_entries(entries: list[LogEntry]) -> None:
    if not entries:
        console.print("[dim]No messages[/dim]")
        return
    for entry in entries:
        style = {"user": "bold green", "moderator": "bold magenta"}.get(entry.sender, "bold cyan")
        console.print(f"[dim]{entry.timestamp}[/dim] [{style}]{entry.sender}[/{style}]")
        console.print(entry.content, markup=False, highlight=False)
        console.print()


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Groupchat - Multi-agent chat orchestrator.

    A moderator agent coordinates participant agents that you and it
    address with @mentions.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    _setup_logging(verbose)


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the data directory, default config and database."""
    config = _get_config(ctx)
    config_path = config.data_dir / CONFIG_FILENAME

    if config_path.exists():
        console.print("[yellow]Already initialized[/yellow]")
        return

    config.data_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG)
    ConversationStore(config.data_dir)

    console.print(
        Panel(
            "[green]Initialized![/green]\n\n"
            f"Created: {config.data_dir}\n"
            "- config.yaml: Agent definitions and limits\n"
            "- state.db: Conversation metadata\n"
            "- chats/: Chat logs and attachments",
            title="Groupchat",
        )
    )


@main.command()
@click.argument("name")
@click.option("--moderator", "-m", default="claude-code", show_default=True,
              help="Agent type for the moderator")
@click.pass_context
def create(ctx: click.Context, name: str, moderator: str) -> None:
    """Create a conversation named NAME."""
    store = _get_store(ctx)
    conversation = store.create_conversation(name, moderator)
    console.print(f"[green]Created group chat[/green] {conversation.id} ({name})")
    console.print(f"[dim]Log: {conversation.log_path}[/dim]")


@main.command("list")
@click.pass_context
def list_conversations(ctx: click.Context) -> None:
    """List conversations."""
    conversations = _get_store(ctx).list_conversations()
    if not conversations:
        console.print("[yellow]No group chats yet[/yellow]")
        return

    table = Table(title="Group Chats")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Moderator", style="magenta")
    table.add_column("Participants", justify="right")
    table.add_column("Created", style="dim")
    for conversation in conversations:
        table.add_row(
            conversation.id,
            conversation.name,
            conversation.moderator_agent_type,
            str(len(conversation.participants)),
            conversation.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@main.command()
@click.argument("conversation_id")
@click.pass_context
def show(ctx: click.Context, conversation_id: str) -> None:
    """Show a conversation and its participants."""
    conversation = _require_conversation(_get_store(ctx), conversation_id)

    console.print(
        Panel(
            f"[bold]{conversation.name}[/bold]\n"
            f"Moderator: {conversation.moderator_agent_type}\n"
            f"Log: {conversation.log_path}\n"
            f"Attachments: {conversation.attachments_dir}",
            title=conversation.id,
        )
    )

    if not conversation.participants:
        console.print("[dim]No participants[/dim]")
        return

    table = Table(title="Participants")
    table.add_column("Name", style="cyan")
    table.add_column("Agent")
    table.add_column("Messages", justify="right")
    table.add_column("Last Activity", style="dim")
    table.add_column("Context", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Last Summary")
    for p in conversation.participants:
        table.add_row(
            p.name,
            p.agent_type,
            str(p.message_count),
            p.last_activity.strftime("%Y-%m-%d %H:%M:%S") if p.last_activity else "-",
            f"{p.context_usage}%" if p.context_usage is not None else "-",
            f"${p.total_cost:.4f}" if p.total_cost is not None else "-",
            p.last_summary or "",
        )
    console.print(table)


@main.command()
@click.argument("conversation_id")
@click.option("--tail", "-n", type=int, default=0, help="Show only the last N messages")
@click.pass_context
def log(ctx: click.Context, conversation_id: str, tail: int) -> None:
    """Print a conversation's chat log."""
    conversation = _require_conversation(_get_store(ctx), conversation_id)
    entries = read_log(conversation.log_path)
    if tail > 0:
        entries = entries[-tail:]
    _print_entries(entries)


@main.command()
@click.argument("conversation_id")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.pass_context
def delete(ctx: click.Context, conversation_id: str, yes: bool) -> None:
    """Delete a conversation, its log and its attachments."""
    store = _get_store(ctx)
    _require_conversation(store, conversation_id)
    if not yes:
        click.confirm(f"Delete group chat {conversation_id}?", abort=True)
    store.delete_conversation(conversation_id)
    console.print(f"[green]Deleted[/green] {conversation_id}")


@main.command()
@click.pass_context
def agents(ctx: click.Context) -> None:
    """List agent types and whether their CLI is installed."""
    detector = AgentDetector(overrides=_get_config(ctx).agents)

    table = Table(title="Agents")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Command")
    table.add_column("Available")
    for agent in detector.get_all_agents():
        table.add_row(
            agent.id,
            agent.name,
            " ".join([agent.executable, *agent.args]),
            "[green]yes[/green]" if agent.available else "[red]no[/red]",
        )
    console.print(table)


@main.command()
@click.argument("conversation_id")
@click.argument("message")
@click.option("--read-only", is_flag=True, help="Ask the moderator not to make changes")
@click.option("--session", "sessions", multiple=True,
              help="Available session NAME:AGENT_TYPE[:CWD] for @mention auto-admission")
@click.option("--timeout", type=float, default=600.0, show_default=True,
              help="Seconds to wait for the moderator")
@click.option("--participant-wait", type=float, default=0.0,
              help="Seconds to let addressed participants respond before stopping them")
@click.pass_context
def send(
    ctx: click.Context,
    conversation_id: str,
    message: str,
    read_only: bool,
    sessions: tuple[str, ...],
    timeout: float,
    participant_wait: float,
) -> None:
    """Send MESSAGE to a conversation and run one moderator turn.

    Starts the moderator, routes the message and waits for the moderator's
    response, which is forwarded to any @mentioned participants. With
    --participant-wait, participant replies (and the moderator turns they
    trigger) get that long to finish. Every process is then stopped; output
    from participants stopped this way is still logged.
    """
    config = _get_config(ctx)
    store = ConversationStore(config.data_dir)
    conversation = _require_conversation(store, conversation_id)
    available = [_parse_session(value) for value in sessions]

    detector = AgentDetector(overrides=config.agents)
    registry = SessionRegistry(store, default_cwd=config.default_cwd)
    router = MessageRouter(
        store,
        registry,
        events=EventEmitter(),
        config=config,
        sessions_provider=(lambda: available) if available else None,
    )
    relay = OutputRelay(
        router,
        buffers=OutputBufferRegistry(config.max_buffer_size),
        agent_resolver=detector,
    )
    manager = SubprocessManager(
        on_data=relay.handle_data,
        on_exit=relay.handle_exit,
        timeout=config.process_timeout,
    )
    relay.process_manager = manager

    try:
        with console.status("Starting moderator..."):
            moderator = registry.spawn_moderator(conversation, manager, agent_resolver=detector)
            manager.wait_for_session(moderator, timeout=timeout)

        seen = len(read_log(conversation.log_path))

        with console.status("Waiting for moderator..."):
            session_id = router.route_user_message(
                conversation_id, message, manager, detector, read_only=read_only
            )
            if session_id and not manager.wait_for_session(session_id, timeout=timeout):
                err_console.print(f"[yellow]Moderator did not finish within {timeout}s[/yellow]")

        if participant_wait > 0:
            with console.status("Waiting for participants..."):
                manager.wait_idle(timeout=participant_wait)
    except GroupChatError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        manager.shutdown()
        manager.wait_idle(timeout=10)
        registry.clear_conversation(conversation_id, manager)

    _print_entries(read_log(conversation.log_path)[seen:])
