"""
sysop.shell — Interactive REPL powered by prompt_toolkit + rich.

Launched by ``sysop chat``.  Provides:
- slash-command completion
- Rich-rendered markdown answers, tool previews and confirmation panels
- Ctrl+C during a turn cancels it; Ctrl+C / Ctrl+D at the prompt exits
"""

from __future__ import annotations

import asyncio
import contextlib
import signal

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import InMemoryHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from sysop import __version__
from sysop.agent import AgentLoop, AgentUI, Session, create_agent
from sysop.agent.commands import COMMANDS
from sysop.errors import SysopError
from sysop.log import get_logger
from sysop.mcp.supervisor import ConnectionState, ConnectionStatus
from sysop.models.base import ToolInvocation
from sysop.safety.policy import DangerAssessment, Verdict
from sysop.tools.types import ExecutionResult, ExecutionStatus

console = Console()
log = get_logger(__name__)

_PREVIEW_LINES = 12

_STATE_STYLE = {
    ConnectionState.READY: "green",
    ConnectionState.STARTING: "cyan",
    ConnectionState.RESTARTING: "yellow",
    ConnectionState.FAILED: "red",
}


class ConsoleRenderer(AgentUI):
    """Renders agent events to the terminal."""

    def __init__(self, out: Console | None = None) -> None:
        self.console = out or console
        self.errors = 0

    def reply(self, text: str) -> None:
        self.console.print()
        self.console.print(
            Panel(
                Markdown(text or "_(no answer)_"),
                title="[bold cyan]sysop[/bold cyan]",
                border_style="cyan",
                padding=(1, 2),
            )
        )

    def notice(self, text: str) -> None:
        self.console.print(f"[dim]{escape(text)}[/dim]")

    def error(self, text: str) -> None:
        self.errors += 1
        self.console.print(f"[red]✗ {escape(text)}[/red]", highlight=False)

    def tool_request(self, invocation: ToolInvocation, assessment: DangerAssessment) -> None:
        style = {
            Verdict.ALLOWED: "dim",
            Verdict.REQUIRES_CONFIRMATION: "yellow",
            Verdict.BLOCKED: "red",
        }[assessment.verdict]
        self.console.print(f"  [{style}]🔧 {escape(invocation.describe())}[/{style}]", highlight=False)
        if assessment.blocked:
            self.console.print(f"  [red]   ⛔ refused: {escape(assessment.reason)}[/red]", highlight=False)

    def confirm_first(self, invocation: ToolInvocation, assessment: DangerAssessment) -> None:
        self.console.print(
            Panel(
                f"[bold]{escape(invocation.describe())}[/bold]\n\n"
                f"Reason: {escape(assessment.reason)}\n\n"
                "Type [bold]y[/bold] to continue, anything else to cancel.",
                title="[bold yellow]⚠ Confirmation required[/bold yellow]",
                border_style="yellow",
            )
        )

    def confirm_second(self, invocation: ToolInvocation, phrase: str) -> None:
        self.console.print(
            f"[yellow]To run it, type exactly:[/yellow] [bold]{phrase}[/bold]", highlight=False
        )

    def tool_result(self, invocation: ToolInvocation, result: ExecutionResult) -> None:
        content = result.to_tool_content()
        lines = content.splitlines()
        preview = "\n".join(lines[:_PREVIEW_LINES])
        if len(lines) > _PREVIEW_LINES:
            preview += f"\n… ({len(lines) - _PREVIEW_LINES} more lines)"
        style = "dim" if result.status in (ExecutionStatus.COMPLETED, ExecutionStatus.DRY_RUN) else "yellow"
        self.console.print(f"[{style}]   ↳ {escape(preview)}[/{style}]", highlight=False)

    def sessions(self, sessions: list[Session], current: str) -> None:
        table = Table(title="Sessions", show_lines=False)
        table.add_column("ID", style="cyan")
        table.add_column("Updated")
        table.add_column("Messages", justify="right")
        table.add_column("Title")
        for session in sessions:
            marker = " ◀" if session.id == current else ""
            table.add_row(
                session.id + marker,
                session.updated_at.astimezone().strftime("%Y-%m-%d %H:%M"),
                str(len(session.messages)),
                escape(session.title),
            )
        self.console.print(table)

    def mcp_status(self, statuses: list[ConnectionStatus]) -> None:
        if not statuses:
            self.notice("No MCP servers configured. Add one with `sysop mcp add`.")
            return
        table = Table(title="MCP servers")
        table.add_column("Server", style="cyan")
        table.add_column("State")
        table.add_column("Tools", justify="right")
        table.add_column("Transport")
        table.add_column("Last error", style="dim")
        for status in statuses:
            style = _STATE_STYLE[status.state]
            table.add_row(
                status.name,
                f"[{style}]{status.state.value}[/{style}]",
                str(status.tools),
                status.transport,
                escape(status.last_error or ""),
            )
        self.console.print(table)


def _build_completer() -> WordCompleter:
    words = [f"/{name}" for name in COMMANDS] + ["help", "exit", "quit"]
    return WordCompleter(words, ignore_case=True, sentence=True)


def _help_text() -> str:
    rows = "\n".join(f"| `{usage}` | {desc} |" for usage, desc in COMMANDS.values())
    return (
        "**Available commands**\n\n"
        "| Command | Description |\n"
        "|---------|-------------|\n"
        f"{rows}\n"
        "| `!<command>` | Run a shell command yourself (still safety-checked) |\n"
        "| `help` | Show this help |\n"
        "| `exit` / `quit` | Leave the REPL |\n\n"
        "*Ctrl+C cancels the running step. Tab completes commands.*"
    )


def _print_welcome(agent: AgentLoop) -> None:
    info = agent.describe()
    safe = "  [bold yellow]SAFE MODE[/bold yellow]" if info["safe_mode"] else ""
    console.print(
        Panel(
            f"[bold]Model:[/bold] {info['model']}{safe}\n"
            f"[bold]Session:[/bold] {info['session']} ({info['messages']} messages)\n"
            f"[dim]Type [bold]help[/bold] for commands, [bold]exit[/bold] to quit.[/dim]",
            title=f"[bold bright_blue]sysop v{__version__}[/bold bright_blue]",
            border_style="bright_blue",
        )
    )


async def run_turn(agent: AgentLoop, text: str) -> None:
    """Run one ``handle_input`` with Ctrl+C mapped to ``agent.cancel``."""
    loop = asyncio.get_running_loop()
    installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, agent.cancel)
        installed = True
    try:
        with console.status("[dim]Working… (Ctrl+C to cancel)[/dim]"):
            await agent.handle_input(text)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def run_repl(agent: AgentLoop) -> None:
    """Run the interactive REPL until the user leaves."""
    _print_welcome(agent)
    await agent.start()

    session: PromptSession[str] = PromptSession(
        history=InMemoryHistory(),
        completer=_build_completer(),
        complete_while_typing=True,
    )

    try:
        while True:
            confirming = agent.pending is not None
            label = (
                HTML("<b><ansiyellow>confirm ▸ </ansiyellow></b>")
                if confirming
                else HTML("<b><ansicyan>sysop ▸ </ansicyan></b>")
            )
            try:
                raw: str = await session.prompt_async(label)
            except KeyboardInterrupt:
                if confirming:
                    agent.cancel()
                    continue
                console.print("\n[dim]Goodbye.[/dim]")
                break
            except EOFError:
                console.print("\n[dim]Goodbye.[/dim]")
                break

            # Confirmation input is passed through untouched
            if not confirming:
                lower = raw.strip().lower()
                if lower in ("exit", "quit"):
                    console.print("[dim]Goodbye.[/dim]")
                    break
                if lower == "help":
                    console.print(Markdown(_help_text()))
                    continue

            await run_turn(agent, raw)
    finally:
        await agent.close()


def start_repl(
    provider: str | None = None,
    model: str | None = None,
    safe_mode: bool | None = None,
    new_session: bool = False,
) -> None:
    """Build the agent and run the REPL (blocking)."""
    try:
        agent = create_agent(
            ConsoleRenderer(),
            provider=provider,
            model=model,
            safe_mode=safe_mode,
            new_session=new_session,
        )
    except SysopError as exc:
        console.print(f"[red]✗ Failed to start: {exc}[/red]")
        log.error("startup_failed", error=str(exc))
        raise SystemExit(1) from exc

    asyncio.run(run_repl(agent))
