"""
sysop.cli — Typer-based CLI entry-point.

This is what runs when a user types ``sysop`` in their terminal.
Sub-commands:

    sysop chat                         → interactive REPL
    sysop run "why is the disk full"   → one-shot prompt
    sysop info                         → print current config summary
    sysop sessions                     → list saved sessions
    sysop mcp add|remove|env|header|list
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from sysop import __version__
from sysop.config import config_path, get_settings, log_path, mcp_config_path
from sysop.errors import SysopError
from sysop.log import configure_logging
from sysop.mcp.config import McpConfig

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="sysop",
    help="sysop — a system administrator in your terminal, with a safety catch.",
    no_args_is_help=True,
    add_completion=True,
)
mcp_app = typer.Typer(help="Manage MCP tool servers (~/.sysop/mcp.yaml).", no_args_is_help=True)
app.add_typer(mcp_app, name="mcp")
console = Console()


def _fail(exc: Exception) -> typer.Exit:
    console.print(f"[red]✗ {exc}[/red]", highlight=False)
    return typer.Exit(code=1)


def _setup_logging(verbose: bool) -> None:
    try:
        settings = get_settings()
    except SysopError as exc:
        raise _fail(exc) from exc
    configure_logging(
        "DEBUG" if verbose else settings.log_level,
        log_file=log_path(),
        console=verbose,
    )


# ---------------------------------------------------------------------------
# Callbacks (version flag)
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold cyan]sysop[/bold cyan] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """sysop — describe what you need, review what it wants to run."""


# ---------------------------------------------------------------------------
# sysop info
# ---------------------------------------------------------------------------


@app.command()
def info() -> None:
    """Print the current configuration summary."""
    try:
        settings = get_settings()
        servers = McpConfig.load().servers
    except SysopError as exc:
        raise _fail(exc) from exc

    body = Text.assemble(
        ("Provider: ", "bold"),
        (f"{settings.provider} ({settings.model_name})", "green"),
        "\n",
        ("Safety:   ", "bold"),
        (f"{len(settings.safety.dangerous_patterns)} destructive patterns", "red"),
        "\n",
        ("Limits:   ", "bold"),
        (
            f"{settings.execution.max_output_bytes} bytes / "
            f"{settings.execution.max_output_lines} lines, "
            f"{settings.execution.timeout:.0f}s timeout",
            "cyan",
        ),
        "\n",
        ("MCP:      ", "bold"),
        (", ".join(servers) or "(none)", "cyan"),
        "\n",
        ("Config:   ", "bold"),
        (str(config_path()), "dim"),
        "\n",
        ("Logs:     ", "bold"),
        (str(log_path()), "dim"),
    )
    if settings.execution.safe_mode:
        body.append("\nSAFE MODE: tools are never executed", style="bold yellow")

    console.print(
        Panel(body, title=f"[bold]sysop v{__version__}[/bold]", border_style="bright_blue")
    )


# ---------------------------------------------------------------------------
# sysop chat  (interactive REPL, see shell.py)
# ---------------------------------------------------------------------------


@app.command()
def chat(
    safe: bool = typer.Option(False, "--safe", help="Safe mode: show what would run, run nothing."),
    provider: Optional[str] = typer.Option(  # noqa: UP007
        None, "--provider", "-p", help="gemini, openai or ollama (overrides config)."
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name override."),  # noqa: UP007
    new: bool = typer.Option(False, "--new", help="Start a new session instead of resuming."),
    verbose: bool = typer.Option(False, "--verbose", help="Also print logs to stderr."),
) -> None:
    """Start an interactive session."""
    _setup_logging(verbose)
    from sysop.shell import start_repl  # lazy import to keep startup fast

    start_repl(provider=provider, model=model, safe_mode=safe or None, new_session=new)


# ---------------------------------------------------------------------------
# sysop run  (one-shot)
# ---------------------------------------------------------------------------


async def _run_once(prompt: str, provider: str | None, model: str | None, safe: bool) -> bool:
    from sysop.agent import create_agent
    from sysop.shell import ConsoleRenderer, run_turn

    renderer = ConsoleRenderer(console)
    agent = create_agent(
        renderer, provider=provider, model=model, safe_mode=safe or None, new_session=True
    )
    try:
        await agent.start()
        await run_turn(agent, prompt)
        while agent.pending is not None:
            answer = await asyncio.to_thread(console.input, "[bold yellow]confirm ▸ [/bold yellow]")
            await run_turn(agent, answer)
    finally:
        await agent.close()
    return renderer.errors == 0


@app.command()
def run(
    prompt: str = typer.Argument(..., help="What you want done."),
    safe: bool = typer.Option(False, "--safe", help="Safe mode: show what would run, run nothing."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Provider override."),  # noqa: UP007
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name override."),  # noqa: UP007
    verbose: bool = typer.Option(False, "--verbose", help="Also print logs to stderr."),
) -> None:
    """Run a single prompt and exit (confirmations are still asked)."""
    _setup_logging(verbose)
    try:
        ok = asyncio.run(_run_once(prompt, provider, model, safe))
    except SysopError as exc:
        raise _fail(exc) from exc
    except (KeyboardInterrupt, EOFError):
        console.print("\n[dim]Aborted.[/dim]")
        raise typer.Exit(code=130)
    if not ok:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# sysop sessions
# ---------------------------------------------------------------------------


@app.command()
def sessions(
    limit: int = typer.Option(20, "--limit", "-n", help="How many to show."),
) -> None:
    """List saved sessions, newest first."""
    from sysop.agent.session import SessionStore
    from sysop.shell import ConsoleRenderer

    found = SessionStore().list_sessions()
    if not found:
        console.print("[dim]No saved sessions.[/dim]")
        return
    ConsoleRenderer(console).sessions(found[:limit], current="")


# ---------------------------------------------------------------------------
# sysop mcp ...
# ---------------------------------------------------------------------------


def _split_pair(raw: str, sep: str, what: str) -> tuple[str, str]:
    key, found, value = raw.partition(sep)
    if not found or not key.strip():
        raise _fail(ValueError(f"Expected {what}, got {raw!r}"))
    return key.strip(), value.strip()


def _load_mcp() -> McpConfig:
    try:
        return McpConfig.load()
    except SysopError as exc:
        raise _fail(exc) from exc


@mcp_app.command("add")
def mcp_add(
    name: str = typer.Argument(..., help="Unique server name."),
    target: List[str] = typer.Argument(  # noqa: UP006
        ..., help="stdio: command and its arguments (after --). http: the URL."
    ),
    transport: str = typer.Option("stdio", "--transport", "-t", help="stdio or http."),
    env: List[str] = typer.Option([], "--env", "-e", help="KEY=VALUE for stdio servers."),  # noqa: UP006
    header: List[str] = typer.Option([], "--header", "-H", help="'Name: value' for http servers."),  # noqa: UP006
) -> None:
    """Register a server, e.g. ``sysop mcp add fs -- npx -y @modelcontextprotocol/server-filesystem /tmp``."""
    config = _load_mcp()
    try:
        if transport == "http":
            if len(target) != 1:
                raise _fail(ValueError("http servers take exactly one URL"))
            headers = dict(_split_pair(h, ":", "'Name: value'") for h in header)
            server = config.add_http_server(name, target[0], headers=headers)
        elif transport == "stdio":
            envs = dict(_split_pair(e, "=", "KEY=VALUE") for e in env)
            server = config.add_server(name, target[0], args=target[1:], env=envs)
        else:
            raise _fail(ValueError(f"Unknown transport {transport!r}; use stdio or http"))
    except (SysopError, ValueError) as exc:
        raise _fail(exc) from exc
    console.print(f"[green]✓[/green] Added [bold]{name}[/bold]: {server.describe()}")


@mcp_app.command("remove")
def mcp_remove(name: str = typer.Argument(..., help="Server to remove.")) -> None:
    """Remove a server."""
    config = _load_mcp()
    try:
        config.remove_server(name)
    except SysopError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]✓[/green] Removed [bold]{name}[/bold].")


@mcp_app.command("env")
def mcp_env(
    name: str = typer.Argument(..., help="Server name."),
    assignment: Optional[str] = typer.Argument(None, help="KEY=VALUE to set."),  # noqa: UP007
    delete: Optional[str] = typer.Option(None, "--delete", "-d", help="KEY to remove."),  # noqa: UP007
) -> None:
    """Set or remove an environment variable of a stdio server."""
    config = _load_mcp()
    try:
        if delete:
            if config.remove_env(name, delete):
                console.print(f"[green]✓[/green] Removed {delete} from {name}.")
            else:
                console.print(f"[dim]{delete} was not set on {name}.[/dim]")
            return
        if not assignment:
            raise _fail(ValueError("Give KEY=VALUE or --delete KEY"))
        key, value = _split_pair(assignment, "=", "KEY=VALUE")
        config.set_env(name, key, value)
    except SysopError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]✓[/green] Set {key} on {name}.")


@mcp_app.command("header")
def mcp_header(
    name: str = typer.Argument(..., help="Server name."),
    header: str = typer.Argument(..., help="'Name: value'."),
) -> None:
    """Set a request header of an http server."""
    config = _load_mcp()
    key, value = _split_pair(header, ":", "'Name: value'")
    try:
        config.set_header(name, key, value)
    except SysopError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]✓[/green] Set header {key} on {name}.")


@mcp_app.command("list")
def mcp_list() -> None:
    """Show the configured servers."""
    config = _load_mcp()
    if not config.servers:
        console.print(f"[dim]No MCP servers in {mcp_config_path()}.[/dim]")
        return
    table = Table(title="MCP servers")
    table.add_column("Name", style="cyan")
    table.add_column("Transport")
    table.add_column("Target")
    table.add_column("Env / headers", style="dim")
    for name, server in config.servers.items():
        extra = server.env if server.transport == "stdio" else server.headers
        table.add_row(name, server.transport, server.describe(), ", ".join(sorted(extra)))
    console.print(table)


# ---------------------------------------------------------------------------
# Entry-point (for `python -m sysop.cli`)
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
