"""
relaymcp CLI - Interactive chat that lets a model call MCP tools.

Run `relaymcp` to connect to the configured servers and start chatting,
or `relaymcp "question"` to answer a single query and exit.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from relaymcp import __version__
from relaymcp.cli.completer import RelayCompleter
from relaymcp.core.orchestrator import Orchestrator
from relaymcp.mcp.executor import ProviderPool
from relaymcp.mcp.session import SessionError
from relaymcp.mcp.transport import TransportError
from relaymcp.providers.base import Provider, ProviderFactory
from relaymcp.validation.config import Config, ConfigError, ProviderConfig

console = Console()
logger = logging.getLogger(__name__)

QUIT_SENTINEL = "quit"


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


class RelayREPL:
    """
    Interactive loop over one orchestrator.

    Each line is either a slash command, the ``quit`` sentinel, or a
    query handed to ``Orchestrator.process_query``. Errors from a query
    are printed and the loop carries on.
    """

    def __init__(
        self,
        config: Config,
        pool: ProviderPool,
        orchestrator: Orchestrator,
        prompt_session=None,
    ):
        self.config = config
        self.pool = pool
        self.orchestrator = orchestrator
        self.running = True
        self._prompt = prompt_session

    def _get_prompt(self):
        if self._prompt is None:
            self._prompt = PromptSession(
                completer=RelayCompleter(
                    capability_names=lambda: [c.qualified_name for c in self.pool.catalog.capabilities()],
                    server_names=self.pool.configured,
                ),
                complete_while_typing=True,
            )
        return self._prompt

    async def _get_input(self) -> str:
        """Read one line from the operator."""
        text = await self._get_prompt().prompt_async(HTML("<ansigreen><b>&gt; </b></ansigreen>"))
        return text.strip()

    def _print_banner(self):
        info = Text()
        info.append("relaymcp", style="bold blue")
        info.append(f"  v{__version__}", style="bold cyan")
        info.append("  |  ", style="dim")
        info.append(f"Model: {self.config.merged.model}", style="dim")
        console.print(info)
        console.print(f"  [dim]Servers: {', '.join(self.pool.session_names()) or 'none'}[/dim]")
        console.print("  [dim]Type your query, /help for commands, or 'quit' to exit.[/dim]")
        console.print()

    def _print_help(self):
        help_text = """
[bold]Commands:[/bold]
  /help, /?                Show this help
  /servers                 Configured servers and connection status
  /tools                   List the capability catalog
  /tools info <name>       Show the parameter schema of one capability
  /reconnect <server>      Reconnect a server and rebuild its catalog
  /exit, /quit, /q, quit   Exit relaymcp

[bold]Usage:[/bold]
  Type a question; the model may call the tools listed by /tools.
"""
        console.print(Panel(help_text.strip(), title="relaymcp Help", border_style="blue"))

    def _print_servers(self):
        table = Table(show_header=True, header_style="bold")
        table.add_column("Server", style="cyan")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Capabilities", justify="right")

        for name in self.pool.configured():
            session = self.pool.get_session(name)
            status = "[green]connected[/green]" if session is not None else "[red]disconnected[/red]"
            count = len(self.pool.catalog.capabilities(name)) if session is not None else 0
            kind = self.config.get_server(name).kind if name in self.config.merged.servers else "?"
            table.add_row(name, kind, status, str(count))
        console.print(table)

    def _handle_tools(self, args: str):
        parts = args.strip().split()
        sub = parts[0] if parts else "list"

        if sub == "list":
            capabilities = self.pool.catalog.capabilities()
            if not capabilities:
                console.print("[dim]No capabilities available.[/dim]")
                return
            console.print(f"[bold]Available capabilities ({len(capabilities)}):[/bold]")
            for capability in capabilities:
                console.print(f"  [cyan]{capability.qualified_name}[/cyan] - {escape(capability.description)}")

        elif sub == "info":
            name = parts[1] if len(parts) > 1 else ""
            if not name:
                console.print("[yellow]Usage: /tools info <server__name>[/yellow]")
                return
            console.print(self.pool.catalog.full_schema_text(name), markup=False, highlight=False)

        else:
            console.print("[bold]Tool commands:[/bold]")
            console.print("  /tools              List the capability catalog")
            console.print("  /tools info <name>  Show the parameter schema of one capability")

    async def _reconnect(self, name: str):
        if not name:
            console.print("[yellow]Usage: /reconnect <server>[/yellow]")
            return
        if name not in self.pool.configured():
            console.print(f"[red]Unknown server: {name}[/red]")
            return
        try:
            with console.status(f"[bold blue]Reconnecting {name}...[/bold blue]", spinner="dots"):
                await self.pool.reconnect(name)
        except (TransportError, SessionError, asyncio.TimeoutError) as e:
            console.print(f"[red]Failed to reconnect {name}: {escape(str(e))}[/red]")
            return
        count = len(self.pool.catalog.capabilities(name))
        console.print(f"[green]Reconnected {name} ({count} capabilities)[/green]")

    async def _handle_command(self, cmd: str) -> bool:
        """Handle a slash command. Returns True if should continue."""
        parts = cmd.split(maxsplit=1)
        command = parts[0].lower()
        args = parts[1] if len(parts) > 1 else ""

        if command in ("/exit", "/quit", "/q"):
            self.running = False
            return False

        elif command in ("/help", "/?"):
            self._print_help()

        elif command == "/servers":
            self._print_servers()

        elif command == "/tools":
            self._handle_tools(args)

        elif command == "/reconnect":
            await self._reconnect(args.strip())

        else:
            console.print(f"[yellow]Unknown command: {command}[/yellow]")
            console.print("[dim]Type /help for available commands[/dim]")

        return True

    async def _execute_query(self, query: str):
        with console.status("[bold blue]Thinking...[/bold blue]", spinner="dots"):
            answer = await self.orchestrator.process_query(query)
        console.print()
        console.print(answer, markup=False, highlight=False)
        console.print()

    async def run(self):
        """Run the interactive loop until quit, /exit or Ctrl-D."""
        self._print_banner()

        while self.running:
            try:
                user_input = await self._get_input()
                if not user_input:
                    continue

                if user_input.lower() == QUIT_SENTINEL:
                    break

                if user_input.startswith("/"):
                    if not await self._handle_command(user_input):
                        break
                    continue

                await self._execute_query(user_input)

            except EOFError:
                break
            except KeyboardInterrupt:
                continue
            except Exception as e:
                logger.debug("Query failed", exc_info=True)
                console.print(f"[red]Error: {escape(str(e))}[/red]")

        console.print("[dim]Goodbye.[/dim]")


async def run_client(
    config: Config,
    provider: Provider,
    servers: List[ProviderConfig],
    query: Optional[str] = None,
    pool: Optional[ProviderPool] = None,
    prompt_session=None,
) -> int:
    """
    Connect, then answer ``query`` or run the REPL. Returns an exit code.

    Every session and the chat client are released before returning.
    """
    settings = config.client
    if pool is None:
        pool = ProviderPool(
            request_timeout=settings.request_timeout,
            connect_timeout=settings.connect_timeout,
        )
    orchestrator = Orchestrator(pool, provider, max_tool_rounds=settings.max_tool_rounds)

    try:
        with console.status("[bold blue]Connecting to servers...[/bold blue]", spinner="dots"):
            failures = await pool.connect_all(servers)
        for name, error in failures.items():
            console.print(f"[yellow]Could not connect to {name}: {escape(error)}[/yellow]")

        if not pool.has_active_sessions():
            console.print("[red]Error: no MCP server could be connected.[/red]")
            return 1

        for name in pool.session_names():
            tools = [t.name for t in pool.catalog.tools(name)]
            console.print(f"[dim]Connected to {name} with tools: {', '.join(tools) or '(none)'}[/dim]")

        if query:
            try:
                with console.status("[bold blue]Working...[/bold blue]"):
                    answer = await orchestrator.process_query(query)
            except Exception as e:
                console.print(f"[red]Error: {escape(str(e))}[/red]")
                return 1
            console.print(answer, markup=False, highlight=False)
            return 0

        await RelayREPL(config, pool, orchestrator, prompt_session).run()
        return 0
    finally:
        await orchestrator.close()


@click.command()
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              help="Config file to use instead of .relaymcp/config.yaml")
@click.option("--model", "-m", help="Chat model, e.g. openai/gpt-4o-mini")
@click.option("--server", "-s", "server_names", multiple=True,
              help="Connect only this server (repeatable)")
@click.option("--verbose", is_flag=True, help="Debug logging")
@click.option("--init", is_flag=True, help="Write a starter .relaymcp/config.yaml and exit")
@click.argument("query", required=False, nargs=-1)
def cli(
    version: bool,
    config_path: Optional[Path],
    model: Optional[str],
    server_names: tuple,
    verbose: bool,
    init: bool,
    query: tuple,
) -> None:
    """
    relaymcp - chat with a model that can call MCP server tools.

    Run without arguments to start interactive mode.

    \b
    Examples:
        relaymcp                          # Start interactive chat
        relaymcp "what is 100 RMB in USD" # Answer one query
        relaymcp -s exchange --verbose    # Only the exchange server
    """
    if version:
        console.print(f"relaymcp v{__version__}")
        return

    setup_logging(verbose)

    if init:
        path = Config.create_default_local(Path.cwd())
        console.print(f"[green]Config written to {path}[/green]")
        return

    try:
        config = Config.load(config_path)
        if model:
            config.set_model(model)
        servers = config.enabled_servers(list(server_names) or None)
        provider = ProviderFactory.create(config.merged.model, config)
        provider.require_api_key()
    except (ConfigError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    if not servers:
        console.print("[red]Error: no enabled servers configured.[/red]")
        console.print("[dim]Run `relaymcp --init` to write a starter config.[/dim]")
        sys.exit(1)

    code = asyncio.run(run_client(config, provider, servers, " ".join(query) or None))
    if code:
        sys.exit(code)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
