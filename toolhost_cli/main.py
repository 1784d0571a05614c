"""
toolhost command-line entry point.

Usage:
    toolhost                                  # interactive REPL
    toolhost --prompt "summarize README.md"   # one step, then exit
    toolhost --list_tools                     # show the MCP tool catalog
    toolhost --model openrouter/anthropic/claude-sonnet-4 --session ~/chat.json
"""

import logging
import queue
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

import fire
from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markup import escape

from agent.app import App, AppOptions
from agent.context import background
from agent.extensions import ExtensionError, ExtensionRunner, load_extensions
from agent.session_persister import SessionLoadError, SessionPersister
from agent.step_runner import OpenAIStepRunner
from tools.mcp_manager import MCPLoadError, MCPToolManager
from toolhost_cli import __version__
from toolhost_cli.config import AgentConfig, ConfigError, load_config, load_env_files
from toolhost_cli.display import EventPrinter, render_server_table, render_tools_table
from toolhost_cli.provider_registry import ProviderError, ProviderRegistry
from toolhost_constants import get_toolhost_home

logger = logging.getLogger(__name__)

SLASH_COMMANDS = {
    "/help": "Show this help",
    "/tools": "List the available tools",
    "/servers": "Show MCP server status",
    "/clear": "Forget the conversation so far",
    "/compact": "Summarize older messages to free context (/compact [focus])",
    "/queue": "Show queued prompts (/queue clear drops them)",
    "/quit": "Exit",
}


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        # Keep third-party libraries at WARNING level to reduce noise
        for name in ("openai", "openai._base_client", "httpx", "httpcore"):
            logging.getLogger(name).setLevel(logging.WARNING)
        logger.info("Verbose logging enabled (third-party library logs suppressed)")
        return

    logging.basicConfig(
        level=logging.ERROR if quiet else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    for name in ("openai", "openai._base_client", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.ERROR)


class _SlashCompleter(Completer):
    def __init__(self, commands):
        self.commands = sorted(commands)

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor
        if not text.startswith("/") or " " in text:
            return
        for command in self.commands:
            if command.startswith(text):
                yield Completion(command, start_position=-len(text))


class Session:
    """Everything a CLI run wires together; closed as one unit."""

    def __init__(self, cfg: AgentConfig, registry: ProviderRegistry, session_path: Optional[str] = None):
        self.cfg = cfg
        self.handle = registry.resolve(cfg.model, api_key=cfg.api_key, base_url=cfg.base_url)
        self.extensions = ExtensionRunner(load_extensions(cfg.extensions))
        self.manager = MCPToolManager(pool_config=cfg.pool)
        self.persister = None
        if session_path:
            self.persister = SessionPersister(path=Path(session_path), model=self.handle.display_name)
        self.app: Optional[App] = None

    def load_tools(self) -> None:
        self.manager.load_tools(background(), self.cfg.mcp_servers)

    def toolset(self):
        toolset = self.manager.toolset()
        for tool in self.extensions.tools():
            toolset.add(tool)
        return toolset

    def build_app(self, interactive: bool, yolo: bool) -> App:
        runner = OpenAIStepRunner(
            self.handle.create_client(),
            self.handle.model,
            self.toolset(),
            provider=self.handle.provider,
            system_prompt=self.cfg.system_prompt,
            max_steps=self.cfg.max_steps,
            max_tokens=self.cfg.max_tokens,
            temperature=self.cfg.temperature,
            stream=self.cfg.stream,
            compaction_options=self.cfg.compaction,
        )
        history = self.persister.load() if self.persister else None
        self.app = App(
            AppOptions(
                step_runner=runner,
                interactive=interactive and not yolo,
                tool_approval_func=None if yolo else self.cfg.tool_approval,
                approval_timeout=self.cfg.approval_timeout,
                step_timeout=self.cfg.step_timeout,
                extensions=self.extensions,
                persister=self.persister,
            ),
            initial_messages=history,
        )
        return self.app

    def close(self) -> None:
        if self.app is not None:
            self.app.close()
        self.manager.close()


def _event_pump(events: "queue.Queue", printer: EventPrinter, stop: threading.Event) -> None:
    """Render App events on a background thread until ``stop`` is set."""
    while not stop.is_set():
        try:
            event = events.get(timeout=0.1)
        except queue.Empty:
            continue
        try:
            printer.handle(event)
        except Exception as e:
            logger.warning("Failed to render %s: %s", type(event).__name__, e)


def _status_toolbar(app: App, printer: EventPrinter) -> str:
    if printer.pending_approval is not None:
        return " Approve tool call? y / n / a(lways)"
    if not app.busy:
        return " Ready"
    queued = app.queue_length()
    if queued:
        return f" Working... {queued} queued (Ctrl+C cancels)"
    return " Working... (Ctrl+C cancels)"


def _compact(app: App, console: Console, instructions: str) -> None:
    console.print("[dim]Compacting conversation...[/]")
    try:
        result = app.compact(instructions)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelled.[/]")
        return
    except Exception as e:
        logger.warning("Compaction failed: %s", e)
        console.print(f"[red]Compaction failed:[/] {escape(str(e))}", highlight=False)
        return
    if result is None:
        console.print("[dim]Nothing to compact.[/]")


def _handle_command(
    line: str,
    session: Session,
    console: Console,
    ext_commands: Dict[str, Callable[[str], str]],
) -> bool:
    """Run a slash command. Returns False when the REPL should exit."""
    command, _, arg = line.partition(" ")
    command = command.lower()
    app = session.app

    if command in ("/quit", "/exit"):
        return False
    if command == "/help":
        for name, text in SLASH_COMMANDS.items():
            console.print(f"  [cyan]{name:<10}[/] {text}")
        for name in sorted(ext_commands):
            console.print(f"  [cyan]/{name:<9}[/] (extension)")
    elif command == "/tools":
        console.print(render_tools_table(session.toolset().descriptors()))
    elif command == "/servers":
        console.print(render_server_table(session.manager.get_status()))
    elif command == "/clear":
        app.clear_messages()
        console.print("[dim]Conversation cleared.[/]")
    elif command == "/compact":
        _compact(app, console, arg.strip())
    elif command == "/queue":
        if arg.strip() == "clear":
            app.clear_queue()
        console.print(f"[dim]{app.queue_length()} prompt(s) queued[/]")
    elif command.lstrip("/") in ext_commands:
        handler = ext_commands[command.lstrip("/")]
        try:
            output = handler(arg)
        except Exception as e:
            logger.warning("Extension command %s failed: %s", command, e)
            console.print(f"[red]{command} failed:[/] {e}")
        else:
            if output:
                console.print(output, markup=False)
    else:
        console.print(f"[yellow]Unknown command {command}[/] (try /help)")
    return True


def _repl_loop(
    session: Session,
    console: Console,
    printer: EventPrinter,
    read_line: Callable[[], str],
    ext_commands: Dict[str, Callable[[str], str]],
) -> None:
    """Read lines until /quit or EOF; never waits for a step to finish.

    Prompts typed while a step runs are queued by the App.  While a tool
    approval is pending the next line answers it.  Ctrl+C cancels the
    running step.
    """
    app = session.app
    while True:
        try:
            line = read_line().strip()
        except KeyboardInterrupt:
            if app.busy:
                console.print("[yellow]Cancelling...[/]")
                app.cancel_current_step()
            continue
        except EOFError:
            break
        if printer.pending_approval is not None:
            printer.answer_approval(line)
            continue
        if not line:
            continue
        if line.startswith("/"):
            if not _handle_command(line, session, console, ext_commands):
                break
            continue
        app.run(line)


def run_interactive(session: Session, console: Console) -> None:
    app = session.app
    printer = EventPrinter(
        console, session_key=app.options.session_key, spinner=False, inline_approval=True,
    )
    events = app.events.subscribe()
    ext_commands = session.extensions.commands()

    history_path = get_toolhost_home() / "history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        completer=_SlashCompleter(list(SLASH_COMMANDS) + [f"/{c}" for c in ext_commands]),
        bottom_toolbar=lambda: _status_toolbar(app, printer),
        refresh_interval=0.5,
    )

    console.print(
        f"[bold]toolhost {__version__}[/] [dim]{session.handle.display_name}, "
        f"{len(session.toolset())} tools. /help for commands.[/]"
    )
    stop = threading.Event()
    pump = threading.Thread(
        target=_event_pump, args=(events, printer, stop), daemon=True, name="event-pump",
    )
    pump.start()
    try:
        with patch_stdout():
            _repl_loop(session, console, printer, lambda: prompt_session.prompt("> "), ext_commands)
    finally:
        stop.set()
        pump.join(timeout=1)
        app.events.unsubscribe(events)
        printer.close()


def run_prompt(session: Session, prompt: str, console: Console) -> int:
    app = session.app
    printer = EventPrinter(console)
    app.events.subscribe_callback(printer.handle)
    try:
        app.run_once(background(), prompt)
    except KeyboardInterrupt:
        app.cancel_current_step()
        return 130
    except Exception as e:
        printer.close()
        print(f"Error: {e}", file=sys.stderr)
        return 1
    printer.close()
    return 0


def main(
    prompt: str = None,
    config: str = None,
    model: str = None,
    api_key: str = None,
    base_url: str = None,
    session: str = None,
    yolo: bool = False,
    stream: bool = None,
    max_steps: int = None,
    list_tools: bool = False,
    verbose: bool = False,
    quiet: bool = False,
):
    """
    Run the toolhost agent.

    Args:
        prompt (str): Run this prompt once and exit instead of starting the REPL.
        config (str): Config file. Defaults to ~/.toolhost/config.yaml.
        model (str): Model as provider/model, e.g. openai/gpt-4o.
        api_key (str): Provider API key; otherwise read from the provider's env var.
        base_url (str): Override the provider's API base URL.
        session (str): JSON file to resume from and save the conversation to.
        yolo (bool): Approve every tool call without asking.
        stream (bool): Stream model output (default from config).
        max_steps (int): Maximum model calls per prompt.
        list_tools (bool): Print the tool catalog and exit.
        verbose (bool): Debug logging.
        quiet (bool): Only log errors.
    """
    setup_logging(verbose=verbose, quiet=quiet)
    load_env_files()
    console = Console()
    err_console = Console(stderr=True)

    try:
        cfg = load_config(config)
    except ConfigError as e:
        err_console.print(f"[bold red]Config error:[/] {e}")
        sys.exit(1)
    if model:
        cfg.model = model
    if api_key:
        cfg.api_key = api_key
    if base_url:
        cfg.base_url = base_url
    if stream is not None:
        cfg.stream = bool(stream)
    if max_steps:
        cfg.max_steps = int(max_steps)
    if cfg.debug and not verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        host = Session(cfg, ProviderRegistry(), session_path=session)
    except (ProviderError, ExtensionError) as e:
        err_console.print(f"[bold red]Error:[/] {e}")
        sys.exit(1)

    exit_code = 0
    try:
        try:
            host.load_tools()
        except MCPLoadError as e:
            err_console.print(f"[bold red]Error:[/] {e}")
            sys.exit(1)

        if list_tools:
            console.print(render_tools_table(host.toolset().descriptors()))
            return

        try:
            host.build_app(interactive=prompt is None, yolo=yolo)
        except SessionLoadError as e:
            err_console.print(f"[bold red]Error:[/] {e}")
            sys.exit(1)

        if prompt is not None:
            exit_code = run_prompt(host, str(prompt), console)
        else:
            run_interactive(host, console)
    finally:
        host.close()
    if exit_code:
        sys.exit(exit_code)


def run():
    fire.Fire(main)


if __name__ == "__main__":
    run()
