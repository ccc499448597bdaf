"""Main CLI entry point for termpilot."""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from concurrent.futures import CancelledError, Future
from pathlib import Path
from typing import Any, Deque, List, Optional, Tuple

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from termpilot import __version__
from termpilot.config.loader import find_config_file, load_config
from termpilot.config.models import AppConfig
from termpilot.core.content import FileReference
from termpilot.core.message_queue import MessageQueue
from termpilot.core.service import ConversationService
from termpilot.core.session import Session
from termpilot.core.store import DEFAULT_SESSION_NAME, SessionStore, title_from_message
from termpilot.llm.factory import create_client
from termpilot.llm.errors import LLMError
from termpilot.output import jsonl
from termpilot.output.events import (
    MessageFailedEvent,
    NoticeEvent,
    StoppedEvent,
    StreamChunkEvent,
    StreamEndedEvent,
    ToolCallsEvent,
)
from termpilot.tools.executor import CommandExecutor
from termpilot.tools.handler import ToolCallHandler
from termpilot.tools.specs import discover_catalog

app = typer.Typer(
    name="termpilot",
    help="Terminal AI assistant with tools",
    add_completion=False,
)
sessions_app = typer.Typer(help="Manage saved sessions")
app.add_typer(sessions_app, name="sessions")

console = Console(stderr=True)
logger = logging.getLogger("termpilot")

FILE_REF_RE = re.compile(r"@([\w./\\~-]+)")


def version_callback(value: bool):
    if value:
        console.print(f"termpilot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """termpilot - chat with a model that can run tools in your project."""
    pass


# =============================================================================
# Setup
# =============================================================================


def setup_logging(config: AppConfig, verbose: bool = False) -> None:
    log_file = Path(config.paths.data_dir) / "logs" / "termpilot.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.WARNING))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file, encoding="utf-8"), stream_handler],
        force=True,
    )


def _load(config_file: Optional[Path], model: Optional[str], workdir: Optional[Path]) -> AppConfig:
    load_dotenv()
    overrides = {
        "model.name": model,
        "paths.cwd": str(workdir) if workdir else None,
    }
    try:
        return load_config(config_file or find_config_file(), overrides)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(1)


def _open_store(config: AppConfig) -> SessionStore:
    store = SessionStore(
        config.sessions_directory,
        session_factory=lambda: Session.from_config(config.session, config.model.context_window),
        model_id=config.model.name,
    )
    store.initialize()
    return store


def parse_file_references(text: str, cwd: Path) -> List[FileReference]:
    """Collect ``@path`` mentions that exist relative to ``cwd``."""
    refs: List[FileReference] = []
    seen = set()
    for match in FILE_REF_RE.finditer(text):
        raw = match.group(1).rstrip(".,;:")
        if raw in seen:
            continue
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = cwd / path
        if path.exists():
            seen.add(raw)
            refs.append(FileReference(path=raw, is_directory=path.is_dir()))
    return refs


class Runtime:
    """Everything one CLI invocation needs to run turns."""

    def __init__(self, config: AppConfig, session: Session, on_ask_user=None):
        self.config = config
        self.session = session
        self.catalog = discover_catalog()
        self.client = create_client(config.model, retry=config.retry, stream=config.stream)
        executor = CommandExecutor(config.working_directory, timeout=config.tools.command_timeout)
        self.handler = ToolCallHandler(self.catalog, executor, max_concurrent=config.tools.max_concurrent)
        self.service = ConversationService(
            self.client, session, self.catalog, self.handler, config, on_ask_user=on_ask_user
        )

    def close(self) -> None:
        self.client.close()


# =============================================================================
# Rendering
# =============================================================================


class ConsoleObserver:
    """Renders queue events on the terminal."""

    def __init__(self, out: Console):
        self.out = out
        self.failed = False
        self.partial = ""

    def __call__(self, event: Any) -> None:
        if isinstance(event, StreamChunkEvent):
            if event.reasoning_content:
                self.out.print(event.reasoning_content, end="", style="dim italic", markup=False, highlight=False)
            if event.content:
                self.out.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, ToolCallsEvent):
            self.out.print(f"\n[dim]> {', '.join(event.names)}[/dim]")
        elif isinstance(event, StreamEndedEvent):
            self.out.print()
        elif isinstance(event, NoticeEvent):
            self.out.print(f"[yellow]{event.message}[/yellow]")
        elif isinstance(event, MessageFailedEvent):
            self.failed = True
            self.out.print(f"\n[red]Error: {event.error}[/red]")
        elif isinstance(event, StoppedEvent):
            self.partial = event.partial_content
            note = f", {event.discarded} queued message(s) discarded" if event.discarded else ""
            self.out.print(f"\n[yellow]Stopped{note}[/yellow]")


class JsonObserver:
    def __init__(self) -> None:
        self.failed = False

    def __call__(self, event: Any) -> None:
        if isinstance(event, MessageFailedEvent):
            self.failed = True
        jsonl.emit(event)


def _prompt_choice(question: str, options: List[str]) -> str:
    console.print(f"\n[bold cyan]? {question}[/bold cyan]")
    for i, option in enumerate(options, 1):
        console.print(f"  {i}. {option}")
    answer = console.input("[cyan]> [/cyan]").strip()
    if answer.isdigit() and 1 <= int(answer) <= len(options):
        return options[int(answer) - 1]
    return answer


class ConsolePrompter:
    """Carries ask-user questions from the queue worker to the main thread.

    The worker gets a Future back; the REPL answers it between waits, so
    Ctrl-C at the prompt stops the turn like it does during streaming.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._open: Deque[Tuple[str, List[str], "Future[str]"]] = deque()

    def ask(self, question: str, options: List[str]) -> "Future[str]":
        future: "Future[str]" = Future()
        with self._lock:
            self._open.append((question, options, future))
        return future

    def answer_pending(self) -> None:
        """Prompt for each open question; KeyboardInterrupt propagates."""
        while True:
            with self._lock:
                if not self._open:
                    return
                question, options, future = self._open.popleft()
            if not future.set_running_or_notify_cancel():
                continue
            try:
                answer = _prompt_choice(question, options)
            except EOFError:
                answer = ""
            except KeyboardInterrupt:
                future.set_exception(CancelledError())
                raise
            future.set_result(answer)

    def withdraw(self) -> int:
        """Cancel every question still waiting for an answer."""
        with self._lock:
            questions = list(self._open)
            self._open.clear()
        for _, _, future in questions:
            future.cancel()
        return len(questions)


def _wait(queue: MessageQueue, prompter: Optional[ConsolePrompter] = None) -> None:
    """Wait for the queue to drain; Ctrl-C stops the running turn."""
    while True:
        try:
            if prompter is not None:
                prompter.answer_pending()
            if queue.wait_idle(0.2):
                return
        except KeyboardInterrupt:
            queue.stop()
            if prompter is not None:
                prompter.withdraw()


# =============================================================================
# Commands
# =============================================================================


@app.command("exec")
def exec_command(
    prompt: str = typer.Argument(..., help="Message to send"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Working directory"),
    json_mode: bool = typer.Option(False, "--json", help="Output events as JSONL"),
    plan: bool = typer.Option(False, "--plan", help="Start in plan mode"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Send one message, run it to completion and exit."""
    config = _load(config_file, model, workdir)
    setup_logging(config, verbose)

    cwd = config.working_directory
    if not cwd.exists():
        console.print(f"[red]Working directory does not exist: {cwd}[/red]")
        raise typer.Exit(1)

    session = Session.from_config(config.session, config.model.context_window)
    try:
        runtime = Runtime(config, session)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    observer = JsonObserver() if json_mode else ConsoleObserver(Console())
    queue = MessageQueue(runtime.service.process, observer)
    try:
        queue.enqueue(prompt, parse_file_references(prompt, cwd), plan_mode=plan)
        _wait(queue)
        stopped = queue.is_stopped
    finally:
        queue.close()
        runtime.close()

    if observer.failed or stopped:
        raise typer.Exit(1)


@app.command("chat")
def chat_command(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Working directory"),
    session_id: Optional[str] = typer.Option(None, "--session", "-s", help="Resume a saved session"),
    new: bool = typer.Option(False, "--new", help="Start a new session"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Interactive chat. Ctrl-C stops the running turn, /exit quits."""
    config = _load(config_file, model, workdir)
    setup_logging(config, verbose)
    store = _open_store(config)

    info = None if new else store.get_session_info(session_id) if session_id else store.get_active_session()
    session = store.load_session(info.id) if info else None
    if session is None:
        info = store.create_session()
        session = Session.from_config(config.session, config.model.context_window)
    else:
        session.update_context_window(config.model.context_window)
    store.set_active_session_id(info.id)

    prompter = ConsolePrompter()
    try:
        runtime = Runtime(config, session, on_ask_user=prompter.ask)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    observer = ConsoleObserver(Console())
    queue = MessageQueue(runtime.service.process, observer)
    console.print(f"[bold blue]termpilot v{__version__}[/bold blue]  model [cyan]{config.model.name}[/cyan]")
    console.print(f"Session [cyan]{info.name}[/cyan] ({len(session)} messages), cwd [cyan]{config.working_directory}[/cyan]")
    console.print("[dim]/plan toggles plan mode, /compact, /clear, /status, /exit[/dim]")

    try:
        while True:
            try:
                marker = "plan" if runtime.service.plan_mode else ""
                text = console.input(f"[bold green]{marker}>[/bold green] ").strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not text:
                continue
            if text.startswith("/"):
                if not _slash_command(text, runtime, store, info.id):
                    break
                continue

            if info.name == DEFAULT_SESSION_NAME:
                info.name = title_from_message(text)
                store.rename_session(info.id, info.name)

            refs = parse_file_references(text, config.working_directory)
            queue.enqueue(text, refs, plan_mode=runtime.service.plan_mode)
            _wait(queue, prompter)
            if observer.partial:
                session.save_partial_response(observer.partial)
                observer.partial = ""
            store.save_session(session, info.id)
    finally:
        queue.close()
        store.save_session(session, info.id)
        runtime.close()


def _slash_command(text: str, runtime: Runtime, store: SessionStore, session_id: str) -> bool:
    """Handle a REPL command; False means quit."""
    command = text.split()[0].lower()
    session = runtime.session
    if command in ("/exit", "/quit"):
        return False
    if command == "/plan":
        runtime.service.plan_mode = not runtime.service.plan_mode
        console.print(f"Plan mode {'on' if runtime.service.plan_mode else 'off'}")
    elif command == "/clear":
        session.clear()
        store.save_session(session, session_id)
        console.print("Session cleared")
    elif command == "/compact":
        if len(session) == 0:
            console.print("Nothing to compact")
        else:
            try:
                freed = runtime.service.compactor.compact(session)
            except LLMError as e:
                console.print(f"[red]Compaction failed: {e}[/red]")
                return True
            store.save_session(session, session_id)
            console.print(f"Compacted, {freed} tokens freed")
    elif command == "/status":
        status = session.get_status()
        console.print(
            f"{status.used_tokens}/{session.context_window} tokens ({status.usage_percent:.1f}%), "
            f"{status.message_count} messages"
        )
    else:
        console.print(f"[red]Unknown command: {command}[/red]")
    return True


@sessions_app.command("list")
def sessions_list(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List saved sessions."""
    config = _load(config_file, None, None)
    store = _open_store(config)
    table = Table("id", "name", "messages", "tokens", "model")
    for info in store.list_sessions():
        marker = "*" if info.is_active else ""
        table.add_row(f"{info.id}{marker}", info.name, str(info.message_count), str(info.token_usage), info.model_id)
    Console().print(table)


@sessions_app.command("rename")
def sessions_rename(
    session_id: str = typer.Argument(..., help="Session id"),
    name: str = typer.Argument(..., help="New name"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Rename a saved session."""
    store = _open_store(_load(config_file, None, None))
    if not store.rename_session(session_id, name):
        console.print(f"[red]Unknown session: {session_id}[/red]")
        raise typer.Exit(1)


@sessions_app.command("delete")
def sessions_delete(
    session_id: str = typer.Argument(..., help="Session id"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Delete a saved session (not the active one)."""
    store = _open_store(_load(config_file, None, None))
    if not store.delete_session(session_id):
        console.print(f"[red]Cannot delete session {session_id}[/red]")
        raise typer.Exit(1)


@app.command("config")
def show_config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show current configuration."""
    path = config_file or find_config_file()
    if path:
        console.print(f"Loading config from: {path}")
    else:
        console.print("No config file found, using defaults")
    config = _load(path, None, None)
    data = config.model_dump(mode="json")
    if data["model"].get("api_key"):
        data["model"]["api_key"] = "***"
    Console().print_json(data=data)


if __name__ == "__main__":
    app()
