import asyncio
from contextlib import aclosing

import typer
from rich.console import Console
from rich.table import Table

from ollama_chat.config import settings
from ollama_chat.core.exceptions import ChatError, NotFoundError
from ollama_chat.core.logging import configure_logging
from ollama_chat.schemas.chat import ChatMessage
from ollama_chat.schemas.sessions import ChatSession
from ollama_chat.services.context_tracker import ContextTracker
from ollama_chat.services.inference.ollama_client import OllamaClient
from ollama_chat.services.orchestrator import ChatOrchestrator
from ollama_chat.services.sessions import SessionStore
from ollama_chat.services.storage import create_backend

console = Console()
cli_app = typer.Typer(name="ollama-chat", help="Chat with a local Ollama server from the terminal")


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


def _build_store() -> SessionStore:
    return SessionStore(create_backend(settings))


def _build_client() -> OllamaClient:
    return OllamaClient()


def _fail(error: ChatError) -> None:
    console.print(f"[bold red]{error.message}[/bold red]")
    suggestion = error.details.get("suggestion")
    if suggestion:
        console.print(f"[dim]{suggestion}[/dim]")
    raise typer.Exit(code=1)


def _session_table(title: str, sessions: list[ChatSession], active_id: str | None) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Model", style="green")
    table.add_column("Messages", justify="right")
    table.add_column("Context")
    table.add_column("Created")

    for s in sessions:
        marker = " *" if s.id == active_id else ""
        created = s.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
        table.add_row(s.id[:8] + marker, s.title, s.model, str(len(s.messages)), s.usage.display, created)
    return table


def _resolve(store: SessionStore, session_id: str) -> ChatSession:
    """Find a session by full id or unique id prefix."""
    matches = [s for s in store.get_all() if s.id == session_id or s.id.startswith(session_id)]
    if len(matches) != 1:
        raise NotFoundError(f"No single session matches '{session_id}'.")
    return matches[0]


@cli_app.callback()
def main_callback(
    log_level: str = typer.Option(None, "--log-level", help="Override CHAT_LOG_LEVEL"),
):
    configure_logging(log_level or settings.chat_log_level)


@cli_app.command("models")
def list_models():
    """List installed models."""
    async def _list():
        client = _build_client()
        try:
            return await client.list_models()
        finally:
            await client.close()

    try:
        models = _run_async(_list())
    except ChatError as e:
        _fail(e)

    if not models:
        console.print("[dim]No models installed. Pull one with `ollama pull <name>`.[/dim]")
        return

    table = Table(title="Installed Models")
    table.add_column("Name", style="cyan")
    table.add_column("Family")
    table.add_column("Loaded", style="green")
    table.add_column("Reasoning")
    for m in models:
        table.add_row(m.name, m.family or "-", "yes" if m.loaded else "", "yes" if m.supports_reasoning else "")
    console.print(table)


@cli_app.command("sessions")
def list_sessions(
    grouped: bool = typer.Option(True, "--grouped/--flat", help="Group by Today / Yesterday / Older"),
):
    """List saved chat sessions."""
    try:
        store = _build_store()
    except ChatError as e:
        _fail(e)

    if not store.get_all():
        console.print("[dim]No chat sessions yet.[/dim]")
        return

    if not grouped:
        console.print(_session_table("Chat Sessions", store.get_all(), store.active_id))
        return

    groups = store.group_by_recency()
    for label, sessions in (("Today", groups.today), ("Yesterday", groups.yesterday), ("Older", groups.older)):
        if sessions:
            console.print(_session_table(label, sessions, store.active_id))


@cli_app.command("search")
def search_sessions(query: str = typer.Argument(help="Text to look for in titles and messages")):
    """Search sessions by title and message content."""
    try:
        store = _build_store()
    except ChatError as e:
        _fail(e)

    results = store.search(query)
    if not results:
        console.print(f"[dim]No sessions match '{query}'.[/dim]")
        return
    console.print(_session_table(f"Matches for '{query}'", results, store.active_id))


@cli_app.command("show")
def show_session(session_id: str = typer.Argument(help="Session id or id prefix")):
    """Print a session transcript."""
    try:
        store = _build_store()
        session = _resolve(store, session_id)
    except ChatError as e:
        _fail(e)

    console.print(f"\n[bold]{session.title}[/bold]  [dim]{session.model} · {session.usage.display}[/dim]\n")
    for m in session.messages:
        if m.reasoning:
            console.print(f"[dim]Thought for {m.reasoning_seconds or 0}s[/dim]")
        style = "bold cyan" if m.role == "user" else "default"
        console.print(f"[{style}]{m.role}:[/{style}] ", end="")
        console.print(m.content, markup=False, highlight=False)


@cli_app.command("rename")
def rename_session(
    session_id: str = typer.Argument(help="Session id or id prefix"),
    title: str = typer.Argument(help="New title; blank restores the default"),
):
    """Rename a session."""
    try:
        store = _build_store()
        session = _resolve(store, session_id)
        store.rename(session.id, title)
    except ChatError as e:
        _fail(e)
    console.print(f"[green]Renamed to:[/green] {store.get_by_id(session.id).title}")


@cli_app.command("delete")
def delete_session(session_id: str = typer.Argument(help="Session id or id prefix")):
    """Delete a session."""
    try:
        store = _build_store()
        session = _resolve(store, session_id)
        store.delete(session.id)
    except ChatError as e:
        _fail(e)
    console.print(f"[bold red]Deleted[/bold red] {session.title}")


@cli_app.command("clear")
def clear_sessions(yes: bool = typer.Option(False, "--yes", help="Skip confirmation")):
    """Delete every saved session."""
    if not yes and not typer.confirm("Delete all chat sessions?"):
        raise typer.Exit(code=1)
    try:
        _build_store().clear_all()
    except ChatError as e:
        _fail(e)
    console.print("[bold red]All sessions deleted.[/bold red]")


@cli_app.command("ask")
def ask(
    prompt: str = typer.Argument(help="Question to send"),
    model: str = typer.Option(None, "--model", "-m", help="Model name (defaults to CHAT_DEFAULT_MODEL)"),
    think: bool = typer.Option(False, "--think", help="Request the model's reasoning side-channel"),
):
    """One-shot question; nothing is saved."""
    model = model or settings.chat_default_model
    if not model:
        console.print("[bold red]No model given.[/bold red] Pass --model or set CHAT_DEFAULT_MODEL.")
        raise typer.Exit(code=1)

    async def _ask():
        client = _build_client()
        try:
            return await client.chat(model, [ChatMessage(role="user", content=prompt)], think=think)
        finally:
            await client.close()

    try:
        result = _run_async(_ask())
    except ChatError as e:
        _fail(e)

    if result.reasoning:
        console.print(result.reasoning, style="dim", markup=False, highlight=False)
    console.print(result.content, markup=False, highlight=False)
    console.print(f"[dim]{result.prompt_tokens} prompt + {result.eval_tokens} generated tokens[/dim]")


async def _print_turn(orchestrator: ChatOrchestrator, text: str) -> None:
    shown_reasoning = shown_content = 0
    async with aclosing(orchestrator.stream_turn(text)) as turn:
        async for progress in turn:
            if progress.done:
                if progress.usage is not None:
                    console.print(f"\n[dim]{progress.usage.display}[/dim]")
                continue
            if len(progress.reasoning) > shown_reasoning:
                console.print(progress.reasoning[shown_reasoning:], style="dim", end="", markup=False, highlight=False)
                shown_reasoning = len(progress.reasoning)
            if len(progress.content) > shown_content:
                if shown_content == 0 and shown_reasoning:
                    console.print()
                console.print(progress.content[shown_content:], end="", markup=False, highlight=False)
                shown_content = len(progress.content)


@cli_app.command("chat")
def chat(
    model: str = typer.Option(None, "--model", "-m", help="Model for new sessions"),
    session_id: str = typer.Option(None, "--session", "-s", help="Resume a session by id or prefix"),
    new: bool = typer.Option(False, "--new", help="Start a fresh session"),
):
    """Interactive streaming chat. Type /new for a fresh session, /exit to quit."""
    async def _chat():
        client = _build_client()
        orchestrator = ChatOrchestrator(
            client, _build_store(), ContextTracker(), default_model=model or settings.chat_default_model
        )
        try:
            await client.wait_until_ready()
            if session_id:
                orchestrator.set_active(_resolve(orchestrator.store, session_id).id)
            # initialize() creates a session when the store is empty; --new must not add a second
            had_sessions = bool(orchestrator.store.get_all())
            active = await orchestrator.initialize()
            if model and model != active.model:
                await orchestrator.select_model(model)
            if new and had_sessions:
                active = await orchestrator.new_session()
            console.print(
                f"[bold]{active.title}[/bold] [dim]({orchestrator.selected_model}) · "
                f"{orchestrator.tracker.display_string(active.id)}[/dim]"
            )

            while True:
                try:
                    text = await asyncio.to_thread(console.input, "[bold cyan]> [/bold cyan]")
                except EOFError:
                    break
                command = text.strip()
                if command in ("/exit", "/quit"):
                    break
                if command == "/new":
                    session = await orchestrator.new_session()
                    console.print(f"[dim]New session {session.id[:8]}[/dim]")
                    continue
                try:
                    await _print_turn(orchestrator, text)
                except ChatError as e:
                    console.print(f"\n[bold red]{e.message}[/bold red]")
        finally:
            await client.close()

    try:
        _run_async(_chat())
    except KeyboardInterrupt:
        console.print()
    except ChatError as e:
        _fail(e)


def main():
    cli_app()


if __name__ == "__main__":
    main()
