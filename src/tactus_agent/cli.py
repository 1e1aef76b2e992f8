"""Command-line front end: list models, one-shot chat, interactive REPL."""

from __future__ import annotations

import asyncio
import json
import logging
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from tactus_agent.config import AgentConfig, ConfigError, load_config
from tactus_agent.core.context import DEFAULT_INSTRUCTIONS, ContextLedger, MessageBuilder
from tactus_agent.core.orchestrator import Exchange, Orchestrator
from tactus_agent.llm.client import AsyncChatClient
from tactus_agent.tools.catalog import default_catalog
from tactus_agent.types import EventType, PromptContext, StreamEvent

console = Console()

_HISTORY_PATH = Path.home() / ".config" / "tactus" / "history"


def get_version() -> str:
    try:
        return version("tactus-agent")
    except PackageNotFoundError:
        return "unknown"


class StreamingDisplay:
    """Renders exchange events to the terminal as they arrive."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False

    def handle(self, event: StreamEvent):
        if event.type == EventType.CONTENT:
            if not self._streaming:
                self._streaming = True
                self.con.print()
            self.con.print(event.text, end="", highlight=False, markup=False)

        elif event.type == EventType.REASONING:
            first = event.text.split("\n")[0][:80]
            if first.strip():
                self.con.print(f"[dim italic]{first}[/dim italic]", highlight=False)

        elif event.type == EventType.THINKING:
            self.flush()
            self.con.print(f"[dim]{event.text}[/dim]")

        elif event.type == EventType.TOOL_CALL:
            self.flush()
            args = json.dumps(event.data.get("arguments", {}), ensure_ascii=False)
            if len(args) > 120:
                args = args[:120] + "..."
            self.con.print(f"[cyan]> {event.data.get('name')}[/cyan] [dim]{args}[/dim]")

        elif event.type == EventType.TOOL_RESULT:
            ok = event.data.get("success")
            mark = "[green]ok[/green]" if ok else "[red]failed[/red]"
            self.con.print(f"  {mark} [dim]{str(event.data.get('result', ''))[:100]}[/dim]")

        elif event.type == EventType.ERROR:
            self.flush()
            style = "yellow" if event.data.get("retrying") else "red"
            self.con.print(
                f"[{style}]{event.data.get('message')}[/{style}] "
                f"[dim]({event.data.get('kind')}: {event.data.get('detail')})[/dim]"
            )

        elif event.type == EventType.DONE:
            self.flush()
            if event.data.get("truncated"):
                self.con.print("[yellow]Stopped at the iteration limit.[/yellow]")

    def flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


def _load(config_path: str | None, profile: str | None) -> AgentConfig:
    try:
        config, config_file = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    if profile:
        if profile not in config.profiles:
            raise click.ClickException(f"Unknown profile: {profile}")
        config.profile = profile
    if config_file:
        console.print(f"[dim]Config: {config_file}[/dim]")
    return config


def _build(config: AgentConfig, model: str | None) -> Orchestrator:
    profile = config.active_profile
    if model:
        profile.model = model
    client = AsyncChatClient(profile, config.retry, language=config.language)
    return Orchestrator(
        client,
        catalog=default_catalog(),
        builder=MessageBuilder(config.system_prompt or DEFAULT_INSTRUCTIONS),
        loop=config.loop,
        language=config.language,
    )


async def _drive(exchange: Exchange, display: StreamingDisplay) -> bool:
    async for event in exchange:
        display.handle(event)
    display.flush()
    return exchange.status == "done"


@click.group()
@click.version_option(get_version(), prog_name="tactus")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to tactus.yaml (auto-detected from CWD or ~/.config/tactus/)")
@click.option("--profile", "-p", default=None, help="Provider profile to use")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, profile: str | None, verbose: bool):
    """Tactus - streaming chat client with a reason-act tool loop."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = {"config_path": config_path, "profile": profile}


@main.command()
@click.pass_obj
def models(obj: dict):
    """List the models the provider offers."""
    config = _load(obj["config_path"], obj["profile"])

    async def _list():
        async with AsyncChatClient(config.active_profile, config.retry) as client:
            return await client.list_models()

    found = asyncio.run(_list())
    if not found:
        console.print("[yellow]No models found (see --verbose for details).[/yellow]")
        return
    table = Table(title=f"Models @ {config.active_profile.url}")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    for m in found:
        table.add_row(m.id, m.name)
    console.print(table)


@main.command()
@click.argument("prompt", required=False)
@click.option("--model", "-m", default=None, help="Override the profile's model")
@click.option("--quote", "-q", default=None, help="Quoted passage to attach to the prompt")
@click.option("--show-request", is_flag=True, help="Print the last request payload")
@click.pass_obj
def chat(obj: dict, prompt: str | None, model: str | None, quote: str | None,
         show_request: bool):
    """Send PROMPT, or start an interactive session when PROMPT is omitted."""
    config = _load(obj["config_path"], obj["profile"])
    context = PromptContext(language=config.language)

    if prompt:
        ok = asyncio.run(_one_shot(config, model, prompt, quote, context, show_request))
        if not ok:
            raise SystemExit(1)
        return

    asyncio.run(_repl(config, model, context))


async def _one_shot(
    config: AgentConfig,
    model: str | None,
    prompt: str,
    quote: str | None,
    context: PromptContext,
    show_request: bool,
) -> bool:
    orch = _build(config, model)
    try:
        exchange = orch.start(prompt, context=context, quote=quote)
        ok = await _drive(exchange, StreamingDisplay(console))
        if show_request and exchange.last_request is not None:
            console.print_json(data=exchange.last_request)
        return ok
    finally:
        await orch.client.close()


_HELP = """[bold]Commands:[/bold]
  /edit K TEXT  - Replace user message K (0-based) and everything after it
  /ledger       - Show the conversation as sent on the wire
  /request      - Show the last request payload
  /reset        - Start a new conversation
  /quit         - Exit"""


async def _repl(config: AgentConfig, model: str | None, context: PromptContext) -> None:
    orch = _build(config, model)
    display = StreamingDisplay(console)
    ledger = ContextLedger()
    last: Exchange | None = None

    console.print(
        f"[bold cyan]tactus[/bold cyan] [dim]v{get_version()} | "
        f"{orch.client.profile.model} @ {orch.client.profile.url}[/dim]"
    )
    console.print("[dim]Type /help for commands[/dim]\n")

    _HISTORY_PATH.parent.mkdir(parents=True, exist_ok=True)
    session: PromptSession = PromptSession(history=FileHistory(str(_HISTORY_PATH)))

    try:
        while True:
            try:
                user_input = (await session.prompt_async("> ")).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/dim]")
                break
            if not user_input:
                continue

            if user_input.startswith("/"):
                cmd, _, arg = user_input.partition(" ")
                if cmd in ("/quit", "/exit"):
                    break
                if cmd == "/help":
                    console.print(_HELP)
                elif cmd == "/reset":
                    ledger = ContextLedger()
                    console.print("[dim]Conversation cleared.[/dim]")
                elif cmd == "/ledger":
                    _print_ledger(ledger)
                elif cmd == "/request":
                    if last is None or last.last_request is None:
                        console.print("[dim]Nothing sent yet.[/dim]")
                    else:
                        console.print_json(data=last.last_request)
                elif cmd == "/edit":
                    index, _, text = arg.partition(" ")
                    if not index.isdigit() or not text.strip():
                        console.print("[red]Usage: /edit K TEXT[/red]")
                        continue
                    try:
                        last = orch.edit(ledger, int(index), text.strip(), context=context)
                    except IndexError as e:
                        console.print(f"[red]{e}[/red]")
                        continue
                    await _drive(last, display)
                else:
                    console.print(f"[red]Unknown command: {cmd}[/red]")
                continue

            mark = len(ledger)
            last = orch.start(user_input, context=context, ledger=ledger)
            if not await _drive(last, display):
                # keep the conversation resendable
                ledger.truncate(mark)
            console.print()
    finally:
        await orch.client.close()


def _print_ledger(ledger: ContextLedger) -> None:
    if not len(ledger):
        console.print("[dim]Empty conversation.[/dim]")
        return
    user_no = 0
    for msg in ledger.messages:
        label = msg.role
        if msg.role == "user":
            label = f"user #{user_no}"
            user_no += 1
        console.print(f"[bold]{label}[/bold]")
        if msg.role == "assistant" and msg.tool_calls:
            for tc in msg.tool_calls:
                console.print(f"  [cyan]{tc.name}[/cyan]({tc.arguments}) [dim]{tc.id}[/dim]")
        if msg.content:
            if msg.role == "assistant":
                console.print(Markdown(msg.content))
            else:
                console.print(msg.content, markup=False, highlight=False)
