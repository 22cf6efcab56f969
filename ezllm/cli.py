"""
EzLLM CLI: chat with an on-device model from the terminal.

Registered as the `ezllm` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import shlex
import signal
from pathlib import Path
from typing import Any

import click

from . import __version__
from .config import Settings, configure_logging
from .exceptions import EzLLMError, ProviderUnavailable
from .models import ChatThread, FinishReason, GenerationResult, StylePreset
from .orchestrator import ChatOrchestrator
from .provider import create_provider
from .store import ChatStore, slugify_filename

STYLE_CHOICES = [preset.value for preset in StylePreset]

HELP_TEXT = """Slash Commands
/help                          Show command help
/new [title]                   Start a new chat
/threads                       List chats
/switch <id-prefix>            Switch to another chat
/rename <title>                Rename the current chat
/style creative|balanced|precise
                               Change the current chat's style preset
/guardrails on|off             Toggle content guardrails for the current chat
/clear                         Clear the current chat's history (title is kept)
/retry                         Re-run the last cancelled or failed turn
/export [jsonl|md] [path]      Export the current chat
/quit                          Leave the chat

Press Ctrl-C while a reply is streaming to cancel it.
"""


class _QuitChat(Exception):
    pass


def _settings(ctx: click.Context) -> Settings:
    return ctx.find_object(Settings) or Settings.from_env()


def _orchestrator(settings: Settings, store: ChatStore | None = None) -> ChatOrchestrator:
    return ChatOrchestrator(
        create_provider(settings.backend),
        store=store,
        system_prompt=settings.system_prompt,
        logging_enabled=settings.log_generations,
        max_prompt_chars=settings.max_prompt_chars,
    )


def _report(result: GenerationResult) -> None:
    """Print a one-line status for anything other than a clean stop."""
    if result.finish_reason is FinishReason.STOP:
        return
    if result.finish_reason is FinishReason.LENGTH:
        click.secho("[response truncated at the model's length limit]", fg="yellow", err=True)
    elif result.finish_reason is FinishReason.SAFETY:
        click.secho("[response stopped by the safety filter]", fg="yellow", err=True)
    elif result.finish_reason is FinishReason.CANCEL:
        click.secho(
            "[cancelled; nothing was saved, use /retry to run it again]", fg="yellow", err=True
        )
    elif result.error is not None:
        click.secho(f"[{result.error.kind.value}] {result.error.message}", fg="red", err=True)


async def _stream_turn(
    orchestrator: ChatOrchestrator,
    thread_id: str,
    text: str | None,
    overrides: dict[str, Any] | None = None,
) -> GenerationResult:
    """Send (or retry when ``text`` is None) and echo tokens; SIGINT cancels the turn."""
    loop = asyncio.get_running_loop()
    installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel, thread_id)
        installed = True

    def on_token(chunk: str) -> None:
        click.echo(chunk, nl=False)

    try:
        if text is None:
            task = orchestrator.retry(thread_id, on_token=on_token, overrides=overrides)
        else:
            task = orchestrator.send(thread_id, text, on_token=on_token, overrides=overrides)
        result = await task
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    click.echo()
    _report(result)
    return result


def _print_threads(threads: list[ChatThread], current_id: str | None = None) -> None:
    if not threads:
        click.secho("No chats yet.", fg="yellow")
        return
    click.secho(f"  {'ID':<10}{'Style':<11}{'Turns':<7}{'Title'}", fg="cyan")
    click.secho(f"  {'─' * 9} {'─' * 10} {'─' * 6} {'─' * 30}", fg="cyan")
    for thread in threads:
        marker = "*" if thread.id == current_id else " "
        click.echo(
            f"{marker} {thread.id[:8]:<10}{thread.style.value:<11}"
            f"{thread.turn_count:<7}{thread.title}"
        )


def _find_thread(orchestrator: ChatOrchestrator, prefix: str) -> ChatThread:
    matches = [t for t in orchestrator.list_threads() if t.id.startswith(prefix)]
    if len(matches) != 1:
        raise click.BadParameter(
            f"'{prefix}' matches {len(matches)} chats; give a longer id prefix."
        )
    return matches[0]


def _export(store: ChatStore, thread: ChatThread, fmt: str, output: str | None) -> Path:
    suffix = "jsonl" if fmt == "jsonl" else "md"
    target = Path(output) if output else Path.cwd() / f"{slugify_filename(thread.title)}.{suffix}"
    if fmt == "jsonl":
        store.export_jsonl(thread.id, target)
    else:
        store.export_markdown(thread.id, target)
    return target


def _run_slash_command(
    orchestrator: ChatOrchestrator, thread: ChatThread, raw: str
) -> ChatThread:
    """Execute one slash command and return the (possibly different) current thread."""
    parts = shlex.split(raw[1:])
    command, args = (parts[0].lower(), parts[1:]) if parts else ("help", [])

    if command in {"quit", "exit"}:
        raise _QuitChat
    if command == "help":
        click.echo(HELP_TEXT)
    elif command == "new":
        thread = orchestrator.create_thread(" ".join(args) or None, style=thread.style)
        click.secho(f"Started '{thread.title}'.", fg="green")
    elif command == "threads":
        _print_threads(orchestrator.list_threads(), thread.id)
    elif command == "switch" and args:
        thread = _find_thread(orchestrator, args[0])
        click.secho(f"Switched to '{thread.title}'.", fg="green")
    elif command == "rename" and args:
        orchestrator.rename_thread(thread.id, " ".join(args))
        click.secho(f"Renamed to '{thread.title}'.", fg="green")
    elif command == "style" and args:
        orchestrator.set_style(thread.id, args[0])
        click.secho(f"Style set to {thread.style.value}.", fg="green")
    elif command == "guardrails" and args and args[0].lower() in {"on", "off"}:
        orchestrator.set_guardrails(thread.id, args[0].lower() == "on")
        click.secho(f"Guardrails {'on' if thread.guardrails else 'off'}.", fg="green")
    elif command == "clear":
        orchestrator.clear_history(thread.id)
        click.secho("History cleared.", fg="green")
    elif command == "retry":
        asyncio.run(_stream_turn(orchestrator, thread.id, None))
    elif command == "export" and orchestrator.store is not None:
        fmt = args[0].lower() if args else "md"
        if fmt not in {"jsonl", "md"}:
            raise click.BadParameter("export format must be 'jsonl' or 'md'")
        target = _export(orchestrator.store, thread, fmt, args[1] if len(args) > 1 else None)
        click.secho(f"Exported chat to {target}", fg="green")
    else:
        click.secho(f"Unknown or incomplete command: {raw}", fg="yellow", err=True)
        click.echo(HELP_TEXT, err=True)
    return thread


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="ezllm")
@click.option("--backend", default=None, help="Generation backend (apple, scripted).")
@click.option(
    "--db", "db_path", default=None, type=click.Path(dir_okay=False), help="Chat database path."
)
@click.option("--log-level", default=None, help="Logging level (debug, info, warning, ...).")
@click.pass_context
def cli(
    ctx: click.Context, backend: str | None, db_path: str | None, log_level: str | None
) -> None:
    """EzLLM: local, streaming, cancellable chat with an on-device model."""
    settings = Settings.from_env()
    changes: dict[str, Any] = {}
    if backend:
        changes["backend"] = backend.strip().lower()
    if db_path:
        changes["db_path"] = Path(db_path).expanduser()
    if log_level:
        changes["log_level"] = log_level
    settings = dataclasses.replace(settings, **changes)
    configure_logging(settings.log_level)
    ctx.obj = settings


# ── Diagnostics ───────────────────────────────────────────────────────────────


@cli.command()
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Check whether the configured backend can run on this machine."""
    settings = _settings(ctx)
    provider = create_provider(settings.backend)
    if provider.is_supported():
        click.secho(f"✓ Backend '{provider.name}' is available.", fg="green")
        return
    click.secho(f"✗ Backend '{provider.name}' is not available.", fg="red", err=True)
    click.echo(f"  Reason: {provider.unavailable_reason() or 'unknown'}", err=True)
    raise SystemExit(2)


# ── One-shot ──────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("prompt")
@click.option("--style", type=click.Choice(STYLE_CHOICES), default="balanced", show_default=True)
@click.option("--temperature", type=float, default=None, help="Override the preset temperature.")
@click.option("--top-p", type=float, default=None, help="Override the preset top-p.")
@click.option("--max-tokens", type=int, default=None, help="Cap the response length.")
@click.option("--no-guardrails", is_flag=True, help="Use the permissive safety policy.")
@click.pass_context
def ask(
    ctx: click.Context,
    prompt: str,
    style: str,
    temperature: float | None,
    top_p: float | None,
    max_tokens: int | None,
    no_guardrails: bool,
) -> None:
    """Stream a single reply to PROMPT without saving it."""
    orchestrator = _orchestrator(_settings(ctx))
    thread = orchestrator.create_thread("ask", style=style, guardrails=not no_guardrails)
    overrides: dict[str, Any] = {}
    if temperature is not None:
        overrides["temperature"] = temperature
    if top_p is not None:
        overrides["top_p"] = top_p
    if max_tokens is not None:
        overrides["max_response_tokens"] = max_tokens

    result = asyncio.run(_stream_turn(orchestrator, thread.id, prompt, overrides or None))
    if not result.ok:
        raise SystemExit(1)


# ── Interactive chat ──────────────────────────────────────────────────────────


@cli.command()
@click.option(
    "--thread", "thread_prefix", default=None, help="Resume the chat with this id prefix."
)
@click.option(
    "--style", type=click.Choice(STYLE_CHOICES), default=None, help="Style for a new chat."
)
@click.pass_context
def chat(ctx: click.Context, thread_prefix: str | None, style: str | None) -> None:
    """Interactive chat with persistent history and slash commands (/help)."""
    settings = _settings(ctx)
    with ChatStore(settings.db_path) as store:
        orchestrator = _orchestrator(settings, store)
        if thread_prefix:
            thread = _find_thread(orchestrator, thread_prefix)
        else:
            thread = orchestrator.create_thread(style=style or StylePreset.BALANCED)

        click.secho(
            f"{thread.title} ({thread.style.value}), /help for commands", fg="cyan", bold=True
        )
        while True:
            try:
                raw = click.prompt(click.style("You", fg="cyan"), prompt_suffix="> ").strip()
            except click.Abort:
                click.echo()
                break
            if not raw:
                continue
            if raw.startswith("/"):
                try:
                    thread = _run_slash_command(orchestrator, thread, raw)
                except _QuitChat:
                    break
                except (EzLLMError, click.BadParameter, ValueError) as exc:
                    click.secho(str(exc), fg="red", err=True)
                continue
            asyncio.run(_stream_turn(orchestrator, thread.id, raw))


# ── History ───────────────────────────────────────────────────────────────────


@cli.command()
@click.pass_context
def threads(ctx: click.Context) -> None:
    """List saved chats."""
    with ChatStore(_settings(ctx).db_path) as store:
        _print_threads(store.load_threads())


@cli.command(name="export")
@click.argument("thread_prefix")
@click.option(
    "--format", "fmt", type=click.Choice(["jsonl", "md"]), default="md", show_default=True
)
@click.option("-o", "--output", default=None, type=click.Path(dir_okay=False))
@click.pass_context
def export_cmd(ctx: click.Context, thread_prefix: str, fmt: str, output: str | None) -> None:
    """Export the chat whose id starts with THREAD_PREFIX."""
    with ChatStore(_settings(ctx).db_path) as store:
        matches = [t for t in store.load_threads() if t.id.startswith(thread_prefix)]
        if len(matches) != 1:
            raise click.BadParameter(f"'{thread_prefix}' matches {len(matches)} chats.")
        target = _export(store, matches[0], fmt, output)
    click.secho(f"Exported chat to {target}", fg="green")


@cli.command(name="clear-all")
@click.confirmation_option(prompt="Clear the message history of every chat?")
@click.pass_context
def clear_all(ctx: click.Context) -> None:
    """Empty every chat's history; chats and their titles are kept."""
    with ChatStore(_settings(ctx).db_path) as store:
        store.clear_all()
    click.secho("All chat histories cleared.", fg="green")


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli(standalone_mode=True)
    except ProviderUnavailable as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc
    except EzLLMError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    cli_entry()
