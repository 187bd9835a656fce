"""
PromptCanvas CLI

Thin wrapper around the orchestrator and store providing a command-line
interface.

Usage:
    promptcanvas generate "a cat" [--conversation TS] [--resolution 2K]
    promptcanvas new-seed <ts> <entry> [image]
    promptcanvas upscale <ts> <entry> [image]
    promptcanvas list [--json]
    promptcanvas show <ts> [--json]
    promptcanvas delete <ts>
    promptcanvas export-image <ts> <index> <out>
    promptcanvas models
    promptcanvas balance
    promptcanvas prefs get|set|delete|list|clear
"""

from __future__ import annotations

import asyncio
import json as json_module
import logging
import os
from pathlib import Path
from typing import List, Optional

import httpx
import typer

from .clients.openrouter_client import Balance, ImageModel, OpenRouterClient, OpenRouterError
from .config import ASPECT_RATIOS, RESOLUTIONS, get_config
from .orchestrator import GenerationListener, GenerationOrchestrator
from .store import Conversation, ConversationSummary, StoreLockError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

app = typer.Typer(
    name="promptcanvas",
    help="PromptCanvas - conversational image generation",
    no_args_is_help=True,
)

prefs_app = typer.Typer(
    name="prefs",
    help="Preference commands",
    no_args_is_help=True,
)
app.add_typer(prefs_app, name="prefs")


def setup_logging() -> None:
    level_name = os.environ.get("PROMPTCANVAS_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.WARNING), format=LOG_FORMAT)


@app.callback()
def main_callback():
    """PromptCanvas - conversational image generation."""
    setup_logging()


def get_store():
    """Get Store instance for the configured root."""
    from .store import Store
    return Store(root=get_config().root)


def get_client() -> OpenRouterClient:
    config = get_config()
    return OpenRouterClient(base_url=config.api.base_url, timeout=config.api.request_timeout)


def output_json(data) -> None:
    """Output data as JSON."""
    typer.echo(json_module.dumps(data, indent=2, default=str))


def output_error(message: str) -> None:
    """Output error message."""
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)


def output_success(message: str) -> None:
    """Output success message."""
    typer.secho(message, fg=typer.colors.GREEN)


def output_warning(message: str) -> None:
    """Output warning message."""
    typer.secho(f"Warning: {message}", fg=typer.colors.YELLOW)


def format_timestamp(timestamp: int) -> str:
    from datetime import datetime
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


class TerminalListener(GenerationListener):
    """Renders orchestrator notifications on the terminal."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self.errors: List[str] = []

    def on_placeholder_created(self, conversation: Conversation) -> None:
        if not self.quiet:
            typer.echo(f"Generating in conversation {conversation.timestamp}...")

    def on_placeholder_removed(self, conversation: Conversation) -> None:
        if not self.quiet:
            output_warning("Generation rolled back")

    def on_entry_finalized(self, conversation: Conversation) -> None:
        if self.quiet or not conversation.entries:
            return
        entry = conversation.entries[-1]
        images = ", ".join(
            f"{name} ({res})"
            for name, res in zip(entry.response.image_filenames, entry.response.image_resolutions)
        )
        output_success(f"Saved image(s): {images}")
        if entry.response.text:
            typer.echo(entry.response.text)

    def on_summary_updated(self, timestamp: int, summary: ConversationSummary) -> None:
        if not self.quiet:
            typer.echo(f"Conversation {timestamp}: {summary.title}")

    def on_balance_updated(self, balance: Optional[Balance]) -> None:
        if not self.quiet and balance is not None:
            typer.echo(f"Balance: ${balance.available:.4f}")

    def on_error(self, message: str) -> None:
        self.errors.append(message)
        output_error(message)


async def _prepare(
    orchestrator: GenerationOrchestrator,
    api_key: Optional[str],
    model: Optional[str],
    conversation: Optional[int],
) -> bool:
    """Restore preferences, apply overrides and open the target conversation."""
    ctx = await orchestrator.load_preferences()
    if api_key:
        ctx.api_key = api_key.strip()
    if model:
        await orchestrator.select_model(model)
    elif not ctx.selected_model and ctx.api_key:
        await orchestrator.connect(ctx.api_key)
    if conversation is not None:
        return await orchestrator.open_conversation(conversation) is not None
    return True


def _run_locked(store, coro_factory):
    """Run an async operation while holding the store lock."""
    try:
        with store.layout.lock():
            return asyncio.run(coro_factory())
    except StoreLockError as e:
        output_error(str(e))
        raise typer.Exit(1)


# =============================================================================
# Generation Commands
# =============================================================================

@app.command("generate")
def generate(
    prompt: str = typer.Argument(..., help="What to generate"),
    conversation: Optional[int] = typer.Option(
        None, "--conversation", "-c", help="Continue an existing conversation"
    ),
    resolution: Optional[str] = typer.Option(None, "--resolution", "-r", help="1K, 2K or 4K"),
    aspect_ratio: Optional[str] = typer.Option(None, "--aspect-ratio", "-a", help="e.g. 16:9"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="OpenRouter API key"),
):
    """Generate images for a prompt."""
    if resolution is not None and resolution not in RESOLUTIONS:
        output_error(f"Unknown resolution '{resolution}'. Use one of: {', '.join(RESOLUTIONS)}")
        raise typer.Exit(1)
    if aspect_ratio is not None and aspect_ratio not in ASPECT_RATIOS:
        output_error(f"Unknown aspect ratio '{aspect_ratio}'. Use one of: {', '.join(ASPECT_RATIOS)}")
        raise typer.Exit(1)

    store = get_store()
    listener = TerminalListener()

    async def run():
        async with get_client() as client:
            orchestrator = GenerationOrchestrator(store, client, listener, config=get_config())
            if not await _prepare(orchestrator, api_key, model, conversation):
                return None
            entry = await orchestrator.submit(prompt, resolution, aspect_ratio)
            await orchestrator.wait_for_background()
            return entry

    entry = _run_locked(store, run)
    if entry is None:
        raise typer.Exit(1)


def _regenerate(timestamp: int, entry_index: int, image: int, upscale: bool) -> None:
    store = get_store()
    listener = TerminalListener()

    async def run():
        async with get_client() as client:
            orchestrator = GenerationOrchestrator(store, client, listener, config=get_config())
            if not await _prepare(orchestrator, None, None, timestamp):
                return None
            if upscale:
                entry = await orchestrator.upscale(entry_index, image)
            else:
                entry = await orchestrator.regenerate_with_new_seed(entry_index, image)
            await orchestrator.wait_for_background()
            return entry

    entry = _run_locked(store, run)
    if entry is None and listener.errors:
        raise typer.Exit(1)
    if entry is None:
        output_warning("Nothing to do")


@app.command("new-seed")
def new_seed(
    timestamp: int = typer.Argument(..., help="Conversation timestamp"),
    entry: int = typer.Argument(..., help="Entry index"),
    image: int = typer.Argument(0, help="Image position within the entry"),
):
    """Regenerate an entry's image with a fresh seed."""
    _regenerate(timestamp, entry, image, upscale=False)


@app.command("upscale")
def upscale(
    timestamp: int = typer.Argument(..., help="Conversation timestamp"),
    entry: int = typer.Argument(..., help="Entry index"),
    image: int = typer.Argument(0, help="Image position within the entry"),
):
    """Upscale an entry's image to 4K."""
    _regenerate(timestamp, entry, image, upscale=True)


# =============================================================================
# Conversation Commands
# =============================================================================

@app.command("list")
def list_conversations(
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List conversations, most recent first."""
    store = get_store()

    async def run():
        result = []
        for timestamp in await store.conversations.list():
            result.append((timestamp, await store.summaries.load(timestamp)))
        return result

    items = asyncio.run(run())

    if json:
        output_json({
            "conversations": [
                {
                    "timestamp": ts,
                    "summary": summary.model_dump(by_alias=True) if summary else None,
                }
                for ts, summary in items
            ]
        })
        return

    if not items:
        typer.echo("No conversations found.")
        return
    typer.echo(f"Found {len(items)} conversation(s):")
    for ts, summary in items:
        if summary is None:
            typer.echo(f"  {ts}  (no summary)")
        else:
            typer.echo(
                f"  {ts}  {summary.title}  "
                f"[{summary.entry_count} entries, {summary.image_count} images, "
                f"updated {format_timestamp(summary.updated)}]"
            )


@app.command("show")
def show_conversation(
    timestamp: int = typer.Argument(..., help="Conversation timestamp"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a conversation's entries."""
    store = get_store()

    async def run():
        return (
            await store.conversations.load(timestamp),
            await store.summaries.load(timestamp),
        )

    conversation, summary = asyncio.run(run())
    if conversation is None:
        output_error(f"Conversation {timestamp} not found")
        raise typer.Exit(1)

    if json:
        output_json(conversation.model_dump(by_alias=True))
        return

    title = summary.title if summary else "(no summary)"
    typer.echo(f"Conversation {timestamp}: {title}")
    for index, entry in enumerate(conversation.entries):
        typer.echo(f"\n[{index}] {entry.message.text}  (seed {entry.message.seed})")
        if entry.response.text:
            typer.echo(f"    {entry.response.text}")
        for name, res in zip(entry.response.image_filenames, entry.response.image_resolutions):
            typer.echo(f"    image {name} ({res})")
        cost = (entry.response.generation_data or {}).get("total_cost")
        if cost is not None:
            typer.echo(f"    cost: ${cost}")


@app.command("delete")
def delete_conversation(
    timestamp: int = typer.Argument(..., help="Conversation timestamp"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a conversation and its images."""
    if not yes:
        typer.confirm(f"Delete conversation {timestamp}?", abort=True)

    store = get_store()
    removed = _run_locked(store, lambda: store.conversations.delete(timestamp))
    if not removed:
        output_error(f"Conversation {timestamp} not found")
        raise typer.Exit(1)
    output_success(f"Deleted conversation {timestamp}")


@app.command("export-image")
def export_image(
    timestamp: int = typer.Argument(..., help="Conversation timestamp"),
    index: int = typer.Argument(..., help="Image index"),
    out: Path = typer.Argument(..., help="Output file"),
):
    """Copy a stored image to a file."""
    store = get_store()
    data = asyncio.run(store.conversations.get_image(timestamp, index))
    if data is None:
        output_error(f"Image {index} not found in conversation {timestamp}")
        raise typer.Exit(1)
    out.write_bytes(data)
    output_success(f"Wrote {len(data)} bytes to {out}")


# =============================================================================
# Account Commands
# =============================================================================

def _resolve_api_key(store, api_key: Optional[str]) -> str:
    from .store.preferences import PREF_API_KEY
    if api_key:
        return api_key.strip()
    return asyncio.run(store.preferences.get(PREF_API_KEY, get_config().api.api_key or "")) or ""


@app.command("models")
def list_models(
    api_key: Optional[str] = typer.Option(None, "--api-key", help="OpenRouter API key"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List models that can generate images."""
    key = _resolve_api_key(get_store(), api_key)
    if not key:
        output_error("Please enter your API key first")
        raise typer.Exit(1)

    async def run() -> List[ImageModel]:
        async with get_client() as client:
            return await client.fetch_models(key)

    try:
        models = asyncio.run(run())
    except (OpenRouterError, httpx.HTTPError) as e:
        output_error(str(e))
        raise typer.Exit(1)

    if json:
        output_json({"models": [{"id": m.id, "name": m.name} for m in models]})
        return
    if not models:
        typer.echo("No image models found.")
        return
    for m in models:
        typer.echo(f"  {m.id}  {m.name}")


@app.command("balance")
def show_balance(
    api_key: Optional[str] = typer.Option(None, "--api-key", help="OpenRouter API key"),
):
    """Show remaining credits."""
    key = _resolve_api_key(get_store(), api_key)
    if not key:
        output_error("Please enter your API key first")
        raise typer.Exit(1)

    async def run() -> Balance:
        async with get_client() as client:
            return await client.fetch_balance(key)

    try:
        balance = asyncio.run(run())
    except (OpenRouterError, httpx.HTTPError) as e:
        output_error(str(e))
        raise typer.Exit(1)

    typer.echo(f"Credits: ${balance.total_credits:.4f}")
    typer.echo(f"Usage:   ${balance.total_usage:.4f}")
    output_success(f"Available: ${balance.available:.4f}")


# =============================================================================
# Preference Commands
# =============================================================================

@prefs_app.command("get")
def prefs_get(key: str = typer.Argument(..., help="Preference key")):
    """Print a preference value."""
    value = asyncio.run(get_store().preferences.get(key))
    if value is None:
        output_error(f"Preference '{key}' is not set")
        raise typer.Exit(1)
    typer.echo(value)


@prefs_app.command("set")
def prefs_set(
    key: str = typer.Argument(..., help="Preference key"),
    value: str = typer.Argument(..., help="Value"),
):
    """Set a preference value."""
    store = get_store()
    if not _run_locked(store, lambda: store.preferences.set(key, value)):
        output_error(f"Failed to save preference '{key}'")
        raise typer.Exit(1)
    output_success(f"Set {key}")


@prefs_app.command("delete")
def prefs_delete(key: str = typer.Argument(..., help="Preference key")):
    """Delete a preference."""
    store = get_store()
    if not _run_locked(store, lambda: store.preferences.delete(key)):
        output_warning(f"Preference '{key}' was not set")
        return
    output_success(f"Deleted {key}")


@prefs_app.command("list")
def prefs_list():
    """List preference keys."""
    keys = asyncio.run(get_store().preferences.list())
    if not keys:
        typer.echo("No preferences set.")
        return
    for key in keys:
        typer.echo(f"  - {key}")


@prefs_app.command("clear")
def prefs_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete all preferences."""
    if not yes:
        typer.confirm("Delete all preferences?", abort=True)
    store = get_store()
    count = _run_locked(store, store.preferences.clear)
    output_success(f"Cleared {count} preference(s)")


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
