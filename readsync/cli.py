"""
CLI interface for readsync.

Usage:
    readsync status
    readsync add "Some article" --url https://example.com/post
    readsync list --search example
    readsync enable --folder ~/Dropbox/readsync [--passphrase ...]
    readsync sync
    readsync run
"""

import asyncio
import json
import os
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import typer
from typing_extensions import Annotated

from .api import ReadSync
from .archive import SORT_FIELDS, AddRecentInput, calculate_progress
from .errors import ConfigError, ReadSyncError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import ARCHIVE_ITEM_TYPES, ArchiveItem, ReadingPosition


# Configure quiet mode by default
# Set READSYNC_VERBOSE=1 to enable debug mode via environment
if os.environ.get("READSYNC_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"readsync {version('readsync')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="readsync",
    help="Local-first reading state with device sync.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="READSYNC_STORE_PATH",
        help="Path to the store directory (default: ~/.readsync/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local-first reading state with device sync."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _open_store() -> ReadSync:
    """Open the store, handling errors gracefully."""
    try:
        return ReadSync(_store_override)
    except ReadSyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _run(action: Callable[[ReadSync], Awaitable[Any]]) -> Any:
    """Open the store, run ``action`` against it, and close it again."""
    async def runner():
        rs = _open_store()
        try:
            await rs.start(startup_sync=False)
            return await action(rs)
        finally:
            await rs.aclose()

    try:
        return asyncio.run(runner())
    except ReadSyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _format_time(ms: Optional[int]) -> str:
    if not ms:
        return "never"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _format_item(item: ArchiveItem) -> str:
    progress = (item.progress.label or f"{item.progress.percent}%") if item.progress else "-"
    return f"{item.id}  {item.type:<5}  {progress:>6}  {item.title}  ({item.source_label})"


def _echo_items(items: list[ArchiveItem]) -> None:
    if _get_json_output():
        typer.echo(json.dumps([i.for_sync().to_dict() for i in items], indent=2))
        return
    for item in items:
        typer.echo(_format_item(item))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def status():
    """Show device, sync and archive status."""
    async def action(rs: ReadSync):
        state = await rs.facade.get_state()
        return {
            "store": str(rs.store_path),
            "device_id": state.device_id,
            "schema_version": state.version,
            "data_updated_at": state.data_updated_at,
            "sync_enabled": state.sync_enabled,
            "sync_provider": state.sync_provider or rs.config.provider.name,
            "encrypted": bool(rs.config.provider.params.get("encrypt")),
            "last_sync_time": state.last_sync_time,
            "last_sync_error": state.last_sync_error,
            "archive_items": len(state.archive_items),
            "tombstones": len(state.deleted_items),
            "annotations": sum(len(v) for v in state.annotations.values()),
            "collections": len(state.collections),
        }

    info = _run(action)
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    typer.echo(f"Store:       {info['store']}")
    typer.echo(f"Device:      {info['device_id']}")
    typer.echo(f"Sync:        {'enabled' if info['sync_enabled'] else 'disabled'}"
               f" ({info['sync_provider']})")
    if info["encrypted"]:
        typer.echo("Encryption:  on")
    typer.echo(f"Last sync:   {_format_time(info['last_sync_time'])}")
    if info["last_sync_error"]:
        typer.echo(f"Last error:  {info['last_sync_error']}")
    typer.echo(f"Changed:     {_format_time(info['data_updated_at'])}")
    typer.echo(f"Archive:     {info['archive_items']} items, {info['tombstones']} tombstones")


@app.command("list")
def list_items(
    search: Annotated[Optional[str], typer.Option(
        "--search", "-q", help="Match title, author or source",
    )] = None,
    item_type: Annotated[Optional[list[str]], typer.Option(
        "--type", "-t", help="Only this type (repeatable)",
    )] = None,
    sort: Annotated[str, typer.Option(
        "--sort", help=f"Sort field: {', '.join(SORT_FIELDS)}",
    )] = "last_opened_at",
    ascending: Annotated[bool, typer.Option("--asc", help="Oldest/A-Z first")] = False,
    limit: Annotated[Optional[int], typer.Option("--limit", "-n", help="Maximum results")] = None,
    offset: Annotated[int, typer.Option("--offset", help="Skip this many results")] = 0,
):
    """List archive items."""
    if sort not in SORT_FIELDS:
        typer.echo(f"Error: --sort must be one of {', '.join(SORT_FIELDS)}", err=True)
        raise typer.Exit(1)

    items = _run(lambda rs: rs.archive.query_recents(
        search=search,
        types=item_type,
        sort_by=sort,
        sort_order="asc" if ascending else "desc",
        limit=limit,
        offset=offset,
    ))
    _echo_items(items)


@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Document title")],
    url: Annotated[Optional[str], typer.Option("--url", "-u", help="Source URL")] = None,
    item_type: Annotated[str, typer.Option("--type", "-t", help="Document type")] = "web",
    file_hash: Annotated[Optional[str], typer.Option("--hash", help="Content hash of the file")] = None,
    author: Annotated[Optional[str], typer.Option("--author", "-a")] = None,
    source: Annotated[Optional[str], typer.Option("--source", help="Source label")] = None,
):
    """Add a document to the archive (or refresh it if already there)."""
    if item_type not in ARCHIVE_ITEM_TYPES:
        typer.echo(f"Error: --type must be one of {', '.join(sorted(ARCHIVE_ITEM_TYPES))}", err=True)
        raise typer.Exit(1)

    label = source
    if not label and url:
        label = (urlsplit(url).hostname or url).removeprefix("www.")
    entry = AddRecentInput(
        type=item_type,
        title=title,
        source_label=label or item_type,
        author=author,
        url=url,
        file_hash=file_hash,
    )
    item = _run(lambda rs: rs.archive.add_recent(entry))
    if _get_json_output():
        typer.echo(json.dumps(item.for_sync().to_dict(), indent=2))
    else:
        typer.echo(item.id)


@app.command("open")
def open_item(
    item_id: Annotated[str, typer.Argument(help="Archive item id")],
    block: Annotated[Optional[int], typer.Option("--block", help="Block index reached")] = None,
    total: Annotated[Optional[int], typer.Option("--total", help="Total blocks")] = None,
    chapter: Annotated[Optional[int], typer.Option("--chapter", help="Chapter index")] = None,
    chapters: Annotated[Optional[int], typer.Option("--chapters", help="Total chapters")] = None,
):
    """Record that an item was opened, optionally with the reading position."""
    async def action(rs: ReadSync):
        position = progress = None
        if block is not None:
            position = ReadingPosition(
                block_index=block, chapter_index=chapter, timestamp=rs.clock.now(),
            )
            if total:
                chapter_info = (chapter or 0, chapters) if chapters else None
                progress = calculate_progress(block, total, chapter_info)
        found = await rs.archive.update_last_opened(item_id, position, progress)
        return found

    if not _run(action):
        typer.echo(f"Not found: {item_id}", err=True)
        raise typer.Exit(1)


@app.command()
def delete(
    item_ids: Annotated[list[str], typer.Argument(help="Archive item id(s)")],
):
    """Delete items here and, on the next sync, on every device."""
    async def action(rs: ReadSync):
        removed = await rs.archive.remove_many(item_ids)
        for item_id in removed:
            await rs.collections.remove_item_everywhere(item_id)
        return removed

    removed = _run(action)
    missing = [i for i in item_ids if i not in removed]
    for item_id in removed:
        typer.echo(f"Deleted {item_id}")
    for item_id in missing:
        typer.echo(f"Not found: {item_id}", err=True)
    if missing:
        raise typer.Exit(1)


@app.command()
def dedupe():
    """Merge archive records that describe the same document."""
    removed = _run(lambda rs: rs.archive.dedupe_archive())
    typer.echo(f"Merged {removed} duplicate(s)")


@app.command()
def tombstones(
    clear: Annotated[bool, typer.Option("--clear", help="Forget all recorded deletions")] = False,
):
    """List (or clear) recorded deletions."""
    async def action(rs: ReadSync):
        if clear:
            await rs.facade.clear_deleted_item_tombstones()
            return {}
        return (await rs.facade.get_state()).deleted_items

    deleted = _run(action)
    if _get_json_output():
        typer.echo(json.dumps(deleted, indent=2))
        return
    if clear:
        typer.echo("Tombstones cleared")
        return
    for key, ts in sorted(deleted.items(), key=lambda kv: kv[1], reverse=True):
        typer.echo(f"{_format_time(ts)}  {key}")


@app.command()
def enable(
    folder: Annotated[Optional[Path], typer.Option(
        "--folder", help="Sync through a shared folder",
    )] = None,
    url: Annotated[Optional[str], typer.Option(
        "--url", help="Sync through an HTTP snapshot service",
    )] = None,
    api_key: Annotated[Optional[str], typer.Option(
        "--api-key", envvar="READSYNC_API_KEY", help="Bearer token for --url",
    )] = None,
    passphrase: Annotated[Optional[str], typer.Option(
        "--passphrase", envvar="READSYNC_PASSPHRASE",
        help="Encrypt the shared snapshot with this passphrase",
    )] = None,
):
    """Enable sync, optionally selecting the provider."""
    if folder and url:
        typer.echo("Error: use either --folder or --url, not both", err=True)
        raise typer.Exit(1)

    async def action(rs: ReadSync):
        if folder:
            await rs.configure_provider(
                "folder", passphrase=passphrase or None, folder=str(folder.expanduser().resolve()),
            )
        elif url:
            await rs.configure_provider(
                "http", passphrase=passphrase or None, api_url=url, api_key=api_key,
            )
        if rs.sync.provider is None:
            raise ConfigError("No sync provider configured; pass --folder or --url", "configuration")
        await rs.set_sync_enabled(True)
        return rs.config.provider.name

    name = _run(action)
    typer.echo(f"Sync enabled ({name})")


@app.command()
def disable():
    """Disable sync. Local reading state is kept."""
    _run(lambda rs: rs.set_sync_enabled(False))
    typer.echo("Sync disabled")


@app.command()
def sync():
    """Sync now."""
    result = _run(lambda rs: rs.scheduler.sync_now())
    if result is None:
        typer.echo(
            "Error: sync is not ready (enable it, configure a provider,"
            " and set READSYNC_PASSPHRASE if encrypted)",
            err=True,
        )
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps({
            "success": result.success,
            "action": result.action,
            "conflicts": len(result.conflicts),
            "error": result.error,
        }, indent=2))
    elif result.success:
        typer.echo(f"Sync {result.action}"
                   + (f" ({len(result.conflicts)} conflicts resolved)" if result.conflicts else ""))
    else:
        typer.echo(f"Sync failed: {result.error}", err=True)
    if not result.success:
        raise typer.Exit(1)


@app.command()
def run(
    poll_interval: Annotated[float, typer.Option(
        "--poll-interval", help="Seconds between checks for writes from other processes",
    )] = 1.0,
):
    """Run the sync scheduler in the foreground until interrupted."""
    async def daemon():
        rs = _open_store()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows: KeyboardInterrupt ends the loop
        try:
            typer.echo(f"readsync running on {rs.store_path}", err=True)
            await rs.run(stop, poll_interval=poll_interval)
        finally:
            await rs.aclose()

    try:
        asyncio.run(daemon())
    except ReadSyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="readsync CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
