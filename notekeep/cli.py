"""
CLI interface for the note store.

Usage:
    notekeep add "Flutter Notes" --body "storage patterns" -t dart -t storage
    notekeep find storage
    notekeep list --tag dart
    notekeep switch relational
    notekeep sync --remote shared.json
"""

import asyncio
import json
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from typing_extensions import Annotated

from .config import StoreConfig, load_or_create_config, save_config
from .errors import NotekeepError, log_exception
from .logging_config import configure_ops_log, enable_debug_mode, remove_ops_log
from .remote import JsonFileRemote
from .repository import Repository
from .search import SearchCoordinator, SearchScope
from .sync import Resolution, SyncResult, Synchronizer, resolve_conflict
from .types import BackendKind, Priority, Record, RecordFilter, SearchHit, SyncState

T = TypeVar("T")

app = typer.Typer(
    name="notekeep",
    help="Local-first notes with two storage engines, search and sync.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


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
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="NOTEKEEP_STORE_PATH",
        help="Path to the store directory (default: ~/.notekeep/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local-first notes with two storage engines, search and sync."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _run(action: Callable[[StoreConfig, Repository], Awaitable[T]]) -> T:
    """Open the store, run one async action, and report errors cleanly."""
    config = load_or_create_config(_store_override)
    handler = configure_ops_log(config.path)
    repo = Repository.open(config)
    try:
        return asyncio.run(action(config, repo))
    except (NotekeepError, ValueError) as e:
        log_path = log_exception(e, " ".join(sys.argv[1:]), config.path)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"(details: {log_path})", err=True)
        raise typer.Exit(1)
    finally:
        repo.close()
        remove_ops_log(handler)


def _parse_since(value: str) -> datetime:
    """
    Parse an ISO date (2026-01-15) or a short duration (P3D, P1W, PT6H).

    Durations count back from now.
    """
    since = value.strip().upper()
    if since.startswith("P"):
        days = weeks = hours = 0
        date_part, _, time_part = since[1:].partition("T")
        for amount, unit in re.findall(r"(\d+)([WD])", date_part):
            if unit == "W":
                weeks = int(amount)
            else:
                days = int(amount)
        for amount in re.findall(r"(\d+)H", time_part):
            hours = int(amount)
        if not (days or weeks or hours):
            raise typer.BadParameter(f"Invalid duration: {value}")
        return datetime.now(timezone.utc) - timedelta(days=days, weeks=weeks, hours=hours)
    try:
        return datetime.strptime(value.strip().replace("/", "-"), "%Y-%m-%d").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        raise typer.BadParameter(
            f"Invalid date/duration: {value}. Use 2026-01-15 or P3D / P1W / PT6H"
        ) from None


def _parse_priority(value: str) -> Priority:
    try:
        return Priority.parse(value)
    except ValueError:
        raise typer.BadParameter(
            f"Invalid priority: {value}. Use low, normal, high or urgent"
        ) from None


def _flags(record: Record) -> str:
    marks = ""
    if record.is_favorite:
        marks += "*"
    if record.is_archived:
        marks += "a"
    if record.is_deleted:
        marks += "x"
    if record.sync_state == SyncState.CONFLICT:
        marks += "!"
    return f"[{marks}] " if marks else ""


def _format_record(record: Record) -> str:
    line = f"{record.id}  {record.updated_at:%Y-%m-%d}  {_flags(record)}{record.title}"
    if record.priority > Priority.NORMAL:
        line += f"  ({record.priority.label})"
    if record.tags:
        line += "  #" + " #".join(sorted(record.tags))
    return line


def _echo_records(records: list[Record]) -> None:
    if _json_output:
        typer.echo(json.dumps([r.to_dict() for r in records], ensure_ascii=False, indent=2))
        return
    if not records:
        typer.echo("No records.")
    for record in records:
        typer.echo(_format_record(record))


def _echo_hits(hits: list[SearchHit]) -> None:
    if _json_output:
        typer.echo(json.dumps(
            [{"score": h.score, **h.record.to_dict()} for h in hits],
            ensure_ascii=False, indent=2,
        ))
        return
    if not hits:
        typer.echo("No matches.")
    for hit in hits:
        typer.echo(f"{hit.score:7.3f}  {_format_record(hit.record)}")


def _echo_record(record: Record) -> None:
    if _json_output:
        typer.echo(json.dumps(record.to_dict(), ensure_ascii=False, indent=2))
        return
    typer.echo(_format_record(record))


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

TagOption = Annotated[
    Optional[list[str]],
    typer.Option("--tag", "-t", help="Tag (repeatable)"),
]

LimitOption = Annotated[
    Optional[int],
    typer.Option("--limit", "-n", help="Maximum results to return"),
]

RemoteOption = Annotated[
    Path,
    typer.Option("--remote", "-r", help="JSON file acting as the remote source"),
]

PriorityOption = Annotated[
    Optional[str],
    typer.Option("--priority", "-p", help="low, normal, high or urgent"),
]


# -----------------------------------------------------------------------------
# Record commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Record title")],
    body: Annotated[str, typer.Option("--body", "-b", help="Body text")] = "",
    description: Annotated[str, typer.Option("--description", "-d", help="Short abstract")] = "",
    tag: TagOption = None,
    category: Annotated[Optional[str], typer.Option("--category", "-c")] = None,
    priority: PriorityOption = None,
    favorite: Annotated[bool, typer.Option("--favorite", "-f")] = False,
):
    """Create a record."""
    level = _parse_priority(priority) if priority else Priority.NORMAL

    async def action(config, repo):
        return await repo.create(
            title, body=body, description=description, tags=tag or (),
            category=category, priority=level, is_favorite=favorite,
        )
    _echo_record(_run(action))


@app.command()
def edit(
    id: Annotated[str, typer.Argument(help="Record ID")],
    title: Annotated[Optional[str], typer.Option("--title")] = None,
    body: Annotated[Optional[str], typer.Option("--body", "-b")] = None,
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t", help="Replace tags (repeatable)"
    )] = None,
    category: Annotated[Optional[str], typer.Option("--category", "-c")] = None,
    priority: PriorityOption = None,
    favorite: Annotated[Optional[bool], typer.Option("--favorite/--no-favorite")] = None,
    archived: Annotated[Optional[bool], typer.Option("--archived/--no-archived")] = None,
):
    """Change fields of a record."""
    fields = {
        "title": title, "body": body, "description": description,
        "tags": tag, "category": category,
        "priority": _parse_priority(priority) if priority else None,
        "is_favorite": favorite, "is_archived": archived,
    }
    fields = {k: v for k, v in fields.items() if v is not None}
    if not fields:
        typer.echo("Nothing to change.", err=True)
        raise typer.Exit(1)

    async def action(config, repo):
        return await repo.update(id, **fields)
    _echo_record(_run(action))


@app.command("rm")
def remove(id: Annotated[str, typer.Argument(help="Record ID")]):
    """Delete a record (kept as a tombstone until sync or purge)."""
    async def action(config, repo):
        return await repo.delete(id)
    if _run(action):
        typer.echo(f"Deleted {id}")
    else:
        typer.echo(f"No such record: {id}")


@app.command()
def purge(id: Annotated[Optional[str], typer.Argument(help="Record ID (default: all)")] = None):
    """Permanently remove deleted records."""
    async def action(config, repo):
        return await repo.purge(id)
    typer.echo(f"Purged {_run(action)} record(s)")


@app.command()
def show(id: Annotated[str, typer.Argument(help="Record ID")]):
    """Show one record in full."""
    async def action(config, repo):
        return await repo.get(id, include_deleted=True)
    record = _run(action)
    if record is None:
        typer.echo(f"No such record: {id}", err=True)
        raise typer.Exit(1)
    if _json_output:
        _echo_record(record)
        return
    typer.echo(f"id: {record.id}")
    typer.echo(f"title: {record.title}")
    if record.description:
        typer.echo(f"description: {record.description}")
    if record.category:
        typer.echo(f"category: {record.category}")
    typer.echo(f"priority: {record.priority.label}")
    if record.tags:
        typer.echo(f"tags: {', '.join(sorted(record.tags))}")
    typer.echo(f"created: {record.created_at.isoformat()}")
    typer.echo(f"updated: {record.updated_at.isoformat()}")
    typer.echo(f"sync: {record.sync_state.value}")
    if record.is_deleted:
        typer.echo(f"deleted: {record.deleted_at.isoformat()}")
    if record.body:
        typer.echo("")
        typer.echo(record.body)
    if record.conflict_remote is not None:
        typer.echo("")
        typer.echo(f"--- remote version {record.conflict_remote.remote_version} ---")
        typer.echo(record.conflict_remote.title)
        typer.echo(record.conflict_remote.body)


@app.command("list")
def list_records(
    tag: TagOption = None,
    category: Annotated[Optional[str], typer.Option("--category", "-c")] = None,
    priority: Annotated[Optional[list[str]], typer.Option(
        "--priority", "-p", help="Only these priorities (repeatable)"
    )] = None,
    favorites: Annotated[bool, typer.Option("--favorites", "-f", help="Only favorites")] = False,
    archived: Annotated[Optional[bool], typer.Option(
        "--archived/--active", help="Only archived / only active records"
    )] = None,
    since: Annotated[Optional[str], typer.Option(
        "--since", help="Updated since (2026-01-15, P3D, P1W, PT6H)"
    )] = None,
    sort: Annotated[str, typer.Option(
        "--sort", help="updated_at (default), created_at, title or priority"
    )] = "updated_at",
    deleted: Annotated[bool, typer.Option("--deleted", help="Include tombstones")] = False,
    limit: LimitOption = None,
):
    """List records, newest first."""
    flt = RecordFilter(
        category=category,
        tags=frozenset(tag or ()),
        priorities=frozenset(_parse_priority(p) for p in priority or ()),
        is_favorite=True if favorites else None,
        is_archived=archived,
        since=_parse_since(since) if since else None,
        include_deleted=deleted,
        order_by=sort,
        descending=sort != "title",
    )

    async def action(config, repo):
        return await repo.list_filtered(flt)
    records = _run(action)
    if records.errors:
        typer.echo(f"Warning: skipped {len(records.errors)} corrupt record(s)", err=True)
    _echo_records(records[:limit] if limit is not None else list(records))


@app.command()
def find(
    query: Annotated[str, typer.Argument(help="Search terms")],
    scope: Annotated[SearchScope, typer.Option("--scope", help="local, remote or hybrid")] = SearchScope.LOCAL,
    remote: Annotated[Optional[Path], typer.Option(
        "--remote", "-r", help="JSON file searched for remote/hybrid scope"
    )] = None,
    limit: LimitOption = 10,
):
    """Search titles, tags, bodies and descriptions."""
    if scope != SearchScope.LOCAL and remote is None:
        typer.echo("Error: --remote is required for remote or hybrid search", err=True)
        raise typer.Exit(1)

    async def action(config, repo):
        coordinator = SearchCoordinator(
            repo,
            JsonFileRemote(remote) if remote else None,
            min_results=config.hybrid_min_results,
        )
        return await coordinator.search(query, scope, limit=limit)
    _echo_hits(_run(action))


@app.command()
def tags():
    """Show tag usage counts."""
    async def action(config, repo):
        return await repo.tag_usage()
    usage = _run(action)
    if _json_output:
        typer.echo(json.dumps(usage))
        return
    if not usage:
        typer.echo("No tags found.")
    for tag, count in usage.items():
        typer.echo(f"{count:5d}  {tag}")


@app.command()
def stats():
    """Show store statistics."""
    async def action(config, repo):
        return await repo.stats()
    info = _run(action)
    if _json_output:
        typer.echo(json.dumps(info, indent=2))
        return
    for key, value in info.items():
        typer.echo(f"{key}: {value}")


# -----------------------------------------------------------------------------
# Storage and sync commands
# -----------------------------------------------------------------------------

@app.command()
def switch(backend: Annotated[BackendKind, typer.Argument(help="key_value or relational")]):
    """Migrate all records to another storage engine and make it active."""
    async def action(config, repo):
        await repo.switch_backend(backend)
        config.backend = repo.active_kind
        save_config(config)
        return repo.active_kind
    typer.echo(f"Active backend: {_run(action).value}")


def _remote_key(remote: Path) -> str:
    return str(remote.expanduser().resolve())


async def _sync_cycle(
    config: StoreConfig, repo: Repository, remote: Path, full: bool
) -> SyncResult:
    """One cycle against a JSON remote, carrying the fetch window across runs."""
    key = _remote_key(remote)
    synchronizer = Synchronizer(
        repo,
        JsonFileRemote(remote),
        fetch_timeout=config.fetch_timeout,
        retry_delays=config.retry_delays,
        last_sync_at=config.last_sync_at(key),
    )
    result = await synchronizer.run_cycle(full=full)
    config.set_last_sync_at(key, synchronizer.last_sync_at)
    save_config(config)
    return result


def _echo_sync_result(result: SyncResult) -> None:
    if _json_output:
        typer.echo(json.dumps({
            "new": result.new_count,
            "updated": result.updated_count,
            "conflicts": result.conflict_count,
            "deleted": result.deleted_count,
            "pushed": result.pushed_count,
            "failures": result.failures,
        }, indent=2))
    else:
        typer.echo(
            f"new {result.new_count}, updated {result.updated_count}, "
            f"conflicts {result.conflict_count}, deleted {result.deleted_count}, "
            f"pushed {result.pushed_count}"
        )
        for failed_id in result.failures:
            typer.echo(f"failed: {failed_id}", err=True)
    if result.failures:
        raise typer.Exit(2)


@app.command()
def sync(
    remote: RemoteOption,
    full: Annotated[bool, typer.Option(
        "--full", help="Fetch the whole remote set (also detects remote deletions)"
    )] = False,
):
    """Run one sync cycle against a JSON remote."""
    async def action(config, repo):
        return await _sync_cycle(config, repo, remote, full)
    _echo_sync_result(_run(action))


@app.command()
def resolve(
    id: Annotated[str, typer.Argument(help="Record ID in conflict")],
    keep: Annotated[Resolution, typer.Argument(help="local or remote")],
    remote: Annotated[Optional[Path], typer.Option(
        "--remote", "-r", help="Sync with this JSON remote after resolving"
    )] = None,
):
    """Resolve a sync conflict by keeping the local or the remote version."""
    async def action(config, repo):
        await resolve_conflict(repo, id, keep)
        if remote is not None:
            await _sync_cycle(config, repo, remote, full=False)
        return await repo.get(id, include_deleted=True)
    record = _run(action)
    if record is None:
        typer.echo(f"{id} resolved and removed", err=True)
        return
    _echo_record(record)


@app.command("export")
def export_records(
    output: Annotated[Optional[Path], typer.Option(
        "--output", "-o", help="File to write (default: stdout)"
    )] = None,
):
    """Export all records (tombstones included) as JSON."""
    async def action(config, repo):
        return await repo.export_records()
    text = json.dumps({"records": _run(action)}, ensure_ascii=False, indent=2)
    if output is None:
        typer.echo(text)
    else:
        output.write_text(text + "\n", encoding="utf-8")


@app.command("import")
def import_records(path: Annotated[Path, typer.Argument(help="File written by export")]):
    """Import records from an export file, replacing records with the same id."""
    data = json.loads(path.read_text(encoding="utf-8"))

    async def action(config, repo):
        return await repo.import_records(data.get("records", []))
    typer.echo(f"Imported {_run(action)} record(s)")


def main():
    app()


if __name__ == "__main__":
    main()
