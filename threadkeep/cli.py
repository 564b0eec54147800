"""
CLI interface for threadkeep.

Usage:
    threadkeep new -m project=alpha
    threadkeep add <thread> "message text" --role user
    threadkeep find "query text"
    threadkeep summary <thread>
"""

import json
import os
import shutil
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import ThreadKeeper
from .errors import Corruption, ThreadKeepError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import EMBEDDING_READY, ROLES, Message, SearchResult, SummaryView, Thread, ThreadFilter


# Configure quiet mode by default (suppress verbose library output)
# Set THREADKEEP_VERBOSE=1 to enable debug mode via environment
if os.environ.get("THREADKEEP_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _output_width() -> int:
    """Terminal width for content truncation. Use generous default when not a TTY."""
    if not sys.stdout.isatty():
        return 200
    return shutil.get_terminal_size((120, 24)).columns


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"threadkeep {version('threadkeep')}")
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


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="threadkeep",
    help="Conversation threads with semantic search and rolling summaries.",
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
        envvar="THREADKEEP_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Conversation threads with semantic search and rolling summaries."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="THREADKEEP_STORE_PATH",
        help="Path to the store directory (default: ~/.threadkeep/)"
    )
]

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]

DeferOption = Annotated[
    bool,
    typer.Option(
        "--defer",
        help="Leave embedding and summarization queued (run 'threadkeep pending' later)"
    )
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_keeper(store: Optional[Path]) -> ThreadKeeper:
    """Open the store, handling errors gracefully.

    The CLI never starts a background worker: queued work is processed
    in-process by the commands that need it.
    """
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        kp = ThreadKeeper(actual_store, background=False)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(kp.close)
    return kp


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _parse_meta(pairs: Optional[list[str]]) -> dict[str, str]:
    """Parse key=value list to dict."""
    if not pairs:
        return {}
    parsed = {}
    for pair in pairs:
        if "=" not in pair:
            hint = f"Invalid metadata format '{pair}'."
            if ":" in pair:
                k, v = pair.split(":", 1)
                hint += f" Did you mean: {k}={v}?"
            else:
                hint += " Use key=value"
            _fail(hint)
        k, v = pair.split("=", 1)
        parsed[k] = v
    return parsed


def _read_content(content: list[str]):
    """'-' reads a part from stdin. Several arguments become separate text parts."""
    parts = [sys.stdin.read() if c == "-" else c for c in content]
    return parts[0] if len(parts) == 1 else parts


def _shorten(text: str, width: int) -> str:
    text = " ".join(text.split())
    if len(text) <= width:
        return text
    return text[:max(width - 3, 0)] + "..."


def _format_thread_line(thread: Thread) -> str:
    meta = " ".join(f"{k}={v}" for k, v in sorted(thread.metadata.items()))
    line = f"{thread.id}  {thread.created_at[:19]}  {thread.last_seq:>5} msgs  [{thread.summary_status}]"
    return f"{line}  {meta}" if meta else line


def _format_message_line(message: Message, width: int) -> str:
    prefix = f"{message.seq:>5}  {message.role:<9}  "
    suffix = "" if message.embedding_status == EMBEDDING_READY else f"  ({message.embedding_status})"
    return prefix + _shorten(message.text, max(width - len(prefix) - len(suffix), 20)) + suffix


def _format_result_line(result: SearchResult) -> str:
    return (
        f"{result.score:.3f}  {result.thread_id}#{result.seq:<4}  "
        f"{result.role:<9}  {result.snippet}"
    )


def _format_summary(view: SummaryView) -> str:
    lines = [f"status: {view.status}  pending: {view.pending_count}"]
    if view.summary is None:
        lines.append("(no summary yet)")
    else:
        lines.append(
            f"version {view.summary.version}, covers seq <= {view.summary.watermark}, "
            f"generated {view.summary.generated_at[:19]}"
        )
        if view.stale:
            lines.append("(stale: newer messages are not yet summarized)")
        lines.append("")
        lines.append(view.summary.text)
    return "\n".join(lines)


def _echo_json(value) -> None:
    typer.echo(json.dumps(value, indent=2, ensure_ascii=False))


def _process(kp: ThreadKeeper) -> None:
    """Run queued work to completion, reporting failures on stderr."""
    result = kp.drain()
    for error in result["errors"]:
        typer.echo(f"Warning: {error}", err=True)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def new(
    meta: Annotated[Optional[list[str]], typer.Option(
        "--meta", "-m",
        help="Thread metadata as key=value (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """
    Create a new thread and print its ID.

    \b
    Examples:
        threadkeep new
        threadkeep new -m project=alpha -m channel=support
    """
    kp = _get_keeper(store)
    thread = kp.create_thread(_parse_meta(meta))
    if _get_json_output():
        _echo_json(thread.to_dict())
    else:
        typer.echo(thread.id)


@app.command()
def threads(
    meta: Annotated[Optional[list[str]], typer.Option(
        "--meta", "-m",
        help="Only threads with this metadata key=value (repeatable, AND)"
    )] = None,
    after: Annotated[Optional[str], typer.Option(
        "--after",
        help="Only threads created after this ISO timestamp"
    )] = None,
    before: Annotated[Optional[str], typer.Option(
        "--before",
        help="Only threads created before this ISO timestamp"
    )] = None,
    store: StoreOption = None,
    limit: LimitOption = 50,
):
    """List threads, oldest first."""
    kp = _get_keeper(store)
    filter = ThreadFilter(metadata=_parse_meta(meta), created_after=after, created_before=before)
    found = kp.list_threads(filter, limit=limit)
    if _get_json_output():
        _echo_json([t.to_dict() for t in found])
        return
    if not found:
        typer.echo("No threads.", err=True)
        return
    for thread in found:
        typer.echo(_format_thread_line(thread))


@app.command()
def show(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    store: StoreOption = None,
    limit: LimitOption = 10,
):
    """Show a thread: metadata, summary and its latest messages."""
    kp = _get_keeper(store)
    thread = kp.get_thread(thread_id)
    view = kp.get_summary(thread_id)
    total = kp.count_messages(thread_id)
    latest = kp.get_messages(thread_id, offset=max(total - limit, 0))

    if _get_json_output():
        _echo_json({
            "thread": thread.to_dict(),
            "summary": view.to_dict(),
            "messages": [m.to_dict() for m in latest],
        })
        return

    typer.echo(_format_thread_line(thread))
    typer.echo("")
    typer.echo(_format_summary(view))
    typer.echo("")
    if total > len(latest):
        typer.echo(f"... {total - len(latest)} earlier messages")
    width = _output_width()
    for message in latest:
        typer.echo(_format_message_line(message, width))


@app.command()
def tag(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    pairs: Annotated[Optional[list[str]], typer.Argument(help="Metadata as key=value")] = None,
    remove: Annotated[Optional[list[str]], typer.Option(
        "--remove", "-r",
        help="Metadata key to remove (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """
    Set or remove thread metadata.

    \b
    Examples:
        threadkeep tag <thread> status=open owner=ops
        threadkeep tag <thread> --remove status
    """
    updates: dict[str, Optional[str]] = dict(_parse_meta(pairs))
    for key in remove or []:
        updates[key] = None
    if not updates:
        _fail("Nothing to change. Give key=value pairs or --remove KEY")
    kp = _get_keeper(store)
    thread = kp.update_thread(thread_id, updates)
    if _get_json_output():
        _echo_json(thread.to_dict())
    else:
        typer.echo(_format_thread_line(thread))


@app.command()
def add(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    content: Annotated[list[str], typer.Argument(
        help="Message text ('-' reads stdin); several arguments are stored as parts"
    )],
    role: Annotated[str, typer.Option(
        "--role", "-r",
        help=f"Message role ({', '.join(sorted(ROLES))})"
    )] = "user",
    store: StoreOption = None,
    defer: DeferOption = False,
):
    """Append a message to a thread."""
    kp = _get_keeper(store)
    message = kp.add_message(thread_id, role, _read_content(content))
    if not defer:
        _process(kp)
        message = kp.get_message(thread_id, message.id)
    if _get_json_output():
        _echo_json(message.to_dict())
    else:
        typer.echo(f"{message.id}  seq {message.seq}")


@app.command()
def edit(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    message_id: Annotated[str, typer.Argument(help="Message ID")],
    content: Annotated[list[str], typer.Argument(
        help="New message text ('-' reads stdin); several arguments are stored as parts"
    )],
    store: StoreOption = None,
    defer: DeferOption = False,
):
    """Replace a message's content. It is re-embedded before it is searchable again."""
    kp = _get_keeper(store)
    message = kp.update_message(thread_id, message_id, _read_content(content))
    if not defer:
        _process(kp)
        message = kp.get_message(thread_id, message.id)
    if _get_json_output():
        _echo_json(message.to_dict())
    else:
        typer.echo(f"{message.id}  revision {message.revision}")


@app.command()
def messages(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    start: Annotated[Optional[int], typer.Option(
        "--from",
        help="Lowest sequence number"
    )] = None,
    end: Annotated[Optional[int], typer.Option(
        "--to",
        help="Highest sequence number"
    )] = None,
    offset: Annotated[int, typer.Option(
        "--offset",
        help="Messages to skip"
    )] = 0,
    store: StoreOption = None,
    limit: LimitOption = 100,
):
    """List a thread's messages in sequence order."""
    kp = _get_keeper(store)
    found = kp.get_messages(thread_id, start_seq=start, end_seq=end, limit=limit, offset=offset)
    if _get_json_output():
        _echo_json([m.to_dict() for m in found])
        return
    width = _output_width()
    for message in found:
        typer.echo(_format_message_line(message, width))


@app.command("rm")
def rm_cmd(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    message_id: Annotated[Optional[str], typer.Argument(
        help="Message ID (omit to delete the whole thread)"
    )] = None,
    store: StoreOption = None,
):
    """
    Delete a message, or a whole thread with everything in it.

    \b
    Examples:
        threadkeep rm <thread> <message>   # One message
        threadkeep rm <thread>             # The thread
    """
    kp = _get_keeper(store)
    if message_id is not None:
        message = kp.delete_message(thread_id, message_id)
        typer.echo(f"Deleted message {message.id} (seq {message.seq})")
    else:
        removed = kp.delete_thread(thread_id)
        typer.echo(f"Deleted thread {thread_id} ({removed} messages)")


@app.command()
def summary(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    versions: Annotated[bool, typer.Option(
        "--versions", "-V",
        help="List every summary version"
    )] = False,
    store: StoreOption = None,
):
    """Show a thread's current summary and how far it lags."""
    kp = _get_keeper(store)
    if versions:
        found = kp.list_summary_versions(thread_id)
        if _get_json_output():
            _echo_json([s.to_dict() for s in found])
            return
        for s in found:
            typer.echo(f"v{s.version}  seq <= {s.watermark}  {s.generated_at[:19]}")
            typer.echo(f"    {_shorten(s.text, _output_width() - 4)}")
        return

    view = kp.get_summary(thread_id)
    if _get_json_output():
        _echo_json(view.to_dict())
    else:
        typer.echo(_format_summary(view))


@app.command()
def find(
    query: Annotated[Optional[str], typer.Argument(help="Search query text")] = None,
    id: Annotated[Optional[str], typer.Option(
        "--id",
        help="Find messages similar to this message ID (instead of text search)"
    )] = None,
    thread: Annotated[Optional[list[str]], typer.Option(
        "--thread", "-t",
        help="Restrict to this thread (repeatable)"
    )] = None,
    by_thread: Annotated[bool, typer.Option(
        "--threads", "-T",
        help="Rank threads instead of messages"
    )] = False,
    store: StoreOption = None,
    limit: LimitOption = 10,
):
    """
    Find messages by semantic similarity.

    \b
    Examples:
        threadkeep find "refund policy"
        threadkeep find "refund policy" -t <thread>
        threadkeep find --id <message>
        threadkeep find "refund policy" --threads
    """
    if id and query:
        _fail("Specify either a query or --id, not both")
    if not id and not query:
        _fail("Specify a query or --id")
    if id and by_thread:
        _fail("--threads works with a text query only")

    kp = _get_keeper(store)
    scope = thread or None

    if by_thread:
        ranked = kp.search_threads(query, k=limit, thread_ids=scope)
        if _get_json_output():
            _echo_json([r.to_dict() for r in ranked])
            return
        width = _output_width()
        for r in ranked:
            typer.echo(f"{r.score:.3f}  {r.thread_id}  ({r.hits} hits)")
            if r.summary:
                typer.echo(f"    {_shorten(r.summary, width - 4)}")
            typer.echo(f"    > {_format_result_line(r.best_message)}")
        return

    if id:
        results = kp.search_by_message(id, k=limit, scope=scope)
    else:
        results = kp.search_by_text(query, k=limit, scope=scope)
    if _get_json_output():
        _echo_json([r.to_dict() for r in results])
        return
    if not results:
        typer.echo("No matches.", err=True)
    for r in results:
        typer.echo(_format_result_line(r))


@app.command("pending")
def pending_cmd(
    store: StoreOption = None,
    retry: Annotated[bool, typer.Option(
        "--retry",
        help="Reset failed items back to pending before processing"
    )] = False,
    reindex: Annotated[bool, typer.Option(
        "--reindex",
        help="Re-embed every message with the current embedding provider"
    )] = False,
    failed: Annotated[bool, typer.Option(
        "--failed",
        help="List failed items and exit"
    )] = False,
):
    """
    Process queued embedding and summarization work.

    Items waiting out a retry backoff stay queued.
    """
    kp = _get_keeper(store)

    if failed:
        items = kp.list_failed()
        if _get_json_output():
            _echo_json(items)
            return
        if not items:
            typer.echo("No failed items.")
        for item in items:
            typer.echo(
                f"{item['task_type']:<9}  {item['id']}  thread {item['thread_id']}  "
                f"attempts {item['attempts']}: {item['last_error']}"
            )
        return

    if retry:
        count = kp.retry_failed()
        typer.echo(f"Reset {count} failed items", err=True)
    if reindex:
        count = kp.reindex()
        typer.echo(f"Queued {count} messages for re-embedding", err=True)

    result = kp.drain()
    stats = kp.pending_stats()
    if _get_json_output():
        _echo_json({"result": result, "queue": stats})
        return
    typer.echo(
        f"Embedded {result['embedded']}, summarized {result['summarized']}, "
        f"skipped {result['skipped']}, failed {result['failed']}, "
        f"abandoned {result['abandoned']}"
    )
    typer.echo(
        f"Queue: {stats['pending']} pending, {stats['processing']} processing, "
        f"{stats['failed']} failed"
    )
    for error in result["errors"]:
        typer.echo(f"  {error}", err=True)


@app.command()
def verify(
    thread_id: Annotated[str, typer.Argument(help="Thread ID")],
    store: StoreOption = None,
):
    """Check a thread's stored invariants and index coverage."""
    kp = _get_keeper(store)
    try:
        report = kp.verify_thread(thread_id)
    except Corruption as e:
        _fail(str(e))
    if _get_json_output():
        _echo_json(report)
        return
    typer.echo(
        f"{report['thread_id']}: {report['messages']} messages, last seq {report['last_seq']}, "
        f"{report['embedded']} embedded, summary covers seq <= {report['summary_watermark'] or 0}"
    )
    problems = False
    if report["index_missing"]:
        typer.echo(f"Not in index: {', '.join(report['index_missing'])}", err=True)
        problems = True
    if report["unqueued"]:
        typer.echo(f"Pending with no embed job: {', '.join(report['unqueued'])}", err=True)
        problems = True
    if problems:
        raise typer.Exit(1)
    typer.echo("OK")


@app.command()
def config(
    path: Annotated[Optional[str], typer.Argument(
        help="Config value to get (e.g. 'store', 'file', 'embedding', 'summary.threshold')"
    )] = None,
    store: StoreOption = None,
):
    """
    Show configuration. Optionally get a specific value by dotted path.

    \b
    Examples:
        threadkeep config                    # Show all config
        threadkeep config file               # Config file location
        threadkeep config summary.threshold  # One tunable
    """
    # Lightweight path: no store is opened
    from dataclasses import asdict
    from .config import get_default_store_path, load_or_create_config

    actual_store = store if store is not None else _get_store_override()
    store_path = Path(actual_store).expanduser().resolve() if actual_store else get_default_store_path()
    cfg = load_or_create_config(store_path)

    data = {
        "store": str(cfg.path),
        "file": str(cfg.config_path),
        "backend": cfg.backend,
        "embedding": {"name": cfg.embedding.name, **cfg.embedding.params},
        "summarization": {"name": cfg.summarization.name, **cfg.summarization.params},
        "index": asdict(cfg.index),
        "summary": asdict(cfg.summary),
        "workers": asdict(cfg.workers),
        "search": asdict(cfg.search),
    }

    if path:
        value = data
        for part in path.split("."):
            if not isinstance(value, dict) or part not in value:
                _fail(f"Unknown config path: {path}")
            value = value[part]
        if _get_json_output():
            _echo_json({path: value})
        elif isinstance(value, (list, dict)):
            typer.echo(json.dumps(value))
        else:
            typer.echo(value)
        return

    if _get_json_output():
        _echo_json(data)
        return
    for section, value in data.items():
        if isinstance(value, dict):
            typer.echo(f"{section}:")
            for key, item in value.items():
                typer.echo(f"  {key}: {item}")
        else:
            typer.echo(f"{section}: {value}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except ThreadKeepError as e:
        if isinstance(e, Corruption):
            log_path = log_exception(e, context="threadkeep CLI")
            typer.echo(f"Details logged to {log_path}", err=True)
        typer.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="threadkeep CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
