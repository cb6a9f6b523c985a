from __future__ import annotations

import argparse
import socket
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .aggregate import AggregationFailedError
from .content import ContentUnavailableError
from .core import EpubError
from .library import Library, LibraryConfig
from .logging_utils import build_uvicorn_log_config, set_debug_logging
from .pagination import InvalidParameterError, RenderingParameters
from .reconcile import PositionLostError
from .store import PersistenceError


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("reflow")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--home",
        help="Data directory for saved books, edits, positions and notes "
        "(default: $REFLOW_HOME or ~/.local/share/reflow)",
    )
    parser.add_argument("--lines", type=int, help="Paragraphs per page")
    parser.add_argument("--font-size", type=float, help="Font size the pages are laid out for")
    parser.add_argument("--workers", type=int, help="Worker threads used to count pages")
    parser.add_argument("--debug", action="store_true", help="Print debug logging")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="reflow",
        description="Paginate EPUB books and keep reading positions and notes in place across reflow.",
    )
    ap.add_argument("-v", "--version", action="version", version=f"reflow {__version__}")
    common = argparse.ArgumentParser(add_help=False)
    _add_common_options(common)
    sub = ap.add_subparsers(dest="command")

    p = sub.add_parser("import", parents=[common], help="Copy an EPUB into the library")
    p.add_argument("book", help="Path to an .epub file")

    p = sub.add_parser("open", parents=[common], help="Show book metadata")
    p.add_argument("book")

    p = sub.add_parser("books", parents=[common], help="List known books")
    p.add_argument("--sort", choices=["title", "author", "favorite"], default="title")

    p = sub.add_parser("pages", parents=[common], help="Total page count of a book")
    p.add_argument("book")
    p.add_argument("--recompute", action="store_true", help="Count again instead of using the stored total")

    p = sub.add_parser("page", parents=[common], help="Print one page")
    p.add_argument("book")
    p.add_argument("chapter", type=int)
    p.add_argument("page", type=int)
    p.add_argument("--spread", action="store_true", help="Print the two-page spread containing the page")

    p = sub.add_parser("position", parents=[common], help="Show or save the reading position")
    p.add_argument("book")
    p.add_argument("--save", nargs=2, type=int, metavar=("CHAPTER", "PAGE"))

    p = sub.add_parser("progress", parents=[common], help="Show how far into the book the reader is")
    p.add_argument("book")

    p = sub.add_parser("edit", parents=[common], help="Replace a chapter's text")
    p.add_argument("book")
    p.add_argument("chapter", type=int)
    p.add_argument("source", help="Text file with the new chapter text, or - for stdin")

    p = sub.add_parser("revert", parents=[common], help="Drop the edits of a chapter")
    p.add_argument("book")
    p.add_argument("chapter", type=int)

    p = sub.add_parser("favorite", parents=[common], help="Mark or unmark a book as favorite")
    p.add_argument("book")
    p.add_argument("state", choices=["on", "off"])

    p = sub.add_parser("notes", parents=[common], help="Manage notes")
    p.add_argument("book")
    notes_sub = p.add_subparsers(dest="notes_cmd")
    notes_sub.add_parser("list")
    n = notes_sub.add_parser("add")
    n.add_argument("chapter", type=int)
    n.add_argument("page", type=int)
    n.add_argument("text")
    n = notes_sub.add_parser("delete")
    n.add_argument("chapter", type=int)
    n.add_argument("anchor")
    notes_sub.add_parser("clear")

    p = sub.add_parser("delete", parents=[common], help="Remove everything stored for a book")
    p.add_argument("book")

    sub.add_parser("reset", parents=[common], help="Forget the saved reading position of every book")

    p = sub.add_parser("web", parents=[common], help="Serve the JSON API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=2800)
    return ap


def _config_from_args(args: argparse.Namespace) -> LibraryConfig:
    config = LibraryConfig.from_env(Path(args.home) if args.home else None)
    if args.lines is not None:
        config.lines_per_page = args.lines
    if args.font_size is not None:
        config.font_size = args.font_size
    if args.workers is not None:
        config.workers = args.workers
    return config


def _resolve_local_ip(host: str) -> str:
    if host not in {"0.0.0.0", "::"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def _count_with_progress(library: Library, book: str, params: RenderingParameters, console: Console) -> int:
    if not console.is_terminal:
        return library.recompute_total_pages(book, params)
    progress = Progress(
        TextColumn("{task.description}", justify="left"),
        BarColumn(bar_width=None),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )
    with progress:
        task = progress.add_task("Counting pages", total=None)

        def _update(done: int, total: int) -> None:
            progress.update(task, completed=done, total=total)

        return library.recompute_total_pages(book, params, progress=_update)


def _read_source_text(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).expanduser().read_text(encoding="utf-8")


def _run(args: argparse.Namespace, console: Console) -> int:
    config = _config_from_args(args)
    library = Library(config)
    params = config.params
    command = args.command

    if command == "import":
        meta = library.import_book(args.book)
        console.print(f"Imported [bold]{meta.title}[/bold] ({meta.chapters} chapters)")
        return 0

    if command == "open":
        meta = library.open_book(args.book)
        table = Table(show_header=False)
        for key, value in meta.to_json().items():
            table.add_row(str(key), str(value))
        console.print(table)
        return 0

    if command == "books":
        table = Table("Title", "Author", "Chapters", "Pages", "Fav")
        for listing in library.list_books(args.sort):
            table.add_row(
                listing.title,
                listing.author or "",
                str(listing.metadata.chapters),
                "" if listing.metadata.total_pages is None else str(listing.metadata.total_pages),
                "*" if listing.favorite else "",
            )
        console.print(table)
        return 0

    if command == "pages":
        total = library.open_book(args.book).total_pages
        if args.recompute or total is None:
            total = _count_with_progress(library, args.book, params, console)
        console.print(f"{total} pages")
        return 0

    if command == "page":
        if args.spread:
            left, left_text, right_text = library.spread(args.book, args.chapter, args.page, params)
            console.rule(f"page {left}")
            console.print(left_text, markup=False, highlight=False)
            if right_text:
                console.rule(f"page {left + 1}")
                console.print(right_text, markup=False, highlight=False)
            return 0
        console.print(library.page(args.book, args.chapter, args.page, params), markup=False, highlight=False)
        return 0

    if command == "position":
        if args.save:
            chapter, page = args.save
            position = library.save_position(args.book, chapter, page, params)
            console.print(f"Saved chapter {position.chapter}, page {position.page}")
            return 0
        position = library.load_position(args.book, params)
        if position is None:
            console.print("No saved position")
        else:
            console.print(f"Chapter {position.chapter}, page {position.page}")
        return 0

    if command == "progress":
        progress = library.progress(args.book, params)
        if progress is None:
            console.print("No saved position")
        else:
            console.print(
                f"Page {progress.book_page + 1} of {progress.total_pages} ({progress.percent:.1f}%)"
            )
        return 0

    if command == "edit":
        count = library.edit_chapter(args.book, args.chapter, _read_source_text(args.source), params)
        console.print(f"Chapter {args.chapter} now has {count} pages")
        return 0

    if command == "revert":
        if library.revert_chapter(args.book, args.chapter, params):
            console.print(f"Chapter {args.chapter} reverted")
        else:
            console.print(f"Chapter {args.chapter} has no edits")
        return 0

    if command == "favorite":
        meta = library.set_favorite(args.book, args.state == "on")
        console.print(f"{meta.title}: favorite={'yes' if meta.favorite else 'no'}")
        return 0

    if command == "notes":
        return _run_notes(args, library, params, console)

    if command == "delete":
        if library.delete_book(args.book):
            console.print("Deleted")
        else:
            console.print("Nothing stored for this book")
        return 0

    if command == "reset":
        console.print(f"Forgot {library.forget_positions()} reading positions")
        return 0

    if command == "web":
        _run_web(args, config)
        return 0

    raise SystemExit(f"Unknown command: {command}")


def _run_notes(args: argparse.Namespace, library: Library, params: RenderingParameters, console: Console) -> int:
    cmd = args.notes_cmd or "list"
    if cmd == "add":
        anchor = library.add_note(args.book, args.chapter, args.page, args.text, params)
        console.print(f"Note added at {anchor[:40]!r}", markup=False)
        return 0
    if cmd == "delete":
        removed = library.delete_note(args.book, args.chapter, args.anchor)
        console.print("Deleted" if removed else "No such note")
        return 0 if removed else 1
    if cmd == "clear":
        console.print(f"Deleted {library.delete_all_notes(args.book)} notes")
        return 0
    table = Table("Chapter", "Page", "Anchor", "Note")
    for note in library.notes(args.book, params):
        anchor = note.anchor if len(note.anchor) <= 40 else note.anchor[:39] + "…"
        table.add_row(str(note.chapter), str(note.page), anchor.replace("\n", " "), note.text)
    console.print(table)
    return 0


def _run_web(args: argparse.Namespace, config: LibraryConfig) -> None:
    from .web import create_app

    app = create_app(config)
    url = f"http://{_resolve_local_ip(args.host)}:{args.port}/"
    print(f"Serving reflow from {config.root.expanduser().resolve()}")
    print(f"API URL: {url}api/books")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if args.debug else "info",
        log_config=build_uvicorn_log_config(args.debug),
    )


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0
    set_debug_logging(bool(args.debug))

    err_console = Console(stderr=True)
    try:
        return _run(args, Console())
    except (
        ContentUnavailableError,
        EpubError,
        InvalidParameterError,
        AggregationFailedError,
        PositionLostError,
        PersistenceError,
        FileNotFoundError,
        IndexError,
    ) as exc:
        err_console.print(f"[red]error:[/red] {escape(str(exc))}", highlight=False)
        return 2


if __name__ == "__main__":
    sys.exit(main())
