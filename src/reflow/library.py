from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .aggregate import PageCounter, ProgressCallback
from .content import ChapterResolver, book_key
from .logging_utils import _debug_log
from .notes import NoteStore, ResolvedNote
from .pagination import (
    DEFAULT_FONT_SIZE,
    DEFAULT_LINES_PER_PAGE,
    DEFAULT_VIEWPORT_HEIGHT,
    DEFAULT_VIEWPORT_WIDTH,
    PARAGRAPH_DELIMITER,
    RenderingParameters,
    chars_before,
    clamp_page,
    dual_pages,
    page_text,
    paginate_chapter,
)
from .reconcile import PositionLostError, ReadingPosition, capture_position, reconcile
from .store import (
    NOTES_FILENAME,
    SAVEDATA_FILENAME,
    BookMetadata,
    MetadataStore,
    ReadingStateStore,
)

DEFAULT_HOME = Path("~/.local/share/reflow")


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(slots=True)
class LibraryConfig:
    root: Path
    workers: int | None = None
    lines_per_page: int = DEFAULT_LINES_PER_PAGE
    font_size: float = DEFAULT_FONT_SIZE
    viewport_width: float = DEFAULT_VIEWPORT_WIDTH
    viewport_height: float = DEFAULT_VIEWPORT_HEIGHT

    @classmethod
    def from_env(cls, root: Path | None = None) -> "LibraryConfig":
        if root is None:
            root = Path(os.getenv("REFLOW_HOME") or DEFAULT_HOME)
        return cls(
            root=Path(root).expanduser(),
            workers=_env_int("REFLOW_WORKERS", None),
            lines_per_page=_env_int("REFLOW_LINES_PER_PAGE", DEFAULT_LINES_PER_PAGE) or DEFAULT_LINES_PER_PAGE,
            font_size=_env_float("REFLOW_FONT_SIZE", DEFAULT_FONT_SIZE),
        )

    @property
    def epubs_dir(self) -> Path:
        return self.root / "epubs"

    @property
    def saved_books_dir(self) -> Path:
        return self.root / "saved_books"

    @property
    def edited_books_dir(self) -> Path:
        return self.root / "edited_books"

    @property
    def savedata_path(self) -> Path:
        return self.root / SAVEDATA_FILENAME

    @property
    def notes_path(self) -> Path:
        return self.root / NOTES_FILENAME

    @property
    def params(self) -> RenderingParameters:
        return RenderingParameters(
            lines_per_page=self.lines_per_page,
            font_size=float(self.font_size),
            viewport_width=float(self.viewport_width),
            viewport_height=float(self.viewport_height),
        )


@dataclass(slots=True)
class BookListing:
    book_id: str
    metadata: BookMetadata
    title: str
    author: str | None
    favorite: bool


@dataclass(frozen=True, slots=True)
class ReadingProgress:
    chapter: int
    page: int
    book_page: int
    total_pages: int
    chars_read: int = 0

    @property
    def percent(self) -> float:
        if self.total_pages <= 0:
            return 0.0
        return min(100.0, 100.0 * (self.book_page + 1) / self.total_pages)

    def to_json(self) -> dict[str, object]:
        return {
            "chapter": self.chapter,
            "page": self.page,
            "book_page": self.book_page,
            "total_pages": self.total_pages,
            "chars_read": self.chars_read,
            "percent": round(self.percent, 2),
        }


def canonical_book_id(book: str | Path) -> str:
    return str(Path(book).expanduser().resolve())


class Library:
    """Everything a reader needs for the books under one data directory."""

    def __init__(self, config: LibraryConfig) -> None:
        self.config = config
        self.resolver = ChapterResolver.for_directories(config.edited_books_dir, config.saved_books_dir)
        self.metadata = MetadataStore(config.saved_books_dir)
        self.reading_state = ReadingStateStore(config.savedata_path)
        self.note_store = NoteStore(config.notes_path, self.chapter_pages)
        self.page_counter = PageCounter(self.resolver, self.metadata, workers=config.workers)

    def params(
        self,
        *,
        font_size: float | None = None,
        lines_per_page: int | None = None,
    ) -> RenderingParameters:
        base = self.config.params
        return RenderingParameters(
            lines_per_page=base.lines_per_page if lines_per_page is None else lines_per_page,
            font_size=base.font_size if font_size is None else float(font_size),
            viewport_width=base.viewport_width,
            viewport_height=base.viewport_height,
        )

    # books

    def import_book(self, source: str | Path) -> BookMetadata:
        """Copy an EPUB into the library folder and open it."""
        src = Path(source).expanduser()
        if not src.is_file():
            raise FileNotFoundError(f"EPUB not found: {src}")
        self.config.epubs_dir.mkdir(parents=True, exist_ok=True)
        target = self.config.epubs_dir / src.name
        if target.resolve() != src.resolve():
            shutil.copy2(src, target)
        return self.open_book(target)

    def open_book(self, book: str | Path) -> BookMetadata:
        """Metadata for ``book``; created from the EPUB on first access."""
        book_id = canonical_book_id(book)
        document = self.metadata.document(book_id)
        with document.locked():
            edited = self.reading_state.edited_chapters(book_id)
            meta = self.metadata.load(book_id, edited)
            if meta is not None:
                return meta
            info = self.resolver.source_info(book_id)
            fields = dict(info.fields)
            meta = BookMetadata(
                book_id=book_id,
                title=fields.pop("title"),
                author=fields.pop("author"),
                lang=fields.pop("lang"),
                desc=fields.pop("desc"),
                chapters=info.chapter_count,
                edited_chapters=edited,
                extra=fields,
            )
            self.metadata.save(meta)
            _debug_log(f"opened {book_key(book_id)}: {meta.chapters} chapters")
            return meta

    def set_favorite(self, book: str | Path, favorite: bool) -> BookMetadata:
        meta = self.open_book(book)
        if meta.favorite != favorite:
            self.metadata.set_favorite(meta.book_id, favorite)
            meta.favorite = favorite
        return meta

    def list_books(self, mode: str = "title") -> list[BookListing]:
        normalized_mode = mode.lower().strip()
        if normalized_mode not in {"title", "author", "favorite"}:
            normalized_mode = "title"
        entries: list[tuple[tuple[object, ...], BookListing]] = []
        for payload in self.metadata.iter_payloads():
            book_id = str(payload["book_id"])
            meta = BookMetadata.from_payload(book_id, payload)
            author = meta.author.strip() if meta.author and meta.author != "no author" else None
            title = meta.title.strip() or Path(book_id).stem
            normalized_author = author.casefold() if author else ""
            normalized_title = title.casefold()
            listing = BookListing(
                book_id=book_id,
                metadata=meta,
                title=title,
                author=author,
                favorite=meta.favorite,
            )
            if normalized_mode == "author":
                sort_key = (0 if author else 1, normalized_author, normalized_title, book_id)
            elif normalized_mode == "favorite":
                sort_key = (0 if meta.favorite else 1, normalized_title, normalized_author, book_id)
            else:
                sort_key = (normalized_title, normalized_author, book_id)
            entries.append((sort_key, listing))
        entries.sort(key=lambda item: item[0])
        return [listing for _, listing in entries]

    def delete_book(self, book: str | Path) -> bool:
        """Forget everything stored about ``book``.

        The EPUB itself is removed only when it is the library's own copy.
        """
        book_id = canonical_book_id(book)
        removed = self.reading_state.remove(book_id)
        removed = self.note_store.delete_all(book_id) > 0 or removed
        for base in (self.config.saved_books_dir, self.config.edited_books_dir):
            book_dir = base / book_key(book_id)
            if book_dir.exists():
                shutil.rmtree(book_dir)
                removed = True
        epub_path = Path(book_id)
        epubs_dir = self.config.epubs_dir.expanduser().resolve()
        if epub_path.parent == epubs_dir and epub_path.exists():
            epub_path.unlink()
            removed = True
        self.resolver.forget(book_id)
        return removed

    # pages

    def chapter_pages(
        self,
        book: str | Path,
        chapter: int,
        params: RenderingParameters,
        text: str | None = None,
    ) -> list[str]:
        return paginate_chapter(self.resolver, canonical_book_id(book), chapter, params, text=text)

    def page(self, book: str | Path, chapter: int, page: int, params: RenderingParameters) -> str:
        return page_text(self.chapter_pages(book, chapter, params), page)

    def total_pages(self, book: str | Path, params: RenderingParameters) -> int:
        meta = self.open_book(book)
        return self.page_counter.total_pages(
            meta.book_id,
            params.lines_per_page,
            params.font_size,
            chapter_count=meta.chapters,
        )

    def recompute_total_pages(
        self,
        book: str | Path,
        params: RenderingParameters,
        progress: ProgressCallback | None = None,
    ) -> int:
        meta = self.open_book(book)
        return self.page_counter.recompute(
            meta.book_id,
            params.lines_per_page,
            params.font_size,
            chapter_count=meta.chapters,
            progress=progress,
        )

    def progress(self, book: str | Path, params: RenderingParameters) -> ReadingProgress | None:
        meta = self.open_book(book)
        position = self.load_position(meta.book_id, params)
        if position is None:
            return None
        counter = self.page_counter
        book_page = counter.cumulative_page(
            meta.book_id, position.chapter, position.page, params, chapter_count=meta.chapters
        )
        counts = counter.chapter_page_counts(meta.book_id, params, chapter_count=meta.chapters)
        pages = self.chapter_pages(meta.book_id, position.chapter, params)
        return ReadingProgress(
            chapter=position.chapter,
            page=position.page,
            book_page=book_page,
            total_pages=sum(counts),
            chars_read=chars_before(pages, position.page),
        )

    def spread(
        self,
        book: str | Path,
        chapter: int,
        page: int,
        params: RenderingParameters,
    ) -> tuple[int, str, str]:
        """Two-page view containing ``page``: ``(left_index, left, right)``."""
        left, right = dual_pages(self.chapter_pages(book, chapter, params), page)
        return page - page % 2, left, right

    # positions

    def save_position(
        self,
        book: str | Path,
        chapter: int,
        page: int,
        params: RenderingParameters,
    ) -> ReadingPosition:
        book_id = canonical_book_id(book)
        pages = self.chapter_pages(book_id, chapter, params)
        position = capture_position(chapter, page, pages, params)
        self.reading_state.save(book_id, position)
        return position

    def load_position(
        self,
        book: str | Path,
        params: RenderingParameters,
        *,
        force: bool = False,
    ) -> ReadingPosition | None:
        """Last saved position, moved onto the pages ``params`` produce.

        A relocated position is written back. A position that cannot be
        relocated falls back to the start of its chapter.
        """
        meta = self.open_book(book)
        book_id = meta.book_id
        with self.reading_state.document.locked():
            saved = self.reading_state.load(book_id)
            if saved is None:
                return None
            try:
                chapter, page = reconcile(
                    saved,
                    params,
                    lambda c, p: self.chapter_pages(book_id, c, p),
                    chapter_count=meta.chapters,
                    force=force,
                )
            except PositionLostError as exc:
                _debug_log(f"{book_key(book_id)}: {exc}; restarting chapter")
                chapter = min(max(saved.chapter, 0), max(meta.chapters - 1, 0))
                page = 0
            if not force and saved.rendering_parameters == params:
                return saved
            pages = self.chapter_pages(book_id, chapter, params)
            position = capture_position(chapter, clamp_page(pages, page), pages, params)
            self.reading_state.save(book_id, position)
            return position

    def forget_positions(self) -> int:
        """Drop the saved position of every book; returns how many were dropped."""
        return self.reading_state.clear()

    # edits

    def edit_chapter(
        self,
        book: str | Path,
        chapter: int,
        text: str,
        params: RenderingParameters,
    ) -> int:
        """Replace a chapter's text; returns its new page count."""
        meta = self.open_book(book)
        self._check_chapter(meta, chapter)
        old_count = len(self.chapter_pages(meta.book_id, chapter, params))
        self.resolver.edit_chapter(meta.book_id, chapter, text)
        self.reading_state.mark_edited(meta.book_id, chapter)
        return self._after_chapter_change(meta, chapter, old_count, params)

    def edit_page(
        self,
        book: str | Path,
        chapter: int,
        page: int,
        text: str,
        params: RenderingParameters,
    ) -> int:
        """Replace the text of one page and store the whole chapter as edited."""
        pages = list(self.chapter_pages(book, chapter, params))
        page_text(pages, page)  # range check
        pages[page] = text
        return self.edit_chapter(book, chapter, PARAGRAPH_DELIMITER.join(pages), params)

    def edit_spread(
        self,
        book: str | Path,
        chapter: int,
        page: int,
        left_text: str,
        right_text: str,
        params: RenderingParameters,
    ) -> int:
        """Replace both pages of the spread containing ``page``.

        When the spread has no right page a non-empty ``right_text`` is
        appended to the chapter.
        """
        pages = list(self.chapter_pages(book, chapter, params))
        dual_pages(pages, page)  # range check
        left = page - page % 2
        pages[left] = left_text
        if left + 1 < len(pages):
            pages[left + 1] = right_text
        elif right_text:
            pages.append(right_text)
        return self.edit_chapter(book, chapter, PARAGRAPH_DELIMITER.join(pages), params)

    def revert_chapter(self, book: str | Path, chapter: int, params: RenderingParameters) -> bool:
        meta = self.open_book(book)
        self._check_chapter(meta, chapter)
        old_count = len(self.chapter_pages(meta.book_id, chapter, params))
        removed = self.resolver.revert_chapter(meta.book_id, chapter)
        self.reading_state.unmark_edited(meta.book_id, chapter)
        if removed:
            self._after_chapter_change(meta, chapter, old_count, params)
        return removed

    def _check_chapter(self, meta: BookMetadata, chapter: int) -> None:
        if chapter < 0 or chapter >= meta.chapters:
            raise IndexError(f"Chapter {chapter} out of range (book has {meta.chapters} chapters)")

    def _after_chapter_change(
        self,
        meta: BookMetadata,
        chapter: int,
        old_count: int,
        params: RenderingParameters,
    ) -> int:
        new_count = len(self.chapter_pages(meta.book_id, chapter, params))
        saved = self.reading_state.load(meta.book_id)
        if saved is not None and saved.chapter == chapter:
            self.load_position(meta.book_id, params, force=True)
        current = self.metadata.load(meta.book_id)
        if current is not None and current.total_pages is not None and new_count != old_count:
            self.recompute_total_pages(meta.book_id, params)
        return new_count

    # notes

    def add_note(
        self,
        book: str | Path,
        chapter: int,
        page: int,
        note_text: str,
        params: RenderingParameters,
    ) -> str:
        book_id = canonical_book_id(book)
        return self.note_store.add(book_id, chapter, self.page(book_id, chapter, page, params), note_text)

    def notes(self, book: str | Path, params: RenderingParameters) -> list[ResolvedNote]:
        return self.note_store.resolve_all(canonical_book_id(book), params)

    def page_notes(
        self,
        book: str | Path,
        chapter: int,
        page: int,
        params: RenderingParameters,
    ) -> list[ResolvedNote]:
        return self.note_store.notes_for_page(canonical_book_id(book), chapter, page, params)

    def edit_note(self, book: str | Path, chapter: int, anchor: str, note_text: str) -> bool:
        return self.note_store.edit(canonical_book_id(book), chapter, anchor, note_text)

    def delete_note(self, book: str | Path, chapter: int, anchor: str) -> bool:
        return self.note_store.delete(canonical_book_id(book), chapter, anchor)

    def delete_notes(self, book: str | Path, chapter: int, anchors: list[str]) -> int:
        return self.note_store.delete_many(canonical_book_id(book), chapter, anchors)

    def delete_all_notes(self, book: str | Path) -> int:
        return self.note_store.delete_all(canonical_book_id(book))
