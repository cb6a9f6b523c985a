from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, TypeVar

from .core import EpubError, EpubInfo, markup_to_text, read_chapter_markup, read_epub_info
from .logging_utils import _debug_log

_INVALID_KEY_CHARS = set('<>:"/\\|?*')


class ContentUnavailableError(RuntimeError):
    """Raised when neither the cache tiers nor the source can produce a chapter."""

    def __init__(self, book_id: str, chapter: int) -> None:
        super().__init__(f"Chapter {chapter} of {book_id} is unavailable")
        self.book_id = book_id
        self.chapter = chapter


def book_key(book_id: str) -> str:
    """Filesystem-safe directory name for a book identifier."""
    stem = Path(book_id or "book").name
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    cleaned_chars: list[str] = []
    for ch in stem.strip():
        if ch in _INVALID_KEY_CHARS:
            cleaned_chars.append("_")
        elif ord(ch) < 32:
            continue
        else:
            cleaned_chars.append(ch)
    cleaned = "".join(cleaned_chars).strip(" .") or "book"
    digest = hashlib.sha1(book_id.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned[:80]}-{digest}"


@dataclass(frozen=True, slots=True)
class ChapterPayload:
    text: str
    markup: str | None = None


class ContentTier:
    """One level of the chapter lookup chain."""

    name = "tier"
    accepts_write_back = False

    def try_read(self, book_id: str, chapter: int) -> ChapterPayload | None:
        raise NotImplementedError

    def write(self, book_id: str, chapter: int, payload: ChapterPayload) -> None:
        raise NotImplementedError

    def remove(self, book_id: str, chapter: int) -> bool:
        return False


class _DirectoryTier(ContentTier):
    suffix = ".txt"

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def book_dir(self, book_id: str) -> Path:
        return self.root / book_key(book_id)

    def chapter_path(self, book_id: str, chapter: int) -> Path:
        return self.book_dir(book_id) / f"page_{chapter}{self.suffix}"

    def _read(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            _debug_log(f"{self.name}: cannot read {path}: {exc}")
            return None

    def remove(self, book_id: str, chapter: int) -> bool:
        path = self.chapter_path(book_id, chapter)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


class EditedTextTier(_DirectoryTier):
    """User edits: ``page_<n>.txt`` plus the raw ``<n>.json`` edit payload."""

    name = "edited"
    suffix = ".txt"

    def edit_payload_path(self, book_id: str, chapter: int) -> Path:
        return self.book_dir(book_id) / f"{chapter}.json"

    def try_read(self, book_id: str, chapter: int) -> ChapterPayload | None:
        text = self._read(self.chapter_path(book_id, chapter))
        if text is None:
            return None
        return ChapterPayload(text=text)

    def write(self, book_id: str, chapter: int, payload: ChapterPayload) -> None:
        book_dir = self.book_dir(book_id)
        book_dir.mkdir(parents=True, exist_ok=True)
        self.chapter_path(book_id, chapter).write_text(payload.text, encoding="utf-8")
        record = {"chapter": chapter, "text": payload.text, "edited_at": time.time()}
        self.edit_payload_path(book_id, chapter).write_text(
            json.dumps(record, ensure_ascii=False, indent=2), encoding="utf-8"
        )

    def remove(self, book_id: str, chapter: int) -> bool:
        removed = super().remove(book_id, chapter)
        try:
            self.edit_payload_path(book_id, chapter).unlink()
        except FileNotFoundError:
            pass
        return removed


class ExtractedMarkupTier(_DirectoryTier):
    """Chapter markup copied out of the container, converted on read."""

    name = "extracted"
    suffix = ".html"
    accepts_write_back = True

    def try_read(self, book_id: str, chapter: int) -> ChapterPayload | None:
        markup = self._read(self.chapter_path(book_id, chapter))
        if markup is None:
            return None
        return ChapterPayload(text=markup_to_text(markup), markup=markup)

    def write(self, book_id: str, chapter: int, payload: ChapterPayload) -> None:
        if payload.markup is None:
            return
        book_dir = self.book_dir(book_id)
        book_dir.mkdir(parents=True, exist_ok=True)
        self.chapter_path(book_id, chapter).write_text(payload.markup, encoding="utf-8")


class SourceTier(ContentTier):
    """The EPUB itself; ``book_id`` is the container path."""

    name = "source"

    def __init__(self) -> None:
        self._info: dict[str, EpubInfo] = {}
        self._lock = threading.Lock()

    def info(self, book_id: str) -> EpubInfo:
        with self._lock:
            cached = self._info.get(book_id)
        if cached is not None:
            return cached
        info = read_epub_info(book_id)
        with self._lock:
            self._info[book_id] = info
        return info

    def forget(self, book_id: str) -> None:
        with self._lock:
            self._info.pop(book_id, None)

    def try_read(self, book_id: str, chapter: int) -> ChapterPayload | None:
        try:
            markup = read_chapter_markup(book_id, chapter)
        except EpubError as exc:
            _debug_log(f"source: {exc}")
            return None
        return ChapterPayload(text=markup_to_text(markup), markup=markup)

    def write(self, book_id: str, chapter: int, payload: ChapterPayload) -> None:
        raise EpubError("The source container is read-only")


_T = TypeVar("_T", bound=ContentTier)


class ChapterResolver:
    """Resolve chapter text through an ordered chain of tiers.

    The first tier that answers wins. Earlier tiers that accept write-back are
    filled from the answer, and the text is kept in memory until a tier write
    made through this resolver replaces it.
    """

    def __init__(self, tiers: Sequence[ContentTier]) -> None:
        if not tiers:
            raise ValueError("ChapterResolver needs at least one tier")
        self.tiers = list(tiers)
        self._cache: dict[tuple[str, int], str] = {}
        self._lock = threading.Lock()

    @classmethod
    def for_directories(cls, edited_dir: Path, saved_dir: Path) -> "ChapterResolver":
        return cls([EditedTextTier(edited_dir), ExtractedMarkupTier(saved_dir), SourceTier()])

    def _tier(self, kind: type[_T]) -> _T:
        for tier in self.tiers:
            if isinstance(tier, kind):
                return tier
        raise LookupError(f"No {kind.__name__} configured")

    def resolve(self, book_id: str, chapter: int) -> str:
        key = (book_id, chapter)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        missed: list[ContentTier] = []
        for tier in self.tiers:
            payload = tier.try_read(book_id, chapter)
            if payload is None:
                missed.append(tier)
                continue
            for earlier in missed:
                if not earlier.accepts_write_back:
                    continue
                try:
                    earlier.write(book_id, chapter, payload)
                except OSError as exc:
                    _debug_log(f"{earlier.name}: write-back of chapter {chapter} failed: {exc}")
            _debug_log(f"chapter {chapter} of {book_key(book_id)} served by {tier.name}")
            with self._lock:
                self._cache[key] = payload.text
            return payload.text
        raise ContentUnavailableError(book_id, chapter)

    def chapter_count(self, book_id: str) -> int:
        source = self._tier(SourceTier)
        return source.info(book_id).chapter_count

    def source_info(self, book_id: str) -> EpubInfo:
        source = self._tier(SourceTier)
        return source.info(book_id)

    def forget(self, book_id: str, chapter: int | None = None) -> None:
        with self._lock:
            if chapter is not None:
                self._cache.pop((book_id, chapter), None)
                return
            for key in [key for key in self._cache if key[0] == book_id]:
                del self._cache[key]
        for tier in self.tiers:
            if isinstance(tier, SourceTier):
                tier.forget(book_id)

    def edit_chapter(self, book_id: str, chapter: int, text: str) -> None:
        tier = self._tier(EditedTextTier)
        tier.write(book_id, chapter, ChapterPayload(text=text))
        with self._lock:
            self._cache[(book_id, chapter)] = text

    def revert_chapter(self, book_id: str, chapter: int) -> bool:
        removed = self._tier(EditedTextTier).remove(book_id, chapter)
        self.forget(book_id, chapter)
        return removed

    def is_edited(self, book_id: str, chapter: int) -> bool:
        tier = self._tier(EditedTextTier)
        return tier.chapter_path(book_id, chapter).exists()
