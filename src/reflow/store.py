from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from .content import book_key
from .logging_utils import _debug_log
from .pagination import (
    DEFAULT_FONT_SIZE,
    DEFAULT_LINES_PER_PAGE,
    DEFAULT_VIEWPORT_HEIGHT,
    DEFAULT_VIEWPORT_WIDTH,
    InvalidParameterError,
    RenderingParameters,
)
from .reconcile import ReadingPosition

SAVEDATA_FILENAME = "savedata.json"
NOTES_FILENAME = "notes.json"
METADATA_FILENAME = "metadata.json"

_T = TypeVar("_T")

_DOCUMENT_LOCKS: dict[Path, threading.RLock] = {}
_DOCUMENT_LOCKS_GUARD = threading.Lock()


class PersistenceError(RuntimeError):
    """Raised when a JSON document cannot be read, parsed or written."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


def _document_lock(path: Path) -> threading.RLock:
    with _DOCUMENT_LOCKS_GUARD:
        lock = _DOCUMENT_LOCKS.get(path)
        if lock is None:
            lock = threading.RLock()
            _DOCUMENT_LOCKS[path] = lock
        return lock


class JsonDocument:
    """A JSON object on disk, rewritten whole on every change.

    All instances pointing at the same file share one re-entrant lock, so a
    read-modify-write made through :meth:`update` is never interleaved with
    another one in this process.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser().resolve()
        self._lock = _document_lock(self.path)

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def read(self) -> dict[str, Any]:
        with self._lock:
            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return {}
            except (OSError, UnicodeDecodeError) as exc:
                raise PersistenceError(self.path, f"unreadable ({exc})") from exc
            if not raw.strip():
                return {}
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise PersistenceError(self.path, f"invalid JSON ({exc})") from exc
            if not isinstance(data, dict):
                raise PersistenceError(self.path, "top-level value is not an object")
            return data

    def write(self, payload: dict[str, Any]) -> None:
        with self._lock:
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
                tmp.replace(self.path)
            except (OSError, TypeError, ValueError) as exc:
                tmp.unlink(missing_ok=True)
                raise PersistenceError(self.path, f"write failed ({exc})") from exc

    def update(self, mutate: Callable[[dict[str, Any]], _T]) -> _T:
        """Apply ``mutate`` to the parsed document and write it back.

        If ``mutate`` raises, the file on disk is left untouched.
        """
        with self._lock:
            data = self.read()
            result = mutate(data)
            self.write(data)
            return result

    def delete(self) -> bool:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise PersistenceError(self.path, f"delete failed ({exc})") from exc
            return True


def _parse_int(value: object, default: int | None) -> int | None:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _parse_float(value: object, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _parse_chapter_set(value: object) -> set[int]:
    chapters: set[int] = set()
    if not isinstance(value, list):
        return chapters
    for item in value:
        parsed = _parse_int(item, None)
        if parsed is not None and parsed >= 0:
            chapters.add(parsed)
    return chapters


@dataclass(slots=True)
class BookMetadata:
    book_id: str
    title: str = "no title"
    author: str = "no author"
    lang: str = "no lang"
    desc: str = ""
    chapters: int = 0
    total_pages: int | None = None
    favorite: bool = False
    edited_chapters: set[int] = field(default_factory=set)
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(
        cls,
        book_id: str,
        payload: dict[str, Any],
        edited_chapters: set[int] | None = None,
    ) -> "BookMetadata":
        known = {"title", "author", "lang", "desc", "chapters", "total_pages", "favorite", "book_id"}
        extra = {
            str(key): str(value)
            for key, value in payload.items()
            if key not in known and isinstance(value, (str, int, float))
        }
        chapters = _parse_int(payload.get("chapters"), 0) or 0
        total_pages = _parse_int(payload.get("total_pages"), None)
        if total_pages is not None and total_pages < 0:
            total_pages = None
        return cls(
            book_id=book_id,
            title=str(payload.get("title") or "no title"),
            author=str(payload.get("author") or "no author"),
            lang=str(payload.get("lang") or "no lang"),
            desc=str(payload.get("desc") or ""),
            chapters=max(0, chapters),
            total_pages=total_pages,
            favorite=_parse_bool(payload.get("favorite")),
            edited_chapters=set(edited_chapters or ()),
            extra=extra,
        )

    def as_payload(self) -> dict[str, str]:
        payload = dict(self.extra)
        payload.update(
            {
                "book_id": self.book_id,
                "title": self.title,
                "author": self.author,
                "lang": self.lang,
                "desc": self.desc,
                "favorite": "true" if self.favorite else "false",
                "chapters": str(self.chapters),
            }
        )
        if self.total_pages is not None:
            payload["total_pages"] = str(self.total_pages)
        return payload

    def to_json(self) -> dict[str, object]:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "lang": self.lang,
            "desc": self.desc,
            "chapters": self.chapters,
            "total_pages": self.total_pages,
            "favorite": self.favorite,
            "edited_chapters": sorted(self.edited_chapters),
            **self.extra,
        }


class MetadataStore:
    """Per-book ``metadata.json`` files under the saved-books directory."""

    def __init__(self, saved_dir: Path) -> None:
        self.saved_dir = Path(saved_dir)

    def document(self, book_id: str) -> JsonDocument:
        return JsonDocument(self.saved_dir / book_key(book_id) / METADATA_FILENAME)

    def exists(self, book_id: str) -> bool:
        return self.document(book_id).path.exists()

    def load(self, book_id: str, edited_chapters: set[int] | None = None) -> BookMetadata | None:
        payload = self.document(book_id).read()
        if not payload:
            return None
        return BookMetadata.from_payload(book_id, payload, edited_chapters)

    def save(self, metadata: BookMetadata) -> None:
        self.document(metadata.book_id).write(metadata.as_payload())

    def update(self, book_id: str, changes: dict[str, str]) -> dict[str, Any]:
        def _apply(payload: dict[str, Any]) -> dict[str, Any]:
            payload.update(changes)
            return dict(payload)

        return self.document(book_id).update(_apply)

    def set_total_pages(self, book_id: str, total: int) -> None:
        self.update(book_id, {"total_pages": str(total)})

    def set_favorite(self, book_id: str, favorite: bool) -> None:
        self.update(book_id, {"favorite": "true" if favorite else "false"})

    def iter_payloads(self) -> Iterator[dict[str, Any]]:
        if not self.saved_dir.exists():
            return
        for entry in sorted(self.saved_dir.iterdir()):
            if not entry.is_dir():
                continue
            try:
                payload = JsonDocument(entry / METADATA_FILENAME).read()
            except PersistenceError as exc:
                _debug_log(f"skipping {entry.name}: {exc}")
                continue
            if payload.get("book_id"):
                yield payload


def _legacy_params(entry: dict[str, Any]) -> RenderingParameters:
    lines = _parse_int(entry.get("lines_per_page"), DEFAULT_LINES_PER_PAGE)
    try:
        return RenderingParameters(
            lines_per_page=lines if lines is not None else DEFAULT_LINES_PER_PAGE,
            font_size=_parse_float(entry.get("font_size"), DEFAULT_FONT_SIZE),
            viewport_width=_parse_float(entry.get("viewport_width"), DEFAULT_VIEWPORT_WIDTH),
            viewport_height=_parse_float(entry.get("viewport_height"), DEFAULT_VIEWPORT_HEIGHT),
        )
    except InvalidParameterError:
        return RenderingParameters(font_size=_parse_float(entry.get("font_size"), DEFAULT_FONT_SIZE))


class ReadingStateStore:
    """``savedata.json``: last position and edited chapters per book.

    Records written before the layout fields existed only carry
    ``font_size``; the missing fields take the default layout.
    """

    def __init__(self, path: Path) -> None:
        self.document = JsonDocument(path)

    def save(self, book_id: str, position: ReadingPosition) -> None:
        params = position.rendering_parameters

        def _apply(data: dict[str, Any]) -> None:
            entry = data.get(book_id)
            if not isinstance(entry, dict):
                entry = {}
            entry.update(
                {
                    "chapter": position.chapter,
                    "page": position.page,
                    "font_size": params.font_size,
                    "lines_per_page": params.lines_per_page,
                    "viewport_width": params.viewport_width,
                    "viewport_height": params.viewport_height,
                    "content": position.content_snippet,
                }
            )
            entry["edited_chapters"] = sorted(_parse_chapter_set(entry.get("edited_chapters")))
            data[book_id] = entry

        self.document.update(_apply)

    def load(self, book_id: str) -> ReadingPosition | None:
        entry = self.document.read().get(book_id)
        if not isinstance(entry, dict):
            return None
        chapter = _parse_int(entry.get("chapter"), None)
        page = _parse_int(entry.get("page"), None)
        if chapter is None or page is None or chapter < 0 or page < 0:
            return None
        content = entry.get("content")
        return ReadingPosition(
            chapter=chapter,
            page=page,
            rendering_parameters=_legacy_params(entry),
            content_snippet=content if isinstance(content, str) else "",
        )

    def edited_chapters(self, book_id: str) -> set[int]:
        entry = self.document.read().get(book_id)
        if not isinstance(entry, dict):
            return set()
        return _parse_chapter_set(entry.get("edited_chapters"))

    def _set_edited(self, book_id: str, chapter: int, edited: bool) -> set[int]:
        def _apply(data: dict[str, Any]) -> set[int]:
            entry = data.get(book_id)
            if not isinstance(entry, dict):
                entry = {}
            chapters = _parse_chapter_set(entry.get("edited_chapters"))
            if edited:
                chapters.add(chapter)
            else:
                chapters.discard(chapter)
            entry["edited_chapters"] = sorted(chapters)
            data[book_id] = entry
            return chapters

        return self.document.update(_apply)

    def mark_edited(self, book_id: str, chapter: int) -> set[int]:
        return self._set_edited(book_id, chapter, True)

    def unmark_edited(self, book_id: str, chapter: int) -> set[int]:
        return self._set_edited(book_id, chapter, False)

    def remove(self, book_id: str) -> bool:
        return self.document.update(lambda data: data.pop(book_id, None) is not None)

    def clear(self) -> int:
        """Forget every saved position; edited-chapter markers are kept.

        Returns the number of positions dropped.
        """

        def _apply(data: dict[str, Any]) -> int:
            dropped = 0
            for book_id in list(data):
                entry = data[book_id]
                if not isinstance(entry, dict):
                    del data[book_id]
                    continue
                if "chapter" in entry or "page" in entry:
                    dropped += 1
                edited = _parse_chapter_set(entry.get("edited_chapters"))
                if edited:
                    data[book_id] = {"edited_chapters": sorted(edited)}
                else:
                    del data[book_id]
            return dropped

        return self.document.update(_apply)
