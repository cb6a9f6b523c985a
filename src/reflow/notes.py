from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from .content import ContentUnavailableError
from .logging_utils import _debug_log
from .pagination import RenderingParameters
from .similarity import best_page
from .store import JsonDocument

ANCHOR_FULL_TEXT_LIMIT = 200

PagesFor = Callable[[str, int, RenderingParameters], list[str]]


@dataclass(frozen=True, slots=True)
class Note:
    chapter: int
    anchor: str
    text: str


@dataclass(frozen=True, slots=True)
class ResolvedNote:
    chapter: int
    page: int
    anchor: str
    text: str

    def to_json(self) -> dict[str, object]:
        return {"chapter": self.chapter, "page": self.page, "anchor": self.anchor, "text": self.text}


def anchor_for(page_text: str) -> str:
    """Anchor stored for a note taken on ``page_text``."""
    if len(page_text) > ANCHOR_FULL_TEXT_LIMIT:
        return page_text[: len(page_text) // 3]
    return page_text


def _chapter_groups(data: dict[str, Any], book_id: str) -> list[dict[str, Any]]:
    groups = data.get(book_id)
    if not isinstance(groups, list):
        groups = []
        data[book_id] = groups
    return groups


def _group_for(groups: object, chapter: int) -> dict[str, Any] | None:
    if not isinstance(groups, list):
        return None
    for group in groups:
        if isinstance(group, dict) and group.get("chapter") == chapter:
            return group
    return None


def _iter_notes(groups: object) -> Iterable[Note]:
    if not isinstance(groups, list):
        return
    for group in groups:
        if not isinstance(group, dict):
            continue
        chapter = group.get("chapter")
        if isinstance(chapter, bool) or not isinstance(chapter, int):
            continue
        entries = group.get("notes")
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            start = entry.get("start")
            note = entry.get("note")
            if isinstance(start, str) and isinstance(note, str):
                yield Note(chapter=chapter, anchor=start, text=note)


def _prune(data: dict[str, Any], book_id: str) -> None:
    groups = data.get(book_id)
    if not isinstance(groups, list):
        return
    kept = [g for g in groups if isinstance(g, dict) and g.get("notes")]
    if kept:
        data[book_id] = kept
    else:
        data.pop(book_id, None)


class NoteStore:
    """Notes anchored to page text, stored in ``notes.json``.

    Nothing here records a page number. Pages are found again from the
    anchor every time notes are resolved, so notes survive edits and layout
    changes.
    """

    def __init__(self, path: Path, pages_for: PagesFor) -> None:
        self.document = JsonDocument(path)
        self.pages_for = pages_for

    def notes(self, book_id: str) -> list[Note]:
        return list(_iter_notes(self.document.read().get(book_id)))

    def add(self, book_id: str, chapter: int, page_text: str, note_text: str) -> str:
        anchor = anchor_for(page_text)

        def _apply(data: dict[str, Any]) -> None:
            groups = _chapter_groups(data, book_id)
            group = _group_for(groups, chapter)
            if group is None:
                group = {"chapter": chapter, "notes": []}
                groups.append(group)
            if not isinstance(group.get("notes"), list):
                group["notes"] = []
            group["notes"].append({"start": anchor, "note": note_text})

        self.document.update(_apply)
        return anchor

    def edit(self, book_id: str, chapter: int, anchor: str, note_text: str) -> bool:
        def _apply(data: dict[str, Any]) -> bool:
            group = _group_for(data.get(book_id), chapter)
            if group is None:
                return False
            for entry in group.get("notes") or []:
                if isinstance(entry, dict) and entry.get("start") == anchor:
                    entry["note"] = note_text
                    return True
            return False

        return self.document.update(_apply)

    def delete_many(self, book_id: str, chapter: int, anchors: Iterable[str]) -> int:
        targets = set(anchors)

        def _apply(data: dict[str, Any]) -> int:
            group = _group_for(data.get(book_id), chapter)
            removed = 0
            if group is not None and isinstance(group.get("notes"), list):
                before = len(group["notes"])
                group["notes"] = [
                    entry
                    for entry in group["notes"]
                    if not (isinstance(entry, dict) and entry.get("start") in targets)
                ]
                removed = before - len(group["notes"])
            _prune(data, book_id)
            return removed

        if not targets:
            return 0
        return self.document.update(_apply)

    def delete(self, book_id: str, chapter: int, anchor: str) -> bool:
        return self.delete_many(book_id, chapter, [anchor]) > 0

    def delete_all(self, book_id: str) -> int:
        return self.document.update(lambda data: len(list(_iter_notes(data.pop(book_id, None)))))

    def resolve_all(self, book_id: str, params: RenderingParameters) -> list[ResolvedNote]:
        """Find the current page of every note of ``book_id``.

        Each chapter is paginated once. A chapter that cannot be read, or an
        anchor that matches nothing, drops only the notes concerned.
        """
        by_chapter: dict[int, list[Note]] = {}
        for note in self.notes(book_id):
            by_chapter.setdefault(note.chapter, []).append(note)

        resolved: list[ResolvedNote] = []
        for chapter in sorted(by_chapter):
            try:
                pages = self.pages_for(book_id, chapter, params)
            except ContentUnavailableError as exc:
                _debug_log(f"notes: skipping chapter {chapter}: {exc}")
                continue
            for note in by_chapter[chapter]:
                index, score = best_page(pages, note.anchor)
                if score <= 0.0:
                    _debug_log(f"notes: no page in chapter {chapter} matches {note.anchor[:40]!r}")
                    continue
                resolved.append(ResolvedNote(chapter=chapter, page=index, anchor=note.anchor, text=note.text))
        return resolved

    def notes_for_page(
        self,
        book_id: str,
        chapter: int,
        page: int,
        params: RenderingParameters,
    ) -> list[ResolvedNote]:
        return [n for n in self.resolve_all(book_id, params) if n.chapter == chapter and n.page == page]
