from __future__ import annotations

import json
from pathlib import Path

import pytest

from reflow.content import book_key
from reflow.library import Library, LibraryConfig
from reflow.pagination import RenderingParameters
from reflow.reconcile import ReadingPosition


def _paragraphs(prefix: str, count: int) -> list[str]:
    return [f"{prefix} paragraph {i}" for i in range(count)]


def _three_chapter_book(make_epub, **kwargs) -> Path:
    return make_epub([_paragraphs("a", 8), _paragraphs("b", 6), _paragraphs("c", 10)], **kwargs)


def test_open_book_creates_string_metadata(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub, title="Moby Dick", author="Herman Melville")
    meta = library.open_book(epub)
    assert (meta.title, meta.author, meta.chapters, meta.total_pages, meta.favorite) == (
        "Moby Dick",
        "Herman Melville",
        3,
        None,
        False,
    )
    record_path = library.config.saved_books_dir / book_key(meta.book_id) / "metadata.json"
    record = json.loads(record_path.read_text(encoding="utf-8"))
    assert record["chapters"] == "3"
    assert record["favorite"] == "false"
    assert record["lang"] == "en"
    assert "total_pages" not in record


def test_total_pages_is_memoized(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    assert library.total_pages(epub, params) == 12
    assert library.open_book(epub).total_pages == 12
    assert library.total_pages(epub, library.params(lines_per_page=1)) == 12
    assert library.recompute_total_pages(epub, library.params(lines_per_page=1)) == 24


def test_fresh_position_round_trip(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    saved = library.save_position(epub, 1, 2, params)
    assert saved.content_snippet == "b paragraph 4\n\nb paragraph 5"
    assert library.load_position(epub, params) == saved


def test_font_change_relocates_and_rewrites(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    library.save_position(epub, 2, 3, library.params())
    smaller = library.params(font_size=9.0, lines_per_page=4)
    moved = library.load_position(epub, smaller)
    assert moved is not None
    assert (moved.chapter, moved.page) == (2, 1)
    assert "c paragraph 6\n\nc paragraph 7" in moved.content_snippet
    stored = library.reading_state.load(library.open_book(epub).book_id)
    assert stored == moved


def test_edit_relocates_old_man(library: Library, make_epub) -> None:
    chapters = [_paragraphs("a", 2), _paragraphs("b", 2), ["A", "B", "C", "the old man said", "E"]]
    epub = make_epub(chapters)
    params = library.params()
    book_id = library.open_book(epub).book_id
    assert "the old man said" in library.page(epub, 2, 1, params)
    library.reading_state.save(book_id, ReadingPosition(2, 1, params, "the old man said"))

    edited = "\n\n".join(["X1", "X2", "X3", "X4", "A", "B", "C", "the old man said", "E"])
    assert library.edit_chapter(epub, 2, edited, params) == 5
    position = library.load_position(epub, params)
    assert position is not None
    assert (position.chapter, position.page) == (2, 3)
    assert "the old man said" in library.page(epub, 2, position.page, params)
    assert library.open_book(epub).edited_chapters == {2}


def test_edit_recomputes_memoized_total_when_page_count_changes(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    assert library.total_pages(epub, params) == 12
    library.edit_chapter(epub, 0, "\n\n".join(_paragraphs("z", 2)), params)
    assert library.open_book(epub).total_pages == 9
    assert library.revert_chapter(epub, 0, params) is True
    assert library.open_book(epub).total_pages == 12
    assert library.open_book(epub).edited_chapters == set()
    assert library.revert_chapter(epub, 0, params) is False


def test_edit_page_replaces_one_page(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    library.edit_page(epub, 1, 0, "new first\n\nnew second", params)
    assert library.chapter_pages(epub, 1, params) == [
        "new first\n\nnew second",
        "b paragraph 2\n\nb paragraph 3",
        "b paragraph 4\n\nb paragraph 5",
    ]
    with pytest.raises(IndexError):
        library.edit_page(epub, 1, 9, "nope", params)
    with pytest.raises(IndexError):
        library.edit_chapter(epub, 3, "nope", params)


def test_lost_position_restarts_saved_chapter(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    book_id = library.open_book(epub).book_id
    params = library.params()
    library.reading_state.save(book_id, ReadingPosition(1, 2, params.with_font_size(20), "qqqq zzzz"))
    position = library.load_position(epub, params)
    assert position is not None
    assert (position.chapter, position.page) == (1, 0)

    library.reading_state.save(book_id, ReadingPosition(7, 2, params.with_font_size(20), "anything"))
    position = library.load_position(epub, params)
    assert position is not None
    assert (position.chapter, position.page) == (2, 0)


def test_progress(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    assert library.progress(epub, params) is None
    library.save_position(epub, 2, 1, params)
    progress = library.progress(epub, params)
    assert progress is not None
    assert (progress.book_page, progress.total_pages) == (8, 12)
    assert progress.chars_read == len("c paragraph 0\n\nc paragraph 1")
    assert progress.percent == pytest.approx(75.0)


def test_notes_through_library(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    anchor = library.add_note(epub, 1, 2, "remember this", params)
    assert anchor == "b paragraph 4\n\nb paragraph 5"
    notes = library.notes(epub, params)
    assert [(n.chapter, n.page, n.text) for n in notes] == [(1, 2, "remember this")]
    assert [(n.page) for n in library.notes(epub, library.params(lines_per_page=3))] == [1]
    assert library.edit_note(epub, 1, anchor, "edited") is True
    assert library.delete_note(epub, 1, anchor) is True
    assert library.notes(epub, params) == []


def test_favorites_and_listing(library: Library, make_epub) -> None:
    first = make_epub([["x"]], name="one.epub", title="zebra tales", author="Bob")
    second = make_epub([["y"]], name="two.epub", title="Apple Stories", author="Carol")
    third = make_epub([["z"]], name="three.epub", title="Middle", author="alice")
    for epub in (first, second, third):
        library.open_book(epub)
    assert library.set_favorite(third, True).favorite is True
    assert library.open_book(third).favorite is True

    assert [b.title for b in library.list_books("title")] == ["Apple Stories", "Middle", "zebra tales"]
    assert [b.author for b in library.list_books("author")] == ["alice", "Bob", "Carol"]
    assert [b.title for b in library.list_books("favorite")][0] == "Middle"


def test_import_and_delete_book(library: Library, make_epub) -> None:
    source = _three_chapter_book(make_epub)
    meta = library.import_book(source)
    copy = Path(meta.book_id)
    assert copy.parent == library.config.epubs_dir.resolve()
    params = library.params()
    library.save_position(copy, 0, 1, params)
    library.add_note(copy, 0, 1, "note", params)
    library.edit_chapter(copy, 1, "edited", params)

    assert library.delete_book(copy) is True
    assert not copy.exists()
    assert source.exists()
    assert library.reading_state.load(meta.book_id) is None
    assert library.note_store.notes(meta.book_id) == []
    assert not (library.config.saved_books_dir / book_key(meta.book_id)).exists()
    assert not (library.config.edited_books_dir / book_key(meta.book_id)).exists()
    assert library.list_books() == []


def test_config_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("REFLOW_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("REFLOW_LINES_PER_PAGE", "5")
    monkeypatch.setenv("REFLOW_FONT_SIZE", "bad")
    monkeypatch.setenv("REFLOW_WORKERS", "3")
    config = LibraryConfig.from_env()
    assert config.root == tmp_path / "data"
    assert config.params == RenderingParameters(5, 16.0, 1000.0, 800.0)
    assert config.workers == 3
    assert config.savedata_path == tmp_path / "data" / "savedata.json"


def test_spread_and_spread_edit(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    assert library.spread(epub, 0, 3, params) == (
        2,
        "a paragraph 4\n\na paragraph 5",
        "a paragraph 6\n\na paragraph 7",
    )
    assert library.spread(epub, 1, 2, params) == (2, "b paragraph 4\n\nb paragraph 5", "")

    assert library.edit_spread(epub, 0, 3, "left one\n\nleft two", "right one\n\nright two", params) == 4
    pages = library.chapter_pages(epub, 0, params)
    assert pages[2:] == ["left one\n\nleft two", "right one\n\nright two"]

    assert library.edit_spread(epub, 1, 2, "b paragraph 4\n\nb paragraph 5", "extra\n\npage", params) == 4
    assert library.chapter_pages(epub, 1, params)[3] == "extra\n\npage"
    with pytest.raises(IndexError):
        library.edit_spread(epub, 1, 9, "x", "y", params)


def test_page_notes(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    library.add_note(epub, 2, 1, "on page one", params)
    library.add_note(epub, 2, 3, "on page three", params)
    assert [n.text for n in library.page_notes(epub, 2, 3, params)] == ["on page three"]
    assert library.page_notes(epub, 2, 0, params) == []


def test_forget_positions_keeps_edits(library: Library, make_epub) -> None:
    epub = _three_chapter_book(make_epub)
    params = library.params()
    library.save_position(epub, 1, 1, params)
    library.edit_chapter(epub, 0, "short", params)
    assert library.forget_positions() == 1
    assert library.load_position(epub, params) is None
    assert library.open_book(epub).edited_chapters == {0}
    assert library.chapter_pages(epub, 0, params) == ["short"]


def test_reimport_after_delete_reads_new_container(library: Library, make_epub) -> None:
    first = make_epub([["x"]], name="same.epub", title="Old")
    meta = library.import_book(first)
    assert library.resolver.chapter_count(meta.book_id) == 1
    library.delete_book(meta.book_id)

    second = make_epub([["x"], ["y"]], name="same.epub", title="New")
    meta = library.import_book(second)
    assert (meta.title, meta.chapters) == ("New", 2)
    assert library.chapter_pages(meta.book_id, 1, library.params()) == ["y"]
