from __future__ import annotations

import pytest

from reflow.pagination import RenderingParameters, paginate
from reflow.reconcile import PositionLostError, ReadingPosition, capture_position, reconcile
from reflow.similarity import best_page, text_similarity

FONT_12 = RenderingParameters(lines_per_page=2, font_size=12.0)


def _pages_from(chapters: dict[int, str]):
    calls: list[tuple[int, RenderingParameters]] = []

    def _pages_for(chapter: int, params: RenderingParameters) -> list[str]:
        calls.append((chapter, params))
        return paginate(chapters[chapter], params.lines_per_page)

    return _pages_for, calls


def test_similarity_bounds_and_symmetry() -> None:
    assert text_similarity("the old man said", "the old man said") == 1.0
    assert text_similarity("abc", "xyz") == 0.0
    a, b = "the old man said", "an old man sat"
    assert text_similarity(a, b) == text_similarity(b, a)
    assert 0.0 < text_similarity(a, b) < 1.0


def test_similarity_ignores_case_and_whitespace_runs() -> None:
    assert text_similarity("The  Old\nMan", "the old man") == 1.0


def test_similarity_empty_strings() -> None:
    assert text_similarity("", "") == 1.0
    assert text_similarity("", "text") == 0.0
    assert text_similarity("text", "") == 0.0


def test_best_page_prefers_literal_matches_and_earliest_tie() -> None:
    pages = ["alpha beta", "gamma delta", "gamma delta"]
    assert best_page(pages, "gamma delta") == (1, 1.0)
    assert best_page(pages, "delta")[0] == 1
    index, score = best_page(["abc def", "abc def"], "abc xyz")
    assert index == 0
    assert 0.0 < score < 1.0


def test_fresh_position_is_returned_without_search() -> None:
    pages_for, calls = _pages_from({0: "a\n\nb\n\nc"})
    saved = ReadingPosition(chapter=0, page=1, rendering_parameters=FONT_12, content_snippet="c")
    assert reconcile(saved, FONT_12, pages_for) == (0, 1)
    assert calls == []


def test_fresh_position_kept_even_if_out_of_range() -> None:
    pages_for, calls = _pages_from({})
    saved = ReadingPosition(chapter=9, page=40, rendering_parameters=FONT_12, content_snippet="")
    assert reconcile(saved, FONT_12, pages_for, chapter_count=3) == (9, 40)
    assert calls == []


def test_font_change_relocates_by_content() -> None:
    text = "\n\n".join(f"paragraph number {i}" for i in range(12))
    pages_for, calls = _pages_from({3: text})
    old_pages = paginate(text, 2)
    saved = capture_position(3, 4, old_pages, FONT_12)
    bigger = RenderingParameters(lines_per_page=4, font_size=10.0)
    chapter, page = reconcile(saved, bigger, pages_for)
    assert chapter == 3
    new_pages = paginate(text, 4)
    assert saved.content_snippet in new_pages[page]
    assert page == 2
    assert calls == [(3, bigger)]


@pytest.mark.parametrize("lines", [1, 2, 3, 5, 7])
def test_relocated_page_contains_literal_snippet(lines: int) -> None:
    paragraphs = [f"sentence {i} about topic {i % 4}" for i in range(20)]
    text = "\n\n".join(paragraphs)
    pages_for, _ = _pages_from({0: text})
    params = RenderingParameters(lines_per_page=lines, font_size=20.0)
    for snippet in (paragraphs[0], paragraphs[7], paragraphs[19], "topic 3"):
        saved = ReadingPosition(0, 0, FONT_12, snippet)
        _, page = reconcile(saved, params, pages_for)
        assert snippet in paginate(text, lines)[page]


def test_old_man_found_after_edit() -> None:
    before = "\n\n".join(["A", "B", "C", "the old man said", "E"])
    assert "the old man said" in paginate(before, 2)[1]
    after = "\n\n".join(["X1", "X2", "X3", "X4", "A", "B", "C", "the old man said", "E"])
    pages_for, _ = _pages_from({2: after})
    saved = ReadingPosition(chapter=2, page=1, rendering_parameters=FONT_12, content_snippet="the old man said")
    assert reconcile(saved, FONT_12, pages_for) == (2, 1)
    assert reconcile(saved, FONT_12, pages_for, force=True) == (2, 3)


def test_out_of_range_chapter_is_lost() -> None:
    pages_for, calls = _pages_from({})
    saved = ReadingPosition(chapter=5, page=0, rendering_parameters=FONT_12, content_snippet="x")
    with pytest.raises(PositionLostError) as excinfo:
        reconcile(saved, FONT_12.with_font_size(30), pages_for, chapter_count=3)
    assert excinfo.value.chapter == 5
    assert calls == []


def test_no_matching_page_is_lost() -> None:
    pages_for, _ = _pages_from({0: "abc\n\nabd"})
    saved = ReadingPosition(chapter=0, page=0, rendering_parameters=FONT_12, content_snippet="zzzz qqq")
    with pytest.raises(PositionLostError):
        reconcile(saved, FONT_12.with_font_size(30), pages_for)
