from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .logging_utils import _debug_log
from .pagination import RenderingParameters, page_text
from .similarity import best_page

PagesFor = Callable[[int, RenderingParameters], list[str]]


class PositionLostError(RuntimeError):
    """Raised when a saved position cannot be mapped onto the current pages."""

    def __init__(self, chapter: int, message: str) -> None:
        super().__init__(message)
        self.chapter = chapter


@dataclass(frozen=True, slots=True)
class ReadingPosition:
    chapter: int
    page: int
    rendering_parameters: RenderingParameters
    content_snippet: str


def capture_position(
    chapter: int,
    page: int,
    pages: list[str],
    params: RenderingParameters,
) -> ReadingPosition:
    return ReadingPosition(
        chapter=chapter,
        page=page,
        rendering_parameters=params,
        content_snippet=page_text(pages, page),
    )


def is_fresh(saved: ReadingPosition, current_params: RenderingParameters) -> bool:
    return saved.rendering_parameters == current_params


def reconcile(
    saved: ReadingPosition,
    current_params: RenderingParameters,
    pages_for: PagesFor,
    *,
    chapter_count: int | None = None,
    force: bool = False,
) -> tuple[int, int]:
    """Map a saved position onto the pagination produced by ``current_params``.

    When the parameters match (and ``force`` is not set) the saved indices are
    returned untouched and ``pages_for`` is never called. Otherwise the saved
    chapter is re-paginated and the page whose text best matches the saved
    snippet is chosen. ``force`` is used after a chapter edit, where the
    parameters are unchanged but the text under them is not.
    """
    if not force and is_fresh(saved, current_params):
        return saved.chapter, saved.page

    chapter = saved.chapter
    if chapter < 0 or (chapter_count is not None and chapter >= chapter_count):
        raise PositionLostError(chapter, f"Chapter {chapter} no longer exists")

    pages = pages_for(chapter, current_params)
    index, score = best_page(pages, saved.content_snippet)
    if score <= 0.0:
        raise PositionLostError(chapter, f"No page in chapter {chapter} matches the saved position")
    _debug_log(
        f"relocated chapter {chapter} page {saved.page} -> {index} (score {score:.3f}, {len(pages)} pages)"
    )
    return chapter, index
