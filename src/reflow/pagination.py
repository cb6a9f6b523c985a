from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .content import ChapterResolver

PARAGRAPH_DELIMITER = "\n\n"

DEFAULT_LINES_PER_PAGE = 8
DEFAULT_FONT_SIZE = 16.0
DEFAULT_VIEWPORT_WIDTH = 1000.0
DEFAULT_VIEWPORT_HEIGHT = 800.0


class InvalidParameterError(ValueError):
    """Raised when pagination is requested with unusable parameters."""


@dataclass(frozen=True, slots=True)
class RenderingParameters:
    """Everything that can move a page boundary.

    Only ``lines_per_page`` drives the paragraph heuristic; the font size and
    viewport are kept so that a saved position notices when any of them
    changed.
    """

    lines_per_page: int = DEFAULT_LINES_PER_PAGE
    font_size: float = DEFAULT_FONT_SIZE
    viewport_width: float = DEFAULT_VIEWPORT_WIDTH
    viewport_height: float = DEFAULT_VIEWPORT_HEIGHT

    def __post_init__(self) -> None:
        _check_lines_per_page(self.lines_per_page)

    def with_font_size(self, font_size: float) -> "RenderingParameters":
        return RenderingParameters(
            lines_per_page=self.lines_per_page,
            font_size=float(font_size),
            viewport_width=self.viewport_width,
            viewport_height=self.viewport_height,
        )


def _check_lines_per_page(lines_per_page: object) -> int:
    if isinstance(lines_per_page, bool) or not isinstance(lines_per_page, int):
        raise InvalidParameterError(f"lines_per_page must be an integer, got {lines_per_page!r}")
    if lines_per_page <= 0:
        raise InvalidParameterError(f"lines_per_page must be positive, got {lines_per_page}")
    return lines_per_page


def paginate(text: str, lines_per_page: int) -> list[str]:
    """Split chapter text into pages of ``lines_per_page`` paragraphs.

    Paragraphs are separated by a blank line. The first paragraph of a page is
    kept verbatim and later ones are joined back with the delimiter, so
    ``"".join`` with the delimiter between pages reproduces the input. Empty
    text still yields one (empty) page.
    """
    _check_lines_per_page(lines_per_page)
    pages: list[str] = []
    for idx, paragraph in enumerate(text.split(PARAGRAPH_DELIMITER)):
        if idx % lines_per_page == 0:
            pages.append(paragraph)
        else:
            pages[-1] += PARAGRAPH_DELIMITER + paragraph
    return pages


def paginate_chapter(
    resolver: "ChapterResolver",
    book_id: str,
    chapter: int,
    params: RenderingParameters,
    text: str | None = None,
) -> list[str]:
    if text is None:
        text = resolver.resolve(book_id, chapter)
    return paginate(text, params.lines_per_page)


def page_text(pages: list[str], index: int) -> str:
    if index < 0 or index >= len(pages):
        raise IndexError(f"Page {index} out of range (chapter has {len(pages)} pages)")
    return pages[index]


def clamp_page(pages: list[str], index: int) -> int:
    if not pages:
        return 0
    return max(0, min(index, len(pages) - 1))


def dual_pages(pages: list[str], index: int) -> tuple[str, str]:
    """Return the left/right spread containing ``index``.

    Spreads start on even pages; the right side is empty past the last page.
    """
    left = index - (index % 2)
    left_text = page_text(pages, left)
    right_text = pages[left + 1] if left + 1 < len(pages) else ""
    return left_text, right_text


def chars_before(pages: list[str], index: int) -> int:
    """Number of characters on the pages preceding ``index``."""
    return sum(len(page) for page in pages[: max(0, index)])
