from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

from .content import ChapterResolver
from .logging_utils import _debug_log
from .pagination import RenderingParameters, paginate
from .store import MetadataStore

DEFAULT_WORKERS = 4
MAX_WORKERS = 16

ProgressCallback = Callable[[int, int], None]


class AggregationFailedError(RuntimeError):
    """Raised when a chapter fails while counting pages for a whole book."""

    def __init__(self, chapter: int, cause: BaseException | None = None) -> None:
        message = f"Page count failed at chapter {chapter}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.chapter = chapter


def resolve_worker_count(requested: int | None = None) -> int:
    workers = requested if requested and requested > 0 else DEFAULT_WORKERS
    env_workers = os.getenv("REFLOW_WORKERS")
    if requested is None and env_workers:
        try:
            parsed = int(env_workers)
            if parsed > 0:
                workers = parsed
        except ValueError:
            workers = DEFAULT_WORKERS
    return max(1, min(workers, MAX_WORKERS))


class PageCounter:
    """Counts pages across every chapter of a book on a fixed worker pool.

    The total is stored in the book's metadata record as soon as it is
    computed. :meth:`total_pages` answers from that record when it can;
    only :meth:`recompute` forces a new scan.
    """

    def __init__(
        self,
        resolver: ChapterResolver,
        metadata: MetadataStore,
        workers: int | None = None,
    ) -> None:
        self.resolver = resolver
        self.metadata = metadata
        self.workers = resolve_worker_count(workers)

    def _params(self, lines_per_page: int, font_size: float) -> RenderingParameters:
        return RenderingParameters(lines_per_page=lines_per_page, font_size=float(font_size))

    def total_pages(
        self,
        book_id: str,
        lines_per_page: int,
        font_size: float,
        *,
        chapter_count: int | None = None,
    ) -> int:
        meta = self.metadata.load(book_id)
        if meta is not None and meta.total_pages is not None:
            return meta.total_pages
        return self.recompute(book_id, lines_per_page, font_size, chapter_count=chapter_count)

    def recompute(
        self,
        book_id: str,
        lines_per_page: int,
        font_size: float,
        *,
        chapter_count: int | None = None,
        progress: ProgressCallback | None = None,
    ) -> int:
        counts = self.chapter_page_counts(
            book_id,
            self._params(lines_per_page, font_size),
            chapter_count=chapter_count,
            progress=progress,
        )
        total = sum(counts)
        self.metadata.set_total_pages(book_id, total)
        _debug_log(f"{book_id}: {len(counts)} chapters, {total} pages")
        return total

    def chapter_page_counts(
        self,
        book_id: str,
        params: RenderingParameters,
        *,
        chapter_count: int | None = None,
        progress: ProgressCallback | None = None,
    ) -> list[int]:
        """Page count of every chapter, in chapter order.

        Blocks until every chapter has reported. The first failure cancels
        the chapters that have not started and is raised as
        :class:`AggregationFailedError`.
        """
        if chapter_count is None:
            chapter_count = self.resolver.chapter_count(book_id)
        if chapter_count <= 0:
            return []
        lines_per_page = params.lines_per_page

        def _count(chapter: int) -> int:
            return len(paginate(self.resolver.resolve(book_id, chapter), lines_per_page))

        counts: list[int | None] = [None] * chapter_count
        done = 0
        with ThreadPoolExecutor(
            max_workers=min(self.workers, chapter_count),
            thread_name_prefix="reflow-pages",
        ) as executor:
            futures = {executor.submit(_count, chapter): chapter for chapter in range(chapter_count)}
            for future in as_completed(futures):
                chapter = futures[future]
                try:
                    counts[chapter] = future.result()
                except Exception as exc:
                    for pending in futures:
                        pending.cancel()
                    raise AggregationFailedError(chapter, exc) from exc
                done += 1
                if progress is not None:
                    progress(done, chapter_count)
        return [value for value in counts if value is not None]

    def cumulative_page(
        self,
        book_id: str,
        chapter: int,
        page: int,
        params: RenderingParameters,
        *,
        chapter_count: int | None = None,
    ) -> int:
        """Zero-based page number across the whole book."""
        counts = self.chapter_page_counts(book_id, params, chapter_count=chapter_count)
        return sum(counts[:chapter]) + page
