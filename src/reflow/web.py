from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from .aggregate import AggregationFailedError
from .content import ContentUnavailableError
from .core import EpubError
from .library import Library, LibraryConfig
from .pagination import InvalidParameterError, RenderingParameters, page_text
from .reconcile import PositionLostError, ReadingPosition
from .store import BookMetadata, PersistenceError

_SORT_MODES = {"title", "author", "favorite"}


@contextmanager
def _library_errors() -> Iterator[None]:
    try:
        yield
    except (ContentUnavailableError, EpubError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (InvalidParameterError, IndexError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PositionLostError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (AggregationFailedError, PersistenceError) as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _position_payload(position: ReadingPosition | None) -> dict[str, object]:
    if position is None:
        return {"position": None}
    params = position.rendering_parameters
    return {
        "position": {
            "chapter": position.chapter,
            "page": position.page,
            "content": position.content_snippet,
            "font_size": params.font_size,
            "lines_per_page": params.lines_per_page,
        }
    }


def _require_int(payload: dict[str, object], key: str, minimum: int = 0) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise HTTPException(status_code=400, detail=f"{key} must be an integer >= {minimum}.")
    return value


def _require_str(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{key} must be a string.")
    return value


def create_app(config: LibraryConfig) -> FastAPI:
    root = config.root.expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    library = Library(config)
    epubs_dir = config.epubs_dir.expanduser().resolve()

    app = FastAPI(title="reflow")
    app.state.config = config
    app.state.library = library

    def _resolve_book(book_id: str) -> Path:
        candidate = (epubs_dir / book_id).resolve()
        try:
            candidate.relative_to(epubs_dir)
        except ValueError:
            raise HTTPException(status_code=404, detail="Book not found") from None
        if not candidate.is_file():
            raise HTTPException(status_code=404, detail="Book not found")
        return candidate

    def _relative_id(book_path: str) -> str | None:
        try:
            return Path(book_path).relative_to(epubs_dir).as_posix()
        except ValueError:
            return None

    def _params(font_size: float | None, lines_per_page: int | None) -> RenderingParameters:
        with _library_errors():
            return library.params(font_size=font_size, lines_per_page=lines_per_page)

    def _payload_params(payload: dict[str, object]) -> RenderingParameters:
        font_size = payload.get("font_size")
        lines = payload.get("lines_per_page")
        if font_size is not None and (isinstance(font_size, bool) or not isinstance(font_size, (int, float))):
            raise HTTPException(status_code=400, detail="font_size must be a number.")
        if lines is not None and (isinstance(lines, bool) or not isinstance(lines, int)):
            raise HTTPException(status_code=400, detail="lines_per_page must be an integer.")
        return _params(font_size, lines)

    def _metadata_payload(meta: BookMetadata) -> dict[str, object]:
        payload = meta.to_json()
        payload["id"] = _relative_id(meta.book_id)
        return payload

    @app.get("/api/books")
    def api_books(sort: str | None = Query(None, description="Sort order: title, author or favorite")) -> JSONResponse:
        mode = (sort or "title").lower()
        if mode not in _SORT_MODES:
            mode = "title"
        with _library_errors():
            listings = library.list_books(mode)
        books = []
        for listing in listings:
            book_id = _relative_id(listing.book_id)
            if book_id is None:
                continue
            books.append(
                {
                    "id": book_id,
                    "title": listing.title,
                    "author": listing.author,
                    "favorite": listing.favorite,
                    "chapters": listing.metadata.chapters,
                    "total_pages": listing.metadata.total_pages,
                }
            )
        return JSONResponse({"books": books, "sort": mode})

    @app.post("/api/books/import")
    def api_import_book(payload: dict[str, object] = Body(...)) -> JSONResponse:
        source = _require_str(payload, "path")
        try:
            with _library_errors():
                meta = library.import_book(source)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(_metadata_payload(meta))

    @app.delete("/api/positions")
    def api_forget_positions() -> JSONResponse:
        with _library_errors():
            dropped = library.forget_positions()
        return JSONResponse({"deleted": dropped})

    @app.get("/api/books/{book_id:path}/chapters/{chapter}/pages/{page}")
    def api_page(
        book_id: str,
        chapter: int,
        page: int,
        font_size: float | None = Query(None),
        lines_per_page: int | None = Query(None),
        spread: bool = Query(False, description="Also return the two-page spread containing the page"),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        params = _params(font_size, lines_per_page)
        with _library_errors():
            pages = library.chapter_pages(book_path, chapter, params)
            text = page_text(pages, page)
            notes = library.page_notes(book_path, chapter, page, params)
            payload: dict[str, object] = {
                "chapter": chapter,
                "page": page,
                "pages": len(pages),
                "text": text,
                "notes": [note.to_json() for note in notes],
            }
            if spread:
                left, left_text, right_text = library.spread(book_path, chapter, page, params)
                payload["spread"] = {"left": left, "left_text": left_text, "right_text": right_text}
        return JSONResponse(payload)

    @app.get("/api/books/{book_id:path}/chapters/{chapter}/pages")
    def api_chapter_pages(
        book_id: str,
        chapter: int,
        font_size: float | None = Query(None),
        lines_per_page: int | None = Query(None),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        params = _params(font_size, lines_per_page)
        with _library_errors():
            pages = library.chapter_pages(book_path, chapter, params)
        return JSONResponse({"chapter": chapter, "count": len(pages), "pages": pages})

    @app.put("/api/books/{book_id:path}/chapters/{chapter}/pages/{page}")
    def api_edit_page(
        book_id: str,
        chapter: int,
        page: int,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        text = _require_str(payload, "text")
        params = _payload_params(payload)
        with _library_errors():
            count = library.edit_page(book_path, chapter, page, text, params)
            position = library.load_position(book_path, params)
        return JSONResponse({"chapter": chapter, "pages": count, **_position_payload(position)})

    @app.put("/api/books/{book_id:path}/chapters/{chapter}/spreads/{page}")
    def api_edit_spread(
        book_id: str,
        chapter: int,
        page: int,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        left_text = _require_str(payload, "left")
        right_text = payload.get("right", "")
        if not isinstance(right_text, str):
            raise HTTPException(status_code=400, detail="right must be a string.")
        params = _payload_params(payload)
        with _library_errors():
            count = library.edit_spread(book_path, chapter, page, left_text, right_text, params)
            position = library.load_position(book_path, params)
        return JSONResponse({"chapter": chapter, "pages": count, **_position_payload(position)})

    @app.put("/api/books/{book_id:path}/chapters/{chapter}")
    def api_edit_chapter(
        book_id: str,
        chapter: int,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        text = _require_str(payload, "text")
        params = _payload_params(payload)
        with _library_errors():
            count = library.edit_chapter(book_path, chapter, text, params)
            position = library.load_position(book_path, params)
        return JSONResponse({"chapter": chapter, "pages": count, **_position_payload(position)})

    @app.delete("/api/books/{book_id:path}/chapters/{chapter}")
    def api_revert_chapter(
        book_id: str,
        chapter: int,
        font_size: float | None = Query(None),
        lines_per_page: int | None = Query(None),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        params = _params(font_size, lines_per_page)
        with _library_errors():
            reverted = library.revert_chapter(book_path, chapter, params)
        return JSONResponse({"chapter": chapter, "reverted": reverted})

    @app.get("/api/books/{book_id:path}/total")
    def api_total_pages(
        book_id: str,
        recompute: bool = Query(False),
        font_size: float | None = Query(None),
        lines_per_page: int | None = Query(None),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        params = _params(font_size, lines_per_page)
        with _library_errors():
            if recompute:
                total = library.recompute_total_pages(book_path, params)
            else:
                total = library.total_pages(book_path, params)
        return JSONResponse({"total_pages": total})

    @app.get("/api/books/{book_id:path}/position")
    def api_load_position(
        book_id: str,
        font_size: float | None = Query(None),
        lines_per_page: int | None = Query(None),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        params = _params(font_size, lines_per_page)
        with _library_errors():
            position = library.load_position(book_path, params)
        return JSONResponse(_position_payload(position))

    @app.post("/api/books/{book_id:path}/position")
    def api_save_position(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book_path = _resolve_book(book_id)
        chapter = _require_int(payload, "chapter")
        page = _require_int(payload, "page")
        params = _payload_params(payload)
        with _library_errors():
            position = library.save_position(book_path, chapter, page, params)
        return JSONResponse(_position_payload(position))

    @app.get("/api/books/{book_id:path}/progress")
    def api_progress(
        book_id: str,
        font_size: float | None = Query(None),
        lines_per_page: int | None = Query(None),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        params = _params(font_size, lines_per_page)
        with _library_errors():
            progress = library.progress(book_path, params)
        return JSONResponse({"progress": progress.to_json() if progress else None})

    @app.post("/api/books/{book_id:path}/favorite")
    def api_favorite(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book_path = _resolve_book(book_id)
        favorite = payload.get("favorite")
        if not isinstance(favorite, bool):
            raise HTTPException(status_code=400, detail="favorite must be a boolean.")
        with _library_errors():
            meta = library.set_favorite(book_path, favorite)
        return JSONResponse(_metadata_payload(meta))

    @app.get("/api/books/{book_id:path}/notes")
    def api_notes(
        book_id: str,
        font_size: float | None = Query(None),
        lines_per_page: int | None = Query(None),
    ) -> JSONResponse:
        book_path = _resolve_book(book_id)
        params = _params(font_size, lines_per_page)
        with _library_errors():
            notes = library.notes(book_path, params)
        return JSONResponse({"notes": [note.to_json() for note in notes]})

    @app.post("/api/books/{book_id:path}/notes")
    def api_add_note(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book_path = _resolve_book(book_id)
        chapter = _require_int(payload, "chapter")
        page = _require_int(payload, "page")
        note_text = _require_str(payload, "note")
        params = _payload_params(payload)
        with _library_errors():
            anchor = library.add_note(book_path, chapter, page, note_text, params)
        return JSONResponse({"chapter": chapter, "anchor": anchor, "note": note_text})

    @app.patch("/api/books/{book_id:path}/notes")
    def api_edit_note(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book_path = _resolve_book(book_id)
        chapter = _require_int(payload, "chapter")
        anchor = _require_str(payload, "anchor")
        note_text = _require_str(payload, "note")
        with _library_errors():
            updated = library.edit_note(book_path, chapter, anchor, note_text)
        if not updated:
            raise HTTPException(status_code=404, detail="Note not found")
        return JSONResponse({"updated": True})

    @app.post("/api/books/{book_id:path}/notes/delete")
    def api_delete_notes(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book_path = _resolve_book(book_id)
        chapter = _require_int(payload, "chapter")
        anchors = payload.get("anchors")
        if not isinstance(anchors, list) or not all(isinstance(a, str) for a in anchors):
            raise HTTPException(status_code=400, detail="anchors must be a list of strings.")
        with _library_errors():
            removed = library.delete_notes(book_path, chapter, anchors)
        return JSONResponse({"deleted": removed})

    @app.delete("/api/books/{book_id:path}/notes")
    def api_delete_all_notes(book_id: str) -> JSONResponse:
        book_path = _resolve_book(book_id)
        with _library_errors():
            removed = library.delete_all_notes(book_path)
        return JSONResponse({"deleted": removed})

    @app.get("/api/books/{book_id:path}")
    def api_book(book_id: str) -> JSONResponse:
        book_path = _resolve_book(book_id)
        with _library_errors():
            meta = library.open_book(book_path)
        return JSONResponse(_metadata_payload(meta))

    @app.delete("/api/books/{book_id:path}")
    def api_delete_book(book_id: str) -> JSONResponse:
        book_path = _resolve_book(book_id)
        with _library_errors():
            deleted = library.delete_book(book_path)
        return JSONResponse({"deleted": deleted, "book": book_id})

    return app
