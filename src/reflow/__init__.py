from .aggregate import AggregationFailedError, PageCounter
from .content import ChapterResolver, ContentUnavailableError
from .library import Library, LibraryConfig
from .notes import Note, NoteStore, ResolvedNote
from .pagination import InvalidParameterError, RenderingParameters, paginate
from .reconcile import PositionLostError, ReadingPosition, reconcile
from .similarity import text_similarity
from .store import BookMetadata, PersistenceError

__all__ = [
    "paginate",
    "RenderingParameters",
    "ChapterResolver",
    "PageCounter",
    "ReadingPosition",
    "reconcile",
    "text_similarity",
    "Note",
    "NoteStore",
    "ResolvedNote",
    "BookMetadata",
    "Library",
    "LibraryConfig",
    "ContentUnavailableError",
    "InvalidParameterError",
    "AggregationFailedError",
    "PositionLostError",
    "PersistenceError",
]
