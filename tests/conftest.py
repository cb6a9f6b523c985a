from __future__ import annotations

import html
import zipfile
from pathlib import Path
from typing import Callable, Sequence

import pytest

from reflow.library import Library, LibraryConfig
from reflow.logging_utils import set_debug_logging

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def _chapter_html(title: str, paragraphs: Sequence[str]) -> str:
    body = "\n".join(f"    <p>{html.escape(p)}</p>" for p in paragraphs)
    return f"""<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
  <head><title>{html.escape(title)}</title></head>
  <body>
{body}
  </body>
</html>
"""


def build_epub(
    target: Path,
    chapters: Sequence[Sequence[str]],
    *,
    title: str = "Sample Book",
    author: str = "Sample Author",
    lang: str = "en",
) -> Path:
    """Write an EPUB whose chapter ``i`` holds one ``<p>`` per paragraph."""
    manifest = "\n".join(
        f'    <item id="ch{i}" href="ch{i}.xhtml" media-type="application/xhtml+xml"/>'
        for i in range(len(chapters))
    )
    spine = "\n".join(f'    <itemref idref="ch{i}"/>' for i in range(len(chapters)))
    opf_xml = f"""<?xml version="1.0" encoding="UTF-8"?>
<package version="3.0" unique-identifier="BookId" xmlns="http://www.idpf.org/2007/opf">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:title>{html.escape(title)}</dc:title>
    <dc:creator>{html.escape(author)}</dc:creator>
    <dc:language>{lang}</dc:language>
    <dc:identifier id="BookId">urn:test:{html.escape(title)}</dc:identifier>
  </metadata>
  <manifest>
{manifest}
  </manifest>
  <spine>
{spine}
  </spine>
</package>
"""
    target.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(target, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        zf.writestr("META-INF/container.xml", CONTAINER_XML)
        zf.writestr("OEBPS/content.opf", opf_xml)
        for i, paragraphs in enumerate(chapters):
            zf.writestr(f"OEBPS/ch{i}.xhtml", _chapter_html(f"Chapter {i}", paragraphs))
    return target


@pytest.fixture
def make_epub(tmp_path: Path) -> Callable[..., Path]:
    def _make(chapters: Sequence[Sequence[str]], name: str = "sample.epub", **kwargs) -> Path:
        return build_epub(tmp_path / "books" / name, chapters, **kwargs)

    return _make


@pytest.fixture
def library(tmp_path: Path) -> Library:
    return Library(LibraryConfig(root=tmp_path / "home", workers=4, lines_per_page=2, font_size=12.0))


@pytest.fixture(autouse=True)
def _quiet_debug_logging():
    yield
    set_debug_logging(False)
