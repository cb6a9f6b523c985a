from __future__ import annotations

import re
import unicodedata
import warnings
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from bs4 import (
    BeautifulSoup,
    Doctype,
    FeatureNotFound,
    NavigableString,
    XMLParsedAsHTMLWarning,
)

HTML_EXTS = (".xhtml", ".html", ".htm")
DC_NS = "http://purl.org/dc/elements/1.1/"

# Block elements that should start a new paragraph when collapsing to text.
BLOCK_LEVEL_TAGS = {
    "address",
    "article",
    "aside",
    "blockquote",
    "dd",
    "div",
    "dl",
    "dt",
    "figcaption",
    "figure",
    "footer",
    "form",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "header",
    "hgroup",
    "hr",
    "li",
    "main",
    "nav",
    "ol",
    "p",
    "pre",
    "section",
    "table",
    "ul",
    "tr",
}
# Tags that should force a break even when nested inside another block.
FORCE_BREAK_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6", "li", "p", "dt", "dd", "tr"}

# Dublin Core fields copied into the metadata record, with the value used
# when the container does not carry them.
METADATA_DEFAULTS = {
    "title": "no title",
    "author": "no author",
    "lang": "no lang",
    "desc": "",
    "source": "no source",
    "date": "no date",
    "rights": "no rights",
    "identifier": "no identifier",
}
_DC_FIELDS = {
    "title": "title",
    "author": "creator",
    "lang": "language",
    "desc": "description",
    "source": "source",
    "date": "date",
    "rights": "rights",
    "identifier": "identifier",
}


class EpubError(RuntimeError):
    """Raised when an EPUB container cannot be read."""


@dataclass
class EpubInfo:
    path: Path
    spine: list[str]
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def chapter_count(self) -> int:
        return len(self.spine)


def _zip_read_text(zf: zipfile.ZipFile, name: str) -> str:
    raw = zf.read(name)
    for enc in ("utf-8", "utf-16", "cp1252", "latin-1"):
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")


def _find_opf_path(zf: zipfile.ZipFile) -> str:
    # META-INF/container.xml -> rootfiles/rootfile@full-path
    try:
        container = _zip_read_text(zf, "META-INF/container.xml")
        root = ET.fromstring(container)
        ns = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}
        for rf in root.findall(".//c:rootfile", ns):
            full = rf.attrib.get("full-path")
            if full:
                return full
    except (KeyError, ET.ParseError):
        pass
    # Fallback: first *.opf found
    for n in zf.namelist():
        if n.lower().endswith(".opf"):
            return n
    raise FileNotFoundError("OPF file not found in EPUB")


def _spine_items(zf: zipfile.ZipFile, opf_path: str, root: ET.Element) -> list[str]:
    # Resolve namespaces loosely
    nsmap = {"opf": root.tag.split("}")[0].strip("{")} if root.tag.startswith("{") else {}
    prefix = "opf:" if nsmap else ""
    manifest: dict[str, str] = {}
    for it in root.findall(f".//{prefix}manifest/{prefix}item", nsmap):
        iid = it.attrib.get("id")
        href = it.attrib.get("href")
        if iid and href:
            manifest[iid] = href
    items = []
    for ir in root.findall(f".//{prefix}spine/{prefix}itemref", nsmap):
        iid = ir.attrib.get("idref")
        if iid in manifest:
            items.append(manifest[iid])
    # Make hrefs absolute relative to OPF directory
    base = str(PurePosixPath(opf_path).parent)
    fixed = []
    for href in items:
        p = str(PurePosixPath(base) / href) if base not in ("", ".", "/") else href
        fixed.append(str(PurePosixPath(p).as_posix()))
    # If spine is empty, fall back to all HTML files in zip order
    if not fixed:
        fixed = [n for n in zf.namelist() if n.lower().endswith(HTML_EXTS)]
    return fixed


def _metadata_fields(root: ET.Element) -> dict[str, str]:
    fields: dict[str, str] = {}
    for key, dc_name in _DC_FIELDS.items():
        values: list[str] = []
        for el in root.findall(f".//{{{DC_NS}}}{dc_name}"):
            text = unicodedata.normalize("NFKC", "".join(el.itertext())).strip()
            if text and text not in values:
                values.append(text)
        if values:
            fields[key] = ", ".join(values) if key == "author" else values[0]
    return fields


def read_epub_info(path: str | Path) -> EpubInfo:
    """Read the spine and Dublin Core metadata of an EPUB."""
    epub_path = Path(path)
    try:
        with zipfile.ZipFile(epub_path, "r") as zf:
            opf_path = _find_opf_path(zf)
            root = ET.fromstring(_zip_read_text(zf, opf_path))
            spine = _spine_items(zf, opf_path, root)
            fields = _metadata_fields(root)
    except (OSError, zipfile.BadZipFile, KeyError, ET.ParseError) as exc:
        raise EpubError(f"Cannot read EPUB {epub_path}: {exc}") from exc
    merged = dict(METADATA_DEFAULTS)
    merged.update(fields)
    return EpubInfo(path=epub_path, spine=spine, fields=merged)


def read_chapter_markup(path: str | Path, chapter: int) -> str:
    """Return the raw markup of spine item ``chapter``."""
    epub_path = Path(path)
    try:
        with zipfile.ZipFile(epub_path, "r") as zf:
            opf_path = _find_opf_path(zf)
            root = ET.fromstring(_zip_read_text(zf, opf_path))
            spine = _spine_items(zf, opf_path, root)
            if chapter < 0 or chapter >= len(spine):
                raise EpubError(f"Chapter {chapter} out of range ({len(spine)} in spine)")
            name = spine[chapter]
            if name not in zf.namelist():
                # Some spines use relative paths; try to resolve simply
                candidates = [n for n in zf.namelist() if n.endswith("/" + name) or n.endswith(name)]
                if not candidates:
                    raise EpubError(f"Spine item {name} missing from {epub_path.name}")
                name = candidates[0]
            return _zip_read_text(zf, name)
    except (OSError, zipfile.BadZipFile, KeyError, ET.ParseError) as exc:
        raise EpubError(f"Cannot read chapter {chapter} of {epub_path}: {exc}") from exc


def _soup_from_html(html: str) -> BeautifulSoup:
    stripped = html.lstrip()
    lower_head = stripped[:200].lower()
    xmlish = stripped.startswith("<?xml") or (
        "<html" in lower_head and "xmlns" in lower_head
    )

    if xmlish:
        for parser in ("lxml-xml", "xml"):
            try:
                return BeautifulSoup(html, parser)
            except FeatureNotFound:
                continue

    for parser in ("html5lib", "lxml", "html.parser"):
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(html, parser)
        except FeatureNotFound:
            continue

    return BeautifulSoup(html, "html.parser")


def markup_to_text(html: str) -> str:
    """Collapse chapter markup to plain text with blank lines between blocks."""
    soup = _soup_from_html(html)
    for node in list(soup.contents):
        if isinstance(node, Doctype):
            node.extract()
        elif isinstance(node, NavigableString):
            stripped = str(node).strip()
            if stripped and stripped.upper().startswith("HTML PUBLIC"):
                node.extract()
    for t in soup.find_all(["rp", "script", "style", "title"]):
        t.decompose()
    # Convert <br> to explicit newlines so they survive text extraction.
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(BLOCK_LEVEL_TAGS):
        if tag.name in FORCE_BREAK_TAGS or not tag.find_parent(BLOCK_LEVEL_TAGS):
            tag.insert_before("\n\n")
    txt = soup.get_text(separator="")
    txt = unicodedata.normalize("NFKC", txt)
    txt = re.sub(r"[ \t]+\n", "\n", txt)
    txt = re.sub(r"\n[ \t]+", "\n", txt)
    txt = re.sub(r"\n{3,}", "\n\n", txt).strip()
    return txt
