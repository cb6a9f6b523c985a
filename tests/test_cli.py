from __future__ import annotations

from pathlib import Path

import pytest

from reflow import cli


def _numbered(prefix: str, count: int) -> list[str]:
    return [f"{prefix} paragraph {i}" for i in range(count)]


@pytest.fixture
def book(make_epub) -> Path:
    return make_epub([_numbered("a", 8), _numbered("b", 6), _numbered("c", 10)], title="Cli Book")


def _common(tmp_path: Path) -> list[str]:
    return ["--home", str(tmp_path / "home"), "--lines", "2"]


def test_parser_knows_every_command() -> None:
    parser = cli.build_parser()
    args = parser.parse_args(["position", "book.epub", "--save", "2", "3", "--lines", "4"])
    assert (args.command, args.save, args.lines) == ("position", [2, 3], 4)
    args = parser.parse_args(["notes", "book.epub", "add", "1", "0", "remember"])
    assert (args.notes_cmd, args.chapter, args.page, args.text) == ("add", 1, 0, "remember")
    args = parser.parse_args(["web"])
    assert (args.host, args.port) == ("127.0.0.1", 2800)


def test_version_flag(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--version"])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out.startswith("reflow ")


def test_no_arguments_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "usage: reflow" in capsys.readouterr().out


def test_pages_and_page(book: Path, tmp_path: Path, capsys) -> None:
    assert cli.main(["pages", str(book), *_common(tmp_path)]) == 0
    assert "12 pages" in capsys.readouterr().out
    assert cli.main(["pages", str(book), "--home", str(tmp_path / "home"), "--lines", "1"]) == 0
    assert "12 pages" in capsys.readouterr().out
    assert cli.main(["pages", str(book), "--recompute", "--home", str(tmp_path / "home"), "--lines", "1"]) == 0
    assert "24 pages" in capsys.readouterr().out

    assert cli.main(["page", str(book), "1", "2", *_common(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "b paragraph 4" in out
    assert "b paragraph 5" in out


def test_position_and_progress(book: Path, tmp_path: Path, capsys) -> None:
    assert cli.main(["position", str(book), *_common(tmp_path)]) == 0
    assert "No saved position" in capsys.readouterr().out
    assert cli.main(["position", str(book), "--save", "2", "3", *_common(tmp_path)]) == 0
    assert "Saved chapter 2, page 3" in capsys.readouterr().out
    assert cli.main(["position", str(book), "--home", str(tmp_path / "home"), "--lines", "4"]) == 0
    assert "Chapter 2, page 1" in capsys.readouterr().out
    assert cli.main(["progress", str(book), "--home", str(tmp_path / "home"), "--lines", "4"]) == 0
    assert "Page 6 of 7" in capsys.readouterr().out


def test_edit_from_file_and_revert(book: Path, tmp_path: Path, capsys) -> None:
    source = tmp_path / "chapter.txt"
    source.write_text("one\n\ntwo\n\nthree", encoding="utf-8")
    assert cli.main(["edit", str(book), "0", str(source), *_common(tmp_path)]) == 0
    assert "Chapter 0 now has 2 pages" in capsys.readouterr().out
    assert cli.main(["revert", str(book), "0", *_common(tmp_path)]) == 0
    assert "Chapter 0 reverted" in capsys.readouterr().out
    assert cli.main(["revert", str(book), "0", *_common(tmp_path)]) == 0
    assert "has no edits" in capsys.readouterr().out


def test_notes_commands(book: Path, tmp_path: Path, capsys) -> None:
    assert cli.main(["notes", str(book), *_common(tmp_path), "add", "0", "1", "remember"]) == 0
    capsys.readouterr()
    assert cli.main(["notes", str(book), *_common(tmp_path), "delete", "0", "not an anchor"]) == 1
    assert "No such note" in capsys.readouterr().out
    assert cli.main(["notes", str(book), *_common(tmp_path), "clear"]) == 0
    assert "Deleted 1 notes" in capsys.readouterr().out


def test_errors_exit_with_code_2(book: Path, tmp_path: Path, capsys) -> None:
    assert cli.main(["page", str(book), "1", "9", *_common(tmp_path)]) == 2
    assert "error:" in capsys.readouterr().err
    assert cli.main(["pages", str(tmp_path / "missing.epub"), *_common(tmp_path)]) == 2
    assert cli.main(["page", str(book), "0", "0", "--home", str(tmp_path / "home"), "--lines", "0"]) == 2


def test_page_spread_and_reset(book: Path, tmp_path: Path, capsys) -> None:
    assert cli.main(["page", str(book), "0", "3", "--spread", *_common(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "page 2" in out
    assert "a paragraph 4" in out
    assert "a paragraph 7" in out

    assert cli.main(["position", str(book), "--save", "0", "1", *_common(tmp_path)]) == 0
    capsys.readouterr()
    assert cli.main(["reset", *_common(tmp_path)]) == 0
    assert "Forgot 1 reading positions" in capsys.readouterr().out
    assert cli.main(["position", str(book), *_common(tmp_path)]) == 0
    assert "No saved position" in capsys.readouterr().out
