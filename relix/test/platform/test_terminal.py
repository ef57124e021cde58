"""Tests for the PTY screen emulator and transcript cleanup."""

from __future__ import annotations

from relix.platform.terminal import CellStyle, TerminalScreen, plain_transcript


def screen(text: str, rows: int = 5, cols: int = 20) -> TerminalScreen:
    s = TerminalScreen(rows=rows, cols=cols)
    s.feed(text)
    return s


class TestTerminalScreen:
    def test_plain_lines(self) -> None:
        assert screen("hello\r\nworld").plain_lines() == ["hello", "world"]

    def test_carriage_return_overwrites(self) -> None:
        assert screen("Receiving 10%\rReceiving 100%").plain_lines() == ["Receiving 100%"]

    def test_erase_line(self) -> None:
        assert screen("abcdef\r\x1b[3C\x1b[K").plain_lines() == ["abc"]

    def test_cursor_position(self) -> None:
        assert screen("\x1b[2;3Hx").plain_lines() == ["", "  x"]

    def test_wraps_long_lines(self) -> None:
        assert screen("abcdefgh", cols=4).plain_lines() == ["abcd", "efgh"]

    def test_scrolls_when_full(self) -> None:
        assert screen("1\r\n2\r\n3\r\n4", rows=3).plain_lines() == ["2", "3", "4"]

    def test_escape_split_across_chunks(self) -> None:
        s = TerminalScreen(rows=2, cols=10)
        s.feed("a\x1b[3")
        s.feed("1mb\x1b[0m")
        assert s.plain_lines() == ["ab"]
        assert s.render() == "a\x1b[0;31mb\x1b[0m"

    def test_colors_are_rendered_once_per_run(self) -> None:
        s = screen("\x1b[1;32mok\x1b[0m done")
        assert s.render() == "\x1b[0;1;32mok\x1b[0m done"
        assert s.render(color=False) == "ok done"

    def test_256_color(self) -> None:
        s = TerminalScreen(rows=1, cols=4)
        s.feed("\x1b[38;5;208mx")
        assert s.render() == "\x1b[0;38;5;208mx\x1b[0m"

    def test_private_modes_are_ignored(self) -> None:
        assert screen("\x1b[?25lgit\x1b[?25h").plain_lines() == ["git"]

    def test_resize_keeps_cursor_rows(self) -> None:
        s = screen("1\r\n2\r\n3\r\n4", rows=4, cols=10)
        s.resize(2, 5)
        assert s.plain_lines() == ["3", "4"]
        assert (s.rows, s.cols) == (2, 5)


class TestCellStyle:
    def test_sgr(self) -> None:
        assert CellStyle().sgr() == "\x1b[0m"
        assert CellStyle(fg=(31,), attrs=(1,)).sgr() == "\x1b[0;1;31m"
        assert CellStyle(bg=(44,)).is_visible_blank is False


class TestPlainTranscript:
    def test_strips_ansi_and_progress(self) -> None:
        raw = "\x1b[32mRemote:\x1b[0m counting 50%\rRemote: counting 100%\r\nAuto-merging a.py\r\n\r\n"
        assert plain_transcript(raw) == "Remote: counting 100%\nAuto-merging a.py"

    def test_osc_title_is_dropped(self) -> None:
        assert plain_transcript("\x1b]0;title\x07$ git status") == "$ git status"

    def test_shorter_overwrite_keeps_tail(self) -> None:
        assert plain_transcript("abcdef\rxy") == "xycdef"
