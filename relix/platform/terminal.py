"""Minimal terminal emulator for PTY output capture.

Release commands run attached to a pseudo-terminal so git and hooks keep
their colors and progress meters. `TerminalScreen` interprets just enough of
the ANSI protocol to turn that byte stream into a screen snapshot:

- cursor movement (CUU/CUD/CUF/CUB/CNL/CPL/CHA/VPA/CUP, save/restore)
- erase in display / line, erase and delete characters
- SGR attributes and colors: 16-color, 256-color and 24-bit

Everything else (alternate screen, scroll regions, mouse modes, OSC titles)
is parsed and dropped. There is no scrollback: lines scrolled off the top are
gone, which is why the plain transcript is built separately from the raw
stream by `plain_transcript`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

__all__ = ["CellStyle", "TerminalScreen", "plain_transcript"]

_ESC = "\x1b"
_RESET = "\x1b[0m"
_MAX_PENDING = 512

_ATTR_ON = frozenset({1, 2, 3, 4, 5, 7, 8, 9})
_ATTR_OFF = {22: (1, 2), 23: (3,), 24: (4,), 25: (5,), 27: (7,), 28: (8,), 29: (9,)}


@dataclass(frozen=True, slots=True)
class CellStyle:
    """Graphic rendition of a cell, stored as the SGR parameters that set it.

    Colors keep the parameter family they arrived in: `(31,)`, `(91,)`,
    `(38, 5, 208)` or `(38, 2, r, g, b)`, so rendering re-emits the same
    escape code family the program used.
    """

    fg: tuple[int, ...] = ()
    bg: tuple[int, ...] = ()
    attrs: tuple[int, ...] = ()

    @property
    def is_default(self) -> bool:
        return not (self.fg or self.bg or self.attrs)

    @property
    def is_visible_blank(self) -> bool:
        """True if a space in this style looks like empty terminal."""
        return not self.bg and 7 not in self.attrs

    def sgr(self) -> str:
        params = [*self.attrs, *self.fg, *self.bg]
        if not params:
            return _RESET
        return f"\x1b[0;{';'.join(str(p) for p in params)}m"


DEFAULT_STYLE = CellStyle()


class TerminalScreen:
    """A rows x cols grid of characters and styles driven by `feed()`.

    Not thread-safe; `PtyRunner` serializes access with its own lock.
    """

    def __init__(self, rows: int = 24, cols: int = 80) -> None:
        self.rows = max(1, rows)
        self.cols = max(1, cols)
        self.cursor_row = 0
        self.cursor_col = 0
        self._style = DEFAULT_STYLE
        self._saved = (0, 0, DEFAULT_STYLE)
        self._wrap_pending = False
        self._pending = ""
        self._chars: list[list[str]] = [self._blank_chars() for _ in range(self.rows)]
        self._styles: list[list[CellStyle]] = [self._blank_styles() for _ in range(self.rows)]

    # -- grid helpers -------------------------------------------------------

    def _blank_chars(self) -> list[str]:
        return [" "] * self.cols

    def _blank_styles(self) -> list[CellStyle]:
        return [DEFAULT_STYLE] * self.cols

    def _clear_cells(self, row: int, start: int, end: int) -> None:
        for col in range(max(0, start), min(self.cols, end)):
            self._chars[row][col] = " "
            self._styles[row][col] = DEFAULT_STYLE

    def _clamp_cursor(self) -> None:
        self.cursor_row = min(max(self.cursor_row, 0), self.rows - 1)
        self.cursor_col = min(max(self.cursor_col, 0), self.cols - 1)
        self._wrap_pending = False

    def _line_feed(self) -> None:
        if self.cursor_row == self.rows - 1:
            self._chars.pop(0)
            self._styles.pop(0)
            self._chars.append(self._blank_chars())
            self._styles.append(self._blank_styles())
        else:
            self.cursor_row += 1

    def _reverse_index(self) -> None:
        if self.cursor_row == 0:
            self._chars.pop()
            self._styles.pop()
            self._chars.insert(0, self._blank_chars())
            self._styles.insert(0, self._blank_styles())
        else:
            self.cursor_row -= 1

    def _put(self, ch: str) -> None:
        if self._wrap_pending:
            self.cursor_col = 0
            self._line_feed()
            self._wrap_pending = False
        self._chars[self.cursor_row][self.cursor_col] = ch
        self._styles[self.cursor_row][self.cursor_col] = self._style
        if self.cursor_col == self.cols - 1:
            self._wrap_pending = True
        else:
            self.cursor_col += 1

    # -- input --------------------------------------------------------------

    def feed(self, text: str) -> None:
        """Interpret a chunk of decoded terminal output.

        Escape sequences split across chunks are buffered until complete.
        """
        data = self._pending + text
        self._pending = ""
        i = 0
        n = len(data)
        while i < n:
            ch = data[i]
            if ch == _ESC:
                consumed = self._escape(data, i)
                if consumed == 0:
                    if n - i <= _MAX_PENDING:
                        self._pending = data[i:]
                        return
                    consumed = 1
                i += consumed
                continue

            if ch == "\r":
                self.cursor_col = 0
                self._wrap_pending = False
            elif ch in "\n\x0b\x0c":
                self._line_feed()
                self._wrap_pending = False
            elif ch == "\b":
                self.cursor_col = max(0, self.cursor_col - 1)
                self._wrap_pending = False
            elif ch == "\t":
                self.cursor_col = min(self.cols - 1, (self.cursor_col // 8 + 1) * 8)
            elif ch >= " " and ch != "\x7f":
                self._put(ch)
            i += 1

    def _escape(self, data: str, i: int) -> int:
        """Handle the escape sequence at data[i]; returns chars consumed (0 = incomplete)."""
        n = len(data)
        if i + 1 >= n:
            return 0
        kind = data[i + 1]

        if kind == "[":
            j = i + 2
            while j < n and not ("\x40" <= data[j] <= "\x7e"):
                j += 1
            if j >= n:
                return 0
            self._csi(data[i + 2 : j], data[j])
            return j - i + 1

        if kind == "]":
            j = i + 2
            while j < n:
                if data[j] == "\x07":
                    return j - i + 1
                if data[j] == _ESC:
                    if j + 1 >= n:
                        return 0
                    if data[j + 1] == "\\":
                        return j - i + 2
                j += 1
            return 0

        if kind in "()*+":
            return 3 if i + 2 < n else 0
        if kind == "7":
            self._saved = (self.cursor_row, self.cursor_col, self._style)
        elif kind == "8":
            self._restore_cursor()
        elif kind == "M":
            self._reverse_index()
        elif kind == "D":
            self._line_feed()
        elif kind == "E":
            self.cursor_col = 0
            self._line_feed()
        elif kind == "c":
            self._reset()
        return 2

    def _restore_cursor(self) -> None:
        self.cursor_row, self.cursor_col, self._style = self._saved
        self._clamp_cursor()

    def _reset(self) -> None:
        self._style = DEFAULT_STYLE
        self.cursor_row = 0
        self.cursor_col = 0
        self._wrap_pending = False
        self._chars = [self._blank_chars() for _ in range(self.rows)]
        self._styles = [self._blank_styles() for _ in range(self.rows)]

    def _csi(self, raw: str, final: str) -> None:
        if raw and raw[0] in "?>=<":
            # Private modes (cursor visibility, alternate screen, ...).
            return

        nums: list[int] = []
        for part in raw.replace(":", ";").split(";") if raw else []:
            nums.append(int(part) if part.isdigit() else 0)

        def arg(index: int, default: int = 1) -> int:
            value = nums[index] if index < len(nums) else 0
            return value or default

        row, col = self.cursor_row, self.cursor_col
        match final:
            case "A":
                self.cursor_row = row - arg(0)
            case "B" | "e":
                self.cursor_row = row + arg(0)
            case "C" | "a":
                self.cursor_col = col + arg(0)
            case "D":
                self.cursor_col = col - arg(0)
            case "E":
                self.cursor_row, self.cursor_col = row + arg(0), 0
            case "F":
                self.cursor_row, self.cursor_col = row - arg(0), 0
            case "G" | "`":
                self.cursor_col = arg(0) - 1
            case "d":
                self.cursor_row = arg(0) - 1
            case "H" | "f":
                self.cursor_row, self.cursor_col = arg(0) - 1, arg(1) - 1
            case "J":
                self._erase_display(nums[0] if nums else 0)
                return
            case "K":
                self._erase_line(nums[0] if nums else 0)
                return
            case "X":
                self._clear_cells(row, col, col + arg(0))
                return
            case "P":
                count = min(arg(0), self.cols - col)
                chars, styles = self._chars[row], self._styles[row]
                del chars[col : col + count]
                del styles[col : col + count]
                chars.extend([" "] * count)
                styles.extend([DEFAULT_STYLE] * count)
                return
            case "m":
                self._sgr(nums or [0])
                return
            case "s":
                self._saved = (row, col, self._style)
                return
            case "u":
                self._restore_cursor()
                return
            case _:
                return
        self._clamp_cursor()

    def _erase_display(self, mode: int) -> None:
        row, col = self.cursor_row, self.cursor_col
        if mode == 0:
            self._clear_cells(row, col, self.cols)
            for r in range(row + 1, self.rows):
                self._clear_cells(r, 0, self.cols)
        elif mode == 1:
            for r in range(row):
                self._clear_cells(r, 0, self.cols)
            self._clear_cells(row, 0, col + 1)
        else:
            for r in range(self.rows):
                self._clear_cells(r, 0, self.cols)

    def _erase_line(self, mode: int) -> None:
        row, col = self.cursor_row, self.cursor_col
        if mode == 0:
            self._clear_cells(row, col, self.cols)
        elif mode == 1:
            self._clear_cells(row, 0, col + 1)
        else:
            self._clear_cells(row, 0, self.cols)

    def _sgr(self, params: list[int]) -> None:
        fg, bg = self._style.fg, self._style.bg
        attrs = set(self._style.attrs)
        i = 0
        while i < len(params):
            p = params[i]
            if p == 0:
                fg, bg, attrs = (), (), set()
            elif p in _ATTR_ON:
                attrs.add(p)
            elif p in _ATTR_OFF:
                attrs.difference_update(_ATTR_OFF[p])
            elif 30 <= p <= 37 or 90 <= p <= 97:
                fg = (p,)
            elif p == 39:
                fg = ()
            elif 40 <= p <= 47 or 100 <= p <= 107:
                bg = (p,)
            elif p == 49:
                bg = ()
            elif p in (38, 48):
                mode = params[i + 1] if i + 1 < len(params) else None
                if mode == 5 and i + 2 < len(params):
                    color: tuple[int, ...] = (p, 5, params[i + 2])
                    i += 2
                elif mode == 2 and i + 4 < len(params):
                    color = (p, 2, *params[i + 2 : i + 5])
                    i += 4
                else:
                    break
                if p == 38:
                    fg = color
                else:
                    bg = color
            i += 1
        self._style = CellStyle(fg=fg, bg=bg, attrs=tuple(sorted(attrs)))

    # -- geometry -----------------------------------------------------------

    def resize(self, rows: int, cols: int) -> None:
        """Resize the grid, keeping the rows around the cursor."""
        rows = max(1, rows)
        cols = max(1, cols)

        if cols != self.cols:
            for r in range(self.rows):
                if cols < self.cols:
                    del self._chars[r][cols:]
                    del self._styles[r][cols:]
                else:
                    self._chars[r].extend([" "] * (cols - self.cols))
                    self._styles[r].extend([DEFAULT_STYLE] * (cols - self.cols))
            self.cols = cols

        if rows < self.rows:
            overflow = self.rows - rows
            drop_top = min(overflow, max(0, self.cursor_row - rows + 1))
            del self._chars[:drop_top]
            del self._styles[:drop_top]
            del self._chars[rows:]
            del self._styles[rows:]
            self.cursor_row -= drop_top
        elif rows > self.rows:
            for _ in range(rows - self.rows):
                self._chars.append(self._blank_chars())
                self._styles.append(self._blank_styles())
        self.rows = rows
        self._clamp_cursor()

    # -- output -------------------------------------------------------------

    def render(self, *, color: bool = True) -> str:
        """Render the screen as text.

        Trailing blank columns and rows are trimmed. With `color`, SGR codes
        are emitted only where the style changes, and every styled line ends
        with a reset.
        """
        lines: list[str] = []
        for chars, styles in zip(self._chars, self._styles, strict=True):
            end = len(chars)
            while end > 0 and chars[end - 1] == " " and styles[end - 1].is_visible_blank:
                end -= 1

            if not color:
                lines.append("".join(chars[:end]))
                continue

            out: list[str] = []
            current = DEFAULT_STYLE
            for col in range(end):
                style = styles[col]
                if style != current:
                    out.append(style.sgr())
                    current = style
                out.append(chars[col])
            if not current.is_default:
                out.append(_RESET)
            lines.append("".join(out))

        while lines and lines[-1] == "":
            lines.pop()
        return "\n".join(lines)

    def plain_lines(self) -> list[str]:
        text = self.render(color=False)
        return text.split("\n") if text else []


_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[()*+]."  # charset designation
    r"|\x1b[@-Z\\-_78=>c]"  # two-char escapes
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def plain_transcript(raw: str) -> str:
    """Turn a raw PTY stream into plain text lines.

    Escape sequences are dropped. A carriage return without a newline
    overwrites the start of the line, so progress meters collapse to their
    final state the way they looked on screen.
    """
    text = _ANSI_RE.sub("", raw).replace("\r\n", "\n")
    lines: list[str] = []
    for line in text.split("\n"):
        if "\r" in line:
            shown = ""
            for segment in line.split("\r"):
                shown = segment + shown[len(segment) :]
            line = shown
        lines.append(_CONTROL_RE.sub("", line).rstrip())
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)
