from __future__ import annotations

import re
import textwrap

_WORD_RE = re.compile(r"\S+")


def count_words(text: str | None) -> int:
    if not text:
        return 0
    return len(_WORD_RE.findall(text))


def wrap_text(text: str, width: int = 80, indent: str = "") -> str:
    """Wrap each paragraph of ``text`` to ``width`` columns, keeping blank lines and list items intact."""
    out: list[str] = []
    for line in text.split("\n"):
        if not line.strip():
            out.append("")
            continue
        if len(line) <= width:
            out.append(indent + line if indent else line)
            continue
        stripped = line.lstrip()
        lead = line[: len(line) - len(stripped)]
        bullet = re.match(r"^([-*]|\d+\.)\s+", stripped)
        subsequent = lead + (" " * len(bullet.group(0)) if bullet else "")
        out.extend(
            textwrap.wrap(
                stripped,
                width=width,
                initial_indent=indent + lead,
                subsequent_indent=indent + subsequent,
                break_long_words=False,
                break_on_hyphens=False,
            )
        )
    return "\n".join(out)


def format_loading(value: float, digits: int = 2) -> str:
    """Render a loading without the leading zero (0.78 -> .78, -0.45 -> -.45)."""
    text = f"{value:.{digits}f}"
    if text.startswith("0."):
        return text[1:]
    if text.startswith("-0."):
        return "-" + text[2:]
    return text


def format_percent(fraction: float, digits: int = 1) -> str:
    return f"{fraction * 100:.{digits}f}%"
