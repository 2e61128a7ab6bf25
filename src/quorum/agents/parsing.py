"""Section and list extraction for free-text review and arbitration responses."""

from __future__ import annotations

import re

_NEXT_SECTION = re.compile(r"\n(?:#{1,3}\s+\S|(?:\d+\.\s*)?[A-Z][A-Z_ ]*[A-Z]:)")
_MARKDOWN_HEADER = re.compile(r"^#{1,6}\s")
_SECTION_HEADER = re.compile(r"^[A-Z][A-Z_\s]+:")
_BULLET = re.compile(r"^[-*+]\s+(.+)$")
_NUMBERED = re.compile(r"^\d+[.)]\s+(.+)$")
_BOLD_TITLE = re.compile(r"^\*\*([^*]+)\*\*[:\s]*(.*)$")


def extract_section(response: str, *headers: str) -> str:
    """Return the body following the first matching header up to the next header."""
    alternatives = "|".join(re.escape(header) for header in headers)
    start = re.search(
        rf"(?:^|\n)\s*(?:#{{1,3}}\s*)?(?:\d+\.\s*)?(?:{alternatives})\b[:\s]*",
        response,
        re.IGNORECASE,
    )
    if start is None:
        return ""
    remaining = response[start.end():]
    end = _NEXT_SECTION.search("\n" + remaining)
    if end is None:
        return remaining.strip()
    return remaining[: max(end.start() - 1, 0)].strip()


def parse_list(text: str) -> list[str]:
    """Collect bullet, numbered and substantial plain-text lines."""
    items: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or _MARKDOWN_HEADER.match(line) or _SECTION_HEADER.match(line):
            continue
        bullet = _BULLET.match(line) or _NUMBERED.match(line)
        if bullet:
            item = bullet.group(1).strip()
            if len(item) > 3:
                items.append(item)
            continue
        bold = _BOLD_TITLE.match(line)
        if bold:
            title, detail = bold.group(1).strip(), bold.group(2).strip()
            if detail:
                items.append(f"{title}: {detail}")
            elif len(title) > 10:
                items.append(title)
            continue
        if len(line) > 15 and not line.endswith(":"):
            items.append(line)
    return items


def without_none(items: list[str]) -> list[str]:
    return [item for item in items if not item.lower().startswith("none")]


def parse_percentage(response: str, *patterns: str) -> float | None:
    for pattern in patterns:
        match = re.search(pattern, response, re.IGNORECASE)
        if match:
            return max(0.0, min(100.0, float(match.group(1))))
    return None
