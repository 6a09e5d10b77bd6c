"""
Split long assistant replies into SMS-sized parts.

Short replies go out untouched. Longer ones are cut greedily, preferring a
sentence end, then a word boundary, then a hard cut, and every part is
tagged "(part i/total)". Each Segment keeps the exact slice of the reply it
carries in ``body`` so the parts can always be stitched back together.
"""

from dataclasses import dataclass
from typing import List, Optional
import re

DEFAULT_SEGMENT_BUDGET = 150
DEFAULT_HARD_LIMIT = 160

_SENTENCE_END = re.compile(r'[.!?]+\s+')
_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class Segment:
    index: int
    total: int
    body: str
    text: str

    @property
    def is_batched(self) -> bool:
        return self.total > 1

    @classmethod
    def single(cls, text: str) -> 'Segment':
        return cls(index=1, total=1, body=text, text=text)


def part_marker(index: int, total: int) -> str:
    return f"(part {index}/{total})"


def _last_break(text: str, start: int, limit: int, pattern) -> Optional[int]:
    """End of the last pattern match that starts inside text[start:limit]."""
    best = None
    # Scan one character past the limit so a sentence ending right at it still matches
    for match in pattern.finditer(text, start, min(limit + 1, len(text))):
        if match.start() >= limit:
            break
        best = min(match.end(), limit)
    if best is not None and best > start:
        return best
    return None


def _cut(text: str, start: int, width: int) -> int:
    limit = start + width
    return (
        _last_break(text, start, limit, _SENTENCE_END)
        or _last_break(text, start, limit, _WHITESPACE)
        or limit
    )


def _render(body: str, index: int, total: int, hard_limit: int) -> str:
    text = body.rstrip()
    marker = part_marker(index, total)
    # The separating space is dropped when the body fills the whole width
    separator = " " if len(text) + 1 + len(marker) <= hard_limit else ""
    return f"{text}{separator}{marker}"


def _chunk(text: str, width: int) -> List[str]:
    chunks = []
    start = 0
    while start < len(text):
        remaining = len(text) - start
        end = len(text) if remaining <= width else _cut(text, start, width)
        chunks.append(text[start:end])
        start = end
    return chunks


def split(
    reply_text: str,
    budget: int = DEFAULT_SEGMENT_BUDGET,
    hard_limit: int = DEFAULT_HARD_LIMIT
) -> List[Segment]:
    """
    Split reply_text into ordered, 1-indexed SMS segments.

    Every segment's text fits in hard_limit characters and joining the
    segment bodies in order gives back reply_text exactly.
    """
    if not reply_text or not reply_text.strip():
        return []

    if len(reply_text) <= min(budget, hard_limit):
        return [Segment.single(reply_text)]

    # The marker width depends on the number of parts, which is only known
    # after splitting, so split again until the digit count settles.
    total_guess = 1
    while True:
        marker_width = len(part_marker(total_guess, total_guess))
        width = min(budget, hard_limit - marker_width)
        if width < 1:
            raise ValueError(f"hard_limit {hard_limit} leaves no room for message text")
        chunks = _chunk(reply_text, width)
        if len(str(len(chunks))) <= len(str(total_guess)):
            break
        total_guess = len(chunks)

    total = len(chunks)
    return [
        Segment(index=i, total=total, body=body, text=_render(body, i, total, hard_limit))
        for i, body in enumerate(chunks, start=1)
    ]
